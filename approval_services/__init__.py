"""
approval_services -- composition root of the approval engine.

``build_approval_engine`` wires settings, persistence, dispatch and the
kernel services into one ``ApprovalEngine``.
"""

from approval_services.engine import ApprovalEngine, build_approval_engine

__all__ = [
    "ApprovalEngine",
    "build_approval_engine",
]
