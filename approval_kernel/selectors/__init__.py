"""Read-only selectors (query side)."""

from approval_kernel.selectors.approval_selector import (
    ApprovalSelector,
    RequestFilter,
)
from approval_kernel.selectors.base import BaseSelector

__all__ = [
    "ApprovalSelector",
    "BaseSelector",
    "RequestFilter",
]
