"""Database infrastructure for the approval kernel."""

from approval_kernel.db.base import Base, UTCDateTime, UUIDString
from approval_kernel.db.engine import (
    build_engine,
    build_session_factory,
    create_tables,
    drop_tables,
)

__all__ = [
    "Base",
    "UUIDString",
    "UTCDateTime",
    "build_engine",
    "build_session_factory",
    "create_tables",
    "drop_tables",
]
