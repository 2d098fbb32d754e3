"""Database layer - engine, base classes and immutability listeners."""

from escrow_kernel.db.base import UUID, Base, UTCDateTime, UUIDString
from escrow_kernel.db.engine import (
    build_engine,
    create_tables,
    get_engine,
    get_session,
    init_engine_from_url,
    session_scope,
)

__all__ = [
    "build_engine",
    "get_engine",
    "get_session",
    "init_engine_from_url",
    "session_scope",
    "create_tables",
    "Base",
    "UTCDateTime",
    "UUIDString",
    "UUID",
]
