"""
Mirror server - cross-tenant mirroring and reconciliation.

Lets an aggregation context work with records drawn from many tenants that
share a classification tag, while every write lands in (or is reconciled
with) the tenant that canonically owns the record.

Components:
- store: partitioned document store (in-memory, SQLite)
- directory: tenant resolution, cross-tenant access index, invitations
- overlay: overrides and exclusions for mirrored records
- sync: mirror sync engine, fan-out batching, outbox, backfill
- reconcile: repair jobs and their CLI
- api: FastAPI caller API
"""

from .config import ServerConfig
from .errors import (
    BatchPartialFailure,
    InvalidStateError,
    MirrorError,
    NotFoundError,
    PrimaryWriteError,
    PropagationFailure,
)
from .models import RecordKind, SyncContext, SyncDirection, UserProfile

__version__ = "1.0.0"

__all__ = [
    "BatchPartialFailure",
    "InvalidStateError",
    "MirrorError",
    "NotFoundError",
    "PrimaryWriteError",
    "PropagationFailure",
    "RecordKind",
    "ServerConfig",
    "SyncContext",
    "SyncDirection",
    "UserProfile",
]
