"""
Reconciliation jobs for the mirror server.

This module provides:
- RoleRepairJob, ContextPointerRepairJob, LinkRepairJob
- ReconciliationResult: shared result shape
- create_job: job lookup by name (used by the CLI and HTTP API)
"""

from .jobs import (
    JOBS,
    ContextPointerRepairJob,
    LinkRepairJob,
    ReconciliationJob,
    ReconciliationResult,
    RepairDetail,
    RoleRepairJob,
    create_job,
)

__all__ = [
    "JOBS",
    "ContextPointerRepairJob",
    "LinkRepairJob",
    "ReconciliationJob",
    "ReconciliationResult",
    "RepairDetail",
    "RoleRepairJob",
    "create_job",
]
