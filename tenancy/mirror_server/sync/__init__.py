"""
Mirror sync for the mirror server.

This module provides:
- MirrorSyncEngine: routes aggregation-context writes and fans out changes
- FanoutBatcher: bounded, sequential fan-out batches
- PropagationOutbox: in-process queue for canonical-side propagation
- BackfillJob: bulk mirroring of existing members
- MirrorView: aggregated read path
"""

from .backfill import BackfillJob, SyncRunResult
from .batching import BatchOutcome, FanoutBatcher
from .engine import DeleteOutcome, MirrorSyncEngine
from .outbox import PropagationOutbox, PropagationTask, TaskResult
from .view import MirrorView

__all__ = [
    "BackfillJob",
    "BatchOutcome",
    "DeleteOutcome",
    "FanoutBatcher",
    "MirrorSyncEngine",
    "MirrorView",
    "PropagationOutbox",
    "PropagationTask",
    "SyncRunResult",
    "TaskResult",
]
