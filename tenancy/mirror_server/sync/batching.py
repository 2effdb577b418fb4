"""
Batched fan-out writes.

Fan-out can touch hundreds of tenants. The FanoutBatcher buffers mutations
and commits them in store batches of at most ``batch_size`` mutations,
flushing each batch before starting the next.

Invariants:
    - A batch never exceeds batch_size (nor the store's mutation ceiling)
    - A failed batch is logged and counted; earlier batches stay committed
    - finish() raises only when mutations were attempted and none succeeded

How to change safely:
    - Keep batch_size below the store ceiling (validated in ServerConfig)
    - Don't retry inside the batcher; fan-out is idempotent and re-runnable
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..errors import BatchPartialFailure
from ..store import DocumentStore, WriteBatch

logger = logging.getLogger(__name__)


@dataclass
class BatchOutcome:
    """Counts for a batched fan-out run.

    Attributes:
        attempted: Mutations handed to the store
        succeeded: Mutations in batches that committed
        batches: Batches committed
        failed_batches: Batches whose commit failed
        errors: Error messages from failed batches
    """

    attempted: int = 0
    succeeded: int = 0
    batches: int = 0
    failed_batches: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return self.attempted - self.succeeded

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "batches": self.batches,
            "failed_batches": self.failed_batches,
            "errors": list(self.errors),
        }


class FanoutBatcher:
    """Buffers mutations and commits them in bounded batches.

    Example:
        >>> batcher = FanoutBatcher(store, batch_size=450)
        >>> for tenant_id in tenants:
        ...     await batcher.set(tenant_id, "members", record_id, fields, merge=True)
        >>> outcome = await batcher.finish()
    """

    def __init__(self, store: DocumentStore, batch_size: int = 450, operation: str = "fanout") -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.batch_size = batch_size
        self.operation = operation
        self.outcome = BatchOutcome()
        self._batch: WriteBatch | None = None

    def _current(self) -> WriteBatch:
        if self._batch is None:
            self._batch = self.store.batch()
        return self._batch

    async def _after_add(self) -> None:
        if self._batch is not None and len(self._batch) >= self.batch_size:
            await self.flush()

    async def set(
        self,
        tenant_id: str | None,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        merge: bool = True,
    ) -> None:
        self._current().set(tenant_id, collection, doc_id, fields, merge=merge)
        await self._after_add()

    async def delete(self, tenant_id: str | None, collection: str, doc_id: str) -> None:
        self._current().delete(tenant_id, collection, doc_id)
        await self._after_add()

    async def flush(self) -> None:
        """Commit the buffered batch, if any."""
        batch, self._batch = self._batch, None
        if batch is None or len(batch) == 0:
            return

        size = len(batch)
        self.outcome.attempted += size
        try:
            await batch.commit()
        except Exception as e:
            self.outcome.failed_batches += 1
            self.outcome.errors.append(str(e))
            logger.warning(
                "Fan-out batch failed",
                extra={"operation": self.operation, "batch_size": size, "error": str(e)},
            )
            return

        self.outcome.succeeded += size
        self.outcome.batches += 1
        logger.debug("Committed fan-out batch", extra={"operation": self.operation, "batch_size": size})

    async def finish(self) -> BatchOutcome:
        """Flush remaining mutations and return the outcome.

        Raises:
            BatchPartialFailure: If mutations were attempted and none committed
        """
        await self.flush()
        outcome = self.outcome
        if outcome.attempted and not outcome.succeeded:
            raise BatchPartialFailure(
                f"All {outcome.failed_batches} {self.operation} batches failed",
                attempted=outcome.attempted,
                succeeded=0,
                failed_batches=outcome.failed_batches,
            )
        if outcome.failed:
            logger.warning(
                "Fan-out partially failed",
                extra={"operation": self.operation, **outcome.to_dict()},
            )
        return outcome
