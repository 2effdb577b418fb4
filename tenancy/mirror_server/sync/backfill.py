"""
Backfill and cross-tag pull jobs.

Fan-out normally happens when a canonical member changes. These jobs cover
members that existed before an aggregation context did:
- backfill_tenant: fan out every active tagged member of a canonical tenant
- pull_tag_into: copy every canonical member carrying a tag into one
  aggregation tenant

Both jobs are idempotent (merge writes), honour exclusions, and report
counts instead of raising for individual failures.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..directory import TenantDirectoryResolver
from ..errors import MirrorError
from ..models import is_active, is_mirror_copy
from ..overlay import ExclusionRegistry
from ..store import DocumentStore
from .batching import FanoutBatcher
from .engine import MEMBERS, MirrorSyncEngine

logger = logging.getLogger(__name__)


@dataclass
class SyncRunResult:
    """Counts for a backfill or pull run.

    Attributes:
        scanned: Canonical members examined
        touched: Mirror documents written
        skipped: Members skipped (inactive, untagged or excluded)
        errors: Per-member or per-batch error messages
    """

    scanned: int = 0
    touched: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "touched": self.touched,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class BackfillJob:
    """Bulk mirroring of existing canonical members."""

    def __init__(
        self,
        store: DocumentStore,
        resolver: TenantDirectoryResolver,
        engine: MirrorSyncEngine,
        exclusions: ExclusionRegistry,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.engine = engine
        self.exclusions = exclusions

    async def backfill_tenant(self, canonical_tenant_id: str) -> SyncRunResult:
        """Fan out every active tagged member of a canonical tenant."""
        result = SyncRunResult()
        for doc in await self.store.list(canonical_tenant_id, MEMBERS):
            result.scanned += 1
            fields = doc.fields
            if (
                not fields.get("classification_tag")
                or not is_active(fields)
                or is_mirror_copy(fields, canonical_tenant_id)
            ):
                result.skipped += 1
                continue
            try:
                result.touched += await self.engine.fan_out_member(canonical_tenant_id, doc.doc_id, fields)
            except MirrorError as e:
                result.errors.append(f"{doc.doc_id}: {e.message}")
                logger.warning(
                    "Backfill failed for member",
                    extra={"tenant_id": canonical_tenant_id, "record_id": doc.doc_id, "error": e.message},
                )

        logger.info("Backfill finished", extra={"tenant_id": canonical_tenant_id, **result.to_dict()})
        return result

    async def pull_tag_into(self, aggregation_tenant_id: str, tag: str) -> SyncRunResult:
        """Mirror every canonical member with the tag into one aggregation tenant."""
        result = SyncRunResult()
        excluded = await self.exclusions.excluded_keys(aggregation_tenant_id)
        batcher = FanoutBatcher(self.store, self.engine.config.batch_size, operation="pull_tag")

        for tenant_id in await self.resolver.find_canonical_tenants_with(tag):
            if tenant_id == aggregation_tenant_id:
                continue
            members = await self.store.query(tenant_id, MEMBERS, "classification_tag", "==", tag)
            for doc in members:
                result.scanned += 1
                if not is_active(doc.fields) or is_mirror_copy(doc.fields, tenant_id):
                    result.skipped += 1
                    continue
                if (doc.doc_id, tenant_id) in excluded:
                    result.skipped += 1
                    continue
                await batcher.set(
                    aggregation_tenant_id,
                    MEMBERS,
                    doc.doc_id,
                    self.engine.mirror_payload(tenant_id, doc.fields),
                    merge=True,
                )

        try:
            outcome = await batcher.finish()
        except MirrorError as e:
            result.errors.append(e.message)
            outcome = batcher.outcome
        result.touched = outcome.succeeded
        result.errors.extend(err for err in outcome.errors if err not in result.errors)

        logger.info(
            "Pulled tag into aggregation tenant",
            extra={"tenant_id": aggregation_tenant_id, "classification_tag": tag, **result.to_dict()},
        )
        return result
