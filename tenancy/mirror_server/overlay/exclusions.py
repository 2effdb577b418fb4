"""
Exclusion registry for deleted mirrors.

When a mirrored record is deleted from an aggregation context, an exclusion
is recorded so that later fan-out never recreates it there.

Invariants:
    - Append-only: the engine never removes an exclusion
    - Excluding twice keeps the first excluded_at
    - Scope is one aggregation tenant; other tenants keep receiving the record
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ..models import EXCLUSIONS, utc_now
from ..store import DocumentStore
from .overrides import overlay_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Exclusion:
    record_id: str
    canonical_tenant_id: str
    excluded_at: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Exclusion:
        return cls(
            record_id=data["record_id"],
            canonical_tenant_id=data["canonical_tenant_id"],
            excluded_at=data.get("excluded_at", ""),
        )


class ExclusionRegistry:
    """Records which mirrored records an aggregation tenant has deleted."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def exclude(
        self, aggregation_tenant_id: str, record_id: str, canonical_tenant_id: str
    ) -> Exclusion:
        doc_id = overlay_key(canonical_tenant_id, record_id)
        existing = await self.store.get(aggregation_tenant_id, EXCLUSIONS, doc_id)
        if existing is not None:
            return Exclusion.from_dict(existing.fields)

        exclusion = Exclusion(record_id, canonical_tenant_id, utc_now())
        await self.store.set(
            aggregation_tenant_id,
            EXCLUSIONS,
            doc_id,
            {
                "record_id": record_id,
                "canonical_tenant_id": canonical_tenant_id,
                "excluded_at": exclusion.excluded_at,
            },
        )
        logger.info(
            "Excluded mirrored record",
            extra={
                "aggregation_tenant_id": aggregation_tenant_id,
                "record_id": record_id,
                "canonical_tenant_id": canonical_tenant_id,
            },
        )
        return exclusion

    async def is_excluded(
        self, aggregation_tenant_id: str, record_id: str, canonical_tenant_id: str
    ) -> bool:
        doc = await self.store.get(
            aggregation_tenant_id, EXCLUSIONS, overlay_key(canonical_tenant_id, record_id)
        )
        return doc is not None

    async def list_for(self, aggregation_tenant_id: str) -> list[Exclusion]:
        docs = await self.store.list(aggregation_tenant_id, EXCLUSIONS)
        return [Exclusion.from_dict(doc.fields) for doc in docs]

    async def excluded_keys(self, aggregation_tenant_id: str) -> set[tuple[str, str]]:
        """All (record_id, canonical_tenant_id) pairs excluded in a tenant."""
        return {(e.record_id, e.canonical_tenant_id) for e in await self.list_for(aggregation_tenant_id)}
