"""
Context-local overrides for mirrored records.

An aggregation context may adjust a few fields of a record it only mirrors
(frozen flag, role, position) without touching the canonical record. Those
values live here, in the aggregation tenant's override collection, keyed by
``compound_id(canonical_tenant_id, record_id)``, and are layered onto the
mirror at read time.

Invariants:
    - Only OVERRIDE_FIELDS are ever persisted
    - Writes merge; setting one field leaves the others in place
    - Override values are never written into a canonical record

How to change safely:
    - Adding an override field means adding it to models.OVERRIDE_FIELDS
      and to the forwarding exclusions in the sync engine
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from ..models import OVERRIDES, OVERRIDE_FIELDS, compound_id, utc_now
from ..store import DocumentStore

logger = logging.getLogger(__name__)


def overlay_key(canonical_tenant_id: str, record_id: str) -> str:
    """Document id for overlay entries (overrides and exclusions)."""
    return compound_id(canonical_tenant_id, record_id)


@dataclass
class Override:
    """Context-only field values for one mirrored record.

    Attributes:
        record_id: Mirrored record id
        canonical_tenant_id: Tenant owning the canonical record
        values: Overridden field values (subset of OVERRIDE_FIELDS)
        updated_at: ISO-8601 time of the last write
    """

    record_id: str
    canonical_tenant_id: str
    values: dict[str, Any] = field(default_factory=dict)
    updated_at: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Override:
        return cls(
            record_id=data["record_id"],
            canonical_tenant_id=data["canonical_tenant_id"],
            values={k: data[k] for k in OVERRIDE_FIELDS if k in data},
            updated_at=data.get("updated_at"),
        )


class OverrideStore:
    """Reads and writes overrides in aggregation tenants."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def set(
        self,
        aggregation_tenant_id: str,
        record_id: str,
        canonical_tenant_id: str,
        values: dict[str, Any],
    ) -> Override | None:
        """Merge override values. Fields outside OVERRIDE_FIELDS are dropped.

        Returns:
            The stored override, or None when nothing was eligible
        """
        eligible = {k: v for k, v in values.items() if k in OVERRIDE_FIELDS}
        if not eligible:
            return None

        now = utc_now()
        doc_id = overlay_key(canonical_tenant_id, record_id)
        existing = await self.store.get(aggregation_tenant_id, OVERRIDES, doc_id)
        fields = {
            "record_id": record_id,
            "canonical_tenant_id": canonical_tenant_id,
            "updated_at": now,
            **eligible,
        }
        if existing is None:
            fields["created_at"] = now

        doc = await self.store.set(aggregation_tenant_id, OVERRIDES, doc_id, fields, merge=True)
        logger.debug(
            "Stored override",
            extra={
                "aggregation_tenant_id": aggregation_tenant_id,
                "record_id": record_id,
                "fields": sorted(eligible),
            },
        )
        return Override.from_dict(doc.fields)

    async def get(
        self, aggregation_tenant_id: str, record_id: str, canonical_tenant_id: str
    ) -> Override | None:
        doc = await self.store.get(
            aggregation_tenant_id, OVERRIDES, overlay_key(canonical_tenant_id, record_id)
        )
        return Override.from_dict(doc.fields) if doc else None

    async def clear(self, aggregation_tenant_id: str, record_id: str, canonical_tenant_id: str) -> bool:
        return await self.store.delete(
            aggregation_tenant_id, OVERRIDES, overlay_key(canonical_tenant_id, record_id)
        )

    async def list_for(self, aggregation_tenant_id: str) -> list[Override]:
        docs = await self.store.list(aggregation_tenant_id, OVERRIDES)
        return [Override.from_dict(doc.fields) for doc in docs]

    async def apply(
        self, aggregation_tenant_id: str, records: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Layer overrides onto mirrored records.

        Records need ``id`` and ``source_tenant_id``; records without a
        source are returned unchanged.
        """
        overrides = {
            overlay_key(o.canonical_tenant_id, o.record_id): o
            for o in await self.list_for(aggregation_tenant_id)
        }
        result = []
        for record in records:
            merged = copy.deepcopy(record)
            source = record.get("source_tenant_id")
            override = overrides.get(overlay_key(source, record["id"])) if source else None
            if override is not None:
                merged.update(override.values)
            result.append(merged)
        return result
