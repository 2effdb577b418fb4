"""
Aggregated member view for an aggregation tenant.

Combines the aggregation tenant's own members with the canonical members
carrying its tag, the way an aggregation context displays them: canonical
copies win over stale mirrors, excluded pairs are hidden and overrides are
layered on top.
"""

from __future__ import annotations

import logging
from typing import Any

from ..directory import TenantDirectoryResolver
from ..models import is_active, is_mirror_copy
from ..overlay import ExclusionRegistry, OverrideStore
from ..store import DocumentStore
from .engine import MEMBERS

logger = logging.getLogger(__name__)


class MirrorView:
    """Read path for aggregation contexts."""

    def __init__(
        self,
        store: DocumentStore,
        resolver: TenantDirectoryResolver,
        overrides: OverrideStore,
        exclusions: ExclusionRegistry,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.overrides = overrides
        self.exclusions = exclusions

    async def members_for(self, aggregation_tenant_id: str, tag: str) -> list[dict[str, Any]]:
        by_id: dict[str, dict[str, Any]] = {}

        for doc in await self.store.list(aggregation_tenant_id, MEMBERS):
            fields = doc.fields
            if fields.get("is_native") or fields.get("classification_tag") == tag:
                by_id[doc.doc_id] = doc.to_record()

        for tenant_id in await self.resolver.find_canonical_tenants_with(tag):
            if tenant_id == aggregation_tenant_id:
                continue
            for doc in await self.store.query(tenant_id, MEMBERS, "classification_tag", "==", tag):
                if is_mirror_copy(doc.fields, tenant_id):
                    continue
                record = doc.to_record()
                record["source_tenant_id"] = tenant_id
                record["is_native"] = False
                by_id[doc.doc_id] = record

        excluded = await self.exclusions.excluded_keys(aggregation_tenant_id)
        visible = [
            record
            for record in by_id.values()
            if is_active(record)
            and (record["id"], record.get("source_tenant_id")) not in excluded
        ]
        return await self.overrides.apply(aggregation_tenant_id, visible)
