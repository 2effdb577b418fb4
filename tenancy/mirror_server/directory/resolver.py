"""
Tenant directory resolution.

This module answers the routing questions the sync engine asks:
- Which aggregation tenants group records by a classification tag
- Which tenant is canonical for records created by a given user
- Which canonical tenants hold members carrying a tag

Aggregation tenants are discovered from user profiles: an aggregation
operator's profile names the tag it groups by and the tenant its aggregation
context lives in.

Invariants:
    - Results are deduplicated and keep discovery order
    - An unknown tag yields an empty list, never an error
    - canonical_tenant_for never raises; callers log and skip on None

How to change safely:
    - Keep coalescing keys in step with the query inputs
    - Profile field renames must be mirrored in the repair jobs
"""

from __future__ import annotations

import logging

from ..models import USERS, UserProfile, is_active, is_mirror_copy
from ..store import DocumentStore
from .coalesce import RequestCoalescer

logger = logging.getLogger(__name__)


def _dedupe(items: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            result.append(item)
    return result


class TenantDirectoryResolver:
    """Resolves tenants from user profiles.

    Attributes:
        store: Document store holding the users root collection
    """

    def __init__(self, store: DocumentStore, coalescer: RequestCoalescer | None = None) -> None:
        self.store = store
        self._coalescer = coalescer or RequestCoalescer()

    async def get_profile(self, uid: str) -> UserProfile | None:
        """Load a user profile, or None if the user is unknown."""
        doc = await self.store.get(None, USERS, uid)
        if doc is None:
            return None
        return UserProfile.from_dict(uid, doc.fields)

    def canonical_tenant_for(self, profile: UserProfile | None) -> str | None:
        """Canonical tenant for records created by this user.

        Uses the profile's default tenant, falling back to its current tenant.
        """
        if profile is None:
            return None
        tenant_id = profile.default_tenant_id or profile.tenant_id
        if not tenant_id:
            logger.warning(
                "No canonical tenant for user; cannot propagate",
                extra={"uid": profile.uid},
            )
            return None
        return tenant_id

    async def find_aggregation_tenants_for(self, tag: str | None) -> list[str]:
        """Aggregation tenants whose operators group by this tag.

        Concurrent calls for the same tag share one directory scan.
        """
        if not tag:
            return []
        return await self._coalescer.run(
            ("aggregation_tenants", tag),
            lambda: self._scan_aggregation_tenants(tag),
        )

    async def _scan_aggregation_tenants(self, tag: str) -> list[str]:
        operators = await self.store.query(None, USERS, "is_aggregation_operator", "==", True)
        tenants = []
        for doc in operators:
            if doc.fields.get("classification_tag") != tag:
                continue
            tenant_id = doc.fields.get("aggregation_tenant_id") or doc.fields.get("tenant_id")
            if tenant_id:
                tenants.append(tenant_id)

        result = _dedupe(tenants)
        logger.debug(
            "Resolved aggregation tenants",
            extra={"classification_tag": tag, "tenant_count": len(result)},
        )
        return result

    async def find_canonical_tenants_with(self, tag: str, collection: str = "members") -> list[str]:
        """Canonical tenants holding at least one active member with the tag."""
        if not tag:
            return []
        return await self._coalescer.run(
            ("canonical_tenants", tag, collection),
            lambda: self._scan_canonical_tenants(tag, collection),
        )

    async def _scan_canonical_tenants(self, tag: str, collection: str) -> list[str]:
        users = await self.store.list(None, USERS)
        candidates = _dedupe(
            [
                doc.fields.get("default_tenant_id") or doc.fields.get("tenant_id")
                for doc in users
                if not doc.fields.get("is_aggregation_operator")
            ]
        )

        tenants = []
        for tenant_id in candidates:
            members = await self.store.query(tenant_id, collection, "classification_tag", "==", tag)
            if any(is_active(m.fields) and not is_mirror_copy(m.fields, tenant_id) for m in members):
                tenants.append(tenant_id)
        return tenants
