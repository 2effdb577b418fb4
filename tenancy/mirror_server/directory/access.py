"""
Cross-tenant access links and their lookup index.

A CrossTenantLink grants a viewer read (or read-write) access to another
user's tenant. Every link has an index entry keyed by
``compound_id(viewer_user_id, owner_tenant_id)`` so an access check is one
document read.

Invariants:
    - At most one non-revoked index entry per (viewer, owner tenant)
    - Swapping an entry creates the new one before revoking the old one,
      so readers always observe at least one valid entry
    - Revocation is a flag; entries are never deleted

How to change safely:
    - New permission levels must be added to PERMISSION_HIERARCHY
    - Keep index ids deterministic, repair jobs rely on them
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..models import ACCESS_INDEX, ACCESS_LINKS, compound_id, utc_now
from ..store import DocumentStore

logger = logging.getLogger(__name__)


class Permission(Enum):
    """Permission levels granted by a cross-tenant link."""

    READ_ONLY = "read-only"
    READ_WRITE = "read-write"


# Each permission implies the ones listed for it
PERMISSION_HIERARCHY: dict[Permission, set[Permission]] = {
    Permission.READ_ONLY: {Permission.READ_ONLY},
    Permission.READ_WRITE: {Permission.READ_ONLY, Permission.READ_WRITE},
}


def index_id(viewer_user_id: str, owner_tenant_id: str) -> str:
    """Deterministic id of the index entry for (viewer, owner tenant)."""
    return compound_id(viewer_user_id, owner_tenant_id)


@dataclass
class CrossTenantLink:
    """Access grant from one user's tenant to another user.

    Attributes:
        id: Link document id
        viewer_user_id: User granted access
        owner_user_id: User whose tenant is shared
        owner_tenant_id: Tenant being shared
        permission: Granted permission
        created_at: ISO-8601 creation time
        revoked: Whether the link was revoked
    """

    id: str
    viewer_user_id: str
    owner_user_id: str
    owner_tenant_id: str
    permission: Permission
    created_at: str
    owner_tenant_name: str | None = None
    revoked: bool = False
    revoked_at: str | None = None

    @classmethod
    def from_dict(cls, link_id: str, data: dict[str, Any]) -> CrossTenantLink:
        return cls(
            id=link_id,
            viewer_user_id=data["viewer_user_id"],
            owner_user_id=data["owner_user_id"],
            owner_tenant_id=data["owner_tenant_id"],
            permission=Permission(data.get("permission", "read-only")),
            created_at=data.get("created_at", ""),
            owner_tenant_name=data.get("owner_tenant_name"),
            revoked=bool(data.get("revoked", False)),
            revoked_at=data.get("revoked_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "viewer_user_id": self.viewer_user_id,
            "owner_user_id": self.owner_user_id,
            "owner_tenant_id": self.owner_tenant_id,
            "owner_tenant_name": self.owner_tenant_name,
            "permission": self.permission.value,
            "created_at": self.created_at,
            "revoked": self.revoked,
            "revoked_at": self.revoked_at,
        }


@dataclass
class AccessIndexEntry:
    """Lookup entry for a (viewer, owner tenant) pair."""

    id: str
    viewer_user_id: str
    owner_user_id: str
    owner_tenant_id: str
    permission: Permission
    created_at: str
    revoked: bool = False
    revoked_at: str | None = None
    replaced_by: str | None = None

    @classmethod
    def from_dict(cls, entry_id: str, data: dict[str, Any]) -> AccessIndexEntry:
        return cls(
            id=entry_id,
            viewer_user_id=data["viewer_user_id"],
            owner_user_id=data.get("owner_user_id", ""),
            owner_tenant_id=data["owner_tenant_id"],
            permission=Permission(data.get("permission", "read-only")),
            created_at=data.get("created_at", ""),
            revoked=bool(data.get("revoked", False)),
            revoked_at=data.get("revoked_at"),
            replaced_by=data.get("replaced_by"),
        )


class CrossTenantAccessIndex:
    """Manages cross-tenant links and the access index.

    Example:
        >>> access = CrossTenantAccessIndex(store)
        >>> link = await access.create_link("u_viewer", "u_owner", "t_owner")
        >>> await access.has_access("u_viewer", "t_owner")
        True
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def create_link(
        self,
        viewer_user_id: str,
        owner_user_id: str,
        owner_tenant_id: str,
        permission: Permission = Permission.READ_ONLY,
        owner_tenant_name: str | None = None,
    ) -> CrossTenantLink:
        """Create a link and its index entry."""
        link = CrossTenantLink(
            id=str(uuid.uuid4()),
            viewer_user_id=viewer_user_id,
            owner_user_id=owner_user_id,
            owner_tenant_id=owner_tenant_id,
            permission=permission,
            created_at=utc_now(),
            owner_tenant_name=owner_tenant_name,
        )
        await self.store.set(None, ACCESS_LINKS, link.id, link.to_dict())
        await self.write_index_entry(
            viewer_user_id, owner_user_id, owner_tenant_id, permission, link.created_at
        )

        logger.info(
            "Created cross-tenant link",
            extra={
                "link_id": link.id,
                "viewer_user_id": viewer_user_id,
                "owner_tenant_id": owner_tenant_id,
                "permission": permission.value,
            },
        )
        return link

    async def write_index_entry(
        self,
        viewer_user_id: str,
        owner_user_id: str,
        owner_tenant_id: str,
        permission: Permission,
        created_at: str,
        stamp: dict[str, Any] | None = None,
    ) -> str:
        """Create (or replace) the valid index entry for a pair."""
        entry_id = index_id(viewer_user_id, owner_tenant_id)
        fields = {
            "viewer_user_id": viewer_user_id,
            "owner_user_id": owner_user_id,
            "owner_tenant_id": owner_tenant_id,
            "permission": permission.value,
            "created_at": created_at,
            "revoked": False,
        }
        fields.update(stamp or {})
        await self.store.set(None, ACCESS_INDEX, entry_id, fields)
        return entry_id

    async def get_entry(self, viewer_user_id: str, owner_tenant_id: str) -> AccessIndexEntry | None:
        entry_id = index_id(viewer_user_id, owner_tenant_id)
        doc = await self.store.get(None, ACCESS_INDEX, entry_id)
        return AccessIndexEntry.from_dict(entry_id, doc.fields) if doc else None

    async def has_access(
        self,
        viewer_user_id: str,
        owner_tenant_id: str,
        required: Permission = Permission.READ_ONLY,
    ) -> bool:
        """Check access with a single index read."""
        entry = await self.get_entry(viewer_user_id, owner_tenant_id)
        if entry is None or entry.revoked:
            return False
        return required in PERMISSION_HIERARCHY[entry.permission]

    async def swap_index(
        self,
        viewer_user_id: str,
        owner_user_id: str,
        old_tenant_id: str,
        new_tenant_id: str,
        permission: Permission,
        created_at: str,
        stamp: dict[str, Any] | None = None,
    ) -> str:
        """Point a viewer's index at a new owner tenant.

        The new entry is written first; only then is the old one revoked.
        """
        new_id = await self.write_index_entry(
            viewer_user_id, owner_user_id, new_tenant_id, permission, created_at, stamp
        )
        if old_tenant_id != new_tenant_id:
            revoke = {"revoked": True, "revoked_at": utc_now(), "replaced_by": new_id}
            revoke.update(stamp or {})
            await self.store.set(
                None, ACCESS_INDEX, index_id(viewer_user_id, old_tenant_id), revoke, merge=True
            )
        return new_id

    async def revoke_link(self, link_id: str) -> bool:
        """Revoke a link and its index entry. Returns False if unknown."""
        doc = await self.store.get(None, ACCESS_LINKS, link_id)
        if doc is None:
            return False
        link = CrossTenantLink.from_dict(link_id, doc.fields)
        now = utc_now()
        await self.store.set(None, ACCESS_LINKS, link_id, {"revoked": True, "revoked_at": now}, merge=True)
        entry_id = index_id(link.viewer_user_id, link.owner_tenant_id)
        if await self.store.get(None, ACCESS_INDEX, entry_id) is not None:
            await self.store.set(
                None, ACCESS_INDEX, entry_id, {"revoked": True, "revoked_at": now}, merge=True
            )
        logger.info("Revoked cross-tenant link", extra={"link_id": link_id})
        return True

    async def find_links(self, viewer_user_id: str, owner_user_id: str) -> list[CrossTenantLink]:
        """All links (revoked or not) from viewer to owner."""
        docs = await self.store.query(None, ACCESS_LINKS, "viewer_user_id", "==", viewer_user_id)
        return [
            CrossTenantLink.from_dict(doc.doc_id, doc.fields)
            for doc in docs
            if doc.fields.get("owner_user_id") == owner_user_id
        ]

    async def links_for_viewer(self, viewer_user_id: str) -> list[CrossTenantLink]:
        """Non-revoked links a viewer holds."""
        docs = await self.store.query(None, ACCESS_LINKS, "viewer_user_id", "==", viewer_user_id)
        links = [CrossTenantLink.from_dict(doc.doc_id, doc.fields) for doc in docs]
        return [link for link in links if not link.revoked]
