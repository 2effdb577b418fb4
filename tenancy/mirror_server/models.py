"""
Shared document types for the mirror server.

This module defines the record kinds the engine propagates, the provenance
stamp written on engine-originated copies, and the root-collection documents
(user profiles, invitations) that the resolver and repair jobs read.

Documents are plain dicts in the store. The dataclasses here are views over
those dicts with from_dict/to_dict converters; unknown fields are preserved in
``extra`` so a round trip never drops data written by other services.

Invariants:
    - Record ids are unique within a tenant and shared by every mirror copy
    - A record with is_native False carries source_tenant_id
    - sync_metadata is only written by the engine

How to change safely:
    - New record kinds need a collection name and an owning-member field
    - Keep field names stable, repair jobs match on them
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import quote

# Root collections (tenant_id is None)
USERS = "users"
TENANTS = "tenants"
INVITATIONS = "admin_invites"
ACCESS_LINKS = "cross_tenant_access_links"
ACCESS_INDEX = "cross_tenant_access_index"

# Tenant-scoped overlay collections
OVERRIDES = "ministry_member_overrides"
EXCLUSIONS = "ministry_exclusions"

# Fields managed by the engine; never forwarded from caller updates
ENGINE_FIELDS = frozenset(
    {"id", "is_native", "source_tenant_id", "sync_metadata", "last_updated", "created_at"}
)

# Context-only fields kept in the override layer
OVERRIDE_FIELDS = ("frozen", "role", "ministry_position")


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def compound_id(*parts: str) -> str:
    """Document id joining several ids.

    Parts are percent-encoded before joining with ":", so distinct tuples
    never share an id even when the parts contain the separator.
    """
    return ":".join(quote(part, safe="") for part in parts)


class RecordKind(Enum):
    """Record kinds handled by the sync engine."""

    MEMBER = "member"
    ATTENDANCE = "attendance"
    NEW_BELIEVER = "new_believer"
    CONFIRMATION = "confirmation"

    @property
    def collection(self) -> str:
        return _COLLECTIONS[self]

    @property
    def member_field(self) -> str | None:
        """Field pointing at the owning member, if the kind has one."""
        if self in (RecordKind.ATTENDANCE, RecordKind.CONFIRMATION):
            return "member_id"
        return None


_COLLECTIONS = {
    RecordKind.MEMBER: "members",
    RecordKind.ATTENDANCE: "attendance",
    RecordKind.NEW_BELIEVER: "new_believers",
    RecordKind.CONFIRMATION: "sunday_confirmations",
}


class SyncDirection(Enum):
    """Direction of an engine-originated write."""

    TO_AGGREGATION = "normal-to-ministry"
    TO_CANONICAL = "ministry-to-normal"


@dataclass(frozen=True)
class SyncMetadata:
    """Provenance stamp attached to engine-originated copies.

    Attributes:
        source_tenant_id: Tenant the data came from
        synced_at: ISO-8601 timestamp of the write
        synced_by: Actor uid or the system actor
        direction: Which way the write travelled
    """

    source_tenant_id: str
    synced_at: str
    synced_by: str
    direction: SyncDirection

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_tenant_id": self.source_tenant_id,
            "synced_at": self.synced_at,
            "synced_by": self.synced_by,
            "direction": self.direction.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncMetadata:
        return cls(
            source_tenant_id=data["source_tenant_id"],
            synced_at=data["synced_at"],
            synced_by=data.get("synced_by", ""),
            direction=SyncDirection(data["direction"]),
        )


def sync_direction_of(fields: dict[str, Any] | None) -> SyncDirection | None:
    """Return the sync direction stamped on a record, if any."""
    if not fields:
        return None
    meta = fields.get("sync_metadata")
    if not isinstance(meta, dict):
        return None
    try:
        return SyncDirection(meta.get("direction"))
    except ValueError:
        return None


def is_mirror_copy(fields: dict[str, Any], tenant_id: str) -> bool:
    """Whether a record held in tenant_id is a copy of one owned elsewhere."""
    source = fields.get("source_tenant_id")
    return bool(source) and source != tenant_id


def is_active(fields: dict[str, Any]) -> bool:
    """Records are active unless explicitly deactivated."""
    return fields.get("is_active") is not False


@dataclass
class UserProfile:
    """User profile from the root users collection.

    Attributes:
        uid: User id
        email: Contact email
        role: Directory role (admin, leader, ...)
        tenant_id: Tenant the user currently belongs to
        default_tenant_id: Canonical tenant for new records
        aggregation_tenant_id: Tenant used when operating in aggregation context
        is_aggregation_operator: Whether the user runs an aggregation context
        classification_tag: Tag the aggregation context groups by
    """

    uid: str
    email: str | None = None
    role: str | None = None
    tenant_id: str | None = None
    tenant_name: str | None = None
    default_tenant_id: str | None = None
    aggregation_tenant_id: str | None = None
    is_aggregation_operator: bool = False
    classification_tag: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = (
        "uid",
        "email",
        "role",
        "tenant_id",
        "tenant_name",
        "default_tenant_id",
        "aggregation_tenant_id",
        "is_aggregation_operator",
        "classification_tag",
    )

    @classmethod
    def from_dict(cls, uid: str, data: dict[str, Any]) -> UserProfile:
        return cls(
            uid=data.get("uid") or uid,
            email=data.get("email"),
            role=data.get("role"),
            tenant_id=data.get("tenant_id"),
            tenant_name=data.get("tenant_name"),
            default_tenant_id=data.get("default_tenant_id"),
            aggregation_tenant_id=data.get("aggregation_tenant_id"),
            is_aggregation_operator=bool(data.get("is_aggregation_operator", False)),
            classification_tag=data.get("classification_tag"),
            extra={k: v for k, v in data.items() if k not in cls._KNOWN},
        )

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        for name in self._KNOWN:
            data[name] = getattr(self, name)
        return data


class InvitationOutcome(Enum):
    """How an accepted invitation was handled."""

    ROLE_CHANGE = "leader-role-change"
    CROSS_TENANT_LINK = "cross-tenant-link"


@dataclass
class Invitation:
    """Invitation history entry from the admin_invites collection."""

    id: str
    invited_user_id: str | None
    invited_user_email: str | None
    created_by: str
    canonical_tenant_id: str | None
    intended_role: str = "leader"
    status: str = "pending"
    handled_as: InvitationOutcome | None = None
    is_cross_context_invite: bool = False
    permission: str = "read-only"
    responded_at: str | None = None

    @classmethod
    def from_dict(cls, invite_id: str, data: dict[str, Any]) -> Invitation:
        handled = data.get("handled_as")
        return cls(
            id=invite_id,
            invited_user_id=data.get("invited_user_id"),
            invited_user_email=data.get("invited_user_email"),
            created_by=data.get("created_by", ""),
            canonical_tenant_id=data.get("canonical_tenant_id"),
            intended_role=data.get("intended_role", "leader"),
            status=data.get("status", "pending"),
            handled_as=InvitationOutcome(handled) if handled else None,
            is_cross_context_invite=bool(data.get("is_cross_context_invite", False)),
            permission=data.get("permission", "read-only"),
            responded_at=data.get("responded_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "invited_user_id": self.invited_user_id,
            "invited_user_email": self.invited_user_email,
            "created_by": self.created_by,
            "canonical_tenant_id": self.canonical_tenant_id,
            "intended_role": self.intended_role,
            "status": self.status,
            "handled_as": self.handled_as.value if self.handled_as else None,
            "is_cross_context_invite": self.is_cross_context_invite,
            "permission": self.permission,
            "responded_at": self.responded_at,
        }


@dataclass(frozen=True)
class SyncContext:
    """Who is writing and from which tenant.

    Attributes:
        current_tenant_id: Tenant the caller is operating in
        actor_uid: Acting user
        profile: Acting user's profile, when known
    """

    current_tenant_id: str
    actor_uid: str
    profile: UserProfile | None = None
