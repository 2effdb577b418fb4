"""
Invitation acceptance.

An administrator invites a user into their tenant. On acceptance one of two
things happens:
- The user has no data of their own: they are moved into the inviting tenant
  with the invitation's intended role (a role change).
- The user already runs a tenant with members: a cross-tenant link is created
  so the inviter can see that tenant instead (a cross-tenant link).

For cross-context invitations (sent from an aggregation context) the
aggregation pointer is kept in step: role changes move it along with the
tenant, and links target the user's aggregation tenant when one is set.

Invariants:
    - Only pending invitations can be accepted
    - The invitation records how it was handled (handled_as)
"""

from __future__ import annotations

import logging
import uuid

from ..errors import InvalidStateError, NotFoundError
from ..models import INVITATIONS, TENANTS, USERS, Invitation, InvitationOutcome, utc_now
from ..store import DocumentStore
from .access import CrossTenantAccessIndex, Permission
from .resolver import TenantDirectoryResolver

logger = logging.getLogger(__name__)


class InvitationService:
    """Creates and accepts invitations."""

    def __init__(
        self,
        store: DocumentStore,
        resolver: TenantDirectoryResolver,
        access: CrossTenantAccessIndex,
        member_collection: str = "members",
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.access = access
        self.member_collection = member_collection

    async def create(
        self,
        created_by: str,
        canonical_tenant_id: str,
        invited_user_email: str,
        invited_user_id: str | None = None,
        intended_role: str = "leader",
        is_cross_context_invite: bool = False,
        permission: Permission = Permission.READ_ONLY,
    ) -> Invitation:
        invite = Invitation(
            id=str(uuid.uuid4()),
            invited_user_id=invited_user_id,
            invited_user_email=invited_user_email,
            created_by=created_by,
            canonical_tenant_id=canonical_tenant_id,
            intended_role=intended_role,
            is_cross_context_invite=is_cross_context_invite,
            permission=permission.value,
        )
        await self.store.set(None, INVITATIONS, invite.id, {**invite.to_dict(), "created_at": utc_now()})
        return invite

    async def get(self, invite_id: str) -> Invitation:
        doc = await self.store.get(None, INVITATIONS, invite_id)
        if doc is None:
            raise NotFoundError(f"Invitation not found: {invite_id}", "invitation", invite_id)
        return Invitation.from_dict(invite_id, doc.fields)

    async def accept(self, invite_id: str, accepting_uid: str) -> Invitation:
        """Accept an invitation on behalf of a user.

        Raises:
            NotFoundError: Invitation or user profile is missing
            InvalidStateError: Invitation is not pending or belongs to someone else
        """
        invite = await self.get(invite_id)
        if invite.status != "pending":
            raise InvalidStateError(
                f"Invitation {invite_id} is {invite.status}",
                resource_id=invite_id,
                state={"status": invite.status},
            )
        if invite.invited_user_id and invite.invited_user_id != accepting_uid:
            raise InvalidStateError(
                f"Invitation {invite_id} was issued to another user", resource_id=invite_id
            )

        profile = await self.resolver.get_profile(accepting_uid)
        if profile is None:
            raise NotFoundError(f"User not found: {accepting_uid}", "user", accepting_uid)

        has_own_data = False
        if profile.tenant_id:
            has_own_data = bool(await self.store.list(profile.tenant_id, self.member_collection))

        if has_own_data:
            owner_tenant_id = profile.tenant_id
            if invite.is_cross_context_invite and profile.aggregation_tenant_id:
                owner_tenant_id = profile.aggregation_tenant_id
            await self.access.create_link(
                viewer_user_id=invite.created_by,
                owner_user_id=accepting_uid,
                owner_tenant_id=owner_tenant_id,
                permission=Permission(invite.permission),
                owner_tenant_name=profile.tenant_name,
            )
            outcome = InvitationOutcome.CROSS_TENANT_LINK
        else:
            updates = {
                "role": invite.intended_role,
                "tenant_id": invite.canonical_tenant_id,
                "is_invited_admin_leader": True,
                "invited_by_admin_id": invite.created_by,
            }
            tenant_doc = await self.store.get(None, TENANTS, invite.canonical_tenant_id or "")
            if tenant_doc is not None and tenant_doc.fields.get("name"):
                updates["tenant_name"] = tenant_doc.fields["name"]
            if invite.is_cross_context_invite:
                updates["aggregation_tenant_id"] = invite.canonical_tenant_id
            await self.store.set(None, USERS, accepting_uid, updates, merge=True)
            outcome = InvitationOutcome.ROLE_CHANGE

        invite.status = "accepted"
        invite.handled_as = outcome
        invite.invited_user_id = accepting_uid
        invite.responded_at = utc_now()
        await self.store.set(None, INVITATIONS, invite_id, invite.to_dict(), merge=True)

        logger.info(
            "Accepted invitation",
            extra={"invite_id": invite_id, "uid": accepting_uid, "handled_as": outcome.value},
        )
        return invite
