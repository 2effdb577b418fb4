"""
Reconciliation jobs for historical inconsistencies.

Older invitation flows left data in states the current flows never produce.
Each job scans accepted invitations, decides per invitation whether the data
it produced is still wrong, and repairs it:
- RoleRepairJob: invited user's role or tenant doesn't match the invitation
- ContextPointerRepairJob: aggregation pointer diverges from the user's tenant
- LinkRepairJob: cross-tenant link targets the user's regular tenant instead
  of their aggregation tenant, or its index entry was never swapped

Invariants:
    - Idempotent: a second run over repaired data fixes nothing
    - A failure on one invitation is recorded and the scan continues
    - Every checked invitation gets a detail entry
    - dry_run never writes
    - Every repaired document is stamped with _fixed_by_migration/_fixed_at

How to change safely:
    - New jobs subclass ReconciliationJob and register in JOBS
    - Keep find_issue free of writes; only Issue.apply may write
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ..directory import CrossTenantAccessIndex, TenantDirectoryResolver
from ..errors import NotFoundError
from ..models import (
    ACCESS_LINKS,
    INVITATIONS,
    TENANTS,
    USERS,
    Invitation,
    InvitationOutcome,
    UserProfile,
    utc_now,
)
from ..store import DocumentStore

logger = logging.getLogger(__name__)


def repair_stamp() -> dict[str, Any]:
    """Fields marking a document as repaired."""
    return {"_fixed_by_migration": True, "_fixed_at": utc_now()}


@dataclass
class RepairDetail:
    """Outcome for one checked invitation."""

    invite_id: str
    invited_user_id: str | None
    invited_user_email: str | None
    issue: str | None = None
    fixed: bool = False
    skipped: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "invite_id": self.invite_id,
            "invited_user_id": self.invited_user_id,
            "invited_user_email": self.invited_user_email,
            "issue": self.issue,
            "fixed": self.fixed,
            "skipped": self.skipped,
            "error": self.error,
        }


@dataclass
class ReconciliationResult:
    """Aggregate result of a job run."""

    job: str
    dry_run: bool = False
    total_checked: int = 0
    total_affected: int = 0
    total_fixed: int = 0
    errors: list[str] = field(default_factory=list)
    details: list[RepairDetail] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "dry_run": self.dry_run,
            "total_checked": self.total_checked,
            "total_affected": self.total_affected,
            "total_fixed": self.total_fixed,
            "errors": list(self.errors),
            "details": [d.to_dict() for d in self.details],
        }


@dataclass
class Issue:
    """A detected inconsistency and the writes that repair it."""

    description: str
    apply: Callable[[], Awaitable[None]]


class SkipInvitation(Exception):
    """Invitation can't be evaluated; recorded as skipped, not as an error."""

    pass


class ReconciliationJob:
    """Base class for invitation-driven repair jobs."""

    name = ""
    handled_as: InvitationOutcome = InvitationOutcome.ROLE_CHANGE
    cross_context_only = False

    def __init__(self, store: DocumentStore, resolver: TenantDirectoryResolver | None = None) -> None:
        self.store = store
        self.resolver = resolver or TenantDirectoryResolver(store)

    async def candidates(self) -> list[Invitation]:
        docs = await self.store.query(None, INVITATIONS, "status", "==", "accepted")
        invites = []
        for doc in docs:
            if doc.fields.get("handled_as") != self.handled_as.value:
                continue
            invite = Invitation.from_dict(doc.doc_id, doc.fields)
            if self.cross_context_only and not invite.is_cross_context_invite:
                continue
            invites.append(invite)
        return invites

    async def invited_profile(self, invite: Invitation) -> UserProfile:
        if not invite.invited_user_id:
            raise SkipInvitation("invitation has no invited user")
        profile = await self.resolver.get_profile(invite.invited_user_id)
        if profile is None:
            raise SkipInvitation(f"user {invite.invited_user_id} not found")
        return profile

    async def find_issue(self, invite: Invitation) -> Issue | None:
        raise NotImplementedError

    async def run(self, dry_run: bool = False) -> ReconciliationResult:
        """Scan candidates and repair (or, with dry_run, only report) issues."""
        result = ReconciliationResult(job=self.name, dry_run=dry_run)

        for invite in await self.candidates():
            result.total_checked += 1
            detail = RepairDetail(
                invite_id=invite.id,
                invited_user_id=invite.invited_user_id,
                invited_user_email=invite.invited_user_email,
            )
            result.details.append(detail)

            try:
                issue = await self.find_issue(invite)
                if issue is None:
                    continue
                detail.issue = issue.description
                result.total_affected += 1
                if not dry_run:
                    await issue.apply()
                    detail.fixed = True
                    result.total_fixed += 1
            except SkipInvitation as e:
                detail.skipped = str(e)
                logger.info("Skipped invitation", extra={"job": self.name, "invite_id": invite.id, "reason": str(e)})
            except Exception as e:
                detail.error = str(e)
                result.errors.append(f"{invite.id}: {e}")
                logger.warning(
                    "Repair failed for invitation",
                    extra={"job": self.name, "invite_id": invite.id, "error": str(e)},
                )

        logger.info(
            "Reconciliation finished",
            extra={
                "job": self.name,
                "dry_run": dry_run,
                "total_checked": result.total_checked,
                "total_affected": result.total_affected,
                "total_fixed": result.total_fixed,
                "error_count": len(result.errors),
            },
        )
        return result

    async def preview(self) -> ReconciliationResult:
        """Report what run() would change, without writing."""
        return await self.run(dry_run=True)


class RoleRepairJob(ReconciliationJob):
    """Align invited users with their invitation's role and tenant."""

    name = "role"
    handled_as = InvitationOutcome.ROLE_CHANGE

    async def find_issue(self, invite: Invitation) -> Issue | None:
        profile = await self.invited_profile(invite)

        problems = []
        if profile.role != invite.intended_role:
            problems.append(f"role is {profile.role}, expected {invite.intended_role}")
        if profile.tenant_id != invite.canonical_tenant_id:
            problems.append(f"tenant is {profile.tenant_id}, expected {invite.canonical_tenant_id}")
        if not problems:
            return None

        async def apply() -> None:
            updates = {
                "role": invite.intended_role,
                "tenant_id": invite.canonical_tenant_id,
                "is_invited_admin_leader": True,
                "invited_by_admin_id": invite.created_by,
                **repair_stamp(),
            }
            if invite.canonical_tenant_id:
                tenant = await self.store.get(None, TENANTS, invite.canonical_tenant_id)
                if tenant is not None and tenant.fields.get("name"):
                    updates["tenant_name"] = tenant.fields["name"]
            await self.store.set(None, USERS, profile.uid, updates, merge=True)

        return Issue("; ".join(problems), apply)


class ContextPointerRepairJob(ReconciliationJob):
    """Point cross-context invitees' aggregation context at their tenant."""

    name = "context"
    handled_as = InvitationOutcome.ROLE_CHANGE
    cross_context_only = True

    async def find_issue(self, invite: Invitation) -> Issue | None:
        profile = await self.invited_profile(invite)
        if not profile.tenant_id:
            raise SkipInvitation(f"user {profile.uid} has no tenant")
        if profile.aggregation_tenant_id == profile.tenant_id:
            return None

        async def apply() -> None:
            await self.store.set(
                None,
                USERS,
                profile.uid,
                {"aggregation_tenant_id": profile.tenant_id, **repair_stamp()},
                merge=True,
            )

        return Issue(
            f"aggregation tenant is {profile.aggregation_tenant_id}, expected {profile.tenant_id}",
            apply,
        )


class LinkRepairJob(ReconciliationJob):
    """Retarget cross-tenant links at the invitee's aggregation tenant."""

    name = "links"
    handled_as = InvitationOutcome.CROSS_TENANT_LINK
    cross_context_only = True

    def __init__(
        self,
        store: DocumentStore,
        resolver: TenantDirectoryResolver | None = None,
        access: CrossTenantAccessIndex | None = None,
    ) -> None:
        super().__init__(store, resolver)
        self.access = access or CrossTenantAccessIndex(store)

    async def find_issue(self, invite: Invitation) -> Issue | None:
        profile = await self.invited_profile(invite)
        aggregation_tenant_id = profile.aggregation_tenant_id
        if not aggregation_tenant_id:
            raise SkipInvitation(f"user {profile.uid} has no aggregation tenant")

        links = await self.access.find_links(invite.created_by, profile.uid)
        if not links:
            raise NotFoundError(
                f"no cross-tenant link from {invite.created_by} to {profile.uid}",
                "cross_tenant_link",
                invite.id,
            )

        live = [link for link in links if not link.revoked]
        stale = [
            link
            for link in live
            if link.owner_tenant_id != aggregation_tenant_id
            and link.owner_tenant_id == profile.tenant_id
        ]
        # Retargeted links whose index swap never completed
        unindexed = []
        for link in live:
            if link.owner_tenant_id != aggregation_tenant_id:
                continue
            entry = await self.access.get_entry(link.viewer_user_id, aggregation_tenant_id)
            if entry is None or entry.revoked:
                unindexed.append(link)
        if not stale and not unindexed:
            return None

        async def apply() -> None:
            # A link is retargeted only after its index swap
            for link in stale:
                stamp = repair_stamp()
                await self.access.swap_index(
                    viewer_user_id=link.viewer_user_id,
                    owner_user_id=link.owner_user_id,
                    old_tenant_id=link.owner_tenant_id,
                    new_tenant_id=aggregation_tenant_id,
                    permission=link.permission,
                    created_at=link.created_at,
                    stamp=stamp,
                )
                await self.store.set(
                    None,
                    ACCESS_LINKS,
                    link.id,
                    {"owner_tenant_id": aggregation_tenant_id, **stamp},
                    merge=True,
                )
            for link in unindexed:
                await self.access.swap_index(
                    viewer_user_id=link.viewer_user_id,
                    owner_user_id=link.owner_user_id,
                    old_tenant_id=profile.tenant_id or aggregation_tenant_id,
                    new_tenant_id=aggregation_tenant_id,
                    permission=link.permission,
                    created_at=link.created_at,
                    stamp=repair_stamp(),
                )

        if stale:
            description = f"{len(stale)} link(s) target {profile.tenant_id} instead of {aggregation_tenant_id}"
        else:
            description = f"{len(unindexed)} link(s) to {aggregation_tenant_id} have no valid index entry"
        return Issue(description, apply)


JOBS: dict[str, type[ReconciliationJob]] = {
    RoleRepairJob.name: RoleRepairJob,
    ContextPointerRepairJob.name: ContextPointerRepairJob,
    LinkRepairJob.name: LinkRepairJob,
}


def create_job(name: str, store: DocumentStore) -> ReconciliationJob:
    """Instantiate a registered job by name.

    Raises:
        KeyError: Unknown job name
    """
    return JOBS[name](store)
