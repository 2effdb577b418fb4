"""
API routes for the mirror server.

Exposes the sync engine, the aggregated view, invitation acceptance, access
checks and the repair jobs over HTTP. The acting user comes from the
X-Actor header; the tenant the caller operates in is part of the path.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ..directory import Permission
from ..models import RecordKind, SyncContext
from ..reconcile import JOBS
from ..services import MirrorServices

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Mirror Server"])


# --- Request/Response Models ---


class AddRecordRequest(BaseModel):
    """Request to add a record."""

    record: dict[str, Any] = Field(..., description="Record fields, optionally with id")
    target_tenant_id: str | None = Field(
        None, description="Members only: canonical tenant; omit for a native member"
    )
    context_record: dict[str, Any] | None = Field(
        None, description="Activity records: the owning member as the caller sees it"
    )


class UpdateRecordRequest(BaseModel):
    """Request to update a record."""

    updates: dict[str, Any] = Field(..., description="Changed fields")
    context_record: dict[str, Any] | None = Field(
        None, description="The record as the caller sees it (mirrored-only members)"
    )


class TransferRequest(BaseModel):
    """Request to transfer a native member."""

    target_tenant_id: str = Field(..., description="Canonical tenant taking over the member")


class RecordChangeRequest(BaseModel):
    """A member change observed in a canonical tenant."""

    record_id: str = Field(..., description="Changed member id")
    old: dict[str, Any] | None = Field(None, description="State before the change")
    new: dict[str, Any] | None = Field(None, description="State after the change")
    wait: bool = Field(False, description="Propagate before responding")


class RecordResponse(BaseModel):
    """Single record response."""

    record: dict[str, Any]


class ChangeResponse(BaseModel):
    """Result of reporting a change."""

    queued: bool
    touched: int | None = None


class AccessResponse(BaseModel):
    """Result of an access check."""

    viewer_user_id: str
    owner_tenant_id: str
    permission: str
    allowed: bool


# --- Dependencies ---


def get_services(request: Request) -> MirrorServices:
    """Get services from app state."""
    return request.app.state.services


def get_actor(request: Request) -> str:
    """Get actor from header."""
    actor = request.headers.get("X-Actor")
    if not actor:
        raise HTTPException(status_code=401, detail="X-Actor header is required")
    return actor


# --- Record Routes ---


@router.post("/tenants/{tenant_id}/records/{kind}", response_model=RecordResponse, status_code=201)
async def add_record(
    tenant_id: str,
    kind: RecordKind,
    request: AddRecordRequest,
    services: MirrorServices = Depends(get_services),
    actor: str = Depends(get_actor),
):
    """
    Add a record in the caller's tenant.

    Non-native members are also written to their canonical tenant.
    """
    ctx = SyncContext(current_tenant_id=tenant_id, actor_uid=actor)
    record = await services.engine.add_record(
        kind, request.record, ctx, request.target_tenant_id, request.context_record
    )
    return RecordResponse(record=record)


@router.patch("/tenants/{tenant_id}/records/{kind}/{record_id}", response_model=RecordResponse)
async def update_record(
    tenant_id: str,
    kind: RecordKind,
    record_id: str,
    request: UpdateRecordRequest,
    services: MirrorServices = Depends(get_services),
    actor: str = Depends(get_actor),
):
    """Update a record, routing context-only fields to the override layer."""
    ctx = SyncContext(current_tenant_id=tenant_id, actor_uid=actor)
    record = await services.engine.update_record(
        kind, record_id, request.updates, ctx, request.context_record
    )
    return RecordResponse(record=record)


@router.delete("/tenants/{tenant_id}/records/{kind}/{record_id}")
async def delete_record(
    tenant_id: str,
    kind: RecordKind,
    record_id: str,
    services: MirrorServices = Depends(get_services),
    actor: str = Depends(get_actor),
):
    """Delete a record locally; deleted mirrors are excluded from fan-out."""
    ctx = SyncContext(current_tenant_id=tenant_id, actor_uid=actor)
    outcome = await services.engine.delete_record(kind, record_id, ctx)
    return outcome.to_dict()


@router.post("/tenants/{tenant_id}/members/{record_id}/transfer", response_model=RecordResponse)
async def transfer_member(
    tenant_id: str,
    record_id: str,
    request: TransferRequest,
    services: MirrorServices = Depends(get_services),
    actor: str = Depends(get_actor),
):
    """Transfer a native member to a canonical tenant."""
    ctx = SyncContext(current_tenant_id=tenant_id, actor_uid=actor)
    record = await services.engine.transfer_to_tenant(record_id, request.target_tenant_id, ctx)
    return RecordResponse(record=record)


@router.post("/tenants/{tenant_id}/changes", response_model=ChangeResponse, status_code=202)
async def report_change(
    tenant_id: str,
    request: RecordChangeRequest,
    services: MirrorServices = Depends(get_services),
):
    """
    Report a member change in a canonical tenant.

    Queued for the outbox worker unless wait is set.
    """
    if request.wait:
        touched = await services.engine.on_record_change(
            tenant_id, request.record_id, request.old, request.new
        )
        return ChangeResponse(queued=False, touched=touched)

    await services.engine.notify_record_change(tenant_id, request.record_id, request.old, request.new)
    return ChangeResponse(queued=services.outbox is not None)


@router.get("/tenants/{tenant_id}/view/members")
async def view_members(
    tenant_id: str,
    tag: str = Query(..., description="Classification tag of the aggregation context"),
    services: MirrorServices = Depends(get_services),
):
    """Members as the aggregation context sees them."""
    members = await services.view.members_for(tenant_id, tag)
    return {"items": members, "total": len(members)}


@router.post("/tenants/{tenant_id}/backfill")
async def backfill_tenant(
    tenant_id: str,
    services: MirrorServices = Depends(get_services),
):
    """Fan out every tagged member of a canonical tenant."""
    return (await services.backfill.backfill_tenant(tenant_id)).to_dict()


@router.post("/tenants/{tenant_id}/pull")
async def pull_tag(
    tenant_id: str,
    tag: str = Query(..., description="Classification tag"),
    services: MirrorServices = Depends(get_services),
):
    """Mirror every canonical member with the tag into this aggregation tenant."""
    return (await services.backfill.pull_tag_into(tenant_id, tag)).to_dict()


# --- Directory Routes ---


@router.post("/invitations/{invite_id}/accept")
async def accept_invitation(
    invite_id: str,
    services: MirrorServices = Depends(get_services),
    actor: str = Depends(get_actor),
):
    """Accept an invitation as the acting user."""
    invite = await services.invitations.accept(invite_id, actor)
    return {"id": invite.id, **invite.to_dict()}


@router.get("/access/{owner_tenant_id}", response_model=AccessResponse)
async def check_access(
    owner_tenant_id: str,
    permission: Permission = Query(Permission.READ_ONLY, description="Required permission"),
    services: MirrorServices = Depends(get_services),
    actor: str = Depends(get_actor),
):
    """Check whether the acting user may view another tenant."""
    allowed = await services.access.has_access(actor, owner_tenant_id, permission)
    return AccessResponse(
        viewer_user_id=actor,
        owner_tenant_id=owner_tenant_id,
        permission=permission.value,
        allowed=allowed,
    )


# --- Repair Routes ---


@router.post("/repairs/{job}")
async def run_repair(
    job: str,
    dry_run: bool = Query(False, description="Report findings without writing"),
    services: MirrorServices = Depends(get_services),
):
    """Run a reconciliation job and return its result."""
    if job not in JOBS:
        raise HTTPException(status_code=404, detail=f"Unknown repair job: {job}")
    result = await services.job(job).run(dry_run=dry_run)
    return result.to_dict()


@router.get("/stats")
async def stats(services: MirrorServices = Depends(get_services)):
    """Engine and outbox statistics."""
    return {
        "engine": services.engine.stats,
        "outbox": services.outbox.stats if services.outbox else None,
    }
