"""
Mirror sync engine.

This module decides, for every write made from an aggregation context,
where the data has to land:
- Native records stay in the aggregation tenant
- Mirrored records are forwarded to their canonical tenant
- Context-only fields (frozen, role, position) go to the override layer
- Deleted mirrors are excluded so fan-out never brings them back

It also reacts to canonical-side changes (on_record_change), fanning
tagged members out to every aggregation tenant that groups by the tag and
removing mirrors when the tag is cleared, changed or the member deactivated.

Invariants:
    - The primary write of an operation either succeeds or raises
    - Downstream override, exclusion, cleanup and chained writes never
      fail the operation; they are logged and counted
    - Deleting a mirror never deletes the canonical record
    - Override fields are never forwarded to a canonical record
    - Fan-out skips excluded (record, canonical tenant) pairs and the
      source tenant itself
    - Re-running a fan-out for the same state converges to the same documents

How to change safely:
    - New record kinds need a collection and an owning-member field in models
    - Keep every fan-out write a merge, concurrent fan-outs rely on it
    - Test new paths with store failure injection, not only the happy path
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass
from typing import Any

from ..config import SyncConfig
from ..directory import TenantDirectoryResolver
from ..errors import InvalidStateError, NotFoundError, PrimaryWriteError, PropagationFailure
from ..models import (
    ENGINE_FIELDS,
    OVERRIDE_FIELDS,
    RecordKind,
    SyncContext,
    SyncDirection,
    SyncMetadata,
    UserProfile,
    is_active,
    is_mirror_copy,
    sync_direction_of,
    utc_now,
)
from ..overlay import ExclusionRegistry, OverrideStore
from ..store import Document, DocumentStore
from .batching import FanoutBatcher
from .outbox import PropagationOutbox

logger = logging.getLogger(__name__)

MEMBERS = RecordKind.MEMBER.collection


@dataclass
class DeleteOutcome:
    """What a delete touched besides the record itself.

    Attributes:
        record_id: Deleted record
        excluded: An exclusion was registered for the mirror
        override_cleared: The mirror's override was removed
        children_removed: Attendance and confirmation rows removed
        propagated: The delete was also applied in the source tenant
    """

    record_id: str
    excluded: bool = False
    override_cleared: bool = False
    children_removed: int = 0
    propagated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "excluded": self.excluded,
            "override_cleared": self.override_cleared,
            "children_removed": self.children_removed,
            "propagated": self.propagated,
        }


def _without(fields: dict[str, Any], names: Iterable[str]) -> dict[str, Any]:
    skip = set(names)
    return {k: v for k, v in fields.items() if k not in skip}


class MirrorSyncEngine:
    """Routes aggregation-context writes and fans out canonical changes.

    Attributes:
        store: Document store
        resolver: Tenant directory resolver
        overrides: Override store
        exclusions: Exclusion registry
        config: Sync configuration
        outbox: Optional outbox for canonical-side propagation

    Example:
        >>> engine = MirrorSyncEngine(store, resolver, overrides, exclusions)
        >>> ctx = SyncContext(current_tenant_id="agg_1", actor_uid="u1")
        >>> member = await engine.add_record(RecordKind.MEMBER, {"first_name": "Ama"}, ctx)
    """

    def __init__(
        self,
        store: DocumentStore,
        resolver: TenantDirectoryResolver,
        overrides: OverrideStore,
        exclusions: ExclusionRegistry,
        config: SyncConfig | None = None,
        outbox: PropagationOutbox | None = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.overrides = overrides
        self.exclusions = exclusions
        self.config = config or SyncConfig()
        self.outbox = outbox
        self._quiet_failures = 0
        self._fanout_writes = 0
        self._removed_mirrors = 0

    # ------------------------------------------------------------------
    # Write helpers
    # ------------------------------------------------------------------

    def _stamp(self, source_tenant_id: str, actor: str, direction: SyncDirection) -> dict[str, Any]:
        return SyncMetadata(
            source_tenant_id=source_tenant_id,
            synced_at=utc_now(),
            synced_by=actor,
            direction=direction,
        ).to_dict()

    async def _profile_for(self, ctx: SyncContext) -> UserProfile | None:
        if ctx.profile is not None:
            return ctx.profile
        return await self.resolver.get_profile(ctx.actor_uid)

    async def _primary_write(
        self,
        tenant_id: str,
        collection: str,
        record_id: str,
        fields: dict[str, Any],
        operation: str,
    ) -> Document:
        try:
            return await self.store.set(tenant_id, collection, record_id, fields, merge=True)
        except Exception as e:
            logger.error(
                "Primary write failed",
                extra={"operation": operation, "tenant_id": tenant_id, "record_id": record_id, "error": str(e)},
            )
            raise PrimaryWriteError(
                f"{operation} failed for {collection}/{record_id}: {e}",
                record_id=record_id,
                tenant_id=tenant_id,
                operation=operation,
            ) from e

    async def _best_effort(self, operation: str, awaitable: Awaitable[Any], **context: Any) -> bool:
        try:
            await awaitable
        except Exception as e:
            self._quiet_failures += 1
            logger.warning(
                f"{operation} failed",
                extra={"operation": operation, "error": str(e), **context},
            )
            return False
        return True

    async def _forward(
        self,
        target_tenant_id: str,
        collection: str,
        record_id: str,
        fields: dict[str, Any],
        ctx: SyncContext,
        operation: str,
        surface: bool,
        require_existing: bool = False,
    ) -> bool:
        """Write aggregation-side data into its canonical tenant.

        With surface=True a failure raises PropagationFailure, otherwise it is
        logged and False returned.
        """
        try:
            if require_existing:
                existing = await self.store.get(target_tenant_id, collection, record_id)
                if existing is None:
                    raise NotFoundError(
                        f"Canonical record {collection}/{record_id} not found in {target_tenant_id}",
                        collection,
                        record_id,
                    )
            payload = _without(fields, ENGINE_FIELDS - {"created_at"})
            payload["last_updated"] = utc_now()
            payload["sync_metadata"] = self._stamp(
                ctx.current_tenant_id, ctx.actor_uid, SyncDirection.TO_CANONICAL
            )
            await self.store.set(target_tenant_id, collection, record_id, payload, merge=True)
        except Exception as e:
            if surface:
                if isinstance(e, NotFoundError):
                    raise
                raise PropagationFailure(
                    f"{operation} could not reach {target_tenant_id}: {e}",
                    record_id=record_id,
                    target_tenant_id=target_tenant_id,
                    operation=operation,
                ) from e
            self._quiet_failures += 1
            logger.warning(
                "Propagation failed",
                extra={
                    "operation": operation,
                    "record_id": record_id,
                    "target_tenant_id": target_tenant_id,
                    "error": str(e),
                },
            )
            return False

        logger.debug(
            "Propagated record",
            extra={"operation": operation, "record_id": record_id, "target_tenant_id": target_tenant_id},
        )
        return True

    # ------------------------------------------------------------------
    # Add
    # ------------------------------------------------------------------

    async def add_record(
        self,
        kind: RecordKind,
        record: dict[str, Any],
        ctx: SyncContext,
        target_tenant_id: str | None = None,
        context_record: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Create a record in the caller's tenant and propagate it.

        Args:
            kind: Record kind
            record: Field values, optionally with ``id``
            ctx: Caller context
            target_tenant_id: Members only; canonical tenant the member belongs to.
                None creates a native member.
            context_record: Activity kinds only; the owning member as the caller
                sees it (needed when the member is only visible through a mirror)

        Returns:
            The stored record including ``id``

        Raises:
            PrimaryWriteError: The local write failed
            PropagationFailure: A non-native member was stored locally but its
                canonical copy could not be written
        """
        if kind is RecordKind.MEMBER:
            return await self._add_member(record, ctx, target_tenant_id)
        return await self._add_activity(kind, record, ctx, context_record)

    async def _add_member(
        self, record: dict[str, Any], ctx: SyncContext, target_tenant_id: str | None
    ) -> dict[str, Any]:
        record_id = record.get("id") or str(uuid.uuid4())
        now = utc_now()
        is_native = not target_tenant_id

        fields = _without(record, ENGINE_FIELDS)
        fields.update(is_native=is_native, created_at=record.get("created_at") or now, last_updated=now)
        if not is_native:
            fields["source_tenant_id"] = target_tenant_id

        doc = await self._primary_write(ctx.current_tenant_id, MEMBERS, record_id, fields, "add_member")
        logger.info(
            "Added member",
            extra={
                "tenant_id": ctx.current_tenant_id,
                "record_id": record_id,
                "is_native": is_native,
                "target_tenant_id": target_tenant_id,
            },
        )

        if target_tenant_id and target_tenant_id != ctx.current_tenant_id:
            canonical = _without(fields, OVERRIDE_FIELDS)
            canonical["created_at"] = fields["created_at"]
            await self._forward(target_tenant_id, MEMBERS, record_id, canonical, ctx, "add_member", surface=True)

        return doc.to_record()

    def _activity_id(self, kind: RecordKind, fields: dict[str, Any]) -> str:
        if kind is RecordKind.ATTENDANCE and fields.get("member_id") and fields.get("date"):
            return f"{fields['member_id']}_{fields['date']}"
        return str(uuid.uuid4())

    async def _activity_target(
        self,
        kind: RecordKind,
        fields: dict[str, Any],
        ctx: SyncContext,
        context_record: dict[str, Any] | None = None,
    ) -> str | None:
        """The single tenant an activity record propagates to, if any.

        A member without a local copy is looked up in the tenant named by
        ``context_record``, then in the actor's canonical tenant.
        """
        current = ctx.current_tenant_id
        member_field = kind.member_field
        if member_field:
            member_id = fields.get(member_field)
            if not member_id:
                return None
            member = await self.store.get(current, MEMBERS, member_id)
            if member is not None:
                if member.fields.get("is_native"):
                    return None
                source = member.fields.get("source_tenant_id")
                return source if source and source != current else None
            return await self._mirrored_only_source(member_id, ctx, context_record)

        if kind is RecordKind.NEW_BELIEVER:
            target = self.resolver.canonical_tenant_for(await self._profile_for(ctx))
            return target if target and target != current else None
        return None

    async def _mirrored_only_source(
        self, member_id: str, ctx: SyncContext, context_record: dict[str, Any] | None
    ) -> str | None:
        current = ctx.current_tenant_id
        candidates = [(context_record or {}).get("source_tenant_id")]
        candidates.append(self.resolver.canonical_tenant_for(await self._profile_for(ctx)))
        for source in candidates:
            if not source or source == current:
                continue
            if await self.store.get(source, MEMBERS, member_id) is not None:
                return source
        return None

    async def _add_activity(
        self,
        kind: RecordKind,
        record: dict[str, Any],
        ctx: SyncContext,
        context_record: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        fields = _without(record, ENGINE_FIELDS)
        record_id = record.get("id") or self._activity_id(kind, fields)
        fields["last_updated"] = utc_now()

        doc = await self._primary_write(
            ctx.current_tenant_id, kind.collection, record_id, fields, f"add_{kind.value}"
        )

        target = await self._activity_target(kind, fields, ctx, context_record)
        if target:
            await self._forward(target, kind.collection, record_id, fields, ctx, f"add_{kind.value}", surface=False)
        return doc.to_record()

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update_record(
        self,
        kind: RecordKind,
        record_id: str,
        updates: dict[str, Any],
        ctx: SyncContext,
        context_record: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Update a record from the caller's tenant.

        Args:
            kind: Record kind
            record_id: Record to update
            updates: Changed fields
            ctx: Caller context
            context_record: Members only; the record as the caller sees it
                (needed when the record is only visible through a mirror)

        Raises:
            NotFoundError: No local record and no canonical record to forward to
            PrimaryWriteError: The local (or, for mirrored-only records, the
                override) write failed
            PropagationFailure: A mirrored-only record's canonical write failed
        """
        if kind is RecordKind.MEMBER:
            return await self._update_member(record_id, updates, ctx, context_record)

        local = await self.store.get(ctx.current_tenant_id, kind.collection, record_id)
        if local is None:
            raise NotFoundError(f"{kind.value} {record_id} not found", kind.value, record_id)

        changes = _without(updates, ENGINE_FIELDS)
        changes["last_updated"] = utc_now()
        doc = await self._primary_write(
            ctx.current_tenant_id, kind.collection, record_id, changes, f"update_{kind.value}"
        )

        # Attendance edits stay local
        if kind is not RecordKind.ATTENDANCE:
            target = await self._activity_target(kind, doc.fields, ctx)
            if target:
                await self._forward(
                    target, kind.collection, record_id, changes, ctx, f"update_{kind.value}",
                    surface=False, require_existing=True,
                )
        return doc.to_record()

    async def _update_member(
        self,
        record_id: str,
        updates: dict[str, Any],
        ctx: SyncContext,
        context_record: dict[str, Any] | None,
    ) -> dict[str, Any]:
        current = ctx.current_tenant_id
        changes = _without(updates, ENGINE_FIELDS)
        override_values = {k: changes[k] for k in OVERRIDE_FIELDS if k in changes}
        forward = _without(changes, OVERRIDE_FIELDS)
        context_source = (context_record or {}).get("source_tenant_id")

        local = await self.store.get(current, MEMBERS, record_id)
        if local is None:
            source = context_source or self.resolver.canonical_tenant_for(await self._profile_for(ctx))
            if not source or source == current:
                raise NotFoundError(f"member {record_id} not found in {current}", "member", record_id)
            canonical = await self.store.get(source, MEMBERS, record_id)
            if canonical is None:
                raise NotFoundError(f"member {record_id} not found in {source}", "member", record_id)

            if override_values:
                try:
                    await self.overrides.set(current, record_id, source, override_values)
                except Exception as e:
                    raise PrimaryWriteError(
                        f"override write failed for {record_id}: {e}",
                        record_id=record_id,
                        tenant_id=current,
                        operation="update_member_override",
                    ) from e
            if forward:
                await self._forward(source, MEMBERS, record_id, forward, ctx, "update_member", surface=True)

            logger.info(
                "Updated mirrored-only member",
                extra={
                    "tenant_id": current,
                    "record_id": record_id,
                    "source_tenant_id": source,
                    "override_fields": sorted(override_values),
                },
            )
            merged = canonical.to_record()
            merged.update(forward)
            merged.update(override_values)
            merged["source_tenant_id"] = source
            return merged

        changes["last_updated"] = utc_now()
        doc = await self._primary_write(current, MEMBERS, record_id, changes, "update_member")

        source = local.fields.get("source_tenant_id") or context_source
        if override_values:
            await self._best_effort(
                "store_override",
                self.overrides.set(current, record_id, source or current, override_values),
                tenant_id=current,
                record_id=record_id,
            )

        if source and source != current and not local.fields.get("is_native") and forward:
            await self._forward(
                source, MEMBERS, record_id, forward, ctx, "chained_update",
                surface=False, require_existing=True,
            )
        return doc.to_record()

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_record(self, kind: RecordKind, record_id: str, ctx: SyncContext) -> DeleteOutcome:
        """Delete a record from the caller's tenant.

        Canonical records in other tenants are never deleted by this call.

        Raises:
            NotFoundError: The record doesn't exist locally
            PrimaryWriteError: The local delete failed
        """
        current = ctx.current_tenant_id
        local = await self.store.get(current, kind.collection, record_id)
        if local is None:
            raise NotFoundError(f"{kind.value} {record_id} not found in {current}", kind.value, record_id)

        # Resolve before the owning member might disappear
        target = None
        if kind is RecordKind.ATTENDANCE:
            target = await self._activity_target(kind, local.fields, ctx)

        try:
            await self.store.delete(current, kind.collection, record_id)
        except Exception as e:
            raise PrimaryWriteError(
                f"delete failed for {kind.collection}/{record_id}: {e}",
                record_id=record_id,
                tenant_id=current,
                operation=f"delete_{kind.value}",
            ) from e

        outcome = DeleteOutcome(record_id=record_id)
        if kind is RecordKind.MEMBER:
            await self._after_member_delete(local, ctx, outcome)
        elif target:
            outcome.propagated = await self._best_effort(
                "delete_attendance_in_source",
                self.store.delete(target, kind.collection, record_id),
                record_id=record_id,
                target_tenant_id=target,
            )

        logger.info(
            f"Deleted {kind.value}",
            extra={"tenant_id": current, **outcome.to_dict()},
        )
        return outcome

    async def _after_member_delete(self, local: Document, ctx: SyncContext, outcome: DeleteOutcome) -> None:
        current = ctx.current_tenant_id
        record_id = local.doc_id
        source = local.fields.get("source_tenant_id")

        if source and source != current and not local.fields.get("is_native"):
            outcome.excluded = await self._best_effort(
                "register_exclusion",
                self.exclusions.exclude(current, record_id, source),
                tenant_id=current,
                record_id=record_id,
            )
            outcome.override_cleared = await self._best_effort(
                "clear_override",
                self.overrides.clear(current, record_id, source),
                tenant_id=current,
                record_id=record_id,
            )

        for child in (RecordKind.ATTENDANCE, RecordKind.CONFIRMATION):
            try:
                rows = await self.store.query(current, child.collection, "member_id", "==", record_id)
            except Exception as e:
                self._quiet_failures += 1
                logger.warning(
                    "Child lookup failed",
                    extra={"collection": child.collection, "record_id": record_id, "error": str(e)},
                )
                continue
            for row in rows:
                removed = await self._best_effort(
                    "delete_child_record",
                    self.store.delete(current, child.collection, row.doc_id),
                    collection=child.collection,
                    record_id=row.doc_id,
                )
                if removed:
                    outcome.children_removed += 1

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------

    async def transfer_to_tenant(self, record_id: str, target_tenant_id: str, ctx: SyncContext) -> dict[str, Any]:
        """Hand a native member over to a canonical tenant.

        Raises:
            NotFoundError: The member doesn't exist locally
            InvalidStateError: The member is not native (nothing is written)
            PropagationFailure: The canonical copy failed; the member stays native
            PrimaryWriteError: The canonical copy exists but the local flip failed;
                retrying the transfer completes it
        """
        current = ctx.current_tenant_id
        local = await self.store.get(current, MEMBERS, record_id)
        if local is None:
            raise NotFoundError(f"member {record_id} not found in {current}", "member", record_id)
        if not local.fields.get("is_native"):
            raise InvalidStateError(
                f"member {record_id} is mirrored from {local.fields.get('source_tenant_id')}; only native members can be transferred",
                resource_id=record_id,
                state={"is_native": local.fields.get("is_native", False)},
            )
        if target_tenant_id == current:
            raise InvalidStateError(
                f"member {record_id} already lives in {current}", resource_id=record_id
            )

        canonical = _without(local.fields, (*OVERRIDE_FIELDS, "target_tenant_id"))
        await self._forward(target_tenant_id, MEMBERS, record_id, canonical, ctx, "transfer_member", surface=True)

        updates = {
            "is_native": False,
            "source_tenant_id": target_tenant_id,
            "target_tenant_id": target_tenant_id,
            "last_updated": utc_now(),
        }
        doc = await self._primary_write(current, MEMBERS, record_id, updates, "transfer_member")

        logger.info(
            "Transferred member",
            extra={"tenant_id": current, "record_id": record_id, "target_tenant_id": target_tenant_id},
        )
        return doc.to_record()

    # ------------------------------------------------------------------
    # Canonical-side propagation
    # ------------------------------------------------------------------

    def mirror_payload(self, source_tenant_id: str, fields: dict[str, Any], actor: str | None = None) -> dict[str, Any]:
        """Copy of a canonical member as written into aggregation tenants."""
        payload = _without(fields, ENGINE_FIELDS)
        for name in self.config.structural_fields:
            payload[name] = ""
        payload.update(
            is_native=False,
            source_tenant_id=source_tenant_id,
            last_updated=utc_now(),
            sync_metadata=self._stamp(
                source_tenant_id, actor or self.config.system_actor, SyncDirection.TO_AGGREGATION
            ),
        )
        return payload

    async def fan_out_member(
        self,
        source_tenant_id: str,
        record_id: str,
        fields: dict[str, Any],
        actor: str | None = None,
    ) -> int:
        """Upsert a canonical member into every aggregation tenant for its tag.

        Returns:
            Number of aggregation tenants written

        Raises:
            BatchPartialFailure: Every batch failed
        """
        tag = fields.get("classification_tag")
        tenants = await self.resolver.find_aggregation_tenants_for(tag)
        payload = self.mirror_payload(source_tenant_id, fields, actor)

        batcher = FanoutBatcher(self.store, self.config.batch_size, operation="fan_out_member")
        skipped = 0
        for tenant_id in tenants:
            if tenant_id == source_tenant_id:
                continue
            if await self.exclusions.is_excluded(tenant_id, record_id, source_tenant_id):
                skipped += 1
                continue
            await batcher.set(tenant_id, MEMBERS, record_id, payload, merge=True)
        outcome = await batcher.finish()

        self._fanout_writes += outcome.succeeded
        logger.debug(
            "Fanned out member",
            extra={
                "source_tenant_id": source_tenant_id,
                "record_id": record_id,
                "classification_tag": tag,
                "written": outcome.succeeded,
                "excluded": skipped,
            },
        )
        return outcome.succeeded

    async def remove_mirrors(
        self,
        source_tenant_id: str,
        record_id: str,
        tag: str | None,
        keep: Iterable[str] = (),
    ) -> int:
        """Delete a member's mirrors from aggregation tenants for a tag.

        Tenants in ``keep`` are left alone.
        """
        tenants = await self.resolver.find_aggregation_tenants_for(tag)
        kept = set(keep)

        batcher = FanoutBatcher(self.store, self.config.batch_size, operation="remove_mirrors")
        for tenant_id in tenants:
            if tenant_id == source_tenant_id or tenant_id in kept:
                continue
            await batcher.delete(tenant_id, MEMBERS, record_id)
        outcome = await batcher.finish()

        self._removed_mirrors += outcome.succeeded
        return outcome.succeeded

    async def on_record_change(
        self,
        tenant_id: str,
        record_id: str,
        old: dict[str, Any] | None,
        new: dict[str, Any] | None,
        actor: str | None = None,
    ) -> int:
        """React to a member change in a canonical tenant.

        Args:
            tenant_id: Tenant the change happened in
            record_id: Changed member
            old: State before the change (None for creates)
            new: State after the change (None for deletes)
            actor: Actor recorded on mirror writes

        Returns:
            Number of mirror documents written or removed
        """
        reference = new if new is not None else old
        if reference is None:
            return 0
        if is_mirror_copy(reference, tenant_id):
            return 0
        if sync_direction_of(new) is SyncDirection.TO_AGGREGATION:
            return 0

        old_tag = old.get("classification_tag") if old else None
        new_tag = new.get("classification_tag") if new else None

        # Aggregation tenants hold native records of their own; those never fan out
        for tag in {old_tag, new_tag} - {None, ""}:
            if tenant_id in await self.resolver.find_aggregation_tenants_for(tag):
                return 0

        if new is None:
            touched = await self.remove_mirrors(tenant_id, record_id, old_tag)
        elif not new_tag or not is_active(new):
            touched = await self.remove_mirrors(tenant_id, record_id, old_tag or new_tag)
        else:
            touched = await self.fan_out_member(tenant_id, record_id, new, actor)
            if old_tag and old_tag != new_tag:
                keep = await self.resolver.find_aggregation_tenants_for(new_tag)
                touched += await self.remove_mirrors(tenant_id, record_id, old_tag, keep=keep)

        logger.info(
            "Processed record change",
            extra={
                "tenant_id": tenant_id,
                "record_id": record_id,
                "old_tag": old_tag,
                "new_tag": new_tag,
                "touched": touched,
            },
        )
        return touched

    async def notify_record_change(
        self,
        tenant_id: str,
        record_id: str,
        old: dict[str, Any] | None,
        new: dict[str, Any] | None,
        actor: str | None = None,
    ) -> None:
        """Report a canonical change without waiting for its propagation.

        Uses the outbox when one is configured; otherwise propagates inline
        and logs failures.
        """
        if self.outbox is not None:
            await self.outbox.enqueue(
                "record_change",
                lambda: self.on_record_change(tenant_id, record_id, old, new, actor),
                tenant_id=tenant_id,
                record_id=record_id,
            )
            return
        await self._best_effort(
            "record_change",
            self.on_record_change(tenant_id, record_id, old, new, actor),
            tenant_id=tenant_id,
            record_id=record_id,
        )

    @property
    def stats(self) -> dict[str, Any]:
        """Get engine statistics."""
        return {
            "quiet_failures": self._quiet_failures,
            "fanout_writes": self._fanout_writes,
            "removed_mirrors": self._removed_mirrors,
        }
