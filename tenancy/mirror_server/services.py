"""
Component wiring for the mirror server.

Builds the store, directory, overlay, sync and repair components from a
ServerConfig so the HTTP app, the CLI and tests share one composition.
"""

from __future__ import annotations

from dataclasses import dataclass

from .config import ServerConfig
from .directory import CrossTenantAccessIndex, InvitationService, TenantDirectoryResolver
from .overlay import ExclusionRegistry, OverrideStore
from .reconcile import JOBS, ReconciliationJob
from .reconcile.jobs import LinkRepairJob
from .store import DocumentStore, create_document_store
from .sync import BackfillJob, MirrorSyncEngine, MirrorView, PropagationOutbox


@dataclass
class MirrorServices:
    """All long-lived components of a running server."""

    config: ServerConfig
    store: DocumentStore
    resolver: TenantDirectoryResolver
    access: CrossTenantAccessIndex
    invitations: InvitationService
    overrides: OverrideStore
    exclusions: ExclusionRegistry
    engine: MirrorSyncEngine
    backfill: BackfillJob
    view: MirrorView
    outbox: PropagationOutbox | None = None

    def job(self, name: str) -> ReconciliationJob:
        """Repair job sharing this server's components."""
        job_cls = JOBS[name]
        if job_cls is LinkRepairJob:
            return LinkRepairJob(self.store, self.resolver, self.access)
        return job_cls(self.store, self.resolver)


def build_services(config: ServerConfig, store: DocumentStore | None = None) -> MirrorServices:
    """Create every component for a configuration.

    Args:
        config: Server configuration
        store: Optional pre-built store (tests pass an in-memory one)
    """
    store = store or create_document_store(config)
    resolver = TenantDirectoryResolver(store)
    access = CrossTenantAccessIndex(store)
    overrides = OverrideStore(store)
    exclusions = ExclusionRegistry(store)
    outbox = PropagationOutbox(max_pending=config.outbox.max_pending) if config.outbox.enabled else None
    engine = MirrorSyncEngine(store, resolver, overrides, exclusions, config=config.sync, outbox=outbox)

    return MirrorServices(
        config=config,
        store=store,
        resolver=resolver,
        access=access,
        invitations=InvitationService(store, resolver, access),
        overrides=overrides,
        exclusions=exclusions,
        engine=engine,
        backfill=BackfillJob(store, resolver, engine, exclusions),
        view=MirrorView(store, resolver, overrides, exclusions),
        outbox=outbox,
    )
