"""
Shared fixtures for mirror server tests.

Provides an in-memory store, the wired components and a Seeder for writing
profiles, members and invitations directly into the store.
"""

from typing import Any

import pytest

from tenancy.mirror_server.config import ServerConfig, StoreBackend, SyncConfig
from tenancy.mirror_server.models import INVITATIONS, TENANTS, USERS
from tenancy.mirror_server.services import MirrorServices, build_services
from tenancy.mirror_server.store import InMemoryDocumentStore


class Seeder:
    """Writes fixture documents straight into a store."""

    def __init__(self, store):
        self.store = store

    async def user(self, uid: str, **fields: Any) -> None:
        await self.store.set(None, USERS, uid, {"uid": uid, **fields})

    async def operator(self, uid: str, tag: str, aggregation_tenant_id: str, **fields: Any) -> None:
        """An aggregation operator grouping by tag in aggregation_tenant_id."""
        await self.user(
            uid,
            is_aggregation_operator=True,
            classification_tag=tag,
            aggregation_tenant_id=aggregation_tenant_id,
            tenant_id=fields.pop("tenant_id", aggregation_tenant_id),
            **fields,
        )

    async def tenant(self, tenant_id: str, name: str) -> None:
        await self.store.set(None, TENANTS, tenant_id, {"name": name})

    async def member(self, tenant_id: str, record_id: str, **fields: Any) -> None:
        await self.store.set(tenant_id, "members", record_id, fields)

    async def invite(self, invite_id: str, **fields: Any) -> None:
        data = {"status": "accepted", "intended_role": "leader", **fields}
        await self.store.set(None, INVITATIONS, invite_id, data)


@pytest.fixture
def store():
    """Fresh in-memory store."""
    return InMemoryDocumentStore()


@pytest.fixture
def seed(store):
    """Seeder bound to the store."""
    return Seeder(store)


@pytest.fixture
def config():
    """Server config using the memory backend and a small fan-out batch."""
    cfg = ServerConfig(store_backend=StoreBackend.MEMORY)
    cfg.sync = SyncConfig(batch_size=2)
    return cfg


@pytest.fixture
def services(config, store) -> MirrorServices:
    """Components wired around the in-memory store."""
    return build_services(config, store=store)
