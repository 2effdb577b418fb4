"""
Unit tests for tenant directory resolution.

Tests cover:
- Aggregation tenant discovery, fallback and deduplication
- Canonical tenant selection
- Canonical tenants holding tagged members
- Request coalescing
"""

import asyncio

import pytest

from tenancy.mirror_server.directory import RequestCoalescer, TenantDirectoryResolver
from tenancy.mirror_server.models import UserProfile


class TestAggregationTenants:
    """Tests for find_aggregation_tenants_for."""

    @pytest.fixture
    def resolver(self, store):
        return TenantDirectoryResolver(store)

    @pytest.mark.asyncio
    async def test_finds_operators_for_tag(self, resolver, seed):
        await seed.operator("op1", "Choir", "agg-choir")
        await seed.operator("op2", "Ushers", "agg-ushers")
        await seed.user("u1", tenant_id="tenant-a", classification_tag="Choir")

        assert await resolver.find_aggregation_tenants_for("Choir") == ["agg-choir"]

    @pytest.mark.asyncio
    async def test_deduplicates(self, resolver, seed):
        await seed.operator("op1", "Choir", "agg-choir")
        await seed.operator("op2", "Choir", "agg-choir")
        await seed.operator("op3", "Choir", "agg-choir-2")

        assert sorted(await resolver.find_aggregation_tenants_for("Choir")) == [
            "agg-choir",
            "agg-choir-2",
        ]

    @pytest.mark.asyncio
    async def test_falls_back_to_tenant_id(self, resolver, seed):
        await seed.user("op1", is_aggregation_operator=True, classification_tag="Choir", tenant_id="t-op")

        assert await resolver.find_aggregation_tenants_for("Choir") == ["t-op"]

    @pytest.mark.asyncio
    async def test_operator_without_tenant_is_skipped(self, resolver, seed):
        await seed.user("op1", is_aggregation_operator=True, classification_tag="Choir")

        assert await resolver.find_aggregation_tenants_for("Choir") == []

    @pytest.mark.asyncio
    async def test_unknown_or_empty_tag(self, resolver, seed):
        await seed.operator("op1", "Choir", "agg-choir")

        assert await resolver.find_aggregation_tenants_for("Nobody") == []
        assert await resolver.find_aggregation_tenants_for("") == []
        assert await resolver.find_aggregation_tenants_for(None) == []


class TestCanonicalTenant:
    """Tests for canonical_tenant_for and get_profile."""

    @pytest.fixture
    def resolver(self, store):
        return TenantDirectoryResolver(store)

    def test_prefers_default_tenant(self, resolver):
        profile = UserProfile(uid="u1", tenant_id="agg", default_tenant_id="home")
        assert resolver.canonical_tenant_for(profile) == "home"

    def test_falls_back_to_current_tenant(self, resolver):
        assert resolver.canonical_tenant_for(UserProfile(uid="u1", tenant_id="t1")) == "t1"

    def test_none_when_unresolvable(self, resolver):
        assert resolver.canonical_tenant_for(UserProfile(uid="u1")) is None
        assert resolver.canonical_tenant_for(None) is None

    @pytest.mark.asyncio
    async def test_get_profile(self, resolver, seed):
        await seed.user("u1", email="a@example.com", tenant_id="t1", bacenta="north")

        profile = await resolver.get_profile("u1")

        assert profile.email == "a@example.com"
        assert profile.tenant_id == "t1"
        assert profile.extra == {"bacenta": "north"}
        assert await resolver.get_profile("missing") is None


class TestCanonicalTenantsWithTag:
    """Tests for find_canonical_tenants_with."""

    @pytest.fixture
    def resolver(self, store):
        return TenantDirectoryResolver(store)

    @pytest.mark.asyncio
    async def test_finds_tenants_with_active_native_members(self, resolver, seed):
        await seed.user("ua", tenant_id="tenant-a")
        await seed.user("ub", default_tenant_id="tenant-b", tenant_id="agg")
        await seed.user("uc", tenant_id="tenant-c")
        await seed.operator("op", "Choir", "agg")
        await seed.member("tenant-a", "m1", classification_tag="Choir")
        await seed.member("tenant-b", "m2", classification_tag="Choir")
        await seed.member("tenant-c", "m3", classification_tag="Choir", is_active=False)
        await seed.member("agg", "m1", classification_tag="Choir", source_tenant_id="tenant-a")

        assert sorted(await resolver.find_canonical_tenants_with("Choir")) == ["tenant-a", "tenant-b"]

    @pytest.mark.asyncio
    async def test_mirror_copies_do_not_count(self, resolver, seed):
        await seed.user("ua", tenant_id="tenant-a")
        await seed.member("tenant-a", "m9", classification_tag="Choir", source_tenant_id="tenant-z")

        assert await resolver.find_canonical_tenants_with("Choir") == []


class TestRequestCoalescer:
    """Tests for RequestCoalescer."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_execution(self):
        coalescer = RequestCoalescer()
        calls = 0
        release = asyncio.Event()

        async def scan():
            nonlocal calls
            calls += 1
            await release.wait()
            return ["agg"]

        tasks = [asyncio.create_task(coalescer.run("Choir", scan)) for _ in range(3)]
        await asyncio.sleep(0)
        assert coalescer.in_flight == 1
        release.set()

        assert await asyncio.gather(*tasks) == [["agg"]] * 3
        assert calls == 1
        assert coalescer.stats["coalesced_count"] == 2
        assert coalescer.in_flight == 0

    @pytest.mark.asyncio
    async def test_results_are_not_cached(self):
        coalescer = RequestCoalescer()
        calls = 0

        async def scan():
            nonlocal calls
            calls += 1
            return calls

        assert await coalescer.run("k", scan) == 1
        assert await coalescer.run("k", scan) == 2

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter(self):
        coalescer = RequestCoalescer()
        release = asyncio.Event()

        async def scan():
            await release.wait()
            raise RuntimeError("directory unavailable")

        tasks = [asyncio.create_task(coalescer.run("k", scan)) for _ in range(2)]
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, RuntimeError) for r in results)
        assert coalescer.in_flight == 0

    @pytest.mark.asyncio
    async def test_resolver_coalesces_scans(self, store, seed):
        await seed.operator("op1", "Choir", "agg-choir")
        coalescer = RequestCoalescer()
        resolver = TenantDirectoryResolver(store, coalescer)

        results = await asyncio.gather(
            *(resolver.find_aggregation_tenants_for("Choir") for _ in range(4))
        )

        assert results == [["agg-choir"]] * 4
        assert coalescer.in_flight == 0
