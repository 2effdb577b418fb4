"""
Integration tests for backfill, tag pulls and the aggregated view.

Tests cover:
- Backfilling a canonical tenant's tagged members
- Pulling a tag into one aggregation tenant
- Exclusions and inactive members in both jobs
- The aggregated member view with overrides
"""

import pytest


@pytest.fixture
async def directory(seed):
    """Choir aggregation tenants AG1 and AG2 and two canonical tenants."""
    await seed.operator("op1", "Choir", "AG1")
    await seed.operator("op2", "Choir", "AG2")
    await seed.user("leader1", tenant_id="C1")
    await seed.user("leader2", default_tenant_id="C2", tenant_id="AG1")
    await seed.member("C1", "m1", first_name="Ama", classification_tag="Choir")
    await seed.member("C1", "m2", first_name="Kofi", classification_tag="Choir", is_active=False)
    await seed.member("C1", "m3", first_name="Yaw")
    await seed.member("C2", "m4", first_name="Esi", classification_tag="Choir")
    await seed.member("C2", "m5", first_name="Abena", classification_tag="Ushers")


class TestBackfill:
    """Tests for BackfillJob.backfill_tenant."""

    @pytest.mark.asyncio
    async def test_backfills_active_tagged_members(self, services, store, directory):
        result = await services.backfill.backfill_tenant("C1")

        assert result.scanned == 3
        assert result.skipped == 2
        assert result.touched == 2
        assert list(store.snapshot("AG1", "members")) == ["m1"]
        assert list(store.snapshot("AG2", "members")) == ["m1"]

    @pytest.mark.asyncio
    async def test_backfill_honours_exclusions(self, services, store, directory):
        await services.exclusions.exclude("AG1", "m1", "C1")

        result = await services.backfill.backfill_tenant("C1")

        assert result.touched == 1
        assert store.document_count("AG1", "members") == 0

    @pytest.mark.asyncio
    async def test_backfill_records_errors(self, services, store, directory):
        store.fail_writes_to("AG1")
        store.fail_writes_to("AG2")

        result = await services.backfill.backfill_tenant("C1")

        assert result.touched == 0
        assert len(result.errors) == 1
        assert result.errors[0].startswith("m1:")


class TestPullTag:
    """Tests for BackfillJob.pull_tag_into."""

    @pytest.mark.asyncio
    async def test_pulls_every_canonical_member_with_tag(self, services, store, directory):
        result = await services.backfill.pull_tag_into("AG1", "Choir")

        assert result.touched == 2
        mirrors = store.snapshot("AG1", "members")
        assert set(mirrors) == {"m1", "m4"}
        assert mirrors["m4"]["source_tenant_id"] == "C2"
        assert store.document_count("AG2", "members") == 0

    @pytest.mark.asyncio
    async def test_pull_skips_excluded_and_inactive(self, services, store, directory):
        await services.exclusions.exclude("AG1", "m4", "C2")

        result = await services.backfill.pull_tag_into("AG1", "Choir")

        assert result.touched == 1
        assert result.skipped == 2
        assert set(store.snapshot("AG1", "members")) == {"m1"}

    @pytest.mark.asyncio
    async def test_pull_reports_batch_failures(self, services, store, directory):
        store.fail_writes_to("AG1")

        result = await services.backfill.pull_tag_into("AG1", "Choir")

        assert result.touched == 0
        assert result.errors


class TestMirrorView:
    """Tests for MirrorView.members_for."""

    @pytest.mark.asyncio
    async def test_view_combines_native_and_canonical(self, services, seed, directory):
        await seed.member("AG1", "n1", first_name="Native", is_native=True)

        members = await services.view.members_for("AG1", "Choir")

        by_id = {m["id"]: m for m in members}
        assert set(by_id) == {"n1", "m1", "m4"}
        assert by_id["m1"]["source_tenant_id"] == "C1"
        assert by_id["m1"]["is_native"] is False

    @pytest.mark.asyncio
    async def test_canonical_copy_wins_over_stale_mirror(self, services, seed, directory):
        await seed.member(
            "AG1", "m1", first_name="Stale", classification_tag="Choir", source_tenant_id="C1"
        )

        members = await services.view.members_for("AG1", "Choir")

        assert {m["id"]: m for m in members}["m1"]["first_name"] == "Ama"

    @pytest.mark.asyncio
    async def test_view_hides_excluded_and_applies_overrides(self, services, directory):
        await services.exclusions.exclude("AG1", "m4", "C2")
        await services.overrides.set("AG1", "m1", "C1", {"ministry_position": "Soprano lead"})

        members = await services.view.members_for("AG1", "Choir")

        assert [m["id"] for m in members] == ["m1"]
        assert members[0]["ministry_position"] == "Soprano lead"
