"""
Integration tests for canonical-side change propagation.

Tests cover:
- Fan-out of tagged members into aggregation tenants
- Idempotent re-runs
- Classification changes, cleared tags, deactivation and deletes
- Exclusions blocking resurrection
- Changes that must not fan out
- Batch splitting and partial failure
- notify_record_change through the outbox and inline
"""

import pytest

from tenancy.mirror_server.config import SyncConfig
from tenancy.mirror_server.errors import BatchPartialFailure
from tenancy.mirror_server.sync import MirrorSyncEngine

CHOIR_MEMBER = {"first_name": "Ama", "classification_tag": "Choir", "bacenta_id": "b7"}


def _stable(snapshot):
    """Drop timestamps so two propagation passes can be compared."""
    return {
        doc_id: {k: v for k, v in fields.items() if k not in ("last_updated", "sync_metadata")}
        for doc_id, fields in snapshot.items()
    }


@pytest.fixture
def engine(services):
    return services.engine


@pytest.fixture
async def directory(seed):
    """Two Choir aggregation tenants, one Ushers tenant, canonical C1."""
    await seed.operator("op1", "Choir", "AG1")
    await seed.operator("op2", "Choir", "AG2")
    await seed.operator("op3", "Ushers", "AG3")
    await seed.user("leader1", tenant_id="C1")


class TestFanOut:
    """Tests for creates and updates of tagged members."""

    @pytest.mark.asyncio
    async def test_create_fans_out_to_matching_tenants(self, engine, store, directory):
        touched = await engine.on_record_change("C1", "m1", None, dict(CHOIR_MEMBER))

        assert touched == 2
        mirror = store.snapshot("AG1", "members")["m1"]
        assert mirror["is_native"] is False
        assert mirror["source_tenant_id"] == "C1"
        assert mirror["bacenta_id"] == ""
        assert mirror["first_name"] == "Ama"
        assert mirror["sync_metadata"]["direction"] == "normal-to-ministry"
        assert mirror["sync_metadata"]["synced_by"] == "system:mirror-sync"
        assert "m1" in store.snapshot("AG2", "members")
        assert store.document_count("AG3", "members") == 0

    @pytest.mark.asyncio
    async def test_actor_is_recorded(self, engine, store, directory):
        await engine.on_record_change("C1", "m1", None, dict(CHOIR_MEMBER), actor="leader1")

        assert store.snapshot("AG1", "members")["m1"]["sync_metadata"]["synced_by"] == "leader1"

    @pytest.mark.asyncio
    async def test_fan_out_is_idempotent(self, engine, store, directory):
        await engine.on_record_change("C1", "m1", None, dict(CHOIR_MEMBER))
        first = {t: _stable(store.snapshot(t, "members")) for t in ("AG1", "AG2", "AG3")}

        await engine.on_record_change("C1", "m1", None, dict(CHOIR_MEMBER))
        second = {t: _stable(store.snapshot(t, "members")) for t in ("AG1", "AG2", "AG3")}

        assert first == second

    @pytest.mark.asyncio
    async def test_structural_fields_reset_on_every_pass(self, engine, store, directory):
        await engine.on_record_change("C1", "m1", None, dict(CHOIR_MEMBER))
        await store.set("AG1", "members", "m1", {"bacenta_id": "local-cell"}, merge=True)

        updated = {**CHOIR_MEMBER, "first_name": "Ama K."}
        await engine.on_record_change("C1", "m1", dict(CHOIR_MEMBER), updated)

        mirror = store.snapshot("AG1", "members")["m1"]
        assert mirror["first_name"] == "Ama K."
        assert mirror["bacenta_id"] == ""

    @pytest.mark.asyncio
    async def test_unknown_tag_touches_nothing(self, engine, store, directory):
        touched = await engine.on_record_change(
            "C1", "m1", None, {"first_name": "Ama", "classification_tag": "Drummers"}
        )

        assert touched == 0


class TestRemoval:
    """Tests for classification changes, deactivation and deletes."""

    @pytest.mark.asyncio
    async def test_tag_change_moves_mirrors(self, engine, store, directory):
        await engine.on_record_change("C1", "m1", None, dict(CHOIR_MEMBER))
        ushers = {**CHOIR_MEMBER, "classification_tag": "Ushers"}

        await engine.on_record_change("C1", "m1", dict(CHOIR_MEMBER), ushers)

        assert "m1" in store.snapshot("AG3", "members")
        assert "m1" not in store.snapshot("AG1", "members")
        assert "m1" not in store.snapshot("AG2", "members")

    @pytest.mark.asyncio
    async def test_tenant_matching_both_tags_keeps_mirror(self, engine, store, seed, directory):
        await seed.operator("op4", "Ushers", "AG1")
        await engine.on_record_change("C1", "m1", None, dict(CHOIR_MEMBER))
        ushers = {**CHOIR_MEMBER, "classification_tag": "Ushers"}

        await engine.on_record_change("C1", "m1", dict(CHOIR_MEMBER), ushers)

        assert "m1" in store.snapshot("AG1", "members")
        assert "m1" in store.snapshot("AG3", "members")
        assert "m1" not in store.snapshot("AG2", "members")

    @pytest.mark.asyncio
    async def test_cleared_tag_removes_mirrors(self, engine, store, directory):
        await engine.on_record_change("C1", "m1", None, dict(CHOIR_MEMBER))

        touched = await engine.on_record_change(
            "C1", "m1", dict(CHOIR_MEMBER), {**CHOIR_MEMBER, "classification_tag": ""}
        )

        assert touched == 2
        assert store.document_count("AG1", "members") == 0
        assert store.document_count("AG2", "members") == 0

    @pytest.mark.asyncio
    async def test_deactivation_removes_mirrors(self, engine, store, directory):
        await engine.on_record_change("C1", "m1", None, dict(CHOIR_MEMBER))

        await engine.on_record_change(
            "C1", "m1", dict(CHOIR_MEMBER), {**CHOIR_MEMBER, "is_active": False}
        )

        assert store.document_count("AG1", "members") == 0
        assert engine.stats["removed_mirrors"] == 2

    @pytest.mark.asyncio
    async def test_delete_removes_mirrors(self, engine, store, directory):
        await engine.on_record_change("C1", "m1", None, dict(CHOIR_MEMBER))

        await engine.on_record_change("C1", "m1", dict(CHOIR_MEMBER), None)

        assert store.document_count("AG1", "members") == 0
        assert store.document_count("AG2", "members") == 0


class TestExclusionsAndSkips:
    """Tests for changes that must not write mirrors."""

    @pytest.mark.asyncio
    async def test_excluded_tenant_is_skipped(self, engine, services, store, directory):
        await services.exclusions.exclude("AG1", "m1", "C1")

        touched = await engine.on_record_change("C1", "m1", None, dict(CHOIR_MEMBER))

        assert touched == 1
        assert "m1" not in store.snapshot("AG1", "members")

    @pytest.mark.asyncio
    async def test_reactivation_keeps_exclusion(self, engine, services, store, directory):
        await services.exclusions.exclude("AG1", "m1", "C1")
        inactive = {**CHOIR_MEMBER, "is_active": False}

        await engine.on_record_change("C1", "m1", inactive, dict(CHOIR_MEMBER))

        assert "m1" not in store.snapshot("AG1", "members")
        assert "m1" in store.snapshot("AG2", "members")

    @pytest.mark.asyncio
    async def test_mirror_copy_change_is_ignored(self, engine, store, directory):
        mirror = {**CHOIR_MEMBER, "source_tenant_id": "C1", "is_native": False}

        assert await engine.on_record_change("AG1", "m1", None, mirror) == 0
        assert store.document_count("AG2", "members") == 0

    @pytest.mark.asyncio
    async def test_engine_written_copy_is_ignored(self, engine, store, directory):
        stamped = {**CHOIR_MEMBER, "sync_metadata": {"direction": "normal-to-ministry"}}

        assert await engine.on_record_change("C1", "m1", None, stamped) == 0

    @pytest.mark.asyncio
    async def test_aggregation_tenant_native_record_is_ignored(self, engine, store, directory):
        native = {**CHOIR_MEMBER, "is_native": True}

        assert await engine.on_record_change("AG1", "n1", None, native) == 0
        assert store.document_count("AG2", "members") == 0

    @pytest.mark.asyncio
    async def test_nothing_to_compare(self, engine):
        assert await engine.on_record_change("C1", "m1", None, None) == 0


class TestBatching:
    """Tests for fan-out batching (batch_size=2 in the test config)."""

    @pytest.mark.asyncio
    async def test_fan_out_spans_batches(self, engine, store, seed, directory):
        await seed.operator("op5", "Choir", "AG4")

        touched = await engine.on_record_change("C1", "m1", None, dict(CHOIR_MEMBER))

        assert touched == 3
        assert engine.stats["fanout_writes"] == 3

    @pytest.mark.asyncio
    async def test_failed_batch_is_counted_not_raised(self, engine, store, seed, directory):
        await seed.operator("op5", "Choir", "AG4")
        store.fail_writes_to("AG1")

        touched = await engine.on_record_change("C1", "m1", None, dict(CHOIR_MEMBER))

        assert touched == 1
        assert "m1" in store.snapshot("AG4", "members")
        assert "m1" not in store.snapshot("AG2", "members")

    @pytest.mark.asyncio
    async def test_all_batches_failing_raises(self, engine, store, directory):
        store.fail_writes_to("AG1")
        store.fail_writes_to("AG2")

        with pytest.raises(BatchPartialFailure):
            await engine.on_record_change("C1", "m1", None, dict(CHOIR_MEMBER))


class TestNotify:
    """Tests for notify_record_change."""

    @pytest.mark.asyncio
    async def test_queued_through_outbox(self, engine, services, store, directory):
        await engine.notify_record_change("C1", "m1", None, dict(CHOIR_MEMBER))

        assert services.outbox.pending == 1
        assert store.document_count("AG1", "members") == 0

        results = await services.outbox.drain()

        assert [r.result for r in results] == [2]
        assert "m1" in store.snapshot("AG1", "members")

    @pytest.mark.asyncio
    async def test_outbox_failure_is_logged_not_raised(self, engine, services, store, directory):
        store.fail_writes_to("AG1")
        store.fail_writes_to("AG2")
        await engine.notify_record_change("C1", "m1", None, dict(CHOIR_MEMBER))

        results = await services.outbox.drain()

        assert results[0].success is False
        assert services.outbox.stats["error_count"] == 1

    @pytest.mark.asyncio
    async def test_inline_without_outbox(self, services, store, directory):
        engine = MirrorSyncEngine(
            store,
            services.resolver,
            services.overrides,
            services.exclusions,
            config=SyncConfig(batch_size=2),
        )
        store.fail_writes_to("AG1")
        store.fail_writes_to("AG2")

        await engine.notify_record_change("C1", "m1", None, dict(CHOIR_MEMBER))

        assert engine.stats["quiet_failures"] == 1

        store.clear_failures()
        await engine.notify_record_change("C1", "m1", None, dict(CHOIR_MEMBER))
        assert "m1" in store.snapshot("AG1", "members")
