"""
Unit tests for the propagation outbox.

Tests cover:
- Enqueue and drain
- Failure isolation between tasks
- Worker loop start/stop, including a drain after stop
"""

import asyncio

import pytest

from tenancy.mirror_server.sync import PropagationOutbox


class TestPropagationOutbox:
    """Tests for PropagationOutbox."""

    @pytest.mark.asyncio
    async def test_drain_runs_tasks_in_order(self):
        outbox = PropagationOutbox()
        order = []

        async def step(n):
            order.append(n)
            return n

        for n in range(3):
            await outbox.enqueue("step", lambda n=n: step(n))
        assert outbox.pending == 3

        results = await outbox.drain()

        assert order == [0, 1, 2]
        assert [r.result for r in results] == [0, 1, 2]
        assert outbox.pending == 0

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_other_tasks(self):
        outbox = PropagationOutbox()
        ran = []

        async def fail():
            raise RuntimeError("tenant unavailable")

        async def succeed():
            ran.append(True)

        await outbox.enqueue("bad", fail, record_id="m1")
        await outbox.enqueue("good", succeed)

        results = await outbox.drain()

        assert [r.success for r in results] == [False, True]
        assert results[0].error == "tenant unavailable"
        assert results[0].task.context == {"record_id": "m1"}
        assert ran == [True]
        assert outbox.stats["error_count"] == 1
        assert outbox.stats["processed_count"] == 1
        assert outbox.stats["last_error"] == "tenant unavailable"

    @pytest.mark.asyncio
    async def test_worker_processes_queue(self):
        outbox = PropagationOutbox()
        done = asyncio.Event()

        async def work():
            done.set()

        worker = asyncio.create_task(outbox.run())
        await outbox.enqueue("work", work)
        await asyncio.wait_for(done.wait(), timeout=1)
        assert outbox.stats["running"] is True

        await outbox.stop()
        await asyncio.wait_for(worker, timeout=1)

        assert outbox.stats["running"] is False
        assert outbox.stats["processed_count"] == 1

    @pytest.mark.asyncio
    async def test_drain_waits_for_worker(self):
        outbox = PropagationOutbox()
        finished = []

        async def slow():
            await asyncio.sleep(0.01)
            finished.append(True)

        worker = asyncio.create_task(outbox.run())
        await outbox.enqueue("slow", slow)
        await asyncio.sleep(0)

        await outbox.drain()

        assert finished == [True]
        await outbox.stop()
        await asyncio.wait_for(worker, timeout=1)

    @pytest.mark.asyncio
    async def test_drain_after_stop_keeps_stop_marker(self):
        outbox = PropagationOutbox()
        ran = []

        async def work():
            ran.append(True)

        await outbox.enqueue("work", work)
        await outbox.stop()

        results = await outbox.drain()

        assert [r.success for r in results] == [True]
        assert outbox.pending == 1

        worker = asyncio.create_task(outbox.run())
        await asyncio.wait_for(worker, timeout=1)

        assert ran == [True]
        assert outbox.stats["running"] is False
