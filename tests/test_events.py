"""Tests for the lifecycle event bus and cancellation tokens."""

from __future__ import annotations

import asyncio

import pytest

from gantry.engine.cancellation import CancellationToken
from gantry.engine.events import EventBus, drain


class TestEventBus:
    @pytest.mark.asyncio
    async def test_publish_reaches_all_subscribers(self):
        bus = EventBus()
        q1 = bus.subscribe()
        q2 = bus.subscribe()
        bus.publish("run.started", {"run_id": "r1"})
        assert drain(q1)[0]["type"] == "run.started"
        assert len(drain(q2)) == 1

    @pytest.mark.asyncio
    async def test_run_filter(self):
        bus = EventBus()
        async with bus.listen("r1") as queue:
            bus.publish("job.started", {"run_id": "r2"})
            bus.publish("job.started", {"run_id": "r1", "job": "build"})
            events = drain(queue)
        assert [e["data"]["job"] for e in events] == ["build"]
        assert bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_instead_of_blocking(self):
        bus = EventBus()
        queue = bus.subscribe()
        for _ in range(queue.maxsize + 5):
            bus.publish("step.completed", {"run_id": "r"})
        assert queue.qsize() == queue.maxsize


class TestCancellationToken:
    @pytest.mark.asyncio
    async def test_cancel_propagates_to_children(self):
        parent = CancellationToken()
        child = parent.child()
        grandchild = child.child()
        parent.cancel("stop")
        assert child.cancelled and grandchild.cancelled
        assert grandchild.reason == "stop"

    @pytest.mark.asyncio
    async def test_child_cancel_does_not_reach_parent(self):
        parent = CancellationToken()
        child = parent.child()
        child.cancel()
        assert child.cancelled
        assert not parent.cancelled

    @pytest.mark.asyncio
    async def test_child_of_cancelled_parent(self):
        parent = CancellationToken()
        parent.cancel("early")
        assert parent.child().cancelled

    @pytest.mark.asyncio
    async def test_wait(self):
        token = CancellationToken()
        waiter = asyncio.ensure_future(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        token.cancel()
        await asyncio.wait_for(waiter, timeout=1)
