from __future__ import annotations

import asyncio
import json

import pytest

from logsource_retire.broadcast.broadcaster import ProgressBroadcaster, format_sse


def _snap(job_id: str, progress: int) -> dict:
    return {"id": job_id, "status": "running", "progress": progress}


@pytest.mark.asyncio
async def test_publish_fans_out_to_every_subscriber() -> None:
    broadcaster = ProgressBroadcaster(queue_size=8)
    first = broadcaster.subscribe()
    second = broadcaster.subscribe()

    delivered = broadcaster.publish(_snap("job-1", 10))

    assert delivered == 2
    assert (await first.get(timeout=1))["progress"] == 10
    assert (await second.get(timeout=1))["progress"] == 10


@pytest.mark.asyncio
async def test_slow_subscriber_drops_oldest() -> None:
    broadcaster = ProgressBroadcaster(queue_size=2)
    subscription = broadcaster.subscribe()

    for progress in (10, 20, 30, 40):
        broadcaster.publish(_snap("job-1", progress))

    assert subscription.dropped == 2
    assert subscription.pending() == 2
    assert (await subscription.get(timeout=1))["progress"] == 30
    assert (await subscription.get(timeout=1))["progress"] == 40


@pytest.mark.asyncio
async def test_late_subscriber_sees_no_history() -> None:
    broadcaster = ProgressBroadcaster()
    broadcaster.publish(_snap("job-1", 50))

    subscription = broadcaster.subscribe()

    assert subscription.pending() == 0
    with pytest.raises(asyncio.TimeoutError):
        await subscription.get(timeout=0.01)


@pytest.mark.asyncio
async def test_closed_subscription_stops_receiving() -> None:
    broadcaster = ProgressBroadcaster()
    with broadcaster.subscribe() as subscription:
        assert broadcaster.subscriber_count == 1

    assert subscription.closed
    assert broadcaster.subscriber_count == 0
    assert broadcaster.publish(_snap("job-1", 5)) == 0
    assert subscription.pending() == 0
    # Closing twice is harmless.
    subscription.close()


@pytest.mark.asyncio
async def test_async_iteration_ends_after_close() -> None:
    broadcaster = ProgressBroadcaster()
    subscription = broadcaster.subscribe()
    broadcaster.publish(_snap("job-1", 1))

    received = []
    async for snapshot in subscription:
        received.append(snapshot["progress"])
        subscription.close()

    assert received == [1]


def test_queue_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ProgressBroadcaster(queue_size=0)


def test_format_sse() -> None:
    frame = format_sse({"id": "job-1", "progress": 100})

    event, data, *rest = frame.split("\n")
    assert event == "event: job"
    assert json.loads(data.removeprefix("data: ")) == {"id": "job-1", "progress": 100}
    assert frame.endswith("\n\n")
