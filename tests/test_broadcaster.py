"""Tests for OutputBroadcaster fan-out, snapshots and subscriber isolation."""

import pytest

from conftest import drain, event_types
from testdash.api.events import EventType, OutputBroadcaster, Subscription, build_event


def test_subscribe_sends_empty_snapshot_first(broadcaster):
    subscription = broadcaster.subscribe()

    events = drain(subscription)

    assert event_types(events) == ["active_runs_snapshot"]
    assert events[0]["data"] == []
    assert events[0]["runId"] is None


def test_snapshot_contains_only_running_runs(registry, broadcaster):
    running = registry.create("proj", "npx playwright")
    done = registry.create("proj", "npx playwright")
    done.finish(0)

    snapshot = drain(broadcaster.subscribe())[0]

    assert [run["id"] for run in snapshot["data"]] == [running.id]
    assert "process" not in snapshot["data"][0]


def test_publish_reaches_every_subscriber(broadcaster):
    first = broadcaster.subscribe()
    second = broadcaster.subscribe()
    drain(first)
    drain(second)

    broadcaster.publish(build_event(EventType.LOG_APPENDED, "run_1", {"level": "info", "message": "hi"}))

    assert event_types(drain(first)) == ["log_appended"]
    assert event_types(drain(second)) == ["log_appended"]


def test_snapshot_precedes_live_events_without_duplicate_start(registry, broadcaster):
    record = registry.create("proj", "npx playwright")
    broadcaster.publish(build_event(EventType.RUN_STARTED, record.id, record.to_dict()))

    late = broadcaster.subscribe()
    broadcaster.publish(build_event(EventType.OUTPUT_APPENDED, record.id, {"data": "x"}))

    events = drain(late)
    assert event_types(events) == ["active_runs_snapshot", "output_appended"]
    assert events[0]["data"][0]["id"] == record.id


def test_unsubscribe_is_idempotent_and_stops_delivery(broadcaster):
    subscription = broadcaster.subscribe()
    broadcaster.unsubscribe(subscription)
    broadcaster.unsubscribe(subscription)

    broadcaster.publish(build_event(EventType.RUN_COMPLETED, "run_1", {}))

    assert broadcaster.subscriber_count == 0
    assert subscription.closed
    assert drain(subscription) == [None]


def test_overflowing_subscriber_is_dropped_without_affecting_others(registry):
    broadcaster = OutputBroadcaster(registry, queue_size=2)
    slow = broadcaster.subscribe()
    fast = broadcaster.subscribe()

    for i in range(3):
        broadcaster.publish(build_event(EventType.OUTPUT_APPENDED, "run_1", {"data": str(i)}))
        drain(fast)

    assert slow.closed
    assert broadcaster.subscriber_count == 1
    # The reader is woken with the end-of-stream marker.
    assert drain(slow) == [None]


def test_publish_never_raises_for_closed_subscriber(broadcaster):
    subscription = broadcaster.subscribe()
    subscription.close()

    broadcaster.publish(build_event(EventType.RUN_STARTED, "run_1", {}))

    assert broadcaster.subscriber_count == 0


@pytest.mark.asyncio()
async def test_get_waits_for_next_event():
    subscription = Subscription(maxsize=5)
    subscription.deliver({"type": "run_started"})

    assert (await subscription.get())["type"] == "run_started"
