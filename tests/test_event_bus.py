import asyncio
import threading

import pytest

from extcli.adapters.event_bus import RunEventBus
from extcli.adapters.events import (
    InteractionRequested,
    RunEvent,
    RunProgress,
    RunStatusChanged,
    dict_to_event,
)


def test_dict_to_event_builds_typed_events() -> None:
    event = dict_to_event({
        "event": "run_status_changed",
        "run_id": "run-1",
        "provider": "codex",
        "old_status": "running",
        "new_status": "completed",
        "unknown_field": "dropped",
    })
    assert isinstance(event, RunStatusChanged)
    assert event.event_type == "run_status_changed"
    assert event.new_status == "completed"


def test_unknown_event_falls_back_to_base_type() -> None:
    event = dict_to_event({"event": "something_new", "run_id": "run-1"})
    assert type(event) is RunEvent
    assert event.event_type == "something_new"


@pytest.mark.asyncio
async def test_publish_preserves_order() -> None:
    bus = RunEventBus()
    bus.attach(asyncio.get_running_loop())
    for i in range(20):
        bus.publish({"event": "run_progress", "run_id": "r", "message": str(i)})
    await asyncio.sleep(0)

    received = []
    while (event := bus.get_nowait()) is not None:
        received.append(event)
    assert [e.message for e in received] == [str(i) for i in range(20)]
    assert all(isinstance(e, RunProgress) for e in received)


@pytest.mark.asyncio
async def test_publish_from_another_thread() -> None:
    bus = RunEventBus()
    bus.attach(asyncio.get_running_loop())

    def worker() -> None:
        bus.publish({"event": "interaction_requested", "interaction": {"interactionId": "i-1"}})

    thread = threading.Thread(target=worker)
    thread.start()
    thread.join()

    consumer = bus.consume()
    event = await asyncio.wait_for(consumer.__anext__(), timeout=2.0)
    assert isinstance(event, InteractionRequested)
    assert event.interaction["interactionId"] == "i-1"
    bus.close()
    await consumer.aclose()


@pytest.mark.asyncio
async def test_full_queue_drops_new_events() -> None:
    bus = RunEventBus(maxsize=2)
    bus.attach(asyncio.get_running_loop())
    for i in range(4):
        bus.publish({"event": "run_progress", "message": str(i)})
    await asyncio.sleep(0)

    assert bus.get_nowait().message == "0"
    assert bus.get_nowait().message == "1"
    assert bus.get_nowait() is None


def test_publish_without_loop_is_dropped() -> None:
    bus = RunEventBus()
    bus.publish({"event": "run_progress", "message": "lost"})
    assert bus.get_nowait() is None


@pytest.mark.asyncio
async def test_closed_bus_ignores_publishes() -> None:
    bus = RunEventBus()
    bus.attach(asyncio.get_running_loop())
    bus.close()
    bus.publish({"event": "run_progress", "message": "late"})
    await asyncio.sleep(0)
    assert bus.get_nowait() is None
