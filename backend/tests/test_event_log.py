"""Tests for events/log.py -- sequenced, durable event appends."""

import asyncio
from unittest.mock import AsyncMock

from events.bus import EventBus
from events.log import EventLog
from events.types import (
    EventType,
    NodeCreatedPayload,
    NodeStatusPayload,
    TreeEvent,
)
from models.database import TreeStore


def _status(message: str = "planner_start") -> NodeStatusPayload:
    return NodeStatusPayload(status="planning", role="planner", message=message)


class TestSequencing:
    """Sequence numbers are unique and strictly increasing per run."""

    async def test_first_event_gets_seq_one(self, event_log: EventLog) -> None:
        event = await event_log.append("run_1", "node_1", _status())
        assert event is not None
        assert event.seq == 1

    async def test_concurrent_appends_get_unique_increasing_seqs(
        self, event_log: EventLog, tree_store: TreeStore
    ) -> None:
        await asyncio.gather(
            *(event_log.append("run_1", f"node_{i}", _status(f"m{i}")) for i in range(25))
        )
        stored = await tree_store.list_events("run_1", limit=100)
        seqs = [e["seq"] for e in stored]
        assert seqs == list(range(1, 26))

    async def test_runs_are_sequenced_independently(self, event_log: EventLog) -> None:
        a1 = await event_log.append("run_a", None, _status())
        b1 = await event_log.append("run_b", None, _status())
        a2 = await event_log.append("run_a", None, _status())
        assert (a1.seq, b1.seq, a2.seq) == (1, 1, 2)  # type: ignore[union-attr]

    async def test_seeds_from_stored_max_seq(
        self, tree_store: TreeStore, event_bus: EventBus
    ) -> None:
        first = EventLog(tree_store, event_bus)
        for _ in range(3):
            await first.append("run_1", None, _status())

        # A fresh log (e.g. after a restart) continues after the stored maximum.
        second = EventLog(tree_store, event_bus)
        event = await second.append("run_1", None, _status())
        assert event is not None and event.seq == 4

    async def test_forget_reseeds_from_store(self, event_log: EventLog) -> None:
        await event_log.append("run_1", None, _status())
        event_log.forget("run_1")
        event = await event_log.append("run_1", None, _status())
        assert event is not None and event.seq == 2


class TestStoredShape:
    async def test_payload_stored_without_event_type(
        self, event_log: EventLog, tree_store: TreeStore
    ) -> None:
        await event_log.append(
            "run_1",
            "node_1",
            NodeCreatedPayload(title="Root", reason="Root objective", depth=0),
        )
        [record] = await tree_store.list_events("run_1")
        assert record["event_type"] == "node_created"
        assert record["node_id"] == "node_1"
        assert record["payload"]["title"] == "Root"
        assert "event_type" not in record["payload"]

    async def test_record_round_trips_to_event(
        self, event_log: EventLog, tree_store: TreeStore
    ) -> None:
        await event_log.append("run_1", "node_1", _status("leaf_execute"))
        [record] = await tree_store.list_events("run_1")
        event = TreeEvent.from_record(record)
        assert event.event_type == EventType.NODE_STATUS
        assert isinstance(event.payload, NodeStatusPayload)
        assert event.payload.message == "leaf_execute"

    async def test_since_seq_filters(self, event_log: EventLog, tree_store: TreeStore) -> None:
        for _ in range(5):
            await event_log.append("run_1", None, _status())
        later = await tree_store.list_events("run_1", since_seq=3)
        assert [e["seq"] for e in later] == [4, 5]


class TestPublishing:
    async def test_appended_events_reach_live_subscribers(
        self, event_log: EventLog, event_bus: EventBus
    ) -> None:
        queue = event_bus.subscribe("run_1")
        await event_log.append("run_1", "node_1", _status())
        received = queue.get_nowait()
        assert received is not None and received.seq == 1

    async def test_insert_failure_is_swallowed(self, tree_store: TreeStore) -> None:
        tree_store.insert_event = AsyncMock(side_effect=RuntimeError("disk full"))  # type: ignore[method-assign]
        log = EventLog(tree_store)
        assert await log.append("run_1", None, _status()) is None

    async def test_insert_failure_does_not_consume_seq(
        self, tree_store: TreeStore, event_log: EventLog
    ) -> None:
        original = tree_store.insert_event
        tree_store.insert_event = AsyncMock(side_effect=RuntimeError("locked"))  # type: ignore[method-assign]
        assert await event_log.append("run_1", None, _status()) is None

        tree_store.insert_event = original  # type: ignore[method-assign]
        event = await event_log.append("run_1", None, _status())
        assert event is not None and event.seq == 1
