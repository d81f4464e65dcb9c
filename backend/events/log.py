"""Durable, ordered event log for runs.

``EventLog.append`` assigns the next per-run sequence number, writes the event
row, and forwards the event to the live bus. Appending is fire-and-forget from
the orchestrator's point of view: a failed insert is logged and swallowed so
that event logging never aborts a run.
"""

import asyncio
import time
from collections import defaultdict

import structlog

from events.bus import EventBus
from events.types import EventPayload, TreeEvent
from models.database import TreeStore

logger = structlog.get_logger(__name__)


class EventLog:
    """Per-run sequenced event writer.

    Sequence numbers are allocated under a per-run ``asyncio.Lock`` and
    seeded from the highest stored seq the first time a run is seen, so
    events appended concurrently by sibling nodes still get unique,
    strictly increasing numbers.

    Attributes:
        store: Tree store that persists event rows.
        bus: Live event bus, or None when nobody tails runs in this process.
    """

    def __init__(self, store: TreeStore, bus: EventBus | None = None) -> None:
        self.store = store
        self.bus = bus
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._last_seq: dict[str, int] = {}

    async def append(
        self,
        run_id: str,
        node_id: str | None,
        payload: EventPayload,
    ) -> TreeEvent | None:
        """Record one event.

        Args:
            run_id: Run the event belongs to.
            node_id: Node the event is about, if any.
            payload: Typed event payload.

        Returns:
            The recorded event, or None if it could not be stored.
        """
        try:
            async with self._locks[run_id]:
                if run_id not in self._last_seq:
                    self._last_seq[run_id] = await self.store.max_event_seq(run_id)
                seq = self._last_seq[run_id] + 1
                event = TreeEvent(
                    run_id=run_id,
                    node_id=node_id,
                    seq=seq,
                    created_at=time.time(),
                    payload=payload,
                )
                record = event.to_record()
                await self.store.insert_event(
                    run_id=run_id,
                    node_id=node_id,
                    seq=seq,
                    event_type=record["event_type"],
                    payload=record["payload"],
                    created_at=event.created_at,
                )
                self._last_seq[run_id] = seq
        except Exception as e:
            # Reseed from the store on the next append.
            self._last_seq.pop(run_id, None)
            logger.error(
                "event_insert_failed",
                run_id=run_id,
                node_id=node_id,
                event_type=payload.event_type.value,
                error=str(e),
            )
            return None

        if self.bus is not None:
            try:
                await self.bus.publish(event)
            except Exception as e:
                logger.warning("event_publish_failed", run_id=run_id, seq=seq, error=str(e))
        return event

    def forget(self, run_id: str) -> None:
        """Drop cached sequence state for a finished run."""
        self._last_seq.pop(run_id, None)
        self._locks.pop(run_id, None)
