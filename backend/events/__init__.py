"""Event system for the tree agent.

This package provides the run event log and its live fan-out. Every state
transition of a run is recorded as a ``TreeEvent`` with a per-run sequence
number; live consumers follow the same events through the ``EventBus``.

Key Components:
    - EventType: Enum of all event types in the system
    - TreeEvent: One sequenced entry of a run's event log
    - EventLog: Assigns sequence numbers, persists, and publishes events
    - EventBus: Async pub/sub for live delivery

Usage:
    >>> from events import EventLog, NodeStatusPayload, get_event_bus
    >>> log = EventLog(store, get_event_bus())
    >>> await log.append(run_id, node_id, NodeStatusPayload(status="planning"))
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.log import EventLog
from events.types import (
    ArtifactCreatedPayload,
    ContextWarningPayload,
    EventPayload,
    EventType,
    NodeCompletedPayload,
    NodeCreatedPayload,
    NodeDelegatedPayload,
    NodeFailedPayload,
    NodeResultPayload,
    NodeStatusPayload,
    ParentHintPayload,
    PlanBandCreatedPayload,
    PlanCreatedPayload,
    ReplanRequestedPayload,
    ScratchpadLinkedPayload,
    ScratchpadUpdatedPayload,
    StepCreatedPayload,
    ToolCallRequestedPayload,
    ToolCallResultPayload,
    ToolsManifestPayload,
    TreeEvent,
)

__all__ = [
    # Event types
    "EventType",
    "EventPayload",
    "TreeEvent",
    "ArtifactCreatedPayload",
    "ContextWarningPayload",
    "NodeCompletedPayload",
    "NodeCreatedPayload",
    "NodeDelegatedPayload",
    "NodeFailedPayload",
    "NodeResultPayload",
    "NodeStatusPayload",
    "ParentHintPayload",
    "PlanBandCreatedPayload",
    "PlanCreatedPayload",
    "ReplanRequestedPayload",
    "ScratchpadLinkedPayload",
    "ScratchpadUpdatedPayload",
    "StepCreatedPayload",
    "ToolCallRequestedPayload",
    "ToolCallResultPayload",
    "ToolsManifestPayload",
    # Log and bus
    "EventLog",
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
