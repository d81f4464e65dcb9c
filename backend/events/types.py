"""Event type definitions for the tree agent event log.

Every state transition of a run produces one event. Each event type has its
own payload model; the payloads are combined into the discriminated union
``EventPayload`` so the event log, the API and the WebSocket stream all share
one typed shape.
"""

import time
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from models.schemas import ResultEnvelope


class EventType(StrEnum):
    """All event types recorded for a run.

    Events are categorized by:
    - Node lifecycle: creation, status changes, delegation, results, failure
    - Planning: plans, bands, steps and replans
    - Tools: requested calls, results and the run's tool manifest
    - Scratchpad: linking and updates of a node's working notes
    - Artifacts: created artifacts and hints for the parent node
    """

    # Node lifecycle
    NODE_CREATED = "node_created"
    NODE_STATUS = "node_status"
    NODE_DELEGATED = "node_delegated"
    NODE_RESULT = "node_result"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"

    # Planning
    STEP_CREATED = "step_created"
    PLAN_CREATED = "plan_created"
    PLAN_BAND_CREATED = "plan_band_created"
    REPLAN_REQUESTED = "replan_requested"

    # Tools
    TOOL_CALL_REQUESTED = "tool_call_requested"
    TOOL_CALL_RESULT = "tool_call_result"
    TOOLS_MANIFEST = "tools_manifest"
    CONTEXT_WARNING = "context_warning"

    # Scratchpad
    SCRATCHPAD_UPDATED = "scratchpad_updated"
    SCRATCHPAD_LINKED = "scratchpad_linked"

    # Artifacts
    ARTIFACT_CREATED = "artifact_created"
    PARENT_HINT = "parent_hint"


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class NodeCreatedPayload(BaseModel):
    event_type: Literal[EventType.NODE_CREATED] = EventType.NODE_CREATED
    parent_node_id: str | None = None
    title: str
    reason: str = ""
    success_criteria: list[str] = Field(default_factory=list)
    depth: int
    band_index: int = 0
    step_index: int = 0


class NodeStatusPayload(BaseModel):
    event_type: Literal[EventType.NODE_STATUS] = EventType.NODE_STATUS
    status: str
    role: str | None = None
    message: str | None = None


class NodeDelegatedPayload(BaseModel):
    event_type: Literal[EventType.NODE_DELEGATED] = EventType.NODE_DELEGATED
    step_id: str
    child_node_id: str


class NodeResultPayload(BaseModel):
    event_type: Literal[EventType.NODE_RESULT] = EventType.NODE_RESULT
    result: ResultEnvelope


class NodeCompletedPayload(BaseModel):
    event_type: Literal[EventType.NODE_COMPLETED] = EventType.NODE_COMPLETED
    outcome: str = "success"


class NodeFailedPayload(BaseModel):
    event_type: Literal[EventType.NODE_FAILED] = EventType.NODE_FAILED
    error: str
    retryable: bool = False


class StepCreatedPayload(BaseModel):
    event_type: Literal[EventType.STEP_CREATED] = EventType.STEP_CREATED
    step_id: str
    title: str
    reason: str = ""
    success_criteria: list[str] = Field(default_factory=list)
    band_index: int
    step_index: int
    child_node_id: str


class PlanCreatedPayload(BaseModel):
    event_type: Literal[EventType.PLAN_CREATED] = EventType.PLAN_CREATED
    plan_id: str
    version: int
    summary: str = ""
    band_count: int = 0


class PlanBandCreatedPayload(BaseModel):
    event_type: Literal[EventType.PLAN_BAND_CREATED] = EventType.PLAN_BAND_CREATED
    plan_id: str
    band_index: int
    goal: str = ""
    step_ids: list[str] = Field(default_factory=list)


class ReplanRequestedPayload(BaseModel):
    event_type: Literal[EventType.REPLAN_REQUESTED] = EventType.REPLAN_REQUESTED
    reason: str = ""
    based_on_child_ids: list[str] = Field(default_factory=list)


class ToolCallRequestedPayload(BaseModel):
    event_type: Literal[EventType.TOOL_CALL_REQUESTED] = EventType.TOOL_CALL_REQUESTED
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    purpose: str | None = None
    phase: str


class ToolCallResultPayload(BaseModel):
    event_type: Literal[EventType.TOOL_CALL_RESULT] = EventType.TOOL_CALL_RESULT
    tool_name: str
    ok: bool
    summary: str
    error: str | None = None
    phase: str


class ToolsManifestPayload(BaseModel):
    event_type: Literal[EventType.TOOLS_MANIFEST] = EventType.TOOLS_MANIFEST
    context_type: str
    context_project_id: str | None = None
    tool_count: int
    tool_names: list[str] = Field(default_factory=list)


class ContextWarningPayload(BaseModel):
    event_type: Literal[EventType.CONTEXT_WARNING] = EventType.CONTEXT_WARNING
    requested_context_type: str
    requested_project_id: str | None = None
    message: str


class ScratchpadUpdatedPayload(BaseModel):
    event_type: Literal[EventType.SCRATCHPAD_UPDATED] = EventType.SCRATCHPAD_UPDATED
    scratchpad_doc_id: str
    tail_preview: str = ""


class ScratchpadLinkedPayload(BaseModel):
    event_type: Literal[EventType.SCRATCHPAD_LINKED] = EventType.SCRATCHPAD_LINKED
    scratchpad_doc_id: str


class ArtifactCreatedPayload(BaseModel):
    event_type: Literal[EventType.ARTIFACT_CREATED] = EventType.ARTIFACT_CREATED
    artifact_id: str
    artifact_type: str
    label: str
    document_id: str | None = None
    is_primary: bool = False


class ParentHintPayload(BaseModel):
    event_type: Literal[EventType.PARENT_HINT] = EventType.PARENT_HINT
    parent_node_id: str | None = None
    hint_type: str
    artifact_ids: list[str] = Field(default_factory=list)
    document_ids: list[str] = Field(default_factory=list)


EventPayload = Annotated[
    NodeCreatedPayload
    | NodeStatusPayload
    | NodeDelegatedPayload
    | NodeResultPayload
    | NodeCompletedPayload
    | NodeFailedPayload
    | StepCreatedPayload
    | PlanCreatedPayload
    | PlanBandCreatedPayload
    | ReplanRequestedPayload
    | ToolCallRequestedPayload
    | ToolCallResultPayload
    | ToolsManifestPayload
    | ContextWarningPayload
    | ScratchpadUpdatedPayload
    | ScratchpadLinkedPayload
    | ArtifactCreatedPayload
    | ParentHintPayload,
    Field(discriminator="event_type"),
]


class TreeEvent(BaseModel):
    """One entry of a run's event log.

    Attributes:
        run_id: The run the event belongs to.
        node_id: The node the event is about, if any.
        seq: Position in the run's stream. Strictly increasing and unique per run.
        created_at: Unix timestamp when the event was recorded.
        payload: Type-specific body; ``payload.event_type`` tags the variant.

    Example:
        >>> event = TreeEvent(
        ...     run_id="run_abc",
        ...     node_id="node_root",
        ...     seq=3,
        ...     payload=NodeStatusPayload(status="planning", role="planner"),
        ... )
    """

    run_id: str
    node_id: str | None = None
    seq: int
    created_at: float = Field(default_factory=time.time)
    payload: EventPayload

    @property
    def event_type(self) -> EventType:
        return self.payload.event_type

    def to_record(self) -> dict[str, Any]:
        """Flatten to the stored/wire shape with ``event_type`` beside the payload."""
        return {
            "run_id": self.run_id,
            "node_id": self.node_id,
            "seq": self.seq,
            "event_type": self.event_type.value,
            "payload": self.payload.model_dump(mode="json", exclude={"event_type"}),
            "created_at": self.created_at,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "TreeEvent":
        """Rebuild an event from its stored shape."""
        payload = {**record.get("payload", {}), "event_type": record["event_type"]}
        return cls(
            run_id=record["run_id"],
            node_id=record.get("node_id"),
            seq=record["seq"],
            created_at=record.get("created_at", time.time()),
            payload=payload,
        )
