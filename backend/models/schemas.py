"""Pydantic schemas for the tree agent data model and HTTP API.

This module defines the persisted records (runs, nodes, plans, artifacts), the
result envelope a node hands to its parent, the queue job payload, and the
request/response models used by the API handlers.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RunStatus(StrEnum):
    """Run lifecycle status."""

    QUEUED = "queued"
    RUNNING = "running"
    WAITING_ON_USER = "waiting_on_user"
    COMPLETED = "completed"
    STOPPED = "stopped"
    CANCELED = "canceled"
    FAILED = "failed"


ACTIVE_RUN_STATUSES: tuple[RunStatus, ...] = (
    RunStatus.QUEUED,
    RunStatus.RUNNING,
    RunStatus.WAITING_ON_USER,
)


class NodeStatus(StrEnum):
    """Node state machine positions."""

    PLANNING = "planning"
    DELEGATING = "delegating"
    EXECUTING = "executing"
    WAITING = "waiting"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


TERMINAL_NODE_STATUSES: tuple[NodeStatus, ...] = (NodeStatus.COMPLETED, NodeStatus.FAILED)


class RoleState(StrEnum):
    """Which role is currently driving a node."""

    PLANNER = "planner"
    EXECUTOR = "executor"


class RunScope(StrEnum):
    """Scope a run was created with."""

    GLOBAL = "global"
    PROJECT = "project"
    MULTI_PROJECT = "multi_project"


class ContextType(StrEnum):
    """Tool context a run executes in."""

    GLOBAL = "global"
    PROJECT = "project"


class ArtifactType(StrEnum):
    """Kinds of artifacts a node can produce."""

    DOCUMENT = "document"
    JSON = "json"
    SUMMARY = "summary"
    OTHER = "other"


class ResultKind(StrEnum):
    """Shape of a node's result envelope."""

    JSON = "json"
    DOCUMENT = "document"
    HYBRID = "hybrid"


class HintType(StrEnum):
    """What a parent should read from a completed child."""

    READ_DOCUMENTS = "read_documents"
    READ_JSON = "read_json"


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class RunBudgets(BaseModel):
    """Resource budgets for a run. Only wall clock is enforced."""

    max_wall_clock_ms: int | None = Field(
        default=None,
        description="Run-wide wall clock budget in milliseconds",
    )


class SuccessAssessment(BaseModel):
    """The LLM's own verdict on whether the success criteria were met."""

    met: bool = False
    notes: str = ""


class ResultEnvelope(BaseModel):
    """Summary a completed node hands to its parent."""

    kind: ResultKind
    summary: str
    success_assessment: SuccessAssessment = Field(default_factory=SuccessAssessment)
    primary_artifact_id: str | None = None
    artifact_ids: list[str] = Field(default_factory=list)
    document_ids: list[str] = Field(default_factory=list)
    json_payload: Any = None
    scratchpad_doc_id: str | None = None
    scratchpad_tail: str = ""


class Run(BaseModel):
    """A single invocation of the tree agent against one objective."""

    id: str
    user_id: str
    objective: str
    status: RunStatus = RunStatus.QUEUED
    root_node_id: str | None = None
    workspace_project_id: str | None = None
    scope: RunScope = RunScope.GLOBAL
    project_ids: list[str] = Field(default_factory=list)
    budgets: RunBudgets = Field(default_factory=RunBudgets)
    metrics: dict[str, Any] = Field(default_factory=dict)
    created_at: float = Field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None


class Node(BaseModel):
    """One unit of work in a run's tree."""

    id: str
    run_id: str
    parent_node_id: str | None = None
    title: str
    reason: str = ""
    success_criteria: list[str] = Field(default_factory=list)
    depth: int = 0
    band_index: int = 0
    step_index: int = 0
    status: NodeStatus = NodeStatus.PLANNING
    role_state: RoleState = RoleState.PLANNER
    scratchpad_doc_id: str | None = None
    result: ResultEnvelope | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    started_at: float | None = None
    ended_at: float | None = None


class PlanStep(BaseModel):
    """A step within a band; becomes one child node."""

    id: str
    title: str
    reason: str = ""
    success_criteria: list[str] = Field(default_factory=list)
    step_index: int = 0


class PlanBand(BaseModel):
    """A group of steps that run in parallel. Bands run in index order."""

    index: int
    goal: str = ""
    parallelizable: bool = True
    steps: list[PlanStep] = Field(default_factory=list)


class PlanSnapshot(BaseModel):
    """The persisted plan body."""

    version: int
    summary: str = ""
    bands: list[PlanBand] = Field(default_factory=list)


class Plan(BaseModel):
    """A versioned plan row for a node."""

    id: str
    run_id: str
    node_id: str
    version: int
    plan: PlanSnapshot
    created_at: float = Field(default_factory=time.time)


class Artifact(BaseModel):
    """Output produced by a node: a document reference or a JSON payload."""

    id: str
    run_id: str
    node_id: str
    artifact_type: ArtifactType
    label: str
    document_id: str | None = None
    json_payload: Any = None
    is_primary: bool = False
    created_at: float = Field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Queue payloads
# ---------------------------------------------------------------------------


class TreeAgentJob(BaseModel):
    """Job consumed by the run worker."""

    run_id: str
    root_node_id: str
    workspace_project_id: str
    budgets: RunBudgets = Field(default_factory=RunBudgets)
    context_type: ContextType | None = None
    context_project_id: str | None = None


class JobOutcome(BaseModel):
    """Result of processing one job."""

    success: bool
    run_id: str
    root_result: ResultEnvelope | None = None
    message: str | None = None


# ---------------------------------------------------------------------------
# API models
# ---------------------------------------------------------------------------


class CreateRunRequest(BaseModel):
    """Request body for enqueuing a new run."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(
        min_length=1,
        description="Caller identity. The owning actor is derived from it.",
        examples=["user_123"],
    )
    objective: str = Field(
        max_length=10000,
        description="The high-level objective for the run",
        examples=["Research competitors and draft a positioning brief."],
    )
    budgets: RunBudgets | None = Field(
        default=None,
        description="Optional budget overrides",
    )
    success_criteria: list[str] = Field(
        default_factory=list,
        description="Success criteria for the root node",
    )
    context_type: ContextType = Field(
        default=ContextType.GLOBAL,
        description="Tool context the run executes in",
    )
    context_project_id: str | None = Field(
        default=None,
        description="Project id when context_type is 'project'",
    )


class RunResponse(BaseModel):
    """Response for run creation."""

    run_id: str = Field(description="Unique run identifier")
    root_node_id: str = Field(description="Root node of the run's tree")
    workspace_project_id: str = Field(description="Project holding run documents")
    status: RunStatus = Field(description="Current run status")
    websocket_url: str = Field(
        description="WebSocket URL for real-time event streaming",
        examples=["/ws/runs/run_abc123"],
    )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(default="healthy")
    version: str = Field(default="0.1.0")
    queued_jobs: int = Field(default=0, description="Jobs waiting in the worker queue")
