"""Validated argument models for every registered tool.

Each tool in the registry declares one of these models. Arguments coming
from the LLM are validated against it before dispatch; unknown keys are
ignored and numeric strings are coerced.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

EntityKind = Literal["project", "task", "document", "goal"]
Direction = Literal["outgoing", "incoming", "both"]


class ToolArgs(BaseModel):
    """Base for tool argument models."""

    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


class ListProjectsArgs(ToolArgs):
    state_key: str | None = None
    type_key: str | None = None
    limit: int | None = None


class SearchProjectsArgs(ToolArgs):
    search: str = Field(min_length=1)
    state_key: str | None = None
    limit: int | None = None


class GetProjectDetailsArgs(ToolArgs):
    project_id: str


class GetProjectGraphArgs(ToolArgs):
    project_id: str | None = None


class CreateProjectArgs(ToolArgs):
    name: str = Field(min_length=1)
    description: str | None = None
    type_key: str | None = None
    state_key: str | None = None
    props: dict[str, Any] | None = None


class UpdateProjectArgs(ToolArgs):
    project_id: str
    name: str | None = None
    description: str | None = None
    state_key: str | None = None
    props: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class ListDocumentsArgs(ToolArgs):
    project_id: str | None = None
    type_key: str | None = None
    state_key: str | None = None
    limit: int | None = None


class SearchDocumentsArgs(ToolArgs):
    search: str = Field(min_length=1)
    project_id: str | None = None
    limit: int | None = None


class GetDocumentDetailsArgs(ToolArgs):
    document_id: str


class CreateDocumentArgs(ToolArgs):
    title: str = Field(min_length=1)
    project_id: str | None = None
    content: str | None = None
    description: str | None = None
    type_key: str | None = None
    state_key: str | None = None
    props: dict[str, Any] | None = None


class UpdateDocumentArgs(ToolArgs):
    document_id: str
    title: str | None = None
    content: str | None = None
    description: str | None = None
    state_key: str | None = None
    props: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Tasks & goals
# ---------------------------------------------------------------------------


class ListTasksArgs(ToolArgs):
    project_id: str | None = None
    state_key: str | None = None
    limit: int | None = None


class SearchTasksArgs(ToolArgs):
    search: str = Field(min_length=1)
    project_id: str | None = None
    limit: int | None = None


class GetTaskDetailsArgs(ToolArgs):
    task_id: str


class CreateTaskArgs(ToolArgs):
    title: str = Field(min_length=1)
    project_id: str | None = None
    description: str | None = None
    state_key: str | None = None
    priority: int | None = None
    props: dict[str, Any] | None = None


class UpdateTaskArgs(ToolArgs):
    task_id: str
    title: str | None = None
    description: str | None = None
    state_key: str | None = None
    priority: int | None = None
    props: dict[str, Any] | None = None


class ListGoalsArgs(ToolArgs):
    project_id: str | None = None
    state_key: str | None = None
    limit: int | None = None


class GetGoalDetailsArgs(ToolArgs):
    goal_id: str


class CreateGoalArgs(ToolArgs):
    name: str = Field(min_length=1)
    project_id: str | None = None
    description: str | None = None
    state_key: str | None = None
    props: dict[str, Any] | None = None


class UpdateGoalArgs(ToolArgs):
    goal_id: str
    name: str | None = None
    description: str | None = None
    state_key: str | None = None
    props: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


class GetLinkedEntitiesArgs(ToolArgs):
    entity_kind: EntityKind
    entity_id: str
    rel: str | None = None
    direction: Direction = "both"
    limit: int | None = None


class SearchOntologyArgs(ToolArgs):
    search: str = Field(min_length=1)
    project_id: str | None = None
    entity_types: list[EntityKind] | None = None
    limit: int | None = None


class LinkEntitiesArgs(ToolArgs):
    src_kind: EntityKind
    src_id: str
    dst_kind: EntityKind
    dst_id: str
    rel: str = Field(min_length=1)
    props: dict[str, Any] | None = None


class UnlinkEdgeArgs(ToolArgs):
    edge_id: str


# ---------------------------------------------------------------------------
# External
# ---------------------------------------------------------------------------


class WebSearchArgs(ToolArgs):
    query: str = Field(min_length=1)
    search_depth: Literal["basic", "advanced"] = "basic"
    max_results: int | None = None
    include_answer: bool = True
    include_domains: list[str] | None = None
    exclude_domains: list[str] | None = None


# ---------------------------------------------------------------------------
# Run introspection
# ---------------------------------------------------------------------------


class ListRunsArgs(ToolArgs):
    status: str | None = None
    limit: int | None = None


class GetRunArgs(ToolArgs):
    run_id: str


class ListNodesArgs(ToolArgs):
    run_id: str
    parent_node_id: str | None = None
    status: str | None = None
    depth: int | None = None
    limit: int | None = None


class ListEventsArgs(ToolArgs):
    run_id: str
    since_seq: int | None = None
    limit: int | None = None


class GetArtifactsArgs(ToolArgs):
    run_id: str
    node_id: str | None = None
    limit: int | None = None
