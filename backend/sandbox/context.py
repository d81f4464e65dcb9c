"""Per-run tool execution context.

The context is built once per run and owns the run's authorization state:
the acting user, the context project, and the set of projects tools may
touch. ``execute_tool_call`` never raises; every failure comes back as a
``ToolResult`` with ``ok=False`` so the executor can read it and move on.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog

from config import settings
from models.database import TreeStore
from models.ontology import OntologyStore
from models.schemas import ContextType
from sandbox.calls import (
    ToolBatchResult,
    ToolCall,
    ToolExecutionError,
    ToolResult,
    UnknownToolCall,
    merge_artifacts,
    parse_tool_call,
)
from sandbox.handlers import TOOL_HANDLERS
from sandbox.registry import get_default_tool_names, is_tool_allowed
from sandbox.security import (
    ToolAuthorizationError,
    compute_allowed_projects,
    resolve_project_id,
    resolve_read_project_ids,
)
from sandbox.web_search import WebSearchClient

logger = structlog.get_logger(__name__)

TOOL_NOT_ALLOWED = "tool not allowed in this context"


@dataclass
class ToolExecutionContext:
    """Authorization and store handles shared by every tool call of a run.

    Attributes:
        ontology: Store for projects, entities and edges.
        tree_store: Store for runs, nodes, events and artifacts.
        actor_id: Actor acting on behalf of the user.
        user_id: User who owns the run.
        run_id: The run the tools execute for.
        workspace_project_id: The run's own project.
        context_type: "global" or "project".
        context_project_id: Context project, only set for project context.
        tool_names: Tools the run may call.
        allowed_projects: Projects tools may touch. Only ever grows.
        web_search: Client used by ``web_search``.
    """

    ontology: OntologyStore
    tree_store: TreeStore
    actor_id: str
    user_id: str
    run_id: str
    workspace_project_id: str | None
    context_type: ContextType
    context_project_id: str | None
    tool_names: list[str]
    allowed_projects: set[str] = field(default_factory=set)
    web_search: WebSearchClient = field(default_factory=WebSearchClient)

    @classmethod
    async def create(
        cls,
        *,
        ontology: OntologyStore,
        tree_store: TreeStore,
        actor_id: str,
        user_id: str,
        run_id: str,
        workspace_project_id: str | None,
        context_type: ContextType,
        context_project_id: str | None = None,
        tool_names: list[str] | None = None,
        web_search: WebSearchClient | None = None,
    ) -> "ToolExecutionContext":
        """Build a context, computing the allowed project set once.

        Args:
            ontology: Ontology store.
            tree_store: Tree store.
            actor_id: Actor for the run's user.
            user_id: The run's user.
            run_id: The run.
            workspace_project_id: The run's workspace project.
            context_type: Requested context.
            context_project_id: Requested context project.
            tool_names: Tools to expose; defaults to all allowed in the context.
            web_search: Optional search client override.

        Returns:
            The context. ``context_project_id`` is kept only when the project
            is accessible; callers detect a degraded context via
            ``is_context_accessible``.
        """
        members = await ontology.list_member_project_ids(actor_id)
        allowed = compute_allowed_projects(workspace_project_id, members)
        names = tool_names if tool_names is not None else get_default_tool_names(context_type)
        return cls(
            ontology=ontology,
            tree_store=tree_store,
            actor_id=actor_id,
            user_id=user_id,
            run_id=run_id,
            workspace_project_id=workspace_project_id,
            context_type=context_type,
            context_project_id=context_project_id,
            tool_names=list(names),
            allowed_projects=allowed,
            web_search=web_search or WebSearchClient(),
        )

    @property
    def is_context_accessible(self) -> bool:
        if self.context_type != ContextType.PROJECT:
            return True
        return bool(self.context_project_id) and self.context_project_id in self.allowed_projects

    @property
    def default_project_id(self) -> str | None:
        if self.context_type == ContextType.PROJECT and self.is_context_accessible:
            return self.context_project_id
        return self.workspace_project_id

    @property
    def context_label(self) -> str:
        if self.context_type == ContextType.PROJECT and self.context_project_id:
            return f"project:{self.context_project_id}"
        return "global"

    # -----------------------------------------------------------------
    # Authorization helpers used by handlers
    # -----------------------------------------------------------------

    def resolve_write_project(self, requested: str | None) -> str:
        return resolve_project_id(requested, self.allowed_projects, self.default_project_id)

    def resolve_read_projects(self, requested: str | None) -> list[str]:
        return resolve_read_project_ids(requested, self.allowed_projects)

    def grant_project(self, project_id: str) -> None:
        self.allowed_projects.add(project_id)

    async def require_project(self, project_id: str) -> dict[str, Any]:
        if project_id not in self.allowed_projects:
            raise ToolAuthorizationError("unauthorized project_id")
        project = await self.ontology.get_project(project_id)
        if project is None:
            raise ToolExecutionError("project not found")
        return project

    async def require_entity(self, kind: str, entity_id: str) -> dict[str, Any]:
        """Load an entity and check it lives in an allowed project."""
        if kind == "project":
            return await self.require_project(entity_id)
        entity = await self.ontology.get_entity(kind, entity_id)
        if entity is None:
            raise ToolExecutionError(f"{kind} not found")
        if entity["project_id"] not in self.allowed_projects:
            raise ToolAuthorizationError("unauthorized project")
        return entity

    def with_run_props(self, props: dict[str, Any] | None) -> dict[str, Any]:
        """Tag entity props with the run that created them."""
        return {**(props or {}), "tree_agent_run_id": self.run_id}

    # -----------------------------------------------------------------
    # Execution
    # -----------------------------------------------------------------

    async def execute_tool_call(self, call: ToolCall) -> ToolResult:
        """Execute one tool call. Never raises.

        Args:
            call: The requested call.

        Returns:
            ToolResult with ``ok=False`` and an error message on any failure.
        """
        if call.name not in self.tool_names or not is_tool_allowed(call.name, self.context_type):
            logger.warning(
                "tool_not_allowed",
                run_id=self.run_id,
                tool_name=call.name,
                context_type=self.context_type,
            )
            return ToolResult(name=call.name, ok=False, error=TOOL_NOT_ALLOWED)

        try:
            parsed = parse_tool_call(call)
            if isinstance(parsed, UnknownToolCall):
                return ToolResult(name=call.name, ok=False, error=TOOL_NOT_ALLOWED)
            handler = TOOL_HANDLERS[parsed.name]
            output = await handler(self, parsed.args)
        except Exception as e:
            logger.warning(
                "tool_call_failed",
                run_id=self.run_id,
                tool_name=call.name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ToolResult(name=call.name, ok=False, error=str(e) or type(e).__name__)

        logger.debug("tool_call_succeeded", run_id=self.run_id, tool_name=call.name)
        return ToolResult(
            name=call.name,
            ok=True,
            result=output.result,
            artifacts=output.artifacts,
        )

    async def execute_tool_calls(
        self,
        calls: list[ToolCall],
        max_calls: int | None = None,
    ) -> ToolBatchResult:
        """Execute calls strictly in order, capped at ``max_calls``.

        Later calls observe the effects of earlier ones (for example a
        project created by the first call is usable by the second).
        """
        cap = max_calls if max_calls is not None else settings.max_tool_calls_per_batch
        cap = min(cap, settings.max_tool_calls_per_batch)
        batch = ToolBatchResult()
        if len(calls) > cap:
            logger.info(
                "tool_batch_truncated",
                run_id=self.run_id,
                requested=len(calls),
                executed=cap,
            )
        for call in calls[:cap]:
            result = await self.execute_tool_call(call)
            batch.results.append(result)
            merge_artifacts(batch.artifacts, result.artifacts)
        return batch
