"""Run controller: turns a queued job into a finished run.

``process_job`` loads the run and its root node, resolves the tool context,
records the tool manifest, runs the bootstrap tool phase, drives the root
node through the orchestrator under the run's wall clock budget, and records
the final status.
"""

import asyncio
import time

import structlog

from config import settings
from events.bus import EventBus
from events.log import EventLog
from events.types import (
    ContextWarningPayload,
    NodeFailedPayload,
    NodeStatusPayload,
    ToolsManifestPayload,
)
from metrics import RunMetricsTracker
from models.database import TreeStore
from models.ontology import OntologyStore
from models.schemas import (
    TERMINAL_NODE_STATUSES,
    ContextType,
    JobOutcome,
    Node,
    NodeStatus,
    Run,
    RunScope,
    RunStatus,
    TreeAgentJob,
)
from sandbox.calls import ToolCall
from sandbox.context import ToolExecutionContext
from sandbox.registry import get_tool_guide
from sandbox.web_search import WebSearchClient
from tree_agent.llm import LLMClient
from tree_agent.orchestrator import CANCELED_MESSAGE, BudgetExceededError, NodeOrchestrator
from tree_agent.roles import RoleCaller
from tree_agent.scratchpad import ScratchpadStore
from tree_agent.tools import BOOTSTRAP_PHASE, run_tool_batch

logger = structlog.get_logger(__name__)

CONTEXT_FALLBACK_MESSAGE = "context_project_not_accessible_fallback_to_global"
TOOL_GUIDE_PREVIEW_LINES = 12
BOOTSTRAP_PROJECT_LIMIT = 8
WORKER_STOPPED_DETAIL = "worker_stopped"
INTERRUPTED_DETAIL = "interrupted_by_restart"
OPEN_NODE_SCAN_LIMIT = 10_000


def resolve_run_context(run: Run, job: TreeAgentJob) -> tuple[ContextType, str | None]:
    """Pick the requested tool context for a run.

    Priority: the job's context fields, then the run's scope and project ids,
    then ``metrics.context`` on the run record. A project context without a
    project id resolves to global.
    """
    requested_type = ContextType.GLOBAL
    requested_project_id: str | None = None

    if job.context_type is not None:
        requested_type = job.context_type
        requested_project_id = job.context_project_id
    elif run.scope != RunScope.GLOBAL:
        if run.scope == RunScope.PROJECT:
            requested_type = ContextType.PROJECT
        requested_project_id = run.project_ids[0] if run.project_ids else None
    else:
        stored = run.metrics.get("context")
        if isinstance(stored, dict) and stored.get("type") == ContextType.PROJECT:
            requested_type = ContextType.PROJECT
            project_id = stored.get("project_id")
            if isinstance(project_id, str) and project_id:
                requested_project_id = project_id

    if requested_type == ContextType.PROJECT and requested_project_id:
        return ContextType.PROJECT, requested_project_id
    return ContextType.GLOBAL, None


class RunController:
    """Processes tree agent jobs.

    Attributes:
        tree_store: Store for runs, nodes, plans, artifacts and events.
        ontology: Store for actors, projects and documents.
        events: Event log shared by every run.
        llm: Client used by all three roles.
        bus: Live event bus, closed per run once the job finishes.
        web_search: Client handed to each run's tool context.
    """

    def __init__(
        self,
        *,
        tree_store: TreeStore,
        ontology: OntologyStore,
        events: EventLog,
        llm: LLMClient,
        bus: EventBus | None = None,
        web_search: WebSearchClient | None = None,
    ) -> None:
        self.tree_store = tree_store
        self.ontology = ontology
        self.events = events
        self.llm = llm
        self.bus = bus
        self.web_search = web_search
        self.scratchpads = ScratchpadStore(ontology, tree_store, events)
        self.roles = RoleCaller(llm)

    async def process_job(self, job: TreeAgentJob) -> JobOutcome:
        """Execute one job to a terminal run status.

        Args:
            job: The queued job.

        Returns:
            JobOutcome with the root result on success, or the failure message.
            Failures never raise; they are recorded on the run instead.

        Raises:
            asyncio.CancelledError: Re-raised after the run is stopped with a
                ``canceled`` stop reason and its open nodes are failed.
        """
        log = logger.bind(run_id=job.run_id)
        run = await self.tree_store.get_run(job.run_id)
        if run is None:
            log.warning("run_not_found")
            return JobOutcome(success=False, run_id=job.run_id, message="Run not found")

        actor_id = await self.ontology.ensure_actor(run.user_id)
        root = await self.tree_store.get_node(job.root_node_id)
        if root is None:
            log.warning("root_node_not_found", root_node_id=job.root_node_id)
            return JobOutcome(success=False, run_id=run.id, message="Root node not found")

        log.info("run_started", root_node_id=root.id, user_id=run.user_id)
        try:
            return await self._drive(job, run, root, actor_id)
        except asyncio.CancelledError:
            await self._finalize_canceled(run, WORKER_STOPPED_DETAIL)
            raise
        except Exception as e:
            return await self._finalize_failure(run, root, e)
        finally:
            if self.bus is not None:
                await self.bus.close_run(run.id)
            self.events.forget(run.id)

    async def _drive(self, job: TreeAgentJob, run: Run, root: Node, actor_id: str) -> JobOutcome:
        await self.tree_store.update_run_status(run.id, RunStatus.RUNNING, started_at=time.time())
        run.status = RunStatus.RUNNING
        if run.workspace_project_id is None:
            run.workspace_project_id = job.workspace_project_id

        scratchpad_doc_id = await self.scratchpads.ensure(run, root, actor_id)
        await self.events.append(
            run.id,
            root.id,
            NodeStatusPayload(
                status=NodeStatus.PLANNING.value, role="planner", message="worker_started"
            ),
        )

        tool_context = await self._build_tool_context(job, run, root, actor_id)
        tool_guide = get_tool_guide(tool_context.context_type, tool_context.tool_names)
        await self._record_manifest(run, root, tool_context, tool_guide)

        metrics = RunMetricsTracker(self.tree_store, run.id, seed=run.metrics)
        await run_tool_batch(
            tool_context=tool_context,
            events=self.events,
            scratchpads=self.scratchpads,
            node_id=root.id,
            scratchpad_doc_id=scratchpad_doc_id,
            calls=[
                ToolCall(
                    name="list_projects",
                    args={"limit": BOOTSTRAP_PROJECT_LIMIT},
                    purpose="Discover accessible projects for context",
                )
            ],
            phase=BOOTSTRAP_PHASE,
            metrics=metrics,
        )

        budget_ms = job.budgets.max_wall_clock_ms
        if budget_ms is None:
            budget_ms = run.budgets.max_wall_clock_ms
        if budget_ms is None:
            budget_ms = settings.default_max_wall_clock_ms

        orchestrator = NodeOrchestrator(
            run=run,
            actor_id=actor_id,
            tree_store=self.tree_store,
            ontology=self.ontology,
            events=self.events,
            scratchpads=self.scratchpads,
            roles=self.roles,
            tool_context=tool_context,
            tool_guide=tool_guide,
            metrics=metrics,
            deadline=time.monotonic() + budget_ms / 1000,
        )
        root_result = await orchestrator.run_node(root.id)

        await self.tree_store.merge_run_metrics(
            run.id, {"last_root_result": root_result.model_dump(mode="json")}
        )
        await self.tree_store.update_run_status(
            run.id, RunStatus.COMPLETED, completed_at=time.time()
        )
        logger.info(
            "run_completed",
            run_id=run.id,
            tokens_total=metrics.metrics.tokens_total,
            cost_total_usd=metrics.metrics.cost_total_usd,
            llm_calls=metrics.metrics.llm_calls,
            tool_calls=metrics.metrics.tool_calls,
        )
        return JobOutcome(success=True, run_id=run.id, root_result=root_result)

    async def _build_tool_context(
        self,
        job: TreeAgentJob,
        run: Run,
        root: Node,
        actor_id: str,
    ) -> ToolExecutionContext:
        """Create the run's tool context, degrading an inaccessible project context to global."""
        context_type, context_project_id = resolve_run_context(run, job)
        tool_context = await ToolExecutionContext.create(
            ontology=self.ontology,
            tree_store=self.tree_store,
            actor_id=actor_id,
            user_id=run.user_id,
            run_id=run.id,
            workspace_project_id=run.workspace_project_id,
            context_type=context_type,
            context_project_id=context_project_id,
            web_search=self.web_search,
        )
        if tool_context.is_context_accessible:
            return tool_context

        logger.warning(
            "context_project_not_accessible",
            run_id=run.id,
            context_project_id=context_project_id,
        )
        await self.events.append(
            run.id,
            root.id,
            ContextWarningPayload(
                requested_context_type=context_type.value,
                requested_project_id=context_project_id,
                message=CONTEXT_FALLBACK_MESSAGE,
            ),
        )
        return await ToolExecutionContext.create(
            ontology=self.ontology,
            tree_store=self.tree_store,
            actor_id=actor_id,
            user_id=run.user_id,
            run_id=run.id,
            workspace_project_id=run.workspace_project_id,
            context_type=ContextType.GLOBAL,
            web_search=self.web_search,
        )

    async def _record_manifest(
        self,
        run: Run,
        root: Node,
        tool_context: ToolExecutionContext,
        tool_guide: str,
    ) -> None:
        context_project_id = (
            tool_context.context_project_id
            if tool_context.context_type == ContextType.PROJECT
            else None
        )
        manifest = ToolsManifestPayload(
            context_type=tool_context.context_type.value,
            context_project_id=context_project_id,
            tool_count=len(tool_context.tool_names),
            tool_names=list(tool_context.tool_names),
        )
        await self.tree_store.merge_run_metrics(
            run.id,
            {
                "context": {
                    "type": tool_context.context_type.value,
                    "project_id": context_project_id,
                },
                "tool_manifest": manifest.model_dump(mode="json", exclude={"event_type"}),
                "tool_guide_preview": "\n".join(
                    tool_guide.splitlines()[:TOOL_GUIDE_PREVIEW_LINES]
                ),
            },
        )
        await self.events.append(run.id, root.id, manifest)

    async def _finalize_failure(self, run: Run, root: Node, error: Exception) -> JobOutcome:
        message = str(error) or type(error).__name__
        stopped = isinstance(error, BudgetExceededError)
        status = RunStatus.STOPPED if stopped else RunStatus.FAILED

        # The orchestrator records node_failed for nodes it was driving; this
        # covers failures before the root was handed to it.
        if await self.tree_store.update_node_status(
            root.id, NodeStatus.FAILED, ended_at=time.time()
        ):
            await self.events.append(
                run.id, root.id, NodeFailedPayload(error=message, retryable=False)
            )

        await self.tree_store.merge_run_metrics(
            run.id,
            {"stop_reason": {"type": "budget_exceeded" if stopped else "error", "detail": message}},
        )
        await self.tree_store.update_run_status(run.id, status, completed_at=time.time())
        logger.error(
            "run_failed",
            run_id=run.id,
            status=status,
            error=message,
            error_type=type(error).__name__,
        )
        return JobOutcome(success=False, run_id=run.id, message=message)

    async def _finalize_canceled(self, run: Run, detail: str) -> None:
        """Stop a run whose work was cut short, failing every node still open."""
        nodes = await self.tree_store.list_nodes(run.id, limit=OPEN_NODE_SCAN_LIMIT)
        for node in nodes:
            if node.status in TERMINAL_NODE_STATUSES:
                continue
            if await self.tree_store.update_node_status(
                node.id, NodeStatus.FAILED, ended_at=time.time()
            ):
                await self.events.append(
                    run.id, node.id, NodeFailedPayload(error=CANCELED_MESSAGE, retryable=True)
                )

        await self.tree_store.merge_run_metrics(
            run.id, {"stop_reason": {"type": "canceled", "detail": detail}}
        )
        await self.tree_store.update_run_status(
            run.id, RunStatus.STOPPED, completed_at=time.time()
        )
        logger.warning("run_canceled", run_id=run.id, detail=detail)

    async def recover_interrupted_runs(self) -> list[TreeAgentJob]:
        """Settle runs left unfinished by a previous process.

        Runs that were executing are stopped with a ``canceled`` stop reason,
        since a partial tree cannot be resumed. Queued runs are returned as
        jobs, oldest first, so they can be enqueued again.
        """
        jobs: list[TreeAgentJob] = []
        for run in await self.tree_store.list_runs_in_status(
            (RunStatus.QUEUED, RunStatus.RUNNING)
        ):
            if (
                run.status == RunStatus.QUEUED
                and run.root_node_id is not None
                and run.workspace_project_id is not None
            ):
                jobs.append(
                    TreeAgentJob(
                        run_id=run.id,
                        root_node_id=run.root_node_id,
                        workspace_project_id=run.workspace_project_id,
                        budgets=run.budgets,
                    )
                )
            else:
                await self._finalize_canceled(run, INTERRUPTED_DETAIL)
                self.events.forget(run.id)
        logger.info("interrupted_runs_recovered", requeued=len(jobs))
        return jobs
