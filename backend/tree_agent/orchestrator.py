"""Node orchestration LangGraph implementation.

This module drives a single node of a run's tree through the planner,
executor and aggregator roles. Delegation recurses: each child of a band is
itself driven through the same graph by a bounded worker pool.

Graph structure (one invocation per node visit):
    START -> plan -> execute_leaf -> END
               |
               +--> delegate -> aggregate -> complete -> END
               ^                    |
               |____________________|
                 (replan, at most once per node)

Events emitted:
- node_status on every state transition
- plan_created, plan_band_created when a plan is persisted
- node_created, step_created, node_delegated per child
- tool_call_requested, tool_call_result for executor tool calls
- scratchpad_updated, artifact_created, parent_hint
- replan_requested, node_result, node_completed, node_failed
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Literal, TypedDict, TypeVar

import structlog
from langgraph.graph import END, START, StateGraph

from config import settings
from events.log import EventLog
from events.types import (
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
    StepCreatedPayload,
)
from metrics import RunMetricsTracker
from models.database import TreeStore, new_id
from models.ontology import OntologyStore
from models.schemas import (
    ContextType,
    Node,
    NodeStatus,
    PlanBand,
    PlanSnapshot,
    PlanStep,
    ResultEnvelope,
    RoleState,
    Run,
)
from sandbox.context import ToolExecutionContext
from tree_agent.artifacts import (
    PersistedArtifacts,
    build_result_envelope,
    collect_child_summaries,
    persist_artifacts,
    resolve_parent_hint,
)
from tree_agent.roles import RoleCaller, RoleContext
from tree_agent.schemas import PlannerOutput, PlanSpec, ResultSpec, ScratchpadUpdate
from tree_agent.scratchpad import ScratchpadStore, format_entry
from tree_agent.tools import EXECUTOR_TOOLS_PHASE, run_tool_batch

logger = structlog.get_logger(__name__)

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")


# node_failed error recorded for nodes cancelled mid-flight, either because a
# sibling failed or because the worker was stopped.
CANCELED_MESSAGE = "canceled"


class BudgetExceededError(RuntimeError):
    """Raised when the run's wall clock budget is spent."""

    def __init__(self) -> None:
        super().__init__("budget_exceeded")


# -----------------------------------------------------------------------------
# State Schema Definitions
# -----------------------------------------------------------------------------


@dataclass
class NodeOutcome:
    """Role output that becomes the node's result once the visit completes."""

    result: ResultSpec
    persisted: PersistedArtifacts
    scratchpad_tail: str


class NodeVisitState(TypedDict):
    """State for one node visit.

    Attributes:
        node_id: The node being driven
        depth: Depth of that node, set by the plan step
        replanned: Whether the single allowed replan has been used
        planner: Latest planner output
        child_ids: Children delegated during the current pass, in band order
        outcome: Aggregator output waiting for ``complete``
        route: Routing decision of the last aggregate step
        result: Final envelope, set once the node completes
    """

    node_id: str
    depth: int
    replanned: bool
    planner: PlannerOutput | None
    child_ids: list[str]
    outcome: NodeOutcome | None
    route: Literal["replan", "complete"] | None
    result: ResultEnvelope | None


# -----------------------------------------------------------------------------
# Worker pool
# -----------------------------------------------------------------------------


async def run_with_concurrency(
    items: Sequence[ItemT],
    limit: int,
    worker: Callable[[ItemT], Awaitable[ResultT]],
) -> list[ResultT]:
    """Run ``worker`` over ``items`` with at most ``limit`` in flight.

    Workers pull the next item from a shared cursor, so a slow item never
    holds back the others. Results keep the order of ``items``. If any worker
    raises, the remaining workers are cancelled and the error propagates.
    """
    results: list[Any] = [None] * len(items)
    cursor = 0

    async def pull() -> None:
        nonlocal cursor
        while cursor < len(items):
            index = cursor
            cursor += 1
            results[index] = await worker(items[index])

    tasks = [asyncio.create_task(pull()) for _ in range(min(max(limit, 1), len(items)))]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return results


# -----------------------------------------------------------------------------
# NodeOrchestrator Class
# -----------------------------------------------------------------------------


class NodeOrchestrator:
    """Drives the nodes of one run.

    One orchestrator is built per run by the run controller; ``run_node`` is
    re-entered for every child, so the whole tree of a run shares the same
    tool context, metrics accumulator and deadline.

    Usage:
        >>> orchestrator = NodeOrchestrator(run=run, actor_id=actor_id, ...)
        >>> envelope = await orchestrator.run_node(run.root_node_id)
    """

    def __init__(
        self,
        *,
        run: Run,
        actor_id: str,
        tree_store: TreeStore,
        ontology: OntologyStore,
        events: EventLog,
        scratchpads: ScratchpadStore,
        roles: RoleCaller,
        tool_context: ToolExecutionContext,
        tool_guide: str,
        metrics: RunMetricsTracker | None = None,
        deadline: float | None = None,
        max_parallel_children: int | None = None,
        max_tool_calls_per_pass: int | None = None,
        max_tree_depth: int | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            run: The run being executed.
            actor_id: Actor that owns documents created by the run.
            tree_store: Store for nodes, plans and artifacts.
            ontology: Store for scratchpad and artifact documents.
            events: Event log.
            scratchpads: Scratchpad store.
            roles: Planner/executor/aggregator caller.
            tool_context: Authorization context for executor tool calls.
            tool_guide: Rendered guide of the tools in scope.
            metrics: Usage accumulator, flushed after every LLM call.
            deadline: ``time.monotonic()`` value after which work stops.
            max_parallel_children: Band worker pool size.
            max_tool_calls_per_pass: Cap on executor tool calls.
            max_tree_depth: Depth at which nodes must execute as leaves.
        """
        self.run = run
        self.actor_id = actor_id
        self.tree_store = tree_store
        self.ontology = ontology
        self.events = events
        self.scratchpads = scratchpads
        self.roles = roles
        self.tool_context = tool_context
        self.tool_guide = tool_guide
        self.metrics = metrics
        self.deadline = deadline
        self.max_parallel_children = max_parallel_children or settings.max_parallel_children
        self.max_tool_calls_per_pass = max_tool_calls_per_pass or settings.max_tool_calls_per_pass
        self.max_tree_depth = (
            max_tree_depth if max_tree_depth is not None else settings.max_tree_depth
        )
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> Any:
        """Build and compile the LangGraph StateGraph.

        Returns:
            Compiled StateGraph ready for execution
        """
        graph = StateGraph(NodeVisitState)

        graph.add_node("plan", self._plan)
        graph.add_node("execute_leaf", self._execute_leaf)
        graph.add_node("delegate", self._delegate)
        graph.add_node("aggregate", self._aggregate)
        graph.add_node("complete", self._complete)

        graph.add_edge(START, "plan")
        graph.add_conditional_edges(
            "plan",
            self._route_after_plan,
            {
                "leaf": "execute_leaf",
                "delegate": "delegate",
            },
        )
        graph.add_edge("execute_leaf", END)
        graph.add_edge("delegate", "aggregate")
        graph.add_conditional_edges(
            "aggregate",
            self._route_after_aggregate,
            {
                "replan": "plan",
                "complete": "complete",
            },
        )
        graph.add_edge("complete", END)

        return graph.compile()

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def run_node(self, node_id: str) -> ResultEnvelope:
        """Drive a node to completion and return its result envelope.

        Raises:
            BudgetExceededError: If the deadline passes at a node entry or band boundary.
            MalformedOutputError: If a role's output cannot be normalized.
            Exception: Store errors propagate unchanged. In every case the
                node is marked failed with a ``node_failed`` event first.
            asyncio.CancelledError: When a sibling failed or the run was
                stopped. The node is marked failed with a retryable
                ``canceled`` error.
        """
        initial_state = NodeVisitState(
            node_id=node_id,
            depth=0,
            replanned=False,
            planner=None,
            child_ids=[],
            outcome=None,
            route=None,
            result=None,
        )
        try:
            final_state = await self._compiled_graph.ainvoke(initial_state)
        except (Exception, asyncio.CancelledError) as e:
            await self._fail_node(node_id, e)
            raise

        result = final_state["result"]
        if result is None:
            raise RuntimeError(f"Node {node_id} finished without a result")
        return result

    # -------------------------------------------------------------------------
    # Graph nodes
    # -------------------------------------------------------------------------

    async def _plan(self, state: NodeVisitState) -> dict[str, Any]:
        self.check_budget()
        node = await self._load_node(state["node_id"])
        doc_id = await self.scratchpads.ensure(self.run, node, self.actor_id)
        await self._set_status(node, NodeStatus.PLANNING, RoleState.PLANNER, "planner_start")

        ctx = await self._role_context(node, doc_id)
        planner = await self.roles.call_planner(
            ctx, at_max_depth=node.depth >= self.max_tree_depth
        )
        await self._append_role_entry(node, doc_id, "Planner", planner.scratchpad)

        logger.info(
            "node_planned",
            run_id=self.run.id,
            node_id=node.id,
            depth=node.depth,
            mode=planner.mode,
            replanned=state["replanned"],
        )
        return {
            "depth": node.depth,
            "planner": planner,
            "child_ids": [],
            "outcome": None,
            "route": None,
        }

    def _route_after_plan(self, state: NodeVisitState) -> str:
        planner = state["planner"]
        if planner is None or not planner.wants_delegation:
            return "leaf"
        if state["depth"] >= self.max_tree_depth:
            logger.info(
                "delegation_blocked_max_depth",
                run_id=self.run.id,
                node_id=state["node_id"],
                max_tree_depth=self.max_tree_depth,
            )
            return "leaf"
        return "delegate"

    async def _execute_leaf(self, state: NodeVisitState) -> dict[str, Any]:
        node = await self._load_node(state["node_id"])
        doc_id = node.scratchpad_doc_id or await self.scratchpads.ensure(
            self.run, node, self.actor_id
        )
        await self._set_status(node, NodeStatus.EXECUTING, RoleState.EXECUTOR, "leaf_execute")

        ctx = await self._role_context(node, doc_id)
        output = await self.roles.call_executor(
            ctx,
            tool_guide=self.tool_guide,
            allow_tool_calls=True,
            max_tool_calls=self.max_tool_calls_per_pass,
        )

        calls = output.tool_calls(limit=self.max_tool_calls_per_pass)
        if calls:
            batch = await run_tool_batch(
                tool_context=self.tool_context,
                events=self.events,
                scratchpads=self.scratchpads,
                node_id=node.id,
                scratchpad_doc_id=doc_id,
                calls=calls,
                phase=EXECUTOR_TOOLS_PHASE,
                metrics=self.metrics,
            )
            ctx = await self._role_context(node, doc_id)
            # Any tool_call actions in the second pass are ignored.
            output = await self.roles.call_executor(
                ctx,
                tool_guide=self.tool_guide,
                allow_tool_calls=False,
                max_tool_calls=self.max_tool_calls_per_pass,
                tool_results=[r.to_dict() for r in batch.results],
            )

        tail = await self._append_role_entry(node, doc_id, "Executor", output.scratchpad)
        persisted = await persist_artifacts(
            tree_store=self.tree_store,
            ontology=self.ontology,
            events=self.events,
            run=self.run,
            node=node,
            actor_id=self.actor_id,
            specs=output.artifacts,
        )
        result = await self._finish(node, NodeOutcome(output.result, persisted, tail))
        return {"result": result}

    async def _delegate(self, state: NodeVisitState) -> dict[str, Any]:
        planner = state["planner"]
        if planner is None or planner.plan is None:
            raise RuntimeError("delegate reached without a plan")

        node = await self._load_node(state["node_id"])
        await self._set_status(node, NodeStatus.DELEGATING, RoleState.PLANNER, "plan_delegated")

        snapshot = await self._persist_plan(node, planner.plan)

        child_ids: list[str] = []
        for band in snapshot.bands:
            self.check_budget()
            children = [await self._create_child(node, band, step) for step in band.steps]
            child_ids.extend(child.id for child in children)

            logger.info(
                "band_started",
                run_id=self.run.id,
                node_id=node.id,
                band_index=band.index,
                child_count=len(children),
            )
            await run_with_concurrency(
                children,
                self.max_parallel_children,
                lambda child: self.run_node(child.id),
            )

        return {"child_ids": child_ids}

    async def _aggregate(self, state: NodeVisitState) -> dict[str, Any]:
        node = await self._load_node(state["node_id"])
        doc_id = node.scratchpad_doc_id or await self.scratchpads.ensure(
            self.run, node, self.actor_id
        )
        await self._set_status(
            node, NodeStatus.AGGREGATING, RoleState.EXECUTOR, "aggregate_children"
        )

        children = [await self._load_node(child_id) for child_id in state["child_ids"]]
        child_results = await collect_child_summaries(
            self.ontology, children, settings.child_document_prompt_chars
        )

        ctx = await self._role_context(node, doc_id)
        output = await self.roles.call_aggregator(ctx, child_results=child_results)
        tail = await self._append_role_entry(node, doc_id, "Aggregator", output.scratchpad)
        persisted = await persist_artifacts(
            tree_store=self.tree_store,
            ontology=self.ontology,
            events=self.events,
            run=self.run,
            node=node,
            actor_id=self.actor_id,
            specs=output.artifacts,
        )

        if output.next.should_replan and not state["replanned"]:
            await self.events.append(
                self.run.id,
                node.id,
                ReplanRequestedPayload(
                    reason=output.next.replan_reason or "replan_requested",
                    based_on_child_ids=list(state["child_ids"]),
                ),
            )
            logger.info("node_replan_requested", run_id=self.run.id, node_id=node.id)
            return {"replanned": True, "route": "replan"}

        return {"outcome": NodeOutcome(output.result, persisted, tail), "route": "complete"}

    def _route_after_aggregate(self, state: NodeVisitState) -> str:
        return "replan" if state["route"] == "replan" else "complete"

    async def _complete(self, state: NodeVisitState) -> dict[str, Any]:
        outcome = state["outcome"]
        if outcome is None:
            raise RuntimeError("complete reached without an aggregator result")
        node = await self._load_node(state["node_id"])
        return {"result": await self._finish(node, outcome)}

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def check_budget(self) -> None:
        """Raise ``BudgetExceededError`` once the deadline has passed."""
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise BudgetExceededError()

    async def _load_node(self, node_id: str) -> Node:
        node = await self.tree_store.get_node(node_id)
        if node is None:
            raise LookupError(f"Node not found: {node_id}")
        return node

    async def _role_context(self, node: Node, doc_id: str) -> RoleContext:
        return RoleContext(
            run=self.run,
            node=node,
            context_type=self.tool_context.context_type,
            context_project_id=self._context_project_id,
            scratchpad=await self.scratchpads.load(doc_id),
            on_usage=self.metrics.on_usage if self.metrics else None,
        )

    @property
    def _context_project_id(self) -> str | None:
        if self.tool_context.context_type == ContextType.PROJECT:
            return self.tool_context.context_project_id
        return None

    async def _set_status(
        self,
        node: Node,
        status: NodeStatus,
        role: RoleState,
        message: str,
    ) -> None:
        await self.tree_store.update_node_status(node.id, status, role_state=role)
        await self.events.append(
            self.run.id,
            node.id,
            NodeStatusPayload(status=status.value, role=role.value, message=message),
        )

    async def _append_role_entry(
        self,
        node: Node,
        doc_id: str,
        heading: str,
        update: ScratchpadUpdate,
    ) -> str:
        """Append a role's scratchpad markdown, returning the emitted preview ("" if none)."""
        if not update.append_markdown.strip():
            return ""
        return await self.scratchpads.append(
            self.run.id,
            node.id,
            doc_id,
            format_entry(heading, update.append_markdown),
            tail_preview=update.tail_preview,
        )

    async def _persist_plan(self, node: Node, plan: PlanSpec) -> PlanSnapshot:
        """Persist the next plan version with stable step ids.

        Steps whose title matches a step of the previous version keep its id;
        otherwise the planner's id is used, or a fresh one.
        """
        previous = await self.tree_store.get_latest_plan(node.id)
        ids_by_title: dict[str, str] = {}
        if previous is not None:
            for band in previous.plan.bands:
                for step in band.steps:
                    ids_by_title.setdefault(step.title, step.id)

        indexed = [
            (band.index if band.index is not None else position, band)
            for position, band in enumerate(plan.bands)
        ]
        bands: list[PlanBand] = []
        for band_index, band in sorted(indexed, key=lambda pair: pair[0]):
            steps = [
                PlanStep(
                    id=ids_by_title.get(step.title) or step.id or new_id("step"),
                    title=step.title,
                    reason=step.reason,
                    success_criteria=step.success_criteria,
                    step_index=step.step_index if step.step_index is not None else position,
                )
                for position, step in enumerate(band.steps)
            ]
            bands.append(
                PlanBand(
                    index=band_index,
                    goal=band.goal,
                    parallelizable=band.parallelizable,
                    steps=steps,
                )
            )

        stored = await self.tree_store.create_plan(
            self.run.id,
            node.id,
            PlanSnapshot(version=0, summary=plan.summary, bands=bands),
        )
        await self.events.append(
            self.run.id,
            node.id,
            PlanCreatedPayload(
                plan_id=stored.id,
                version=stored.version,
                summary=plan.summary,
                band_count=len(bands),
            ),
        )
        for band in bands:
            await self.events.append(
                self.run.id,
                node.id,
                PlanBandCreatedPayload(
                    plan_id=stored.id,
                    band_index=band.index,
                    goal=band.goal,
                    step_ids=[step.id for step in band.steps],
                ),
            )
        logger.info(
            "plan_persisted",
            run_id=self.run.id,
            node_id=node.id,
            version=stored.version,
            band_count=len(bands),
        )
        return stored.plan

    async def _create_child(self, parent: Node, band: PlanBand, step: PlanStep) -> Node:
        child = await self.tree_store.create_node(
            Node(
                id=new_id("node"),
                run_id=self.run.id,
                parent_node_id=parent.id,
                title=step.title,
                reason=step.reason,
                success_criteria=step.success_criteria,
                depth=parent.depth + 1,
                band_index=band.index,
                step_index=step.step_index,
                context={"step_id": step.id},
            )
        )
        await self.events.append(
            self.run.id,
            child.id,
            NodeCreatedPayload(
                parent_node_id=parent.id,
                title=child.title,
                reason=child.reason,
                success_criteria=child.success_criteria,
                depth=child.depth,
                band_index=child.band_index,
                step_index=child.step_index,
            ),
        )
        await self.events.append(
            self.run.id,
            parent.id,
            StepCreatedPayload(
                step_id=step.id,
                title=step.title,
                reason=step.reason,
                success_criteria=step.success_criteria,
                band_index=band.index,
                step_index=step.step_index,
                child_node_id=child.id,
            ),
        )
        await self.events.append(
            self.run.id,
            parent.id,
            NodeDelegatedPayload(step_id=step.id, child_node_id=child.id),
        )
        return child

    async def _finish(self, node: Node, outcome: NodeOutcome) -> ResultEnvelope:
        """Store the node's result, emit its parent hint and mark it completed."""
        envelope = build_result_envelope(
            outcome.result,
            outcome.persisted,
            node.scratchpad_doc_id,
            outcome.scratchpad_tail,
        )
        hint_type, artifact_ids, document_ids = resolve_parent_hint(
            outcome.result, outcome.persisted
        )
        await self.events.append(
            self.run.id,
            node.id,
            ParentHintPayload(
                parent_node_id=node.parent_node_id,
                hint_type=hint_type.value,
                artifact_ids=artifact_ids,
                document_ids=document_ids,
            ),
        )

        await self.tree_store.update_node_status(
            node.id,
            NodeStatus.COMPLETED,
            role_state=RoleState.EXECUTOR,
            result=envelope,
            ended_at=time.time(),
        )
        await self.events.append(self.run.id, node.id, NodeResultPayload(result=envelope))
        await self.events.append(self.run.id, node.id, NodeCompletedPayload())
        logger.info(
            "node_completed",
            run_id=self.run.id,
            node_id=node.id,
            depth=node.depth,
            artifact_count=len(envelope.artifact_ids),
        )
        return envelope

    async def _fail_node(self, node_id: str, error: BaseException) -> None:
        canceled = isinstance(error, asyncio.CancelledError)
        message = CANCELED_MESSAGE if canceled else str(error) or type(error).__name__
        log = logger.warning if canceled else logger.error
        log(
            "node_failed",
            run_id=self.run.id,
            node_id=node_id,
            error=message,
            error_type=type(error).__name__,
        )
        updated = await self.tree_store.update_node_status(
            node_id, NodeStatus.FAILED, ended_at=time.time()
        )
        if updated:
            await self.events.append(
                self.run.id,
                node_id,
                NodeFailedPayload(error=message, retryable=canceled),
            )
