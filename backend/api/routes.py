"""HTTP API routes for the tree agent backend.

This module defines the endpoints to enqueue runs and inspect their runs,
nodes and events. Live event streaming is handled via WebSocket in
websocket.py.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Annotated, Any

import structlog
from fastapi import APIRouter, HTTPException, Path, Query, status

from config import settings
from events.types import NodeCreatedPayload
from models.database import new_id
from models.schemas import (
    ContextType,
    CreateRunRequest,
    HealthResponse,
    Node,
    NodeStatus,
    Run,
    RunBudgets,
    RunResponse,
    RunScope,
    RunStatus,
    TreeAgentJob,
)

if TYPE_CHECKING:
    from events.log import EventLog
    from models.database import TreeStore
    from models.ontology import OntologyStore
    from worker import RunWorker

logger = structlog.get_logger(__name__)

router = APIRouter()

WORKSPACE_PROJECT_TYPE = "project.tree_agent.workspace"
ROOT_TITLE_MAX_CHARS = 120


@dataclass
class RunServices:
    """Collaborators the routes depend on."""

    tree_store: TreeStore
    ontology: OntologyStore
    events: EventLog
    worker: RunWorker


# Services dependency (set during application startup)
_services: RunServices | None = None


def set_run_services(services: RunServices) -> None:
    """Set the services used by all routes.

    This should be called during application startup.

    Args:
        services: Stores, event log and worker to use.
    """
    global _services
    _services = services
    logger.info("run_services_configured")


def get_run_services() -> RunServices:
    """Get the configured services.

    Raises:
        RuntimeError: If the services have not been configured.
    """
    if _services is None:
        logger.error("run_services_not_configured")
        raise RuntimeError("Run services not configured. Call set_run_services() during startup.")
    return _services


async def _get_run_or_404(run_id: str) -> Run:
    run = await get_run_services().tree_store.get_run(run_id)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run {run_id} not found",
        )
    return run


# -----------------------------------------------------------------------------
# Runs
# -----------------------------------------------------------------------------


@router.post(
    "/runs",
    response_model=RunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Enqueue a run",
    description="Create a run with its workspace project and root node, and queue it.",
)
async def create_run(request: CreateRunRequest) -> RunResponse:
    """Create and enqueue a run.

    Args:
        request: Objective, budgets and tool context of the run.

    Returns:
        RunResponse with the run, root node and workspace ids.

    Raises:
        HTTPException: 400 for an empty objective or a project context without
            a project id, 403 when the caller is not a member of the context
            project, 429 when the caller already has too many active runs.
    """
    services = get_run_services()

    objective = request.objective.strip()
    if not objective:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Objective cannot be empty",
        )

    context_project_id = (request.context_project_id or "").strip() or None
    if request.context_type == ContextType.PROJECT and context_project_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="context_project_id is required for project context",
        )

    active = await services.tree_store.count_active_runs(request.user_id)
    if active >= settings.max_active_runs_per_user:
        logger.warning("run_limit_reached", user_id=request.user_id, active_runs=active)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"You already have {settings.max_active_runs_per_user} active runs.",
        )

    actor_id = await services.ontology.ensure_actor(request.user_id)
    if request.context_type != ContextType.PROJECT:
        context_project_id = None
    elif context_project_id is None or not await services.ontology.is_project_member(
        context_project_id, actor_id
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have access to that context_project_id",
        )

    workspace = await services.ontology.create_project(
        f"Tree Agent: {objective[:80]}",
        actor_id,
        type_key=WORKSPACE_PROJECT_TYPE,
        props={"tree_agent": True},
    )
    await services.ontology.add_project_member(workspace["id"], actor_id)

    budgets = request.budgets or RunBudgets()
    if budgets.max_wall_clock_ms is None:
        budgets = RunBudgets(max_wall_clock_ms=settings.default_max_wall_clock_ms)

    is_project = request.context_type == ContextType.PROJECT
    run = await services.tree_store.create_run(
        Run(
            id=new_id("run"),
            user_id=request.user_id,
            objective=objective,
            status=RunStatus.QUEUED,
            workspace_project_id=workspace["id"],
            scope=RunScope.PROJECT if is_project else RunScope.GLOBAL,
            project_ids=[context_project_id] if is_project and context_project_id else [],
            budgets=budgets,
            metrics={
                "tokens_total": 0,
                "cost_total_usd": 0,
                "context": {"type": request.context_type.value, "project_id": context_project_id},
            },
        )
    )
    root = await services.tree_store.create_node(
        Node(
            id=new_id("node"),
            run_id=run.id,
            title=objective[:ROOT_TITLE_MAX_CHARS],
            reason="Root objective",
            success_criteria=request.success_criteria,
            status=NodeStatus.PLANNING,
            context={
                "objective": objective,
                "context_type": request.context_type.value,
                "context_project_id": context_project_id,
            },
        )
    )
    await services.tree_store.set_run_root(run.id, root.id)
    await services.events.append(
        run.id,
        root.id,
        NodeCreatedPayload(
            parent_node_id=None,
            title=root.title,
            reason=root.reason,
            success_criteria=root.success_criteria,
            depth=0,
        ),
    )

    await services.worker.enqueue(
        TreeAgentJob(
            run_id=run.id,
            root_node_id=root.id,
            workspace_project_id=workspace["id"],
            budgets=budgets,
            context_type=request.context_type,
            context_project_id=context_project_id,
        )
    )

    logger.info(
        "run_created",
        run_id=run.id,
        user_id=request.user_id,
        context_type=request.context_type,
        objective_length=len(objective),
    )
    return RunResponse(
        run_id=run.id,
        root_node_id=root.id,
        workspace_project_id=workspace["id"],
        status=run.status,
        websocket_url=f"/ws/runs/{run.id}",
    )


@router.get(
    "/runs",
    response_model=list[Run],
    summary="List runs",
    description="List a user's runs, newest first.",
)
async def list_runs(
    user_id: Annotated[str, Query(description="Owner of the runs", min_length=1)],
    run_status: Annotated[
        RunStatus | None, Query(alias="status", description="Filter by run status")
    ] = None,
    limit: Annotated[int, Query(description="Maximum runs to return", ge=1, le=200)] = 50,
) -> list[Run]:
    return await get_run_services().tree_store.list_runs(
        user_id, status=run_status, limit=limit
    )


@router.get(
    "/runs/{run_id}",
    response_model=Run,
    summary="Get run",
    description="Get a run with its status, budgets and metrics.",
)
async def get_run(
    run_id: Annotated[str, Path(description="The run ID")],
) -> Run:
    return await _get_run_or_404(run_id)


@router.get(
    "/runs/{run_id}/nodes",
    response_model=list[Node],
    summary="List run nodes",
    description="List the nodes of a run in tree order.",
)
async def list_run_nodes(
    run_id: Annotated[str, Path(description="The run ID")],
    parent_node_id: Annotated[str | None, Query(description="Only children of this node")] = None,
    limit: Annotated[int, Query(description="Maximum nodes to return", ge=1, le=1000)] = 500,
) -> list[Node]:
    await _get_run_or_404(run_id)
    return await get_run_services().tree_store.list_nodes(
        run_id, parent_node_id=parent_node_id, limit=limit
    )


@router.get(
    "/runs/{run_id}/events",
    summary="List run events",
    description="List a run's events with seq greater than since_seq, in seq order.",
)
async def list_run_events(
    run_id: Annotated[str, Path(description="The run ID")],
    since_seq: Annotated[int, Query(description="Return events after this seq", ge=0)] = 0,
    limit: Annotated[int, Query(description="Maximum events to return", ge=1, le=1000)] = 500,
) -> dict[str, Any]:
    await _get_run_or_404(run_id)
    events = await get_run_services().tree_store.list_events(
        run_id, since_seq=since_seq, limit=limit
    )
    next_seq = events[-1]["seq"] if events else since_seq
    return {"run_id": run_id, "events": events, "next_seq": next_seq}


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with worker queue depth.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint.

    Returns:
        HealthResponse with status and the number of queued jobs.
    """
    try:
        services = get_run_services()
    except RuntimeError:
        # Services not configured yet (e.g., during startup)
        return HealthResponse(status="starting")

    overall_status = "healthy" if services.worker.is_running else "degraded"
    return HealthResponse(status=overall_status, queued_jobs=services.worker.queue_size)
