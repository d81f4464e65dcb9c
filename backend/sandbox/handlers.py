"""Tool handlers.

Each handler takes the run's ``ToolExecutionContext`` and the tool's
validated arguments and returns a ``ToolOutput``. Handlers raise freely;
the context converts every exception into a failed ``ToolResult``.
"""

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from models.ontology import ENTITY_KINDS
from models.schemas import NodeStatus, RunStatus
from sandbox import arguments as a
from sandbox.calls import ToolExecutionError, ToolOutput
from sandbox.security import ToolAuthorizationError, safe_limit

if TYPE_CHECKING:
    from sandbox.context import ToolExecutionContext

Handler = Callable[["ToolExecutionContext", Any], Awaitable[ToolOutput]]

MAX_EVENTS_LIMIT = 200


def _entity_summary(entity: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": entity["id"],
        "kind": entity["kind"],
        "project_id": entity["project_id"],
        "title": entity["title"],
        "state_key": entity.get("state_key"),
        "type_key": entity.get("type_key"),
    }


def _project_summary(project: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": project["id"],
        "name": project["name"],
        "description": project.get("description"),
        "state_key": project["state_key"],
        "type_key": project["type_key"],
    }


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


async def list_projects(ctx: "ToolExecutionContext", args: a.ListProjectsArgs) -> ToolOutput:
    projects = await ctx.ontology.list_projects(
        sorted(ctx.allowed_projects),
        state_key=args.state_key,
        type_key=args.type_key,
        limit=safe_limit(args.limit),
    )
    return ToolOutput([_project_summary(p) for p in projects])


async def search_projects(ctx: "ToolExecutionContext", args: a.SearchProjectsArgs) -> ToolOutput:
    projects = await ctx.ontology.list_projects(
        sorted(ctx.allowed_projects),
        state_key=args.state_key,
        search=args.search,
        limit=safe_limit(args.limit),
    )
    return ToolOutput([_project_summary(p) for p in projects])


async def get_project_details(
    ctx: "ToolExecutionContext", args: a.GetProjectDetailsArgs
) -> ToolOutput:
    project = await ctx.require_project(args.project_id)
    counts = await ctx.ontology.count_entities(project["id"])
    recent = {}
    for kind in ENTITY_KINDS:
        entities = await ctx.ontology.list_entities(kind, [project["id"]], limit=10)
        recent[f"{kind}s"] = [_entity_summary(e) for e in entities]
    return ToolOutput({"project": project, "counts": counts, "recent": recent})


async def get_project_graph(ctx: "ToolExecutionContext", args: a.GetProjectGraphArgs) -> ToolOutput:
    project_id = args.project_id or ctx.default_project_id
    if not project_id:
        raise ToolExecutionError("project_id is required")
    project = await ctx.require_project(project_id)
    entities: list[dict[str, Any]] = []
    for kind in ENTITY_KINDS:
        rows = await ctx.ontology.list_entities(kind, [project_id], limit=50)
        entities.extend(_entity_summary(e) for e in rows)
    edges = await ctx.ontology.list_project_edges(project_id)
    return ToolOutput(
        {"project": _project_summary(project), "entities": entities, "edges": edges}
    )


async def create_project(ctx: "ToolExecutionContext", args: a.CreateProjectArgs) -> ToolOutput:
    project = await ctx.ontology.create_project(
        args.name,
        ctx.actor_id,
        description=args.description,
        type_key=args.type_key or "project.generic",
        state_key=args.state_key or "active",
        props=ctx.with_run_props(args.props),
    )
    await ctx.ontology.add_project_member(project["id"], ctx.actor_id, role_key="owner")
    ctx.grant_project(project["id"])
    return ToolOutput(project, {"created_projects": [project["id"]]})


async def update_project(ctx: "ToolExecutionContext", args: a.UpdateProjectArgs) -> ToolOutput:
    await ctx.require_project(args.project_id)
    project = await ctx.ontology.update_project(
        args.project_id,
        args.model_dump(exclude={"project_id"}, exclude_none=True),
    )
    return ToolOutput(project)


# ---------------------------------------------------------------------------
# Documents, tasks, goals
# ---------------------------------------------------------------------------


async def _list_kind(
    ctx: "ToolExecutionContext",
    kind: str,
    project_id: str | None,
    limit: int | None,
    *,
    state_key: str | None = None,
    type_key: str | None = None,
    search: str | None = None,
) -> ToolOutput:
    entities = await ctx.ontology.list_entities(
        kind,
        ctx.resolve_read_projects(project_id),
        state_key=state_key,
        type_key=type_key,
        search=search,
        limit=safe_limit(limit),
    )
    return ToolOutput([_entity_summary(e) for e in entities])


async def list_documents(ctx: "ToolExecutionContext", args: a.ListDocumentsArgs) -> ToolOutput:
    return await _list_kind(
        ctx,
        "document",
        args.project_id,
        args.limit,
        state_key=args.state_key,
        type_key=args.type_key,
    )


async def search_documents(ctx: "ToolExecutionContext", args: a.SearchDocumentsArgs) -> ToolOutput:
    return await _list_kind(ctx, "document", args.project_id, args.limit, search=args.search)


async def get_document_details(
    ctx: "ToolExecutionContext", args: a.GetDocumentDetailsArgs
) -> ToolOutput:
    return ToolOutput(await ctx.require_entity("document", args.document_id))


async def create_document(ctx: "ToolExecutionContext", args: a.CreateDocumentArgs) -> ToolOutput:
    project_id = ctx.resolve_write_project(args.project_id)
    document = await ctx.ontology.create_entity(
        "document",
        project_id,
        args.title,
        ctx.actor_id,
        description=args.description,
        content=args.content or "",
        type_key=args.type_key or "document.generic",
        state_key=args.state_key or "draft",
        props=ctx.with_run_props(args.props),
    )
    return ToolOutput(document, {"created_documents": [document["id"]]})


async def update_document(ctx: "ToolExecutionContext", args: a.UpdateDocumentArgs) -> ToolOutput:
    await ctx.require_entity("document", args.document_id)
    document = await ctx.ontology.update_entity(
        "document",
        args.document_id,
        args.model_dump(exclude={"document_id"}, exclude_none=True),
    )
    return ToolOutput(document)


async def list_tasks(ctx: "ToolExecutionContext", args: a.ListTasksArgs) -> ToolOutput:
    return await _list_kind(ctx, "task", args.project_id, args.limit, state_key=args.state_key)


async def search_tasks(ctx: "ToolExecutionContext", args: a.SearchTasksArgs) -> ToolOutput:
    return await _list_kind(ctx, "task", args.project_id, args.limit, search=args.search)


async def get_task_details(ctx: "ToolExecutionContext", args: a.GetTaskDetailsArgs) -> ToolOutput:
    return ToolOutput(await ctx.require_entity("task", args.task_id))


async def create_task(ctx: "ToolExecutionContext", args: a.CreateTaskArgs) -> ToolOutput:
    project_id = ctx.resolve_write_project(args.project_id)
    task = await ctx.ontology.create_entity(
        "task",
        project_id,
        args.title,
        ctx.actor_id,
        description=args.description,
        type_key="task.generic",
        state_key=args.state_key or "todo",
        priority=args.priority,
        props=ctx.with_run_props(args.props),
    )
    return ToolOutput(task, {"created_tasks": [task["id"]]})


async def update_task(ctx: "ToolExecutionContext", args: a.UpdateTaskArgs) -> ToolOutput:
    await ctx.require_entity("task", args.task_id)
    task = await ctx.ontology.update_entity(
        "task",
        args.task_id,
        args.model_dump(exclude={"task_id"}, exclude_none=True),
    )
    return ToolOutput(task)


async def list_goals(ctx: "ToolExecutionContext", args: a.ListGoalsArgs) -> ToolOutput:
    return await _list_kind(ctx, "goal", args.project_id, args.limit, state_key=args.state_key)


async def get_goal_details(ctx: "ToolExecutionContext", args: a.GetGoalDetailsArgs) -> ToolOutput:
    return ToolOutput(await ctx.require_entity("goal", args.goal_id))


async def create_goal(ctx: "ToolExecutionContext", args: a.CreateGoalArgs) -> ToolOutput:
    project_id = ctx.resolve_write_project(args.project_id)
    goal = await ctx.ontology.create_entity(
        "goal",
        project_id,
        args.name,
        ctx.actor_id,
        description=args.description,
        type_key="goal.generic",
        state_key=args.state_key or "active",
        props=ctx.with_run_props(args.props),
    )
    return ToolOutput(goal, {"created_goals": [goal["id"]]})


async def update_goal(ctx: "ToolExecutionContext", args: a.UpdateGoalArgs) -> ToolOutput:
    await ctx.require_entity("goal", args.goal_id)
    fields = args.model_dump(exclude={"goal_id", "name"}, exclude_none=True)
    if args.name is not None:
        fields["title"] = args.name
    return ToolOutput(await ctx.ontology.update_entity("goal", args.goal_id, fields))


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


async def get_linked_entities(
    ctx: "ToolExecutionContext", args: a.GetLinkedEntitiesArgs
) -> ToolOutput:
    await ctx.require_entity(args.entity_kind, args.entity_id)
    edges = await ctx.ontology.list_edges(
        args.entity_id,
        rel=args.rel,
        direction=args.direction,
        limit=safe_limit(args.limit),
    )
    return ToolOutput([e for e in edges if e["project_id"] in ctx.allowed_projects])


async def search_ontology(ctx: "ToolExecutionContext", args: a.SearchOntologyArgs) -> ToolOutput:
    project_ids = ctx.resolve_read_projects(args.project_id)
    kinds = args.entity_types or ["project", *ENTITY_KINDS]
    limit = safe_limit(args.limit)
    results: list[dict[str, Any]] = []
    for kind in kinds:
        if kind == "project":
            projects = await ctx.ontology.list_projects(
                project_ids, search=args.search, limit=limit
            )
            results.extend({"kind": "project", **_project_summary(p)} for p in projects)
        else:
            entities = await ctx.ontology.list_entities(
                kind, project_ids, search=args.search, limit=limit
            )
            results.extend(_entity_summary(e) for e in entities)
    return ToolOutput(results[:limit])


async def link_entities(ctx: "ToolExecutionContext", args: a.LinkEntitiesArgs) -> ToolOutput:
    src_project = await ctx.ontology.get_entity_project_id(args.src_kind, args.src_id)
    dst_project = await ctx.ontology.get_entity_project_id(args.dst_kind, args.dst_id)
    if src_project is None or dst_project is None:
        raise ToolExecutionError("entity not found")
    if src_project != dst_project:
        raise ToolExecutionError("entities must belong to the same project")
    if src_project not in ctx.allowed_projects:
        raise ToolAuthorizationError("unauthorized project")
    edge = await ctx.ontology.create_edge(
        src_project,
        args.src_kind,
        args.src_id,
        args.dst_kind,
        args.dst_id,
        args.rel,
        ctx.with_run_props(args.props),
    )
    return ToolOutput(edge, {"created_edges": [edge["id"]]})


async def unlink_edge(ctx: "ToolExecutionContext", args: a.UnlinkEdgeArgs) -> ToolOutput:
    edge = await ctx.ontology.get_edge(args.edge_id)
    if edge is None:
        raise ToolExecutionError("edge not found")
    if edge["project_id"] not in ctx.allowed_projects:
        raise ToolAuthorizationError("unauthorized edge")
    await ctx.ontology.delete_edge(args.edge_id)
    return ToolOutput({"deleted": True, "edge_id": args.edge_id})


# ---------------------------------------------------------------------------
# External
# ---------------------------------------------------------------------------


async def web_search(ctx: "ToolExecutionContext", args: a.WebSearchArgs) -> ToolOutput:
    result = await ctx.web_search.search(
        args.query,
        search_depth=args.search_depth,
        max_results=args.max_results,
        include_answer=args.include_answer,
        include_domains=args.include_domains,
        exclude_domains=args.exclude_domains,
    )
    return ToolOutput(result)


# ---------------------------------------------------------------------------
# Run introspection (read-only)
# ---------------------------------------------------------------------------


async def _require_own_run(ctx: "ToolExecutionContext", run_id: str) -> Any:
    run = await ctx.tree_store.get_run(run_id)
    if run is None:
        raise ToolExecutionError("run not found")
    if run.user_id != ctx.user_id:
        raise ToolAuthorizationError("unauthorized run")
    return run


async def list_runs(ctx: "ToolExecutionContext", args: a.ListRunsArgs) -> ToolOutput:
    status = RunStatus(args.status) if args.status else None
    runs = await ctx.tree_store.list_runs(
        user_id=ctx.user_id, status=status, limit=safe_limit(args.limit)
    )
    return ToolOutput(
        [
            {
                "id": r.id,
                "objective": r.objective,
                "status": r.status.value,
                "created_at": r.created_at,
            }
            for r in runs
        ]
    )


async def get_run(ctx: "ToolExecutionContext", args: a.GetRunArgs) -> ToolOutput:
    run = await _require_own_run(ctx, args.run_id)
    return ToolOutput(run.model_dump(mode="json"))


async def list_nodes(ctx: "ToolExecutionContext", args: a.ListNodesArgs) -> ToolOutput:
    await _require_own_run(ctx, args.run_id)
    nodes = await ctx.tree_store.list_nodes(
        args.run_id,
        parent_node_id=args.parent_node_id,
        status=NodeStatus(args.status) if args.status else None,
        depth=args.depth,
        limit=safe_limit(args.limit),
    )
    return ToolOutput(
        [
            {
                "id": n.id,
                "parent_node_id": n.parent_node_id,
                "title": n.title,
                "depth": n.depth,
                "status": n.status.value,
                "summary": n.result.summary if n.result else None,
            }
            for n in nodes
        ]
    )


async def list_events(ctx: "ToolExecutionContext", args: a.ListEventsArgs) -> ToolOutput:
    await _require_own_run(ctx, args.run_id)
    events = await ctx.tree_store.list_events(
        args.run_id,
        since_seq=args.since_seq or 0,
        limit=safe_limit(args.limit, fallback=50, maximum=MAX_EVENTS_LIMIT),
    )
    return ToolOutput(events)


async def get_artifacts(ctx: "ToolExecutionContext", args: a.GetArtifactsArgs) -> ToolOutput:
    await _require_own_run(ctx, args.run_id)
    artifacts = await ctx.tree_store.list_artifacts(
        args.run_id, node_id=args.node_id, limit=safe_limit(args.limit)
    )
    return ToolOutput([art.model_dump(mode="json") for art in artifacts])


TOOL_HANDLERS: dict[str, Handler] = {
    "list_projects": list_projects,
    "search_projects": search_projects,
    "get_project_details": get_project_details,
    "get_project_graph": get_project_graph,
    "create_project": create_project,
    "update_project": update_project,
    "list_documents": list_documents,
    "search_documents": search_documents,
    "get_document_details": get_document_details,
    "create_document": create_document,
    "update_document": update_document,
    "list_tasks": list_tasks,
    "search_tasks": search_tasks,
    "get_task_details": get_task_details,
    "create_task": create_task,
    "update_task": update_task,
    "list_goals": list_goals,
    "get_goal_details": get_goal_details,
    "create_goal": create_goal,
    "update_goal": update_goal,
    "get_linked_entities": get_linked_entities,
    "search_ontology": search_ontology,
    "link_entities": link_entities,
    "unlink_edge": unlink_edge,
    "web_search": web_search,
    "list_runs": list_runs,
    "get_run": get_run,
    "list_nodes": list_nodes,
    "list_events": list_events,
    "get_artifacts": get_artifacts,
}
