"""Static registry of tools available to the executor role.

Every tool declares the contexts it may run in. ``base`` tools are available
everywhere; ``global`` and ``project`` tools only in runs of that context. The
guide shown to the LLM is rendered from the same registry, so it can never
advertise a tool the context would refuse.
"""

import types
from dataclasses import dataclass
from typing import Any, Literal, Union, get_args, get_origin

from models.schemas import ContextType
from sandbox import arguments as a

BASE_CONTEXT = "base"


@dataclass(frozen=True)
class ToolSpec:
    """Declaration of one tool.

    Attributes:
        name: Tool name as the LLM writes it.
        summary: One-line description for the tool guide.
        contexts: Contexts the tool may run in ("base", "global", "project").
        args_model: Pydantic model validating the tool's arguments.
    """

    name: str
    summary: str
    contexts: frozenset[str]
    args_model: type[a.ToolArgs]

    def describe_args(self) -> str:
        return describe_args(self.args_model)


_READ = frozenset({ContextType.GLOBAL.value, ContextType.PROJECT.value})
_BASE = frozenset({BASE_CONTEXT})
_GLOBAL = frozenset({ContextType.GLOBAL.value})
_PROJECT = frozenset({ContextType.PROJECT.value})

TOOL_SPECS: list[ToolSpec] = [
    # Projects
    ToolSpec("list_projects", "List accessible projects.", _READ, a.ListProjectsArgs),
    ToolSpec("search_projects", "Search accessible projects by text.", _READ, a.SearchProjectsArgs),
    ToolSpec(
        "get_project_details",
        "Project record with entity counts and recent items.",
        _READ,
        a.GetProjectDetailsArgs,
    ),
    ToolSpec(
        "get_project_graph",
        "All entities and edges of the context project.",
        _PROJECT,
        a.GetProjectGraphArgs,
    ),
    ToolSpec("create_project", "Create a new project you own.", _GLOBAL, a.CreateProjectArgs),
    ToolSpec("update_project", "Update a project's fields.", _READ, a.UpdateProjectArgs),
    # Documents
    ToolSpec("list_documents", "List documents.", _READ, a.ListDocumentsArgs),
    ToolSpec("search_documents", "Search documents by text.", _READ, a.SearchDocumentsArgs),
    ToolSpec(
        "get_document_details",
        "Document record including its content.",
        _READ,
        a.GetDocumentDetailsArgs,
    ),
    ToolSpec("create_document", "Create a document.", _READ, a.CreateDocumentArgs),
    ToolSpec("update_document", "Update a document.", _READ, a.UpdateDocumentArgs),
    # Tasks & goals
    ToolSpec("list_tasks", "List tasks.", _READ, a.ListTasksArgs),
    ToolSpec("search_tasks", "Search tasks by text.", _READ, a.SearchTasksArgs),
    ToolSpec("get_task_details", "Task record.", _READ, a.GetTaskDetailsArgs),
    ToolSpec("create_task", "Create a task.", _READ, a.CreateTaskArgs),
    ToolSpec("update_task", "Update a task.", _READ, a.UpdateTaskArgs),
    ToolSpec("list_goals", "List goals.", _READ, a.ListGoalsArgs),
    ToolSpec("get_goal_details", "Goal record.", _READ, a.GetGoalDetailsArgs),
    ToolSpec("create_goal", "Create a goal.", _READ, a.CreateGoalArgs),
    ToolSpec("update_goal", "Update a goal.", _READ, a.UpdateGoalArgs),
    # Graph
    ToolSpec(
        "get_linked_entities",
        "Edges touching an entity.",
        _BASE,
        a.GetLinkedEntitiesArgs,
    ),
    ToolSpec("search_ontology", "Search across all entity kinds.", _READ, a.SearchOntologyArgs),
    ToolSpec(
        "link_entities",
        "Link two entities of the same project.",
        _PROJECT,
        a.LinkEntitiesArgs,
    ),
    ToolSpec("unlink_edge", "Remove an edge.", _PROJECT, a.UnlinkEdgeArgs),
    # External
    ToolSpec("web_search", "Search the web.", _BASE, a.WebSearchArgs),
    # Run introspection
    ToolSpec("list_runs", "List your tree agent runs.", _BASE, a.ListRunsArgs),
    ToolSpec("get_run", "Run record with status and metrics.", _BASE, a.GetRunArgs),
    ToolSpec("list_nodes", "Nodes of a run.", _BASE, a.ListNodesArgs),
    ToolSpec("list_events", "Events of a run after a seq.", _BASE, a.ListEventsArgs),
    ToolSpec("get_artifacts", "Artifacts of a run or node.", _BASE, a.GetArtifactsArgs),
]

TOOL_REGISTRY: dict[str, ToolSpec] = {spec.name: spec for spec in TOOL_SPECS}


def get_tool_spec(name: str) -> ToolSpec | None:
    """Look up a registered tool by name."""
    return TOOL_REGISTRY.get(name)


def is_tool_allowed(name: str, context_type: ContextType | str) -> bool:
    """Whether a tool may run in a context.

    Args:
        name: Tool name.
        context_type: The run's context.

    Returns:
        True when the tool is registered and declares ``base`` or the context.
    """
    spec = TOOL_REGISTRY.get(name)
    if spec is None:
        return False
    return BASE_CONTEXT in spec.contexts or str(context_type) in spec.contexts


def get_default_tool_names(context_type: ContextType | str) -> list[str]:
    """Sorted names of every tool allowed in a context."""
    return sorted(name for name in TOOL_REGISTRY if is_tool_allowed(name, context_type))


def get_tool_guide(
    context_type: ContextType | str,
    tool_names: list[str] | None = None,
) -> str:
    """Render the tool guide shown to the executor.

    Args:
        context_type: The run's context.
        tool_names: Optional subset to render. Names not allowed in the
            context are dropped.

    Returns:
        One ``- name: summary args: {...}`` line per allowed tool.
    """
    names = tool_names if tool_names is not None else get_default_tool_names(context_type)
    lines = []
    for name in sorted(set(names)):
        if not is_tool_allowed(name, context_type):
            continue
        spec = TOOL_REGISTRY[name]
        lines.append(f"- {name}: {spec.summary} args: {spec.describe_args()}")
    return "\n".join(lines)


def describe_args(model: type[a.ToolArgs]) -> str:
    """Describe an args model as ``{ required: type, optional?: type }``."""
    parts = []
    for field_name, field in model.model_fields.items():
        marker = "" if field.is_required() else "?"
        parts.append(f"{field_name}{marker}: {_type_label(field.annotation)}")
    return "{ " + ", ".join(parts) + " }" if parts else "{}"


def _type_label(annotation: Any) -> str:
    origin = get_origin(annotation)
    if origin is Literal:
        return "|".join(str(value) for value in get_args(annotation))
    if origin in (Union, types.UnionType):
        inner = [arg for arg in get_args(annotation) if arg is not type(None)]
        return _type_label(inner[0]) if inner else "any"
    if origin is list:
        args = get_args(annotation)
        return f"{_type_label(args[0])}[]" if args else "array"
    if origin is dict or annotation is dict:
        return "object"
    return {str: "string", int: "number", float: "number", bool: "boolean"}.get(
        annotation, "any"
    )
