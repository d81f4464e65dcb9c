"""Shared test fixtures for backend tests.

Provides SQLite-backed stores on a temporary path, a fresh event bus and
event log, and factories for runs and scripted role outputs, so tests never
touch a real LLM API or the configured database.
"""

import sys
from dataclasses import dataclass
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from sandbox.security import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.log import EventLog  # noqa: E402
from models.database import TreeStore, new_id  # noqa: E402
from models.ontology import OntologyStore  # noqa: E402
from models.schemas import (  # noqa: E402
    ContextType,
    Node,
    Run,
    RunBudgets,
    RunScope,
    RunStatus,
)
from tree_agent.llm import MockLLMClient  # noqa: E402
from tree_agent.scratchpad import ScratchpadStore  # noqa: E402

USER_ID = "user_test"

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture()
def db_path(tmp_path) -> str:
    return str(tmp_path / "tree_agent.db")


@pytest.fixture()
async def tree_store(db_path: str) -> TreeStore:
    store = TreeStore(db_path)
    await store.init()
    return store


@pytest.fixture()
async def ontology(db_path: str) -> OntologyStore:
    store = OntologyStore(db_path)
    await store.init()
    return store


@pytest.fixture()
def event_log(tree_store: TreeStore, event_bus: EventBus) -> EventLog:
    return EventLog(tree_store, event_bus)


@pytest.fixture()
def scratchpads(
    ontology: OntologyStore, tree_store: TreeStore, event_log: EventLog
) -> ScratchpadStore:
    return ScratchpadStore(ontology, tree_store, event_log)


# ---------------------------------------------------------------------------
# Run factory
# ---------------------------------------------------------------------------


@dataclass
class RunFixture:
    """A persisted run with its workspace project and root node."""

    run: Run
    root: Node
    actor_id: str


async def create_test_run(
    tree_store: TreeStore,
    ontology: OntologyStore,
    *,
    objective: str = "Draft a launch plan",
    user_id: str = USER_ID,
    status: RunStatus = RunStatus.QUEUED,
    context_type: ContextType = ContextType.GLOBAL,
    context_project_id: str | None = None,
    budgets: RunBudgets | None = None,
) -> RunFixture:
    """Create the same records ``POST /runs`` creates, without enqueuing."""
    actor_id = await ontology.ensure_actor(user_id)
    workspace = await ontology.create_project(
        f"Tree Agent: {objective[:80]}",
        actor_id,
        type_key="project.tree_agent.workspace",
        props={"tree_agent": True},
    )
    await ontology.add_project_member(workspace["id"], actor_id)

    is_project = context_type == ContextType.PROJECT
    run = await tree_store.create_run(
        Run(
            id=new_id("run"),
            user_id=user_id,
            objective=objective,
            status=status,
            workspace_project_id=workspace["id"],
            scope=RunScope.PROJECT if is_project else RunScope.GLOBAL,
            project_ids=[context_project_id] if is_project and context_project_id else [],
            budgets=budgets or RunBudgets(max_wall_clock_ms=60_000),
            metrics={"context": {"type": context_type.value, "project_id": context_project_id}},
        )
    )
    root = await tree_store.create_node(
        Node(id=new_id("node"), run_id=run.id, title=objective[:120], reason="Root objective")
    )
    await tree_store.set_run_root(run.id, root.id)
    run.root_node_id = root.id
    return RunFixture(run=run, root=root, actor_id=actor_id)


@pytest.fixture()
async def run_fixture(tree_store: TreeStore, ontology: OntologyStore) -> RunFixture:
    """A queued global-context run."""
    return await create_test_run(tree_store, ontology)


# ---------------------------------------------------------------------------
# Role output factories
# ---------------------------------------------------------------------------


def planner_execute(note: str = "Small enough to execute directly.") -> dict[str, Any]:
    """Planner output choosing direct execution."""
    return {
        "mode": "execute",
        "modeReason": note,
        "leafDecision": {"canExecuteDirectly": True, "complexity": "low", "blockers": []},
        "scratchpad": {"appendMarkdown": note},
    }


def planner_plan(*bands: list[str], summary: str = "Split the work") -> dict[str, Any]:
    """Planner output delegating one band per argument, one step per title."""
    return {
        "mode": "plan",
        "modeReason": "Needs decomposition",
        "plan": {
            "summary": summary,
            "bands": [
                {
                    "index": index,
                    "goal": f"Band {index}",
                    "steps": [
                        {"title": title, "reason": f"Cover {title}", "successCriteria": ["done"]}
                        for title in titles
                    ],
                }
                for index, titles in enumerate(bands)
            ],
        },
        "scratchpad": {"appendMarkdown": summary},
    }


def executor_output(
    summary: str = "Done",
    *,
    tool_calls: list[tuple[str, dict[str, Any]]] | None = None,
    artifacts: list[dict[str, Any]] | None = None,
    kind: str = "document",
) -> dict[str, Any]:
    """Executor output with optional tool_call actions and artifacts."""
    actions: list[dict[str, Any]] = [{"kind": "analysis", "note": "thinking"}]
    for name, args in tool_calls or []:
        actions.append({"kind": "tool_call", "toolName": name, "toolArgs": args})
    return {
        "actions": actions,
        "artifacts": artifacts or [],
        "result": {
            "kind": kind,
            "summary": summary,
            "successAssessment": {"met": True, "notes": ""},
        },
        "scratchpad": {"appendMarkdown": summary},
    }


def document_artifact(label: str = "report", *, primary: bool = True) -> dict[str, Any]:
    return {
        "type": "document",
        "label": label,
        "title": label.title(),
        "documentMarkdown": f"# {label}\n\nBody of {label}.",
        "isPrimary": primary,
    }


def aggregator_output(
    summary: str = "Combined",
    *,
    should_replan: bool = False,
    artifacts: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Aggregator output, optionally asking for a replan."""
    return {
        "synthesis": {"summary": summary, "keyFindings": [], "gaps": []},
        "artifacts": artifacts or [],
        "result": {"kind": "document", "summary": summary},
        "next": {
            "shouldReplan": should_replan,
            "replanReason": "gap found" if should_replan else None,
        },
        "scratchpad": {"appendMarkdown": summary},
    }


@pytest.fixture()
def mock_llm() -> MockLLMClient:
    """Unscripted mock: every node executes as a leaf."""
    return MockLLMClient()


# ---------------------------------------------------------------------------
# Event Collection Helper
# ---------------------------------------------------------------------------


async def event_types(tree_store: TreeStore, run_id: str) -> list[str]:
    """Stored event types of a run in seq order."""
    return [e["event_type"] for e in await tree_store.list_events(run_id, limit=1000)]


async def events_of(tree_store: TreeStore, run_id: str, event_type: str) -> list[dict[str, Any]]:
    return [
        e for e in await tree_store.list_events(run_id, limit=1000) if e["event_type"] == event_type
    ]
