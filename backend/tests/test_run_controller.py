"""Tests for tree_agent/run_controller.py -- job processing end to end."""

import asyncio
import time

import pytest

from events.bus import EventBus
from models.database import TreeStore
from models.ontology import OntologyStore
from models.schemas import (
    ContextType,
    NodeStatus,
    Run,
    RunBudgets,
    RunScope,
    RunStatus,
    TreeAgentJob,
)
from tests.conftest import (
    RunFixture,
    create_test_run,
    event_types,
    events_of,
    executor_output,
)
from tree_agent.llm import MockLLMClient
from tree_agent.run_controller import (
    CONTEXT_FALLBACK_MESSAGE,
    RunController,
    resolve_run_context,
)


def job_for(fixture: RunFixture, **overrides) -> TreeAgentJob:
    run = fixture.run
    fields = {
        "run_id": run.id,
        "root_node_id": fixture.root.id,
        "workspace_project_id": run.workspace_project_id,
        "budgets": run.budgets,
    }
    fields.update(overrides)
    return TreeAgentJob(**fields)


@pytest.fixture()
def make_controller(tree_store, ontology, event_log, event_bus):
    def make(llm: MockLLMClient | None = None) -> RunController:
        return RunController(
            tree_store=tree_store,
            ontology=ontology,
            events=event_log,
            llm=llm or MockLLMClient(),
            bus=event_bus,
        )

    return make


# =========================================================================
# Successful runs
# =========================================================================


class TestProcessJob:
    async def test_completes_run(
        self, make_controller, run_fixture: RunFixture, tree_store: TreeStore
    ) -> None:
        outcome = await make_controller().process_job(job_for(run_fixture))

        assert outcome.success is True
        assert outcome.root_result is not None
        assert outcome.root_result.summary == "Mock result for Draft a launch plan"

        run = await tree_store.get_run(run_fixture.run.id)
        assert run is not None
        assert run.status == RunStatus.COMPLETED
        assert run.started_at is not None and run.completed_at is not None
        assert run.metrics["last_root_result"]["summary"] == outcome.root_result.summary
        assert run.metrics["llm_calls"] == 2
        assert run.metrics["tool_calls"] == 1
        assert run.metrics["tokens_total"] > 0
        assert run.metrics["context"]["type"] == "global"
        assert run.metrics["context"].get("project_id") is None
        assert "create_project" in run.metrics["tool_manifest"]["tool_names"]
        assert run.metrics["tool_guide_preview"].startswith("- ")

    async def test_bootstrap_events(
        self, make_controller, run_fixture: RunFixture, tree_store: TreeStore
    ) -> None:
        await make_controller().process_job(job_for(run_fixture))
        run_id = run_fixture.run.id

        statuses = await events_of(tree_store, run_id, "node_status")
        assert statuses[0]["payload"]["message"] == "worker_started"

        manifest = await events_of(tree_store, run_id, "tools_manifest")
        assert manifest[0]["payload"]["context_type"] == "global"
        assert manifest[0]["payload"]["tool_count"] == len(manifest[0]["payload"]["tool_names"])

        requested = await events_of(tree_store, run_id, "tool_call_requested")
        assert requested[0]["payload"]["tool_name"] == "list_projects"
        assert requested[0]["payload"]["phase"] == "bootstrap"

        types = await event_types(tree_store, run_id)
        assert types.index("tools_manifest") < types.index("tool_call_requested")
        assert types[-1] == "node_completed"

    async def test_closes_live_stream(
        self, make_controller, run_fixture: RunFixture, event_bus: EventBus
    ) -> None:
        queue = event_bus.subscribe(run_fixture.run.id)
        await make_controller().process_job(job_for(run_fixture))

        received = []
        while not queue.empty():
            received.append(queue.get_nowait())
        assert received[-1] is None
        assert all(event is not None for event in received[:-1])

    async def test_event_seqs_are_contiguous(
        self, make_controller, run_fixture: RunFixture, tree_store: TreeStore
    ) -> None:
        await make_controller().process_job(job_for(run_fixture))
        seqs = [e["seq"] for e in await tree_store.list_events(run_fixture.run.id, limit=1000)]
        assert seqs == list(range(1, len(seqs) + 1))

    async def test_unauthorized_tool_call_does_not_abort_run(
        self,
        make_controller,
        run_fixture: RunFixture,
        tree_store: TreeStore,
        ontology: OntologyStore,
    ) -> None:
        stranger = await ontology.ensure_actor("stranger")
        foreign = await ontology.create_project("Not yours", stranger)
        llm = MockLLMClient(
            {
                "executor": [
                    executor_output(
                        "Trying to write",
                        tool_calls=[
                            ("create_document", {"title": "Leak", "project_id": foreign["id"]})
                        ],
                    ),
                    executor_output("Wrote in the workspace instead"),
                ]
            }
        )

        outcome = await make_controller(llm).process_job(job_for(run_fixture))

        assert outcome.success is True
        run = await tree_store.get_run(run_fixture.run.id)
        assert run is not None and run.status == RunStatus.COMPLETED

        results = [
            e["payload"]
            for e in await events_of(tree_store, run_fixture.run.id, "tool_call_result")
            if e["payload"]["tool_name"] == "create_document"
        ]
        assert len(results) == 1
        assert results[0]["ok"] is False
        assert results[0]["error"] == "unauthorized project_id"
        assert await events_of(tree_store, run_fixture.run.id, "node_failed") == []


# =========================================================================
# Context resolution at run time
# =========================================================================


class TestRunContext:
    async def test_accessible_project_context(
        self,
        make_controller,
        tree_store: TreeStore,
        ontology: OntologyStore,
    ) -> None:
        actor_id = await ontology.ensure_actor("user_test")
        project = await ontology.create_project("Launch", actor_id)
        await ontology.add_project_member(project["id"], actor_id)
        fixture = await create_test_run(
            tree_store,
            ontology,
            context_type=ContextType.PROJECT,
            context_project_id=project["id"],
        )

        await make_controller().process_job(
            job_for(fixture, context_type="project", context_project_id=project["id"])
        )

        manifest = (await events_of(tree_store, fixture.run.id, "tools_manifest"))[0]["payload"]
        assert manifest["context_type"] == "project"
        assert manifest["context_project_id"] == project["id"]
        assert "link_entities" in manifest["tool_names"]
        assert "create_project" not in manifest["tool_names"]
        assert await events_of(tree_store, fixture.run.id, "context_warning") == []

    async def test_inaccessible_project_falls_back_to_global(
        self,
        make_controller,
        tree_store: TreeStore,
        ontology: OntologyStore,
    ) -> None:
        fixture = await create_test_run(
            tree_store,
            ontology,
            context_type=ContextType.PROJECT,
            context_project_id="proj_not_mine",
        )

        outcome = await make_controller().process_job(job_for(fixture))
        assert outcome.success is True

        warnings = await events_of(tree_store, fixture.run.id, "context_warning")
        assert len(warnings) == 1
        assert warnings[0]["payload"]["requested_project_id"] == "proj_not_mine"
        assert warnings[0]["payload"]["message"] == CONTEXT_FALLBACK_MESSAGE

        run = await tree_store.get_run(fixture.run.id)
        assert run is not None
        assert run.metrics["context"]["type"] == "global"
        assert run.metrics["context"].get("project_id") is None


# =========================================================================
# Failures
# =========================================================================


class TestFailures:
    async def test_zero_budget_stops_run(
        self, make_controller, run_fixture: RunFixture, tree_store: TreeStore
    ) -> None:
        job = job_for(run_fixture, budgets=RunBudgets(max_wall_clock_ms=0))
        outcome = await make_controller().process_job(job)

        assert outcome.success is False
        assert outcome.message == "budget_exceeded"
        run = await tree_store.get_run(run_fixture.run.id)
        assert run is not None
        assert run.status == RunStatus.STOPPED
        assert run.metrics["stop_reason"]["type"] == "budget_exceeded"
        root = await tree_store.get_node(run_fixture.root.id)
        assert root is not None and root.status == NodeStatus.FAILED

    async def test_llm_error_fails_run(
        self, make_controller, run_fixture: RunFixture, tree_store: TreeStore
    ) -> None:
        llm = MockLLMClient({"planner": [RuntimeError("llm down")]})
        outcome = await make_controller(llm).process_job(job_for(run_fixture))

        assert outcome.success is False
        assert outcome.message == "llm down"
        run = await tree_store.get_run(run_fixture.run.id)
        assert run is not None
        assert run.status == RunStatus.FAILED
        assert run.completed_at is not None
        assert run.metrics["stop_reason"] == {"type": "error", "detail": "llm down"}

        failed = await events_of(tree_store, run_fixture.run.id, "node_failed")
        assert [e["node_id"] for e in failed] == [run_fixture.root.id]

    async def test_malformed_output_fails_run(
        self, make_controller, run_fixture: RunFixture, tree_store: TreeStore
    ) -> None:
        llm = MockLLMClient({"executor": [{"actions": []}]})
        outcome = await make_controller(llm).process_job(job_for(run_fixture))

        assert outcome.success is False
        assert "Malformed executor output" in (outcome.message or "")
        run = await tree_store.get_run(run_fixture.run.id)
        assert run is not None and run.status == RunStatus.FAILED

    async def test_missing_run(self, make_controller) -> None:
        job = TreeAgentJob(run_id="run_missing", root_node_id="node_x", workspace_project_id="p")
        outcome = await make_controller().process_job(job)
        assert outcome.success is False
        assert outcome.message == "Run not found"

    async def test_missing_root(
        self, make_controller, run_fixture: RunFixture, tree_store: TreeStore
    ) -> None:
        outcome = await make_controller().process_job(
            job_for(run_fixture, root_node_id="node_missing")
        )
        assert outcome.message == "Root node not found"
        run = await tree_store.get_run(run_fixture.run.id)
        assert run is not None and run.status == RunStatus.QUEUED


# =========================================================================
# resolve_run_context
# =========================================================================


def _run(**fields) -> Run:
    return Run(id="run_1", user_id="u", objective="o", **fields)


def _job(**fields) -> TreeAgentJob:
    return TreeAgentJob(run_id="run_1", root_node_id="n", workspace_project_id="w", **fields)


class TestResolveRunContext:
    def test_job_fields_win(self) -> None:
        run = _run(scope=RunScope.PROJECT, project_ids=["proj_run"])
        job = _job(context_type="project", context_project_id="proj_job")
        assert resolve_run_context(run, job) == (ContextType.PROJECT, "proj_job")

    def test_job_global_overrides_run_scope(self) -> None:
        run = _run(scope=RunScope.PROJECT, project_ids=["proj_run"])
        assert resolve_run_context(run, _job(context_type="global")) == (ContextType.GLOBAL, None)

    def test_run_scope(self) -> None:
        run = _run(scope=RunScope.PROJECT, project_ids=["proj_run"])
        assert resolve_run_context(run, _job()) == (ContextType.PROJECT, "proj_run")

    def test_multi_project_scope_is_global(self) -> None:
        run = _run(scope=RunScope.MULTI_PROJECT, project_ids=["a", "b"])
        assert resolve_run_context(run, _job()) == (ContextType.GLOBAL, None)

    def test_metrics_context(self) -> None:
        run = _run(metrics={"context": {"type": "project", "project_id": "proj_m"}})
        assert resolve_run_context(run, _job()) == (ContextType.PROJECT, "proj_m")

    def test_project_without_id_is_global(self) -> None:
        run = _run(metrics={"context": {"type": "project", "project_id": ""}})
        assert resolve_run_context(run, _job()) == (ContextType.GLOBAL, None)
        assert resolve_run_context(_run(), _job(context_type="project")) == (
            ContextType.GLOBAL,
            None,
        )

    def test_default_global(self) -> None:
        assert resolve_run_context(_run(), _job()) == (ContextType.GLOBAL, None)


# =========================================================================
# Cancellation and restart recovery
# =========================================================================


class TestCancellation:
    async def test_cancelled_job_stops_run(
        self,
        make_controller,
        run_fixture: RunFixture,
        tree_store: TreeStore,
        event_bus: EventBus,
    ) -> None:
        queue = event_bus.subscribe(run_fixture.run.id)
        controller = make_controller(MockLLMClient(delay=0.5))

        task = asyncio.create_task(controller.process_job(job_for(run_fixture)))
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        run = await tree_store.get_run(run_fixture.run.id)
        assert run is not None
        assert run.status == RunStatus.STOPPED
        assert run.completed_at is not None
        assert run.metrics["stop_reason"] == {"type": "canceled", "detail": "worker_stopped"}
        assert await tree_store.count_active_runs(run.user_id) == 0

        root = await tree_store.get_node(run_fixture.root.id)
        assert root is not None and root.status == NodeStatus.FAILED
        failed = await events_of(tree_store, run_fixture.run.id, "node_failed")
        assert [(e["node_id"], e["payload"]["error"]) for e in failed] == [
            (run_fixture.root.id, "canceled")
        ]

        received = []
        while not queue.empty():
            received.append(queue.get_nowait())
        assert received[-1] is None


class TestRecoverInterruptedRuns:
    async def test_requeues_queued_and_stops_running(
        self,
        make_controller,
        tree_store: TreeStore,
        ontology: OntologyStore,
    ) -> None:
        queued = await create_test_run(tree_store, ontology, objective="Queued work")
        running = await create_test_run(tree_store, ontology, objective="Running work")
        await tree_store.update_run_status(
            running.run.id, RunStatus.RUNNING, started_at=time.time()
        )
        finished = await create_test_run(
            tree_store, ontology, objective="Finished work", status=RunStatus.COMPLETED
        )

        controller = make_controller()
        jobs = await controller.recover_interrupted_runs()

        assert [job.run_id for job in jobs] == [queued.run.id]
        assert jobs[0].root_node_id == queued.root.id
        assert jobs[0].workspace_project_id == queued.run.workspace_project_id
        assert jobs[0].budgets == queued.run.budgets

        stopped = await tree_store.get_run(running.run.id)
        assert stopped is not None
        assert stopped.status == RunStatus.STOPPED
        assert stopped.metrics["stop_reason"] == {
            "type": "canceled",
            "detail": "interrupted_by_restart",
        }
        root = await tree_store.get_node(running.root.id)
        assert root is not None and root.status == NodeStatus.FAILED
        failed = await events_of(tree_store, running.run.id, "node_failed")
        assert failed[0]["payload"]["retryable"] is True

        untouched = await tree_store.get_run(finished.run.id)
        assert untouched is not None and untouched.status == RunStatus.COMPLETED

        outcome = await controller.process_job(jobs[0])
        assert outcome.success is True

    async def test_nothing_to_recover(self, make_controller) -> None:
        assert await make_controller().recover_interrupted_runs() == []
