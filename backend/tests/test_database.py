"""Tests for models/database.py and models/ontology.py -- SQLite persistence."""

import time

import pytest

from models.database import TreeStore, new_id
from models.ontology import OntologyStore
from models.schemas import (
    Artifact,
    ArtifactType,
    Node,
    NodeStatus,
    PlanBand,
    PlanSnapshot,
    PlanStep,
    ResultEnvelope,
    ResultKind,
    RoleState,
    RunStatus,
)
from tests.conftest import create_test_run

# =========================================================================
# Runs
# =========================================================================


class TestRuns:
    async def test_create_and_get_run(self, tree_store: TreeStore, ontology: OntologyStore) -> None:
        fixture = await create_test_run(tree_store, ontology, objective="Write a brief")
        run = await tree_store.get_run(fixture.run.id)
        assert run is not None
        assert run.objective == "Write a brief"
        assert run.status == RunStatus.QUEUED
        assert run.root_node_id == fixture.root.id
        assert run.budgets.max_wall_clock_ms == 60_000

    async def test_get_missing_run(self, tree_store: TreeStore) -> None:
        assert await tree_store.get_run("run_missing") is None

    async def test_count_active_runs(self, tree_store: TreeStore, ontology: OntologyStore) -> None:
        await create_test_run(tree_store, ontology, status=RunStatus.QUEUED)
        await create_test_run(tree_store, ontology, status=RunStatus.RUNNING)
        await create_test_run(tree_store, ontology, status=RunStatus.COMPLETED)
        await create_test_run(tree_store, ontology, user_id="someone_else")
        assert await tree_store.count_active_runs("user_test") == 2

    async def test_list_runs_filters_by_user_and_status(
        self, tree_store: TreeStore, ontology: OntologyStore
    ) -> None:
        done = await create_test_run(tree_store, ontology, status=RunStatus.COMPLETED)
        await create_test_run(tree_store, ontology, status=RunStatus.QUEUED)
        await create_test_run(tree_store, ontology, user_id="other")

        mine = await tree_store.list_runs("user_test")
        assert len(mine) == 2
        completed = await tree_store.list_runs("user_test", status=RunStatus.COMPLETED)
        assert [r.id for r in completed] == [done.run.id]

    async def test_update_run_status_keeps_started_at(
        self, tree_store: TreeStore, run_fixture
    ) -> None:
        started = time.time()
        await tree_store.update_run_status(
            run_fixture.run.id, RunStatus.RUNNING, started_at=started
        )
        await tree_store.update_run_status(
            run_fixture.run.id, RunStatus.COMPLETED, completed_at=started + 5
        )
        run = await tree_store.get_run(run_fixture.run.id)
        assert run is not None
        assert run.status == RunStatus.COMPLETED
        assert run.started_at == pytest.approx(started)
        assert run.completed_at == pytest.approx(started + 5)

    async def test_merge_run_metrics(self, tree_store: TreeStore, run_fixture) -> None:
        await tree_store.merge_run_metrics(run_fixture.run.id, {"tokens_total": 10})
        await tree_store.merge_run_metrics(
            run_fixture.run.id, {"stop_reason": {"type": "error", "detail": "boom"}}
        )
        run = await tree_store.get_run(run_fixture.run.id)
        assert run is not None
        assert run.metrics["tokens_total"] == 10
        assert run.metrics["stop_reason"]["detail"] == "boom"
        # Keys written at creation survive later merges.
        assert run.metrics["context"]["type"] == "global"

    async def test_merge_run_metrics_none_removes_key(
        self, tree_store: TreeStore, run_fixture
    ) -> None:
        await tree_store.merge_run_metrics(run_fixture.run.id, {"scratch": 1})
        await tree_store.merge_run_metrics(run_fixture.run.id, {"scratch": None})
        run = await tree_store.get_run(run_fixture.run.id)
        assert run is not None
        assert "scratch" not in run.metrics


# =========================================================================
# Nodes
# =========================================================================


class TestNodes:
    async def test_create_node_sets_started_at(self, tree_store: TreeStore, run_fixture) -> None:
        node = await tree_store.get_node(run_fixture.root.id)
        assert node is not None
        assert node.started_at is not None
        assert node.status == NodeStatus.PLANNING

    async def test_update_node_status_with_result(
        self, tree_store: TreeStore, run_fixture
    ) -> None:
        envelope = ResultEnvelope(kind=ResultKind.JSON, summary="ok", json_payload={"a": 1})
        updated = await tree_store.update_node_status(
            run_fixture.root.id,
            NodeStatus.COMPLETED,
            role_state=RoleState.EXECUTOR,
            result=envelope,
            ended_at=time.time(),
        )
        assert updated is True
        node = await tree_store.get_node(run_fixture.root.id)
        assert node is not None
        assert node.status == NodeStatus.COMPLETED
        assert node.result is not None and node.result.json_payload == {"a": 1}

    async def test_terminal_node_is_not_updated(
        self, tree_store: TreeStore, run_fixture
    ) -> None:
        await tree_store.update_node_status(run_fixture.root.id, NodeStatus.COMPLETED)
        updated = await tree_store.update_node_status(run_fixture.root.id, NodeStatus.FAILED)
        assert updated is False
        node = await tree_store.get_node(run_fixture.root.id)
        assert node is not None and node.status == NodeStatus.COMPLETED

    async def test_list_nodes_in_tree_order(self, tree_store: TreeStore, run_fixture) -> None:
        run_id = run_fixture.run.id
        root_id = run_fixture.root.id
        for band, step in [(1, 0), (0, 1), (0, 0)]:
            await tree_store.create_node(
                Node(
                    id=new_id("node"),
                    run_id=run_id,
                    parent_node_id=root_id,
                    title=f"b{band}s{step}",
                    depth=1,
                    band_index=band,
                    step_index=step,
                )
            )
        children = await tree_store.list_nodes(run_id, parent_node_id=root_id)
        assert [c.title for c in children] == ["b0s0", "b0s1", "b1s0"]

        everything = await tree_store.list_nodes(run_id)
        assert everything[0].id == root_id


# =========================================================================
# Plans
# =========================================================================


class TestPlans:
    async def test_versions_increase(self, tree_store: TreeStore, run_fixture) -> None:
        snapshot = PlanSnapshot(
            version=0,
            summary="s",
            bands=[PlanBand(index=0, steps=[PlanStep(id="step_a", title="A")])],
        )
        first = await tree_store.create_plan(run_fixture.run.id, run_fixture.root.id, snapshot)
        second = await tree_store.create_plan(run_fixture.run.id, run_fixture.root.id, snapshot)
        assert (first.version, second.version) == (1, 2)
        assert second.plan.version == 2

        latest = await tree_store.get_latest_plan(run_fixture.root.id)
        assert latest is not None and latest.id == second.id
        assert latest.plan.bands[0].steps[0].id == "step_a"

    async def test_no_plan(self, tree_store: TreeStore) -> None:
        assert await tree_store.get_latest_plan("node_missing") is None


# =========================================================================
# Artifacts
# =========================================================================


class TestArtifacts:
    async def test_create_and_list(self, tree_store: TreeStore, run_fixture) -> None:
        await tree_store.create_artifact(
            Artifact(
                id="art_1",
                run_id=run_fixture.run.id,
                node_id=run_fixture.root.id,
                artifact_type=ArtifactType.JSON,
                label="data",
                json_payload={"rows": [1, 2]},
                is_primary=True,
            )
        )
        await tree_store.create_artifact(
            Artifact(
                id="art_2",
                run_id=run_fixture.run.id,
                node_id="node_other",
                artifact_type=ArtifactType.DOCUMENT,
                label="doc",
                document_id="doc_1",
            )
        )
        all_artifacts = await tree_store.list_artifacts(run_fixture.run.id)
        assert [a.id for a in all_artifacts] == ["art_1", "art_2"]

        [root_artifact] = await tree_store.list_artifacts(
            run_fixture.run.id, node_id=run_fixture.root.id
        )
        assert root_artifact.json_payload == {"rows": [1, 2]}
        assert root_artifact.is_primary is True


# =========================================================================
# Ontology
# =========================================================================


class TestOntology:
    async def test_ensure_actor_is_idempotent(self, ontology: OntologyStore) -> None:
        first = await ontology.ensure_actor("user_x")
        second = await ontology.ensure_actor("user_x")
        assert first == second

    async def test_membership(self, ontology: OntologyStore) -> None:
        actor = await ontology.ensure_actor("user_x")
        project = await ontology.create_project("P", actor)
        assert not await ontology.is_project_member(project["id"], actor)

        await ontology.add_project_member(project["id"], actor)
        assert await ontology.is_project_member(project["id"], actor)

        await ontology.remove_project_member(project["id"], actor)
        assert await ontology.list_member_project_ids(actor) == []

    async def test_entity_update(self, ontology: OntologyStore) -> None:
        actor = await ontology.ensure_actor("user_x")
        project = await ontology.create_project("P", actor)
        doc = await ontology.create_entity(
            "document", project["id"], "Notes", actor, content="a", props={"k": 1}
        )
        updated = await ontology.update_entity("document", doc["id"], {"content": "ab"})
        assert updated is not None
        assert updated["content"] == "ab"
        assert updated["props"] == {"k": 1}

    async def test_unknown_entity_kind(self, ontology: OntologyStore) -> None:
        with pytest.raises(ValueError, match="Unknown entity kind"):
            await ontology.create_entity("widget", "proj_1", "W", "actor_1")
