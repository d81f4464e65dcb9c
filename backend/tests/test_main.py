"""Tests for main.py -- application lifespan wiring."""

import asyncio

import pytest
from fastapi.testclient import TestClient

import main
from config import settings
from events.bus import reset_event_bus
from models.database import TreeStore
from models.ontology import OntologyStore
from models.schemas import NodeStatus, RunStatus
from tests.conftest import RunFixture, create_test_run


@pytest.fixture()
def stores(tmp_path, monkeypatch) -> tuple[TreeStore, OntologyStore]:
    db_path = str(tmp_path / "lifespan.db")
    monkeypatch.setattr(settings, "database_path", db_path)
    monkeypatch.setattr(settings, "use_mock_llm", True)
    tree_store = TreeStore(db_path)
    ontology = OntologyStore(db_path)
    asyncio.run(tree_store.init())
    asyncio.run(ontology.init())
    reset_event_bus()
    return tree_store, ontology


class TestLifespan:
    def test_startup_settles_interrupted_runs(
        self, stores: tuple[TreeStore, OntologyStore]
    ) -> None:
        tree_store, ontology = stores

        async def seed() -> tuple[RunFixture, RunFixture]:
            queued = await create_test_run(tree_store, ontology, objective="Left queued")
            running = await create_test_run(tree_store, ontology, objective="Left running")
            await tree_store.update_run_status(running.run.id, RunStatus.RUNNING)
            return queued, running

        queued, running = asyncio.run(seed())

        with TestClient(main.app) as client:
            client.portal.call(main.app.state.worker.join)
            assert client.get("/health").status_code == 200

        requeued = asyncio.run(tree_store.get_run(queued.run.id))
        assert requeued is not None and requeued.status == RunStatus.COMPLETED

        interrupted = asyncio.run(tree_store.get_run(running.run.id))
        assert interrupted is not None and interrupted.status == RunStatus.STOPPED
        assert interrupted.metrics["stop_reason"]["detail"] == "interrupted_by_restart"
        root = asyncio.run(tree_store.get_node(running.root.id))
        assert root is not None and root.status == NodeStatus.FAILED
