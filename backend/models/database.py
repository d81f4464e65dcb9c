"""SQLite-based run persistence using aiosqlite.

This module provides the TreeStore class for persisting runs, nodes, plans,
artifacts and the append-only event log of the tree agent.

Unlike a best-effort metrics store, every method here propagates database
errors: the orchestrator treats a failed write as a failed run and records
the raw message. The one exception is event insertion, which the event log
wraps and logs itself.

Tables:
    runs: One row per run (objective, status, budgets, metrics JSON).
    nodes: The work tree (parent link, depth, band/step position, status, result).
    plans: Versioned plan snapshots per node.
    artifacts: Document references and JSON payloads produced by nodes.
    events: Append-only per-run event stream with a unique, increasing seq.

Usage:
    >>> from models.database import TreeStore
    >>> store = TreeStore("./data/tree_agent.db")
    >>> await store.init()
    >>> run = await store.create_run(Run(id=new_id("run"), user_id="u1", objective="..."))
"""

import json
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from models.schemas import (
    ACTIVE_RUN_STATUSES,
    TERMINAL_NODE_STATUSES,
    Artifact,
    Node,
    NodeStatus,
    Plan,
    PlanSnapshot,
    ResultEnvelope,
    RoleState,
    Run,
    RunStatus,
)

logger = structlog.get_logger(__name__)

# Seconds SQLite waits on a locked database before raising.
DB_BUSY_TIMEOUT = 30.0


def new_id(prefix: str) -> str:
    """Generate a prefixed random identifier, e.g. ``node_3f2a9c...``."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def _loads(value: str | None, default: Any = None) -> Any:
    if value is None:
        return default
    return json.loads(value)


class SQLiteStore:
    """Base class holding the database path and connection helper."""

    def __init__(self, db_path: str) -> None:
        """Initialize the store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    def _ensure_parent_dir(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path, timeout=DB_BUSY_TIMEOUT) as db:
            db.row_factory = aiosqlite.Row
            yield db


class TreeStore(SQLiteStore):
    """Async SQLite store for runs, nodes, plans, artifacts and events.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    async def init(self) -> None:
        """Create database tables if they do not exist."""
        self._ensure_parent_dir()

        try:
            async with self._connect() as db:
                await db.execute("PRAGMA journal_mode=WAL")
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS runs (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        objective TEXT NOT NULL,
                        status TEXT NOT NULL,
                        root_node_id TEXT,
                        workspace_project_id TEXT,
                        scope TEXT NOT NULL DEFAULT 'global',
                        project_ids TEXT NOT NULL DEFAULT '[]',
                        budgets TEXT NOT NULL DEFAULT '{}',
                        metrics TEXT NOT NULL DEFAULT '{}',
                        created_at REAL NOT NULL,
                        started_at REAL,
                        completed_at REAL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS nodes (
                        id TEXT PRIMARY KEY,
                        run_id TEXT NOT NULL,
                        parent_node_id TEXT,
                        title TEXT NOT NULL,
                        reason TEXT NOT NULL DEFAULT '',
                        success_criteria TEXT NOT NULL DEFAULT '[]',
                        depth INTEGER NOT NULL DEFAULT 0,
                        band_index INTEGER NOT NULL DEFAULT 0,
                        step_index INTEGER NOT NULL DEFAULT 0,
                        status TEXT NOT NULL,
                        role_state TEXT NOT NULL,
                        scratchpad_doc_id TEXT,
                        result TEXT,
                        context TEXT NOT NULL DEFAULT '{}',
                        started_at REAL,
                        ended_at REAL,
                        FOREIGN KEY (run_id) REFERENCES runs(id)
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS plans (
                        id TEXT PRIMARY KEY,
                        run_id TEXT NOT NULL,
                        node_id TEXT NOT NULL,
                        version INTEGER NOT NULL,
                        plan_json TEXT NOT NULL,
                        created_at REAL NOT NULL,
                        UNIQUE (node_id, version)
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS artifacts (
                        id TEXT PRIMARY KEY,
                        run_id TEXT NOT NULL,
                        node_id TEXT NOT NULL,
                        artifact_type TEXT NOT NULL,
                        label TEXT NOT NULL,
                        document_id TEXT,
                        json_payload TEXT,
                        is_primary INTEGER NOT NULL DEFAULT 0,
                        created_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS events (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        run_id TEXT NOT NULL,
                        node_id TEXT,
                        seq INTEGER NOT NULL,
                        event_type TEXT NOT NULL,
                        payload TEXT NOT NULL,
                        created_at REAL NOT NULL,
                        UNIQUE (run_id, seq)
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_runs_user_status
                    ON runs(user_id, status)
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_nodes_run_parent
                    ON nodes(run_id, parent_node_id)
                """)
                await db.commit()
            logger.info("tree_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error("tree_store_init_failed", db_path=self.db_path, error=str(e))
            raise

    # -----------------------------------------------------------------
    # Runs
    # -----------------------------------------------------------------

    async def create_run(self, run: Run) -> Run:
        """Insert a new run record."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO runs
                    (id, user_id, objective, status, root_node_id, workspace_project_id,
                     scope, project_ids, budgets, metrics, created_at, started_at,
                     completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    run.user_id,
                    run.objective,
                    run.status.value,
                    run.root_node_id,
                    run.workspace_project_id,
                    run.scope.value,
                    json.dumps(run.project_ids),
                    run.budgets.model_dump_json(),
                    json.dumps(run.metrics),
                    run.created_at,
                    run.started_at,
                    run.completed_at,
                ),
            )
            await db.commit()
        logger.debug("run_saved", run_id=run.id, status=run.status)
        return run

    async def get_run(self, run_id: str) -> Run | None:
        """Retrieve a run by id, or None if it does not exist."""
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM runs WHERE id = ?", (run_id,))
            row = await cursor.fetchone()
        return _row_to_run(row) if row else None

    async def list_runs(
        self,
        user_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[Run]:
        """List runs, newest first.

        Args:
            user_id: Only runs owned by this user.
            status: Only runs in this status.
            limit: Maximum number of runs to return.
        """
        clauses: list[str] = []
        params: list[Any] = []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status:
            clauses.append("status = ?")
            params.append(str(status))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT * FROM runs {where} ORDER BY created_at DESC LIMIT ?",
                (*params, limit),
            )
            rows = await cursor.fetchall()
        return [_row_to_run(row) for row in rows]

    async def list_runs_in_status(self, statuses: tuple[RunStatus, ...]) -> list[Run]:
        """List every run in one of ``statuses``, oldest first."""
        placeholders = ", ".join("?" for _ in statuses)
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT * FROM runs WHERE status IN ({placeholders}) ORDER BY created_at, rowid",
                tuple(s.value for s in statuses),
            )
            rows = await cursor.fetchall()
        return [_row_to_run(row) for row in rows]

    async def count_active_runs(self, user_id: str) -> int:
        """Count queued, running and waiting runs owned by a user."""
        placeholders = ", ".join("?" for _ in ACTIVE_RUN_STATUSES)
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT COUNT(*) FROM runs WHERE user_id = ? AND status IN ({placeholders})",
                (user_id, *[s.value for s in ACTIVE_RUN_STATUSES]),
            )
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        started_at: float | None = None,
        completed_at: float | None = None,
    ) -> None:
        """Set a run's status and, optionally, its start or completion time."""
        async with self._connect() as db:
            await db.execute(
                """
                UPDATE runs
                SET status = ?,
                    started_at = COALESCE(?, started_at),
                    completed_at = COALESCE(?, completed_at)
                WHERE id = ?
                """,
                (status.value, started_at, completed_at, run_id),
            )
            await db.commit()
        logger.debug("run_status_updated", run_id=run_id, status=status)

    async def set_run_root(self, run_id: str, root_node_id: str) -> None:
        """Record the root node id on a run."""
        async with self._connect() as db:
            await db.execute(
                "UPDATE runs SET root_node_id = ? WHERE id = ?",
                (root_node_id, run_id),
            )
            await db.commit()

    async def merge_run_metrics(self, run_id: str, patch: dict[str, Any]) -> None:
        """Merge keys into a run's metrics JSON.

        The merge happens in a single UPDATE so concurrent writers of
        different keys do not clobber each other. Keys set to None are
        removed (JSON merge-patch semantics).
        """
        async with self._connect() as db:
            await db.execute(
                "UPDATE runs SET metrics = json_patch(COALESCE(metrics, '{}'), ?) WHERE id = ?",
                (json.dumps(patch, default=str), run_id),
            )
            await db.commit()

    # -----------------------------------------------------------------
    # Nodes
    # -----------------------------------------------------------------

    async def create_node(self, node: Node) -> Node:
        """Insert a new node record."""
        if node.started_at is None:
            node = node.model_copy(update={"started_at": time.time()})
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO nodes
                    (id, run_id, parent_node_id, title, reason, success_criteria, depth,
                     band_index, step_index, status, role_state, scratchpad_doc_id,
                     result, context, started_at, ended_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    node.id,
                    node.run_id,
                    node.parent_node_id,
                    node.title,
                    node.reason,
                    json.dumps(node.success_criteria),
                    node.depth,
                    node.band_index,
                    node.step_index,
                    node.status.value,
                    node.role_state.value,
                    node.scratchpad_doc_id,
                    node.result.model_dump_json() if node.result else None,
                    json.dumps(node.context),
                    node.started_at,
                    node.ended_at,
                ),
            )
            await db.commit()
        logger.debug("node_saved", node_id=node.id, run_id=node.run_id, depth=node.depth)
        return node

    async def get_node(self, node_id: str) -> Node | None:
        """Retrieve a node by id, or None if it does not exist."""
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM nodes WHERE id = ?", (node_id,))
            row = await cursor.fetchone()
        return _row_to_node(row) if row else None

    async def list_nodes(
        self,
        run_id: str,
        *,
        parent_node_id: str | None = None,
        status: NodeStatus | None = None,
        depth: int | None = None,
        limit: int = 500,
    ) -> list[Node]:
        """List nodes of a run in tree order (depth, band, step)."""
        clauses = ["run_id = ?"]
        params: list[Any] = [run_id]
        if parent_node_id is not None:
            clauses.append("parent_node_id = ?")
            params.append(parent_node_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(str(status))
        if depth is not None:
            clauses.append("depth = ?")
            params.append(depth)
        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                SELECT * FROM nodes WHERE {" AND ".join(clauses)}
                ORDER BY depth, band_index, step_index, started_at
                LIMIT ?
                """,
                (*params, limit),
            )
            rows = await cursor.fetchall()
        return [_row_to_node(row) for row in rows]

    async def update_node_status(
        self,
        node_id: str,
        status: NodeStatus,
        *,
        role_state: RoleState | None = None,
        result: ResultEnvelope | None = None,
        ended_at: float | None = None,
    ) -> bool:
        """Move a node to a new status.

        A node already in a terminal status is left untouched.

        Returns:
            True if the row was updated, False if the node was terminal or missing.
        """
        terminal = [s.value for s in TERMINAL_NODE_STATUSES]
        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                UPDATE nodes
                SET status = ?,
                    role_state = COALESCE(?, role_state),
                    result = COALESCE(?, result),
                    ended_at = COALESCE(?, ended_at)
                WHERE id = ? AND status NOT IN ({", ".join("?" for _ in terminal)})
                """,
                (
                    status.value,
                    role_state.value if role_state else None,
                    result.model_dump_json() if result else None,
                    ended_at,
                    node_id,
                    *terminal,
                ),
            )
            await db.commit()
            updated = cursor.rowcount > 0
        if not updated:
            logger.warning("node_status_update_skipped", node_id=node_id, status=status)
        return updated

    async def set_node_scratchpad(self, node_id: str, doc_id: str) -> None:
        """Record the scratchpad document id on a node."""
        async with self._connect() as db:
            await db.execute(
                "UPDATE nodes SET scratchpad_doc_id = ? WHERE id = ?",
                (doc_id, node_id),
            )
            await db.commit()

    # -----------------------------------------------------------------
    # Plans
    # -----------------------------------------------------------------

    async def create_plan(self, run_id: str, node_id: str, snapshot: PlanSnapshot) -> Plan:
        """Insert the next plan version for a node.

        The version is one more than the node's highest stored version and
        overrides whatever version the snapshot carries.
        """
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                "SELECT COALESCE(MAX(version), 0) FROM plans WHERE node_id = ?",
                (node_id,),
            )
            row = await cursor.fetchone()
            version = int(row[0]) + 1
            plan = Plan(
                id=new_id("plan"),
                run_id=run_id,
                node_id=node_id,
                version=version,
                plan=snapshot.model_copy(update={"version": version}),
            )
            await db.execute(
                """
                INSERT INTO plans (id, run_id, node_id, version, plan_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    plan.id,
                    run_id,
                    node_id,
                    version,
                    plan.plan.model_dump_json(),
                    plan.created_at,
                ),
            )
            await db.commit()
        logger.debug("plan_saved", node_id=node_id, version=version)
        return plan

    async def list_plans(self, node_id: str) -> list[Plan]:
        """List a node's plans by ascending version."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM plans WHERE node_id = ? ORDER BY version",
                (node_id,),
            )
            rows = await cursor.fetchall()
        return [_row_to_plan(row) for row in rows]

    async def get_latest_plan(self, node_id: str) -> Plan | None:
        """Return a node's highest-version plan, if any."""
        plans = await self.list_plans(node_id)
        return plans[-1] if plans else None

    # -----------------------------------------------------------------
    # Artifacts
    # -----------------------------------------------------------------

    async def create_artifact(self, artifact: Artifact) -> Artifact:
        """Insert an artifact record."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO artifacts
                    (id, run_id, node_id, artifact_type, label, document_id,
                     json_payload, is_primary, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    artifact.id,
                    artifact.run_id,
                    artifact.node_id,
                    artifact.artifact_type.value,
                    artifact.label,
                    artifact.document_id,
                    json.dumps(artifact.json_payload)
                    if artifact.json_payload is not None
                    else None,
                    int(artifact.is_primary),
                    artifact.created_at,
                ),
            )
            await db.commit()
        return artifact

    async def list_artifacts(
        self,
        run_id: str,
        node_id: str | None = None,
        limit: int = 200,
    ) -> list[Artifact]:
        """List artifacts for a run, optionally restricted to one node."""
        query = "SELECT * FROM artifacts WHERE run_id = ?"
        params: list[Any] = [run_id]
        if node_id:
            query += " AND node_id = ?"
            params.append(node_id)
        query += " ORDER BY created_at, rowid LIMIT ?"
        async with self._connect() as db:
            cursor = await db.execute(query, (*params, limit))
            rows = await cursor.fetchall()
        return [_row_to_artifact(row) for row in rows]

    # -----------------------------------------------------------------
    # Events
    # -----------------------------------------------------------------

    async def insert_event(
        self,
        run_id: str,
        node_id: str | None,
        seq: int,
        event_type: str,
        payload: dict[str, Any],
        created_at: float,
    ) -> None:
        """Append one event row. Raises on a duplicate (run_id, seq)."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO events (run_id, node_id, seq, event_type, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (run_id, node_id, seq, event_type, json.dumps(payload, default=str), created_at),
            )
            await db.commit()

    async def max_event_seq(self, run_id: str) -> int:
        """Return the highest stored seq for a run, 0 when it has no events."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT COALESCE(MAX(seq), 0) FROM events WHERE run_id = ?",
                (run_id,),
            )
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def list_events(
        self,
        run_id: str,
        since_seq: int = 0,
        limit: int = 500,
    ) -> list[dict[str, Any]]:
        """List a run's events with seq greater than ``since_seq`` in seq order."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT run_id, node_id, seq, event_type, payload, created_at
                FROM events WHERE run_id = ? AND seq > ?
                ORDER BY seq LIMIT ?
                """,
                (run_id, since_seq, limit),
            )
            rows = await cursor.fetchall()
        events = []
        for row in rows:
            event = dict(row)
            event["payload"] = _loads(event["payload"], {})
            events.append(event)
        return events


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _row_to_run(row: aiosqlite.Row) -> Run:
    data = dict(row)
    data["project_ids"] = _loads(data["project_ids"], [])
    data["budgets"] = _loads(data["budgets"], {})
    data["metrics"] = _loads(data["metrics"], {})
    return Run.model_validate(data)


def _row_to_node(row: aiosqlite.Row) -> Node:
    data = dict(row)
    data["success_criteria"] = _loads(data["success_criteria"], [])
    data["context"] = _loads(data["context"], {})
    data["result"] = _loads(data["result"])
    return Node.model_validate(data)


def _row_to_plan(row: aiosqlite.Row) -> Plan:
    data = dict(row)
    data["plan"] = _loads(data.pop("plan_json"))
    return Plan.model_validate(data)


def _row_to_artifact(row: aiosqlite.Row) -> Artifact:
    data = dict(row)
    data["json_payload"] = _loads(data["json_payload"])
    data["is_primary"] = bool(data["is_primary"])
    return Artifact.model_validate(data)
