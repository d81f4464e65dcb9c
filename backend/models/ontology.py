"""SQLite-backed project ontology used by the agent tools.

The ontology is intentionally small: actors (one per user), projects and
their memberships, generic entities (tasks, documents, goals) and typed
edges between them. Scratchpads and artifact documents produced by runs are
document entities living in the run's workspace project.

Tables:
    actors: Maps a user id to the actor that owns runs and memberships.
    projects: Project records.
    project_members: Actor memberships; ``removed_at`` marks a revoked one.
    entities: Tasks, documents and goals keyed by ``kind``.
    edges: Directed, typed links between entities of one project.
"""

import json
import time
from typing import Any

import structlog

from models.database import SQLiteStore, new_id

logger = structlog.get_logger(__name__)

ENTITY_KINDS = ("task", "document", "goal")
LINKABLE_KINDS = ("project", *ENTITY_KINDS)

_PROJECT_FIELDS = ("name", "description", "type_key", "state_key", "props")
_ENTITY_FIELDS = (
    "title",
    "description",
    "content",
    "type_key",
    "state_key",
    "priority",
    "props",
)


def _decode(row: Any) -> dict[str, Any]:
    data = dict(row)
    if "props" in data:
        data["props"] = json.loads(data["props"]) if data["props"] else {}
    return data


class OntologyStore(SQLiteStore):
    """Async SQLite store for actors, projects, entities and edges.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    async def init(self) -> None:
        """Create database tables if they do not exist."""
        self._ensure_parent_dir()

        try:
            async with self._connect() as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS actors (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL UNIQUE,
                        created_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS projects (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        description TEXT,
                        type_key TEXT NOT NULL DEFAULT 'project.generic',
                        state_key TEXT NOT NULL DEFAULT 'active',
                        props TEXT NOT NULL DEFAULT '{}',
                        created_by TEXT NOT NULL,
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS project_members (
                        project_id TEXT NOT NULL,
                        actor_id TEXT NOT NULL,
                        role_key TEXT NOT NULL DEFAULT 'owner',
                        access TEXT NOT NULL DEFAULT 'admin',
                        created_at REAL NOT NULL,
                        removed_at REAL,
                        PRIMARY KEY (project_id, actor_id)
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS entities (
                        id TEXT PRIMARY KEY,
                        kind TEXT NOT NULL,
                        project_id TEXT NOT NULL,
                        title TEXT NOT NULL,
                        description TEXT,
                        content TEXT,
                        type_key TEXT,
                        state_key TEXT,
                        priority INTEGER,
                        props TEXT NOT NULL DEFAULT '{}',
                        created_by TEXT NOT NULL,
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS edges (
                        id TEXT PRIMARY KEY,
                        project_id TEXT NOT NULL,
                        src_kind TEXT NOT NULL,
                        src_id TEXT NOT NULL,
                        dst_kind TEXT NOT NULL,
                        dst_id TEXT NOT NULL,
                        rel TEXT NOT NULL,
                        props TEXT NOT NULL DEFAULT '{}',
                        created_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_entities_kind_project
                    ON entities(kind, project_id)
                """)
                await db.commit()
            logger.info("ontology_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error("ontology_store_init_failed", db_path=self.db_path, error=str(e))
            raise

    # -----------------------------------------------------------------
    # Actors & memberships
    # -----------------------------------------------------------------

    async def ensure_actor(self, user_id: str) -> str:
        """Return the actor id for a user, creating the actor on first use."""
        async with self._connect() as db:
            await db.execute(
                "INSERT OR IGNORE INTO actors (id, user_id, created_at) VALUES (?, ?, ?)",
                (new_id("actor"), user_id, time.time()),
            )
            await db.commit()
            cursor = await db.execute("SELECT id FROM actors WHERE user_id = ?", (user_id,))
            row = await cursor.fetchone()
        return row["id"]

    async def add_project_member(
        self,
        project_id: str,
        actor_id: str,
        role_key: str = "owner",
        access: str = "admin",
    ) -> None:
        """Add (or restore) an actor's membership in a project."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO project_members (project_id, actor_id, role_key, access, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (project_id, actor_id)
                DO UPDATE SET role_key = excluded.role_key,
                              access = excluded.access,
                              removed_at = NULL
                """,
                (project_id, actor_id, role_key, access, time.time()),
            )
            await db.commit()

    async def remove_project_member(self, project_id: str, actor_id: str) -> None:
        """Revoke a membership without deleting its history."""
        async with self._connect() as db:
            await db.execute(
                "UPDATE project_members SET removed_at = ? WHERE project_id = ? AND actor_id = ?",
                (time.time(), project_id, actor_id),
            )
            await db.commit()

    async def list_member_project_ids(self, actor_id: str) -> list[str]:
        """Project ids where the actor holds an active membership."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT project_id FROM project_members
                WHERE actor_id = ? AND removed_at IS NULL
                """,
                (actor_id,),
            )
            rows = await cursor.fetchall()
        return [row["project_id"] for row in rows]

    async def is_project_member(self, project_id: str, actor_id: str) -> bool:
        """Whether the actor holds an active membership in the project."""
        return project_id in await self.list_member_project_ids(actor_id)

    # -----------------------------------------------------------------
    # Projects
    # -----------------------------------------------------------------

    async def create_project(
        self,
        name: str,
        created_by: str,
        *,
        description: str | None = None,
        type_key: str = "project.generic",
        state_key: str = "active",
        props: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Insert a project and return it."""
        now = time.time()
        project = {
            "id": new_id("proj"),
            "name": name,
            "description": description,
            "type_key": type_key,
            "state_key": state_key,
            "props": props or {},
            "created_by": created_by,
            "created_at": now,
            "updated_at": now,
        }
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO projects
                    (id, name, description, type_key, state_key, props, created_by,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project["id"],
                    name,
                    description,
                    type_key,
                    state_key,
                    json.dumps(project["props"]),
                    created_by,
                    now,
                    now,
                ),
            )
            await db.commit()
        logger.debug("project_saved", project_id=project["id"], type_key=type_key)
        return project

    async def get_project(self, project_id: str) -> dict[str, Any] | None:
        """Retrieve a project by id."""
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM projects WHERE id = ?", (project_id,))
            row = await cursor.fetchone()
        return _decode(row) if row else None

    async def update_project(
        self, project_id: str, fields: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Apply a partial update to a project and return the new row."""
        await self._update("projects", project_id, fields, _PROJECT_FIELDS)
        return await self.get_project(project_id)

    async def list_projects(
        self,
        project_ids: list[str],
        *,
        state_key: str | None = None,
        type_key: str | None = None,
        search: str | None = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        """List projects among ``project_ids``, most recently updated first."""
        if not project_ids:
            return []
        clauses = [f"id IN ({', '.join('?' for _ in project_ids)})"]
        params: list[Any] = list(project_ids)
        if state_key:
            clauses.append("state_key = ?")
            params.append(state_key)
        if type_key:
            clauses.append("type_key = ?")
            params.append(type_key)
        if search:
            clauses.append("(name LIKE ? OR COALESCE(description, '') LIKE ?)")
            params.extend([f"%{search}%", f"%{search}%"])
        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                SELECT * FROM projects WHERE {" AND ".join(clauses)}
                ORDER BY updated_at DESC LIMIT ?
                """,
                (*params, limit),
            )
            rows = await cursor.fetchall()
        return [_decode(row) for row in rows]

    # -----------------------------------------------------------------
    # Entities
    # -----------------------------------------------------------------

    async def create_entity(
        self,
        kind: str,
        project_id: str,
        title: str,
        created_by: str,
        *,
        description: str | None = None,
        content: str | None = None,
        type_key: str | None = None,
        state_key: str | None = None,
        priority: int | None = None,
        props: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Insert a task, document or goal and return it."""
        if kind not in ENTITY_KINDS:
            raise ValueError(f"Unknown entity kind: {kind}")
        now = time.time()
        entity = {
            "id": new_id(kind[:3]),
            "kind": kind,
            "project_id": project_id,
            "title": title,
            "description": description,
            "content": content,
            "type_key": type_key,
            "state_key": state_key,
            "priority": priority,
            "props": props or {},
            "created_by": created_by,
            "created_at": now,
            "updated_at": now,
        }
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO entities
                    (id, kind, project_id, title, description, content, type_key,
                     state_key, priority, props, created_by, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entity["id"],
                    kind,
                    project_id,
                    title,
                    description,
                    content,
                    type_key,
                    state_key,
                    priority,
                    json.dumps(entity["props"]),
                    created_by,
                    now,
                    now,
                ),
            )
            await db.commit()
        logger.debug("entity_saved", kind=kind, entity_id=entity["id"], project_id=project_id)
        return entity

    async def get_entity(self, kind: str, entity_id: str) -> dict[str, Any] | None:
        """Retrieve an entity of the given kind by id."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM entities WHERE id = ? AND kind = ?",
                (entity_id, kind),
            )
            row = await cursor.fetchone()
        return _decode(row) if row else None

    async def update_entity(
        self, kind: str, entity_id: str, fields: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Apply a partial update to an entity and return the new row."""
        await self._update("entities", entity_id, fields, _ENTITY_FIELDS)
        return await self.get_entity(kind, entity_id)

    async def list_entities(
        self,
        kind: str,
        project_ids: list[str],
        *,
        state_key: str | None = None,
        type_key: str | None = None,
        search: str | None = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        """List entities of one kind across ``project_ids``, newest first."""
        if not project_ids:
            return []
        clauses = ["kind = ?", f"project_id IN ({', '.join('?' for _ in project_ids)})"]
        params: list[Any] = [kind, *project_ids]
        if state_key:
            clauses.append("state_key = ?")
            params.append(state_key)
        if type_key:
            clauses.append("type_key = ?")
            params.append(type_key)
        if search:
            clauses.append(
                "(title LIKE ? OR COALESCE(description, '') LIKE ? "
                "OR COALESCE(content, '') LIKE ?)"
            )
            params.extend([f"%{search}%"] * 3)
        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                SELECT * FROM entities WHERE {" AND ".join(clauses)}
                ORDER BY updated_at DESC LIMIT ?
                """,
                (*params, limit),
            )
            rows = await cursor.fetchall()
        return [_decode(row) for row in rows]

    async def count_entities(self, project_id: str) -> dict[str, int]:
        """Count a project's entities per kind."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT kind, COUNT(*) AS n FROM entities WHERE project_id = ? GROUP BY kind",
                (project_id,),
            )
            rows = await cursor.fetchall()
        counts = {kind: 0 for kind in ENTITY_KINDS}
        counts.update({row["kind"]: row["n"] for row in rows})
        return counts

    async def get_entity_project_id(self, kind: str, entity_id: str) -> str | None:
        """Return the project an entity belongs to (a project belongs to itself)."""
        if kind == "project":
            project = await self.get_project(entity_id)
            return project["id"] if project else None
        entity = await self.get_entity(kind, entity_id)
        return entity["project_id"] if entity else None

    # -----------------------------------------------------------------
    # Edges
    # -----------------------------------------------------------------

    async def create_edge(
        self,
        project_id: str,
        src_kind: str,
        src_id: str,
        dst_kind: str,
        dst_id: str,
        rel: str,
        props: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Insert a directed edge and return it."""
        edge = {
            "id": new_id("edge"),
            "project_id": project_id,
            "src_kind": src_kind,
            "src_id": src_id,
            "dst_kind": dst_kind,
            "dst_id": dst_id,
            "rel": rel,
            "props": props or {},
            "created_at": time.time(),
        }
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO edges
                    (id, project_id, src_kind, src_id, dst_kind, dst_id, rel, props, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    edge["id"],
                    project_id,
                    src_kind,
                    src_id,
                    dst_kind,
                    dst_id,
                    rel,
                    json.dumps(edge["props"]),
                    edge["created_at"],
                ),
            )
            await db.commit()
        return edge

    async def get_edge(self, edge_id: str) -> dict[str, Any] | None:
        """Retrieve an edge by id."""
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM edges WHERE id = ?", (edge_id,))
            row = await cursor.fetchone()
        return _decode(row) if row else None

    async def delete_edge(self, edge_id: str) -> bool:
        """Delete an edge. Returns False if it did not exist."""
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM edges WHERE id = ?", (edge_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def list_edges(
        self,
        entity_id: str,
        *,
        rel: str | None = None,
        direction: str = "both",
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """List edges touching an entity.

        Args:
            entity_id: The entity at either end of the edge.
            rel: Only edges with this relation.
            direction: "outgoing", "incoming" or "both".
            limit: Maximum number of edges.
        """
        if direction == "outgoing":
            clauses, params = ["src_id = ?"], [entity_id]
        elif direction == "incoming":
            clauses, params = ["dst_id = ?"], [entity_id]
        else:
            clauses, params = ["(src_id = ? OR dst_id = ?)"], [entity_id, entity_id]
        if rel:
            clauses.append("rel = ?")
            params.append(rel)
        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                SELECT * FROM edges WHERE {" AND ".join(clauses)}
                ORDER BY created_at LIMIT ?
                """,
                (*params, limit),
            )
            rows = await cursor.fetchall()
        return [_decode(row) for row in rows]

    async def list_project_edges(self, project_id: str, limit: int = 200) -> list[dict[str, Any]]:
        """List every edge in a project."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM edges WHERE project_id = ? ORDER BY created_at LIMIT ?",
                (project_id, limit),
            )
            rows = await cursor.fetchall()
        return [_decode(row) for row in rows]

    # -----------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------

    async def _update(
        self,
        table: str,
        row_id: str,
        fields: dict[str, Any],
        allowed: tuple[str, ...],
    ) -> None:
        updates = {k: v for k, v in fields.items() if k in allowed and v is not None}
        if not updates:
            return
        if "props" in updates:
            updates["props"] = json.dumps(updates["props"])
        assignments = ", ".join(f"{column} = ?" for column in updates)
        async with self._connect() as db:
            await db.execute(
                f"UPDATE {table} SET {assignments}, updated_at = ? WHERE id = ?",
                (*updates.values(), time.time(), row_id),
            )
            await db.commit()
