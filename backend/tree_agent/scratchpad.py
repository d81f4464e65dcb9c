"""Per-node scratchpad documents.

Every node owns exactly one scratchpad: a markdown document in the run's
workspace project that the roles append to as they work. Appends are
read-concatenate-write; only the orchestrator frame driving a node writes to
its scratchpad, so appends for one node are totally ordered.
"""

from datetime import UTC, datetime

import structlog

from events.log import EventLog
from events.types import ScratchpadLinkedPayload, ScratchpadUpdatedPayload
from models.database import TreeStore
from models.ontology import OntologyStore
from models.schemas import Node, Run

logger = structlog.get_logger(__name__)

SCRATCHPAD_DOC_TYPE = "document.tree_agent.scratchpad"
TAIL_PREVIEW_MAX_CHARS = 160


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def derive_tail_preview(text: str, max_chars: int = TAIL_PREVIEW_MAX_CHARS) -> str:
    """Last non-blank line of ``text``, truncated to ``max_chars`` with an ellipsis."""
    for line in reversed(text.splitlines()):
        line = line.strip()
        if line:
            if len(line) > max_chars:
                return f"{line[: max_chars - 3]}..."
            return line
    return ""


def format_entry(heading: str, body: str) -> str:
    """A timestamped scratchpad section, e.g. ``## Planner (2026-...)``."""
    return f"\n## {heading} ({utc_now_iso()})\n{body.strip()}\n"


class ScratchpadStore:
    """Creates, reads and appends node scratchpads, emitting events for each change.

    Attributes:
        ontology: Store holding the scratchpad documents.
        tree_store: Store holding the node's scratchpad reference.
        events: Event log for scratchpad events.
    """

    def __init__(self, ontology: OntologyStore, tree_store: TreeStore, events: EventLog) -> None:
        self.ontology = ontology
        self.tree_store = tree_store
        self.events = events

    async def ensure(self, run: Run, node: Node, actor_id: str) -> str:
        """Return the node's scratchpad id, creating the document on first visit.

        The recorded id is checked first, so calling this again after a crash
        between document creation and linking at worst leaves one orphaned
        document and never links two.

        Raises:
            ValueError: If the run has no workspace project.
        """
        if node.scratchpad_doc_id:
            return node.scratchpad_doc_id
        if not run.workspace_project_id:
            raise ValueError("Run missing workspace_project_id")

        document = await self.ontology.create_entity(
            "document",
            run.workspace_project_id,
            f"Scratchpad: {node.title[:80]}",
            actor_id,
            content=f"# Scratchpad\n\nRun: {run.id}\nNode: {node.id}\n",
            type_key=SCRATCHPAD_DOC_TYPE,
            state_key="draft",
            props={"tree_agent_run_id": run.id, "tree_agent_node_id": node.id},
        )
        doc_id = document["id"]
        await self.tree_store.set_node_scratchpad(node.id, doc_id)
        node.scratchpad_doc_id = doc_id

        await self.events.append(run.id, node.id, ScratchpadLinkedPayload(scratchpad_doc_id=doc_id))
        await self.events.append(
            run.id,
            node.id,
            ScratchpadUpdatedPayload(
                scratchpad_doc_id=doc_id, tail_preview="Scratchpad initialized"
            ),
        )
        logger.debug("scratchpad_created", run_id=run.id, node_id=node.id, doc_id=doc_id)
        return doc_id

    async def load(self, doc_id: str) -> str:
        """Full scratchpad text ("" if the document is missing)."""
        document = await self.ontology.get_entity("document", doc_id)
        return (document or {}).get("content") or ""

    async def append(
        self,
        run_id: str,
        node_id: str,
        doc_id: str,
        entry: str,
        tail_preview: str | None = None,
    ) -> str:
        """Append ``entry`` and emit ``scratchpad_updated``.

        Args:
            run_id: Run the node belongs to.
            node_id: Owning node.
            doc_id: Scratchpad document id.
            entry: Markdown to append.
            tail_preview: Preview for the event; derived from the entry if omitted.

        Returns:
            The tail preview that was emitted.
        """
        existing = await self.load(doc_id)
        content = f"{existing}\n{entry}" if existing else entry
        await self.ontology.update_entity("document", doc_id, {"content": content})

        preview = (tail_preview or "").strip() or derive_tail_preview(entry)
        if len(preview) > TAIL_PREVIEW_MAX_CHARS:
            preview = derive_tail_preview(preview)
        await self.events.append(
            run_id,
            node_id,
            ScratchpadUpdatedPayload(scratchpad_doc_id=doc_id, tail_preview=preview),
        )
        return preview
