"""Artifact persistence and result envelopes.

Executor and aggregator outputs name their artifacts by label. Persisting
them yields durable ids; the label map is then used to resolve the primary
artifact of the result envelope and the artifacts a parent should read.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog

from events.log import EventLog
from events.types import ArtifactCreatedPayload
from models.database import TreeStore, new_id
from models.ontology import OntologyStore
from models.schemas import (
    Artifact,
    ArtifactType,
    HintType,
    Node,
    ResultEnvelope,
    ResultKind,
    Run,
)
from tree_agent.schemas import ArtifactSpec, ResultSpec

logger = structlog.get_logger(__name__)

ARTIFACT_DOC_TYPE = "document.tree_agent.artifact"


@dataclass
class PersistedArtifacts:
    """Ids produced by one ``persist_artifacts`` call.

    Attributes:
        artifact_ids: Artifact ids in output order.
        document_ids: Document ids of document-kind artifacts only.
        label_to_id: Artifact id per label (first occurrence wins).
        document_by_artifact: Document id per document-kind artifact id.
        primary_ids: Artifacts flagged ``isPrimary``.
        json_payload: Payload of the first json-kind artifact, if any.
    """

    artifact_ids: list[str] = field(default_factory=list)
    document_ids: list[str] = field(default_factory=list)
    label_to_id: dict[str, str] = field(default_factory=dict)
    document_by_artifact: dict[str, str] = field(default_factory=dict)
    primary_ids: list[str] = field(default_factory=list)
    json_payload: Any = None


async def persist_artifacts(
    *,
    tree_store: TreeStore,
    ontology: OntologyStore,
    events: EventLog,
    run: Run,
    node: Node,
    actor_id: str,
    specs: list[ArtifactSpec],
) -> PersistedArtifacts:
    """Persist artifacts, creating a workspace document for each document-kind entry.

    Raises:
        ValueError: If a document artifact is produced for a run without a
            workspace project.
    """
    persisted = PersistedArtifacts()
    for spec in specs:
        artifact_id = new_id("art")
        document_id: str | None = None
        json_payload: Any = None

        if spec.type == ArtifactType.DOCUMENT:
            if not run.workspace_project_id:
                raise ValueError("Run missing workspace_project_id")
            document = await ontology.create_entity(
                "document",
                run.workspace_project_id,
                spec.title or spec.label,
                actor_id,
                content=spec.document_markdown or "",
                type_key=ARTIFACT_DOC_TYPE,
                state_key="draft",
                props={
                    "tree_agent_run_id": run.id,
                    "tree_agent_node_id": node.id,
                    "tree_agent_artifact_label": spec.label,
                },
            )
            document_id = document["id"]
            persisted.document_ids.append(document_id)
            persisted.document_by_artifact[artifact_id] = document_id
        else:
            json_payload = (
                spec.json_payload if spec.json_payload is not None else spec.document_markdown
            )
            if spec.type == ArtifactType.JSON and persisted.json_payload is None:
                persisted.json_payload = json_payload

        await tree_store.create_artifact(
            Artifact(
                id=artifact_id,
                run_id=run.id,
                node_id=node.id,
                artifact_type=spec.type,
                label=spec.label,
                document_id=document_id,
                json_payload=json_payload,
                is_primary=spec.is_primary,
            )
        )
        persisted.artifact_ids.append(artifact_id)
        persisted.label_to_id.setdefault(spec.label, artifact_id)
        if spec.is_primary:
            persisted.primary_ids.append(artifact_id)

        await events.append(
            run.id,
            node.id,
            ArtifactCreatedPayload(
                artifact_id=artifact_id,
                artifact_type=spec.type.value,
                label=spec.label,
                document_id=document_id,
                is_primary=spec.is_primary,
            ),
        )

    if specs:
        logger.debug(
            "artifacts_persisted",
            run_id=run.id,
            node_id=node.id,
            artifact_count=len(persisted.artifact_ids),
            document_count=len(persisted.document_ids),
        )
    return persisted


def build_result_envelope(
    result: ResultSpec,
    persisted: PersistedArtifacts,
    scratchpad_doc_id: str | None,
    scratchpad_tail: str,
) -> ResultEnvelope:
    """Build the envelope a completed node hands to its parent."""
    primary_id = None
    if result.primary_artifact_label:
        primary_id = persisted.label_to_id.get(result.primary_artifact_label)
    if primary_id is None and persisted.primary_ids:
        primary_id = persisted.primary_ids[0]

    return ResultEnvelope(
        kind=result.kind,
        summary=result.summary,
        success_assessment=result.success_assessment,
        primary_artifact_id=primary_id,
        artifact_ids=list(persisted.artifact_ids),
        document_ids=list(persisted.document_ids),
        json_payload=persisted.json_payload,
        scratchpad_doc_id=scratchpad_doc_id,
        scratchpad_tail=scratchpad_tail,
    )


def resolve_parent_hint(
    result: ResultSpec,
    persisted: PersistedArtifacts,
) -> tuple[HintType, list[str], list[str]]:
    """Translate the result's parent hint labels into artifact and document ids.

    Without an explicit hint, JSON results point the parent at JSON and
    everything else at documents, covering every artifact of the node.

    Returns:
        ``(hint_type, artifact_ids, document_ids)``.
    """
    hint = result.parent_hint
    if hint is not None:
        hint_type = hint.hint_type
        labels = hint.artifact_labels
    else:
        hint_type = (
            HintType.READ_JSON if result.kind == ResultKind.JSON else HintType.READ_DOCUMENTS
        )
        labels = []

    if labels:
        artifact_ids = [
            persisted.label_to_id[label] for label in labels if label in persisted.label_to_id
        ]
    else:
        artifact_ids = list(persisted.artifact_ids)
    document_ids = [
        persisted.document_by_artifact[artifact_id]
        for artifact_id in artifact_ids
        if artifact_id in persisted.document_by_artifact
    ]
    return hint_type, artifact_ids, document_ids


async def collect_child_summaries(
    ontology: OntologyStore,
    children: list[Node],
    max_document_chars: int,
) -> str:
    """Render each child's result envelope and documents for the aggregator.

    Args:
        ontology: Store holding the child documents.
        children: Child nodes, freshly loaded so their results are present.
        max_document_chars: Truncation length for each document body.
    """
    blocks: list[str] = []
    for child in children:
        summary = child.result.summary if child.result else "no result"
        lines = [f"Child {child.title} ({child.id})", f"Result: {summary}"]
        for document_id in child.result.document_ids if child.result else []:
            document = await ontology.get_entity("document", document_id)
            if document is None:
                continue
            content = document.get("content") or ""
            if len(content) > max_document_chars:
                content = f"{content[:max_document_chars]}..."
            lines.append(f"Document: {document['title']} ({document_id})\n{content}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) or "(no child results)"
