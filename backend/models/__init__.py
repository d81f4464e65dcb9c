"""Models module for Pydantic schemas and SQLite stores.

This module exposes the persisted records, the API request/response models,
and the stores that persist them.
"""

from models.database import TreeStore, new_id
from models.ontology import OntologyStore
from models.schemas import (
    Artifact,
    ArtifactType,
    ContextType,
    CreateRunRequest,
    HealthResponse,
    JobOutcome,
    Node,
    NodeStatus,
    Plan,
    PlanSnapshot,
    ResultEnvelope,
    Run,
    RunBudgets,
    RunResponse,
    RunStatus,
    TreeAgentJob,
)

__all__ = [
    "Artifact",
    "ArtifactType",
    "ContextType",
    "CreateRunRequest",
    "HealthResponse",
    "JobOutcome",
    "Node",
    "NodeStatus",
    "OntologyStore",
    "Plan",
    "PlanSnapshot",
    "ResultEnvelope",
    "Run",
    "RunBudgets",
    "RunResponse",
    "RunStatus",
    "TreeAgentJob",
    "TreeStore",
    "new_id",
]
