"""Tree agent orchestration.

This module exports the key components needed to execute a run:
- LLM clients (LiteLLM-backed and scripted mock) and the role callers
- Output schemas for the planner, executor and aggregator roles
- NodeOrchestrator, the per-node LangGraph state machine
- RunController, which turns a queued job into a finished run
"""

from tree_agent.llm import LLMClient, LLMResponse, MockLLMClient, extract_json_from_response
from tree_agent.orchestrator import BudgetExceededError, NodeOrchestrator, run_with_concurrency
from tree_agent.roles import RoleCaller, RoleContext
from tree_agent.run_controller import RunController, resolve_run_context
from tree_agent.schemas import (
    AggregatorOutput,
    ExecutorOutput,
    MalformedOutputError,
    PlannerOutput,
)
from tree_agent.scratchpad import ScratchpadStore

__all__ = [
    "AggregatorOutput",
    "BudgetExceededError",
    "ExecutorOutput",
    "LLMClient",
    "LLMResponse",
    "MalformedOutputError",
    "MockLLMClient",
    "NodeOrchestrator",
    "PlannerOutput",
    "RoleCaller",
    "RoleContext",
    "RunController",
    "ScratchpadStore",
    "extract_json_from_response",
    "resolve_run_context",
    "run_with_concurrency",
]
