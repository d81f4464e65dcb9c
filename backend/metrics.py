"""Per-run usage accounting.

This module provides the RunMetrics accumulator for a single run and the
RunMetricsTracker that flushes it to the run record after every update, so a
crashed worker never loses more than the in-flight LLM call.

A tracker is created by the run controller for each job and handed to the
orchestrator explicitly; there is no process-wide metrics state.

Usage:
    >>> tracker = RunMetricsTracker(store, "run_abc", seed=run.metrics)
    >>> await tracker.on_usage(UsageEvent(model="openai/gpt-4o-mini", prompt_tokens=10))
    >>> tracker.metrics.tokens_total
    10
"""

import time
from dataclasses import dataclass, field
from typing import Any

import structlog

from models.database import TreeStore

logger = structlog.get_logger(__name__)


@dataclass
class UsageEvent:
    """Token and cost usage reported for a single LLM completion.

    Attributes:
        model: Model id that served the call.
        prompt_tokens: Input tokens.
        completion_tokens: Output tokens.
        total_tokens: Sum reported by the provider (or computed).
        input_cost: USD cost of the input tokens.
        output_cost: USD cost of the output tokens.
        total_cost: USD cost of the call.
        role: Role that made the call (planner, executor, aggregator).
        node_id: Node the call was made for.
    """

    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    input_cost: float = 0.0
    output_cost: float = 0.0
    total_cost: float = 0.0
    role: str | None = None
    node_id: str | None = None

    def __post_init__(self) -> None:
        if not self.total_tokens:
            self.total_tokens = self.prompt_tokens + self.completion_tokens
        if not self.total_cost:
            self.total_cost = self.input_cost + self.output_cost


@dataclass
class RunMetrics:
    """Accumulated usage for a single run.

    Attributes:
        tokens_total: Sum of all tokens across LLM calls.
        prompt_tokens: Total input tokens.
        completion_tokens: Total output tokens.
        cost_total_usd: Total USD cost.
        llm_calls: Number of LLM completions.
        tool_calls: Number of executed tool calls.
        last_model: Model id of the most recent call.
        updated_at: Unix timestamp of the last update.
    """

    tokens_total: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_total_usd: float = 0.0
    llm_calls: int = 0
    tool_calls: int = 0
    last_model: str | None = None
    updated_at: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RunMetrics":
        """Seed an accumulator from a run's stored metrics JSON."""
        data = data or {}
        return cls(
            tokens_total=int(data.get("tokens_total") or 0),
            prompt_tokens=int(data.get("prompt_tokens") or 0),
            completion_tokens=int(data.get("completion_tokens") or 0),
            cost_total_usd=float(data.get("cost_total_usd") or 0.0),
            llm_calls=int(data.get("llm_calls") or 0),
            tool_calls=int(data.get("tool_calls") or 0),
            last_model=data.get("last_model"),
        )

    def add_usage(self, usage: UsageEvent) -> None:
        self.tokens_total += usage.total_tokens
        self.prompt_tokens += usage.prompt_tokens
        self.completion_tokens += usage.completion_tokens
        self.cost_total_usd += usage.total_cost
        self.llm_calls += 1
        self.last_model = usage.model or self.last_model
        self.updated_at = time.time()

    def add_tool_calls(self, count: int) -> None:
        self.tool_calls += count
        self.updated_at = time.time()

    def to_dict(self) -> dict[str, Any]:
        """Convert to the keys stored in the run's metrics JSON."""
        return {
            "tokens_total": self.tokens_total,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "cost_total_usd": round(self.cost_total_usd, 6),
            "llm_calls": self.llm_calls,
            "tool_calls": self.tool_calls,
            "last_model": self.last_model,
            "metrics_updated_at": self.updated_at,
        }


class RunMetricsTracker:
    """Owns one run's accumulator and persists it after each update.

    Attributes:
        store: Tree store holding the run record.
        run_id: The run being tracked.
        metrics: The live accumulator.
    """

    def __init__(
        self,
        store: TreeStore,
        run_id: str,
        seed: dict[str, Any] | None = None,
    ) -> None:
        self.store = store
        self.run_id = run_id
        self.metrics = RunMetrics.from_dict(seed)

    async def on_usage(self, usage: UsageEvent) -> None:
        """Usage callback passed to every LLM call of the run."""
        self.metrics.add_usage(usage)
        logger.debug(
            "metrics_llm_call_recorded",
            run_id=self.run_id,
            node_id=usage.node_id,
            role=usage.role,
            model=usage.model,
            total_tokens=usage.total_tokens,
            tokens_total=self.metrics.tokens_total,
        )
        await self.flush()

    async def record_tool_calls(self, count: int) -> None:
        """Count executed tool calls and persist."""
        if count <= 0:
            return
        self.metrics.add_tool_calls(count)
        await self.flush()

    async def flush(self) -> None:
        await self.store.merge_run_metrics(self.run_id, self.metrics.to_dict())
