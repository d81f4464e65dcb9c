"""Tool call and tool result types.

A ``ToolCall`` is what the LLM asked for. ``parse_tool_call`` turns it into
either a ``KnownToolCall`` (registered tool, arguments validated against the
tool's model) or an ``UnknownToolCall``. Argument validation failures are
reported as ``ToolArgumentError``.
"""

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from sandbox.arguments import ToolArgs
from sandbox.registry import ToolSpec, get_tool_spec


class ToolArgumentError(ValueError):
    """Raised when a tool call's arguments do not match the tool's schema."""


class ToolExecutionError(RuntimeError):
    """Raised by a handler for a soft failure such as a missing entity."""


class ToolCall(BaseModel):
    """A tool call as requested by the executor."""

    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    purpose: str | None = None


@dataclass(frozen=True)
class KnownToolCall:
    """A call to a registered tool with validated arguments."""

    spec: ToolSpec
    args: ToolArgs
    purpose: str | None = None

    @property
    def name(self) -> str:
        return self.spec.name


@dataclass(frozen=True)
class UnknownToolCall:
    """A call naming a tool the registry does not know."""

    name: str
    args: dict[str, Any]
    purpose: str | None = None


ParsedToolCall = KnownToolCall | UnknownToolCall


def parse_tool_call(call: ToolCall) -> ParsedToolCall:
    """Resolve a requested call against the registry.

    Raises:
        ToolArgumentError: If the tool is registered but the arguments are invalid.
    """
    spec = get_tool_spec(call.name)
    if spec is None:
        return UnknownToolCall(name=call.name, args=call.args, purpose=call.purpose)
    try:
        args = spec.args_model.model_validate(call.args)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'args'}: {err['msg']}"
            for err in e.errors()
        )
        raise ToolArgumentError(f"invalid arguments: {problems}") from e
    return KnownToolCall(spec=spec, args=args, purpose=call.purpose)


@dataclass
class ToolOutput:
    """What a tool handler returns on success."""

    result: Any
    artifacts: dict[str, list[str]] | None = None


@dataclass
class ToolResult:
    """Outcome of one tool call. Failures are data, never exceptions.

    Attributes:
        name: Tool name.
        ok: Whether the call succeeded.
        result: Handler result on success.
        error: Error message on failure.
        artifacts: Ids of entities the call created, keyed by kind.
    """

    name: str
    ok: bool
    result: Any = None
    error: str | None = None
    artifacts: dict[str, list[str]] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "ok": self.ok}
        if self.ok:
            data["result"] = self.result
        else:
            data["error"] = self.error
        if self.artifacts:
            data["artifacts"] = self.artifacts
        return data


@dataclass
class ToolBatchResult:
    """Results of a sequential batch, with created ids merged across calls."""

    results: list[ToolResult] = field(default_factory=list)
    artifacts: dict[str, list[str]] = field(default_factory=dict)


def summarize_result_value(value: Any) -> str:
    """Short shape description of a tool result."""
    if value is None:
        return "no_result"
    if isinstance(value, list):
        return f"array({len(value)})"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def summarize_tool_results(results: list[ToolResult]) -> list[dict[str, Any]]:
    """Compact per-call summaries for events and scratchpad entries."""
    return [
        {
            "name": r.name,
            "ok": r.ok,
            "summary": summarize_result_value(r.result) if r.ok else "error",
            "error": r.error,
        }
        for r in results
    ]


def merge_artifacts(
    target: dict[str, list[str]],
    source: dict[str, list[str]] | None,
) -> dict[str, list[str]]:
    """Append created ids from ``source`` into ``target`` in place."""
    for kind, ids in (source or {}).items():
        target.setdefault(kind, []).extend(ids)
    return target
