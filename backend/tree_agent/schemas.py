"""Output schemas for the planner, executor and aggregator roles.

The models accept the camelCase keys the prompts ask for (``modeReason``,
``documentMarkdown``, ...) as well as snake_case. ``normalize_*`` validate a
raw JSON object and raise ``MalformedOutputError`` when it does not fit, which
aborts the node.
"""

from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from models.schemas import ArtifactType, HintType, ResultKind, SuccessAssessment
from sandbox.calls import ToolCall


class MalformedOutputError(ValueError):
    """Raised when a role's output cannot be normalized to its schema."""

    def __init__(self, role: str, detail: str) -> None:
        self.role = role
        self.detail = detail
        super().__init__(f"Malformed {role} output: {detail}")


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class ScratchpadUpdate(WireModel):
    append_markdown: str = ""
    tail_preview: str | None = None


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


class LeafDecision(WireModel):
    can_execute_directly: bool = False
    complexity: Literal["low", "medium", "high"] = "medium"
    blockers: list[str] = Field(default_factory=list)


class StepSpec(WireModel):
    id: str | None = None
    title: str = Field(min_length=1)
    reason: str = ""
    success_criteria: list[str] = Field(default_factory=list)
    step_index: int | None = None


class BandSpec(WireModel):
    index: int | None = None
    goal: str = ""
    parallelizable: bool = True
    steps: list[StepSpec] = Field(default_factory=list)


class PlanSpec(WireModel):
    summary: str = ""
    bands: list[BandSpec] = Field(default_factory=list)


class PlannerOutput(WireModel):
    mode: Literal["execute", "plan"]
    mode_reason: str = ""
    leaf_decision: LeafDecision | None = None
    plan: PlanSpec | None = None
    scratchpad: ScratchpadUpdate = Field(default_factory=ScratchpadUpdate)

    @property
    def has_steps(self) -> bool:
        return self.plan is not None and any(band.steps for band in self.plan.bands)

    @property
    def wants_delegation(self) -> bool:
        return self.mode == "plan" and self.has_steps


# ---------------------------------------------------------------------------
# Executor & aggregator
# ---------------------------------------------------------------------------


class ActionSpec(WireModel):
    kind: str = "analysis"
    note: str = ""
    tool_name: str | None = None
    tool_args: dict[str, Any] = Field(default_factory=dict)
    purpose: str | None = None


class ArtifactSpec(WireModel):
    type: ArtifactType
    label: str = Field(min_length=1)
    title: str | None = None
    document_markdown: str | None = None
    json_payload: Any = None
    is_primary: bool = False

    @model_validator(mode="after")
    def _check_body(self) -> "ArtifactSpec":
        if self.type == ArtifactType.DOCUMENT and self.document_markdown is None:
            raise ValueError(f"document artifact '{self.label}' has no documentMarkdown")
        return self


class ParentHintSpec(WireModel):
    hint_type: HintType
    artifact_labels: list[str] = Field(default_factory=list)


class ResultSpec(WireModel):
    kind: ResultKind
    summary: str = Field(min_length=1)
    success_assessment: SuccessAssessment = Field(default_factory=SuccessAssessment)
    primary_artifact_label: str | None = None
    parent_hint: ParentHintSpec | None = None


class ExecutorOutput(WireModel):
    actions: list[ActionSpec] = Field(default_factory=list)
    artifacts: list[ArtifactSpec] = Field(default_factory=list)
    result: ResultSpec
    scratchpad: ScratchpadUpdate = Field(default_factory=ScratchpadUpdate)

    def tool_calls(self, limit: int | None = None) -> list[ToolCall]:
        """Tool calls requested through ``tool_call`` actions, in order."""
        calls = [
            ToolCall(
                name=action.tool_name,
                args=action.tool_args,
                purpose=action.purpose or action.note or None,
            )
            for action in self.actions
            if action.kind == "tool_call" and action.tool_name
        ]
        return calls[:limit] if limit is not None else calls


class Synthesis(WireModel):
    summary: str = ""
    key_findings: list[str] = Field(default_factory=list)
    gaps: list[str] = Field(default_factory=list)


class NextSpec(WireModel):
    should_replan: bool = False
    replan_reason: str | None = None


class AggregatorOutput(WireModel):
    synthesis: Synthesis = Field(default_factory=Synthesis)
    artifacts: list[ArtifactSpec] = Field(default_factory=list)
    result: ResultSpec
    next: NextSpec = Field(default_factory=NextSpec)
    scratchpad: ScratchpadUpdate = Field(default_factory=ScratchpadUpdate)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

OutputT = TypeVar("OutputT", bound=WireModel)


def _normalize(role: str, model: type[OutputT], raw: Any) -> OutputT:
    if not isinstance(raw, dict):
        raise MalformedOutputError(role, f"expected a JSON object, got {type(raw).__name__}")
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()[:5]
        )
        raise MalformedOutputError(role, problems) from e


def normalize_planner_output(raw: Any) -> PlannerOutput:
    return _normalize("planner", PlannerOutput, raw)


def normalize_executor_output(raw: Any) -> ExecutorOutput:
    return _normalize("executor", ExecutorOutput, raw)


def normalize_aggregator_output(raw: Any) -> AggregatorOutput:
    return _normalize("aggregator", AggregatorOutput, raw)
