"""Tests for models/schemas.py and tree_agent/schemas.py.

Covers enum values, API request validation, and normalization of the
planner, executor and aggregator outputs (camelCase and snake_case keys,
malformed output rejection).
"""

import pytest
from pydantic import ValidationError

from models.schemas import (
    ArtifactType,
    ContextType,
    CreateRunRequest,
    HealthResponse,
    NodeStatus,
    ResultEnvelope,
    ResultKind,
    RunStatus,
)
from tests.conftest import (
    aggregator_output,
    document_artifact,
    executor_output,
    planner_execute,
    planner_plan,
)
from tree_agent.schemas import (
    MalformedOutputError,
    normalize_aggregator_output,
    normalize_executor_output,
    normalize_planner_output,
)

# =========================================================================
# Enums
# =========================================================================


class TestEnums:
    def test_run_status_values(self) -> None:
        assert {s.value for s in RunStatus} == {
            "queued",
            "running",
            "waiting_on_user",
            "completed",
            "stopped",
            "canceled",
            "failed",
        }

    def test_node_status_values(self) -> None:
        assert NodeStatus.PLANNING == "planning"
        assert NodeStatus.AGGREGATING == "aggregating"
        assert len(NodeStatus) == 8

    def test_string_comparison(self) -> None:
        assert ContextType.PROJECT == "project"
        assert ArtifactType("json") is ArtifactType.JSON


# =========================================================================
# API models
# =========================================================================


class TestCreateRunRequest:
    def test_defaults(self) -> None:
        req = CreateRunRequest(user_id="user_1", objective="Write a brief")
        assert req.context_type == ContextType.GLOBAL
        assert req.context_project_id is None
        assert req.budgets is None
        assert req.success_criteria == []

    def test_budget_override(self) -> None:
        req = CreateRunRequest(
            user_id="user_1",
            objective="Write a brief",
            budgets={"max_wall_clock_ms": 5000},
        )
        assert req.budgets is not None
        assert req.budgets.max_wall_clock_ms == 5000

    def test_user_id_required(self) -> None:
        with pytest.raises(ValidationError):
            CreateRunRequest(user_id="", objective="Write a brief")

    def test_objective_too_long(self) -> None:
        with pytest.raises(ValidationError):
            CreateRunRequest(user_id="user_1", objective="x" * 10001)

    def test_invalid_context_type(self) -> None:
        with pytest.raises(ValidationError):
            CreateRunRequest(user_id="user_1", objective="ok", context_type="team")


class TestResultEnvelope:
    def test_defaults(self) -> None:
        envelope = ResultEnvelope(kind=ResultKind.JSON, summary="done")
        assert envelope.artifact_ids == []
        assert envelope.success_assessment.met is False
        assert envelope.json_payload is None

    def test_health_defaults(self) -> None:
        health = HealthResponse()
        assert health.status == "healthy"
        assert health.queued_jobs == 0


# =========================================================================
# Planner output
# =========================================================================


class TestPlannerOutput:
    def test_execute_mode(self) -> None:
        output = normalize_planner_output(planner_execute("Small enough"))
        assert output.mode == "execute"
        assert not output.wants_delegation
        assert output.scratchpad.append_markdown == "Small enough"

    def test_plan_mode_with_steps(self) -> None:
        output = normalize_planner_output(planner_plan(["Research", "Outline"], ["Write"]))
        assert output.wants_delegation
        assert output.plan is not None
        assert [len(b.steps) for b in output.plan.bands] == [2, 1]
        assert output.plan.bands[0].steps[0].success_criteria == ["done"]

    def test_plan_mode_without_steps_does_not_delegate(self) -> None:
        output = normalize_planner_output({"mode": "plan", "plan": {"bands": [{"steps": []}]}})
        assert not output.has_steps
        assert not output.wants_delegation

    def test_snake_case_keys(self) -> None:
        output = normalize_planner_output(
            {
                "mode": "execute",
                "mode_reason": "tiny",
                "leaf_decision": {"can_execute_directly": True, "complexity": "low"},
                "scratchpad": {"append_markdown": "note", "tail_preview": "tail"},
            }
        )
        assert output.mode_reason == "tiny"
        assert output.leaf_decision is not None
        assert output.leaf_decision.can_execute_directly
        assert output.scratchpad.tail_preview == "tail"

    def test_unknown_mode(self) -> None:
        with pytest.raises(MalformedOutputError, match="planner"):
            normalize_planner_output({"mode": "think"})

    def test_step_title_required(self) -> None:
        with pytest.raises(MalformedOutputError):
            normalize_planner_output(
                {"mode": "plan", "plan": {"bands": [{"steps": [{"title": ""}]}]}}
            )

    @pytest.mark.parametrize("raw", [None, "execute", ["mode"], 3])
    def test_non_object_rejected(self, raw) -> None:
        with pytest.raises(MalformedOutputError, match="expected a JSON object"):
            normalize_planner_output(raw)


# =========================================================================
# Executor output
# =========================================================================


class TestExecutorOutput:
    def test_tool_calls_in_order(self) -> None:
        raw = executor_output(
            tool_calls=[("list_projects", {"limit": 5}), ("web_search", {"query": "x"})]
        )
        output = normalize_executor_output(raw)
        calls = output.tool_calls()
        assert [c.name for c in calls] == ["list_projects", "web_search"]
        assert calls[0].args == {"limit": 5}
        assert [c.name for c in output.tool_calls(limit=1)] == ["list_projects"]

    def test_analysis_actions_are_not_tool_calls(self) -> None:
        output = normalize_executor_output(executor_output())
        assert output.actions
        assert output.tool_calls() == []

    def test_document_artifact(self) -> None:
        output = normalize_executor_output(executor_output(artifacts=[document_artifact("brief")]))
        artifact = output.artifacts[0]
        assert artifact.type == ArtifactType.DOCUMENT
        assert artifact.label == "brief"
        assert artifact.is_primary
        assert artifact.document_markdown

    def test_document_artifact_without_markdown(self) -> None:
        raw = executor_output(
            artifacts=[{"type": "document", "label": "empty", "title": "Empty"}]
        )
        with pytest.raises(MalformedOutputError, match="documentMarkdown"):
            normalize_executor_output(raw)

    def test_json_artifact_needs_no_markdown(self) -> None:
        raw = executor_output(
            artifacts=[{"type": "json", "label": "data", "jsonPayload": {"rows": 3}}]
        )
        output = normalize_executor_output(raw)
        assert output.artifacts[0].json_payload == {"rows": 3}

    def test_result_required(self) -> None:
        with pytest.raises(MalformedOutputError, match="result"):
            normalize_executor_output({"actions": []})

    def test_empty_summary_rejected(self) -> None:
        with pytest.raises(MalformedOutputError):
            normalize_executor_output({"result": {"kind": "json", "summary": ""}})

    def test_parent_hint(self) -> None:
        raw = executor_output()
        raw["result"]["parentHint"] = {"hintType": "read_json", "artifactLabels": ["data"]}
        output = normalize_executor_output(raw)
        assert output.result.parent_hint is not None
        assert output.result.parent_hint.artifact_labels == ["data"]


# =========================================================================
# Aggregator output
# =========================================================================


class TestAggregatorOutput:
    def test_defaults_to_no_replan(self) -> None:
        output = normalize_aggregator_output(aggregator_output("Merged"))
        assert output.result.summary == "Merged"
        assert output.next.should_replan is False

    def test_replan_request(self) -> None:
        output = normalize_aggregator_output(aggregator_output(should_replan=True))
        assert output.next.should_replan is True

    def test_snake_case_next(self) -> None:
        output = normalize_aggregator_output(
            {
                "result": {"kind": "hybrid", "summary": "ok"},
                "next": {"should_replan": True, "replan_reason": "gap"},
            }
        )
        assert output.result.kind == ResultKind.HYBRID
        assert output.next.replan_reason == "gap"
