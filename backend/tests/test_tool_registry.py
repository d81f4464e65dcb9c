"""Tests for sandbox/registry.py and sandbox/calls.py -- the closed tool set."""

import pytest

from models.schemas import ContextType
from sandbox.arguments import ListProjectsArgs
from sandbox.calls import (
    KnownToolCall,
    ToolArgumentError,
    ToolCall,
    ToolResult,
    UnknownToolCall,
    merge_artifacts,
    parse_tool_call,
    summarize_tool_results,
)
from sandbox.handlers import TOOL_HANDLERS
from sandbox.registry import (
    TOOL_REGISTRY,
    describe_args,
    get_default_tool_names,
    get_tool_guide,
    is_tool_allowed,
)


class TestRegistry:
    def test_every_tool_has_a_handler(self) -> None:
        assert set(TOOL_HANDLERS) == set(TOOL_REGISTRY)

    @pytest.mark.parametrize("name", ["create_project"])
    def test_global_only_tools(self, name: str) -> None:
        assert is_tool_allowed(name, ContextType.GLOBAL)
        assert not is_tool_allowed(name, ContextType.PROJECT)

    @pytest.mark.parametrize("name", ["get_project_graph", "link_entities", "unlink_edge"])
    def test_project_only_tools(self, name: str) -> None:
        assert is_tool_allowed(name, ContextType.PROJECT)
        assert not is_tool_allowed(name, ContextType.GLOBAL)

    @pytest.mark.parametrize("name", ["web_search", "get_linked_entities", "list_runs"])
    def test_base_tools_everywhere(self, name: str) -> None:
        assert is_tool_allowed(name, "global")
        assert is_tool_allowed(name, "project")

    def test_unknown_tool_not_allowed(self) -> None:
        assert not is_tool_allowed("rm_rf", ContextType.GLOBAL)

    def test_default_names_sorted_and_filtered(self) -> None:
        names = get_default_tool_names(ContextType.GLOBAL)
        assert names == sorted(names)
        assert "create_project" in names
        assert "link_entities" not in names


class TestToolGuide:
    def test_guide_lists_only_allowed_tools(self) -> None:
        guide = get_tool_guide(ContextType.PROJECT)
        assert "- link_entities:" in guide
        assert "- create_project:" not in guide

    def test_subset_drops_disallowed_names(self) -> None:
        guide = get_tool_guide(ContextType.GLOBAL, ["list_projects", "link_entities"])
        lines = guide.splitlines()
        assert len(lines) == 1
        assert lines[0].startswith("- list_projects: List accessible projects.")

    def test_describe_args_marks_optional(self) -> None:
        described = describe_args(ListProjectsArgs)
        assert described == "{ state_key?: string, type_key?: string, limit?: number }"

    def test_literal_args_render_choices(self) -> None:
        guide = get_tool_guide(ContextType.GLOBAL, ["web_search"])
        assert "search_depth?: basic|advanced" in guide
        assert "query: string" in guide


class TestParseToolCall:
    def test_known_call_validates(self) -> None:
        parsed = parse_tool_call(ToolCall(name="list_projects", args={"limit": "5"}))
        assert isinstance(parsed, KnownToolCall)
        assert parsed.name == "list_projects"
        assert parsed.args.limit == 5  # type: ignore[attr-defined]

    def test_unknown_call(self) -> None:
        parsed = parse_tool_call(ToolCall(name="delete_everything", args={"x": 1}))
        assert isinstance(parsed, UnknownToolCall)
        assert parsed.args == {"x": 1}

    def test_invalid_args(self) -> None:
        with pytest.raises(ToolArgumentError, match="invalid arguments"):
            parse_tool_call(ToolCall(name="get_document_details", args={}))

    def test_extra_args_ignored(self) -> None:
        parsed = parse_tool_call(ToolCall(name="list_projects", args={"bogus": True}))
        assert isinstance(parsed, KnownToolCall)


class TestResultHelpers:
    def test_to_dict_success_and_failure(self) -> None:
        ok = ToolResult(name="list_projects", ok=True, result=[1])
        failed = ToolResult(name="get_run", ok=False, error="run not found")
        assert ok.to_dict() == {"name": "list_projects", "ok": True, "result": [1]}
        assert failed.to_dict() == {"name": "get_run", "ok": False, "error": "run not found"}

    def test_summaries(self) -> None:
        summaries = summarize_tool_results(
            [
                ToolResult(name="a", ok=True, result=[1, 2, 3]),
                ToolResult(name="b", ok=True, result={"k": 1}),
                ToolResult(name="c", ok=True),
                ToolResult(name="d", ok=False, error="nope"),
            ]
        )
        assert [s["summary"] for s in summaries] == ["array(3)", "object", "no_result", "error"]
        assert summaries[3]["error"] == "nope"

    def test_merge_artifacts(self) -> None:
        target: dict[str, list[str]] = {"created_tasks": ["t1"]}
        merge_artifacts(target, {"created_tasks": ["t2"], "created_documents": ["d1"]})
        merge_artifacts(target, None)
        assert target == {"created_tasks": ["t1", "t2"], "created_documents": ["d1"]}
