"""Tests for tree_agent/llm.py -- JSON extraction, repair retries, mock client."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from metrics import UsageEvent
from tree_agent.llm import (
    LLMClient,
    LLMResponse,
    MockLLMClient,
    default_mock_output,
    extract_json_from_response,
)
from tree_agent.schemas import (
    MalformedOutputError,
    normalize_aggregator_output,
    normalize_executor_output,
    normalize_planner_output,
)


def _response(content: str) -> LLMResponse:
    return LLMResponse(
        content=content,
        finish_reason="stop",
        usage=UsageEvent(model="test-model", prompt_tokens=10, completion_tokens=5),
    )


# =========================================================================
# extract_json_from_response
# =========================================================================


class TestExtractJson:
    def test_plain_object(self) -> None:
        assert extract_json_from_response('{"mode": "execute"}') == {"mode": "execute"}

    def test_fenced_block(self) -> None:
        text = 'Here you go:\n```json\n{"a": 1}\n```\nThanks'
        assert extract_json_from_response(text) == {"a": 1}

    def test_unlabelled_fence(self) -> None:
        assert extract_json_from_response('```\n{"a": 2}\n```') == {"a": 2}

    def test_object_embedded_in_prose(self) -> None:
        text = 'I think {"result": {"summary": "x}"}} is right.'
        assert extract_json_from_response(text) == {"result": {"summary": "x}"}}

    def test_skips_unparseable_candidates(self) -> None:
        text = "{not json} then {\"ok\": true}"
        assert extract_json_from_response(text) == {"ok": True}

    def test_arrays_are_not_objects(self) -> None:
        assert extract_json_from_response("[1, 2, 3]") is None

    def test_no_json(self) -> None:
        assert extract_json_from_response("no braces here") is None


# =========================================================================
# LLMClient.get_json_response
# =========================================================================


class TestGetJsonResponse:
    async def test_returns_parsed_object_and_reports_usage(self) -> None:
        client = LLMClient(default_model="test-model", json_max_retries=2)
        client.call = AsyncMock(return_value=_response('{"mode": "execute"}'))  # type: ignore[method-assign]
        usages: list[UsageEvent] = []

        async def on_usage(usage: UsageEvent) -> None:
            usages.append(usage)

        parsed = await client.get_json_response(
            system_prompt="sys",
            user_prompt="user",
            role="planner",
            metadata={"node_id": "node_1"},
            on_usage=on_usage,
        )
        assert parsed == {"mode": "execute"}
        assert len(usages) == 1
        assert usages[0].role == "planner"
        assert usages[0].node_id == "node_1"
        assert usages[0].total_tokens == 15

    async def test_repairs_after_prose_reply(self) -> None:
        client = LLMClient(default_model="test-model", json_max_retries=2)
        client.call = AsyncMock(  # type: ignore[method-assign]
            side_effect=[_response("Sorry, let me think."), _response('{"ok": 1}')]
        )
        usages: list[UsageEvent] = []

        async def on_usage(usage: UsageEvent) -> None:
            usages.append(usage)

        parsed = await client.get_json_response(
            system_prompt="sys", user_prompt="user", role="executor", on_usage=on_usage
        )
        assert parsed == {"ok": 1}
        assert len(usages) == 2
        repair_messages = client.call.call_args_list[1].args[0]
        assert repair_messages[-2] == {"role": "assistant", "content": "Sorry, let me think."}
        assert repair_messages[-1]["role"] == "user"

    async def test_gives_up_after_retries(self) -> None:
        client = LLMClient(default_model="test-model", json_max_retries=1)
        client.call = AsyncMock(return_value=_response("still prose"))  # type: ignore[method-assign]
        with pytest.raises(MalformedOutputError, match="aggregator"):
            await client.get_json_response(
                system_prompt="sys", user_prompt="user", role="aggregator"
            )
        assert client.call.await_count == 2

    async def test_uses_role_model(self, monkeypatch: pytest.MonkeyPatch) -> None:
        from config import settings

        monkeypatch.setattr(settings, "planner_model", "planner-model")
        client = LLMClient(default_model="default-model")
        client.call = AsyncMock(return_value=_response("{}"))  # type: ignore[method-assign]
        await client.get_json_response(system_prompt="s", user_prompt="u", role="planner")
        assert client.call.call_args.kwargs["model"] == "planner-model"


# =========================================================================
# MockLLMClient
# =========================================================================


class TestMockLLMClient:
    async def test_title_key_takes_priority(self) -> None:
        client = MockLLMClient(
            {
                "planner:Special": [{"mode": "plan", "tag": "special"}],
                "planner": [{"mode": "execute", "tag": "generic"}],
            }
        )
        special = await client.get_json_response(
            system_prompt="s", user_prompt="u", role="planner", metadata={"node_title": "Special"}
        )
        generic = await client.get_json_response(
            system_prompt="s", user_prompt="u", role="planner", metadata={"node_title": "Other"}
        )
        assert special["tag"] == "special"
        assert generic["tag"] == "generic"

    async def test_falls_back_to_default_output(self) -> None:
        client = MockLLMClient()
        output = await client.get_json_response(
            system_prompt="s", user_prompt="u", role="executor", metadata={"node_title": "Node"}
        )
        assert output == default_mock_output("executor", "Node")

    async def test_strict_raises_when_exhausted(self) -> None:
        client = MockLLMClient(strict=True)
        with pytest.raises(IndexError):
            await client.get_json_response(system_prompt="s", user_prompt="u", role="planner")

    async def test_exception_entries_are_raised(self) -> None:
        client = MockLLMClient({"executor": [RuntimeError("provider down")]})
        with pytest.raises(RuntimeError, match="provider down"):
            await client.get_json_response(system_prompt="s", user_prompt="u", role="executor")

    async def test_string_entries_are_parsed(self) -> None:
        client = MockLLMClient({"planner": ['```json\n{"mode": "execute"}\n```', "prose"]})
        first = await client.get_json_response(system_prompt="s", user_prompt="u", role="planner")
        assert first == {"mode": "execute"}
        with pytest.raises(MalformedOutputError):
            await client.get_json_response(system_prompt="s", user_prompt="u", role="planner")

    async def test_tracks_history_and_concurrency(self) -> None:
        client = MockLLMClient(delay=0.02)
        await asyncio.gather(
            *(
                client.get_json_response(
                    system_prompt="s",
                    user_prompt="u",
                    role="planner",
                    metadata={"node_title": f"n{i}"},
                )
                for i in range(4)
            )
        )
        assert len(client.call_history) == 4
        assert client.max_in_flight == 4
        assert [c["node_title"] for c in client.calls_for("planner", "n2")] == ["n2"]

    @pytest.mark.parametrize(
        ("role", "normalize"),
        [
            ("planner", normalize_planner_output),
            ("executor", normalize_executor_output),
            ("aggregator", normalize_aggregator_output),
        ],
    )
    def test_default_outputs_are_valid(self, role: str, normalize) -> None:
        normalize(default_mock_output(role, "Some node"))
