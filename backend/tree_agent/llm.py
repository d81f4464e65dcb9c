"""LLM client for the tree agent roles.

This module provides:
- LLMClient: Wrapper around LiteLLM with transient-error retries, JSON
  extraction and repair attempts, and a per-call usage callback
- MockLLMClient: Scripted client keyed by role and node title, for tests and
  ``use_mock_llm`` runs
- extract_json_from_response: Pull a JSON object out of free-form model text
"""

import asyncio
import json
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import litellm
import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings
from metrics import UsageEvent
from tree_agent.schemas import MalformedOutputError

logger = structlog.get_logger(__name__)

UsageCallback = Callable[[UsageEvent], Awaitable[None]]

JSON_REPAIR_PROMPT = (
    "Your previous reply was not a single valid JSON object. "
    "Reply again with ONLY the JSON object described in the system prompt."
)


@dataclass
class LLMResponse:
    """Structured response from an LLM call.

    Attributes:
        content: The text content of the response
        finish_reason: Why the model stopped (stop, length, etc.)
        usage: Token and cost usage of the call
        latency_ms: Request latency
        raw_response: The original ModelResponse from LiteLLM
    """

    content: str
    finish_reason: str
    usage: UsageEvent
    latency_ms: int = 0
    raw_response: ModelResponse | None = field(default=None, repr=False)


class LLMClient:
    """Wrapper around LiteLLM for the planner, executor and aggregator roles.

    Attributes:
        default_model: Model used when a call does not name one
        retry_attempts: Retries on rate limit, 5xx and timeout errors
        retry_delay: Base delay for exponential backoff (capped at 4s)
        json_max_retries: Extra attempts when a reply carries no JSON object
    """

    def __init__(
        self,
        default_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
        json_max_retries: int | None = None,
    ) -> None:
        self.default_model = default_model or settings.default_model
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None else settings.llm_max_retries
        )
        self.retry_delay = retry_delay
        self.json_max_retries = (
            json_max_retries if json_max_retries is not None else settings.llm_json_max_retries
        )

    async def get_json_response(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        role: str,
        model: str | None = None,
        metadata: dict[str, Any] | None = None,
        on_usage: UsageCallback | None = None,
    ) -> dict[str, Any]:
        """Ask for a JSON object and return it parsed.

        Each completion (including repair attempts) reports usage through
        ``on_usage`` exactly once.

        Args:
            system_prompt: Role instructions including the output schema.
            user_prompt: Node-specific context.
            role: "planner", "executor" or "aggregator".
            model: Model override; defaults to the role's configured model.
            metadata: Extra context (run_id, node_id, node_title) for logs and usage.
            on_usage: Awaited with the usage of every completion.

        Returns:
            The parsed JSON object.

        Raises:
            MalformedOutputError: If no attempt yields a JSON object.
        """
        metadata = metadata or {}
        model = model or settings.model_for_role(role)
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

        for attempt in range(self.json_max_retries + 1):
            response = await self.call(messages, model=model)
            response.usage.role = role
            response.usage.node_id = metadata.get("node_id")
            if on_usage is not None:
                await on_usage(response.usage)

            parsed = extract_json_from_response(response.content)
            if parsed is not None:
                return parsed

            logger.warning(
                "llm_json_parse_failed",
                role=role,
                node_id=metadata.get("node_id"),
                attempt=attempt + 1,
                content_preview=response.content[:200],
            )
            messages = [
                *messages,
                {"role": "assistant", "content": response.content},
                {"role": "user", "content": JSON_REPAIR_PROMPT},
            ]

        raise MalformedOutputError(role, "reply did not contain a JSON object")

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Make an LLM call with retry logic.

        Retries on: RateLimitError (429), ServiceUnavailableError (5xx),
        Timeout errors. Does NOT retry on AuthenticationError or
        BadRequestError.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to self.default_model)
            temperature: Sampling temperature
            max_tokens: Maximum tokens in response

        Returns:
            LLMResponse with content and usage
        """
        model = model or self.default_model
        start_time = time.time()
        last_exception: Exception | None = None

        for attempt in range(self.retry_attempts + 1):
            try:
                response = await self._make_request(messages, model, temperature, max_tokens)
                latency_ms = int((time.time() - start_time) * 1000)
                llm_response = self._parse_response(response, model, latency_ms)
                logger.info(
                    "llm_call_complete",
                    model=model,
                    prompt_tokens=llm_response.usage.prompt_tokens,
                    completion_tokens=llm_response.usage.completion_tokens,
                    latency_ms=latency_ms,
                    attempt=attempt + 1,
                )
                return llm_response

            except (RateLimitError, ServiceUnavailableError, Timeout) as e:
                last_exception = e
                if attempt < self.retry_attempts:
                    delay = min(self.retry_delay * (2**attempt), 4.0)
                    logger.warning(
                        "llm_call_retry",
                        model=model,
                        attempt=attempt + 1,
                        max_retries=self.retry_attempts,
                        error_type=type(e).__name__,
                        error=str(e),
                        retry_delay=delay,
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error(
                        "llm_call_failed_all_retries",
                        model=model,
                        attempts=self.retry_attempts + 1,
                        error_type=type(e).__name__,
                        error=str(e),
                    )

            except (AuthenticationError, BadRequestError) as e:
                logger.error(
                    "llm_call_failed_no_retry",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

        raise last_exception or RuntimeError("LLM call failed after all retries")

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": settings.llm_request_timeout_seconds,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        return await acompletion(**kwargs)

    def _parse_response(
        self,
        response: ModelResponse,
        model: str,
        latency_ms: int,
    ) -> LLMResponse:
        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
        completion_tokens = getattr(usage, "completion_tokens", 0) or 0
        input_cost, output_cost = _estimate_cost(model, prompt_tokens, completion_tokens)
        return LLMResponse(
            content=choice.message.content or "",
            finish_reason=choice.finish_reason or "unknown",
            usage=UsageEvent(
                model=getattr(response, "model", None) or model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=getattr(usage, "total_tokens", 0) or 0,
                input_cost=input_cost,
                output_cost=output_cost,
            ),
            latency_ms=latency_ms,
            raw_response=response,
        )


def _estimate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> tuple[float, float]:
    """USD cost of a call, or zeros when LiteLLM has no pricing for the model."""
    try:
        input_cost, output_cost = litellm.cost_per_token(
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )
    except Exception as e:
        logger.debug("llm_cost_unknown", model=model, error=str(e))
        return 0.0, 0.0
    return float(input_cost), float(output_cost)


def _extract_balanced_json_objects(text: str) -> list[str]:
    """Extract balanced JSON object candidates from arbitrary text."""
    candidates: list[str] = []
    n = len(text)

    for start in range(n):
        if text[start] != "{":
            continue

        depth = 0
        in_string = False
        escaped = False

        for end in range(start, n):
            ch = text[end]

            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue

            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    candidates.append(text[start : end + 1])
                    break

    return candidates


def extract_json_from_response(response: str) -> dict[str, Any] | None:
    """Extract a JSON object from an LLM response that may contain extra text.

    Tries, in order: the whole reply, fenced code blocks, then the first
    balanced ``{...}`` that parses.

    Args:
        response: The full LLM response text

    Returns:
        Parsed JSON dict if found, None otherwise
    """

    def try_parse(candidate: str) -> dict[str, Any] | None:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    parsed = try_parse(response.strip())
    if parsed is not None:
        return parsed

    fence_pattern = r"```(?:json)?\s*([\s\S]*?)\s*```"
    for match in re.finditer(fence_pattern, response, re.IGNORECASE):
        fenced_body = match.group(1).strip()
        parsed = try_parse(fenced_body)
        if parsed is not None:
            return parsed

    for candidate in _extract_balanced_json_objects(response):
        parsed = try_parse(candidate)
        if parsed is not None:
            return parsed

    return None


# ---------------------------------------------------------------------------
# Mock client
# ---------------------------------------------------------------------------


def default_mock_output(role: str, node_title: str) -> dict[str, Any]:
    """Canned output that completes a node as a single leaf."""
    if role == "planner":
        return {
            "mode": "execute",
            "modeReason": "Mock planner executes every node directly.",
            "leafDecision": {"canExecuteDirectly": True, "complexity": "low", "blockers": []},
            "scratchpad": {"appendMarkdown": f"Executing {node_title} directly."},
        }
    summary = f"Mock result for {node_title}"
    output: dict[str, Any] = {
        "artifacts": [
            {
                "type": "document",
                "label": "result",
                "title": node_title,
                "documentMarkdown": f"# {node_title}\n\n{summary}.",
                "isPrimary": True,
            }
        ],
        "result": {
            "kind": "document",
            "summary": summary,
            "successAssessment": {"met": True, "notes": "mock"},
            "primaryArtifactLabel": "result",
            "parentHint": {"hintType": "read_documents", "artifactLabels": ["result"]},
        },
        "scratchpad": {"appendMarkdown": summary},
    }
    if role == "executor":
        output["actions"] = [{"kind": "analysis", "note": "mock analysis"}]
    else:
        output["synthesis"] = {"summary": summary, "keyFindings": [], "gaps": []}
        output["next"] = {"shouldReplan": False}
    return output


class MockLLMClient(LLMClient):
    """Scripted LLM client for tests and offline runs.

    Responses are looked up first under ``"<role>:<node title>"`` and then
    under ``"<role>"``; each key holds a queue consumed in order. An entry may
    be a dict (returned as the parsed JSON), a string (parsed like model
    text) or an exception (raised). When no scripted entry remains the
    client falls back to ``default_mock_output`` unless ``strict`` is set.

    Usage:
        >>> client = MockLLMClient({
        ...     "planner": [{"mode": "execute", "modeReason": "small"}],
        ...     "executor": [{"result": {"kind": "json", "summary": "done"}}],
        ... })
        >>> output = await client.get_json_response(
        ...     system_prompt="...", user_prompt="...", role="planner"
        ... )

    Attributes:
        call_history: One record per call with role, node title and prompts.
        max_in_flight: Highest number of concurrently outstanding calls seen.
    """

    def __init__(
        self,
        responses: dict[str, list[Any]] | None = None,
        *,
        delay: float = 0.0,
        strict: bool = False,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.responses = {key: list(value) for key, value in (responses or {}).items()}
        self.delay = delay
        self.strict = strict
        self.call_history: list[dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def get_json_response(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        role: str,
        model: str | None = None,
        metadata: dict[str, Any] | None = None,
        on_usage: UsageCallback | None = None,
    ) -> dict[str, Any]:
        metadata = metadata or {}
        node_title = metadata.get("node_title", "")
        self.call_history.append(
            {
                "role": role,
                "node_id": metadata.get("node_id"),
                "node_title": node_title,
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
            }
        )

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

        if on_usage is not None:
            await on_usage(
                UsageEvent(
                    model="mock",
                    prompt_tokens=len(system_prompt + user_prompt) // 4,
                    completion_tokens=50,
                    role=role,
                    node_id=metadata.get("node_id"),
                )
            )

        entry = self._next_entry(role, node_title)
        logger.debug("mock_llm_call", role=role, node_title=node_title)
        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, str):
            parsed = extract_json_from_response(entry)
            if parsed is None:
                raise MalformedOutputError(role, "reply did not contain a JSON object")
            return parsed
        return entry

    def _next_entry(self, role: str, node_title: str) -> Any:
        for key in (f"{role}:{node_title}", role):
            queue = self.responses.get(key)
            if queue:
                return queue.pop(0)
        if self.strict:
            raise IndexError(f"No more mock responses available for {role}:{node_title}")
        return default_mock_output(role, node_title)

    def calls_for(self, role: str, node_title: str | None = None) -> list[dict[str, Any]]:
        """Recorded calls for a role, optionally restricted to one node title."""
        return [
            call
            for call in self.call_history
            if call["role"] == role and (node_title is None or call["node_title"] == node_title)
        ]
