"""Planner, executor and aggregator callers.

Each call builds the role's prompts from the node, the tail of its scratchpad
and role-specific material (tool guide, tool results, child results), asks the
LLM for a JSON object, and validates it against the role schema.
"""

from dataclasses import dataclass
from typing import Any

import structlog

from config import settings
from models.schemas import ContextType, Node, Run
from tree_agent.llm import LLMClient, UsageCallback
from tree_agent.prompts import (
    AGGREGATOR_PROMPT,
    build_node_block,
    build_role_user_prompt,
    format_tool_results_for_prompt,
    get_executor_system_prompt,
    get_planner_system_prompt,
    scratchpad_tail,
)
from tree_agent.schemas import (
    AggregatorOutput,
    ExecutorOutput,
    PlannerOutput,
    normalize_aggregator_output,
    normalize_executor_output,
    normalize_planner_output,
)

logger = structlog.get_logger(__name__)


@dataclass
class RoleContext:
    """What every role call needs to know about the node it serves."""

    run: Run
    node: Node
    context_type: ContextType
    context_project_id: str | None
    scratchpad: str
    on_usage: UsageCallback | None = None

    @property
    def node_block(self) -> str:
        return build_node_block(self.run, self.node, self.context_type, self.context_project_id)

    @property
    def metadata(self) -> dict[str, Any]:
        return {"run_id": self.run.id, "node_id": self.node.id, "node_title": self.node.title}


class RoleCaller:
    """Calls the three roles through one LLM client.

    Attributes:
        llm: Client used for every role.
        scratchpad_chars: How much of the scratchpad tail goes into prompts.
        tool_result_chars: Truncation length of each tool result payload.
    """

    def __init__(
        self,
        llm: LLMClient,
        scratchpad_chars: int | None = None,
        tool_result_chars: int | None = None,
    ) -> None:
        self.llm = llm
        self.scratchpad_chars = scratchpad_chars or settings.scratchpad_prompt_chars
        self.tool_result_chars = tool_result_chars or settings.tool_result_prompt_chars

    async def call_planner(self, ctx: RoleContext, *, at_max_depth: bool) -> PlannerOutput:
        user_prompt = build_role_user_prompt(
            ctx.node_block,
            scratchpad_tail(ctx.scratchpad, self.scratchpad_chars),
        )
        raw = await self.llm.get_json_response(
            system_prompt=get_planner_system_prompt(at_max_depth),
            user_prompt=user_prompt,
            role="planner",
            metadata=ctx.metadata,
            on_usage=ctx.on_usage,
        )
        output = normalize_planner_output(raw)
        logger.debug("planner_output", node_id=ctx.node.id, mode=output.mode)
        return output

    async def call_executor(
        self,
        ctx: RoleContext,
        *,
        tool_guide: str,
        allow_tool_calls: bool,
        max_tool_calls: int,
        tool_results: list[dict[str, Any]] | None = None,
    ) -> ExecutorOutput:
        """Call the executor.

        Args:
            ctx: Node context.
            tool_guide: Rendered guide of the tools in scope.
            allow_tool_calls: Whether the prompt invites tool_call actions.
            max_tool_calls: Cap stated in the prompt when tools are allowed.
            tool_results: ``ToolResult.to_dict()`` entries from the previous
                pass, included as a "Tool results" section.
        """
        extra_body = None
        if tool_results:
            extra_body = format_tool_results_for_prompt(tool_results, self.tool_result_chars)
        user_prompt = build_role_user_prompt(
            ctx.node_block,
            scratchpad_tail(ctx.scratchpad, self.scratchpad_chars),
            extra_title="Tool results" if extra_body else None,
            extra_body=extra_body,
        )
        raw = await self.llm.get_json_response(
            system_prompt=get_executor_system_prompt(tool_guide, allow_tool_calls, max_tool_calls),
            user_prompt=user_prompt,
            role="executor",
            metadata=ctx.metadata,
            on_usage=ctx.on_usage,
        )
        return normalize_executor_output(raw)

    async def call_aggregator(self, ctx: RoleContext, *, child_results: str) -> AggregatorOutput:
        user_prompt = build_role_user_prompt(
            ctx.node_block,
            scratchpad_tail(ctx.scratchpad, self.scratchpad_chars),
            extra_title="Child results",
            extra_body=child_results,
        )
        raw = await self.llm.get_json_response(
            system_prompt=AGGREGATOR_PROMPT,
            user_prompt=user_prompt,
            role="aggregator",
            metadata=ctx.metadata,
            on_usage=ctx.on_usage,
        )
        output = normalize_aggregator_output(raw)
        logger.debug(
            "aggregator_output",
            node_id=ctx.node.id,
            should_replan=output.next.should_replan,
        )
        return output
