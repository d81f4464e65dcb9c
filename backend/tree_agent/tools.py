"""Tool batch phases.

A phase runs a batch of tool calls on behalf of one node: it records a
``tool_call_requested`` event per call, executes the batch sequentially,
records a ``tool_call_result`` event per result, and appends a summary block to
the node's scratchpad. Used for the run bootstrap and for executor tool calls.
"""

import structlog

from events.log import EventLog
from events.types import ToolCallRequestedPayload, ToolCallResultPayload
from metrics import RunMetricsTracker
from sandbox.calls import ToolBatchResult, ToolCall, summarize_tool_results
from sandbox.context import ToolExecutionContext
from tree_agent.scratchpad import ScratchpadStore, format_entry

logger = structlog.get_logger(__name__)

BOOTSTRAP_PHASE = "bootstrap"
EXECUTOR_TOOLS_PHASE = "executor_tools"


async def run_tool_batch(
    *,
    tool_context: ToolExecutionContext,
    events: EventLog,
    scratchpads: ScratchpadStore,
    node_id: str,
    scratchpad_doc_id: str,
    calls: list[ToolCall],
    phase: str,
    metrics: RunMetricsTracker | None = None,
) -> ToolBatchResult:
    """Execute ``calls`` for a node and record the phase.

    Args:
        tool_context: Authorization context of the run.
        events: Event log.
        scratchpads: Scratchpad store for the summary block.
        node_id: Node the calls are made for.
        scratchpad_doc_id: That node's scratchpad.
        calls: Calls to execute, already capped by the caller.
        phase: Label recorded in events and the scratchpad ("bootstrap", "executor_tools").
        metrics: Optional accumulator counting executed calls.

    Returns:
        The batch result. Individual failures are reported in it, never raised.
    """
    run_id = tool_context.run_id
    for call in calls:
        await events.append(
            run_id,
            node_id,
            ToolCallRequestedPayload(
                tool_name=call.name,
                args=call.args,
                purpose=call.purpose,
                phase=phase,
            ),
        )

    batch = await tool_context.execute_tool_calls(calls, max_calls=len(calls))
    summaries = summarize_tool_results(batch.results)

    for summary in summaries:
        await events.append(
            run_id,
            node_id,
            ToolCallResultPayload(
                tool_name=summary["name"],
                ok=summary["ok"],
                summary=summary["summary"],
                error=summary["error"],
                phase=phase,
            ),
        )

    lines = [
        f"- {s['name']}: {s['summary']}"
        if s["ok"]
        else f"- {s['name']}: error ({s['error'] or 'unknown'})"
        for s in summaries
    ]
    body = "\n".join([f"Context: {tool_context.context_label}", *lines])
    first = summaries[0]["name"] if summaries else "none"
    await scratchpads.append(
        run_id,
        node_id,
        scratchpad_doc_id,
        format_entry(f"Tools ({phase})", body),
        tail_preview=f"tools:{phase}:{first}",
    )

    if metrics is not None:
        await metrics.record_tool_calls(len(batch.results))

    logger.info(
        "tool_batch_complete",
        run_id=run_id,
        node_id=node_id,
        phase=phase,
        executed=len(batch.results),
        failed=sum(1 for r in batch.results if not r.ok),
    )
    return batch
