"""System prompts and prompt builders for the tree agent roles.

This module contains the prompt templates used by the three roles:
- PLANNER_PROMPT: Decides whether a node executes directly or delegates
- EXECUTOR_PROMPT: Produces a leaf's artifacts and result, optionally via tools
- AGGREGATOR_PROMPT: Synthesizes child results into the parent's result
"""

import json
from typing import Any

from models.schemas import ContextType, Node, Run

ARTIFACT_SCHEMA = (
    '[{ "type": "document"|"json"|"summary"|"other", "label": string, "title"?: string, '
    '"documentMarkdown"?: string, "jsonPayload"?: object, "isPrimary"?: boolean }]'
)

RESULT_SCHEMA = """{
    "kind": "json"|"document"|"hybrid",
    "summary": string,
    "successAssessment"?: { "met": boolean, "notes"?: string },
    "primaryArtifactLabel"?: string,
    "parentHint": { "hintType": "read_documents"|"read_json", "artifactLabels": string[] }
  }"""

SCRATCHPAD_SCHEMA = '{ "appendMarkdown": string, "tailPreview"?: string }'

PLANNER_PROMPT = f"""\
You are the Tree Agent Planner.
Return ONLY valid JSON with this schema:
{{
  "mode": "execute"|"plan",
  "modeReason": string,
  "leafDecision": {{ "canExecuteDirectly": boolean, "complexity": "low"|"medium"|"high", "blockers": string[] }},
  "plan": {{
    "summary": string,
    "bands": [{{ "index": number, "goal": string, "parallelizable": boolean, "steps": [{{ "id": string, "title": string, "reason": string, "successCriteria": string[], "stepIndex": number }}] }}]
  }},
  "scratchpad": {SCRATCHPAD_SCHEMA}
}}

Rules:
- Choose "execute" when the node can be finished in one focused pass.
- If mode is "plan", include plan.bands and steps.
- Bands execute sequentially; steps inside a band run in parallel.
- Keep step ids stable if replanning.
- Always include scratchpad updates.
"""

MAX_DEPTH_RULE = "- This node is at the maximum tree depth: you MUST choose mode \"execute\"."

EXECUTOR_PROMPT = f"""\
You are the Tree Agent Executor.
Return ONLY valid JSON with this schema:
{{
  "actions": [{{ "kind": "analysis"|"tool_call"|"document", "note": string, "toolName"?: string, "toolArgs"?: object }}],
  "artifacts": {ARTIFACT_SCHEMA},
  "result": {RESULT_SCHEMA},
  "scratchpad": {SCRATCHPAD_SCHEMA}
}}

Available tools:
{{tool_guide}}

Rules:
- Use only available tools.
- {{tool_rule}}
- Always include scratchpad updates.
- If you create document artifacts, include title + documentMarkdown.
"""

TOOLS_ALLOWED_RULE = "If tools are needed, include tool_call actions (at most {max_calls})."
TOOLS_DISALLOWED_RULE = "Do NOT include tool_call actions. Give your final answer now."

AGGREGATOR_PROMPT = f"""\
You are the Tree Agent Aggregator.
Return ONLY valid JSON with this schema:
{{
  "synthesis": {{ "summary": string, "keyFindings": string[], "gaps": string[] }},
  "artifacts": {ARTIFACT_SCHEMA},
  "result": {RESULT_SCHEMA},
  "next": {{ "shouldReplan": boolean, "replanReason"?: string }},
  "scratchpad": {SCRATCHPAD_SCHEMA}
}}

Rules:
- Always include scratchpad updates.
- Use child results to synthesize; cite key evidence in synthesis.
- Set shouldReplan only when the child results leave the success criteria clearly unmet.
"""


def compose_prompt_sections(*sections: str) -> str:
    """Join non-empty prompt sections with blank lines."""
    return "\n\n".join(section.strip() for section in sections if section and section.strip())


def format_context_label(context_type: ContextType | str, context_project_id: str | None) -> str:
    label = f"Context: {context_type}"
    if context_project_id:
        label += f" ({context_project_id})"
    return label


def build_node_block(
    run: Run,
    node: Node,
    context_type: ContextType | str,
    context_project_id: str | None,
) -> str:
    """Objective, node identity and success criteria shared by every role prompt."""
    criteria = "\n".join(f"- {c}" for c in node.success_criteria) or "- none"
    return (
        f"Objective: {run.objective}\n"
        f"Node: {node.title}\n"
        f"Reason: {node.reason}\n"
        f"Success Criteria:\n{criteria}\n"
        f"Depth: {node.depth}\n"
        f"{format_context_label(context_type, context_project_id)}"
    )


def scratchpad_tail(scratchpad: str, max_chars: int) -> str:
    return scratchpad[-max_chars:] if max_chars > 0 else ""


def get_planner_system_prompt(at_max_depth: bool) -> str:
    if at_max_depth:
        return PLANNER_PROMPT + MAX_DEPTH_RULE + "\n"
    return PLANNER_PROMPT


def get_executor_system_prompt(tool_guide: str, allow_tool_calls: bool, max_calls: int) -> str:
    tool_rule = (
        TOOLS_ALLOWED_RULE.format(max_calls=max_calls)
        if allow_tool_calls
        else TOOLS_DISALLOWED_RULE
    )
    # The template is full of JSON braces, so placeholders are replaced literally.
    return EXECUTOR_PROMPT.replace("{tool_guide}", tool_guide or "(none)").replace(
        "{tool_rule}", tool_rule
    )


def build_role_user_prompt(
    node_block: str,
    scratchpad: str,
    *,
    extra_title: str | None = None,
    extra_body: str | None = None,
) -> str:
    """User prompt for any role: node block, optional extra section, scratchpad tail."""
    extra = f"{extra_title}:\n{extra_body}" if extra_title and extra_body is not None else ""
    return compose_prompt_sections(
        node_block,
        extra,
        f"Scratchpad (latest):\n{scratchpad}",
        "Respond with JSON only.",
    )


def format_tool_results_for_prompt(results: list[dict[str, Any]], max_chars: int) -> str:
    """Render tool results for the executor's second pass.

    Args:
        results: ``ToolResult.to_dict()`` entries in call order.
        max_chars: Truncation length for each JSON payload.
    """
    lines = []
    for result in results:
        if not result.get("ok"):
            lines.append(f"- {result['name']}: error ({result.get('error') or 'unknown'})")
            continue
        payload = json.dumps(result.get("result") or {}, indent=2, default=str)
        if len(payload) > max_chars:
            payload = f"{payload[:max_chars]}..."
        lines.append(f"- {result['name']}: ok\n{payload}")
    return "\n".join(lines)
