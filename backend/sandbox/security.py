"""Project authorization for tool execution.

Tools may only touch projects in the run's allowed set: the run's workspace
project plus every project the acting user is an active member of. These
helpers resolve project arguments against that set and bound list sizes.
"""

from typing import Any

DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 50


class ToolAuthorizationError(PermissionError):
    """Raised when a tool call touches a project outside the allowed set."""


def safe_limit(
    value: Any, fallback: int = DEFAULT_LIST_LIMIT, maximum: int = MAX_LIST_LIMIT
) -> int:
    """Clamp a requested limit to ``[1, maximum]``.

    Args:
        value: Requested limit. Non-numeric or non-positive values use the fallback.
        fallback: Limit used when none is usable.
        maximum: Upper bound.

    Returns:
        The limit to apply.
    """
    try:
        number = int(value)
    except (TypeError, ValueError):
        return min(fallback, maximum)
    if number <= 0:
        return min(fallback, maximum)
    return min(number, maximum)


def resolve_project_id(
    requested: str | None,
    allowed: set[str],
    default: str | None,
) -> str:
    """Resolve the project a write targets.

    Args:
        requested: Explicit project id from the tool arguments.
        allowed: The run's allowed projects.
        default: Project used when none is requested.

    Returns:
        The project id to use.

    Raises:
        ToolAuthorizationError: If the requested project is not allowed, or
            neither a requested nor a default project exists.
    """
    if requested:
        if requested not in allowed:
            raise ToolAuthorizationError("unauthorized project_id")
        return requested
    if default:
        return default
    raise ToolAuthorizationError("project_id is required")


def resolve_read_project_ids(requested: str | None, allowed: set[str]) -> list[str]:
    """Resolve the projects a read spans.

    A requested project narrows the read to that project; otherwise every
    allowed project is searched.

    Raises:
        ToolAuthorizationError: If the requested project is not allowed.
    """
    if requested:
        if requested not in allowed:
            raise ToolAuthorizationError("unauthorized project_id")
        return [requested]
    return sorted(allowed)


def compute_allowed_projects(
    workspace_project_id: str | None,
    member_project_ids: list[str],
) -> set[str]:
    """The workspace project plus every active membership."""
    allowed = set(member_project_ids)
    if workspace_project_id:
        allowed.add(workspace_project_id)
    return allowed
