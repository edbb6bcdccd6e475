"""Error formatting utilities.

This module provides:
- Structured failure payloads (code, cause discriminator, message)
- Error formatting for user display
- Grouping of per-item failures for batch error summaries
"""

from typing import Any

from update_center.errors.domain import DomainError
from update_center.errors.registry import get_error


def error_payload(error: DomainError) -> dict[str, Any]:
    """Build the structured failure returned to callers for a rejected operation.

    Args:
        error: The domain error that rejected the operation.

    Returns:
        Dict with success=False, code, cause, title, message, remediation
        and is_retryable keys.
    """
    error_def = get_error(error.code)
    return {
        "success": False,
        "code": error.code,
        "cause": error.cause,
        "title": error_def.title if error_def else "Error",
        "message": error.message,
        "remediation": error_def.remediation if error_def else "Contact support.",
        "is_retryable": error_def.is_retryable if error_def else False,
    }


def format_error(error: DomainError, include_remediation: bool = True) -> str:
    """Format error for display to user.

    Args:
        error: The domain error to format.
        include_remediation: Whether to include remediation steps.

    Returns:
        Multi-line formatted string suitable for user display.
    """
    lines = [f"{error.code}: {error.message}"]
    error_def = get_error(error.code)
    if include_remediation and error_def:
        lines.append(f"  Action: {error_def.remediation}")
    return "\n".join(lines)


def group_item_failures(failures: list[tuple[str, str]]) -> dict[str, list[str]]:
    """Group failed items by error message.

    Example:
        [("A", "timeout"), ("B", "timeout"), ("C", "mismatch")]
        -> {"timeout": ["A", "B"], "mismatch": ["C"]}

    Args:
        failures: (package_name, error_message) pairs.

    Returns:
        Mapping of error message to sorted, de-duplicated package names.
    """
    groups: dict[str, set[str]] = {}
    for name, message in failures:
        groups.setdefault(message, set()).add(name)
    return {message: sorted(names) for message, names in groups.items()}


def format_failure_summary(failures: list[tuple[str, str]]) -> str:
    """Format per-item failures into a short batch error summary.

    Args:
        failures: (package_name, error_message) pairs.

    Returns:
        User-friendly summary, one line per distinct error.
    """
    if not failures:
        return "No errors."

    grouped = group_item_failures(failures)
    lines = [f"{len(failures)} package(s) failed to install"]
    for message, names in grouped.items():
        shown = ", ".join(names[:10])
        if len(names) > 10:
            shown += f" (and {len(names) - 10} more)"
        lines.append(f"  {shown}: {message}")
    return "\n".join(lines)
