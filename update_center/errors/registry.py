"""Error code registry with E-XXXX format codes.

This module defines the error code system for the Update Center,
organizing errors into categories:
- E-2xxx: Validation and lifecycle errors (caller input, state conflicts)
- E-3xxx: Installer service errors
- E-4xxx: Reconciliation/system errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    VALIDATION = "validation"  # E-2xxx: Caller input and lifecycle errors
    INSTALLER = "installer"  # E-3xxx: External installer errors
    RECONCILIATION = "reconciliation"  # E-4xxx: Polling/reconciliation errors


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str  # E-XXXX format
    category: ErrorCategory
    title: str  # Short title for display
    message_template: str  # Message with {placeholders}
    remediation: str  # Action user should take
    is_retryable: bool = False  # Can be retried without user action


# Error registry - all defined error codes
ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Validation and lifecycle errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.VALIDATION,
        title="Invalid Batch Input",
        message_template="{details}",
        remediation="Select at least one package with an available update and retry.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.VALIDATION,
        title="Resource Not Found",
        message_template="{resource_type} '{identifier}' not found",
        remediation="Check the identifier and retry.",
    ),
    "E-2003": ErrorCode(
        code="E-2003",
        category=ErrorCategory.VALIDATION,
        title="Invalid Batch State",
        message_template="{details}",
        remediation="Refresh the batch status; the operation is not valid in its current state.",
    ),
    # Installer errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.INSTALLER,
        title="Installer Rejected Submission",
        message_template="Installer rejected the batch manifest: {details}",
        remediation="Review the installer error, correct the package selection and create a new batch.",
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.INSTALLER,
        title="Progress Handle Not Found",
        message_template="Progress handle '{handle}' could not be resolved.",
        remediation="Check the installer's job history; the job may not have been created.",
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.INSTALLER,
        title="Installer Unavailable",
        message_template="Installer service is not responding: {details}",
        remediation="Wait a few minutes and retry. Check installer connectivity and credentials.",
        is_retryable=True,
    ),
    "E-3004": ErrorCode(
        code="E-3004",
        category=ErrorCategory.INSTALLER,
        title="Installer Job Failed",
        message_template="Installer reported an error: {details}",
        remediation="Review the installer job output; installed packages were reconciled against the inventory.",
    ),
    # Reconciliation errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.RECONCILIATION,
        title="Progress Monitor Timeout",
        message_template="Progress monitor timed out after {seconds} seconds.",
        remediation="Check the installer job directly; installed packages were reconciled against the inventory.",
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.RECONCILIATION,
        title="Version Mismatch After Install",
        message_template="Version mismatch after install. Expected {expected}, found {actual}",
        remediation="Review the installer log for this package and retry it in a new batch.",
    ),
    "E-4003": ErrorCode(
        code="E-4003",
        category=ErrorCategory.RECONCILIATION,
        title="Packages Failed To Install",
        message_template="{count} package(s) failed to install",
        remediation="Review failed items in the activity feed and retry them in a new batch.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category.

    Args:
        category: The error category to filter by.

    Returns:
        List of ErrorCode objects in the specified category.
    """
    return [e for e in ERROR_REGISTRY.values() if e.category == category]
