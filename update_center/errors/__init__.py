"""Error handling framework for the Update Center.

This package provides:
- Typed domain exceptions with a stable cause discriminator
- Error code registry with E-XXXX format codes
- Error formatting and failure grouping utilities

Error categories:
- E-2xxx: Validation and lifecycle errors
- E-3xxx: Installer service errors
- E-4xxx: Reconciliation errors
"""

from update_center.errors.domain import (
    ConflictError,
    DomainError,
    HandleNotFoundError,
    InstallerError,
    InvalidStateTransition,
    NotFoundError,
    PollingTimeoutError,
    ReconciliationMismatchError,
    SubmissionError,
    ValidationError,
)
from update_center.errors.formatter import (
    error_payload,
    format_error,
    format_failure_summary,
    group_item_failures,
)
from update_center.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Domain errors
    "DomainError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "InvalidStateTransition",
    "InstallerError",
    "SubmissionError",
    "HandleNotFoundError",
    "PollingTimeoutError",
    "ReconciliationMismatchError",
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    # Formatter
    "error_payload",
    "format_error",
    "format_failure_summary",
    "group_item_failures",
]
