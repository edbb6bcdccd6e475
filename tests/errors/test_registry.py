"""Unit tests for the error registry, domain errors and formatter."""

import pytest

from update_center.errors import (
    ConflictError,
    DomainError,
    HandleNotFoundError,
    InvalidStateTransition,
    NotFoundError,
    PollingTimeoutError,
    ReconciliationMismatchError,
    SubmissionError,
    ValidationError,
    error_payload,
    format_error,
    format_failure_summary,
    group_item_failures,
)
from update_center.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    get_error,
    get_errors_by_category,
)


@pytest.mark.parametrize(
    "error,code,cause",
    [
        (ValidationError("bad"), "E-2001", "validation"),
        (NotFoundError("Batch request", "x"), "E-2002", "not_found"),
        (ConflictError("busy"), "E-2003", "conflict"),
        (SubmissionError("rejected"), "E-3001", "submission"),
        (HandleNotFoundError("h"), "E-3002", "handle_not_found"),
        (PollingTimeoutError(7201), "E-4001", "polling_timeout"),
        (ReconciliationMismatchError("p", "2.0", "1.0"), "E-4002", "version_mismatch"),
    ],
)
def test_every_domain_error_is_registered(error, code, cause):
    assert error.code == code
    assert error.cause == cause
    assert get_error(code) is not None


def test_registry_codes_match_keys():
    for key, definition in ERROR_REGISTRY.items():
        assert key == definition.code


def test_categories_follow_code_ranges():
    assert all(e.code.startswith("E-2") for e in get_errors_by_category(ErrorCategory.VALIDATION))
    assert all(e.code.startswith("E-3") for e in get_errors_by_category(ErrorCategory.INSTALLER))
    assert all(
        e.code.startswith("E-4") for e in get_errors_by_category(ErrorCategory.RECONCILIATION)
    )


def test_invalid_transition_is_a_conflict():
    error = InvalidStateTransition("completed", "in_progress", [])
    assert isinstance(error, ConflictError)
    assert "none (terminal)" in error.message


def test_messages():
    assert NotFoundError("Batch request", "abc").message == "Batch request 'abc' not found"
    assert PollingTimeoutError(7200.5).message == "Progress monitor timed out after 7200 seconds"
    assert ReconciliationMismatchError("p", "2.0", None).message == (
        "Version mismatch after install. Expected 2.0, found None"
    )


class TestFormatter:
    def test_payload(self):
        payload = error_payload(ConflictError("Batch BATCH0001001 is already running"))
        assert payload["success"] is False
        assert payload["code"] == "E-2003"
        assert payload["cause"] == "conflict"
        assert payload["title"] == "Invalid Batch State"
        assert payload["message"] == "Batch BATCH0001001 is already running"
        assert payload["is_retryable"] is False

    def test_payload_for_unregistered_code(self):
        class Odd(DomainError):
            code = "E-9999"

        payload = error_payload(Odd("?"))
        assert payload["title"] == "Error"

    def test_format_error_includes_remediation(self):
        text = format_error(ValidationError("No packages selected"))
        assert text.startswith("E-2001: No packages selected")
        assert "Action:" in text
        assert "Action:" not in format_error(
            ValidationError("x"), include_remediation=False
        )

    def test_group_failures(self):
        grouped = group_item_failures(
            [("B", "timeout"), ("A", "timeout"), ("C", "mismatch"), ("A", "timeout")]
        )
        assert grouped == {"timeout": ["A", "B"], "mismatch": ["C"]}

    def test_failure_summary(self):
        summary = format_failure_summary([("Reports", "mismatch"), ("Dashboards", "mismatch")])
        assert summary.splitlines() == [
            "2 package(s) failed to install",
            "  Dashboards, Reports: mismatch",
        ]
        assert format_failure_summary([]) == "No errors."
