"""Typed domain exceptions for the batch install lifecycle.

Every exception carries a stable error code from the registry, used as
the cause discriminator in structured failures returned to callers.

Usage:
    # In service layer
    raise NotFoundError("Batch request", batch_id)

    # In a transport layer
    try:
        orchestrator.cancel_batch_install(batch_id)
    except DomainError as e:
        return error_payload(e)
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    code = "E-2001"
    cause = "domain"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DomainError):
    """Empty or malformed input. No state was mutated."""

    code = "E-2001"
    cause = "validation"


class NotFoundError(DomainError):
    """Resource was not found."""

    code = "E-2002"
    cause = "not_found"

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ConflictError(DomainError):
    """Operation is not valid in the batch's current lifecycle state."""

    code = "E-2003"
    cause = "conflict"


class InvalidStateTransition(ConflictError):
    """Raised when attempting a batch state transition outside the table.

    Attributes:
        current_state: The current state of the batch.
        attempted_state: The state that was attempted.
        allowed_transitions: Valid transition targets from current state.
    """

    def __init__(
        self,
        current_state: str,
        attempted_state: str,
        allowed_transitions: list[str],
    ) -> None:
        self.current_state = current_state
        self.attempted_state = attempted_state
        self.allowed_transitions = allowed_transitions
        allowed_str = ", ".join(allowed_transitions) or "none (terminal)"
        super().__init__(
            f"Cannot transition from '{current_state}' to '{attempted_state}'. "
            f"Allowed transitions: {allowed_str}"
        )


class InstallerError(DomainError):
    """Base class for failures reported by the external installer."""

    code = "E-3003"
    cause = "installer_unavailable"


class SubmissionError(InstallerError):
    """The installer rejected (or failed to accept) the install manifest."""

    code = "E-3001"
    cause = "submission"


class HandleNotFoundError(InstallerError):
    """The installer does not (yet) know the progress handle."""

    code = "E-3002"
    cause = "handle_not_found"

    def __init__(self, handle: str) -> None:
        super().__init__(f"Progress handle '{handle}' not found")
        self.handle = handle


class PollingTimeoutError(DomainError):
    """The progress monitor exceeded its maximum runtime."""

    code = "E-4001"
    cause = "polling_timeout"

    def __init__(self, elapsed_seconds: float) -> None:
        super().__init__(
            f"Progress monitor timed out after {int(elapsed_seconds)} seconds"
        )
        self.elapsed_seconds = elapsed_seconds


class ReconciliationMismatchError(DomainError):
    """An item's installed version does not match its target version."""

    code = "E-4002"
    cause = "version_mismatch"

    def __init__(self, package_id: str, expected: str, actual: str | None) -> None:
        super().__init__(
            f"Version mismatch after install. Expected {expected}, found {actual}"
        )
        self.package_id = package_id
        self.expected = expected
        self.actual = actual
