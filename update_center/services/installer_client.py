"""Installer service boundary and its CI/CD REST implementation.

The installer is an opaque external service. This system only submits an
install manifest and then reads the returned progress handle. The
InstallerService protocol is the whole contract; CicdInstallerClient is a
thin httpx wrapper around a CI/CD batch-install REST API:

    POST /api/sn_cicd/app/batch/install      -> progress handle id
    GET  /api/sn_cicd/progress/{handle}      -> point-in-time progress

Example:
    async with CicdInstallerClient(base_url, username, password) as installer:
        handle = await installer.submit(manifest)
        snapshot = await installer.read_handle(handle)
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import httpx

from update_center.errors import HandleNotFoundError, InstallerError, SubmissionError

logger = logging.getLogger(__name__)


class HandleState(str, Enum):
    """Point-in-time state reported by an installer progress handle."""

    starting = "starting"
    running = "running"
    complete = "complete"
    error = "error"
    cancelled = "cancelled"


TERMINAL_HANDLE_STATES = frozenset(
    {HandleState.complete, HandleState.error, HandleState.cancelled}
)


@dataclass(frozen=True)
class ProgressSnapshot:
    """One read of an installer progress handle.

    percent_complete is not guaranteed to be monotonic between reads.
    """

    state: HandleState
    message: str = ""
    percent_complete: int = 0
    error_message: str | None = None
    output_summary: str | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the installer job has finished (in any way)."""
        return self.state in TERMINAL_HANDLE_STATES


class InstallerService(Protocol):
    """Narrow interface to the external installer."""

    async def submit(self, manifest: dict[str, Any]) -> str:
        """Submit an install manifest.

        Returns:
            Opaque progress handle reference.

        Raises:
            SubmissionError: If the installer rejects the manifest.
        """
        ...

    async def read_handle(self, handle: str) -> ProgressSnapshot:
        """Read the current progress of a submitted job.

        Raises:
            HandleNotFoundError: If the handle is not (yet) known.
            InstallerError: If the installer cannot be reached.
        """
        ...


# CI/CD progress status codes -> handle states
_CICD_STATUS_MAP: dict[str, HandleState] = {
    "0": HandleState.starting,  # Pending
    "1": HandleState.running,  # Running
    "2": HandleState.complete,  # Successful
    "3": HandleState.error,  # Failed
    "4": HandleState.cancelled,  # Canceled
}


def _parse_percent(value: Any) -> int:
    """Parse a percent value, clamping to 0-100 and tolerating junk."""
    try:
        percent = int(float(value))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, percent))


def parse_progress_result(result: dict[str, Any]) -> ProgressSnapshot:
    """Convert a CI/CD progress ``result`` object into a ProgressSnapshot.

    Args:
        result: The ``result`` member of a progress response body.

    Returns:
        Parsed snapshot. Unknown status codes map to running.
    """
    status = str(result.get("status", "1"))
    state = _CICD_STATUS_MAP.get(status, HandleState.running)
    error_message = result.get("error") or None
    return ProgressSnapshot(
        state=state,
        message=str(result.get("status_message") or ""),
        percent_complete=_parse_percent(result.get("percent_complete")),
        error_message=str(error_message) if error_message else None,
        output_summary=result.get("status_detail") or None,
    )


def _error_detail(resp: httpx.Response) -> str:
    """Extract the most useful error text from an error response."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("detail") or error)
    if error:
        return str(error)
    return resp.text or f"HTTP {resp.status_code}"


class CicdInstallerClient:
    """InstallerService implementation over the CI/CD REST API."""

    SUBMIT_PATH = "/api/sn_cicd/app/batch/install"
    PROGRESS_PATH = "/api/sn_cicd/progress/{handle}"

    def __init__(
        self,
        base_url: str,
        username: str = "",
        password: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize with installer instance URL and credentials.

        Args:
            base_url: Instance base URL (https://example.service-now.com).
            username: Basic auth user name.
            password: Basic auth password.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (tests inject a MockTransport).
        """
        self._base_url = base_url.rstrip("/")
        self._auth = (username, password) if username else None
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "CicdInstallerClient":
        """Open httpx async client."""
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            auth=self._auth,
            timeout=self._timeout,
            headers={"Accept": "application/json"},
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Close httpx async client."""
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying client if open."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise InstallerError("Installer client is not open")
        return self._client

    async def submit(self, manifest: dict[str, Any]) -> str:
        """Submit a batch install manifest and return the progress handle id.

        Raises:
            SubmissionError: On transport failure, non-2xx response, or a
                response without a progress handle.
        """
        client = self._require_client()
        try:
            resp = await client.post(self.SUBMIT_PATH, json=manifest)
        except httpx.HTTPError as e:
            raise SubmissionError(f"Installer request failed: {e}") from e

        if resp.status_code >= 400:
            raise SubmissionError(_error_detail(resp))

        try:
            result = resp.json().get("result") or {}
        except ValueError as e:
            raise SubmissionError("Installer returned a non-JSON response") from e

        progress = (result.get("links") or {}).get("progress") or {}
        handle = progress.get("id")
        if not handle:
            raise SubmissionError(
                str(result.get("error") or "Installer response has no progress handle")
            )

        logger.info(
            "Submitted manifest with %d package(s), progress handle %s",
            len(manifest.get("packages", [])),
            handle,
        )
        return str(handle)

    async def read_handle(self, handle: str) -> ProgressSnapshot:
        """Read the progress record behind a handle.

        Raises:
            HandleNotFoundError: On 404.
            InstallerError: On transport failure or any other error response.
        """
        client = self._require_client()
        try:
            resp = await client.get(self.PROGRESS_PATH.format(handle=handle))
        except httpx.HTTPError as e:
            raise InstallerError(f"Progress read failed: {e}") from e

        if resp.status_code == 404:
            raise HandleNotFoundError(handle)
        if resp.status_code >= 400:
            raise InstallerError(_error_detail(resp))

        try:
            result = resp.json().get("result") or {}
        except ValueError as e:
            raise InstallerError("Installer returned a non-JSON response") from e
        return parse_progress_result(result)
