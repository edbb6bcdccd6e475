"""In-process fakes for the installer, the package inventory and time.

FakeInstaller replays a scripted sequence of progress snapshots (or
exceptions) one per read. FakeInventory holds installed versions, published
candidates and dependency edges in dicts. FakeClock advances only when the
reconciler sleeps, so polling tests run instantly.
"""

from typing import Any

from update_center.errors import HandleNotFoundError
from update_center.services.installer_client import HandleState, ProgressSnapshot
from update_center.services.package_inventory import PackageCandidate


def snapshot(
    state: HandleState = HandleState.running,
    percent: int = 0,
    message: str = "",
    error: str | None = None,
    summary: str | None = None,
) -> ProgressSnapshot:
    """Shorthand ProgressSnapshot constructor."""
    return ProgressSnapshot(
        state=state,
        message=message,
        percent_complete=percent,
        error_message=error,
        output_summary=summary,
    )


class FakeClock:
    """Monotonic clock driven by the fake sleep."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeInstaller:
    """Scripted InstallerService.

    Each read_handle() call consumes the next scripted step. A step is a
    ProgressSnapshot to return or an exception to raise. Once the script is
    exhausted the last step repeats.
    """

    def __init__(
        self,
        steps: list[ProgressSnapshot | Exception] | None = None,
        handle: str = "progress-1",
        submit_error: Exception | None = None,
    ) -> None:
        self.steps = list(steps or [snapshot(HandleState.complete, 100, "Complete")])
        self.handle = handle
        self.submit_error = submit_error
        self.submitted: list[dict[str, Any]] = []
        self.reads = 0
        self.on_read = None

    async def submit(self, manifest: dict[str, Any]) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(manifest)
        return self.handle

    async def read_handle(self, handle: str) -> ProgressSnapshot:
        if handle != self.handle:
            raise HandleNotFoundError(handle)
        index = min(self.reads, len(self.steps) - 1)
        self.reads += 1
        if self.on_read is not None:
            self.on_read(self.reads)
        step = self.steps[index]
        if isinstance(step, Exception):
            raise step
        return step


class FakeInventory:
    """Dict-backed PackageInventory.

    ``after_install`` holds the versions current_version() reports once
    ``installed`` is flipped, simulating the installer's effect.
    """

    def __init__(self) -> None:
        self.packages: dict[str, dict[str, str]] = {}
        self.candidates: dict[str, PackageCandidate] = {}
        self.edges: dict[str, list[str]] = {}
        self.customized: set[str] = set()
        self.after_install: dict[str, str] = {}
        self.installed = False
        self.broken_lookups: set[str] = set()

    def add_package(
        self,
        package_id: str,
        name: str,
        version: str,
        target: str | None = None,
        vendor: str = "Acme",
        depends_on: list[str] | None = None,
        candidate_id: str | None = None,
    ) -> str | None:
        """Register an installed package and, optionally, a target version.

        Returns:
            The candidate id for the target version, if one was given.
        """
        self.packages[package_id] = {"name": name, "version": version, "vendor": vendor}
        self.edges[package_id] = list(depends_on or [])
        if target is None:
            return None
        candidate_id = candidate_id or f"ver-{package_id}"
        self.candidates[candidate_id] = PackageCandidate(
            candidate_id=candidate_id,
            package_id=package_id,
            package_name=name,
            from_version=version,
            to_version=target,
            vendor=vendor,
        )
        self.after_install[package_id] = target
        return candidate_id

    def resolve_candidate(self, candidate_id: str) -> PackageCandidate | None:
        return self.candidates.get(candidate_id)

    def current_version(self, package_id: str) -> str | None:
        if package_id in self.broken_lookups:
            raise ConnectionError("inventory unavailable")
        if self.installed and package_id in self.after_install:
            return self.after_install[package_id]
        package = self.packages.get(package_id)
        return package["version"] if package else None

    def dependencies(self, package_id: str) -> list[str]:
        return list(self.edges.get(package_id, []))

    def has_customizations(self, package_id: str) -> bool:
        return package_id in self.customized

    def display_name(self, package_id: str) -> str:
        package = self.packages.get(package_id)
        return package["name"] if package else package_id

    def list_available_updates(self) -> list[PackageCandidate]:
        return list(self.candidates.values())
