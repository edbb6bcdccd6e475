"""Batch lifecycle orchestration.

BatchOrchestrator is the single entry point for callers (CLI, an HTTP
layer, a scheduler). It creates batches from install candidates, builds
and persists the install manifest, submits it to the installer, hands the
returned progress handle to the progress reconciler, and handles
cancellation. Read operations return plain dicts ready for JSON.

Rejected operations raise DomainError subclasses; callers turn them into
structured failures with update_center.errors.error_payload().

Example:
    orchestrator = BatchOrchestrator(session_factory, installer, inventory)
    created = orchestrator.create_batch(["ver-1", "ver-2"])
    handle = await orchestrator.execute_batch_install(created.batch_id)
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from update_center.config import UpdateCenterConfig
from update_center.db.connection import session_scope
from update_center.db.models import (
    ActivityLogEntry,
    ActivityPhase,
    ActivityType,
    BatchItem,
    BatchRequest,
    BatchState,
    UpdateLevel,
)
from update_center.errors import (
    ConflictError,
    InstallerError,
    SubmissionError,
    ValidationError,
)
from update_center.services.activity_log_service import ActivityLogService
from update_center.services.batch_store import BatchStore
from update_center.services.dependency_analyzer import (
    DependencyAnalysis,
    DependencyAnalyzer,
    get_update_level,
)
from update_center.services.installer_client import InstallerService, ProgressSnapshot
from update_center.services.package_inventory import PackageCandidate, PackageInventory
from update_center.services.progress_reconciler import ProgressReconciler

logger = logging.getLogger(__name__)


@dataclass
class BatchOptions:
    """Optional settings for a new batch."""

    scheduled_start: str | None = None
    notes: str | None = None
    requested_by: str | None = None


@dataclass
class BatchCreated:
    """Identity of a newly created batch plus its pre-flight findings."""

    batch_id: str
    number: str
    state: str
    total_items: int
    warnings: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)


def build_manifest(items: list[BatchItem], name: str, notes: str) -> dict[str, Any]:
    """Build the installer manifest for a batch's items (in install order)."""
    return {
        "name": name,
        "notes": notes,
        "packages": [
            {
                "id": item.package_id,
                "type": "application",
                "load_demo_data": False,
                "requested_version": item.to_version,
                "notes": f"{item.package_name} {item.from_version} -> {item.to_version}",
            }
            for item in items
        ],
    }


def normalize_timestamp(value: str) -> str:
    """Parse an ISO8601 timestamp and return it as a UTC ISO8601 string.

    Naive timestamps are taken to be UTC.

    Raises:
        ValidationError: If the value is not ISO8601.
    """
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError as e:
        raise ValidationError(f"Invalid timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC).isoformat()


def batch_to_dict(batch: BatchRequest) -> dict[str, Any]:
    return {
        "id": batch.id,
        "number": batch.number,
        "requested_by": batch.requested_by,
        "state": batch.state,
        "total_items": batch.total_items,
        "completed_items": batch.completed_items,
        "failed_items": batch.failed_items,
        "skipped_items": batch.skipped_items,
        "overall_progress": batch.overall_progress,
        "scheduled_start": batch.scheduled_start,
        "actual_start": batch.actual_start,
        "actual_end": batch.actual_end,
        "duration_seconds": batch.duration_seconds,
        "install_notes": batch.install_notes,
        "progress_handle": batch.progress_handle,
        "error_code": batch.error_code,
        "error_summary": batch.error_summary,
        "created_at": batch.created_at,
    }


def item_to_dict(item: BatchItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "package_id": item.package_id,
        "package_name": item.package_name,
        "from_version": item.from_version,
        "to_version": item.to_version,
        "update_level": item.update_level,
        "risk_level": item.risk_level,
        "state": item.state,
        "install_order": item.install_order,
        "progress_percent": item.progress_percent,
        "status_message": item.status_message,
        "error_message": item.error_message,
        "start_time": item.start_time,
        "end_time": item.end_time,
        "duration_seconds": item.duration_seconds,
    }


def entry_to_dict(entry: ActivityLogEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "sequence": entry.sequence,
        "timestamp": entry.timestamp,
        "activity_type": entry.activity_type,
        "phase": entry.phase,
        "message": entry.message,
        "details": entry.details,
        "package_name": entry.package_name,
        "item_id": entry.item_id,
        "progress_percent": entry.progress_percent,
    }


def snapshot_to_dict(snapshot: ProgressSnapshot) -> dict[str, Any]:
    return {
        "state": snapshot.state.value,
        "percent_complete": snapshot.percent_complete,
        "message": snapshot.message,
        "error_message": snapshot.error_message,
        "output_summary": snapshot.output_summary,
    }


class BatchOrchestrator:
    """Owns the batch lifecycle: create, execute, cancel, and status reads.

    Attributes:
        config: Loaded configuration (batch defaults, risk, reconciler).
        analyzer: Dependency analyzer over the package inventory.
        reconciler: Progress reconciler that runs one loop per executed batch.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        installer: InstallerService,
        inventory: PackageInventory,
        reconciler: ProgressReconciler | None = None,
        config: UpdateCenterConfig | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._installer = installer
        self._inventory = inventory
        self.config = config or UpdateCenterConfig()
        self.analyzer = DependencyAnalyzer(inventory, self.config.risk)
        self.reconciler = reconciler or ProgressReconciler(
            session_factory, installer, inventory, self.config.reconciler
        )

    # =========================================================================
    # Pre-flight
    # =========================================================================

    def _resolve_candidates(self, candidate_ids: list[str]) -> list[PackageCandidate]:
        candidates = []
        seen_packages: set[str] = set()
        for candidate_id in candidate_ids:
            candidate = self._inventory.resolve_candidate(candidate_id)
            if candidate is None:
                logger.warning("Skipping unknown candidate %s", candidate_id)
                continue
            if get_update_level(candidate.from_version, candidate.to_version) is None:
                logger.info(
                    "Skipping %s: %s is already installed",
                    candidate.package_name,
                    candidate.to_version,
                )
                continue
            if candidate.package_id in seen_packages:
                logger.warning(
                    "Skipping duplicate candidate %s for package %s",
                    candidate_id,
                    candidate.package_id,
                )
                continue
            seen_packages.add(candidate.package_id)
            candidates.append(candidate)
        return candidates

    def analyze_dependencies(self, candidate_ids: list[str]) -> dict[str, Any]:
        """Compute install order, outside-set warnings and cycle conflicts.

        Candidate ids are resolved to their packages; ids that do not
        resolve are taken to be package ids already.

        Raises:
            ValidationError: If no ids are given.
        """
        ids = _clean_ids(candidate_ids)
        if not ids:
            raise ValidationError("No packages selected")
        package_ids = []
        for candidate_id in ids:
            candidate = self._inventory.resolve_candidate(candidate_id)
            package_ids.append(candidate.package_id if candidate else candidate_id)
        return self.analyzer.analyze_dependencies(package_ids).to_dict()

    def get_update_summary(self) -> dict[str, Any]:
        """Summarize every available update by level, risk band and vendor."""
        candidates = self._inventory.list_available_updates()
        return self.analyzer.summarize_updates(candidates).to_dict()

    # =========================================================================
    # Lifecycle operations
    # =========================================================================

    def create_batch(
        self, candidate_ids: list[str], options: BatchOptions | None = None
    ) -> BatchCreated:
        """Create a batch request and its items. Does not submit anything.

        Args:
            candidate_ids: Identifiers of the target versions to install.
            options: Optional scheduled start, notes and requester.

        Returns:
            BatchCreated with the new identity and pre-flight findings.

        Raises:
            ValidationError: If no candidate is given, none has an
                available update, or the scheduled start is malformed.
        """
        options = options or BatchOptions()
        ids = _clean_ids(candidate_ids)
        if not ids:
            raise ValidationError("No packages selected")
        scheduled_start = (
            normalize_timestamp(options.scheduled_start)
            if options.scheduled_start
            else None
        )

        candidates = self._resolve_candidates(ids)
        if not candidates:
            raise ValidationError("None of the selected packages has an available update")

        analysis = self._analyze_for_creation(candidates)
        position = {package_id: index for index, package_id in enumerate(analysis.order)}
        ordered = sorted(
            candidates, key=lambda c: position.get(c.package_id, len(position))
        )

        step = self.config.batch.install_order_step
        item_data = []
        for index, candidate in enumerate(ordered):
            level = get_update_level(candidate.from_version, candidate.to_version)
            item_data.append(
                {
                    "package_id": candidate.package_id,
                    "package_name": candidate.package_name,
                    "version_ref": candidate.candidate_id,
                    "from_version": candidate.from_version,
                    "to_version": candidate.to_version,
                    "update_level": level.value,
                    "risk_level": self._risk_for(candidate.package_id, level),
                    "install_order": (index + 1) * step,
                }
            )

        with session_scope(self._session_factory) as db:
            store = BatchStore(db)
            activity = ActivityLogService(db)
            batch = store.create_batch_request(
                requested_by=options.requested_by or self.config.batch.requested_by,
                total_items=len(item_data),
                scheduled_start=scheduled_start,
                install_notes=options.notes,
            )
            activity.log(
                batch.id,
                ActivityType.start,
                ActivityPhase.preparation,
                f"Batch request {batch.number} created with {len(item_data)} package(s)",
            )
            items = store.create_items(batch.id, item_data)
            manifest = build_manifest(
                items, self.config.batch.manifest_name, self.config.batch.manifest_notes
            )
            store.set_manifest(batch.id, manifest)
            activity.log(
                batch.id,
                ActivityType.info,
                ActivityPhase.preparation,
                f"Batch manifest built with {len(manifest['packages'])} package(s)",
            )
            for warning in analysis.warnings:
                activity.log(batch.id, ActivityType.warning, ActivityPhase.validation, warning)
            for conflict in analysis.conflicts:
                activity.log(batch.id, ActivityType.warning, ActivityPhase.validation, conflict)

            created = BatchCreated(
                batch_id=batch.id,
                number=batch.number,
                state=batch.state,
                total_items=len(items),
                warnings=list(analysis.warnings),
                conflicts=list(analysis.conflicts),
            )

        logger.info(
            "Created batch %s (%s) with %d item(s)",
            created.number,
            created.state,
            created.total_items,
        )
        return created

    def _analyze_for_creation(
        self, candidates: list[PackageCandidate]
    ) -> DependencyAnalysis:
        try:
            return self.analyzer.analyze_dependencies([c.package_id for c in candidates])
        except Exception as e:
            logger.warning("Dependency analysis unavailable, using input order: %s", e)
            return DependencyAnalysis(order=[c.package_id for c in candidates])

    def _risk_for(self, package_id: str, level: UpdateLevel) -> str | None:
        try:
            return self.analyzer.assess_risk(package_id, level).value
        except Exception as e:
            logger.warning("Risk assessment for %s unavailable: %s", package_id, e)
            return None

    async def execute_batch_install(self, batch_id: str) -> str:
        """Submit a draft or scheduled batch and start monitoring it.

        Returns:
            The installer's progress handle reference.

        Raises:
            NotFoundError: If the batch does not exist.
            ConflictError: If the batch is already in progress (or finished).
            SubmissionError: If the installer rejected the manifest. The
                batch is recorded as failed before this is raised.
        """
        with session_scope(self._session_factory) as db:
            store = BatchStore(db)
            activity = ActivityLogService(db)
            batch = store.require_batch(batch_id)
            if batch.state == BatchState.in_progress.value or self.reconciler.is_running(
                batch_id
            ):
                raise ConflictError(f"Batch {batch.number} is already running")
            if batch.state not in (BatchState.draft.value, BatchState.scheduled.value):
                raise ConflictError(
                    f"Batch {batch.number} is {batch.state} and cannot be executed"
                )

            store.update_state(batch_id, BatchState.in_progress)
            activity.log(
                batch_id,
                ActivityType.start,
                ActivityPhase.installation,
                "Batch installation started",
            )
            for item in store.start_items(batch_id):
                activity.log_item_install_start(
                    batch_id, item.id, item.package_name, item.from_version, item.to_version
                )
            manifest = store.get_manifest(batch_id)
            number = batch.number

        try:
            handle = await self._installer.submit(manifest)
        except SubmissionError as e:
            self._record_submission_failure(batch_id, number, e)
            raise
        except Exception as e:
            error = SubmissionError(f"Installer submission failed: {e}")
            self._record_submission_failure(batch_id, number, error)
            raise error from e

        with session_scope(self._session_factory) as db:
            BatchStore(db).set_progress_handle(batch_id, handle)
            ActivityLogService(db).log(
                batch_id,
                ActivityType.info,
                ActivityPhase.installation,
                f"Installer accepted manifest. Progress handle: {handle}",
            )

        self.reconciler.start(batch_id, handle)
        logger.info("Batch %s submitted, progress handle %s", number, handle)
        return handle

    def _record_submission_failure(
        self, batch_id: str, number: str, error: SubmissionError
    ) -> None:
        logger.error("Submission of batch %s failed: %s", number, error.message)
        with session_scope(self._session_factory) as db:
            store = BatchStore(db)
            store.set_error(batch_id, error.code, error.message)
            store.skip_open_items(batch_id)
            store.update_state(batch_id, BatchState.failed)
            ActivityLogService(db).log(
                batch_id,
                ActivityType.error,
                ActivityPhase.installation,
                f"Batch installation failed: {error.message}",
            )

    def cancel_batch_install(
        self, batch_id: str, cancelled_by: str | None = None
    ) -> dict[str, Any]:
        """Cancel an in-progress batch.

        Cooperative: the installer is not stopped. Local bookkeeping is
        marked cancelled and the reconciler stops at its next iteration.

        Raises:
            NotFoundError: If the batch does not exist.
            ConflictError: If the batch is not in progress.
        """
        actor = cancelled_by or self.config.batch.requested_by
        with session_scope(self._session_factory) as db:
            store = BatchStore(db)
            batch = store.require_batch(batch_id)
            if batch.state != BatchState.in_progress.value:
                raise ConflictError(
                    f"Only in-progress batches can be cancelled "
                    f"(batch {batch.number} is {batch.state})"
                )
            store.update_state(batch_id, BatchState.cancelled)
            skipped = store.skip_open_items(batch_id)
            ActivityLogService(db).log(
                batch_id,
                ActivityType.warning,
                ActivityPhase.installation,
                f"Batch installation cancelled by {actor}",
            )
            ack = {
                "batch_id": batch_id,
                "number": batch.number,
                "state": BatchState.cancelled.value,
                "skipped_items": len(skipped),
            }
        logger.info("Batch %s cancelled by %s", ack["number"], actor)
        return ack

    async def run_scheduled_batches(self, now: str | None = None) -> list[str]:
        """Start every scheduled batch whose start time has passed.

        Args:
            now: ISO8601 reference time (defaults to the current UTC time).

        Returns:
            IDs of the batches that were submitted successfully.
        """
        reference = normalize_timestamp(now) if now else datetime.now(UTC).isoformat()
        with session_scope(self._session_factory) as db:
            due = [b.id for b in BatchStore(db).list_due_scheduled(reference)]

        started = []
        for batch_id in due:
            try:
                await self.execute_batch_install(batch_id)
            except (ConflictError, SubmissionError) as e:
                logger.warning("Scheduled batch %s not started: %s", batch_id, e.message)
                continue
            started.append(batch_id)
        return started

    # =========================================================================
    # Read operations
    # =========================================================================

    def get_batch_status(self, batch_id: str, activity_limit: int = 50) -> dict[str, Any]:
        """Get a batch with its items and most recent activity.

        Raises:
            NotFoundError: If the batch does not exist.
        """
        with session_scope(self._session_factory) as db:
            store = BatchStore(db)
            batch = store.require_batch(batch_id)
            return {
                "request": batch_to_dict(batch),
                "items": [item_to_dict(i) for i in store.get_items(batch_id)],
                "recent_activity": [
                    entry_to_dict(e)
                    for e in ActivityLogService(db).get_recent_activity(
                        batch_id, limit=activity_limit
                    )
                ],
                "monitoring": self.reconciler.is_running(batch_id),
            }

    async def get_live_batch_status(
        self, batch_id: str, activity_limit: int = 50
    ) -> dict[str, Any]:
        """Get a batch's status plus a live read of its installer progress handle.

        "progress" is None when the batch has no handle yet, or when the
        installer cannot resolve or be reached for it.

        Raises:
            NotFoundError: If the batch does not exist.
        """
        status = self.get_batch_status(batch_id, activity_limit=activity_limit)
        status["progress"] = None
        handle = status["request"]["progress_handle"]
        if not handle:
            return status
        try:
            snapshot = await self._installer.read_handle(handle)
        except InstallerError as e:
            logger.warning("Could not read progress handle %s: %s", handle, e.message)
            return status
        status["progress"] = snapshot_to_dict(snapshot)
        return status

    def get_activity_feed(
        self,
        batch_id: str,
        since: str | None = None,
        limit: int = 50,
        activity_type: str | None = None,
    ) -> list[dict[str, Any]]:
        """Get a batch's activity entries, newest (highest sequence) first.

        Raises:
            ValidationError: If limit is not positive or activity_type is unknown.
            NotFoundError: If the batch does not exist.
        """
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        type_filter = _parse_enum(ActivityType, activity_type, "activity type")
        since_filter = normalize_timestamp(since) if since else None
        with session_scope(self._session_factory) as db:
            BatchStore(db).require_batch(batch_id)
            entries = ActivityLogService(db).get_activity_feed(
                batch_id, since=since_filter, activity_type=type_filter, limit=limit
            )
            return [entry_to_dict(e) for e in entries]

    def export_activity(self, batch_id: str) -> str:
        """Export a batch's full activity log as plain text, oldest first.

        Raises:
            NotFoundError: If the batch does not exist.
        """
        with session_scope(self._session_factory) as db:
            BatchStore(db).require_batch(batch_id)
            return ActivityLogService(db).export_text(batch_id)

    def list_history(
        self,
        state: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """List installation history (batches past draft), newest first.

        Returns:
            Dict with "items" (one page) and "total" (all matches).

        Raises:
            ValidationError: On an unknown state or bad pagination values.
        """
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be at least 1 and offset non-negative")
        state_filter = _parse_enum(BatchState, state, "batch state")
        with session_scope(self._session_factory) as db:
            page, total = BatchStore(db).query_history(
                state=state_filter, limit=limit, offset=offset
            )
            return {"items": [batch_to_dict(b) for b in page], "total": total}


def _clean_ids(candidate_ids: list[str]) -> list[str]:
    return list(dict.fromkeys(c.strip() for c in candidate_ids if c and c.strip()))


def _parse_enum(enum_cls, value: str | None, label: str):
    if value is None or value == "":
        return None
    try:
        return enum_cls(value)
    except ValueError as e:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Unknown {label} '{value}'. Expected one of: {allowed}") from e
