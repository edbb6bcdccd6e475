"""Background progress polling and reconciliation for executed batches.

One reconciler loop runs per executed batch. It reads the installer's
progress handle on an adaptive interval, turns changed messages into
activity entries, fires a milestone at each new multiple of ten percent,
and estimates per-item state from the overall percentage. When the handle
reaches a terminal state (or the batch is cancelled locally, or polling
has to give up), a ground-truth sync compares every item's target version
with the inventory and the batch is finalized.

Every iteration opens its own short-lived session, so nothing is held
across the sleep between reads.

Example:
    reconciler = ProgressReconciler(session_factory, installer, inventory)
    reconciler.start(batch_id, handle)
    result = await reconciler.wait(batch_id)
"""

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from update_center.config import ReconcilerConfig
from update_center.db.connection import session_scope
from update_center.db.models import (
    TERMINAL_BATCH_STATES,
    ActivityPhase,
    ActivityType,
    BatchState,
    ItemState,
)
from update_center.errors import (
    ConflictError,
    DomainError,
    HandleNotFoundError,
    InstallerError,
    PollingTimeoutError,
    ReconciliationMismatchError,
    format_failure_summary,
)
from update_center.services.activity_log_service import ActivityLogService
from update_center.services.batch_store import BatchStore
from update_center.services.installer_client import (
    HandleState,
    InstallerService,
    ProgressSnapshot,
)
from update_center.services.package_inventory import PackageInventory

logger = logging.getLogger(__name__)

INSTALLED_MESSAGE = "Installed successfully"


def classify_progress_message(message: str) -> ActivityType:
    """Classify a free-text installer message into an activity type.

    First match wins: "error"/"fail" -> error, "complete"/"success" ->
    success, "install" -> info, anything else -> progress.
    """
    text = message.lower()
    if "error" in text or "fail" in text:
        return ActivityType.error
    if "complete" in text or "success" in text:
        return ActivityType.success
    if "install" in text:
        return ActivityType.info
    return ActivityType.progress


def estimate_current_index(percent: int, total: int) -> int:
    """Index of the item assumed to be installing at this overall percent."""
    return math.floor(percent / 100 * total)


def estimate_item_progress(percent: int, index: int, total: int) -> int:
    """Interpolate one item's progress within its slice of the overall range.

    Example:
        >>> estimate_item_progress(50, 1, 3)  # slice 33.3%..66.7%
        50
    """
    if total <= 0:
        return 0
    slice_size = 100 / total
    raw = (percent - index * slice_size) / slice_size * 100
    return max(0, min(100, math.floor(raw + 0.5)))


@dataclass
class ReconciliationResult:
    """Outcome of a finished reconciler loop."""

    batch_id: str
    final_state: BatchState
    summary: str
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
    duration_seconds: int | None = None
    error_code: str | None = None


@dataclass
class _PollState:
    last_message: str | None = None
    last_percent: int = -1
    last_milestone: int = 0
    snapshot: ProgressSnapshot | None = None
    forced: DomainError | None = None
    cancelled_locally: bool = False


class ProgressReconciler:
    """Polls installer progress handles and reconciles batches against them.

    Also acts as the registry of running loops: at most one task is active
    per batch identity.

    Attributes:
        config: Timing bounds for the loop.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        installer: InstallerService,
        inventory: PackageInventory,
        config: ReconcilerConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the reconciler.

        Args:
            session_factory: Factory for one short-lived session per unit of work.
            installer: Installer service to read progress handles from.
            inventory: Ground truth for installed versions.
            config: Timing bounds (defaults: 2h max, 3s/10s intervals, 20 handle misses).
            sleep: Awaitable sleep (tests inject a fake).
            clock: Monotonic clock in seconds (tests inject a fake).
        """
        self._session_factory = session_factory
        self._installer = installer
        self._inventory = inventory
        self.config = config or ReconcilerConfig()
        self._sleep = sleep
        self._clock = clock
        self._tasks: dict[str, asyncio.Task[ReconciliationResult]] = {}

    # =========================================================================
    # Task registry
    # =========================================================================

    def is_running(self, batch_id: str) -> bool:
        """Whether a reconciler loop is active for this batch."""
        task = self._tasks.get(batch_id)
        return task is not None and not task.done()

    def start(self, batch_id: str, handle: str) -> asyncio.Task[ReconciliationResult]:
        """Launch the reconciler loop for a batch as a background task.

        Raises:
            ConflictError: If a loop is already running for this batch.
        """
        if self.is_running(batch_id):
            raise ConflictError(f"Progress monitor already running for batch {batch_id}")
        task = asyncio.create_task(self.run(batch_id, handle), name=f"reconcile-{batch_id}")
        self._tasks[batch_id] = task
        task.add_done_callback(lambda t: self._on_task_done(batch_id, t))
        return task

    def _on_task_done(self, batch_id: str, task: asyncio.Task) -> None:
        # Finished tasks stay registered so wait() can still return the result
        if task.cancelled():
            logger.warning("Progress monitor for batch %s was cancelled", batch_id)
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Progress monitor for batch %s crashed: %s",
                batch_id,
                error,
                exc_info=error,
            )

    async def wait(self, batch_id: str) -> ReconciliationResult | None:
        """Wait for a batch's latest loop to finish; None if none was started."""
        task = self._tasks.get(batch_id)
        if task is None:
            return None
        return await task

    async def wait_all(self) -> None:
        """Wait for every running loop to finish."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # =========================================================================
    # Polling loop
    # =========================================================================

    async def run(self, batch_id: str, handle: str) -> ReconciliationResult:
        """Poll a handle until terminal, then sync and finalize the batch.

        Never leaves the batch in_progress: timeouts, unresolvable handles
        and unexpected polling errors force a failed finalization, and an
        error during the sync or finalization falls back to a minimal one.

        Args:
            batch_id: UUID of the in_progress batch.
            handle: Progress handle returned by the installer.

        Returns:
            ReconciliationResult with the final state and counts.
        """
        state = _PollState()
        with session_scope(self._session_factory) as db:
            batch = BatchStore(db).require_batch(batch_id)
            state.last_milestone = batch.overall_progress - batch.overall_progress % 10
            ActivityLogService(db).log(
                batch_id,
                ActivityType.info,
                ActivityPhase.installation,
                f"Progress monitor started. Tracking handle: {handle}",
            )
        logger.info("Progress monitor started for batch %s (handle %s)", batch_id, handle)

        try:
            await self._poll(batch_id, handle, state)
        except Exception as e:
            logger.exception("Progress polling for batch %s failed", batch_id)
            state.forced = InstallerError(f"Progress monitor error: {e}")
            with session_scope(self._session_factory) as db:
                ActivityLogService(db).log(
                    batch_id,
                    ActivityType.error,
                    ActivityPhase.installation,
                    state.forced.message,
                )

        try:
            await self._sync_ground_truth(batch_id, state)
            return self._finalize(batch_id, state)
        except Exception as e:
            logger.exception("Finalization of batch %s failed", batch_id)
            return self._finalize_after_error(batch_id, e)

    async def _poll(self, batch_id: str, handle: str, state: _PollState) -> None:
        start = self._clock()
        misses = 0

        while True:
            elapsed = self._clock() - start
            if elapsed > self.config.max_runtime_seconds:
                state.forced = PollingTimeoutError(elapsed)
                self._log(batch_id, ActivityType.warning, state.forced.message)
                logger.warning("Batch %s: %s", batch_id, state.forced.message)
                return

            with session_scope(self._session_factory) as db:
                current = BatchStore(db).require_batch(batch_id).state
            if current == BatchState.cancelled.value:
                state.cancelled_locally = True
                self._log(
                    batch_id,
                    ActivityType.info,
                    "Cancellation observed. Progress monitor stopping",
                )
                return

            try:
                snapshot = await self._installer.read_handle(handle)
            except InstallerError as e:
                misses += 1
                if misses >= self.config.handle_max_attempts:
                    state.forced = HandleNotFoundError(handle)
                    self._log(
                        batch_id,
                        ActivityType.error,
                        f"Progress handle not found after {misses} attempts",
                    )
                    logger.error(
                        "Batch %s: giving up on handle %s after %d attempts (%s)",
                        batch_id,
                        handle,
                        misses,
                        e.message,
                    )
                    return
                logger.debug("Handle %s not readable yet (%d): %s", handle, misses, e)
                await self._sleep(self.config.handle_retry_interval_seconds)
                continue

            misses = 0
            state.snapshot = snapshot
            with session_scope(self._session_factory) as db:
                self._apply_snapshot(db, batch_id, snapshot, state)

            if snapshot.is_terminal:
                if snapshot.error_message:
                    with session_scope(self._session_factory) as db:
                        ActivityLogService(db).log(
                            batch_id,
                            ActivityType.error,
                            ActivityPhase.post_install,
                            f"Installation error: {snapshot.error_message}",
                        )
                return

            if snapshot.state == HandleState.starting:
                await self._sleep(self.config.starting_interval_seconds)
            else:
                await self._sleep(self.config.running_interval_seconds)

    def _log(self, batch_id: str, activity_type: ActivityType, message: str) -> None:
        with session_scope(self._session_factory) as db:
            ActivityLogService(db).log(
                batch_id, activity_type, ActivityPhase.installation, message
            )

    def _apply_snapshot(
        self,
        db: Session,
        batch_id: str,
        snapshot: ProgressSnapshot,
        state: _PollState,
    ) -> None:
        store = BatchStore(db)
        activity = ActivityLogService(db)
        percent = snapshot.percent_complete

        message_changed = bool(snapshot.message) and snapshot.message != state.last_message
        if message_changed:
            activity.log(
                batch_id,
                classify_progress_message(snapshot.message),
                ActivityPhase.installation,
                snapshot.message,
                details=snapshot.output_summary,
                progress_percent=percent,
            )
            state.last_message = snapshot.message

        if message_changed or percent != state.last_percent:
            self._estimate_items(store, activity, batch_id, percent, snapshot.message)
            state.last_percent = percent

        reached = percent - percent % 10
        for milestone in range(state.last_milestone + 10, reached + 1, 10):
            store.set_overall_progress(batch_id, milestone)
            activity.log_milestone(batch_id, milestone)
            state.last_milestone = milestone

    def _estimate_items(
        self,
        store: BatchStore,
        activity: ActivityLogService,
        batch_id: str,
        percent: int,
        message: str,
    ) -> None:
        items = store.get_items(batch_id, states=[ItemState.installing])
        total = len(items)
        if total == 0:
            return
        current_index = estimate_current_index(percent, total)
        for index, item in enumerate(items):
            if index < current_index:
                item = store.complete_item(item.id, status_message=INSTALLED_MESSAGE)
                activity.log_item_install_complete(
                    batch_id,
                    item.id,
                    item.package_name,
                    item.to_version,
                    item.duration_seconds,
                )
            elif index == current_index:
                store.update_item_progress(
                    item.id,
                    estimate_item_progress(percent, current_index, total),
                    status_message=message or None,
                )
            else:
                break

    # =========================================================================
    # Ground-truth sync and finalization
    # =========================================================================

    async def _sync_ground_truth(self, batch_id: str, state: _PollState) -> None:
        """Force item states to match the inventory's installed versions.

        A match completes the item whatever its estimated state. A mismatch
        fails an item that is still installing or was only estimated
        complete. Skipped and queued items stay as they are on mismatch.
        """
        with session_scope(self._session_factory) as db:
            store = BatchStore(db)
            if state.snapshot is not None and state.snapshot.state == HandleState.cancelled:
                store.skip_open_items(batch_id)
            targets = [
                (item.id, item.package_id, item.to_version)
                for item in store.get_items(batch_id)
            ]

        for item_id, package_id, to_version in targets:
            lookup_error: Exception | None = None
            installed: str | None = None
            try:
                installed = await asyncio.to_thread(
                    self._inventory.current_version, package_id
                )
            except Exception as e:
                lookup_error = e
                logger.warning(
                    "Inventory lookup for %s failed during sync: %s", package_id, e
                )

            with session_scope(self._session_factory) as db:
                self._reconcile_item(db, batch_id, item_id, to_version, installed, lookup_error)

    def _reconcile_item(
        self,
        db: Session,
        batch_id: str,
        item_id: str,
        to_version: str,
        installed: str | None,
        lookup_error: Exception | None,
    ) -> None:
        store = BatchStore(db)
        activity = ActivityLogService(db)
        item = store.get_item(item_id)
        if item is None:
            return
        current = ItemState(item.state)

        if lookup_error is None and installed == to_version:
            if current != ItemState.completed:
                item = store.complete_item(
                    item_id, status_message=INSTALLED_MESSAGE, force=True
                )
                activity.log_item_install_complete(
                    batch_id,
                    item.id,
                    item.package_name,
                    to_version,
                    item.duration_seconds,
                )
            return

        if current not in (ItemState.installing, ItemState.completed):
            return

        if lookup_error is not None:
            error_message = f"Could not verify installed version: {lookup_error}"
        else:
            error_message = ReconciliationMismatchError(
                item.package_id, to_version, installed
            ).message
        store.fail_item(item_id, error_message, force=True)
        activity.log_item_install_failed(
            batch_id, item.id, item.package_name, error_message
        )

    def _final_state(
        self, state: _PollState, completed: int, failed: int
    ) -> BatchState:
        if state.forced is not None:
            return BatchState.failed
        if state.cancelled_locally or (
            state.snapshot is not None and state.snapshot.state == HandleState.cancelled
        ):
            return BatchState.cancelled
        if failed and completed:
            return BatchState.partial
        if failed or _installer_failed(state):
            return BatchState.failed
        return BatchState.completed

    def _finalize(self, batch_id: str, state: _PollState) -> ReconciliationResult:
        with session_scope(self._session_factory) as db:
            store = BatchStore(db)
            batch = store.recount_items(batch_id)
            completed = batch.completed_items
            failed = batch.failed_items

            final_state = self._final_state(state, completed, failed)
            if batch.state == BatchState.cancelled.value:
                final_state = BatchState.cancelled

            error_code: str | None = None
            error_summary: str | None = None
            if state.forced is not None:
                error_code, error_summary = state.forced.code, state.forced.message
            elif final_state == BatchState.failed and _installer_failed(state):
                error_code = "E-3004"
                error_summary = (
                    f"Installer reported an error: "
                    f"{state.snapshot.error_message or state.snapshot.message}"
                )
                if failed:
                    error_summary += "\n" + self._failure_summary(store, batch_id)
            elif failed:
                error_code = "E-4003"
                error_summary = self._failure_summary(store, batch_id)
            if error_code is not None:
                store.set_error(batch_id, error_code, error_summary)

            return self._close_batch(db, batch_id, final_state, error_code)

    def _finalize_after_error(self, batch_id: str, error: Exception) -> ReconciliationResult:
        """Fallback finalization when the sync or normal finalization raised."""
        forced = InstallerError(f"Progress monitor error: {error}")
        with session_scope(self._session_factory) as db:
            store = BatchStore(db)
            ActivityLogService(db).log(
                batch_id, ActivityType.error, ActivityPhase.post_install, forced.message
            )
            store.recount_items(batch_id)
            batch = store.require_batch(batch_id)
            if batch.state == BatchState.cancelled.value:
                return self._close_batch(db, batch_id, BatchState.cancelled, None)
            store.set_error(batch_id, forced.code, forced.message)
            return self._close_batch(db, batch_id, BatchState.failed, forced.code)

    @staticmethod
    def _failure_summary(store: BatchStore, batch_id: str) -> str:
        failures = [
            (item.package_name, item.error_message or "Unknown error")
            for item in store.get_items(batch_id, states=[ItemState.failed])
        ]
        return format_failure_summary(failures)

    def _close_batch(
        self,
        db: Session,
        batch_id: str,
        final_state: BatchState,
        error_code: str | None,
    ) -> ReconciliationResult:
        """Apply the terminal transition, force 100% and log the summary entry.

        The batch is re-read first: a cancellation committed by another
        process since the sync wins over the computed state.
        """
        store = BatchStore(db)
        batch = store.require_batch(batch_id)
        db.refresh(batch)
        current = BatchState(batch.state)
        if current in TERMINAL_BATCH_STATES:
            final_state = current
        else:
            batch = store.update_state(batch_id, final_state)
        batch = store.set_overall_progress(batch_id, 100)

        summary = {
            "final_state": final_state.value,
            "completed": batch.completed_items,
            "failed": batch.failed_items,
            "skipped": batch.skipped_items,
            "total": batch.total_items,
            "duration_seconds": batch.duration_seconds or 0,
        }
        summary_message = (
            ActivityLogService(db).log_batch_complete(batch_id, summary).message
        )

        logger.info(
            "Batch %s finalized as %s (%d completed, %d failed, %d skipped)",
            batch_id,
            final_state.value,
            summary["completed"],
            summary["failed"],
            summary["skipped"],
        )
        return ReconciliationResult(
            batch_id=batch_id,
            final_state=final_state,
            summary=summary_message,
            completed=summary["completed"],
            failed=summary["failed"],
            skipped=summary["skipped"],
            total=summary["total"],
            duration_seconds=summary["duration_seconds"],
            error_code=error_code,
        )


def _installer_failed(state: _PollState) -> bool:
    """Whether the handle's last read reported an installer-side error."""
    return state.snapshot is not None and state.snapshot.state == HandleState.error
