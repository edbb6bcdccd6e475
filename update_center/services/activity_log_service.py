"""Append-only activity log for batch installs.

Every notable event of a batch (creation, submission, installer messages,
milestones, per-package outcomes, finalization) is written as an immutable
ActivityLogEntry with a per-batch sequence number. The service holds no
counters of its own: the next sequence is derived from the store inside the
writing session, and the (batch_id, sequence) unique constraint rejects a
concurrent duplicate.

Usage:
    from update_center.db.connection import session_scope
    from update_center.services.activity_log_service import ActivityLogService

    with session_scope() as db:
        activity = ActivityLogService(db)
        activity.log(batch_id, ActivityType.info, ActivityPhase.preparation,
                     "Manifest built")
        feed = activity.get_activity_feed(batch_id, limit=50)
"""

import json
import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from update_center.db.models import (
    ActivityLogEntry,
    ActivityPhase,
    ActivityType,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

# Attempts to claim a sequence number before giving up on a write
MAX_SEQUENCE_ATTEMPTS = 3


def format_duration(seconds: int | float | None) -> str:
    """Format a duration for activity messages.

    Example:
        >>> format_duration(45)
        '45s'
        >>> format_duration(125)
        '2m 5s'
        >>> format_duration(7260)
        '2h 1m'
    """
    total = max(0, int(seconds or 0))
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def relative_time(timestamp: str | None, now: datetime | None = None) -> str:
    """Render an ISO8601 timestamp relative to now ("just now", "5m ago")."""
    if not timestamp:
        return ""
    then = datetime.fromisoformat(timestamp)
    if then.tzinfo is None:
        then = then.replace(tzinfo=UTC)
    seconds = abs(((now or datetime.now(UTC)) - then).total_seconds())
    if seconds < 10:
        return "just now"
    if seconds < 60:
        return f"{int(seconds)}s ago"
    if seconds < 3600:
        return f"{int(seconds // 60)}m ago"
    return f"{int(seconds // 3600)}h ago"


class ActivityLogService:
    """Stateless writer and reader for the per-batch activity feed.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        """Initialize the activity log service.

        Args:
            db: SQLAlchemy session for database operations.
        """
        self.db = db

    def _next_sequence(self, batch_id: str) -> int:
        current = (
            self.db.query(func.max(ActivityLogEntry.sequence))
            .filter(ActivityLogEntry.batch_id == batch_id)
            .scalar()
        )
        return (current or 0) + 1

    def log(
        self,
        batch_id: str,
        activity_type: ActivityType,
        phase: ActivityPhase,
        message: str,
        item_id: str | None = None,
        details: dict[str, Any] | str | None = None,
        package_name: str | None = None,
        progress_percent: int | None = None,
    ) -> ActivityLogEntry:
        """Append an activity entry to a batch's feed.

        Core logging method that all other log methods delegate to.

        Args:
            batch_id: UUID of the batch this entry belongs to.
            activity_type: Category of the entry.
            phase: Installation phase the entry belongs to.
            message: Human-readable event description.
            item_id: Optional batch item the entry refers to.
            details: Optional extended details (dicts are JSON-encoded).
            package_name: Optional package name for item-level entries.
            progress_percent: Optional progress value at the time of the event.

        Returns:
            The created ActivityLogEntry.

        Raises:
            IntegrityError: If a sequence number could not be claimed after
                MAX_SEQUENCE_ATTEMPTS concurrent collisions.
        """
        details_text: str | None
        if isinstance(details, dict):
            details_text = json.dumps(details)
        else:
            details_text = details

        attempt = 0
        while True:
            attempt += 1
            entry = ActivityLogEntry(
                batch_id=batch_id,
                item_id=item_id,
                sequence=self._next_sequence(batch_id),
                timestamp=utc_now_iso(),
                activity_type=activity_type.value,
                phase=phase.value,
                message=message,
                details=details_text,
                package_name=package_name,
                progress_percent=progress_percent,
            )
            self.db.add(entry)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                if attempt == MAX_SEQUENCE_ATTEMPTS:
                    raise
                logger.warning(
                    "Activity sequence collision for batch %s (attempt %d)",
                    batch_id,
                    attempt,
                )
                continue
            self.db.refresh(entry)
            return entry

    # Event-specific methods

    def log_item_install_start(
        self,
        batch_id: str,
        item_id: str,
        package_name: str,
        from_version: str,
        to_version: str,
    ) -> ActivityLogEntry:
        """Log that a package's installation has started."""
        return self.log(
            batch_id,
            ActivityType.start,
            ActivityPhase.installation,
            f"Starting installation: {package_name} {from_version} -> {to_version}",
            item_id=item_id,
            package_name=package_name,
            progress_percent=0,
        )

    def log_item_install_complete(
        self,
        batch_id: str,
        item_id: str,
        package_name: str,
        to_version: str,
        duration_seconds: int | None = None,
    ) -> ActivityLogEntry:
        """Log a package's successful installation."""
        message = f"{package_name} updated to {to_version}"
        if duration_seconds is not None:
            message += f" ({format_duration(duration_seconds)})"
        return self.log(
            batch_id,
            ActivityType.success,
            ActivityPhase.installation,
            message,
            item_id=item_id,
            package_name=package_name,
            progress_percent=100,
        )

    def log_item_install_failed(
        self,
        batch_id: str,
        item_id: str,
        package_name: str,
        error_message: str,
    ) -> ActivityLogEntry:
        """Log a package's failed installation."""
        return self.log(
            batch_id,
            ActivityType.error,
            ActivityPhase.installation,
            f"Failed to install {package_name}: {error_message}",
            item_id=item_id,
            details=error_message,
            package_name=package_name,
        )

    def log_milestone(self, batch_id: str, percent: int) -> ActivityLogEntry:
        """Log an overall-progress milestone (each multiple of ten)."""
        return self.log(
            batch_id,
            ActivityType.milestone,
            ActivityPhase.installation,
            f"Installation {percent}% complete",
            progress_percent=percent,
        )

    def log_batch_complete(
        self, batch_id: str, summary: dict[str, Any]
    ) -> ActivityLogEntry:
        """Log the aggregate outcome of a finished batch.

        Args:
            batch_id: UUID of the batch.
            summary: Dict with completed, failed, skipped, total,
                duration_seconds and final_state keys.

        Returns:
            The created entry; type is warning when anything failed,
            complete otherwise.
        """
        message = (
            f"Batch installation complete. {summary['completed']} succeeded, "
            f"{summary['failed']} failed, {summary['skipped']} skipped. "
            f"Total time: {format_duration(summary.get('duration_seconds'))}"
        )
        activity_type = (
            ActivityType.warning if summary["failed"] > 0 else ActivityType.complete
        )
        return self.log(
            batch_id,
            activity_type,
            ActivityPhase.cleanup,
            message,
            details=summary,
            progress_percent=100,
        )

    # Query methods

    def get_activity_feed(
        self,
        batch_id: str,
        since: str | None = None,
        activity_type: ActivityType | None = None,
        limit: int = 100,
    ) -> list[ActivityLogEntry]:
        """Get activity entries for display, newest first.

        Args:
            batch_id: UUID of the batch.
            since: Only entries with a timestamp after this ISO8601 value.
            activity_type: Optional filter by entry type.
            limit: Maximum number of entries to return (default 100).

        Returns:
            Entries ordered by sequence descending.
        """
        query = self.db.query(ActivityLogEntry).filter(
            ActivityLogEntry.batch_id == batch_id
        )
        if since:
            query = query.filter(ActivityLogEntry.timestamp > since)
        if activity_type is not None:
            query = query.filter(ActivityLogEntry.activity_type == activity_type.value)
        return query.order_by(ActivityLogEntry.sequence.desc()).limit(limit).all()

    def get_recent_activity(
        self, batch_id: str, limit: int = 10
    ) -> list[ActivityLogEntry]:
        """Get the most recent entries for a batch status view."""
        return self.get_activity_feed(batch_id, limit=limit)

    def get_entries(self, batch_id: str) -> list[ActivityLogEntry]:
        """Get every entry for a batch in causal (sequence ascending) order."""
        return (
            self.db.query(ActivityLogEntry)
            .filter(ActivityLogEntry.batch_id == batch_id)
            .order_by(ActivityLogEntry.sequence.asc())
            .all()
        )

    def count_entries(
        self, batch_id: str, activity_type: ActivityType | None = None
    ) -> int:
        """Count entries for a batch, optionally of one type."""
        query = self.db.query(func.count(ActivityLogEntry.id)).filter(
            ActivityLogEntry.batch_id == batch_id
        )
        if activity_type is not None:
            query = query.filter(ActivityLogEntry.activity_type == activity_type.value)
        return query.scalar() or 0

    # Export methods

    def export_text(self, batch_id: str) -> str:
        """Export all entries for a batch as plain text.

        Example output:
            #1 [2026-01-23T10:30:45+00:00] [start] [preparation] Batch BATCH0001001 created with 3 package(s)
            #5 [2026-01-23T10:31:02+00:00] [error] [installation] Failed to install Foo: ...
                {"completed": 2, ...}
        """
        lines = []
        for entry in self.get_entries(batch_id):
            package_prefix = f"[{entry.package_name}] " if entry.package_name else ""
            lines.append(
                f"#{entry.sequence} [{entry.timestamp}] [{entry.activity_type}] "
                f"[{entry.phase}] {package_prefix}{entry.message}"
            )
            if entry.details:
                try:
                    details_formatted = json.dumps(json.loads(entry.details), indent=4)
                except json.JSONDecodeError:
                    details_formatted = entry.details
                for detail_line in details_formatted.split("\n"):
                    lines.append(f"    {detail_line}")
        return "\n".join(lines)
