"""SQLAlchemy ORM models for the Update Center state database.

This module defines the core data models for batch install requests,
per-package item status, and the append-only activity log. Uses
SQLAlchemy 2.0 style with Mapped and mapped_column.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    relationship,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


# Enums matching the database schema constraints


class BatchState(str, Enum):
    """Lifecycle states for a batch install request.

    Lifecycle: draft -> scheduled -> in_progress
               draft -> in_progress
               in_progress -> completed/failed/partial/cancelled
    """

    draft = "draft"
    scheduled = "scheduled"
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"
    partial = "partial"
    cancelled = "cancelled"


TERMINAL_BATCH_STATES = frozenset(
    {
        BatchState.completed,
        BatchState.failed,
        BatchState.partial,
        BatchState.cancelled,
    }
)


class ItemState(str, Enum):
    """Status values for individual packages within a batch.

    Lifecycle: queued -> installing -> completed/failed
               queued/installing -> skipped (batch cancelled)
    """

    queued = "queued"
    installing = "installing"
    completed = "completed"
    failed = "failed"
    skipped = "skipped"


class UpdateLevel(str, Enum):
    """Semantic size of a version change."""

    major = "major"
    minor = "minor"
    patch = "patch"


class RiskLevel(str, Enum):
    """Advisory risk bands produced by the dependency analyzer."""

    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class ActivityType(str, Enum):
    """Categories of entries in the activity feed."""

    info = "info"
    success = "success"
    warning = "warning"
    error = "error"
    progress = "progress"
    start = "start"
    complete = "complete"
    milestone = "milestone"


class ActivityPhase(str, Enum):
    """Installation phase an activity entry belongs to."""

    preparation = "preparation"
    validation = "validation"
    download = "download"
    installation = "installation"
    post_install = "post_install"
    cleanup = "cleanup"


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Models


class BatchRequest(Base):
    """One user-initiated request to install a set of packages together.

    Tracks the lifecycle state of the batch, aggregate item counts,
    overall progress and the handle of the external installer job.

    Attributes:
        id: UUID primary key
        number: Human-readable batch number (BATCH0001001)
        requested_by: User or system that created the batch
        state: Current lifecycle state
        total_items: Number of packages in the batch
        completed_items: Packages installed successfully
        failed_items: Packages that failed to install
        skipped_items: Packages skipped (batch cancelled or never submitted)
        overall_progress: 0-100, non-decreasing while in progress
        scheduled_start: ISO8601 time the batch should start, if scheduled
        actual_start: ISO8601 time the installer was invoked
        actual_end: ISO8601 time the batch reached a terminal state
        duration_seconds: Wall time between actual_start and actual_end
        install_notes: Free-text notes supplied at creation
        batch_manifest: JSON install manifest submitted to the installer
        progress_handle: Opaque reference to the installer's progress handle
        error_code: Error code if the batch failed (E-XXXX format)
        error_summary: Human-readable error summary
    """

    __tablename__ = "batch_requests"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    number: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    requested_by: Mapped[str] = mapped_column(String(100), nullable=False)
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BatchState.draft.value
    )

    # Item counts
    total_items: Mapped[int] = mapped_column(default=0, nullable=False)
    completed_items: Mapped[int] = mapped_column(default=0, nullable=False)
    failed_items: Mapped[int] = mapped_column(default=0, nullable=False)
    skipped_items: Mapped[int] = mapped_column(default=0, nullable=False)
    overall_progress: Mapped[int] = mapped_column(default=0, nullable=False)

    # Timing (ISO8601 strings for SQLite compatibility)
    scheduled_start: Mapped[str | None] = mapped_column(String(50), nullable=True)
    actual_start: Mapped[str | None] = mapped_column(String(50), nullable=True)
    actual_end: Mapped[str | None] = mapped_column(String(50), nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(nullable=True)

    install_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    batch_manifest: Mapped[str | None] = mapped_column(Text, nullable=True)
    progress_handle: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Error info (if failed)
    error_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    # Relationships (no delete cascade: batches are never deleted)
    items: Mapped[list["BatchItem"]] = relationship(
        "BatchItem", back_populates="batch", order_by="BatchItem.install_order"
    )
    activities: Mapped[list["ActivityLogEntry"]] = relationship(
        "ActivityLogEntry", back_populates="batch"
    )

    __table_args__ = (
        Index("idx_batch_requests_state", "state"),
        Index("idx_batch_requests_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<BatchRequest(id={self.id!r}, number={self.number!r}, "
            f"state={self.state!r})>"
        )


class BatchItem(Base):
    """One package's install unit within a batch request.

    Attributes:
        id: UUID primary key
        batch_id: Foreign key to parent batch request
        package_id: Identifier of the package being updated
        package_name: Display name of the package
        version_ref: Identifier of the target version the item was created from
        from_version: Version installed when the batch was created
        to_version: Version the batch installs
        update_level: major, minor or patch
        risk_level: Advisory risk band
        state: Current item state
        install_order: Sequence the installer is expected to follow
        created_seq: Creation position, breaks install_order ties
        progress_percent: Estimated per-item progress (0-100)
        status_message: Latest installer message attributed to the item
        error_message: Error description if the item failed
        start_time: ISO8601 time the item moved to installing
        end_time: ISO8601 time the item reached a final state
        duration_seconds: Wall time between start_time and end_time
    """

    __tablename__ = "batch_items"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batch_requests.id"), nullable=False
    )
    package_id: Mapped[str] = mapped_column(String(100), nullable=False)
    package_name: Mapped[str] = mapped_column(String(255), nullable=False)
    version_ref: Mapped[str] = mapped_column(String(100), nullable=False)
    from_version: Mapped[str] = mapped_column(String(50), nullable=False)
    to_version: Mapped[str] = mapped_column(String(50), nullable=False)
    update_level: Mapped[str] = mapped_column(String(10), nullable=False)
    risk_level: Mapped[str | None] = mapped_column(String(10), nullable=True)
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ItemState.queued.value
    )
    install_order: Mapped[int] = mapped_column(nullable=False)
    created_seq: Mapped[int] = mapped_column(nullable=False, default=0)

    progress_percent: Mapped[int] = mapped_column(default=0, nullable=False)
    status_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    start_time: Mapped[str | None] = mapped_column(String(50), nullable=True)
    end_time: Mapped[str | None] = mapped_column(String(50), nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(nullable=True)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    batch: Mapped["BatchRequest"] = relationship(
        "BatchRequest", back_populates="items"
    )

    __table_args__ = (
        Index("idx_batch_items_batch_id", "batch_id"),
        Index("idx_batch_items_state", "state"),
    )

    def __repr__(self) -> str:
        return (
            f"<BatchItem(id={self.id!r}, batch_id={self.batch_id!r}, "
            f"package={self.package_id!r}, state={self.state!r})>"
        )


class ActivityLogEntry(Base):
    """Append-only activity feed entry for a batch.

    Entries are never updated or deleted once flushed. The per-batch
    sequence is strictly increasing and gap-free.

    Attributes:
        id: UUID primary key
        batch_id: Foreign key to parent batch request
        item_id: Optional foreign key to a batch item
        sequence: Per-batch sequence number (1-based)
        timestamp: ISO8601 timestamp of the event
        activity_type: info, success, warning, error, progress, start,
            complete or milestone
        phase: preparation, validation, download, installation,
            post_install or cleanup
        message: Human-readable event description
        details: Optional extended details (free text or JSON)
        package_name: Package the entry refers to, for item-level entries
        progress_percent: Progress value at the time of the event
    """

    __tablename__ = "activity_log"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batch_requests.id"), nullable=False
    )
    item_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("batch_items.id"), nullable=True
    )
    sequence: Mapped[int] = mapped_column(nullable=False)
    timestamp: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    activity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    phase: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    package_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    progress_percent: Mapped[int | None] = mapped_column(nullable=True)

    batch: Mapped["BatchRequest"] = relationship(
        "BatchRequest", back_populates="activities"
    )

    __table_args__ = (
        UniqueConstraint("batch_id", "sequence", name="uq_activity_batch_sequence"),
        Index("idx_activity_log_batch_id", "batch_id"),
        Index("idx_activity_log_timestamp", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<ActivityLogEntry(batch_id={self.batch_id!r}, seq={self.sequence}, "
            f"type={self.activity_type!r})>"
        )


class ImmutableActivityError(RuntimeError):
    """Raised when a flush would modify or delete an activity log entry."""


@event.listens_for(Session, "before_flush")
def _guard_activity_log(session: Session, flush_context, instances) -> None:
    """Reject updates and deletes of activity log entries."""
    for obj in session.deleted:
        if isinstance(obj, ActivityLogEntry):
            raise ImmutableActivityError(
                f"Activity log entry {obj.id} cannot be deleted"
            )
    for obj in session.dirty:
        if isinstance(obj, ActivityLogEntry) and session.is_modified(obj):
            raise ImmutableActivityError(
                f"Activity log entry {obj.id} cannot be modified"
            )
