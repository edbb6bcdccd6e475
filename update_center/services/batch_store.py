"""Batch store implementing batch and item persistence with state machine validation.

This module owns the BatchRequest and BatchItem records. It enforces the
batch lifecycle transition table, keeps per-state item counts derived from
the items themselves (so completed + failed + skipped never exceeds total),
and keeps overall progress non-decreasing while a batch is active.

Every mutating method re-reads the record it changes and commits before
returning, giving the read-modify-write pattern background pollers rely on.
"""

import json
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from update_center.db.models import (
    TERMINAL_BATCH_STATES,
    BatchItem,
    BatchRequest,
    BatchState,
    ItemState,
    utc_now_iso,
)
from update_center.errors import InvalidStateTransition, NotFoundError

# Valid state transitions for the batch lifecycle
VALID_TRANSITIONS: dict[BatchState, list[BatchState]] = {
    BatchState.draft: [BatchState.scheduled, BatchState.in_progress],
    BatchState.scheduled: [BatchState.in_progress],
    BatchState.in_progress: [
        BatchState.completed,
        BatchState.failed,
        BatchState.partial,
        BatchState.cancelled,
    ],
    BatchState.completed: [],  # terminal
    BatchState.failed: [],  # terminal
    BatchState.partial: [],  # terminal
    BatchState.cancelled: [],  # terminal
}

# Forward-only item transitions. The ground-truth sync may override these.
VALID_ITEM_TRANSITIONS: dict[ItemState, list[ItemState]] = {
    ItemState.queued: [ItemState.installing, ItemState.skipped],
    ItemState.installing: [ItemState.completed, ItemState.failed, ItemState.skipped],
    ItemState.completed: [],
    ItemState.failed: [],
    ItemState.skipped: [],
}

BATCH_NUMBER_PREFIX = "BATCH"
FIRST_BATCH_NUMBER = 1001


def seconds_between(start_iso: str | None, end_iso: str | None) -> int | None:
    """Whole seconds between two ISO8601 timestamps, or None if either is missing."""
    if not start_iso or not end_iso:
        return None
    delta = datetime.fromisoformat(end_iso) - datetime.fromisoformat(start_iso)
    return max(0, int(delta.total_seconds()))


class BatchStore:
    """Repository for batch requests and their items.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        """Initialize the batch store with a database session.

        Args:
            db: SQLAlchemy session for database operations.
        """
        self.db = db

    # =========================================================================
    # Batch CRUD Operations
    # =========================================================================

    def _next_number(self) -> str:
        latest = self.db.query(func.max(BatchRequest.number)).scalar()
        if latest and latest.startswith(BATCH_NUMBER_PREFIX):
            value = int(latest[len(BATCH_NUMBER_PREFIX):]) + 1
        else:
            value = FIRST_BATCH_NUMBER
        return f"{BATCH_NUMBER_PREFIX}{value:07d}"

    def create_batch_request(
        self,
        requested_by: str,
        total_items: int,
        scheduled_start: str | None = None,
        install_notes: str | None = None,
    ) -> BatchRequest:
        """Create a batch request in draft, or scheduled when a start time is given.

        Args:
            requested_by: User or system creating the batch.
            total_items: Number of items the batch will hold.
            scheduled_start: Optional ISO8601 start time.
            install_notes: Optional free-text notes.

        Returns:
            The created BatchRequest.
        """
        now = utc_now_iso()
        batch = BatchRequest(
            number=self._next_number(),
            requested_by=requested_by,
            state=(
                BatchState.scheduled.value if scheduled_start else BatchState.draft.value
            ),
            total_items=total_items,
            scheduled_start=scheduled_start,
            install_notes=install_notes,
            created_at=now,
            updated_at=now,
        )
        self.db.add(batch)
        self.db.commit()
        self.db.refresh(batch)
        return batch

    def get_batch(self, batch_id: str) -> BatchRequest | None:
        """Get a batch request by its ID."""
        return self.db.query(BatchRequest).filter(BatchRequest.id == batch_id).first()

    def require_batch(self, batch_id: str) -> BatchRequest:
        """Get a batch request by its ID.

        Raises:
            NotFoundError: If no batch has this ID.
        """
        batch = self.get_batch(batch_id)
        if batch is None:
            raise NotFoundError("Batch request", batch_id)
        return batch

    def list_batches(
        self,
        state: BatchState | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[BatchRequest]:
        """List batches, newest first, with optional state filter and pagination."""
        query = self.db.query(BatchRequest)
        if state is not None:
            query = query.filter(BatchRequest.state == state.value)
        query = query.order_by(BatchRequest.created_at.desc(), BatchRequest.number.desc())
        return query.limit(limit).offset(offset).all()

    def query_history(
        self,
        state: BatchState | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[BatchRequest], int]:
        """Query installation history (every batch past draft).

        Args:
            state: Optional state filter.
            limit: Page size (default 20).
            offset: Rows to skip (default 0).

        Returns:
            Tuple of (page of batches newest first, total matching count).
        """
        query = self.db.query(BatchRequest).filter(
            BatchRequest.state != BatchState.draft.value
        )
        if state is not None:
            query = query.filter(BatchRequest.state == state.value)
        total = query.count()
        page = (
            query.order_by(BatchRequest.created_at.desc(), BatchRequest.number.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )
        return page, total

    def list_due_scheduled(self, now_iso: str) -> list[BatchRequest]:
        """List scheduled batches whose start time is at or before now_iso."""
        return (
            self.db.query(BatchRequest)
            .filter(
                BatchRequest.state == BatchState.scheduled.value,
                BatchRequest.scheduled_start.is_not(None),
                BatchRequest.scheduled_start <= now_iso,
            )
            .order_by(BatchRequest.scheduled_start.asc())
            .all()
        )

    # =========================================================================
    # State Machine Operations
    # =========================================================================

    def can_transition(self, current: BatchState, target: BatchState) -> bool:
        """Check if a batch state transition is valid."""
        return target in VALID_TRANSITIONS.get(current, [])

    def update_state(self, batch_id: str, new_state: BatchState) -> BatchRequest:
        """Move a batch to a new state with state machine validation.

        Stamps actual_start on entering in_progress, and actual_end plus
        duration on entering a terminal state.

        Raises:
            NotFoundError: If batch not found.
            InvalidStateTransition: If the transition is not allowed.
        """
        batch = self.require_batch(batch_id)
        current = BatchState(batch.state)
        if not self.can_transition(current, new_state):
            raise InvalidStateTransition(
                current_state=current.value,
                attempted_state=new_state.value,
                allowed_transitions=[s.value for s in VALID_TRANSITIONS.get(current, [])],
            )

        now = utc_now_iso()
        batch.state = new_state.value
        batch.updated_at = now

        if new_state == BatchState.in_progress and batch.actual_start is None:
            batch.actual_start = now

        if new_state in TERMINAL_BATCH_STATES:
            batch.actual_end = now
            batch.duration_seconds = seconds_between(batch.actual_start, now)

        self.db.commit()
        self.db.refresh(batch)
        return batch

    # =========================================================================
    # Batch Field Operations
    # =========================================================================

    def set_manifest(self, batch_id: str, manifest: dict[str, Any]) -> BatchRequest:
        """Persist the serialized install manifest."""
        batch = self.require_batch(batch_id)
        batch.batch_manifest = json.dumps(manifest)
        batch.updated_at = utc_now_iso()
        self.db.commit()
        self.db.refresh(batch)
        return batch

    def get_manifest(self, batch_id: str) -> dict[str, Any]:
        """Load the persisted install manifest (empty dict if none)."""
        batch = self.require_batch(batch_id)
        if not batch.batch_manifest:
            return {}
        return json.loads(batch.batch_manifest)

    def set_progress_handle(self, batch_id: str, handle: str) -> BatchRequest:
        """Persist the installer's progress handle reference."""
        batch = self.require_batch(batch_id)
        batch.progress_handle = handle
        batch.updated_at = utc_now_iso()
        self.db.commit()
        self.db.refresh(batch)
        return batch

    def set_error(self, batch_id: str, error_code: str, error_summary: str) -> BatchRequest:
        """Set error information on a batch.

        Args:
            batch_id: The UUID of the batch to update.
            error_code: The error code (E-XXXX format).
            error_summary: Human-readable error description.
        """
        batch = self.require_batch(batch_id)
        batch.error_code = error_code
        batch.error_summary = error_summary
        batch.updated_at = utc_now_iso()
        self.db.commit()
        self.db.refresh(batch)
        return batch

    def set_overall_progress(self, batch_id: str, percent: int) -> BatchRequest:
        """Raise overall progress to percent. Lower values are ignored."""
        batch = self.require_batch(batch_id)
        percent = max(0, min(100, int(percent)))
        if percent > batch.overall_progress:
            batch.overall_progress = percent
            batch.updated_at = utc_now_iso()
            self.db.commit()
            self.db.refresh(batch)
        return batch

    def recount_items(self, batch_id: str) -> BatchRequest:
        """Recompute the batch's per-state item counts from its items."""
        batch = self.require_batch(batch_id)
        rows = (
            self.db.query(BatchItem.state, func.count(BatchItem.id))
            .filter(BatchItem.batch_id == batch_id)
            .group_by(BatchItem.state)
            .all()
        )
        counts = {state: count for state, count in rows}
        batch.total_items = sum(counts.values())
        batch.completed_items = counts.get(ItemState.completed.value, 0)
        batch.failed_items = counts.get(ItemState.failed.value, 0)
        batch.skipped_items = counts.get(ItemState.skipped.value, 0)
        batch.updated_at = utc_now_iso()
        self.db.commit()
        self.db.refresh(batch)
        return batch

    # =========================================================================
    # Item Operations
    # =========================================================================

    def create_items(
        self, batch_id: str, item_data: list[dict[str, Any]]
    ) -> list[BatchItem]:
        """Create the items of a batch in bulk.

        Args:
            batch_id: The UUID of the parent batch.
            item_data: Dicts with package_id, package_name, version_ref,
                from_version, to_version, update_level, install_order and
                optional risk_level. List position becomes created_seq.

        Returns:
            The created BatchItem objects.
        """
        batch = self.require_batch(batch_id)
        items = []
        for position, data in enumerate(item_data):
            item = BatchItem(
                batch_id=batch_id,
                package_id=data["package_id"],
                package_name=data["package_name"],
                version_ref=data["version_ref"],
                from_version=data["from_version"],
                to_version=data["to_version"],
                update_level=data["update_level"],
                risk_level=data.get("risk_level"),
                install_order=data["install_order"],
                created_seq=position,
                state=ItemState.queued.value,
            )
            items.append(item)
            self.db.add(item)

        batch.total_items = len(item_data)
        batch.updated_at = utc_now_iso()
        self.db.commit()
        for item in items:
            self.db.refresh(item)
        return items

    def get_item(self, item_id: str) -> BatchItem | None:
        """Get a batch item by its ID."""
        return self.db.query(BatchItem).filter(BatchItem.id == item_id).first()

    def get_items(
        self, batch_id: str, states: list[ItemState] | None = None
    ) -> list[BatchItem]:
        """Get a batch's items in install order (ties by creation order)."""
        query = self.db.query(BatchItem).filter(BatchItem.batch_id == batch_id)
        if states:
            query = query.filter(BatchItem.state.in_([s.value for s in states]))
        return query.order_by(
            BatchItem.install_order.asc(), BatchItem.created_seq.asc()
        ).all()

    def _transition_item(
        self, item: BatchItem, new_state: ItemState, force: bool = False
    ) -> None:
        current = ItemState(item.state)
        if not force and new_state not in VALID_ITEM_TRANSITIONS[current]:
            raise InvalidStateTransition(
                current_state=current.value,
                attempted_state=new_state.value,
                allowed_transitions=[
                    s.value for s in VALID_ITEM_TRANSITIONS[current]
                ],
            )
        item.state = new_state.value

    def _finish_item(self, item: BatchItem) -> None:
        now = utc_now_iso()
        item.end_time = now
        item.duration_seconds = seconds_between(item.start_time, now)

    def start_items(self, batch_id: str) -> list[BatchItem]:
        """Move every queued item to installing and stamp its start time."""
        now = utc_now_iso()
        items = self.get_items(batch_id, states=[ItemState.queued])
        for item in items:
            self._transition_item(item, ItemState.installing)
            item.start_time = now
            item.progress_percent = 0
        self.db.commit()
        self.recount_items(batch_id)
        return items

    def complete_item(
        self,
        item_id: str,
        status_message: str | None = None,
        force: bool = False,
    ) -> BatchItem:
        """Mark an item completed (progress 100, end time, duration).

        Args:
            item_id: The UUID of the item.
            status_message: Optional status text.
            force: Allow overriding a final state (ground-truth sync only).
        """
        item = self._require_item(item_id)
        self._transition_item(item, ItemState.completed, force=force)
        item.progress_percent = 100
        item.error_message = None
        if status_message is not None:
            item.status_message = status_message
        self._finish_item(item)
        self.db.commit()
        self.recount_items(item.batch_id)
        self.db.refresh(item)
        return item

    def fail_item(
        self, item_id: str, error_message: str, force: bool = False
    ) -> BatchItem:
        """Mark an item failed with an error message."""
        item = self._require_item(item_id)
        self._transition_item(item, ItemState.failed, force=force)
        item.error_message = error_message
        self._finish_item(item)
        self.db.commit()
        self.recount_items(item.batch_id)
        self.db.refresh(item)
        return item

    def skip_open_items(self, batch_id: str) -> list[BatchItem]:
        """Move every queued or installing item to skipped."""
        items = self.get_items(
            batch_id, states=[ItemState.queued, ItemState.installing]
        )
        for item in items:
            self._transition_item(item, ItemState.skipped)
            if item.start_time:
                self._finish_item(item)
        self.db.commit()
        self.recount_items(batch_id)
        return items

    def update_item_progress(
        self, item_id: str, percent: int, status_message: str | None = None
    ) -> BatchItem:
        """Set an installing item's estimated progress and status text."""
        item = self._require_item(item_id)
        item.progress_percent = max(0, min(100, int(percent)))
        if status_message is not None:
            item.status_message = status_message
        self.db.commit()
        self.db.refresh(item)
        return item

    def _require_item(self, item_id: str) -> BatchItem:
        item = self.get_item(item_id)
        if item is None:
            raise NotFoundError("Batch item", item_id)
        return item
