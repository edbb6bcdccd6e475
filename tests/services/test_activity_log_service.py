"""Tests for the append-only activity log."""

import json
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from update_center.db.models import (
    ActivityLogEntry,
    ActivityPhase,
    ActivityType,
    ImmutableActivityError,
)
from update_center.services.activity_log_service import (
    ActivityLogService,
    format_duration,
    relative_time,
)
from update_center.services.batch_store import BatchStore


@pytest.fixture
def batch_id(db_session):
    return BatchStore(db_session).create_batch_request("tester", 2).id


@pytest.fixture
def activity(db_session):
    return ActivityLogService(db_session)


class TestFormatDuration:
    def test_seconds(self):
        assert format_duration(45) == "45s"

    def test_minutes(self):
        assert format_duration(125) == "2m 5s"

    def test_hours(self):
        assert format_duration(7260) == "2h 1m"

    def test_none_and_negative(self):
        assert format_duration(None) == "0s"
        assert format_duration(-5) == "0s"


class TestRelativeTime:
    def test_buckets(self):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        assert relative_time((now - timedelta(seconds=3)).isoformat(), now) == "just now"
        assert relative_time((now - timedelta(seconds=30)).isoformat(), now) == "30s ago"
        assert relative_time((now - timedelta(minutes=5)).isoformat(), now) == "5m ago"
        assert relative_time((now - timedelta(hours=2)).isoformat(), now) == "2h ago"

    def test_empty(self):
        assert relative_time(None) == ""


class TestSequence:
    """Per-batch sequence numbers."""

    def test_sequence_is_gap_free_and_increasing(self, activity, batch_id):
        entries = [
            activity.log(batch_id, ActivityType.info, ActivityPhase.preparation, f"m{i}")
            for i in range(25)
        ]
        assert [e.sequence for e in entries] == list(range(1, 26))

    def test_sequences_are_independent_per_batch(self, db_session, activity, batch_id):
        other = BatchStore(db_session).create_batch_request("tester", 1).id
        activity.log(batch_id, ActivityType.info, ActivityPhase.preparation, "a")
        activity.log(batch_id, ActivityType.info, ActivityPhase.preparation, "b")
        entry = activity.log(other, ActivityType.info, ActivityPhase.preparation, "c")
        assert entry.sequence == 1

    def test_separate_writers_continue_the_sequence(self, session_factory, batch_id):
        """A new service over a new session derives the next value from the store."""
        with session_factory() as first:
            ActivityLogService(first).log(
                batch_id, ActivityType.info, ActivityPhase.preparation, "one"
            )
        with session_factory() as second:
            entry = ActivityLogService(second).log(
                batch_id, ActivityType.info, ActivityPhase.preparation, "two"
            )
            assert entry.sequence == 2

    def test_duplicate_sequence_is_rejected(self, db_session, activity, batch_id):
        activity.log(batch_id, ActivityType.info, ActivityPhase.preparation, "one")
        db_session.add(
            ActivityLogEntry(
                batch_id=batch_id,
                sequence=1,
                activity_type="info",
                phase="preparation",
                message="dup",
            )
        )
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_collision_is_retried(self, db_session, activity, batch_id, monkeypatch):
        """A stale sequence read is retried with a fresh value."""
        activity.log(batch_id, ActivityType.info, ActivityPhase.preparation, "one")
        real_next = ActivityLogService._next_sequence
        calls = []

        def stale_then_real(self, bid):
            calls.append(bid)
            if len(calls) == 1:
                return 1
            return real_next(self, bid)

        monkeypatch.setattr(ActivityLogService, "_next_sequence", stale_then_real)
        entry = activity.log(batch_id, ActivityType.info, ActivityPhase.preparation, "two")
        assert entry.sequence == 2
        assert len(calls) == 2


class TestImmutability:
    def test_update_is_rejected(self, db_session, activity, batch_id):
        entry = activity.log(batch_id, ActivityType.info, ActivityPhase.preparation, "x")
        entry.message = "rewritten"
        with pytest.raises(ImmutableActivityError):
            db_session.commit()
        db_session.rollback()

    def test_delete_is_rejected(self, db_session, activity, batch_id):
        entry = activity.log(batch_id, ActivityType.info, ActivityPhase.preparation, "x")
        db_session.delete(entry)
        with pytest.raises(ImmutableActivityError):
            db_session.commit()
        db_session.rollback()


class TestEventHelpers:
    def test_item_start(self, activity, batch_id):
        entry = activity.log_item_install_start(batch_id, None, "Reports", "3.1.0", "3.2.0")
        assert entry.message == "Starting installation: Reports 3.1.0 -> 3.2.0"
        assert entry.activity_type == "start"
        assert entry.package_name == "Reports"

    def test_item_complete_includes_duration(self, activity, batch_id):
        entry = activity.log_item_install_complete(batch_id, None, "Reports", "3.2.0", 65)
        assert entry.message == "Reports updated to 3.2.0 (1m 5s)"
        assert entry.activity_type == "success"
        assert entry.progress_percent == 100

    def test_item_failed(self, activity, batch_id):
        entry = activity.log_item_install_failed(batch_id, None, "Reports", "boom")
        assert entry.message == "Failed to install Reports: boom"
        assert entry.activity_type == "error"
        assert entry.details == "boom"

    def test_milestone(self, activity, batch_id):
        entry = activity.log_milestone(batch_id, 40)
        assert entry.message == "Installation 40% complete"
        assert entry.activity_type == "milestone"

    def test_batch_complete_with_failures_is_warning(self, activity, batch_id):
        summary = {
            "final_state": "partial",
            "completed": 2,
            "failed": 1,
            "skipped": 0,
            "total": 3,
            "duration_seconds": 125,
        }
        entry = activity.log_batch_complete(batch_id, summary)
        assert entry.activity_type == "warning"
        assert entry.phase == "cleanup"
        assert entry.message == (
            "Batch installation complete. 2 succeeded, 1 failed, 0 skipped. "
            "Total time: 2m 5s"
        )
        assert json.loads(entry.details)["final_state"] == "partial"

    def test_batch_complete_without_failures_is_complete(self, activity, batch_id):
        entry = activity.log_batch_complete(
            batch_id, {"completed": 3, "failed": 0, "skipped": 0, "total": 3}
        )
        assert entry.activity_type == "complete"


class TestQueries:
    @pytest.fixture
    def populated(self, activity, batch_id):
        activity.log(batch_id, ActivityType.start, ActivityPhase.preparation, "created")
        activity.log(batch_id, ActivityType.info, ActivityPhase.installation, "submitted")
        activity.log(batch_id, ActivityType.error, ActivityPhase.installation, "boom")
        activity.log(batch_id, ActivityType.milestone, ActivityPhase.installation, "10%")
        return batch_id

    def test_feed_is_newest_first(self, activity, populated):
        feed = activity.get_activity_feed(populated)
        assert [e.sequence for e in feed] == [4, 3, 2, 1]

    def test_feed_limit(self, activity, populated):
        feed = activity.get_activity_feed(populated, limit=2)
        assert [e.sequence for e in feed] == [4, 3]

    def test_feed_type_filter(self, activity, populated):
        feed = activity.get_activity_feed(populated, activity_type=ActivityType.error)
        assert [e.message for e in feed] == ["boom"]

    def test_feed_since_filter(self, activity, populated):
        assert activity.get_activity_feed(populated, since="2999-01-01T00:00:00+00:00") == []
        assert len(activity.get_activity_feed(populated, since="2000-01-01T00:00:00+00:00")) == 4

    def test_entries_are_causal_order(self, activity, populated):
        assert [e.sequence for e in activity.get_entries(populated)] == [1, 2, 3, 4]

    def test_count(self, activity, populated):
        assert activity.count_entries(populated) == 4
        assert activity.count_entries(populated, ActivityType.error) == 1

    def test_export_text(self, activity, populated):
        activity.log(
            populated,
            ActivityType.info,
            ActivityPhase.cleanup,
            "done",
            details={"completed": 2},
            package_name="Reports",
        )
        text = activity.export_text(populated)
        lines = text.split("\n")
        assert lines[0].startswith("#1 [")
        assert "[start] [preparation] created" in lines[0]
        assert "[Reports] done" in text
        assert '"completed": 2' in text
