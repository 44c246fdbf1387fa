"""
Tests for the job status state machine and the atomic job-store updates.
"""

from datetime import timedelta

import pytest

from document_ai_backend.database import JobDatabase, utcnow
from document_ai_backend.errors import InvalidTransitionError
from document_ai_backend.lifecycle import (
    CompletedUpdate,
    FailedUpdate,
    ProcessingUpdate,
    allowed_sources,
    can_transition,
)
from document_ai_backend.models import JobStatus


def _insert(db: JobDatabase, job_id: str = "job-1", updated_at=None) -> None:
    now = utcnow()
    db.insert_job(
        {
            "id": job_id,
            "owner_id": "guest",
            "input_ref": "uploads/abc-invoice.pdf",
            "input_kind": "pdf",
            "document_category": "EXPENSE",
            "status": "PENDING",
            "created_at": now,
            "updated_at": updated_at or now,
        }
    )


def _backdate(db: JobDatabase, job_id: str = "job-1") -> None:
    with db._get_connection() as conn:
        conn.execute(
            "UPDATE jobs SET updated_at = ? WHERE id = ?",
            ((utcnow() - timedelta(hours=1)).isoformat(timespec="microseconds"), job_id),
        )


@pytest.fixture
def db(tmp_path):
    return JobDatabase(tmp_path / "jobs.db")


class TestTransitionTable:
    """Tests for the allowed transitions."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (JobStatus.PENDING, JobStatus.PROCESSING),
            (JobStatus.PENDING, JobStatus.FAILED),
            (JobStatus.PROCESSING, JobStatus.COMPLETED),
            (JobStatus.PROCESSING, JobStatus.FAILED),
        ],
    )
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("terminal", [JobStatus.COMPLETED, JobStatus.FAILED])
    def test_terminal_states_have_no_exits(self, terminal):
        assert not any(can_transition(terminal, target) for target in JobStatus)

    def test_pending_cannot_complete_directly(self):
        assert not can_transition(JobStatus.PENDING, JobStatus.COMPLETED)

    def test_allowed_sources(self):
        assert allowed_sources(JobStatus.FAILED) == {JobStatus.PENDING, JobStatus.PROCESSING}
        assert allowed_sources(JobStatus.COMPLETED) == {JobStatus.PROCESSING}

    def test_in_flight_and_terminal_flags(self):
        assert JobStatus.PENDING.is_in_flight and JobStatus.PROCESSING.is_in_flight
        assert JobStatus.COMPLETED.is_terminal and JobStatus.FAILED.is_terminal


class TestUpdateVariants:
    """Each update variant owns exactly one field set."""

    def test_fields(self):
        assert ProcessingUpdate().fields() == {}
        assert CompletedUpdate("outputs/x-result.csv").fields() == {"output_ref": "outputs/x-result.csv"}
        assert FailedUpdate("boom").fields() == {"failure_detail": "boom"}

    @pytest.mark.parametrize("value", ["", "   "])
    def test_empty_values_rejected(self, value):
        with pytest.raises(InvalidTransitionError):
            CompletedUpdate(value)
        with pytest.raises(InvalidTransitionError):
            FailedUpdate(value)


class TestApplyUpdate:
    """Tests for the conditional UPDATE in the job database."""

    def test_full_success_path(self, db):
        _insert(db)
        assert db.apply_update("job-1", ProcessingUpdate())
        assert db.apply_update("job-1", CompletedUpdate("outputs/job-1-result.csv"))

        row = db.get_job("job-1")
        assert row["status"] == "COMPLETED"
        assert row["output_ref"] == "outputs/job-1-result.csv"
        assert row["failure_detail"] is None

    @pytest.mark.parametrize("terminal", [CompletedUpdate("outputs/job-1-result.csv"), FailedUpdate("boom")])
    def test_updated_at_changes_on_transition(self, db, terminal):
        _insert(db, updated_at=utcnow() - timedelta(hours=1))
        created = db.get_job("job-1")["updated_at"]

        db.apply_update("job-1", ProcessingUpdate())
        assert db.get_job("job-1")["updated_at"] > created

        _backdate(db)
        claimed = db.get_job("job-1")["updated_at"]
        db.apply_update("job-1", terminal)
        assert db.get_job("job-1")["updated_at"] > claimed

    def test_pending_can_fail(self, db):
        _insert(db)
        assert db.apply_update("job-1", FailedUpdate("could not enqueue"))
        row = db.get_job("job-1")
        assert row["status"] == "FAILED"
        assert row["failure_detail"] == "could not enqueue"
        assert row["output_ref"] is None

    def test_completion_requires_processing(self, db):
        _insert(db)
        assert not db.apply_update("job-1", CompletedUpdate("outputs/job-1-result.csv"))
        assert db.get_job("job-1")["status"] == "PENDING"

    def test_terminal_job_never_moves(self, db):
        _insert(db)
        db.apply_update("job-1", ProcessingUpdate())
        db.apply_update("job-1", FailedUpdate("extraction failed"))

        assert not db.apply_update("job-1", CompletedUpdate("outputs/job-1-result.csv"))
        assert not db.apply_update("job-1", FailedUpdate("second failure"))
        row = db.get_job("job-1")
        assert row["status"] == "FAILED"
        assert row["failure_detail"] == "extraction failed"
        assert row["output_ref"] is None

    def test_second_claim_loses(self, db):
        _insert(db)
        assert db.apply_update("job-1", ProcessingUpdate())
        assert not db.apply_update("job-1", ProcessingUpdate())

    def test_missing_job(self, db):
        assert not db.apply_update("missing", ProcessingUpdate())
        assert db.get_job("missing") is None
