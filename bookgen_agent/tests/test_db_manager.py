"""
Tests for database manager module.
"""

import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from bookgen_agent.db_manager import (
    claim_next_audiobook_job,
    claim_next_job,
    create_audiobook_job,
    create_book,
    create_job,
    delete_chapter,
    get_audiobook_job,
    get_book,
    get_chapter,
    get_job,
    get_outline,
    get_user,
    init_db,
    list_chapters,
    list_jobs,
    record_audiobook_progress,
    record_token_usage,
    release_expired_leases,
    renew_lease,
    save_outline,
    set_job_progress,
    summarize_token_usage,
    update_audiobook_status,
    update_book,
    update_job_status,
    upsert_chapter,
    upsert_user,
)
from bookgen_agent.errors import ConflictError, InvalidTransitionError, NotFoundError
from bookgen_agent.models import (
    ActiveJob,
    CompleteChapter,
    FailedChapter,
    FailedJob,
    Outline,
    OutlineChapter,
    PendingJob,
    TextChapter,
)


def make_outline(book_id: str, chapters: int = 3) -> Outline:
    return Outline(
        book_id=book_id,
        chapters=[OutlineChapter(chapter_number=n, title=f"Part {n}") for n in range(1, chapters + 1)],
        style_guide={"voice": "second person"},
    )


class TestInitDb:
    """Tests for init_db function."""

    def test_creates_tables(self, tmp_path: Path) -> None:
        # Arrange
        db_path = str(tmp_path / "nested" / "test.db")

        # Act
        init_db(db_path)

        # Assert
        conn = sqlite3.connect(db_path)
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        indices = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")}
        conn.close()
        assert {"users", "books", "outlines", "generation_jobs", "chapters",
                "token_usage", "audiobook_jobs"}.issubset(tables)
        assert "idx_generation_jobs_one_active" in indices
        assert "idx_audiobook_jobs_one_active" in indices

    def test_idempotent_multiple_calls(self, tmp_path: Path) -> None:
        # Arrange
        db_path = str(tmp_path / "test.db")

        # Act
        init_db(db_path)
        init_db(db_path)

        # Assert
        assert list_jobs(db_path) == []

    def test_wal_mode_enabled(self, db_path: str) -> None:
        conn = sqlite3.connect(db_path)
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        conn.close()
        assert mode == "wal"


class TestUsersAndBooks:
    """Tests for user and book persistence."""

    def test_upsert_user_replaces_role_and_credits(self, db_path: str) -> None:
        # Arrange
        upsert_user(db_path, "u1", "writer", 1)

        # Act
        upsert_user(db_path, "u1", "publisher", 5)

        # Assert
        user = get_user(db_path, "u1")
        assert user.role == "publisher"
        assert user.book_credits == 5

    def test_get_unknown_user_returns_none(self, db_path: str) -> None:
        assert get_user(db_path, "nobody") is None

    def test_create_book_starts_in_draft(self, db_path: str, writer) -> None:
        # Act
        book = create_book(db_path, writer.user_id, "Tiny Steps", "prompt_book",
                           "productivity_focus", context={"chapter_size": "small"})

        # Assert
        stored = get_book(db_path, book.id)
        assert stored.status == "draft"
        assert stored.context.chapter_size == "small"
        assert stored.planned_chapter_count() == 25

    def test_update_book_fields(self, db_path: str, book) -> None:
        # Act
        updated = update_book(db_path, book.id, prologue="Welcome.",
                              publish_without_chapter_images=True)

        # Assert
        assert updated.prologue == "Welcome."
        assert updated.publish_without_chapter_images is True

    def test_update_book_rejects_unknown_field(self, db_path: str, book) -> None:
        with pytest.raises(ValueError, match="Unknown book fields"):
            update_book(db_path, book.id, user_id="someone-else")

    def test_update_missing_book(self, db_path: str) -> None:
        with pytest.raises(NotFoundError):
            update_book(db_path, "missing", title="x")

    def test_outline_round_trip(self, db_path: str, book) -> None:
        # Act
        save_outline(db_path, make_outline(book.id))

        # Assert
        outline = get_outline(db_path, book.id)
        assert outline.total_chapters == 3
        assert outline.style_guide == {"voice": "second person"}


class TestCreateJob:
    """Tests for create_job function."""

    def test_creates_pending_job_without_current_chapter(self, db_path: str, book) -> None:
        # Act
        job_id = create_job(db_path, book.id, 3)

        # Assert
        job = get_job(db_path, job_id)
        assert isinstance(job, PendingJob)
        assert job.total_chapters == 3
        assert not hasattr(job, "current_chapter")

    def test_second_active_job_conflicts(self, db_path: str, book) -> None:
        """Test that at most one non-terminal job exists per book."""
        # Arrange
        create_job(db_path, book.id, 3)

        # Act & Assert
        with pytest.raises(ConflictError):
            create_job(db_path, book.id, 3)

    def test_new_job_allowed_after_terminal(self, db_path: str, book) -> None:
        # Arrange
        first = create_job(db_path, book.id, 3)
        update_job_status(db_path, first, "failed", error="boom")

        # Act
        second = create_job(db_path, book.id, 3)

        # Assert
        assert second != first


class TestUpdateJobStatus:
    """Tests for update_job_status function."""

    def test_invalid_transition_raises(self, db_path: str, book) -> None:
        # Arrange
        job_id = create_job(db_path, book.id, 3)

        # Act & Assert
        with pytest.raises(InvalidTransitionError):
            update_job_status(db_path, job_id, "complete")

    def test_expected_status_mismatch_raises(self, db_path: str, book) -> None:
        # Arrange
        job_id = create_job(db_path, book.id, 3)

        # Act & Assert
        with pytest.raises(InvalidTransitionError, match="expected generating_chapters"):
            update_job_status(db_path, job_id, "failed", expected="generating_chapters")

    def test_failed_carries_error(self, db_path: str, book) -> None:
        # Arrange
        job_id = create_job(db_path, book.id, 3)

        # Act
        update_job_status(db_path, job_id, "failed")

        # Assert
        job = get_job(db_path, job_id)
        assert isinstance(job, FailedJob)
        assert job.error == "Unknown error"
        assert job.completed_at is not None

    def test_requeue_clears_error(self, db_path: str, book) -> None:
        # Arrange
        job_id = create_job(db_path, book.id, 3)
        update_job_status(db_path, job_id, "failed", error="boom")

        # Act
        update_job_status(db_path, job_id, "pending", expected="failed")

        # Assert
        job = get_job(db_path, job_id)
        assert job.status == "pending"
        assert not hasattr(job, "error")

    def test_missing_job_raises_not_found(self, db_path: str) -> None:
        with pytest.raises(NotFoundError):
            update_job_status(db_path, 999, "failed")


class TestClaimNextJob:
    """Tests for claim_next_job function."""

    def test_claims_oldest_pending_into_outline(self, db_path: str, book, writer) -> None:
        # Arrange
        other = create_book(db_path, writer.user_id, "Second", "field_guide", "pets_animals")
        first_id = create_job(db_path, book.id, 3)
        create_job(db_path, other.id, 15)

        # Act
        job = claim_next_job(db_path, "worker1", 600)

        # Assert
        assert isinstance(job, ActiveJob)
        assert job.id == first_id
        assert job.status == "generating_outline"
        assert job.worker_id == "worker1"
        assert job.lease_expires_at is not None

    def test_claims_into_chapters_when_outline_exists(self, db_path: str, book) -> None:
        # Arrange
        save_outline(db_path, make_outline(book.id))
        create_job(db_path, book.id, 3)

        # Act
        job = claim_next_job(db_path, "worker1", 600)

        # Assert
        assert job.status == "generating_chapters"

    def test_job_is_claimed_only_once(self, db_path: str, book) -> None:
        # Arrange
        create_job(db_path, book.id, 3)

        # Act
        first = claim_next_job(db_path, "worker1", 600)
        second = claim_next_job(db_path, "worker2", 600)

        # Assert
        assert first is not None
        assert second is None

    def test_concurrent_workers_claim_a_job_once(self, db_path: str, book) -> None:
        """Test that workers racing for one pending job yield a single winner."""
        # Arrange
        job_id = create_job(db_path, book.id, 3)
        workers = 8
        barrier = threading.Barrier(workers)
        claims = []

        def attempt(worker_id: str):
            barrier.wait()
            claims.append((worker_id, claim_next_job(db_path, worker_id, 600)))

        threads = [threading.Thread(target=attempt, args=(f"worker{i}",)) for i in range(workers)]

        # Act
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # Assert
        winners = [(worker_id, job) for worker_id, job in claims if job is not None]
        assert len(claims) == workers
        assert len(winners) == 1
        winner_id, job = winners[0]
        assert job.id == job_id
        assert get_job(db_path, job_id).worker_id == winner_id

    def test_paused_jobs_are_skipped(self, db_path: str, book) -> None:
        # Arrange
        job_id = create_job(db_path, book.id, 3)
        update_job_status(db_path, job_id, "paused")

        # Act & Assert
        assert claim_next_job(db_path, "worker1", 600) is None


class TestLeases:
    """Tests for renew_lease and release_expired_leases."""

    def test_renew_only_by_holder(self, db_path: str, book) -> None:
        # Arrange
        create_job(db_path, book.id, 3)
        job = claim_next_job(db_path, "worker1", 600)

        # Act & Assert
        assert renew_lease(db_path, job.id, "worker1", 600) is True
        assert renew_lease(db_path, job.id, "worker2", 600) is False

    def test_expired_lease_fails_job_chapter_and_book(self, db_path: str, book) -> None:
        # Arrange
        create_job(db_path, book.id, 3)
        job = claim_next_job(db_path, "worker1", 1)
        upsert_chapter(db_path, book.id, 1, status="generating_text")

        # Act
        released = release_expired_leases(db_path, datetime.now() + timedelta(seconds=5))

        # Assert
        assert released == 1
        failed = get_job(db_path, job.id)
        assert failed.status == "failed"
        assert failed.error == "Worker lease expired"
        assert get_chapter(db_path, book.id, 1).status == "failed"
        assert get_book(db_path, book.id).status == "failed"

    def test_live_lease_is_kept(self, db_path: str, book) -> None:
        # Arrange
        create_job(db_path, book.id, 3)
        claim_next_job(db_path, "worker1", 600)

        # Act & Assert
        assert release_expired_leases(db_path, datetime.now()) == 0


class TestJobProgress:
    """Tests for set_job_progress function."""

    def test_counters_never_decrease(self, db_path: str, book) -> None:
        # Arrange
        create_job(db_path, book.id, 3)
        job = claim_next_job(db_path, "worker1", 600)
        set_job_progress(db_path, job.id, 2, total_chapters=4)

        # Act
        set_job_progress(db_path, job.id, 1, total_chapters=2)

        # Assert
        stored = get_job(db_path, job.id)
        assert stored.current_chapter == 2
        assert stored.total_chapters == 4


class TestChapters:
    """Tests for chapter persistence."""

    def test_upsert_inserts_then_updates(self, db_path: str, book) -> None:
        # Arrange
        upsert_chapter(db_path, book.id, 1, status="text_complete", text="Hello",
                       metadata={"word_count": 1, "keywords": ["hello"]})

        # Act
        chapter = upsert_chapter(db_path, book.id, 1, image_prompt="A sunrise")

        # Assert
        assert isinstance(chapter, TextChapter)
        assert chapter.text == "Hello"
        assert chapter.image_prompt == "A sunrise"
        assert chapter.metadata.keywords == ["hello"]

    def test_variants_follow_status(self, db_path: str, book) -> None:
        # Act
        complete = upsert_chapter(db_path, book.id, 1, status="complete", text="Done")
        failed = upsert_chapter(db_path, book.id, 2, status="failed", error="timeout")

        # Assert
        assert isinstance(complete, CompleteChapter)
        assert isinstance(failed, FailedChapter)
        assert failed.error == "timeout"

    def test_unknown_field_rejected(self, db_path: str, book) -> None:
        with pytest.raises(ValueError):
            upsert_chapter(db_path, book.id, 1, wordcount=3)

    def test_list_is_ordered(self, db_path: str, book) -> None:
        # Arrange
        for n in (3, 1, 2):
            upsert_chapter(db_path, book.id, n, status="pending")

        # Act & Assert
        assert [c.chapter_number for c in list_chapters(db_path, book.id)] == [1, 2, 3]

    def test_delete_blocked_while_job_active(self, db_path: str, book) -> None:
        # Arrange
        upsert_chapter(db_path, book.id, 1, status="complete", text="Done")
        create_job(db_path, book.id, 3)

        # Act & Assert
        with pytest.raises(InvalidTransitionError):
            delete_chapter(db_path, book.id, 1)

    def test_delete_after_job_terminal(self, db_path: str, book) -> None:
        # Arrange
        upsert_chapter(db_path, book.id, 1, status="complete", text="Done")
        job_id = create_job(db_path, book.id, 3)
        update_job_status(db_path, job_id, "failed", error="stop")

        # Act
        delete_chapter(db_path, book.id, 1)

        # Assert
        assert get_chapter(db_path, book.id, 1) is None

    def test_delete_missing_chapter(self, db_path: str, book) -> None:
        with pytest.raises(NotFoundError):
            delete_chapter(db_path, book.id, 7)


class TestTokenUsage:
    """Tests for token usage aggregation."""

    def test_summed_per_step_and_total(self, db_path: str, book) -> None:
        # Arrange
        job_id = create_job(db_path, book.id, 3)
        record_token_usage(db_path, book.id, job_id, "outline",
                           {"prompt_units": 100, "completion_units": 400, "cost_units": 0.01})
        record_token_usage(db_path, book.id, job_id, "chapter_1_text",
                           {"prompt_units": 50, "completion_units": 950, "cost_units": 0.02},
                           chapter_number=1)
        record_token_usage(db_path, book.id, job_id, "chapter_1_text",
                           {"prompt_units": 50, "completion_units": 950, "cost_units": 0.02},
                           chapter_number=1)

        # Act
        summary = summarize_token_usage(db_path, job_id)

        # Assert
        assert summary.total == 2500
        assert summary.cost == pytest.approx(0.05)
        assert [s.step for s in summary.steps] == ["outline", "chapter_1_text"]
        assert get_job(db_path, job_id).token_usage.total == 2500


class TestAudiobookJobs:
    """Tests for audiobook job persistence."""

    def test_one_active_audiobook_job_per_book(self, db_path: str, book) -> None:
        # Arrange
        create_audiobook_job(db_path, book.id, "alloy", "tts-1", 0.5, 3)

        # Act & Assert
        with pytest.raises(ConflictError):
            create_audiobook_job(db_path, book.id, "nova", "tts-1", 0.5, 3)

    def test_claim_moves_to_generating(self, db_path: str, book) -> None:
        # Arrange
        job_id = create_audiobook_job(db_path, book.id, "alloy", "tts-1", 0.5, 3)

        # Act
        job = claim_next_audiobook_job(db_path, "audio1", 600)

        # Assert
        assert job.id == job_id
        assert job.status == "generating"
        assert claim_next_audiobook_job(db_path, "audio2", 600) is None

    def test_record_progress_only_while_generating(self, db_path: str, book) -> None:
        # Arrange
        job_id = create_audiobook_job(db_path, book.id, "alloy", "tts-1", 0.5, 3)
        claim_next_audiobook_job(db_path, "audio1", 600)

        # Act
        first = record_audiobook_progress(db_path, job_id, 1, "/audio/chapter_1.mp3", 0.1,
                                          current_chapter=1)
        update_audiobook_status(db_path, job_id, "cancelled")
        second = record_audiobook_progress(db_path, job_id, 2, "/audio/chapter_2.mp3", 0.1,
                                           current_chapter=2)

        # Assert
        job = get_audiobook_job(db_path, job_id)
        assert first is True
        assert second is False
        assert job.progress == {1: "/audio/chapter_1.mp3"}
        assert job.current_chapter == 1
        assert job.actual_cost == pytest.approx(0.1)
        assert job.error == "Job cancelled by user"

    def test_segments_recorded_separately(self, db_path: str, book) -> None:
        # Arrange
        job_id = create_audiobook_job(db_path, book.id, "alloy", "tts-1", 0.5, 3)
        claim_next_audiobook_job(db_path, "audio1", 600)

        # Act
        record_audiobook_progress(db_path, job_id, "prologue", "/audio/prologue.mp3", 0.01)

        # Assert
        job = get_audiobook_job(db_path, job_id)
        assert job.segments == {"prologue": "/audio/prologue.mp3"}
        assert job.progress == {}

    def test_complete_cannot_be_cancelled(self, db_path: str, book) -> None:
        # Arrange
        job_id = create_audiobook_job(db_path, book.id, "alloy", "tts-1", 0.5, 3)
        claim_next_audiobook_job(db_path, "audio1", 600)
        update_audiobook_status(db_path, job_id, "complete")

        # Act & Assert
        with pytest.raises(InvalidTransitionError):
            update_audiobook_status(db_path, job_id, "cancelled")
