"""
Tests for progress snapshots.
"""

import pytest

from bookgen_agent.audiobook import start_audiobook
from bookgen_agent.db_manager import create_job, record_token_usage, upsert_chapter
from bookgen_agent.errors import NotFoundError
from bookgen_agent.progress import (
    get_audiobook_status,
    get_generation_progress,
    get_publish_status,
)


class TestGenerationProgress:
    """Tests for get_generation_progress function."""

    def test_before_first_start(self, db_path, book) -> None:
        # Act
        snapshot = get_generation_progress(db_path, book.id)

        # Assert
        assert snapshot["book"]["title"] == "Calm Mornings"
        assert snapshot["job"] is None
        assert snapshot["chapters"] == []
        assert snapshot["total_chapters"] == 3

    def test_chapter_summaries(self, db_path, book) -> None:
        # Arrange
        job_id = create_job(db_path, book.id, 4)
        upsert_chapter(db_path, book.id, 1, status="complete", text="One two three",
                       image_url="/1.png", metadata={"word_count": 3})
        upsert_chapter(db_path, book.id, 2, status="failed", error="Model error")
        record_token_usage(db_path, book.id, job_id, "chapter_1_text",
                           {"prompt_units": 100, "completion_units": 50, "cost_units": 0.02},
                           chapter_number=1)

        # Act
        snapshot = get_generation_progress(db_path, book.id)

        # Assert
        assert snapshot["job"]["status"] == "pending"
        assert snapshot["total_chapters"] == 4
        assert snapshot["completed_chapters"] == 1
        assert snapshot["chapters"] == [
            {"chapter_number": 1, "status": "complete", "has_text": True, "has_image": True,
             "word_count": 3, "cost": 0.02, "error": None},
            {"chapter_number": 2, "status": "failed", "has_text": False, "has_image": False,
             "word_count": 0, "cost": 0.0, "error": "Model error"},
        ]

    def test_missing_book(self, db_path) -> None:
        with pytest.raises(NotFoundError):
            get_generation_progress(db_path, "no-such-book")


class TestAudiobookStatus:
    def test_without_job(self, db_path, book) -> None:
        assert get_audiobook_status(db_path, book.id) == {
            "book_id": book.id, "job": None, "completed_chapters": 0,
        }

    def test_with_job(self, db_path, cfg, book) -> None:
        # Arrange
        upsert_chapter(db_path, book.id, 1, status="complete", text="Morning light.")
        start_audiobook(db_path, book.id, cfg)

        # Act
        status = get_audiobook_status(db_path, book.id)

        # Assert
        assert status["job"]["status"] == "pending"
        assert status["completed_chapters"] == 0


class TestPublishStatus:
    def test_returns_plain_dict(self, db_path, book) -> None:
        # Act
        status = get_publish_status(db_path, book.id)

        # Assert
        assert status["ready"] is False
        assert "No chapters found" in status["issues"]
