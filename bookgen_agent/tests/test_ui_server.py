"""
Tests for UI server module (FastAPI).
"""

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from bookgen_agent import ui_server
from bookgen_agent.audiobook import run_audiobook_once, start_audiobook
from bookgen_agent.db_manager import (
    create_job,
    save_outline,
    set_book_status,
    update_job_status,
    upsert_chapter,
    upsert_user,
)
from bookgen_agent.models import Outline, OutlineChapter
from bookgen_agent.ui_server import app, set_config, set_db_path, set_speech_synthesizer

WRITER = {"X-User-Id": "writer-1"}
ADMIN = {"X-User-Id": "admin-1"}


@pytest.fixture
def client(db_path, cfg, speech, writer, admin):
    set_db_path(db_path)
    set_config(cfg)
    set_speech_synthesizer(speech)
    yield TestClient(app)
    set_db_path(None)
    set_config(None)
    set_speech_synthesizer(None)


@pytest.fixture
def written_book(db_path, book):
    """Book with an outline and two complete chapters."""
    save_outline(db_path, Outline(book_id=book.id, chapters=[
        OutlineChapter(chapter_number=n, title=f"Part {n}") for n in (1, 2)
    ]))
    upsert_chapter(db_path, book.id, 1, status="complete", text="Morning light.", image_url="/1.png")
    upsert_chapter(db_path, book.id, 2, status="image_prompt_ready", text="Evening calm.",
                   image_prompt="A dusk harbor")
    set_book_status(db_path, book.id, "complete")
    return book


class TestAuth:
    """Tests for request context resolution."""

    def test_health_needs_no_user(self, client) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_header(self, client) -> None:
        assert client.get("/api/books").status_code == 401

    def test_unknown_user(self, client) -> None:
        assert client.get("/api/books", headers={"X-User-Id": "ghost"}).status_code == 401

    def test_other_users_book_is_hidden(self, client, db_path, book) -> None:
        # Arrange
        upsert_user(db_path, "writer-2", role="writer")

        # Act
        response = client.get(f"/api/books/{book.id}", headers={"X-User-Id": "writer-2"})

        # Assert
        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"

    def test_admin_sees_every_book(self, client, book) -> None:
        # Act
        response = client.get("/api/books", headers=ADMIN)

        # Assert
        assert [b["id"] for b in response.json()] == [book.id]


class TestBooks:
    """Tests for book endpoints."""

    def test_create_book(self, client) -> None:
        # Act
        response = client.post("/api/books", headers=WRITER, json={
            "title": "Paws and Reflect",
            "book_type": "field_guide",
            "niche": "pets_animals",
            "context": {"chapter_count": 5},
        })

        # Assert
        assert response.status_code == 201
        book = response.json()
        assert book["status"] == "draft"
        assert book["user_id"] == "writer-1"
        assert book["context"]["chapter_count"] == 5

    def test_create_book_invalid_type(self, client) -> None:
        # Act
        response = client.post("/api/books", headers=WRITER, json={
            "title": "Paws", "book_type": "novel", "niche": "pets_animals",
        })

        # Assert
        assert response.status_code == 400
        assert "book_type" in response.json()["detail"]

    def test_update_book(self, client, book) -> None:
        # Act
        response = client.patch(f"/api/books/{book.id}", headers=WRITER,
                                json={"publish_without_chapter_images": True})

        # Assert
        assert response.status_code == 200
        assert response.json()["publish_without_chapter_images"] is True

    def test_update_book_without_fields(self, client, book) -> None:
        response = client.patch(f"/api/books/{book.id}", headers=WRITER, json={})
        assert response.status_code == 400


class TestGenerationJobs:
    """Tests for generation and job endpoints."""

    def test_start_generation(self, client, book) -> None:
        # Act
        response = client.post(f"/api/books/{book.id}/generate", headers=WRITER)

        # Assert
        assert response.status_code == 202
        job = response.json()
        assert job["status"] == "pending"
        assert job["total_chapters"] == 3

    def test_second_start_conflicts(self, client, book) -> None:
        # Arrange
        client.post(f"/api/books/{book.id}/generate", headers=WRITER)

        # Act
        response = client.post(f"/api/books/{book.id}/generate", headers=WRITER)

        # Assert
        assert response.status_code == 409
        assert response.json()["error"] == "ConflictError"

    def test_out_of_credits(self, client, db_path, book) -> None:
        # Arrange
        upsert_user(db_path, "writer-1", role="writer", book_credits=0)

        # Act
        response = client.post(f"/api/books/{book.id}/generate", headers=WRITER)

        # Assert
        assert response.status_code == 402

    def test_progress(self, client, written_book) -> None:
        # Act
        response = client.get(f"/api/books/{written_book.id}/progress", headers=WRITER)

        # Assert
        assert response.status_code == 200
        body = response.json()
        assert body["job"] is None
        assert body["completed_chapters"] == 1
        assert [c["status"] for c in body["chapters"]] == ["complete", "image_prompt_ready"]

    def test_list_jobs_by_status(self, client, db_path, book) -> None:
        # Arrange
        client.post(f"/api/books/{book.id}/generate", headers=WRITER)

        # Act
        pending = client.get("/api/jobs?status=pending", headers=WRITER)
        failed = client.get("/api/jobs?status=failed", headers=WRITER)

        # Assert
        assert len(pending.json()) == 1
        assert failed.json() == []

    def test_invalid_status_returns_error(self, client) -> None:
        assert client.get("/api/jobs?status=invalid", headers=WRITER).status_code == 400

    def test_requeue_and_pause(self, client, db_path, book) -> None:
        # Arrange
        job_id = create_job(db_path, book.id, 3)
        update_job_status(db_path, job_id, "failed", error="Model error")
        set_book_status(db_path, book.id, "failed")

        # Act
        requeued = client.post(f"/api/jobs/{job_id}/requeue", headers=WRITER)
        paused = client.post(f"/api/jobs/{job_id}/pause", headers=WRITER)
        again = client.post(f"/api/jobs/{job_id}/pause", headers=WRITER)

        # Assert
        assert requeued.json()["status"] == "pending"
        assert paused.json()["status"] == "paused"
        assert again.status_code == 409

    def test_missing_job(self, client) -> None:
        assert client.get("/api/jobs/999", headers=WRITER).status_code == 404


class TestPublishing:
    """Tests for publish endpoints."""

    def test_publish_status_lists_issues(self, client, written_book) -> None:
        # Act
        response = client.get(f"/api/books/{written_book.id}/publish-status", headers=WRITER)

        # Assert
        assert response.json() == {"ready": False, "issues": ["Chapter 2: Missing image"]}

    def test_publish_not_ready(self, client, written_book) -> None:
        # Act
        response = client.post(f"/api/books/{written_book.id}/publish", headers=WRITER)

        # Assert
        assert response.status_code == 400
        assert response.json()["issues"] == ["Chapter 2: Missing image"]

    def test_forced_publish(self, client, written_book) -> None:
        # Act
        response = client.post(f"/api/books/{written_book.id}/publish?force=true", headers=WRITER)

        # Assert
        assert response.status_code == 200
        assert response.json()["forced"] is True


class TestChapters:
    """Tests for chapter endpoints."""

    def test_get_chapter(self, client, written_book) -> None:
        # Act
        response = client.get(f"/api/books/{written_book.id}/chapters/1", headers=WRITER)

        # Assert
        assert response.status_code == 200
        assert response.json()["text"] == "Morning light."

    def test_invalid_chapter_number(self, client, written_book) -> None:
        response = client.get(f"/api/books/{written_book.id}/chapters/0", headers=WRITER)
        assert response.status_code == 400

    def test_edit_chapter(self, client, written_book) -> None:
        # Act
        response = client.patch(f"/api/books/{written_book.id}/chapters/1", headers=WRITER,
                                json={"text": "Morning light, revised."})

        # Assert
        assert response.status_code == 200
        assert response.json()["metadata"]["word_count"] == 3

    def test_upload_image_completes_chapter(self, client, written_book) -> None:
        # Act
        response = client.post(f"/api/books/{written_book.id}/chapters/2/image", headers=WRITER,
                               files={"file": ("dusk.png", b"\x89PNG", "image/png")})

        # Assert
        assert response.status_code == 200
        assert response.json()["status"] == "complete"
        status = client.get(f"/api/books/{written_book.id}/publish-status", headers=WRITER)
        assert status.json()["ready"] is True

    def test_upload_cover(self, client, book) -> None:
        # Act
        response = client.post(f"/api/books/{book.id}/cover", headers=WRITER,
                               files={"file": ("cover.jpg", b"jpeg", "image/jpeg")})

        # Assert
        assert response.json()["cover_image_url"].endswith("cover.jpg")

    def test_delete_chapter(self, client, written_book) -> None:
        # Act
        response = client.delete(f"/api/books/{written_book.id}/chapters/2", headers=WRITER)

        # Assert
        assert response.status_code == 204
        assert client.get(f"/api/books/{written_book.id}/chapters/2",
                          headers=WRITER).status_code == 404


class TestAudiobook:
    """Tests for audiobook endpoints."""

    def test_estimate(self, client, written_book) -> None:
        # Act
        response = client.get(f"/api/books/{written_book.id}/audiobook/estimate?model=tts-1-hd",
                              headers=WRITER)

        # Assert
        body = response.json()
        assert body["model"] == "tts-1-hd"
        assert body["total_characters"] == len("Morning light.") + len("Evening calm.")

    def test_start_status_and_cancel(self, client, written_book) -> None:
        # Act
        started = client.post(f"/api/books/{written_book.id}/audiobook", headers=WRITER,
                              json={"voice": "nova"})
        status = client.get(f"/api/books/{written_book.id}/audiobook", headers=WRITER)
        cancelled = client.post(f"/api/books/{written_book.id}/audiobook/cancel", headers=WRITER)
        requeued = client.post(f"/api/books/{written_book.id}/audiobook/requeue", headers=WRITER)

        # Assert
        assert started.status_code == 202
        assert status.json()["job"]["voice"] == "nova"
        assert cancelled.json()["status"] == "cancelled"
        assert requeued.json()["status"] == "pending"

    def test_unknown_voice(self, client, written_book) -> None:
        response = client.post(f"/api/books/{written_book.id}/audiobook", headers=WRITER,
                               json={"voice": "robot"})
        assert response.status_code == 400

    def test_download_and_regenerate(self, client, db_path, cfg, speech, written_book) -> None:
        # Arrange
        start_audiobook(db_path, written_book.id, cfg)
        run_audiobook_once(cfg, db_path, "worker-1", speech)

        # Act
        download = client.get(f"/api/books/{written_book.id}/audiobook/chapters/1/download",
                              headers=WRITER)
        regenerated = client.post(
            f"/api/books/{written_book.id}/audiobook/chapters/2/regenerate", headers=WRITER
        )

        # Assert
        assert download.status_code == 200
        assert download.content.startswith(b"ID3")
        assert regenerated.json()["chapter_number"] == 2

    def test_download_missing_segment(self, client, db_path, cfg, speech, written_book) -> None:
        # Arrange
        start_audiobook(db_path, written_book.id, cfg)
        run_audiobook_once(cfg, db_path, "worker-1", speech)

        # Act & Assert
        assert client.get(f"/api/books/{written_book.id}/audiobook/segments/prologue/download",
                          headers=WRITER).status_code == 404
        assert client.get(f"/api/books/{written_book.id}/audiobook/segments/intro/download",
                          headers=WRITER).status_code == 400

    def test_assets(self, client, written_book) -> None:
        # Act
        created = client.post(f"/api/books/{written_book.id}/audiobook/assets/retail_sample",
                              headers=WRITER, json={"voice": "onyx"})
        download = client.get(
            f"/api/books/{written_book.id}/audiobook/assets/retail_sample/download", headers=WRITER
        )
        unknown = client.post(f"/api/books/{written_book.id}/audiobook/assets/bloopers",
                              headers=WRITER)

        # Assert
        assert created.json()["voice"] == "onyx"
        assert download.status_code == 200
        assert unknown.status_code == 400

    def test_no_speech_synthesizer(self, client, written_book, monkeypatch) -> None:
        # Arrange
        set_speech_synthesizer(None)
        monkeypatch.setattr(ui_server, "build_collaborators",
                            lambda cfg: SimpleNamespace(speech=None))

        # Act
        response = client.post(f"/api/books/{written_book.id}/audiobook/assets/opening_credits",
                               headers=WRITER)

        # Assert
        assert response.status_code == 503
