"""
Read-only status snapshots for Bookgen Agent.

Every function here only reads from the store and can be polled as often
as a client likes.
"""

from typing import Any, Dict

from bookgen_agent import publisher
from bookgen_agent.db_manager import (
    get_latest_audiobook_job,
    get_latest_job_for_book,
    list_chapters,
    require_book,
)


def _chapter_summary(chapter) -> Dict[str, Any]:
    text = getattr(chapter, "text", None)
    return {
        "chapter_number": chapter.chapter_number,
        "status": chapter.status,
        "has_text": bool(text),
        "has_image": bool(chapter.image_url),
        "word_count": chapter.metadata.word_count,
        "cost": round(sum(s.cost for s in chapter.token_usage), 6),
        "error": getattr(chapter, "error", None),
    }


def get_generation_progress(db_path: str, book_id: str) -> Dict[str, Any]:
    """Book, its latest generation job and per-chapter status.

    Returns:
        Dictionary with ``book``, ``job`` (None before the first start),
        ``chapters``, ``completed_chapters`` and ``total_chapters``.
    """
    book = require_book(db_path, book_id)
    job = get_latest_job_for_book(db_path, book_id)
    chapters = [_chapter_summary(c) for c in list_chapters(db_path, book_id)]

    total = job.total_chapters if job else book.planned_chapter_count()
    return {
        "book": book.model_dump(),
        "job": job.model_dump() if job else None,
        "chapters": chapters,
        "completed_chapters": sum(1 for c in chapters if c["status"] == "complete"),
        "total_chapters": total,
    }


def get_audiobook_status(db_path: str, book_id: str) -> Dict[str, Any]:
    require_book(db_path, book_id)
    job = get_latest_audiobook_job(db_path, book_id)
    if job is None:
        return {"book_id": book_id, "job": None, "completed_chapters": 0}

    return {
        "book_id": book_id,
        "job": job.model_dump(),
        "completed_chapters": len(job.progress),
    }


def get_publish_status(db_path: str, book_id: str) -> Dict[str, Any]:
    return publisher.get_publish_status(db_path, book_id).model_dump()
