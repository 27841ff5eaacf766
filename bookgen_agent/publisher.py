"""
Publish readiness and manuscript publishing for Bookgen Agent.

``evaluate`` is a pure function over a book, its chapters and its
outline. ``publish_book`` gates on it (unless forced), writes the
manuscript artifact and marks the book published.
"""

import os
from datetime import datetime
from typing import Any, Dict, List, Optional

import yaml

from bookgen_agent.db_manager import get_outline, list_chapters, require_book, update_book
from bookgen_agent.errors import InvalidTransitionError, NotReadyError
from bookgen_agent.models import Book, Outline, PublishStatus
from bookgen_agent.utils.file_utils import atomic_write_text
from bookgen_agent.utils.logger import get_logger

logger = get_logger(__name__)

PUBLISHABLE_BOOK_STATUSES = ("complete", "failed", "published")


def evaluate(book: Book, chapters: List[Any], outline: Optional[Outline]) -> PublishStatus:
    """Check whether a book can be published.

    Rules, one issue string per violation:
      - an outline exists
      - at least one chapter exists
      - every chapter 1..N exists with non-empty text
      - every chapter 1..N has an image, unless the book publishes without them

    N is the outline's chapter count, or the highest stored chapter number
    when there is no outline.

    Args:
        book: The book.
        chapters: All chapter records of the book.
        outline: The book's outline, or None.

    Returns:
        PublishStatus with ``ready`` true iff there are no issues.
    """
    issues: List[str] = []

    if outline is None:
        issues.append("Book outline has not been generated")
    if not chapters:
        issues.append("No chapters found")

    by_number = {c.chapter_number: c for c in chapters}
    if outline is not None:
        total = outline.total_chapters
    else:
        total = max(by_number) if by_number else 0

    for number in range(1, total + 1):
        chapter = by_number.get(number)
        text = getattr(chapter, "text", None) if chapter else None
        if not text or not text.strip():
            issues.append(f"Chapter {number}: Missing text")
        if not book.publish_without_chapter_images and not (chapter and chapter.image_url):
            issues.append(f"Chapter {number}: Missing image")

    return PublishStatus(ready=not issues, issues=issues)


def get_publish_status(db_path: str, book_id: str) -> PublishStatus:
    book = require_book(db_path, book_id)
    return evaluate(book, list_chapters(db_path, book_id), get_outline(db_path, book_id))


def build_manuscript(book: Book, chapters: List[Any], outline: Optional[Outline]) -> Dict[str, Any]:
    """Manuscript document with whatever content exists."""
    titles = {c.chapter_number: c.title for c in outline.chapters} if outline else {}
    return {
        "title": book.title,
        "book_type": book.book_type.value,
        "niche": book.niche.value,
        "cover_image": book.cover_image_url,
        "prologue": book.prologue,
        "chapters": [
            {
                "number": c.chapter_number,
                "title": titles.get(c.chapter_number, f"Chapter {c.chapter_number}"),
                "text": getattr(c, "text", None) or "",
                "image": c.image_url,
            }
            for c in sorted(chapters, key=lambda c: c.chapter_number)
        ],
        "epilogue": book.epilogue,
        "generated_at": datetime.now().isoformat(),
    }


def publish_book(db_path: str, book_id: str, cfg: Dict[str, Any],
                 force: bool = False) -> Dict[str, Any]:
    """Publish a book's manuscript.

    The manuscript YAML holds every piece of content a distributable needs
    (title, cover, prologue, chapter text and images, epilogue) and is the
    only artifact written here. EPUB and DOCX packaging renders from it
    outside this package, so ``artifacts`` names just the manuscript.

    Args:
        db_path: Path to SQLite database file.
        book_id: Book to publish.
        cfg: Global config (``paths.publish``).
        force: Publish even when readiness checks fail.

    Returns:
        Dictionary with ``artifact_url``, ``artifacts`` (format to path),
        ``issues`` and ``forced``.

    Raises:
        NotFoundError: If the book does not exist.
        InvalidTransitionError: If the book is draft or still generating.
        NotReadyError: If checks fail and ``force`` is false. Nothing is written.

    Examples:
        >>> publish_book("db.sqlite", book_id, cfg, force=True)["issues"]
        ['Chapter 2: Missing image']
    """
    book = require_book(db_path, book_id)
    if book.status not in PUBLISHABLE_BOOK_STATUSES:
        raise InvalidTransitionError(
            f"Book {book_id} is {book.status} and cannot be published", book.status, "published"
        )

    chapters = list_chapters(db_path, book_id)
    outline = get_outline(db_path, book_id)
    status = evaluate(book, chapters, outline)

    if not status.ready and not force:
        raise NotReadyError(status.issues)
    if status.issues:
        logger.warning(f"[PUBLISH] Forcing publish of {book_id} with issues: {status.issues}")

    path = os.path.join(cfg["paths"]["publish"], book_id, "manuscript.yaml")
    atomic_write_text(path, yaml.safe_dump(build_manuscript(book, chapters, outline),
                                           sort_keys=False, allow_unicode=True))

    update_book(db_path, book_id, status="published", published_at=datetime.now().isoformat(),
                publish_artifact_url=path)
    logger.info(f"[PUBLISH] Published {book_id} to {path}")

    return {
        "book_id": book_id,
        "artifact_url": path,
        "artifacts": {"manuscript": path},
        "issues": status.issues,
        "forced": bool(force and status.issues),
    }
