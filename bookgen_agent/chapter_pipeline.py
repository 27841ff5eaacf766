"""
Chapter pipeline for Bookgen Agent.

Runs one chapter through its steps in order: text, image prompt (unless
the book skips image prompts), image (when an image generator is
configured), complete. Each step is skipped when its output is already
stored, marks the chapter with its in-flight status before calling the
collaborator, and persists its output as soon as it returns. A failing
step leaves the chapter ``failed`` with the error and re-raises.
"""

import os
from typing import Any, Callable, Dict, Optional

from bookgen_agent.db_manager import (
    get_chapter,
    record_token_usage,
    require_book,
    update_book,
    upsert_chapter,
)
from bookgen_agent.errors import InvalidTransitionError, NotFoundError, ValidationError
from bookgen_agent.generators import Collaborators, GenerationResult
from bookgen_agent.models import Book, ChapterMetadata, Outline
from bookgen_agent.prompts import (
    book_variables,
    count_words,
    extract_keywords,
    previous_summary,
    render_prompt,
    word_range,
)
from bookgen_agent.utils.file_utils import atomic_write_bytes
from bookgen_agent.utils.logger import get_logger
from bookgen_agent.utils.validation import validate_image_upload

logger = get_logger(__name__)

IN_FLIGHT_STATUSES = ("generating_text", "generating_image_prompt", "generating_image")


def is_settled(chapter, book: Book, images_enabled: bool) -> bool:
    """Whether the automatic steps have nothing left to do for ``chapter``."""
    if chapter is None or not getattr(chapter, "text", None):
        return False
    if not book.context.skip_image_prompts and not chapter.image_prompt:
        return False
    if images_enabled and chapter.image_prompt and not chapter.image_url:
        return False
    return True


def derive_chapter_status(text: Optional[str], image_prompt: Optional[str],
                          image_url: Optional[str], settled: bool,
                          in_flight: Optional[str] = None, failed: bool = False) -> str:
    """Chapter status as a function of its populated fields.

    Examples:
        >>> derive_chapter_status("Once...", None, None, settled=False)
        'text_complete'
        >>> derive_chapter_status("Once...", "A lighthouse", "/img/1.png", settled=True)
        'complete'
    """
    if failed:
        return "failed"
    if in_flight:
        return in_flight
    if not text:
        return "pending"
    if settled or image_url:
        return "complete"
    if image_prompt:
        return "image_prompt_ready"
    return "text_complete"


def _run_step(db_path: str, book_id: str, chapter_number: int, in_flight_status: str,
              step: Callable[[], Any]) -> Any:
    """Mark the chapter in flight, run ``step``, record a failure on error."""
    upsert_chapter(db_path, book_id, chapter_number, status=in_flight_status, error=None)
    try:
        return step()
    except Exception as e:
        logger.error(f"[CHAPTER {chapter_number}] {in_flight_status} failed: {e}")
        upsert_chapter(db_path, book_id, chapter_number, status="failed", error=str(e))
        raise


def _record_usage(db_path: str, book: Book, job_id: Optional[int], chapter_number: int,
                  step: str, result: GenerationResult) -> None:
    record_token_usage(db_path, book.id, job_id, step, result.usage,
                       model=result.model, chapter_number=chapter_number)


def run_chapter(db_path: str, book: Book, outline: Outline, chapter_number: int,
                collaborators: Collaborators, prompts: Dict[str, Dict[str, Any]],
                cfg: Dict[str, Any], job_id: Optional[int] = None,
                news_context: str = ""):
    """Drive one chapter to ``complete``.

    Args:
        db_path: Path to SQLite database file.
        book: Book being generated.
        outline: The book's outline.
        chapter_number: 1-based chapter number.
        collaborators: Text (and optionally image) generators.
        prompts: Templates from load_prompts.
        cfg: Global config.
        job_id: Generation job the token usage is charged to.
        news_context: Optional recent-news digest for the text prompt.

    Returns:
        The completed chapter record.

    Raises:
        UpstreamGenerationFailure: If a collaborator fails. The chapter is
            left ``failed`` with the error.
    """
    chapter = get_chapter(db_path, book.id, chapter_number)
    if chapter is not None and chapter.status == "complete":
        logger.info(f"[CHAPTER {chapter_number}] Already complete, skipping")
        return chapter

    plan = outline.chapter(chapter_number)
    if plan is None:
        raise ValidationError(f"Outline has no chapter {chapter_number}")

    variables = book_variables(book)
    variables.update({
        "STYLE_GUIDE": outline.style_guide,
        "ART_DIRECTION": outline.art_direction,
        "CHAPTER_NUMBER": chapter_number,
        "CHAPTER_TITLE": plan.title,
        "CHAPTER_SUMMARY": plan.summary,
        "PREVIOUS_CHAPTER_SUMMARY": previous_summary(outline, chapter_number),
        "EMOTIONAL_TONE": plan.emotional_tone or book.context.tone or "consistent with the book",
        "VISUAL_MOTIFS": ", ".join(plan.visual_motifs),
        "WORD_RANGE": word_range(cfg["generation"]["chapter_sizes"], book.planned_chapter_size()),
        "CURRENT_TRENDS": f"Recent developments to weave in:\n{news_context}" if news_context else "",
    })

    # Step 1: text
    if chapter is None or not getattr(chapter, "text", None):
        def generate_text():
            prompt = render_prompt(prompts, "chapter_text", variables)
            result = collaborators.chapter_text.generate(prompt)
            text = result.content
            upsert_chapter(
                db_path, book.id, chapter_number,
                status="text_complete",
                text=text,
                text_prompt=prompt,
                metadata=ChapterMetadata(
                    word_count=count_words(text),
                    keywords=extract_keywords(text),
                    tone=plan.emotional_tone,
                ),
                error=None,
            )
            _record_usage(db_path, book, job_id, chapter_number,
                          f"chapter_{chapter_number}_text", result)
            logger.info(f"[CHAPTER {chapter_number}] Text generated ({count_words(text)} words)")

        _run_step(db_path, book.id, chapter_number, "generating_text", generate_text)
        chapter = get_chapter(db_path, book.id, chapter_number)

    # Step 2: image prompt
    if not book.context.skip_image_prompts and not chapter.image_prompt:
        def generate_image_prompt():
            prompt = render_prompt(prompts, "chapter_image_prompt", variables)
            result = collaborators.chapter_text.generate(prompt)
            upsert_chapter(db_path, book.id, chapter_number,
                           status="image_prompt_ready", image_prompt=result.content, error=None)
            _record_usage(db_path, book, job_id, chapter_number,
                          f"chapter_{chapter_number}_image_prompt", result)
            logger.info(f"[CHAPTER {chapter_number}] Image prompt ready")

        _run_step(db_path, book.id, chapter_number, "generating_image_prompt",
                  generate_image_prompt)
        chapter = get_chapter(db_path, book.id, chapter_number)

    # Step 3: image, only when a generator is configured; otherwise an upload fills it later
    if collaborators.image is not None and chapter.image_prompt and not chapter.image_url:
        image_prompt = chapter.image_prompt

        def generate_image():
            result = collaborators.image.generate(
                image_prompt, {"filename": os.path.join(book.id, f"chapter_{chapter_number}.png")}
            )
            upsert_chapter(db_path, book.id, chapter_number, image_url=result.content, error=None)
            _record_usage(db_path, book, job_id, chapter_number,
                          f"chapter_{chapter_number}_image", result)
            logger.info(f"[CHAPTER {chapter_number}] Image saved to {result.content}")

        _run_step(db_path, book.id, chapter_number, "generating_image", generate_image)

    chapter = get_chapter(db_path, book.id, chapter_number)
    status = derive_chapter_status(
        chapter.text, chapter.image_prompt, chapter.image_url,
        settled=is_settled(chapter, book, collaborators.image is not None),
    )
    return upsert_chapter(db_path, book.id, chapter_number, status=status, error=None)


def edit_chapter(db_path: str, book_id: str, chapter_number: int, *,
                 text: Optional[str] = None, text_prompt: Optional[str] = None,
                 image_prompt: Optional[str] = None):
    """Write chapter content directly. The chapter status is left as it is.

    Raises:
        NotFoundError: If the chapter does not exist.
        InvalidTransitionError: While a worker is generating the chapter.
        ValidationError: On blank text or image prompt.
    """
    chapter = get_chapter(db_path, book_id, chapter_number)
    if chapter is None:
        raise NotFoundError(f"Chapter {chapter_number} of book {book_id} not found")
    if chapter.status in IN_FLIGHT_STATUSES:
        raise InvalidTransitionError(
            f"Chapter {chapter_number} is {chapter.status}; wait for the step to finish"
        )

    fields: Dict[str, Any] = {}
    if text is not None:
        if not text.strip():
            raise ValidationError("Chapter text must not be blank")
        fields["text"] = text
        fields["metadata"] = chapter.metadata.model_copy(update={
            "word_count": count_words(text),
            "keywords": extract_keywords(text),
        })
    if text_prompt is not None:
        fields["text_prompt"] = text_prompt
    if image_prompt is not None:
        if not image_prompt.strip():
            raise ValidationError("Image prompt must not be blank")
        fields["image_prompt"] = image_prompt

    if not fields:
        return chapter
    return upsert_chapter(db_path, book_id, chapter_number, **fields)


def attach_chapter_image(db_path: str, book_id: str, chapter_number: int,
                         filename: str, data: bytes, cfg: Dict[str, Any]):
    """Store an uploaded chapter image and point the chapter at it.

    A chapter that was waiting on its image (text written, no step
    running) becomes ``complete``.
    """
    chapter = get_chapter(db_path, book_id, chapter_number)
    if chapter is None:
        raise NotFoundError(f"Chapter {chapter_number} of book {book_id} not found")
    if chapter.status in IN_FLIGHT_STATUSES:
        raise InvalidTransitionError(
            f"Chapter {chapter_number} is {chapter.status}; wait for the step to finish"
        )

    ext = validate_image_upload(filename, data)
    path = atomic_write_bytes(
        os.path.join(cfg["paths"]["images"], book_id, f"chapter_{chapter_number}{ext}"), data
    )

    fields: Dict[str, Any] = {"image_url": path}
    if chapter.status in ("text_complete", "image_prompt_ready"):
        fields["status"] = derive_chapter_status(chapter.text, chapter.image_prompt, path, settled=True)

    logger.info(f"[CHAPTER {chapter_number}] Image uploaded for book {book_id}")
    return upsert_chapter(db_path, book_id, chapter_number, **fields)


def attach_cover_image(db_path: str, book_id: str, filename: str, data: bytes,
                       cfg: Dict[str, Any]) -> Book:
    require_book(db_path, book_id)
    ext = validate_image_upload(filename, data)
    path = atomic_write_bytes(os.path.join(cfg["paths"]["images"], book_id, f"cover{ext}"), data)
    return update_book(db_path, book_id, cover_image_url=path)
