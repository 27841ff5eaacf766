"""
Validation utilities for Bookgen Agent.

Request checks that run before any state is touched. Every failure is a
ValidationError so the API layer can answer 400 without a partial write.
"""

import os
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from bookgen_agent.errors import ValidationError
from bookgen_agent.models import BookContext, BookType, Niche


MAX_TITLE_LENGTH = 200
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp"}
AUDIO_ASSETS = ("opening_credits", "closing_credits", "retail_sample")


def validate_book_request(data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a create-book request.

    Args:
        data: Request fields: title, book_type, niche and optional context,
            writing_style, publish_without_chapter_images.

    Returns:
        Normalized copy with ``context`` as a BookContext.

    Raises:
        ValidationError: If a field is missing or invalid.

    Examples:
        >>> validate_book_request({"title": "Calm", "book_type": "guided_journal",
        ...                        "niche": "wellness_mindfulness"})["title"]
        'Calm'
    """
    for field in ("title", "book_type", "niche"):
        if not data.get(field):
            raise ValidationError(f"Missing required field: {field}")

    title = str(data["title"]).strip()
    if not title:
        raise ValidationError("Title must not be blank")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Title must be at most {MAX_TITLE_LENGTH} characters")

    valid_types = {t.value for t in BookType}
    if data["book_type"] not in valid_types:
        raise ValidationError(f"Invalid book_type: {data['book_type']}")

    valid_niches = {n.value for n in Niche}
    if data["niche"] not in valid_niches:
        raise ValidationError(f"Invalid niche: {data['niche']}")

    context = data.get("context") or {}
    if not isinstance(context, BookContext):
        try:
            context = BookContext.model_validate(context)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid context: {e.errors()[0]['msg']}") from e

    if context.use_news_search and not context.news_topics:
        raise ValidationError("news_topics is required when use_news_search is enabled")

    return {
        "title": title,
        "book_type": data["book_type"],
        "niche": data["niche"],
        "context": context,
        "writing_style": data.get("writing_style"),
        "publish_without_chapter_images": bool(data.get("publish_without_chapter_images", False)),
    }


def validate_voice_and_model(voice: str, model: str, audiobook_cfg: Dict[str, Any]) -> None:
    """Check a voice/model pair against the configured TTS catalog.

    Raises:
        ValidationError: On an unknown voice or a model without a rate.
    """
    if voice not in audiobook_cfg["voices"]:
        raise ValidationError(
            f"Invalid voice: {voice}. Must be one of {audiobook_cfg['voices']}"
        )
    if model not in audiobook_cfg["models"]:
        raise ValidationError(
            f"Invalid model: {model}. Must be one of {sorted(audiobook_cfg['models'])}"
        )


def validate_chapter_number(chapter_number: Any, total_chapters: Optional[int] = None) -> int:
    if not isinstance(chapter_number, int) or isinstance(chapter_number, bool) or chapter_number < 1:
        raise ValidationError(f"Chapter number must be a positive integer, got: {chapter_number}")
    if total_chapters is not None and chapter_number > total_chapters:
        raise ValidationError(
            f"Chapter {chapter_number} is out of range (book has {total_chapters} chapters)"
        )
    return chapter_number


def validate_image_upload(filename: str, data: bytes, max_bytes: int = 10 * 1024 * 1024) -> str:
    """Check an uploaded image and return its lowercase extension."""
    ext = os.path.splitext(filename or "")[1].lower()
    if ext not in IMAGE_EXTENSIONS:
        raise ValidationError(
            f"Unsupported image type: {ext or 'none'}. Allowed: {sorted(IMAGE_EXTENSIONS)}"
        )
    if not data:
        raise ValidationError("Uploaded image is empty")
    if len(data) > max_bytes:
        raise ValidationError(f"Uploaded image exceeds {max_bytes} bytes")
    return ext


def validate_audio_asset(asset: str) -> str:
    if asset not in AUDIO_ASSETS:
        raise ValidationError(f"Unknown audio asset: {asset}. Must be one of {list(AUDIO_ASSETS)}")
    return asset
