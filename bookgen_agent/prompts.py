"""
Prompt rendering and response parsing for Bookgen Agent.

Templates live in ``config/prompts.yaml`` and use ``{{NAME}}``
placeholders. This module fills them from a Book and its Outline, and
turns model responses (JSON outlines, chapter text) into typed records.
"""

import json
import os
import re
from collections import Counter
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from bookgen_agent.errors import UpstreamGenerationFailure
from bookgen_agent.models import Book, Outline, OutlineChapter
from bookgen_agent.utils.config_loader import load_prompts


DEFAULT_PROMPTS_PATH = os.path.join(os.path.dirname(__file__), "config", "prompts.yaml")

KEYWORD_LIMIT = 10
KEYWORD_MIN_LENGTH = 4


def load_default_prompts() -> Dict[str, Dict[str, Any]]:
    return load_prompts(DEFAULT_PROMPTS_PATH)


def render_prompt(prompts: Dict[str, Dict[str, Any]], name: str,
                  variables: Dict[str, Any]) -> str:
    """Fill a named template.

    Args:
        prompts: Templates from load_prompts.
        name: Template key, e.g. ``chapter_text``.
        variables: Values keyed by placeholder name without braces.

    Returns:
        Rendered prompt text.

    Raises:
        ValueError: If the template is unknown or a required variable is missing.

    Examples:
        >>> render_prompt(prompts, "news_search", {"NICHE": "Pets", "NEWS_TOPICS": "dogs"})
    """
    if name not in prompts:
        raise ValueError(f"Unknown prompt template: {name}")

    entry = prompts[name]
    missing = [v for v in entry["required_variables"] if v not in variables]
    if missing:
        raise ValueError(f"Prompt {name} missing variables: {missing}")

    text = entry["template"]
    for key, value in variables.items():
        if not isinstance(value, str):
            value = json.dumps(value, indent=2) if isinstance(value, (dict, list)) else str(value)
        text = text.replace("{{" + key + "}}", value)
    return text.strip()


def wants_json(prompts: Dict[str, Dict[str, Any]], name: str) -> bool:
    return bool(prompts.get(name, {}).get("json", False))


def display_name(value: str) -> str:
    """'childrens_picture_book' -> 'Childrens Picture Book'."""
    return value.replace("_", " ").title()


def book_variables(book: Book) -> Dict[str, str]:
    """Variables every template can use."""
    ctx = book.context
    lines = [f"Title: {book.title}"]
    if ctx.description:
        lines.append(f"Description: {ctx.description}")
    if ctx.target_audience:
        lines.append(f"Target audience: {ctx.target_audience}")
    if ctx.tone:
        lines.append(f"Tone: {ctx.tone}")
    if book.writing_style:
        lines.append(f"Writing style: {book.writing_style}")
    if ctx.additional_notes:
        lines.append(f"Notes: {ctx.additional_notes}")

    return {
        "BOOK_TYPE": display_name(book.book_type.value),
        "NICHE": display_name(book.niche.value),
        "BOOK_CONTEXT": "\n".join(lines),
    }


def word_range(sizes: Dict[str, List[int]], size: str) -> str:
    low, high = sizes[size]
    return f"{low}-{high}"


def chapter_count_hint(count: int) -> str:
    return f"The book must have exactly {count} chapters, numbered 1 to {count}."


def outline_summary(outline: Outline) -> str:
    return "\n".join(f"{c.chapter_number}. {c.title}: {c.summary}" for c in outline.chapters)


def outline_motifs(outline: Outline) -> str:
    motifs: List[str] = []
    for chapter in outline.chapters:
        for motif in chapter.visual_motifs:
            if motif not in motifs:
                motifs.append(motif)
    return ", ".join(motifs)


def count_words(text: str) -> int:
    return len(text.split())


def extract_keywords(text: str, limit: int = KEYWORD_LIMIT) -> List[str]:
    """Most frequent words of four or more letters, most frequent first.

    Ties keep first-appearance order.

    Examples:
        >>> extract_keywords("Calm breath. Calm mind. Breath again, calm.")
        ['calm', 'breath', 'mind', 'again']
    """
    words = re.findall(r"[a-z]{%d,}" % KEYWORD_MIN_LENGTH, text.lower())
    return [word for word, _ in Counter(words).most_common(limit)]


def parse_json_content(content: str, step: str) -> Dict[str, Any]:
    """Parse a JSON-mode response, tolerating a fenced code block."""
    cleaned = content.strip()
    fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", cleaned, re.DOTALL)
    if fenced:
        cleaned = fenced.group(1)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise UpstreamGenerationFailure(f"{step} returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise UpstreamGenerationFailure(f"{step} returned JSON that is not an object")
    return data


def parse_outline(book_id: str, data: Dict[str, Any], style_guide: Dict[str, Any],
                  art_direction: Dict[str, Any], expected_chapters: int) -> Outline:
    """Build an Outline from the model's JSON.

    Chapters are renumbered densely by their given order. Fewer chapters
    than planned is a generation failure; extra chapters are kept.

    Raises:
        UpstreamGenerationFailure: On a malformed or short outline.
    """
    raw_chapters = data.get("chapters")
    if not isinstance(raw_chapters, list) or not raw_chapters:
        raise UpstreamGenerationFailure("Outline response has no chapters")

    raw_chapters = sorted(
        raw_chapters,
        key=lambda c: c.get("chapterNumber", 0) if isinstance(c, dict) else 0,
    )

    chapters = []
    for index, raw in enumerate(raw_chapters, start=1):
        if not isinstance(raw, dict):
            raise UpstreamGenerationFailure(f"Outline chapter {index} is not an object")
        try:
            chapters.append(OutlineChapter(
                chapter_number=index,
                title=raw.get("title") or f"Chapter {index}",
                summary=raw.get("summary", ""),
                visual_motifs=raw.get("visualMotifs", []) or [],
                emotional_tone=raw.get("emotionalTone", "") or "",
                word_count_target=raw.get("wordCountTarget"),
            ))
        except PydanticValidationError as e:
            raise UpstreamGenerationFailure(f"Outline chapter {index} is malformed: {e}") from e

    if len(chapters) < expected_chapters:
        raise UpstreamGenerationFailure(
            f"Outline has {len(chapters)} chapters, expected {expected_chapters}"
        )

    return Outline(
        book_id=book_id,
        chapters=chapters,
        style_guide=style_guide,
        art_direction=art_direction,
    )


def previous_summary(outline: Outline, chapter_number: int) -> str:
    if chapter_number <= 1:
        return "This is the first chapter."
    previous: Optional[OutlineChapter] = outline.chapter(chapter_number - 1)
    return previous.summary if previous else ""
