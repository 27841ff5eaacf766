"""
Audiobook orchestrator for Bookgen Agent.

Narrates a finished book with a text-to-speech collaborator:

  - ``estimate_cost`` is a pure character count times the model's rate.
  - ``start_audiobook`` creates a job, or resumes the latest one when the
    voice and model match.
  - ``process_audiobook_job`` synthesizes prologue, chapters and epilogue
    in order, skipping anything already recorded in the job's progress.
    Cancellation is checked before every unit.
  - Single chapters and the auxiliary assets (opening and closing
    credits, retail sample) can be generated outside the main loop.
"""

import os
import re
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from bookgen_agent.db_manager import (
    claim_next_audiobook_job,
    create_audiobook_job,
    get_audiobook_job,
    get_chapter,
    get_latest_audiobook_job,
    list_chapters,
    record_audiobook_progress,
    release_expired_leases,
    renew_lease,
    require_book,
    update_audiobook_status,
)
from bookgen_agent.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from bookgen_agent.generators import SpeechSynthesizer
from bookgen_agent.models import AUDIOBOOK_TERMINAL_STATUSES, Book
from bookgen_agent.utils.file_utils import atomic_write_bytes
from bookgen_agent.utils.logger import get_logger
from bookgen_agent.utils.validation import validate_audio_asset, validate_voice_and_model

logger = get_logger(__name__)

MAX_CHARS_PER_REQUEST = 4000
SEGMENTS = ("prologue", "epilogue")
CANCELLED_MESSAGE = "Job cancelled by user"


def clean_text_for_tts(text: str) -> str:
    """Strip Markdown so the narrator does not read syntax aloud."""
    text = re.sub(r"```.*?```", "", text, flags=re.DOTALL)
    text = re.sub(r"^#+\s+", "", text, flags=re.MULTILINE)
    text = re.sub(r"\*\*(.*?)\*\*", r"\1", text)
    text = re.sub(r"\*(.*?)\*", r"\1", text)
    text = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", text)
    text = re.sub(r"`([^`]+)`", r"\1", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    return text.strip()


def _split_sentences(text: str) -> List[str]:
    parts = re.split(r"(?<=[.!?])\s+", text)
    return [p.strip() for p in parts if p.strip()]


def split_text_into_chunks(text: str, max_chars: int = MAX_CHARS_PER_REQUEST) -> List[str]:
    """Split cleaned text into request-sized chunks.

    Breaks at paragraphs first, then sentences, then words. A single word
    longer than ``max_chars`` is hard-split.

    Examples:
        >>> split_text_into_chunks("One. Two.", max_chars=5)
        ['One.', 'Two.']
    """
    text = clean_text_for_tts(text)
    if len(text) <= max_chars:
        return [text] if text else []

    pieces: List[str] = []
    for paragraph in [p.strip() for p in text.split("\n\n") if p.strip()]:
        if len(paragraph) <= max_chars:
            pieces.append(paragraph)
            continue
        for sentence in _split_sentences(paragraph):
            if len(sentence) <= max_chars:
                pieces.append(sentence)
                continue
            words = sentence.split()
            current = ""
            for word in words:
                while len(word) > max_chars:
                    if current:
                        pieces.append(current)
                        current = ""
                    pieces.append(word[:max_chars])
                    word = word[max_chars:]
                if current and len(current) + 1 + len(word) > max_chars:
                    pieces.append(current)
                    current = word
                else:
                    current = f"{current} {word}" if current else word
            if current:
                pieces.append(current)

    chunks: List[str] = []
    current = ""
    for piece in pieces:
        if current and len(current) + 2 + len(piece) > max_chars:
            chunks.append(current)
            current = piece
        else:
            current = f"{current}\n\n{piece}" if current else piece
    if current:
        chunks.append(current)
    return chunks


def estimate_cost(book: Book, chapters: List[Any], model: str,
                  rates: Dict[str, float]) -> Dict[str, Any]:
    """Estimate narration cost.

    Pure: the same chapters and rate table always give the same result.
    Characters are counted after Markdown cleaning. Prologue and epilogue
    count towards the total but are not chapters in the breakdown.

    Args:
        book: Book (prologue and epilogue).
        chapters: Chapter records; chapters without text are ignored.
        model: TTS model name.
        rates: USD per 1,000 characters by model.

    Returns:
        Dictionary with total_characters, estimated_cost, chapter_breakdown,
        prologue_characters and epilogue_characters.

    Raises:
        ValidationError: If the model has no rate.
    """
    if model not in rates:
        raise ValidationError(f"No rate configured for model {model}")
    rate = rates[model]

    def cost_of(characters: int) -> float:
        return round(characters / 1000 * rate, 4)

    prologue_characters = len(clean_text_for_tts(book.prologue)) if book.prologue else 0
    epilogue_characters = len(clean_text_for_tts(book.epilogue)) if book.epilogue else 0

    breakdown = []
    for chapter in sorted(chapters, key=lambda c: c.chapter_number):
        text = getattr(chapter, "text", None)
        if not text:
            continue
        characters = len(clean_text_for_tts(text))
        breakdown.append({
            "chapter_number": chapter.chapter_number,
            "characters": characters,
            "cost": cost_of(characters),
        })

    total = prologue_characters + epilogue_characters + sum(c["characters"] for c in breakdown)
    return {
        "model": model,
        "total_characters": total,
        "estimated_cost": cost_of(total),
        "chapter_breakdown": breakdown,
        "prologue_characters": prologue_characters,
        "epilogue_characters": epilogue_characters,
    }


def estimate(db_path: str, book_id: str, cfg: Dict[str, Any], voice: Optional[str] = None,
             model: Optional[str] = None) -> Dict[str, Any]:
    audiobook_cfg = cfg["audiobook"]
    voice = voice or audiobook_cfg["default_voice"]
    model = model or audiobook_cfg["default_model"]
    validate_voice_and_model(voice, model, audiobook_cfg)

    book = require_book(db_path, book_id)
    result = estimate_cost(book, list_chapters(db_path, book_id), model, audiobook_cfg["models"])
    result["voice"] = voice
    return result


def audio_asset_path(cfg: Dict[str, Any], book_id: str, name: str) -> str:
    """Where an audio unit for a book is stored (``chapter_3``, ``prologue``...)."""
    return os.path.join(cfg["paths"]["audio"], book_id, f"{name}.mp3")


def _unit_name(key: Union[int, str]) -> str:
    return f"chapter_{key}" if isinstance(key, int) else key


def synthesize(speech: SpeechSynthesizer, text: str, voice: str, model: str,
               cfg: Dict[str, Any]) -> Tuple[bytes, int, float]:
    """Synthesize ``text`` chunk by chunk.

    Returns:
        (audio bytes, characters narrated, cost)
    """
    audiobook_cfg = cfg["audiobook"]
    chunks = split_text_into_chunks(text, audiobook_cfg["max_chars_per_request"])
    if not chunks:
        raise ValidationError("Nothing to narrate after cleaning the text")

    audio = b""
    for chunk in chunks:
        result = speech.generate(chunk, {"voice": voice, "model": model})
        audio += result.content

    characters = sum(len(c) for c in chunks)
    cost = round(characters / 1000 * audiobook_cfg["models"][model], 6)
    return audio, characters, cost


def start_audiobook(db_path: str, book_id: str, cfg: Dict[str, Any],
                    voice: Optional[str] = None, model: Optional[str] = None,
                    force_regenerate: bool = False):
    """Queue narration of a book.

    The latest job is resumed (set back to pending) when it has the same
    voice and model; otherwise a new job is created. With
    ``force_regenerate`` the resumed job's progress is cleared so every
    unit is narrated again.

    Returns:
        The pending audiobook job.

    Raises:
        ConflictError: If a job for the book is pending or generating.
        ValidationError: On an unknown voice or model, or a book with no text.
    """
    audiobook_cfg = cfg["audiobook"]
    voice = voice or audiobook_cfg["default_voice"]
    model = model or audiobook_cfg["default_model"]
    validate_voice_and_model(voice, model, audiobook_cfg)

    book = require_book(db_path, book_id)
    chapters = [c for c in list_chapters(db_path, book_id) if getattr(c, "text", None)]
    if not chapters:
        raise ValidationError(f"Book {book_id} has no chapter text to narrate")

    latest = get_latest_audiobook_job(db_path, book_id)
    if latest is not None and latest.status not in AUDIOBOOK_TERMINAL_STATUSES:
        raise ConflictError(f"Book {book_id} already has audiobook job {latest.id} ({latest.status})")

    cost = estimate_cost(book, chapters, model, audiobook_cfg["models"])["estimated_cost"]

    if latest is not None and latest.voice == voice and latest.model == model:
        fields: Dict[str, Any] = {
            "estimated_cost": cost,
            "total_chapters": len(chapters),
            "force_regenerate": force_regenerate,
        }
        if force_regenerate:
            fields.update({"progress": {}, "segments": {}, "current_chapter": 0})
        update_audiobook_status(db_path, latest.id, "pending", expected=latest.status, **fields)
        logger.info(f"[AUDIOBOOK] Resuming job {latest.id} for book {book_id} "
                    f"(force_regenerate={force_regenerate})")
        return get_audiobook_job(db_path, latest.id)

    job_id = create_audiobook_job(db_path, book_id, voice, model, cost, len(chapters),
                                  force_regenerate=force_regenerate)
    logger.info(f"[AUDIOBOOK] Queued job {job_id} for book {book_id} ({voice}, {model}, ~${cost})")
    return get_audiobook_job(db_path, job_id)


def process_audiobook_job(db_path: str, job, cfg: Dict[str, Any], speech: SpeechSynthesizer,
                          worker_id: str) -> bool:
    """Narrate a claimed job until done, cancelled or failed.

    Returns:
        True if the job completed.
    """
    book = require_book(db_path, job.book_id)
    lease_seconds = cfg["worker"]["lease_seconds"]

    units: List[Tuple[Union[int, str], str]] = []
    if book.prologue:
        units.append(("prologue", book.prologue))
    for chapter in list_chapters(db_path, book.id):
        if getattr(chapter, "text", None):
            units.append((chapter.chapter_number, chapter.text))
    if book.epilogue:
        units.append(("epilogue", book.epilogue))

    try:
        for key, text in units:
            current = get_audiobook_job(db_path, job.id)
            if current.status != "generating":
                logger.info(f"[AUDIOBOOK] Job {job.id} is {current.status}, stopping before {_unit_name(key)}")
                return False

            done = current.progress if isinstance(key, int) else current.segments
            if key in done:
                logger.debug(f"[AUDIOBOOK] Job {job.id}: {_unit_name(key)} already narrated")
                continue

            audio, characters, cost = synthesize(speech, text, job.voice, job.model, cfg)
            path = atomic_write_bytes(audio_asset_path(cfg, book.id, _unit_name(key)), audio)

            recorded = record_audiobook_progress(
                db_path, job.id, key, path, cost,
                current_chapter=key if isinstance(key, int) else None,
            )
            if not recorded:
                logger.info(f"[AUDIOBOOK] Job {job.id} changed state during {_unit_name(key)}, stopping")
                return False
            logger.info(f"[AUDIOBOOK] Job {job.id}: {_unit_name(key)} done ({characters} chars, ${cost})")

            renew_lease(db_path, job.id, worker_id, lease_seconds, table="audiobook_jobs")

        update_audiobook_status(db_path, job.id, "complete", expected="generating")
        logger.info(f"[AUDIOBOOK] Job {job.id} complete for book {book.id}")
        return True

    except Exception as e:
        logger.error(f"[AUDIOBOOK] Job {job.id} failed: {e}")
        try:
            update_audiobook_status(db_path, job.id, "failed", expected="generating", error=str(e))
        except InvalidTransitionError as transition_error:
            logger.warning(f"[AUDIOBOOK] Could not mark job {job.id} failed: {transition_error}")
        return False


def cancel_audiobook_job(db_path: str, book_id: str):
    """Cancel the book's latest audiobook job.

    A unit that is already being synthesized finishes, but its result is
    not recorded and no further unit starts.

    Raises:
        NotFoundError: If the book has no audiobook job.
        InvalidTransitionError: If the job is complete, failed or already cancelled.
    """
    job = get_latest_audiobook_job(db_path, book_id)
    if job is None:
        raise NotFoundError(f"Book {book_id} has no audiobook job")
    if job.status not in ("pending", "generating"):
        raise InvalidTransitionError(
            f"Audiobook job {job.id} is {job.status} and cannot be cancelled", job.status, "cancelled"
        )

    update_audiobook_status(db_path, job.id, "cancelled", expected=job.status, error=CANCELLED_MESSAGE)
    logger.info(f"[AUDIOBOOK] Cancelled job {job.id} for book {book_id}")
    return get_audiobook_job(db_path, job.id)


def requeue_audiobook_job(db_path: str, job_id: int):
    """Set a failed or cancelled audiobook job back to pending, keeping its progress."""
    job = get_audiobook_job(db_path, job_id)
    if job is None:
        raise NotFoundError(f"Audiobook job {job_id} not found")
    if job.status not in ("failed", "cancelled"):
        raise InvalidTransitionError(
            f"Only failed or cancelled audiobook jobs can be requeued, job {job_id} is {job.status}",
            job.status, "pending"
        )
    update_audiobook_status(db_path, job_id, "pending", expected=job.status)
    return get_audiobook_job(db_path, job_id)


def regenerate_chapter_audio(db_path: str, book_id: str, chapter_number: int,
                             cfg: Dict[str, Any], speech: SpeechSynthesizer) -> Dict[str, Any]:
    """Narrate one chapter again with the latest job's voice and model.

    Only allowed once the latest job is terminal. The job's progress entry
    and actual cost are updated; its status is left alone.

    Raises:
        NotFoundError: If there is no audiobook job or no such chapter.
        ConflictError: If the latest job is still pending or generating.
        ValidationError: If the chapter has no text.
    """
    job = get_latest_audiobook_job(db_path, book_id)
    if job is None:
        raise NotFoundError(f"Book {book_id} has no audiobook job")
    if job.status not in AUDIOBOOK_TERMINAL_STATUSES:
        raise ConflictError(f"Audiobook job {job.id} is {job.status}; wait for it to finish")

    chapter = get_chapter(db_path, book_id, chapter_number)
    if chapter is None:
        raise NotFoundError(f"Chapter {chapter_number} of book {book_id} not found")
    text = getattr(chapter, "text", None)
    if not text:
        raise ValidationError(f"Chapter {chapter_number} has no text to narrate")

    audio, characters, cost = synthesize(speech, text, job.voice, job.model, cfg)
    path = atomic_write_bytes(audio_asset_path(cfg, book_id, _unit_name(chapter_number)), audio)
    record_audiobook_progress(db_path, job.id, chapter_number, path, cost, require_status=None)

    logger.info(f"[AUDIOBOOK] Regenerated chapter {chapter_number} of book {book_id}")
    return {"chapter_number": chapter_number, "audio_url": path,
            "characters": characters, "cost": cost}


def retail_sample_text(chapters: List[Any], max_characters: int) -> str:
    """Opening of chapter 2 (chapter 1 for single-chapter books), cut at a sentence end."""
    with_text = {c.chapter_number: c.text for c in chapters if getattr(c, "text", None)}
    source = with_text.get(2) or with_text.get(1)
    if not source:
        raise ValidationError("No chapter text available for a retail sample")

    text = clean_text_for_tts(source)
    if len(text) <= max_characters:
        return text

    excerpt = text[:max_characters]
    cut = max(excerpt.rfind(". "), excerpt.rfind("! "), excerpt.rfind("? "))
    if cut > 0:
        return excerpt[:cut + 1]
    return excerpt.rsplit(" ", 1)[0]


def asset_text(asset: str, book: Book, chapters: List[Any], cfg: Dict[str, Any]) -> str:
    if asset == "opening_credits":
        return f"This book is {book.title}, narrated under direction of the author."
    if asset == "closing_credits":
        return f"This has been {book.title}. Thank you for listening."
    return retail_sample_text(chapters, cfg["audiobook"]["retail_sample_characters"])


def generate_audio_asset(db_path: str, book_id: str, asset: str, cfg: Dict[str, Any],
                         speech: SpeechSynthesizer, voice: Optional[str] = None,
                         model: Optional[str] = None) -> Dict[str, Any]:
    """Generate opening credits, closing credits or the retail sample.

    Voice and model default to the latest job's, then to the configured
    defaults. The asset is not recorded in any job's progress.
    """
    validate_audio_asset(asset)
    audiobook_cfg = cfg["audiobook"]
    latest = get_latest_audiobook_job(db_path, book_id)
    voice = voice or (latest.voice if latest else audiobook_cfg["default_voice"])
    model = model or (latest.model if latest else audiobook_cfg["default_model"])
    validate_voice_and_model(voice, model, audiobook_cfg)

    book = require_book(db_path, book_id)
    text = asset_text(asset, book, list_chapters(db_path, book_id), cfg)

    audio, characters, cost = synthesize(speech, text, voice, model, cfg)
    path = atomic_write_bytes(audio_asset_path(cfg, book_id, asset), audio)

    logger.info(f"[AUDIOBOOK] Generated {asset} for book {book_id}")
    return {"asset": asset, "audio_url": path, "characters": characters, "cost": cost,
            "voice": voice, "model": model}


def generate_opening_credits(db_path: str, book_id: str, cfg: Dict[str, Any],
                             speech: SpeechSynthesizer, **kwargs) -> Dict[str, Any]:
    return generate_audio_asset(db_path, book_id, "opening_credits", cfg, speech, **kwargs)


def generate_closing_credits(db_path: str, book_id: str, cfg: Dict[str, Any],
                             speech: SpeechSynthesizer, **kwargs) -> Dict[str, Any]:
    return generate_audio_asset(db_path, book_id, "closing_credits", cfg, speech, **kwargs)


def generate_retail_sample(db_path: str, book_id: str, cfg: Dict[str, Any],
                           speech: SpeechSynthesizer, **kwargs) -> Dict[str, Any]:
    return generate_audio_asset(db_path, book_id, "retail_sample", cfg, speech, **kwargs)


def run_audiobook_once(cfg: Dict[str, Any], db_path: str, worker_id: str,
                       speech: SpeechSynthesizer) -> bool:
    released = release_expired_leases(db_path, datetime.now())
    if released > 0:
        logger.info(f"[AUDIOBOOK] Released {released} job(s) with expired leases")

    job = claim_next_audiobook_job(db_path, worker_id, cfg["worker"]["lease_seconds"])
    if job is None:
        return False

    logger.info(f"[AUDIOBOOK] Worker {worker_id} claimed job {job.id} for book {job.book_id}")
    process_audiobook_job(db_path, job, cfg, speech, worker_id)
    return True


def run_audiobook_loop(cfg: Dict[str, Any], db_path: str, worker_id: str,
                       speech: SpeechSynthesizer, stop_event=None) -> None:
    poll_interval = cfg["worker"]["poll_interval_ms"] / 1000.0
    logger.info(f"[AUDIOBOOK LOOP] Worker {worker_id} polling every {poll_interval}s")

    while stop_event is None or not stop_event.is_set():
        try:
            did_work = run_audiobook_once(cfg, db_path, worker_id, speech)
        except KeyboardInterrupt:
            logger.info("[AUDIOBOOK LOOP] Interrupted by user")
            break
        except Exception as e:
            logger.error(f"[AUDIOBOOK LOOP] Error in audiobook loop: {e}")
            did_work = False

        if not did_work:
            if stop_event:
                stop_event.wait(poll_interval)
            else:
                time.sleep(poll_interval)
