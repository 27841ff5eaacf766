"""
Generation scheduler for Bookgen Agent.

Turns a start request into a pending generation job, and drives claimed
jobs through outline generation and then every chapter in ascending
order. Progress is persisted after each chapter so a crash or failure
loses at most the chapter in flight; a requeued job skips everything
that is already complete.
"""

import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from bookgen_agent import credits
from bookgen_agent.chapter_pipeline import run_chapter
from bookgen_agent.db_manager import (
    claim_next_job,
    create_job,
    get_latest_job_for_book,
    get_outline,
    record_token_usage,
    release_expired_leases,
    renew_lease,
    require_book,
    require_job,
    save_outline,
    set_book_status,
    set_job_progress,
    update_book,
    update_job_status,
)
from bookgen_agent.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    UpstreamGenerationFailure,
)
from bookgen_agent.generators import Collaborators
from bookgen_agent.models import JOB_TERMINAL_STATUSES, Book, Outline, RequestContext
from bookgen_agent.prompts import (
    book_variables,
    chapter_count_hint,
    outline_motifs,
    outline_summary,
    parse_json_content,
    parse_outline,
    render_prompt,
    wants_json,
)
from bookgen_agent.utils.logger import get_logger

logger = get_logger(__name__)

STARTABLE_BOOK_STATUSES = ("draft", "failed")


class LeaseLost(Exception):
    """The worker no longer holds the job it is driving."""


def _renew(keep_alive: Optional[Callable[[], bool]], job_id: Optional[int]) -> None:
    if keep_alive is not None and not keep_alive():
        raise LeaseLost(f"Lease on job {job_id} was lost")


def start_generation(db_path: str, ctx: RequestContext, book_id: str, cfg: Dict[str, Any]):
    """Create a pending generation job for a book.

    Order of checks: ownership, book status, existing active job, credit
    gate. Nothing is written unless all of them pass.

    Args:
        db_path: Path to SQLite database file.
        ctx: Requesting user.
        book_id: Book to generate.
        cfg: Global config.

    Returns:
        The new pending job.

    Raises:
        NotFoundError: If the book does not exist or is not the caller's.
        ConflictError: If the book already has an active job.
        InvalidTransitionError: If the book is complete or published.
        InsufficientCreditsError: If the caller is out of credits.
    """
    book = require_book(db_path, book_id)
    if book.user_id != ctx.user_id and not ctx.is_admin:
        raise NotFoundError(f"Book {book_id} not found")

    latest = get_latest_job_for_book(db_path, book_id)
    if latest is not None and latest.status not in JOB_TERMINAL_STATUSES:
        raise ConflictError(f"Book {book_id} already has job {latest.id} in {latest.status}")
    if book.status not in STARTABLE_BOOK_STATUSES:
        raise InvalidTransitionError(
            f"Generation can only start from draft or failed, book is {book.status}",
            book.status, "generating"
        )

    outline = get_outline(db_path, book_id)
    total_chapters = outline.total_chapters if outline else book.planned_chapter_count()

    credit_cfg = cfg["credits"]
    credits.reserve(db_path, ctx, credit_cfg["generation_cost"], credit_cfg["quota_bound_roles"])
    try:
        job_id = create_job(db_path, book_id, total_chapters)
    except ConflictError:
        credits.refund(db_path, ctx, credit_cfg["generation_cost"], credit_cfg["quota_bound_roles"])
        raise

    set_book_status(db_path, book_id, "generating")
    logger.info(f"[SCHEDULER] Queued job {job_id} for book {book_id} ({total_chapters} chapters)")
    return require_job(db_path, job_id)


def _generate_json(db_path: str, book: Book, job_id: int, collaborators: Collaborators,
                   prompts: Dict[str, Dict[str, Any]], name: str,
                   variables: Dict[str, Any]) -> Dict[str, Any]:
    prompt = render_prompt(prompts, name, variables)
    result = collaborators.outline_text.generate(prompt, {"json": wants_json(prompts, name)})
    record_token_usage(db_path, book.id, job_id, name, result.usage, model=result.model)
    return parse_json_content(result.content, name)


def fetch_news_context(db_path: str, book: Book, job_id: int, collaborators: Collaborators,
                       prompts: Dict[str, Dict[str, Any]]) -> str:
    """Recent-news digest for books that ask for it. Failures are not fatal."""
    if not book.context.use_news_search or collaborators.news is None:
        return ""

    variables = book_variables(book)
    variables["NEWS_TOPICS"] = ", ".join(book.context.news_topics)
    try:
        result = collaborators.news.generate(render_prompt(prompts, "news_search", variables))
    except UpstreamGenerationFailure as e:
        logger.warning(f"[SCHEDULER] News search failed for book {book.id}, continuing without: {e}")
        return ""

    record_token_usage(db_path, book.id, job_id, "news_search", result.usage, model=result.model)
    return result.content


def generate_outline(db_path: str, book: Book, job, collaborators: Collaborators,
                     prompts: Dict[str, Dict[str, Any]], news_context: str = "",
                     keep_alive: Optional[Callable[[], bool]] = None) -> Outline:
    """Generate style guide, art direction and outline, then the book extras.

    Moves the job ``generating_outline -> outline_complete``. The outline
    may grow the job's chapter total but never shrink it. ``keep_alive`` is
    called after the outline is saved and before each extra to renew the
    worker's lease; it returns False once the lease is lost.
    """
    variables = book_variables(book)
    style_guide = _generate_json(db_path, book, job.id, collaborators, prompts,
                                 "style_guide", variables)
    art_direction = _generate_json(db_path, book, job.id, collaborators, prompts,
                                   "art_direction", variables)

    variables.update({
        "STYLE_GUIDE": style_guide,
        "ART_DIRECTION": art_direction,
        "CHAPTER_COUNT_HINT": chapter_count_hint(job.total_chapters),
        "CURRENT_TRENDS": f"Current trends:\n{news_context}" if news_context else "",
    })
    data = _generate_json(db_path, book, job.id, collaborators, prompts, "outline", variables)
    outline = parse_outline(book.id, data, style_guide, art_direction, job.total_chapters)

    save_outline(db_path, outline)
    set_job_progress(db_path, job.id, 0, total_chapters=outline.total_chapters)
    update_job_status(db_path, job.id, "outline_complete", expected="generating_outline")
    logger.info(f"[SCHEDULER] Outline saved for book {book.id} ({outline.total_chapters} chapters)")
    _renew(keep_alive, job.id)

    generate_book_extras(db_path, book, job.id, outline, collaborators, prompts, keep_alive)
    return outline


def generate_book_extras(db_path: str, book: Book, job_id: Optional[int], outline: Outline,
                         collaborators: Collaborators,
                         prompts: Dict[str, Dict[str, Any]],
                         keep_alive: Optional[Callable[[], bool]] = None) -> None:
    """Cover image prompt, prologue and epilogue.

    Each is generated only when missing. A failure is logged and skipped;
    the book can be published without them.
    """
    variables = book_variables(book)
    variables.update({
        "STYLE_GUIDE": outline.style_guide,
        "ART_DIRECTION": outline.art_direction,
        "OUTLINE_SUMMARY": outline_summary(outline),
        "VISUAL_MOTIFS": outline_motifs(outline),
    })

    extras = (
        ("cover_image_prompt", "cover_image_prompt", None),
        ("prologue", "prologue", "prologue_prompt"),
        ("epilogue", "epilogue", "epilogue_prompt"),
    )
    for template, field, prompt_field in extras:
        if getattr(book, field):
            continue
        _renew(keep_alive, job_id)
        prompt = render_prompt(prompts, template, variables)
        try:
            result = collaborators.outline_text.generate(prompt)
        except UpstreamGenerationFailure as e:
            logger.warning(f"[SCHEDULER] {template} failed for book {book.id}, skipping: {e}")
            continue

        fields = {field: result.content}
        if prompt_field:
            fields[prompt_field] = prompt
        update_book(db_path, book.id, **fields)
        record_token_usage(db_path, book.id, job_id, template, result.usage, model=result.model)


def _fail_job(db_path: str, job_id: int, book_id: str, error: str) -> None:
    try:
        update_job_status(db_path, job_id, "failed", error=error)
    except InvalidTransitionError as e:
        # Lease recovery may have failed the job already
        logger.warning(f"[SCHEDULER] Could not mark job {job_id} failed: {e}")
    set_book_status(db_path, book_id, "failed")


def process_generation_job(db_path: str, job, cfg: Dict[str, Any],
                           collaborators: Collaborators, prompts: Dict[str, Dict[str, Any]],
                           worker_id: str) -> bool:
    """Drive a claimed job to ``complete`` or ``failed``.

    Args:
        db_path: Path to SQLite database file.
        job: Claimed job (generating_outline or generating_chapters).
        cfg: Global config.
        collaborators: Generators to call.
        prompts: Prompt templates.
        worker_id: Lease holder.

    Returns:
        True if the job completed.
    """
    lease_seconds = cfg["worker"]["lease_seconds"]
    book = require_book(db_path, job.book_id)

    def keep_alive() -> bool:
        return renew_lease(db_path, job.id, worker_id, lease_seconds)

    try:
        news_context = fetch_news_context(db_path, book, job.id, collaborators, prompts)

        if job.status == "generating_outline":
            logger.info(f"[SCHEDULER] Job {job.id}: generating outline")
            outline = generate_outline(db_path, book, job, collaborators, prompts, news_context,
                                       keep_alive)
            update_job_status(db_path, job.id, "generating_chapters", expected="outline_complete")
            book = require_book(db_path, book.id)
        else:
            outline = get_outline(db_path, book.id)
            if outline is None:
                raise UpstreamGenerationFailure(f"Book {book.id} has no outline to resume from")

        total = max(job.total_chapters, outline.total_chapters)
        for chapter_number in range(1, total + 1):
            logger.info(f"[SCHEDULER] Job {job.id}: chapter {chapter_number}/{total}")
            run_chapter(db_path, book, outline, chapter_number, collaborators, prompts, cfg,
                        job_id=job.id, news_context=news_context)
            set_job_progress(db_path, job.id, chapter_number)

            if not keep_alive():
                logger.warning(f"[SCHEDULER] Job {job.id}: lease lost, stopping")
                return False

        update_job_status(db_path, job.id, "complete", expected="generating_chapters")
        set_book_status(db_path, book.id, "complete")
        logger.info(f"[SCHEDULER] Job {job.id} complete: \"{book.title}\" ({total} chapters)")
        return True

    except LeaseLost:
        logger.warning(f"[SCHEDULER] Job {job.id}: lease lost during outline, stopping")
        return False
    except Exception as e:
        logger.error(f"[SCHEDULER] Job {job.id} failed: {e}")
        _fail_job(db_path, job.id, book.id, str(e))
        return False


def run_once(cfg: Dict[str, Any], db_path: str, worker_id: str,
             collaborators: Collaborators, prompts: Dict[str, Dict[str, Any]]) -> bool:
    """Run one iteration of the scheduler loop.

    Releases expired leases, claims the next pending job and drives it.

    Returns:
        True if a job was claimed, False if idle.
    """
    released = release_expired_leases(db_path, datetime.now())
    if released > 0:
        logger.info(f"[SCHEDULER] Released {released} job(s) with expired leases")

    job = claim_next_job(db_path, worker_id, cfg["worker"]["lease_seconds"])
    if job is None:
        logger.debug("[SCHEDULER] No pending jobs")
        return False

    logger.info(f"[SCHEDULER] Worker {worker_id} claimed job {job.id} ({job.status})")
    process_generation_job(db_path, job, cfg, collaborators, prompts, worker_id)
    return True


def run_loop(cfg: Dict[str, Any], db_path: str, worker_id: str,
             collaborators: Collaborators, prompts: Dict[str, Dict[str, Any]],
             stop_event=None) -> None:
    """Poll for jobs until ``stop_event`` is set."""
    poll_interval = cfg["worker"]["poll_interval_ms"] / 1000.0
    logger.info(f"[SCHEDULER LOOP] Worker {worker_id} polling every {poll_interval}s ({db_path})")

    while stop_event is None or not stop_event.is_set():
        try:
            did_work = run_once(cfg, db_path, worker_id, collaborators, prompts)
        except KeyboardInterrupt:
            logger.info("[SCHEDULER LOOP] Interrupted by user")
            break
        except Exception as e:
            logger.error(f"[SCHEDULER LOOP] Error in scheduler loop: {e}")
            did_work = False

        if not did_work:
            if stop_event:
                stop_event.wait(poll_interval)
            else:
                time.sleep(poll_interval)
