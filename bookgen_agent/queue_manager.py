"""
Queue manager for Bookgen Agent.

Administrative queue operations on generation jobs: requeue a failed or
paused job, and put a pending job on hold.
"""

from bookgen_agent.db_manager import (
    get_latest_job_for_book,
    get_outline,
    list_chapters,
    require_book,
    require_job,
    set_book_status,
    update_job_status,
)
from bookgen_agent.errors import InvalidTransitionError
from bookgen_agent.utils.logger import get_logger

logger = get_logger(__name__)

REQUEUEABLE_STATUSES = ("failed", "paused")
REQUEUEABLE_BOOK_STATUSES = ("failed", "generating")


def requeue_job(db_path: str, job_id: int):
    """Reset a failed or paused job to pending.

    Finished chapters are kept; the scheduler skips them on replay, so a
    job that failed at chapter k resumes at chapter k. The book goes back
    to ``generating``.

    Only the book's latest job can be requeued, and only while the book is
    ``failed`` or ``generating``; a completed or published book is never
    pulled back into generation.

    Args:
        db_path: Path to SQLite database file.
        job_id: Job to requeue.

    Returns:
        The job as it is now stored.

    Raises:
        NotFoundError: If the job does not exist.
        InvalidTransitionError: If the job is not failed or paused, is not the
            book's latest job, or the book has moved on to complete or published.
        ConflictError: If the book already has another active job.

    Examples:
        >>> requeue_job("db.sqlite", 7)
    """
    job = require_job(db_path, job_id)
    if job.status not in REQUEUEABLE_STATUSES:
        raise InvalidTransitionError(
            f"Only failed or paused jobs can be requeued, job {job_id} is {job.status}",
            job.status, "pending"
        )

    latest = get_latest_job_for_book(db_path, job.book_id)
    if latest.id != job.id:
        raise InvalidTransitionError(
            f"Job {job_id} was superseded by job {latest.id} for book {job.book_id}",
            job.status, "pending"
        )
    book = require_book(db_path, job.book_id)
    if book.status not in REQUEUEABLE_BOOK_STATUSES:
        raise InvalidTransitionError(
            f"Book {book.id} is {book.status}, job {job_id} can no longer be requeued",
            job.status, "pending"
        )

    update_job_status(db_path, job_id, "pending", expected=job.status)
    set_book_status(db_path, job.book_id, "generating")

    done = [c.chapter_number for c in list_chapters(db_path, job.book_id) if c.status == "complete"]
    resume_from = "outline" if get_outline(db_path, job.book_id) is None else f"chapter {len(done) + 1}"
    logger.info(f"[QUEUE] Requeued job {job_id} for book {job.book_id}, resuming at {resume_from}")

    return require_job(db_path, job_id)


def pause_job(db_path: str, job_id: int):
    """Hold a pending job so workers skip it until it is requeued.

    Raises:
        InvalidTransitionError: If the job is not pending.
    """
    update_job_status(db_path, job_id, "paused", expected="pending")
    logger.info(f"[QUEUE] Paused job {job_id}")
    return require_job(db_path, job_id)
