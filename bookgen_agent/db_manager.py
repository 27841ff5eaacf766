"""
Database manager for Bookgen Agent.

Handles all SQLite operations: books, outlines, chapters, generation jobs,
audiobook jobs, token usage and users. Job claims are compare-and-swap
updates on ``status`` so any number of worker processes can share one
database file.
"""

import json
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from bookgen_agent.errors import ConflictError, InvalidTransitionError, NotFoundError
from bookgen_agent.models import (
    AUDIOBOOK_TRANSITIONS,
    JOB_TERMINAL_STATUSES,
    JOB_TRANSITIONS,
    Book,
    BookContext,
    Outline,
    RequestContext,
    StepUsage,
    TokenUsageSummary,
    audiobook_record,
    chapter_record,
    job_record,
    validate_transition,
)


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    role TEXT NOT NULL DEFAULT 'writer',
    book_credits INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS books (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    book_type TEXT NOT NULL,
    niche TEXT NOT NULL,
    writing_style TEXT,
    status TEXT NOT NULL DEFAULT 'draft',
    context TEXT NOT NULL DEFAULT '{}',
    cover_image_prompt TEXT,
    cover_image_url TEXT,
    prologue TEXT,
    prologue_prompt TEXT,
    epilogue TEXT,
    epilogue_prompt TEXT,
    publish_without_chapter_images INTEGER NOT NULL DEFAULT 0,
    published_at TEXT,
    publish_artifact_url TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS outlines (
    book_id TEXT PRIMARY KEY REFERENCES books(id),
    chapters TEXT NOT NULL,
    style_guide TEXT NOT NULL DEFAULT '{}',
    art_direction TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS generation_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    book_id TEXT NOT NULL REFERENCES books(id),
    status TEXT NOT NULL DEFAULT 'pending',
    current_chapter INTEGER NOT NULL DEFAULT 0,
    total_chapters INTEGER NOT NULL,
    error TEXT,
    worker_id TEXT,
    lease_expires_at TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_generation_jobs_one_active
    ON generation_jobs(book_id)
    WHERE status NOT IN ('complete', 'failed');

CREATE INDEX IF NOT EXISTS idx_generation_jobs_status
    ON generation_jobs(status, created_at);

CREATE TABLE IF NOT EXISTS chapters (
    book_id TEXT NOT NULL REFERENCES books(id),
    chapter_number INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    text TEXT,
    text_prompt TEXT,
    image_prompt TEXT,
    image_url TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    error TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (book_id, chapter_number)
);

CREATE TABLE IF NOT EXISTS token_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    book_id TEXT NOT NULL,
    job_id INTEGER,
    chapter_number INTEGER,
    step TEXT NOT NULL,
    prompt_units INTEGER NOT NULL DEFAULT 0,
    completion_units INTEGER NOT NULL DEFAULT 0,
    total_units INTEGER NOT NULL DEFAULT 0,
    cost REAL NOT NULL DEFAULT 0,
    model TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_token_usage_job ON token_usage(job_id);
CREATE INDEX IF NOT EXISTS idx_token_usage_chapter ON token_usage(book_id, chapter_number);

CREATE TABLE IF NOT EXISTS audiobook_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    book_id TEXT NOT NULL REFERENCES books(id),
    status TEXT NOT NULL DEFAULT 'pending',
    voice TEXT NOT NULL,
    model TEXT NOT NULL,
    progress TEXT NOT NULL DEFAULT '{}',
    segments TEXT NOT NULL DEFAULT '{}',
    current_chapter INTEGER NOT NULL DEFAULT 0,
    total_chapters INTEGER NOT NULL DEFAULT 0,
    estimated_cost REAL NOT NULL DEFAULT 0,
    actual_cost REAL NOT NULL DEFAULT 0,
    force_regenerate INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    worker_id TEXT,
    lease_expires_at TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_audiobook_jobs_one_active
    ON audiobook_jobs(book_id)
    WHERE status IN ('pending', 'generating');
"""

BOOK_FIELDS = (
    "title", "writing_style", "status", "context", "cover_image_prompt",
    "cover_image_url", "prologue", "prologue_prompt", "epilogue",
    "epilogue_prompt", "publish_without_chapter_images", "published_at",
    "publish_artifact_url",
)

CHAPTER_FIELDS = (
    "status", "text", "text_prompt", "image_prompt", "image_url", "metadata", "error",
)

JOB_FIELDS = ("current_chapter", "total_chapters", "worker_id", "lease_expires_at")

AUDIOBOOK_FIELDS = (
    "voice", "model", "progress", "segments", "current_chapter", "total_chapters",
    "estimated_cost", "actual_cost", "force_regenerate", "worker_id", "lease_expires_at",
)


def _now() -> str:
    return datetime.now().isoformat()


def configure_wal_mode(db_path: str) -> None:
    """Configure database for concurrent readers and a single writer.

    Args:
        db_path: Path to SQLite database file.
    """
    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA cache_size=10000")
        conn.execute("PRAGMA temp_store=MEMORY")
        conn.commit()


@contextmanager
def get_db_connection(db_path: str):
    """Context manager for database connections.

    Commits on success, rolls back on any exception and always closes.

    Args:
        db_path: Path to SQLite database file.

    Yields:
        Database connection with ``sqlite3.Row`` rows.
    """
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: str) -> None:
    """Create the schema. Safe to call on every start.

    Args:
        db_path: Path to SQLite database file.
    """
    db_dir = os.path.dirname(db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    configure_wal_mode(db_path)
    with get_db_connection(db_path) as conn:
        conn.executescript(SCHEMA)


# Users

def upsert_user(db_path: str, user_id: str, role: str = "writer",
                book_credits: int = 0) -> RequestContext:
    """Insert or replace a user's role and credit balance."""
    with get_db_connection(db_path) as conn:
        conn.execute("""
            INSERT INTO users (id, role, book_credits, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET role = excluded.role,
                                          book_credits = excluded.book_credits
        """, (user_id, role, book_credits, _now()))
    return RequestContext(user_id=user_id, role=role, book_credits=book_credits)


def get_user(db_path: str, user_id: str) -> Optional[RequestContext]:
    with get_db_connection(db_path) as conn:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    if not row:
        return None
    return RequestContext(user_id=row["id"], role=row["role"], book_credits=row["book_credits"])


# Books

def _book_from_row(row: sqlite3.Row) -> Book:
    data = dict(row)
    data["context"] = json.loads(data["context"] or "{}")
    data["publish_without_chapter_images"] = bool(data["publish_without_chapter_images"])
    return Book.model_validate(data)


def create_book(db_path: str, user_id: str, title: str, book_type: str, niche: str,
                context: Optional[Union[BookContext, Dict[str, Any]]] = None,
                writing_style: Optional[str] = None,
                publish_without_chapter_images: bool = False) -> Book:
    """Insert a new book in ``draft``.

    Returns:
        The stored Book.

    Examples:
        >>> book = create_book("db.sqlite", "u1", "Calm Mornings", "guided_journal",
        ...                    "wellness_mindfulness")
    """
    if isinstance(context, dict):
        context = BookContext.model_validate(context)
    context = context or BookContext()

    book = Book(
        id=str(uuid.uuid4()),
        user_id=user_id,
        title=title,
        book_type=book_type,
        niche=niche,
        writing_style=writing_style,
        context=context,
        publish_without_chapter_images=publish_without_chapter_images,
        created_at=_now(),
        updated_at=_now(),
    )

    with get_db_connection(db_path) as conn:
        conn.execute("""
            INSERT INTO books (id, user_id, title, book_type, niche, writing_style,
                               status, context, publish_without_chapter_images,
                               created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, 'draft', ?, ?, ?, ?)
        """, (book.id, user_id, title, book.book_type.value, book.niche.value,
              writing_style, context.model_dump_json(),
              int(publish_without_chapter_images), book.created_at, book.updated_at))
    return book


def get_book(db_path: str, book_id: str) -> Optional[Book]:
    with get_db_connection(db_path) as conn:
        row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
    return _book_from_row(row) if row else None


def require_book(db_path: str, book_id: str) -> Book:
    """Like get_book but raises NotFoundError."""
    book = get_book(db_path, book_id)
    if book is None:
        raise NotFoundError(f"Book {book_id} not found")
    return book


def list_books(db_path: str, user_id: Optional[str] = None) -> List[Book]:
    with get_db_connection(db_path) as conn:
        if user_id:
            rows = conn.execute(
                "SELECT * FROM books WHERE user_id = ? ORDER BY created_at DESC", (user_id,)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM books ORDER BY created_at DESC").fetchall()
    return [_book_from_row(row) for row in rows]


def update_book(db_path: str, book_id: str, **fields: Any) -> Book:
    """Update selected book columns.

    Args:
        db_path: Path to SQLite database file.
        book_id: Book to update.
        **fields: Any of BOOK_FIELDS. ``context`` may be a BookContext or dict.

    Returns:
        The updated Book.

    Raises:
        ValueError: On an unknown field.
        NotFoundError: If the book does not exist.
    """
    unknown = set(fields) - set(BOOK_FIELDS)
    if unknown:
        raise ValueError(f"Unknown book fields: {sorted(unknown)}")

    update_fields = []
    update_values = []
    for field, value in fields.items():
        if field == "context":
            if isinstance(value, dict):
                value = BookContext.model_validate(value)
            value = value.model_dump_json()
        elif field == "publish_without_chapter_images":
            value = int(bool(value))
        update_fields.append(f"{field} = ?")
        update_values.append(value)

    update_fields.append("updated_at = ?")
    update_values.extend([_now(), book_id])

    with get_db_connection(db_path) as conn:
        cursor = conn.execute(
            f"UPDATE books SET {', '.join(update_fields)} WHERE id = ?", update_values
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Book {book_id} not found")
    return require_book(db_path, book_id)


def set_book_status(db_path: str, book_id: str, status: str) -> None:
    update_book(db_path, book_id, status=status)


# Outlines

def save_outline(db_path: str, outline: Outline) -> None:
    chapters = json.dumps([c.model_dump() for c in outline.chapters])
    with get_db_connection(db_path) as conn:
        conn.execute("""
            INSERT INTO outlines (book_id, chapters, style_guide, art_direction, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(book_id) DO UPDATE SET chapters = excluded.chapters,
                                               style_guide = excluded.style_guide,
                                               art_direction = excluded.art_direction
        """, (outline.book_id, chapters, json.dumps(outline.style_guide),
              json.dumps(outline.art_direction), _now()))


def get_outline(db_path: str, book_id: str) -> Optional[Outline]:
    with get_db_connection(db_path) as conn:
        row = conn.execute("SELECT * FROM outlines WHERE book_id = ?", (book_id,)).fetchone()
    if not row:
        return None
    return Outline(
        book_id=row["book_id"],
        chapters=json.loads(row["chapters"]),
        style_guide=json.loads(row["style_guide"]),
        art_direction=json.loads(row["art_direction"]),
    )


# Generation jobs

def _job_from_row(conn: sqlite3.Connection, row: sqlite3.Row):
    data = dict(row)
    data["token_usage"] = _summarize_usage(conn, data["id"])
    return job_record(data)


def create_job(db_path: str, book_id: str, total_chapters: int) -> int:
    """Insert a pending generation job.

    Args:
        db_path: Path to SQLite database file.
        book_id: Book the job generates.
        total_chapters: Planned chapter count.

    Returns:
        New job ID.

    Raises:
        ConflictError: If the book already has a non-terminal job.
    """
    if total_chapters < 1:
        raise ValueError(f"total_chapters must be positive, got: {total_chapters}")

    with get_db_connection(db_path) as conn:
        try:
            cursor = conn.execute("""
                INSERT INTO generation_jobs (book_id, status, total_chapters, created_at)
                VALUES (?, 'pending', ?, ?)
            """, (book_id, total_chapters, _now()))
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Book {book_id} already has an active generation job") from e
        return cursor.lastrowid


def get_job(db_path: str, job_id: int):
    with get_db_connection(db_path) as conn:
        row = conn.execute("SELECT * FROM generation_jobs WHERE id = ?", (job_id,)).fetchone()
        return _job_from_row(conn, row) if row else None


def require_job(db_path: str, job_id: int):
    job = get_job(db_path, job_id)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    return job


def get_latest_job_for_book(db_path: str, book_id: str):
    with get_db_connection(db_path) as conn:
        row = conn.execute("""
            SELECT * FROM generation_jobs WHERE book_id = ?
            ORDER BY id DESC LIMIT 1
        """, (book_id,)).fetchone()
        return _job_from_row(conn, row) if row else None


def list_jobs(db_path: str, status: Optional[str] = None) -> list:
    """List generation jobs, oldest first.

    Args:
        db_path: Path to SQLite database file.
        status: Status to filter by, or None for all jobs.
    """
    with get_db_connection(db_path) as conn:
        if status:
            rows = conn.execute(
                "SELECT * FROM generation_jobs WHERE status = ? ORDER BY id", (status,)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM generation_jobs ORDER BY id").fetchall()
        return [_job_from_row(conn, row) for row in rows]


def update_job_status(db_path: str, job_id: int, new_status: str, *,
                      expected: Optional[str] = None, error: Optional[str] = None,
                      **fields: Any) -> None:
    """Move a job to ``new_status`` after validating the transition.

    The write is a compare-and-swap on the status read in the same call,
    so a concurrent change surfaces as InvalidTransitionError instead of
    being overwritten.

    Args:
        db_path: Path to SQLite database file.
        job_id: Job to update.
        new_status: Target status.
        expected: If given, the current status must equal this.
        error: Error message. Stored only for ``failed``; cleared otherwise.
        **fields: Extra columns from JOB_FIELDS.

    Raises:
        NotFoundError: If the job does not exist.
        InvalidTransitionError: If the transition is not allowed.
        ConflictError: If the move would create a second active job for the book.
    """
    unknown = set(fields) - set(JOB_FIELDS)
    if unknown:
        raise ValueError(f"Unknown job fields: {sorted(unknown)}")

    with get_db_connection(db_path) as conn:
        row = conn.execute(
            "SELECT status FROM generation_jobs WHERE id = ?", (job_id,)
        ).fetchone()
        if not row:
            raise NotFoundError(f"Job {job_id} not found")

        current = row["status"]
        if expected is not None and current != expected:
            raise InvalidTransitionError(
                f"Job {job_id} is {current}, expected {expected}", current, new_status
            )
        validate_transition(JOB_TRANSITIONS, current, new_status, f"Job {job_id}")

        update_fields = ["status = ?", "error = ?"]
        if new_status == "failed":
            error = error or "Unknown error"
        update_values: List[Any] = [new_status, error if new_status == "failed" else None]

        if new_status in JOB_TERMINAL_STATUSES:
            update_fields.extend(["completed_at = ?", "worker_id = NULL",
                                  "lease_expires_at = NULL"])
            update_values.append(_now())
        elif new_status in ("pending", "paused"):
            update_fields.extend(["completed_at = NULL", "worker_id = NULL",
                                  "lease_expires_at = NULL"])

        for field, value in fields.items():
            update_fields.append(f"{field} = ?")
            update_values.append(value)

        update_values.extend([job_id, current])
        try:
            cursor = conn.execute(f"""
                UPDATE generation_jobs SET {', '.join(update_fields)}
                WHERE id = ? AND status = ?
            """, update_values)
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Another active generation job exists for job {job_id}'s book") from e

        if cursor.rowcount == 0:
            raise InvalidTransitionError(
                f"Job {job_id} changed status concurrently", current, new_status
            )


def claim_next_job(db_path: str, worker_id: str, lease_seconds: int):
    """Atomically claim the oldest pending job.

    The claim moves the job to ``generating_outline``, or straight to
    ``generating_chapters`` when the book already has an outline (a
    requeued job). Only one of any number of concurrent callers wins a
    given job; losers move on to the next candidate.

    Args:
        db_path: Path to SQLite database file.
        worker_id: Unique identifier for the worker.
        lease_seconds: Lease duration in seconds.

    Returns:
        The claimed job variant, or None if nothing is pending.

    Examples:
        >>> job = claim_next_job("db.sqlite", "worker1", 600)
    """
    with get_db_connection(db_path) as conn:
        candidates = conn.execute("""
            SELECT j.id,
                   EXISTS(SELECT 1 FROM outlines o WHERE o.book_id = j.book_id) AS has_outline
            FROM generation_jobs j
            WHERE j.status = 'pending'
            ORDER BY j.created_at ASC, j.id ASC
            LIMIT 10
        """).fetchall()

        for candidate in candidates:
            target = "generating_chapters" if candidate["has_outline"] else "generating_outline"
            now = datetime.now()
            cursor = conn.execute("""
                UPDATE generation_jobs
                SET status = ?,
                    worker_id = ?,
                    lease_expires_at = ?,
                    started_at = COALESCE(started_at, ?),
                    error = NULL
                WHERE id = ? AND status = 'pending'
            """, (target, worker_id, (now + timedelta(seconds=lease_seconds)).isoformat(),
                  now.isoformat(), candidate["id"]))

            if cursor.rowcount == 1:
                row = conn.execute(
                    "SELECT * FROM generation_jobs WHERE id = ?", (candidate["id"],)
                ).fetchone()
                return _job_from_row(conn, row)

    return None


def renew_lease(db_path: str, job_id: int, worker_id: str, lease_seconds: int,
                table: str = "generation_jobs") -> bool:
    """Extend a lease still held by ``worker_id``.

    Returns:
        False if the worker no longer holds the job.
    """
    expires = (datetime.now() + timedelta(seconds=lease_seconds)).isoformat()
    with get_db_connection(db_path) as conn:
        cursor = conn.execute(f"""
            UPDATE {table} SET lease_expires_at = ?
            WHERE id = ? AND worker_id = ?
        """, (expires, job_id, worker_id))
        return cursor.rowcount == 1


def set_job_progress(db_path: str, job_id: int, current_chapter: int,
                     total_chapters: Optional[int] = None) -> None:
    """Advance job counters. Neither counter ever decreases."""
    with get_db_connection(db_path) as conn:
        conn.execute("""
            UPDATE generation_jobs
            SET current_chapter = MAX(current_chapter, ?),
                total_chapters = MAX(total_chapters, COALESCE(?, total_chapters))
            WHERE id = ?
        """, (current_chapter, total_chapters, job_id))


def release_expired_leases(db_path: str, now: datetime) -> int:
    """Fail in-flight jobs whose worker stopped renewing its lease.

    There is no automatic retry; an operator requeues the job, which then
    resumes after the last finished chapter. Expired audiobook jobs are
    failed the same way.

    Args:
        db_path: Path to SQLite database file.
        now: Current datetime for comparison.

    Returns:
        Number of jobs released.
    """
    now_str = now.isoformat()
    with get_db_connection(db_path) as conn:
        expired = conn.execute("""
            SELECT id, book_id FROM generation_jobs
            WHERE status IN ('generating_outline', 'outline_complete', 'generating_chapters')
            AND lease_expires_at < ?
        """, (now_str,)).fetchall()

        for row in expired:
            conn.execute("""
                UPDATE generation_jobs
                SET status = 'failed', error = 'Worker lease expired',
                    completed_at = ?, worker_id = NULL, lease_expires_at = NULL
                WHERE id = ?
            """, (now_str, row["id"]))
            conn.execute("""
                UPDATE chapters SET status = 'failed', error = 'Worker lease expired',
                                    updated_at = ?
                WHERE book_id = ? AND status LIKE 'generating_%'
            """, (now_str, row["book_id"]))
            conn.execute("UPDATE books SET status = 'failed', updated_at = ? WHERE id = ?",
                         (now_str, row["book_id"]))

        cursor = conn.execute("""
            UPDATE audiobook_jobs
            SET status = 'failed', error = 'Worker lease expired',
                completed_at = ?, worker_id = NULL, lease_expires_at = NULL
            WHERE status = 'generating' AND lease_expires_at < ?
        """, (now_str, now_str))

        return len(expired) + cursor.rowcount


# Chapters

def _chapter_from_row(conn: sqlite3.Connection, row: sqlite3.Row):
    data = dict(row)
    data["metadata"] = json.loads(data["metadata"] or "{}")
    data["token_usage"] = _chapter_usage(conn, data["book_id"], data["chapter_number"])
    return chapter_record(data)


def upsert_chapter(db_path: str, book_id: str, chapter_number: int, **fields: Any):
    """Insert or update a chapter keyed by (book_id, chapter_number).

    Only the given fields are written on update.

    Returns:
        The stored chapter variant.
    """
    unknown = set(fields) - set(CHAPTER_FIELDS)
    if unknown:
        raise ValueError(f"Unknown chapter fields: {sorted(unknown)}")
    if chapter_number < 1:
        raise ValueError(f"Chapter numbers start at 1, got: {chapter_number}")

    if "metadata" in fields and not isinstance(fields["metadata"], str):
        metadata = fields["metadata"]
        if hasattr(metadata, "model_dump"):
            metadata = metadata.model_dump()
        fields["metadata"] = json.dumps(metadata)

    columns = ["book_id", "chapter_number", "updated_at"] + list(fields)
    values = [book_id, chapter_number, _now()] + list(fields.values())
    updates = ", ".join(f"{col} = excluded.{col}" for col in columns[2:])

    with get_db_connection(db_path) as conn:
        conn.execute(f"""
            INSERT INTO chapters ({', '.join(columns)})
            VALUES ({', '.join('?' for _ in columns)})
            ON CONFLICT(book_id, chapter_number) DO UPDATE SET {updates}
        """, values)
        row = conn.execute(
            "SELECT * FROM chapters WHERE book_id = ? AND chapter_number = ?",
            (book_id, chapter_number)
        ).fetchone()
        return _chapter_from_row(conn, row)


def get_chapter(db_path: str, book_id: str, chapter_number: int):
    with get_db_connection(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM chapters WHERE book_id = ? AND chapter_number = ?",
            (book_id, chapter_number)
        ).fetchone()
        return _chapter_from_row(conn, row) if row else None


def list_chapters(db_path: str, book_id: str) -> list:
    with get_db_connection(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM chapters WHERE book_id = ? ORDER BY chapter_number", (book_id,)
        ).fetchall()
        return [_chapter_from_row(conn, row) for row in rows]


def delete_chapter(db_path: str, book_id: str, chapter_number: int) -> None:
    """Delete a chapter.

    Raises:
        InvalidTransitionError: While the book has a non-terminal job.
        NotFoundError: If the chapter does not exist.
    """
    with get_db_connection(db_path) as conn:
        active = conn.execute("""
            SELECT id, status FROM generation_jobs
            WHERE book_id = ? AND status NOT IN ('complete', 'failed')
        """, (book_id,)).fetchone()
        if active:
            raise InvalidTransitionError(
                f"Cannot delete chapter {chapter_number} while job {active['id']} is {active['status']}"
            )
        cursor = conn.execute(
            "DELETE FROM chapters WHERE book_id = ? AND chapter_number = ?",
            (book_id, chapter_number)
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Chapter {chapter_number} of book {book_id} not found")


# Token usage

def record_token_usage(db_path: str, book_id: str, job_id: Optional[int], step: str,
                       usage: Dict[str, Any], model: Optional[str] = None,
                       chapter_number: Optional[int] = None) -> None:
    """Append one usage row. Rows are never updated; totals are summed on read."""
    prompt_units = int(usage.get("prompt_units", 0))
    completion_units = int(usage.get("completion_units", 0))
    with get_db_connection(db_path) as conn:
        conn.execute("""
            INSERT INTO token_usage (book_id, job_id, chapter_number, step, prompt_units,
                                     completion_units, total_units, cost, model, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (book_id, job_id, chapter_number, step, prompt_units, completion_units,
              prompt_units + completion_units, float(usage.get("cost_units", 0.0)),
              model, _now()))


def _summarize_usage(conn: sqlite3.Connection, job_id: int) -> TokenUsageSummary:
    rows = conn.execute("""
        SELECT step,
               SUM(prompt_units) AS prompt_units,
               SUM(completion_units) AS completion_units,
               SUM(total_units) AS total_units,
               SUM(cost) AS cost
        FROM token_usage WHERE job_id = ?
        GROUP BY step ORDER BY MIN(id)
    """, (job_id,)).fetchall()
    steps = [StepUsage(**dict(row)) for row in rows]
    return TokenUsageSummary(
        total=sum(s.total_units for s in steps),
        cost=round(sum(s.cost for s in steps), 6),
        steps=steps,
    )


def _chapter_usage(conn: sqlite3.Connection, book_id: str, chapter_number: int) -> List[StepUsage]:
    rows = conn.execute("""
        SELECT step,
               SUM(prompt_units) AS prompt_units,
               SUM(completion_units) AS completion_units,
               SUM(total_units) AS total_units,
               SUM(cost) AS cost
        FROM token_usage WHERE book_id = ? AND chapter_number = ?
        GROUP BY step ORDER BY MIN(id)
    """, (book_id, chapter_number)).fetchall()
    return [StepUsage(**dict(row)) for row in rows]


def summarize_token_usage(db_path: str, job_id: int) -> TokenUsageSummary:
    with get_db_connection(db_path) as conn:
        return _summarize_usage(conn, job_id)


# Audiobook jobs

def _audiobook_from_row(row: sqlite3.Row):
    data = dict(row)
    data["progress"] = json.loads(data["progress"] or "{}")
    data["segments"] = json.loads(data["segments"] or "{}")
    data["force_regenerate"] = bool(data["force_regenerate"])
    return audiobook_record(data)


def create_audiobook_job(db_path: str, book_id: str, voice: str, model: str,
                         estimated_cost: float, total_chapters: int,
                         force_regenerate: bool = False) -> int:
    """Insert a pending audiobook job.

    Raises:
        ConflictError: If the book already has a pending or generating audiobook job.
    """
    with get_db_connection(db_path) as conn:
        try:
            cursor = conn.execute("""
                INSERT INTO audiobook_jobs (book_id, status, voice, model, estimated_cost,
                                            total_chapters, force_regenerate, created_at)
                VALUES (?, 'pending', ?, ?, ?, ?, ?, ?)
            """, (book_id, voice, model, estimated_cost, total_chapters,
                  int(force_regenerate), _now()))
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Book {book_id} already has an active audiobook job") from e
        return cursor.lastrowid


def get_audiobook_job(db_path: str, job_id: int):
    with get_db_connection(db_path) as conn:
        row = conn.execute("SELECT * FROM audiobook_jobs WHERE id = ?", (job_id,)).fetchone()
    return _audiobook_from_row(row) if row else None


def get_latest_audiobook_job(db_path: str, book_id: str):
    with get_db_connection(db_path) as conn:
        row = conn.execute("""
            SELECT * FROM audiobook_jobs WHERE book_id = ?
            ORDER BY id DESC LIMIT 1
        """, (book_id,)).fetchone()
    return _audiobook_from_row(row) if row else None


def list_audiobook_jobs(db_path: str, status: Optional[str] = None) -> list:
    with get_db_connection(db_path) as conn:
        if status:
            rows = conn.execute(
                "SELECT * FROM audiobook_jobs WHERE status = ? ORDER BY id", (status,)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM audiobook_jobs ORDER BY id").fetchall()
    return [_audiobook_from_row(row) for row in rows]


def update_audiobook_status(db_path: str, job_id: int, new_status: str, *,
                            expected: Optional[str] = None, error: Optional[str] = None,
                            **fields: Any) -> None:
    """Compare-and-swap an audiobook job to ``new_status``.

    Mirrors update_job_status for the audiobook state machine.
    """
    unknown = set(fields) - set(AUDIOBOOK_FIELDS)
    if unknown:
        raise ValueError(f"Unknown audiobook fields: {sorted(unknown)}")

    with get_db_connection(db_path) as conn:
        row = conn.execute(
            "SELECT status FROM audiobook_jobs WHERE id = ?", (job_id,)
        ).fetchone()
        if not row:
            raise NotFoundError(f"Audiobook job {job_id} not found")

        current = row["status"]
        if expected is not None and current != expected:
            raise InvalidTransitionError(
                f"Audiobook job {job_id} is {current}, expected {expected}", current, new_status
            )
        validate_transition(AUDIOBOOK_TRANSITIONS, current, new_status, f"Audiobook job {job_id}")

        if new_status in ("failed", "cancelled"):
            error = error or ("Job cancelled by user" if new_status == "cancelled"
                              else "Unknown error")
        update_fields = ["status = ?", "error = ?"]
        update_values: List[Any] = [new_status,
                                    error if new_status in ("failed", "cancelled") else None]

        if new_status in ("complete", "failed", "cancelled"):
            update_fields.extend(["completed_at = ?", "worker_id = NULL",
                                  "lease_expires_at = NULL"])
            update_values.append(_now())
        elif new_status == "pending":
            update_fields.extend(["completed_at = NULL", "worker_id = NULL",
                                  "lease_expires_at = NULL"])

        for field, value in fields.items():
            if field in ("progress", "segments"):
                value = json.dumps(value)
            elif field == "force_regenerate":
                value = int(bool(value))
            update_fields.append(f"{field} = ?")
            update_values.append(value)

        update_values.extend([job_id, current])
        try:
            cursor = conn.execute(f"""
                UPDATE audiobook_jobs SET {', '.join(update_fields)}
                WHERE id = ? AND status = ?
            """, update_values)
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Another active audiobook job exists for job {job_id}'s book") from e

        if cursor.rowcount == 0:
            raise InvalidTransitionError(
                f"Audiobook job {job_id} changed status concurrently", current, new_status
            )


def claim_next_audiobook_job(db_path: str, worker_id: str, lease_seconds: int):
    """Atomically claim the oldest pending audiobook job (pending -> generating)."""
    with get_db_connection(db_path) as conn:
        candidates = conn.execute("""
            SELECT id FROM audiobook_jobs WHERE status = 'pending'
            ORDER BY created_at ASC, id ASC LIMIT 10
        """).fetchall()

        for candidate in candidates:
            now = datetime.now()
            cursor = conn.execute("""
                UPDATE audiobook_jobs
                SET status = 'generating',
                    worker_id = ?,
                    lease_expires_at = ?,
                    started_at = ?,
                    error = NULL
                WHERE id = ? AND status = 'pending'
            """, (worker_id, (now + timedelta(seconds=lease_seconds)).isoformat(),
                  now.isoformat(), candidate["id"]))

            if cursor.rowcount == 1:
                row = conn.execute(
                    "SELECT * FROM audiobook_jobs WHERE id = ?", (candidate["id"],)
                ).fetchone()
                return _audiobook_from_row(row)

    return None


def record_audiobook_progress(db_path: str, job_id: int, key: Union[int, str], marker: str,
                              cost: float, *, current_chapter: Optional[int] = None,
                              require_status: Optional[str] = "generating") -> bool:
    """Record one synthesized unit of an audiobook job.

    Integer keys are chapters and go to ``progress``; string keys
    (prologue, epilogue) go to ``segments``. The write is conditional on
    the job still being in ``require_status``, so nothing is recorded after
    a cancellation has landed.

    Returns:
        True if the row was updated.
    """
    column = "progress" if isinstance(key, int) else "segments"
    path = f'$."{key}"'

    sql = f"""
        UPDATE audiobook_jobs
        SET {column} = json_set({column}, ?, ?),
            actual_cost = actual_cost + ?,
            current_chapter = COALESCE(?, current_chapter)
        WHERE id = ?
    """
    params: List[Any] = [path, marker, cost, current_chapter, job_id]
    if require_status is not None:
        sql += " AND status = ?"
        params.append(require_status)

    with get_db_connection(db_path) as conn:
        cursor = conn.execute(sql, params)
        return cursor.rowcount == 1
