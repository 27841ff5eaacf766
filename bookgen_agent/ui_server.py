"""
UI server module for Bookgen Agent.

FastAPI endpoints for creating books, starting and administering
generation jobs, publishing, and the audiobook pipeline. All long-running
generation happens in the worker processes; these endpoints only enqueue
work and read snapshots, except for the single-chapter and auxiliary
audio endpoints, which synthesize inline.
"""

import os
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from bookgen_agent import audiobook, progress, publisher, queue_manager, scheduler
from bookgen_agent.chapter_pipeline import (
    attach_chapter_image,
    attach_cover_image,
    edit_chapter,
)
from bookgen_agent.db_manager import (
    create_book,
    delete_chapter,
    get_chapter,
    get_user,
    list_books,
    list_jobs,
    require_book,
    require_job,
    update_book,
)
from bookgen_agent.errors import (
    BookgenError,
    ConflictError,
    InsufficientCreditsError,
    InvalidTransitionError,
    NotFoundError,
    NotReadyError,
    UpstreamGenerationFailure,
    ValidationError,
)
from bookgen_agent.generators import SpeechSynthesizer, build_collaborators
from bookgen_agent.models import JOB_STATUSES, Book, BookContext, RequestContext
from bookgen_agent.utils.config_loader import load_global_config
from bookgen_agent.utils.logger import get_logger
from bookgen_agent.utils.validation import (
    validate_audio_asset,
    validate_book_request,
    validate_chapter_number,
)

logger = get_logger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Bookgen Agent API",
    description="REST API for book generation, publishing and audiobook jobs",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set by the CLI before serving
_db_path: Optional[str] = None
_config: Optional[Dict[str, Any]] = None
_speech: Optional[SpeechSynthesizer] = None


def set_db_path(path: str) -> None:
    """Set the database path for the UI server.

    Args:
        path: Path to SQLite database file.
    """
    global _db_path
    _db_path = path


def get_db_path() -> str:
    """Get the configured database path.

    Raises:
        RuntimeError: If database path not set.
    """
    if _db_path is None:
        raise RuntimeError("Database path not configured; call set_db_path first")
    return _db_path


def set_config(cfg: Dict[str, Any]) -> None:
    global _config
    _config = cfg


def get_config() -> Dict[str, Any]:
    global _config
    if _config is None:
        _config = load_global_config()
    return _config


def set_speech_synthesizer(speech: Optional[SpeechSynthesizer]) -> None:
    global _speech
    _speech = speech


def get_speech_synthesizer() -> SpeechSynthesizer:
    global _speech
    if _speech is None:
        _speech = build_collaborators(get_config()).speech
    if _speech is None:
        raise HTTPException(status_code=503, detail="No speech synthesizer configured")
    return _speech


# Error mapping

ERROR_STATUS = (
    (NotReadyError, 400),
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (InvalidTransitionError, 409),
    (InsufficientCreditsError, 402),
    (UpstreamGenerationFailure, 502),
)


@app.exception_handler(BookgenError)
async def bookgen_error_handler(request: Request, exc: BookgenError):
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400)
    body: Dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, NotReadyError):
        body["issues"] = exc.issues
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content=body)


# Request context

async def get_request_context(x_user_id: Optional[str] = Header(None)) -> RequestContext:
    """Resolve the calling user from the ``X-User-Id`` header."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    ctx = get_user(get_db_path(), x_user_id)
    if ctx is None:
        raise HTTPException(status_code=401, detail=f"Unknown user: {x_user_id}")
    return ctx


def _owned_book(ctx: RequestContext, book_id: str) -> Book:
    book = require_book(get_db_path(), book_id)
    if book.user_id != ctx.user_id and not ctx.is_admin:
        raise NotFoundError(f"Book {book_id} not found")
    return book


def _owned_job(ctx: RequestContext, job_id: int):
    job = require_job(get_db_path(), job_id)
    _owned_book(ctx, job.book_id)
    return job


def _file_or_404(path: Optional[str], what: str) -> FileResponse:
    if not path or not os.path.exists(path):
        raise HTTPException(status_code=404, detail=f"{what} not found")
    return FileResponse(path, media_type="audio/mpeg", filename=os.path.basename(path))


# Request models

class BookCreate(BaseModel):
    title: str
    book_type: str
    niche: str
    writing_style: Optional[str] = None
    context: Dict[str, Any] = {}
    publish_without_chapter_images: bool = False


class BookUpdate(BaseModel):
    title: Optional[str] = None
    writing_style: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    publish_without_chapter_images: Optional[bool] = None


class ChapterEdit(BaseModel):
    text: Optional[str] = None
    text_prompt: Optional[str] = None
    image_prompt: Optional[str] = None


class AudiobookStart(BaseModel):
    voice: Optional[str] = None
    model: Optional[str] = None
    force_regenerate: bool = False


class AssetRequest(BaseModel):
    voice: Optional[str] = None
    model: Optional[str] = None


# API Endpoints

@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "Bookgen Agent"}


@app.post("/api/books", status_code=201)
async def create_book_endpoint(body: BookCreate, ctx: RequestContext = Depends(get_request_context)):
    data = validate_book_request(body.model_dump())
    book = create_book(get_db_path(), ctx.user_id, **data)
    logger.info(f"Created book {book.id} for {ctx.user_id}: {book.title}")
    return book.model_dump()


@app.get("/api/books", response_model=List[Dict[str, Any]])
async def list_books_endpoint(ctx: RequestContext = Depends(get_request_context)):
    books = list_books(get_db_path(), None if ctx.is_admin else ctx.user_id)
    return [b.model_dump() for b in books]


@app.get("/api/books/{book_id}")
async def book_details(book_id: str, ctx: RequestContext = Depends(get_request_context)):
    return _owned_book(ctx, book_id).model_dump()


@app.patch("/api/books/{book_id}")
async def update_book_endpoint(book_id: str, body: BookUpdate,
                               ctx: RequestContext = Depends(get_request_context)):
    """Edit title, writing style, context or publish settings."""
    _owned_book(ctx, book_id)
    fields = body.model_dump(exclude_none=True)
    if "title" in fields and not fields["title"].strip():
        raise ValidationError("Title must not be blank")
    if "context" in fields:
        try:
            fields["context"] = BookContext.model_validate(fields["context"])
        except ValueError as e:
            raise ValidationError(f"Invalid context: {e}") from e
    if not fields:
        raise ValidationError("No fields to update")
    return update_book(get_db_path(), book_id, **fields).model_dump()


@app.post("/api/books/{book_id}/generate", status_code=202)
async def start_generation_endpoint(book_id: str, ctx: RequestContext = Depends(get_request_context)):
    job = scheduler.start_generation(get_db_path(), ctx, book_id, get_config())
    return job.model_dump()


@app.get("/api/books/{book_id}/progress")
async def generation_progress(book_id: str, ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    return progress.get_generation_progress(get_db_path(), book_id)


@app.get("/api/jobs", response_model=List[Dict[str, Any]])
async def list_jobs_endpoint(status: Optional[str] = Query(None, description="Filter by status"),
                             ctx: RequestContext = Depends(get_request_context)):
    if status and status not in JOB_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of {list(JOB_STATUSES)}")

    db_path = get_db_path()
    jobs = list_jobs(db_path, status)
    if not ctx.is_admin:
        owned = {b.id for b in list_books(db_path, ctx.user_id)}
        jobs = [j for j in jobs if j.book_id in owned]
    return [j.model_dump() for j in jobs]


@app.get("/api/jobs/{job_id}")
async def job_details(job_id: int, ctx: RequestContext = Depends(get_request_context)):
    return _owned_job(ctx, job_id).model_dump()


@app.post("/api/jobs/{job_id}/requeue")
async def requeue_job_endpoint(job_id: int, ctx: RequestContext = Depends(get_request_context)):
    _owned_job(ctx, job_id)
    return queue_manager.requeue_job(get_db_path(), job_id).model_dump()


@app.post("/api/jobs/{job_id}/pause")
async def pause_job_endpoint(job_id: int, ctx: RequestContext = Depends(get_request_context)):
    _owned_job(ctx, job_id)
    return queue_manager.pause_job(get_db_path(), job_id).model_dump()


# Publishing

@app.get("/api/books/{book_id}/publish-status")
async def publish_status(book_id: str, ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    return progress.get_publish_status(get_db_path(), book_id)


@app.post("/api/books/{book_id}/publish")
async def publish_endpoint(book_id: str, force: bool = Query(False),
                           ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    return publisher.publish_book(get_db_path(), book_id, get_config(), force=force)


# Chapters and images

@app.get("/api/books/{book_id}/chapters/{chapter_number}")
async def chapter_details(book_id: str, chapter_number: int,
                          ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    chapter = get_chapter(get_db_path(), book_id, validate_chapter_number(chapter_number))
    if chapter is None:
        raise NotFoundError(f"Chapter {chapter_number} of book {book_id} not found")
    return chapter.model_dump()


@app.patch("/api/books/{book_id}/chapters/{chapter_number}")
async def edit_chapter_endpoint(book_id: str, chapter_number: int, body: ChapterEdit,
                                ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    chapter = edit_chapter(get_db_path(), book_id, validate_chapter_number(chapter_number),
                           **body.model_dump())
    return chapter.model_dump()


@app.delete("/api/books/{book_id}/chapters/{chapter_number}", status_code=204)
async def delete_chapter_endpoint(book_id: str, chapter_number: int,
                                  ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    delete_chapter(get_db_path(), book_id, validate_chapter_number(chapter_number))


@app.post("/api/books/{book_id}/chapters/{chapter_number}/image")
async def upload_chapter_image(book_id: str, chapter_number: int, file: UploadFile = File(...),
                               ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    data = await file.read()
    chapter = attach_chapter_image(get_db_path(), book_id, validate_chapter_number(chapter_number),
                                   file.filename, data, get_config())
    return chapter.model_dump()


@app.post("/api/books/{book_id}/cover")
async def upload_cover_image(book_id: str, file: UploadFile = File(...),
                             ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    data = await file.read()
    return attach_cover_image(get_db_path(), book_id, file.filename, data, get_config()).model_dump()


# Audiobook

@app.get("/api/books/{book_id}/audiobook/estimate")
async def audiobook_estimate(book_id: str, voice: Optional[str] = Query(None),
                             model: Optional[str] = Query(None),
                             ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    return audiobook.estimate(get_db_path(), book_id, get_config(), voice=voice, model=model)


@app.post("/api/books/{book_id}/audiobook", status_code=202)
async def start_audiobook_endpoint(book_id: str, body: AudiobookStart,
                                   ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    job = audiobook.start_audiobook(get_db_path(), book_id, get_config(), voice=body.voice,
                                    model=body.model, force_regenerate=body.force_regenerate)
    return job.model_dump()


@app.get("/api/books/{book_id}/audiobook")
async def audiobook_status(book_id: str, ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    return progress.get_audiobook_status(get_db_path(), book_id)


@app.post("/api/books/{book_id}/audiobook/cancel")
async def cancel_audiobook_endpoint(book_id: str, ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    return audiobook.cancel_audiobook_job(get_db_path(), book_id).model_dump()


@app.post("/api/books/{book_id}/audiobook/requeue")
async def requeue_audiobook_endpoint(book_id: str, ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    status = progress.get_audiobook_status(get_db_path(), book_id)
    if status["job"] is None:
        raise NotFoundError(f"Book {book_id} has no audiobook job")
    return audiobook.requeue_audiobook_job(get_db_path(), status["job"]["id"]).model_dump()


@app.post("/api/books/{book_id}/audiobook/chapters/{chapter_number}/regenerate")
def regenerate_chapter_audio_endpoint(book_id: str, chapter_number: int,
                                      ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    return audiobook.regenerate_chapter_audio(get_db_path(), book_id,
                                              validate_chapter_number(chapter_number),
                                              get_config(), get_speech_synthesizer())


@app.get("/api/books/{book_id}/audiobook/chapters/{chapter_number}/download")
async def download_chapter_audio(book_id: str, chapter_number: int,
                                 ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    status = progress.get_audiobook_status(get_db_path(), book_id)
    marker = status["job"]["progress"].get(chapter_number) if status["job"] else None
    return _file_or_404(marker, f"Audio for chapter {chapter_number}")


@app.get("/api/books/{book_id}/audiobook/segments/{segment}/download")
async def download_segment_audio(book_id: str, segment: str,
                                 ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    if segment not in audiobook.SEGMENTS:
        raise ValidationError(f"Unknown segment: {segment}")
    status = progress.get_audiobook_status(get_db_path(), book_id)
    marker = status["job"]["segments"].get(segment) if status["job"] else None
    return _file_or_404(marker, f"Audio for {segment}")


@app.post("/api/books/{book_id}/audiobook/assets/{asset}")
def generate_asset_endpoint(book_id: str, asset: str, body: Optional[AssetRequest] = None,
                            ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    body = body or AssetRequest()
    return audiobook.generate_audio_asset(get_db_path(), book_id, validate_audio_asset(asset),
                                          get_config(), get_speech_synthesizer(),
                                          voice=body.voice, model=body.model)


@app.get("/api/books/{book_id}/audiobook/assets/{asset}/download")
async def download_asset(book_id: str, asset: str,
                         ctx: RequestContext = Depends(get_request_context)):
    _owned_book(ctx, book_id)
    path = audiobook.audio_asset_path(get_config(), book_id, validate_audio_asset(asset))
    return _file_or_404(path, asset.replace("_", " ").capitalize())
