#!/usr/bin/env python
"""
CLI interface for Bookgen Agent.

Runs the generation and audiobook workers and the API server, and
provides administrative commands for jobs, publishing and audiobooks.
"""

import os
import socket
import sys
import threading
from typing import Optional

import typer
import uvicorn
from rich import box
from rich.console import Console
from rich.table import Table

from bookgen_agent import audiobook, progress, publisher, queue_manager
from bookgen_agent.db_manager import init_db, list_jobs, upsert_user
from bookgen_agent.errors import BookgenError, NotReadyError
from bookgen_agent.generators import build_collaborators
from bookgen_agent.prompts import load_default_prompts
from bookgen_agent.scheduler import run_loop as run_scheduler_loop, run_once as run_scheduler_once
from bookgen_agent.ui_server import app as fastapi_app, set_config, set_db_path
from bookgen_agent.utils.config_loader import load_global_config
from bookgen_agent.utils.file_utils import ensure_directories
from bookgen_agent.utils.logger import get_logger, setup_logging

app = typer.Typer(
    name="bookgen",
    help="Bookgen Agent - book generation, publishing and audiobook jobs",
    add_completion=False
)

console = Console()
logger = get_logger(__name__)

STATUS_STYLES = {
    "pending": "yellow",
    "paused": "yellow",
    "generating_outline": "blue",
    "outline_complete": "blue",
    "generating_chapters": "blue",
    "complete": "green",
    "failed": "red",
}


def default_worker_id(prefix: str) -> str:
    return f"{prefix}-{socket.gethostname()}-{os.getpid()}"


def get_config_and_db(config_path: Optional[str] = None) -> tuple:
    """Load configuration and initialize database.

    Returns:
        Tuple of (config, db_path).
    """
    try:
        config = load_global_config(config_path)
        db_path = config["paths"]["database"]
        ensure_directories(config["paths"])
        init_db(db_path)
        return config, db_path
    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        console.print("[yellow]Make sure BOOKGEN_ENV is set (alpha/prod) or pass --config[/yellow]")
        sys.exit(1)


def _configure_logging(verbose: bool) -> None:
    setup_logging(level="DEBUG" if verbose else "INFO")


@app.command("init")
def init(
    config: Optional[str] = typer.Option(None, "--config", help="Config file path"),
    admin: Optional[str] = typer.Option(None, "--admin", help="Create an admin user with this id"),
):
    """Create output directories and the database schema."""
    console.print("[cyan]Initializing Bookgen Agent...[/cyan]")
    cfg, db_path = get_config_and_db(config)

    for name, path in cfg["paths"].items():
        console.print(f"[green]✓[/green] {name}: {path}")
    console.print(f"[green]✓[/green] Initialized database at {db_path}")

    if admin:
        upsert_user(db_path, admin, role="admin")
        console.print(f"[green]✓[/green] Admin user {admin}")

    console.print("\n[green]Initialization complete![/green]")
    console.print("Start the agent with: [cyan]bookgen start[/cyan]")


@app.command()
def run(
    once: bool = typer.Option(False, "--once", help="Run once instead of loop"),
    config: Optional[str] = typer.Option(None, "--config", help="Config file path"),
    worker_id: Optional[str] = typer.Option(None, "--worker", help="Worker ID"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output")
):
    """Start the generation worker."""
    _configure_logging(verbose)
    cfg, db_path = get_config_and_db(config)
    worker_id = worker_id or default_worker_id("gen")
    collaborators = build_collaborators(cfg)
    prompts = load_default_prompts()

    if once:
        console.print("[cyan]Running generation worker once...[/cyan]")
        if run_scheduler_once(cfg, db_path, worker_id, collaborators, prompts):
            console.print("[green]Job processed[/green]")
        else:
            console.print("[yellow]No jobs available[/yellow]")
        return

    console.print(f"[cyan]Starting generation worker {worker_id}...[/cyan]")
    console.print("Press Ctrl+C to stop")
    try:
        run_scheduler_loop(cfg, db_path, worker_id, collaborators, prompts)
    except KeyboardInterrupt:
        console.print("\n[yellow]Generation worker stopped[/yellow]")


@app.command("audiobook-run")
def audiobook_run(
    once: bool = typer.Option(False, "--once", help="Run once instead of loop"),
    config: Optional[str] = typer.Option(None, "--config", help="Config file path"),
    worker_id: Optional[str] = typer.Option(None, "--worker", help="Worker ID"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output")
):
    """Start the audiobook worker."""
    _configure_logging(verbose)
    cfg, db_path = get_config_and_db(config)
    worker_id = worker_id or default_worker_id("audio")
    speech = build_collaborators(cfg).speech

    if once:
        console.print("[cyan]Running audiobook worker once...[/cyan]")
        if audiobook.run_audiobook_once(cfg, db_path, worker_id, speech):
            console.print("[green]Audiobook job processed[/green]")
        else:
            console.print("[yellow]No audiobook jobs available[/yellow]")
        return

    console.print(f"[cyan]Starting audiobook worker {worker_id}...[/cyan]")
    console.print("Press Ctrl+C to stop")
    try:
        audiobook.run_audiobook_loop(cfg, db_path, worker_id, speech)
    except KeyboardInterrupt:
        console.print("\n[yellow]Audiobook worker stopped[/yellow]")


@app.command()
def start(
    config: Optional[str] = typer.Option(None, "--config", help="Config file path"),
    ui_port: int = typer.Option(8080, "--ui-port", help="UI server port"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output")
):
    """Start all services (generation worker, audiobook worker, and API)."""
    _configure_logging(verbose)
    cfg, db_path = get_config_and_db(config)
    set_db_path(db_path)
    set_config(cfg)

    collaborators = build_collaborators(cfg)
    prompts = load_default_prompts()

    console.print("[cyan]Starting all services...[/cyan]")

    generation_stop = threading.Event()
    generation_thread = threading.Thread(
        target=run_scheduler_loop,
        args=(cfg, db_path, default_worker_id("gen"), collaborators, prompts, generation_stop)
    )
    generation_thread.daemon = True
    generation_thread.start()
    console.print("[green]✓ Generation worker started[/green]")

    audiobook_stop = threading.Event()
    audiobook_thread = threading.Thread(
        target=audiobook.run_audiobook_loop,
        args=(cfg, db_path, default_worker_id("audio"), collaborators.speech, audiobook_stop)
    )
    audiobook_thread.daemon = True
    audiobook_thread.start()
    console.print("[green]✓ Audiobook worker started[/green]")

    console.print(f"[green]✓ Starting API server on http://127.0.0.1:{ui_port}[/green]")
    console.print("[yellow]Press Ctrl+C to stop all services[/yellow]")

    try:
        uvicorn.run(fastapi_app, host="127.0.0.1", port=ui_port, log_level="error")
    except KeyboardInterrupt:
        pass
    finally:
        console.print("\n[yellow]Stopping all services...[/yellow]")
        generation_stop.set()
        audiobook_stop.set()
        console.print("[green]All services stopped[/green]")


@app.command("jobs")
def jobs_cmd(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
    config: Optional[str] = typer.Option(None, "--config", help="Config file path")
):
    """List generation jobs."""
    cfg, db_path = get_config_and_db(config)

    jobs = list_jobs(db_path, status)
    if not jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(title="Generation Jobs", box=box.ROUNDED)
    table.add_column("ID", justify="right")
    table.add_column("Book", style="cyan")
    table.add_column("Status")
    table.add_column("Chapters", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Error", style="red")

    for job in jobs:
        style = STATUS_STYLES.get(job.status, "white")
        current = getattr(job, "current_chapter", 0)
        table.add_row(
            str(job.id),
            job.book_id,
            f"[{style}]{job.status}[/{style}]",
            f"{current}/{job.total_chapters}",
            f"${job.token_usage.cost:.4f}",
            getattr(job, "error", None) or "",
        )

    console.print(table)


@app.command("requeue")
def requeue(
    job_id: int = typer.Argument(..., help="Job ID to requeue"),
    config: Optional[str] = typer.Option(None, "--config", help="Config file path")
):
    """Requeue a failed or paused job."""
    cfg, db_path = get_config_and_db(config)
    try:
        job = queue_manager.requeue_job(db_path, job_id)
        console.print(f"[green]Job {job.id} queued for retry[/green]")
    except BookgenError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@app.command("pause")
def pause(
    job_id: int = typer.Argument(..., help="Job ID to pause"),
    config: Optional[str] = typer.Option(None, "--config", help="Config file path")
):
    """Hold a pending job."""
    cfg, db_path = get_config_and_db(config)
    try:
        queue_manager.pause_job(db_path, job_id)
        console.print(f"[green]Job {job_id} paused[/green]")
    except BookgenError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@app.command("progress")
def progress_cmd(
    book_id: str = typer.Argument(..., help="Book ID"),
    config: Optional[str] = typer.Option(None, "--config", help="Config file path")
):
    """Show generation progress for a book."""
    cfg, db_path = get_config_and_db(config)
    try:
        snapshot = progress.get_generation_progress(db_path, book_id)
    except BookgenError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    book = snapshot["book"]
    job = snapshot["job"]
    console.print(f"[bold]{book['title']}[/bold] ({book['status']})")
    if job:
        console.print(f"Job {job['id']}: {job['status']}, "
                      f"{snapshot['completed_chapters']}/{snapshot['total_chapters']} chapters, "
                      f"{job['token_usage']['total']} tokens (${job['token_usage']['cost']:.4f})")

    table = Table(box=box.SIMPLE)
    table.add_column("#", justify="right")
    table.add_column("Status")
    table.add_column("Words", justify="right")
    table.add_column("Image")
    table.add_column("Error", style="red")
    for chapter in snapshot["chapters"]:
        table.add_row(
            str(chapter["chapter_number"]),
            chapter["status"],
            str(chapter["word_count"]),
            "✓" if chapter["has_image"] else "",
            chapter["error"] or "",
        )
    console.print(table)


@app.command("publish")
def publish(
    book_id: str = typer.Argument(..., help="Book ID"),
    force: bool = typer.Option(False, "--force", "-f", help="Publish even if checks fail"),
    config: Optional[str] = typer.Option(None, "--config", help="Config file path")
):
    """Publish a book's manuscript."""
    cfg, db_path = get_config_and_db(config)
    try:
        result = publisher.publish_book(db_path, book_id, cfg, force=force)
    except NotReadyError as e:
        console.print("[red]Book is not ready to publish:[/red]")
        for issue in e.issues:
            console.print(f"  - {issue}")
        console.print("[yellow]Use --force to publish anyway[/yellow]")
        raise typer.Exit(1)
    except BookgenError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]Published to {result['artifact_url']}[/green]")
    for issue in result["issues"]:
        console.print(f"[yellow]  ! {issue}[/yellow]")


@app.command("audiobook-estimate")
def audiobook_estimate(
    book_id: str = typer.Argument(..., help="Book ID"),
    voice: Optional[str] = typer.Option(None, "--voice", help="TTS voice"),
    model: Optional[str] = typer.Option(None, "--model", help="TTS model"),
    config: Optional[str] = typer.Option(None, "--config", help="Config file path")
):
    """Estimate audiobook narration cost."""
    cfg, db_path = get_config_and_db(config)
    try:
        result = audiobook.estimate(db_path, book_id, cfg, voice=voice, model=model)
    except BookgenError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Audiobook estimate ({result['model']})", box=box.ROUNDED)
    table.add_column("Chapter", justify="right")
    table.add_column("Characters", justify="right")
    table.add_column("Cost", justify="right")
    for entry in result["chapter_breakdown"]:
        table.add_row(str(entry["chapter_number"]), str(entry["characters"]), f"${entry['cost']:.4f}")
    console.print(table)
    console.print(f"Prologue: {result['prologue_characters']} chars, "
                  f"epilogue: {result['epilogue_characters']} chars")
    console.print(f"[bold]Total: {result['total_characters']} chars, "
                  f"${result['estimated_cost']:.4f}[/bold]")


@app.command("audiobook-cancel")
def audiobook_cancel(
    book_id: str = typer.Argument(..., help="Book ID"),
    config: Optional[str] = typer.Option(None, "--config", help="Config file path")
):
    """Cancel a book's running audiobook job."""
    cfg, db_path = get_config_and_db(config)
    try:
        job = audiobook.cancel_audiobook_job(db_path, book_id)
    except BookgenError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Audiobook job {job.id} cancelled "
                  f"({len(job.progress)} chapter(s) narrated)[/green]")


if __name__ == "__main__":
    app()
