"""
Command line front end: run jobs with live progress, list the job history,
and check the external tools.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import typer
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TaskProgressColumn, TextColumn
from rich.table import Table

from ._version import __version__
from .config import ConfigManager, Settings
from .constants import CONFIG_FILE
from .exceptions import UnknownEngineError
from .history import HistoryStore
from .jobs import Engine, JobSnapshot, JobStatus, MediaJob
from .logging_config import setup_logging
from .manager import JobManager
from .registry import JobRegistry
from .tools import INSTALLED, NOT_FOUND, ToolChecker

app = typer.Typer(help="mediajobs - run yt-dlp, ffmpeg and ImageMagick jobs through a bounded queue.")
console = Console()

STATUS_STYLES = {
    JobStatus.QUEUED: 'cyan',
    JobStatus.RUNNING: 'yellow',
    JobStatus.SUCCESS: 'green',
    JobStatus.ERROR: 'red',
    JobStatus.CANCELED: 'magenta',
}


def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    msg = context.get("exception", context["message"])
    logging.getLogger().critical(f"Caught exception from asyncio task: {msg}")


def _version_callback(value: bool):
    if value:
        console.print(f"mediajobs {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True, help="Show the version and exit"),
    config: Path = typer.Option(CONFIG_FILE, "--config", help="Settings file to use"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log subprocess output to the log file"),
):
    """Load settings and set up logging for every command."""
    settings = ConfigManager(config).load()
    setup_logging(file_log_level_str='DEBUG' if verbose else settings.log_level)
    ctx.obj = settings


def _storage_root(settings: Settings, root: Optional[Path]) -> Optional[Path]:
    return root or settings.paths.workflow_root


def _status_text(status: JobStatus) -> str:
    style = STATUS_STYLES.get(status, 'white')
    return f"[{style}]{status.value}[/{style}]"


def _short(text: str, width: int = 48) -> str:
    return text if len(text) <= width else '…' + text[-(width - 1):]


# -----------------------------
# run
# -----------------------------
def build_job_options(preset: str, cookies_browser: Optional[str], cookies_file: Optional[Path]) -> Dict[str, Any]:
    options: Dict[str, Any] = {'preset': preset}
    if cookies_browser:
        options['ytDlpSettings'] = {'cookiesMode': 'browser', 'cookiesBrowser': cookies_browser}
    elif cookies_file:
        options['ytDlpSettings'] = {'cookiesMode': 'file', 'cookiesFilePath': str(cookies_file)}
    return options


class ProgressView:
    """Renders job events as rich progress bars, one per job."""

    def __init__(self, progress: Progress):
        self.progress = progress
        self.tasks: Dict[str, TaskID] = {}

    async def on_event(self, event: Tuple[str, Any]):
        kind, value = event
        if kind == 'job_update':
            self._on_update(value)
        elif kind == 'job_progress' and value.job_id in self.tasks and value.progress is not None:
            self.progress.update(self.tasks[value.job_id], total=100, completed=value.progress)
        elif kind == 'job_complete' and value.job_id in self.tasks:
            task_id = self.tasks[value.job_id]
            if value.status is JobStatus.SUCCESS:
                self.progress.update(task_id, total=100, completed=100)

    def _on_update(self, job: MediaJob):
        description = f"{_status_text(job.status)} {escape(_short(job.input))}"
        if job.id not in self.tasks:
            self.tasks[job.id] = self.progress.add_task(description, total=None)
        else:
            self.progress.update(self.tasks[job.id], description=description)


async def _run_jobs(settings: Settings, root: Optional[Path], payloads: List[Dict[str, Any]]) -> List[Optional[MediaJob]]:
    asyncio.get_running_loop().set_exception_handler(handle_async_exception)
    progress = Progress(
        SpinnerColumn(), TextColumn("{task.description}"), BarColumn(), TaskProgressColumn(),
        console=console,
    )
    view = ProgressView(progress)
    manager = JobManager.from_settings(settings, view.on_event)
    with progress:
        await manager.initialize(root)
        job_ids = [await manager.enqueue(payload) for payload in payloads]
        try:
            await manager.wait_idle()
        finally:
            await manager.shutdown()
    return [manager.get_job(job_id) if job_id else None for job_id in job_ids]


@app.command()
def run(
    ctx: typer.Context,
    engine: str = typer.Argument(..., help="yt-dlp, ffmpeg or imagemagick"),
    output: Path = typer.Argument(..., help="Destination directory"),
    inputs: List[str] = typer.Argument(..., help="URLs or files to process"),
    preset: str = typer.Option("", "--preset", "-p", help="Named preset, e.g. video-best or audio-mp3-320"),
    kind: Optional[str] = typer.Option(None, "--kind", help="Job kind (default: download for yt-dlp, convert otherwise)"),
    cookies_browser: Optional[str] = typer.Option(None, "--cookies-browser", help="yt-dlp: read cookies from this browser"),
    cookies_file: Optional[Path] = typer.Option(None, "--cookies-file", help="yt-dlp: read cookies from this file"),
    root: Optional[Path] = typer.Option(None, "--root", help="Workflow root holding the job history"),
):
    """Run one job per input and wait for all of them."""
    settings: Settings = ctx.obj
    try:
        Engine.from_tag(engine)
    except UnknownEngineError as e:
        raise typer.BadParameter(str(e), param_hint="ENGINE")
    if cookies_browser and cookies_file:
        raise typer.BadParameter("Use either --cookies-browser or --cookies-file, not both.")

    options = build_job_options(preset, cookies_browser, cookies_file)
    payloads = [
        {'kind': kind, 'engine': engine, 'input': item, 'output': str(output), 'options': options}
        for item in inputs
    ]
    try:
        results = asyncio.run(_run_jobs(settings, _storage_root(settings, root), payloads))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted. Running jobs were canceled.[/yellow]")
        raise typer.Exit(code=130)

    failed = 0
    for item, job in zip(inputs, results):
        if job is None:
            failed += 1
            console.print(f"[red]Rejected[/red] {escape(item)}")
        elif job.status is not JobStatus.SUCCESS:
            failed += 1
            console.print(f"{_status_text(job.status)} {escape(item)}: {escape(job.error_message or '')}")
    if failed:
        console.print(f"[red]{failed} of {len(inputs)} job(s) did not succeed.[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]All {len(inputs)} job(s) succeeded.[/green]")


# -----------------------------
# list
# -----------------------------
async def load_snapshot(root: Optional[Path], limit: int) -> JobSnapshot:
    """Reads the history file without touching it (no recovery of stale jobs)."""
    store = HistoryStore()
    await store.initialize(root)
    registry = JobRegistry()
    registry.replace(await store.load_all())
    return JobSnapshot(queue=registry.active_fifo(), history=registry.finished_recent(limit))


def _job_table(title: str, jobs: List[MediaJob]) -> Table:
    tbl = Table(title=title)
    tbl.add_column("ID", no_wrap=True)
    tbl.add_column("Engine", no_wrap=True)
    tbl.add_column("Status", no_wrap=True)
    tbl.add_column("Progress", justify="right")
    tbl.add_column("Input")
    tbl.add_column("Created")
    tbl.add_column("Error")
    for job in jobs:
        tbl.add_row(
            job.id[:8],
            job.engine,
            _status_text(job.status),
            f"{job.progress:.1f}%" if job.progress is not None else "-",
            escape(_short(job.input)),
            job.created_at.astimezone().strftime('%Y-%m-%d %H:%M:%S'),
            escape(job.error_message or ""),
        )
    return tbl


@app.command("list")
def list_command(
    ctx: typer.Context,
    root: Optional[Path] = typer.Option(None, "--root", help="Workflow root holding the job history"),
):
    """Show queued/running jobs and the most recent finished jobs."""
    settings: Settings = ctx.obj
    storage_root = _storage_root(settings, root)
    if storage_root is None:
        console.print("[yellow]No workflow root configured. Pass --root or set paths.workflowRoot.[/yellow]")
        raise typer.Exit(code=1)
    snapshot = asyncio.run(load_snapshot(storage_root, settings.history_limit))
    console.print(_job_table("Queue", snapshot.queue))
    console.print(_job_table("History", snapshot.history))


# -----------------------------
# tools
# -----------------------------
@app.command()
def tools(ctx: typer.Context):
    """Check that each engine's executable is installed."""
    settings: Settings = ctx.obj
    statuses = asyncio.run(ToolChecker(settings.engines.tool_paths()).check_all())

    tbl = Table(title="Tools")
    tbl.add_column("Engine")
    tbl.add_column("Status")
    tbl.add_column("Path")
    tbl.add_column("Version / Error")
    for status in statuses:
        style = {INSTALLED: 'green', NOT_FOUND: 'yellow'}.get(status.status, 'red')
        tbl.add_row(
            status.name,
            f"[{style}]{status.status}[/{style}]",
            escape(str(status.resolved_path or "-")),
            escape(status.version or status.error_message or ""),
        )
    console.print(tbl)
