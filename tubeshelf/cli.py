"""
Defines the command-line interface for the download orchestrator using Typer.
"""
import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TextColumn
from rich.table import Table

from ._version import __version__
from .config import ConfigManager, Settings
from .constants import CONFIG_FILE, JOBS_FILE, LOG_DIR
from .controller import DownloadController
from .dependencies import DependencyManager
from .exceptions import ConfigurationError
from .jobs import DownloadJob, JobStatus, VideoRequest
from .logging_config import setup_logging
from .registry import JobRegistry
from .server import start_server
from .storage import JobStore

console = Console()
logger = logging.getLogger(__name__)

app = typer.Typer(
    name="tubeshelf",
    help="Queue yt-dlp downloads, run a bounded number at once, and keep the list across restarts.",
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)

STATUS_STYLES = {
    JobStatus.QUEUED: 'cyan',
    JobStatus.DOWNLOADING: 'yellow',
    JobStatus.COMPLETED: 'green',
    JobStatus.ERROR: 'red',
    JobStatus.CANCELLED: 'dim',
}


class _State:
    config_path: Path = CONFIG_FILE
    jobs_path: Path = JOBS_FILE
    verbose: int = 0


state = _State()


def _load_settings(**overrides) -> Settings:
    settings = ConfigManager(state.config_path).load()
    updates = {k: v for k, v in overrides.items() if v is not None}
    if updates:
        settings = Settings.model_validate({**settings.model_dump(), **updates})
    console_level = 'DEBUG' if state.verbose >= 2 else 'INFO' if state.verbose == 1 else 'WARNING'
    setup_logging(settings.log_level, console_level, LOG_DIR, console)
    return settings


def _jobs_table(jobs: List[DownloadJob]) -> Table:
    table = Table(title="Downloads", show_lines=False)
    table.add_column("ID", style="bold")
    table.add_column("Title")
    table.add_column("Channel")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Details", overflow="fold")
    for job in jobs:
        style = STATUS_STYLES.get(job.status, '')
        details = job.output_path or (job.error.splitlines()[0] if job.error else '')
        table.add_row(
            job.job_id, job.title, job.channel_name,
            f"[{style}]{job.status.value}[/{style}]",
            f"{job.progress:.1f}%", details,
        )
    return table


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase console logging (-vv for debug)."),
    config: Path = typer.Option(CONFIG_FILE, "--config", help="Path to the configuration file."),
    jobs_file: Path = typer.Option(JOBS_FILE, "--jobs-file", help="Path to the persisted job list."),
    version: bool = typer.Option(False, "--version", help="Show version and exit.", is_eager=True),
):
    """Download orchestrator for yt-dlp."""
    if version:
        console.print(f"[bold]tubeshelf[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()
    state.verbose = verbose
    state.config_path = config
    state.jobs_path = jobs_file
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Interface for the status API."),
    port: Optional[int] = typer.Option(None, "--port", help="Port for the status API."),
):
    """Run the orchestrator and its HTTP API until interrupted."""
    settings = _load_settings(server_host=host, server_port=port)

    async def _serve():
        controller = DownloadController(settings, store=JobStore(state.jobs_path))
        await controller.start()
        runner = await start_server(controller, settings.server_host, settings.server_port)
        console.print(f"[bold cyan]Serving on http://{settings.server_host}:{settings.server_port}[/bold cyan]")
        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()
            await controller.stop()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")


@app.command()
def download(
    video_ids: List[str] = typer.Argument(..., help="Video ids to download."),  # noqa: B008
    channel: str = typer.Option("", "--channel", "-c", help="Channel name used for the output folder."),
    group: Optional[str] = typer.Option(None, "--group", "-g", help="Channel group used for the output folder."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Download directory (overrides the config)."),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Maximum concurrent downloads."),
    confirm_stale: bool = typer.Option(False, "--confirm-stale", help="Download even if cookies are flagged stale."),
):
    """Queue videos and wait until every queued download has finished."""
    settings = _load_settings(download_path=output, max_concurrent_downloads=workers)
    requests = [VideoRequest(video_id=v, title=v, channel_name=channel, group_name=group) for v in video_ids]

    async def _download():
        controller = DownloadController(settings, store=JobStore(state.jobs_path))
        progress = Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(bar_width=30),
            "[progress.percentage]{task.percentage:>5.1f}%",
            TextColumn("{task.fields[speed]}"),
            TextColumn("{task.fields[eta]}"),
            console=console,
        )
        task_ids: Dict[str, TaskID] = {}

        def on_event(event):
            msg_type, value = event
            if msg_type != 'job_updated':
                return
            job: DownloadJob = value
            if job.job_id not in task_ids:
                task_ids[job.job_id] = progress.add_task(job.title, total=100, speed='', eta='')
            progress.update(
                task_ids[job.job_id],
                completed=job.progress,
                description=f"{job.title} [{STATUS_STYLES[job.status]}]{job.status.value}[/]",
                speed=job.speed or '',
                eta=job.eta or '',
            )

        controller.subscribe(on_event)
        await controller.start()
        try:
            queued = controller.enqueue_batch(requests, confirm_stale=confirm_stale)
            console.print(f"[bold cyan]Queued {queued} download(s).[/bold cyan]")
            with progress:
                await controller.wait_until_idle()
        finally:
            await controller.stop()

        wanted = set(video_ids)
        jobs = [job for job in controller.list_jobs() if job.job_id in wanted]
        console.print(_jobs_table(jobs))
        return jobs

    try:
        jobs = asyncio.run(_download())
    except ConfigurationError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        raise typer.Exit(code=2) from e
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted; unfinished downloads will resume on the next run.[/yellow]")
        raise typer.Exit(code=130)
    if any(job.status == JobStatus.ERROR for job in jobs):
        raise typer.Exit(code=1)


@app.command()
def jobs():
    """Show the persisted job list."""
    _load_settings()

    async def _jobs() -> List[DownloadJob]:
        records = await JobStore(state.jobs_path).load()
        job_list = []
        for record in records:
            try:
                job_list.append(DownloadJob.from_record(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed job record: {e}")
        return job_list

    job_list = asyncio.run(_jobs())
    if not job_list:
        console.print("[yellow]No downloads recorded.[/yellow]")
        return
    console.print(_jobs_table(sorted(job_list, key=lambda j: j.enqueued_at, reverse=True)))


@app.command(name="clear-history")
def clear_history():
    """Remove completed, failed and cancelled downloads from the list."""
    _load_settings()

    async def _clear() -> int:
        # A bare registry has no dispatcher, so restored queued jobs are not started.
        store = JobStore(state.jobs_path)
        registry = JobRegistry()
        registry.restore(await store.load())
        removed = registry.clear_history()
        await store.save(registry.snapshot())
        return removed

    removed = asyncio.run(_clear())
    console.print(f"[green]✓ Removed {removed} finished download(s).[/green]")


@app.command()
def doctor():
    """Locate yt-dlp and FFmpeg and report their versions."""
    settings = _load_settings()

    async def _check():
        dependencies = DependencyManager(settings.yt_dlp_path, settings.ffmpeg_path)
        await dependencies.initialize()
        yt_dlp_version, ffmpeg_version = await asyncio.gather(
            dependencies.get_version(dependencies.yt_dlp_path),
            dependencies.get_version(dependencies.ffmpeg_path),
        )
        return dependencies, yt_dlp_version, ffmpeg_version

    dependencies, yt_dlp_version, ffmpeg_version = asyncio.run(_check())
    table = Table(title="Dependencies")
    table.add_column("Tool", style="bold")
    table.add_column("Path")
    table.add_column("Version")
    table.add_row("yt-dlp", str(dependencies.yt_dlp_path or "-"), yt_dlp_version)
    table.add_row("ffmpeg", str(dependencies.ffmpeg_path or "-"), ffmpeg_version)
    console.print(table)
    destination = settings.download_path or "[red]not configured[/red]"
    console.print(f"Download directory: {destination}")
    if not dependencies.yt_dlp_path:
        raise typer.Exit(code=1)
