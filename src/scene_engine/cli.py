"""Command-line interface using Typer."""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from scene_engine import __version__
from scene_engine.domain.enums import ProviderClass, StageKind
from scene_engine.errors import SceneEngineError
from scene_engine.logging import setup_logging

if TYPE_CHECKING:
    from scene_engine.services.pipeline import PipelineController

# Setup logging
setup_logging()

app = typer.Typer(
    name="scene-engine",
    help="AI Scene Engine - resumable scene generation pipeline CLI",
    add_completion=False,
)

# Subcommand groups
jobs_app = typer.Typer(help="Generation job commands")
credentials_app = typer.Typer(help="API credential pool administration")
limiter_app = typer.Typer(help="Adaptive rate limiter administration")
app.add_typer(jobs_app, name="jobs")
app.add_typer(credentials_app, name="credentials")
app.add_typer(limiter_app, name="limiter")

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"AI Scene Engine v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """AI Scene Engine - turn text into narrated scene videos, stage by stage."""
    pass


@contextmanager
def _errors() -> Iterator[None]:
    try:
        yield
    except SceneEngineError as e:
        console.print(f"[bold red]{type(e).__name__}: {e}[/bold red]")
        raise typer.Exit(code=1)


def _parse_uuid(value: str, what: str = "ID") -> UUID:
    try:
        return UUID(value)
    except ValueError:
        console.print(f"[bold red]Invalid {what}: {value}[/bold red]")
        raise typer.Exit(code=1)


def _pipeline(wait: bool = False) -> "PipelineController":
    """Controller for this command; ``wait`` runs background work inline."""
    from scene_engine.services.pipeline import build_pipeline, get_pipeline

    if wait:
        from scene_engine.jobs.runner import InlineTaskRunner

        return build_pipeline(runner=InlineTaskRunner())
    return get_pipeline()


def _show_progress(pipeline: "PipelineController", job_id: UUID) -> None:
    """Print job progress and the scene table."""
    progress = pipeline.get_progress(job_id)
    job = pipeline.jobs.get(job_id)

    console.print(Panel.fit(
        f"[cyan]Job:[/cyan] {job_id}\n"
        f"[cyan]Title:[/cyan] {job.title or 'Untitled'}\n"
        f"[cyan]Stage:[/cyan] {progress.stage}\n"
        f"[cyan]Progress:[/cyan] {progress.completed}/{progress.total} ({progress.percent}%)\n"
        f"[cyan]Failed:[/cyan] {progress.failed}\n"
        f"[cyan]Message:[/cyan] {progress.message}"
        + (f"\n[red]Error:[/red] {progress.error_message}" if progress.error_message else "")
        + (f"\n[green]Video:[/green] {progress.final_video_url}" if progress.final_video_url else ""),
        title="Job Progress",
        border_style="blue",
    ))

    scenes = pipeline.registry.list_scenes(job_id)
    if not scenes:
        return

    table = Table(title="Scenes")
    table.add_column("#", justify="right")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Type")
    table.add_column("Status", style="green")
    table.add_column("Media")
    table.add_column("Audio")
    table.add_column("Video")
    table.add_column("Error", style="red")

    for scene in scenes:
        table.add_row(
            str(scene.scene_order),
            str(scene.id)[:8] + "...",
            scene.scene_type,
            scene.status + (" (excluded)" if scene.excluded else ""),
            scene.media_status,
            scene.audio_status,
            scene.video_status,
            (scene.last_error or "")[:40],
        )
    console.print(table)


# =============================================================================
# JOB COMMANDS
# =============================================================================


@jobs_app.command("start")
def jobs_start(
    user_id: str = typer.Argument(..., help="User the job belongs to"),
    text: str = typer.Argument(..., help="Input text to turn into a scenario"),
    personal_key: Optional[str] = typer.Option(
        None, "--personal-key", help="Personal API key pinned for every provider call"
    ),
    wait: bool = typer.Option(False, "--wait", "-w", help="Run scenario generation inline"),
) -> None:
    """Start a job and generate its scenario."""
    with _errors():
        pipeline = _pipeline(wait)
        job_id = pipeline.start_job(user_id, text, personal_key)
        console.print(f"[green]Job started: {job_id}[/green]")
        _show_progress(pipeline, job_id)


@jobs_app.command("list")
def jobs_list(
    user_id: str = typer.Argument(..., help="User whose jobs to list"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of jobs to show"),
) -> None:
    """List a user's recent jobs."""
    jobs = _pipeline().jobs.list_for_user(user_id, limit=limit)
    if not jobs:
        console.print("[dim]No jobs found[/dim]")
        return

    table = Table(title=f"Jobs for {user_id}")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Title", style="cyan")
    table.add_column("Stage", style="green")
    table.add_column("Created")

    for job in jobs:
        table.add_row(
            str(job.id),
            (job.title or "Untitled")[:30],
            job.stage,
            job.created_at.strftime("%Y-%m-%d %H:%M") if job.created_at else "-",
        )
    console.print(table)


@jobs_app.command("show")
def jobs_show(job_id: str = typer.Argument(..., help="Job ID (UUID)")) -> None:
    """Show job progress and its scenes."""
    with _errors():
        _show_progress(_pipeline(), _parse_uuid(job_id, "job ID"))


@jobs_app.command("stage")
def jobs_stage(
    job_id: str = typer.Argument(..., help="Job ID (UUID)"),
    kind: StageKind = typer.Argument(..., help="Stage to start"),
    wait: bool = typer.Option(False, "--wait", "-w", help="Run the stage inline"),
) -> None:
    """Start the next generation stage of a job."""
    job_uuid = _parse_uuid(job_id, "job ID")
    with _errors():
        pipeline = _pipeline(wait)
        stage = pipeline.start_stage(job_uuid, kind)
        console.print(f"[green]Entered {stage}[/green]")
        _show_progress(pipeline, job_uuid)


@jobs_app.command("checkpoint")
def jobs_checkpoint(job_id: str = typer.Argument(..., help="Job ID (UUID)")) -> None:
    """Show the resumable checkpoint of a job."""
    with _errors():
        checkpoint = _pipeline().get_checkpoint(_parse_uuid(job_id, "job ID"))

    table = Table(title="Checkpoint")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Stage", str(checkpoint.stage))
    table.add_row("Kind", str(checkpoint.kind or "-"))
    table.add_row("Status", str(checkpoint.status))
    table.add_row("Completed", f"{checkpoint.completed_count}/{checkpoint.total_count}")
    table.add_row("Failed", str(checkpoint.failed_count))
    table.add_row("Pending", str(checkpoint.pending_count))
    table.add_row("Excluded", str(len(checkpoint.excluded_scene_ids)))
    table.add_row("Can resume", "Yes" if checkpoint.can_resume else "No")
    table.add_row(
        "Last updated",
        checkpoint.last_updated.strftime("%Y-%m-%d %H:%M:%S") if checkpoint.last_updated else "-",
    )
    console.print(table)


@jobs_app.command("resume")
def jobs_resume(
    job_id: str = typer.Argument(..., help="Job ID (UUID)"),
    skip_failed: bool = typer.Option(
        False, "--skip-failed", help="Leave failed scenes out instead of re-running them"
    ),
    wait: bool = typer.Option(False, "--wait", "-w", help="Run the resumed stage inline"),
) -> None:
    """Resume an interrupted or partially failed stage."""
    job_uuid = _parse_uuid(job_id, "job ID")
    with _errors():
        pipeline = _pipeline(wait)
        result = pipeline.resume(job_uuid, skip_failed=skip_failed)
        console.print(f"[green]{result.status}[/green]: {result.message}")
        _show_progress(pipeline, job_uuid)


@jobs_app.command("failed")
def jobs_failed(job_id: str = typer.Argument(..., help="Job ID (UUID)")) -> None:
    """List failed scenes of a job."""
    with _errors():
        failed = _pipeline().get_failed_scenes(_parse_uuid(job_id, "job ID"))
    if not failed:
        console.print("[dim]No failed scenes[/dim]")
        return

    table = Table(title="Failed Scenes")
    table.add_column("#", justify="right")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Failed at")
    table.add_column("Retries", justify="right")
    table.add_column("Retrying")
    table.add_column("Error", style="red")
    for info in failed:
        table.add_row(
            str(info.order),
            str(info.scene_id),
            info.failed_at or "-",
            str(info.retry_count),
            "Yes" if info.is_retrying else "No",
            (info.error_message or "")[:60],
        )
    console.print(table)


@jobs_app.command("retry")
def jobs_retry(
    job_id: str = typer.Argument(..., help="Job ID (UUID)"),
    scene: Optional[list[str]] = typer.Option(None, "--scene", "-s", help="Scene ID to retry"),
    media_only: bool = typer.Option(False, "--media-only", help="Only regenerate scene media"),
    include_pending: bool = typer.Option(False, "--include-pending", help="Also run pending scenes"),
    wait: bool = typer.Option(False, "--wait", "-w", help="Run the retry inline"),
) -> None:
    """Retry failed scenes of a job."""
    from scene_engine.domain.models import RetryOptions

    job_uuid = _parse_uuid(job_id, "job ID")
    options = RetryOptions(
        scene_ids=[_parse_uuid(s, "scene ID") for s in scene] if scene else None,
        media_only=media_only,
        include_pending=include_pending,
    )
    with _errors():
        pipeline = _pipeline(wait)
        result = pipeline.retry_failed(job_uuid, options)
        console.print(f"[green]{result.status}[/green]: {result.message}")
        _show_progress(pipeline, job_uuid)


@jobs_app.command("regenerate")
def jobs_regenerate(
    job_id: str = typer.Argument(..., help="Job ID (UUID)"),
    scene_id: str = typer.Argument(..., help="Scene ID (UUID)"),
    feedback: Optional[str] = typer.Option(None, "--feedback", "-f", help="What to change"),
    wait: bool = typer.Option(False, "--wait", "-w", help="Run the regeneration inline"),
) -> None:
    """Regenerate one scene, optionally with feedback."""
    job_uuid = _parse_uuid(job_id, "job ID")
    with _errors():
        pipeline = _pipeline(wait)
        pipeline.regenerate_scene(job_uuid, _parse_uuid(scene_id, "scene ID"), feedback)
        console.print("[green]Regeneration scheduled[/green]")
        _show_progress(pipeline, job_uuid)


@jobs_app.command("narration")
def jobs_narration(
    job_id: str = typer.Argument(..., help="Job ID (UUID)"),
    scene_id: str = typer.Argument(..., help="Scene ID (UUID)"),
    text: str = typer.Argument(..., help="New narration text"),
) -> None:
    """Replace a scene's narration before narration audio is generated."""
    with _errors():
        _pipeline().edit_narration(
            _parse_uuid(job_id, "job ID"), _parse_uuid(scene_id, "scene ID"), text
        )
    console.print("[green]Narration updated[/green]")


@jobs_app.command("delete")
def jobs_delete(
    job_id: str = typer.Argument(..., help="Job ID (UUID)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete a job, its scenes and stored artifacts."""
    job_uuid = _parse_uuid(job_id, "job ID")
    if not yes:
        typer.confirm(f"Delete job {job_uuid}?", abort=True)
    with _errors():
        _pipeline().delete_job(job_uuid)
    console.print(f"[green]Deleted job {job_uuid}[/green]")


# =============================================================================
# CREDENTIAL COMMANDS
# =============================================================================


@credentials_app.command("register")
def credentials_register(
    provider: ProviderClass = typer.Argument(..., help="Provider class the key is used for"),
    api_key: str = typer.Argument(..., help="API key to store (encrypted)"),
    label: Optional[str] = typer.Option(None, "--label", "-l", help="Human-readable label"),
    priority: int = typer.Option(0, "--priority", "-p", help="Lower is tried first"),
) -> None:
    """Add an API key to a provider's credential pool."""
    from scene_engine.services.credentials import CredentialRotator

    with _errors():
        credential_id = CredentialRotator().register(provider, api_key, label=label, priority=priority)
    console.print(f"[green]Registered credential {credential_id} for {provider}[/green]")


@credentials_app.command("list")
def credentials_list(
    provider: Optional[ProviderClass] = typer.Option(None, "--provider", "-p", help="Filter"),
) -> None:
    """List pooled credentials with masked keys."""
    from scene_engine.services.credentials import CredentialRotator

    with _errors():
        credentials = CredentialRotator().list_credentials(provider)
    if not credentials:
        console.print("[dim]No credentials registered[/dim]")
        return

    table = Table(title="Credentials")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Provider", style="cyan")
    table.add_column("Label")
    table.add_column("Key")
    table.add_column("Priority", justify="right")
    table.add_column("Active")
    table.add_column("Errors", justify="right")
    for info in credentials:
        table.add_row(
            str(info.id),
            info.provider,
            info.label or "-",
            info.masked_key,
            str(info.priority),
            "Yes" if info.is_active else "No",
            str(info.error_count),
        )
    console.print(table)


@credentials_app.command("deactivate")
def credentials_deactivate(
    credential_id: str = typer.Argument(..., help="Credential ID (UUID)"),
) -> None:
    """Take a credential out of rotation."""
    from scene_engine.services.credentials import CredentialRotator

    if not CredentialRotator().deactivate(_parse_uuid(credential_id, "credential ID")):
        console.print(f"[bold red]Credential not found: {credential_id}[/bold red]")
        raise typer.Exit(code=1)
    console.print(f"[green]Deactivated {credential_id}[/green]")


@credentials_app.command("generate-key")
def credentials_generate_key() -> None:
    """Generate a master key for ENCRYPTION_MASTER_KEY."""
    from scene_engine.services.encryption import generate_master_key

    console.print(generate_master_key())


# =============================================================================
# RATE LIMITER COMMANDS
# =============================================================================


@limiter_app.command("show")
def limiter_show() -> None:
    """Show the effective rate limiter configuration per provider class."""
    from scene_engine.db.session import SessionLocal
    from scene_engine.services.rate_limiter import RateLimiterRegistry

    registry = RateLimiterRegistry(SessionLocal)
    table = Table(title="Rate Limiters")
    table.add_column("Provider", style="cyan")
    table.add_column("Initial ms", justify="right")
    table.add_column("Min ms", justify="right")
    table.add_column("Max ms", justify="right")
    table.add_column("Success ratio", justify="right")
    table.add_column("Error ratio", justify="right")
    table.add_column("Streak", justify="right")
    for provider_class in ProviderClass:
        config = registry.config_for(provider_class)
        table.add_row(
            str(provider_class),
            f"{config.initial_delay_ms:g}",
            f"{config.min_delay_ms:g}",
            f"{config.max_delay_ms:g}",
            f"{config.success_decrease_ratio:g}",
            f"{config.error_increase_ratio:g}",
            str(config.success_streak),
        )
    console.print(table)


@limiter_app.command("set")
def limiter_set(
    provider: ProviderClass = typer.Argument(..., help="Provider class to configure"),
    initial: Optional[float] = typer.Option(None, "--initial", help="Initial delay (ms)"),
    minimum: Optional[float] = typer.Option(None, "--min", help="Minimum delay (ms)"),
    maximum: Optional[float] = typer.Option(None, "--max", help="Maximum delay (ms)"),
    success_ratio: Optional[float] = typer.Option(None, "--success-ratio"),
    error_ratio: Optional[float] = typer.Option(None, "--error-ratio"),
    streak: Optional[int] = typer.Option(None, "--streak", help="Successes before decreasing"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
) -> None:
    """Store rate limiter parameters for a provider class (applied on refresh)."""
    from dataclasses import replace

    from scene_engine.db.session import SessionLocal, get_session_context
    from scene_engine.services.rate_limiter import RateLimiterRegistry, upsert_rate_limit_config

    current = RateLimiterRegistry(SessionLocal).config_for(provider)
    changes = {
        "initial_delay_ms": initial,
        "min_delay_ms": minimum,
        "max_delay_ms": maximum,
        "success_decrease_ratio": success_ratio,
        "error_increase_ratio": error_ratio,
        "success_streak": streak,
    }
    try:
        config = replace(current, **{k: v for k, v in changes.items() if v is not None})
    except ValueError as e:
        console.print(f"[bold red]Invalid configuration: {e}[/bold red]")
        raise typer.Exit(code=1)

    with get_session_context() as session:
        upsert_rate_limit_config(session, provider, config, description)
    console.print(f"[green]Stored configuration for {provider}[/green]")


if __name__ == "__main__":
    app()
