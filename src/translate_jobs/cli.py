"""
CLI for translate-jobs.

Provides commands for posts, translation jobs, batch runs, and the
operator controls: rate limits, emergency stop, locks, cleanup, and usage.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from translate_jobs.config import Settings, create_default_config, load_config
from translate_jobs.database import Status
from translate_jobs.engine import Engine, create_engine
from translate_jobs.logging_setup import setup_logging
from translate_jobs.orchestrator import JobResult

app = typer.Typer(
    name="translate-jobs",
    help="Rate-limited, deduplicated AI translation jobs for posts.",
    add_completion=False,
)
post_app = typer.Typer(help="Create, show and edit posts.")
limits_app = typer.Typer(help="Inspect or reset the rate limits.")
emergency_app = typer.Typer(help="Inspect, trip or reset the emergency stop.")
locks_app = typer.Typer(help="Inspect or sweep job locks.")
app.add_typer(post_app, name="post")
app.add_typer(limits_app, name="limits")
app.add_typer(emergency_app, name="emergency")
app.add_typer(locks_app, name="locks")

console = Console()

STATUS_STYLES = {
    Status.PENDING: "yellow",
    Status.PROCESSING: "blue",
    Status.COMPLETED: "green",
    Status.OUTDATED: "magenta",
    Status.ERROR: "red",
}

ConfigOption = typer.Option(None, "--config", "-c", help="Config file")


def get_settings(config_path: Path | None = None) -> Settings:
    """Load settings from config file or defaults."""
    return load_config(config_path)


@contextmanager
def open_engine(config_path: Path | None) -> Iterator[Engine]:
    """Load settings, set up logging, and build the engine for one command."""
    settings = get_settings(config_path)
    setup_logging(settings.logging)
    engine = create_engine(settings)
    try:
        yield engine
    finally:
        engine.close()


def _fmt_time(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _fmt_seconds(seconds: float | None) -> str:
    if seconds is None:
        return "-"
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def _print_result(result: JobResult) -> None:
    """Print a job result; exit 1 when it failed."""
    if result.success:
        data = result.data
        lines = [
            f"Job: {result.job_key}",
            f"Source post: {data.get('source_id')}",
            f"Language: {data.get('language')}",
            f"Translated post: {data.get('target_id')}",
        ]
        if data.get("title"):
            lines.append(f"Title: {data['title']}")
        usage = data.get("usage") or {}
        if usage:
            lines.append(
                f"Tokens: {usage.get('input_tokens', 0)} in / {usage.get('output_tokens', 0)} out"
            )
        console.print(
            Panel("\n".join(lines), title=f"[green]{result.message}[/green]", border_style="green")
        )
        return

    code = result.error_code.value if result.error_code else "error"
    console.print(f"[red]Error ({code}): {result.message}[/red]")
    if result.retry_after is not None:
        console.print(f"[yellow]Retry in {_fmt_seconds(result.retry_after)}[/yellow]")
    raise typer.Exit(1)


# ==================== Setup ====================


@app.command()
def init(
    output_path: Path = typer.Option(
        Path("config.yaml"),
        "--output",
        "-o",
        help="Output path for config file",
    ),
) -> None:
    """Generate a default configuration file."""
    if output_path.exists():
        overwrite = typer.confirm(f"{output_path} already exists. Overwrite?")
        if not overwrite:
            raise typer.Abort()

    create_default_config(output_path)
    console.print(f"[green]Created config file: {output_path}[/green]")
    console.print("\nSet OPENROUTER_API_KEY, then run:")
    console.print("  translate-jobs post add 'Hello' --content 'Hello world' --config config.yaml")


# ==================== Posts ====================


@post_app.command("add")
def post_add(
    title: str = typer.Argument(..., help="Post title"),
    content: str = typer.Option("", "--content", "-b", help="Post content"),
    language: str | None = typer.Option(None, "--lang", "-l", help="Post language"),
    config: Path | None = ConfigOption,
) -> None:
    """Add a post."""
    with open_engine(config) as engine:
        try:
            post_id = engine.service.add_post(title, content, language)
        except ValueError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1) from None
    console.print(f"[green]Added post {post_id}[/green]")


@post_app.command("show")
def post_show(
    post_id: int = typer.Argument(..., help="Post ID"),
    config: Path | None = ConfigOption,
) -> None:
    """Show a post and its translations."""
    with open_engine(config) as engine:
        post = engine.service.get_post(post_id)
        if post is None:
            console.print(f"[red]Post not found: {post_id}[/red]")
            raise typer.Exit(1)
        translations = engine.service.get_translations(post_id)

    console.print(
        Panel(
            post.content or "[dim](empty)[/dim]",
            title=f"[bold]{post.title}[/bold] [dim]#{post.id} ({post.language})[/dim]",
            subtitle=f"updated {_fmt_time(post.updated_at)}",
        )
    )
    if translations:
        _print_relationships(translations, title="Translations")


@post_app.command("edit")
def post_edit(
    post_id: int = typer.Argument(..., help="Post ID"),
    title: str | None = typer.Option(None, "--title", "-t", help="New title"),
    content: str | None = typer.Option(None, "--content", "-b", help="New content"),
    config: Path | None = ConfigOption,
) -> None:
    """Edit a post; its completed translations become outdated."""
    if title is None and content is None:
        console.print("[yellow]Nothing to change: pass --title and/or --content[/yellow]")
        raise typer.Exit(1)

    with open_engine(config) as engine:
        try:
            engine.service.update_post(post_id, title=title, content=content)
        except ValueError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1) from None
        outdated = engine.state.list_relationships(source_id=post_id, status=Status.OUTDATED)

    console.print(f"[green]Updated post {post_id}[/green]")
    if outdated:
        langs = ", ".join(rel.language for rel in outdated)
        console.print(f"[magenta]Outdated translations: {langs}[/magenta]")


# ==================== Jobs ====================


@app.command()
def translate(
    source_id: int = typer.Argument(..., help="Source post ID"),
    language: str = typer.Argument(..., help="Target language code"),
    config: Path | None = ConfigOption,
) -> None:
    """Translate a post into a language."""
    with open_engine(config) as engine:
        with console.status(f"Translating post {source_id} into {language}..."):
            result = asyncio.run(engine.service.translate_post(source_id, language))
    _print_result(result)


@app.command()
def update(
    source_id: int = typer.Argument(..., help="Source post ID"),
    target_id: int = typer.Argument(..., help="Translated post ID"),
    config: Path | None = ConfigOption,
) -> None:
    """Refresh an existing translation from its source post."""
    with open_engine(config) as engine:
        with console.status(f"Updating post {target_id} from post {source_id}..."):
            result = asyncio.run(engine.service.update_translation(source_id, target_id))
    _print_result(result)


@app.command()
def batch(
    post_ids: list[int] = typer.Option(..., "--post", "-p", help="Source post ID (repeatable)"),
    languages: list[str] = typer.Option(..., "--lang", "-l", help="Target language (repeatable)"),
    config: Path | None = ConfigOption,
) -> None:
    """Translate several posts into several languages."""
    with open_engine(config) as engine:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Translating", total=len(post_ids) * len(languages))

            def on_progress(done: int, total: int) -> None:
                progress.update(task, completed=done, total=total)

            result = asyncio.run(engine.batch.process_batch(post_ids, languages, on_progress))

    table = Table(title=f"Batch {result.batch_id[:8]}")
    table.add_column("Post", justify="right")
    table.add_column("Lang")
    table.add_column("Result")
    table.add_column("Message")
    for item in result.results:
        outcome = "[green]ok[/green]" if item["success"] else f"[red]{item['error_code']}[/red]"
        table.add_row(str(item["post_id"]), item["language"], outcome, item["message"][:60])
    console.print(table)

    style = "green" if result.status == "completed" else "yellow"
    console.print(
        Panel(
            f"Completed: {result.completed}\nFailed: {result.failed}\nSkipped: {result.skipped}",
            title=f"[{style}]Batch {result.status}[/{style}]",
        )
    )
    if result.failed or result.status != "completed":
        raise typer.Exit(1)


@app.command()
def status(
    source_id: int | None = typer.Argument(None, help="Only this source post"),
    config: Path | None = ConfigOption,
) -> None:
    """Show translation relationships."""
    with open_engine(config) as engine:
        relationships = engine.state.list_relationships(source_id=source_id)

    if not relationships:
        console.print("[yellow]No translations yet[/yellow]")
        return

    counts: dict[str, int] = {}
    for rel in relationships:
        counts[rel.status.value] = counts.get(rel.status.value, 0) + 1
    console.print(
        Panel("\n".join(f"{k}: {v}" for k, v in counts.items()), title="Translation Status")
    )
    _print_relationships(relationships, title="Translations")


def _print_relationships(relationships: list, title: str) -> None:
    table = Table(title=title)
    table.add_column("Source", justify="right", style="dim")
    table.add_column("Lang", style="cyan")
    table.add_column("Target", justify="right")
    table.add_column("Status")
    table.add_column("Updated", style="dim")
    table.add_column("Error")
    for rel in relationships:
        style = STATUS_STYLES.get(rel.status, "white")
        table.add_row(
            str(rel.source_id),
            rel.language,
            str(rel.target_id or "-"),
            f"[{style}]{rel.status.value}[/{style}]",
            _fmt_time(rel.updated_at),
            (rel.error_message or "")[:50],
        )
    console.print(table)


# ==================== Limits ====================


@limits_app.command("show")
def limits_show(config: Path | None = ConfigOption) -> None:
    """Show current call counters and limits."""
    with open_engine(config) as engine:
        info = engine.admission.status()

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Calls this hour", f"{info['calls_this_hour']} / {info['hour_limit']}")
    table.add_row("Calls today", f"{info['calls_today']} / {info['day_limit']}")
    table.add_row("Hour resets in", _fmt_seconds(info["hour_resets_in"]))
    table.add_row("Day resets in", _fmt_seconds(info["day_resets_in"]))
    table.add_row("Last call", _fmt_time(info["last_call_at"]))
    table.add_row("Min interval", f"{info['min_interval_seconds']}s")
    threshold = info["emergency_threshold"]
    table.add_row(
        "Emergency threshold",
        f"{threshold} ({info['emergency_risk']:.0%} reached)" if threshold else "disabled",
    )
    table.add_row(
        "Emergency stop",
        "[red]ACTIVE[/red]" if info["emergency_active"] else "inactive",
    )
    console.print(Panel(table, title="[bold blue]Rate Limits[/bold blue]", border_style="blue"))


@limits_app.command("reset")
def limits_reset(config: Path | None = ConfigOption) -> None:
    """Zero the hourly and daily counters."""
    with open_engine(config) as engine:
        engine.admission.reset()
        engine.usage.record("limits_reset")
    console.print("[green]Rate limits reset[/green]")


# ==================== Emergency stop ====================


@emergency_app.command("show")
def emergency_show(config: Path | None = ConfigOption) -> None:
    """Show the emergency stop state."""
    with open_engine(config) as engine:
        state = engine.emergency.state()

    if state.active:
        console.print(
            Panel(
                f"Reason: {state.reason or '-'}\nSince: {_fmt_time(state.tripped_at)}",
                title="[red]Emergency stop ACTIVE[/red]",
                border_style="red",
            )
        )
    else:
        console.print("[green]Emergency stop inactive[/green]")


@emergency_app.command("trip")
def emergency_trip(
    reason: str = typer.Argument("Manual stop", help="Why translations are halted"),
    config: Path | None = ConfigOption,
) -> None:
    """Halt all new translation jobs."""
    with open_engine(config) as engine:
        engine.emergency.trip(reason)
        engine.usage.record("emergency_stop", data={"reason": reason})
    console.print(f"[red]Emergency stop activated: {reason}[/red]")


@emergency_app.command("reset")
def emergency_reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    config: Path | None = ConfigOption,
) -> None:
    """Allow translation jobs again."""
    if not yes and not typer.confirm("Resume translation jobs?"):
        raise typer.Abort()
    with open_engine(config) as engine:
        engine.emergency.reset()
        engine.usage.record("emergency_reset")
    console.print("[green]Emergency stop reset[/green]")


# ==================== Locks ====================


@locks_app.command("list")
def locks_list(config: Path | None = ConfigOption) -> None:
    """List job locks currently held."""
    with open_engine(config) as engine:
        locks = engine.locks.list_locks()
        ttl = engine.locks.ttl
        now = time.time()

    if not locks:
        console.print("[green]No jobs in progress[/green]")
        return

    table = Table(title="Job Locks")
    table.add_column("Key", style="cyan")
    table.add_column("Owner", style="dim")
    table.add_column("Acquired")
    table.add_column("Age", justify="right")
    for lock in locks:
        age = lock.age(now)
        age_text = _fmt_seconds(age)
        if age > ttl:
            age_text = f"[red]{age_text} (stale)[/red]"
        table.add_row(lock.key, lock.owner[:12], _fmt_time(lock.acquired_at), age_text)
    console.print(table)


@locks_app.command("sweep")
def locks_sweep(
    ttl: float | None = typer.Option(None, "--ttl", help="Staleness TTL in seconds"),
    config: Path | None = ConfigOption,
) -> None:
    """Remove locks older than the TTL."""
    with open_engine(config) as engine:
        removed = engine.locks.sweep_stale(ttl)
    console.print(f"[green]Removed {removed} stale lock(s)[/green]")


# ==================== Maintenance ====================


@app.command()
def cleanup(
    emergency: bool = typer.Option(
        False, "--emergency", help="Clear all locks, fail running jobs, reset limits and stop"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    config: Path | None = ConfigOption,
) -> None:
    """Run cleanup: stale locks, stuck jobs and old usage entries."""
    if emergency and not yes:
        if not typer.confirm("Emergency cleanup fails every running job. Continue?"):
            raise typer.Abort()

    with open_engine(config) as engine:
        if emergency:
            summary = engine.maintenance.emergency_cleanup()
        else:
            summary = {**engine.maintenance.daily_cleanup(), **engine.maintenance.recover_stuck()}

    title = "Emergency Cleanup" if emergency else "Cleanup"
    console.print(
        Panel(
            "\n".join(f"{k.replace('_', ' ')}: {v}" for k, v in summary.items()),
            title=title,
        )
    )


@app.command()
def usage(
    limit: int = typer.Option(20, "--limit", "-n", help="Max entries to show"),
    action: str | None = typer.Option(None, "--action", "-a", help="Filter by action"),
    config: Path | None = ConfigOption,
) -> None:
    """Show the usage log."""
    with open_engine(config) as engine:
        summary = engine.usage.summary()
        entries = engine.usage.recent(limit=limit, action=action)

    if not entries:
        console.print("[yellow]No usage entries found[/yellow]")
        return

    console.print(
        Panel(
            "\n".join(
                f"{name}: {counts['successful']}/{counts['total']} successful"
                for name, counts in summary.items()
            ),
            title="Usage Summary",
        )
    )

    table = Table(title="Usage Log")
    table.add_column("Time", style="dim")
    table.add_column("Action", style="cyan")
    table.add_column("Job")
    table.add_column("Result")
    table.add_column("Data")
    for entry in entries:
        outcome = "[green]ok[/green]" if entry.success else f"[red]{entry.error_code}[/red]"
        table.add_row(
            _fmt_time(entry.created_at),
            entry.action,
            entry.job_key or "",
            outcome,
            json.dumps(entry.data)[:50],
        )
    console.print(table)


def main() -> None:
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
