from __future__ import annotations

from datetime import datetime
from pathlib import Path

import typer
from dotenv import find_dotenv, load_dotenv
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from .auth import CredentialProvider, OAuthCredentialSource
from .config import Settings, load_settings
from .errors import AuthError, ConfigError, FetchError
from .ingest import dedupe_tasks, fetch_all_completed_tasks, sort_by_completion
from .logging_setup import setup_logging
from .models import ExportMeta, Task
from .storage import write_export, write_tasks

TOOL_VERSION = "0.1.0"

app = typer.Typer(help="Completed Microsoft To Do tasks, fetched in one go")
console = Console()


def _settings(log_file: Path | None = None) -> Settings:
    load_dotenv(find_dotenv(usecwd=True))
    try:
        settings = load_settings()
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc
    setup_logging(settings.log_level, log_file)
    return settings


def _prompt_sign_in(url: str) -> str:
    console.print("Open this URL in a browser and sign in:")
    console.print(url, soft_wrap=True)
    return typer.prompt("Paste the URL you were redirected to")


def _source(settings: Settings) -> OAuthCredentialSource:
    if not settings.client_id:
        raise typer.BadParameter("DONELOG_CLIENT_ID is required in the environment.")
    return OAuthCredentialSource(settings, sign_in=_prompt_sign_in)


def export_tasks(tasks: list[Task], base_dir: Path, deduped: bool) -> Path:
    meta = ExportMeta(
        timestamp=datetime.now().strftime("%Y-%m-%d_%H%M"),
        tool_version=TOOL_VERSION,
        counts={"tasks": len(tasks), "lists": len({task.list_id for task in tasks})},
        deduped=deduped,
    )
    return write_export(base_dir, tasks, meta)


def build_recent_table(tasks: list[Task], limit: int) -> Table:
    table = Table(title=f"Most recent {min(limit, len(tasks))} of {len(tasks)} completed tasks")
    table.add_column("Completed")
    table.add_column("Title")
    table.add_column("Description", overflow="fold")
    for task in tasks[:limit]:
        completed = task.completed_at.astimezone().strftime("%Y-%m-%d %H:%M") if task.completed_at else ""
        table.add_row(completed, task.title, task.description)
    return table


@app.command()
def fetch(
    output: Path | None = typer.Option(None, "--output", help="Write tasks JSON to this file"),
    dedupe: bool = typer.Option(False, "--dedupe", help="Drop tasks whose id was already seen"),
    limit: int = typer.Option(20, "--limit", min=0, help="Number of recent tasks to show"),
    log_file: Path | None = typer.Option(None, "--log-file", help="Also write debug logs here"),
) -> None:
    """Fetch all completed tasks."""
    settings = _settings(log_file)
    provider = CredentialProvider(_source(settings))

    with Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        bar = progress.add_task("Fetching tasks", total=None)

        def on_progress(count: int) -> None:
            progress.update(bar, description=f"Fetched {count} completed tasks")

        try:
            tasks = fetch_all_completed_tasks(provider, on_progress, settings=settings)
        except AuthError as exc:
            raise typer.BadParameter(f"Could not sign in to Microsoft: {exc}") from exc
        except FetchError as exc:
            raise typer.BadParameter(f"Microsoft Graph error: {exc}") from exc

    if dedupe:
        tasks = dedupe_tasks(tasks)
    tasks = sort_by_completion(tasks)

    if output:
        write_tasks(output, tasks)
        console.print(f"Tasks saved to: {output}")
    else:
        out_dir = export_tasks(tasks, settings.data_dir, dedupe)
        console.print(f"Export saved to: {out_dir}")

    if limit and tasks:
        console.print(build_recent_table(tasks, limit))
    console.print(f"Counts - Tasks: {len(tasks)}")


@app.command()
def login() -> None:
    """Sign in interactively and store the session."""
    settings = _settings()
    source = _source(settings)
    try:
        source.acquire_interactive(CredentialProvider(source).scopes)
    except AuthError as exc:
        raise typer.BadParameter(f"Could not sign in to Microsoft: {exc}") from exc
    console.print(f"Signed in as: {source.get_account()}")


@app.command()
def logout() -> None:
    """Forget the stored session."""
    settings = _settings()
    source = OAuthCredentialSource(settings)
    if source.sign_out():
        console.print("Signed out.")
    else:
        console.print("No stored session.")


if __name__ == "__main__":
    app()
