from __future__ import annotations

import asyncio
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table
from rich.text import Text

from treepush.config import (
    CONFIG_FILENAME,
    DEFAULT_BRANCH,
    TreePushConfig,
    default_token,
    load_config,
    normalize_repo_id,
    parse_target,
    save_config,
)
from treepush.errors import TreePushError
from treepush.log import configure_logging
from treepush.models import ChangeSet, RateLimitScope, TempRepoRecord
from treepush.session import open_session, push_workspace, workspace_status
from treepush.state_db import ensure_db
from treepush.transfer_ui import PushProgressUI


app = typer.Typer(help="Push a directory snapshot to GitHub as a single commit.")
temp_app = typer.Typer(help="Manage temporary repositories created by import-private.")
app.add_typer(temp_app, name="temp")
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging."),
) -> None:
    configure_logging(verbose, console=console)


def _render_path_summary(title: str, paths: list[str], style: str) -> None:
    if not paths:
        return
    console.print(Text(f"{title} ({len(paths)}):", style=style))
    for path in paths:
        console.print(f"  {path}")


def _render_changes(changes: ChangeSet) -> None:
    _render_path_summary("Added", list(changes.added), "green")
    _render_path_summary("Modified", list(changes.modified), "cyan")
    _render_path_summary("Deleted", changes.deleted, "yellow")


def _render_temp_records(records: list[TempRepoRecord]) -> None:
    now = time.time()
    table = Table(title="Temporary repositories")
    table.add_column("Repository")
    table.add_column("Source")
    table.add_column("Expires in", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("State")

    for record in records:
        if record.needs_manual_cleanup:
            state = f"[red]manual cleanup[/red] {record.last_error or ''}"
        elif record.is_expired(now):
            state = "[yellow]expired[/yellow]"
        else:
            state = "active"
        table.add_row(
            f"{record.owner}/{record.temp_repo}",
            record.original_repo,
            f"{int(record.remaining_seconds(now))}s",
            str(record.delete_attempts),
            state,
        )

    console.print(table)


async def _initialize_project_async(root: Path, repo_id: str, branch: str) -> TreePushConfig:
    root = root.resolve()
    config = TreePushConfig(
        repo_id=normalize_repo_id(repo_id),
        token=default_token(),
        local_root=str(root),
        branch=branch,
    )
    # Validate before anything is written.
    parse_target(config.repo_id, config.branch)
    await ensure_db(config.state_db_path)
    save_config(config, root)
    return config


@app.command()
def init(
    repo_id: str,
    branch: str = typer.Option(DEFAULT_BRANCH, "--branch", "-b", help="Branch to push to."),
) -> None:
    """Initialize treepush config in the current directory."""
    root = Path.cwd().resolve()
    try:
        config = asyncio.run(_initialize_project_async(root, repo_id, branch))
    except TreePushError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[green]Initialized treepush[/green] at {config.local_root_path}")
    console.print(f"Config: {config.local_root_path / CONFIG_FILENAME}")
    console.print(f"State DB: {config.state_db_path}")
    console.print(f"Target: {config.target}")
    if config.repo_id != repo_id.strip():
        console.print(f"Repo ID normalized: {repo_id} -> {config.repo_id}")
    if not config.token:
        console.print(
            "[yellow]GITHUB_TOKEN not found in environment. `token` was initialized as empty.[/yellow]"
        )


async def _status_async(include: tuple[str, ...], exclude: tuple[str, ...]) -> int:
    try:
        config = load_config()
        async with open_session(config) as session:
            result = await workspace_status(
                session,
                include_patterns=include,
                exclude_patterns=exclude,
                console=console,
            )
    except KeyboardInterrupt:
        console.print("[yellow]Status interrupted.[/yellow]")
        return 130
    except (FileNotFoundError, TreePushError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1

    if not result.branch_exists:
        console.print(f"[yellow]Branch {config.branch} does not exist yet; every file is new.[/yellow]")
    _render_changes(result.changes)
    if result.changes.is_empty:
        console.print("[green]No changes detected.[/green]")
    console.print(
        f"Local files: {len(result.snapshot)} | Remote files: {len(result.base.blobs())} | "
        f"{result.changes.summary()}"
    )
    return 0


@app.command()
def status(
    include: list[str] | None = typer.Option(
        None,
        "--include",
        help="Include glob pattern(s) for paths to consider (repeatable).",
    ),
    exclude: list[str] | None = typer.Option(
        None,
        "--exclude",
        help="Exclude glob pattern(s) for paths to ignore (repeatable).",
    ),
) -> None:
    """Show local changes compared to the remote branch."""
    raise typer.Exit(code=asyncio.run(_status_async(tuple(include or ()), tuple(exclude or ()))))


async def _push_async(
    include: tuple[str, ...],
    exclude: tuple[str, ...],
    message: str | None,
    create_repo: bool | None,
) -> int:
    try:
        config = load_config()
        async with open_session(config) as session:
            with PushProgressUI(console) as ui:
                handle = ui.add_push(str(config.target))
                result = await push_workspace(
                    session,
                    include_patterns=include,
                    exclude_patterns=exclude,
                    message=message,
                    create_repo=create_repo,
                    on_progress=ui.callback(handle),
                    console=console,
                )
    except KeyboardInterrupt:
        console.print("[yellow]Push interrupted.[/yellow] The branch was not updated unless the push completed.")
        return 130
    except (FileNotFoundError, TreePushError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1

    if not result.success:
        console.print(f"[red]Push failed:[/red] {result.error}")
        return 1

    changes = result.changes or ChangeSet()
    _render_changes(changes)
    if changes.is_empty:
        console.print("[green]No local changes to push.[/green]")
    else:
        console.print(
            f"[green]Pushed[/green] {(result.commit_sha or '')[:12]} to {config.target} "
            f"({result.blobs_created} blob(s), {result.trees_created} tree(s) created)"
        )
    return 0


@app.command()
def push(
    message: str | None = typer.Option(None, "--message", "-m", help="Commit message."),
    include: list[str] | None = typer.Option(
        None,
        "--include",
        help="Include glob pattern(s) for paths to push (repeatable).",
    ),
    exclude: list[str] | None = typer.Option(
        None,
        "--exclude",
        help="Exclude glob pattern(s) for paths to skip (repeatable).",
    ),
    create_repo: bool | None = typer.Option(
        None,
        "--create-repo/--no-create-repo",
        help="Create the repository if it does not exist (defaults to the config value).",
    ),
) -> None:
    """Push the local directory to the configured branch as one commit."""
    raise typer.Exit(
        code=asyncio.run(_push_async(tuple(include or ()), tuple(exclude or ()), message, create_repo))
    )


async def _import_private_async(source_repo: str, branch: str | None) -> int:
    try:
        config = load_config()
        async with open_session(config) as session:
            with PushProgressUI(console) as ui:
                handle = ui.add_push(normalize_repo_id(source_repo))
                record = await session.temp_repos.import_private_repo(
                    normalize_repo_id(source_repo),
                    branch=branch,
                    on_progress=ui.callback(handle),
                )
    except KeyboardInterrupt:
        console.print("[yellow]Import interrupted.[/yellow] Run `treepush temp sweep` later to clean up.")
        return 130
    except (FileNotFoundError, TreePushError) as exc:
        console.print(f"[red]Import failed:[/red] {exc}")
        return 1

    minutes = record.ttl_seconds // 60
    console.print(
        f"[green]Imported[/green] {record.original_repo} into public repository "
        f"[bold]{record.owner}/{record.temp_repo}[/bold]"
    )
    console.print(f"It will be deleted by the next sweep after {minutes} minute(s).")
    return 0


@app.command("import-private")
def import_private(
    source_repo: str,
    branch: str | None = typer.Option(None, "--branch", "-b", help="Source branch (defaults to the repo default)."),
) -> None:
    """Copy a private repository into a temporary public one."""
    raise typer.Exit(code=asyncio.run(_import_private_async(source_repo, branch)))


async def _temp_list_async() -> int:
    try:
        config = load_config()
        async with open_session(config) as session:
            records = await session.temp_repos.list_records()
    except (FileNotFoundError, TreePushError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1

    if not records:
        console.print("[green]No temporary repositories.[/green]")
        return 0
    _render_temp_records(records)
    return 0


@temp_app.command("list")
def temp_list() -> None:
    """List tracked temporary repositories."""
    raise typer.Exit(code=asyncio.run(_temp_list_async()))


async def _temp_delete_async(name: str, *, use_original: bool) -> int:
    try:
        config = load_config()
        async with open_session(config) as session:
            record = await session.temp_repos.registry.find(name)
            if record is None:
                console.print(f"[red]No temporary repository named {name}[/red]")
                return 1
            if use_original:
                target = await session.temp_repos.use_original_name(record)
            else:
                await session.temp_repos.delete_now(record)
    except (FileNotFoundError, TreePushError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1

    console.print(f"[green]Deleted[/green] {record.owner}/{record.temp_repo}")
    if use_original:
        console.print(f"Continue with the original repository: [bold]{target.full_name}[/bold]")
    return 0


@temp_app.command("delete")
def temp_delete(name: str) -> None:
    """Delete a temporary repository now."""
    raise typer.Exit(code=asyncio.run(_temp_delete_async(name, use_original=False)))


@temp_app.command("use-original")
def temp_use_original(name: str) -> None:
    """Drop a temporary repository and switch back to its original name."""
    raise typer.Exit(code=asyncio.run(_temp_delete_async(name, use_original=True)))


async def _temp_sweep_async() -> int:
    try:
        config = load_config()
        async with open_session(config) as session:
            report = await session.temp_repos.sweep()
    except (FileNotFoundError, TreePushError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1

    _render_path_summary("Deleted", report.deleted, "green")
    _render_path_summary("Failed (will retry)", report.failed, "red")
    _render_path_summary("Busy", report.busy, "yellow")
    _render_path_summary("Needs manual cleanup", report.manual, "red")
    console.print(f"Not yet expired: {len(report.pending)}")
    return 1 if report.failed else 0


@temp_app.command("sweep")
def temp_sweep() -> None:
    """Delete every temporary repository whose TTL has passed."""
    raise typer.Exit(code=asyncio.run(_temp_sweep_async()))


async def _rate_limit_async() -> int:
    try:
        config = load_config()
        async with open_session(config) as session:
            data = await session.client.get_rate_limit()
            primary = session.client.governor.state(RateLimitScope.PRIMARY)
            secondary = session.client.governor.state(RateLimitScope.SECONDARY)
    except (FileNotFoundError, TreePushError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1

    table = Table(title="Rate limits")
    table.add_column("Resource")
    table.add_column("Remaining", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Resets in", justify="right")
    now = time.time()
    for name, resource in sorted((data or {}).get("resources", {}).items()):
        reset = resource.get("reset")
        table.add_row(
            name,
            str(resource.get("remaining", "?")),
            str(resource.get("limit", "?")),
            f"{max(0, int(reset - now))}s" if reset else "-",
        )
    console.print(table)
    console.print(
        f"Governor: primary {primary.status.value} ({primary.remaining}/{primary.limit}), "
        f"secondary {secondary.status.value}"
    )
    return 0


@app.command("rate-limit")
def rate_limit() -> None:
    """Show the remaining API quota for the configured token."""
    raise typer.Exit(code=asyncio.run(_rate_limit_async()))
