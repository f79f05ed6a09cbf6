#!/usr/bin/env python3
"""
Commit Tracker CLI Tool

This CLI tool either runs the tracking engine in the foreground (``watch``,
``serve``) or talks to a running Commit Tracker Service via HTTP API calls
(``track``, ``history``, ``stats``, ``cache``, ``status``).
"""

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.progress import Progress, SpinnerColumn, TextColumn

from config.settings import get_settings
from shared.errors import TrackerError
from shared.events import CommitFailed, CommitProcessed, ErrorOccurred

# Initialize Rich console for output
console = Console()


class ServiceError(Exception):
    """The service could not be reached or rejected a request."""


class CommitTrackerCLI:
    """HTTP client for the Commit Tracker Service."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        settings = get_settings()
        self.base_url = base_url or f"http://{settings.service.host}:{settings.service.port}"
        self.client = httpx.AsyncClient(timeout=timeout or settings.service.request_timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self.client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.ConnectError:
            raise ServiceError("Could not connect to Commit Tracker Service. Is it running?")

        if response.status_code == 200:
            return response.json()
        try:
            detail = response.json().get("detail", "Unknown error")
        except ValueError:
            detail = response.text or "Unknown error"
        raise ServiceError(f"API Error ({response.status_code}): {detail}")

    async def track_commit(
        self,
        repo_path: str,
        commit_hash: Optional[str] = None,
        branch: Optional[str] = None
    ) -> Dict[str, Any]:
        """Track the current HEAD or a given commit."""
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console
        ) as progress:
            task = progress.add_task("Tracking commit...", total=None)
            data = {"repository_path": repo_path}
            if commit_hash:
                data["commit_hash"] = commit_hash
            if branch:
                data["branch"] = branch
            result = await self._request("POST", "/track-commit", json=data)
            progress.update(task, completed=True)
        return result

    async def get_commit_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        return await self._request("GET", "/commits", params={"limit": limit})

    async def get_statistics(self) -> Dict[str, Any]:
        return await self._request("GET", "/statistics")

    async def get_cache_status(self) -> Dict[str, Any]:
        return await self._request("GET", "/cache")

    async def clear_cache(self, region: Optional[str] = None) -> Dict[str, Any]:
        params = {"region": region} if region else None
        return await self._request("DELETE", "/cache", params=params)

    async def get_health(self) -> Dict[str, Any]:
        try:
            response = await self.client.get(f"{self.base_url}/health")
        except httpx.ConnectError:
            raise ServiceError("Could not connect to Commit Tracker Service. Is it running?")
        return response.json()


def display_outcome(outcome: Dict[str, Any]):
    """Display the result of a track request."""
    status = outcome.get("status", "unknown")
    commit = outcome.get("commit") or {}

    if status == "processed":
        title = Text("📝 Commit Tracked Successfully", style="bold green")
        content = f"""
    🔗 Hash: {commit.get('hash', 'N/A')}
    👤 Author: {commit.get('author', 'N/A')}
    🌿 Branch: {commit.get('branch', 'N/A')}
    📦 Repository: {commit.get('repo_name', 'N/A')}
    📅 Date: {commit.get('date', 'N/A')}
    📄 Log: {outcome.get('log_path', 'N/A')}
    """
        console.print(Panel(content, title=title, border_style="green"))
        console.print(Panel(commit.get('message', 'No message'), title="💬 Commit Message", border_style="blue"))
    else:
        console.print(Panel(
            f"Commit {outcome.get('commit_hash', 'N/A')[:12]} was not logged: {status}",
            title=Text("⏭️ Skipped", style="bold yellow"),
            border_style="yellow"
        ))


def display_commit_history(commits: List[Dict[str, Any]]):
    """Display commit history in a table format."""
    if not commits:
        console.print(Panel("No commits found in history.", title="📋 Commit History"))
        return

    table = Table(title="📋 Recent Commits", show_header=True, header_style="bold magenta")
    table.add_column("Hash", style="green", width=10)
    table.add_column("Repository", style="cyan", width=20)
    table.add_column("Branch", style="blue", width=12)
    table.add_column("Author", style="yellow", width=20)
    table.add_column("Message", style="white", width=40)
    table.add_column("Date", style="red", width=20)

    for commit in commits:
        message = commit.get('message', 'N/A')
        table.add_row(
            commit.get('hash', 'N/A')[:8],
            commit.get('repo_name', 'N/A'),
            commit.get('branch', 'N/A'),
            commit.get('author', 'N/A'),
            message[:37] + '...' if len(message) > 40 else message,
            commit.get('date', 'N/A')[:19]
        )

    console.print(table)


def display_statistics(stats: Dict[str, Any]):
    """Display aggregate statistics."""
    content = f"""
    📊 Total commits: {stats.get('total_commits', 0)}
    📅 First: {stats.get('first_commit_date') or 'N/A'}
    📅 Last: {stats.get('last_commit_date') or 'N/A'}
    """
    console.print(Panel(content, title=Text("📈 Commit Statistics", style="bold blue"), border_style="blue"))

    for heading, key in (("Repository", "repositories"), ("Branch", "branches"), ("Author", "authors")):
        counts = stats.get(key) or {}
        if not counts:
            continue
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column(heading, style="cyan")
        table.add_column("Commits", style="green", justify="right")
        for name, count in counts.items():
            table.add_row(name, str(count))
        console.print(table)


def display_cache_status(cache: Dict[str, Any]):
    table = Table(title="🗄️ Cache Status", show_header=True, header_style="bold magenta")
    table.add_column("Region", style="cyan")
    table.add_column("Entries", style="green", justify="right")
    for region, size in (cache.get('cache_sizes') or {}).items():
        table.add_row(region, str(size))
    console.print(table)
    console.print(f"[dim]Last processed commit: {cache.get('last_processed_commit') or 'none'}[/dim]")
    console.print(f"[dim]Repositories tracked: {cache.get('repositories_tracked', 0)}[/dim]")


def _run_client(coro_fn):
    async def run():
        try:
            async with CommitTrackerCLI() as cli_tool:
                await coro_fn(cli_tool)
        except ServiceError as e:
            console.print(f"[red]❌ Error: {str(e)}[/red]")
            sys.exit(1)

    asyncio.run(run())


@click.group()
@click.version_option(version="1.0.0")
def cli():
    """Commit Tracker CLI - Record Git commits into a tracking log."""
    pass


@cli.command()
@click.argument('paths', nargs=-1, type=click.Path(exists=True, file_okay=False))
def watch(paths):
    """Watch repositories in the foreground until interrupted."""
    from services.commit_tracker.main import build_service, configure_logging, working_trees
    from services.commit_tracker.watcher import GitWorkingTree

    settings = get_settings()
    configure_logging(settings)

    async def run():
        service = build_service(settings)
        service.bus.subscribe(CommitProcessed, lambda e: console.print(
            f"[green]✅ Logged {e.commit.short_hash}[/green] {e.commit.repo_name} ({e.commit.branch}): {e.commit.message}"
        ))
        service.bus.subscribe(CommitFailed, lambda e: console.print(
            f"[red]❌ Failed {e.commit_hash[:7]} in {e.repo_path}: {e.error}[/red]"
        ))
        service.bus.subscribe(ErrorOccurred, lambda e: console.print(
            f"[yellow]⚠️ {e.operation}: {e.message}[/yellow]"
        ))

        if paths:
            trees = [GitWorkingTree(p, watch_events=settings.watch.use_filesystem_events) for p in paths]
        else:
            trees = working_trees(settings)

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass

        try:
            await service.initialize(trees)
        except TrackerError as e:
            console.print(f"[red]❌ Error: {str(e)}[/red]")
            await service.dispose()
            sys.exit(1)

        console.print(f"[green]👀 Watching {len(trees)} repositories. Press Ctrl+C to stop.[/green]")
        try:
            await stop.wait()
        finally:
            await service.dispose()

    asyncio.run(run())


@cli.command()
@click.argument('path', type=click.Path(exists=True, file_okay=False), default='.')
@click.option('--commit-hash', '-c', help='Specific commit hash to log')
@click.option('--branch', '-b', help='Branch to record for the commit')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
def track(path: str, commit_hash: Optional[str], branch: Optional[str], verbose: bool):
    """Log the current HEAD (or a given commit) of a repository."""
    repo_path = str(Path(path).resolve())

    async def run(cli_tool: CommitTrackerCLI):
        outcome = await cli_tool.track_commit(repo_path, commit_hash, branch)
        display_outcome(outcome)
        if verbose:
            console.print(f"\n[dim]Raw data: {json.dumps(outcome, indent=2)}[/dim]")

    _run_client(run)


@cli.command()
@click.option('--limit', '-l', default=10, help='Number of commits to display (default: 10)')
def history(limit: int):
    """Display recent commit history."""
    async def run(cli_tool: CommitTrackerCLI):
        display_commit_history(await cli_tool.get_commit_history(limit))

    _run_client(run)


@cli.command()
def stats():
    """Display statistics derived from the tracking log."""
    async def run(cli_tool: CommitTrackerCLI):
        display_statistics(await cli_tool.get_statistics())

    _run_client(run)


@cli.command()
@click.option('--clear', 'clear_region', help="Clear a cache region, or 'all'")
def cache(clear_region: Optional[str]):
    """Show cache status or clear cached views."""
    async def run(cli_tool: CommitTrackerCLI):
        if clear_region:
            region = None if clear_region.lower() == "all" else clear_region
            result = await cli_tool.clear_cache(region)
            console.print(f"[green]✅ Cache cleared: {result.get('invalidated')}[/green]")
        else:
            display_cache_status(await cli_tool.get_cache_status())

    _run_client(run)


@cli.command()
def status():
    """Check the status of the Commit Tracker Service."""
    async def run(cli_tool: CommitTrackerCLI):
        health_data = await cli_tool.get_health()
        if health_data.get('status') == 'healthy':
            console.print("[green]✅ Commit Tracker Service is running[/green]")
        else:
            console.print("[red]❌ Commit Tracker Service is not tracking[/red]")
        console.print(f"[dim]Status: {health_data.get('status', 'unknown')}[/dim]")

    _run_client(run)


@cli.command()
@click.option('--reload', is_flag=True, help='Reload on code changes')
def serve(reload: bool):
    """Run the HTTP service."""
    from services.commit_tracker.run import main as run_service

    run_service(reload=reload)


if __name__ == "__main__":
    cli()
