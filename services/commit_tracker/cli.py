#!/usr/bin/env python3
"""
RepoPulse CLI Tool
Part of the Commit Tracker Service

This CLI tool registers repositories, queues commit syncs and shows growth
accounting. It communicates with the Commit Tracker Service via HTTP API calls.
"""

import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

import click
import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from config.settings import settings

# Initialize Rich console for output
console = Console()


class CLIError(Exception):
    """A failed call to the Commit Tracker Service."""


class CommitTrackerCLI:
    """CLI interface for the Commit Tracker Service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or f"http://localhost:{settings.service.commit_tracker_port}"
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.service.request_timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.ConnectError:
            raise CLIError("Could not connect to Commit Tracker Service. Is it running?")
        except httpx.HTTPError as e:
            raise CLIError(f"Request failed: {e}")

        if response.is_success:
            return response.json()

        try:
            detail = response.json().get("detail", {})
        except ValueError:
            detail = {}
        if isinstance(detail, dict):
            message = detail.get("message", response.reason_phrase)
            category = detail.get("category", "error")
        else:
            message, category = str(detail), "error"
        raise CLIError(f"API Error ({category}): {message}")

    async def register(self, owner: str, name: str) -> Dict[str, Any]:
        return await self._request("POST", "/repositories", json={"owner": owner, "name": name})

    async def sync(self, repository_id: int, credential: Optional[str] = None) -> Dict[str, Any]:
        body = {"credential": credential} if credential else {}
        return await self._request("POST", f"/repositories/{repository_id}/sync", json=body)

    async def status(self, repository_id: int) -> Dict[str, Any]:
        return await self._request("GET", f"/repositories/{repository_id}")

    async def growth(
        self,
        repository_id: Optional[int] = None,
        collection_id: Optional[int] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> Dict[str, Any]:
        if collection_id is not None:
            path = f"/collections/{collection_id}/growth-accounting"
        else:
            path = f"/repositories/{repository_id}/growth-accounting"
        params = {key: value for key, value in (("start", start), ("end", end)) if value}
        return await self._request("GET", path, params=params)

    async def health(self) -> Dict[str, Any]:
        return await self._request("GET", "/health")


def display_repository(repository: Dict[str, Any]):
    """Display a repository and its last sync outcome."""
    status = repository.get("last_sync_status", "never_synced")
    style = {"succeeded": "green", "failed": "red", "running": "yellow"}.get(status, "cyan")

    content = (
        f"🆔 ID: {repository.get('id')}\n"
        f"📦 Repository: {repository.get('owner')}/{repository.get('name')}\n"
        f"🔄 Last sync: [{style}]{status}[/{style}]\n"
        f"📅 Indexed at: {repository.get('indexed_at') or 'never'}\n"
        f"➕ Inserted: {repository.get('last_sync_inserted') if repository.get('last_sync_inserted') is not None else 'N/A'}"
    )
    if repository.get("last_sync_error"):
        content += f"\n❌ Error: {repository['last_sync_error']}"

    console.print(Panel(content, title=Text("Repository", style="bold"), border_style=style))


def _number(value: Any) -> str:
    if value is None:
        return "N/A"
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def display_mau(rows: List[Dict[str, Any]]):
    table = Table(title="📈 Monthly Active Authors", show_header=True, header_style="bold magenta")
    for column in ("Month", "Active", "Retained", "New", "Resurrected", "Churned"):
        table.add_column(column, justify="right" if column != "Month" else "left")

    for row in rows:
        table.add_row(
            row["period"][:7],
            _number(row["active"]),
            _number(row["retained"]),
            _number(row["new"]),
            _number(row["resurrected"]),
            _number(row["churned"]),
        )
    console.print(table)


def display_ltv(rows: List[Dict[str, Any]], title: str):
    table = Table(title=title, show_header=True, header_style="bold magenta")
    for column in ("Cohort", "Offset", "Active", "Size", "Retained", "Cumulative/User"):
        table.add_column(column, justify="right" if column != "Cohort" else "left")

    for row in rows:
        retained = row.get("retained_pct")
        table.add_row(
            row["cohort_period"],
            str(row["periods_since_cohort_start"]),
            str(row["active_users"]),
            str(row["cohort_size"]),
            f"{retained * 100:.0f}%" if retained is not None else "N/A",
            _number(row.get("cumulative_amount_per_user")),
        )
    console.print(table)


def display_growth(report: Dict[str, Any], monthly_cohorts: bool = False):
    """Display a growth accounting report."""
    if not report.get("mau"):
        console.print(Panel("No commit activity in scope.", title="📈 Growth Accounting"))
        return

    display_mau(report["mau"])
    if monthly_cohorts:
        display_ltv(report.get("ltv_monthly", []), "👥 Monthly Cohorts")
    else:
        display_ltv(report.get("ltv", []), "👥 Weekly Cohorts")


def run_command(coroutine_factory):
    """Run an async CLI action, exiting with status 1 on service errors."""
    try:
        return asyncio.run(coroutine_factory())
    except CLIError as e:
        console.print(f"[red]❌ Error: {e}[/red]")
        sys.exit(1)


@click.group()
@click.version_option(version="1.0.0")
@click.option("--url", envvar="REPOPULSE_URL", default=None, help="Commit Tracker Service URL")
@click.pass_context
def cli(ctx, url: Optional[str]):
    """RepoPulse CLI - Track repositories and read their growth accounting."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url


@cli.command()
@click.argument("owner")
@click.argument("name")
@click.pass_context
def register(ctx, owner: str, name: str):
    """Register the GitHub repository OWNER/NAME."""

    async def run():
        async with CommitTrackerCLI(ctx.obj["url"]) as cli_tool:
            repository = await cli_tool.register(owner, name)
        console.print(f"[green]✅ Registered {owner}/{name} as repository {repository['id']}[/green]")

    run_command(run)


@cli.command()
@click.argument("repository_id", type=int)
@click.option("--token", envvar="GITHUB_TOKEN", default=None, help="GitHub token for this sync")
@click.pass_context
def sync(ctx, repository_id: int, token: Optional[str]):
    """Queue a commit sync of a repository."""

    async def run():
        async with CommitTrackerCLI(ctx.obj["url"]) as cli_tool:
            accepted = await cli_tool.sync(repository_id, token)
        if accepted["queued"]:
            console.print(f"[green]✅ Sync of repository {repository_id} queued[/green]")
        else:
            console.print(f"[yellow]⏳ A sync of repository {repository_id} is already pending[/yellow]")

    run_command(run)


@cli.command()
@click.argument("repository_id", type=int)
@click.option("--json", "as_json", is_flag=True, help="Print the raw response")
@click.pass_context
def status(ctx, repository_id: int, as_json: bool):
    """Show a repository's last sync status."""

    async def run():
        async with CommitTrackerCLI(ctx.obj["url"]) as cli_tool:
            repository = await cli_tool.status(repository_id)
        if as_json:
            click.echo(json.dumps(repository, indent=2))
        else:
            display_repository(repository)

    run_command(run)


@cli.command()
@click.argument("repository_id", type=int, required=False)
@click.option("--collection", "collection_id", type=int, default=None, help="Collection ID")
@click.option("--start", default=None, help="First period (YYYY-MM-DD)")
@click.option("--end", default=None, help="Last period (YYYY-MM-DD)")
@click.option("--monthly", is_flag=True, help="Show monthly instead of weekly cohorts")
@click.pass_context
def growth(
    ctx,
    repository_id: Optional[int],
    collection_id: Optional[int],
    start: Optional[str],
    end: Optional[str],
    monthly: bool,
):
    """Show growth accounting for a repository or a collection."""
    if (repository_id is None) == (collection_id is None):
        raise click.UsageError("Give either REPOSITORY_ID or --collection")

    async def run():
        async with CommitTrackerCLI(ctx.obj["url"]) as cli_tool:
            report = await cli_tool.growth(repository_id, collection_id, start, end)
        display_growth(report, monthly_cohorts=monthly)

    run_command(run)


@cli.command()
@click.pass_context
def health(ctx):
    """Check the status of the Commit Tracker Service."""

    async def run():
        async with CommitTrackerCLI(ctx.obj["url"]) as cli_tool:
            health_data = await cli_tool.health()
        console.print("[green]✅ Commit Tracker Service is running[/green]")
        console.print(f"[dim]Status: {health_data.get('status', 'unknown')}[/dim]")
        queue = health_data.get("queue", {})
        console.print(f"[dim]Pending syncs: {queue.get('pending', 'N/A')}[/dim]")

    run_command(run)


if __name__ == "__main__":
    cli()
