"""Command-line interface for fedicache.

This module provides a Typer-based CLI for inspecting and maintaining
per-identity content stores.

Commands:
- status: Show configuration and store statistics
- sync: Fetch timeline pages into a store
- prune: Apply the retention policy
- check-instance: Validate an instance address against the denylist
- delete-identity: Delete an identity's store file

Example:
    $ fedicache sync 6f1c... --timeline home --pages 3
    $ fedicache status 6f1c...
    $ fedicache check-instance mastodon.social --update
"""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from fedicache.api import AsyncMastodonClient
from fedicache.config import settings
from fedicache.content import ContentDatabase
from fedicache.instances import InstanceURLService
from fedicache.logging import setup_logging as configure_logging
from fedicache.models import MastodonList, Timeline, TimelineKind
from fedicache.pipeline import SyncPipeline

# Initialize CLI app
app = typer.Typer(
    name="fedicache",
    help="Local content cache for Mastodon-compatible timelines",
    add_completion=False,
)
console = Console()


# =============================================================================
# Helper Functions
# =============================================================================


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity level."""
    configure_logging(level="DEBUG" if verbose else settings.log_level, json_logs=settings.log_json)


def run_async(coro):
    """Run async coroutine in event loop."""
    return asyncio.run(coro)


def parse_timeline(text: str) -> Timeline:
    """Parse a timeline argument.

    Accepted forms: ``home``, ``local``, ``federated``, ``favorites``,
    ``bookmarks``, ``tag:<name>``, ``list:<id>``, ``profile:<account id>``.

    Raises:
        typer.BadParameter: For unknown forms
    """
    kind, _, value = text.partition(":")
    match kind:
        case "home":
            return Timeline.home()
        case "local":
            return Timeline.local()
        case "federated":
            return Timeline.federated()
        case "favorites" | "bookmarks":
            return Timeline(kind=TimelineKind(kind))
        case "tag" if value:
            return Timeline.for_tag(value)
        case "list" if value:
            return Timeline.for_list(MastodonList(id=value, title=value))
        case "profile" if value:
            return Timeline.profile(value)
    raise typer.BadParameter(f"Unknown timeline: {text}")


def instance_service() -> InstanceURLService:
    return InstanceURLService(filter_path=settings.data_dir / "instance_filter.json")


# =============================================================================
# CLI Commands
# =============================================================================


@app.command()
def status(
    identity_id: str = typer.Argument(..., help="Identity whose store to inspect"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Show configuration and store statistics.

    Examples:
        $ fedicache status 6f1c...
    """
    setup_logging(verbose)

    console.print("📊 [bold cyan]fedicache Status[/bold cyan]\n")

    async def _status() -> None:
        content = await ContentDatabase.open(identity_id, settings=settings, prune=False)
        try:
            config_table = Table(title="Configuration", show_header=False)
            config_table.add_column("Key", style="cyan")
            config_table.add_column("Value", style="yellow")

            config_table.add_row("Store", content.db.location)
            config_table.add_row("Instance", settings.instance_url or "N/A")
            config_table.add_row("Access Token", settings.redact_token())
            config_table.add_row("Page Size", str(settings.page_size))
            config_table.add_row(
                "Retention",
                f"bounded ({settings.retention_count})"
                if settings.use_home_timeline_last_read_id
                else "unbounded",
            )
            console.print(config_table)
            console.print()

            stats_table = Table(title="Store Statistics")
            stats_table.add_column("Entity", style="cyan")
            stats_table.add_column("Count", justify="right", style="green")
            for name, count in content.statistics().items():
                stats_table.add_row(name.replace("_", " ").title(), f"{count:,}")
            console.print(stats_table)
        finally:
            await content.close()

    try:
        run_async(_status())
    except Exception as e:
        console.print(f"\n❌ [bold red]Status failed: {e}[/bold red]")
        raise typer.Exit(code=1)


@app.command()
def sync(
    identity_id: str = typer.Argument(..., help="Identity whose store to fill"),
    timeline: str = typer.Option("home", "--timeline", "-t", help="Timeline, e.g. home, tag:python, list:42"),
    pages: int = typer.Option(1, "--pages", "-n", min=1, help="Pages to fetch"),
    with_filters: bool = typer.Option(True, "--filters/--no-filters", help="Also refresh content filters"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Fetch the newest pages of a timeline into the store.

    Examples:
        $ fedicache sync 6f1c...
        $ fedicache sync 6f1c... --timeline tag:python --pages 5
    """
    setup_logging(verbose)
    target = parse_timeline(timeline)

    console.print("🚀 [bold cyan]fedicache Sync[/bold cyan]\n")
    console.print(f"🌐 Instance: [yellow]{settings.instance_url}[/yellow]")
    console.print(f"🔑 Token: [yellow]{settings.redact_token()}[/yellow]")
    console.print(f"📰 Timeline: [yellow]{target.id}[/yellow]\n")

    async def _sync() -> dict[str, int]:
        content = await ContentDatabase.open(identity_id, settings=settings)
        client = AsyncMastodonClient()
        try:
            pipeline = SyncPipeline(source=client, content=content)
            if with_filters:
                await pipeline.refresh_filters()
            first = await pipeline.refresh_timeline(target)
            totals = {"statuses": first["statuses"], "gaps": first["gaps"], "pages": 1}
            if pages > 1:
                older = await pipeline.backfill(target, max_pages=pages - 1, show_progress=True)
                totals["statuses"] += older["statuses"]
                totals["pages"] += older["pages"]
            await pipeline.close()
            return totals
        finally:
            await client.close()
            await content.close()

    try:
        totals = run_async(_sync())
    except Exception as e:
        console.print(f"\n❌ [bold red]Sync failed: {e}[/bold red]")
        raise typer.Exit(code=1)

    console.print(
        f"\n✅ [bold green]Merged {totals['statuses']} statuses from {totals['pages']} page(s) "
        f"({totals['gaps']} new gap(s))[/bold green]"
    )


@app.command()
def prune(
    identity_id: str = typer.Argument(..., help="Identity whose store to prune"),
    unbounded: Optional[bool] = typer.Option(
        None,
        "--unbounded/--bounded",
        help="Override the configured retention mode",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Apply the retention policy to a store.

    Examples:
        $ fedicache prune 6f1c...
        $ fedicache prune 6f1c... --unbounded
    """
    setup_logging(verbose)

    run_settings = settings
    if unbounded is not None:
        run_settings = settings.model_copy(update={"use_home_timeline_last_read_id": not unbounded})

    async def _prune():
        content = await ContentDatabase.open(identity_id, settings=run_settings, prune=False)
        try:
            return await content.prune()
        finally:
            await content.close()

    try:
        report = run_async(_prune())
    except Exception as e:
        console.print(f"\n❌ [bold red]Prune failed: {e}[/bold red]")
        raise typer.Exit(code=1)

    table = Table(title="Removed")
    table.add_column("Entity", style="cyan")
    table.add_column("Count", justify="right", style="green")
    table.add_row("Statuses", f"{report.statuses:,}")
    table.add_row("Accounts", f"{report.accounts:,}")
    table.add_row("Timelines", f"{report.timelines:,}")
    table.add_row("Notifications", f"{report.notifications:,}")
    console.print(table)


@app.command("check-instance")
def check_instance(
    address: str = typer.Argument(..., help="Instance address, e.g. mastodon.social"),
    update: bool = typer.Option(False, "--update", "-u", help="Fetch the latest denylist first"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Check an instance address against the denylist.

    Exits with code 1 when the address is rejected.

    Examples:
        $ fedicache check-instance mastodon.social
    """
    setup_logging(verbose)
    service = instance_service()

    if update:
        try:
            run_async(service.update_filter())
        except Exception as e:
            console.print(f"❌ [bold red]Filter update failed: {e}[/bold red]")
            raise typer.Exit(code=1)

    url = service.url(address)
    if url is None:
        console.print(f"🚫 [bold red]{address} is not an allowed instance address[/bold red]")
        raise typer.Exit(code=1)

    console.print(f"✅ [bold green]{url}[/bold green]")


@app.command("delete-identity")
def delete_identity(
    identity_id: str = typer.Argument(..., help="Identity whose store to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete the store file of an identity.

    Examples:
        $ fedicache delete-identity 6f1c... --yes
    """
    path = settings.store_path(identity_id)
    if not yes and not typer.confirm(f"Delete {path}?"):
        raise typer.Exit(code=1)

    try:
        ContentDatabase.delete(identity_id, settings=settings)
    except OSError as e:
        console.print(f"❌ [bold red]Delete failed: {e}[/bold red]")
        raise typer.Exit(code=1)

    console.print(f"🗑️  [bold green]Deleted {path}[/bold green]")


def main() -> None:
    """Entry point for the ``fedicache`` console script."""
    app()


if __name__ == "__main__":
    main()
