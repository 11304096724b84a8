"""Command-line interface for PageFlow."""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pageflow import __version__
from pageflow.config import Config, find_config_file
from pageflow.container import DependencyContainer
from pageflow.errors import PageflowError
from pageflow.observability import configure_logging, start_exporter
from pageflow.pipeline import BatchReport

console = Console()
logger = structlog.get_logger(__name__)

STAGE_NAMES = ["crawl", "product_type", "recap", "attributes"]


def _load_config(ctx: click.Context) -> Config:
    config_path: Optional[Path] = ctx.obj["config_path"] or find_config_file()
    ctx.obj["config_path"] = config_path
    config = Config.from_yaml(config_path) if config_path else Config()
    if ctx.obj["log_level"]:
        config.monitoring.log_level = ctx.obj["log_level"]
    return config


def _run(ctx: click.Context, body: Callable[[DependencyContainer], Awaitable[int]]) -> None:
    """Run ``body`` inside a container lifecycle and exit with its return code."""
    config = _load_config(ctx)
    configure_logging(config.monitoring)
    start_exporter(config.monitoring.prometheus_port)

    async def main() -> int:
        container = DependencyContainer(ctx.obj["config_path"], config=config)
        async with container.lifecycle():
            return await body(container)

    try:
        code = asyncio.run(main())
    except PageflowError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    sys.exit(code)


def _format_ts(value: Optional[float]) -> str:
    if value is None:
        return "never"
    return datetime.fromtimestamp(value, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _print_report(report: BatchReport, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        return

    table = Table(title=f"Stage '{report.stage}' (run {report.run_id})")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("Processed", str(report.processed))
    table.add_row("Failed", str(report.failed))
    table.add_row("Skipped (locked)", str(report.skipped_locked))
    table.add_row("Skipped (ineligible)", str(report.skipped_ineligible))
    table.add_row("Duration", f"{report.duration_seconds:.2f}s")
    console.print(table)

    for page_id, kind, attempts in report.failures:
        console.print(f"[yellow]page {page_id}: {kind.value} after {attempts} attempt(s)[/yellow]")
    if report.aborted:
        console.print(Panel(str(report.abort_reason), title="Batch aborted", border_style="red"))
    elif report.exit_code == 0:
        console.print("[green]Batch completed successfully[/green]")


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Override the configured logging level",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """PageFlow - crawl-and-enrich pipeline coordinator."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else None
    ctx.obj["log_level"] = log_level.upper() if log_level else None


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create or migrate the page database."""

    async def body(container: DependencyContainer) -> int:
        store = await container.get_store()
        console.print(f"[green]Database ready:[/green] {store.db_path} ({await store.count_pages()} pages)")
        return 0

    _run(ctx, body)


@cli.command("add-page")
@click.argument("url")
@click.option("--title", default=None, help="Page title")
@click.option("--domain", default=None, help="Domain, derived from the URL when omitted")
@click.option("--inbound-links", default=0, type=click.IntRange(min=0), help="Number of known inbound links")
@click.pass_context
def add_page(ctx: click.Context, url: str, title: Optional[str], domain: Optional[str], inbound_links: int) -> None:
    """Register a discovered page for crawling."""

    async def body(container: DependencyContainer) -> int:
        store = await container.get_store()
        page_id = await store.add_page(url, domain=domain, title=title, inbound_links_count=inbound_links)
        console.print(f"[green]Page {page_id}:[/green] {url}")
        return 0

    _run(ctx, body)


@cli.command("run-stage")
@click.argument("stage", type=click.Choice(STAGE_NAMES))
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Maximum candidates to handle")
@click.option("--domain", default=None, help="Only pages of this domain")
@click.option("--page", "page_id", type=int, default=None, help="Process this single page id")
@click.option("--force", is_flag=True, help="Reprocess pages that already have this stage's output")
@click.option("--attempts", type=click.IntRange(min=1), default=None, help="Generator calls per candidate")
@click.option("--sleep-ms", type=click.IntRange(min=0), default=None, help="Pause between retries")
@click.option("--json", "as_json", is_flag=True, help="Print the batch report as JSON")
@click.pass_context
def run_stage(
    ctx: click.Context,
    stage: str,
    limit: Optional[int],
    domain: Optional[str],
    page_id: Optional[int],
    force: bool,
    attempts: Optional[int],
    sleep_ms: Optional[int],
    as_json: bool,
) -> None:
    """Run one batch of STAGE."""

    async def body(container: DependencyContainer) -> int:
        settings = container.require_config().stages.for_stage(stage)
        await container.ensure_stage_ready(stage)
        runner = await container.get_runner()
        report = await runner.run(
            stage,
            limit=limit or settings.limit,
            domain=domain,
            resource_id=page_id,
            force=force,
            max_attempts=attempts or settings.max_attempts,
            sleep_ms=settings.sleep_ms if sleep_ms is None else sleep_ms,
        )
        _print_report(report, as_json)
        return report.exit_code

    _run(ctx, body)


@cli.command()
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Maximum pages to recrawl")
@click.option("--domain", default=None, help="Only pages of this domain")
@click.option("--new-only", is_flag=True, help="Only pages that were never crawled")
@click.option("--json", "as_json", is_flag=True, help="Print the batch report as JSON")
@click.pass_context
def recrawl(ctx: click.Context, limit: Optional[int], domain: Optional[str], new_only: bool, as_json: bool) -> None:
    """Recrawl the stalest pages first."""

    async def body(container: DependencyContainer) -> int:
        runner = await container.get_runner(new_only=new_only)
        report = await runner.run(
            "crawl",
            limit=limit or container.require_config().recrawl.max_pages_per_run,
            domain=domain,
            max_attempts=1,
        )
        _print_report(report, as_json)
        return report.exit_code

    _run(ctx, body)


@cli.command()
@click.argument("stage", type=click.Choice(STAGE_NAMES))
@click.option("--limit", type=click.IntRange(min=1), default=20, help="Rows to show")
@click.option("--domain", default=None, help="Only pages of this domain")
@click.option("--force", is_flag=True, help="Include pages that already have this stage's output")
@click.pass_context
def pending(ctx: click.Context, stage: str, limit: int, domain: Optional[str], force: bool) -> None:
    """List the next eligible pages for STAGE without locking them."""

    async def body(container: DependencyContainer) -> int:
        definition = container.get_registry().get(stage)
        selector = await container.get_selector()
        candidates = await selector.pending(definition, limit=limit, domain=domain, force=force)
        total = await selector.count_pending(definition, domain=domain, force=force)

        table = Table(title=f"Pending for '{stage}' ({total} total)")
        table.add_column("ID", justify="right", style="cyan")
        table.add_column("URL")
        table.add_column("Domain", style="magenta")
        table.add_column("Last crawled")
        for candidate in candidates:
            page = candidate.page
            table.add_row(str(page.id), page.url, page.domain or "", _format_ts(page.last_crawled_at))
        console.print(table)
        return 0

    _run(ctx, body)


@cli.command("sweep-locks")
@click.pass_context
def sweep_locks(ctx: click.Context) -> None:
    """Delete expired stage locks."""

    async def body(container: DependencyContainer) -> int:
        locks = await container.get_lock_manager()
        removed = await locks.sweep()
        console.print(f"[green]Removed {removed} expired lock(s)[/green]")
        return 0

    _run(ctx, body)


@cli.command("needs-recrawl")
@click.argument("page_id", type=int)
@click.pass_context
def needs_recrawl(ctx: click.Context, page_id: int) -> None:
    """Show whether PAGE_ID is due for a recrawl."""

    async def body(container: DependencyContainer) -> int:
        store = await container.get_store()
        page = await store.require_page(page_id)
        policy = container.recrawl_policy()
        due = policy.page_needs_recrawl(page)

        table = Table(title=f"Page {page.id}")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="magenta")
        table.add_row("URL", page.url)
        table.add_row("Last crawled", _format_ts(page.last_crawled_at))
        table.add_row("Inbound links", str(page.inbound_links_count))
        age = policy.effective_age_hours(page.last_crawled_at, page.inbound_links_count)
        next_at = policy.next_recrawl_at(page)
        table.add_row("Effective age (h)", f"{age:.1f}")
        table.add_row("Next recrawl", _format_ts(next_at) if next_at is not None else "now")
        table.add_row("Needs recrawl", "yes" if due else "no")
        console.print(table)
        return 0

    _run(ctx, body)


def main() -> Any:
    return cli(obj={})


if __name__ == "__main__":
    main()
