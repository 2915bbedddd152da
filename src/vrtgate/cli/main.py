"""Main CLI application using Click framework."""

import asyncio
import functools
import json
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from ..config import DEVICE_VIEWPORTS, ConfigError, SiteConfig, create_example_config
from ..pipeline import RunMode, RunReport, RunRequest, create_runner
from ..storage import LocalArtifactStore, SessionStore, SessionType
from ..utils.logging import get_structured_logger, setup_logging
from .types import CLIContext, CommandResult, OutputFormat

console = Console()
logger = get_structured_logger(__name__)

STATUS_STYLES = {"OK": "green", "NG": "bold red", "SKIP": "yellow", "ERROR": "red"}


def async_command(f):
    """Decorator to run async functions in Click commands."""

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                return asyncio.run(f(*args, **kwargs))

            # Already inside a loop (e.g. during testing): use a fresh one in a thread
            import concurrent.futures

            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as executor:
                return executor.submit(asyncio.run, f(*args, **kwargs)).result()
        except KeyboardInterrupt:
            console.print("❌ Operation cancelled by user", style="red")
            sys.exit(130)
        except Exception as e:
            console.print(f"❌ Error: {str(e)}", style="red")
            logger.error("CLI command failed", error=str(e))
            sys.exit(1)

    return wrapper


def handle_result(result: CommandResult, ctx: CLIContext, quiet: bool = False) -> None:
    """Handle command result output."""
    if result.success:
        if result.message and not quiet:
            console.print(f"✅ {result.message}", style="green")
        if result.data and ctx.verbose and not quiet:
            console.print_json(data=result.data)
    else:
        if not quiet:
            console.print(f"❌ {result.message}", style="red")
        if result.data and ctx.debug:
            console.print_json(data=result.data)

    if not result.success:
        sys.exit(result.exit_code)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.option("--config", type=click.Path(), help="Path to configuration file")
@click.pass_context
def cli(ctx, verbose: bool, debug: bool, config: Optional[str]) -> None:
    """vrtgate - visual regression gate for site updates."""
    ctx.obj = CLIContext(verbose=verbose, debug=debug, config_path=config)

    if debug:
        setup_logging(log_level="DEBUG", include_caller_info=True)
    else:
        setup_logging(log_level="INFO" if verbose else "WARNING")


# Run Commands
@cli.command()
@click.option(
    "--mode",
    type=click.Choice([m.value for m in RunMode]),
    default=RunMode.FULL.value,
    help="baseline/after capture, compare stored snapshots, or full",
)
@click.option("--site", "site_id", help="Configured site id")
@click.option("--url", help="Ad hoc start URL (instead of --site)")
@click.option(
    "--device", type=click.Choice(sorted(DEVICE_VIEWPORTS)), default="desktop"
)
@click.option("--max-urls", type=int, help="Maximum number of pages to crawl")
@click.option("--max-depth", type=int, help="Maximum link depth from the start URL")
@click.option("--threshold", type=float, help="Diff percentage above which a page is NG")
@click.option("--json", "as_json", is_flag=True, help="Print the run report as JSON")
@click.option(
    "--fail-on-ng",
    is_flag=True,
    help="Exit with status 1 on NG or ERROR pages, or when nothing was compared",
)
@click.pass_obj
@async_command
async def run(
    ctx: CLIContext,
    mode: str,
    site_id: Optional[str],
    url: Optional[str],
    device: str,
    max_urls: Optional[int],
    max_depth: Optional[int],
    threshold: Optional[float],
    as_json: bool,
    fail_on_ng: bool,
) -> None:
    """Crawl, capture and compare one site."""
    if not site_id and not url:
        result = CommandResult(
            success=False, message="Either --site or --url is required", exit_code=2
        )
        handle_result(result, ctx)
        return

    request = RunRequest(
        mode=RunMode(mode),
        site_id=site_id,
        url=url,
        device=device,
        max_urls=max_urls,
        max_depth=max_depth,
        threshold=threshold,
    )

    try:
        settings = ctx.settings
        if not (ctx.verbose or ctx.debug):
            setup_logging(log_level=settings.log_level, json_logs=settings.json_logs)

        async with create_runner(settings) as runner:
            report = await runner.run(request)
    except Exception as e:
        result = CommandResult(success=False, message=f"Run failed: {str(e)}", exit_code=2)
        handle_result(result, ctx)
        return

    if as_json:
        click.echo(report.to_json())
    else:
        _print_report(report)

    failed = fail_on_ng and (
        report.has_regressions or report.has_errors or not report.has_comparisons
    )
    summary = report.summary
    result = CommandResult(
        success=not failed,
        message=(
            f"{summary['total']} pages: {summary['OK']} OK, {summary['NG']} NG, "
            f"{summary['SKIP']} SKIP, {summary['ERROR']} ERROR"
        ),
        data={"summary": summary, "session_ids": report.session_ids},
        exit_code=1,
    )
    handle_result(result, ctx, quiet=as_json)


def _print_report(report: RunReport) -> None:
    table = Table(title=f"{report.site_id} ({report.mode.value}, {report.device})")
    table.add_column("Page", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Diff %", justify="right")
    table.add_column("Phase", style="blue")
    table.add_column("Detail", style="yellow")

    for page in report.pages:
        detail = page.message
        if page.classification:
            detail = f"{page.classification.value}: {detail}"
        elif page.change_type:
            detail = f"{page.change_type.value} change, {len(page.regions)} regions"
        table.add_row(
            page.page_id,
            f"[{STATUS_STYLES[page.status.value]}]{page.status.value}[/]",
            f"{page.diff_percentage:.3f}",
            page.phase.value,
            detail,
        )

    console.print(table)
    for page in report.pages:
        if page.diff_ref:
            console.print(f"  Diff image for {page.page_id}: {page.diff_ref}", style="dim")
    if report.aborted:
        console.print(
            "⚠️  Run aborted; unstarted pages are reported as CANCELLED", style="yellow"
        )


# Site Configuration Commands
@cli.group()
def sites():
    """Site configuration commands."""
    pass


@sites.command("list")
@click.option(
    "--format",
    "output_format",
    type=click.Choice([f.value for f in OutputFormat]),
    default=OutputFormat.TABLE.value,
)
@click.pass_obj
def list_sites(ctx: CLIContext, output_format: str) -> None:
    """List configured sites."""
    try:
        configured = ctx.settings.sites

        if output_format == OutputFormat.JSON.value:
            click.echo(
                json.dumps([site.model_dump(mode="json") for site in configured], indent=2)
            )
        else:
            table = Table()
            table.add_column("ID", style="cyan", no_wrap=True)
            table.add_column("Name", style="green")
            table.add_column("Start URL", style="blue")
            table.add_column("Pages", justify="right")
            table.add_column("Depth", justify="right")
            table.add_column("Enabled", justify="center")

            for site in configured:
                table.add_row(
                    site.id,
                    site.display_name,
                    site.start_url,
                    str(site.max_pages),
                    str(site.max_depth),
                    "🟢 Yes" if site.enabled else "🔴 No",
                )
            console.print(table)

        result = CommandResult(
            success=True,
            message=f"Found {len(configured)} sites",
            data={"count": len(configured)},
        )
        if ctx.verbose:
            handle_result(result, ctx)

    except ConfigError as e:
        result = CommandResult(
            success=False, message=f"Failed to list sites: {str(e)}", exit_code=1
        )
        handle_result(result, ctx)


@sites.command("add")
@click.argument("url")
@click.option("--id", "site_id", help="Site id (defaults to the host name)")
@click.option("--name", help="Display name")
@click.option("--max-pages", default=20, help="Maximum pages to crawl")
@click.option("--max-depth", default=3, help="Maximum link depth")
@click.option("--exclude", multiple=True, help="Extra exclude pattern (regex)")
@click.pass_obj
def add_site(
    ctx: CLIContext,
    url: str,
    site_id: Optional[str],
    name: Optional[str],
    max_pages: int,
    max_depth: int,
    exclude: tuple[str, ...],
) -> None:
    """Add a site to the configuration file."""
    try:
        site = SiteConfig.from_url(url, max_pages=max_pages, max_depth=max_depth)
        site = SiteConfig(
            id=site_id or site.id,
            name=name,
            start_url=site.start_url,
            max_pages=max_pages,
            max_depth=max_depth,
            exclude_patterns=exclude,
        )
        ctx.loader.add_site(site)
        result = CommandResult(
            success=True,
            message=f"Site added: {site.id} ({site.start_url})",
            data={"site_id": site.id},
        )
    except (ConfigError, ValueError) as e:
        result = CommandResult(
            success=False, message=f"Failed to add site: {str(e)}", exit_code=1
        )
    handle_result(result, ctx)


@sites.command("remove")
@click.argument("site_id")
@click.pass_obj
def remove_site(ctx: CLIContext, site_id: str) -> None:
    """Remove a site from the configuration file."""
    try:
        removed = ctx.loader.remove_site(site_id)
        result = CommandResult(
            success=removed,
            message=f"Site removed: {site_id}" if removed else f"Site not found: {site_id}",
            exit_code=1,
        )
    except ConfigError as e:
        result = CommandResult(
            success=False, message=f"Failed to remove site: {str(e)}", exit_code=1
        )
    handle_result(result, ctx)


@sites.command("validate")
@click.pass_obj
def validate_sites(ctx: CLIContext) -> None:
    """Validate the configuration file."""
    issues = ctx.loader.validate_config()
    for issue in issues:
        console.print(f"  • {issue}", style="yellow")

    result = CommandResult(
        success=not issues,
        message=(
            "Configuration is valid"
            if not issues
            else f"Configuration has {len(issues)} issue(s)"
        ),
        data={"issues": issues},
        exit_code=1,
    )
    handle_result(result, ctx)


# Session History Commands
@cli.group()
def sessions():
    """Session history commands."""
    pass


@sessions.command("list")
@click.option("--site", "site_id", help="Filter by site id")
@click.option(
    "--type", "session_type", type=click.Choice([t.value for t in SessionType])
)
@click.option("--limit", default=20, help="Maximum sessions to show")
@click.option(
    "--format",
    "output_format",
    type=click.Choice([f.value for f in OutputFormat]),
    default=OutputFormat.TABLE.value,
)
@click.pass_obj
@async_command
async def list_sessions(
    ctx: CLIContext,
    site_id: Optional[str],
    session_type: Optional[str],
    limit: int,
    output_format: str,
) -> None:
    """List recorded sessions, newest first."""
    try:
        async with SessionStore(ctx.settings.database) as store:
            rows = await store.list_sessions(
                site_id=site_id,
                session_type=SessionType(session_type) if session_type else None,
                limit=limit,
            )

        if output_format == OutputFormat.JSON.value:
            console.print_json(
                data=[
                    {
                        "id": row.id,
                        "site_id": row.site_id,
                        "type": row.session_type,
                        "device": row.device,
                        "status": row.status,
                        "pages": row.page_count,
                        "errors": row.error_count,
                        "created_at": row.created_at.isoformat(),
                    }
                    for row in rows
                ]
            )
        else:
            table = Table()
            table.add_column("ID", style="cyan", no_wrap=True)
            table.add_column("Site", style="green")
            table.add_column("Type", style="blue")
            table.add_column("Device")
            table.add_column("Status", justify="center")
            table.add_column("Pages", justify="right")
            table.add_column("Errors", justify="right")
            table.add_column("Created", style="yellow")

            for row in rows:
                table.add_row(
                    row.id[:8],
                    row.site_id,
                    row.session_type,
                    row.device or "-",
                    row.status,
                    str(row.page_count),
                    str(row.error_count),
                    row.created_at.strftime("%Y-%m-%d %H:%M"),
                )
            console.print(table)

        result = CommandResult(
            success=True, message=f"Found {len(rows)} sessions", data={"count": len(rows)}
        )
        if ctx.verbose:
            handle_result(result, ctx)

    except Exception as e:
        result = CommandResult(
            success=False, message=f"Failed to list sessions: {str(e)}", exit_code=1
        )
        handle_result(result, ctx)


@sessions.command("show")
@click.argument("session_id")
@click.pass_obj
@async_command
async def show_session(ctx: CLIContext, session_id: str) -> None:
    """Show one session with its comparisons and errors."""
    try:
        async with SessionStore(ctx.settings.database) as store:
            row = await store.get_session(session_id)
            if row is None:
                result = CommandResult(
                    success=False, message=f"Session not found: {session_id}", exit_code=1
                )
                handle_result(result, ctx)
                return
            comparisons = await store.get_comparisons(session_id)
            errors = await store.get_errors(session_id)

        table = Table(title=f"Session {row.id}")
        table.add_column("Property", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Site", row.site_id)
        table.add_row("Type", row.session_type)
        table.add_row("Device", row.device or "-")
        table.add_row("Status", row.status)
        table.add_row("Pages", str(row.page_count))
        table.add_row("Errors", str(row.error_count))
        table.add_row("Created", row.created_at.strftime("%Y-%m-%d %H:%M:%S"))
        console.print(table)

        if comparisons:
            results = Table(title="Comparisons")
            results.add_column("Page", style="cyan")
            results.add_column("Status", justify="center")
            results.add_column("Diff %", justify="right")
            results.add_column("Classification", style="yellow")
            for comparison in comparisons:
                results.add_row(
                    comparison.page_id,
                    f"[{STATUS_STYLES.get(comparison.status, 'white')}]{comparison.status}[/]",
                    f"{comparison.diff_percentage:.3f}",
                    comparison.classification or comparison.change_type or "",
                )
            console.print(results)

        for error in errors:
            console.print(
                f"  • [{error.classification}] {error.operation} "
                f"attempt {error.attempt}: {error.message}",
                style="red",
            )

    except Exception as e:
        result = CommandResult(
            success=False, message=f"Failed to show session: {str(e)}", exit_code=1
        )
        handle_result(result, ctx)


@sessions.command("stats")
@click.option("--site", "site_id", help="Filter by site id")
@click.option("--days", default=30, help="Window in days")
@click.pass_obj
@async_command
async def session_stats(ctx: CLIContext, site_id: Optional[str], days: int) -> None:
    """Show comparison statistics over a time window."""
    try:
        async with SessionStore(ctx.settings.database) as store:
            stats = await store.get_comparison_stats(site_id=site_id, days=days)

        table = Table(title=f"Comparisons, last {days} days")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Site", site_id or "all")
        table.add_row("Sessions", str(stats.sessions))
        table.add_row("Comparisons", str(stats.total))
        for status in ("OK", "NG", "SKIP", "ERROR"):
            table.add_row(status, str(stats.by_status.get(status, 0)))
        average = stats.average_diff_percentage
        table.add_row("Mean diff %", f"{average:.3f}" if average is not None else "-")
        console.print(table)

        result = CommandResult(
            success=True, message="Statistics retrieved", data=stats.to_dict()
        )
        if ctx.verbose:
            handle_result(result, ctx)

    except Exception as e:
        result = CommandResult(
            success=False, message=f"Failed to get statistics: {str(e)}", exit_code=1
        )
        handle_result(result, ctx)


# Maintenance Commands
@cli.command()
@click.option("--days", type=int, help="Retention horizon (defaults to configuration)")
@click.option("--force", is_flag=True, help="Skip confirmation")
@click.pass_obj
@async_command
async def cleanup(ctx: CLIContext, days: Optional[int], force: bool) -> None:
    """Purge sessions and their artifact files older than the retention horizon."""
    try:
        settings = ctx.settings
        days = settings.storage.retention_days if days is None else days

        if not force:
            if not click.confirm(f"Delete sessions older than {days} days?"):
                console.print("❌ Operation cancelled", style="yellow")
                return

        artifacts = LocalArtifactStore(settings.storage.artifacts_dir)
        async with SessionStore(settings.database) as store:
            removed = await store.purge_older_than(days, artifacts=artifacts)

        result = CommandResult(
            success=True,
            message=f"Removed {removed} sessions older than {days} days",
            data={"removed": removed, "days": days},
        )
        handle_result(result, ctx)

    except Exception as e:
        result = CommandResult(
            success=False, message=f"Cleanup failed: {str(e)}", exit_code=1
        )
        handle_result(result, ctx)


@cli.command()
@click.option("--path", "config_path", default="config.yaml", help="Where to write the file")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
@click.pass_obj
def init(ctx: CLIContext, config_path: str, force: bool) -> None:
    """Write an example configuration file."""
    path = Path(config_path)
    if path.exists() and not force:
        result = CommandResult(
            success=False,
            message=f"Config file already exists: {path} (use --force to overwrite)",
            exit_code=1,
        )
        handle_result(result, ctx)
        return

    try:
        create_example_config(path)
        result = CommandResult(
            success=True, message=f"Example configuration written to {path}"
        )
    except ConfigError as e:
        result = CommandResult(
            success=False, message=f"Failed to write config: {str(e)}", exit_code=1
        )
    handle_result(result, ctx)


def create_cli() -> click.Group:
    """Create and return the CLI application."""
    return cli


if __name__ == "__main__":
    cli()
