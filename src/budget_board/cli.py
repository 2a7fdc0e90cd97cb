"""CLI entry point for the budget board."""

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar

import click
import httpx

from budget_board.board import Board, board_snapshot, open_board
from budget_board.config import BoardConfig, load_config
from budget_board.gateway import create_app
from budget_board.kv_store import JsonFileStore
from budget_board.logging import Logger
from budget_board.models import BudgetType, ItemKind, ItemRef, TrackedItem, utc_now
from budget_board.ordering import CompanyNotFound, InvariantViolation, ItemNotFound
from budget_board.store import DashboardNotFound, LastDashboardError
from budget_board.ticker import OverBudgetTicker, TickerReading, format_hours
from budget_board.upstream import NotConfigured, TokenExpired, UpstreamError

T = TypeVar("T")

HTTP_TIMEOUT = 30.0


@dataclass
class CliState:
    """Shared state for subcommands; tests pre-populate it through ``obj``."""

    config: BoardConfig | None = None
    logger: Logger | None = None
    transport: httpx.AsyncBaseTransport | None = None


@contextmanager
def handle_errors() -> Iterator[None]:
    """Map domain errors to ``Error: ...`` on stderr and an exit code.

    Exit code 1 is for bad input or a rejected operation; 2 is for
    configuration, credential, network and storage problems.
    """
    try:
        yield
    except (NotConfigured, TokenExpired) as e:
        click.echo(f"Error: {e}", err=True)
        click.echo("  -> Store credentials with 'budget-board settings set'", err=True)
        sys.exit(2)
    except UpstreamError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    except (
        DashboardNotFound,
        LastDashboardError,
        ItemNotFound,
        CompanyNotFound,
        InvariantViolation,
        ValueError,
    ) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except OSError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)


def _state(ctx: click.Context) -> CliState:
    return ctx.ensure_object(CliState)


def _config(ctx: click.Context) -> BoardConfig:
    config = _state(ctx).config
    assert config is not None  # set by the group callback
    return config


def _logger(ctx: click.Context) -> Logger:
    logger = _state(ctx).logger
    assert logger is not None
    return logger


def _offline_board(ctx: click.Context) -> Board:
    return open_board(_config(ctx), logger=_logger(ctx))


def _run_online(ctx: click.Context, action: Callable[[Board], Awaitable[T]]) -> T:
    """Run an async action against a Board with a connected upstream client."""
    state = _state(ctx)
    config = _config(ctx)

    async def runner() -> T:
        async with httpx.AsyncClient(transport=state.transport, timeout=HTTP_TIMEOUT) as http:
            board = open_board(config, http, logger=_logger(ctx))
            assert board.client is not None
            await board.client.reload_settings()
            return await action(board)

    return asyncio.run(runner())


def _parse_refs(values: tuple[str, ...]) -> list[ItemRef]:
    return [ItemRef.parse(value) for value in values]


def describe_budget(item: TrackedItem) -> str:
    """One-line progress summary for an item."""
    if item.budget is None:
        return "no data" + (f" ({item.refresh_error})" if item.refresh_error else "")

    budget = item.budget
    if item.budget_type is BudgetType.NONE:
        return f"{format_hours(budget.used)} worked (no budget)"

    if item.budget_type is BudgetType.VALUE:
        summary = f"${budget.used:,.2f} / ${budget.allowance:,.2f} ({item.percentage():.1f}%)"
        if item.is_over_budget():
            summary += f"  ${budget.overage():,.2f} over"
        return summary

    summary = f"{budget.used:g}h / {budget.allowance:g}h ({item.percentage():.1f}%)"
    if item.is_over_budget():
        summary += f"  {format_hours(budget.overage())} over"
    elif budget.allowance > 0:
        summary += f"  {format_hours(budget.remaining())} left"
    if item.budget_suspicious:
        summary += "  [estimated budget]"
    return summary


def _print_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2))


@click.group()
@click.version_option(version="0.1.0", prog_name="budget-board")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for dashboard data (default: ~/.budget-board)",
)
@click.option("--gateway-url", help="Gateway base URL (default: http://localhost:8080)")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.option("-q", "--quiet", is_flag=True, help="Only show warnings and errors")
@click.pass_context
def cli(ctx: click.Context, data_dir: Path | None, gateway_url: str | None, verbose: bool, quiet: bool):
    """Track project and agreement budgets on named dashboards."""
    state = _state(ctx)
    if state.config is None:
        try:
            state.config = load_config(data_dir=data_dir, gateway_url=gateway_url)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(2)
    elif data_dir is not None or gateway_url is not None:
        updates = {"data_dir": data_dir, "gateway_url": gateway_url}
        state.config = state.config.model_copy(update={k: v for k, v in updates.items() if v is not None})
    if state.logger is None:
        state.logger = Logger(verbose=verbose, use_colors=sys.stderr.isatty(), quiet=quiet)


# ============================================================================
# Dashboards
# ============================================================================


@cli.group()
def dashboards():
    """Manage dashboards."""
    pass


@dashboards.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def dashboards_list(ctx: click.Context, json_output: bool):
    """List dashboards; the current one is marked with '*'."""
    with handle_errors():
        board = _offline_board(ctx)
        current_id = board.store.current_id
        items = board.store.list_dashboards()

        if json_output:
            _print_json(
                {
                    "dashboards": [d.to_json_dict() for d in items],
                    "currentDashboardId": current_id,
                }
            )
            return

        for dashboard in items:
            marker = "*" if dashboard.id == current_id else " "
            item_count = len(board.store.load_state(dashboard.id).items)
            click.echo(f"{marker} {dashboard.id}  {dashboard.name}  ({item_count} items)")


@dashboards.command("create")
@click.argument("name", required=False)
@click.option("--no-switch", is_flag=True, help="Keep the current dashboard active")
@click.pass_context
def dashboards_create(ctx: click.Context, name: str | None, no_switch: bool):
    """
    Create a dashboard.

    A name is generated when NAME is omitted.

    Examples:

        budget-board dashboards create "Retainers"

        budget-board dashboards create --no-switch
    """
    with handle_errors():
        board = _offline_board(ctx)
        dashboard = board.store.create_dashboard(name, set_as_current=not no_switch)
        click.echo(f"Created dashboard {dashboard.id}: {dashboard.name}")


@dashboards.command("delete")
@click.argument("dashboard_id")
@click.option("--force", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def dashboards_delete(ctx: click.Context, dashboard_id: str, force: bool):
    """Delete a dashboard and its pinned items."""
    with handle_errors():
        board = _offline_board(ctx)
        dashboard = board.store.get(dashboard_id)
        if board.store.count() <= 1:
            raise LastDashboardError("Cannot delete the last dashboard")

        if not force and not click.confirm(f"Delete dashboard '{dashboard.name}'? This cannot be undone."):
            click.echo("Delete cancelled")
            return

        board.store.delete_dashboard(dashboard_id)
        click.echo(f"Dashboard {dashboard_id} deleted")


@dashboards.command("rename")
@click.argument("dashboard_id")
@click.argument("name")
@click.pass_context
def dashboards_rename(ctx: click.Context, dashboard_id: str, name: str):
    with handle_errors():
        dashboard = _offline_board(ctx).store.rename(dashboard_id, name)
        click.echo(f"Renamed {dashboard.id} to {dashboard.name}")


@dashboards.command("switch")
@click.argument("dashboard_id")
@click.pass_context
def dashboards_switch(ctx: click.Context, dashboard_id: str):
    """Make a dashboard current."""
    with handle_errors():
        dashboard = _offline_board(ctx).switch(dashboard_id)
        click.echo(f"Switched to {dashboard.name}")


# ============================================================================
# Current dashboard
# ============================================================================


@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def show(ctx: click.Context, json_output: bool):
    """Show the current dashboard grouped by company."""
    with handle_errors():
        board = _offline_board(ctx)
        if json_output:
            _print_json(board_snapshot(board))
            return

        click.echo(f"{board.dashboard.name} ({board.dashboard.id})")
        groups = board.groups()
        if not groups:
            click.echo("No items pinned. Add some with 'budget-board add project:ID'.")
            return

        for group in groups:
            click.echo("")
            click.echo(f"{group.company_name} [{group.company_id}]")
            for item in group.items:
                click.echo(f"  {str(item.ref):<18} {item.title}")
                click.echo(f"  {'':<18} {describe_budget(item)}")


@cli.command()
@click.argument("refs", nargs=-1, required=True)
@click.pass_context
def add(ctx: click.Context, refs: tuple[str, ...]):
    """
    Fetch items and pin them to the current dashboard.

    Examples:

        budget-board add project:101 agreement:45
    """
    with handle_errors():
        parsed = _parse_refs(refs)
        report = _run_online(ctx, lambda board: board.add_items(parsed))

        for item in report.added:
            click.echo(f"Added {item.ref}: {item.title} ({item.company_name})")
        for ref in report.skipped:
            click.echo(f"Skipped {ref}: already on this dashboard")
        for ref, message in report.failed.items():
            click.echo(f"Error: Failed to add {ref}: {message}", err=True)
        if report.failed and not report.added:
            sys.exit(2)


@cli.command("add-company")
@click.argument("company_id")
@click.option("--all-standings", is_flag=True, help="Include inactive projects and agreements")
@click.pass_context
def add_company(ctx: click.Context, company_id: str, all_standings: bool):
    """Pin every active project and agreement of a company."""

    async def action(board: Board):
        assert board.client is not None
        listing = await board.client.fetch_company_items(
            company_id, standing=None if all_standings else "active"
        )
        refs = [ItemRef(kind=ItemKind.PROJECT, id=int(p["id"])) for p in listing["projects"]]
        refs += [ItemRef(kind=ItemKind.AGREEMENT, id=int(a["id"])) for a in listing["agreements"]]
        return listing["company"], await board.add_items(refs)

    with handle_errors():
        company, report = _run_online(ctx, action)
        click.echo(
            f"{company['name']}: added {len(report.added)}, skipped {len(report.skipped)}, "
            f"failed {len(report.failed)}"
        )
        for ref, message in report.failed.items():
            click.echo(f"Error: Failed to add {ref}: {message}", err=True)


@cli.command()
@click.argument("ref")
@click.pass_context
def remove(ctx: click.Context, ref: str):
    """Unpin an item from the current dashboard."""
    with handle_errors():
        item_ref = ItemRef.parse(ref)
        _offline_board(ctx).remove_item(item_ref)
        click.echo(f"Removed {item_ref}")


@cli.command("move-item")
@click.argument("ref")
@click.option("--company", "company_id", required=True, help="Company block the item is dropped on")
@click.option("--after", "after", help="Place after this item (default: first in company)")
@click.pass_context
def move_item(ctx: click.Context, ref: str, company_id: str, after: str | None):
    """
    Reorder an item within its company.

    Moving an item to another company is rejected.

    Examples:

        budget-board move-item project:101 --company 12 --after agreement:45
    """
    with handle_errors():
        item_ref = ItemRef.parse(ref)
        after_ref = ItemRef.parse(after) if after else None
        _offline_board(ctx).move_item(item_ref, company_id, after_ref)
        click.echo(f"Moved {item_ref}")


@cli.command("move-company")
@click.argument("company_id")
@click.option("--after", "after", help="Place after this company (default: first)")
@click.pass_context
def move_company(ctx: click.Context, company_id: str, after: str | None):
    with handle_errors():
        state = _offline_board(ctx).move_company(company_id, after)
        click.echo("Company order: " + ", ".join(state.company_order))


@cli.group()
def color():
    """Per-dashboard company colours."""
    pass


@color.command("set")
@click.argument("company_id")
@click.argument("value")
@click.argument("contrast")
@click.option("--name", default="", help="Palette name")
@click.pass_context
def color_set(ctx: click.Context, company_id: str, value: str, contrast: str, name: str):
    """Set a company's block colour (VALUE) and text colour (CONTRAST)."""
    with handle_errors():
        _offline_board(ctx).set_company_color(company_id, value, contrast, name)
        click.echo(f"Colour for company {company_id} set to {value}")


@color.command("clear")
@click.argument("company_id")
@click.pass_context
def color_clear(ctx: click.Context, company_id: str):
    with handle_errors():
        if _offline_board(ctx).clear_company_color(company_id):
            click.echo(f"Colour for company {company_id} cleared")
        else:
            click.echo(f"No colour override for company {company_id}")


@cli.command()
@click.argument("refs", nargs=-1)
@click.pass_context
def refresh(ctx: click.Context, refs: tuple[str, ...]):
    """Re-fetch usage for all items (or only REFS)."""
    with handle_errors():
        parsed = _parse_refs(refs) if refs else None
        report = _run_online(ctx, lambda board: board.refresh(parsed))

        click.echo(f"Refreshed {len(report.refreshed)} item(s)")
        for ref, message in report.failed.items():
            click.echo(f"Error: Failed to refresh {ref}: {message}", err=True)


@cli.command()
@click.argument("query")
@click.option(
    "--kind",
    type=click.Choice(["all", "company", "project", "agreement"], case_sensitive=False),
    default="all",
    help="What to search",
)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def search(ctx: click.Context, query: str, kind: str, json_output: bool):
    """Search the upstream system."""

    async def action(board: Board) -> dict[str, list[dict[str, Any]]]:
        client = board.client
        assert client is not None
        if kind == "all":
            return await client.search_all(query)
        if kind == "company":
            return {"companies": await client.search("company", query)}
        return {f"{kind}s": await client.search(ItemKind(kind), query)}

    with handle_errors():
        results = _run_online(ctx, action)
        if json_output:
            _print_json(results)
            return

        labels = {"companies": "company", "projects": "project", "agreements": "agreement"}
        found = 0
        for key, records in results.items():
            for record in records:
                found += 1
                title = record.get("name") or record.get("title") or "(untitled)"
                click.echo(f"{labels.get(key, key)}:{record.get('id')}  {title}")
        if not found:
            click.echo(f"No matches for '{query}'")


def _format_readings(readings: list[TickerReading]) -> list[str]:
    return [f"{str(r.ref):<18} {r.label}" for r in readings]


@cli.command()
@click.option("--once", is_flag=True, help="Print one reading and exit")
@click.option("--interval", type=float, default=1.0, show_default=True, help="Seconds between ticks")
@click.pass_context
def ticker(ctx: click.Context, once: bool, interval: float):
    """Show live over-budget figures for the current dashboard."""
    with handle_errors():
        board = _offline_board(ctx)
        config = _config(ctx)
        over_budget = OverBudgetTicker(interval=interval, value_rate=config.value_tick_rate)

        if once:
            lines = _format_readings(over_budget.readings(board.state().items))
            click.echo("\n".join(lines) if lines else "No items over budget")
            return

        def on_tick(readings: list[TickerReading]) -> None:
            click.echo("\n".join(_format_readings(readings)) or "No items over budget")
            click.echo("")

        try:
            asyncio.run(over_budget.run(lambda: board.state().items, on_tick, asyncio.Event()))
        except KeyboardInterrupt:
            click.echo("Stopped")


# ============================================================================
# Credentials and services
# ============================================================================


@cli.group()
def settings():
    """Credentials held by the gateway."""
    pass


def _gateway_call(ctx: click.Context, method: str, path: str, payload: Any = None) -> httpx.Response:
    state = _state(ctx)
    config = _config(ctx)

    async def runner() -> httpx.Response:
        async with httpx.AsyncClient(transport=state.transport, timeout=HTTP_TIMEOUT) as http:
            return await http.request(method, f"{config.gateway_url}{path}", json=payload)

    try:
        return asyncio.run(runner())
    except httpx.TransportError as e:
        click.echo(f"Error: Cannot reach gateway at {config.gateway_url}: {e}", err=True)
        click.echo("  -> Start it with 'budget-board serve'", err=True)
        sys.exit(2)


@settings.command("set")
@click.option("--deployment", required=True, help="Deployment name (<deployment>.api.accelo.com)")
@click.option("--token", required=True, help="Access token")
@click.option("--expires-in", type=int, default=30 * 24 * 3600, show_default=True, help="Token lifetime in seconds")
@click.option("--user-name", default="", help="Display name")
@click.option("--user-email", default="", help="Email address")
@click.pass_context
def settings_set(
    ctx: click.Context, deployment: str, token: str, expires_in: int, user_name: str, user_email: str
):
    """Store API credentials in the gateway."""
    expiry: datetime = utc_now() + timedelta(seconds=expires_in)
    payload = {
        "deployment": deployment,
        "accessToken": token,
        "tokenExpiry": expiry.isoformat().replace("+00:00", "Z"),
        "userName": user_name,
        "userEmail": user_email,
    }
    response = _gateway_call(ctx, "POST", "/api/settings", payload)
    if response.status_code >= 400:
        click.echo(f"Error: Gateway rejected settings (HTTP {response.status_code})", err=True)
        sys.exit(2)
    click.echo(f"Settings saved for {deployment} (expires {payload['tokenExpiry']})")


@settings.command("show")
@click.pass_context
def settings_show(ctx: click.Context):
    response = _gateway_call(ctx, "GET", "/api/settings")
    if response.status_code == 404:
        click.echo("No settings configured")
        return
    data = response.json()
    token = str(data.get("accessToken", ""))
    data["accessToken"] = f"{token[:4]}…" if token else ""
    _print_json(data)


@settings.command("clear")
@click.pass_context
def settings_clear(ctx: click.Context):
    _gateway_call(ctx, "POST", "/api/settings", {})
    click.echo("Settings cleared")


@cli.command()
@click.option("--host", help="Interface to bind (default: 127.0.0.1)")
@click.option("--port", type=int, help="Port to listen on (default: 8080)")
@click.option("--persist-settings", is_flag=True, help="Keep credentials across restarts")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, persist_settings: bool):
    """Run the gateway (upstream relay and credential store)."""
    import uvicorn

    config = _config(ctx)
    logger = _logger(ctx)
    persist = config.persist_settings or persist_settings
    settings_kv = JsonFileStore(config.data_dir / "gateway") if persist else None

    app = create_app(allowed_hosts=config.allowed_hosts, settings_kv=settings_kv, logger=logger)
    bind_host = host or config.host
    bind_port = port or config.port
    logger.info(f"Budget board gateway running at http://{bind_host}:{bind_port}")
    uvicorn.run(app, host=bind_host, port=bind_port, log_level="warning")


@cli.command()
@click.pass_context
def mcp(ctx: click.Context):
    """Run the MCP tool server over stdio."""
    from budget_board.mcp_server import main

    asyncio.run(main(_config(ctx)))


def main() -> None:
    cli(obj=CliState())

