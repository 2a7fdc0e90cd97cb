"""MCP server exposing board intents as tools.

Front-ends and agents drive the board through these tools with JSON in and
JSON out. Failures are returned as ``{"error": {"code", "message"}}``
payloads rather than raised.
"""

import asyncio
import json
from typing import Any, Literal

import httpx
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool
from pydantic import BaseModel, Field, ValidationError

from budget_board.board import Board, board_snapshot, item_payload, open_board
from budget_board.config import BoardConfig, load_config
from budget_board.logging import Logger
from budget_board.models import ItemKind, ItemRef
from budget_board.ordering import CompanyNotFound, InvariantViolation, ItemNotFound
from budget_board.store import DashboardNotFound, LastDashboardError
from budget_board.ticker import OverBudgetTicker
from budget_board.upstream import NetworkError, NotConfigured, TokenExpired, UpstreamError

# ============================================================================
# Error Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Structured error response for MCP tools."""

    code: str = Field(..., description="Error code (DASHBOARD_NOT_FOUND, TOKEN_EXPIRED, etc.)")
    message: str = Field(..., description="Human-readable error message")


# Most specific first: NetworkError is an UpstreamError
ERROR_CODES: list[tuple[type[Exception], str]] = [
    (DashboardNotFound, "DASHBOARD_NOT_FOUND"),
    (LastDashboardError, "LAST_DASHBOARD"),
    (ItemNotFound, "ITEM_NOT_FOUND"),
    (CompanyNotFound, "COMPANY_NOT_FOUND"),
    (InvariantViolation, "CROSS_COMPANY_MOVE"),
    (NotConfigured, "NOT_CONFIGURED"),
    (TokenExpired, "TOKEN_EXPIRED"),
    (NetworkError, "NETWORK_ERROR"),
    (UpstreamError, "UPSTREAM_ERROR"),
    (ValueError, "INVALID_INPUT"),
]

DOMAIN_ERRORS = tuple(exc_type for exc_type, _ in ERROR_CODES)


def _error(code: str, message: str) -> list[TextContent]:
    error = ErrorResponse(code=code, message=message)
    return [TextContent(type="text", text=json.dumps({"error": error.model_dump()}, indent=2))]


def _failure(exc: Exception) -> list[TextContent]:
    for exc_type, code in ERROR_CODES:
        if isinstance(exc, exc_type):
            return _error(code, str(exc))
    return _error("INTERNAL_ERROR", str(exc))


def _result(payload: dict[str, Any]) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, indent=2))]


# ============================================================================
# Request Models
# ============================================================================


class DashboardCreateRequest(BaseModel):
    """Request model for dashboard_create tool."""

    name: str | None = Field(default=None, max_length=200, description="Name (generated when omitted)")
    set_as_current: bool = Field(default=True, description="Switch to the new dashboard")


class DashboardIdRequest(BaseModel):
    """Request model for tools addressing one dashboard."""

    dashboard_id: str = Field(..., min_length=1, description="Dashboard ID (ULID)")


class DashboardRenameRequest(BaseModel):
    dashboard_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)


class ItemsAddRequest(BaseModel):
    """Request model for item_add tool."""

    items: list[str] = Field(..., min_length=1, description="References like project:123")


class ItemRequest(BaseModel):
    item: str = Field(..., description="Reference like project:123")


class ItemMoveRequest(BaseModel):
    """Request model for item_move tool."""

    item: str = Field(..., description="Item being moved")
    company_id: str = Field(..., description="Company block the item is dropped on")
    after: str | None = Field(default=None, description="Insert after this item (omit for first)")


class CompanyMoveRequest(BaseModel):
    company_id: str
    after: str | None = Field(default=None, description="Insert after this company (omit for first)")


class CompanyColorRequest(BaseModel):
    """Request model for company_color_set tool."""

    company_id: str
    value: str = Field(..., min_length=1, description="Background colour, e.g. #1f6feb")
    contrast: str = Field(..., min_length=1, description="Text colour readable on the background")
    name: str = Field(default="", description="Palette name")


class CompanyRequest(BaseModel):
    company_id: str


class RefreshRequest(BaseModel):
    items: list[str] | None = Field(default=None, description="Items to refresh (omit for all)")


class SearchRequest(BaseModel):
    """Request model for search tool."""

    query: str = Field(..., min_length=1)
    kind: Literal["all", "company", "project", "agreement"] = "all"


# ============================================================================
# Tool Definitions
# ============================================================================


def _schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


_ITEM_REF = {"type": "string", "description": "Item reference, e.g. project:123 or agreement:45"}
_COMPANY_ID = {"type": "string", "description": "Company ID"}
_DASHBOARD_ID = {"type": "string", "description": "Dashboard ID (ULID)"}


async def list_tools() -> list[Tool]:
    """List all available MCP tools."""
    return [
        Tool(
            name="dashboard_list",
            description="List dashboards and the current dashboard id",
            inputSchema=_schema({}, []),
        ),
        Tool(
            name="dashboard_create",
            description="Create a dashboard (a fun name is generated when none is given)",
            inputSchema=_schema(
                {
                    "name": {"type": "string", "maxLength": 200},
                    "set_as_current": {"type": "boolean", "default": True},
                },
                [],
            ),
        ),
        Tool(
            name="dashboard_delete",
            description="Delete a dashboard (the last one cannot be deleted)",
            inputSchema=_schema({"dashboard_id": _DASHBOARD_ID}, ["dashboard_id"]),
        ),
        Tool(
            name="dashboard_rename",
            description="Rename a dashboard",
            inputSchema=_schema(
                {"dashboard_id": _DASHBOARD_ID, "name": {"type": "string", "minLength": 1}},
                ["dashboard_id", "name"],
            ),
        ),
        Tool(
            name="dashboard_switch",
            description="Make a dashboard current",
            inputSchema=_schema({"dashboard_id": _DASHBOARD_ID}, ["dashboard_id"]),
        ),
        Tool(
            name="board_show",
            description="Show the current dashboard grouped by company, with budget progress",
            inputSchema=_schema({}, []),
        ),
        Tool(
            name="item_add",
            description="Fetch projects/agreements and pin them to the current dashboard",
            inputSchema=_schema(
                {"items": {"type": "array", "items": _ITEM_REF, "minItems": 1}}, ["items"]
            ),
        ),
        Tool(
            name="item_remove",
            description="Unpin an item from the current dashboard",
            inputSchema=_schema({"item": _ITEM_REF}, ["item"]),
        ),
        Tool(
            name="item_move",
            description="Reorder an item within its company (cross-company moves are rejected)",
            inputSchema=_schema(
                {"item": _ITEM_REF, "company_id": _COMPANY_ID, "after": _ITEM_REF},
                ["item", "company_id"],
            ),
        ),
        Tool(
            name="company_move",
            description="Move a company block (omit 'after' to move it first)",
            inputSchema=_schema({"company_id": _COMPANY_ID, "after": _COMPANY_ID}, ["company_id"]),
        ),
        Tool(
            name="company_color_set",
            description="Override a company block's colour on the current dashboard",
            inputSchema=_schema(
                {
                    "company_id": _COMPANY_ID,
                    "value": {"type": "string"},
                    "contrast": {"type": "string"},
                    "name": {"type": "string"},
                },
                ["company_id", "value", "contrast"],
            ),
        ),
        Tool(
            name="company_color_clear",
            description="Remove a company colour override",
            inputSchema=_schema({"company_id": _COMPANY_ID}, ["company_id"]),
        ),
        Tool(
            name="board_refresh",
            description="Re-fetch hours and period usage for pinned items",
            inputSchema=_schema({"items": {"type": "array", "items": _ITEM_REF}}, []),
        ),
        Tool(
            name="search",
            description="Search companies, projects and agreements upstream",
            inputSchema=_schema(
                {
                    "query": {"type": "string", "minLength": 1},
                    "kind": {
                        "type": "string",
                        "enum": ["all", "company", "project", "agreement"],
                        "default": "all",
                    },
                },
                ["query"],
            ),
        ),
        Tool(
            name="ticker_readings",
            description="Extrapolated over-budget figures for the current dashboard",
            inputSchema=_schema({}, []),
        ),
    ]


# ============================================================================
# Tool Handlers
# ============================================================================


def _validate(model: type[BaseModel], arguments: Any) -> BaseModel:
    return model(**(arguments or {}))


async def ensure_credentials(board: Board) -> None:
    """Load (or reload) credentials before a network tool runs."""
    client = board.client
    if client is None:
        raise NotConfigured("No upstream client available")
    if client.settings is None or client.settings.is_expired(board.clock()):
        await client.reload_settings()


async def handle_dashboard_list(board: Board, arguments: Any) -> list[TextContent]:
    """Handle dashboard_list tool call."""
    return _result(
        {
            "dashboards": [d.to_json_dict() for d in board.store.list_dashboards()],
            "currentDashboardId": board.store.current_id,
        }
    )


async def handle_dashboard_create(board: Board, arguments: Any) -> list[TextContent]:
    """Handle dashboard_create tool call."""
    try:
        req = _validate(DashboardCreateRequest, arguments)
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    dashboard = board.store.create_dashboard(req.name, set_as_current=req.set_as_current)
    return _result({"dashboard": dashboard.to_json_dict()})


async def handle_dashboard_delete(board: Board, arguments: Any) -> list[TextContent]:
    try:
        req = _validate(DashboardIdRequest, arguments)
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        board.store.delete_dashboard(req.dashboard_id)
    except DOMAIN_ERRORS as e:
        return _failure(e)
    return _result({"deleted": req.dashboard_id, "currentDashboardId": board.store.current_id})


async def handle_dashboard_rename(board: Board, arguments: Any) -> list[TextContent]:
    try:
        req = _validate(DashboardRenameRequest, arguments)
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        dashboard = board.store.rename(req.dashboard_id, req.name)
    except DOMAIN_ERRORS as e:
        return _failure(e)
    return _result({"dashboard": dashboard.to_json_dict()})


async def handle_dashboard_switch(board: Board, arguments: Any) -> list[TextContent]:
    try:
        req = _validate(DashboardIdRequest, arguments)
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        board.switch(req.dashboard_id)
    except DOMAIN_ERRORS as e:
        return _failure(e)
    return _result(board_snapshot(board))


async def handle_board_show(board: Board, arguments: Any) -> list[TextContent]:
    """Handle board_show tool call."""
    return _result(board_snapshot(board))


async def handle_item_add(board: Board, arguments: Any) -> list[TextContent]:
    """Handle item_add tool call.

    Items that fail to fetch are listed under ``failed``; the rest are added.
    """
    try:
        req = _validate(ItemsAddRequest, arguments)
        refs = [ItemRef.parse(text) for text in req.items]
    except (ValidationError, ValueError) as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        await ensure_credentials(board)
        report = await board.add_items(refs)
    except DOMAIN_ERRORS as e:
        return _failure(e)

    return _result(
        {
            "added": [item_payload(item) for item in report.added],
            "skipped": [str(ref) for ref in report.skipped],
            "failed": report.failed,
        }
    )


async def handle_item_remove(board: Board, arguments: Any) -> list[TextContent]:
    try:
        req = _validate(ItemRequest, arguments)
        ref = ItemRef.parse(req.item)
    except (ValidationError, ValueError) as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        board.remove_item(ref)
    except DOMAIN_ERRORS as e:
        return _failure(e)
    return _result({"removed": str(ref)})


async def handle_item_move(board: Board, arguments: Any) -> list[TextContent]:
    """Handle item_move tool call."""
    try:
        req = _validate(ItemMoveRequest, arguments)
        ref = ItemRef.parse(req.item)
        after = ItemRef.parse(req.after) if req.after else None
    except (ValidationError, ValueError) as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        board.move_item(ref, req.company_id, after)
    except DOMAIN_ERRORS as e:
        return _failure(e)
    return _result(board_snapshot(board))


async def handle_company_move(board: Board, arguments: Any) -> list[TextContent]:
    try:
        req = _validate(CompanyMoveRequest, arguments)
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        state = board.move_company(req.company_id, req.after)
    except DOMAIN_ERRORS as e:
        return _failure(e)
    return _result({"companyOrder": state.company_order})


async def handle_company_color_set(board: Board, arguments: Any) -> list[TextContent]:
    try:
        req = _validate(CompanyColorRequest, arguments)
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        state = board.set_company_color(req.company_id, req.value, req.contrast, req.name)
    except DOMAIN_ERRORS as e:
        return _failure(e)
    return _result({"companyId": req.company_id, "color": state.company_colors[req.company_id].to_json_dict()})


async def handle_company_color_clear(board: Board, arguments: Any) -> list[TextContent]:
    try:
        req = _validate(CompanyRequest, arguments)
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")
    return _result({"companyId": req.company_id, "cleared": board.clear_company_color(req.company_id)})


async def handle_board_refresh(board: Board, arguments: Any) -> list[TextContent]:
    """Handle board_refresh tool call."""
    try:
        req = _validate(RefreshRequest, arguments)
        refs = [ItemRef.parse(text) for text in req.items] if req.items is not None else None
    except (ValidationError, ValueError) as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        await ensure_credentials(board)
        report = await board.refresh(refs)
    except DOMAIN_ERRORS as e:
        return _failure(e)

    return _result(
        {
            "refreshed": [str(ref) for ref in report.refreshed],
            "failed": report.failed,
            "board": board_snapshot(board),
        }
    )


async def handle_search(board: Board, arguments: Any) -> list[TextContent]:
    try:
        req = _validate(SearchRequest, arguments)
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        await ensure_credentials(board)
        assert board.client is not None
        if req.kind == "all":
            results = await board.client.search_all(req.query)
        elif req.kind == "company":
            results = {"companies": await board.client.search("company", req.query)}
        else:
            results = {f"{req.kind}s": await board.client.search(ItemKind(req.kind), req.query)}
    except DOMAIN_ERRORS as e:
        return _failure(e)
    return _result(results)


async def handle_ticker_readings(board: Board, arguments: Any) -> list[TextContent]:
    ticker = OverBudgetTicker(clock=board.clock)
    readings = ticker.readings(board.state().items)
    return _result(
        {
            "readings": [
                {
                    "ref": str(r.ref),
                    "budgetType": r.budget_type.value,
                    "overage": round(r.overage, 4),
                    "label": r.label,
                }
                for r in readings
            ]
        }
    )


HANDLERS = {
    "dashboard_list": handle_dashboard_list,
    "dashboard_create": handle_dashboard_create,
    "dashboard_delete": handle_dashboard_delete,
    "dashboard_rename": handle_dashboard_rename,
    "dashboard_switch": handle_dashboard_switch,
    "board_show": handle_board_show,
    "item_add": handle_item_add,
    "item_remove": handle_item_remove,
    "item_move": handle_item_move,
    "company_move": handle_company_move,
    "company_color_set": handle_company_color_set,
    "company_color_clear": handle_company_color_clear,
    "board_refresh": handle_board_refresh,
    "search": handle_search,
    "ticker_readings": handle_ticker_readings,
}


async def call_tool(board: Board, name: str, arguments: Any) -> list[TextContent]:
    """Dispatch an MCP tool call to its handler."""
    handler = HANDLERS.get(name)
    if handler is None:
        return _error("UNKNOWN_TOOL", f"Unknown tool: {name}")
    try:
        return await handler(board, arguments)
    except Exception as e:
        # Catch-all for unexpected errors
        return _error("INTERNAL_ERROR", str(e))


# ============================================================================
# Server
# ============================================================================


def build_server(board: Board) -> Server:
    """Create an MCP server bound to one board."""
    server = Server("budget-board")

    @server.list_tools()
    async def _list_tools() -> list[Tool]:
        return await list_tools()

    @server.call_tool()
    async def _call_tool(name: str, arguments: Any) -> list[TextContent]:
        return await call_tool(board, name, arguments)

    return server


async def main(config: BoardConfig | None = None) -> None:
    """Run the MCP server over stdio."""
    config = config or load_config()
    # stdout carries the protocol; diagnostics go to stderr without colour
    logger = Logger(verbose=False, use_colors=False, quiet=True)

    async with httpx.AsyncClient(timeout=30.0) as http:
        board = open_board(config, http, logger=logger)
        server = build_server(board)
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())


def run_server() -> None:
    """Synchronous entry point for running the server."""
    asyncio.run(main())


if __name__ == "__main__":
    run_server()
