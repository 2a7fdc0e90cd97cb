"""Budget dashboards for projects and agreements tracked in an upstream PSA.

This package contains:
- Models for tracked items, budgets and dashboards
- The upstream client, budget normalizer and dashboard store
- Ordering, the over-budget ticker, and the board service tying them together
- CLI, MCP server and HTTP gateway adapters
"""

from .board import AddReport, Board, RefreshReport
from .models import DashboardMeta, DashboardState, ItemKind, ItemRef, TrackedItem

__version__ = "0.1.0"

__all__ = [
    "AddReport",
    "Board",
    "DashboardMeta",
    "DashboardState",
    "ItemKind",
    "ItemRef",
    "RefreshReport",
    "TrackedItem",
]
