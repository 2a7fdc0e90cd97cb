"""Board service: the intent interface presentation adapters talk to.

Every intent works on the store's current dashboard, persists its result
immediately and returns plain data. Network-facing intents (add, refresh)
fetch items one at a time with a pause in between, and record per-item
failures instead of aborting the batch.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from budget_board import ordering
from budget_board.config import BoardConfig, load_overrides
from budget_board.kv_store import JsonFileStore
from budget_board.logging import Logger, quiet_logger
from budget_board.models import (
    CompanyColor,
    DashboardMeta,
    DashboardState,
    ItemKind,
    ItemRef,
    Settings,
    TrackedItem,
    utc_now,
)
from budget_board.normalizer import (
    BudgetOverrides,
    agreement_budget,
    normalize_agreement,
    normalize_project,
    parse_period_date,
    project_budget,
)
from budget_board.ordering import (
    CompanyGroup,
    CompanyNotFound,
    ItemNotFound,
    distinct_companies,
    group_by_company,
    reconcile_company_order,
)
from budget_board.store import DashboardStore
from budget_board.upstream import NotConfigured, UpstreamClient, UpstreamError


@dataclass
class AddReport:
    """Outcome of an add batch.

    Attributes:
        added: Items now on the dashboard (possibly degraded)
        skipped: References that were already on the dashboard
        failed: Reference string -> error message for items that could not be fetched
    """

    added: list[TrackedItem] = field(default_factory=list)
    skipped: list[ItemRef] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


@dataclass
class RefreshReport:
    """Outcome of a refresh batch; failed items keep ``refresh_error`` set."""

    refreshed: list[ItemRef] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


class Board:
    """Intents against the current dashboard.

    Attributes:
        store: Dashboard store (already opened)
        client: Upstream client; None for offline use (network intents raise NotConfigured)
    """

    def __init__(
        self,
        store: DashboardStore,
        client: UpstreamClient | None = None,
        *,
        overrides: BudgetOverrides | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: Logger | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.overrides = overrides or BudgetOverrides()
        self.clock = clock
        self.logger = logger or quiet_logger()

    @property
    def dashboard(self) -> DashboardMeta:
        return self.store.current()

    def state(self) -> DashboardState:
        return self.store.load_state(self.dashboard.id)

    def groups(self) -> list[CompanyGroup]:
        state = self.state()
        return group_by_company(state.items, state.company_order)

    def _save(self, state: DashboardState, dashboard_id: str | None = None) -> DashboardState:
        state.company_order = reconcile_company_order(state.items, state.company_order)
        self.store.save_state(dashboard_id or self.dashboard.id, state)
        return state

    def switch(self, dashboard_id: str) -> DashboardMeta:
        """Make another dashboard current.

        Raises:
            DashboardNotFound: If no dashboard has this id
        """
        return self.store.set_current(dashboard_id)

    # ------------------------------------------------------------------
    # Local intents
    # ------------------------------------------------------------------

    def remove_item(self, ref: ItemRef) -> DashboardState:
        """Unpin an item.

        Raises:
            ItemNotFound: If the item is not on the dashboard
        """
        state = self.state()
        if state.find(ref) is None:
            raise ItemNotFound(f"Item {ref} is not on this dashboard")
        state.items = [item for item in state.items if item.ref != ref]
        return self._save(state)

    def move_item(
        self, ref: ItemRef, target_company_id: str, after: ItemRef | None = None
    ) -> DashboardState:
        """Reorder an item within its company. Nothing is saved when the move is rejected."""
        state = self.state()
        state.items = ordering.move_item(state.items, ref, target_company_id, after)
        return self._save(state)

    def move_company(self, company_id: str, after: str | None = None) -> DashboardState:
        state = self.state()
        state.items, state.company_order = ordering.move_company(
            state.items, state.company_order, company_id, after
        )
        return self._save(state)

    def set_company_color(
        self, company_id: str, value: str, contrast: str, name: str = ""
    ) -> DashboardState:
        """Override a company block's colour on this dashboard.

        Raises:
            CompanyNotFound: If the company has no items on the dashboard
        """
        state = self.state()
        company_id = str(company_id)
        if company_id not in distinct_companies(state.items):
            raise CompanyNotFound(f"Company {company_id} is not on this dashboard")
        state.company_colors[company_id] = CompanyColor(value=value, contrast=contrast, name=name)
        return self._save(state)

    def clear_company_color(self, company_id: str) -> bool:
        """Drop a colour override; returns False if none was set."""
        state = self.state()
        if state.company_colors.pop(str(company_id), None) is None:
            return False
        self._save(state)
        return True

    # ------------------------------------------------------------------
    # Network intents
    # ------------------------------------------------------------------

    def _require_client(self) -> UpstreamClient:
        if self.client is None:
            raise NotConfigured("No upstream client available. Start the gateway and configure settings.")
        return self.client

    async def fetch_item(self, ref: ItemRef) -> TrackedItem:
        """Fetch and normalize one item.

        A failure fetching usage (allocations or periods) yields a degraded
        item with ``budget=None``; a failure fetching the record itself raises.

        Raises:
            UpstreamError: If the record cannot be fetched
        """
        client = self._require_client()
        record = await client.fetch_item(ref.kind, ref.id)
        now = self.clock()

        try:
            if ref.kind is ItemKind.PROJECT:
                allocation = await client.fetch_allocations(ref.id)
                return normalize_project(record, allocation, overrides=self.overrides, now=now)
            period = await client.fetch_current_period(ref.id)
            return normalize_agreement(record, period, now=now)
        except UpstreamError as e:
            self.logger.error(f"Failed to fetch usage for {ref}: {e}")
            if ref.kind is ItemKind.PROJECT:
                item = normalize_project(record, None, overrides=self.overrides, now=now)
            else:
                item = normalize_agreement(record, None, now=now)
            return item.model_copy(update={"refresh_error": str(e)})

    async def add_items(self, refs: Iterable[ItemRef]) -> AddReport:
        """Fetch and pin items; already-pinned references are skipped.

        Raises:
            NotConfigured: If no credentials are available (nothing is added)
            TokenExpired: If the token has expired (nothing is added)
        """
        client = self._require_client()
        report = AddReport()
        dashboard = self.dashboard
        state = self.store.load_state(dashboard.id)
        fetched = 0

        for ref in refs:
            if state.find(ref) is not None or any(item.ref == ref for item in report.added):
                report.skipped.append(ref)
                continue
            if fetched:
                await client.pause()
            fetched += 1

            try:
                item = await self.fetch_item(ref)
            except UpstreamError as e:
                self.logger.error(f"Failed to add {ref}: {e}")
                report.failed[str(ref)] = str(e)
                continue
            report.added.append(item)

        if report.added:
            # Reload so intents applied while fetching are kept
            state = self.store.load_state(dashboard.id)
            state.items.extend(item for item in report.added if state.find(item.ref) is None)
            self._save(state, dashboard.id)
            self.logger.info(f"Added {len(report.added)} item(s) to '{dashboard.name}'")
        return report

    async def _refreshed(self, item: TrackedItem) -> TrackedItem:
        client = self._require_client()
        now = self.clock()

        if item.kind is ItemKind.PROJECT:
            allocation = await client.fetch_allocations(item.id)
            budget, suspicious = project_budget(item.id, item.title, allocation, self.overrides)
            return item.model_copy(
                update={
                    "budget": budget,
                    "budget_suspicious": suspicious,
                    "last_refreshed_at": now,
                    "refresh_error": None,
                }
            )

        period = await client.fetch_current_period(item.id)
        update = {
            "budget": None,
            "period_start": None,
            "period_end": None,
            "last_refreshed_at": now,
            "refresh_error": None,
        }
        if period is not None:
            update["budget"] = agreement_budget(period)
            update["period_start"] = parse_period_date(period.get("date_commenced"))
            update["period_end"] = parse_period_date(period.get("date_expires"))
        return item.model_copy(update=update)

    async def refresh(self, refs: Iterable[ItemRef] | None = None) -> RefreshReport:
        """Re-fetch usage for every item (or only ``refs``).

        A full refresh clears the upstream cache first. Items whose fetch
        fails are kept with ``budget=None`` and ``refresh_error`` set.

        Raises:
            NotConfigured: If no credentials are available
            TokenExpired: If the token has expired
        """
        client = self._require_client()
        report = RefreshReport()
        dashboard_id = self.dashboard.id
        items = self.store.load_state(dashboard_id).items

        if refs is None:
            client.clear_cache()
            targets = items
        else:
            wanted = set(refs)
            targets = [item for item in items if item.ref in wanted]
            for ref in wanted - {item.ref for item in targets}:
                report.failed[str(ref)] = f"Item {ref} is not on this dashboard"

        updated: dict[ItemRef, TrackedItem] = {}
        for index, item in enumerate(targets):
            if index:
                await client.pause()
            try:
                updated[item.ref] = await self._refreshed(item)
                report.refreshed.append(item.ref)
            except UpstreamError as e:
                self.logger.error(f"Failed to refresh {item.kind.value} {item.title!r}: {e}")
                updated[item.ref] = item.model_copy(update={"budget": None, "refresh_error": str(e)})
                report.failed[str(item.ref)] = str(e)

        if updated:
            state = self.store.load_state(dashboard_id)
            state.items = [updated.get(item.ref, item) for item in state.items]
            self._save(state, dashboard_id)
        return report


def item_payload(item: TrackedItem) -> dict[str, Any]:
    """JSON form of an item plus its derived progress figures."""
    payload = item.to_json_dict()
    payload["ref"] = str(item.ref)
    payload["percentage"] = round(item.percentage(), 1)
    payload["overBudget"] = item.is_over_budget()
    if item.budget is not None:
        payload["remaining"] = round(item.budget.remaining(), 2)
        payload["overage"] = round(item.budget.overage(), 2)
    return payload


def board_snapshot(board: Board) -> dict[str, Any]:
    """Current dashboard as plain data: metadata plus company groups."""
    state = board.state()
    groups = group_by_company(state.items, state.company_order)
    return {
        "dashboard": board.dashboard.to_json_dict(),
        "groups": [
            {
                "companyId": group.company_id,
                "companyName": group.company_name,
                "color": (
                    state.company_colors[group.company_id].to_json_dict()
                    if group.company_id in state.company_colors
                    else None
                ),
                "items": [item_payload(item) for item in group.items],
            }
            for group in groups
        ],
    }


def open_board(
    config: BoardConfig,
    http: httpx.AsyncClient | None = None,
    *,
    settings: Settings | None = None,
    logger: Logger | None = None,
) -> Board:
    """Wire a Board from configuration: file-backed store plus (optionally) an upstream client."""
    logger = logger or quiet_logger()
    overrides = load_overrides(config)
    store = DashboardStore(JsonFileStore(config.store_dir), overrides=overrides, logger=logger)
    store.open()

    client = None
    if http is not None:
        client = UpstreamClient(
            settings,
            http=http,
            gateway_url=config.gateway_url,
            cache_ttl=config.cache_ttl,
            request_delay=config.request_delay,
            logger=logger,
        )
    return Board(store, client, overrides=overrides, logger=logger)
