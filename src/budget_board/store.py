"""Multi-dashboard store backed by a key-value store.

Layout in the key-value store:
- ``dashboards_index``: every dashboard's metadata plus the current dashboard id
- ``dashboard_data_<id>``: one dashboard's items, company order and colours
- ``accelo_dashboard_state`` / ``company_colors``: legacy single-dashboard
  records, read once by the migration and then deleted

Every mutation is written through immediately. Write failures are logged
and not retried; the in-memory copy stays authoritative for the session.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from budget_board.kv_store import KeyValueStore
from budget_board.logging import Logger, quiet_logger
from budget_board.models import (
    MAX_DASHBOARD_NAME_LENGTH,
    CompanyColor,
    DashboardIndex,
    DashboardMeta,
    DashboardState,
    TrackedItem,
    utc_now,
)
from budget_board.names import DashboardNameGenerator
from budget_board.normalizer import BudgetOverrides, normalize_legacy_item
from budget_board.ordering import distinct_companies

INDEX_KEY = "dashboards_index"
DATA_KEY_PREFIX = "dashboard_data_"
LEGACY_STATE_KEY = "accelo_dashboard_state"
LEGACY_COLORS_KEY = "company_colors"
MAIN_DASHBOARD_NAME = "Main Dashboard"


class DashboardNotFound(KeyError):  # noqa: N818
    """Raised when a dashboard id is not in the index."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Dashboard not found"


class LastDashboardError(Exception):
    """Raised when deleting the only remaining dashboard."""

    pass


def data_key(dashboard_id: str) -> str:
    return f"{DATA_KEY_PREFIX}{dashboard_id}"


def _timestamp(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


class DashboardStore:
    """Owns the dashboard index and each dashboard's persisted state.

    Attributes:
        dashboards: Dashboard metadata in creation order
        current_dashboard_id: Id of the active dashboard (None before ``open``)
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        name_generator: DashboardNameGenerator | None = None,
        overrides: BudgetOverrides | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: Logger | None = None,
    ) -> None:
        self.kv = kv
        self.name_generator = name_generator or DashboardNameGenerator()
        self.overrides = overrides or BudgetOverrides()
        self.clock = clock
        self.logger = logger or quiet_logger()
        self.dashboards: list[DashboardMeta] = []
        self.current_dashboard_id: str | None = None
        self._states: dict[str, DashboardState] = {}

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _read(self, key: str) -> Any | None:
        try:
            return self.kv.get(key)
        except (OSError, ValueError) as e:
            self.logger.error(f"Failed to read {key}: {e}")
            return None

    def _write(self, key: str, value: Any) -> bool:
        try:
            self.kv.set(key, value)
            return True
        except OSError as e:
            self.logger.error(
                f"Failed to persist {key}: {e}",
                suggestion="Changes are kept for this session only",
            )
            return False

    def _remove(self, key: str) -> None:
        try:
            self.kv.delete(key)
        except OSError as e:
            self.logger.error(f"Failed to delete {key}: {e}")

    def _save_index(self) -> None:
        index = DashboardIndex(
            dashboards=self.dashboards, current_dashboard_id=self.current_dashboard_id
        )
        data = index.to_json_dict()
        data["lastUpdated"] = _timestamp(self.clock())
        self._write(INDEX_KEY, data)

    def _load_index(self) -> None:
        raw = self._read(INDEX_KEY)
        if raw is None:
            return
        try:
            index = DashboardIndex.model_validate(raw)
        except ValidationError as e:
            self.logger.error(f"Dashboard index is invalid, starting empty: {e}")
            return
        self.dashboards = index.dashboards
        self.current_dashboard_id = index.current_dashboard_id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Load the index, migrate legacy state, and ensure one dashboard exists."""
        self._load_index()
        self.migrate_legacy()

        if not self.dashboards:
            self.create_dashboard(MAIN_DASHBOARD_NAME)
        elif self.find(self.current_dashboard_id or "") is None:
            self.logger.warning("Current dashboard is missing; switching to the first dashboard")
            self.current_dashboard_id = self.dashboards[0].id
            self._save_index()

    def migrate_legacy(self) -> DashboardMeta | None:
        """Move single-dashboard state into a new "Main Dashboard".

        Runs only when legacy state exists and no dashboards do. The legacy
        keys are deleted afterwards, so a second call is a no-op.

        Returns:
            The created dashboard, or None if nothing was migrated
        """
        if self.dashboards:
            return None

        raw_state = self._read(LEGACY_STATE_KEY)
        if raw_state is None:
            return None
        if not isinstance(raw_state, dict):
            self.logger.error("Legacy dashboard state is not an object; leaving it in place")
            return None

        raw_colors = self._read(LEGACY_COLORS_KEY)
        colors = self._parse_colors(raw_colors if isinstance(raw_colors, dict) else {})
        items = self._parse_items(raw_state.get("dashboardData") or [])
        order = [str(company_id) for company_id in raw_state.get("companyOrder") or []]

        dashboard = self.create_dashboard(MAIN_DASHBOARD_NAME)
        self.save_state(
            dashboard.id,
            DashboardState(items=items, company_order=order, company_colors=colors),
        )

        self._remove(LEGACY_STATE_KEY)
        self._remove(LEGACY_COLORS_KEY)

        self.logger.info(f"Migrated {len(items)} legacy item(s) into '{MAIN_DASHBOARD_NAME}'")
        return dashboard

    # ------------------------------------------------------------------
    # Dashboard index operations
    # ------------------------------------------------------------------

    def find(self, dashboard_id: str) -> DashboardMeta | None:
        for dashboard in self.dashboards:
            if dashboard.id == dashboard_id:
                return dashboard
        return None

    def get(self, dashboard_id: str) -> DashboardMeta:
        """Get dashboard metadata by id.

        Raises:
            DashboardNotFound: If no dashboard has this id
        """
        dashboard = self.find(dashboard_id)
        if dashboard is None:
            raise DashboardNotFound(f"Dashboard {dashboard_id} not found")
        return dashboard

    def list_dashboards(self) -> list[DashboardMeta]:
        return [d.model_copy() for d in self.dashboards]

    def count(self) -> int:
        return len(self.dashboards)

    @property
    def current_id(self) -> str | None:
        return self.current_dashboard_id

    def current(self) -> DashboardMeta:
        if self.current_dashboard_id is None:
            raise DashboardNotFound("No current dashboard (store not opened)")
        return self.get(self.current_dashboard_id)

    def create_dashboard(self, name: str | None = None, set_as_current: bool = True) -> DashboardMeta:
        """Create an empty dashboard.

        Args:
            name: Display name; generated when None or blank
            set_as_current: Make the new dashboard the active one
        """
        name = (name or "").strip() or self.name_generator.generate()
        now = self.clock()
        dashboard = DashboardMeta(name=name, created_at=now, last_updated=now)

        self.dashboards.append(dashboard)
        if set_as_current:
            self.current_dashboard_id = dashboard.id

        empty = DashboardState()
        self._states[dashboard.id] = empty
        self._write(data_key(dashboard.id), self._state_record(empty))
        self._save_index()

        self.logger.debug("Created dashboard", id=dashboard.id, name=name)
        return dashboard

    def delete_dashboard(self, dashboard_id: str) -> None:
        """Delete a dashboard and its data.

        If it is the current dashboard, another one becomes current first.

        Raises:
            DashboardNotFound: If no dashboard has this id
            LastDashboardError: If it is the only dashboard
        """
        self.get(dashboard_id)
        if len(self.dashboards) <= 1:
            raise LastDashboardError("Cannot delete the last dashboard")

        if self.current_dashboard_id == dashboard_id:
            self.current_dashboard_id = next(d.id for d in self.dashboards if d.id != dashboard_id)

        self.dashboards = [d for d in self.dashboards if d.id != dashboard_id]
        self._states.pop(dashboard_id, None)
        self._remove(data_key(dashboard_id))
        self._save_index()

    def rename(self, dashboard_id: str, name: str) -> DashboardMeta:
        """Rename a dashboard.

        Raises:
            DashboardNotFound: If no dashboard has this id
            ValueError: If the name is blank or too long
        """
        dashboard = self.get(dashboard_id)
        name = name.strip()
        if not name:
            raise ValueError("Dashboard name cannot be empty")
        if len(name) > MAX_DASHBOARD_NAME_LENGTH:
            raise ValueError(f"Dashboard name cannot exceed {MAX_DASHBOARD_NAME_LENGTH} characters")
        dashboard.name = name
        dashboard.last_updated = self.clock()
        self._save_index()
        return dashboard

    def set_current(self, dashboard_id: str) -> DashboardMeta:
        """Make a dashboard the active one and stamp its access time.

        Raises:
            DashboardNotFound: If no dashboard has this id
        """
        dashboard = self.get(dashboard_id)
        self.current_dashboard_id = dashboard_id
        dashboard.last_accessed = self.clock()
        self._save_index()
        return dashboard

    def record_access(self, dashboard_id: str) -> None:
        dashboard = self.get(dashboard_id)
        dashboard.last_accessed = self.clock()
        self._save_index()

    # ------------------------------------------------------------------
    # Dashboard contents
    # ------------------------------------------------------------------

    def _parse_items(self, raw_items: Any) -> list[TrackedItem]:
        items: list[TrackedItem] = []
        if not isinstance(raw_items, list):
            self.logger.warning("Stored items are not a list; ignoring them")
            return items

        for raw in raw_items:
            if not isinstance(raw, dict):
                continue
            try:
                items.append(TrackedItem.model_validate(raw))
                continue
            except ValidationError:
                pass
            # Items saved by older versions are raw upstream records
            try:
                items.append(normalize_legacy_item(raw, overrides=self.overrides, logger=self.logger))
            except (ValueError, ValidationError) as e:
                self.logger.warning(f"Skipping unreadable stored item {raw.get('id')!r}: {e}")
        return items

    def _parse_colors(self, raw_colors: dict[str, Any]) -> dict[str, CompanyColor]:
        colors: dict[str, CompanyColor] = {}
        for company_id, raw in raw_colors.items():
            try:
                colors[str(company_id)] = CompanyColor.model_validate(raw)
            except ValidationError:
                self.logger.warning(f"Skipping invalid colour for company {company_id}")
        return colors

    def _state_record(self, state: DashboardState) -> dict[str, Any]:
        record = state.to_json_dict()
        record["lastUpdated"] = _timestamp(self.clock())
        return record

    def load_state(self, dashboard_id: str) -> DashboardState:
        """Load a dashboard's items, company order and colours.

        Returns a copy; changes only take effect through ``save_state``.

        Raises:
            DashboardNotFound: If no dashboard has this id
        """
        self.get(dashboard_id)

        if dashboard_id not in self._states:
            raw = self._read(data_key(dashboard_id))
            if not isinstance(raw, dict):
                raw = {}

            raw_items = raw.get("items", raw.get("dashboardData", []))
            items = self._parse_items(raw_items)
            order = [str(c) for c in raw.get("companyOrder") or []]
            if not order and items:
                order = distinct_companies(items)
            raw_colors = raw.get("companyColors")
            colors = self._parse_colors(raw_colors if isinstance(raw_colors, dict) else {})

            self._states[dashboard_id] = DashboardState(
                items=items, company_order=order, company_colors=colors
            )

        return self._states[dashboard_id].model_copy(deep=True)

    def save_state(self, dashboard_id: str, state: DashboardState) -> None:
        """Replace a dashboard's contents and persist them.

        Raises:
            DashboardNotFound: If no dashboard has this id
        """
        dashboard = self.get(dashboard_id)
        self._states[dashboard_id] = state.model_copy(deep=True)
        self._write(data_key(dashboard_id), self._state_record(state))

        dashboard.last_updated = self.clock()
        self._save_index()
