"""Turn upstream project/agreement records into TrackedItems.

Upstream data arrives in several shapes: projects carry time allocations,
agreements carry a list of contract periods whose allowance may be
expressed in billable seconds, in money, or not at all. This module owns
the policy that maps each of those onto one progress-tracking model.
"""

import json
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any

from budget_board.logging import Logger, quiet_logger
from budget_board.models import (
    Allocation,
    Budget,
    ItemKind,
    NoBudget,
    TimeBudget,
    TrackedItem,
    ValueBudget,
    utc_now,
)

DEFAULT_PROJECT_ALLOWANCE = 40.0
SUSPICIOUS_USAGE_PERCENT = 90.0
UNKNOWN_COMPANY_ID = "unknown"
UNKNOWN_COMPANY_NAME = "Unknown Company"

_TYPE_ALIASES = {
    "project": ItemKind.PROJECT,
    "job": ItemKind.PROJECT,
    "agreement": ItemKind.AGREEMENT,
    "contract": ItemKind.AGREEMENT,
}
_PROJECT_ONLY_FIELDS = ("date_due", "billable_seconds", "unbillable_seconds")
_AGREEMENT_ONLY_FIELDS = ("retainer_type", "retainer_value", "date_expires", "date_started")


def to_number(value: Any) -> float:
    """Parse an upstream scalar; missing, blank, invalid or negative values become 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or number < 0:
        return 0.0
    return number


def hours_from_seconds(seconds: float) -> float:
    """Convert seconds to hours rounded to one decimal."""
    return round(to_number(seconds) / 3600, 1)


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


# ============================================================================
# Project allowance policy
# ============================================================================


@dataclass
class BudgetOverrides:
    """Known allowances for projects whose upstream record has no budget.

    Lookup is by project id first, then by case-insensitive keyword found
    in the project title.
    """

    by_id: dict[int, float] = field(default_factory=dict)
    by_title: dict[str, float] = field(default_factory=dict)

    def lookup(self, item_id: int, title: str | None) -> float | None:
        if item_id in self.by_id:
            return self.by_id[item_id]
        title_lower = (title or "").lower()
        for keyword, hours in self.by_title.items():
            if keyword.lower() in title_lower:
                return hours
        return None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BudgetOverrides":
        """Build from ``{"by_id": {"415": 200}, "by_title": {"mussels app": 572}}``.

        Raises:
            ValueError: If ids are not integers or hours are not positive numbers
        """
        by_id: dict[int, float] = {}
        for raw_id, hours in _as_mapping(data.get("by_id")).items():
            try:
                by_id[int(raw_id)] = float(hours)
            except (TypeError, ValueError) as e:
                raise ValueError(f"Invalid budget override for project {raw_id!r}: {hours!r}") from e

        by_title: dict[str, float] = {}
        for keyword, hours in _as_mapping(data.get("by_title")).items():
            try:
                by_title[str(keyword)] = float(hours)
            except (TypeError, ValueError) as e:
                raise ValueError(f"Invalid budget override for title {keyword!r}: {hours!r}") from e

        for value in [*by_id.values(), *by_title.values()]:
            if value <= 0:
                raise ValueError(f"Budget overrides must be positive, got {value}")

        return cls(by_id=by_id, by_title=by_title)

    @classmethod
    def from_file(cls, path: str | Path) -> "BudgetOverrides":
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))


def _ceil(value: float) -> int:
    # Floating point products like 10 * 1.1 overshoot; trim before ceiling
    return math.ceil(round(value, 6))


def estimate_project_allowance(logged_hours: float) -> float:
    """Derive an allowance from hours already logged.

    Examples:
        >>> estimate_project_allowance(0)
        40.0
        >>> estimate_project_allowance(12)
        14.0
    """
    if logged_hours <= 0:
        return DEFAULT_PROJECT_ALLOWANCE
    if logged_hours < 10:
        return float(max(_ceil(logged_hours * 2), 20))
    if logged_hours < 50:
        return float(_ceil(logged_hours * 1.15))
    if logged_hours < 100:
        return float(_ceil(logged_hours * 1.10))
    return float(_ceil(logged_hours * 1.05))


def heuristic_allowances(logged_hours: float) -> set[float]:
    """Every value any branch of the estimate could produce for these hours."""
    return {
        float(max(_ceil(logged_hours * 2), 20)),
        float(_ceil(logged_hours * 1.15)),
        float(_ceil(logged_hours * 1.10)),
        float(_ceil(logged_hours * 1.05)),
    }


def is_allowance_suspicious(logged_hours: float, allowance_hours: float) -> bool:
    """True when a high-usage allowance looks auto-generated rather than real."""
    if allowance_hours <= 0 or logged_hours <= 0:
        return False
    usage = logged_hours / allowance_hours * 100
    return usage >= SUSPICIOUS_USAGE_PERCENT and allowance_hours in heuristic_allowances(logged_hours)


def resolve_project_allowance(
    item_id: int, title: str | None, logged_hours: float, overrides: BudgetOverrides
) -> tuple[float, bool]:
    """Pick the allowance for a project.

    Returns:
        Tuple of (allowance_hours, suspicious)
    """
    override = overrides.lookup(item_id, title)
    if override is not None:
        return override, False
    allowance = estimate_project_allowance(logged_hours)
    return allowance, is_allowance_suspicious(logged_hours, allowance)


def project_budget(
    item_id: int, title: str | None, allocation: Allocation, overrides: BudgetOverrides
) -> tuple[TimeBudget, bool]:
    logged = hours_from_seconds(allocation.billable + allocation.nonbillable)
    allowance, suspicious = resolve_project_allowance(item_id, title, logged, overrides)
    return TimeBudget(allowance_hours=allowance, used_hours=logged), suspicious


# ============================================================================
# Agreement periods
# ============================================================================


def _parse_instant(value: Any, *, end_of_day: bool = False) -> datetime | None:
    """Parse a unix timestamp (int or numeric string) or an ISO date/datetime."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        seconds = float(value)
        if seconds <= 0:
            return None
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                day = date.fromisoformat(text)
                moment = datetime.combine(day, time.min, tzinfo=timezone.utc)
                return moment + timedelta(days=1, microseconds=-1) if end_of_day else moment
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def parse_period_date(value: Any) -> date | None:
    instant = _parse_instant(value)
    return instant.date() if instant else None


def _period_contains(period: Mapping[str, Any], now: datetime) -> bool:
    start = _parse_instant(period.get("date_commenced"))
    end = _parse_instant(period.get("date_expires"), end_of_day=True)
    if start is None or end is None:
        return False
    return start <= now <= end


def select_current_period(
    periods: Sequence[Mapping[str, Any]], now: datetime | None = None
) -> Mapping[str, Any] | None:
    """Pick the current period from a list sorted by commence date, newest first.

    Precedence: the "opened" period, then the period containing ``now``,
    then the most recently commenced period.
    """
    candidates = [p for p in periods if isinstance(p, Mapping)]
    if not candidates:
        return None

    for period in candidates:
        if period.get("standing") == "opened":
            return period

    now = now or utc_now()
    for period in candidates:
        if _period_contains(period, now):
            return period

    return candidates[0]


def agreement_budget(period: Mapping[str, Any]) -> Budget:
    """Choose the budget variant for an agreement's current period.

    A positive billable-seconds allowance always means a time budget, even
    when a monetary amount is present too.
    """
    allowance = _as_mapping(period.get("allowance"))
    used = _as_mapping(period.get("budget_used"))

    billable = to_number(allowance.get("billable"))
    if billable > 0:
        return TimeBudget(
            allowance_hours=hours_from_seconds(billable),
            used_hours=hours_from_seconds(to_number(used.get("value"))),
        )

    amount = to_number(allowance.get("amount"))
    if amount > 0:
        return ValueBudget(
            allowance_value=round(amount, 2),
            used_value=round(to_number(used.get("amount")), 2),
        )

    return NoBudget(used_hours=hours_from_seconds(to_number(used.get("value"))))


# ============================================================================
# Record classification
# ============================================================================


def classify_record(record: Mapping[str, Any], logger: Logger | None = None) -> ItemKind:
    """Decide whether a record is a project or an agreement.

    The explicit ``type`` tag is authoritative. Records stored before the
    tag existed fall back to field sniffing, which logs a warning.

    Raises:
        ValueError: If the record carries no tag and no telling fields
    """
    tag = record.get("type")
    if isinstance(tag, str) and tag.lower() in _TYPE_ALIASES:
        return _TYPE_ALIASES[tag.lower()]

    log = logger or quiet_logger()
    record_id = record.get("id")

    if any(record.get(name) is not None for name in _PROJECT_ONLY_FIELDS):
        log.warning(f"Record {record_id} has no type tag; classified as project from its fields")
        return ItemKind.PROJECT
    if any(record.get(name) for name in _AGREEMENT_ONLY_FIELDS):
        log.warning(f"Record {record_id} has no type tag; classified as agreement from its fields")
        return ItemKind.AGREEMENT
    if record.get("status") is not None:
        log.warning(f"Record {record_id} has no type tag; assuming project")
        return ItemKind.PROJECT

    raise ValueError(f"Cannot determine whether record {record_id!r} is a project or agreement")


def extract_company(record: Mapping[str, Any]) -> tuple[str, str]:
    """Return (company_id, company_name) for a record."""
    if record.get("company_id") not in (None, ""):
        return str(record["company_id"]), str(record.get("company_name") or UNKNOWN_COMPANY_NAME)

    for key in ("company_info", "against"):
        info = record.get(key)
        if isinstance(info, Mapping) and info.get("id") not in (None, ""):
            return str(info["id"]), str(info.get("name") or UNKNOWN_COMPANY_NAME)
        if isinstance(info, str) and "/" in info:
            # Upstream sometimes returns "company/123" instead of an object
            against_type, _, against_id = info.partition("/")
            if against_type == "company" and against_id:
                return against_id, str(record.get("against_name") or UNKNOWN_COMPANY_NAME)

    return UNKNOWN_COMPANY_ID, UNKNOWN_COMPANY_NAME


def _title(record: Mapping[str, Any], kind: ItemKind) -> str:
    return str(record.get("title") or record.get("name") or f"{kind.value} #{record.get('id')}")


def _record_id(record: Mapping[str, Any]) -> int:
    try:
        return int(record["id"])
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Record has no usable id: {record.get('id')!r}") from e


# ============================================================================
# Normalization
# ============================================================================


def normalize_project(
    record: Mapping[str, Any],
    allocation: Allocation | None,
    *,
    overrides: BudgetOverrides | None = None,
    now: datetime | None = None,
) -> TrackedItem:
    """Build a TrackedItem for a project; ``allocation=None`` means no usage data."""
    item_id = _record_id(record)
    title = _title(record, ItemKind.PROJECT)
    company_id, company_name = extract_company(record)

    budget = None
    suspicious = False
    if allocation is not None:
        budget, suspicious = project_budget(item_id, title, allocation, overrides or BudgetOverrides())

    return TrackedItem(
        id=item_id,
        kind=ItemKind.PROJECT,
        title=title,
        company_id=company_id,
        company_name=company_name,
        budget=budget,
        budget_suspicious=suspicious,
        last_refreshed_at=now or utc_now(),
    )


def normalize_agreement(
    record: Mapping[str, Any],
    period: Mapping[str, Any] | None,
    *,
    now: datetime | None = None,
) -> TrackedItem:
    """Build a TrackedItem for an agreement from its current period (or None)."""
    item_id = _record_id(record)
    company_id, company_name = extract_company(record)

    budget = None
    period_start = period_end = None
    if period is not None:
        budget = agreement_budget(period)
        period_start = parse_period_date(period.get("date_commenced"))
        period_end = parse_period_date(period.get("date_expires"))

    return TrackedItem(
        id=item_id,
        kind=ItemKind.AGREEMENT,
        title=_title(record, ItemKind.AGREEMENT),
        company_id=company_id,
        company_name=company_name,
        budget=budget,
        period_start=period_start,
        period_end=period_end,
        last_refreshed_at=now or utc_now(),
    )


def normalize_legacy_item(
    raw: Mapping[str, Any],
    *,
    overrides: BudgetOverrides | None = None,
    logger: Logger | None = None,
) -> TrackedItem:
    """Convert an item saved by the single-dashboard format.

    Legacy items are upstream records with pre-digested ``hours`` (projects)
    or ``usage`` (agreements) sub-objects attached.

    Raises:
        ValueError: If the record cannot be classified or has no id
    """
    kind = classify_record(raw, logger)
    item_id = _record_id(raw)
    title = _title(raw, kind)
    company_id, company_name = extract_company(raw)

    budget: Budget | None = None
    suspicious = False
    period_start = period_end = None

    if kind is ItemKind.PROJECT:
        hours = raw.get("hours")
        if isinstance(hours, Mapping):
            logged = round(to_number(hours.get("billableHours")) + to_number(hours.get("nonBillableHours")), 1)
            allowance, suspicious = resolve_project_allowance(
                item_id, title, logged, overrides or BudgetOverrides()
            )
            budget = TimeBudget(allowance_hours=allowance, used_hours=logged)
    else:
        usage = raw.get("usage")
        if isinstance(usage, Mapping):
            budget_type = usage.get("budgetType")
            time_allowance = to_number(usage.get("timeAllowance"))
            if budget_type is None:
                budget_type = "time" if time_allowance > 0 else "none"
            if budget_type == "time" and time_allowance > 0:
                budget = TimeBudget(allowance_hours=time_allowance, used_hours=to_number(usage.get("timeUsed")))
            elif budget_type == "value" and to_number(usage.get("valueAllowance")) > 0:
                budget = ValueBudget(
                    allowance_value=to_number(usage.get("valueAllowance")),
                    used_value=to_number(usage.get("valueUsed")),
                )
            else:
                budget = NoBudget(used_hours=to_number(usage.get("timeUsed")))
            period_start = parse_period_date(usage.get("periodStart"))
            period_end = parse_period_date(usage.get("periodEnd"))

    return TrackedItem(
        id=item_id,
        kind=kind,
        title=title,
        company_id=company_id,
        company_name=company_name,
        budget=budget,
        budget_suspicious=suspicious,
        period_start=period_start,
        period_end=period_end,
    )
