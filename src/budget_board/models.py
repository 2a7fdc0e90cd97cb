"""Data models for tracked items, budgets, dashboards and credentials."""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from ulid import new as new_ulid


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _ensure_utc(v: datetime | None) -> datetime | None:
    if v is None:
        return v
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class StoredModel(BaseModel):
    """Base for models persisted in the key-value store (camelCase on disk)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class ItemKind(str, Enum):
    """Kind of upstream record pinned to a dashboard."""

    PROJECT = "project"
    AGREEMENT = "agreement"


class BudgetType(str, Enum):
    """Which usage metric applies to an item."""

    TIME = "time"
    VALUE = "value"
    NONE = "none"


class _BudgetMath:
    """Progress arithmetic shared by every budget variant.

    An allowance of 0 disables progress tracking: percentage, remaining and
    overage are all 0 regardless of usage.
    """

    @property
    def allowance(self) -> float:
        raise NotImplementedError

    @property
    def used(self) -> float:
        raise NotImplementedError

    def percentage(self) -> float:
        if self.allowance <= 0:
            return 0.0
        return self.used / self.allowance * 100

    def remaining(self) -> float:
        if self.allowance <= 0:
            return 0.0
        return max(0.0, self.allowance - self.used)

    def overage(self) -> float:
        if self.allowance <= 0:
            return 0.0
        return max(0.0, self.used - self.allowance)

    def is_over_budget(self) -> bool:
        return self.percentage() > 100


class TimeBudget(_BudgetMath, StoredModel):
    """Billable-hours allowance (projects, time-budgeted agreements)."""

    type: Literal["time"] = "time"
    allowance_hours: float = Field(..., ge=0)
    used_hours: float = Field(default=0, ge=0)

    @property
    def allowance(self) -> float:
        return self.allowance_hours

    @property
    def used(self) -> float:
        return self.used_hours


class ValueBudget(_BudgetMath, StoredModel):
    """Monetary allowance (value-budgeted agreements)."""

    type: Literal["value"] = "value"
    allowance_value: float = Field(..., ge=0)
    used_value: float = Field(default=0, ge=0)

    @property
    def allowance(self) -> float:
        return self.allowance_value

    @property
    def used(self) -> float:
        return self.used_value


class NoBudget(_BudgetMath, StoredModel):
    """Agreement without an allowance; time worked is still shown."""

    type: Literal["none"] = "none"
    used_hours: float = Field(default=0, ge=0)

    @property
    def allowance(self) -> float:
        return 0.0

    @property
    def used(self) -> float:
        return self.used_hours


Budget = Annotated[TimeBudget | ValueBudget | NoBudget, Field(discriminator="type")]


class ItemRef(BaseModel, frozen=True):
    """Identity of a pinned item: upstream id is only unique within its kind."""

    kind: ItemKind
    id: int

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"

    @classmethod
    def parse(cls, text: str) -> "ItemRef":
        """Parse ``"project:123"`` / ``"agreement:45"``.

        Raises:
            ValueError: If the text is not ``<kind>:<id>``
        """
        kind, sep, raw_id = text.strip().partition(":")
        if not sep:
            raise ValueError(f"Invalid item reference: {text!r} (expected KIND:ID)")
        try:
            return cls(kind=ItemKind(kind.lower()), id=int(raw_id))
        except ValueError as e:
            raise ValueError(f"Invalid item reference: {text!r} (expected KIND:ID)") from e


class TrackedItem(StoredModel):
    """A project or agreement pinned to a dashboard.

    ``budget`` is None when no usage data is available: an agreement without
    any period, or an item whose last fetch failed (``refresh_error`` set).
    """

    id: int
    kind: ItemKind
    title: str
    company_id: str = Field(..., frozen=True)
    company_name: str
    budget: Budget | None = None
    period_start: date | None = None
    period_end: date | None = None
    last_refreshed_at: datetime | None = None
    budget_suspicious: bool = False
    refresh_error: str | None = None

    @field_validator("last_refreshed_at")
    @classmethod
    def validate_utc(cls, v: datetime | None) -> datetime | None:
        return _ensure_utc(v)

    @property
    def ref(self) -> ItemRef:
        return ItemRef(kind=self.kind, id=self.id)

    @property
    def budget_type(self) -> BudgetType | None:
        if self.budget is None:
            return None
        return BudgetType(self.budget.type)

    def percentage(self) -> float:
        return self.budget.percentage() if self.budget is not None else 0.0

    def is_over_budget(self) -> bool:
        return self.budget is not None and self.budget.is_over_budget()


class CompanyColor(StoredModel):
    """Per-dashboard colour override for a company block."""

    value: str = Field(..., min_length=1)
    contrast: str = Field(..., min_length=1)
    name: str = ""


class DashboardState(StoredModel):
    """Contents of one dashboard: pinned items and their grouping."""

    items: list[TrackedItem] = Field(default_factory=list)
    company_order: list[str] = Field(default_factory=list)
    company_colors: dict[str, CompanyColor] = Field(default_factory=dict)

    def find(self, ref: ItemRef) -> TrackedItem | None:
        for item in self.items:
            if item.kind == ref.kind and item.id == ref.id:
                return item
        return None


MAX_DASHBOARD_NAME_LENGTH = 200


class DashboardMeta(StoredModel):
    """Index entry for one dashboard."""

    id: str = Field(default_factory=lambda: str(new_ulid()))
    name: str = Field(..., min_length=1, max_length=MAX_DASHBOARD_NAME_LENGTH)
    created_at: datetime = Field(default_factory=utc_now)
    last_updated: datetime = Field(default_factory=utc_now)
    last_accessed: datetime | None = None

    @field_validator("id")
    @classmethod
    def validate_ulid(cls, v: str) -> str:
        """Validate that id is a valid ULID (26 characters)."""
        if len(v) != 26:
            raise ValueError(f"ULID must be exactly 26 characters, got {len(v)}")
        return v

    @field_validator("created_at", "last_updated", "last_accessed")
    @classmethod
    def validate_utc(cls, v: datetime | None) -> datetime | None:
        return _ensure_utc(v)


class DashboardIndex(StoredModel):
    """Root record listing every dashboard and the active one."""

    dashboards: list[DashboardMeta] = Field(default_factory=list)
    current_dashboard_id: str | None = None


class Settings(StoredModel):
    """Credentials held by the credential store."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    deployment: str = Field(..., min_length=1)
    access_token: str = Field(..., min_length=1)
    token_expiry: datetime
    user_name: str = ""
    user_email: str = ""

    @field_validator("token_expiry")
    @classmethod
    def validate_utc(cls, v: datetime) -> datetime:
        return _ensure_utc(v)

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.token_expiry <= (now or utc_now())


class Allocation(BaseModel):
    """Upstream time-tracking aggregate, in seconds."""

    billable: float = Field(default=0, ge=0)
    nonbillable: float = Field(default=0, ge=0)

    def __add__(self, other: "Allocation") -> "Allocation":
        return Allocation(
            billable=self.billable + other.billable,
            nonbillable=self.nonbillable + other.nonbillable,
        )
