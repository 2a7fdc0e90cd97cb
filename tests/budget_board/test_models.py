"""Tests for data models."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from budget_board.models import (
    BudgetType,
    DashboardMeta,
    DashboardState,
    ItemKind,
    ItemRef,
    NoBudget,
    Settings,
    TimeBudget,
    TrackedItem,
    ValueBudget,
)

from .conftest import NOW, make_item


class TestBudgetMath:
    """Tests for percentage/remaining/overage on budget variants."""

    def test_time_budget_percentage(self):
        budget = TimeBudget(allowance_hours=10, used_hours=5)
        assert budget.percentage() == 50
        assert budget.remaining() == 5
        assert budget.overage() == 0
        assert not budget.is_over_budget()

    def test_value_budget_over(self):
        budget = ValueBudget(allowance_value=500, used_value=600)
        assert budget.percentage() == pytest.approx(120)
        assert budget.overage() == pytest.approx(100)
        assert budget.remaining() == 0
        assert budget.is_over_budget()

    def test_zero_allowance_disables_progress(self):
        """Allowance 0 behaves like no budget even on a time budget."""
        budget = TimeBudget(allowance_hours=0, used_hours=30)
        assert budget.percentage() == 0
        assert budget.overage() == 0
        assert not budget.is_over_budget()

    def test_no_budget_tracks_hours(self):
        budget = NoBudget(used_hours=7.5)
        assert budget.used == 7.5
        assert budget.allowance == 0
        assert budget.percentage() == 0

    def test_exactly_at_allowance_is_not_over(self):
        assert not TimeBudget(allowance_hours=10, used_hours=10).is_over_budget()

    def test_negative_usage_rejected(self):
        with pytest.raises(ValidationError):
            TimeBudget(allowance_hours=10, used_hours=-1)


class TestItemRef:
    def test_parse(self):
        ref = ItemRef.parse("project:123")
        assert ref.kind is ItemKind.PROJECT
        assert ref.id == 123
        assert str(ref) == "project:123"

    def test_parse_is_case_insensitive(self):
        assert ItemRef.parse("Agreement:45") == ItemRef(kind=ItemKind.AGREEMENT, id=45)

    @pytest.mark.parametrize("text", ["project", "task:1", "project:abc", ":5"])
    def test_parse_invalid(self, text):
        with pytest.raises(ValueError, match="Invalid item reference"):
            ItemRef.parse(text)

    def test_same_id_different_kind_differs(self):
        assert ItemRef.parse("project:7") != ItemRef.parse("agreement:7")
        assert len({ItemRef.parse("project:7"), ItemRef.parse("agreement:7")}) == 2


class TestTrackedItem:
    """Tests for TrackedItem serialization and invariants."""

    def test_camel_case_round_trip(self):
        item = make_item(5, budget=ValueBudget(allowance_value=100, used_value=20))
        data = item.to_json_dict()

        assert data["companyId"] == "1"
        assert data["budget"]["type"] == "value"
        assert data["budget"]["allowanceValue"] == 100
        assert TrackedItem.model_validate(data) == item

    def test_budget_discriminator(self):
        item = TrackedItem.model_validate(
            {
                "id": 1,
                "kind": "agreement",
                "title": "Retainer",
                "companyId": "3",
                "companyName": "Initech",
                "budget": {"type": "none", "usedHours": 2},
            }
        )
        assert isinstance(item.budget, NoBudget)
        assert item.budget_type is BudgetType.NONE

    def test_company_id_is_frozen(self):
        item = make_item(1)
        with pytest.raises(ValidationError):
            item.company_id = "2"

    def test_missing_budget(self):
        item = make_item(1, budget=None)
        assert item.budget_type is None
        assert item.percentage() == 0
        assert not item.is_over_budget()

    def test_naive_timestamp_becomes_utc(self):
        item = make_item(1, last_refreshed_at=datetime(2024, 1, 1, 9, 0))
        assert item.last_refreshed_at.tzinfo == timezone.utc


class TestDashboardModels:
    def test_meta_generates_ulid(self):
        meta = DashboardMeta(name="Ops")
        assert len(meta.id) == 26

    def test_meta_rejects_bad_id(self):
        with pytest.raises(ValidationError, match="ULID"):
            DashboardMeta(id="short", name="Ops")

    def test_meta_rejects_empty_name(self):
        with pytest.raises(ValidationError):
            DashboardMeta(name="")

    def test_state_find(self):
        state = DashboardState(items=[make_item(1), make_item(2, kind=ItemKind.AGREEMENT)])
        assert state.find(ItemRef.parse("agreement:2")).id == 2
        assert state.find(ItemRef.parse("agreement:1")) is None


class TestSettings:
    def test_parses_camel_case_and_extra_fields(self):
        settings = Settings.model_validate(
            {
                "deployment": "acme",
                "accessToken": "t",
                "tokenExpiry": "2024-07-01T00:00:00Z",
                "refreshToken": "kept",
            }
        )
        assert settings.access_token == "t"
        assert settings.model_extra == {"refreshToken": "kept"}

    def test_is_expired(self):
        settings = Settings(deployment="acme", access_token="t", token_expiry=NOW)
        assert settings.is_expired(NOW)
        assert not settings.is_expired(datetime(2024, 6, 1, tzinfo=timezone.utc))
