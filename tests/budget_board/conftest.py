"""Shared fixtures: item factory, fixed clock and a fake gateway/upstream."""

import json
import re
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from budget_board.kv_store import MemoryStore
from budget_board.models import ItemKind, TimeBudget, TrackedItem, ValueBudget
from budget_board.names import DashboardNameGenerator
from budget_board.store import DashboardStore

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
GATEWAY = "http://gateway.test"


def make_item(
    item_id: int,
    company_id: str = "1",
    kind: ItemKind = ItemKind.PROJECT,
    company_name: str | None = None,
    **kwargs: Any,
) -> TrackedItem:
    """Build a TrackedItem with sensible defaults."""
    values: dict[str, Any] = {
        "id": item_id,
        "kind": kind,
        "title": f"{kind.value.title()} {item_id}",
        "company_id": company_id,
        "company_name": company_name or f"Company {company_id}",
        "budget": TimeBudget(allowance_hours=10, used_hours=5),
        "last_refreshed_at": NOW,
    }
    values.update(kwargs)
    return TrackedItem(**values)


def over_budget_time_item(item_id: int = 1, **kwargs: Any) -> TrackedItem:
    return make_item(item_id, budget=TimeBudget(allowance_hours=10, used_hours=12), **kwargs)


def over_budget_value_item(item_id: int = 2, **kwargs: Any) -> TrackedItem:
    return make_item(
        item_id,
        kind=ItemKind.AGREEMENT,
        budget=ValueBudget(allowance_value=500, used_value=600),
        **kwargs,
    )


@pytest.fixture
def clock():
    """Clock frozen at NOW."""
    return lambda: NOW


@pytest.fixture
def kv():
    return MemoryStore()


@pytest.fixture
def store(kv, clock):
    """Opened in-memory dashboard store with one 'Main Dashboard'."""
    s = DashboardStore(kv, name_generator=DashboardNameGenerator(enabled=False), clock=clock)
    s.open()
    return s


def settings_payload(expired: bool = False) -> dict[str, Any]:
    expiry = NOW - timedelta(days=1) if expired else NOW + timedelta(days=30)
    return {
        "deployment": "acme",
        "accessToken": "secret-token",
        "tokenExpiry": expiry.isoformat().replace("+00:00", "Z"),
        "userName": "Pat",
        "userEmail": "pat@example.com",
    }


class FakeAccelo:
    """In-memory gateway + upstream API served through httpx.MockTransport.

    Attributes:
        settings: Credential store contents (None -> 404)
        companies / jobs / contracts: Records by id
        periods: Contract id -> period list (most recent first)
        allocations: Job id -> allocation records
        failures: Upstream paths answering 500
        requests: Upstream paths requested through the proxy, in order
    """

    def __init__(self) -> None:
        self.settings: dict[str, Any] | None = settings_payload()
        self.companies: dict[int, dict[str, Any]] = {}
        self.jobs: dict[int, dict[str, Any]] = {}
        self.contracts: dict[int, dict[str, Any]] = {}
        self.periods: dict[int, list[dict[str, Any]]] = {}
        self.allocations: dict[int, list[dict[str, Any]]] = {}
        self.failures: set[str] = set()
        self.requests: list[str] = []
        self.unreachable = False

    def add_company(self, company_id: int, name: str) -> None:
        self.companies[company_id] = {"id": str(company_id), "name": name}

    def add_job(self, job_id: int, title: str, company_id: int, billable: float = 0, nonbillable: float = 0) -> None:
        self.jobs[job_id] = {
            "id": str(job_id),
            "title": title,
            "standing": "active",
            "against_type": "company",
            "against_id": str(company_id),
        }
        self.allocations[job_id] = [{"billable": str(billable), "nonbillable": str(nonbillable)}]

    def add_contract(self, contract_id: int, title: str, company_id: int, periods: list[dict[str, Any]]) -> None:
        self.contracts[contract_id] = {
            "id": str(contract_id),
            "title": title,
            "standing": "active",
            "against_type": "company",
            "against_id": str(company_id),
        }
        self.periods[contract_id] = periods

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)

        if request.url.path == "/api/settings":
            if request.method == "POST":
                payload = json.loads(request.content or b"{}")
                self.settings = payload or None
                return httpx.Response(200, json={"success": True})
            if self.settings is None:
                return httpx.Response(404, json={"error": "No settings configured"})
            return httpx.Response(200, json=self.settings)

        if request.url.path != "/api/proxy":
            return httpx.Response(404, json={"error": "not found"})

        target = httpx.URL(request.headers["x-target-url"])
        path = target.path.removeprefix("/api/v0")
        self.requests.append(path)
        if path in self.failures:
            return httpx.Response(500, json={"meta": {"status": "error", "message": "upstream exploded"}})
        return self.route(path, dict(target.params))

    def route(self, path: str, params: dict[str, str]) -> httpx.Response:
        def ok(payload: Any) -> httpx.Response:
            return httpx.Response(200, json={"meta": {"status": "ok"}, "response": payload})

        if match := re.fullmatch(r"/companies/(\d+)", path):
            company = self.companies.get(int(match.group(1)))
            return ok(company) if company else httpx.Response(404, json={"message": "Company not found"})
        if match := re.fullmatch(r"/jobs/(\d+)", path):
            job = self.jobs.get(int(match.group(1)))
            return ok(job) if job else httpx.Response(404, json={"message": "Job not found"})
        if match := re.fullmatch(r"/contracts/(\d+)/periods", path):
            return ok({"periods": self.periods.get(int(match.group(1)), [])})
        if match := re.fullmatch(r"/contracts/(\d+)", path):
            contract = self.contracts.get(int(match.group(1)))
            return ok(contract) if contract else httpx.Response(404, json={"message": "Contract not found"})
        if path == "/activities/allocations":
            job_id = int(re.search(r"against_id\((\d+)\)", params["_filters"]).group(1))
            return ok(self.allocations.get(job_id, []))

        records = {"/companies": self.companies, "/jobs": self.jobs, "/contracts": self.contracts}.get(path)
        if records is None:
            return httpx.Response(404, json={"message": f"Unknown endpoint {path}"})

        query = params.get("_search", "").lower()
        company_filter = re.search(r"against_id\((\d+)\)", params.get("_filters", ""))
        results = []
        for record in records.values():
            label = (record.get("title") or record.get("name") or "").lower()
            if query and query not in label:
                continue
            if company_filter and record.get("against_id") != company_filter.group(1):
                continue
            results.append(record)
        return ok(results)


@pytest.fixture
def fake_accelo():
    """Fake upstream with two companies, two projects and two agreements."""
    fake = FakeAccelo()
    fake.add_company(1, "Acme Corp")
    fake.add_company(2, "Globex")
    # 12h logged -> heuristic allowance 14h
    fake.add_job(101, "Website Redesign", 1, billable=36000, nonbillable=7200)
    fake.add_job(102, "Fresh Start", 2)
    fake.add_contract(
        201,
        "Support Retainer",
        1,
        [
            {
                "id": "9",
                "standing": "opened",
                "date_commenced": "1717200000",
                "date_expires": "1719791999",
                "allowance": {"billable": "36000"},
                "budget_used": {"value": "18000"},
            }
        ],
    )
    fake.add_contract(
        202,
        "Hosting Plan",
        2,
        [
            {
                "id": "10",
                "standing": "opened",
                "allowance": {"amount": "500"},
                "budget_used": {"amount": "600"},
            }
        ],
    )
    return fake
