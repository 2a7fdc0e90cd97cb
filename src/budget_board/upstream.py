"""Client for the upstream project-management API, reached through the gateway.

Every request is relayed by the gateway's ``/api/proxy`` endpoint with the
real upstream URL in the ``X-Target-URL`` header. GET responses are cached
in memory for a short TTL. The upstream API is inconsistent about envelope
shapes: missing arrays become empty and missing numbers become 0.
"""

import asyncio
import copy
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx
from pydantic import ValidationError

from budget_board.logging import Logger, quiet_logger
from budget_board.models import Allocation, ItemKind, Settings, utc_now
from budget_board.normalizer import UNKNOWN_COMPANY_NAME, select_current_period, to_number

API_URL_TEMPLATE = "https://{deployment}.api.accelo.com/api/v0"
DEFAULT_GATEWAY_URL = "http://localhost:8080"
DEFAULT_CACHE_TTL = 300.0
DEFAULT_REQUEST_DELAY = 0.1
SEARCH_LIMIT = 20
LIST_LIMIT = 100
PERIOD_LIMIT = 10

COMPANY_FIELDS = "id,name,status,standing,website,phone"
PROJECT_FIELDS = (
    "id,title,standing,status,manager,date_started,date_due,"
    "billable_seconds,unbillable_seconds,against_type,against_id"
)
AGREEMENT_FIELDS = (
    "id,title,standing,status,date_started,date_expires,"
    "retainer_type,retainer_value,against_type,against_id"
)
ALLOCATION_FIELDS = "id,against,billable,nonbillable,logged,charged"
PERIOD_FIELDS = "id,date_commenced,date_expires,contract_budget,allowance,budget_used,standing"

_ENDPOINTS = {
    ItemKind.PROJECT: ("/jobs", PROJECT_FIELDS),
    ItemKind.AGREEMENT: ("/contracts", AGREEMENT_FIELDS),
}


class NotConfigured(Exception):  # noqa: N818
    """Raised when no credentials are stored yet."""

    pass


class TokenExpired(Exception):  # noqa: N818
    """Raised before dispatch when the stored access token has expired."""

    pass


class UpstreamError(Exception):
    """Non-2xx response from the gateway or upstream API.

    Attributes:
        status: HTTP status code (None for transport failures)
        message: Upstream error message when one was provided
    """

    def __init__(self, status: int | None, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"{self.message} (HTTP {self.status})"


class NetworkError(UpstreamError):
    """Transport failure; handled exactly like an UpstreamError."""

    def __init__(self, message: str) -> None:
        super().__init__(None, message)


@dataclass
class _CacheEntry:
    data: dict[str, Any]
    expires: float


def _error_message(data: Any, response: httpx.Response) -> str:
    if isinstance(data, dict):
        meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
        for candidate in (data.get("message"), data.get("error"), meta.get("message")):
            if isinstance(candidate, str) and candidate:
                return candidate
    return f"API request failed: {response.status_code} {response.reason_phrase}".rstrip()


def response_list(data: dict[str, Any], key: str | None = None) -> list[dict[str, Any]]:
    """Extract a list of records from an envelope; anything else is empty."""
    payload = data.get("response")
    if key is not None:
        payload = payload.get(key) if isinstance(payload, dict) else None
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        return []
    return [record for record in payload if isinstance(record, dict)]


def response_object(data: dict[str, Any]) -> dict[str, Any]:
    payload = data.get("response")
    return payload if isinstance(payload, dict) else {}


def _tag(record: dict[str, Any], kind: ItemKind, company: dict[str, Any] | None = None) -> dict[str, Any]:
    tagged = {**record, "type": kind.value}
    if company is not None:
        tagged["company_info"] = company
    elif isinstance(record.get("against"), dict):
        tagged["company_info"] = record["against"]
    return tagged


async def load_settings(
    http: httpx.AsyncClient,
    gateway_url: str = DEFAULT_GATEWAY_URL,
    *,
    now: datetime | None = None,
) -> Settings:
    """Fetch credentials from the gateway's credential store.

    Raises:
        NotConfigured: If no (or unusable) settings are stored
        TokenExpired: If the stored token has expired
        NetworkError: If the gateway cannot be reached
    """
    try:
        response = await http.get(f"{gateway_url.rstrip('/')}/api/settings")
    except httpx.TransportError as e:
        raise NetworkError(f"Cannot reach gateway at {gateway_url}: {e}") from e

    if response.status_code == 404:
        raise NotConfigured("No API settings configured. Run 'budget-board settings set' first.")
    if response.status_code >= 400:
        raise UpstreamError(response.status_code, "Failed to read API settings")

    try:
        settings = Settings.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        raise NotConfigured(f"Stored API settings are incomplete: {e}") from e

    if settings.is_expired(now):
        raise TokenExpired("Access token has expired. Please re-authenticate in settings.")
    return settings


class UpstreamClient:
    """Issues normalized queries against the upstream API.

    Attributes:
        settings: Credentials in use (None when not configured)
        cache_ttl: Seconds a GET response stays cached
        request_delay: Pause inserted between sequential per-item fetches
    """

    def __init__(
        self,
        settings: Settings | None,
        *,
        http: httpx.AsyncClient,
        gateway_url: str = DEFAULT_GATEWAY_URL,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        request_delay: float = DEFAULT_REQUEST_DELAY,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        logger: Logger | None = None,
    ) -> None:
        self.settings = settings
        self.http = http
        self.gateway_url = gateway_url.rstrip("/")
        self.cache_ttl = cache_ttl
        self.request_delay = request_delay
        self.clock = clock
        self.monotonic = monotonic
        self.logger = logger or quiet_logger()
        self._cache: dict[str, _CacheEntry] = {}

    @classmethod
    async def connect(
        cls, http: httpx.AsyncClient, gateway_url: str = DEFAULT_GATEWAY_URL, **kwargs: Any
    ) -> "UpstreamClient":
        """Create a client with credentials read from the gateway."""
        settings = await load_settings(http, gateway_url)
        return cls(settings, http=http, gateway_url=gateway_url, **kwargs)

    async def reload_settings(self) -> Settings:
        """Re-read credentials from the gateway (after the user re-authenticates)."""
        self.settings = await load_settings(self.http, self.gateway_url, now=self.clock())
        self.clear_cache()
        return self.settings

    @property
    def base_url(self) -> str:
        settings = self._require_settings()
        return API_URL_TEMPLATE.format(deployment=settings.deployment)

    def _require_settings(self) -> Settings:
        if self.settings is None:
            raise NotConfigured("API not configured. Please configure settings first.")
        if self.settings.is_expired(self.clock()):
            raise TokenExpired("Access token has expired. Please re-authenticate in settings.")
        return self.settings

    def clear_cache(self) -> None:
        self._cache.clear()
        self.logger.debug("[CACHE] Cleared all cached data")

    async def pause(self) -> None:
        """Fixed delay between sequential fetches to stay under upstream rate limits."""
        if self.request_delay > 0:
            await asyncio.sleep(self.request_delay)

    async def request(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        *,
        method: str = "GET",
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one request through the gateway.

        Returns:
            The decoded JSON envelope

        Raises:
            NotConfigured: If no credentials are loaded
            TokenExpired: If the token has expired (checked before dispatch)
            UpstreamError: If the response status is >= 400 or the body is not JSON
            NetworkError: If the gateway cannot be reached
        """
        settings = self._require_settings()
        method = method.upper()

        cache_key = json.dumps(
            [settings.deployment, method, endpoint, params or {}], sort_keys=True, default=str
        )
        if method == "GET":
            cached = self._cache.get(cache_key)
            if cached is not None and cached.expires > self.monotonic():
                self.logger.debug(f"[CACHE HIT] {endpoint}")
                return copy.deepcopy(cached.data)

        url = endpoint if endpoint.startswith("http") else f"{self.base_url}{endpoint}"
        target = str(httpx.URL(url, params=params)) if params else url
        headers = {
            "Authorization": f"Bearer {settings.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-Target-URL": target,
        }

        self.logger.debug(f"[API REQUEST] {method} {endpoint}")
        try:
            response = await self.http.request(
                method, f"{self.gateway_url}/api/proxy", headers=headers, json=body
            )
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {endpoint} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code >= 400:
            raise UpstreamError(response.status_code, _error_message(data, response))
        if not isinstance(data, dict):
            raise UpstreamError(response.status_code, f"Unexpected response body from {endpoint}")

        if method == "GET":
            self._cache[cache_key] = _CacheEntry(
                data=copy.deepcopy(data), expires=self.monotonic() + self.cache_ttl
            )
        return data

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def search(self, kind: ItemKind | str, query: str) -> list[dict[str, Any]]:
        """Search companies, projects or agreements by free text."""
        params = {"_search": query, "_limit": SEARCH_LIMIT}
        if kind == "company":
            data = await self.request("/companies", {**params, "_fields": COMPANY_FIELDS})
            return response_list(data)

        kind = ItemKind(kind)
        endpoint, fields = _ENDPOINTS[kind]
        data = await self.request(endpoint, {**params, "_fields": f"{fields},against"})
        return [_tag(record, kind) for record in response_list(data)]

    async def search_all(self, query: str) -> dict[str, list[dict[str, Any]]]:
        companies, projects, agreements = await asyncio.gather(
            self.search("company", query),
            self.search(ItemKind.PROJECT, query),
            self.search(ItemKind.AGREEMENT, query),
        )
        return {"companies": companies, "projects": projects, "agreements": agreements}

    async def fetch_company(self, company_id: int | str) -> dict[str, Any]:
        data = await self.request(f"/companies/{company_id}", {"_fields": "id,name"})
        return response_object(data)

    async def _list_for_company(
        self, kind: ItemKind, company_id: int | str, standing: str | None
    ) -> list[dict[str, Any]]:
        endpoint, fields = _ENDPOINTS[kind]
        filters = f"against_type(company),against_id({company_id})"
        if standing:
            filters += f",standing({standing})"
        data = await self.request(
            endpoint, {"_fields": fields, "_filters": filters, "_limit": LIST_LIMIT}
        )
        return response_list(data)

    async def fetch_company_items(
        self, company_id: int | str, standing: str | None = "active"
    ) -> dict[str, Any]:
        """List a company's projects and agreements, tagged with type and company."""
        company = await self.fetch_company(company_id)
        info = {"id": str(company_id), "name": company.get("name") or UNKNOWN_COMPANY_NAME}

        projects, agreements = await asyncio.gather(
            self._list_for_company(ItemKind.PROJECT, company_id, standing),
            self._list_for_company(ItemKind.AGREEMENT, company_id, standing),
        )
        return {
            "company": info,
            "projects": [_tag(p, ItemKind.PROJECT, info) for p in projects],
            "agreements": [_tag(a, ItemKind.AGREEMENT, info) for a in agreements],
        }

    async def fetch_item(self, kind: ItemKind, item_id: int) -> dict[str, Any]:
        """Fetch one project or agreement, with its owning company attached.

        Raises:
            UpstreamError: If the record does not exist
        """
        endpoint, fields = _ENDPOINTS[kind]
        data = await self.request(f"{endpoint}/{item_id}", {"_fields": fields})
        record = response_object(data)
        if not record:
            raise UpstreamError(404, f"{kind.value.capitalize()} {item_id} not found")

        company = None
        if record.get("against_type") == "company" and record.get("against_id"):
            company_id = record["against_id"]
            details = await self.fetch_company(company_id)
            company = {"id": str(company_id), "name": details.get("name") or UNKNOWN_COMPANY_NAME}
        return _tag(record, kind, company)

    async def fetch_allocations(self, project_id: int) -> Allocation:
        """Billable and non-billable seconds logged against a project.

        Every allocation record returned (project, tasks, milestones) is summed.
        """
        data = await self.request(
            "/activities/allocations",
            {
                "_fields": ALLOCATION_FIELDS,
                "_filters": f"against_type(job),against_id({project_id})",
            },
        )
        total = Allocation()
        for record in response_list(data):
            total = total + Allocation(
                billable=to_number(record.get("billable")),
                nonbillable=to_number(record.get("nonbillable")),
            )
        return total

    async def fetch_periods(self, agreement_id: int) -> list[dict[str, Any]]:
        """Contract periods, most recently commenced first."""
        data = await self.request(
            f"/contracts/{agreement_id}/periods",
            {
                "_fields": PERIOD_FIELDS,
                "_limit": PERIOD_LIMIT,
                "_order_by": "date_commenced",
                "_order_by_desc": 1,
            },
        )
        periods = response_list(data, key="periods")
        if not periods:
            # Some deployments return the periods array directly
            periods = [p for p in response_list(data) if "date_commenced" in p]
        return periods

    async def fetch_current_period(self, agreement_id: int) -> dict[str, Any] | None:
        periods = await self.fetch_periods(agreement_id)
        period = select_current_period(periods, self.clock())
        if period is None:
            self.logger.debug("No periods found", agreement=agreement_id)
            return None
        return dict(period)
