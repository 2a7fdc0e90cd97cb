"""HTTP gateway: upstream relay plus credential store.

``/api/proxy`` forwards any method to the URL named in ``X-Target-URL``,
provided its host is allow-listed, passing only the authorization,
content-type and accept headers. Upstream status codes and bodies are
returned verbatim.

``/api/settings`` holds the API credentials. POST replaces them wholesale;
posting ``{}`` clears them.
"""

from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from budget_board.kv_store import KeyValueStore
from budget_board.logging import Logger, quiet_logger

FORWARDED_REQUEST_HEADERS = ("authorization", "content-type", "accept")
# Stripped from relayed responses: hop-by-hop, or invalid once httpx has decoded the body
DROPPED_RESPONSE_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "transfer-encoding",
        "content-encoding",
        "content-length",
        "upgrade",
    }
)
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Target-URL",
}
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
SETTINGS_KEY = "api_settings"
DEFAULT_TIMEOUT = 30.0


def host_allowed(host: str, allowed_hosts: list[str]) -> bool:
    """Check a hostname against the allow-list.

    Entries starting with ``.`` match any subdomain; other entries match exactly.
    """
    host = host.lower()
    for allowed in allowed_hosts:
        allowed = allowed.lower()
        if allowed.startswith("."):
            if host.endswith(allowed):
                return True
        elif host == allowed:
            return True
    return False


class CredentialStore:
    """In-memory credentials, optionally mirrored to a key-value store."""

    def __init__(self, kv: KeyValueStore | None = None, logger: Logger | None = None) -> None:
        self.kv = kv
        self.logger = logger or quiet_logger()
        self._settings: dict[str, Any] | None = None
        if kv is not None:
            stored = kv.get(SETTINGS_KEY)
            if isinstance(stored, dict) and stored:
                self._settings = stored

    def get(self) -> dict[str, Any] | None:
        return dict(self._settings) if self._settings else None

    def replace(self, settings: dict[str, Any]) -> None:
        self._settings = dict(settings) or None
        if self.kv is None:
            return
        try:
            if self._settings is None:
                self.kv.delete(SETTINGS_KEY)
            else:
                self.kv.set(SETTINGS_KEY, self._settings)
        except OSError as e:
            self.logger.error(f"Failed to persist settings: {e}", suggestion="Settings are kept in memory only")


def create_app(
    *,
    allowed_hosts: list[str],
    transport: httpx.AsyncBaseTransport | None = None,
    settings_kv: KeyValueStore | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    logger: Logger | None = None,
) -> FastAPI:
    """Build the gateway application.

    Args:
        allowed_hosts: Upstream hosts the relay may contact
        transport: httpx transport for outbound requests (tests pass a MockTransport)
        settings_kv: Where to persist credentials; memory-only when None
        timeout: Outbound request timeout in seconds
        logger: Logger for relay and settings events
    """
    logger = logger or quiet_logger()
    credentials = CredentialStore(settings_kv, logger)

    app = FastAPI(title="Budget Board Gateway")
    app.state.credentials = credentials

    @app.api_route("/api/proxy", methods=PROXY_METHODS)
    async def proxy(request: Request) -> Response:
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=CORS_HEADERS)

        target = request.headers.get("x-target-url")
        if not target:
            return JSONResponse(
                {"error": "Missing X-Target-URL header"}, status_code=400, headers=CORS_HEADERS
            )

        try:
            url = httpx.URL(target)
        except httpx.InvalidURL:
            return JSONResponse(
                {"error": f"Invalid X-Target-URL: {target}"}, status_code=400, headers=CORS_HEADERS
            )
        if url.scheme not in ("http", "https") or not host_allowed(url.host, allowed_hosts):
            logger.warning(f"[PROXY] Rejected target host {url.host!r}")
            return JSONResponse(
                {"error": f"Target host not allowed: {url.host}"}, status_code=403, headers=CORS_HEADERS
            )

        headers = {
            name: request.headers[name] for name in FORWARDED_REQUEST_HEADERS if name in request.headers
        }
        body = await request.body()

        logger.info(f"[PROXY] {request.method} {target}")
        try:
            async with httpx.AsyncClient(transport=transport, timeout=timeout) as client:
                upstream = await client.request(
                    request.method, url, headers=headers, content=body or None
                )
        except httpx.HTTPError as e:
            logger.error(f"[PROXY ERROR] {e}")
            return JSONResponse(
                {"error": f"Proxy error: {e}"}, status_code=500, headers=CORS_HEADERS
            )

        response_headers = {
            name: value
            for name, value in upstream.headers.items()
            if name.lower() not in DROPPED_RESPONSE_HEADERS
        }
        response_headers.update(CORS_HEADERS)
        return Response(
            content=upstream.content, status_code=upstream.status_code, headers=response_headers
        )

    @app.get("/api/settings")
    async def get_settings() -> JSONResponse:
        settings = credentials.get()
        if settings is None:
            return JSONResponse({"error": "No settings configured"}, status_code=404)
        return JSONResponse(settings)

    @app.post("/api/settings")
    async def post_settings(request: Request) -> JSONResponse:
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse({"error": "Settings must be a JSON object"}, status_code=400)
        if not isinstance(payload, dict):
            return JSONResponse({"error": "Settings must be a JSON object"}, status_code=400)

        credentials.replace(payload)
        logger.info("[SETTINGS] Updated API settings" if payload else "[SETTINGS] Cleared API settings")
        return JSONResponse({"success": True})

    @app.get("/api/health")
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok", "configured": credentials.get() is not None})

    return app
