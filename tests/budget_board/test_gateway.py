"""Tests for the HTTP gateway (relay + credential store)."""

import httpx
import pytest
from fastapi.testclient import TestClient

from budget_board.gateway import SETTINGS_KEY, CredentialStore, create_app, host_allowed
from budget_board.kv_store import MemoryStore

TARGET = "https://acme.api.accelo.com/api/v0/jobs?_search=web"


class Upstream:
    """Records relayed requests and answers with a canned response."""

    def __init__(self, response=None):
        self.requests = []
        self.response = response or httpx.Response(
            200, json={"response": [{"id": "1"}]}, headers={"X-Upstream": "yes"}
        )
        self.fail = False

    def __call__(self, request):
        self.requests.append(request)
        if self.fail:
            raise httpx.ConnectError("connection refused", request=request)
        return self.response


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def client(upstream):
    app = create_app(allowed_hosts=[".api.accelo.com"], transport=httpx.MockTransport(upstream))
    return TestClient(app)


@pytest.mark.parametrize(
    "host, expected",
    [
        ("acme.api.accelo.com", True),
        ("ACME.API.ACCELO.COM", True),
        ("api.accelo.com.evil.net", False),
        ("evilapi.accelo.com", False),
        ("localhost", False),
    ],
)
def test_host_allowed_suffix(host, expected):
    assert host_allowed(host, [".api.accelo.com"]) is expected


def test_host_allowed_exact():
    assert host_allowed("localhost", ["localhost"])
    assert not host_allowed("sub.localhost", ["localhost"])


class TestProxy:
    """Tests for /api/proxy."""

    def test_relays_request(self, client, upstream):
        response = client.get(
            "/api/proxy",
            headers={
                "X-Target-URL": TARGET,
                "Authorization": "Bearer abc",
                "Accept": "application/json",
                "X-Custom": "dropped",
            },
        )

        assert response.status_code == 200
        assert response.json() == {"response": [{"id": "1"}]}
        assert response.headers["x-upstream"] == "yes"
        assert response.headers["access-control-allow-origin"] == "*"

        relayed = upstream.requests[0]
        assert str(relayed.url) == TARGET
        assert relayed.headers["authorization"] == "Bearer abc"
        assert "x-custom" not in relayed.headers
        assert "x-target-url" not in relayed.headers

    def test_post_body_forwarded(self, client, upstream):
        client.post(
            "/api/proxy",
            headers={"X-Target-URL": TARGET, "Content-Type": "application/json"},
            content=b'{"title": "New"}',
        )
        relayed = upstream.requests[0]
        assert relayed.method == "POST"
        assert relayed.content == b'{"title": "New"}'
        assert relayed.headers["content-type"] == "application/json"

    def test_upstream_status_passed_through(self, upstream):
        upstream.response = httpx.Response(404, json={"message": "Job not found"})
        app = create_app(allowed_hosts=[".api.accelo.com"], transport=httpx.MockTransport(upstream))
        response = TestClient(app).get("/api/proxy", headers={"X-Target-URL": TARGET})
        assert response.status_code == 404
        assert response.json() == {"message": "Job not found"}

    def test_missing_target(self, client, upstream):
        response = client.get("/api/proxy")
        assert response.status_code == 400
        assert response.json() == {"error": "Missing X-Target-URL header"}
        assert upstream.requests == []

    @pytest.mark.parametrize(
        "target",
        ["https://example.com/steal", "ftp://acme.api.accelo.com/x", "http://localhost:8080/api/settings"],
    )
    def test_disallowed_target(self, client, upstream, target):
        response = client.get("/api/proxy", headers={"X-Target-URL": target})
        assert response.status_code == 403
        assert "not allowed" in response.json()["error"]
        assert upstream.requests == []

    def test_transport_failure(self, client, upstream):
        upstream.fail = True
        response = client.get("/api/proxy", headers={"X-Target-URL": TARGET})
        assert response.status_code == 500
        assert response.json()["error"].startswith("Proxy error:")

    def test_options_preflight(self, client, upstream):
        response = client.options("/api/proxy")
        assert response.status_code == 200
        assert "X-Target-URL" in response.headers["access-control-allow-headers"]
        assert upstream.requests == []


class TestSettings:
    def test_empty(self, client):
        response = client.get("/api/settings")
        assert response.status_code == 404
        assert response.json() == {"error": "No settings configured"}

    def test_replace_and_clear(self, client):
        settings = {"deployment": "acme", "accessToken": "t", "tokenExpiry": "2030-01-01T00:00:00Z"}
        assert client.post("/api/settings", json=settings).json() == {"success": True}
        assert client.get("/api/settings").json() == settings

        client.post("/api/settings", json={"deployment": "other"})
        assert client.get("/api/settings").json() == {"deployment": "other"}

        client.post("/api/settings", json={})
        assert client.get("/api/settings").status_code == 404

    @pytest.mark.parametrize("body", [b"[1, 2]", b"not json"])
    def test_rejects_non_object(self, client, body):
        response = client.post(
            "/api/settings", content=body, headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400

    def test_health(self, client):
        assert client.get("/api/health").json() == {"status": "ok", "configured": False}


class TestCredentialStore:
    def test_persisted_settings_survive_restart(self):
        kv = MemoryStore()
        CredentialStore(kv).replace({"deployment": "acme"})

        assert kv.get(SETTINGS_KEY) == {"deployment": "acme"}
        assert CredentialStore(kv).get() == {"deployment": "acme"}

    def test_clear_removes_persisted_copy(self):
        kv = MemoryStore({SETTINGS_KEY: {"deployment": "acme"}})
        store = CredentialStore(kv)
        store.replace({})
        assert store.get() is None
        assert kv.get(SETTINGS_KEY) is None

    def test_app_uses_settings_store(self):
        kv = MemoryStore({SETTINGS_KEY: {"deployment": "acme"}})
        client = TestClient(create_app(allowed_hosts=[".api.accelo.com"], settings_kv=kv))
        assert client.get("/api/settings").json() == {"deployment": "acme"}
