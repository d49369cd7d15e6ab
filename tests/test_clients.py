"""Tests for the identity provider and provisioning REST clients."""

import pytest
import requests

from errors import ExternalServiceUnavailable
from identity import IdentityClient
from provisioning import ProvisioningClient


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload or {}

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    """Records calls; answers from a (method, url-suffix) routing table."""

    def __init__(self, routes=None, error=None):
        self.routes = routes or {}
        self.error = error
        self.calls = []

    def _answer(self, method, url):
        self.calls.append((method, url))
        if self.error is not None:
            raise self.error
        for (m, suffix), resp in self.routes.items():
            if m == method and url.endswith(suffix):
                return resp
        return FakeResponse(404)

    def request(self, method, url, **kwargs):
        assert "timeout" in kwargs
        return self._answer(method, url)

    def get(self, url, **kwargs):
        assert "timeout" in kwargs
        return self._answer("GET", url)

    def post(self, url, **kwargs):
        assert "timeout" in kwargs
        return self._answer("POST", url)


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# ── Identity ─────────────────────────────────────────────────────────


def _identity(user_status, clock=None, error=None):
    session = FakeSession(
        routes={
            ("POST", "/oauth/token"): FakeResponse(200, {"access_token": "tok", "expires_in": 3600}),
            ("GET", "/api/v2/users/auth0%7Calice"): FakeResponse(user_status, {"user_id": "x"}),
        },
        error=error,
    )
    client = IdentityClient(domain="tenant.example.com", client_id="id", client_secret="secret",
                            session=session, clock=clock or Clock())
    return client, session


class TestIdentityClient:
    def test_existing_user(self):
        client, _ = _identity(200)
        assert client.user_exists("auth0|alice") is True

    def test_404_means_deleted(self):
        client, _ = _identity(404)
        assert client.user_exists("auth0|alice") is False

    def test_other_errors_raise(self):
        client, _ = _identity(500)
        with pytest.raises(ExternalServiceUnavailable):
            client.user_exists("auth0|alice")

    def test_network_error_raises(self):
        client, _ = _identity(200, error=requests.ConnectionError("down"))
        with pytest.raises(ExternalServiceUnavailable):
            client.user_exists("auth0|alice")

    def test_unconfigured_domain_raises(self):
        client = IdentityClient(domain="", session=FakeSession())
        with pytest.raises(ExternalServiceUnavailable):
            client.user_exists("alice")

    def test_positive_answer_cached_five_minutes(self):
        clock = Clock()
        client, session = _identity(200, clock=clock)
        client.user_exists("auth0|alice")
        clock.now += 299
        client.user_exists("auth0|alice")
        user_calls = [c for c in session.calls if "/users/" in c[1]]
        assert len(user_calls) == 1
        clock.now += 2
        client.user_exists("auth0|alice")
        user_calls = [c for c in session.calls if "/users/" in c[1]]
        assert len(user_calls) == 2

    def test_negative_answer_cached_one_minute(self):
        clock = Clock()
        client, session = _identity(404, clock=clock)
        client.user_exists("auth0|alice")
        clock.now += 61
        client.user_exists("auth0|alice")
        assert len([c for c in session.calls if "/users/" in c[1]]) == 2

    def test_token_reused_until_expiry(self):
        clock = Clock()
        client, session = _identity(200, clock=clock)
        client.user_exists("auth0|alice")
        client.invalidate("auth0|alice")
        client.user_exists("auth0|alice")
        assert len([c for c in session.calls if c[1].endswith("/oauth/token")]) == 1


# ── Provisioning ─────────────────────────────────────────────────────


def _panel(routes=None, error=None):
    session = FakeSession(routes=routes, error=error)
    return ProvisioningClient(base_url="https://panel.example.com/", token="t",
                              session=session), session


class TestProvisioningClient:
    def test_list_servers(self):
        client, session = _panel({
            ("GET", "/api/v1/servers/user/77"): FakeResponse(200, {"data": [
                {"id": 5, "ownerId": 77, "name": "web", "packageId": 2,
                 "created_at": "2026-03-01T00:00:00Z"},
            ]}),
        })
        servers = client.list_servers("77")
        assert len(servers) == 1
        assert servers[0].server_id == "5"
        assert servers[0].account_id == "77"
        assert servers[0].plan_id == 2
        assert servers[0].created_at.year == 2026
        assert session.calls[0][1] == "https://panel.example.com/api/v1/servers/user/77"

    def test_unknown_account_has_no_servers(self):
        client, _ = _panel()
        assert client.list_servers("99") == []

    def test_delete_is_idempotent(self):
        client, _ = _panel({("DELETE", "/servers/5"): FakeResponse(204)})
        assert client.delete_server("5") is True
        assert client.delete_server("6") is False

    def test_delete_user_is_idempotent(self):
        client, session = _panel({("DELETE", "/users/77"): FakeResponse(204)})
        assert client.delete_user("77") is True
        assert client.delete_user("78") is False
        assert session.calls[0] == ("DELETE", "https://panel.example.com/api/v1/users/77")

    def test_server_exists(self):
        client, _ = _panel({("GET", "/servers/5"): FakeResponse(200, {"data": {}})})
        assert client.server_exists("5") is True
        assert client.server_exists("6") is False

    def test_plan_price(self):
        client, _ = _panel({
            ("GET", "/packages/2"): FakeResponse(200, {"data": {"id": 2, "name": "M",
                                                                "priceMonthly": 4500}}),
        })
        plan = client.get_plan(2)
        assert plan.price_monthly_cents == 4500

    def test_server_errors_raise(self):
        client, _ = _panel({("GET", "/servers/user/77"): FakeResponse(502)})
        with pytest.raises(ExternalServiceUnavailable):
            client.list_servers("77")

    def test_timeouts_raise(self):
        client, _ = _panel(error=requests.Timeout("slow"))
        with pytest.raises(ExternalServiceUnavailable):
            client.delete_server("5")
