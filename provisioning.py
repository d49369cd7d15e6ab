# OzWallet Provisioning Client
# REST client for the server-provisioning panel: list, inspect and delete
# servers, and read plan pricing.
#
# Deletion is idempotent from our side: a 404 on delete means the server
# is already gone and is reported as success.

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import requests

from db import as_utc
from errors import ExternalServiceUnavailable

log = logging.getLogger("ozwallet.provisioning")

PROVISIONING_URL = os.environ.get("OZWALLET_PROVISIONING_URL", "")
PROVISIONING_TOKEN = os.environ.get("OZWALLET_PROVISIONING_TOKEN", "")
EXTERNAL_TIMEOUT_SEC = float(os.environ.get("OZWALLET_EXTERNAL_TIMEOUT_SEC", "10"))


@dataclass
class ProvisionedServer:
    server_id: str
    account_id: str
    name: str = ""
    plan_id: int = 0
    created_at: Optional[datetime] = None


@dataclass
class Plan:
    plan_id: int
    name: str
    price_monthly_cents: int


def _parse_time(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


def _parse_server(item: dict, account_id: str = "") -> ProvisionedServer:
    return ProvisionedServer(
        server_id=str(item["id"]),
        account_id=str(item.get("ownerId") or item.get("owner") or account_id),
        name=item.get("name", ""),
        plan_id=int(item.get("packageId") or item.get("package_id") or 0),
        created_at=_parse_time(item.get("created_at") or item.get("createdAt")),
    )


class ProvisioningClient:
    """Bearer-token client for the provisioning panel's /api/v1 endpoints."""

    service = "provisioning"

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None,
                 timeout: Optional[float] = None, session=None):
        self.base_url = (base_url if base_url is not None else PROVISIONING_URL).rstrip("/")
        self.token = token if token is not None else PROVISIONING_TOKEN
        self.timeout = timeout if timeout is not None else EXTERNAL_TIMEOUT_SEC
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/v1{path}"

    def _request(self, method: str, path: str, allow_404: bool = False):
        if not self.base_url:
            raise ExternalServiceUnavailable(self.service, "OZWALLET_PROVISIONING_URL not set")
        try:
            resp = self.session.request(
                method, self._url(path), headers=self._headers(), timeout=self.timeout,
            )
        except requests.RequestException as e:
            log.warning("Provisioning %s %s failed: %s", method, path, e)
            raise ExternalServiceUnavailable(self.service, str(e)) from e
        if resp.status_code == 404 and allow_404:
            return None
        if resp.status_code >= 400:
            log.warning("Provisioning %s %s returned HTTP %d", method, path, resp.status_code)
            raise ExternalServiceUnavailable(self.service, f"HTTP {resp.status_code}")
        return resp

    def list_servers(self, account_id: str) -> list[ProvisionedServer]:
        """Servers owned by a provisioning account. Unknown accounts have none."""
        resp = self._request("GET", f"/servers/user/{account_id}", allow_404=True)
        if resp is None:
            return []
        return [_parse_server(item, account_id) for item in resp.json().get("data", [])]

    def server_exists(self, server_id: str) -> bool:
        return self._request("GET", f"/servers/{server_id}", allow_404=True) is not None

    def delete_server(self, server_id: str) -> bool:
        """Delete a server. Returns False when it was already gone."""
        resp = self._request("DELETE", f"/servers/{server_id}", allow_404=True)
        if resp is None:
            log.info("Server %s already deleted", server_id)
            return False
        log.info("Deletion submitted for server %s", server_id)
        return True

    def delete_user(self, account_id: str) -> bool:
        """Delete a panel user account. Returns False when it was already gone."""
        resp = self._request("DELETE", f"/users/{account_id}", allow_404=True)
        if resp is None:
            log.info("Provisioning account %s already deleted", account_id)
            return False
        log.info("Deleted provisioning account %s", account_id)
        return True

    def get_plan(self, plan_id: int) -> Plan:
        resp = self._request("GET", f"/packages/{plan_id}")
        data = resp.json().get("data", {})
        return Plan(
            plan_id=int(data.get("id", plan_id)),
            name=data.get("name", ""),
            price_monthly_cents=int(data["priceMonthly"]),
        )


# ── Singleton ─────────────────────────────────────────────────────────

_client: Optional[ProvisioningClient] = None


def get_provisioning_client() -> ProvisioningClient:
    global _client
    if _client is None:
        _client = ProvisioningClient()
    return _client
