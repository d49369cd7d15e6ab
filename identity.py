# OzWallet Identity Provider Client
# Auth0-style management API: does an owner still exist upstream?
#
# A 404 is the only answer that means "deleted". Any other failure raises
# ExternalServiceUnavailable so an outage never looks like a deletion.

import logging
import os
import threading
import time
from typing import Optional
from urllib.parse import quote

import requests

from errors import ExternalServiceUnavailable

log = logging.getLogger("ozwallet.identity")

IDENTITY_DOMAIN = os.environ.get("OZWALLET_IDENTITY_DOMAIN", "")
IDENTITY_CLIENT_ID = os.environ.get("OZWALLET_IDENTITY_CLIENT_ID", "")
IDENTITY_CLIENT_SECRET = os.environ.get("OZWALLET_IDENTITY_CLIENT_SECRET", "")
EXTERNAL_TIMEOUT_SEC = float(os.environ.get("OZWALLET_EXTERNAL_TIMEOUT_SEC", "10"))

EXISTS_CACHE_TTL_SEC = 300
NOT_EXISTS_CACHE_TTL_SEC = 60

# Refresh the management token this long before it expires
TOKEN_EXPIRY_MARGIN_SEC = 60


class IdentityClient:
    """Checks user existence against the identity provider's management API."""

    service = "identity"

    def __init__(self, domain: Optional[str] = None, client_id: Optional[str] = None,
                 client_secret: Optional[str] = None, timeout: Optional[float] = None,
                 session=None, clock=time.monotonic):
        domain = domain if domain is not None else IDENTITY_DOMAIN
        if domain and not domain.startswith("http"):
            domain = f"https://{domain}"
        self.base_url = domain.rstrip("/")
        self.client_id = client_id if client_id is not None else IDENTITY_CLIENT_ID
        self.client_secret = (
            client_secret if client_secret is not None else IDENTITY_CLIENT_SECRET
        )
        self.timeout = timeout if timeout is not None else EXTERNAL_TIMEOUT_SEC
        self.session = session or requests.Session()
        self._clock = clock
        self._lock = threading.Lock()
        self._token = ""
        self._token_expiry = 0.0
        self._exists_cache: dict[str, tuple[bool, float]] = {}

    def _management_token(self) -> str:
        with self._lock:
            if self._token and self._clock() < self._token_expiry:
                return self._token
        try:
            resp = self.session.post(
                f"{self.base_url}/oauth/token",
                json={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "audience": f"{self.base_url}/api/v2/",
                },
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as e:
            log.warning("Failed to get management token: %s", e)
            raise ExternalServiceUnavailable(self.service, str(e)) from e
        with self._lock:
            self._token = data["access_token"]
            self._token_expiry = (
                self._clock() + int(data.get("expires_in", 0)) - TOKEN_EXPIRY_MARGIN_SEC
            )
            return self._token

    def user_exists(self, owner_id: str) -> bool:
        """True unless the identity provider answers 404 for this user."""
        if not self.base_url:
            raise ExternalServiceUnavailable(self.service, "OZWALLET_IDENTITY_DOMAIN not set")

        now = self._clock()
        with self._lock:
            cached = self._exists_cache.get(owner_id)
        if cached:
            exists, checked_at = cached
            ttl = EXISTS_CACHE_TTL_SEC if exists else NOT_EXISTS_CACHE_TTL_SEC
            if now - checked_at < ttl:
                return exists

        token = self._management_token()
        try:
            resp = self.session.get(
                f"{self.base_url}/api/v2/users/{quote(owner_id, safe='')}",
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            log.warning("User existence check for %s failed: %s", owner_id, e)
            raise ExternalServiceUnavailable(self.service, str(e)) from e

        if resp.status_code == 404:
            log.info("Identity user %s not found (deleted)", owner_id)
            exists = False
        elif resp.ok:
            exists = True
        else:
            raise ExternalServiceUnavailable(self.service, f"HTTP {resp.status_code}")

        with self._lock:
            self._exists_cache[owner_id] = (exists, self._clock())
        return exists

    def invalidate(self, owner_id: str) -> None:
        with self._lock:
            self._exists_cache.pop(owner_id, None)


# ── Singleton ─────────────────────────────────────────────────────────

_client: Optional[IdentityClient] = None


def get_identity_client() -> IdentityClient:
    global _client
    if _client is None:
        _client = IdentityClient()
    return _client
