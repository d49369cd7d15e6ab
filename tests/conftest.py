"""Shared pytest configuration for the OzWallet test suite.

Ensures the project root is on sys.path so test files can import source
modules (ledger, billing, api, etc.) directly, points every test at its own
SQLite file, and provides in-memory stand-ins for the three external
services.
"""

import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to sys.path so `import ledger`, `from api import app`, etc. work
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# Module-level config is read at import time
_tmp_ctx = tempfile.TemporaryDirectory(prefix="ozwallet_test_")
os.environ["OZWALLET_ENV"] = "test"
os.environ["OZWALLET_PROCESSORS_ENABLED"] = "0"
os.environ["OZWALLET_DB_BACKEND"] = "sqlite"
os.environ["OZWALLET_LOG_FILE"] = os.path.join(_tmp_ctx.name, "ozwallet.log")
os.environ["OZWALLET_DB_PATH"] = os.path.join(_tmp_ctx.name, "default.db")
os.environ.setdefault("OZWALLET_API_TOKEN", "")
os.environ.setdefault("OZWALLET_ACTOR", "pytest")

import db  # noqa: E402
import identity  # noqa: E402
import payments  # noqa: E402
import provisioning  # noqa: E402
from errors import ExternalServiceUnavailable  # noqa: E402
from payments import ChargeResult  # noqa: E402
from provisioning import Plan, ProvisionedServer  # noqa: E402

T0 = datetime(2026, 3, 1, 0, 0, tzinfo=timezone.utc)


# ── Fakes ─────────────────────────────────────────────────────────────


class FakeProvisioning:
    """In-memory provisioning panel."""

    def __init__(self, plans=None):
        self.servers = {}             # server_id -> ProvisionedServer
        self.plans = plans or {1: 3000}
        self.deleted = []
        self.deleted_users = []
        self.fail_with = None         # Exception raised by every call when set

    def add_server(self, server_id, account_id, plan_id=1, created_at=None):
        self.servers[server_id] = ProvisionedServer(
            server_id=server_id, account_id=account_id, name=f"srv-{server_id}",
            plan_id=plan_id, created_at=created_at,
        )

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    def list_servers(self, account_id):
        self._check()
        return [s for s in self.servers.values() if s.account_id == account_id]

    def server_exists(self, server_id):
        self._check()
        return server_id in self.servers

    def delete_server(self, server_id):
        self._check()
        if self.servers.pop(server_id, None) is None:
            return False
        self.deleted.append(server_id)
        return True

    def delete_user(self, account_id):
        self._check()
        if account_id in self.deleted_users:
            return False
        self.deleted_users.append(account_id)
        return True

    def get_plan(self, plan_id):
        self._check()
        return Plan(plan_id=plan_id, name=f"plan-{plan_id}",
                    price_monthly_cents=self.plans[plan_id])


class FakeGateway:
    """Payment gateway that records charges and customer deletions."""

    def __init__(self, succeed=True):
        self.succeed = succeed
        self.charges = []
        self.deleted_customers = []
        self.fail_delete_with = None
        self.raise_for = {}           # customer_id -> Exception raised by charges
        self.idempotency_keys = []

    def charge_stored_method(self, customer_id, payment_method_id, amount_cents,
                             idempotency_key=None, description=""):
        self.charges.append((customer_id, payment_method_id, amount_cents))
        self.idempotency_keys.append(idempotency_key)
        if customer_id in self.raise_for:
            raise self.raise_for[customer_id]
        if not self.succeed:
            return ChargeResult(False, error="card_declined")
        return ChargeResult(True, gateway_ref=f"pi_test_{len(self.charges)}")

    def delete_customer(self, customer_id):
        if self.fail_delete_with is not None:
            raise self.fail_delete_with
        self.deleted_customers.append(customer_id)
        return True


class FakeIdentity:
    """Identity provider where every owner exists unless listed as deleted."""

    def __init__(self, deleted=(), fail_for=()):
        self.deleted = set(deleted)
        self.fail_for = set(fail_for)
        self.checked = []
        self.invalidated = []

    def user_exists(self, owner_id):
        self.checked.append(owner_id)
        if owner_id in self.fail_for:
            raise ExternalServiceUnavailable("identity", "HTTP 503")
        return owner_id not in self.deleted

    def invalidate(self, owner_id):
        self.invalidated.append(owner_id)


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Fresh SQLite database per test."""
    monkeypatch.setenv("OZWALLET_DB_PATH", str(tmp_path / "ozwallet.db"))
    db.reset_engine()
    yield str(tmp_path / "ozwallet.db")
    db.reset_engine()


@pytest.fixture
def fake_provisioning(monkeypatch):
    fake = FakeProvisioning()
    monkeypatch.setattr(provisioning, "_client", fake)
    return fake


@pytest.fixture
def fake_gateway(monkeypatch):
    fake = FakeGateway()
    monkeypatch.setattr(payments, "_gateway", fake)
    return fake


@pytest.fixture
def fake_identity(monkeypatch):
    fake = FakeIdentity()
    monkeypatch.setattr(identity, "_client", fake)
    return fake
