# OzWallet Server Billing Tracker
# One server_billing row per provisioned server. The billing processor
# charges a daily slice of the monthly price and advances next_bill_at;
# repeated failures escalate the server to overdue.
#
# Daily charge rounding: monthly // 30 on period days 0-28, and the
# remainder on day 29, so each 30-day period sums to the monthly price.

import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from db import decode_ts, encode_ts, get_engine, q, utcnow
from errors import WalletNotFound

log = logging.getLogger("ozwallet")

OVERDUE_AFTER_DAYS = int(os.environ.get("OZWALLET_OVERDUE_AFTER_DAYS", "7"))

PERIOD_DAYS = 30
BILLING_STEP = timedelta(days=1)


# ── Charge Schedule ───────────────────────────────────────────────────


def daily_charge(monthly_price_cents: int, period_day: int) -> int:
    """Charge for one day of a 30-day period. Day 29 absorbs the remainder."""
    if monthly_price_cents < 0:
        raise ValueError("monthly price cannot be negative")
    if not 0 <= period_day < PERIOD_DAYS:
        raise ValueError(f"period_day must be in [0, {PERIOD_DAYS}), got {period_day}")
    base = monthly_price_cents // PERIOD_DAYS
    if period_day == PERIOD_DAYS - 1:
        return monthly_price_cents - base * (PERIOD_DAYS - 1)
    return base


# ── Records ───────────────────────────────────────────────────────────

class BillingStatus(str, Enum):
    ACTIVE = "active"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


@dataclass
class ServerBilling:
    server_id: str
    owner_id: str
    plan_id: int
    monthly_price_cents: int
    status: BillingStatus = BillingStatus.ACTIVE
    next_bill_at: Optional[datetime] = None
    suspend_at: Optional[datetime] = None
    auto_renew: bool = True
    deployed_at: Optional[datetime] = None
    period_day: int = 0
    failed_attempts: int = 0
    first_failed_at: Optional[datetime] = None
    last_billed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def next_charge_cents(self) -> int:
        return daily_charge(self.monthly_price_cents, self.period_day)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        for key, value in d.items():
            if isinstance(value, datetime):
                d[key] = value.isoformat()
        d["next_charge_cents"] = self.next_charge_cents
        return d

    @classmethod
    def from_row(cls, row) -> "ServerBilling":
        return cls(
            server_id=row["server_id"],
            owner_id=row["owner_id"],
            plan_id=int(row["plan_id"]),
            monthly_price_cents=int(row["monthly_price_cents"]),
            status=BillingStatus(row["status"]),
            next_bill_at=decode_ts(row["next_bill_at"]),
            suspend_at=decode_ts(row["suspend_at"]),
            auto_renew=bool(row["auto_renew"]),
            deployed_at=decode_ts(row["deployed_at"]),
            period_day=int(row["period_day"]),
            failed_attempts=int(row["failed_attempts"]),
            first_failed_at=decode_ts(row["first_failed_at"]),
            last_billed_at=decode_ts(row["last_billed_at"]),
            created_at=decode_ts(row["created_at"]),
            updated_at=decode_ts(row["updated_at"]),
        )


# ── Lifecycle ─────────────────────────────────────────────────────────


def create_server_billing(server_id: str, owner_id: str, plan_id: int,
                          monthly_price_cents: int,
                          deployed_at: Optional[datetime] = None,
                          next_bill_at: Optional[datetime] = None,
                          auto_renew: bool = True, engine=None) -> ServerBilling:
    """Start billing a newly provisioned server.

    The first daily charge is due at deploy time unless next_bill_at is given.
    Re-registering a known server is a no-op and returns the existing row.
    """
    if monthly_price_cents < 0:
        raise ValueError("monthly price cannot be negative")
    engine = engine or get_engine()
    now = utcnow()
    deployed_at = deployed_at or now
    next_bill_at = next_bill_at or deployed_at
    with engine.transaction() as (conn, backend):
        conn.execute(
            q(
                """INSERT INTO server_billing
                   (server_id, owner_id, plan_id, monthly_price_cents, status,
                    next_bill_at, auto_renew, deployed_at, period_day,
                    failed_attempts, created_at, updated_at)
                   VALUES (?, ?, ?, ?, 'active', ?, ?, ?, 0, 0, ?, ?)
                   ON CONFLICT(server_id) DO NOTHING""",
                backend,
            ),
            (server_id, owner_id, int(plan_id), monthly_price_cents,
             encode_ts(next_bill_at, backend), bool(auto_renew),
             encode_ts(deployed_at, backend),
             encode_ts(now, backend), encode_ts(now, backend)),
        )
    billing = get_server_billing(server_id, engine=engine)
    log.info("SERVER BILLING %s owner=%s plan=%s monthly=%d next=%s",
             server_id, owner_id, plan_id, billing.monthly_price_cents,
             billing.next_bill_at.isoformat())
    return billing


def backfill_server_billing(owner_id: str, provisioning=None,
                            now: Optional[datetime] = None, engine=None) -> list[ServerBilling]:
    """Create billing rows for the owner's servers that have none.

    Prices come from the provisioning system's plan data. The first charge
    for a backfilled server is one day after the backfill.
    """
    from ledger import get_wallet
    from provisioning import get_provisioning_client

    engine = engine or get_engine()
    provisioning = provisioning or get_provisioning_client()
    now = now or utcnow()

    wallet = get_wallet(owner_id, engine=engine)
    if wallet is None:
        raise WalletNotFound(owner_id)
    account_id = wallet.provisioning_user_id or owner_id

    created = []
    for server in provisioning.list_servers(account_id):
        if get_server_billing(server.server_id, engine=engine) is not None:
            continue
        plan = provisioning.get_plan(server.plan_id)
        created.append(create_server_billing(
            server.server_id, owner_id, server.plan_id, plan.price_monthly_cents,
            deployed_at=server.created_at or now,
            next_bill_at=now + BILLING_STEP,
            engine=engine,
        ))
    if created:
        log.info("BACKFILL owner=%s created=%d", owner_id, len(created))
    return created


def get_server_billing(server_id: str, engine=None) -> Optional[ServerBilling]:
    engine = engine or get_engine()
    with engine.connection() as (conn, backend):
        row = conn.execute(
            q("SELECT * FROM server_billing WHERE server_id = ?", backend), (server_id,)
        ).fetchone()
    return ServerBilling.from_row(row) if row else None


def list_server_billing(owner_id: Optional[str] = None, engine=None) -> list[ServerBilling]:
    engine = engine or get_engine()
    with engine.connection() as (conn, backend):
        if owner_id:
            rows = conn.execute(
                q("SELECT * FROM server_billing WHERE owner_id = ? ORDER BY next_bill_at", backend),
                (owner_id,),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM server_billing ORDER BY next_bill_at").fetchall()
    return [ServerBilling.from_row(r) for r in rows]


def list_due(now: Optional[datetime] = None, limit: Optional[int] = None,
             engine=None) -> list[ServerBilling]:
    """Active auto-renewing rows whose next charge is due, oldest first."""
    engine = engine or get_engine()
    now = now or utcnow()
    sql = (
        "SELECT * FROM server_billing "
        "WHERE status = 'active' AND auto_renew = ? AND next_bill_at <= ? "
        "ORDER BY next_bill_at ASC, server_id ASC"
    )
    params: tuple = ()
    with engine.connection() as (conn, backend):
        params = (True, encode_ts(now, backend))
        if limit is not None:
            sql += " LIMIT ?"
            params = params + (int(limit),)
        rows = conn.execute(q(sql, backend), params).fetchall()
    return [ServerBilling.from_row(r) for r in rows]


# ── Charge Outcomes ───────────────────────────────────────────────────


def advance_in(conn, backend, billing: ServerBilling, now: datetime) -> bool:
    """Advance a row past the day just charged, inside the charge's transaction.

    Guarded on the next_bill_at value the caller read, so a row another
    worker already advanced is left alone and False is returned.
    """
    cur = conn.execute(
        q(
            """UPDATE server_billing
               SET next_bill_at = ?, period_day = ?, failed_attempts = 0,
                   first_failed_at = NULL, suspend_at = NULL,
                   last_billed_at = ?, updated_at = ?
               WHERE server_id = ? AND next_bill_at = ? AND status = 'active'""",
            backend,
        ),
        (
            encode_ts(billing.next_bill_at + BILLING_STEP, backend),
            (billing.period_day + 1) % PERIOD_DAYS,
            encode_ts(now, backend),
            encode_ts(now, backend),
            billing.server_id,
            encode_ts(billing.next_bill_at, backend),
        ),
    )
    return cur.rowcount == 1


def record_failure(server_id: str, now: Optional[datetime] = None,
                   engine=None) -> ServerBilling:
    """Count a failed charge attempt and set the overdue deadline for the streak."""
    engine = engine or get_engine()
    now = now or utcnow()
    with engine.transaction() as (conn, backend):
        row = conn.execute(
            q("SELECT * FROM server_billing WHERE server_id = ?", backend), (server_id,)
        ).fetchone()
        billing = ServerBilling.from_row(row)
        first_failed_at = billing.first_failed_at or now
        conn.execute(
            q(
                """UPDATE server_billing
                   SET failed_attempts = failed_attempts + 1,
                       first_failed_at = ?, suspend_at = ?, updated_at = ?
                   WHERE server_id = ?""",
                backend,
            ),
            (
                encode_ts(first_failed_at, backend),
                encode_ts(first_failed_at + timedelta(days=OVERDUE_AFTER_DAYS), backend),
                encode_ts(now, backend),
                server_id,
            ),
        )
    return get_server_billing(server_id, engine=engine)


def set_status_in(conn, backend, server_id: str, status: BillingStatus, now: datetime) -> bool:
    cur = conn.execute(
        q(
            "UPDATE server_billing SET status = ?, updated_at = ? "
            "WHERE server_id = ? AND status != ?",
            backend,
        ),
        (status.value, encode_ts(now, backend), server_id, status.value),
    )
    return cur.rowcount > 0


def _set_status(server_id: str, status: BillingStatus, now: datetime, engine) -> bool:
    engine = engine or get_engine()
    with engine.transaction() as (conn, backend):
        return set_status_in(conn, backend, server_id, status, now)


def mark_overdue(server_id: str, now: Optional[datetime] = None, engine=None) -> bool:
    changed = _set_status(server_id, BillingStatus.OVERDUE, now or utcnow(), engine)
    if changed:
        log.warning("SERVER OVERDUE %s", server_id)
    return changed


def mark_cancelled(server_id: str, now: Optional[datetime] = None, engine=None) -> bool:
    """Stop billing a deleted server. Unknown servers are ignored."""
    changed = _set_status(server_id, BillingStatus.CANCELLED, now or utcnow(), engine)
    if changed:
        log.info("SERVER BILLING CANCELLED %s", server_id)
    return changed


# ── Deploy Orders ─────────────────────────────────────────────────────

class DeployOrderStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Orders that have not produced a running server yet
PENDING_ORDER_STATUSES = (
    DeployOrderStatus.PENDING_PAYMENT,
    DeployOrderStatus.PAID,
    DeployOrderStatus.PROVISIONING,
)


def create_deploy_order(owner_id: str, plan_id: int, price_cents: int, engine=None) -> dict:
    """Record a server purchase awaiting payment. Refused for frozen wallets."""
    from ledger import require_unfrozen

    engine = engine or get_engine()
    require_unfrozen(owner_id, engine=engine)
    now = utcnow()
    with engine.transaction() as (conn, backend):
        row = conn.execute(
            q(
                """INSERT INTO deploy_orders
                   (owner_id, plan_id, price_cents, status, created_at, updated_at)
                   VALUES (?, ?, ?, 'pending_payment', ?, ?)
                   RETURNING id""",
                backend,
            ),
            (owner_id, int(plan_id), int(price_cents),
             encode_ts(now, backend), encode_ts(now, backend)),
        ).fetchone()
    return {"order_id": int(row["id"]), "owner_id": owner_id, "plan_id": int(plan_id),
            "price_cents": int(price_cents), "status": DeployOrderStatus.PENDING_PAYMENT.value}


def list_deploy_orders(owner_id: str, engine=None) -> list[dict]:
    engine = engine or get_engine()
    with engine.connection() as (conn, backend):
        rows = conn.execute(
            q("SELECT * FROM deploy_orders WHERE owner_id = ? ORDER BY id", backend),
            (owner_id,),
        ).fetchall()
    return [
        {
            "order_id": int(r["id"]),
            "owner_id": r["owner_id"],
            "plan_id": int(r["plan_id"]),
            "price_cents": int(r["price_cents"]),
            "status": r["status"],
            "server_id": r["server_id"],
        }
        for r in rows
    ]


def cancel_pending_orders(owner_id: str, now: Optional[datetime] = None, engine=None) -> int:
    """Cancel the owner's orders that never reached a running server."""
    engine = engine or get_engine()
    now = now or utcnow()
    statuses = [s.value for s in PENDING_ORDER_STATUSES]
    placeholders = ", ".join("?" for _ in statuses)
    with engine.transaction() as (conn, backend):
        cur = conn.execute(
            q(
                f"UPDATE deploy_orders SET status = 'cancelled', updated_at = ? "
                f"WHERE owner_id = ? AND status IN ({placeholders})",
                backend,
            ),
            (encode_ts(now, backend), owner_id, *statuses),
        )
        count = cur.rowcount
    if count:
        log.info("DEPLOY ORDERS CANCELLED owner=%s count=%d", owner_id, count)
    return count
