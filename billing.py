# OzWallet Billing Processor
# Hourly: charge every due server one day of its plan, advance its
# next_bill_at, and escalate servers whose owner cannot pay.
#
#   - The charge and the date advance commit in one transaction; the
#     advance is guarded on the next_bill_at we read, so a rerun or a
#     concurrent worker can never charge the same day twice
#   - InsufficientFunds tries an auto top-up and retries the charge once
#   - 7 days of failed attempts -> overdue + immediate cancellation
#   - Frozen wallets are skipped; orphan cleanup owns them
#   - Every cycle starts with a ledger reconciliation pass

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from cancellations import CancellationMode, has_open_cancellation, request_cancellation
from db import get_engine, utcnow
from errors import CancellationConflict, InsufficientFunds, RunSummary, WalletFrozen, classify
from ledger import Applied, ChargeMeta, TxType, apply_in, get_wallet, reconcile_all
from processors import PeriodicTask
from servers import ServerBilling, advance_in, list_due, mark_overdue, record_failure
from topup import maybe_top_up, run_auto_topups

log = logging.getLogger("ozwallet")

BILLING_INTERVAL_SEC = float(os.environ.get("OZWALLET_BILLING_INTERVAL_SEC", "3600"))
BILLING_INITIAL_DELAY_SEC = float(os.environ.get("OZWALLET_BILLING_INITIAL_DELAY_SEC", "300"))


@dataclass
class BillingRunSummary(RunSummary):
    due: int = 0
    charged: int = 0
    charged_cents: int = 0
    topups: int = 0
    escalated: int = 0
    reconcile_mismatches: list = field(default_factory=list)


class AlreadyBilled(Exception):
    """The row was advanced by another worker between read and charge."""


# ── Charging ──────────────────────────────────────────────────────────


def charge_server(billing: ServerBilling, now: datetime, engine=None) -> Optional[Applied]:
    """Charge one day and advance the row, atomically.

    Returns None for a zero-cent day (the row still advances).
    Raises InsufficientFunds / WalletFrozen from the applier and
    AlreadyBilled when the row moved under us; nothing is committed then.
    """
    engine = engine or get_engine()
    amount = billing.next_charge_cents
    meta = ChargeMeta(
        server_id=billing.server_id,
        plan_id=billing.plan_id,
        period_day=billing.period_day,
    )
    with engine.transaction() as (conn, backend):
        applied = None
        if amount > 0:
            applied = apply_in(conn, backend, billing.owner_id, -amount, TxType.CHARGE,
                               meta, now=now)
        if not advance_in(conn, backend, billing, now):
            raise AlreadyBilled(billing.server_id)
    return applied


def escalate_overdue(billing: ServerBilling, now: datetime, engine=None) -> bool:
    """Move a server that has failed to pay for too long to overdue and queue its deletion."""
    mark_overdue(billing.server_id, now=now, engine=engine)
    if has_open_cancellation(billing.server_id, engine=engine):
        log.info("Server %s overdue; cancellation already open", billing.server_id)
        return False
    try:
        request_cancellation(
            billing.server_id, billing.owner_id, CancellationMode.IMMEDIATE,
            reason="Unpaid: wallet could not cover daily charges",
            server_name="Server (overdue)", now=now, engine=engine,
        )
    except CancellationConflict:
        log.info("Server %s overdue; cancellation raced in", billing.server_id)
        return False
    log.warning("SERVER ESCALATED %s owner=%s failed_attempts=%d since=%s",
                billing.server_id, billing.owner_id, billing.failed_attempts,
                billing.first_failed_at.isoformat() if billing.first_failed_at else "-")
    return True


def bill_server(billing: ServerBilling, now: datetime, summary: BillingRunSummary,
                gateway=None, engine=None, attempted: Optional[set] = None) -> str:
    """Run one due row through charge → top-up → retry → escalation.

    Returns the outcome class recorded in the run summary.
    """
    wallet = get_wallet(billing.owner_id, engine=engine)
    if wallet is None:
        log.warning("Server %s has no wallet for owner %s", billing.server_id, billing.owner_id)
        return "wallet_not_found"
    if wallet.frozen:
        log.debug("Skipping server %s: wallet %s frozen", billing.server_id, billing.owner_id)
        return "wallet_frozen"
    if wallet.on_hold:
        log.debug("Skipping server %s: wallet %s on audit hold",
                  billing.server_id, billing.owner_id)
        return "audit_hold"

    try:
        applied = charge_server(billing, now, engine=engine)
    except AlreadyBilled:
        return "already_billed"
    except InsufficientFunds as e:
        log.info("Charge for server %s short by %d cents", billing.server_id, e.shortfall_cents)
        topup = maybe_top_up(billing.owner_id, shortfall_cents=e.shortfall_cents,
                             gateway=gateway, now=now, engine=engine, attempted=attempted)
        if topup.success:
            summary.topups += 1
            try:
                applied = charge_server(billing, now, engine=engine)
            except InsufficientFunds:
                applied = None
            except AlreadyBilled:
                return "already_billed"
            else:
                return _charged(billing, applied, summary)

        failing = record_failure(billing.server_id, now=now, engine=engine)
        if failing.suspend_at is not None and now >= failing.suspend_at:
            if escalate_overdue(failing, now, engine=engine):
                summary.escalated += 1
        return "insufficient_funds"
    except WalletFrozen:
        return "wallet_frozen"

    return _charged(billing, applied, summary)


def _charged(billing: ServerBilling, applied: Optional[Applied],
             summary: BillingRunSummary) -> str:
    summary.charged += 1
    summary.charged_cents += billing.next_charge_cents
    log.info("CHARGED server=%s owner=%s cents=%d day=%d balance=%s",
             billing.server_id, billing.owner_id, billing.next_charge_cents,
             billing.period_day, applied.balance_cents if applied else "-")
    return "charged"


# ── Cycle ─────────────────────────────────────────────────────────────


def run_billing_cycle(now: Optional[datetime] = None, gateway=None, engine=None,
                      reconcile: bool = True) -> BillingRunSummary:
    """One billing tick over every due server, then the standalone top-up pass."""
    engine = engine or get_engine()
    now = now or utcnow()
    summary = BillingRunSummary(started_at=now)
    # Owners sent to the gateway this cycle; a failed top-up waits for the next tick
    attempted: set = set()

    if reconcile:
        check = reconcile_all(now=now, engine=engine)
        summary.reconcile_mismatches = check.mismatched
        if check.mismatched:
            summary.record("invariant_violation", len(check.mismatched))

    due = list_due(now, engine=engine)
    summary.due = len(due)
    for billing in due:
        try:
            outcome = bill_server(billing, now, summary, gateway=gateway, engine=engine,
                                  attempted=attempted)
        except Exception as e:
            outcome = classify(e)
            log.warning("Billing server %s failed (%s): %s", billing.server_id, outcome, e)
        summary.record(outcome)

    for result in run_auto_topups(gateway=gateway, now=now, engine=engine,
                                  attempted=attempted):
        if result.success:
            summary.topups += 1
        summary.record(f"topup_{result.outcome.value}")
        if result.error_class:
            summary.record(result.error_class)

    summary.finished_at = utcnow()
    log.info("Billing run: due=%d charged=%d cents=%d topups=%d escalated=%d %s",
             summary.due, summary.charged, summary.charged_cents, summary.topups,
             summary.escalated, summary.describe())
    return summary


def start_billing_processor(interval=None, initial_delay=None, callback=None):
    """Run the billing cycle hourly in a background thread, first run after 5 minutes."""
    task = PeriodicTask(
        "billing-processor",
        run_billing_cycle,
        interval if interval is not None else BILLING_INTERVAL_SEC,
        initial_delay=initial_delay if initial_delay is not None else BILLING_INITIAL_DELAY_SEC,
        callback=callback,
    )
    return task.start()
