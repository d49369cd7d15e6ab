# OzWallet Auto Top-Up Engine
# Charges a wallet's stored payment method when its balance runs low and
# credits the wallet only after the gateway confirms the charge.
#
# A failed gateway call yields no top-up this cycle. Nothing here retries;
# the billing processor's overdue escalation absorbs the failure.

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from db import encode_ts, get_engine, q, utcnow
from errors import InvariantViolation, WalletFrozen, WalletNotFound, classify
from ledger import (
    TopUpMeta,
    TxType,
    Wallet,
    apply_in,
    get_wallet,
    list_wallets,
    lock_wallet,
    transaction_for_event,
)
from payments import MAX_TOPUP_CENTS, MIN_TOPUP_CENTS, get_payment_gateway

log = logging.getLogger("ozwallet")


class TopUpOutcome(str, Enum):
    TOPPED_UP = "topped_up"
    NOT_ENABLED = "not_enabled"
    ABOVE_THRESHOLD = "above_threshold"
    NO_PAYMENT_METHOD = "no_payment_method"
    GATEWAY_FAILED = "gateway_failed"
    WALLET_FROZEN = "wallet_frozen"
    AUDIT_HOLD = "audit_hold"
    NO_WALLET = "no_wallet"
    ALREADY_ATTEMPTED = "already_attempted"
    ALREADY_CREDITED = "already_credited"
    ERROR = "error"


@dataclass
class TopUpResult:
    owner_id: str
    outcome: TopUpOutcome
    amount_cents: int = 0
    balance_cents: Optional[int] = None
    transaction_id: Optional[int] = None
    gateway_ref: str = ""
    error: str = ""
    error_class: str = ""

    @property
    def success(self) -> bool:
        return self.outcome == TopUpOutcome.TOPPED_UP

    def to_dict(self) -> dict:
        d = asdict(self)
        d["outcome"] = self.outcome.value
        d["success"] = self.success
        return d


def configure_auto_topup(owner_id: str, enabled: bool, threshold_cents: int = 0,
                         amount_cents: int = 0, payment_method_id: Optional[str] = None,
                         engine=None):
    """Set a wallet's auto top-up policy and (optionally) its stored method."""
    if enabled:
        if threshold_cents < 0:
            raise ValueError("threshold_cents cannot be negative")
        if not MIN_TOPUP_CENTS <= amount_cents <= MAX_TOPUP_CENTS:
            raise ValueError(
                f"amount_cents must be between {MIN_TOPUP_CENTS} and {MAX_TOPUP_CENTS}"
            )
    engine = engine or get_engine()
    with engine.transaction() as (conn, backend):
        wallet = lock_wallet(conn, backend, owner_id)
        if wallet.frozen:
            raise WalletFrozen(owner_id)
        conn.execute(
            q(
                """UPDATE wallets
                   SET auto_topup_enabled = ?, auto_topup_threshold_cents = ?,
                       auto_topup_amount_cents = ?,
                       auto_topup_payment_method_id = COALESCE(?, auto_topup_payment_method_id),
                       updated_at = ?
                   WHERE owner_id = ?""",
                backend,
            ),
            (bool(enabled), int(threshold_cents), int(amount_cents), payment_method_id,
             encode_ts(utcnow(), backend), owner_id),
        )
        row = conn.execute(
            q("SELECT * FROM wallets WHERE owner_id = ?", backend), (owner_id,)
        ).fetchone()
    log.info("AUTO TOPUP owner=%s enabled=%s threshold=%d amount=%d",
             owner_id, enabled, threshold_cents, amount_cents)
    return Wallet.from_row(row)


def topup_idempotency_key(owner_id: str, now: datetime) -> str:
    """One gateway charge per owner per billing hour."""
    return f"autotopup:{owner_id}:{now:%Y%m%d%H}"


def maybe_top_up(owner_id: str, shortfall_cents: int = 0, gateway=None,
                 now: Optional[datetime] = None, engine=None,
                 attempted: Optional[set] = None) -> TopUpResult:
    """Top up a wallet from its stored payment method if its policy calls for it.

    With shortfall_cents > 0 (a charge just failed) the amount is
    max(shortfall, configured amount) so the retried charge can succeed,
    and the threshold check is skipped since the need is already known.

    ``attempted`` is the set of owners already sent to the gateway this
    cycle; an owner in it is not charged again until the next cycle.
    """
    gateway = gateway or get_payment_gateway()
    engine = engine or get_engine()
    now = now or utcnow()
    wallet = get_wallet(owner_id, engine=engine)
    if wallet is None:
        return TopUpResult(owner_id, TopUpOutcome.NO_WALLET)
    if wallet.frozen:
        return TopUpResult(owner_id, TopUpOutcome.WALLET_FROZEN)
    if wallet.on_hold:
        return TopUpResult(owner_id, TopUpOutcome.AUDIT_HOLD)
    if not wallet.auto_topup_enabled or wallet.auto_topup_amount_cents <= 0:
        return TopUpResult(owner_id, TopUpOutcome.NOT_ENABLED)
    if shortfall_cents <= 0 and wallet.balance_cents >= wallet.auto_topup_threshold_cents:
        return TopUpResult(owner_id, TopUpOutcome.ABOVE_THRESHOLD,
                           balance_cents=wallet.balance_cents)
    if not wallet.payment_customer_id or not wallet.auto_topup_payment_method_id:
        return TopUpResult(owner_id, TopUpOutcome.NO_PAYMENT_METHOD)
    if attempted is not None:
        if owner_id in attempted:
            log.debug("Auto top-up for %s already attempted this cycle", owner_id)
            return TopUpResult(owner_id, TopUpOutcome.ALREADY_ATTEMPTED,
                               balance_cents=wallet.balance_cents)
        attempted.add(owner_id)

    amount = max(shortfall_cents, wallet.auto_topup_amount_cents)
    try:
        charge = gateway.charge_stored_method(
            wallet.payment_customer_id,
            wallet.auto_topup_payment_method_id,
            amount,
            idempotency_key=topup_idempotency_key(owner_id, now),
            description=f"Auto top-up for {owner_id}",
        )
    except Exception as e:
        log.warning("AUTO TOPUP FAILED owner=%s amount=%d: %s", owner_id, amount, e)
        return TopUpResult(owner_id, TopUpOutcome.GATEWAY_FAILED, amount_cents=amount,
                           error=str(e))
    if not charge.success:
        log.warning("AUTO TOPUP FAILED owner=%s amount=%d: %s", owner_id, amount, charge.error)
        return TopUpResult(owner_id, TopUpOutcome.GATEWAY_FAILED, amount_cents=amount,
                           gateway_ref=charge.gateway_ref, error=charge.error)

    meta = TopUpMeta(gateway_ref=charge.gateway_ref, shortfall_cents=max(0, shortfall_cents))
    try:
        with engine.transaction() as (conn, backend):
            existing = (transaction_for_event(conn, backend, charge.gateway_ref)
                        if charge.gateway_ref else None)
            if existing is not None:
                # Replayed idempotency key: the gateway returned a charge already credited
                log.info("Auto top-up %s already credited as tx %d", charge.gateway_ref, existing)
                return TopUpResult(owner_id, TopUpOutcome.ALREADY_CREDITED,
                                   amount_cents=amount, transaction_id=existing,
                                   gateway_ref=charge.gateway_ref)
            applied = apply_in(conn, backend, owner_id, amount, TxType.AUTO_TOPUP, meta,
                               now=now, gateway_event_id=charge.gateway_ref or None)
    except (WalletFrozen, InvariantViolation, WalletNotFound) as e:
        # Money moved at the gateway but the wallet refused the credit
        log.error("AUTO TOPUP NOT CREDITED owner=%s amount=%d ref=%s: %s; refund manually",
                  owner_id, amount, charge.gateway_ref, e)
        outcome = (TopUpOutcome.WALLET_FROZEN if isinstance(e, WalletFrozen)
                   else TopUpOutcome.AUDIT_HOLD if isinstance(e, InvariantViolation)
                   else TopUpOutcome.NO_WALLET)
        return TopUpResult(owner_id, outcome, amount_cents=amount,
                           gateway_ref=charge.gateway_ref, error=str(e))

    return TopUpResult(owner_id, TopUpOutcome.TOPPED_UP, amount_cents=amount,
                       balance_cents=applied.balance_cents,
                       transaction_id=applied.transaction_id,
                       gateway_ref=charge.gateway_ref)


def run_auto_topups(gateway=None, now: Optional[datetime] = None, engine=None,
                    attempted: Optional[set] = None) -> list[TopUpResult]:
    """Top up every active wallet that sits below its threshold.

    A wallet that fails is reported with outcome ``error`` and the pass
    moves on to the next one.
    """
    results = []
    for wallet in list_wallets(include_frozen=False, engine=engine):
        if (not wallet.auto_topup_enabled or wallet.on_hold
                or wallet.balance_cents >= wallet.auto_topup_threshold_cents):
            continue
        try:
            result = maybe_top_up(wallet.owner_id, gateway=gateway, now=now, engine=engine,
                                  attempted=attempted)
        except Exception as e:
            log.warning("Auto top-up for %s failed: %s", wallet.owner_id, e)
            result = TopUpResult(wallet.owner_id, TopUpOutcome.ERROR, error=str(e),
                                 error_class=classify(e))
        results.append(result)
    return results
