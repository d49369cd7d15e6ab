# OzWallet Ledger: prepaid wallets and their append-only transaction history.
#
# The wallet row caches the balance; wallet_transactions is the truth.
# Every balance change goes through apply()/apply_in(), which locks the
# wallet row, appends exactly one transaction and updates the cached
# balance in the same database transaction.
#
# Frozen wallets (deleted_at set) accept only settlement transactions.
# Wallets on audit hold (ledger replay mismatch) accept no automated
# transactions until an operator clears the hold.

import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import NamedTuple, Optional

from db import decode_json, decode_ts, encode_json, encode_ts, for_update, get_engine, q, utcnow
from errors import InsufficientFunds, InvariantViolation, WalletFrozen, WalletNotFound

log = logging.getLogger("ozwallet")


# ── Transaction Types ─────────────────────────────────────────────────

class TxType(str, Enum):
    CHARGE = "charge"             # Daily server charge (debit)
    TOPUP = "topup"               # Customer-initiated payment (credit)
    ADJUSTMENT = "adjustment"     # Operator credit/debit/set-balance
    REFUND = "refund"             # Money returned to the wallet (credit)
    AUTO_TOPUP = "auto_topup"     # Stored-method top-up (credit)
    SETTLEMENT = "settlement"     # Final settlement of a frozen wallet


CREDIT_ONLY_TYPES = frozenset({TxType.TOPUP, TxType.REFUND, TxType.AUTO_TOPUP})
DEBIT_ONLY_TYPES = frozenset({TxType.CHARGE})

# Types produced by background processors; blocked while a wallet is on audit hold
AUTOMATED_TYPES = frozenset({TxType.CHARGE, TxType.AUTO_TOPUP})

# The only type a frozen wallet accepts
TERMINAL_TYPES = frozenset({TxType.SETTLEMENT})


# ── Metadata Payloads ─────────────────────────────────────────────────
# The structure of a transaction's metadata is fixed by its type.


class _Meta:
    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict):
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class ChargeMeta(_Meta):
    server_id: str
    plan_id: Optional[int] = None
    period_day: int = 0


@dataclass
class TopUpMeta(_Meta):
    gateway_ref: str = ""         # Payment intent / checkout session id
    session_id: str = ""
    shortfall_cents: int = 0      # Set when the top-up covered a failed charge


@dataclass
class AdjustmentMeta(_Meta):
    reason: str
    actor: str
    action: str = "credit"        # credit, debit, set_balance
    previous_balance_cents: Optional[int] = None
    new_balance_cents: Optional[int] = None


@dataclass
class RefundMeta(_Meta):
    reason: str
    server_id: str = ""
    gateway_ref: str = ""


@dataclass
class SettlementMeta(_Meta):
    reason: str
    actor: str


META_TYPES = {
    TxType.CHARGE: ChargeMeta,
    TxType.TOPUP: TopUpMeta,
    TxType.ADJUSTMENT: AdjustmentMeta,
    TxType.REFUND: RefundMeta,
    TxType.AUTO_TOPUP: TopUpMeta,
    TxType.SETTLEMENT: SettlementMeta,
}


# ── Records ───────────────────────────────────────────────────────────


def _iso(d: dict) -> dict:
    return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in d.items()}


@dataclass
class Wallet:
    owner_id: str
    balance_cents: int = 0
    payment_customer_id: Optional[str] = None
    provisioning_user_id: Optional[str] = None
    auto_topup_enabled: bool = False
    auto_topup_threshold_cents: int = 0
    auto_topup_amount_cents: int = 0
    auto_topup_payment_method_id: Optional[str] = None
    audit_hold_at: Optional[datetime] = None
    audit_hold_reason: Optional[str] = None
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def frozen(self) -> bool:
        return self.deleted_at is not None

    @property
    def on_hold(self) -> bool:
        return self.audit_hold_at is not None

    def to_dict(self) -> dict:
        d = _iso(asdict(self))
        d["frozen"] = self.frozen
        d["on_hold"] = self.on_hold
        return d

    @classmethod
    def from_row(cls, row) -> "Wallet":
        return cls(
            owner_id=row["owner_id"],
            balance_cents=int(row["balance_cents"]),
            payment_customer_id=row["payment_customer_id"],
            provisioning_user_id=row["provisioning_user_id"],
            auto_topup_enabled=bool(row["auto_topup_enabled"]),
            auto_topup_threshold_cents=int(row["auto_topup_threshold_cents"]),
            auto_topup_amount_cents=int(row["auto_topup_amount_cents"]),
            auto_topup_payment_method_id=row["auto_topup_payment_method_id"],
            audit_hold_at=decode_ts(row["audit_hold_at"]),
            audit_hold_reason=row["audit_hold_reason"],
            deleted_at=decode_ts(row["deleted_at"]),
            created_at=decode_ts(row["created_at"]),
            updated_at=decode_ts(row["updated_at"]),
        )


@dataclass
class WalletTransaction:
    id: int
    owner_id: str
    amount_cents: int
    type: TxType
    metadata: _Meta
    created_at: datetime
    gateway_event_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "amount_cents": self.amount_cents,
            "type": self.type.value,
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "gateway_event_id": self.gateway_event_id,
        }

    @classmethod
    def from_row(cls, row) -> "WalletTransaction":
        tx_type = TxType(row["type"])
        return cls(
            id=int(row["id"]),
            owner_id=row["owner_id"],
            amount_cents=int(row["amount_cents"]),
            type=tx_type,
            metadata=META_TYPES[tx_type].from_dict(decode_json(row["metadata"])),
            created_at=decode_ts(row["created_at"]),
            gateway_event_id=row["gateway_event_id"],
        )


class Applied(NamedTuple):
    balance_cents: int
    transaction_id: int


# ── Freeze Gate ───────────────────────────────────────────────────────


class AuditHold(InvariantViolation):
    """Automated mutation refused because the wallet is on audit hold."""

    def __init__(self, wallet: Wallet):
        super().__init__(
            wallet.owner_id, wallet.balance_cents, wallet.balance_cents,
            detail=f"on audit hold since {wallet.audit_hold_at}: {wallet.audit_hold_reason}",
        )


def guard_money_movement(wallet: Wallet, tx_type: TxType) -> None:
    """Single policy point for whether a wallet may take a new transaction."""
    if wallet.frozen and tx_type not in TERMINAL_TYPES:
        raise WalletFrozen(wallet.owner_id)
    if wallet.on_hold and tx_type in AUTOMATED_TYPES:
        raise AuditHold(wallet)


def is_frozen(owner_id: str, engine=None) -> bool:
    """True once the wallet's external payment linkage is gone."""
    wallet = get_wallet(owner_id, engine=engine)
    return bool(wallet and wallet.frozen)


def require_unfrozen(owner_id: str, engine=None) -> Wallet:
    """Gate for request-driven money-moving or provisioning operations."""
    wallet = get_wallet(owner_id, engine=engine)
    if wallet is None:
        raise WalletNotFound(owner_id)
    if wallet.frozen:
        raise WalletFrozen(owner_id)
    return wallet


# ── Transaction Applier ───────────────────────────────────────────────


def _validate(amount_cents, tx_type, meta):
    if not isinstance(amount_cents, int) or isinstance(amount_cents, bool):
        raise TypeError(f"amount_cents must be int, got {type(amount_cents).__name__}")
    expected = META_TYPES[tx_type]
    if not isinstance(meta, expected):
        raise TypeError(
            f"{tx_type.value} transactions take {expected.__name__}, "
            f"got {type(meta).__name__}"
        )
    if tx_type in CREDIT_ONLY_TYPES and amount_cents <= 0:
        raise ValueError(f"{tx_type.value} amount must be positive")
    if tx_type in DEBIT_ONLY_TYPES and amount_cents >= 0:
        raise ValueError(f"{tx_type.value} amount must be negative")


def lock_wallet(conn, backend, owner_id: str) -> Wallet:
    """Read a wallet row and hold its write lock until the transaction ends."""
    row = conn.execute(
        q("SELECT * FROM wallets WHERE owner_id = ?", backend) + for_update(backend),
        (owner_id,),
    ).fetchone()
    if not row:
        raise WalletNotFound(owner_id)
    return Wallet.from_row(row)


def apply_in(conn, backend, owner_id: str, amount_cents: int, tx_type,
             meta, now: Optional[datetime] = None,
             gateway_event_id: Optional[str] = None) -> Applied:
    """Apply a signed delta inside the caller's open transaction.

    The caller owns the transaction; any exception raised here must roll it
    back, which leaves neither a transaction row nor a balance change.
    """
    tx_type = TxType(tx_type)
    _validate(amount_cents, tx_type, meta)
    now = now or utcnow()

    wallet = lock_wallet(conn, backend, owner_id)
    guard_money_movement(wallet, tx_type)

    new_balance = wallet.balance_cents + amount_cents
    if amount_cents < 0 and new_balance < 0:
        raise InsufficientFunds(owner_id, wallet.balance_cents, -amount_cents)

    row = conn.execute(
        q(
            """INSERT INTO wallet_transactions
               (owner_id, amount_cents, type, metadata, gateway_event_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?)
               RETURNING id""",
            backend,
        ),
        (owner_id, amount_cents, tx_type.value,
         encode_json(meta.to_dict(), backend), gateway_event_id,
         encode_ts(now, backend)),
    ).fetchone()
    tx_id = int(row["id"])

    conn.execute(
        q("UPDATE wallets SET balance_cents = ?, updated_at = ? WHERE owner_id = ?", backend),
        (new_balance, encode_ts(now, backend), owner_id),
    )

    log.info("APPLY owner=%s type=%s delta=%+d balance=%d tx=%d",
             owner_id, tx_type.value, amount_cents, new_balance, tx_id)
    return Applied(new_balance, tx_id)


def apply(owner_id: str, amount_cents: int, tx_type, meta,
          now: Optional[datetime] = None,
          gateway_event_id: Optional[str] = None, engine=None) -> Applied:
    """Apply a signed delta to a wallet and append its transaction, atomically.

    Raises InsufficientFunds when a debit would drive the balance negative,
    WalletFrozen when the wallet is frozen and the type is not settlement,
    AuditHold for automated types on a held wallet, WalletNotFound otherwise.

    Call this only after any external money movement has succeeded.
    """
    engine = engine or get_engine()
    with engine.transaction() as (conn, backend):
        return apply_in(conn, backend, owner_id, amount_cents, tx_type, meta,
                        now=now, gateway_event_id=gateway_event_id)


# ── Operator Adjustments ──────────────────────────────────────────────


def adjust(owner_id: str, amount_cents: int, actor: str, reason: str,
           now: Optional[datetime] = None, engine=None) -> Applied:
    """Credit (positive) or debit (negative) a wallet as an operator."""
    if amount_cents == 0:
        raise ValueError("Adjustment amount must be non-zero")
    meta = AdjustmentMeta(
        reason=reason or "Admin adjustment",
        actor=actor,
        action="credit" if amount_cents > 0 else "debit",
    )
    return apply(owner_id, amount_cents, TxType.ADJUSTMENT, meta, now=now, engine=engine)


def set_balance(owner_id: str, target_cents: int, actor: str, reason: str,
                now: Optional[datetime] = None, engine=None) -> Applied:
    """Move a wallet to an exact balance with one adjustment transaction."""
    if target_cents < 0:
        raise ValueError("Balance cannot be negative")
    engine = engine or get_engine()
    with engine.transaction() as (conn, backend):
        wallet = lock_wallet(conn, backend, owner_id)
        meta = AdjustmentMeta(
            reason=reason or "Admin balance set",
            actor=actor,
            action="set_balance",
            previous_balance_cents=wallet.balance_cents,
            new_balance_cents=target_cents,
        )
        return apply_in(conn, backend, owner_id, target_cents - wallet.balance_cents,
                        TxType.ADJUSTMENT, meta, now=now)


def settle(owner_id: str, amount_cents: int, actor: str, reason: str,
           now: Optional[datetime] = None, engine=None) -> Applied:
    """Final settlement on a frozen wallet (e.g. zeroing a refunded balance)."""
    if amount_cents == 0:
        raise ValueError("Settlement amount must be non-zero")
    return apply(owner_id, amount_cents, TxType.SETTLEMENT,
                 SettlementMeta(reason=reason, actor=actor), now=now, engine=engine)


# ── Wallet Lifecycle ──────────────────────────────────────────────────


def ensure_wallet(owner_id: str, payment_customer_id: Optional[str] = None,
                  provisioning_user_id: Optional[str] = None,
                  now: Optional[datetime] = None, engine=None) -> Wallet:
    """Create a zero-balance wallet on first registration. Idempotent."""
    engine = engine or get_engine()
    now = now or utcnow()
    with engine.transaction() as (conn, backend):
        conn.execute(
            q(
                """INSERT INTO wallets
                   (owner_id, balance_cents, payment_customer_id, provisioning_user_id,
                    created_at, updated_at)
                   VALUES (?, 0, ?, ?, ?, ?)
                   ON CONFLICT(owner_id) DO NOTHING""",
                backend,
            ),
            (owner_id, payment_customer_id, provisioning_user_id,
             encode_ts(now, backend), encode_ts(now, backend)),
        )
        row = conn.execute(
            q("SELECT * FROM wallets WHERE owner_id = ?", backend), (owner_id,)
        ).fetchone()
    return Wallet.from_row(row)


def get_wallet(owner_id: str, engine=None) -> Optional[Wallet]:
    engine = engine or get_engine()
    with engine.connection() as (conn, backend):
        row = conn.execute(
            q("SELECT * FROM wallets WHERE owner_id = ?", backend), (owner_id,)
        ).fetchone()
    return Wallet.from_row(row) if row else None


def link_payment_customer(owner_id: str, customer_id: str,
                          provisioning_user_id: Optional[str] = None, engine=None) -> Wallet:
    """Attach the payment-gateway customer (and optionally provisioning user) ids."""
    engine = engine or get_engine()
    with engine.transaction() as (conn, backend):
        wallet = lock_wallet(conn, backend, owner_id)
        if wallet.frozen:
            raise WalletFrozen(owner_id)
        conn.execute(
            q(
                """UPDATE wallets
                   SET payment_customer_id = ?,
                       provisioning_user_id = COALESCE(?, provisioning_user_id),
                       updated_at = ?
                   WHERE owner_id = ?""",
                backend,
            ),
            (customer_id, provisioning_user_id, encode_ts(utcnow(), backend), owner_id),
        )
    return get_wallet(owner_id, engine=engine)


def list_wallets(include_frozen: bool = True, engine=None) -> list[Wallet]:
    """All wallets, highest balance first."""
    engine = engine or get_engine()
    sql = "SELECT * FROM wallets"
    if not include_frozen:
        sql += " WHERE deleted_at IS NULL"
    sql += " ORDER BY balance_cents DESC, owner_id ASC"
    with engine.connection() as (conn, backend):
        rows = conn.execute(sql).fetchall()
    return [Wallet.from_row(r) for r in rows]


def soft_delete_wallet(owner_id: str, now: Optional[datetime] = None, engine=None) -> bool:
    """Freeze a wallet. Balance and history are kept. Returns False if already frozen."""
    engine = engine or get_engine()
    now = now or utcnow()
    with engine.transaction() as (conn, backend):
        cur = conn.execute(
            q(
                """UPDATE wallets SET deleted_at = ?, updated_at = ?
                   WHERE owner_id = ? AND deleted_at IS NULL""",
                backend,
            ),
            (encode_ts(now, backend), encode_ts(now, backend), owner_id),
        )
        changed = cur.rowcount > 0
    if changed:
        log.warning("WALLET FROZEN owner=%s", owner_id)
    return changed


# ── History ───────────────────────────────────────────────────────────


def get_transactions(owner_id: str, limit: Optional[int] = None,
                     engine=None) -> list[WalletTransaction]:
    """Transaction history, newest first. Available on frozen wallets too."""
    engine = engine or get_engine()
    sql = "SELECT * FROM wallet_transactions WHERE owner_id = ? ORDER BY id DESC"
    params: tuple = (owner_id,)
    if limit is not None:
        sql += " LIMIT ?"
        params = (owner_id, int(limit))
    with engine.connection() as (conn, backend):
        rows = conn.execute(q(sql, backend), params).fetchall()
    return [WalletTransaction.from_row(r) for r in rows]


def count_transactions(owner_id: str, engine=None) -> int:
    engine = engine or get_engine()
    with engine.connection() as (conn, backend):
        row = conn.execute(
            q("SELECT COUNT(*) AS n FROM wallet_transactions WHERE owner_id = ?", backend),
            (owner_id,),
        ).fetchone()
    return int(row["n"])


def transaction_for_event(conn, backend, gateway_event_id: str) -> Optional[int]:
    """Id of the transaction recorded for a gateway event, if any."""
    row = conn.execute(
        q("SELECT id FROM wallet_transactions WHERE gateway_event_id = ?", backend),
        (gateway_event_id,),
    ).fetchone()
    return int(row["id"]) if row else None


# ── Reconciliation ────────────────────────────────────────────────────


def _replay(conn, backend, owner_id: str) -> int:
    row = conn.execute(
        q(
            "SELECT COALESCE(SUM(amount_cents), 0) AS total "
            "FROM wallet_transactions WHERE owner_id = ?",
            backend,
        ),
        (owner_id,),
    ).fetchone()
    return int(row["total"])


def replay_balance(owner_id: str, engine=None) -> int:
    """Balance obtained by summing the wallet's ledger."""
    engine = engine or get_engine()
    with engine.connection() as (conn, backend):
        return _replay(conn, backend, owner_id)


def reconcile_wallet(owner_id: str, now: Optional[datetime] = None, engine=None) -> int:
    """Verify the cached balance against the ledger replay.

    On mismatch the wallet is put on audit hold (committed) and
    InvariantViolation is raised. The stored balance is never rewritten.
    Returns the verified balance.
    """
    engine = engine or get_engine()
    now = now or utcnow()
    violation = None
    with engine.transaction() as (conn, backend):
        wallet = lock_wallet(conn, backend, owner_id)
        replayed = _replay(conn, backend, owner_id)
        if replayed != wallet.balance_cents:
            violation = InvariantViolation(owner_id, wallet.balance_cents, replayed)
            if not wallet.on_hold:
                conn.execute(
                    q(
                        """UPDATE wallets SET audit_hold_at = ?, audit_hold_reason = ?
                           WHERE owner_id = ?""",
                        backend,
                    ),
                    (encode_ts(now, backend), str(violation), owner_id),
                )
    if violation is not None:
        log.error("INVARIANT VIOLATION %s; wallet placed on audit hold", violation)
        raise violation
    return replayed


@dataclass
class ReconcileSummary:
    checked: int = 0
    mismatched: list = field(default_factory=list)


def reconcile_all(now: Optional[datetime] = None, engine=None) -> ReconcileSummary:
    """Run reconcile_wallet over every wallet; mismatches are collected, not raised."""
    summary = ReconcileSummary()
    for wallet in list_wallets(engine=engine):
        summary.checked += 1
        try:
            reconcile_wallet(wallet.owner_id, now=now, engine=engine)
        except InvariantViolation:
            summary.mismatched.append(wallet.owner_id)
    return summary


def clear_audit_hold(owner_id: str, actor: str, reason: str, engine=None) -> bool:
    """Operator acknowledgement that a held wallet may be processed again."""
    engine = engine or get_engine()
    with engine.transaction() as (conn, backend):
        cur = conn.execute(
            q(
                """UPDATE wallets SET audit_hold_at = NULL, audit_hold_reason = NULL,
                   updated_at = ?
                   WHERE owner_id = ? AND audit_hold_at IS NOT NULL""",
                backend,
            ),
            (encode_ts(utcnow(), backend), owner_id),
        )
        cleared = cur.rowcount > 0
    if cleared:
        log.warning("AUDIT HOLD CLEARED owner=%s actor=%s reason=%s", owner_id, actor, reason)
    return cleared
