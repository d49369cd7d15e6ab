# OzWallet error taxonomy.
#
# Expected outcomes (insufficient funds, frozen wallet) and faults
# (external outages, ledger invariant breaks) are distinct classes so the
# processors can count them separately and the request boundary can show
# the right message.

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Optional


class BillingError(Exception):
    """Base class for all ledger and billing errors."""

    code = "billing_error"


class WalletNotFound(BillingError):
    code = "wallet_not_found"

    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        super().__init__(f"No wallet for owner {owner_id}")


class InsufficientFunds(BillingError):
    """A debit would take the balance below zero."""

    code = "insufficient_funds"

    def __init__(self, owner_id: str, balance_cents: int, required_cents: int):
        self.owner_id = owner_id
        self.balance_cents = balance_cents
        self.required_cents = required_cents
        super().__init__(
            f"Insufficient funds for {owner_id}: "
            f"balance {balance_cents}, required {required_cents}"
        )

    @property
    def shortfall_cents(self) -> int:
        return max(0, self.required_cents - self.balance_cents)


class WalletFrozen(BillingError):
    """The wallet's payment linkage is gone; only settlement is accepted."""

    code = "wallet_frozen"

    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        super().__init__(f"Wallet {owner_id} is frozen")


class ExternalServiceUnavailable(BillingError):
    """Provisioning, payment gateway or identity provider failed or timed out."""

    code = "external_unavailable"

    def __init__(self, service: str, detail: str = ""):
        self.service = service
        self.detail = detail
        super().__init__(f"{service} unavailable: {detail}" if detail else f"{service} unavailable")


class InvariantViolation(BillingError):
    """Stored balance disagrees with the ledger replay. Needs a human."""

    code = "invariant_violation"

    def __init__(self, owner_id: str, stored_cents: int, replayed_cents: int, detail: str = ""):
        self.owner_id = owner_id
        self.stored_cents = stored_cents
        self.replayed_cents = replayed_cents
        msg = (
            f"Ledger mismatch for {owner_id}: stored {stored_cents}, "
            f"replayed {replayed_cents}"
        )
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class InvalidWebhook(BillingError):
    """Webhook payload failed signature or shape verification."""

    code = "invalid_webhook"


class CancellationConflict(BillingError):
    """A cancellation already exists, or is past the point of revocation."""

    code = "cancellation_conflict"


# ── Classification ────────────────────────────────────────────────────

OUTCOME_CLASSES = (
    "insufficient_funds",
    "wallet_frozen",
    "external_unavailable",
    "invariant_violation",
    "error",
)


def classify(exc: BaseException) -> str:
    """Map an exception to the outcome class used in processor run summaries."""
    if isinstance(exc, InsufficientFunds):
        return "insufficient_funds"
    if isinstance(exc, WalletFrozen):
        return "wallet_frozen"
    if isinstance(exc, ExternalServiceUnavailable):
        return "external_unavailable"
    if isinstance(exc, InvariantViolation):
        return "invariant_violation"
    return "error"


@dataclass
class RunSummary:
    """Per-run outcome counts for a processor tick."""

    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    counts: dict = field(default_factory=dict)

    def record(self, outcome: str, n: int = 1):
        self.counts[outcome] = self.counts.get(outcome, 0) + n

    def count(self, outcome: str) -> int:
        return self.counts.get(outcome, 0)

    @property
    def errors(self) -> int:
        return sum(self.count(c) for c in ("external_unavailable", "invariant_violation", "error"))

    def to_dict(self) -> dict:
        d = asdict(self)
        for key in ("started_at", "finished_at"):
            if d[key] is not None:
                d[key] = d[key].isoformat()
        d["errors"] = self.errors
        return d

    def describe(self) -> str:
        parts = [f"{k}={v}" for k, v in sorted(self.counts.items())]
        return " ".join(parts) or "idle"


# Text shown at the UI boundary. Never expose ledger internals to customers.
USER_MESSAGES = {
    "insufficient_funds": "Your wallet balance is too low. Add funds to continue.",
    "wallet_frozen": (
        "This account has been closed and can no longer be billed. "
        "Please contact support."
    ),
    "external_unavailable": "A service we depend on is not responding. Please try again shortly.",
    "invariant_violation": (
        "Your account is under review by our billing team. "
        "Please contact support."
    ),
    "wallet_not_found": "No billing account exists for this user yet.",
}


def user_message(exc: BaseException) -> str:
    code = getattr(exc, "code", None) or classify(exc)
    return USER_MESSAGES.get(code, "Something went wrong. Please try again shortly.")
