# OzWallet Orphan Cleanup Processor
# Hourly sweep of active wallets: if the owner no longer exists at the
# identity provider, tear down everything they still hold here.
#
# unwind_owner() is the one teardown path, shared with the identity
# provider's user-deleted webhook:
#   1. delete the owner's servers, then their account, in the provisioning system
#   2. delete the payment-gateway customer
#   3. soft-delete (freeze) the wallet; balance and history stay
#   4. cancel deploy orders that never produced a server
# An external failure in steps 1-2 aborts before the freeze, and the next
# sweep starts the unwind again.

import hashlib
import hmac
import logging
import os
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from db import get_engine, utcnow
from errors import InvalidWebhook, RunSummary, classify
from identity import get_identity_client
from ledger import get_wallet, list_wallets, soft_delete_wallet
from payments import get_payment_gateway
from processors import PeriodicTask
from provisioning import get_provisioning_client
from servers import cancel_pending_orders, mark_cancelled

log = logging.getLogger("ozwallet")

ORPHAN_INTERVAL_SEC = float(os.environ.get("OZWALLET_ORPHAN_INTERVAL_SEC", "3600"))
ORPHAN_INITIAL_DELAY_SEC = float(os.environ.get("OZWALLET_ORPHAN_INITIAL_DELAY_SEC", "300"))
ORPHAN_CHECK_DELAY_SEC = float(os.environ.get("OZWALLET_ORPHAN_CHECK_DELAY_SEC", "0.1"))
IDENTITY_WEBHOOK_SECRET = os.environ.get("OZWALLET_IDENTITY_WEBHOOK_SECRET", "")


# ── Unwind ────────────────────────────────────────────────────────────

@dataclass
class UnwindResult:
    owner_id: str
    servers_deleted: int = 0
    servers_already_gone: int = 0
    account_deleted: bool = False
    customer_deleted: bool = False
    wallet_frozen: bool = False
    orders_cancelled: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def unwind_owner(owner_id: str, provisioning_user_id: Optional[str] = None,
                 provisioning=None, gateway=None, now: Optional[datetime] = None,
                 engine=None) -> UnwindResult:
    """Tear down an owner whose identity is gone. Safe to run again after a failure."""
    provisioning = provisioning or get_provisioning_client()
    gateway = gateway or get_payment_gateway()
    now = now or utcnow()
    result = UnwindResult(owner_id)

    wallet = get_wallet(owner_id, engine=engine)
    linked_account = provisioning_user_id or (wallet.provisioning_user_id if wallet else None)
    account_id = linked_account or owner_id
    log.warning("UNWIND owner=%s provisioning_account=%s", owner_id, account_id)

    for server in provisioning.list_servers(account_id):
        if provisioning.delete_server(server.server_id):
            result.servers_deleted += 1
        else:
            result.servers_already_gone += 1
        mark_cancelled(server.server_id, now=now, engine=engine)

    # Only a linked account is deleted; the owner_id fallback is not a panel user
    if linked_account:
        result.account_deleted = provisioning.delete_user(linked_account)

    if wallet and wallet.payment_customer_id:
        result.customer_deleted = gateway.delete_customer(wallet.payment_customer_id)

    if wallet:
        result.wallet_frozen = soft_delete_wallet(owner_id, now=now, engine=engine)

    result.orders_cancelled = cancel_pending_orders(owner_id, now=now, engine=engine)

    log.warning("UNWOUND owner=%s servers=%d (already gone %d) account_deleted=%s "
                "customer_deleted=%s frozen=%s orders_cancelled=%d",
                owner_id, result.servers_deleted, result.servers_already_gone,
                result.account_deleted, result.customer_deleted, result.wallet_frozen,
                result.orders_cancelled)
    return result


# ── Sweep ─────────────────────────────────────────────────────────────

@dataclass
class OrphanRunSummary(RunSummary):
    checked: int = 0
    cleaned: int = 0


def run_orphan_cleanup(now: Optional[datetime] = None, identity=None, provisioning=None,
                       gateway=None, engine=None, check_delay: Optional[float] = None,
                       sleep=time.sleep) -> OrphanRunSummary:
    """Check every active wallet's owner upstream and unwind the ones that are gone."""
    identity = identity or get_identity_client()
    delay = ORPHAN_CHECK_DELAY_SEC if check_delay is None else check_delay
    now = now or utcnow()
    summary = OrphanRunSummary(started_at=now)

    for wallet in list_wallets(include_frozen=False, engine=engine):
        if wallet.on_hold:
            summary.record("audit_hold")
            continue
        summary.checked += 1
        try:
            if identity.user_exists(wallet.owner_id):
                summary.record("exists")
            else:
                log.warning("Orphaned wallet for owner %s", wallet.owner_id)
                unwind_owner(wallet.owner_id, provisioning=provisioning, gateway=gateway,
                             now=now, engine=engine)
                summary.cleaned += 1
                summary.record("cleaned")
        except Exception as e:
            outcome = classify(e)
            summary.record(outcome)
            log.warning("Orphan check for %s failed (%s): %s", wallet.owner_id, outcome, e)
        if delay:
            sleep(delay)

    summary.finished_at = utcnow()
    log.info("Orphan cleanup: checked=%d cleaned=%d %s",
             summary.checked, summary.cleaned, summary.describe())
    return summary


def start_orphan_cleanup_processor(interval=None, initial_delay=None, callback=None):
    """Run the orphan sweep hourly in a background thread, first run after 5 minutes."""
    task = PeriodicTask(
        "orphan-cleanup",
        run_orphan_cleanup,
        interval if interval is not None else ORPHAN_INTERVAL_SEC,
        initial_delay=initial_delay if initial_delay is not None else ORPHAN_INITIAL_DELAY_SEC,
        callback=callback,
    )
    return task.start()


# ── Identity Webhook ──────────────────────────────────────────────────


def sign_identity_payload(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_identity_webhook(raw_body: bytes, authorization: Optional[str] = None,
                            signature: Optional[str] = None,
                            secret: Optional[str] = None) -> bool:
    """Accept a bearer shared secret or an HMAC-SHA256 signature of the raw body."""
    secret = secret if secret is not None else IDENTITY_WEBHOOK_SECRET
    if not secret:
        raise InvalidWebhook("Identity webhook secret not configured")

    if authorization and authorization.startswith("Bearer "):
        if hmac.compare_digest(authorization[7:], secret):
            return True

    if signature:
        provided = signature[7:] if signature.startswith("sha256=") else signature
        expected = sign_identity_payload(raw_body or b"", secret)
        if hmac.compare_digest(provided.lower(), expected):
            return True
        log.warning("Identity webhook HMAC signature mismatch")

    return False


def handle_identity_deletion(payload: dict, provisioning=None, gateway=None,
                             identity=None, engine=None) -> dict:
    """Unwind the owner named in a verified `user.deleted` event."""
    event_type = (payload or {}).get("type")
    if event_type != "user.deleted":
        log.info("Ignoring identity event %s", event_type)
        return {"handled": False, "type": event_type}

    user = ((payload.get("data") or {}).get("object")) or {}
    owner_id = user.get("user_id")
    if not owner_id:
        raise InvalidWebhook("Missing user data in identity webhook payload")

    app_metadata = user.get("app_metadata") or {}
    provisioning_user_id = app_metadata.get("provisioning_user_id")
    if provisioning_user_id is not None:
        provisioning_user_id = str(provisioning_user_id)

    (identity or get_identity_client()).invalidate(owner_id)
    result = unwind_owner(owner_id, provisioning_user_id=provisioning_user_id,
                          provisioning=provisioning, gateway=gateway, engine=engine)
    return {"handled": True, "type": event_type, **result.to_dict()}
