# OzWallet Payment Gateway (Stripe)
# Off-session charges against a stored payment method, customer deletion,
# top-up checkout sessions and the checkout webhook that credits wallets.
#
# NOTE: Without OZWALLET_STRIPE_SECRET_KEY the gateway runs as a stub:
# charges fail, customer deletes are no-ops, checkout returns a stub session.

import logging
import os
from dataclasses import dataclass
from typing import Optional

import stripe

from db import get_engine
from errors import ExternalServiceUnavailable, InvalidWebhook, WalletFrozen

log = logging.getLogger("ozwallet.payments")

# ── Configuration ─────────────────────────────────────────────────────

STRIPE_SECRET_KEY = os.environ.get("OZWALLET_STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("OZWALLET_STRIPE_WEBHOOK_SECRET", "")
CURRENCY = os.environ.get("OZWALLET_CURRENCY", "aud").lower()
EXTERNAL_TIMEOUT_SEC = float(os.environ.get("OZWALLET_EXTERNAL_TIMEOUT_SEC", "10"))

# Accepted customer top-up range (minor units)
MIN_TOPUP_CENTS = 500
MAX_TOPUP_CENTS = 50000

TOPUP_METADATA_TYPE = "wallet_topup"


@dataclass
class ChargeResult:
    success: bool
    gateway_ref: str = ""
    error: str = ""


class PaymentGateway:
    """Thin wrapper over the Stripe SDK for the calls the billing core needs."""

    service = "payment_gateway"

    def __init__(self, secret_key: Optional[str] = None,
                 webhook_secret: Optional[str] = None,
                 currency: Optional[str] = None):
        self.secret_key = secret_key if secret_key is not None else STRIPE_SECRET_KEY
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else STRIPE_WEBHOOK_SECRET
        )
        self.currency = (currency or CURRENCY).lower()
        if self.enabled:
            stripe.max_network_retries = 0
            stripe.default_http_client = stripe.RequestsClient(timeout=EXTERNAL_TIMEOUT_SEC)
            log.info("Stripe ENABLED (key prefix: %s...)", self.secret_key[:7])

    @property
    def enabled(self) -> bool:
        return bool(self.secret_key and self.secret_key.startswith(("sk_", "rk_")))

    # ── Outbound ──────────────────────────────────────────────────────

    def charge_stored_method(self, customer_id: str, payment_method_id: str,
                             amount_cents: int, idempotency_key: Optional[str] = None,
                             description: str = "") -> ChargeResult:
        """Charge a saved payment method off-session. Never retried here."""
        if not self.enabled:
            return ChargeResult(False, error="Stripe not configured")
        if not customer_id or not payment_method_id:
            return ChargeResult(False, error="No payment method on file")
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=self.currency,
                customer=customer_id,
                payment_method=payment_method_id,
                off_session=True,
                confirm=True,
                description=description or "Wallet auto top-up",
                api_key=self.secret_key,
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            log.info("Charge declined for %s: %s", customer_id, e.user_message or e)
            return ChargeResult(False, error=str(e.user_message or e))
        except stripe.StripeError as e:
            log.warning("Charge failed for %s: %s", customer_id, e)
            return ChargeResult(False, error=str(e))

        if intent["status"] != "succeeded":
            return ChargeResult(False, gateway_ref=intent["id"],
                                error=f"payment intent {intent['status']}")
        return ChargeResult(True, gateway_ref=intent["id"])

    def delete_customer(self, customer_id: str) -> bool:
        """Delete a customer. Returns False when it was already gone (or in stub mode)."""
        if not self.enabled or not customer_id:
            return False
        try:
            stripe.Customer.delete(customer_id, api_key=self.secret_key)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                log.info("Stripe customer %s already deleted", customer_id)
                return False
            raise ExternalServiceUnavailable(self.service, str(e)) from e
        except stripe.StripeError as e:
            log.warning("Failed to delete Stripe customer %s: %s", customer_id, e)
            raise ExternalServiceUnavailable(self.service, str(e)) from e
        log.info("Deleted Stripe customer %s", customer_id)
        return True

    def create_topup_checkout(self, owner_id: str, customer_id: str, amount_cents: int,
                              success_url: str, cancel_url: str) -> dict:
        """Start a hosted checkout that credits the wallet once paid."""
        if not MIN_TOPUP_CENTS <= amount_cents <= MAX_TOPUP_CENTS:
            raise ValueError(
                f"Top-up must be between {MIN_TOPUP_CENTS} and {MAX_TOPUP_CENTS} cents"
            )
        if not self.enabled:
            return {"session_id": f"stub_cs_{owner_id}_{amount_cents}", "url": "", "stub": True}
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                customer=customer_id,
                line_items=[{
                    "price_data": {
                        "currency": self.currency,
                        "unit_amount": amount_cents,
                        "product_data": {"name": "Wallet top-up"},
                    },
                    "quantity": 1,
                }],
                metadata={"type": TOPUP_METADATA_TYPE, "owner_id": owner_id},
                success_url=success_url,
                cancel_url=cancel_url,
                api_key=self.secret_key,
            )
        except stripe.StripeError as e:
            raise ExternalServiceUnavailable(self.service, str(e)) from e
        return {"session_id": session["id"], "url": session["url"], "stub": False}

    # ── Webhooks ──────────────────────────────────────────────────────

    def construct_event(self, payload: bytes, sig_header: str):
        if not self.webhook_secret:
            raise InvalidWebhook("Stripe webhook secret not configured")
        try:
            return stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            log.error("Webhook signature verification failed: %s", e)
            raise InvalidWebhook(str(e)) from e

    def handle_webhook(self, payload: bytes, sig_header: str, engine=None) -> dict:
        """Verify and dispatch a Stripe webhook event.

        Handles:
        - checkout.session.completed → wallet top-up credit
        """
        event = self.construct_event(payload, sig_header)
        event_type = event["type"]
        if event_type == "checkout.session.completed":
            return self.credit_checkout_session(
                event["id"], event["data"]["object"], engine=engine
            )
        return {"handled": False, "type": event_type}

    def credit_checkout_session(self, event_id: str, session, engine=None) -> dict:
        """Credit a wallet for a paid top-up checkout. Replayed events are ignored."""
        from ledger import TopUpMeta, TxType, apply_in, get_wallet, transaction_for_event

        result = {"handled": False, "type": "checkout.session.completed", "event_id": event_id}
        metadata = session.get("metadata") or {}

        if session.get("payment_status") != "paid":
            log.info("Skipping non-paid checkout %s: %s", session.get("id"),
                     session.get("payment_status"))
            return {**result, "reason": "not_paid"}
        if metadata.get("type") != TOPUP_METADATA_TYPE:
            return {**result, "reason": "not_topup"}

        owner_id = metadata.get("owner_id", "")
        wallet = get_wallet(owner_id, engine=engine) if owner_id else None
        if wallet is None or not wallet.payment_customer_id:
            log.warning("SECURITY: no linked wallet for checkout owner=%r", owner_id)
            return {**result, "reason": "unknown_wallet"}
        if wallet.payment_customer_id != session.get("customer"):
            log.warning("SECURITY: customer mismatch wallet=%s session=%s; rejecting credit",
                        wallet.payment_customer_id, session.get("customer"))
            return {**result, "reason": "customer_mismatch"}
        if (session.get("currency") or "").lower() != self.currency:
            log.warning("Currency mismatch: expected=%s received=%s",
                        self.currency, session.get("currency"))
            return {**result, "reason": "currency_mismatch"}

        amount = session.get("amount_total")
        if not isinstance(amount, int) or not MIN_TOPUP_CENTS <= amount <= MAX_TOPUP_CENTS:
            log.warning("SECURITY: top-up amount outside valid range: %r", amount)
            return {**result, "reason": "amount_out_of_range"}

        meta = TopUpMeta(
            gateway_ref=session.get("payment_intent") or "",
            session_id=session.get("id", ""),
        )
        engine = engine or get_engine()
        try:
            with engine.transaction() as (conn, backend):
                existing = transaction_for_event(conn, backend, event_id)
                if existing is not None:
                    log.info("Event %s already credited as tx %d", event_id, existing)
                    return {**result, "handled": True, "duplicate": True,
                            "transaction_id": existing}
                applied = apply_in(conn, backend, owner_id, amount, TxType.TOPUP, meta,
                                   gateway_event_id=event_id)
        except WalletFrozen:
            log.warning("Top-up for frozen wallet %s ignored (event %s)", owner_id, event_id)
            return {**result, "reason": "wallet_frozen"}

        return {**result, "handled": True, "owner_id": owner_id,
                "balance_cents": applied.balance_cents,
                "transaction_id": applied.transaction_id}


# ── Singleton ─────────────────────────────────────────────────────────

_gateway: Optional[PaymentGateway] = None


def get_payment_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = PaymentGateway()
    return _gateway
