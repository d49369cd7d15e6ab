# OzWallet API v1.0.0
# FastAPI. Wallet reads, auto top-up settings, server billing, cancellations,
# payment and identity webhooks, health. Background processors start with the app.

import hmac
import json
import os
import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from cancellations import (
    CancellationMode,
    list_cancellations,
    request_cancellation,
    revoke_cancellation,
)
from db import storage_healthcheck
from errors import BillingError, InvalidWebhook, user_message
from ledger import ensure_wallet, get_transactions, get_wallet, link_payment_customer, require_unfrozen
from orphans import handle_identity_deletion, verify_identity_webhook
from payments import get_payment_gateway
from processors import log, processor_status, setup_logging, start_processors, stop_processors
from servers import create_deploy_order, create_server_billing, get_server_billing, list_server_billing
from topup import configure_auto_topup

OZWALLET_ENV = os.environ.get("OZWALLET_ENV", "dev").lower()
AUTH_REQUIRED = OZWALLET_ENV not in {"dev", "development", "test"}
API_TOKEN = os.environ.get("OZWALLET_API_TOKEN", "")
PROCESSORS_ENABLED = os.environ.get("OZWALLET_PROCESSORS_ENABLED", "1") not in {"0", "false", "no"}
RATE_LIMIT_REQUESTS = int(os.environ.get("OZWALLET_RATE_LIMIT_REQUESTS", "120"))
RATE_LIMIT_WINDOW_SEC = int(os.environ.get("OZWALLET_RATE_LIMIT_WINDOW_SEC", "60"))
_RATE_BUCKETS = defaultdict(deque)


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    if PROCESSORS_ENABLED:
        start_processors()
    yield
    if PROCESSORS_ENABLED:
        stop_processors()


app = FastAPI(title="OzWallet", version="1.0.0", lifespan=lifespan)


# ── API Token Auth ────────────────────────────────────────────────────

# No API token: health probes, and webhooks that carry their own signatures
PUBLIC_PATHS = {
    "/", "/docs", "/openapi.json", "/healthz", "/readyz",
    "/hooks/identity-user-deleted", "/hooks/stripe",
}


class TokenAuthMiddleware(BaseHTTPMiddleware):
    """
    Bearer token auth outside dev/test. Every request except public
    routes must carry OZWALLET_API_TOKEN.
    """

    async def dispatch(self, request: Request, call_next):
        if not AUTH_REQUIRED:
            return await call_next(request)

        api_token = os.environ.get("OZWALLET_API_TOKEN", API_TOKEN)
        if not api_token:
            return JSONResponse(
                status_code=500,
                content={
                    "ok": False,
                    "error": {
                        "code": "auth_config_error",
                        "message": "OZWALLET_API_TOKEN must be set in non-dev environments",
                    },
                },
            )

        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        auth = request.headers.get("Authorization", "")
        token = auth[7:] if auth.startswith("Bearer ") else ""
        if not token or not hmac.compare_digest(token, api_token):
            return JSONResponse(
                status_code=401,
                content={"ok": False, "error": {"code": "unauthorized", "message": "Unauthorized"}},
            )

        return await call_next(request)


app.add_middleware(TokenAuthMiddleware)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Structured access log line per request."""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        entry = {
            "event": "api_request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": round((time.time() - started) * 1000, 2),
            "client_ip": request.client.host if request.client else "unknown",
        }
        log.info(json.dumps(entry, sort_keys=True))
        return response


app.add_middleware(RequestLogMiddleware)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Simple in-memory IP rate limiting."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        now = time.time()
        client_ip = request.client.host if request.client else "unknown"
        bucket = _RATE_BUCKETS[client_ip]
        while bucket and bucket[0] <= now - RATE_LIMIT_WINDOW_SEC:
            bucket.popleft()

        if len(bucket) >= RATE_LIMIT_REQUESTS:
            return JSONResponse(
                status_code=429,
                content={"ok": False, "error": {"code": "rate_limited", "message": "Too many requests"}},
            )

        bucket.append(now)
        return await call_next(request)


app.add_middleware(RateLimitMiddleware)


# ── Error Envelope ────────────────────────────────────────────────────

HTTP_STATUS = {
    "wallet_not_found": 404,
    "insufficient_funds": 402,
    "wallet_frozen": 423,
    "external_unavailable": 503,
    "invariant_violation": 409,
    "cancellation_conflict": 409,
    "invalid_webhook": 400,
}

# Codes whose message is written for operators/integrators, not customers
_RAW_MESSAGE_CODES = {"cancellation_conflict", "invalid_webhook"}


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"ok": False, "error": {"code": code, "message": message}},
    )


@app.exception_handler(BillingError)
async def billing_error_handler(_: Request, exc: BillingError):
    message = str(exc) if exc.code in _RAW_MESSAGE_CODES else user_message(exc)
    return _error(HTTP_STATUS.get(exc.code, 500), exc.code, message)


@app.exception_handler(ValueError)
async def value_error_handler(_: Request, exc: ValueError):
    return _error(400, "bad_request", str(exc))


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return _error(exc.status_code, "http_error", str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "ok": False,
            "error": {
                "code": "validation_error",
                "message": "Request validation failed",
                "details": exc.errors(),
            },
        },
    )


# ── Request models ────────────────────────────────────────────────────


class WalletIn(BaseModel):
    owner_id: str = Field(min_length=1, max_length=128)
    payment_customer_id: str | None = None
    provisioning_user_id: str | None = None


class AutoTopUpIn(BaseModel):
    enabled: bool
    threshold_cents: int = Field(default=0, ge=0)
    amount_cents: int = Field(default=0, ge=0)
    payment_method_id: str | None = None


class CheckoutIn(BaseModel):
    amount_cents: int = Field(gt=0)
    success_url: str
    cancel_url: str


class ServerBillingIn(BaseModel):
    server_id: str = Field(min_length=1)
    owner_id: str = Field(min_length=1)
    plan_id: int
    monthly_price_cents: int = Field(ge=0)


class DeployOrderIn(BaseModel):
    owner_id: str = Field(min_length=1)
    plan_id: int
    price_cents: int = Field(ge=0)


class CancellationIn(BaseModel):
    owner_id: str = Field(min_length=1)
    mode: CancellationMode = CancellationMode.GRACE
    reason: str = Field(default="", max_length=500)
    server_name: str = ""


def _wallet_or_404(owner_id: str):
    wallet = get_wallet(owner_id)
    if wallet is None:
        raise HTTPException(status_code=404, detail=f"Wallet {owner_id} not found")
    return wallet


# ── Wallet endpoints ──────────────────────────────────────────────────


@app.post("/wallets")
def api_create_wallet(w: WalletIn):
    """Create a wallet on first registration. Idempotent."""
    wallet = ensure_wallet(w.owner_id, w.payment_customer_id, w.provisioning_user_id)
    if w.payment_customer_id and wallet.payment_customer_id != w.payment_customer_id:
        wallet = link_payment_customer(w.owner_id, w.payment_customer_id, w.provisioning_user_id)
    return {"ok": True, "wallet": wallet.to_dict()}


@app.get("/wallets/{owner_id}")
def api_get_wallet(owner_id: str):
    """Balance and settings. Available on frozen wallets."""
    return {"ok": True, "wallet": _wallet_or_404(owner_id).to_dict()}


@app.get("/wallets/{owner_id}/transactions")
def api_wallet_transactions(owner_id: str, limit: int = 50):
    _wallet_or_404(owner_id)
    txs = get_transactions(owner_id, limit=max(1, min(limit, 500)))
    return {"ok": True, "transactions": [t.to_dict() for t in txs]}


@app.put("/wallets/{owner_id}/auto-topup")
def api_configure_auto_topup(owner_id: str, body: AutoTopUpIn):
    wallet = configure_auto_topup(
        owner_id, body.enabled, body.threshold_cents, body.amount_cents, body.payment_method_id
    )
    return {"ok": True, "wallet": wallet.to_dict()}


@app.post("/wallets/{owner_id}/topup-checkout")
def api_topup_checkout(owner_id: str, body: CheckoutIn):
    """Start a hosted checkout; the wallet is credited by the payment webhook."""
    wallet = require_unfrozen(owner_id)
    if not wallet.payment_customer_id:
        raise HTTPException(status_code=400, detail="No payment customer linked to this wallet")
    session = get_payment_gateway().create_topup_checkout(
        owner_id, wallet.payment_customer_id, body.amount_cents,
        body.success_url, body.cancel_url,
    )
    return {"ok": True, "checkout": session}


# ── Server billing endpoints ──────────────────────────────────────────


@app.post("/servers")
def api_register_server(s: ServerBillingIn):
    """Start billing a provisioned server."""
    require_unfrozen(s.owner_id)
    billing = create_server_billing(s.server_id, s.owner_id, s.plan_id, s.monthly_price_cents)
    return {"ok": True, "billing": billing.to_dict()}


@app.get("/servers")
def api_list_servers(owner_id: str | None = None):
    return {"ok": True, "servers": [b.to_dict() for b in list_server_billing(owner_id)]}


@app.get("/servers/{server_id}/billing")
def api_server_billing(server_id: str):
    billing = get_server_billing(server_id)
    if billing is None:
        raise HTTPException(status_code=404, detail=f"Server {server_id} not found")
    return {"ok": True, "billing": billing.to_dict()}


@app.post("/deploy-orders")
def api_create_deploy_order(o: DeployOrderIn):
    return {"ok": True, "order": create_deploy_order(o.owner_id, o.plan_id, o.price_cents)}


# ── Cancellation endpoints ────────────────────────────────────────────


@app.post("/servers/{server_id}/cancel")
def api_request_cancellation(server_id: str, body: CancellationIn):
    billing = get_server_billing(server_id)
    if billing is None or billing.owner_id != body.owner_id:
        raise HTTPException(status_code=404, detail=f"Server {server_id} not found")
    c = request_cancellation(server_id, body.owner_id, body.mode, body.reason, body.server_name)
    return {"ok": True, "cancellation": c.to_dict()}


@app.delete("/servers/{server_id}/cancel")
def api_revoke_cancellation(server_id: str, owner_id: str):
    if not revoke_cancellation(server_id, owner_id=owner_id):
        raise HTTPException(status_code=404, detail=f"No cancellation for server {server_id}")
    return {"ok": True, "revoked": server_id}


@app.get("/cancellations")
def api_list_cancellations(status: str | None = None, owner_id: str | None = None):
    return {
        "ok": True,
        "cancellations": [c.to_dict() for c in list_cancellations(status, owner_id)],
    }


# ── Webhooks ──────────────────────────────────────────────────────────


@app.post("/hooks/identity-user-deleted")
async def api_identity_user_deleted(request: Request):
    """Identity provider's user-deleted hook. Bearer secret or HMAC signature."""
    raw = await request.body()
    authorized = verify_identity_webhook(
        raw,
        authorization=request.headers.get("Authorization"),
        signature=request.headers.get("X-Identity-Signature"),
    )
    if not authorized:
        log.warning("Identity webhook authentication failed")
        return _error(401, "unauthorized", "Unauthorized")
    try:
        payload = json.loads(raw or b"{}")
    except json.JSONDecodeError as e:
        raise InvalidWebhook(f"Malformed JSON: {e}") from e

    result = await run_in_threadpool(handle_identity_deletion, payload)
    return {"ok": True, **result}


@app.post("/hooks/stripe")
async def api_stripe_webhook(request: Request):
    raw = await request.body()
    sig = request.headers.get("Stripe-Signature", "")
    result = await run_in_threadpool(get_payment_gateway().handle_webhook, raw, sig)
    return {"ok": True, **result}


# ── Health ────────────────────────────────────────────────────────────


@app.get("/healthz")
def healthz():
    return {"ok": True, "status": "healthy", "env": OZWALLET_ENV}


@app.get("/readyz")
def readyz():
    token = os.environ.get("OZWALLET_API_TOKEN", API_TOKEN)
    if AUTH_REQUIRED and not token:
        raise HTTPException(
            status_code=503, detail="API token not configured for non-dev environment"
        )

    storage = storage_healthcheck()
    if not storage.get("ok"):
        raise HTTPException(
            status_code=503, detail=f"Storage not ready: {storage.get('error', 'unknown')}"
        )

    return {"ok": True, "status": "ready", "storage": storage}


@app.get("/processors")
def api_processors():
    return {"ok": True, "processors": processor_status()}


@app.get("/")
def root():
    return {"name": "OzWallet", "status": "running"}


if __name__ == "__main__":
    import uvicorn

    setup_logging()
    log.info("API STARTING on port 8000")
    uvicorn.run(app, host="0.0.0.0", port=8000)
