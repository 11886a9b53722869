from __future__ import annotations
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, Request
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .config import (
    ACCESS_TOKEN_MAX_AGE, ADMIN_EMAIL, ADMIN_PASSWORD, ADMIN_USERNAME,
    AMOUNT_TOLERANCE_KOBO, COIN_NAIRA_RATE, COIN_PRICE_KOBO, DATABASE_URL,
    LOG_LEVEL, MIN_WITHDRAWAL_COINS, PAYSTACK_BASE_URL, PAYSTACK_CALLBACK_URL,
    PAYSTACK_SECRET_KEY, PAYSTACK_TIMEOUT_SECONDS, QR_TOKEN_SECRET, REDIS_URL,
    SESSION_SECRET, STATS_TTL_SECONDS,
)
from .errors import (
    AppError, AuthError, ConflictError, FailureKind, ForbiddenError,
    NotFoundError, UpstreamError, ValidationError,
)
from .helpers import ct_equal, to_iso
from .infra.sql import GatedAsyncSession, make_async_engine
from .model import (
    admission, banks, events, issuance, memberships, payments, stats, wallet,
    withdrawals,
)
from .model.cache import BACKEND as CACHE_BACKEND, TTLCache, new_cache
from .model.identity import (
    CAN_ADJUST_WALLETS, CAN_MANAGE_EVENTS, CAN_PROCESS_WITHDRAWALS,
    CAN_RECONCILE, CAN_REFUND, CAN_SCAN, CAN_VIEW_STATS,
    Identity, TokenSigner, find_user_by_email, load_identity,
)
from .model.orm import Base, P_FAILED, P_PENDING
from .model.qrtoken import QrTokenService
from . import reconcile
from .paystack import PaymentAdapter, PaystackAdapter

logger = logging.getLogger(__name__)

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)

qr = QrTokenService(QR_TOKEN_SECRET)
signer = TokenSigner(SESSION_SECRET, ACCESS_TOKEN_MAX_AGE)


async def get_db() -> GatedAsyncSession:
    async with SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=gated)


def get_adapter() -> PaymentAdapter:
    return PaystackAdapter(
        app.state.http, PAYSTACK_SECRET_KEY,
        base_url=PAYSTACK_BASE_URL, timeout_seconds=PAYSTACK_TIMEOUT_SECONDS,
    )


def get_cache() -> TTLCache:
    return app.state.cache


app = FastAPI(
    title="FanPass",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


@app.exception_handler(AppError)
async def _app_error(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path,
                     exc.code, exc.detail)
    return ORJSONResponse(exc.to_dict(), status_code=exc.status_code)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _logging_init():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("FanPass starting up (stats cache: %s)", CACHE_BACKEND)


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=PAYSTACK_TIMEOUT_SECONDS,
        limits=httpx.Limits(
            max_connections=100, max_keepalive_connections=20
        ),
    )


@app.on_event("startup")
async def _cache_start():
    r = None
    if CACHE_BACKEND == "redis":
        r = redis.from_url(
            REDIS_URL,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    app.state.redis = r
    app.state.cache = new_cache(r=r, ttl_seconds=STATS_TTL_SECONDS)


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


# ----------------------------
# Helpers
# ----------------------------
def _str(payload: dict, key: str, required: bool = True) -> Optional[str]:
    v = payload.get(key)
    if v is None or (isinstance(v, str) and not v.strip()):
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if not isinstance(v, str):
        raise ValidationError(f"{key} must be a string")
    return v.strip()


def _int(payload: dict, key: str, required: bool = True) -> Optional[int]:
    v = payload.get(key)
    if v is None:
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if not isinstance(v, int) or isinstance(v, bool):
        raise ValidationError(f"{key} must be an integer")
    return v


def _local_path(url: Optional[str]) -> bool:
    # "//host" and "/\host" are treated as other sites by browsers
    return bool(url) and url.startswith("/") and url[1:2] not in ("/", "\\")


def _ticket_out(t: Optional[dict]) -> Optional[dict]:
    if t is None:
        return None
    out = dict(t)
    out["admitted_at"] = to_iso(t.get("admitted_at"))
    out["created_at"] = to_iso(t.get("created_at"))
    return out


# ----------------------------
# Identity: roles -> capabilities, resolved once per request
# ----------------------------
async def current_identity(
    request: Request, db: GatedAsyncSession = Depends(get_db),
) -> Identity:
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        uid = signer.user_id_from(auth[7:].strip())
        if uid is None:
            raise AuthError("invalid or expired access token")
        ident = await load_identity(db, uid)
        if ident is None:
            raise AuthError("unknown user")
        return ident

    # admin console session
    if request.session.get("admin_user"):
        user = await find_user_by_email(db, ADMIN_EMAIL)
        if user is not None:
            ident = await load_identity(db, user["id"])
            if ident is not None:
                return ident
    raise AuthError()


def require(capability: str):
    async def _dep(ident: Identity = Depends(current_identity)) -> Identity:
        if not ident.can(capability):
            raise ForbiddenError(f"missing capability {capability}")
        return ident
    return _dep


# ----------------------------
# Events
# ----------------------------
@app.get("/health")
async def health():
    return {"ok": True}


@app.get("/events")
async def list_events(db: GatedAsyncSession = Depends(get_db)):
    return {"items": await events.list_events(db)}


@app.get("/events/{event_id}")
async def get_event(event_id: str, db: GatedAsyncSession = Depends(get_db)):
    ev = await events.get_event(db, event_id)
    if ev is None:
        raise NotFoundError("event not found")
    return ev


# ----------------------------
# Checkout: tickets, coins, memberships
# ----------------------------
@app.post("/tickets/checkout")
async def ticket_checkout(
    payload: dict,
    ident: Identity = Depends(current_identity),
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    event_id = _str(payload, "eventId")
    ev = await events.get_event(db, event_id)
    if ev is None:
        raise NotFoundError("event not found")
    return await reconcile.start_checkout(
        db, adapter, user_id=ident.user_id, email=ident.email,
        purpose=payments.PURPOSE_TICKET, amount=int(ev["price"]),
        callback_url=PAYSTACK_CALLBACK_URL, event_id=event_id,
    )


@app.post("/tickets/purchase-with-coins")
async def ticket_purchase_with_coins(
    payload: dict,
    ident: Identity = Depends(current_identity),
    db: GatedAsyncSession = Depends(get_db),
):
    event_id = _str(payload, "eventId")
    result = await issuance.purchase_with_coins(
        db, qr, user_id=ident.user_id, event_id=event_id,
    )
    return {"ok": True, "ticket": _ticket_out(result.ticket),
            "qr_token": result.token}


@app.post("/coins/purchase")
async def coins_purchase(
    payload: dict,
    ident: Identity = Depends(current_identity),
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    coins = _int(payload, "coins")
    if coins <= 0:
        raise ValidationError("coins must be positive")
    return await reconcile.start_checkout(
        db, adapter, user_id=ident.user_id, email=ident.email,
        purpose=payments.PURPOSE_COINS, amount=coins * COIN_PRICE_KOBO,
        callback_url=PAYSTACK_CALLBACK_URL, meta={"coins": coins},
    )


@app.post("/memberships/checkout")
async def membership_checkout(
    payload: dict,
    ident: Identity = Depends(current_identity),
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    plan = memberships.get_plan(_str(payload, "tier"),
                                _str(payload, "interval"))
    return await reconcile.start_checkout(
        db, adapter, user_id=ident.user_id, email=ident.email,
        purpose=payments.PURPOSE_MEMBERSHIP, amount=plan.amount_kobo,
        callback_url=PAYSTACK_CALLBACK_URL,
        meta={"tier": plan.tier, "interval": plan.interval},
    )


@app.get("/memberships/me")
async def membership_me(
    ident: Identity = Depends(current_identity),
    db: GatedAsyncSession = Depends(get_db),
):
    return {"tier": ident.tier,
            "membership": await memberships.get_membership(db, ident.user_id)}


# ----------------------------
# Payment reconciliation: webhook push and client verify
# ----------------------------
@app.post("/payments/paystack/webhook")
async def paystack_webhook(
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    payload = await request.body()
    headers = dict(request.headers)
    return await reconcile.handle_webhook(
        db, adapter, qr, payload, headers,
        tolerance_kobo=AMOUNT_TOLERANCE_KOBO,
    )


@app.post("/api/payments/verify")
async def api_verify_payment(
    payload: dict,
    ident: Identity = Depends(current_identity),
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    reference = _str(payload, "reference")
    out = await reconcile.verify_reference(
        db, adapter, qr, reference, tolerance_kobo=AMOUNT_TOLERANCE_KOBO,
        user_id=ident.user_id,
    )
    if out.failure is FailureKind.EVENT_FULL:
        raise ConflictError(FailureKind.EVENT_FULL, out.detail,
                            extra={"reference": reference})
    if out.status == P_FAILED:
        raise ConflictError(out.failure or FailureKind.PAYMENT_FAILED,
                            out.detail, status_code=400,
                            extra={"reference": reference,
                                   "status": out.status})
    body = out.to_dict()
    body["ticket"] = _ticket_out(out.ticket)
    status_code = 202 if out.status == P_PENDING else 200
    return ORJSONResponse(body, status_code=status_code)


@app.get("/payments/verify")
async def browser_verify_payment(
    reference: str,
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    # gateway redirect lands here; never leave the user on an error page
    try:
        out = await reconcile.verify_reference(
            db, adapter, qr, reference, tolerance_kobo=AMOUNT_TOLERANCE_KOBO,
        )
        status = out.status
        error = out.failure.value if out.failure else ""
    except UpstreamError:
        status, error = P_PENDING, ""
    except NotFoundError:
        status, error = "unknown", ""
    return RedirectResponse(
        url="/payments/status?" + urlencode(
            {"reference": reference, "status": status, "error": error}),
        status_code=HTTP_303_SEE_OTHER,
    )


@app.get("/payments/status", response_class=HTMLResponse)
async def payment_status_page(request: Request, reference: str,
                              status: str = "pending", error: str = ""):
    return templates.TemplateResponse(
        request,
        "payment_status.html",
        {"reference": reference, "status": status, "error": error},
    )


# ----------------------------
# Tickets & admission
# ----------------------------
@app.get("/tickets")
async def my_tickets(
    ident: Identity = Depends(current_identity),
    db: GatedAsyncSession = Depends(get_db),
):
    items = await issuance.list_tickets(db, ident.user_id)
    return {"items": [_ticket_out(t) for t in items]}


@app.post("/tickets/{ticket_id}/token")
async def rotate_ticket_token(
    ticket_id: str,
    ident: Identity = Depends(current_identity),
    db: GatedAsyncSession = Depends(get_db),
):
    token = await issuance.rotate_token(db, qr, ticket_id, ident.user_id)
    return {"ticket_id": ticket_id, "qr_token": token}


@app.post("/admit")
async def admit_ticket(
    payload: dict,
    ident: Identity = Depends(require(CAN_SCAN)),
    db: GatedAsyncSession = Depends(get_db),
):
    res = await admission.admit(
        db, qr,
        ticket_id=_str(payload, "ticketId"),
        token=_str(payload, "token", required=False) or "",
        event_id=_str(payload, "eventId", required=False),
        scanner_id=ident.user_id,
    )
    body = res.to_dict()
    body["ticket"] = _ticket_out(res.ticket)
    return body


# ----------------------------
# Wallet, bank accounts, withdrawals
# ----------------------------
@app.get("/wallet")
async def my_wallet(
    ident: Identity = Depends(current_identity),
    db: GatedAsyncSession = Depends(get_db),
):
    w = await wallet.get_wallet(db, ident.user_id)
    w["updated_at"] = to_iso(w["updated_at"])
    return w


@app.get("/wallet/transactions")
async def my_wallet_transactions(
    limit: int = 50,
    ident: Identity = Depends(current_identity),
    db: GatedAsyncSession = Depends(get_db),
):
    items = await wallet.history(db, ident.user_id, limit=limit)
    for it in items:
        it["created_at"] = to_iso(it["created_at"])
    return {"items": items, "limit": limit}


@app.get("/banks/accounts")
async def my_bank_accounts(
    ident: Identity = Depends(current_identity),
    db: GatedAsyncSession = Depends(get_db),
):
    return {"items": await banks.list_accounts(db, ident.user_id)}


@app.post("/banks/accounts")
async def add_bank_account(
    payload: dict,
    ident: Identity = Depends(current_identity),
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    bank_code = _str(payload, "bankCode")
    number = _str(payload, "accountNumber")
    if bank_code not in banks.BANK_NAMES:
        raise ValidationError("Invalid bank selected")
    if len(number) != 10 or not number.isdigit():
        raise ValidationError("Account number must be exactly 10 digits")
    resolved = await adapter.resolve_account(number, bank_code)
    if resolved is None:
        raise ValidationError("Account verification failed")
    return await banks.save_account(
        db, user_id=ident.user_id, bank_code=bank_code,
        account_number=number, account_name=resolved["account_name"],
        verified=True,
    )


@app.post("/withdrawals")
async def create_withdrawal(
    payload: dict,
    ident: Identity = Depends(current_identity),
    db: GatedAsyncSession = Depends(get_db),
):
    return await withdrawals.request_withdrawal(
        db, user_id=ident.user_id,
        bank_account_id=_str(payload, "bankAccountId"),
        amount_coins=_int(payload, "amountCoins"),
        rate=COIN_NAIRA_RATE, min_coins=MIN_WITHDRAWAL_COINS,
    )


@app.get("/withdrawals")
async def my_withdrawals(
    ident: Identity = Depends(current_identity),
    db: GatedAsyncSession = Depends(get_db),
):
    return {"items": await withdrawals.list_withdrawals(
        db, user_id=ident.user_id)}


# ----------------------------
# Admin: console login
# ----------------------------
@app.get("/admin/login", response_class=HTMLResponse)
async def admin_login_get(request: Request, next: str | None = "/admin/stats"):
    return templates.TemplateResponse(
        request, "login.html", {"next": next, "error": None}
    )


@app.post("/admin/login", response_class=HTMLResponse)
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/admin/stats"),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        # only same-site paths
        dest = next if _local_path(next) else "/admin/stats"
        return RedirectResponse(url=dest, status_code=HTTP_303_SEE_OTHER)
    logger.warning("admin login failed for %r", username)
    return templates.TemplateResponse(
        request, "login.html",
        {"next": next, "error": "Invalid credentials."},
        status_code=401,
    )


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/admin/login",
                            status_code=HTTP_303_SEE_OTHER)


# ----------------------------
# Admin: events, tickets, payments
# ----------------------------
@app.post("/admin/events")
async def admin_create_event(
    payload: dict,
    ident: Identity = Depends(require(CAN_MANAGE_EVENTS)),
    db: GatedAsyncSession = Depends(get_db),
):
    starts_at = payload.get("startsAt")
    if not isinstance(starts_at, (int, float)):
        raise ValidationError("startsAt must be an epoch timestamp")
    return await events.create_event(
        db,
        title=_str(payload, "title"),
        venue=_str(payload, "venue", required=False) or "",
        starts_at=float(starts_at),
        max_capacity=_int(payload, "maxCapacity"),
        price=_int(payload, "price"),
        price_coins=_int(payload, "priceCoins", required=False),
        seated=bool(payload.get("seated", False)),
    )


@app.post("/admin/events/{event_id}/status")
async def admin_event_status(
    event_id: str,
    payload: dict,
    ident: Identity = Depends(require(CAN_MANAGE_EVENTS)),
    db: GatedAsyncSession = Depends(get_db),
):
    return await events.set_status(db, event_id, _str(payload, "status"))


@app.get("/admin/events/{event_id}/scans")
async def admin_event_scans(
    event_id: str,
    limit: int = 200,
    ident: Identity = Depends(require(CAN_SCAN)),
    db: GatedAsyncSession = Depends(get_db),
):
    items = await admission.scan_history(db, event_id, limit=limit)
    for it in items:
        it["scanned_at"] = to_iso(it["scanned_at"])
    return {"items": items, "limit": limit}


@app.post("/admin/tickets/{ticket_id}/refund")
async def admin_refund_ticket(
    ticket_id: str,
    payload: Optional[dict] = None,
    ident: Identity = Depends(require(CAN_REFUND)),
    db: GatedAsyncSession = Depends(get_db),
):
    res = await issuance.refund_ticket(
        db, ticket_id, admin_id=ident.user_id,
        invalidate=bool((payload or {}).get("invalidate", False)),
    )
    return {"ticket": _ticket_out(res["ticket"]),
            "refunded_coins": res["refunded_coins"]}


@app.get("/admin/payments/unreconciled")
async def admin_unreconciled(
    limit: int = 100,
    ident: Identity = Depends(require(CAN_RECONCILE)),
    db: GatedAsyncSession = Depends(get_db),
):
    items = await payments.list_unreconciled(db, limit=limit)
    for it in items:
        it["created_at"] = to_iso(it["created_at"])
        it["processed_at"] = to_iso(it["processed_at"])
    return {"items": items, "limit": limit}


@app.post("/admin/payments/{payment_id}/retry-issuance")
async def admin_retry_issuance(
    payment_id: str,
    ident: Identity = Depends(require(CAN_RECONCILE)),
    db: GatedAsyncSession = Depends(get_db),
):
    res = await issuance.retry_issuance(db, qr, payment_id)
    return {"ok": True, "ticket": _ticket_out(res.ticket)}


# ----------------------------
# Admin: withdrawals, wallets, stats
# ----------------------------
@app.get("/admin/withdrawals")
async def admin_withdrawals(
    status: Optional[str] = None,
    limit: int = 100,
    ident: Identity = Depends(require(CAN_PROCESS_WITHDRAWALS)),
    db: GatedAsyncSession = Depends(get_db),
):
    return {"items": await withdrawals.list_withdrawals(
        db, status=status, limit=limit)}


@app.post("/admin/withdrawals/{withdrawal_id}/{action}")
async def admin_withdrawal_action(
    withdrawal_id: str,
    action: str,
    payload: Optional[dict] = None,
    ident: Identity = Depends(require(CAN_PROCESS_WITHDRAWALS)),
    db: GatedAsyncSession = Depends(get_db),
):
    return await withdrawals.transition(
        db, withdrawal_id, action, ident.user_id,
        note=_str(payload or {}, "note", required=False),
    )


@app.post("/admin/wallets/{user_id}/adjust")
async def admin_wallet_adjust(
    user_id: str,
    payload: dict,
    ident: Identity = Depends(require(CAN_ADJUST_WALLETS)),
    db: GatedAsyncSession = Depends(get_db),
):
    delta = _int(payload, "delta")
    if delta == 0:
        raise ValidationError("delta must be non-zero")
    res = await wallet.adjust(
        db, user_id, delta, _str(payload, "adjustmentId"),
        _str(payload, "description", required=False)
        or f"Adjustment by {ident.user_id}",
    )
    body = {"applied": res.applied, "balance_coins": res.balance}
    if res.failure is not None:
        body["error"] = res.failure.value
    return body


@app.get("/admin/wallets/{user_id}/audit")
async def admin_wallet_audit(
    user_id: str,
    ident: Identity = Depends(require(CAN_ADJUST_WALLETS)),
    db: GatedAsyncSession = Depends(get_db),
):
    return await wallet.audit(db, user_id)


@app.get("/admin/stats")
async def admin_stats(
    ident: Identity = Depends(require(CAN_VIEW_STATS)),
    db: GatedAsyncSession = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
):
    return await stats.overview(db, cache)
