from __future__ import annotations
import asyncio
from typing import List, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, Header, HTTPException, Request
from fastapi import WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from loguru import logger
from pydantic import BaseModel, Field
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from . import settings
from .booking import Booking
from .checkin import CheckInDesk
from .errors import (
    ForbiddenError, MalformedPayloadError, NotFoundError, ProviderError,
    TicketingError,
)
from .helpers import ct_equal, to_iso
from .infra import timings
from .infra.logs import setup_logging
from .infra.sql import make_async_engine
from .infra.timings import timeit
from .model.db import Base, CARD_SESSION, MM_CHECKOUT
from .model.tickets import TicketStore
from .model.tokencache import new_cache
from .notify import Notifier, event_channel, new_notifier
from .payments import (
    CardProvider, MockPay, MpesaClient, SignatureError, new_card_provider,
    parse_callback,
)
from .payments.mockpay import sign
from .reconcile import Reconciler

engine, SessionAsync, gated = make_async_engine(settings.DATABASE_URL)

app = FastAPI(
    title="EventVerse",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=settings.SESSION_SECRET)


# ----------------------------
# Error mapping
# ----------------------------
@app.exception_handler(TicketingError)
async def _ticketing_error(request: Request, exc: TicketingError):
    content = {"detail": exc.message}
    if isinstance(exc, ProviderError):
        content.update(code=exc.code, retryable=exc.retryable)
    return ORJSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    return ORJSONResponse(
        status_code=400,
        content={"detail": "Invalid input",
                 "errors": jsonable_encoder(exc.errors())},
    )


# ----------------------------
# Dependencies
# ----------------------------
async def get_store() -> TicketStore:
    async with SessionAsync() as session:
        yield TicketStore(db=session, gated=gated)


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_card(request: Request) -> CardProvider:
    return request.app.state.card


def get_mpesa(request: Request) -> MpesaClient:
    return request.app.state.mpesa


def get_reconciler(
    store: TicketStore = Depends(get_store),
    notifier: Notifier = Depends(get_notifier),
) -> Reconciler:
    return Reconciler(store, notifier)


def get_booking(store: TicketStore = Depends(get_store)) -> Booking:
    return Booking(store)


def get_desk(store: TicketStore = Depends(get_store)) -> CheckInDesk:
    return CheckInDesk(store)


# identity is established upstream; we only read who is acting
def current_user(x_user_id: Optional[str] = Header(default=None)):
    return (x_user_id or "").strip() or None


def require_user(user_id: Optional[str] = Depends(current_user)) -> str:
    if not user_id:
        raise HTTPException(401, detail="Unauthorized")
    return user_id


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(401, detail="admin login required")


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    setup_logging()
    print('\n' * 2)
    print('=' * 50)
    print('EventVerse is starting up...')
    print(f'   - Card payments:  {settings.CARD_BACKEND}')
    print(f'   - M-Pesa:         {settings.MPESA_ENVIRONMENT}')
    print(f'   - Token cache:    {settings.TOKEN_CACHE_BACKEND}')
    print(f'   - Notifications:  {settings.NOTIFY_BACKEND}')
    print('=' * 50)
    print('\n' * 2)


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@app.on_event("startup")
async def _services_start():
    app.state.http = httpx.AsyncClient(
        timeout=20.0,
        limits=httpx.Limits(max_connections=128,
                            max_keepalive_connections=64),
    )
    app.state.redis = None
    if "redis" in (settings.TOKEN_CACHE_BACKEND, settings.NOTIFY_BACKEND):
        app.state.redis = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    app.state.card = new_card_provider()
    app.state.notifier = new_notifier(
        settings.NOTIFY_BACKEND, app.state.redis
    )
    app.state.mpesa = MpesaClient(
        app.state.http, new_cache(r=app.state.redis)
    )


@app.on_event("shutdown")
async def _services_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.close()
        app.state.redis = None


# ----------------------------
# Request bodies
# ----------------------------
class CreateTickets(BaseModel):
    event_id: str
    quantity: int = Field(default=1, ge=1)


class CardCheckout(BaseModel):
    ticket_ids: List[str] = Field(min_length=1)


class MpesaCheckout(BaseModel):
    ticket_ids: List[str] = Field(min_length=1)
    phone_number: str


class MpesaStatus(BaseModel):
    checkout_request_id: str = Field(min_length=1)


class Sweep(BaseModel):
    user_id: Optional[str] = None


class Scan(BaseModel):
    qr_code_data: str


def ticket_view(t: dict, with_qr: bool = True) -> dict:
    out = {
        "id": t["id"],
        "event_id": t["event_id"],
        "user_id": t["user_id"],
        "status": t["status"],
        "price": t["price"],
        "quantity": t["quantity"],
        "payment_method": t["payment_method"],
        "created_at": to_iso(t["created_at"]),
        "checked_in_at": to_iso(t["checked_in_at"]),
    }
    if with_qr:
        out["qr_code_data"] = t["qr_payload"]
        out["qr_code_image"] = t["qr_image"]
    return out


# ----------------------------
# Booking
# ----------------------------
@app.post("/api/tickets", status_code=201)
async def create_tickets(
    body: CreateTickets,
    user_id: Optional[str] = Depends(current_user),
    booking: Booking = Depends(get_booking),
):
    tickets = await booking.create_tickets(
        body.event_id, body.quantity, user_id
    )
    return {
        "tickets": [ticket_view(t) for t in tickets],
        "user_id": tickets[0]["user_id"],
    }


@app.get("/api/tickets/{ticket_id}")
async def get_ticket(
    ticket_id: str,
    user_id: str = Depends(require_user),
    store: TicketStore = Depends(get_store),
):
    t = await store.get_ticket(ticket_id)
    if t is None:
        raise NotFoundError("Ticket not found")
    if user_id not in (t["user_id"], t["organizer_id"]):
        raise ForbiddenError()
    return {"ticket": ticket_view(t)}


@app.post("/api/tickets/checkout")
async def card_checkout(
    body: CardCheckout,
    user_id: str = Depends(require_user),
    booking: Booking = Depends(get_booking),
    card: CardProvider = Depends(get_card),
):
    session = await booking.start_card_checkout(
        body.ticket_ids, user_id, card
    )
    return {"session_id": session["session_id"],
            "url": session["redirect_url"]}


@app.post("/api/mpesa/checkout")
async def mpesa_checkout(
    body: MpesaCheckout,
    user_id: str = Depends(require_user),
    booking: Booking = Depends(get_booking),
    mpesa: MpesaClient = Depends(get_mpesa),
):
    started = await booking.start_mobile_money(
        body.ticket_ids, user_id, body.phone_number, mpesa
    )
    return {
        "success": True,
        **started,
        "message": "M-Pesa payment request sent to your phone. Please "
                   "complete the payment on your phone.",
    }


# ----------------------------
# Status checks and sweeps
# ----------------------------
@app.post("/api/mpesa/status")
async def mpesa_status(
    body: MpesaStatus,
    user_id: str = Depends(require_user),
    reconciler: Reconciler = Depends(get_reconciler),
    mpesa: MpesaClient = Depends(get_mpesa),
):
    report = await reconciler.check_status(
        MM_CHECKOUT, body.checkout_request_id, user_id, mpesa.stk_query
    )
    return report.as_dict()


@app.get("/api/tickets/session/{session_id}")
async def card_session_status(
    session_id: str,
    user_id: str = Depends(require_user),
    reconciler: Reconciler = Depends(get_reconciler),
    card: CardProvider = Depends(get_card),
):
    report = await reconciler.check_status(
        CARD_SESSION, session_id, user_id, card.retrieve_session
    )
    return {**report.as_dict(), "confirmed": report.status == "CONFIRMED"}


@app.post("/api/tickets/verify-all-pending")
async def verify_all_pending(
    request: Request,
    body: Optional[Sweep] = None,
    user_id: Optional[str] = Depends(current_user),
    reconciler: Reconciler = Depends(get_reconciler),
    card: CardProvider = Depends(get_card),
    mpesa: MpesaClient = Depends(get_mpesa),
):
    # buyers sweep their own tickets; admins may sweep everyone's
    if is_admin(request):
        owner = body.user_id if body else None
    elif user_id:
        owner = user_id
    else:
        raise HTTPException(401, detail="Unauthorized")

    async with timeit("sweep"):
        cards = await reconciler.sweep(
            CARD_SESSION, card.retrieve_session, user_id=owner
        )
        mobile = await reconciler.sweep(
            MM_CHECKOUT, mpesa.stk_query, user_id=owner
        )
    return {
        "success": True,
        "updated": cards.updated + mobile.updated,
        "errors": cards.errors + mobile.errors,
        "total": cards.total + mobile.total,
    }


@app.post("/api/admin/expire-pending")
async def expire_pending(
    request: Request,
    reconciler: Reconciler = Depends(get_reconciler),
):
    require_admin(request)
    expired = await reconciler.expire_pending(settings.PENDING_TTL_SECONDS)
    return {"expired": len(expired), "ticket_ids": expired,
            "ttl_seconds": settings.PENDING_TTL_SECONDS}


# ----------------------------
# Webhook endpoints
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    card: CardProvider = Depends(get_card),
    reconciler: Reconciler = Depends(get_reconciler),
):
    payload = await request.body()
    headers = dict(request.headers)

    try:
        outcome = card.parse_webhook(payload, headers)
    except SignatureError as e:
        logger.warning("{} webhook rejected: {}", card.name, e)
        raise HTTPException(400, detail=str(e))
    except MalformedPayloadError as e:
        if not settings.WEBHOOK_ACK_MALFORMED:
            raise
        logger.warning("{} webhook ignored: {}", card.name, e.message)
        return {"received": True, "ignored": e.message}
    if outcome is None:
        return {"received": True}

    try:
        rec = await reconciler.apply(outcome)
    except Exception:
        if not settings.WEBHOOK_ACK_ON_ERROR:
            raise
        logger.exception(
            "{} webhook for {} failed", card.name, outcome.correlation_id
        )
        return {"received": True, "processed": False}
    return {
        "received": True,
        "idempotent": rec.already_handled,
        "confirmed": len(rec.transitioned),
    }


MPESA_ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}


@app.post("/api/mpesa/callback")
async def mpesa_callback(
    request: Request,
    reconciler: Reconciler = Depends(get_reconciler),
):
    try:
        outcome = parse_callback(await request.json())
    except (ValueError, MalformedPayloadError) as e:
        message = getattr(e, "message", "Invalid JSON")
        if not settings.WEBHOOK_ACK_MALFORMED:
            raise MalformedPayloadError(message)
        logger.warning("M-Pesa callback ignored: {}", message)
        return MPESA_ACCEPTED

    logger.info(
        "M-Pesa callback: checkout={} result={} {}",
        outcome.correlation_id, outcome.extra.get("result_code"),
        outcome.extra.get("result_desc"),
    )
    try:
        await reconciler.apply(outcome)
    except Exception:
        if not settings.WEBHOOK_ACK_ON_ERROR:
            raise
        logger.exception(
            "M-Pesa callback for {} failed", outcome.correlation_id
        )
    return MPESA_ACCEPTED


@app.get("/api/mpesa/callback")
async def mpesa_callback_alive():
    return {"status": "M-Pesa callback endpoint is active"}


# ----------------------------
# Check-in
# ----------------------------
@app.post("/api/tickets/scan")
async def scan_ticket(
    body: Scan,
    user_id: str = Depends(require_user),
    desk: CheckInDesk = Depends(get_desk),
):
    async with timeit("checkin.scan"):
        result = await desk.scan(body.qr_code_data, user_id)
    return result.as_dict()


@app.get("/api/events/{event_id}/attendance")
async def event_attendance(
    event_id: str,
    user_id: str = Depends(require_user),
    desk: CheckInDesk = Depends(get_desk),
):
    return await desk.attendance(event_id, user_id)


# ----------------------------
# Real-time ticket counts
# ----------------------------
async def _forward(websocket: WebSocket, pubsub) -> None:
    while True:
        msg = await pubsub.get_message(
            ignore_subscribe_messages=True, timeout=1.0
        )
        if msg is not None:
            await websocket.send_text(msg["data"])
        else:
            await asyncio.sleep(0.1)


async def _until_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


async def relay_channel(websocket: WebSocket, pubsub) -> None:
    """Forward pub/sub messages to the socket until either side goes away."""
    tasks = [
        asyncio.create_task(_forward(websocket, pubsub)),
        asyncio.create_task(_until_disconnect(websocket)),
    ]
    try:
        done, _ = await asyncio.wait(
            tasks, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
    for task in done:
        exc = task.exception()
        if exc is not None and not isinstance(exc, WebSocketDisconnect):
            raise exc


@app.websocket("/ws/events/{event_id}")
async def event_updates(websocket: WebSocket, event_id: str):
    r: Optional[redis.Redis] = getattr(websocket.app.state, "redis", None)
    await websocket.accept()
    if r is None or settings.NOTIFY_BACKEND != "redis":
        await websocket.close(code=1011)
        return
    pubsub = r.pubsub()
    await pubsub.subscribe(event_channel(event_id))
    try:
        await relay_channel(websocket, pubsub)
    finally:
        await pubsub.unsubscribe(event_channel(event_id))
        await pubsub.close()


# ----------------------------
# MockPay (development card provider)
# ----------------------------
def _mockpay(card: CardProvider) -> MockPay:
    if not isinstance(card, MockPay):
        raise HTTPException(404, detail="MockPay is not enabled")
    return card


@app.get("/mockpay/{psid}", response_class=HTMLResponse)
async def mockpay_screen(psid: str, card: CardProvider = Depends(get_card)):
    s = _mockpay(card).session(psid)
    amount = f"{int(s['amount']) / 100:.2f} {str(s['currency']).upper()}"
    buttons = "".join(
        f'<form method="post" action="/mockpay/{psid}/emit">'
        f'<button name="t" value="{k}">{k}</button></form>'
        for k in ("succeeded", "failed", "canceled")
    )
    return (
        f"<html><body><h1>MockPay</h1><p>Session {psid}</p>"
        f"<p>Amount: {amount}</p>{buttons}</body></html>"
    )


@app.post("/mockpay/{psid}/emit")
async def mockpay_emit(
    psid: str,
    request: Request,
    t: str = Form(...),
    card: CardProvider = Depends(get_card),
):
    mock = _mockpay(card)
    try:
        payload = mock.build_event(psid, t)
    except ValueError:
        raise HTTPException(400, detail="invalid kind")

    client_http: httpx.AsyncClient = request.app.state.http
    try:
        await client_http.post(
            settings.MOCK_WEBHOOK_URL,
            content=payload,
            headers={
                "x-mockpay-signature": sign(payload, mock.secret),
                "content-type": "application/json",
            },
        )
    except httpx.HTTPError as e:
        # the buyer can re-emit; the status poll also settles the session
        logger.warning("MockPay webhook delivery failed: {}", e)

    s = mock.session(psid)
    url = s["success_url"] if t == "succeeded" else s["cancel_url"]
    return RedirectResponse(url=str(url), status_code=HTTP_303_SEE_OTHER)


# ----------------------------
# Admin
# ----------------------------
@app.post("/admin/login")
async def admin_login(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
):
    ok_user = ct_equal(username.strip(), settings.ADMIN_USERNAME)
    ok_pass = ct_equal(password, settings.ADMIN_PASSWORD)
    if not (ok_user and ok_pass):
        raise HTTPException(401, detail="Invalid credentials.")
    request.session["admin_user"] = username.strip()
    return {"ok": True}


@app.post("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"ok": True}


@app.get("/api/admin/timings")
async def admin_timings(request: Request, reset: bool = False):
    require_admin(request)
    return {"items": timings.snapshot(reset=reset)}
