import os
import tempfile

# settings are read at import time; point everything at throwaway backends
_TMP = tempfile.mkdtemp(prefix="eventverse-test-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/test.db"
os.environ["APP_URL"] = "http://testserver"
os.environ["CARD_BACKEND"] = "mock"
os.environ["MOCK_SECRET"] = "test-mock-secret"
os.environ["NOTIFY_BACKEND"] = "none"
os.environ["TOKEN_CACHE_BACKEND"] = "memory"
os.environ["MPESA_CONSUMER_KEY"] = "key"
os.environ["MPESA_CONSUMER_SECRET"] = "secret"
os.environ["MPESA_SHORTCODE"] = "174379"
os.environ["MPESA_PASSKEY"] = "passkey"
os.environ["MPESA_CALLBACK_URL"] = "http://testserver/api/mpesa/callback"
os.environ["USD_TO_KES_RATE"] = "130"

import json  # noqa: E402
from typing import Callable, Dict, List, Tuple  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import text  # noqa: E402

from eventverse import server  # noqa: E402
from eventverse.helpers import now_ts  # noqa: E402
from eventverse.model.db import Base  # noqa: E402
from eventverse.model.tickets import TicketStore  # noqa: E402
from eventverse.model.tokencache import MemoryTokenCache  # noqa: E402
from eventverse.payments import MockPay, MpesaClient  # noqa: E402

ORGANIZER = "org_1"
BUYER = "user_alice"


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, int]] = []

    async def ticket_count_changed(self, event_id: str,
                                   ticket_count: int) -> None:
        self.sent.append((event_id, ticket_count))


class FakeClock:
    def __init__(self, t: float = 1_700_000_000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class Daraja:
    """Scripted Daraja API behind an httpx.MockTransport."""

    def __init__(self) -> None:
        self.calls: List[httpx.Request] = []
        self.token_calls = 0
        self.push_response: Tuple[int, Dict] = (200, {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_191220191020363925",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        })
        self.query_response: Tuple[int, Dict] = (500, {
            "requestId": "1",
            "errorCode": "500.001.1001",
            "errorMessage": "The transaction is being processed",
        })

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        path = request.url.path
        if path == "/oauth/v1/generate":
            self.token_calls += 1
            return httpx.Response(200, json={
                "access_token": f"tok{self.token_calls}",
                "expires_in": "3599",
            })
        if path == "/mpesa/stkpush/v1/processrequest":
            status, body = self.push_response
            return httpx.Response(status, json=body)
        if path == "/mpesa/stkpushquery/v1/query":
            status, body = self.query_response
            return httpx.Response(status, json=body)
        return httpx.Response(404, json={"errorMessage": "not found"})

    def last_json(self, path: str) -> Dict:
        for request in reversed(self.calls):
            if request.url.path == path:
                return json.loads(request.content)
        raise AssertionError(f"no call to {path}")


@pytest_asyncio.fixture
async def db():
    async with server.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield server.engine
    # pooled aiosqlite connections belong to this test's event loop
    await server.engine.dispose()


@pytest_asyncio.fixture
async def new_store(db) -> Callable[[], TicketStore]:
    """Each call opens its own session, like separate requests do."""
    sessions = []

    def make() -> TicketStore:
        session = server.SessionAsync()
        sessions.append(session)
        return TicketStore(db=session, gated=server.gated)

    yield make
    for session in sessions:
        await session.close()


@pytest.fixture
def store(new_store) -> TicketStore:
    return new_store()


@pytest_asyncio.fixture
async def event(db) -> Dict:
    row = {
        "id": "evt_00000001",
        "org": ORGANIZER,
        "title": "Nairobi Tech Night",
        "cur": "USD",
        "price": 1000,
        "starts": now_ts() + 86400,
    }
    async with db.begin() as conn:
        await conn.execute(text("""
          INSERT INTO events(id, organizer_id, title, currency, base_price,
                             starts_at)
          VALUES (:id, :org, :title, :cur, :price, :starts)
        """), row)
    return row


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def daraja() -> Daraja:
    return Daraja()


@pytest_asyncio.fixture
async def mpesa_http(daraja):
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(daraja.handler)
    ) as http:
        yield http


@pytest.fixture
def mpesa(mpesa_http, clock) -> MpesaClient:
    return MpesaClient(
        mpesa_http, MemoryTokenCache(clock=clock),
        base_url="https://sandbox.safaricom.co.ke", clock=clock,
    )


@pytest.fixture
def mockpay() -> MockPay:
    return MockPay(secret="test-mock-secret")


@pytest_asyncio.fixture
async def api(db, mockpay, notifier, mpesa, mpesa_http):
    """HTTP client against the app; startup hooks do not run under
    ASGITransport so services are placed on app.state directly."""
    server.app.state.card = mockpay
    server.app.state.notifier = notifier
    server.app.state.mpesa = mpesa
    server.app.state.http = mpesa_http
    server.app.state.redis = None
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=server.app),
        base_url="http://testserver",
    ) as client:
        yield client


def as_user(user_id: str) -> Dict[str, str]:
    return {"x-user-id": user_id}
