"""
Tests for the payment HTTP endpoints.
"""

import asyncio

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.api.payments import drain_pending_initiations
from app.config import settings
from app.database import Base
from app.errors import ProviderRejected, ProviderUnavailable
from app.main import app, wire_services
from app.models.payment import PaymentTransaction
from tests.conftest import FakeMpesaClient, RecordingNotifier, sqlite_url, stk_callback


async def _create_tables(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
def wired(tmp_path):
    """
    Wire the app against a fresh database without running the lifespan.
    NullPool keeps connections from leaking between event loops.
    """
    engine = create_async_engine(sqlite_url(tmp_path / "api.db"), poolclass=NullPool)
    asyncio.run(_create_tables(engine))

    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    client = FakeMpesaClient()
    notifier = RecordingNotifier()
    wire_services(app, session_maker, client, notifier)

    yield {"client": client, "notifier": notifier}


@pytest.fixture
def http(wired):
    return TestClient(app)


INITIATE_BODY = {
    "payerReference": "254712345678",
    "amount": 2000,
    "purpose": "premium-upgrade",
    "subjectReference": "car:42",
}


def test_health(http):
    response = http.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_initiate_and_settle_flow(http, wired):
    response = http.post("/api/payments/mpesa/initiate", json=INITIATE_BODY)

    assert response.status_code == 201
    data = response.json()
    assert data["correlationId"] == "ws_CO_01"
    transaction_id = data["transactionId"]

    status = http.get(f"/api/payments/{transaction_id}").json()
    assert status["state"] == "pushed"
    assert status["correlationId"] == "ws_CO_01"

    callback = http.post("/webhooks/mpesa/callback", json=stk_callback("ws_CO_01"))
    assert callback.status_code == 200
    assert callback.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

    status = http.get(f"/api/payments/{transaction_id}").json()
    assert status["state"] == "settled"
    assert status["providerReceiptId"] == "QGR7XYZ1"
    assert status["amount"] == "2000.00"
    assert len(wired["notifier"].events) == 1

    # Provider redelivery
    again = http.post("/webhooks/mpesa/callback", json=stk_callback("ws_CO_01"))
    assert again.json()["ResultCode"] == 0
    assert len(wired["notifier"].events) == 1


def test_initiate_rejects_bad_phone(http, wired):
    response = http.post(
        "/api/payments/mpesa/initiate",
        json={**INITIATE_BODY, "payerReference": "12345"},
    )

    assert response.status_code == 400
    assert response.json()["kind"] == "InvalidPayerReference"
    assert wired["client"].pushes == []


def test_initiate_rejects_wrong_premium_price(http):
    response = http.post(
        "/api/payments/mpesa/initiate",
        json={**INITIATE_BODY, "amount": 2500},
    )

    assert response.status_code == 400
    assert response.json()["kind"] == "InvalidAmount"


def test_initiate_rejects_unknown_purpose(http):
    response = http.post(
        "/api/payments/mpesa/initiate",
        json={**INITIATE_BODY, "purpose": "car-wash"},
    )

    assert response.status_code == 422


@pytest.mark.parametrize(
    "error,status_code",
    [
        (ProviderRejected("Bad Request - Invalid PhoneNumber"), 502),
        (ProviderUnavailable("M-Pesa request timed out"), 503),
    ],
)
def test_initiate_provider_failure(http, wired, error, status_code):
    wired["client"].error = error

    response = http.post("/api/payments/mpesa/initiate", json=INITIATE_BODY)

    assert response.status_code == status_code
    assert response.json() == {"kind": error.kind, "message": error.message}


@pytest_asyncio.fixture
async def slow_provider(session_maker, monkeypatch):
    """App wired to a provider slower than the caller is willing to wait."""
    monkeypatch.setattr(settings, "initiation_wait_seconds", 0.05)
    client = FakeMpesaClient(delay=0.3)
    wire_services(app, session_maker, client, RecordingNotifier())

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client, client


async def _payment_states(session_maker):
    async with session_maker() as session:
        rows = (await session.execute(select(PaymentTransaction))).scalars().all()
    return [(row.state, row.correlation_id, row.failure_reason) for row in rows]


@pytest.mark.asyncio
async def test_timed_out_initiation_finishes_in_background(slow_provider, session_maker):
    http_client, client = slow_provider

    response = await http_client.post("/api/payments/mpesa/initiate", json=INITIATE_BODY)

    assert response.status_code == 504
    assert response.json()["kind"] == "InitiationTimeout"
    assert len(client.pushes) == 1
    assert len(app.state.pending_initiations) == 1

    await drain_pending_initiations(app.state.pending_initiations, timeout=5)

    assert app.state.pending_initiations == set()
    assert await _payment_states(session_maker) == [("pushed", "ws_CO_01", None)]


@pytest.mark.asyncio
async def test_shutdown_cancels_stuck_initiation_and_fails_it(slow_provider, session_maker):
    http_client, client = slow_provider
    client.delay = 5

    response = await http_client.post("/api/payments/mpesa/initiate", json=INITIATE_BODY)
    assert response.status_code == 504

    await drain_pending_initiations(app.state.pending_initiations, timeout=0.05)

    assert app.state.pending_initiations == set()
    assert await _payment_states(session_maker) == [("failed", None, "initiation-interrupted")]


def test_get_unknown_payment(http):
    response = http.get("/api/payments/00000000-0000-0000-0000-000000000000")

    assert response.status_code == 404
    assert response.json()["kind"] == "NotFound"


def test_callback_unknown_correlation_is_acknowledged(http):
    response = http.post("/webhooks/mpesa/callback", json=stk_callback("ws_CO_NOPE"))

    assert response.status_code == 200
    assert response.json()["ResultCode"] == 0


def test_callback_malformed_payload(http):
    response = http.post("/webhooks/mpesa/callback", json={"Body": {}})

    assert response.status_code == 400
    assert response.json()["ResultCode"] == 1


def test_callback_non_json_body(http):
    response = http.post(
        "/webhooks/mpesa/callback",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["ResultCode"] == 1


def test_callback_token_is_enforced(http, monkeypatch):
    monkeypatch.setattr(settings, "mpesa_callback_token", "s3cret")

    rejected = http.post("/webhooks/mpesa/callback", json=stk_callback("ws_CO_NOPE"))
    accepted = http.post("/webhooks/mpesa/callback?token=s3cret", json=stk_callback("ws_CO_NOPE"))

    assert rejected.status_code == 401
    assert accepted.status_code == 200
