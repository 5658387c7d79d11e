"""
Tests for PaymentInitiationService.
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.config import Settings
from app.errors import (
    AuthError,
    InvalidAmount,
    InvalidPayerReference,
    InvalidTransition,
    ProviderRejected,
    ProviderUnavailable,
)
from app.fsm.states import PaymentState
from app.models.payment import PaymentTransaction
from app.services.initiation_service import PaymentInitiationService
from tests.conftest import FakeMpesaClient, make_pushed


def make_service(ledger, client) -> PaymentInitiationService:
    return PaymentInitiationService(ledger, client, Settings())


async def all_payments(session_maker):
    async with session_maker() as session:
        return (await session.execute(select(PaymentTransaction))).scalars().all()


@pytest.mark.asyncio
async def test_initiate_premium_upgrade(ledger, fake_client):
    service = make_service(ledger, fake_client)

    result = await service.initiate(
        payer_reference="254712345678",
        amount=2000,
        purpose="premium-upgrade",
        subject_reference="car:42",
    )

    assert result.correlation_id == "ws_CO_01"
    txn = await ledger.get_by_id(result.transaction_id)
    assert txn.state == PaymentState.PUSHED.value
    assert txn.correlation_id == "ws_CO_01"
    assert txn.amount == Decimal("2000")
    assert txn.subject_reference == "car:42"
    assert txn.account_reference.startswith("PRM")

    push = fake_client.pushes[0]
    assert push["payer_reference"] == "254712345678"
    assert push["reference"] == txn.account_reference
    assert push["description"] == "Premium"


@pytest.mark.asyncio
async def test_initiate_normalises_local_number(ledger, fake_client):
    service = make_service(ledger, fake_client)

    result = await service.initiate("0712 345 678", Decimal("150000"), "purchase-payment", "car:9")

    txn = await ledger.get_by_id(result.transaction_id)
    assert txn.payer_reference == "254712345678"
    assert fake_client.pushes[0]["payer_reference"] == "254712345678"


@pytest.mark.asyncio
async def test_deposit_is_open_amount(ledger, fake_client):
    service = make_service(ledger, fake_client)

    result = await service.initiate("254712345678", 12345, "deposit", "car:3")

    txn = await ledger.get_by_id(result.transaction_id)
    assert txn.amount == Decimal("12345")
    assert txn.account_reference.startswith("DEP")


@pytest.mark.asyncio
@pytest.mark.parametrize("phone", ["12345", "254812345678", ""])
async def test_invalid_payer_reference(ledger, fake_client, phone):
    service = make_service(ledger, fake_client)

    with pytest.raises(InvalidPayerReference):
        await service.initiate(phone, 100, "deposit", "car:1")

    assert fake_client.pushes == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "amount,purpose",
    [
        (0, "deposit"),
        (-5, "deposit"),
        ("10.50", "deposit"),
        ("abc", "deposit"),
        (250001, "purchase-payment"),
        (2500, "premium-upgrade"),
        (100, "car-wash"),
    ],
)
async def test_invalid_amount(ledger, fake_client, amount, purpose):
    service = make_service(ledger, fake_client)

    with pytest.raises(InvalidAmount):
        await service.initiate("254712345678", amount, purpose, "car:1")

    assert fake_client.pushes == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        ProviderRejected("Bad Request - Invalid PhoneNumber", code="400.002.02"),
        ProviderUnavailable("M-Pesa request timed out"),
        AuthError("Failed to authenticate with M-Pesa"),
    ],
)
async def test_provider_failure_marks_record_failed(ledger, session_maker, error):
    client = FakeMpesaClient(error=error)
    service = make_service(ledger, client)

    with pytest.raises(type(error)):
        await service.initiate("254712345678", 2000, "premium-upgrade", "car:42")

    rows = await all_payments(session_maker)

    assert len(rows) == 1
    assert rows[0].state == PaymentState.FAILED.value
    assert rows[0].correlation_id is None
    assert error.kind in rows[0].failure_reason


@pytest.mark.asyncio
async def test_each_initiation_gets_its_own_record(ledger, fake_client):
    service = make_service(ledger, fake_client)

    first = await service.initiate("254712345678", 2000, "premium-upgrade", "car:42")
    second = await service.initiate("254712345678", 2000, "premium-upgrade", "car:42")

    assert first.transaction_id != second.transaction_id
    assert first.correlation_id != second.correlation_id


@pytest.mark.asyncio
async def test_unexpected_push_error_marks_record_failed(ledger, session_maker):
    client = FakeMpesaClient(error=RuntimeError("socket closed"))
    service = make_service(ledger, client)

    with pytest.raises(RuntimeError):
        await service.initiate("254712345678", 2000, "premium-upgrade", "car:42")

    rows = await all_payments(session_maker)
    assert len(rows) == 1
    assert rows[0].state == PaymentState.FAILED.value
    assert rows[0].failure_reason == "unexpected-error"


@pytest.mark.asyncio
async def test_reused_correlation_marks_record_failed(ledger, fake_client, session_maker):
    existing = await make_pushed(ledger, correlation_id="ws_CO_01")
    service = make_service(ledger, fake_client)

    # FakeMpesaClient hands out ws_CO_01 for its first push
    with pytest.raises(InvalidTransition):
        await service.initiate("254712345678", 5000, "premium-upgrade", "car:7")

    rows = {row.id: row for row in await all_payments(session_maker)}
    assert rows[existing.id].state == PaymentState.PUSHED.value
    assert rows[existing.id].correlation_id == "ws_CO_01"

    new = next(row for row in rows.values() if row.id != existing.id)
    assert new.state == PaymentState.FAILED.value
    assert new.correlation_id is None
    assert new.failure_reason == "duplicate-correlation"


@pytest.mark.asyncio
async def test_cancelled_push_marks_record_failed(ledger, session_maker):
    client = FakeMpesaClient(delay=5)
    service = make_service(ledger, client)

    task = asyncio.ensure_future(
        service.initiate("254712345678", 2000, "premium-upgrade", "car:42")
    )
    while not client.pushes:
        await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    rows = await all_payments(session_maker)
    assert len(rows) == 1
    assert rows[0].state == PaymentState.FAILED.value
    assert rows[0].failure_reason == "initiation-interrupted"
