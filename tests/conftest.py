"""
Pytest configuration and fixtures.
"""

import sys
import os
import asyncio
from decimal import Decimal
from typing import AsyncGenerator, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker

# Add app to path
sys.path.append(os.getcwd())

from app.database import Base
import app.models  # noqa: F401
from app.fsm.states import PaymentPurpose
from app.services.ledger_service import TransactionLedger
from app.services.mpesa_client import PushAcceptance
from app.services.settlement_events import SettlementEvent, SettlementNotifier


def sqlite_url(path) -> str:
    # File-backed so concurrent sessions use separate connections
    return f"sqlite+aiosqlite:///{path}"


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Create async engine for tests."""
    engine = create_async_engine(
        sqlite_url(tmp_path / "payments.db"),
        echo=False,
        connect_args={"timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def ledger(session_maker) -> TransactionLedger:
    return TransactionLedger(session_maker)


class FakeMpesaClient:
    """Stands in for MpesaClient; records every push it is asked to send."""

    def __init__(self, error: Optional[Exception] = None, delay: float = 0.0):
        self.error = error
        self.delay = delay
        self.pushes: List[dict] = []

    async def push_payment_request(self, payer_reference, amount, reference, description):
        self.pushes.append(
            {
                "payer_reference": payer_reference,
                "amount": amount,
                "reference": reference,
                "description": description,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return PushAcceptance(
            correlation_id=f"ws_CO_{len(self.pushes):02d}",
            merchant_request_id=f"29115-3462056-{len(self.pushes)}",
            response_code="0",
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
        )


class RecordingNotifier(SettlementNotifier):
    def __init__(self, error: Optional[Exception] = None):
        self.events: List[SettlementEvent] = []
        self.error = error

    async def publish(self, event: SettlementEvent) -> None:
        if self.error is not None:
            raise self.error
        self.events.append(event)


@pytest.fixture
def fake_client() -> FakeMpesaClient:
    return FakeMpesaClient()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


async def make_pushed(
    ledger: TransactionLedger,
    correlation_id: str = "ws_CO_01",
    amount: Decimal = Decimal("2000.00"),
    purpose: PaymentPurpose = PaymentPurpose.PREMIUM_UPGRADE,
    subject_reference: str = "car:42",
):
    """A ledger record that has been pushed and is waiting for its callback."""
    txn = await ledger.create(
        payer_reference="254712345678",
        amount=amount,
        purpose=purpose,
        subject_reference=subject_reference,
    )
    return await ledger.attach_correlation(txn.id, correlation_id)


def stk_callback(
    correlation_id: str = "ws_CO_01",
    result_code: int = 0,
    result_desc: str = "The service request is processed successfully.",
    amount=2000,
    receipt: Optional[str] = "QGR7XYZ1",
    phone=254712345678,
) -> dict:
    """Build an STK callback payload the way Daraja sends it."""
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": correlation_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        items = [{"Name": "TransactionDate", "Value": 20261017102115}]
        if amount is not None:
            items.append({"Name": "Amount", "Value": amount})
        if receipt is not None:
            items.append({"Name": "MpesaReceiptNumber", "Value": receipt})
        if phone is not None:
            items.append({"Name": "PhoneNumber", "Value": phone})
        callback["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": callback}}
