"""
Settlement events - tell downstream collaborators that a payment settled.

Order fulfilment and listing upgrades subscribe to the Redis channel;
the ledger stays the source of truth for anyone who misses a message.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal

from pydantic import BaseModel
from redis.asyncio.client import Redis

from app.models.payment import PaymentTransaction

logger = logging.getLogger(__name__)


class SettlementEvent(BaseModel):
    """Emitted exactly once per transaction reaching `settled`."""

    transactionId: str
    subjectReference: str
    purpose: str
    amount: Decimal
    providerReceiptId: str

    @classmethod
    def from_transaction(cls, txn: PaymentTransaction) -> "SettlementEvent":
        return cls(
            transactionId=str(txn.id),
            subjectReference=txn.subject_reference,
            purpose=txn.purpose,
            amount=txn.amount,
            providerReceiptId=txn.provider_receipt_id,
        )


class SettlementNotifier(ABC):
    """Publishes settlement events."""

    @abstractmethod
    async def publish(self, event: SettlementEvent) -> None:
        ...


class LoggingSettlementNotifier(SettlementNotifier):
    """Used when no Redis is configured: the event only reaches the logs."""

    async def publish(self, event: SettlementEvent) -> None:
        logger.info(f"Settlement event: {event.model_dump_json()}")


class RedisSettlementNotifier(SettlementNotifier):
    """Publishes JSON-encoded events on a Redis pub/sub channel."""

    def __init__(self, redis: Redis, channel: str):
        self.redis = redis
        self.channel = channel

    async def publish(self, event: SettlementEvent) -> None:
        receivers = await self.redis.publish(self.channel, event.model_dump_json())
        logger.info(
            f"Settlement event for {event.transactionId} published to {self.channel} "
            f"({receivers} subscribers)"
        )
