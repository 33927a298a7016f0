"""
Payment capability used by the booking workflow.

``PaymentGateway`` is the seam a real processor plugs into. ``MockPaymentGateway``
simulates processing latency and a non-100% success rate. ``charge`` records
every attempt in the ``payment`` collection so a retried idempotency key never
charges twice.
"""
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from pymongo.database import Database

from config import settings
from database import utcnow
from schemas import Payment

logger = logging.getLogger("parking.payments")


@dataclass
class PaymentResult:
    success: bool
    transaction_id: Optional[str]
    message: str


class PaymentGateway(ABC):
    @abstractmethod
    def charge(self, amount: float, method: str) -> PaymentResult:
        ...

    @abstractmethod
    def refund(self, transaction_id: str, amount: float) -> None:
        ...


class MockPaymentGateway(PaymentGateway):
    def __init__(self, latency: float = 1.0, failure_rate: float = 0.1, rng: Optional[random.Random] = None):
        self.latency = latency
        self.failure_rate = failure_rate
        self.rng = rng or random.Random()

    def charge(self, amount: float, method: str) -> PaymentResult:
        if self.latency > 0:
            time.sleep(self.latency)
        # reject only when the draw falls strictly below the failure rate
        success = self.rng.random() >= self.failure_rate
        if not success:
            return PaymentResult(False, None, "Payment failed")
        txn = f"TXN{int(time.time() * 1000)}{self.rng.randint(0, 999)}"
        return PaymentResult(True, txn, "Payment successful")

    def refund(self, transaction_id: str, amount: float) -> None:
        logger.info("mock refund of %.2f for %s", amount, transaction_id)


_gateway: Optional[PaymentGateway] = None


def get_payment_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = MockPaymentGateway(
            latency=settings.PAYMENT_LATENCY_SECS,
            failure_rate=settings.PAYMENT_FAILURE_RATE,
        )
    return _gateway


def charge(
    db: Database,
    gateway: PaymentGateway,
    amount: float,
    method: str,
    idempotency_key: Optional[str] = None,
) -> PaymentResult:
    """Charge through ``gateway`` unless this key already has a successful charge."""
    if idempotency_key:
        prior = db["payment"].find_one({"idempotencyKey": idempotency_key, "status": "success"})
        if prior:
            if prior.get("amount") != amount:
                logger.warning("idempotency key %s reused with a different amount", idempotency_key)
            else:
                logger.info("reusing transaction %s for key %s", prior.get("transactionId"), idempotency_key)
                return PaymentResult(True, prior.get("transactionId"), "Payment successful")

    result = gateway.charge(amount, method)
    record = Payment(
        idempotencyKey=idempotency_key,
        amount=amount,
        method=method,
        status="success" if result.success else "failed",
        transactionId=result.transaction_id,
    ).model_dump()
    record["createdAt"] = utcnow()
    db["payment"].insert_one(record)
    if result.success:
        logger.info("payment of %.2f via %s succeeded: %s", amount, method, result.transaction_id)
    else:
        logger.warning("payment of %.2f via %s failed: %s", amount, method, result.message)
    return result


def refund(db: Database, gateway: PaymentGateway, transaction_id: Optional[str], amount: float) -> None:
    if not transaction_id:
        return
    gateway.refund(transaction_id, amount)
    db["payment"].update_many(
        {"transactionId": transaction_id},
        {"$set": {"status": "refunded", "refundedAt": utcnow()}},
    )
