"""Payment gateway collaborator.

``initiate`` answers with a terminal status, or ``PENDING`` when the
outcome arrives later through the webhook. ``call_with_timeout`` bounds
the blocking call so a payment never waits on the gateway indefinitely.
"""
from __future__ import annotations

import time
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional

from flask import current_app

from circulation.errors import GatewayTimeout
from circulation.models.payment import PaymentStatus

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="payment-gateway")


@dataclass
class GatewayResponse:
    transaction_id: str
    status: str
    message: str = ""


class PaymentGateway:
    name = "base"

    def initiate(self, amount: Decimal, method: str, customer_info: dict) -> GatewayResponse:
        raise NotImplementedError

    def refund(self, transaction_id: str, amount: Decimal) -> bool:
        raise NotImplementedError


@dataclass
class SimulatedGateway(PaymentGateway):
    """Deterministic stand-in for a card/UPI processor."""

    decline_methods: Iterable[str] = ()
    pending_methods: Iterable[str] = ()
    delay: float = 0.0
    refunds: List[tuple] = field(default_factory=list)

    name = "simulated"

    def initiate(self, amount, method, customer_info):
        if self.delay:
            time.sleep(self.delay)
        txn = f"SIM-{uuid.uuid4().hex[:16].upper()}"
        if method in set(self.decline_methods):
            return GatewayResponse(txn, PaymentStatus.FAILED, f"{method} payment declined")
        if method in set(self.pending_methods):
            return GatewayResponse(txn, PaymentStatus.PENDING, "Awaiting confirmation")
        return GatewayResponse(txn, PaymentStatus.COMPLETED, "Approved")

    def refund(self, transaction_id, amount):
        self.refunds.append((transaction_id, amount))
        return True


def get_gateway() -> PaymentGateway:
    return current_app.extensions["payment_gateway"]


def call_with_timeout(fn, *args, timeout: Optional[float] = None):
    timeout = current_app.config.get("PAYMENT_GATEWAY_TIMEOUT", 10) if timeout is None else timeout
    future = _executor.submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        raise GatewayTimeout(timeout=timeout)
