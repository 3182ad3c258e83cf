"""Payment gateway port and a simulated gateway.

`PaymentGateway` is the seam a real processor integration plugs into: an
idempotency key goes in, a success reference or a failure code comes out, and
every call is bounded by a timeout. `MockPaymentGateway` simulates latency and
declines so the checkout's retry and failure paths can be exercised without a
real provider.
"""

import asyncio
import logging
import random
import time
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from storefront.config import Config

logger = logging.getLogger(__name__)

COD = "COD"
MOCK_CARD = "MOCK_CARD"
MOCK_WALLET = "MOCK_WALLET"

GATEWAY_ERROR = "GATEWAY_ERROR"

WALLET_FAILURES = [
    ("INSUFFICIENT_BALANCE", "Wallet balance insufficient"),
    ("ACCOUNT_LOCKED", "Wallet account locked"),
]
CARD_FAILURES = [
    ("CARD_DECLINED", "Card declined"),
    ("INSUFFICIENT_FUNDS", "Insufficient funds"),
    ("CARD_EXPIRED", "Card expired"),
    ("INVALID_CARD", "Invalid card number"),
]


@dataclass(frozen=True)
class PaymentRequest:
    amount: Decimal
    method: str
    idempotency_key: str
    customer_id: int
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentResult:
    """Result of a charge or refund attempt."""

    success: bool
    gateway_ref: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    @abstractmethod
    def available_methods(self) -> List[str]:
        ...

    def validate_method(self, method: str) -> bool:
        return method.upper() in self.available_methods()

    @abstractmethod
    async def process_payment(self, request: PaymentRequest, timeout_ms: int = 30000) -> PaymentResult:
        """Charge the request amount; timeouts come back as a failed result."""
        ...

    @abstractmethod
    async def refund_payment(self, reference: str, amount: Decimal) -> PaymentResult:
        """Refund a previous charge."""
        ...


class MockPaymentGateway(PaymentGateway):
    """
    Simulated gateway with random latency and a configurable decline rate.

    Outcomes are replayed per idempotency key for `result_ttl_seconds`, the
    longest a checkout session can still ask for them. `calls` is only
    populated with `record_calls=True`.
    """

    def __init__(
        self,
        min_latency_ms: int = Config.PAYMENT_MIN_LATENCY_MS,
        max_latency_ms: int = Config.PAYMENT_MAX_LATENCY_MS,
        failure_rate: float = Config.PAYMENT_FAILURE_RATE,
        rng: Optional[random.Random] = None,
        record_calls: bool = False,
        result_ttl_seconds: float = Config.CHECKOUT_SESSION_TTL_SECONDS + Config.CHECKOUT_SESSION_RETENTION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_latency_ms = min_latency_ms
        self.max_latency_ms = max_latency_ms
        self.failure_rate = failure_rate
        self.rng = rng or random.Random()
        self.record_calls = record_calls
        self.result_ttl_seconds = result_ttl_seconds
        self.clock = clock
        self.calls: List[Dict[str, Any]] = []
        # key -> (expires_at, result), in expiry order
        self._results: "OrderedDict[str, Tuple[float, PaymentResult]]" = OrderedDict()

    def available_methods(self) -> List[str]:
        return [MOCK_CARD, MOCK_WALLET, COD]

    def _record(self, call: Dict[str, Any]) -> None:
        if self.record_calls:
            self.calls.append(call)

    def _expire_results(self) -> None:
        now = self.clock()
        while self._results:
            key, (expires_at, _) = next(iter(self._results.items()))
            if expires_at > now:
                break
            del self._results[key]

    def _remember(self, key: str, result: PaymentResult) -> None:
        self._results.pop(key, None)
        self._results[key] = (self.clock() + self.result_ttl_seconds, result)

    async def process_payment(self, request: PaymentRequest, timeout_ms: int = 30000) -> PaymentResult:
        self._record({
            "method": "process_payment",
            "amount": request.amount,
            "payment_method": request.method,
            "idempotency_key": request.idempotency_key,
        })

        # A provider replays the stored outcome for a known key
        self._expire_results()
        previous = self._results.get(request.idempotency_key)
        if previous is not None:
            return previous[1]

        started = time.monotonic()
        try:
            result = await asyncio.wait_for(self._charge(request), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.error(f"Payment gateway timeout after {timeout_ms}ms")
            return PaymentResult(
                success=False,
                error_code=GATEWAY_ERROR,
                error_message="Payment gateway timeout",
            )

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(f"Payment processed in {elapsed_ms:.0f}ms | Success: {result.success}")
        self._remember(request.idempotency_key, result)
        return result

    async def _charge(self, request: PaymentRequest) -> PaymentResult:
        method = request.method.upper()

        # Cash on delivery is collected later, nothing can decline it now
        if method == COD:
            return PaymentResult(success=True, gateway_ref=f"COD_{self._reference()}")

        latency_ms = self.rng.uniform(self.min_latency_ms, self.max_latency_ms)
        await asyncio.sleep(latency_ms / 1000)

        if self.rng.random() < self.failure_rate:
            failures = WALLET_FAILURES if "WALLET" in method else CARD_FAILURES
            code, message = self.rng.choice(failures)
            return PaymentResult(success=False, error_code=code, error_message=message)

        return PaymentResult(success=True, gateway_ref=f"MOCK_{self._reference()}")

    async def refund_payment(self, reference: str, amount: Decimal) -> PaymentResult:
        self._record({"method": "refund_payment", "reference": reference, "amount": amount})
        await asyncio.sleep(self.min_latency_ms / 1000)
        return PaymentResult(success=True, gateway_ref=f"REFUND_{reference}")

    @staticmethod
    def _reference() -> str:
        return uuid.uuid4().hex[:8].upper()
