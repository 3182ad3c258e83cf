import random
from decimal import Decimal

from storefront.payment_gateway import (
    CARD_FAILURES,
    GATEWAY_ERROR,
    WALLET_FAILURES,
    MockPaymentGateway,
    PaymentRequest,
)


def _request(method="MOCK_CARD", key="key-1", amount="59.99"):
    return PaymentRequest(amount=Decimal(amount), method=method, idempotency_key=key, customer_id=1)


def _gateway(**kwargs):
    options = dict(min_latency_ms=0, max_latency_ms=0, failure_rate=0, rng=random.Random(1), record_calls=True)
    options.update(kwargs)
    return MockPaymentGateway(**options)


class TestMockPaymentGateway:
    async def test_card_charge_succeeds(self):
        result = await _gateway().process_payment(_request())
        assert result.success is True
        assert result.gateway_ref.startswith("MOCK_")

    async def test_cash_on_delivery_never_fails(self):
        gateway = _gateway(failure_rate=1.0)
        result = await gateway.process_payment(_request(method="COD"))
        assert result.success is True
        assert result.gateway_ref.startswith("COD_")

    async def test_card_decline_codes(self):
        result = await _gateway(failure_rate=1.0).process_payment(_request())
        assert result.success is False
        assert result.error_code in {code for code, _ in CARD_FAILURES}
        assert result.error_message

    async def test_wallet_decline_codes(self):
        result = await _gateway(failure_rate=1.0).process_payment(_request(method="MOCK_WALLET"))
        assert result.success is False
        assert result.error_code in {code for code, _ in WALLET_FAILURES}

    async def test_timeout_is_gateway_error(self):
        gateway = _gateway(min_latency_ms=200, max_latency_ms=300)
        result = await gateway.process_payment(_request(), timeout_ms=10)
        assert result.success is False
        assert result.error_code == GATEWAY_ERROR
        assert result.error_message == "Payment gateway timeout"

    async def test_same_key_replays_outcome(self):
        gateway = _gateway()
        first = await gateway.process_payment(_request(key="same"))
        second = await gateway.process_payment(_request(key="same"))
        assert second == first
        assert len(gateway.calls) == 2

    async def test_remembered_outcome_expires(self):
        now = [1000.0]
        gateway = _gateway(result_ttl_seconds=60, clock=lambda: now[0])
        first = await gateway.process_payment(_request(key="old"))
        await gateway.process_payment(_request(key="recent"))

        now[0] += 61
        await gateway.process_payment(_request(key="other"))
        assert list(gateway._results) == ["other"]

        again = await gateway.process_payment(_request(key="old"))
        assert again.gateway_ref != first.gateway_ref

    async def test_calls_not_recorded_by_default(self):
        gateway = MockPaymentGateway(min_latency_ms=0, max_latency_ms=0, failure_rate=0)
        await gateway.process_payment(_request())
        await gateway.refund_payment("MOCK_ABC", Decimal("10.00"))
        assert gateway.calls == []

    async def test_refund(self):
        gateway = _gateway()
        result = await gateway.refund_payment("MOCK_ABC", Decimal("10.00"))
        assert result.success is True
        assert result.gateway_ref == "REFUND_MOCK_ABC"
        assert gateway.calls[-1]["method"] == "refund_payment"

    def test_validate_method(self):
        gateway = _gateway()
        assert gateway.validate_method("mock_card") is True
        assert gateway.validate_method("COD") is True
        assert gateway.validate_method("BITCOIN") is False
