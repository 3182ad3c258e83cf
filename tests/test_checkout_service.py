import asyncio
from decimal import Decimal

import pydantic
import pytest

from storefront.audit import AuditLogger
from storefront.checkout_service import CheckoutService
from storefront.exceptions import (
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    PaymentFailedError,
    RedisConnectionError,
    SessionExpiredError,
    ValidationError,
)
from storefront.models import CheckoutStatus, CheckoutStep, OrderStatus, PaymentStatus, ShippingInfo
from storefront.payment_gateway import CARD_FAILURES

from conftest import GIFT_CARD, SHOE, SHOE_42, SOCKS

SHIPPING = ShippingInfo(
    full_name="Ana Lima", phone="+351 900 000 000", address="Rua Nova 1", city="Porto", postal_code="4000-001"
)


async def _cart(cart_service, customer_id=1, *lines):
    lines = lines or ((SHOE, 1, "42"),)
    ids = []
    for product_id, quantity, variant in lines:
        ids.append((await cart_service.add_item(customer_id, product_id, quantity, variant))["item_id"])
    return ids


async def _to_payment(checkout_service, cart_service, key="init-1"):
    ids = await _cart(cart_service)
    session = await checkout_service.initiate(1, ids, key)
    await checkout_service.set_shipping_info(session.session_id, SHIPPING)
    await checkout_service.validate_and_proceed_to_payment(session.session_id)
    return session


class TestInitiate:
    async def test_locks_prices(self, checkout_service, cart_service):
        ids = await _cart(cart_service, 1, (SHOE, 1, "42"), (SOCKS, 2, "M"))

        session = await checkout_service.initiate(1, ids, "init-1")

        assert session.step == CheckoutStep.SHIPPING
        assert session.status == CheckoutStatus.ACTIVE
        assert session.total_amount == Decimal("136.00")
        assert [line.final_price for line in session.locked_prices] == [Decimal("100.00"), Decimal("18.00")]
        assert session.expires_at > session.created_at

    async def test_same_key_returns_same_session(self, checkout_service, cart_service):
        ids = await _cart(cart_service)
        first = await checkout_service.initiate(1, ids, "init-1")
        again = await checkout_service.initiate(1, ids, "init-1")
        other = await checkout_service.initiate(1, ids, "init-2")

        assert again.session_id == first.session_id
        assert other.session_id != first.session_id

    async def test_concurrent_duplicates_share_a_session(self, checkout_service, cart_service):
        ids = await _cart(cart_service)
        sessions = await asyncio.gather(*[checkout_service.initiate(1, ids, "init-1") for _ in range(3)])
        assert len({session.session_id for session in sessions}) == 1

    async def test_key_of_another_customer(self, checkout_service, cart_service):
        await checkout_service.initiate(1, await _cart(cart_service), "init-1")
        theirs = await _cart(cart_service, 2, (GIFT_CARD, 1, None))
        with pytest.raises(ValidationError):
            await checkout_service.initiate(2, theirs, "init-1")

    async def test_requires_items_and_key(self, checkout_service, cart_service):
        ids = await _cart(cart_service)
        with pytest.raises(ValidationError):
            await checkout_service.initiate(1, [], "init-1")
        with pytest.raises(ValidationError):
            await checkout_service.initiate(1, ids, "")

    async def test_items_must_be_in_own_cart(self, checkout_service, cart_service):
        theirs = await _cart(cart_service, 2)
        with pytest.raises(ValidationError):
            await checkout_service.initiate(1, theirs, "init-1")

    async def test_stock_is_checked(self, checkout_service, cart_service, catalog):
        ids = await _cart(cart_service, 1, (SHOE, 3, "42"))
        shoe = await catalog.get_variant(SHOE_42)
        await catalog.save_variant(shoe.model_copy(update={"stock": 1}))

        with pytest.raises(InsufficientStockError) as exc_info:
            await checkout_service.initiate(1, ids, "init-1")
        assert exc_info.value.issues[0]["available"] == 1


class TestSession:
    async def test_unknown_session(self, checkout_service):
        with pytest.raises(NotFoundError):
            await checkout_service.get_session("nope")

    async def test_expired_session(self, redis, cart_service, catalog, gateway, order_service):
        service = CheckoutService(
            redis, cart_service, catalog, gateway, order_service, AuditLogger(), session_ttl_seconds=0
        )
        session = await service.initiate(1, await _cart(cart_service), "init-1")

        with pytest.raises(SessionExpiredError):
            await service.get_session(session.session_id)
        with pytest.raises(SessionExpiredError):
            await service.validate_and_proceed_to_payment(session.session_id)

    def test_shipping_fields_required(self):
        with pytest.raises(pydantic.ValidationError):
            ShippingInfo(full_name=" ", phone="1", address="a", city="c", postal_code="p")


class TestValidate:
    async def test_price_drift_is_reported_not_charged(
        self, checkout_service, cart_service, catalog, order_service
    ):
        ids = await _cart(cart_service)
        session = await checkout_service.initiate(1, ids, "init-1")
        shoe = await catalog.get_product(SHOE)
        await catalog.save_product(shoe.model_copy(update={"base_price": Decimal("120.00")}))

        outcome = await checkout_service.validate_and_proceed_to_payment(session.session_id)

        assert outcome.step == CheckoutStep.PAYMENT
        assert len(outcome.price_changes) == 1
        assert outcome.price_changes[0].old_price == Decimal("100.00")
        assert outcome.price_changes[0].new_price == Decimal("120.00")

        await checkout_service.process_payment(session.session_id, "COD", "pay-1")
        order_id = await checkout_service.complete(session.session_id)
        order = await order_service.get_order(order_id)
        assert order.total_amount == Decimal("100.00")
        assert order.products[0].final_price == Decimal("100.00")

    async def test_no_changes(self, checkout_service, cart_service):
        session = await checkout_service.initiate(1, await _cart(cart_service), "init-1")
        outcome = await checkout_service.validate_and_proceed_to_payment(session.session_id)
        assert outcome.price_changes is None

    async def test_stock_shortfall_keeps_shipping_step(self, checkout_service, cart_service, catalog):
        session = await checkout_service.initiate(1, await _cart(cart_service, 1, (SHOE, 2, "42")), "init-1")
        shoe = await catalog.get_variant(SHOE_42)
        await catalog.save_variant(shoe.model_copy(update={"stock": 1}))

        with pytest.raises(InsufficientStockError):
            await checkout_service.validate_and_proceed_to_payment(session.session_id)
        assert (await checkout_service.get_session(session.session_id)).step == CheckoutStep.SHIPPING


class TestPayment:
    async def test_requires_payment_step(self, checkout_service, cart_service):
        session = await checkout_service.initiate(1, await _cart(cart_service), "init-1")
        with pytest.raises(InvalidStateError):
            await checkout_service.process_payment(session.session_id, "COD", "pay-1")

    async def test_unknown_method(self, checkout_service, cart_service):
        session = await _to_payment(checkout_service, cart_service)
        with pytest.raises(ValidationError):
            await checkout_service.process_payment(session.session_id, "BARTER", "pay-1")

    async def test_success_is_replayed(self, checkout_service, cart_service, gateway):
        session = await _to_payment(checkout_service, cart_service)

        first = await checkout_service.process_payment(session.session_id, "MOCK_CARD", "pay-1")
        again = await checkout_service.process_payment(session.session_id, "MOCK_CARD", "pay-1")

        assert first.status == PaymentStatus.SUCCEEDED
        assert first.amount == Decimal("100.00")
        assert again.id == first.id
        assert again.gateway_ref == first.gateway_ref
        assert len(gateway.calls) == 1
        stored = await checkout_service.get_session(session.session_id)
        assert stored.payment_id == first.id
        assert stored.step == CheckoutStep.PAYMENT

    async def test_failure_then_retry_with_new_key(self, checkout_service, cart_service, gateway):
        session = await _to_payment(checkout_service, cart_service)
        gateway.failure_rate = 1.0

        with pytest.raises(PaymentFailedError) as exc_info:
            await checkout_service.process_payment(session.session_id, "MOCK_CARD", "pay-1")
        assert exc_info.value.error_code in {code for code, _ in CARD_FAILURES}
        assert (await checkout_service.get_session(session.session_id)).step == CheckoutStep.PAYMENT

        with pytest.raises(PaymentFailedError):
            await checkout_service.process_payment(session.session_id, "MOCK_CARD", "pay-1")
        assert len(gateway.calls) == 1

        gateway.failure_rate = 0
        attempt = await checkout_service.process_payment(session.session_id, "MOCK_CARD", "pay-2")
        assert attempt.status == PaymentStatus.SUCCEEDED

    async def test_no_second_charge(self, checkout_service, cart_service):
        session = await _to_payment(checkout_service, cart_service)
        await checkout_service.process_payment(session.session_id, "COD", "pay-1")
        with pytest.raises(InvalidStateError):
            await checkout_service.process_payment(session.session_id, "COD", "pay-2")

    async def test_key_bound_to_its_session(self, checkout_service, cart_service):
        session = await _to_payment(checkout_service, cart_service)
        await checkout_service.process_payment(session.session_id, "COD", "pay-1")
        other = await checkout_service.initiate(1, await _cart(cart_service, 1, (GIFT_CARD, 1, None)), "init-2")
        with pytest.raises(ValidationError):
            await checkout_service.process_payment(other.session_id, "COD", "pay-1")


class TestComplete:
    async def test_creates_confirmed_order(self, checkout_service, cart_service, order_service):
        session = await _to_payment(checkout_service, cart_service)
        attempt = await checkout_service.process_payment(session.session_id, "COD", "pay-1")

        order_id = await checkout_service.complete(session.session_id)

        order = await order_service.get_order(order_id)
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_id == attempt.id
        assert order.payment_ref == attempt.gateway_ref
        assert order.shipping_info == SHIPPING
        assert order.idempotency_key == "init-1"
        assert (await cart_service.get_cart(1)).items == []

        stored = await checkout_service.get_session(session.session_id)
        assert stored.status == CheckoutStatus.COMPLETED
        assert stored.step == CheckoutStep.CONFIRMATION
        assert stored.order_id == order_id

    async def test_completing_twice_returns_same_order(self, checkout_service, cart_service, order_service):
        session = await _to_payment(checkout_service, cart_service)
        await checkout_service.process_payment(session.session_id, "COD", "pay-1")

        first = await checkout_service.complete(session.session_id)
        second = await checkout_service.complete(session.session_id)

        assert second == first
        assert len(await order_service.list_orders(1)) == 1

    async def test_retry_after_interrupted_completion_reuses_order(
        self, checkout_service, cart_service, order_service, catalog, monkeypatch
    ):
        session = await _to_payment(checkout_service, cart_service)
        await checkout_service.process_payment(session.session_id, "COD", "pay-1")
        remove_items = cart_service.remove_items
        failures = [RedisConnectionError("connection reset")]

        async def flaky_remove_items(*args, **kwargs):
            if failures:
                raise failures.pop()
            return await remove_items(*args, **kwargs)

        monkeypatch.setattr(cart_service, "remove_items", flaky_remove_items)

        with pytest.raises(RedisConnectionError):
            await checkout_service.complete(session.session_id)
        order_id = await checkout_service.complete(session.session_id)

        assert [order.id for order in await order_service.list_orders(1)] == [order_id]
        assert (await catalog.get_variant(SHOE_42)).stock == 2
        assert (await checkout_service.get_session(session.session_id)).order_id == order_id

    async def test_requires_payment(self, checkout_service, cart_service):
        session = await _to_payment(checkout_service, cart_service)
        with pytest.raises(InvalidStateError):
            await checkout_service.complete(session.session_id)

    async def test_stock_gone_before_completion(self, checkout_service, cart_service, catalog):
        session = await _to_payment(checkout_service, cart_service)
        await checkout_service.process_payment(session.session_id, "COD", "pay-1")
        shoe = await catalog.get_variant(SHOE_42)
        await catalog.save_variant(shoe.model_copy(update={"stock": 0}))

        with pytest.raises(InsufficientStockError):
            await checkout_service.complete(session.session_id)

        stored = await checkout_service.get_session(session.session_id)
        assert stored.status == CheckoutStatus.ACTIVE
        assert stored.step == CheckoutStep.PAYMENT


class TestCancel:
    async def test_cancel(self, checkout_service, cart_service):
        ids = await _cart(cart_service)
        session = await checkout_service.initiate(1, ids, "init-1")

        cancelled = await checkout_service.cancel(session.session_id)

        assert cancelled.status == CheckoutStatus.CANCELLED
        with pytest.raises(InvalidStateError):
            await checkout_service.validate_and_proceed_to_payment(session.session_id)
        fresh = await checkout_service.initiate(1, ids, "init-1")
        assert fresh.session_id != session.session_id

    async def test_completed_session_cannot_cancel(self, checkout_service, cart_service):
        session = await _to_payment(checkout_service, cart_service)
        await checkout_service.process_payment(session.session_id, "COD", "pay-1")
        await checkout_service.complete(session.session_id)
        with pytest.raises(InvalidStateError):
            await checkout_service.cancel(session.session_id)
