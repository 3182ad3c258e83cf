"""
Checkout session management: price locking, validation, payment and completion.

A session is a JSON document in Redis. It outlives its expiry by a retention
window so a late request is told the session expired rather than that it never
existed. Initiation and payment are both keyed by client idempotency keys
claimed with SET NX, so retries and concurrent duplicates converge on one
session and one charge.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from storefront import keys
from storefront.audit import AuditLogger
from storefront.cart_service import CartService, hash_customer_id
from storefront.catalog import CatalogRepository
from storefront.config import Config
from storefront.exceptions import (
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    PaymentFailedError,
    PaymentInProgressError,
    SessionExpiredError,
    ValidationError,
)
from storefront.models import (
    CheckoutSession,
    CheckoutStatus,
    CheckoutStep,
    LockedPrice,
    PaymentAttempt,
    PaymentStatus,
    PriceChange,
    ShippingInfo,
    ValidationOutcome,
)
from storefront.order_service import OrderService
from storefront.payment_gateway import PaymentGateway, PaymentRequest
from storefront.pricing import ZERO, calculate_final_price, round_money
from storefront.redis_client import RedisClient

logger = logging.getLogger(__name__)

COMPLETION_LOCK_SECONDS = 60


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CheckoutService:
    """Service for checkout sessions"""

    def __init__(
        self,
        redis: RedisClient,
        cart_service: CartService,
        catalog: CatalogRepository,
        gateway: PaymentGateway,
        order_service: OrderService,
        audit: Optional[AuditLogger] = None,
        session_ttl_seconds: int = Config.CHECKOUT_SESSION_TTL_SECONDS,
        retention_seconds: int = Config.CHECKOUT_SESSION_RETENTION_SECONDS,
        payment_timeout_ms: int = Config.PAYMENT_TIMEOUT_MS
    ):
        self.redis = redis
        self.cart_service = cart_service
        self.catalog = catalog
        self.gateway = gateway
        self.order_service = order_service
        self.audit = audit or AuditLogger()
        self.session_ttl_seconds = session_ttl_seconds
        self.retention_seconds = retention_seconds
        self.payment_timeout_ms = payment_timeout_ms

    # Persistence

    async def _save_session(self, session: CheckoutSession) -> None:
        await self.redis.set(
            keys.checkout_session_key(session.session_id),
            session.model_dump_json(),
            ex=max(1, self.session_ttl_seconds + self.retention_seconds)
        )

    async def _load_session(self, session_id: str) -> CheckoutSession:
        raw = await self.redis.get(keys.checkout_session_key(session_id))
        if raw is None:
            raise NotFoundError("Checkout session", session_id)
        return CheckoutSession.model_validate_json(raw)

    async def _save_attempt(self, attempt: PaymentAttempt) -> None:
        await self.redis.set(
            keys.payment_key(attempt.id),
            attempt.model_dump_json(),
            ex=max(1, self.session_ttl_seconds + self.retention_seconds)
        )

    async def _load_attempt(self, payment_id: int) -> Optional[PaymentAttempt]:
        raw = await self.redis.get(keys.payment_key(payment_id))
        if raw is None:
            return None
        return PaymentAttempt.model_validate_json(raw)

    def _require_active(self, session: CheckoutSession) -> None:
        if session.status == CheckoutStatus.COMPLETED:
            raise InvalidStateError("Checkout session is already completed")
        if session.status == CheckoutStatus.CANCELLED:
            raise InvalidStateError("Checkout session was cancelled")
        if session.is_expired(_now()):
            raise SessionExpiredError(session.session_id)

    # Initiation

    async def initiate(
        self,
        customer_id: int,
        selected_item_ids: Sequence[int],
        idempotency_key: str
    ) -> CheckoutSession:
        """
        Start a checkout for the selected cart items, locking their prices.

        Re-sending the same idempotency key returns the session it created
        while that session is live.
        """
        if not selected_item_ids:
            raise ValidationError("Selected items are required for checkout.")
        if not idempotency_key:
            raise ValidationError("Idempotency key is required.")

        existing = await self._session_for_key(customer_id, idempotency_key)
        if existing is not None:
            return existing

        items = await self.cart_service.resolve_items(customer_id, selected_item_ids)
        if not items:
            raise ValidationError("No selected items found in cart.")

        products = await self.catalog.get_products(item.product_id for item in items)
        variants = await self.catalog.get_variants(
            item.variant_id for item in items if item.variant_id is not None
        )

        locked: List[LockedPrice] = []
        for item in items:
            product = products.get(item.product_id)
            if product is None:
                raise NotFoundError("Product", item.product_id)
            variant = None
            if item.variant_id is not None:
                variant = variants.get(item.variant_id)
                if variant is None:
                    raise NotFoundError("Variant", item.variant_id)

            price = calculate_final_price(product, variant)
            locked.append(LockedPrice(
                item_id=item.id,
                product_id=product.id,
                variant_id=variant.id if variant else None,
                quantity=item.quantity,
                unit_price=price.effective_price,
                discount_percentage=price.discount_percentage,
                final_price=price.final_price,
                product_name=product.name,
                variant_name=variant.name if variant else None,
                image=(variant.image if variant and variant.image else product.image),
                seller_id=product.seller_id,
            ))

        await self._check_stock(locked)

        now = _now()
        session = CheckoutSession(
            session_id=str(uuid.uuid4()),
            customer_id=customer_id,
            selected_item_ids=[item.id for item in items],
            locked_prices=locked,
            total_amount=round_money(sum((line.line_total for line in locked), ZERO)),
            created_at=now,
            expires_at=now + timedelta(seconds=self.session_ttl_seconds),
            step=CheckoutStep.SHIPPING,
            idempotency_key=idempotency_key,
        )
        await self._save_session(session)

        claimed = await self.redis.set(
            keys.checkout_idempotency_key(idempotency_key),
            session.session_id,
            ex=max(1, self.session_ttl_seconds),
            nx=True
        )
        if not claimed:
            # Lost the race to a concurrent request with the same key
            await self.redis.delete(keys.checkout_session_key(session.session_id))
            winner = await self._session_for_key(customer_id, idempotency_key)
            if winner is None:
                raise InvalidStateError("Checkout initiation conflicted; please retry")
            return winner

        self.audit.log_checkout("CHECKOUT_INITIATED", session.session_id, customer_id, {
            "item_count": len(locked),
            "total": str(session.total_amount),
        })
        return session

    async def _session_for_key(self, customer_id: int, idempotency_key: str) -> Optional[CheckoutSession]:
        session_id = await self.redis.get(keys.checkout_idempotency_key(idempotency_key))
        if session_id is None:
            return None
        try:
            session = await self._load_session(session_id)
        except NotFoundError:
            return None
        if session.customer_id != customer_id:
            raise ValidationError("Idempotency key already used by another checkout.")
        if session.status == CheckoutStatus.CANCELLED or session.is_expired(_now()):
            return None
        logger.info(
            "Checkout initiation replayed",
            extra={"hashed_customer_id": hash_customer_id(customer_id), "session_id": session_id}
        )
        return session

    async def _check_stock(self, lines: Sequence[LockedPrice]) -> None:
        demand: Dict[int, int] = {}
        for line in lines:
            if line.variant_id is not None:
                demand[line.variant_id] = demand.get(line.variant_id, 0) + line.quantity
        if not demand:
            return

        variants = await self.catalog.get_variants(demand.keys())
        issues = []
        for line in lines:
            if line.variant_id is None or line.variant_id not in demand:
                continue
            variant = variants.get(line.variant_id)
            available = variant.stock if variant else 0
            requested = demand.pop(line.variant_id)
            if available < requested:
                issues.append({
                    "product_id": line.product_id,
                    "product_name": line.product_name,
                    "variant_id": line.variant_id,
                    "variant_name": line.variant_name,
                    "available": available,
                    "requested": requested,
                })
        if issues:
            raise InsufficientStockError(issues)

    # Steps

    async def owner_of(self, session_id: str) -> int:
        """Customer a session belongs to, regardless of its state"""
        return (await self._load_session(session_id)).customer_id

    async def get_session(self, session_id: str) -> CheckoutSession:
        session = await self._load_session(session_id)
        if session.status != CheckoutStatus.COMPLETED and session.is_expired(_now()):
            raise SessionExpiredError(session_id)
        return session

    async def set_shipping_info(self, session_id: str, shipping_info: ShippingInfo) -> CheckoutSession:
        session = await self._load_session(session_id)
        self._require_active(session)
        if session.step not in (CheckoutStep.SHIPPING, CheckoutStep.PAYMENT):
            raise InvalidStateError(f"Cannot change shipping info at step {session.step.value}")

        session.shipping_info = shipping_info
        await self._save_session(session)
        return session

    async def validate_and_proceed_to_payment(self, session_id: str) -> ValidationOutcome:
        """
        Re-check prices and stock before payment.

        Price drift is reported, not enforced: the locked prices and total are
        what the customer pays. A stock shortfall keeps the session at shipping.
        """
        session = await self._load_session(session_id)
        self._require_active(session)
        if session.step not in (CheckoutStep.SHIPPING, CheckoutStep.PAYMENT):
            raise InvalidStateError(f"Cannot validate checkout at step {session.step.value}")

        lines = session.locked_prices
        products = await self.catalog.get_products(line.product_id for line in lines)
        variants = await self.catalog.get_variants(
            line.variant_id for line in lines if line.variant_id is not None
        )

        price_changes: List[PriceChange] = []
        for line in lines:
            product = products.get(line.product_id)
            if product is None:
                raise NotFoundError("Product", line.product_id)
            variant = variants.get(line.variant_id) if line.variant_id is not None else None
            current = calculate_final_price(product, variant).final_price
            if current != line.final_price:
                price_changes.append(PriceChange(
                    product_name=line.product_name,
                    variant_name=line.variant_name,
                    old_price=line.final_price,
                    new_price=current,
                ))

        try:
            await self._check_stock(lines)
        except InsufficientStockError as e:
            self.audit.log_checkout(
                "CHECKOUT_VALIDATION_FAILED", session_id, session.customer_id,
                {"issues": len(e.issues)}, "Insufficient stock"
            )
            raise

        session.step = CheckoutStep.PAYMENT
        await self._save_session(session)
        self.audit.log_checkout("CHECKOUT_VALIDATED", session_id, session.customer_id, {
            "price_changes": len(price_changes),
        })

        if price_changes:
            self.audit.log_checkout("CHECKOUT_PRICE_DRIFT", session_id, session.customer_id, {
                "changed_lines": len(price_changes),
            })
            return ValidationOutcome(
                step=session.step,
                price_changes=price_changes,
                note="Some prices changed since checkout started. Your locked prices will be honored.",
            )
        return ValidationOutcome(step=session.step)

    # Payment

    async def process_payment(self, session_id: str, method: str, idempotency_key: str) -> PaymentAttempt:
        """
        Charge the session's locked total.

        A replayed idempotency key never reaches the gateway again: it returns
        the stored success, re-raises the stored failure, or reports that the
        first attempt is still running.
        """
        if not idempotency_key:
            raise ValidationError("Idempotency key is required.")

        replay = await self._replay_payment(session_id, idempotency_key)
        if replay is not None:
            return replay

        session = await self._load_session(session_id)
        self._require_active(session)
        if session.step != CheckoutStep.PAYMENT:
            raise InvalidStateError("Checkout must be validated before payment")
        if session.payment_id is not None:
            raise InvalidStateError("Payment already completed for this checkout")
        if not self.gateway.validate_method(method):
            raise ValidationError(f"Unsupported payment method: {method}")

        attempt = PaymentAttempt(
            id=await self.redis.incr(keys.PAYMENT_SEQ),
            session_id=session_id,
            customer_id=session.customer_id,
            method=method.upper(),
            amount=session.total_amount,
            idempotency_key=idempotency_key,
            created_at=_now(),
        )
        await self._save_attempt(attempt)

        claimed = await self.redis.set(
            keys.payment_idempotency_key(idempotency_key),
            str(attempt.id),
            ex=max(1, self.session_ttl_seconds + self.retention_seconds),
            nx=True
        )
        if not claimed:
            await self.redis.delete(keys.payment_key(attempt.id))
            replay = await self._replay_payment(session_id, idempotency_key)
            if replay is None:
                raise PaymentInProgressError("Payment is already being processed")
            return replay

        self.audit.log_payment("PAYMENT_INITIATED", attempt.id, session.customer_id, {
            "session_id": session_id,
            "method": attempt.method,
            "amount": str(attempt.amount),
        })

        result = await self.gateway.process_payment(
            PaymentRequest(
                amount=attempt.amount,
                method=attempt.method,
                idempotency_key=idempotency_key,
                customer_id=session.customer_id,
                metadata={"session_id": session_id, "payment_id": attempt.id},
            ),
            timeout_ms=self.payment_timeout_ms
        )

        if not result.success:
            attempt.status = PaymentStatus.FAILED
            attempt.error_code = result.error_code
            attempt.error_message = result.error_message
            await self._save_attempt(attempt)
            self.audit.log_payment(
                "PAYMENT_FAILED", attempt.id, session.customer_id,
                {"error_code": result.error_code}, result.error_message
            )
            raise PaymentFailedError(result.error_code, result.error_message, attempt.id)

        attempt.status = PaymentStatus.SUCCEEDED
        attempt.gateway_ref = result.gateway_ref
        await self._save_attempt(attempt)

        session = await self._load_session(session_id)
        session.payment_id = attempt.id
        session.payment_method = attempt.method
        session.payment_idempotency_keys.append(idempotency_key)
        await self._save_session(session)

        self.audit.log_payment("PAYMENT_SUCCEEDED", attempt.id, session.customer_id, {
            "gateway_ref": result.gateway_ref,
        })
        return attempt

    async def _replay_payment(self, session_id: str, idempotency_key: str) -> Optional[PaymentAttempt]:
        payment_id = await self.redis.get(keys.payment_idempotency_key(idempotency_key))
        if payment_id is None:
            return None
        attempt = await self._load_attempt(int(payment_id))
        if attempt is None:
            return None
        if attempt.session_id != session_id:
            raise ValidationError("Idempotency key already used for another checkout.")

        if attempt.status == PaymentStatus.SUCCEEDED:
            return attempt
        if attempt.status == PaymentStatus.FAILED:
            raise PaymentFailedError(attempt.error_code, attempt.error_message, attempt.id)
        raise PaymentInProgressError("Payment is already being processed")

    # Completion

    async def complete(self, session_id: str, payment_id: Optional[int] = None) -> int:
        """
        Turn a paid session into an order and return its id.

        Completing an already completed session returns the same order id.
        """
        session = await self._load_session(session_id)
        if session.status == CheckoutStatus.COMPLETED:
            return session.order_id
        self._require_active(session)
        if session.step != CheckoutStep.PAYMENT:
            raise InvalidStateError("Checkout is not ready to complete")

        payment_id = payment_id if payment_id is not None else session.payment_id
        if payment_id is None:
            raise InvalidStateError("Payment is required before completing checkout")
        attempt = await self._load_attempt(payment_id)
        if attempt is None or attempt.session_id != session_id:
            raise ValidationError("Payment does not belong to this checkout.")
        if attempt.status != PaymentStatus.SUCCEEDED:
            raise InvalidStateError("Payment has not succeeded")

        claimed = await self.redis.set(
            keys.checkout_completion_key(session_id), "1", ex=COMPLETION_LOCK_SECONDS, nx=True
        )
        if not claimed:
            session = await self._load_session(session_id)
            if session.status == CheckoutStatus.COMPLETED:
                return session.order_id
            raise InvalidStateError("Checkout completion is already in progress")

        try:
            order = await self.order_service.create_order(
                customer_id=session.customer_id,
                selected_item_ids=session.selected_item_ids,
                locked_line_items=session.locked_prices,
                total_amount=session.total_amount,
                payment=attempt,
                shipping_info=session.shipping_info,
                idempotency_key=session.idempotency_key
            )
        except Exception as e:
            await self.redis.delete(keys.checkout_completion_key(session_id))
            self.audit.log_checkout(
                "CHECKOUT_COMPLETION_FAILED", session_id, session.customer_id,
                {"payment_id": payment_id}, str(e)
            )
            raise

        attempt.order_id = order.id
        await self._save_attempt(attempt)

        session.order_id = order.id
        session.payment_id = payment_id
        session.step = CheckoutStep.CONFIRMATION
        session.status = CheckoutStatus.COMPLETED
        await self._save_session(session)
        await self.redis.delete(keys.checkout_completion_key(session_id))

        self.audit.log_checkout("CHECKOUT_COMPLETED", session_id, session.customer_id, {
            "order_id": order.id,
            "total": str(order.total_amount),
        })
        return order.id

    async def cancel(self, session_id: str) -> CheckoutSession:
        session = await self._load_session(session_id)
        if session.status == CheckoutStatus.COMPLETED:
            raise InvalidStateError("Cannot cancel a completed checkout")
        if session.status == CheckoutStatus.CANCELLED:
            return session

        session.status = CheckoutStatus.CANCELLED
        await self._save_session(session)
        await self.redis.delete(keys.checkout_idempotency_key(session.idempotency_key))

        self.audit.log_checkout("CHECKOUT_CANCELLED", session_id, session.customer_id)
        return session
