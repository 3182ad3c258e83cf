"""
Order placement and fulfillment.

Orders are created by a single Lua script that checks and decrements stock for
every line and inserts the order only when all checks pass, so concurrent
checkouts cannot oversell a variant and a failed line leaves nothing behind.
"""
import json
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from storefront import keys
from storefront.atomic_scripts import AtomicScripts
from storefront.audit import AuditLogger
from storefront.authorization import Actor, can_act_on_item, can_act_on_order, can_view_order
from storefront.cart_service import CartService, StoredCartItem
from storefront.catalog import CatalogRepository
from storefront.exceptions import (
    ForbiddenError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    PaymentFailedError,
    ValidationError,
)
from storefront.models import (
    LockedPrice,
    Order,
    OrderItem,
    OrderItemStatus,
    OrderLine,
    OrderStatus,
    PaymentAttempt,
    ShippingInfo,
)
from storefront.notifications import NotificationDispatcher, delivered_message, shipped_message
from storefront.payment_gateway import PaymentGateway
from storefront.pricing import calculate_final_price, round_money
from storefront.redis_client import RedisClient

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    # SHIPPED -> SHIPPED lets a seller correct tracking details
    OrderStatus.SHIPPED: {OrderStatus.SHIPPED, OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

ITEM_RANK = {
    OrderItemStatus.PAID: 1,
    OrderItemStatus.PREPARING: 2,
    OrderItemStatus.SHIPPED: 3,
    OrderItemStatus.DELIVERED: 4,
}

ANONYMIZED_PRODUCTS = "[]"
REFUND_LOCK_SECONDS = 60


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ORDER_TRANSITIONS[current]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _blank(value) -> str:
    return "" if value is None else str(value)


def _opt(data: dict, field: str) -> Optional[str]:
    value = data.get(field)
    return value if value not in (None, "") else None


def _opt_int(data: dict, field: str) -> Optional[int]:
    value = _opt(data, field)
    return int(value) if value is not None else None


def _opt_datetime(data: dict, field: str) -> Optional[datetime]:
    value = _opt(data, field)
    return datetime.fromisoformat(value) if value is not None else None


def _parse_item(data: dict) -> OrderItem:
    return OrderItem(
        id=int(data["id"]),
        order_id=int(data["order_id"]),
        seller_id=_opt_int(data, "seller_id"),
        product_id=int(data["product_id"]),
        variant_id=_opt_int(data, "variant_id"),
        quantity=int(data["quantity"]),
        line_total=Decimal(data.get("line_total") or "0"),
        status=OrderItemStatus(data.get("status") or OrderItemStatus.PAID.value),
        tracking_number=_opt(data, "tracking_number"),
        shipping_provider=_opt(data, "shipping_provider"),
        shipped_at=_opt_datetime(data, "shipped_at"),
        delivered_at=_opt_datetime(data, "delivered_at"),
    )


def _parse_order(data: dict, items: List[OrderItem]) -> Order:
    shipping = _opt(data, "shipping_info")
    return Order(
        id=int(data["id"]),
        customer_id=int(data["customer_id"]),
        seller_id=_opt_int(data, "seller_id"),
        products=[OrderLine(**line) for line in json.loads(data.get("products") or "[]")],
        total_amount=Decimal(data["total_amount"]),
        discount=Decimal(data.get("discount") or "0"),
        status=OrderStatus(data["status"]),
        tracking_number=_opt(data, "tracking_number"),
        courier=_opt(data, "courier"),
        payment_id=_opt_int(data, "payment_id"),
        payment_ref=_opt(data, "payment_ref"),
        refund_ref=_opt(data, "refund_ref"),
        shipping_info=ShippingInfo.model_validate_json(shipping) if shipping else None,
        idempotency_key=_opt(data, "idempotency_key"),
        anonymized=data.get("anonymized") == "1",
        uploaded_at=datetime.fromisoformat(data["uploaded_at"]),
        shipped_at=_opt_datetime(data, "shipped_at"),
        delivered_at=_opt_datetime(data, "delivered_at"),
        items=sorted(items, key=lambda item: item.id),
    )


class OrderService:
    """Service for order placement and fulfillment"""

    def __init__(
        self,
        redis: RedisClient,
        cart_service: CartService,
        catalog: CatalogRepository,
        notifications: NotificationDispatcher,
        gateway: PaymentGateway,
        audit: Optional[AuditLogger] = None
    ):
        self.redis = redis
        self.cart_service = cart_service
        self.catalog = catalog
        self.notifications = notifications
        self.gateway = gateway
        self.audit = audit or AuditLogger()
        self.scripts = AtomicScripts(redis)

    # Placement

    async def create_order(
        self,
        customer_id: int,
        selected_item_ids: Sequence[int],
        locked_line_items: Optional[Sequence[LockedPrice]] = None,
        total_amount: Optional[Decimal] = None,
        payment: Optional[PaymentAttempt] = None,
        shipping_info: Optional[ShippingInfo] = None,
        idempotency_key: Optional[str] = None
    ) -> Order:
        """
        Create an order from selected cart items.

        With locked_line_items the locked prices and quantities are recorded;
        without them the resolved cart items are priced now. Stock for every
        variant is decremented together with the order insert, or not at all.
        Only the selected items leave the cart afterwards.

        A payment places at most one order: calling again with the same payment
        returns the order it already placed.

        Raises:
            ValidationError: no selected item belongs to the customer's cart
            InsufficientStockError: a variant cannot cover its quantity
        """
        if not selected_item_ids:
            raise ValidationError("Selected items are required for checkout.")

        if payment is not None:
            placed = await self.redis.get(keys.payment_order_key(payment.id))
            if placed:
                return await self._placed_order(int(placed), customer_id, selected_item_ids)

        resolved = await self.cart_service.resolve_items(customer_id, selected_item_ids)
        if not resolved:
            raise ValidationError("No selected items found in cart.")

        if locked_line_items is None:
            lines = await self._price_lines(resolved)
        else:
            lines = [self._line_from_locked(locked) for locked in locked_line_items]

        if total_amount is None:
            total_amount = round_money(sum((line.final_price * line.quantity for line in lines), Decimal("0")))

        # One conditional decrement per variant, even if it appears on several lines
        demand: Dict[int, int] = OrderedDict()
        for line in lines:
            if line.variant_id is not None:
                demand[line.variant_id] = demand.get(line.variant_id, 0) + line.quantity
        stock_lines = list(demand.items())

        sellers = {line.seller_id for line in lines}
        seller_id = sellers.pop() if len(sellers) == 1 else None

        now = _now()
        order_fields = {
            "customer_id": str(customer_id),
            "seller_id": _blank(seller_id),
            "products": json.dumps([line.model_dump(mode="json") for line in lines]),
            "total_amount": str(round_money(total_amount)),
            "discount": "0.00",
            "status": (OrderStatus.CONFIRMED if payment else OrderStatus.PENDING).value,
            "payment_id": _blank(payment.id if payment else None),
            "payment_ref": _blank(payment.gateway_ref if payment else None),
            "shipping_info": shipping_info.model_dump_json() if shipping_info else "",
            "idempotency_key": _blank(idempotency_key),
            "anonymized": "0",
            "uploaded_at": now.isoformat(),
        }
        item_fields = [
            {
                "seller_id": _blank(line.seller_id),
                "product_id": str(line.product_id),
                "variant_id": _blank(line.variant_id),
                "quantity": str(line.quantity),
                "line_total": str(round_money(line.final_price * line.quantity)),
                "status": OrderItemStatus.PAID.value,
            }
            for line in lines
        ]

        result = await self.scripts.create_order(
            customer_id=customer_id,
            stock_lines=stock_lines,
            order_fields=order_fields,
            item_fields=item_fields,
            created_score=now.timestamp(),
            payment_id=payment.id if payment else None
        )

        if int(result[0]) == 2:
            return await self._placed_order(int(result[1]), customer_id, selected_item_ids)
        if int(result[0]) == 0:
            variant_id, requested = stock_lines[int(result[1]) - 1]
            line = next(line for line in lines if line.variant_id == variant_id)
            variant = await self.catalog.get_variant(variant_id)
            self.audit.log_order(
                "ORDER_REJECTED", 0, customer_id,
                {"variant_id": variant_id, "requested": requested}, "Insufficient stock"
            )
            raise InsufficientStockError([{
                "product_id": line.product_id,
                "product_name": line.product_name,
                "variant_id": variant_id,
                "variant_name": line.variant_name,
                "available": variant.stock if variant else 0,
                "requested": requested,
            }])

        order_id = int(result[1])
        await self.cart_service.remove_items(selected_item_ids, customer_id)

        self.audit.log_order("ORDER_CREATED", order_id, customer_id, {
            "total": str(total_amount),
            "item_count": len(lines),
        })
        return await self._require_order(order_id)

    async def _placed_order(self, order_id: int, customer_id: int, selected_item_ids: Sequence[int]) -> Order:
        # An earlier call may have stopped before its cart cleanup
        await self.cart_service.remove_items(selected_item_ids, customer_id)
        logger.info(f"Order {order_id} already placed for this payment")
        return await self._require_order(order_id)

    async def _price_lines(self, items: List[StoredCartItem]) -> List[OrderLine]:
        products = await self.catalog.get_products(item.product_id for item in items)
        variants = await self.catalog.get_variants(
            item.variant_id for item in items if item.variant_id is not None
        )

        lines = []
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
            lines.append(OrderLine(
                product_id=product.id,
                product_name=product.name,
                image=(variant.image if variant and variant.image else product.image),
                variant_id=variant.id if variant else None,
                variant_name=variant.name if variant else None,
                quantity=item.quantity,
                unit_price=price.effective_price,
                discount_percentage=price.discount_percentage,
                final_price=price.final_price,
                seller_id=product.seller_id,
            ))
        return lines

    @staticmethod
    def _line_from_locked(locked: LockedPrice) -> OrderLine:
        return OrderLine(
            product_id=locked.product_id,
            product_name=locked.product_name,
            image=locked.image,
            variant_id=locked.variant_id,
            variant_name=locked.variant_name,
            quantity=locked.quantity,
            unit_price=locked.unit_price,
            discount_percentage=locked.discount_percentage,
            final_price=locked.final_price,
            seller_id=locked.seller_id,
        )

    # Reads

    async def _load_order(self, order_id: int) -> Optional[Order]:
        data = await self.redis.hgetall(keys.order_key(order_id))
        if not data:
            return None
        item_ids = sorted(int(item_id) for item_id in await self.redis.smembers(keys.order_items_key(order_id)))
        rows = await self.redis.hgetall_many(keys.order_item_key(item_id) for item_id in item_ids)
        return _parse_order(data, [_parse_item(row) for row in rows if row])

    async def _require_order(self, order_id: int) -> Order:
        order = await self._load_order(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def get_order(self, order_id: int, actor: Optional[Actor] = None) -> Order:
        order = await self._require_order(order_id)
        if actor is not None and not can_view_order(actor, order):
            raise ForbiddenError()
        return order

    async def list_orders(self, customer_id: int) -> List[Order]:
        """Customer's orders, newest first"""
        orders = []
        for order_id in await self.redis.zrevrange(keys.customer_orders_key(customer_id)):
            order = await self._load_order(int(order_id))
            if order is not None:
                orders.append(order)
        return orders

    async def get_seller_metrics(self, seller_id: int) -> Dict[str, Decimal]:
        data = await self.redis.hgetall(keys.seller_metrics_key(seller_id))
        return {
            "total_sales": round_money(Decimal(data.get("total_sales") or "0")),
            "total_orders": int(data.get("total_orders") or 0),
        }

    # Fulfillment

    async def update_item_status(
        self,
        item_id: int,
        new_status: OrderItemStatus,
        actor: Actor,
        tracking_number: Optional[str] = None,
        shipping_provider: Optional[str] = None
    ) -> OrderItem:
        """
        Move an order item forward.

        The first move into delivered credits the seller's sales totals; a
        repeated delivered update changes nothing.
        """
        data = await self.redis.hgetall(keys.order_item_key(item_id))
        if not data:
            raise NotFoundError("Order item", item_id)
        item = _parse_item(data)

        if not can_act_on_item(actor, item):
            raise ForbiddenError()

        result = await self.scripts.set_item_status(
            item_id=item_id,
            order_id=item.order_id,
            seller_id=item.seller_id,
            status=new_status.value,
            now=_now().isoformat(),
            tracking_number=tracking_number,
            shipping_provider=shipping_provider
        )
        code = int(result[0])
        if code == -1:
            raise NotFoundError("Order item", item_id)
        if code == -2:
            raise InvalidStateError(f"Cannot move order item from {result[1]} to {new_status.value}")
        if code == -3:
            raise InvalidStateError(f"Cannot update an item of an order that is {result[1]}")

        previous = OrderItemStatus(result[1])
        if previous != new_status:
            order = await self._require_order(item.order_id)
            self.audit.log_order("ORDER_ITEM_STATUS_CHANGED", order.id, order.customer_id, {
                "item_id": item_id,
                "from": previous.value,
                "to": new_status.value,
                "seller_counted": bool(int(result[2])),
            })
            if new_status == OrderItemStatus.SHIPPED:
                subject, body = shipped_message(order.id, tracking_number, shipping_provider)
                self.notifications.notify_customer(order.customer_id, subject, body)
            elif new_status == OrderItemStatus.DELIVERED:
                subject, body = delivered_message(order.id)
                self.notifications.notify_customer(order.customer_id, subject, body)
            await self._follow_items(order)

        return _parse_item(await self.redis.hgetall(keys.order_item_key(item_id)))

    async def _follow_items(self, order: Order) -> None:
        """Advance the order once all of its items have shipped or been delivered"""
        order = await self._require_order(order.id)
        statuses = {item.status for item in order.items}
        if not statuses:
            return
        if statuses == {OrderItemStatus.DELIVERED}:
            target = OrderStatus.DELIVERED
            fields = {"delivered_at": _now().isoformat()}
        elif statuses <= {OrderItemStatus.SHIPPED, OrderItemStatus.DELIVERED}:
            target = OrderStatus.SHIPPED
            fields = {"shipped_at": _now().isoformat()}
        else:
            return

        if order.status == target or not can_transition(order.status, target):
            return
        # A concurrent status change wins; nothing to retry here
        await self.scripts.set_order_status(order.id, order.status.value, target.value, fields)

    async def ship_order(
        self,
        order_id: int,
        tracking_number: Optional[str],
        courier: Optional[str],
        actor: Actor
    ) -> Order:
        """Mark a whole order shipped and cascade tracking onto its items"""
        order = await self._require_order(order_id)
        if not can_act_on_order(actor, order):
            raise ForbiddenError()

        if not tracking_number or not tracking_number.strip():
            raise ValidationError("Tracking number is required")
        tracking_number = tracking_number.strip()

        if not can_transition(order.status, OrderStatus.SHIPPED):
            raise InvalidStateError(f"Cannot ship an order that is {order.status.value}")

        now = _now().isoformat()
        shipped_at = order.shipped_at.isoformat() if order.shipped_at else now
        # Items delivered meanwhile are skipped inside the script
        changed = await self.scripts.ship_order(
            order_id=order_id,
            item_ids=[item.id for item in order.items],
            expected=order.status.value,
            status=OrderStatus.SHIPPED.value,
            tracking_number=tracking_number,
            courier=_blank(courier),
            shipped_at=shipped_at,
            now=now
        )
        if not changed:
            raise InvalidStateError("Order status changed while shipping; reload and retry")

        self.audit.log_order("ORDER_SHIPPED", order_id, order.customer_id, {
            "from": order.status.value,
            "courier": courier,
        })
        subject, body = shipped_message(order_id, tracking_number, courier)
        self.notifications.notify_customer(order.customer_id, subject, body)
        return await self._require_order(order_id)

    async def update_order_status(self, order_id: int, new_status: OrderStatus, actor: Actor) -> Order:
        """
        Apply an order-level transition from ORDER_TRANSITIONS.

        Shipping and refunds have dedicated operations. Cancelling returns the
        order's quantities to stock in the same atomic step as the status
        change; delivering marks every item delivered.
        """
        if new_status == OrderStatus.SHIPPED:
            raise ValidationError("Use the ship operation to mark an order shipped")
        if new_status == OrderStatus.REFUNDED:
            raise ValidationError("Use the refund operation to refund an order")

        order = await self._require_order(order_id)
        if not can_act_on_order(actor, order):
            raise ForbiddenError()
        if not can_transition(order.status, new_status):
            raise InvalidStateError(
                f"Cannot move order from {order.status.value} to {new_status.value}"
            )

        now = _now().isoformat()
        fields: Dict[str, str] = {}
        restock: List = []
        if new_status == OrderStatus.CANCELLED:
            returned: Dict[int, int] = OrderedDict()
            for line in order.products:
                if line.variant_id is not None:
                    returned[line.variant_id] = returned.get(line.variant_id, 0) + line.quantity
            restock = list(returned.items())
        elif new_status == OrderStatus.DELIVERED:
            fields["delivered_at"] = now

        changed = await self.scripts.set_order_status(
            order_id, order.status.value, new_status.value, fields, restock
        )
        if not changed:
            raise InvalidStateError("Order status changed concurrently; reload and retry")

        if new_status == OrderStatus.DELIVERED:
            for item in order.items:
                await self.scripts.set_item_status(
                    item_id=item.id,
                    order_id=order_id,
                    seller_id=item.seller_id,
                    status=OrderItemStatus.DELIVERED.value,
                    now=now
                )
            subject, body = delivered_message(order_id)
            self.notifications.notify_customer(order.customer_id, subject, body)

        self.audit.log_order("ORDER_STATUS_CHANGED", order_id, order.customer_id, {
            "from": order.status.value,
            "to": new_status.value,
            "restocked": len(restock),
        })
        return await self._require_order(order_id)

    async def refund_order(self, order_id: int, actor: Actor) -> Order:
        """Refund a delivered order through the gateway (admin only)"""
        if not actor.is_admin:
            raise ForbiddenError()

        order = await self._require_order(order_id)
        if not can_transition(order.status, OrderStatus.REFUNDED):
            raise InvalidStateError(f"Cannot refund an order that is {order.status.value}")

        lock_key = keys.order_refund_lock_key(order_id)
        if not await self.redis.set(lock_key, "1", ex=REFUND_LOCK_SECONDS, nx=True):
            raise InvalidStateError("Refund is already in progress for this order")

        try:
            # Re-read under the lock: a refund that just finished moved the status
            order = await self._require_order(order_id)
            if not can_transition(order.status, OrderStatus.REFUNDED):
                raise InvalidStateError(f"Cannot refund an order that is {order.status.value}")

            fields = {}
            if order.payment_ref:
                result = await self.gateway.refund_payment(order.payment_ref, order.total_amount)
                if not result.success:
                    raise PaymentFailedError(result.error_code, result.error_message, order.payment_id)
                fields["refund_ref"] = result.gateway_ref or ""

            changed = await self.scripts.set_order_status(
                order_id, order.status.value, OrderStatus.REFUNDED.value, fields
            )
            if not changed:
                raise InvalidStateError("Order status changed concurrently; reload and retry")
        finally:
            await self.redis.delete(lock_key)

        self.audit.log_order("ORDER_REFUNDED", order_id, order.customer_id, {"refund_ref": fields.get("refund_ref")})
        return await self._require_order(order_id)

    async def anonymize_customer_orders(self, customer_id: int) -> int:
        """Keep a deleted customer's orders for audit but drop their line details"""
        order_ids = await self.redis.zrevrange(keys.customer_orders_key(customer_id))
        await self.redis.hset_many({
            keys.order_key(int(order_id)): {
                "products": ANONYMIZED_PRODUCTS,
                "shipping_info": "",
                "anonymized": "1",
            }
            for order_id in order_ids
        })
        if order_ids:
            self.audit.log_order("ORDERS_ANONYMIZED", 0, customer_id, {"count": len(order_ids)})
        return len(order_ids)
