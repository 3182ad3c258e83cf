"""
Cart service for managing shopping cart operations with Redis.
"""
import hashlib
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from storefront import keys
from storefront.atomic_scripts import AtomicScripts
from storefront.catalog import CatalogRepository
from storefront.config import Config
from storefront.exceptions import (
    InsufficientStockError,
    LimitExceededError,
    NotFoundError,
    ValidationError,
)
from storefront.models import Cart, CartItem
from storefront.pricing import ZERO, calculate_final_price, round_money
from storefront.redis_client import RedisClient

logger = logging.getLogger(__name__)


def hash_customer_id(customer_id: int) -> str:
    """Hash customer ID for logging (no PII)"""
    return hashlib.sha256(str(customer_id).encode()).hexdigest()[:8]


class StoredCartItem:
    """Raw cart line as persisted, before pricing"""

    __slots__ = ("id", "customer_id", "product_id", "variant_id", "quantity")

    def __init__(self, data: dict):
        self.id = int(data["id"])
        self.customer_id = int(data["customer_id"])
        self.product_id = int(data["product_id"])
        self.variant_id = int(data["variant_id"]) if data.get("variant_id") else None
        self.quantity = int(data["quantity"])


class CartService:
    """Service for cart operations"""

    def __init__(self, redis: RedisClient, catalog: CatalogRepository):
        self.redis = redis
        self.catalog = catalog
        self.scripts = AtomicScripts(redis)

    async def add_item(
        self,
        customer_id: int,
        product_id: int,
        quantity: int = 1,
        variant_name: Optional[str] = None
    ) -> Dict:
        """
        Add a product (optionally a named variant) to the customer's cart.

        An existing line for the same product and variant has its quantity
        increased instead of gaining a duplicate row.

        Returns:
            Dict with item_id, quantity and is_new
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")

        if quantity > Config.MAX_QUANTITY_PER_ITEM:
            raise LimitExceededError(
                f"Quantity {quantity} exceeds maximum {Config.MAX_QUANTITY_PER_ITEM}"
            )

        product = await self.catalog.get_product(product_id)
        if product is None:
            raise NotFoundError("Product", product_id)

        variant = None
        if variant_name:
            variant = await self.catalog.find_variant_by_name(product_id, variant_name)
            if variant is None:
                raise NotFoundError("Variant", variant_name)

            if variant.stock < quantity:
                raise InsufficientStockError([{
                    "product_id": product_id,
                    "product_name": product.name,
                    "variant_id": variant.id,
                    "variant_name": variant.name,
                    "available": variant.stock,
                    "requested": quantity,
                }])

        result = await self.scripts.add_item(
            customer_id=customer_id,
            product_id=product_id,
            variant_id=variant.id if variant else None,
            quantity=quantity,
            max_items=Config.MAX_ITEMS_PER_CART,
            max_quantity=Config.MAX_QUANTITY_PER_ITEM,
            now=datetime.now(timezone.utc).isoformat()
        )

        code = int(result[0])
        if code == -1:
            raise LimitExceededError(
                f"Quantity {result[1]} exceeds maximum {Config.MAX_QUANTITY_PER_ITEM}"
            )
        if code == -2:
            raise LimitExceededError(
                f"Cart exceeds maximum items {Config.MAX_ITEMS_PER_CART}"
            )

        logger.info(
            "Cart item added",
            extra={"hashed_customer_id": hash_customer_id(customer_id), "item_id": code}
        )
        return {"item_id": code, "quantity": int(result[1]), "is_new": bool(int(result[2]))}

    async def update_quantity(self, item_id: int, quantity: int) -> None:
        """
        Set the quantity of a cart item.

        Stock is not re-checked here; checkout is the authoritative check.
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")

        if quantity > Config.MAX_QUANTITY_PER_ITEM:
            raise LimitExceededError(
                f"Quantity {quantity} exceeds maximum {Config.MAX_QUANTITY_PER_ITEM}"
            )

        updated = await self.scripts.update_quantity(item_id, quantity)
        if not updated:
            raise NotFoundError("Cart item", item_id)

    async def remove_item(self, item_id: int) -> bool:
        """Remove item from cart; removing a missing item is not an error"""
        removed = await self.scripts.remove_items([item_id])
        return removed > 0

    async def remove_items(self, item_ids: Sequence[int], customer_id: Optional[int] = None) -> int:
        """Remove several items, restricted to one customer's cart when given"""
        return await self.scripts.remove_items(list(item_ids), customer_id)

    async def owner_of(self, item_id: int) -> Optional[int]:
        owner = await self.redis.hget(keys.cart_item_key(item_id), "customer_id")
        return int(owner) if owner else None

    async def _load_items(self, item_ids: Sequence[int]) -> List[StoredCartItem]:
        rows = await self.redis.hgetall_many(keys.cart_item_key(item_id) for item_id in item_ids)
        items = []
        for item_id, row in zip(item_ids, rows):
            if not row:
                continue
            try:
                items.append(StoredCartItem(row))
            except (KeyError, ValueError) as e:
                # Skip invalid items
                logger.warning(f"Failed to parse cart item {item_id}: {e}")
        return items

    async def resolve_items(self, customer_id: int, item_ids: Sequence[int]) -> List[StoredCartItem]:
        """Return the customer's cart items among item_ids, in id order"""
        owned = await self.redis.smembers(keys.cart_items_key(customer_id))
        wanted = sorted({int(item_id) for item_id in item_ids if str(item_id) in owned})
        return await self._load_items(wanted)

    async def get_cart(self, customer_id: int) -> Cart:
        """Get cart contents with live prices; a missing cart is an empty cart"""
        item_ids = sorted(int(item_id) for item_id in await self.redis.smembers(keys.cart_items_key(customer_id)))
        if not item_ids:
            return Cart(customer_id=customer_id)

        stored = await self._load_items(item_ids)
        products = await self.catalog.get_products(item.product_id for item in stored)
        variants = await self.catalog.get_variants(
            item.variant_id for item in stored if item.variant_id is not None
        )

        items: List[CartItem] = []
        subtotal = ZERO
        total_savings = ZERO

        for item in stored:
            product = products.get(item.product_id)
            if product is None:
                logger.warning(f"Cart item {item.id} references missing product {item.product_id}")
                continue
            variant = variants.get(item.variant_id) if item.variant_id is not None else None

            price_info = calculate_final_price(product, variant)
            line_total = round_money(price_info.final_price * item.quantity)
            subtotal += line_total
            if price_info.has_discount:
                total_savings += price_info.effective_price * item.quantity - line_total

            items.append(CartItem(
                id=item.id,
                product_id=item.product_id,
                variant_id=item.variant_id,
                quantity=item.quantity,
                product_name=product.name,
                variant_name=variant.name if variant else None,
                image=(variant.image if variant and variant.image else product.image),
                price_info=price_info,
                line_total=line_total,
            ))

        return Cart(
            customer_id=customer_id,
            items=items,
            subtotal=round_money(subtotal),
            total_savings=round_money(total_savings),
            item_count=len(items),
        )

    async def delete_cart(self, customer_id: int) -> int:
        """Remove a customer's cart entirely (account deletion)"""
        item_ids = [int(item_id) for item_id in await self.redis.smembers(keys.cart_items_key(customer_id))]
        removed = await self.scripts.remove_items(item_ids, customer_id)
        await self.redis.delete(
            keys.cart_key(customer_id),
            keys.cart_items_key(customer_id),
            keys.cart_lines_key(customer_id),
        )
        return removed
