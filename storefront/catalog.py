"""
Catalog and customer lookups backed by Redis hashes.

Product administration lives elsewhere; the write methods here exist so the
catalog can be seeded (fixtures, scripts, tests).
"""
import logging
from decimal import Decimal
from typing import Dict, Iterable, Optional

from storefront import keys
from storefront.models import Product, ProductVariant
from storefront.redis_client import RedisClient

logger = logging.getLogger(__name__)


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    return value if value not in (None, "") else None


def _none_to_blank(value) -> str:
    return "" if value is None else str(value)


def _parse_product(data: dict) -> Optional[Product]:
    if not data:
        return None
    discount = _blank_to_none(data.get("discount_percentage"))
    seller_id = _blank_to_none(data.get("seller_id"))
    return Product(
        id=int(data["id"]),
        name=data["name"],
        base_price=Decimal(data["base_price"]),
        discount_percentage=float(discount) if discount is not None else None,
        seller_id=int(seller_id) if seller_id is not None else None,
        image=_blank_to_none(data.get("image")),
    )


def _parse_variant(data: dict) -> Optional[ProductVariant]:
    if not data:
        return None
    price = _blank_to_none(data.get("price"))
    discount = _blank_to_none(data.get("discount_percentage"))
    return ProductVariant(
        id=int(data["id"]),
        product_id=int(data["product_id"]),
        name=data["name"],
        price=Decimal(price) if price is not None else None,
        discount_percentage=float(discount) if discount is not None else None,
        stock=int(data.get("stock") or 0),
        image=_blank_to_none(data.get("image")),
    )


class CatalogRepository:
    """Read access to products and variants"""

    def __init__(self, redis: RedisClient):
        self.redis = redis

    async def get_product(self, product_id: int) -> Optional[Product]:
        return _parse_product(await self.redis.hgetall(keys.product_key(product_id)))

    async def get_variant(self, variant_id: int) -> Optional[ProductVariant]:
        return _parse_variant(await self.redis.hgetall(keys.variant_key(variant_id)))

    async def find_variant_by_name(self, product_id: int, name: str) -> Optional[ProductVariant]:
        """Resolve a variant by name, scoped to its product"""
        variant_id = await self.redis.hget(keys.product_variants_key(product_id), name)
        if variant_id is None:
            return None
        return await self.get_variant(int(variant_id))

    async def get_products(self, product_ids: Iterable[int]) -> Dict[int, Product]:
        ids = sorted(set(product_ids))
        rows = await self.redis.hgetall_many(keys.product_key(pid) for pid in ids)
        products = {}
        for row in rows:
            product = _parse_product(row)
            if product is not None:
                products[product.id] = product
        return products

    async def get_variants(self, variant_ids: Iterable[int]) -> Dict[int, ProductVariant]:
        ids = sorted(set(variant_ids))
        rows = await self.redis.hgetall_many(keys.variant_key(vid) for vid in ids)
        variants = {}
        for row in rows:
            variant = _parse_variant(row)
            if variant is not None:
                variants[variant.id] = variant
        return variants

    async def save_product(self, product: Product) -> None:
        await self.redis.hset(keys.product_key(product.id), {
            "id": str(product.id),
            "name": product.name,
            "base_price": str(product.base_price),
            "discount_percentage": _none_to_blank(product.discount_percentage),
            "seller_id": _none_to_blank(product.seller_id),
            "image": _none_to_blank(product.image),
        })

    async def save_variant(self, variant: ProductVariant) -> None:
        await self.redis.hset(keys.variant_key(variant.id), {
            "id": str(variant.id),
            "product_id": str(variant.product_id),
            "name": variant.name,
            "price": _none_to_blank(variant.price),
            "discount_percentage": _none_to_blank(variant.discount_percentage),
            "stock": str(variant.stock),
            "image": _none_to_blank(variant.image),
        })
        await self.redis.hset(keys.product_variants_key(variant.product_id), {variant.name: str(variant.id)})
        logger.debug(f"Saved variant {variant.id} of product {variant.product_id}")


class CustomerDirectory:
    """Customer contact lookups used to address notifications"""

    def __init__(self, redis: RedisClient):
        self.redis = redis

    async def get_email(self, customer_id: int) -> Optional[str]:
        return _blank_to_none(await self.redis.hget(keys.customer_key(customer_id), "email"))

    async def save_customer(self, customer_id: int, email: str) -> None:
        await self.redis.hset(keys.customer_key(customer_id), {"id": str(customer_id), "email": email})

    async def forget_customer(self, customer_id: int) -> None:
        await self.redis.delete(keys.customer_key(customer_id))
