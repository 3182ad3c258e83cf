"""
Price calculation shared by the cart, checkout and order paths.

Rules:
1. a variant price, when set, replaces the product base price
2. a variant discount, when set, replaces the product discount
3. discounts outside (0, 100) are ignored
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from storefront.models import PriceInfo, Product, ProductVariant

CENT = Decimal("0.01")
ZERO = Decimal("0")


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_final_price(product: Product, variant: Optional[ProductVariant] = None) -> PriceInfo:
    """Calculate the price of one unit of a product or one of its variants."""
    effective_price = product.base_price
    if variant is not None and variant.price is not None:
        effective_price = variant.price

    if not effective_price.is_finite() or effective_price <= 0:
        return PriceInfo(
            effective_price=ZERO,
            discount_percentage=0,
            discounted_price=None,
            final_price=ZERO,
            has_discount=False,
        )

    discount = 0.0
    if variant is not None and variant.discount_percentage is not None:
        discount = variant.discount_percentage
    elif product.discount_percentage is not None:
        discount = product.discount_percentage

    if not 0 < discount < 100:
        discount = 0.0

    has_discount = discount > 0
    discounted_price = None
    if has_discount:
        factor = 1 - Decimal(str(discount)) / 100
        discounted_price = round_money(effective_price * factor)

    final_price = discounted_price if discounted_price is not None else round_money(effective_price)

    return PriceInfo(
        effective_price=round_money(effective_price),
        discount_percentage=discount,
        discounted_price=discounted_price,
        final_price=final_price,
        has_discount=has_discount,
    )
