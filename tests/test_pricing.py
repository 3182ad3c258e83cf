from decimal import Decimal

import pytest

from storefront.models import Product, ProductVariant
from storefront.pricing import calculate_final_price, round_money


def _product(price="100.00", discount=None):
    return Product(id=1, name="Lamp", base_price=Decimal(price), discount_percentage=discount)


def _variant(price=None, discount=None):
    return ProductVariant(
        id=5, product_id=1, name="Brass",
        price=Decimal(price) if price is not None else None,
        discount_percentage=discount, stock=1
    )


class TestCalculateFinalPrice:
    def test_base_price_without_discount(self):
        info = calculate_final_price(_product("100"))
        assert info.effective_price == Decimal("100.00")
        assert info.final_price == Decimal("100.00")
        assert info.discounted_price is None
        assert info.has_discount is False

    def test_variant_price_replaces_base_price(self):
        info = calculate_final_price(_product("100"), _variant("80"))
        assert info.effective_price == Decimal("80.00")
        assert info.final_price == Decimal("80.00")

    def test_variant_without_price_uses_base_price(self):
        info = calculate_final_price(_product("100"), _variant())
        assert info.final_price == Decimal("100.00")

    def test_product_discount_applies(self):
        info = calculate_final_price(_product("20", discount=10))
        assert info.has_discount is True
        assert info.discounted_price == Decimal("18.00")
        assert info.final_price == Decimal("18.00")

    def test_variant_discount_takes_precedence(self):
        info = calculate_final_price(_product("100", discount=10), _variant(discount=25))
        assert info.discount_percentage == 25
        assert info.final_price == Decimal("75.00")

    @pytest.mark.parametrize("discount", [0, 100, 150, -5])
    def test_out_of_range_discount_is_ignored(self, discount):
        info = calculate_final_price(_product("40", discount=discount))
        assert info.discount_percentage == 0
        assert info.has_discount is False
        assert info.final_price == Decimal("40.00")

    @pytest.mark.parametrize("price", ["0", "-3"])
    def test_non_positive_price_is_zero(self, price):
        info = calculate_final_price(_product(price, discount=10))
        assert info.effective_price == Decimal("0")
        assert info.final_price == Decimal("0")
        assert info.has_discount is False

    def test_rounds_half_up_to_cents(self):
        info = calculate_final_price(_product("2.50", discount=5))
        assert info.final_price == Decimal("2.38")


def test_round_money():
    assert round_money(Decimal("1.005")) == Decimal("1.01")
    assert round_money(Decimal("7")) == Decimal("7.00")
