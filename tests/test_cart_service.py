from decimal import Decimal

import pytest

from storefront.config import Config
from storefront.exceptions import (
    InsufficientStockError,
    LimitExceededError,
    NotFoundError,
    ValidationError,
)

from conftest import GIFT_CARD, SHOE, SHOE_42, SOCKS


class TestAddItem:
    async def test_new_line_then_quantity_increase(self, cart_service):
        first = await cart_service.add_item(1, SOCKS, 1, "M")
        second = await cart_service.add_item(1, SOCKS, 2, "M")

        assert first["is_new"] is True
        assert second["is_new"] is False
        assert second["item_id"] == first["item_id"]
        assert second["quantity"] == 3

        cart = await cart_service.get_cart(1)
        assert cart.item_count == 1
        assert cart.items[0].quantity == 3

    async def test_product_without_variant(self, cart_service):
        result = await cart_service.add_item(1, GIFT_CARD)
        cart = await cart_service.get_cart(1)
        assert cart.items[0].id == result["item_id"]
        assert cart.items[0].variant_id is None

    async def test_quantity_must_be_positive(self, cart_service):
        with pytest.raises(ValidationError):
            await cart_service.add_item(1, SOCKS, 0, "M")

    async def test_quantity_above_maximum(self, cart_service):
        with pytest.raises(LimitExceededError):
            await cart_service.add_item(1, GIFT_CARD, Config.MAX_QUANTITY_PER_ITEM + 1)

    async def test_accumulated_quantity_above_maximum(self, cart_service, monkeypatch):
        monkeypatch.setattr(Config, "MAX_QUANTITY_PER_ITEM", 3)
        await cart_service.add_item(1, SOCKS, 2, "M")
        with pytest.raises(LimitExceededError):
            await cart_service.add_item(1, SOCKS, 2, "M")

    async def test_cart_item_cap(self, cart_service, monkeypatch):
        monkeypatch.setattr(Config, "MAX_ITEMS_PER_CART", 1)
        await cart_service.add_item(1, GIFT_CARD)
        with pytest.raises(LimitExceededError):
            await cart_service.add_item(1, SOCKS, 1, "M")

    async def test_unknown_product(self, cart_service):
        with pytest.raises(NotFoundError):
            await cart_service.add_item(1, 999)

    async def test_unknown_variant(self, cart_service):
        with pytest.raises(NotFoundError):
            await cart_service.add_item(1, SHOE, 1, "47")

    async def test_more_than_stock(self, cart_service):
        with pytest.raises(InsufficientStockError) as exc_info:
            await cart_service.add_item(1, SHOE, 4, "42")
        issue = exc_info.value.issues[0]
        assert issue["variant_id"] == SHOE_42
        assert issue["available"] == 3
        assert issue["requested"] == 4


class TestGetCart:
    async def test_missing_cart_is_empty(self, cart_service):
        cart = await cart_service.get_cart(42)
        assert cart.items == []
        assert cart.subtotal == Decimal("0")
        assert cart.item_count == 0

    async def test_live_prices_and_savings(self, cart_service):
        await cart_service.add_item(1, SHOE, 1, "42")
        await cart_service.add_item(1, SOCKS, 2, "M")

        cart = await cart_service.get_cart(1)

        assert cart.subtotal == Decimal("136.00")
        assert cart.total_savings == Decimal("4.00")
        socks = next(item for item in cart.items if item.product_id == SOCKS)
        assert socks.price_info.final_price == Decimal("18.00")
        assert socks.line_total == Decimal("36.00")
        assert socks.variant_name == "M"


class TestUpdateAndRemove:
    async def test_update_quantity(self, cart_service):
        added = await cart_service.add_item(1, SOCKS, 1, "M")
        await cart_service.update_quantity(added["item_id"], 5)
        cart = await cart_service.get_cart(1)
        assert cart.items[0].quantity == 5

    async def test_update_missing_item(self, cart_service):
        with pytest.raises(NotFoundError):
            await cart_service.update_quantity(12345, 2)

    async def test_update_to_zero(self, cart_service):
        added = await cart_service.add_item(1, SOCKS, 1, "M")
        with pytest.raises(ValidationError):
            await cart_service.update_quantity(added["item_id"], 0)

    async def test_remove_is_idempotent(self, cart_service):
        added = await cart_service.add_item(1, SOCKS, 1, "M")
        assert await cart_service.remove_item(added["item_id"]) is True
        assert await cart_service.remove_item(added["item_id"]) is False
        assert (await cart_service.get_cart(1)).items == []

    async def test_removed_line_can_be_added_again(self, cart_service):
        added = await cart_service.add_item(1, SOCKS, 1, "M")
        await cart_service.remove_item(added["item_id"])
        again = await cart_service.add_item(1, SOCKS, 1, "M")
        assert again["is_new"] is True

    async def test_bulk_remove_scoped_to_customer(self, cart_service):
        mine = await cart_service.add_item(1, SOCKS, 1, "M")
        theirs = await cart_service.add_item(2, SOCKS, 1, "M")

        removed = await cart_service.remove_items([mine["item_id"], theirs["item_id"], 999], customer_id=1)

        assert removed == 1
        assert (await cart_service.get_cart(1)).items == []
        assert [item.id for item in (await cart_service.get_cart(2)).items] == [theirs["item_id"]]
        again = await cart_service.add_item(1, SOCKS, 1, "M")
        assert again["is_new"] is True


class TestResolveItems:
    async def test_only_own_items_resolve(self, cart_service):
        mine = await cart_service.add_item(1, SOCKS, 1, "M")
        theirs = await cart_service.add_item(2, GIFT_CARD)

        items = await cart_service.resolve_items(1, [mine["item_id"], theirs["item_id"], 999])

        assert [item.id for item in items] == [mine["item_id"]]

    async def test_owner_of(self, cart_service):
        added = await cart_service.add_item(2, GIFT_CARD)
        assert await cart_service.owner_of(added["item_id"]) == 2
        assert await cart_service.owner_of(999) is None

    async def test_delete_cart(self, cart_service):
        await cart_service.add_item(1, SOCKS, 1, "M")
        await cart_service.add_item(1, GIFT_CARD)
        assert await cart_service.delete_cart(1) == 2
        assert (await cart_service.get_cart(1)).items == []
