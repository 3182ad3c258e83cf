"""
Capability checks for order and order-item actions.

Every order endpoint goes through these functions so the admin-or-owning-seller
rule lives in one place.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from storefront.models import Order, OrderItem


class Role(str, Enum):
    CUSTOMER = "customer"
    SELLER = "seller"
    ADMIN = "admin"


class Actor(BaseModel):
    """Caller identity as established by the upstream auth layer"""
    user_id: int
    role: Role = Role.CUSTOMER
    seller_id: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def owns_seller(self, seller_id: Optional[int]) -> bool:
        return (
            self.role == Role.SELLER
            and self.seller_id is not None
            and seller_id is not None
            and self.seller_id == seller_id
        )


def can_act_on_order(actor: Actor, order: Order) -> bool:
    """Admins, or the seller an order belongs to; mixed-seller orders are admin only"""
    return actor.is_admin or actor.owns_seller(order.seller_id)


def can_act_on_item(actor: Actor, item: OrderItem) -> bool:
    return actor.is_admin or actor.owns_seller(item.seller_id)


def can_view_order(actor: Actor, order: Order) -> bool:
    if actor.is_admin or order.customer_id == actor.user_id:
        return True
    if actor.owns_seller(order.seller_id):
        return True
    return any(actor.owns_seller(item.seller_id) for item in order.items)
