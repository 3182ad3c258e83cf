"""
Redis key layout.

The Lua scripts in atomic_scripts.py build some of these keys themselves
(cart_item:, cart:, order:, order_item:), so prefixes must stay in sync.
Because of that, and because one script touches many unrelated keys, the
service assumes a single-node Redis (or one primary); keys are not hash
tagged for Redis Cluster.
"""

CART_ITEM_SEQ = "seq:cart_item"
ORDER_SEQ = "seq:order"
ORDER_ITEM_SEQ = "seq:order_item"
PAYMENT_SEQ = "seq:payment"


def cart_key(customer_id: int) -> str:
    return f"cart:{customer_id}"


def cart_items_key(customer_id: int) -> str:
    return f"cart:{customer_id}:items"


def cart_lines_key(customer_id: int) -> str:
    return f"cart:{customer_id}:lines"


def cart_item_key(item_id: int) -> str:
    return f"cart_item:{item_id}"


def product_key(product_id: int) -> str:
    return f"product:{product_id}"


def product_variants_key(product_id: int) -> str:
    return f"product:{product_id}:variants"


def variant_key(variant_id: int) -> str:
    return f"variant:{variant_id}"


def customer_key(customer_id: int) -> str:
    return f"customer:{customer_id}"


def customer_orders_key(customer_id: int) -> str:
    return f"customer:{customer_id}:orders"


def order_key(order_id: int) -> str:
    return f"order:{order_id}"


def order_items_key(order_id: int) -> str:
    return f"order:{order_id}:items"


def order_item_key(item_id: int) -> str:
    return f"order_item:{item_id}"


def seller_metrics_key(seller_id) -> str:
    return f"seller:{seller_id}:metrics"


def checkout_session_key(session_id: str) -> str:
    return f"checkout:{session_id}"


def checkout_completion_key(session_id: str) -> str:
    return f"checkout:{session_id}:completing"


def checkout_idempotency_key(key: str) -> str:
    return f"idem:checkout:{key}"


def payment_key(payment_id: int) -> str:
    return f"payment:{payment_id}"


def payment_idempotency_key(key: str) -> str:
    return f"idem:payment:{key}"


def order_refund_lock_key(order_id: int) -> str:
    return f"order:{order_id}:refunding"


def payment_order_key(payment_id: int) -> str:
    return f"payment:{payment_id}:order"
