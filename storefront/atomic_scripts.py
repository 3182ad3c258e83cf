"""
Lua scripts for atomic Redis operations.

Redis runs each script to completion without interleaving other commands, so
every check-then-write below is a single atomic step. Scripts return flat
arrays; status codes are documented next to each script.
"""
from typing import Any, Dict, List, Optional, Sequence, Tuple

from storefront import keys

# Add an item or bump the quantity of the existing (product, variant) line.
# Returns {item_id, quantity, is_new} or {-1, requested} when over the per-item
# maximum, {-2, item_count} when the cart is full.
ADD_ITEM_SCRIPT = """
local lines_key = KEYS[1]
local items_key = KEYS[2]
local seq_key = KEYS[3]
local cart_key = KEYS[4]
local customer_id = ARGV[1]
local product_id = ARGV[2]
local variant_id = ARGV[3]
local quantity = tonumber(ARGV[4])
local max_items = tonumber(ARGV[5])
local max_quantity = tonumber(ARGV[6])
local now = ARGV[7]

local line = product_id .. ':' .. variant_id
local existing_id = redis.call('HGET', lines_key, line)

if existing_id then
    local item_key = 'cart_item:' .. existing_id
    local current = tonumber(redis.call('HGET', item_key, 'quantity') or '0')
    local new_qty = current + quantity
    if new_qty > max_quantity then
        return {-1, new_qty}
    end
    redis.call('HSET', item_key, 'quantity', tostring(new_qty))
    return {tonumber(existing_id), new_qty, 0}
end

if quantity > max_quantity then
    return {-1, quantity}
end

local item_count = redis.call('SCARD', items_key)
if item_count >= max_items then
    return {-2, item_count}
end

-- Cart is created lazily on first add
if redis.call('EXISTS', cart_key) == 0 then
    redis.call('HSET', cart_key, 'customer_id', customer_id)
    redis.call('HSET', cart_key, 'created_at', now)
end

local item_id = redis.call('INCR', seq_key)
local item_key = 'cart_item:' .. item_id
redis.call('HSET', item_key, 'id', tostring(item_id))
redis.call('HSET', item_key, 'customer_id', customer_id)
redis.call('HSET', item_key, 'product_id', product_id)
redis.call('HSET', item_key, 'variant_id', variant_id)
redis.call('HSET', item_key, 'quantity', tostring(quantity))
redis.call('SADD', items_key, tostring(item_id))
redis.call('HSET', lines_key, line, tostring(item_id))

return {item_id, quantity, 1}
"""

# Set an item quantity only if the item still exists. Returns 1 or 0.
UPDATE_QUANTITY_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return 0
end
redis.call('HSET', KEYS[1], 'quantity', ARGV[1])
return 1
"""

# Remove cart items by id, optionally only those owned by ARGV[1].
# Returns the number of items removed.
REMOVE_ITEMS_SCRIPT = """
local owner_filter = ARGV[1]
local removed = 0

for i = 2, #ARGV do
    local item_key = 'cart_item:' .. ARGV[i]
    local owner = redis.call('HGET', item_key, 'customer_id')
    if owner and (owner_filter == '' or owner == owner_filter) then
        local product_id = redis.call('HGET', item_key, 'product_id') or ''
        local variant_id = redis.call('HGET', item_key, 'variant_id') or ''
        redis.call('DEL', item_key)
        redis.call('SREM', 'cart:' .. owner .. ':items', ARGV[i])
        redis.call('HDEL', 'cart:' .. owner .. ':lines', product_id .. ':' .. variant_id)
        removed = removed + 1
    end
end

return removed
"""

# Conditionally decrement stock for every line, then insert the order and its
# items. Nothing is written unless every stock check passes.
#
# KEYS[1] order sequence, KEYS[2] order item sequence, KEYS[3] customer order
# index, KEYS[4..3+n] variant hashes (one per stock line), and optionally
# KEYS[4+n] a placement key that maps the paying attempt to its order.
# ARGV: stock line count n, n quantities, order field count, order field
# pairs, item count, then per item a field count and its pairs, and finally
# the creation timestamp used as the index score.
#
# Returns {1, order_id}, {0, failing_line_index}, or {2, order_id} when the
# placement key already names an order (nothing is written).
CREATE_ORDER_SCRIPT = """
local n = tonumber(ARGV[1])
local placement_key = KEYS[4 + n]

if placement_key then
    local existing = redis.call('GET', placement_key)
    if existing then
        return {2, tonumber(existing)}
    end
end

for i = 1, n do
    local stock = tonumber(redis.call('HGET', KEYS[3 + i], 'stock') or '0')
    if stock < tonumber(ARGV[1 + i]) then
        return {0, i}
    end
end

for i = 1, n do
    redis.call('HINCRBY', KEYS[3 + i], 'stock', '-' .. ARGV[1 + i])
end

local order_id = redis.call('INCR', KEYS[1])
local order_key = 'order:' .. order_id
local cursor = n + 2

local field_count = tonumber(ARGV[cursor])
cursor = cursor + 1
for j = 0, field_count - 1 do
    redis.call('HSET', order_key, ARGV[cursor + 2 * j], ARGV[cursor + 2 * j + 1])
end
cursor = cursor + 2 * field_count
redis.call('HSET', order_key, 'id', tostring(order_id))

local item_count = tonumber(ARGV[cursor])
cursor = cursor + 1
for k = 1, item_count do
    local item_id = redis.call('INCR', KEYS[2])
    local item_key = 'order_item:' .. item_id
    local item_fields = tonumber(ARGV[cursor])
    cursor = cursor + 1
    for j = 0, item_fields - 1 do
        redis.call('HSET', item_key, ARGV[cursor + 2 * j], ARGV[cursor + 2 * j + 1])
    end
    cursor = cursor + 2 * item_fields
    redis.call('HSET', item_key, 'id', tostring(item_id))
    redis.call('HSET', item_key, 'order_id', tostring(order_id))
    redis.call('SADD', order_key .. ':items', tostring(item_id))
end

redis.call('ZADD', KEYS[3], ARGV[#ARGV], tostring(order_id))
if placement_key then
    redis.call('SET', placement_key, tostring(order_id))
end

return {1, order_id}
"""

# Move an order item forward and count the sale on the first delivery.
# KEYS[1] order item hash, KEYS[2] seller metrics hash, KEYS[3] order hash.
# ARGV[1] new status, ARGV[2] timestamp, ARGV[3] tracking number,
# ARGV[4] shipping provider, ARGV[5] '1' when the sale should be counted.
# Returns {1, previous, counted}, {-1, ''} for a missing item,
# {-2, previous} for a backward move, {-3, order_status} when the order is
# cancelled or refunded.
SET_ITEM_STATUS_SCRIPT = """
local rank = {paid = 1, preparing = 2, shipped = 3, delivered = 4}

if redis.call('EXISTS', KEYS[1]) == 0 then
    return {-1, ''}
end

local order_status = redis.call('HGET', KEYS[3], 'status')
if order_status == 'CANCELLED' or order_status == 'REFUNDED' then
    return {-3, order_status}
end

local previous = redis.call('HGET', KEYS[1], 'status') or 'paid'
if rank[ARGV[1]] < rank[previous] then
    return {-2, previous}
end

redis.call('HSET', KEYS[1], 'status', ARGV[1])
if ARGV[3] ~= '' then
    redis.call('HSET', KEYS[1], 'tracking_number', ARGV[3])
end
if ARGV[4] ~= '' then
    redis.call('HSET', KEYS[1], 'shipping_provider', ARGV[4])
end
if ARGV[1] == 'shipped' and previous ~= 'shipped' then
    redis.call('HSET', KEYS[1], 'shipped_at', ARGV[2])
end

local counted = 0
if ARGV[1] == 'delivered' and previous ~= 'delivered' then
    redis.call('HSET', KEYS[1], 'delivered_at', ARGV[2])
    if ARGV[5] == '1' then
        local amount = redis.call('HGET', KEYS[1], 'line_total') or '0'
        redis.call('HINCRBYFLOAT', KEYS[2], 'total_sales', amount)
        redis.call('HINCRBY', KEYS[2], 'total_orders', '1')
        counted = 1
    end
end

return {1, previous, counted}
"""

# Compare-and-set the order status, writing extra fields and returning stock.
# KEYS[1] order hash, KEYS[2..] variant hashes to restock.
# ARGV[1] expected status, ARGV[2] new status, ARGV[3] field count,
# field pairs, then one restock quantity per variant key.
# Returns 1, or 0 when the status changed underneath us.
SET_ORDER_STATUS_SCRIPT = """
if redis.call('HGET', KEYS[1], 'status') ~= ARGV[1] then
    return 0
end

redis.call('HSET', KEYS[1], 'status', ARGV[2])

local field_count = tonumber(ARGV[3])
local cursor = 4
for j = 0, field_count - 1 do
    redis.call('HSET', KEYS[1], ARGV[cursor + 2 * j], ARGV[cursor + 2 * j + 1])
end
cursor = cursor + 2 * field_count

for i = 2, #KEYS do
    redis.call('HINCRBY', KEYS[i], 'stock', ARGV[cursor + i - 2])
end

return 1
"""

# Ship a whole order: compare-and-set its status and cascade tracking onto
# every item that is not delivered yet, reading each item's status here.
# KEYS[1] order hash, KEYS[2..] order item hashes.
# ARGV[1] expected status, ARGV[2] new status, ARGV[3] tracking number,
# ARGV[4] courier, ARGV[5] order shipped_at, ARGV[6] item shipped_at.
# Returns 1, or 0 when the status changed underneath us.
SHIP_ORDER_SCRIPT = """
if redis.call('HGET', KEYS[1], 'status') ~= ARGV[1] then
    return 0
end

redis.call('HSET', KEYS[1], 'status', ARGV[2])
redis.call('HSET', KEYS[1], 'tracking_number', ARGV[3])
redis.call('HSET', KEYS[1], 'courier', ARGV[4])
redis.call('HSET', KEYS[1], 'shipped_at', ARGV[5])

for i = 2, #KEYS do
    local status = redis.call('HGET', KEYS[i], 'status')
    if status and status ~= 'delivered' then
        redis.call('HSET', KEYS[i], 'tracking_number', ARGV[3])
        redis.call('HSET', KEYS[i], 'shipping_provider', ARGV[4])
        if status ~= 'shipped' then
            redis.call('HSET', KEYS[i], 'status', 'shipped')
            redis.call('HSET', KEYS[i], 'shipped_at', ARGV[6])
        end
    end
end

return 1
"""


def _flatten(fields: Dict[str, str]) -> List[str]:
    flat: List[str] = [str(len(fields))]
    for name, value in fields.items():
        flat.extend([name, value])
    return flat


class AtomicScripts:
    """Typed entry points for the Lua scripts"""

    def __init__(self, redis_wrapper):
        """
        Initialize with RedisClient wrapper (not raw redis.Redis client)
        This ensures we use the wrapper's retry logic and error handling
        """
        self.redis_wrapper = redis_wrapper

    async def add_item(
        self,
        customer_id: int,
        product_id: int,
        variant_id: Optional[int],
        quantity: int,
        max_items: int,
        max_quantity: int,
        now: str
    ) -> List[Any]:
        """Execute add item script"""
        # Replaying after a lost reply would add the quantity twice
        return await self.redis_wrapper.eval(
            ADD_ITEM_SCRIPT,
            4,
            keys.cart_lines_key(customer_id),
            keys.cart_items_key(customer_id),
            keys.CART_ITEM_SEQ,
            keys.cart_key(customer_id),
            str(customer_id),
            str(product_id),
            "" if variant_id is None else str(variant_id),
            str(quantity),
            str(max_items),
            str(max_quantity),
            now,
            retry=False
        )

    async def update_quantity(self, item_id: int, quantity: int) -> int:
        """Execute update quantity script"""
        return await self.redis_wrapper.eval(
            UPDATE_QUANTITY_SCRIPT,
            1,
            keys.cart_item_key(item_id),
            str(quantity)
        )

    async def remove_items(self, item_ids: Sequence[int], customer_id: Optional[int] = None) -> int:
        """Execute remove items script"""
        if not item_ids:
            return 0
        return await self.redis_wrapper.eval(
            REMOVE_ITEMS_SCRIPT,
            0,
            "" if customer_id is None else str(customer_id),
            *[str(item_id) for item_id in item_ids]
        )

    async def create_order(
        self,
        customer_id: int,
        stock_lines: Sequence[Tuple[int, int]],
        order_fields: Dict[str, str],
        item_fields: Sequence[Dict[str, str]],
        created_score: float,
        payment_id: Optional[int] = None
    ) -> List[Any]:
        """
        Execute create order script.

        Args:
            stock_lines: (variant_id, quantity) pairs, one per distinct variant
            order_fields: order hash fields
            item_fields: one field dict per order item
            created_score: creation time used to sort the customer's orders
            payment_id: when given, the order is placed at most once for it
        """
        args: List[str] = [str(len(stock_lines))]
        args.extend(str(quantity) for _, quantity in stock_lines)
        args.extend(_flatten(order_fields))
        args.append(str(len(item_fields)))
        for fields in item_fields:
            args.extend(_flatten(fields))
        args.append(repr(created_score))

        script_keys = [
            keys.ORDER_SEQ,
            keys.ORDER_ITEM_SEQ,
            keys.customer_orders_key(customer_id),
            *[keys.variant_key(variant_id) for variant_id, _ in stock_lines],
        ]
        if payment_id is not None:
            script_keys.append(keys.payment_order_key(payment_id))

        return await self.redis_wrapper.eval(
            CREATE_ORDER_SCRIPT,
            len(script_keys),
            *script_keys,
            *args,
            retry=False
        )

    async def set_item_status(
        self,
        item_id: int,
        order_id: int,
        seller_id: Optional[int],
        status: str,
        now: str,
        tracking_number: Optional[str] = None,
        shipping_provider: Optional[str] = None
    ) -> List[Any]:
        """Execute set item status script"""
        return await self.redis_wrapper.eval(
            SET_ITEM_STATUS_SCRIPT,
            3,
            keys.order_item_key(item_id),
            keys.seller_metrics_key(seller_id if seller_id is not None else "none"),
            keys.order_key(order_id),
            status,
            now,
            tracking_number or "",
            shipping_provider or "",
            "1" if seller_id is not None else "0"
        )

    async def set_order_status(
        self,
        order_id: int,
        expected: str,
        status: str,
        fields: Optional[Dict[str, str]] = None,
        restock: Sequence[Tuple[int, int]] = ()
    ) -> int:
        """Execute set order status script"""
        return await self.redis_wrapper.eval(
            SET_ORDER_STATUS_SCRIPT,
            1 + len(restock),
            keys.order_key(order_id),
            *[keys.variant_key(variant_id) for variant_id, _ in restock],
            expected,
            status,
            *_flatten(fields or {}),
            *[str(quantity) for _, quantity in restock],
            retry=False
        )

    async def ship_order(
        self,
        order_id: int,
        item_ids: Sequence[int],
        expected: str,
        status: str,
        tracking_number: str,
        courier: str,
        shipped_at: str,
        now: str
    ) -> int:
        """Execute ship order script"""
        return await self.redis_wrapper.eval(
            SHIP_ORDER_SCRIPT,
            1 + len(item_ids),
            keys.order_key(order_id),
            *[keys.order_item_key(item_id) for item_id in item_ids],
            expected,
            status,
            tracking_number,
            courier,
            shipped_at,
            now,
            retry=False
        )
