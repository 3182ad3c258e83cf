"""
FastAPI application for the storefront checkout and order service.
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storefront.authorization import Actor
from storefront.cart_service import CartService
from storefront.catalog import CustomerDirectory
from storefront.checkout_service import CheckoutService
from storefront.config import Config
from storefront.dependencies import (
    current_dispatcher,
    get_actor,
    get_cart_service,
    get_checkout_service,
    get_customer_directory,
    get_order_service,
    get_payment_gateway,
    get_redis,
)
from storefront.exceptions import (
    ForbiddenError,
    NotFoundError,
    RedisConnectionError,
    StorefrontError,
)
from storefront.middleware import MetricsMiddleware
from storefront.models import (
    AddToCartRequest,
    Cart,
    CartCheckoutRequest,
    CheckoutSession,
    CompleteCheckoutRequest,
    CompleteCheckoutResponse,
    InitiateCheckoutRequest,
    InitiateCheckoutResponse,
    ItemStatusUpdateRequest,
    Order,
    OrderItem,
    OrderStatusUpdateRequest,
    PaymentRequestBody,
    PaymentResponse,
    ShipOrderRequest,
    ShippingInfo,
    UpdateQuantityRequest,
    ValidationOutcome,
)
from storefront.order_service import OrderService
from storefront.payment_gateway import PaymentGateway
from storefront.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    redis_client = get_redis_client()
    if not await redis_client.ping():
        logger.warning("Redis is not reachable at startup")
    yield
    dispatcher = current_dispatcher()
    if dispatcher is not None:
        await dispatcher.drain(timeout=5)
    await redis_client.close()


# Initialize FastAPI app
app = FastAPI(
    title="Storefront Checkout API",
    description="Cart, checkout session, payment and order placement service",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Metrics middleware
app.add_middleware(MetricsMiddleware)


def _require_self(actor: Actor, customer_id: int) -> None:
    """Customers act on their own cart and checkout; admins on anyone's"""
    if not actor.is_admin and actor.user_id != customer_id:
        raise ForbiddenError()


# Health check endpoint for ALB
@app.get("/health")
async def health_check(redis: RedisClient = Depends(get_redis)):
    """
    Health check endpoint.
    Always returns HTTP 200 if the application is running; Redis status is reported, not enforced.
    """
    redis_status = "healthy"
    redis_latency_ms = None

    try:
        ping_start = time.time()
        ping_result = await redis.ping()
        redis_latency_ms = round((time.time() - ping_start) * 1000, 2)

        if not ping_result:
            redis_status = "unhealthy"
    except Exception as e:
        logger.warning(f"Health check Redis ping failed: {e}")
        redis_status = "unhealthy"

    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "service": Config.PROJECT_NAME,
            "redis": {
                "status": redis_status,
                "latency_ms": redis_latency_ms
            },
            "timestamp": time.time()
        }
    )


# Cart endpoints
@app.post("/cart/add", response_model=dict)
async def add_cart_item(
    request: AddToCartRequest,
    actor: Actor = Depends(get_actor),
    carts: CartService = Depends(get_cart_service)
):
    """Add a product, optionally a named variant, to the customer's cart"""
    _require_self(actor, request.customer_id)
    result = await carts.add_item(
        customer_id=request.customer_id,
        product_id=request.product_id,
        quantity=request.quantity,
        variant_name=request.variant
    )
    return {"success": True, "message": "Item added to cart", **result}


@app.get("/cart/{customer_id}", response_model=Cart)
async def get_cart(
    customer_id: int,
    actor: Actor = Depends(get_actor),
    carts: CartService = Depends(get_cart_service)
):
    """Cart contents with live prices; an absent cart is returned empty"""
    _require_self(actor, customer_id)
    return await carts.get_cart(customer_id)


@app.put("/cart/items/{item_id}", response_model=dict)
async def update_cart_item(
    item_id: int,
    request: UpdateQuantityRequest,
    actor: Actor = Depends(get_actor),
    carts: CartService = Depends(get_cart_service)
):
    owner = await carts.owner_of(item_id)
    if owner is None:
        raise NotFoundError("Cart item", item_id)
    _require_self(actor, owner)
    await carts.update_quantity(item_id, request.quantity)
    return {"success": True, "item_id": item_id, "quantity": request.quantity}


@app.delete("/cart/items/{item_id}", response_model=dict)
async def remove_cart_item(
    item_id: int,
    actor: Actor = Depends(get_actor),
    carts: CartService = Depends(get_cart_service)
):
    """Remove item from cart; removing an absent item succeeds"""
    owner = await carts.owner_of(item_id)
    if owner is not None:
        _require_self(actor, owner)
    removed = await carts.remove_item(item_id)
    return {"success": True, "item_id": item_id, "removed": removed}


@app.post("/cart/checkout", response_model=CompleteCheckoutResponse)
async def checkout_cart(
    request: CartCheckoutRequest,
    actor: Actor = Depends(get_actor),
    orders: OrderService = Depends(get_order_service)
):
    """One-shot order placement at current prices, without a checkout session"""
    _require_self(actor, request.customer_id)
    order = await orders.create_order(request.customer_id, request.selected_item_ids)
    return CompleteCheckoutResponse(order_id=order.id)


# Checkout endpoints
@app.get("/checkout/methods/available", response_model=dict)
async def available_payment_methods(gateway: PaymentGateway = Depends(get_payment_gateway)):
    return {"methods": gateway.available_methods()}


@app.post("/checkout/initiate", response_model=InitiateCheckoutResponse)
async def initiate_checkout(
    request: InitiateCheckoutRequest,
    actor: Actor = Depends(get_actor),
    checkout: CheckoutService = Depends(get_checkout_service)
):
    _require_self(actor, request.customer_id)
    session = await checkout.initiate(
        customer_id=request.customer_id,
        selected_item_ids=request.selected_item_ids,
        idempotency_key=request.idempotency_key
    )
    return InitiateCheckoutResponse(
        session_id=session.session_id,
        locked_prices=session.locked_prices,
        total_amount=session.total_amount,
        expires_at=session.expires_at,
        step=session.step,
    )


async def _authorize_session(checkout: CheckoutService, session_id: str, actor: Actor) -> None:
    _require_self(actor, await checkout.owner_of(session_id))


@app.get("/checkout/{session_id}", response_model=CheckoutSession)
async def get_checkout_session(
    session_id: str,
    actor: Actor = Depends(get_actor),
    checkout: CheckoutService = Depends(get_checkout_service)
):
    await _authorize_session(checkout, session_id, actor)
    return await checkout.get_session(session_id)


@app.put("/checkout/{session_id}/shipping", response_model=CheckoutSession)
async def set_shipping_info(
    session_id: str,
    request: ShippingInfo,
    actor: Actor = Depends(get_actor),
    checkout: CheckoutService = Depends(get_checkout_service)
):
    await _authorize_session(checkout, session_id, actor)
    return await checkout.set_shipping_info(session_id, request)


@app.post(
    "/checkout/{session_id}/validate",
    response_model=ValidationOutcome,
    response_model_exclude_none=True
)
async def validate_checkout(
    session_id: str,
    actor: Actor = Depends(get_actor),
    checkout: CheckoutService = Depends(get_checkout_service)
):
    """Re-check prices and stock; price drift is reported, stock shortfalls fail"""
    await _authorize_session(checkout, session_id, actor)
    return await checkout.validate_and_proceed_to_payment(session_id)


@app.post("/checkout/{session_id}/pay", response_model=PaymentResponse)
async def pay_checkout(
    session_id: str,
    request: PaymentRequestBody,
    actor: Actor = Depends(get_actor),
    checkout: CheckoutService = Depends(get_checkout_service)
):
    await _authorize_session(checkout, session_id, actor)
    attempt = await checkout.process_payment(session_id, request.method, request.idempotency_key)
    return PaymentResponse(payment_id=attempt.id, gateway_ref=attempt.gateway_ref, status=attempt.status)


@app.post("/checkout/{session_id}/complete", response_model=CompleteCheckoutResponse)
async def complete_checkout(
    session_id: str,
    request: Optional[CompleteCheckoutRequest] = None,
    actor: Actor = Depends(get_actor),
    checkout: CheckoutService = Depends(get_checkout_service)
):
    await _authorize_session(checkout, session_id, actor)
    payment_id = request.payment_id if request else None
    order_id = await checkout.complete(session_id, payment_id)
    return CompleteCheckoutResponse(order_id=order_id)


@app.post("/checkout/{session_id}/cancel", response_model=dict)
async def cancel_checkout(
    session_id: str,
    actor: Actor = Depends(get_actor),
    checkout: CheckoutService = Depends(get_checkout_service)
):
    await _authorize_session(checkout, session_id, actor)
    session = await checkout.cancel(session_id)
    return {"success": True, "session_id": session.session_id, "status": session.status.value}


# Order endpoints
@app.get("/orders", response_model=List[Order])
async def list_orders(
    actor: Actor = Depends(get_actor),
    orders: OrderService = Depends(get_order_service)
):
    """Current user's orders, newest first"""
    return await orders.list_orders(actor.user_id)


@app.get("/orders/{order_id}", response_model=Order)
async def get_order(
    order_id: int,
    actor: Actor = Depends(get_actor),
    orders: OrderService = Depends(get_order_service)
):
    return await orders.get_order(order_id, actor)


@app.put("/orders/items/{item_id}/status", response_model=OrderItem)
async def update_order_item_status(
    item_id: int,
    request: ItemStatusUpdateRequest,
    actor: Actor = Depends(get_actor),
    orders: OrderService = Depends(get_order_service)
):
    return await orders.update_item_status(
        item_id,
        request.status,
        actor,
        tracking_number=request.tracking_number,
        shipping_provider=request.shipping_provider
    )


@app.put("/orders/{order_id}/ship", response_model=Order)
async def ship_order(
    order_id: int,
    request: ShipOrderRequest,
    actor: Actor = Depends(get_actor),
    orders: OrderService = Depends(get_order_service)
):
    return await orders.ship_order(order_id, request.tracking_number, request.courier_name, actor)


@app.put("/orders/{order_id}/status", response_model=Order)
async def update_order_status(
    order_id: int,
    request: OrderStatusUpdateRequest,
    actor: Actor = Depends(get_actor),
    orders: OrderService = Depends(get_order_service)
):
    return await orders.update_order_status(order_id, request.status, actor)


@app.post("/orders/{order_id}/refund", response_model=Order)
async def refund_order(
    order_id: int,
    actor: Actor = Depends(get_actor),
    orders: OrderService = Depends(get_order_service)
):
    return await orders.refund_order(order_id, actor)


# Account deletion
@app.delete("/customers/{customer_id}", response_model=dict)
async def delete_customer(
    customer_id: int,
    actor: Actor = Depends(get_actor),
    carts: CartService = Depends(get_cart_service),
    orders: OrderService = Depends(get_order_service),
    customers: CustomerDirectory = Depends(get_customer_directory)
):
    """Drop the customer's cart and contact details; orders are kept anonymized"""
    _require_self(actor, customer_id)
    removed = await carts.delete_cart(customer_id)
    anonymized = await orders.anonymize_customer_orders(customer_id)
    await customers.forget_customer(customer_id)
    return {"success": True, "cart_items_removed": removed, "orders_anonymized": anonymized}


# Error handlers
@app.exception_handler(RedisConnectionError)
async def redis_error_handler(request, exc):
    logger.error(f"Redis unavailable: {exc}")
    return JSONResponse(
        status_code=503,
        content={"error": exc.error_code, "message": "Redis connection failed"}
    )


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request, exc: StorefrontError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Generic exception handler for unhandled errors
@app.exception_handler(Exception)
async def generic_exception_handler(request, exc):
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_ERROR",
            "message": "Internal server error",
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.APP_PORT)
