"""
FastAPI dependencies: service wiring and caller identity.

Process-wide singletons (Redis client, payment gateway, notification
dispatcher) are created lazily; everything else is cheap and built per request.
Tests swap any of these through app.dependency_overrides.
"""
from typing import Optional

from fastapi import Depends, Header

from storefront.audit import AuditLogger
from storefront.authorization import Actor, Role
from storefront.cart_service import CartService
from storefront.catalog import CatalogRepository, CustomerDirectory
from storefront.checkout_service import CheckoutService
from storefront.exceptions import UnauthorizedError, ValidationError
from storefront.notifications import NotificationDispatcher, build_sender
from storefront.order_service import OrderService
from storefront.payment_gateway import MockPaymentGateway, PaymentGateway
from storefront.redis_client import RedisClient, get_redis_client

_payment_gateway: Optional[PaymentGateway] = None
_dispatcher: Optional[NotificationDispatcher] = None
_audit_logger = AuditLogger()


def get_redis() -> RedisClient:
    return get_redis_client()


def get_catalog(redis: RedisClient = Depends(get_redis)) -> CatalogRepository:
    return CatalogRepository(redis)


def get_customer_directory(redis: RedisClient = Depends(get_redis)) -> CustomerDirectory:
    return CustomerDirectory(redis)


def get_cart_service(
    redis: RedisClient = Depends(get_redis),
    catalog: CatalogRepository = Depends(get_catalog)
) -> CartService:
    return CartService(redis, catalog)


def get_payment_gateway() -> PaymentGateway:
    """Get or create the payment gateway (singleton)"""
    global _payment_gateway
    if _payment_gateway is None:
        _payment_gateway = MockPaymentGateway()
    return _payment_gateway


def get_notification_dispatcher(
    customers: CustomerDirectory = Depends(get_customer_directory)
) -> NotificationDispatcher:
    """Get or create the notification dispatcher (singleton)"""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher(build_sender(), customers)
    return _dispatcher


def current_dispatcher() -> Optional[NotificationDispatcher]:
    return _dispatcher


def get_audit_logger() -> AuditLogger:
    return _audit_logger


def get_order_service(
    redis: RedisClient = Depends(get_redis),
    carts: CartService = Depends(get_cart_service),
    catalog: CatalogRepository = Depends(get_catalog),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    audit: AuditLogger = Depends(get_audit_logger)
) -> OrderService:
    return OrderService(redis, carts, catalog, dispatcher, gateway, audit)


def get_checkout_service(
    redis: RedisClient = Depends(get_redis),
    carts: CartService = Depends(get_cart_service),
    catalog: CatalogRepository = Depends(get_catalog),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    orders: OrderService = Depends(get_order_service),
    audit: AuditLogger = Depends(get_audit_logger)
) -> CheckoutService:
    return CheckoutService(redis, carts, catalog, gateway, orders, audit)


def get_actor(
    user_id: Optional[str] = Header(None, alias="X-User-ID", description="Authenticated user identifier"),
    role: Optional[str] = Header(None, alias="X-User-Role", description="customer, seller or admin"),
    seller_id: Optional[str] = Header(None, alias="X-Seller-ID", description="Seller the user acts for")
) -> Actor:
    """
    Caller identity, as forwarded by the upstream auth layer.

    Session authentication itself happens before requests reach this service.
    """
    if not user_id or not user_id.strip():
        raise UnauthorizedError()
    try:
        return Actor(
            user_id=int(user_id),
            role=Role((role or Role.CUSTOMER.value).strip().lower()),
            seller_id=int(seller_id) if seller_id else None,
        )
    except ValueError:
        raise ValidationError("Malformed identity headers")
