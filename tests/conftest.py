import random
from decimal import Decimal

import fakeredis
import httpx
import pytest

from storefront.audit import AuditLogger
from storefront.authorization import Actor, Role
from storefront.cart_service import CartService
from storefront.catalog import CatalogRepository, CustomerDirectory
from storefront.checkout_service import CheckoutService
from storefront.dependencies import get_notification_dispatcher, get_payment_gateway, get_redis
from storefront.main import app
from storefront.models import Product, ProductVariant
from storefront.notifications import NotificationDispatcher, NotificationSender
from storefront.order_service import OrderService
from storefront.payment_gateway import MockPaymentGateway
from storefront.redis_client import RedisClient

SHOE = 1
SHOE_42 = 11
SOCKS = 2
SOCKS_M = 21
GIFT_CARD = 3

SELLER_A = 10
SELLER_B = 20


class RecordingSender(NotificationSender):
    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, to, subject, body):
        if self.fail:
            raise RuntimeError("mail server down")
        self.sent.append({"to": to, "subject": subject, "body": body})


@pytest.fixture
async def redis():
    fake = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    client = RedisClient(client=fake)
    yield client
    await fake.flushall()
    await fake.aclose()


@pytest.fixture
async def catalog(redis):
    catalog = CatalogRepository(redis)
    await catalog.save_product(Product(id=SHOE, name="Trail Shoe", base_price=Decimal("100.00"), seller_id=SELLER_A))
    await catalog.save_variant(ProductVariant(id=SHOE_42, product_id=SHOE, name="42", stock=3))
    await catalog.save_product(Product(
        id=SOCKS, name="Wool Socks", base_price=Decimal("20.00"), discount_percentage=10, seller_id=SELLER_B
    ))
    await catalog.save_variant(ProductVariant(id=SOCKS_M, product_id=SOCKS, name="M", stock=10))
    await catalog.save_product(Product(id=GIFT_CARD, name="Gift Card", base_price=Decimal("50.00"), seller_id=SELLER_A))
    return catalog


@pytest.fixture
async def customers(redis):
    directory = CustomerDirectory(redis)
    await directory.save_customer(1, "ana@example.com")
    await directory.save_customer(2, "ben@example.com")
    return directory


@pytest.fixture
def cart_service(redis, catalog):
    return CartService(redis, catalog)


@pytest.fixture
def gateway():
    return MockPaymentGateway(
        min_latency_ms=0, max_latency_ms=0, failure_rate=0, rng=random.Random(7), record_calls=True
    )


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def dispatcher(sender, customers):
    return NotificationDispatcher(sender, customers)


@pytest.fixture
def order_service(redis, cart_service, catalog, dispatcher, gateway):
    return OrderService(redis, cart_service, catalog, dispatcher, gateway, AuditLogger())


@pytest.fixture
def checkout_service(redis, cart_service, catalog, gateway, order_service):
    return CheckoutService(redis, cart_service, catalog, gateway, order_service, AuditLogger())


@pytest.fixture
def admin():
    return Actor(user_id=900, role=Role.ADMIN)


@pytest.fixture
def seller_a():
    return Actor(user_id=910, role=Role.SELLER, seller_id=SELLER_A)


@pytest.fixture
def seller_b():
    return Actor(user_id=920, role=Role.SELLER, seller_id=SELLER_B)


@pytest.fixture
def customer():
    return Actor(user_id=1, role=Role.CUSTOMER)


@pytest.fixture
async def api_client(redis, catalog, customers, gateway, dispatcher):
    app.dependency_overrides[get_redis] = lambda: redis
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
