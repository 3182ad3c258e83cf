"""
Pydantic models for catalog, cart, checkout and order operations, requests, and responses.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class CheckoutStep(str, Enum):
    CART = "cart"
    SHIPPING = "shipping"
    PAYMENT = "payment"
    CONFIRMATION = "confirmation"


class CheckoutStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class OrderItemStatus(str, Enum):
    PAID = "paid"
    PREPARING = "preparing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"


# Catalog

class Product(BaseModel):
    """Catalog product (read-only for the checkout core)"""
    id: int
    name: str
    base_price: Decimal
    discount_percentage: Optional[float] = None
    seller_id: Optional[int] = None
    image: Optional[str] = None


class ProductVariant(BaseModel):
    """Catalog variant; `stock` is the only field the checkout core mutates"""
    id: int
    product_id: int
    name: str
    price: Optional[Decimal] = None
    discount_percentage: Optional[float] = None
    stock: int = Field(0, ge=0)
    image: Optional[str] = None


class PriceInfo(BaseModel):
    effective_price: Decimal
    discount_percentage: float
    discounted_price: Optional[Decimal] = None
    final_price: Decimal
    has_discount: bool


# Cart

class AddToCartRequest(BaseModel):
    """Request model for adding items to a cart"""
    customer_id: int = Field(..., description="Customer identifier")
    product_id: int = Field(..., description="Product identifier")
    quantity: int = Field(1, description="Quantity to add")
    variant: Optional[str] = Field(None, description="Variant name, scoped to the product")


class UpdateQuantityRequest(BaseModel):
    quantity: int = Field(..., description="New item quantity")


class CartItem(BaseModel):
    """Cart line with live pricing"""
    id: int
    product_id: int
    variant_id: Optional[int] = None
    quantity: int
    product_name: str
    variant_name: Optional[str] = None
    image: Optional[str] = None
    price_info: PriceInfo
    line_total: Decimal


class Cart(BaseModel):
    """Response model for cart retrieval"""
    customer_id: int
    items: List[CartItem] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    total_savings: Decimal = Decimal("0")
    item_count: int = 0


class CartCheckoutRequest(BaseModel):
    """Request model for one-shot cart checkout"""
    customer_id: int
    selected_item_ids: List[int] = Field(..., min_length=1)


# Checkout

class LockedPrice(BaseModel):
    """Price snapshot captured when a checkout session starts"""
    item_id: int
    product_id: int
    variant_id: Optional[int] = None
    quantity: int
    unit_price: Decimal
    discount_percentage: float
    final_price: Decimal
    product_name: str
    variant_name: Optional[str] = None
    image: Optional[str] = None
    seller_id: Optional[int] = None

    @property
    def line_total(self) -> Decimal:
        return self.final_price * self.quantity


class ShippingInfo(BaseModel):
    full_name: str
    phone: str
    address: str
    city: str
    postal_code: str
    notes: Optional[str] = None

    @field_validator("full_name", "phone", "address", "city", "postal_code")
    @classmethod
    def validate_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Field is required")
        return v


class CheckoutSession(BaseModel):
    """Server-side checkout session document"""
    session_id: str
    customer_id: int
    selected_item_ids: List[int]
    locked_prices: List[LockedPrice]
    total_amount: Decimal
    created_at: datetime
    expires_at: datetime
    step: CheckoutStep = CheckoutStep.CART
    status: CheckoutStatus = CheckoutStatus.ACTIVE
    shipping_info: Optional[ShippingInfo] = None
    payment_method: Optional[str] = None
    payment_id: Optional[int] = None
    order_id: Optional[int] = None
    idempotency_key: str
    payment_idempotency_keys: List[str] = Field(default_factory=list)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class InitiateCheckoutRequest(BaseModel):
    customer_id: int
    selected_item_ids: List[int] = Field(default_factory=list)
    idempotency_key: str = ""


class InitiateCheckoutResponse(BaseModel):
    session_id: str
    locked_prices: List[LockedPrice]
    total_amount: Decimal
    expires_at: datetime
    step: CheckoutStep


class PriceChange(BaseModel):
    product_name: str
    variant_name: Optional[str] = None
    old_price: Decimal
    new_price: Decimal


class ValidationOutcome(BaseModel):
    step: CheckoutStep
    price_changes: Optional[List[PriceChange]] = None
    note: Optional[str] = None


class PaymentRequestBody(BaseModel):
    method: str
    idempotency_key: str


class PaymentAttempt(BaseModel):
    """One charge attempt, keyed by its idempotency key"""
    id: int
    session_id: str
    customer_id: int
    method: str
    amount: Decimal
    idempotency_key: str
    status: PaymentStatus = PaymentStatus.PROCESSING
    gateway_ref: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    order_id: Optional[int] = None
    created_at: datetime


class PaymentResponse(BaseModel):
    payment_id: int
    gateway_ref: Optional[str] = None
    status: PaymentStatus


class CompleteCheckoutRequest(BaseModel):
    payment_id: Optional[int] = None


class CompleteCheckoutResponse(BaseModel):
    order_id: int
    message: str = "Order placed successfully!"


# Orders

class OrderLine(BaseModel):
    """Immutable line snapshot serialized into the order row"""
    product_id: int
    product_name: str
    image: Optional[str] = None
    variant_id: Optional[int] = None
    variant_name: Optional[str] = None
    quantity: int
    unit_price: Decimal
    discount_percentage: float = 0
    final_price: Decimal
    seller_id: Optional[int] = None


class OrderItem(BaseModel):
    """Per-seller fulfillment unit of an order"""
    id: int
    order_id: int
    seller_id: Optional[int] = None
    product_id: int
    variant_id: Optional[int] = None
    quantity: int
    line_total: Decimal
    status: OrderItemStatus = OrderItemStatus.PAID
    tracking_number: Optional[str] = None
    shipping_provider: Optional[str] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class Order(BaseModel):
    id: int
    customer_id: int
    seller_id: Optional[int] = None
    products: List[OrderLine] = Field(default_factory=list)
    total_amount: Decimal
    discount: Decimal = Decimal("0")
    status: OrderStatus = OrderStatus.PENDING
    tracking_number: Optional[str] = None
    courier: Optional[str] = None
    payment_id: Optional[int] = None
    payment_ref: Optional[str] = None
    refund_ref: Optional[str] = None
    shipping_info: Optional[ShippingInfo] = None
    idempotency_key: Optional[str] = None
    anonymized: bool = False
    uploaded_at: datetime
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    items: List[OrderItem] = Field(default_factory=list)


class ItemStatusUpdateRequest(BaseModel):
    status: OrderItemStatus
    tracking_number: Optional[str] = None
    shipping_provider: Optional[str] = None


class ShipOrderRequest(BaseModel):
    tracking_number: str = ""
    courier_name: Optional[str] = None


class OrderStatusUpdateRequest(BaseModel):
    status: OrderStatus
