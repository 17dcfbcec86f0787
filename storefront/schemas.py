from pydantic import BaseModel, EmailStr, Field
from decimal import Decimal
from typing import Optional, List
from datetime import datetime
from enum import Enum


class OrderStatus(str, Enum):
    ORDER_PLACED = "order_placed"
    PROCESSING = "processing"
    PACKED = "packed"
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


class MeasurementOrderStatus(str, Enum):
    ORDER_RECEIVED = "order_received"
    DESIGN_REVIEW = "design_review"
    FABRIC_SELECTION = "fabric_selection"
    PATTERN_MAKING = "pattern_making"
    CUTTING = "cutting"
    SEWING = "sewing"
    QUALITY_CHECK = "quality_check"
    PACKED = "packed"
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    RELEASED = "released"


# ---------- catalog ----------

class VariantCreate(BaseModel):
    color: str = Field(..., min_length=1, max_length=50)
    size: str = Field(..., min_length=1, max_length=20)
    price: Decimal = Field(..., gt=0, description="Unit price")
    discount_price: Optional[Decimal] = Field(None, ge=0)
    quantity: int = Field(0, ge=0, description="Units on hand")


class VariantUpdate(BaseModel):
    price: Optional[Decimal] = Field(None, gt=0)
    discount_price: Optional[Decimal] = Field(None, ge=0)
    quantity: Optional[int] = Field(None, ge=0)


class VariantOut(BaseModel):
    id: int
    product_id: int
    color: str
    size: str
    price: Decimal
    discount_price: Optional[Decimal] = None
    quantity: int
    reserved_quantity: int
    available_quantity: int

    model_config = {"from_attributes": True}


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=150)
    description: Optional[str] = None
    category: Optional[str] = Field(None, max_length=50)
    variants: List[VariantCreate] = Field(..., min_length=1)


class ProductOut(BaseModel):
    id: int
    name: str
    slug: str
    description: Optional[str] = None
    category: Optional[str] = None
    created_at: Optional[datetime] = None
    variants: List[VariantOut] = []

    model_config = {"from_attributes": True}


class ProductListResponse(BaseModel):
    products: List[ProductOut]
    total: int
    skip: int
    limit: int


# ---------- checkout / orders ----------

class ShippingInfo(BaseModel):
    """Shipping address submitted at checkout.

    Every field is optional here: authenticated customers may omit the
    address and fall back to their address book.
    """

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    shipping_location: Optional[str] = None


class CheckoutItem(BaseModel):
    product_id: int = Field(..., gt=0, description="Product ID")
    variant_id: int = Field(..., gt=0, description="Variant ID")
    quantity: int = Field(..., description="Units requested")
    # Informational only; the catalog price is always charged
    price: Optional[Decimal] = None


class CheckoutRequest(BaseModel):
    items: List[CheckoutItem] = Field(..., min_length=1)
    shipping: Optional[ShippingInfo] = None


class OrderItemOut(BaseModel):
    id: int
    product_id: int
    variant_id: int
    product_name: str
    variant_color: str
    variant_size: str
    unit_price: Decimal
    discount_price: Optional[Decimal] = None
    quantity: int
    item_subtotal: Decimal
    item_total: Decimal

    model_config = {"from_attributes": True}


class OrderOut(BaseModel):
    id: int
    order_number: str
    customer_id: Optional[int] = None
    is_guest: bool
    guest_email: Optional[str] = None
    first_name: str
    last_name: str
    email: str
    phone: str
    address: str
    city: str
    state: str
    zip_code: str
    country: str
    shipping_location: Optional[str] = None
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    total: Decimal
    order_status: OrderStatus
    payment_status: PaymentStatus
    payment_method: str
    payment_reference: Optional[str] = None
    transaction_reference: Optional[str] = None
    reservation_expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemOut] = []

    model_config = {"from_attributes": True}


class OrderListResponse(BaseModel):
    orders: List[OrderOut]
    total: int
    skip: int
    limit: int


class CheckoutResponse(BaseModel):
    order: OrderOut
    payment_url: str
    transaction_reference: str
    payment_reference: str


class StatusUpdate(BaseModel):
    status: str = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=255)


class PaymentVerificationOut(BaseModel):
    order_type: str
    order_number: str
    payment_status: PaymentStatus
    status: str
    total: Optional[Decimal] = None
    paid_at: Optional[datetime] = None


# ---------- measurement orders ----------

class MeasurementValue(BaseModel):
    field_name: str = Field(..., min_length=1)
    value: float = Field(..., gt=0)


class MeasurementTemplateIn(BaseModel):
    template_title: str = Field(..., min_length=1)
    quantity: int = Field(1, gt=0)
    measurements: List[MeasurementValue] = Field(..., min_length=1)


class MeasurementOrderCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = Field("Nigeria", min_length=1)
    shipping_location: str = Field(..., min_length=1)
    templates: List[MeasurementTemplateIn] = Field(..., min_length=1)
    notes: Optional[str] = None
    preferred_style: Optional[str] = Field(None, max_length=255)


class MeasurementPriceUpdate(BaseModel):
    price: Decimal = Field(..., gt=0)


class MeasurementOrderOut(BaseModel):
    id: int
    order_number: str
    customer_id: Optional[int] = None
    is_guest: bool
    guest_email: Optional[str] = None
    name: str
    email: str
    phone: str
    address: str
    city: str
    state: str
    zip_code: str
    country: str
    shipping_location: str
    templates: List[MeasurementTemplateIn]
    notes: Optional[str] = None
    preferred_style: Optional[str] = None
    price: Optional[Decimal] = None
    delivery_fee: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    total: Optional[Decimal] = None
    price_set_at: Optional[datetime] = None
    status: MeasurementOrderStatus
    payment_status: PaymentStatus
    payment_reference: Optional[str] = None
    transaction_reference: Optional[str] = None
    is_replaced: bool
    replaced_by_order_id: Optional[int] = None
    original_order_id: Optional[int] = None
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class MeasurementOrderListResponse(BaseModel):
    orders: List[MeasurementOrderOut]
    total: int
    skip: int
    limit: int


class MeasurementCheckoutRequest(BaseModel):
    # Guests prove ownership with the email the order was placed with
    email: Optional[EmailStr] = None


class MeasurementCheckoutResponse(BaseModel):
    order: MeasurementOrderOut
    payment_url: str
    transaction_reference: str
    payment_reference: str


class TrackOrderResponse(BaseModel):
    order_type: str
    order: Optional[OrderOut] = None
    measurement_order: Optional[MeasurementOrderOut] = None


# ---------- shipping / address book ----------

class LocationFee(BaseModel):
    location: str = Field(..., min_length=1)
    fee: Decimal = Field(..., ge=0)


class ShippingSettingsIn(BaseModel):
    location_fees: List[LocationFee] = []
    free_shipping_threshold: Decimal = Field(Decimal("0"), ge=0)


class ShippingSettingsOut(BaseModel):
    location_fees: List[LocationFee] = []
    free_shipping_threshold: Decimal


class AddressIn(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = Field("Nigeria", min_length=1)


class AddressOut(AddressIn):
    customer_id: int
    email: str

    model_config = {"from_attributes": True}


class SweepResult(BaseModel):
    cancelled_orders: int
    released_reservations: int
