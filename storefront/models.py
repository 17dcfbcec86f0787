import datetime as dt

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def as_utc(value: dt.datetime | None) -> dt.datetime | None:
    """Normalize a stored datetime to aware UTC.

    Some backends (SQLite) hand back naive values for timestamptz columns.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), nullable=False, index=True, unique=True)
    slug = Column(String(170), nullable=False, index=True, unique=True)
    description = Column(Text)
    category = Column(String(50), index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    variants = relationship(
        "ProductVariant",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="ProductVariant.id",
    )


class ProductVariant(Base):
    """One purchasable color/size of a product.

    Stock held for unpaid checkouts lives in ``reserved_quantity``; it is
    only ever changed by the conditional updates in ``inventory``.
    """

    __tablename__ = "product_variants"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_variant_quantity_non_negative"),
        CheckConstraint("reserved_quantity >= 0", name="ck_variant_reserved_non_negative"),
        CheckConstraint("reserved_quantity <= quantity", name="ck_variant_reserved_within_quantity"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    color = Column(String(50), nullable=False)
    size = Column(String(20), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    discount_price = Column(Numeric(12, 2), nullable=True)
    quantity = Column(Integer, nullable=False, default=0)
    reserved_quantity = Column(Integer, nullable=False, default=0)

    product = relationship("Product", back_populates="variants")

    @property
    def available_quantity(self) -> int:
        return int(self.quantity or 0) - int(self.reserved_quantity or 0)


class StockReservation(Base):
    """A hold on variant stock for a not-yet-paid order.

    ``id`` is the reservation token handed back by ``inventory.reserve``.
    """

    __tablename__ = "stock_reservations"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservation_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="active", index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    committed_at = Column(DateTime(timezone=True), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(32), nullable=False, unique=True, index=True)
    customer_id = Column(Integer, nullable=True, index=True)
    is_guest = Column(Boolean, nullable=False, default=True)
    guest_email = Column(String(255), nullable=True)

    # shipping address snapshot
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False)
    phone = Column(String(40), nullable=False)
    address = Column(String(255), nullable=False)
    city = Column(String(100), nullable=False)
    state = Column(String(100), nullable=False)
    zip_code = Column(String(20), nullable=False)
    country = Column(String(100), nullable=False)
    shipping_location = Column(String(100), nullable=True)

    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping = Column(Numeric(12, 2), nullable=False, default=0)
    tax = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False)

    order_status = Column(String(32), nullable=False, default="order_placed", index=True)
    payment_status = Column(String(16), nullable=False, default="pending", index=True)
    payment_method = Column(String(32), nullable=False, default="monnify")
    payment_reference = Column(String(64), nullable=True, index=True)
    transaction_reference = Column(String(64), nullable=True, unique=True, index=True)
    payment_url = Column(Text, nullable=True)
    reservation_expires_at = Column(DateTime(timezone=True), nullable=True, index=True)

    paid_at = Column(DateTime(timezone=True), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )
    reservations = relationship("StockReservation", cascade="all, delete-orphan")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False)
    variant_id = Column(Integer, nullable=False)
    product_name = Column(String(150), nullable=False)
    variant_color = Column(String(50), nullable=False)
    variant_size = Column(String(20), nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    discount_price = Column(Numeric(12, 2), nullable=True)
    quantity = Column(Integer, nullable=False)
    item_subtotal = Column(Numeric(12, 2), nullable=False)
    item_total = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")


class MeasurementOrder(Base):
    """A bespoke garment request, priced by an admin before it can be paid."""

    __tablename__ = "measurement_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(32), nullable=False, unique=True, index=True)
    customer_id = Column(Integer, nullable=True, index=True)
    is_guest = Column(Boolean, nullable=False, default=True)
    guest_email = Column(String(255), nullable=True)

    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=False)
    phone = Column(String(40), nullable=False)
    address = Column(String(255), nullable=False)
    city = Column(String(100), nullable=False)
    state = Column(String(100), nullable=False)
    zip_code = Column(String(20), nullable=False)
    country = Column(String(100), nullable=False)
    shipping_location = Column(String(100), nullable=False)

    # [{"template_title": str, "quantity": int, "measurements": [{"field_name": str, "value": float}]}]
    templates = Column(JSON, nullable=False)
    notes = Column(Text, nullable=True)
    preferred_style = Column(String(255), nullable=True)

    price = Column(Numeric(12, 2), nullable=True)
    delivery_fee = Column(Numeric(12, 2), nullable=True)
    tax = Column(Numeric(12, 2), nullable=True)
    total = Column(Numeric(12, 2), nullable=True)
    price_set_at = Column(DateTime(timezone=True), nullable=True)
    price_set_by = Column(Integer, nullable=True)

    status = Column(String(32), nullable=False, default="order_received", index=True)
    payment_status = Column(String(16), nullable=False, default="pending", index=True)
    payment_method = Column(String(32), nullable=False, default="monnify")
    payment_reference = Column(String(64), nullable=True, index=True)
    transaction_reference = Column(String(64), nullable=True, unique=True, index=True)
    payment_url = Column(Text, nullable=True)

    is_replaced = Column(Boolean, nullable=False, default=False)
    replaced_by_order_id = Column(Integer, ForeignKey("measurement_orders.id"), nullable=True)
    original_order_id = Column(Integer, ForeignKey("measurement_orders.id"), nullable=True)

    paid_at = Column(DateTime(timezone=True), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ShippingSettings(Base):
    __tablename__ = "shipping_settings"

    id = Column(Integer, primary_key=True, index=True)
    # [{"location": str, "fee": float}]
    location_fees = Column(JSON, nullable=False, default=list)
    free_shipping_threshold = Column(Numeric(12, 2), nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class CustomerAddress(Base):
    """Address book entry used for authenticated checkout."""

    __tablename__ = "customer_addresses"

    customer_id = Column(Integer, primary_key=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False)
    phone = Column(String(40), nullable=False)
    address = Column(String(255), nullable=False)
    city = Column(String(100), nullable=False)
    state = Column(String(100), nullable=False)
    zip_code = Column(String(20), nullable=False)
    country = Column(String(100), nullable=False, default="Nigeria")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
