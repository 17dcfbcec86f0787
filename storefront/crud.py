import logging
import re
import secrets
import string
from decimal import Decimal
from typing import Optional, List, Tuple

from sqlalchemy import or_, func, update
from sqlalchemy.orm import Session

from .models import (
    CustomerAddress,
    MeasurementOrder,
    Order,
    Product,
    ProductVariant,
    ShippingSettings,
    utcnow,
)

logger = logging.getLogger(__name__)

ORDER_NUMBER_PREFIX = "ORD"
MEASUREMENT_ORDER_NUMBER_PREFIX = "MSO"
ORDER_NUMBER_ATTEMPTS = 10

_ALPHABET = string.ascii_uppercase + string.digits


# -----------------------------
# Catalog
# -----------------------------

def _slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "product"


def get_product_by_name(db: Session, name: str):
    normalized = (name or "").strip()
    if not normalized:
        return None
    return (
        db.query(Product)
        .filter(func.lower(Product.name) == normalized.lower())
        .first()
    )


def create_product(db: Session, product_data: dict, variants: List[dict]) -> Product:
    # Product names are unique (case-insensitive)
    name = (product_data.get("name") or "").strip()
    if not name:
        raise ValueError("name_required")
    if get_product_by_name(db, name):
        raise ValueError("duplicate_product_name")

    seen = set()
    for v in variants:
        key = (v["color"].strip().lower(), v["size"].strip().lower())
        if key in seen:
            raise ValueError("duplicate_variant")
        seen.add(key)

    slug = _slugify(name)
    if db.query(Product).filter(Product.slug == slug).first():
        slug = f"{slug}-{secrets.token_hex(3)}"

    db_product = Product(**{**product_data, "name": name, "slug": slug})
    for v in variants:
        db_product.variants.append(
            ProductVariant(
                color=v["color"].strip(),
                size=v["size"].strip(),
                price=v["price"],
                discount_price=v.get("discount_price"),
                quantity=int(v.get("quantity") or 0),
                reserved_quantity=0,
            )
        )
    db.add(db_product)
    db.commit()
    db.refresh(db_product)
    return db_product


def get_product(db: Session, product_id: int) -> Optional[Product]:
    return db.query(Product).filter(Product.id == product_id).first()


def get_products(db: Session, skip: int = 0, limit: int = 100, search: str = None, category: str = None):
    query = db.query(Product)
    if search:
        search_pattern = f"%{search}%"
        query = query.filter(
            or_(
                Product.name.ilike(search_pattern),
                Product.description.ilike(search_pattern),
                Product.category.ilike(search_pattern),
            )
        )
    if category:
        query = query.filter(func.lower(Product.category) == category.lower())
    total = query.count()
    return query.order_by(Product.id).offset(skip).limit(limit).all(), total


def delete_product(db: Session, product_id: int) -> Optional[Product]:
    db_product = get_product(db, product_id)
    if not db_product:
        return None
    if any(v.reserved_quantity for v in db_product.variants):
        raise ValueError("stock_reserved")
    db.delete(db_product)
    db.commit()
    return db_product


def get_variant(db: Session, variant_id: int) -> Optional[ProductVariant]:
    return db.query(ProductVariant).filter(ProductVariant.id == variant_id).first()


def update_variant(db: Session, variant_id: int, update_data: dict) -> Optional[ProductVariant]:
    db_variant = get_variant(db, variant_id)
    if not db_variant:
        return None

    price = update_data.get("price")
    if price is None:
        price = db_variant.price
    discount = update_data.get("discount_price", db_variant.discount_price)
    if discount is not None and Decimal(str(discount)) > Decimal(str(price)):
        raise ValueError("discount_above_price")

    values = {k: v for k, v in update_data.items() if v is not None}
    if "discount_price" in update_data and update_data["discount_price"] is None:
        values["discount_price"] = None
    if not values:
        return db_variant

    stmt = update(ProductVariant).where(ProductVariant.id == variant_id)
    if "quantity" in values:
        # Never drop on-hand stock below what is already held for checkouts
        stmt = stmt.where(ProductVariant.reserved_quantity <= int(values["quantity"]))
    result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    if result.rowcount == 0:
        db.rollback()
        raise ValueError("quantity_below_reserved")
    db.commit()
    db.refresh(db_variant)
    return db_variant


# -----------------------------
# Shipping settings / address book
# -----------------------------

def get_shipping_settings(db: Session) -> Optional[ShippingSettings]:
    return db.query(ShippingSettings).order_by(ShippingSettings.id).first()


def upsert_shipping_settings(db: Session, location_fees: List[dict], free_shipping_threshold) -> ShippingSettings:
    settings = get_shipping_settings(db)
    fees = [{"location": f["location"].strip(), "fee": float(f["fee"])} for f in location_fees]
    if settings is None:
        settings = ShippingSettings(location_fees=fees, free_shipping_threshold=free_shipping_threshold)
        db.add(settings)
    else:
        settings.location_fees = fees
        settings.free_shipping_threshold = free_shipping_threshold
    db.commit()
    db.refresh(settings)
    return settings


def get_address(db: Session, customer_id: int) -> Optional[CustomerAddress]:
    return db.query(CustomerAddress).filter(CustomerAddress.customer_id == customer_id).first()


def upsert_address(db: Session, customer_id: int, address_data: dict) -> CustomerAddress:
    entry = get_address(db, customer_id)
    if entry is None:
        entry = CustomerAddress(customer_id=customer_id, **address_data)
        db.add(entry)
    else:
        for key, value in address_data.items():
            setattr(entry, key, value)
    db.commit()
    db.refresh(entry)
    return entry


# -----------------------------
# Order numbers
# -----------------------------

def _random_order_number(prefix: str) -> str:
    today = utcnow().strftime("%Y%m%d")
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(6))
    return f"{prefix}-{today}-{suffix}"


def generate_order_number(db: Session, model, prefix: str) -> str:
    """Return an unused ``PREFIX-YYYYMMDD-XXXXXX`` number for ``model``.

    The unique index on ``order_number`` remains the final guard.
    """
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        candidate = _random_order_number(prefix)
        if not db.query(model.id).filter(model.order_number == candidate).first():
            return candidate
        logger.warning("Order number collision on %s, retrying", candidate)
    raise RuntimeError(f"Could not generate a unique {prefix} order number")


# -----------------------------
# Orders
# -----------------------------

def get_order(db: Session, order_id: int) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id).first()


def get_order_by_number(db: Session, order_number: str) -> Optional[Order]:
    return db.query(Order).filter(Order.order_number == order_number).first()


def get_order_by_transaction_reference(db: Session, reference: str) -> Optional[Order]:
    return db.query(Order).filter(Order.transaction_reference == reference).first()


def get_order_by_payment_reference(db: Session, reference: str) -> Optional[Order]:
    return db.query(Order).filter(Order.payment_reference == reference).first()


def list_orders(
    db: Session,
    skip: int = 0,
    limit: int = 100,
    search: str = None,
    order_status: str = None,
    payment_status: str = None,
    is_guest: bool = None,
) -> Tuple[List[Order], int]:
    query = db.query(Order)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                Order.order_number.ilike(pattern),
                Order.email.ilike(pattern),
                Order.first_name.ilike(pattern),
                Order.last_name.ilike(pattern),
                Order.phone.ilike(pattern),
            )
        )
    if order_status:
        query = query.filter(Order.order_status == order_status)
    if payment_status:
        query = query.filter(Order.payment_status == payment_status)
    if is_guest is not None:
        query = query.filter(Order.is_guest.is_(is_guest))
    total = query.count()
    orders = query.order_by(Order.id.desc()).offset(skip).limit(limit).all()
    return orders, total


def get_orders_by_customer(db: Session, customer_id: int, skip: int = 0, limit: int = 100) -> Tuple[List[Order], int]:
    query = db.query(Order).filter(Order.customer_id == customer_id)
    total = query.count()
    return query.order_by(Order.id.desc()).offset(skip).limit(limit).all(), total


# -----------------------------
# Measurement orders
# -----------------------------

def get_measurement_order(db: Session, order_id: int) -> Optional[MeasurementOrder]:
    return db.query(MeasurementOrder).filter(MeasurementOrder.id == order_id).first()


def get_measurement_order_by_number(db: Session, order_number: str) -> Optional[MeasurementOrder]:
    return db.query(MeasurementOrder).filter(MeasurementOrder.order_number == order_number).first()


def get_measurement_order_by_transaction_reference(db: Session, reference: str) -> Optional[MeasurementOrder]:
    return db.query(MeasurementOrder).filter(MeasurementOrder.transaction_reference == reference).first()


def get_measurement_order_by_payment_reference(db: Session, reference: str) -> Optional[MeasurementOrder]:
    return db.query(MeasurementOrder).filter(MeasurementOrder.payment_reference == reference).first()


def list_measurement_orders(
    db: Session,
    skip: int = 0,
    limit: int = 100,
    search: str = None,
    status: str = None,
    payment_status: str = None,
    include_replaced: bool = False,
) -> Tuple[List[MeasurementOrder], int]:
    query = db.query(MeasurementOrder)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                MeasurementOrder.order_number.ilike(pattern),
                MeasurementOrder.name.ilike(pattern),
                MeasurementOrder.email.ilike(pattern),
                MeasurementOrder.phone.ilike(pattern),
            )
        )
    if status:
        query = query.filter(MeasurementOrder.status == status)
    if payment_status:
        query = query.filter(MeasurementOrder.payment_status == payment_status)
    if not include_replaced:
        query = query.filter(MeasurementOrder.is_replaced.is_(False))
    total = query.count()
    return query.order_by(MeasurementOrder.id.desc()).offset(skip).limit(limit).all(), total


def get_measurement_orders_by_customer(
    db: Session, customer_id: int, skip: int = 0, limit: int = 100
) -> Tuple[List[MeasurementOrder], int]:
    query = db.query(MeasurementOrder).filter(MeasurementOrder.customer_id == customer_id)
    total = query.count()
    return query.order_by(MeasurementOrder.id.desc()).offset(skip).limit(limit).all(), total


def find_by_payment_reference(
    db: Session, transaction_reference: str = None, payment_reference: str = None, order_number: str = None
):
    """Locate the order a payment belongs to.

    Tries the transaction reference, then the payment reference, then treats
    the payment reference as an order number, then the order number echoed
    back in the payment metadata. Regular orders are checked
    before measurement orders at each step. Returns ``(kind, order)`` with
    kind ``"order"`` or ``"measurement_order"``, or ``(None, None)``.
    """
    lookups = []
    if transaction_reference:
        lookups.append((get_order_by_transaction_reference, get_measurement_order_by_transaction_reference, transaction_reference))
    if payment_reference:
        lookups.append((get_order_by_payment_reference, get_measurement_order_by_payment_reference, payment_reference))
        lookups.append((get_order_by_number, get_measurement_order_by_number, payment_reference))
    if order_number and order_number != payment_reference:
        lookups.append((get_order_by_number, get_measurement_order_by_number, order_number))

    for find_order, find_measurement_order, ref in lookups:
        order = find_order(db, ref)
        if order is not None:
            return "order", order
        measurement_order = find_measurement_order(db, ref)
        if measurement_order is not None:
            return "measurement_order", measurement_order
    return None, None
