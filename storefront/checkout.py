"""Checkout flows for regular and measurement orders.

Regular checkout persists the order and reserves its stock in one
transaction, then asks the gateway for a payment link. Measurement orders
hold no stock; they become payable once an admin has priced them.
"""
import datetime as dt
import logging
import secrets
from typing import Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import crud, inventory
from .config import RESERVATION_TTL_MINUTES
from .errors import InsufficientStock, NotFound, PaymentGatewayError, ValidationError
from .gateway import InitializedTransaction, MonnifyGateway
from .models import MeasurementOrder, Order, OrderItem, utcnow
from .pricing import ShippingTerms, calculate_totals, effective_unit_price, line_amounts, measurement_totals, money
from .schemas import MeasurementOrderStatus, OrderStatus, PaymentStatus
from .status_machine import MEASUREMENT_ORDER, ORDER

logger = logging.getLogger(__name__)

ADDRESS_FIELDS = ["first_name", "last_name", "email", "phone", "address", "city", "state", "zip_code", "country"]
DEFAULT_COUNTRY = "Nigeria"


def _clean(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def resolve_shipping_address(db: Session, customer_id: Optional[int], shipping: Optional[dict]) -> dict:
    """Merge the submitted address with the customer's address book.

    Guests must submit every field. Authenticated customers may omit any
    field present in their saved address.
    """
    submitted = {k: _clean(v) for k, v in (shipping or {}).items()}
    resolved = {field: submitted.get(field) for field in ADDRESS_FIELDS}

    if customer_id is not None:
        saved = crud.get_address(db, customer_id)
        if saved is not None:
            for field in ADDRESS_FIELDS:
                if resolved[field] is None:
                    resolved[field] = _clean(getattr(saved, field))

    if resolved["country"] is None:
        resolved["country"] = DEFAULT_COUNTRY

    missing = [field for field in ADDRESS_FIELDS if resolved[field] is None]
    if missing:
        raise ValidationError(f"Shipping address is incomplete; missing: {', '.join(missing)}")

    resolved["shipping_location"] = submitted.get("shipping_location")
    return resolved


def _validate_line_items(db: Session, items: List[dict]) -> List[dict]:
    """Check each line against the catalog and merge repeated variants.

    Returns lines carrying catalog prices; client prices are never used.
    """
    if not items:
        raise ValidationError("Your cart is empty")

    merged: Dict[int, dict] = {}
    for item in items:
        variant_id = int(item["variant_id"])
        product_id = int(item["product_id"])
        quantity = int(item["quantity"])
        if quantity <= 0:
            raise ValidationError(f"Quantity for variant {variant_id} must be greater than zero")

        line = merged.get(variant_id)
        if line is None:
            variant = crud.get_variant(db, variant_id)
            if variant is None or variant.product_id != product_id:
                raise ValidationError(f"Variant {variant_id} does not belong to product {product_id}")
            line = {"variant": variant, "quantity": 0}
            merged[variant_id] = line
        elif line["variant"].product_id != product_id:
            raise ValidationError(f"Variant {variant_id} does not belong to product {product_id}")

        client_price = item.get("price")
        if client_price is not None:
            variant = line["variant"]
            if money(client_price) != effective_unit_price(variant.price, variant.discount_price):
                raise ValidationError(
                    f"The price of {variant.product.name} has changed; please review your cart"
                )
        line["quantity"] += quantity

    lines = []
    for variant_id, line in merged.items():
        variant = line["variant"]
        lines.append(
            {
                "variant": variant,
                "variant_id": variant_id,
                "product_id": variant.product_id,
                "product_name": variant.product.name,
                "quantity": line["quantity"],
            }
        )
    return lines


def _precheck_stock(lines: List[dict]) -> None:
    failures = [
        {
            "variant_id": line["variant_id"],
            "product_name": line["product_name"],
            "requested": line["quantity"],
            "available": max(line["variant"].available_quantity, 0),
        }
        for line in lines
        if line["variant"].available_quantity < line["quantity"]
    ]
    if failures:
        raise InsufficientStock(failures)


def _build_order_items(lines: List[dict]) -> Tuple[List[OrderItem], object]:
    order_items = []
    subtotal = money(0)
    for line in lines:
        variant = line["variant"]
        amounts = line_amounts(variant.price, variant.discount_price, line["quantity"])
        subtotal += amounts["item_total"]
        order_items.append(
            OrderItem(
                product_id=variant.product_id,
                variant_id=variant.id,
                product_name=line["product_name"],
                variant_color=variant.color,
                variant_size=variant.size,
                unit_price=money(variant.price),
                discount_price=variant.discount_price,
                quantity=line["quantity"],
                item_subtotal=amounts["item_subtotal"],
                item_total=amounts["item_total"],
            )
        )
    return order_items, subtotal


def initiate_checkout(
    db: Session,
    gateway: MonnifyGateway,
    customer_id: Optional[int],
    items: List[dict],
    shipping: Optional[dict] = None,
) -> Tuple[Order, InitializedTransaction]:
    """Create an order, hold its stock and open a payment.

    items: [{"product_id": int, "variant_id": int, "quantity": int, "price": optional}, ...]

    Raises ValidationError, InsufficientStock or PaymentGatewayError. On
    InsufficientStock nothing is persisted; on PaymentGatewayError the
    order is kept as failed and its stock is released.
    """
    lines = _validate_line_items(db, items)
    _precheck_stock(lines)
    address = resolve_shipping_address(db, customer_id, shipping)

    order_items, subtotal = _build_order_items(lines)
    terms = ShippingTerms.from_settings(crud.get_shipping_settings(db))
    totals = calculate_totals(subtotal, terms, address["shipping_location"])

    expires_at = utcnow() + dt.timedelta(minutes=RESERVATION_TTL_MINUTES)
    order_number = crud.generate_order_number(db, Order, crud.ORDER_NUMBER_PREFIX)
    order = Order(
        order_number=order_number,
        customer_id=customer_id,
        is_guest=customer_id is None,
        guest_email=address["email"] if customer_id is None else None,
        **address,
        **totals,
        order_status=OrderStatus.ORDER_PLACED.value,
        payment_status=PaymentStatus.PENDING.value,
        payment_method="monnify",
        payment_reference=order_number,
        reservation_expires_at=expires_at,
        items=order_items,
    )

    try:
        db.add(order)
        db.flush()
        inventory.reserve_many(
            db,
            order.id,
            [{"variant_id": l["variant_id"], "quantity": l["quantity"], "product_name": l["product_name"]} for l in lines],
            expires_at,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info("Order %s placed (total %s), stock held until %s", order.order_number, order.total, expires_at.isoformat())

    try:
        transaction = gateway.initialize_transaction(
            amount=order.total,
            customer_name=f"{order.first_name} {order.last_name}",
            customer_email=order.email,
            customer_phone=order.phone,
            payment_reference=order.payment_reference,
            description=f"Payment for order {order.order_number}",
            metadata={"order_type": ORDER, "order_number": order.order_number},
        )
    except Exception as e:
        # Whatever went wrong, the customer has no way to pay; give the stock back
        _fail_checkout(db, order, str(e) or type(e).__name__)
        if isinstance(e, PaymentGatewayError):
            raise
        raise PaymentGatewayError(str(e) or "Payment could not be initialized") from e

    order.transaction_reference = transaction.transaction_reference
    order.payment_url = transaction.redirect_url
    db.commit()
    db.refresh(order)
    return order, transaction


def _fail_checkout(db: Session, order: Order, reason: str) -> None:
    logger.warning("Payment initialization failed for %s: %s", order.order_number, reason)
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.payment_status == PaymentStatus.PENDING.value)
        .values(
            payment_status=PaymentStatus.FAILED.value,
            order_status=OrderStatus.FAILED.value,
            cancellation_reason="Payment could not be initialized",
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        inventory.release_for_order(db, order.id)
    db.commit()
    db.refresh(order)


# -----------------------------
# Measurement orders
# -----------------------------

def create_measurement_order(db: Session, customer_id: Optional[int], data: dict) -> MeasurementOrder:
    terms = ShippingTerms.from_settings(crud.get_shipping_settings(db))
    delivery_fee = terms.fee_for(data["shipping_location"])

    order = MeasurementOrder(
        order_number=crud.generate_order_number(db, MeasurementOrder, crud.MEASUREMENT_ORDER_NUMBER_PREFIX),
        customer_id=customer_id,
        is_guest=customer_id is None,
        guest_email=data["email"] if customer_id is None else None,
        name=data["name"].strip(),
        email=data["email"],
        phone=data["phone"].strip(),
        address=data["address"].strip(),
        city=data["city"].strip(),
        state=data["state"].strip(),
        zip_code=data["zip_code"].strip(),
        country=(data.get("country") or DEFAULT_COUNTRY).strip(),
        shipping_location=data["shipping_location"].strip(),
        templates=data["templates"],
        notes=data.get("notes"),
        preferred_style=data.get("preferred_style"),
        delivery_fee=delivery_fee,
        status=MeasurementOrderStatus.ORDER_RECEIVED.value,
        payment_status=PaymentStatus.PENDING.value,
        payment_method="monnify",
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    logger.info("Measurement order %s received", order.order_number)
    return order


def _ensure_payable(order: MeasurementOrder) -> None:
    if order.is_replaced:
        raise ValidationError(f"Order {order.order_number} was replaced by a newer quote")
    if order.payment_status == PaymentStatus.PAID.value:
        raise ValidationError(f"Order {order.order_number} has already been paid")
    if order.payment_status != PaymentStatus.PENDING.value or order.status == MeasurementOrderStatus.CANCELLED.value:
        raise ValidationError(f"Order {order.order_number} can no longer be paid")


def set_measurement_order_price(
    db: Session, order_id: int, price, admin_id: Optional[int] = None
) -> Tuple[MeasurementOrder, Optional[MeasurementOrder]]:
    """Price a measurement order.

    The first price is written onto the order. Re-pricing creates a
    replacement order with the new price and retires the original.
    Returns ``(priced_order, replaced_order_or_None)``.
    """
    order = crud.get_measurement_order(db, order_id)
    if order is None:
        raise NotFound(f"Measurement order {order_id} not found")
    _ensure_payable(order)

    terms = ShippingTerms.from_settings(crud.get_shipping_settings(db))
    # A stored fee may already be waived; start from the location's fee
    if terms.fees:
        base_fee = terms.fee_for(order.shipping_location)
    else:
        base_fee = order.delivery_fee or 0
    totals = measurement_totals(price, base_fee, terms)
    now = utcnow()

    if order.price is None:
        for key, value in totals.items():
            setattr(order, key, value)
        order.price_set_at = now
        order.price_set_by = admin_id
        db.commit()
        db.refresh(order)
        logger.info("Measurement order %s priced at %s", order.order_number, order.total)
        return order, None

    replacement = MeasurementOrder(
        order_number=crud.generate_order_number(db, MeasurementOrder, crud.MEASUREMENT_ORDER_NUMBER_PREFIX),
        customer_id=order.customer_id,
        is_guest=order.is_guest,
        guest_email=order.guest_email,
        name=order.name,
        email=order.email,
        phone=order.phone,
        address=order.address,
        city=order.city,
        state=order.state,
        zip_code=order.zip_code,
        country=order.country,
        shipping_location=order.shipping_location,
        templates=order.templates,
        notes=order.notes,
        preferred_style=order.preferred_style,
        **totals,
        price_set_at=now,
        price_set_by=admin_id,
        status=MeasurementOrderStatus.ORDER_RECEIVED.value,
        payment_status=PaymentStatus.PENDING.value,
        payment_method=order.payment_method,
        original_order_id=order.id,
    )
    db.add(replacement)
    db.flush()

    # Retire the original only if no payment landed in the meantime
    result = db.execute(
        update(MeasurementOrder)
        .where(MeasurementOrder.id == order.id, MeasurementOrder.payment_status == PaymentStatus.PENDING.value)
        .values(
            is_replaced=True,
            replaced_by_order_id=replacement.id,
            status=MeasurementOrderStatus.CANCELLED.value,
            payment_status=PaymentStatus.CANCELLED.value,
            cancelled_at=now,
            cancellation_reason=f"Replaced by {replacement.order_number}",
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise ValidationError(f"Order {order.order_number} was paid while being re-priced")

    db.commit()
    db.refresh(order)
    db.refresh(replacement)
    logger.info(
        "Measurement order %s re-priced; replaced by %s at %s",
        order.order_number, replacement.order_number, replacement.total,
    )
    return replacement, order


def initialize_measurement_order_checkout(
    db: Session, gateway: MonnifyGateway, order_id: int
) -> Tuple[MeasurementOrder, InitializedTransaction]:
    order = crud.get_measurement_order(db, order_id)
    if order is None:
        raise NotFound(f"Measurement order {order_id} not found")
    if order.price is None or money(order.price) <= 0 or order.total is None:
        raise ValidationError(f"Order {order.order_number} has not been priced yet")
    _ensure_payable(order)

    # Each attempt needs its own reference at the provider
    payment_reference = f"{order.order_number}-{secrets.token_hex(3).upper()}"
    transaction = gateway.initialize_transaction(
        amount=order.total,
        customer_name=order.name,
        customer_email=order.email,
        customer_phone=order.phone,
        payment_reference=payment_reference,
        description=f"Payment for custom order {order.order_number}",
        metadata={"order_type": MEASUREMENT_ORDER, "order_number": order.order_number},
    )

    order.payment_reference = transaction.payment_reference
    order.transaction_reference = transaction.transaction_reference
    order.payment_url = transaction.redirect_url
    db.commit()
    db.refresh(order)
    logger.info("Measurement order %s checkout opened (%s)", order.order_number, transaction.transaction_reference)
    return order, transaction
