"""Admin-driven fulfilment transitions for orders and measurement orders.

Stages only move forward (skipping ahead is allowed), cancellation is
possible until the parcel ships, and delivered / cancelled / failed are
final. Leaving the first stage requires a paid order.
"""
import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import inventory
from .errors import InvalidStatusTransition, ValidationError
from .models import MeasurementOrder, Order, utcnow
from .schemas import MeasurementOrderStatus, OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)

ORDER = "order"
MEASUREMENT_ORDER = "measurement_order"

REGULAR_FLOW = [
    OrderStatus.ORDER_PLACED.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.PACKED.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.IN_TRANSIT.value,
    OrderStatus.OUT_FOR_DELIVERY.value,
    OrderStatus.DELIVERED.value,
]

MEASUREMENT_FLOW = [
    MeasurementOrderStatus.ORDER_RECEIVED.value,
    MeasurementOrderStatus.DESIGN_REVIEW.value,
    MeasurementOrderStatus.FABRIC_SELECTION.value,
    MeasurementOrderStatus.PATTERN_MAKING.value,
    MeasurementOrderStatus.CUTTING.value,
    MeasurementOrderStatus.SEWING.value,
    MeasurementOrderStatus.QUALITY_CHECK.value,
    MeasurementOrderStatus.PACKED.value,
    MeasurementOrderStatus.SHIPPED.value,
    MeasurementOrderStatus.IN_TRANSIT.value,
    MeasurementOrderStatus.OUT_FOR_DELIVERY.value,
    MeasurementOrderStatus.DELIVERED.value,
]

CANCELLED = "cancelled"
FAILED = "failed"
TERMINAL = {"delivered", CANCELLED, FAILED}

_FLOWS = {ORDER: REGULAR_FLOW, MEASUREMENT_ORDER: MEASUREMENT_FLOW}
_MODELS = {ORDER: Order, MEASUREMENT_ORDER: MeasurementOrder}


def _build_table(flow):
    shipped = flow.index("shipped")
    table = {}
    for i, state in enumerate(flow):
        if state in TERMINAL:
            table[state] = set()
            continue
        allowed = set(flow[i + 1:])
        if i < shipped:
            allowed.add(CANCELLED)
        table[state] = allowed
    table[CANCELLED] = set()
    table[FAILED] = set()
    return table


TRANSITIONS = {kind: _build_table(flow) for kind, flow in _FLOWS.items()}


def status_field(kind: str) -> str:
    return "order_status" if kind == ORDER else "status"


def check_transition(kind: str, current: str, requested: str, payment_status: str) -> None:
    """Raise InvalidStatusTransition unless ``current -> requested`` is allowed."""
    table = TRANSITIONS[kind]
    known = set(_FLOWS[kind]) | {CANCELLED}
    if requested == FAILED:
        raise InvalidStatusTransition(current, requested, "'failed' is set by payment outcomes only")
    if requested not in known:
        raise ValidationError(f"Unknown status '{requested}'")
    if current in TERMINAL:
        raise InvalidStatusTransition(current, requested, "order is already final")
    if requested == current:
        raise InvalidStatusTransition(current, requested, "order is already in that state")
    if requested not in table.get(current, set()):
        if requested == CANCELLED:
            raise InvalidStatusTransition(current, requested, "order has already shipped")
        raise InvalidStatusTransition(current, requested, "status cannot move backwards")
    if requested != CANCELLED and payment_status != PaymentStatus.PAID.value:
        raise InvalidStatusTransition(current, requested, "order has not been paid")


def _timestamps(order, requested: str, now) -> dict:
    values = {}
    if requested in ("shipped", "out_for_delivery") and order.shipped_at is None:
        values["shipped_at"] = now
    if requested == "delivered":
        values["delivered_at"] = now
        if order.shipped_at is None and "shipped_at" not in values:
            values["shipped_at"] = now
    if requested == CANCELLED:
        values["cancelled_at"] = now
    return values


def transition(db: Session, kind: str, order, requested: str, reason: Optional[str] = None):
    """Move ``order`` to ``requested`` and commit.

    Cancelling an unpaid order also cancels its payment and, for regular
    orders, releases the stock held for it.
    """
    field = status_field(kind)
    current = getattr(order, field)
    check_transition(kind, current, requested, order.payment_status)

    model = _MODELS[kind]
    now = utcnow()
    values = {field: requested, **_timestamps(order, requested, now)}
    conditions = [model.id == order.id, getattr(model, field) == current]

    cancel_unpaid = requested == CANCELLED and order.payment_status == PaymentStatus.PENDING.value
    if requested == CANCELLED:
        values["cancellation_reason"] = reason or "Cancelled by admin"
    if cancel_unpaid:
        values["payment_status"] = PaymentStatus.CANCELLED.value
        conditions.append(model.payment_status == PaymentStatus.PENDING.value)
    else:
        conditions.append(model.payment_status == order.payment_status)

    result = db.execute(
        update(model).where(*conditions).values(**values).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(order)
        raise InvalidStatusTransition(current, requested, "order changed concurrently, reload and retry")

    if cancel_unpaid and kind == ORDER:
        inventory.release_for_order(db, order.id)

    db.commit()
    db.refresh(order)
    logger.info("%s %s moved %s -> %s", kind, order.order_number, current, requested)
    return order
