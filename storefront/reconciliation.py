"""Apply payment outcomes to orders.

Webhooks and customer-triggered verification both end in ``reconcile``.
The pending -> paid/failed/cancelled move is one conditional UPDATE, so
however many deliveries race, exactly one of them changes the order,
touches stock and sends the confirmation.

Measurement orders hold no stock and can be paid again through a new
checkout attempt, so only a successful payment settles them.
"""
import logging
import re
from typing import Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import crud, inventory
from .errors import NotFound, ReconciliationConflict, WebhookSignatureError
from .gateway import MonnifyGateway, PaymentResult
from .models import MeasurementOrder, Order, utcnow
from .notifications import Notifier
from .pricing import money
from .schemas import MeasurementOrderStatus, OrderStatus, PaymentStatus
from .status_machine import MEASUREMENT_ORDER, ORDER

logger = logging.getLogger(__name__)

# "{order_number}-{6 hex}", as opened by initialize_measurement_order_checkout
_ATTEMPT_REFERENCE = re.compile(r"^(?P<order_number>.+)-[0-9A-F]{6}$")

_PAYMENT_STATUS = {
    "success": PaymentStatus.PAID.value,
    "failed": PaymentStatus.FAILED.value,
    "cancelled": PaymentStatus.CANCELLED.value,
}

_ORDER_STATUS = {
    ORDER: {
        "success": OrderStatus.PROCESSING.value,
        "failed": OrderStatus.FAILED.value,
        "cancelled": OrderStatus.CANCELLED.value,
    },
    MEASUREMENT_ORDER: {
        "success": MeasurementOrderStatus.DESIGN_REVIEW.value,
    },
}


def _locate(db: Session, result: PaymentResult):
    kind, order = crud.find_by_payment_reference(
        db,
        transaction_reference=result.reference,
        payment_reference=result.payment_reference,
        order_number=(result.metadata or {}).get("order_number"),
    )
    if order is None:
        raise NotFound(f"No order matches payment {result.reference or result.payment_reference}")
    return kind, order


def _transition_values(kind: str, order, result: PaymentResult) -> dict:
    now = utcnow()
    values = {"payment_status": _PAYMENT_STATUS[result.status]}
    status = _ORDER_STATUS[kind][result.status]
    if kind == ORDER:
        values["order_status"] = status
        values["reservation_expires_at"] = None
    else:
        values["status"] = status

    if result.status == "success":
        values["paid_at"] = result.paid_at or now
    else:
        values["cancelled_at"] = now
        values["cancellation_reason"] = "Payment failed" if result.status == "failed" else "Payment cancelled"

    if kind == MEASUREMENT_ORDER:
        # Record the attempt that paid, which need not be the latest one
        if result.reference:
            values["transaction_reference"] = result.reference
        if result.payment_reference:
            values["payment_reference"] = result.payment_reference
    elif result.reference and not order.transaction_reference:
        values["transaction_reference"] = result.reference
    return values


def _log_unclaimed(kind: str, order, result: PaymentResult) -> None:
    conflict = ReconciliationConflict(order.order_number, order.payment_status)
    if result.status != "success":
        logger.info("%s; ignoring duplicate %s result", conflict, result.status)
    elif order.payment_status != PaymentStatus.PAID.value:
        logger.warning("%s; a successful payment arrived after it closed and needs a manual refund", conflict)
    elif result.reference and order.transaction_reference and result.reference != order.transaction_reference:
        logger.warning(
            "%s; %s %s was paid again by %s and needs a manual refund",
            conflict, kind, order.order_number, result.reference,
        )
    else:
        logger.info("%s; ignoring duplicate %s result", conflict, result.status)


def reconcile(db: Session, result: PaymentResult, notifier: Notifier) -> Tuple[str, object, bool]:
    """Apply ``result`` to its order.

    Returns ``(kind, order, changed)``. Replays and late results for orders
    that already left ``pending`` return ``changed=False`` without side
    effects.
    """
    kind, order = _locate(db, result)

    if result.status == "pending":
        logger.info("Payment for %s %s still pending at provider", kind, order.order_number)
        return kind, order, False

    if kind == MEASUREMENT_ORDER and result.status != "success":
        logger.info(
            "Payment attempt %s for measurement order %s ended %s; order stays open for another attempt",
            result.payment_reference or result.reference, order.order_number, result.provider_status or result.status,
        )
        return kind, order, False

    if result.status == "success" and result.amount is not None and order.total is not None:
        if result.amount < money(order.total):
            logger.warning(
                "Underpayment on %s %s: paid %s of %s; leaving order pending",
                kind, order.order_number, result.amount, order.total,
            )
            return kind, order, False

    model = Order if kind == ORDER else MeasurementOrder
    claimed = db.execute(
        update(model)
        .where(model.id == order.id, model.payment_status == PaymentStatus.PENDING.value)
        .values(**_transition_values(kind, order, result))
        .execution_options(synchronize_session=False)
    )

    if claimed.rowcount != 1:
        db.rollback()
        db.refresh(order)
        _log_unclaimed(kind, order, result)
        return kind, order, False

    if kind == ORDER:
        if result.status == "success":
            inventory.commit_for_order(db, order.id)
        else:
            inventory.release_for_order(db, order.id)

    db.commit()
    db.refresh(order)
    logger.info("Reconciled %s %s as %s", kind, order.order_number, order.payment_status)

    if result.status == "success":
        if kind == ORDER:
            notifier.order_paid(order)
        else:
            notifier.measurement_order_paid(order)
    return kind, order, True


def handle_webhook(
    db: Session,
    gateway: MonnifyGateway,
    notifier: Notifier,
    raw_body: bytes,
    signature: Optional[str],
) -> Tuple[str, object, bool]:
    # Signature first; the body isn't trusted enough to parse before that
    if not gateway.validate_webhook_signature(raw_body, signature):
        logger.warning("Rejected webhook with %s signature", "missing" if not signature else "invalid")
        raise WebhookSignatureError("Invalid webhook signature")

    result = gateway.parse_webhook(raw_body)
    logger.info("Webhook for %s: %s (%s)", result.reference, result.status, result.provider_status)
    return reconcile(db, result, notifier)


def _find_earlier_attempt(db: Session, reference: str) -> Optional[MeasurementOrder]:
    match = _ATTEMPT_REFERENCE.match(reference)
    if match is None:
        return None
    return crud.get_measurement_order_by_number(db, match.group("order_number"))


def handle_polled_verification(
    db: Session,
    gateway: MonnifyGateway,
    notifier: Notifier,
    reference: str,
) -> Tuple[str, object, bool]:
    """Verify a payment the customer was redirected back from.

    ``reference`` may be a transaction reference, payment reference or
    order number. A measurement order only remembers its latest checkout
    attempt, so the payment reference of an earlier attempt is resolved
    through the order number it starts with and checked at the provider
    by that reference.
    """
    kind, order = crud.find_by_payment_reference(db, transaction_reference=reference, payment_reference=reference)
    earlier_attempt = False
    if order is None:
        order = _find_earlier_attempt(db, reference)
        kind, earlier_attempt = MEASUREMENT_ORDER, order is not None
    if order is None:
        raise NotFound(f"No order matches payment {reference}")
    if order.payment_status != PaymentStatus.PENDING.value:
        return kind, order, False

    if earlier_attempt:
        result = gateway.verify_payment_reference(reference)
        if not result.payment_reference:
            result.payment_reference = reference
        result.metadata = {**(result.metadata or {}), "order_number": order.order_number}
        return reconcile(db, result, notifier)

    transaction_reference = order.transaction_reference or reference
    result = gateway.verify_transaction(transaction_reference)
    if not result.reference:
        result.reference = transaction_reference
    if not result.payment_reference:
        result.payment_reference = order.payment_reference
    return reconcile(db, result, notifier)
