"""Stock reservations for unpaid checkouts.

Every change to ``ProductVariant.quantity`` / ``reserved_quantity`` goes
through one conditional UPDATE, so concurrent requests can never push
available stock below zero. Nothing here commits: the caller owns the
transaction, and rolling it back undoes any reservation taken in it.
"""
import datetime as dt
import logging
from typing import Iterable, List

from sqlalchemy import update
from sqlalchemy.orm import Session

from .errors import InsufficientStock
from .models import ProductVariant, StockReservation, utcnow
from .schemas import ReservationStatus

logger = logging.getLogger(__name__)


def _shortfall(db: Session, variant_id: int, quantity: int, product_name: str = None) -> dict:
    variant = db.query(ProductVariant).filter(ProductVariant.id == variant_id).first()
    if variant is not None:
        db.refresh(variant)
    available = max(variant.available_quantity, 0) if variant is not None else 0
    if product_name is None and variant is not None:
        product_name = variant.product.name
    return {
        "variant_id": variant_id,
        "product_name": product_name,
        "requested": quantity,
        "available": available,
    }


def _try_reserve(db: Session, variant_id: int, quantity: int) -> bool:
    result = db.execute(
        update(ProductVariant)
        .where(
            ProductVariant.id == variant_id,
            ProductVariant.quantity - ProductVariant.reserved_quantity >= quantity,
        )
        .values(reserved_quantity=ProductVariant.reserved_quantity + quantity)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _add_reservation(db: Session, variant_id: int, quantity: int, order_id: int, expires_at: dt.datetime) -> int:
    reservation = StockReservation(
        order_id=order_id,
        variant_id=variant_id,
        quantity=quantity,
        status=ReservationStatus.ACTIVE.value,
        expires_at=expires_at,
    )
    db.add(reservation)
    db.flush()
    return reservation.id


def reserve(db: Session, variant_id: int, quantity: int, order_id: int, expires_at: dt.datetime) -> int:
    """Hold ``quantity`` units of a variant for an order.

    Returns the reservation token. Raises InsufficientStock when fewer
    than ``quantity`` units are available or the variant doesn't exist.
    """
    if quantity <= 0:
        raise ValueError("quantity must be > 0")

    if not _try_reserve(db, variant_id, quantity):
        raise InsufficientStock([_shortfall(db, variant_id, quantity)])

    token = _add_reservation(db, variant_id, quantity, order_id, expires_at)
    logger.debug("Reserved %s x variant %s for order %s (token %s)", quantity, variant_id, order_id, token)
    return token


def reserve_many(db: Session, order_id: int, items: Iterable[dict], expires_at: dt.datetime) -> List[int]:
    """Reserve every line item or none of them.

    items: [{"variant_id": int, "quantity": int, "product_name": str (optional)}, ...]

    Every line is attempted so the error can list all shortfalls. On
    InsufficientStock the reservations already taken are still part of the
    caller's transaction, which must be rolled back.
    """
    tokens = []
    failures = []
    # Stable order keeps concurrent multi-item checkouts from deadlocking
    for item in sorted(items, key=lambda i: int(i["variant_id"])):
        variant_id = int(item["variant_id"])
        quantity = int(item["quantity"])
        if quantity <= 0:
            raise ValueError("quantity must be > 0")
        if _try_reserve(db, variant_id, quantity):
            tokens.append(_add_reservation(db, variant_id, quantity, order_id, expires_at))
        else:
            failures.append(_shortfall(db, variant_id, quantity, item.get("product_name")))

    if failures:
        logger.info("Insufficient stock for order %s: %s", order_id, failures)
        raise InsufficientStock(failures)
    return tokens


def commit(db: Session, token: int) -> bool:
    """Turn a held reservation into a sale.

    Decrements ``quantity`` and ``reserved_quantity`` together. Returns
    False (and changes nothing) when the token is already committed or
    released.
    """
    row = (
        db.query(StockReservation.variant_id, StockReservation.quantity)
        .filter(StockReservation.id == token)
        .first()
    )
    if row is None:
        return False

    flipped = db.execute(
        update(StockReservation)
        .where(
            StockReservation.id == token,
            StockReservation.status == ReservationStatus.ACTIVE.value,
        )
        .values(status=ReservationStatus.COMMITTED.value, committed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if flipped.rowcount != 1:
        return False

    variant_id, quantity = row
    db.execute(
        update(ProductVariant)
        .where(ProductVariant.id == variant_id)
        .values(
            quantity=ProductVariant.quantity - quantity,
            reserved_quantity=ProductVariant.reserved_quantity - quantity,
        )
        .execution_options(synchronize_session=False)
    )
    return True


def release(db: Session, token: int) -> bool:
    """Give held units back to available stock.

    Returns False for committed or already released tokens.
    """
    row = (
        db.query(StockReservation.variant_id, StockReservation.quantity)
        .filter(StockReservation.id == token)
        .first()
    )
    if row is None:
        return False

    flipped = db.execute(
        update(StockReservation)
        .where(
            StockReservation.id == token,
            StockReservation.status == ReservationStatus.ACTIVE.value,
        )
        .values(status=ReservationStatus.RELEASED.value, released_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if flipped.rowcount != 1:
        return False

    variant_id, quantity = row
    db.execute(
        update(ProductVariant)
        .where(ProductVariant.id == variant_id)
        .values(reserved_quantity=ProductVariant.reserved_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    return True


def _active_tokens(db: Session, order_id: int) -> List[int]:
    rows = (
        db.query(StockReservation.id)
        .filter(
            StockReservation.order_id == order_id,
            StockReservation.status == ReservationStatus.ACTIVE.value,
        )
        .order_by(StockReservation.variant_id)
        .all()
    )
    return [r[0] for r in rows]


def commit_for_order(db: Session, order_id: int) -> int:
    committed = sum(1 for token in _active_tokens(db, order_id) if commit(db, token))
    logger.info("Committed %s reservation(s) for order %s", committed, order_id)
    return committed


def release_for_order(db: Session, order_id: int) -> int:
    released = sum(1 for token in _active_tokens(db, order_id) if release(db, token))
    if released:
        logger.info("Released %s reservation(s) for order %s", released, order_id)
    return released
