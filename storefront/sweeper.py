from __future__ import annotations

import datetime as dt
import logging
import threading
import time
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import inventory
from .config import RESERVATION_SWEEP_INTERVAL_SECONDS
from .database import SessionLocal
from .models import Order, as_utc, utcnow
from .schemas import OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)

EXPIRED_REASON = "Checkout expired"


def sweep_expired_checkouts(db: Session, now: Optional[dt.datetime] = None) -> dict:
    """Cancel unpaid orders whose stock hold has run out and free their stock.

    Each order is closed with the same conditional update reconciliation
    uses, so a payment confirmed in the meantime wins and the order is
    skipped.
    """
    now = as_utc(now) if now is not None else utcnow()

    # Expiry is compared in Python: SQLite hands back naive datetimes
    candidates = (
        db.query(Order.id, Order.order_number, Order.reservation_expires_at)
        .filter(
            Order.payment_status == PaymentStatus.PENDING.value,
            Order.reservation_expires_at.isnot(None),
        )
        .order_by(Order.id)
        .all()
    )

    cancelled = 0
    released = 0
    for order_id, order_number, expires_at in candidates:
        if as_utc(expires_at) > now:
            continue
        result = db.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status == PaymentStatus.PENDING.value)
            .values(
                payment_status=PaymentStatus.CANCELLED.value,
                order_status=OrderStatus.CANCELLED.value,
                cancelled_at=now,
                cancellation_reason=EXPIRED_REASON,
                reservation_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            continue
        released += inventory.release_for_order(db, order_id)
        db.commit()
        cancelled += 1
        logger.info("Cancelled abandoned checkout %s", order_number)

    if cancelled:
        logger.info("Sweep cancelled %s order(s), released %s reservation(s)", cancelled, released)
    return {"cancelled_orders": cancelled, "released_reservations": released}


def start_sweeper_in_thread(interval_seconds: int = RESERVATION_SWEEP_INTERVAL_SECONDS, daemon: bool = True) -> threading.Thread:
    def _run() -> None:
        while True:
            db = SessionLocal()
            try:
                sweep_expired_checkouts(db)
            except Exception:
                logger.exception("Reservation sweep failed")
                db.rollback()
            finally:
                db.close()
            time.sleep(interval_seconds)

    t = threading.Thread(target=_run, name="reservation-sweeper", daemon=daemon)
    t.start()
    return t
