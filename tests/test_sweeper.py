"""Tests for releasing stock held by abandoned checkouts."""

import datetime as dt

from storefront import inventory
from storefront.models import Order, ProductVariant, StockReservation, utcnow
from storefront.sweeper import EXPIRED_REASON, sweep_expired_checkouts


def _hold(db, make_order, variant, quantity, expires_in_minutes, **order_values):
    expires_at = utcnow() + dt.timedelta(minutes=expires_in_minutes)
    order = make_order(reservation_expires_at=expires_at, **order_values)
    inventory.reserve(db, variant.id, quantity, order.id, expires_at)
    db.commit()
    return order


class TestSweep:
    def test_expired_order_is_cancelled_and_stock_released(self, db, make_variant, make_order):
        variant = make_variant(quantity=5)
        expired = _hold(db, make_order, variant, 2, -5)
        fresh = _hold(db, make_order, variant, 1, 25)

        result = sweep_expired_checkouts(db)

        assert result == {"cancelled_orders": 1, "released_reservations": 1}
        db.expire_all()
        expired = db.get(Order, expired.id)
        assert expired.payment_status == "cancelled"
        assert expired.order_status == "cancelled"
        assert expired.cancellation_reason == EXPIRED_REASON
        assert expired.reservation_expires_at is None
        assert db.get(Order, fresh.id).payment_status == "pending"

        variant = db.get(ProductVariant, variant.id)
        assert (variant.quantity, variant.reserved_quantity) == (5, 1)

    def test_second_sweep_finds_nothing(self, db, make_variant, make_order):
        variant = make_variant(quantity=5)
        _hold(db, make_order, variant, 2, -5)

        sweep_expired_checkouts(db)

        assert sweep_expired_checkouts(db) == {"cancelled_orders": 0, "released_reservations": 0}

    def test_explicit_clock(self, db, make_variant, make_order):
        variant = make_variant(quantity=5)
        order = _hold(db, make_order, variant, 2, 10)

        assert sweep_expired_checkouts(db)["cancelled_orders"] == 0
        result = sweep_expired_checkouts(db, now=utcnow() + dt.timedelta(minutes=11))

        assert result["cancelled_orders"] == 1
        db.expire_all()
        assert db.get(Order, order.id).payment_status == "cancelled"

    def test_naive_clock_is_treated_as_utc(self, db, make_variant, make_order):
        variant = make_variant(quantity=5)
        _hold(db, make_order, variant, 2, 10)

        later = dt.datetime.now(dt.timezone.utc).replace(tzinfo=None) + dt.timedelta(minutes=11)
        assert sweep_expired_checkouts(db, now=later)["cancelled_orders"] == 1

    def test_settled_orders_are_left_alone(self, db, make_variant, make_order):
        variant = make_variant(quantity=5)
        order = _hold(db, make_order, variant, 2, -5, payment_status="failed", order_status="failed")

        assert sweep_expired_checkouts(db)["cancelled_orders"] == 0
        db.expire_all()
        assert db.get(Order, order.id).payment_status == "failed"

    def test_orders_with_several_lines(self, db, make_variant, make_order):
        a = make_variant(quantity=5)
        b = make_variant(quantity=3)
        expires_at = utcnow() - dt.timedelta(minutes=1)
        order = make_order(reservation_expires_at=expires_at)
        inventory.reserve_many(
            db, order.id, [{"variant_id": a.id, "quantity": 2}, {"variant_id": b.id, "quantity": 3}], expires_at
        )
        db.commit()

        assert sweep_expired_checkouts(db) == {"cancelled_orders": 1, "released_reservations": 2}
        assert {r.status for r in db.query(StockReservation).all()} == {"released"}
        db.expire_all()
        assert db.get(ProductVariant, b.id).reserved_quantity == 0
