"""Tests for stock reservations."""

import datetime as dt
import threading

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from storefront import inventory
from storefront.errors import InsufficientStock
from storefront.models import Base, Order, Product, ProductVariant, StockReservation, utcnow


def _expiry():
    return utcnow() + dt.timedelta(minutes=30)


def _reload(db, variant):
    db.expire_all()
    return db.get(ProductVariant, variant.id)


class TestReserve:
    def test_reserve_holds_stock(self, db, make_variant, make_order):
        variant = make_variant(quantity=5)
        order = make_order()

        token = inventory.reserve(db, variant.id, 3, order.id, _expiry())
        db.commit()

        variant = _reload(db, variant)
        assert variant.quantity == 5
        assert variant.reserved_quantity == 3
        assert variant.available_quantity == 2
        reservation = db.get(StockReservation, token)
        assert reservation.status == "active"
        assert reservation.quantity == 3
        assert reservation.order_id == order.id

    def test_reserve_more_than_available_fails_without_change(self, db, make_variant, make_order):
        variant = make_variant(quantity=5, name="Kaftan")
        order = make_order()

        with pytest.raises(InsufficientStock) as exc_info:
            inventory.reserve(db, variant.id, 10, order.id, _expiry())
        db.rollback()

        assert exc_info.value.items == [
            {"variant_id": variant.id, "product_name": "Kaftan", "requested": 10, "available": 5}
        ]
        variant = _reload(db, variant)
        assert variant.reserved_quantity == 0
        assert db.query(StockReservation).count() == 0

    def test_reserve_counts_existing_holds(self, db, make_variant, make_order):
        variant = make_variant(quantity=5)
        first, second = make_order(), make_order()

        inventory.reserve(db, variant.id, 4, first.id, _expiry())
        db.commit()
        with pytest.raises(InsufficientStock) as exc_info:
            inventory.reserve(db, variant.id, 2, second.id, _expiry())
        db.rollback()

        assert exc_info.value.items[0]["available"] == 1
        assert _reload(db, variant).reserved_quantity == 4

    def test_reserve_unknown_variant(self, db, make_order):
        order = make_order()
        with pytest.raises(InsufficientStock) as exc_info:
            inventory.reserve(db, 999, 1, order.id, _expiry())
        assert exc_info.value.items[0]["available"] == 0

    def test_reserve_rejects_non_positive_quantity(self, db, make_variant, make_order):
        variant = make_variant()
        with pytest.raises(ValueError):
            inventory.reserve(db, variant.id, 0, make_order().id, _expiry())


class TestCommitAndRelease:
    def test_commit_moves_reserved_into_sold(self, db, make_variant, make_order):
        variant = make_variant(quantity=5)
        token = inventory.reserve(db, variant.id, 3, make_order().id, _expiry())
        db.commit()

        assert inventory.commit(db, token) is True
        db.commit()

        variant = _reload(db, variant)
        assert variant.quantity == 2
        assert variant.reserved_quantity == 0
        assert db.get(StockReservation, token).status == "committed"

    def test_commit_twice_equals_commit_once(self, db, make_variant, make_order):
        variant = make_variant(quantity=5)
        token = inventory.reserve(db, variant.id, 3, make_order().id, _expiry())
        db.commit()

        assert inventory.commit(db, token) is True
        db.commit()
        assert inventory.commit(db, token) is False
        db.commit()

        variant = _reload(db, variant)
        assert variant.quantity == 2
        assert variant.reserved_quantity == 0

    def test_release_after_commit_is_noop(self, db, make_variant, make_order):
        variant = make_variant(quantity=5)
        token = inventory.reserve(db, variant.id, 3, make_order().id, _expiry())
        inventory.commit(db, token)
        db.commit()

        assert inventory.release(db, token) is False
        db.commit()

        variant = _reload(db, variant)
        assert variant.quantity == 2
        assert variant.reserved_quantity == 0

    def test_release_returns_stock_once(self, db, make_variant, make_order):
        variant = make_variant(quantity=5)
        token = inventory.reserve(db, variant.id, 3, make_order().id, _expiry())
        db.commit()

        assert inventory.release(db, token) is True
        assert inventory.release(db, token) is False
        assert inventory.commit(db, token) is False
        db.commit()

        variant = _reload(db, variant)
        assert variant.quantity == 5
        assert variant.reserved_quantity == 0
        assert db.get(StockReservation, token).status == "released"

    def test_for_order_helpers(self, db, make_variant, make_order):
        a = make_variant(quantity=5)
        b = make_variant(quantity=5)
        paid, abandoned = make_order(), make_order()
        inventory.reserve_many(db, paid.id, [{"variant_id": a.id, "quantity": 2}, {"variant_id": b.id, "quantity": 1}], _expiry())
        inventory.reserve_many(db, abandoned.id, [{"variant_id": a.id, "quantity": 1}], _expiry())
        db.commit()

        assert inventory.commit_for_order(db, paid.id) == 2
        assert inventory.release_for_order(db, abandoned.id) == 1
        assert inventory.commit_for_order(db, paid.id) == 0
        db.commit()

        a, b = _reload(db, a), _reload(db, b)
        assert (a.quantity, a.reserved_quantity) == (3, 0)
        assert (b.quantity, b.reserved_quantity) == (4, 0)


class TestReserveMany:
    def test_all_or_nothing_lists_every_shortfall(self, db, make_variant, make_order):
        ok = make_variant(quantity=5, name="Senator Suit")
        short_a = make_variant(quantity=1, name="Ankara Shirt")
        short_b = make_variant(quantity=0, name="Aso Oke Cap")
        order = make_order()

        with pytest.raises(InsufficientStock) as exc_info:
            inventory.reserve_many(
                db,
                order.id,
                [
                    {"variant_id": ok.id, "quantity": 2},
                    {"variant_id": short_a.id, "quantity": 2},
                    {"variant_id": short_b.id, "quantity": 1},
                ],
                _expiry(),
            )
        db.rollback()

        names = sorted(i["product_name"] for i in exc_info.value.items)
        assert names == ["Ankara Shirt", "Aso Oke Cap"]
        assert _reload(db, ok).reserved_quantity == 0
        assert db.query(StockReservation).count() == 0


class TestConcurrency:
    def test_last_unit_goes_to_exactly_one_buyer(self, tmp_path):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'race.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        # pysqlite defers BEGIN; take the write lock up front so the
        # second buyer waits for the first instead of failing with "locked"
        @event.listens_for(engine, "connect")
        def _no_pysqlite_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        Base.metadata.create_all(bind=engine)
        Session = sessionmaker(bind=engine, autoflush=False)

        setup = Session()
        product = Product(name="Last One", slug="last-one")
        variant = ProductVariant(color="Red", size="L", price=5000, quantity=1, reserved_quantity=0)
        product.variants.append(variant)
        setup.add(product)
        orders = [
            Order(
                order_number=f"ORD-20261018-RACE0{i}",
                is_guest=True,
                first_name="A", last_name="B", email="a@example.com", phone="0800",
                address="x", city="x", state="x", zip_code="x", country="Nigeria",
                subtotal=0, shipping=0, tax=0, total=0,
            )
            for i in range(2)
        ]
        setup.add_all(orders)
        setup.commit()
        variant_id = variant.id
        order_ids = [o.id for o in orders]
        setup.close()

        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def buy(order_id):
            session = Session()
            try:
                barrier.wait()
                inventory.reserve(session, variant_id, 1, order_id, _expiry())
                session.commit()
                result = "reserved"
            except InsufficientStock:
                session.rollback()
                result = "insufficient"
            finally:
                session.close()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=buy, args=(oid,)) for oid in order_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert sorted(outcomes) == ["insufficient", "reserved"]

        check = Session()
        final = check.get(ProductVariant, variant_id)
        assert final.quantity == 1
        assert final.reserved_quantity == 1
        assert final.quantity - final.reserved_quantity >= 0
        check.close()
        engine.dispose()
