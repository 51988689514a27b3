import re
import threading
from decimal import Decimal

import pytest

from conftest import TestingSessionLocal, fill_cart, seed_product, seed_user
from thrifthub.errors import CartEmpty, InsufficientStock, InvalidTransition, ProductUnavailable
from thrifthub.models import (
    CartItem,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Product,
)
from thrifthub.orders import (
    advance_order,
    confirm_order,
    create_order,
    generate_order_number,
    transition_order,
)


def _counts():
    db = TestingSessionLocal()
    try:
        return {
            "orders": db.query(Order).count(),
            "items": db.query(OrderItem).count(),
            "payments": db.query(Payment).count(),
            "cart_items": db.query(CartItem).count(),
        }
    finally:
        db.close()


def _stock(product_id):
    db = TestingSessionLocal()
    try:
        return db.get(Product, product_id).stock
    finally:
        db.close()


def test_create_order_snapshots_prices_and_consumes_cart(db):
    user_id = seed_user(db)
    jacket = seed_product(db, "Corduroy jacket", "19.99", stock=5)
    scarf = seed_product(db, "Wool scarf", "0.10", stock=2)
    fill_cart(db, user_id, [(jacket, 3), (scarf, 1)])

    order = create_order(db, user_id, "Hall 3, Room 12", "NORTH", PaymentMethod.CARD)
    db.commit()

    assert re.fullmatch(r"THB-\d{8}-[A-Z0-9]{6}", order.order_number)
    assert order.status == OrderStatus.PENDING
    assert order.total_amount == Decimal("60.07")
    assert sorted((i.quantity, i.price_at_purchase) for i in order.items) == [
        (1, Decimal("0.10")),
        (3, Decimal("19.99")),
    ]
    assert _stock(jacket) == 2
    assert _stock(scarf) == 1
    assert _counts()["cart_items"] == 0

    payment = order.payment
    assert payment.status == PaymentStatus.PENDING
    assert payment.amount == Decimal("60.07")
    assert payment.paid_amount == Decimal("0.00")
    assert payment.remaining_amount == Decimal("60.07")
    assert payment.installment_plan is False
    assert payment.transaction_ref is None


def test_snapshot_is_unaffected_by_later_price_change(db):
    user_id = seed_user(db)
    product_id = seed_product(db, price="25.00")
    fill_cart(db, user_id, [(product_id, 1)])
    order = create_order(db, user_id, "Hall 1", "NORTH", PaymentMethod.MOBILE_MONEY)
    db.commit()

    db.get(Product, product_id).price = Decimal("99.00")
    db.commit()

    item = db.query(OrderItem).filter_by(order_id=order.id).one()
    assert item.price_at_purchase == Decimal("25.00")


def test_installment_order_gets_installment_placeholder(db):
    user_id = seed_user(db)
    product_id = seed_product(db, price="100.00")
    fill_cart(db, user_id, [(product_id, 1)])

    order = create_order(db, user_id, "Hall 1", "SOUTH", PaymentMethod.INSTALLMENT)
    db.commit()

    assert order.payment.installment_plan is True
    assert order.payment.paid_amount + order.payment.remaining_amount == order.payment.amount


def test_empty_cart_is_rejected(db):
    user_id = seed_user(db)
    with pytest.raises(CartEmpty):
        create_order(db, user_id, "Hall 1", "NORTH", PaymentMethod.CARD)
    assert _counts()["orders"] == 0


def test_insufficient_stock_leaves_everything_untouched(db):
    user_id = seed_user(db)
    plenty = seed_product(db, "Tee", "5.00", stock=10)
    scarce = seed_product(db, "Boots", "60.00", stock=1)
    fill_cart(db, user_id, [(plenty, 2), (scarce, 2)])

    with pytest.raises(InsufficientStock):
        create_order(db, user_id, "Hall 1", "NORTH", PaymentMethod.CARD)
    db.rollback()

    assert _stock(plenty) == 10
    assert _stock(scarce) == 1
    assert _counts() == {"orders": 0, "items": 0, "payments": 0, "cart_items": 2}


def test_inactive_product_is_rejected(db):
    user_id = seed_user(db)
    product_id = seed_product(db, is_active=False)
    fill_cart(db, user_id, [(product_id, 1)])

    with pytest.raises(ProductUnavailable):
        create_order(db, user_id, "Hall 1", "NORTH", PaymentMethod.CARD)


def test_failure_after_stock_decrement_rolls_back(db, mocker):
    user_id = seed_user(db)
    product_id = seed_product(db, stock=3)
    fill_cart(db, user_id, [(product_id, 2)])
    mocker.patch("thrifthub.orders._unique_order_number", side_effect=RuntimeError("boom"))

    with pytest.raises(RuntimeError):
        create_order(db, user_id, "Hall 1", "NORTH", PaymentMethod.CARD)
    db.rollback()

    assert _stock(product_id) == 3
    assert _counts() == {"orders": 0, "items": 0, "payments": 0, "cart_items": 1}


def test_concurrent_orders_for_last_unit(db):
    product_id = seed_product(db, stock=1)
    buyers = [seed_user(db, email=f"buyer{i}@students.example") for i in range(2)]
    for user_id in buyers:
        fill_cart(db, user_id, [(product_id, 1)])

    barrier = threading.Barrier(len(buyers))
    outcomes = []

    def place(user_id):
        session = TestingSessionLocal()
        try:
            barrier.wait()
            create_order(session, user_id, "Hall 2", "NORTH", PaymentMethod.CARD)
            session.commit()
            outcomes.append("created")
        except InsufficientStock:
            session.rollback()
            outcomes.append("insufficient")
        finally:
            session.close()

    threads = [threading.Thread(target=place, args=(user_id,)) for user_id in buyers]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert sorted(outcomes) == ["created", "insufficient"]
    assert _stock(product_id) == 0
    assert _counts()["orders"] == 1


def test_order_number_format():
    assert re.fullmatch(r"THB-\d{8}-[A-Z0-9]{6}", generate_order_number())


def test_transition_table():
    order = Order(order_number="THB-20260101-AAAAAA", status=OrderStatus.PENDING)

    with pytest.raises(InvalidTransition):
        transition_order(order, OrderStatus.SHIPPED)

    assert confirm_order(order) is True
    assert order.status == OrderStatus.CONFIRMED
    assert confirm_order(order) is False

    advance_order(order, OrderStatus.SHIPPED)
    assert order.status == OrderStatus.SHIPPED

    with pytest.raises(InvalidTransition):
        advance_order(order, OrderStatus.PROCESSING)

    transition_order(order, OrderStatus.CANCELLED)
    with pytest.raises(InvalidTransition):
        transition_order(order, OrderStatus.DELIVERED)
