"""Cart to order conversion and the order status transition table."""
import logging
import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from thrifthub.auth import CurrentUser
from thrifthub.errors import (
    CartEmpty,
    Forbidden,
    InsufficientStock,
    InvalidTransition,
    OrderNotFound,
    ProductUnavailable,
)
from thrifthub.models import (
    Cart,
    CartItem,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Product,
)

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

# Forward path used when a delivery update skips intermediate states
FULFILLMENT_PATH = [
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
]

_ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number(now: Optional[datetime] = None) -> str:
    """THB-<YYYYMMDD>-<6 random characters>."""
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"THB-{now:%Y%m%d}-{suffix}"


def _unique_order_number(db: Session) -> str:
    for _ in range(5):
        candidate = generate_order_number()
        if db.scalar(select(Order.id).where(Order.order_number == candidate)) is None:
            return candidate
    raise RuntimeError("Could not generate a unique order number")


def create_order(
    db: Session,
    user_id: str,
    delivery_address: str,
    campus_zone: str,
    payment_method: PaymentMethod,
) -> Order:
    """Turn the user's cart into a PENDING order with a placeholder payment.

    Everything is flushed into the caller's transaction; nothing is committed
    here, so a failure anywhere (including a later payment-initialize step)
    rolls back the order, its items, the stock decrements and the cart clear
    together.
    """
    cart = db.scalar(
        select(Cart)
        .where(Cart.user_id == user_id)
        .options(selectinload(Cart.items).selectinload(CartItem.product))
    )
    if cart is None or not cart.items:
        raise CartEmpty()

    lines: List[Tuple[CartItem, Product]] = []
    for item in cart.items:
        product = item.product
        if not product.is_active:
            raise ProductUnavailable(f'Product "{product.title}" is no longer available.')
        if product.stock < item.quantity:
            raise InsufficientStock(
                f'Insufficient stock for "{product.title}". Only {product.stock} available.'
            )
        lines.append((item, product))

    total = sum((product.price * item.quantity for item, product in lines), Decimal("0.00"))

    # Conditional decrement: a concurrent order that took the last units makes
    # this match zero rows instead of driving stock negative.
    for item, product in lines:
        result = db.execute(
            update(Product)
            .where(Product.id == product.id, Product.stock >= item.quantity)
            .values(stock=Product.stock - item.quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientStock(f'Insufficient stock for "{product.title}".')

    order = Order(
        order_number=_unique_order_number(db),
        user_id=user_id,
        delivery_address=delivery_address,
        campus_zone=campus_zone,
        status=OrderStatus.PENDING,
        total_amount=total,
    )
    db.add(order)
    db.flush()

    for item, product in lines:
        db.add(
            OrderItem(
                order_id=order.id,
                product_id=product.id,
                quantity=item.quantity,
                price_at_purchase=product.price,
            )
        )

    for item in list(cart.items):
        db.delete(item)

    db.add(
        Payment(
            order_id=order.id,
            amount=total,
            method=payment_method,
            status=PaymentStatus.PENDING,
            installment_plan=payment_method == PaymentMethod.INSTALLMENT,
            paid_amount=Decimal("0.00"),
            remaining_amount=total,
        )
    )
    db.flush()
    db.expire(order)

    logger.info("Assembled order %s for user %s (total %s)", order.order_number, user_id, total)
    return order


def transition_order(order: Order, new_status: OrderStatus) -> Order:
    allowed = ORDER_TRANSITIONS[order.status]
    if new_status not in allowed:
        raise InvalidTransition(
            f"Cannot move order {order.order_number} from {order.status.value} to {new_status.value}"
        )
    order.status = new_status
    return order


def confirm_order(order: Order) -> bool:
    """PENDING -> CONFIRMED once the payment is complete. Other states are left alone."""
    if order.status != OrderStatus.PENDING:
        logger.warning(
            "Order %s is %s; not confirming on payment completion", order.order_number, order.status.value
        )
        return False
    transition_order(order, OrderStatus.CONFIRMED)
    return True


def advance_order(order: Order, target: OrderStatus) -> Order:
    """Walk the fulfillment path forward to ``target`` (or cancel)."""
    if order.status == target:
        return order
    if target == OrderStatus.CANCELLED:
        return transition_order(order, target)
    if order.status not in FULFILLMENT_PATH or target not in FULFILLMENT_PATH:
        raise InvalidTransition(
            f"Cannot move order {order.order_number} from {order.status.value} to {target.value}"
        )
    start = FULFILLMENT_PATH.index(order.status)
    end = FULFILLMENT_PATH.index(target)
    if end < start:
        raise InvalidTransition(
            f"Cannot move order {order.order_number} back from {order.status.value} to {target.value}"
        )
    for step in FULFILLMENT_PATH[start + 1:end + 1]:
        transition_order(order, step)
    return order


def load_order(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound()
    return order


def get_order(db: Session, order_id: str, user: CurrentUser) -> Order:
    order = load_order(db, order_id)
    if order.user_id != user.user_id and not user.is_admin:
        raise Forbidden("Access denied to this order")
    return order


def list_orders(
    db: Session,
    user_id: Optional[str],
    status: Optional[OrderStatus] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Order], int]:
    """One page of orders, newest first. ``user_id=None`` lists every customer's orders."""
    query = select(Order)
    if user_id is not None:
        query = query.where(Order.user_id == user_id)
    if status is not None:
        query = query.where(Order.status == status)

    total = db.scalar(select(func.count()).select_from(query.subquery()))
    orders = db.scalars(
        query.order_by(Order.created_at.desc()).offset((page - 1) * limit).limit(limit)
    ).all()
    return list(orders), total


def update_order_status(db: Session, order_id: str, status: OrderStatus) -> Order:
    """Back-office status change. Payment confirmation is never set by hand."""
    if status == OrderStatus.CONFIRMED:
        raise InvalidTransition("Orders are confirmed by payment, not manually")
    order = load_order(db, order_id)
    transition_order(order, status)
    db.commit()
    db.refresh(order)
    logger.info("Order %s moved to %s by admin", order.order_number, status.value)
    return order
