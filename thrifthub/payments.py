"""Payment state machine.

PENDING -> PARTIAL -> COMPLETED, or PENDING/PARTIAL -> FAILED. COMPLETED and
FAILED are terminal; charge events against them are recorded and ignored.
"""
import logging
import time
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from thrifthub.auth import CurrentUser
from thrifthub.errors import (
    Forbidden,
    PaydayOutOfRange,
    PaymentAlreadyExists,
    PaymentGatewayError,
    PaymentNotFound,
    PaymentNotSuccessful,
    ValidationFailed,
)
from thrifthub.models import (
    Order,
    Payment,
    PaymentMethod,
    PaymentStatus,
    ProcessedGatewayEvent,
)
from thrifthub.notifications import notify_safely
from thrifthub.orders import confirm_order, load_order
from thrifthub.paystack import GatewayError, InitializedTransaction, from_minor_units

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
INSTALLMENT_SHARE = Decimal("0.5")
PAYDAY_MIN_DAYS = 7
PAYDAY_MAX_DAYS = 30
TERMINAL_STATUSES = {PaymentStatus.COMPLETED, PaymentStatus.FAILED}


@dataclass
class ChargeOutcome:
    payment: Payment
    amount: Decimal
    fully_paid: bool


def split_installment(total: Decimal) -> Tuple[Decimal, Decimal]:
    first = (total * INSTALLMENT_SHARE).quantize(CENT, rounding=ROUND_HALF_UP)
    return first, total - first


def validate_payday(payday_date: date, today: Optional[date] = None) -> None:
    today = today or date.today()
    days = (payday_date - today).days
    if not PAYDAY_MIN_DAYS <= days <= PAYDAY_MAX_DAYS:
        raise PaydayOutOfRange(
            details=[{"field": "payday_date", "message": f"{payday_date} is {days} days away"}]
        )


def make_reference(prefix: str, entity_id: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{entity_id[:8]}"


def _owned_order(db: Session, order_id: str, user: CurrentUser) -> Order:
    order = load_order(db, order_id)
    if order.user_id != user.user_id:
        raise Forbidden("Access denied to this order")
    return order


def _unbound_payment(order: Order) -> Optional[Payment]:
    """The order's placeholder payment, if it has not been sent to the gateway yet."""
    payment = order.payment
    if payment is not None and (payment.transaction_ref or payment.status != PaymentStatus.PENDING):
        raise PaymentAlreadyExists()
    return payment


async def _open_transaction(gateway, order: Order, amount: Decimal, reference: str, payment_type: str, channels=None) -> InitializedTransaction:
    try:
        return await gateway.initialize(
            order.user.email,
            amount,
            reference,
            {
                "orderId": order.id,
                "orderNumber": order.order_number,
                "paymentType": payment_type,
                "userId": order.user_id,
            },
            channels,
        )
    except GatewayError as e:
        logger.error("Gateway initialize failed for order %s: %s", order.order_number, e)
        raise PaymentGatewayError(f"Failed to initialize payment: {e}") from e


async def initialize_installment(
    db: Session,
    gateway,
    order_id: str,
    payday_date: date,
    user: CurrentUser,
    today: Optional[date] = None,
) -> Tuple[Payment, InitializedTransaction, Decimal]:
    """Open the first Payday Flex charge (half the order total).

    The payment row is written only after the gateway accepted the
    transaction. The caller commits.
    """
    validate_payday(payday_date, today)
    order = _owned_order(db, order_id, user)
    payment = _unbound_payment(order)

    total = Decimal(order.total_amount)
    first_charge, remaining = split_installment(total)
    reference = make_reference("THB-PAY", order.id)

    txn = await _open_transaction(gateway, order, first_charge, reference, "INSTALLMENT_FIRST")

    if payment is None:
        payment = Payment(order_id=order.id, amount=total)
        db.add(payment)
    payment.method = PaymentMethod.INSTALLMENT
    payment.status = PaymentStatus.PENDING
    payment.installment_plan = True
    payment.paid_amount = Decimal("0.00")
    payment.remaining_amount = remaining
    payment.payday_date = payday_date
    payment.transaction_ref = txn.reference
    db.flush()

    logger.info(
        "Payday Flex opened for order %s: first charge %s, %s due on %s",
        order.order_number, first_charge, remaining, payday_date,
    )
    return payment, txn, first_charge


async def initialize_payment(
    db: Session, gateway, order_id: str, user: CurrentUser
) -> Tuple[Payment, InitializedTransaction, Decimal]:
    """Open a single full-amount charge for card or mobile money. The caller commits."""
    order = _owned_order(db, order_id, user)
    payment = _unbound_payment(order)
    method = payment.method if payment is not None else PaymentMethod.CARD
    if method == PaymentMethod.INSTALLMENT:
        raise ValidationFailed("Installment orders are initialized through Payday Flex")

    total = Decimal(order.total_amount)
    if method == PaymentMethod.MOBILE_MONEY:
        reference = make_reference("THB-MM", order.id)
        channels = ["mobile_money"]
    else:
        reference = make_reference("THB-CARD", order.id)
        channels = ["card"]

    txn = await _open_transaction(gateway, order, total, reference, method.value, channels)

    if payment is None:
        payment = Payment(order_id=order.id, amount=total, method=method)
        db.add(payment)
    payment.installment_plan = False
    payment.paid_amount = Decimal("0.00")
    payment.remaining_amount = total
    payment.transaction_ref = txn.reference
    db.flush()

    logger.info("Payment %s opened for order %s (%s)", txn.reference, order.order_number, total)
    return payment, txn, total


def event_key(event_type: str, transaction_id: Optional[str], reference: str) -> str:
    return f"{event_type}:{transaction_id or reference}"


def already_processed(db: Session, key: str) -> bool:
    return db.scalar(select(ProcessedGatewayEvent.id).where(ProcessedGatewayEvent.event_key == key)) is not None


def record_event(db: Session, key: str, event_type: str, reference: Optional[str]) -> None:
    db.add(ProcessedGatewayEvent(event_key=key, event_type=event_type, reference=reference))


def find_by_reference(db: Session, reference: Optional[str]) -> Optional[Payment]:
    if not reference:
        return None
    return db.scalar(select(Payment).where(Payment.transaction_ref == reference))


def apply_charge_success(
    db: Session,
    payment: Payment,
    amount_minor: int,
    key: str,
    authorization_code: Optional[str] = None,
    customer_code: Optional[str] = None,
) -> Optional[ChargeOutcome]:
    """Credit a successful gateway charge to ``payment``.

    Returns None when the charge was already applied or the payment is
    terminal. Nothing is committed; the ledger row added here makes a
    concurrent duplicate fail on commit.
    """
    if already_processed(db, key):
        logger.info("Charge %s already applied to payment %s", key, payment.id)
        return None

    record_event(db, key, "charge.success", payment.transaction_ref)
    if payment.status in TERMINAL_STATUSES:
        logger.warning("Ignoring charge %s for %s payment %s", key, payment.status.value, payment.id)
        return None

    received = from_minor_units(amount_minor)
    total = Decimal(payment.amount)
    new_paid = Decimal(payment.paid_amount) + received
    fully_paid = new_paid >= total
    if new_paid > total:
        logger.warning("Payment %s overpaid by %s", payment.id, new_paid - total)
        new_paid = total

    payment.paid_amount = new_paid
    payment.remaining_amount = max(Decimal("0.00"), total - new_paid)
    payment.status = PaymentStatus.COMPLETED if fully_paid else PaymentStatus.PARTIAL
    if customer_code:
        payment.customer_code = customer_code
    if payment.installment_plan and not fully_paid:
        payment.authorization_code = authorization_code or payment.authorization_code
    else:
        payment.authorization_code = None

    if fully_paid:
        confirm_order(payment.order)

    logger.info(
        "Payment %s credited %s: %s (%s remaining)",
        payment.id, received, payment.status.value, payment.remaining_amount,
    )
    return ChargeOutcome(payment=payment, amount=received, fully_paid=fully_paid)


def mark_failed(db: Session, payment: Payment, reason: Optional[str] = None) -> bool:
    if payment.status in TERMINAL_STATUSES:
        logger.warning("Payment %s is already %s; not marking failed", payment.id, payment.status.value)
        return False
    payment.status = PaymentStatus.FAILED
    logger.warning("Payment %s failed: %s", payment.id, reason or "Unknown error")
    return True


def commit_once(db: Session) -> bool:
    """Commit a reconciliation; False if a concurrent request recorded the same event first."""
    try:
        db.commit()
        return True
    except IntegrityError:
        db.rollback()
        logger.info("Gateway event already recorded by a concurrent request")
        return False


async def send_confirmation(notifier, outcome: ChargeOutcome) -> None:
    order = outcome.payment.order
    await notify_safely(
        notifier.send_payment_confirmation(
            order.user.email, order.order_number, outcome.amount, outcome.fully_paid
        ),
        f"payment confirmation for order {order.order_number}",
    )


async def verify_payment(db: Session, gateway, notifier, reference: str, user: CurrentUser) -> Payment:
    """Client-side poll after the gateway redirect; converges with the webhook."""
    payment = find_by_reference(db, reference)
    if payment is None:
        raise PaymentNotFound("Payment record not found")
    if payment.order.user_id != user.user_id:
        raise Forbidden("Access denied to this payment")
    if payment.status == PaymentStatus.COMPLETED:
        return payment

    try:
        txn = await gateway.verify(reference)
    except GatewayError as e:
        raise PaymentGatewayError(f"Payment verification failed: {e}") from e
    if txn.status != "success":
        raise PaymentNotSuccessful(f"Payment {txn.status}")

    outcome = apply_charge_success(
        db,
        payment,
        txn.amount_minor,
        event_key("charge.success", txn.transaction_id, txn.reference),
        txn.authorization_code,
        txn.customer_code,
    )
    if outcome is not None and commit_once(db):
        await send_confirmation(notifier, outcome)
    else:
        db.rollback()
    db.refresh(payment)
    return payment


def get_payment_for_order(db: Session, order_id: str, user: CurrentUser) -> Payment:
    payment = db.scalar(select(Payment).where(Payment.order_id == order_id))
    if payment is None:
        raise PaymentNotFound()
    if payment.order.user_id != user.user_id and not user.is_admin:
        raise Forbidden("Access denied to this payment")
    return payment
