"""Second-installment charging for Payday Flex payments.

``run_due_installment_charges`` is a plain function of the session, gateway,
notifier and clock. Scheduling (cron, cloud scheduler) lives outside; it calls
the internal HTTP endpoint once a day.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import List

from sqlalchemy import select
from sqlalchemy.orm import Session

from thrifthub.errors import MissingAuthorization
from thrifthub.models import Order, OrderStatus, Payment, PaymentStatus
from thrifthub.notifications import notify_safely
from thrifthub.orders import confirm_order
from thrifthub.payments import event_key, make_reference, mark_failed, record_event
from thrifthub.paystack import GatewayError
from thrifthub.schemas import BatchReport

logger = logging.getLogger(__name__)


def find_due_installments(db: Session, now: datetime) -> List[Payment]:
    # Authorization is checked per payment so a missing token shows up in the report
    return list(
        db.scalars(
            select(Payment)
            .join(Order, Payment.order_id == Order.id)
            .where(
                Payment.status == PaymentStatus.PARTIAL,
                Payment.installment_plan.is_(True),
                Payment.payday_date == now.date(),
                Order.status != OrderStatus.CANCELLED,
            )
            .order_by(Payment.created_at)
        ).all()
    )


async def run_due_installment_charges(db: Session, gateway, notifier, now: datetime) -> BatchReport:
    due = find_due_installments(db, now)
    payment_ids = [p.id for p in due]
    logger.info("Found %d payments due on %s", len(payment_ids), now.date())

    report = BatchReport(total=len(payment_ids))
    for payment_id in payment_ids:
        try:
            error = await _charge_second_installment(db, gateway, notifier, payment_id)
        except Exception as e:
            db.rollback()
            error = str(e) or type(e).__name__
            logger.exception("Error processing payment %s", payment_id)

        if error is None:
            report.successful += 1
        else:
            report.failed += 1
            report.errors.append(f"Payment {payment_id}: {error}")

    logger.info(
        "Second installment run finished: %d charged, %d failed of %d",
        report.successful, report.failed, report.total,
    )
    return report


async def _charge_second_installment(db: Session, gateway, notifier, payment_id: str):
    """Charge one payment. Returns None on success, otherwise the failure reason."""
    payment = db.get(Payment, payment_id)
    order = payment.order
    email = order.user.email
    remaining = Decimal(payment.remaining_amount)

    if not payment.authorization_code:
        logger.error("No authorization code for payment %s", payment.id)
        return MissingAuthorization.default_message

    reference = make_reference("TXN-PAY2", payment.id)
    try:
        result = await gateway.charge_saved_authorization(
            payment.authorization_code, email, remaining, reference
        )
    except GatewayError as e:
        if e.retryable:
            # Left PARTIAL so a same-day re-run can retry
            logger.warning("Gateway unavailable charging payment %s: %s", payment.id, e)
            return f"Gateway unavailable: {e}"
        return await _fail(db, notifier, payment, str(e) or "Charge rejected")

    if not result.succeeded:
        return await _fail(db, notifier, payment, result.failure_reason or "Payment declined")

    payment.paid_amount = payment.amount
    payment.remaining_amount = Decimal("0.00")
    payment.status = PaymentStatus.COMPLETED
    payment.transaction_ref = reference
    payment.authorization_code = None
    # The gateway also reports this charge by webhook; that delivery must not credit it again
    record_event(db, event_key("charge.success", result.transaction_id, reference), "charge.success", reference)
    confirm_order(order)
    db.commit()

    logger.info(
        "Successfully charged payment %s for order %s (gateway reference %s)",
        payment_id, order.order_number, result.gateway_reference,
    )
    await notify_safely(
        notifier.send_payment_confirmation(email, order.order_number, remaining, True),
        f"confirmation e-mail for order {order.order_number}",
    )
    return None


async def _fail(db: Session, notifier, payment: Payment, reason: str) -> str:
    order = payment.order
    email = order.user.email
    remaining = Decimal(payment.remaining_amount)
    mark_failed(db, payment, reason)
    db.commit()

    logger.error("Failed to charge payment %s: %s", payment.id, reason)
    await notify_safely(
        notifier.send_payment_failure(email, order.order_number, remaining, reason),
        f"failure e-mail for order {order.order_number}",
    )
    return reason
