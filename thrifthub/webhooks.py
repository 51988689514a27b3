import json
import logging
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from thrifthub.errors import InvalidSignature, MissingSignature, ValidationFailed
from thrifthub.payments import (
    already_processed,
    apply_charge_success,
    commit_once,
    event_key,
    find_by_reference,
    mark_failed,
    record_event,
    send_confirmation,
)
from thrifthub.schemas import GatewayEvent

logger = logging.getLogger(__name__)

CHARGE_SUCCESS = "charge.success"
CHARGE_FAILED = "charge.failed"


def parse_event(raw_payload: bytes) -> GatewayEvent:
    try:
        return GatewayEvent.model_validate(json.loads(raw_payload))
    except (ValueError, ValidationError) as e:
        raise ValidationFailed(f"Invalid webhook payload: {e}") from e


async def handle_event(
    db: Session, gateway, notifier, raw_payload: bytes, signature_header: Optional[str]
) -> None:
    """Verify and apply one gateway webhook delivery.

    Safe to call repeatedly for the same event: each charge is recorded in
    the processed-event ledger and a second delivery is a no-op.
    """
    if not signature_header:
        raise MissingSignature()
    if not gateway.verify_signature(raw_payload, signature_header):
        raise InvalidSignature()

    event = parse_event(raw_payload)

    if event.event == CHARGE_SUCCESS:
        await _charge_success(db, notifier, event)
    elif event.event == CHARGE_FAILED:
        _charge_failed(db, event)
    else:
        logger.info("Unhandled webhook event: %s", event.event)


async def _charge_success(db: Session, notifier, event: GatewayEvent) -> None:
    data = event.data
    payment = find_by_reference(db, data.reference)
    if payment is None:
        logger.warning("Payment not found for reference: %s", data.reference)
        return
    if data.amount is None:
        raise ValidationFailed("charge.success event without amount")

    outcome = apply_charge_success(
        db,
        payment,
        data.amount,
        event_key(CHARGE_SUCCESS, _txn_id(event), data.reference),
        data.authorization.authorization_code if data.authorization else None,
        data.customer.customer_code if data.customer else None,
    )
    if not commit_once(db) or outcome is None:
        return

    order = payment.order
    logger.info("Payment updated for order %s: %s", order.order_number, payment.status.value)
    await send_confirmation(notifier, outcome)


def _charge_failed(db: Session, event: GatewayEvent) -> None:
    data = event.data
    payment = find_by_reference(db, data.reference)
    if payment is None:
        logger.warning("Payment not found for reference: %s", data.reference)
        return

    key = event_key(CHARGE_FAILED, _txn_id(event), data.reference)
    if already_processed(db, key):
        logger.info("Failure %s already recorded", key)
        return
    record_event(db, key, CHARGE_FAILED, data.reference)
    mark_failed(db, payment, data.gateway_response or data.message)
    if commit_once(db):
        logger.error(
            "Payment failed for order %s: %s",
            payment.order.order_number, data.message or data.gateway_response or "Unknown error",
        )


def _txn_id(event: GatewayEvent) -> Optional[str]:
    return str(event.data.id) if event.data.id is not None else None
