import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from thrifthub.auth import CurrentUser
from thrifthub.errors import (
    DeliveryExists,
    DeliveryNotFound,
    Forbidden,
    NoRidersAvailable,
    NotFound,
    OrderNotPaid,
    ZoneNotFound,
)
from thrifthub.models import (
    CampusRider,
    CampusZone,
    Delivery,
    DeliveryStatus,
    OrderStatus,
    ZoneAdjacency,
)
from thrifthub.orders import advance_order, get_order, load_order

logger = logging.getLogger(__name__)

# Order status each rider update drives
ORDER_STATUS_FOR_DELIVERY = {
    DeliveryStatus.PICKED_UP: OrderStatus.SHIPPED,
    DeliveryStatus.IN_TRANSIT: OrderStatus.SHIPPED,
    DeliveryStatus.DELIVERED: OrderStatus.DELIVERED,
    DeliveryStatus.FAILED: OrderStatus.CANCELLED,
}


def _available_riders(db: Session, zone_ids):
    return db.scalars(
        select(CampusRider)
        .where(CampusRider.zone_id.in_(zone_ids), CampusRider.is_available.is_(True))
        .order_by(CampusRider.total_deliveries.asc(), CampusRider.id)
    ).all()


def _adjacent_zone_ids(db: Session, zone_id: str):
    pairs = db.execute(
        select(ZoneAdjacency.zone_id, ZoneAdjacency.adjacent_zone_id).where(
            or_(ZoneAdjacency.zone_id == zone_id, ZoneAdjacency.adjacent_zone_id == zone_id)
        )
    ).all()
    return [b if a == zone_id else a for a, b in pairs]


def pick_rider(db: Session, zone: CampusZone) -> CampusRider:
    """Least-loaded available rider in the zone, then in adjacent zones."""
    riders = _available_riders(db, [zone.id])
    if not riders:
        adjacent = _adjacent_zone_ids(db, zone.id)
        if adjacent:
            riders = _available_riders(db, adjacent)
    if not riders:
        raise NoRidersAvailable()
    return riders[0]


def assign_delivery(db: Session, order_id: str) -> Delivery:
    order = load_order(db, order_id)
    if order.delivery is not None:
        raise DeliveryExists()
    if order.status != OrderStatus.CONFIRMED:
        raise OrderNotPaid(f"Order {order.order_number} is {order.status.value}")

    zone = db.scalar(select(CampusZone).where(CampusZone.code == order.campus_zone))
    if zone is None:
        raise ZoneNotFound(f"Campus zone not found: {order.campus_zone}")

    rider = pick_rider(db, zone)
    delivery = Delivery(
        order_id=order.id,
        rider_id=rider.id,
        zone_id=zone.id,
        delivery_address=order.delivery_address,
        status=DeliveryStatus.ASSIGNED,
        assigned_at=datetime.now(timezone.utc),
    )
    db.add(delivery)
    rider.total_deliveries += 1
    advance_order(order, OrderStatus.PROCESSING)
    db.commit()
    db.refresh(delivery)

    logger.info("Delivery for order %s assigned to rider %s", order.order_number, rider.id)
    return delivery


def update_delivery_status(db: Session, delivery_id: str, rider_user_id: str, status: DeliveryStatus) -> Delivery:
    rider = _rider_for_user(db, rider_user_id)

    delivery = db.get(Delivery, delivery_id)
    if delivery is None:
        raise DeliveryNotFound()
    if delivery.rider_id != rider.id:
        raise Forbidden("Access denied to this delivery")

    delivery.status = status
    if status == DeliveryStatus.DELIVERED:
        delivery.delivered_at = datetime.now(timezone.utc)
    advance_order(delivery.order, ORDER_STATUS_FOR_DELIVERY[status])
    db.commit()
    db.refresh(delivery)

    logger.info("Delivery %s is now %s", delivery.id, status.value)
    return delivery


def _rider_for_user(db: Session, rider_user_id: str) -> CampusRider:
    rider = db.scalar(select(CampusRider).where(CampusRider.user_id == rider_user_id))
    if rider is None:
        raise NotFound("Rider profile not found")
    return rider


def list_rider_deliveries(
    db: Session, rider_user_id: str, status: Optional[DeliveryStatus] = None
) -> List[Delivery]:
    """The rider's own deliveries, newest assignment first."""
    rider = _rider_for_user(db, rider_user_id)
    query = select(Delivery).where(Delivery.rider_id == rider.id)
    if status is not None:
        query = query.where(Delivery.status == status)
    return list(db.scalars(query.order_by(Delivery.assigned_at.desc())).all())


def get_delivery_for_order(db: Session, order_id: str, user: CurrentUser) -> Delivery:
    order = get_order(db, order_id, user)
    if order.delivery is None:
        raise DeliveryNotFound("No delivery assigned yet")
    return order.delivery
