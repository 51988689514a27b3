import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from thrifthub.database import Base


def _uuid():
    return str(uuid.uuid4())


def _now():
    return datetime.now(timezone.utc)


class UserRole(str, enum.Enum):
    STUDENT = "STUDENT"
    RIDER = "RIDER"
    ADMIN = "ADMIN"


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, enum.Enum):
    CARD = "CARD"
    MOBILE_MONEY = "MOBILE_MONEY"
    INSTALLMENT = "INSTALLMENT"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class DeliveryStatus(str, enum.Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


def _enum(enum_cls):
    return Enum(enum_cls, native_enum=False, length=20)


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_uuid)
    email = Column(String, unique=True, nullable=False)
    first_name = Column(String)
    last_name = Column(String)
    role = Column(_enum(UserRole), nullable=False, default=UserRole.STUDENT)


class Product(Base):
    __tablename__ = "products"

    id = Column(String, primary_key=True, default=_uuid)
    title = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)


class Cart(Base):
    __tablename__ = "carts"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, ForeignKey("users.id"), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now)

    items = relationship("CartItem", back_populates="cart", cascade="all, delete-orphan")


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (UniqueConstraint("cart_id", "product_id"),)

    id = Column(String, primary_key=True, default=_uuid)
    cart_id = Column(String, ForeignKey("carts.id"), nullable=False, index=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)

    cart = relationship("Cart", back_populates="items")
    product = relationship("Product")


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=_uuid)
    order_number = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    delivery_address = Column(Text, nullable=False)
    campus_zone = Column(String, nullable=False)
    status = Column(_enum(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    total_amount = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    user = relationship("User")
    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")
    payment = relationship("Payment", back_populates="order", uselist=False)
    delivery = relationship("Delivery", back_populates="order", uselist=False)


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String, primary_key=True, default=_uuid)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price_at_purchase = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=_uuid)
    order_id = Column(String, ForeignKey("orders.id"), unique=True, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    method = Column(_enum(PaymentMethod), nullable=False)
    status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    paid_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    remaining_amount = Column(Numeric(10, 2), nullable=False)
    installment_plan = Column(Boolean, nullable=False, default=False)
    payday_date = Column(Date)
    transaction_ref = Column(String, unique=True, index=True)  # gateway reference
    authorization_code = Column(String)  # only while a second charge is owed
    customer_code = Column(String)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    order = relationship("Order", back_populates="payment")


class CampusZone(Base):
    __tablename__ = "campus_zones"

    id = Column(String, primary_key=True, default=_uuid)
    code = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=False)


class ZoneAdjacency(Base):
    __tablename__ = "zone_adjacency"
    __table_args__ = (UniqueConstraint("zone_id", "adjacent_zone_id"),)

    id = Column(String, primary_key=True, default=_uuid)
    zone_id = Column(String, ForeignKey("campus_zones.id"), nullable=False, index=True)
    adjacent_zone_id = Column(String, ForeignKey("campus_zones.id"), nullable=False, index=True)


class CampusRider(Base):
    __tablename__ = "campus_riders"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, ForeignKey("users.id"), unique=True, nullable=False)
    zone_id = Column(String, ForeignKey("campus_zones.id"), nullable=False, index=True)
    is_available = Column(Boolean, nullable=False, default=True)
    total_deliveries = Column(Integer, nullable=False, default=0)

    user = relationship("User")
    zone = relationship("CampusZone")


class Delivery(Base):
    __tablename__ = "deliveries"

    id = Column(String, primary_key=True, default=_uuid)
    order_id = Column(String, ForeignKey("orders.id"), unique=True, nullable=False)
    rider_id = Column(String, ForeignKey("campus_riders.id"))
    zone_id = Column(String, ForeignKey("campus_zones.id"), nullable=False)
    delivery_address = Column(Text, nullable=False)
    status = Column(_enum(DeliveryStatus), nullable=False, default=DeliveryStatus.PENDING)
    assigned_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    order = relationship("Order", back_populates="delivery")
    rider = relationship("CampusRider")
    zone = relationship("CampusZone")


class ProcessedGatewayEvent(Base):
    __tablename__ = "processed_gateway_events"

    id = Column(String, primary_key=True, default=_uuid)
    event_key = Column(String, unique=True, nullable=False)  # "<event>:<transaction id>"
    event_type = Column(String, nullable=False)
    reference = Column(String, index=True)
    processed_at = Column(DateTime(timezone=True), default=_now)
