from datetime import date, datetime
from decimal import Decimal
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from thrifthub.models import DeliveryStatus, OrderStatus, PaymentMethod, PaymentStatus


# --- requests ---

class AddCartItemRequest(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)


class CreateOrderRequest(BaseModel):
    delivery_address: str = Field(..., min_length=1)
    campus_zone: str = Field(..., min_length=1)
    payment_method: PaymentMethod
    initialize_payment: bool = False
    payday_date: Optional[date] = None

    @model_validator(mode="after")
    def payday_required_for_installment(self):
        if (
            self.initialize_payment
            and self.payment_method == PaymentMethod.INSTALLMENT
            and self.payday_date is None
        ):
            raise ValueError("payday_date is required to initialize an installment payment")
        return self


class InitializePaymentRequest(BaseModel):
    order_id: str = Field(..., min_length=1)


class InitializeInstallmentRequest(BaseModel):
    order_id: str = Field(..., min_length=1)
    payday_date: date


class AssignDeliveryRequest(BaseModel):
    order_id: str = Field(..., min_length=1)


class UpdateDeliveryStatusRequest(BaseModel):
    status: Literal["PICKED_UP", "IN_TRANSIT", "DELIVERED", "FAILED"]


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(..., ge=1)


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus


# --- gateway webhook payloads ---

class EventAuthorization(BaseModel):
    authorization_code: Optional[str] = None
    reusable: Optional[bool] = None


class EventCustomer(BaseModel):
    customer_code: Optional[str] = None
    email: Optional[str] = None


class GatewayEventData(BaseModel):
    id: Optional[Union[int, str]] = None
    reference: Optional[str] = None
    amount: Optional[int] = None
    status: Optional[str] = None
    message: Optional[str] = None
    gateway_response: Optional[str] = None
    authorization: Optional[EventAuthorization] = None
    customer: Optional[EventCustomer] = None


class GatewayEvent(BaseModel):
    event: str
    data: GatewayEventData = Field(default_factory=GatewayEventData)


# --- responses ---

class _ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class CartItemOut(_ORMModel):
    id: str
    product_id: str
    quantity: int


class CartOut(_ORMModel):
    id: str
    items: List[CartItemOut]


class OrderItemOut(_ORMModel):
    id: str
    product_id: str
    quantity: int
    price_at_purchase: Decimal


class PaymentOut(_ORMModel):
    id: str
    order_id: str
    amount: Decimal
    method: PaymentMethod
    status: PaymentStatus
    paid_amount: Decimal
    remaining_amount: Decimal
    installment_plan: bool
    payday_date: Optional[date] = None
    transaction_ref: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DeliveryOut(_ORMModel):
    id: str
    order_id: str
    rider_id: Optional[str] = None
    zone_id: str
    delivery_address: str
    status: DeliveryStatus
    assigned_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class OrderOut(_ORMModel):
    id: str
    order_number: str
    user_id: str
    status: OrderStatus
    total_amount: Decimal
    delivery_address: str
    campus_zone: str
    items: List[OrderItemOut]
    payment: Optional[PaymentOut] = None
    created_at: Optional[datetime] = None


class OrderSummaryOut(_ORMModel):
    id: str
    order_number: str
    status: OrderStatus
    total_amount: Decimal
    campus_zone: str
    created_at: Optional[datetime] = None


class AdminOrderOut(OrderSummaryOut):
    user_id: str
    delivery_address: str
    payment: Optional[PaymentOut] = None
    delivery: Optional[DeliveryOut] = None


class RiderDeliveryOut(DeliveryOut):
    order: OrderSummaryOut


class PaymentLinkOut(BaseModel):
    authorization_url: str
    access_code: Optional[str] = None
    reference: str
    first_charge: Decimal
    payment: PaymentOut


class BatchReport(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
