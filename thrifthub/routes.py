import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from thrifthub import carts, deliveries, orders, payments
from thrifthub.auth import CurrentUser, require_role, verify_internal_key, verify_token
from thrifthub.database import get_db
from thrifthub.errors import success_body
from thrifthub.models import DeliveryStatus, OrderStatus, PaymentMethod, UserRole
from thrifthub.scheduler import run_due_installment_charges
from thrifthub.schemas import (
    AddCartItemRequest,
    AdminOrderOut,
    AssignDeliveryRequest,
    CartOut,
    CreateOrderRequest,
    DeliveryOut,
    InitializeInstallmentRequest,
    InitializePaymentRequest,
    OrderOut,
    OrderSummaryOut,
    PaymentLinkOut,
    PaymentOut,
    RiderDeliveryOut,
    UpdateCartItemRequest,
    UpdateDeliveryStatusRequest,
    UpdateOrderStatusRequest,
)

router = APIRouter()


def get_gateway(request: Request):
    return request.app.state.gateway


def get_notifier(request: Request):
    return request.app.state.notifier


def _dump(model, obj):
    return model.model_validate(obj).model_dump(mode="json")


def _page(data, total, page, limit):
    return {
        "success": True,
        "data": data,
        "pagination": {"total": total, "page": page, "limit": limit, "pages": math.ceil(total / limit)},
    }


def _payment_link(payment, txn, first_charge):
    return PaymentLinkOut(
        authorization_url=txn.authorization_url,
        access_code=txn.access_code,
        reference=txn.reference,
        first_charge=first_charge,
        payment=PaymentOut.model_validate(payment),
    ).model_dump(mode="json")


# --- cart ---

@router.get("/cart")
def get_cart_api(db: Session = Depends(get_db), user: CurrentUser = Depends(verify_token)):
    cart = carts.get_or_create_cart(db, user.user_id)
    db.commit()
    return success_body(_dump(CartOut, cart))


@router.post("/cart/items", status_code=201)
def add_cart_item_api(
    body: AddCartItemRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(verify_token),
):
    cart = carts.add_item(db, user.user_id, body.product_id, body.quantity)
    return success_body(_dump(CartOut, cart), "Item added to cart")


@router.delete("/cart/items/{item_id}")
def remove_cart_item_api(item_id: str, db: Session = Depends(get_db), user: CurrentUser = Depends(verify_token)):
    cart = carts.remove_item(db, user.user_id, item_id)
    return success_body(_dump(CartOut, cart), "Item removed from cart")


@router.patch("/cart/items/{item_id}")
def update_cart_item_api(
    item_id: str,
    body: UpdateCartItemRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(verify_token),
):
    cart = carts.update_item_quantity(db, user.user_id, item_id, body.quantity)
    return success_body(_dump(CartOut, cart), "Cart item updated successfully")


@router.delete("/cart/clear")
def clear_cart_api(db: Session = Depends(get_db), user: CurrentUser = Depends(verify_token)):
    removed = carts.clear_cart(db, user.user_id)
    return success_body({"removed": removed}, "All items removed from cart")


# --- orders ---

@router.post("/orders", status_code=201)
async def create_order_api(
    body: CreateOrderRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(verify_token),
    gateway=Depends(get_gateway),
):
    order = orders.create_order(
        db, user.user_id, body.delivery_address, body.campus_zone, body.payment_method
    )

    link = None
    if body.initialize_payment:
        # Same transaction: a gateway failure here discards the order too
        if body.payment_method == PaymentMethod.INSTALLMENT:
            link = await payments.initialize_installment(db, gateway, order.id, body.payday_date, user)
        else:
            link = await payments.initialize_payment(db, gateway, order.id, user)

    db.commit()
    db.refresh(order)
    data = {
        "order": _dump(OrderOut, order),
        "payment_link": _payment_link(*link) if link else None,
    }
    return success_body(data, "Order created successfully")


@router.get("/orders")
def list_orders_api(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(verify_token),
):
    rows, total = orders.list_orders(db, user.user_id, status, page, limit)
    return _page([_dump(OrderSummaryOut, o) for o in rows], total, page, limit)


@router.get("/admin/orders")
def list_all_orders_api(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_role(UserRole.ADMIN)),
):
    rows, total = orders.list_orders(db, None, status, page, limit)
    return _page([_dump(AdminOrderOut, o) for o in rows], total, page, limit)


@router.get("/orders/{order_id}")
def get_order_api(order_id: str, db: Session = Depends(get_db), user: CurrentUser = Depends(verify_token)):
    return success_body(_dump(OrderOut, orders.get_order(db, order_id, user)))


@router.patch("/admin/orders/{order_id}/status")
def update_order_status_api(
    order_id: str,
    body: UpdateOrderStatusRequest,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_role(UserRole.ADMIN)),
):
    order = orders.update_order_status(db, order_id, body.status)
    return success_body(_dump(OrderOut, order), "Order status updated successfully")


# --- payments ---

@router.post("/payments/initialize")
async def initialize_payment_api(
    body: InitializePaymentRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(verify_token),
    gateway=Depends(get_gateway),
):
    link = await payments.initialize_payment(db, gateway, body.order_id, user)
    db.commit()
    return success_body(_payment_link(*link), "Payment initialized successfully")


@router.post("/payments/payday-flex/initialize")
async def initialize_installment_api(
    body: InitializeInstallmentRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(verify_token),
    gateway=Depends(get_gateway),
):
    link = await payments.initialize_installment(db, gateway, body.order_id, body.payday_date, user)
    db.commit()
    return success_body(_payment_link(*link), "Payment initialized successfully")


@router.post("/payments/payday-flex/charge-second", dependencies=[Depends(verify_internal_key)])
async def charge_second_installment_api(
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    notifier=Depends(get_notifier),
):
    report = await run_due_installment_charges(db, gateway, notifier, datetime.now())
    return success_body(report.model_dump(), "Second installment charging completed")


@router.get("/payments/verify")
async def verify_payment_api(
    reference: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(verify_token),
    gateway=Depends(get_gateway),
    notifier=Depends(get_notifier),
):
    payment = await payments.verify_payment(db, gateway, notifier, reference, user)
    data = {"payment": _dump(PaymentOut, payment), "order_status": payment.order.status.value}
    return success_body(data, "Payment verified successfully")


@router.get("/payments/{order_id}")
def get_payment_api(order_id: str, db: Session = Depends(get_db), user: CurrentUser = Depends(verify_token)):
    return success_body(_dump(PaymentOut, payments.get_payment_for_order(db, order_id, user)))


# --- deliveries ---

@router.post("/deliveries/assign", status_code=201, dependencies=[Depends(verify_internal_key)])
def assign_delivery_api(body: AssignDeliveryRequest, db: Session = Depends(get_db)):
    delivery = deliveries.assign_delivery(db, body.order_id)
    return success_body(_dump(DeliveryOut, delivery), "Delivery assigned successfully")


@router.get("/deliveries/rider")
def list_rider_deliveries_api(
    status: Optional[DeliveryStatus] = None,
    db: Session = Depends(get_db),
    rider: CurrentUser = Depends(require_role(UserRole.RIDER)),
):
    rows = deliveries.list_rider_deliveries(db, rider.user_id, status)
    data = {"deliveries": [_dump(RiderDeliveryOut, d) for d in rows], "total": len(rows)}
    return success_body(data, "Deliveries retrieved successfully")


@router.patch("/deliveries/{delivery_id}/status")
def update_delivery_status_api(
    delivery_id: str,
    body: UpdateDeliveryStatusRequest,
    db: Session = Depends(get_db),
    rider: CurrentUser = Depends(require_role(UserRole.RIDER)),
):
    delivery = deliveries.update_delivery_status(db, delivery_id, rider.user_id, DeliveryStatus(body.status))
    return success_body(_dump(DeliveryOut, delivery), "Delivery status updated successfully")


@router.get("/deliveries/track/{order_id}")
def track_delivery_api(order_id: str, db: Session = Depends(get_db), user: CurrentUser = Depends(verify_token)):
    return success_body(_dump(DeliveryOut, deliveries.get_delivery_for_order(db, order_id, user)))
