import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Business or protocol failure reported to the caller as an error envelope."""

    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[List[Dict[str, Any]]] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class ValidationFailed(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Validation failed"


class PaydayOutOfRange(ValidationFailed):
    code = "INVALID_PAYDAY_DATE"
    default_message = "Payday date must be between 7 and 30 days from now"


class PaymentNotSuccessful(ValidationFailed):
    code = "PAYMENT_NOT_SUCCESSFUL"
    default_message = "Payment was not successful"


class MissingSignature(AppError):
    status_code = 400
    code = "MISSING_SIGNATURE"
    default_message = "Missing signature"


class AuthError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Authentication required"


class InvalidSignature(AuthError):
    code = "INVALID_SIGNATURE"
    default_message = "Invalid signature"


class Forbidden(AppError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Access denied"


class NotFound(AppError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class OrderNotFound(NotFound):
    code = "ORDER_NOT_FOUND"
    default_message = "Order not found"


class PaymentNotFound(NotFound):
    code = "PAYMENT_NOT_FOUND"
    default_message = "Payment not found"


class CartItemNotFound(NotFound):
    code = "CART_ITEM_NOT_FOUND"
    default_message = "Cart item not found"


class ProductNotFound(NotFound):
    code = "PRODUCT_NOT_FOUND"
    default_message = "Product not found"


class DeliveryNotFound(NotFound):
    code = "DELIVERY_NOT_FOUND"
    default_message = "Delivery not found"


class ZoneNotFound(NotFound):
    code = "ZONE_NOT_FOUND"
    default_message = "Campus zone not found"


class NoRidersAvailable(NotFound):
    code = "NO_RIDERS_AVAILABLE"
    default_message = "No available riders found in zone or adjacent zones"


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Conflict"


class CartEmpty(ConflictError):
    code = "CART_EMPTY"
    default_message = "Cart is empty. Add items before creating an order."


class InsufficientStock(ConflictError):
    code = "INSUFFICIENT_STOCK"
    default_message = "Insufficient stock"


class ProductUnavailable(ConflictError):
    code = "PRODUCT_UNAVAILABLE"
    default_message = "Product is no longer available"


class PaymentAlreadyExists(ConflictError):
    code = "PAYMENT_EXISTS"
    default_message = "Payment already exists for this order"


class InvalidTransition(ConflictError):
    code = "INVALID_STATUS_TRANSITION"
    default_message = "Status transition not allowed"


class DeliveryExists(ConflictError):
    code = "DELIVERY_EXISTS"
    default_message = "Delivery already assigned"


class OrderNotPaid(ConflictError):
    code = "ORDER_NOT_PAID"
    default_message = "Order has not been paid in full"


class MissingAuthorization(ConflictError):
    code = "MISSING_AUTHORIZATION"
    default_message = "missing authorization"


class PaymentGatewayError(AppError):
    status_code = 502
    code = "PAYMENT_GATEWAY_ERROR"
    default_message = "Payment gateway request failed"


def error_body(code: str, message: str, details=None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"success": False, "error": error}


def success_body(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


async def _app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.code, exc.message, exc.details),
    )


async def _validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(part) for part in err["loc"] if part != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=error_body("VALIDATION_ERROR", "Invalid input data", details),
    )


async def _unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_body("INTERNAL_ERROR", "Internal server error"),
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, _app_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
