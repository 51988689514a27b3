import asyncio
import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest

from thrifthub.paystack import (
    GatewayRejected,
    GatewayUnavailable,
    PaystackGateway,
    from_minor_units,
    to_minor_units,
)

SECRET = "sk_test_secret"


def make_gateway(handler, callback_url="http://localhost:3000/payment/verify"):
    client = httpx.AsyncClient(
        base_url="https://api.paystack.co",
        transport=httpx.MockTransport(handler),
        headers={"Authorization": f"Bearer {SECRET}"},
    )
    return PaystackGateway(client, SECRET, callback_url)


def transaction(status="success", reference="THB-PAY-1", amount=5000, **extra):
    data = {
        "id": 9001,
        "status": status,
        "reference": reference,
        "amount": amount,
        "gateway_response": "Approved" if status == "success" else "Declined",
        "authorization": {"authorization_code": "AUTH_abc", "reusable": True},
        "customer": {"customer_code": "CUS_abc", "email": "ama@students.example"},
    }
    data.update(extra)
    return data


@pytest.mark.parametrize(
    "major, minor",
    [(Decimal("50.00"), 5000), (Decimal("0.01"), 1), (Decimal("10.005"), 1001), (Decimal("19.99"), 1999)],
)
def test_minor_unit_conversion(major, minor):
    assert to_minor_units(major) == minor


def test_from_minor_units():
    assert from_minor_units(5050) == Decimal("50.50")


def test_initialize_sends_minor_units_and_callback():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "status": True,
                "message": "Authorization URL created",
                "data": {
                    "authorization_url": "https://checkout.paystack.com/abc",
                    "access_code": "abc",
                    "reference": "THB-PAY-1",
                },
            },
        )

    gateway = make_gateway(handler)
    txn = asyncio.run(
        gateway.initialize("ama@students.example", Decimal("50.00"), "THB-PAY-1", {"order_id": "o1"}, ["card"])
    )

    assert txn.authorization_url == "https://checkout.paystack.com/abc"
    assert seen["url"] == "https://api.paystack.co/transaction/initialize"
    assert seen["auth"] == f"Bearer {SECRET}"
    assert seen["body"] == {
        "email": "ama@students.example",
        "amount": 5000,
        "reference": "THB-PAY-1",
        "metadata": {"order_id": "o1"},
        "channels": ["card"],
        "callback_url": "http://localhost:3000/payment/verify",
    }


def test_verify_maps_transaction():
    def handler(request):
        assert request.url.path == "/transaction/verify/THB-PAY-1"
        return httpx.Response(200, json={"status": True, "data": transaction()})

    result = asyncio.run(make_gateway(handler).verify("THB-PAY-1"))

    assert result.status == "success"
    assert result.amount_minor == 5000
    assert result.transaction_id == "9001"
    assert result.authorization_code == "AUTH_abc"
    assert result.customer_code == "CUS_abc"


def test_charge_saved_authorization_success():
    def handler(request):
        body = json.loads(request.content)
        assert body == {
            "authorization_code": "AUTH_abc",
            "email": "ama@students.example",
            "amount": 5000,
            "reference": "TXN-PAY2-1",
        }
        return httpx.Response(200, json={"status": True, "data": transaction(reference="TXN-PAY2-1")})

    result = asyncio.run(
        make_gateway(handler).charge_saved_authorization("AUTH_abc", "ama@students.example", Decimal("50.00"), "TXN-PAY2-1")
    )

    assert result.succeeded is True
    assert result.gateway_reference == "TXN-PAY2-1"
    assert result.failure_reason is None


def test_charge_saved_authorization_declined():
    def handler(request):
        return httpx.Response(
            200,
            json={"status": True, "data": transaction(status="failed", gateway_response="Insufficient Funds")},
        )

    result = asyncio.run(
        make_gateway(handler).charge_saved_authorization("AUTH_abc", "ama@students.example", Decimal("50.00"), "TXN-PAY2-1")
    )

    assert result.succeeded is False
    assert result.failure_reason == "Insufficient Funds"


def test_client_error_is_rejection():
    def handler(request):
        return httpx.Response(400, json={"status": False, "message": "Invalid authorization code"})

    with pytest.raises(GatewayRejected, match="Invalid authorization code"):
        asyncio.run(make_gateway(handler).verify("THB-PAY-1"))


def test_status_false_is_rejection():
    def handler(request):
        return httpx.Response(200, json={"status": False, "message": "Duplicate Transaction Reference"})

    with pytest.raises(GatewayRejected):
        asyncio.run(make_gateway(handler).initialize("ama@students.example", Decimal("1.00"), "THB-PAY-1"))


def test_server_error_is_retryable():
    def handler(request):
        return httpx.Response(503, text="upstream unavailable")

    with pytest.raises(GatewayUnavailable) as exc_info:
        asyncio.run(make_gateway(handler).verify("THB-PAY-1"))
    assert exc_info.value.retryable is True


def test_transport_error_is_retryable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayUnavailable):
        asyncio.run(make_gateway(handler).verify("THB-PAY-1"))


def test_verify_signature():
    gateway = PaystackGateway(None, SECRET)
    payload = b'{"event":"charge.success"}'
    good = hmac.new(SECRET.encode(), payload, hashlib.sha512).hexdigest()

    assert gateway.verify_signature(payload, good) is True
    assert gateway.verify_signature(payload + b" ", good) is False
    assert gateway.verify_signature(payload, "0" * 128) is False
    assert gateway.verify_signature(payload, None) is False
    assert gateway.verify_signature(payload, "") is False
