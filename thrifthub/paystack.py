"""Paystack client: transaction initialize/verify, authorization charges and
webhook signature checks.

Every amount crosses this boundary in major units (cedis) as ``Decimal`` and
is converted to the gateway's minor unit (pesewas) here and nowhere else.
"""
import hashlib
import hmac
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

MINOR_UNITS = Decimal(100)


class GatewayError(Exception):
    """Base class for payment gateway failures."""

    retryable = False


class GatewayRejected(GatewayError):
    """The gateway answered and refused the request."""


class GatewayUnavailable(GatewayError):
    """Transport failure or timeout; the request may be retried."""

    retryable = True


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * MINOR_UNITS).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / MINOR_UNITS).quantize(Decimal("0.01"))


class InitializedTransaction(BaseModel):
    authorization_url: str
    access_code: Optional[str] = None
    reference: str


class VerifiedTransaction(BaseModel):
    status: str
    reference: str
    amount_minor: int
    transaction_id: Optional[str] = None
    authorization_code: Optional[str] = None
    customer_code: Optional[str] = None
    gateway_response: Optional[str] = None


class ChargeResult(BaseModel):
    succeeded: bool
    gateway_reference: str
    failure_reason: Optional[str] = None
    transaction_id: Optional[str] = None


class _Authorization(BaseModel):
    authorization_code: Optional[str] = None
    reusable: Optional[bool] = None


class _Customer(BaseModel):
    customer_code: Optional[str] = None
    email: Optional[str] = None


class _TransactionData(BaseModel):
    id: Optional[Union[int, str]] = None
    status: str
    reference: str
    amount: int
    gateway_response: Optional[str] = None
    authorization: Optional[_Authorization] = None
    customer: Optional[_Customer] = None


class PaystackGateway:
    def __init__(self, client: httpx.AsyncClient, secret_key: str, callback_url: Optional[str] = None):
        self._client = client
        self._secret_key = secret_key
        self._callback_url = callback_url

    @classmethod
    def from_settings(cls, settings) -> "PaystackGateway":
        client = httpx.AsyncClient(
            base_url=settings.paystack_base_url,
            timeout=settings.paystack_timeout_seconds,
            headers={"Authorization": f"Bearer {settings.paystack_secret_key}"},
        )
        return cls(client, settings.paystack_secret_key, settings.payment_callback_url)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def initialize(
        self,
        email: str,
        amount: Decimal,
        reference: str,
        metadata: Optional[Dict[str, Any]] = None,
        channels: Optional[List[str]] = None,
    ) -> InitializedTransaction:
        payload = {
            "email": email,
            "amount": to_minor_units(amount),
            "reference": reference,
            "metadata": metadata or {},
            "channels": channels or ["card", "mobile_money"],
        }
        if self._callback_url:
            payload["callback_url"] = self._callback_url

        data = await self._request("POST", "/transaction/initialize", json=payload)
        try:
            return InitializedTransaction(**data)
        except ValidationError as e:
            raise GatewayRejected(f"Unexpected initialize response: {e}") from e

    async def verify(self, reference: str) -> VerifiedTransaction:
        data = await self._request("GET", f"/transaction/verify/{reference}")
        txn = self._parse_transaction(data)
        return VerifiedTransaction(
            status=txn.status,
            reference=txn.reference,
            amount_minor=txn.amount,
            transaction_id=str(txn.id) if txn.id is not None else None,
            authorization_code=txn.authorization.authorization_code if txn.authorization else None,
            customer_code=txn.customer.customer_code if txn.customer else None,
            gateway_response=txn.gateway_response,
        )

    async def charge_saved_authorization(
        self, auth_code: str, email: str, amount: Decimal, reference: str
    ) -> ChargeResult:
        data = await self._request(
            "POST",
            "/transaction/charge_authorization",
            json={
                "authorization_code": auth_code,
                "email": email,
                "amount": to_minor_units(amount),
                "reference": reference,
            },
        )
        txn = self._parse_transaction(data)
        succeeded = txn.status == "success"
        return ChargeResult(
            succeeded=succeeded,
            gateway_reference=txn.reference,
            failure_reason=None if succeeded else (txn.gateway_response or f"Charge {txn.status}"),
            transaction_id=str(txn.id) if txn.id is not None else None,
        )

    def verify_signature(self, raw_payload: bytes, signature_header: Optional[str]) -> bool:
        if not signature_header:
            return False
        expected = hmac.new(self._secret_key.encode(), raw_payload, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature_header)

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("Paystack %s %s timed out", method, path)
            raise GatewayUnavailable(f"Paystack request timed out: {path}") from e
        except httpx.TransportError as e:
            logger.warning("Paystack %s %s transport error: %s", method, path, e)
            raise GatewayUnavailable(f"Paystack unreachable: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        message = body.get("message")
        if response.status_code >= 500:
            raise GatewayUnavailable(f"Paystack {response.status_code}: {message or response.text}")
        if response.status_code >= 400 or not body.get("status"):
            raise GatewayRejected(message or f"Paystack rejected request ({response.status_code})")

        return body.get("data") or {}

    @staticmethod
    def _parse_transaction(data: Dict[str, Any]) -> _TransactionData:
        try:
            return _TransactionData(**data)
        except ValidationError as e:
            raise GatewayRejected(f"Unexpected transaction response: {e}") from e
