from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, TypedDict
import hashlib
import hmac
import logging
import uuid

import httpx

from .errors import (
    ChargeNotFound,
    ConfigurationError,
    GatewayRejected,
    GatewayUnauthorized,
    GatewayUnavailable,
    ValidationError,
)
from .helpers import digits_only, is_valid_cpf, split_name
from .infra.timings import timeit

logger = logging.getLogger(__name__)


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class Charge(TypedDict):
    charge_id: str
    status: str
    qr_code_base64: str
    copy_paste_code: str
    expires_at: Optional[str]


class ChargeStatus(TypedDict):
    charge_id: str
    status: str
    external_reference: Optional[str]


class PaymentGateway(ABC):
    @abstractmethod
    async def create_charge(
            self, amount: float, description: str, payer_email: str,
            payer_name: str, payer_document_id: str,
            external_reference: str,
    ) -> Charge: ...

    @abstractmethod
    async def fetch_charge_status(self, charge_id: str) -> ChargeStatus: ...


# ----------------------------
# Mercado Pago implementation
# ----------------------------
class MercadoPago(PaymentGateway):
    """PIX charges against the Mercado Pago payments API.

    ``http`` is the app-wide ``httpx.AsyncClient``; its base URL and timeout
    are set by the app. Every ``create_charge`` call sends a fresh
    idempotency key, so a caller that retries the same intent creates a
    second charge.
    """

    def __init__(self, http: httpx.AsyncClient, access_token: Optional[str],
                 *, notification_url: Optional[str] = None,
                 first_name_default: str = "User",
                 last_name_default: str = "User"):
        if not access_token:
            raise ConfigurationError("Payment service not configured")
        self.http = http
        self.access_token = access_token
        self.notification_url = notification_url
        self.first_name_default = first_name_default
        self.last_name_default = last_name_default

    def _headers(self, idempotency_key: Optional[str] = None) -> dict:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    async def _request(self, method: str, url: str, **kw) -> Dict[str, Any]:
        try:
            resp = await self.http.request(method, url, **kw)
        except httpx.TimeoutException as e:
            raise GatewayUnavailable(f"payment provider timed out: {e}")
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"payment provider unreachable: {e}")

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if resp.is_success:
            return data

        message = _provider_message(data)
        logger.warning("Mercado Pago %s %s -> %s: %s",
                       method, url, resp.status_code, message)
        if resp.status_code == 404:
            raise ChargeNotFound(message or "payment not found")
        if resp.status_code in (401, 403):
            raise GatewayUnauthorized(
                "payment provider rejected the credentials"
            )
        if resp.status_code >= 500:
            raise GatewayUnavailable(
                message or f"payment provider error {resp.status_code}"
            )
        raise GatewayRejected(message or "Failed to create payment")

    async def create_charge(
            self, amount: float, description: str, payer_email: str,
            payer_name: str, payer_document_id: str,
            external_reference: str,
    ) -> Charge:
        if amount is None or amount <= 0:
            raise ValidationError("amount must be positive")
        if not is_valid_cpf(payer_document_id):
            raise ValidationError("CPF inválido")

        first_name, last_name = split_name(
            payer_name, self.first_name_default, self.last_name_default
        )
        payload = {
            "transaction_amount": round(float(amount), 2),
            "description": description,
            "payment_method_id": "pix",
            "payer": {
                "email": payer_email,
                "first_name": first_name,
                "last_name": last_name,
                "identification": {
                    "type": "CPF",
                    "number": digits_only(payer_document_id),
                },
            },
            "external_reference": external_reference,
        }
        if self.notification_url:
            payload["notification_url"] = self.notification_url

        async with timeit("gateway.create_charge"):
            result = await self._request(
                "POST", "/v1/payments", json=payload,
                headers=self._headers(str(uuid.uuid4())),
            )

        pix = (result.get("point_of_interaction") or {}).get(
            "transaction_data"
        )
        if not pix:
            logger.error("no PIX data in provider response for %s",
                         external_reference)
            raise GatewayUnavailable("Failed to generate PIX code")

        return {
            "charge_id": str(result.get("id")),
            "status": result.get("status") or "pending",
            "qr_code_base64": pix.get("qr_code_base64") or "",
            "copy_paste_code": pix.get("qr_code") or "",
            "expires_at": result.get("date_of_expiration"),
        }

    async def fetch_charge_status(self, charge_id: str) -> ChargeStatus:
        async with timeit("gateway.fetch_status"):
            result = await self._request(
                "GET", f"/v1/payments/{charge_id}", headers=self._headers()
            )
        return {
            "charge_id": str(result.get("id", charge_id)),
            "status": result.get("status") or "",
            "external_reference": result.get("external_reference") or None,
        }


def _provider_message(data: Dict[str, Any]) -> str:
    msg = data.get("message")
    if msg:
        return str(msg)
    cause = data.get("cause")
    if isinstance(cause, list) and cause and isinstance(cause[0], dict):
        return str(cause[0].get("description") or "")
    return ""


# ----------------------------
# Webhook signature
# ----------------------------
def parse_signature_header(x_signature: str) -> Dict[str, str]:
    # "ts=1704908010,v1=618c8534..."
    parts = {}
    for part in (x_signature or "").split(","):
        key, sep, value = part.partition("=")
        if sep and key.strip() and value.strip():
            parts[key.strip()] = value.strip()
    return parts


def signature_manifest(data_id: str, x_request_id: str, ts: str) -> str:
    return f"id:{data_id};request-id:{x_request_id};ts:{ts};"


def verify_signature(x_signature: str, x_request_id: str, data_id: str,
                     secret: str) -> bool:
    parts = parse_signature_header(x_signature)
    ts = parts.get("ts")
    v1 = parts.get("v1")
    if not ts or not v1 or not secret:
        return False
    manifest = signature_manifest(data_id, x_request_id, ts)
    expected = hmac.new(
        secret.encode(), manifest.encode(), hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, v1)
