"""
Payment lifecycle handlers: charge creation, provider webhook, status
reconciliation/repair and the admin integration test.

The handlers are transport-agnostic; ``server.py`` wires them to HTTP and
turns ``PaymentError`` into structured JSON.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
import logging

import httpx
import orjson

from .config import TEST_TOKEN_SETTING
from .errors import (
    ConfigurationError,
    GatewayError,
    ParticipationNotFound,
    PaymentError,
    InvalidSignature,
    ValidationError,
)
from .helpers import is_valid_cpf, is_valid_email, now_ts, str_field
from .mercadopago import MercadoPago, PaymentGateway, verify_signature
from .model.db import (
    STATUS_FAILED,
    STATUS_PAID,
    STATUS_PENDING,
    STATUS_REFUNDED,
)
from .model.participations import ParticipationStore
from .model.settings import SettingsStore
from .model.slots import allocate_slot
from .model.tournaments import TournamentStore
from .model.webhook_logs import WebhookLogStore

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[], PaymentGateway]
TokenFactory = Callable[[], str]

# provider status -> local payment status; anything else stays pending
STATUS_MAP = {
    "approved": STATUS_PAID,
    "pending": STATUS_PENDING,
    "in_process": STATUS_PENDING,
    "rejected": STATUS_FAILED,
    "cancelled": STATUS_FAILED,
    "refunded": STATUS_REFUNDED,
}

PAYMENT_ACTIONS = {"payment.created", "payment.updated"}
TEST_REFERENCE_PREFIX = "test_"


def map_provider_status(status: Optional[str]) -> str:
    return STATUS_MAP.get((status or "").lower(), STATUS_PENDING)


# ----------------------------
# Request parsing
# ----------------------------
def _amount(value: Any) -> float:
    if isinstance(value, bool):
        raise ValidationError("amount must be a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError("amount must be a number")


def _document(payload: Mapping[str, Any]) -> str:
    return (str_field(payload, "payerDocumentId")
            or str_field(payload, "payerCpf"))


def parse_create_request(payload: Mapping[str, Any]) -> Dict[str, Any]:
    if not isinstance(payload, Mapping):
        raise ValidationError("request body must be a JSON object")
    pid = str_field(payload, "participationId")
    if not pid:
        raise ValidationError("participationId is required")
    amount = _amount(payload.get("amount"))
    if amount <= 0:
        raise ValidationError("amount must be positive")
    email = str_field(payload, "payerEmail")
    if not is_valid_email(email):
        raise ValidationError("payerEmail must be a valid email address")
    name = str_field(payload, "payerName")
    if not name:
        raise ValidationError("payerName is required")
    document = _document(payload)
    if not is_valid_cpf(document):
        raise ValidationError("CPF inválido")
    return {
        "participation_id": pid,
        "amount": amount,
        "description": (str_field(payload, "description")
                        or "Inscrição em torneio"),
        "payer_email": email,
        "payer_name": name,
        "payer_document_id": document,
    }


def _charge_response(charge) -> Dict[str, Any]:
    return {
        "success": True,
        "paymentId": charge["charge_id"],
        "qrCodeImageBase64": charge["qr_code_base64"],
        "copyPasteCode": charge["copy_paste_code"],
        "expiresAt": charge["expires_at"],
    }


# ----------------------------
# POST /payments/create
# ----------------------------
async def create_payment(payload: Mapping[str, Any], *,
                         participations: ParticipationStore,
                         gateway_factory: GatewayFactory) -> Dict[str, Any]:
    req = parse_create_request(payload)
    pid = req["participation_id"]

    row = await participations.require(pid)
    if row["payment_status"] in (STATUS_PAID, STATUS_FAILED, STATUS_REFUNDED):
        raise ValidationError(
            f"participation is already {row['payment_status']}"
        )
    if (row["payment_status"] == STATUS_PENDING
            and row["mercado_pago_payment_id"]):
        # no dedup policy: a resubmitted form creates a second charge
        logger.warning(
            "participation %s already has pending charge %s; creating "
            "another one", pid, row["mercado_pago_payment_id"],
        )

    gateway = gateway_factory()
    logger.info("creating PIX charge for participation %s", pid)
    charge = await gateway.create_charge(
        amount=req["amount"],
        description=req["description"],
        payer_email=req["payer_email"],
        payer_name=req["payer_name"],
        payer_document_id=req["payer_document_id"],
        external_reference=pid,
    )
    logger.info("charge %s created for participation %s",
                charge["charge_id"], pid)

    try:
        attached = await participations.attach_charge(
            pid, charge["charge_id"]
        )
        if not attached:
            logger.warning(
                "participation %s keeps its first charge id; charge %s is "
                "only reachable through its external reference",
                pid, charge["charge_id"],
            )
    except PaymentError:
        # the charge exists; the webhook still finds the participation
        # through the external reference
        logger.exception("charge %s created but participation %s not "
                         "updated", charge["charge_id"], pid)

    return _charge_response(charge)


# ----------------------------
# POST /payments/test (admin)
# ----------------------------
async def create_test_payment(payload: Mapping[str, Any], *,
                              settings_store: SettingsStore,
                              http: httpx.AsyncClient,
                              notification_url: Optional[str] = None
                              ) -> Dict[str, Any]:
    # admin-editable credential: read on every call
    access_token = await settings_store.get(TEST_TOKEN_SETTING)
    if not access_token:
        raise ConfigurationError(
            "Access Token do Mercado Pago não configurado. "
            "Configure nas Integrações."
        )
    if not isinstance(payload, Mapping):
        raise ValidationError("request body must be a JSON object")

    amount = _amount(payload.get("amount") or 0)
    if amount < 0.01:
        raise ValidationError("Valor mínimo é R$ 0,01")
    email = str_field(payload, "payerEmail")
    if not email:
        raise ValidationError("Email é obrigatório")
    document = _document(payload)
    if not is_valid_cpf(document):
        raise ValidationError("CPF inválido")

    gateway = MercadoPago(
        http, access_token,
        notification_url=notification_url,
        first_name_default="Teste",
        last_name_default="Usuario",
    )
    charge = await gateway.create_charge(
        amount=amount,
        description=(str_field(payload, "description")
                     or "Teste de Integração JPG"),
        payer_email=email,
        payer_name=str_field(payload, "payerName"),
        payer_document_id=document,
        external_reference=f"{TEST_REFERENCE_PREFIX}{int(now_ts() * 1000)}",
    )
    logger.info("test charge %s created", charge["charge_id"])
    out = _charge_response(charge)
    out["status"] = charge["status"]
    return out


# ----------------------------
# POST /payments/webhook
# ----------------------------
@dataclass(frozen=True)
class PaymentNotification:
    charge_id: str
    kind: str


@dataclass(frozen=True)
class IgnoredNotification:
    kind: str


def parse_notification(body: Any, query: Mapping[str, str]
                       ) -> PaymentNotification | IgnoredNotification:
    if not isinstance(body, dict):
        raise ValidationError("notification body must be a JSON object")
    kind = body.get("type") or body.get("action") or ""
    if not isinstance(kind, str):
        raise ValidationError("notification type must be a string")
    action = body.get("action")
    if action is not None and not isinstance(action, str):
        raise ValidationError("notification action must be a string")
    if kind != "payment" and action not in PAYMENT_ACTIONS:
        return IgnoredNotification(kind=kind)

    charge_id = notification_data_id(body, query)
    if not charge_id:
        raise ValidationError("missing payment id (data.id)")
    return PaymentNotification(charge_id=charge_id, kind=kind)


def notification_data_id(body: Any, query: Mapping[str, str]) -> str:
    data = body.get("data") if isinstance(body, dict) else None
    data_id = data.get("id") if isinstance(data, dict) else None
    if isinstance(data_id, bool) or isinstance(data_id, (dict, list)):
        data_id = None
    if data_id is None or str(data_id).strip() == "":
        data_id = query.get("data.id")
    return str(data_id).strip() if data_id is not None else ""


def check_signature(headers: Mapping[str, str], data_id: str,
                    secret: Optional[str]) -> None:
    if not secret:
        return
    x_signature = headers.get("x-signature") or ""
    if not x_signature:
        raise InvalidSignature("missing x-signature")
    if not verify_signature(x_signature, headers.get("x-request-id") or "",
                            data_id, secret):
        raise InvalidSignature("invalid webhook signature")


async def process_notification(note: PaymentNotification, *,
                               participations: ParticipationStore,
                               gateway_factory: GatewayFactory,
                               token_factory: TokenFactory
                               ) -> Dict[str, Any]:
    try:
        gateway = gateway_factory()
        charge = await gateway.fetch_charge_status(note.charge_id)
    except (GatewayError, ConfigurationError) as e:
        # 5xx so the provider redelivers
        logger.error("fetching charge %s failed: %s", note.charge_id, e)
        raise PaymentError(e.message, status_code=500)

    ref = charge["external_reference"]
    if ref and ref.startswith(TEST_REFERENCE_PREFIX):
        logger.info("charge %s is an integration test charge, ignoring",
                    note.charge_id)
        return {"received": True, "ignored": "test_charge"}

    row = await participations.get(ref) if ref else None
    if row is None:
        row = await participations.find_by_provider_payment_id(
            note.charge_id
        )
    if row is None:
        raise ParticipationNotFound(
            f"no participation for charge {note.charge_id}"
        )

    status = map_provider_status(charge["status"])
    logger.info("charge %s is %s -> participation %s %s",
                note.charge_id, charge["status"], row["id"], status)
    await participations.apply_status(row["id"], status,
                                      token_factory=token_factory)
    return {"success": True, "status": status}


async def handle_webhook(raw: bytes, headers: Mapping[str, str],
                         query: Mapping[str, str], *,
                         participations: ParticipationStore,
                         logs: WebhookLogStore,
                         gateway_factory: GatewayFactory,
                         token_factory: TokenFactory,
                         webhook_secret: Optional[str] = None,
                         method: str = "POST") -> Tuple[int, Dict[str, Any]]:
    """Returns (http_status, body); every call leaves a webhook_logs row."""
    body: Any = None
    error: Optional[str] = None
    try:
        if not raw or not raw.strip():
            status_code, out = 200, {"received": True}
            logger.info("empty webhook body (verification ping)")
        else:
            try:
                body = orjson.loads(raw)
            except ValueError:
                body = {"raw": raw.decode(errors="replace")}
                raise ValidationError("invalid JSON body")

            check_signature(headers, notification_data_id(body, query),
                            webhook_secret)
            note = parse_notification(body, query)
            if isinstance(note, IgnoredNotification):
                logger.info("ignoring %r notification", note.kind)
                status_code, out = 200, {"received": True}
            else:
                status_code, out = 200, await process_notification(
                    note,
                    participations=participations,
                    gateway_factory=gateway_factory,
                    token_factory=token_factory,
                )
    except PaymentError as e:
        error = e.message
        status_code, out = e.status_code, {"success": False,
                                           "error": e.message}
        if status_code >= 500:
            logger.error("webhook failed (%s): %s", status_code, e.message)
        else:
            logger.warning("webhook rejected (%s): %s", status_code,
                           e.message)
    except Exception as e:
        logger.exception("webhook crashed")
        error = str(e)
        status_code, out = 500, {"success": False, "error": "internal error"}

    await logs.record(
        method=method,
        headers=dict(headers),
        body=body,
        query_params=dict(query),
        status_code=status_code,
        response=out,
        error_message=error,
    )
    return status_code, out


# ----------------------------
# POST /payments/status
# ----------------------------
async def check_status(participation_id: Any, *,
                       participations: ParticipationStore,
                       tournaments: TournamentStore,
                       token_factory: TokenFactory,
                       gateway_factory: Optional[GatewayFactory] = None,
                       default_max_participants: int = 100
                       ) -> Dict[str, Any]:
    """Read the participation and repair what a lost webhook left behind.

    Safe to call any number of times: every write is guarded by the state it
    repairs (pending with a charge, paid without token, paid without slot).
    """
    if not participation_id or not isinstance(participation_id, str):
        raise ValidationError("participationId is required")
    row = await participations.require(participation_id)

    if (row["payment_status"] == STATUS_PENDING
            and row["mercado_pago_payment_id"]
            and gateway_factory is not None):
        try:
            gateway = gateway_factory()
            charge = await gateway.fetch_charge_status(
                row["mercado_pago_payment_id"]
            )
        except (GatewayError, ConfigurationError) as e:
            logger.warning("status refetch for %s failed: %s",
                           participation_id, e)
        else:
            status = map_provider_status(charge["status"])
            if status != STATUS_PENDING:
                logger.info("repair: charge %s is %s, participation %s -> %s",
                            charge["charge_id"], charge["status"],
                            participation_id, status)
                await participations.apply_status(
                    participation_id, status, token_factory=token_factory
                )
                row = await participations.require(participation_id)

    if row["payment_status"] == STATUS_PAID:
        if not row["unique_token"]:
            await participations.ensure_token(participation_id,
                                              token_factory)
        if row["slot_number"] is None:
            logger.info("repair: paid participation %s has no slot",
                        participation_id)
            await allocate_slot(
                participations, tournaments, participation_id,
                default_max_participants=default_max_participants,
            )
        row = await participations.require(participation_id)

    return {
        "status": row["payment_status"],
        "token": row["unique_token"],
        "isPaid": row["payment_status"] == STATUS_PAID,
        "slotNumber": row["slot_number"],
    }
