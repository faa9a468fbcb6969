from __future__ import annotations
import logging
from typing import Any, Dict, Optional

import httpx
import orjson
import redis.asyncio as redis

from fastapi import APIRouter, Depends, FastAPI, Form, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse, StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware

from . import payments
from .config import Settings
from .errors import PaymentError, ValidationError
from .helpers import ct_equal, new_token, str_field, to_iso
from .infra import timings
from .infra.sql import open_database
from .infra.timings import timeit
from .mercadopago import MercadoPago
from .model.changefeed import new_feed
from .model.db import (
    Base,
    STATUS_FAILED,
    STATUS_PAID,
    STATUS_REFUNDED,
)
from .model.participations import ParticipationStore, snapshot
from .model.settings import SettingsStore
from .model.tournaments import (
    OPEN_FOR_REGISTRATION, TournamentStore, tournament_to_dict
)
from .model.webhook_logs import WebhookLogStore

logger = logging.getLogger(__name__)

# the event stream ends once one of these is reached
TERMINAL_STATUSES = (STATUS_PAID, STATUS_FAILED, STATUS_REFUNDED)

# partners required per game mode at registration
PARTNER_FIELDS = {
    "solo": (),
    "dupla": ("partner_nick",),
    "trio": ("partner_nick", "partner_2_nick"),
    "squad": ("partner_nick", "partner_2_nick", "partner_3_nick"),
}

router = APIRouter()


# ----------------------------
# Dependencies
# ----------------------------
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_db(request: Request) -> AsyncSession:
    async with request.app.state.db.SessionAsync() as session:
        yield session


def participation_store(
    request: Request, db: AsyncSession = Depends(get_db)
) -> ParticipationStore:
    return ParticipationStore(db=db, gated=request.app.state.db.gated,
                              feed=request.app.state.feed)


def tournament_store(
    request: Request, db: AsyncSession = Depends(get_db)
) -> TournamentStore:
    return TournamentStore(db=db, gated=request.app.state.db.gated)


def settings_store(
    request: Request, db: AsyncSession = Depends(get_db)
) -> SettingsStore:
    return SettingsStore(db=db, gated=request.app.state.db.gated)


def webhook_log_store(
    request: Request, db: AsyncSession = Depends(get_db)
) -> WebhookLogStore:
    return WebhookLogStore(db=db, gated=request.app.state.db.gated)


def production_gateway(request: Request) -> payments.GatewayFactory:
    settings: Settings = request.app.state.settings
    http: httpx.AsyncClient = request.app.state.http

    # raises ConfigurationError per invocation when the token is missing
    def make() -> MercadoPago:
        return MercadoPago(http, settings.mp_access_token,
                           notification_url=settings.notification_url)
    return make


def token_factory(request: Request) -> payments.TokenFactory:
    prefix = request.app.state.settings.token_prefix
    return lambda: new_token(prefix)


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")


def failure(e: PaymentError) -> ORJSONResponse:
    return ORJSONResponse({"success": False, "error": e.message},
                          status_code=e.status_code)


def participation_to_dict(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "tournament_id": row["tournament_id"],
        "payment_status": row["payment_status"],
        "payment_id": row["mercado_pago_payment_id"],
        "payment_created_at": to_iso(row["payment_created_at"]),
        "unique_token": row["unique_token"],
        "slot_number": row["slot_number"],
        "partner_nick": row["partner_nick"],
        "partner_2_nick": row["partner_2_nick"],
        "partner_3_nick": row["partner_3_nick"],
        "created_at": to_iso(row["created_at"]),
        "updated_at": to_iso(row["updated_at"]),
    }


def _sse(data: Dict[str, Any]) -> bytes:
    return b"data: " + orjson.dumps(data) + b"\n\n"


async def _json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError:
        raise ValidationError("invalid JSON body")


# ----------------------------
# Payments
# ----------------------------
@router.post("/payments/create")
async def payments_create(
    request: Request,
    store: ParticipationStore = Depends(participation_store),
    gateway: payments.GatewayFactory = Depends(production_gateway),
):
    try:
        payload = await _json_body(request)
        async with timeit("payments.create"):
            return await payments.create_payment(
                payload, participations=store, gateway_factory=gateway,
            )
    except PaymentError as e:
        logger.warning("payment creation failed: %s", e.message)
        return failure(e)


@router.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    store: ParticipationStore = Depends(participation_store),
    logs: WebhookLogStore = Depends(webhook_log_store),
    gateway: payments.GatewayFactory = Depends(production_gateway),
    tokens: payments.TokenFactory = Depends(token_factory),
    settings: Settings = Depends(get_settings),
):
    raw = await request.body()
    async with timeit("payments.webhook"):
        status_code, out = await payments.handle_webhook(
            raw,
            dict(request.headers),
            dict(request.query_params),
            participations=store,
            logs=logs,
            gateway_factory=gateway,
            token_factory=tokens,
            webhook_secret=settings.mp_webhook_secret,
            method=request.method,
        )
    return ORJSONResponse(out, status_code=status_code)


@router.post("/payments/status")
async def payments_status(
    request: Request,
    store: ParticipationStore = Depends(participation_store),
    tournaments: TournamentStore = Depends(tournament_store),
    gateway: payments.GatewayFactory = Depends(production_gateway),
    tokens: payments.TokenFactory = Depends(token_factory),
    settings: Settings = Depends(get_settings),
):
    try:
        payload = await _json_body(request)
        pid = payload.get("participationId") if isinstance(
            payload, dict) else None
        async with timeit("payments.status"):
            return await payments.check_status(
                pid,
                participations=store,
                tournaments=tournaments,
                token_factory=tokens,
                # without a production credential there is nothing to refetch
                gateway_factory=gateway if settings.mp_access_token else None,
                default_max_participants=settings.default_max_participants,
            )
    except PaymentError as e:
        return ORJSONResponse({"error": e.message},
                              status_code=e.status_code)


@router.post("/payments/test", dependencies=[Depends(require_admin)])
async def payments_test(
    request: Request,
    settings_db: SettingsStore = Depends(settings_store),
    settings: Settings = Depends(get_settings),
):
    try:
        payload = await _json_body(request)
        return await payments.create_test_payment(
            payload,
            settings_store=settings_db,
            http=request.app.state.http,
            notification_url=settings.notification_url,
        )
    except PaymentError as e:
        logger.warning("test payment failed: %s", e.message)
        return failure(e)


# ----------------------------
# Tournaments
# ----------------------------
@router.post("/api/tournaments", dependencies=[Depends(require_admin)])
async def create_tournament(
    request: Request,
    tournaments: TournamentStore = Depends(tournament_store),
):
    payload = await _json_body(request)
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    return await tournaments.create(payload)


@router.get("/api/tournaments")
async def list_tournaments(
    limit: int = 100,
    tournaments: TournamentStore = Depends(tournament_store),
):
    return {"items": await tournaments.list(limit=limit)}


@router.get("/api/tournaments/{tournament_id}")
async def get_tournament(
    tournament_id: str,
    tournaments: TournamentStore = Depends(tournament_store),
):
    return tournament_to_dict(await tournaments.require(tournament_id))


# ----------------------------
# Participations
# ----------------------------
@router.post("/api/participations")
async def register_participation(
    request: Request,
    store: ParticipationStore = Depends(participation_store),
    tournaments: TournamentStore = Depends(tournament_store),
):
    payload = await _json_body(request)
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    user_id = str_field(payload, "user_id")
    if not user_id:
        raise ValidationError("user_id is required")
    tournament = await tournaments.require(
        str_field(payload, "tournament_id"))
    if tournament.status not in OPEN_FOR_REGISTRATION:
        raise ValidationError(
            f"tournament is {tournament.status}, registration closed"
        )
    partners = {}
    for field in ("partner_nick", "partner_2_nick", "partner_3_nick"):
        partners[field] = str_field(payload, field) or None
    for field in PARTNER_FIELDS.get(tournament.game_mode, ()):
        if not partners[field]:
            raise ValidationError(f"{field} is required for "
                                  f"{tournament.game_mode}")

    row = await store.create(user_id=user_id, tournament_id=tournament.id,
                             **partners)
    return participation_to_dict(row)


@router.get("/api/participations/{participation_id}")
async def get_participation(
    participation_id: str,
    store: ParticipationStore = Depends(participation_store),
):
    return participation_to_dict(await store.require(participation_id))


@router.get("/api/participations/{participation_id}/events")
async def participation_events(
    participation_id: str,
    request: Request,
    store: ParticipationStore = Depends(participation_store),
):
    row = await store.require(participation_id)
    feed = request.app.state.feed

    async def stream():
        current = snapshot(row)
        yield _sse(current)
        if current["payment_status"] in TERMINAL_STATUSES:
            return
        # changes between the read above and the subscription are picked up
        # by the client's status poll
        changes = feed.subscribe(participation_id)
        try:
            async for change in changes:
                yield _sse(change)
                if change["payment_status"] in TERMINAL_STATUSES:
                    break
        finally:
            await changes.aclose()

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


# ----------------------------
# Admin
# ----------------------------
@router.post("/api/admin/participations/{participation_id}/reject",
             dependencies=[Depends(require_admin)])
async def reject_participation(
    participation_id: str,
    store: ParticipationStore = Depends(participation_store),
):
    return participation_to_dict(await store.reject(participation_id))


@router.put("/api/admin/settings/{key}",
            dependencies=[Depends(require_admin)])
async def put_setting(
    key: str,
    request: Request,
    settings_db: SettingsStore = Depends(settings_store),
):
    payload = await _json_body(request)
    if not isinstance(payload, dict) or "value" not in payload:
        raise ValidationError("body must be {\"value\": ...}")
    value = payload["value"]
    if value is not None and not isinstance(value, str):
        raise ValidationError("value must be a string or null")
    await settings_db.put(key, value)
    logger.info("setting %s updated by %s", key,
                request.session.get("admin_user"))
    return {"ok": True, "key": key}


@router.get("/api/admin/settings", dependencies=[Depends(require_admin)])
async def list_settings(settings_db: SettingsStore = Depends(settings_store)):
    return {"items": await settings_db.list_masked()}


@router.get("/api/admin/webhook-logs",
            dependencies=[Depends(require_admin)])
async def list_webhook_logs(
    limit: int = 100,
    logs: WebhookLogStore = Depends(webhook_log_store),
):
    return {"items": await logs.recent(limit=limit), "limit": limit}


@router.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def get_timings():
    return {"items": timings.aggregates()}


@router.post("/admin/login")
async def admin_login(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    settings: Settings = Depends(get_settings),
):
    ok_user = ct_equal(username.strip(), settings.admin_username)
    ok_pass = ct_equal(password, settings.admin_password)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return {"ok": True}
    logger.warning("failed admin login for %r", username.strip())
    return ORJSONResponse({"ok": False, "error": "Invalid credentials."},
                          status_code=401)


@router.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"ok": True}


# ----------------------------
# App factory
# ----------------------------
def create_app(settings: Optional[Settings] = None, *,
               transport: Optional[httpx.AsyncBaseTransport] = None
               ) -> FastAPI:
    settings = settings or Settings.from_env()
    database = open_database(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        gate_limit=settings.db_gate_limit,
    )

    app = FastAPI(
        title="JPG Tickets",
        default_response_class=ORJSONResponse,
    )
    app.state.settings = settings
    app.state.db = database
    app.state.feed = None
    app.state.http = None
    app.state.redis = None

    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allowed_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)

    @app.exception_handler(PaymentError)
    async def _payment_error(request: Request, exc: PaymentError):
        return ORJSONResponse({"error": exc.message},
                              status_code=exc.status_code)

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        logger.info("JPG Tickets starting up (change feed: %s, "
                    "production credential: %s, webhook secret: %s)",
                    settings.changefeed_backend,
                    "set" if settings.mp_access_token else "MISSING",
                    "set" if settings.mp_webhook_secret else "not set")

    @app.on_event("startup")
    async def _db_init():
        await database.create_all(Base.metadata)

    @app.on_event("startup")
    async def _http_client_start():
        app.state.http = httpx.AsyncClient(
            base_url=settings.mp_api_base,
            timeout=settings.http_timeout,
            transport=transport,
            limits=httpx.Limits(
                max_connections=64, max_keepalive_connections=32
            ),
        )

    @app.on_event("startup")
    async def _changefeed_start():
        if settings.changefeed_backend == "redis":
            app.state.redis = redis.from_url(
                settings.redis_url,
                decode_responses=False,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )
        app.state.feed = new_feed(settings.changefeed_backend,
                                  r=app.state.redis)

    @app.on_event("shutdown")
    async def _http_client_stop():
        http = getattr(app.state, "http", None)
        if http is not None:
            await http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _changefeed_stop():
        feed = getattr(app.state, "feed", None)
        if feed is not None:
            await feed.close()
        r = getattr(app.state, "redis", None)
        if r is not None:
            await r.aclose()
            app.state.redis = None

    @app.on_event("shutdown")
    async def _db_stop():
        await database.dispose()

    return app
