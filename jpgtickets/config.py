from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from .errors import ConfigurationError


# ----------------------------
# Config & Constants
# ----------------------------
DEFAULT_MP_API_BASE = "https://api.mercadopago.com"
WEBHOOK_PATH = "/payments/webhook"
TEST_TOKEN_SETTING = "mp_access_token"


@dataclass(frozen=True)
class Settings:
    database_url: str
    mp_access_token: Optional[str] = None
    mp_webhook_secret: Optional[str] = None
    mp_api_base: str = DEFAULT_MP_API_BASE
    public_base_url: Optional[str] = None
    http_timeout: float = 15.0
    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"
    changefeed_backend: str = "memory"  # 'memory' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"
    token_prefix: str = "JPG-FF-"
    default_max_participants: int = 100
    cors_allowed_origins: Tuple[str, ...] = ("*",)
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_gate_limit: Optional[int] = None

    @property
    def notification_url(self) -> Optional[str]:
        if not self.public_base_url:
            return None
        return self.public_base_url.rstrip("/") + WEBHOOK_PATH

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        database_url = env.get("DATABASE_URL")
        if not database_url:
            raise ConfigurationError("DATABASE_URL is not set")

        backend = env.get("CHANGEFEED_BACKEND", "memory").lower()
        if backend not in ("memory", "redis"):
            raise ConfigurationError(
                f"CHANGEFEED_BACKEND must be 'memory' or 'redis', "
                f"got {backend!r}"
            )

        return cls(
            database_url=database_url,
            mp_access_token=env.get("MERCADOPAGO_ACCESS_TOKEN") or None,
            mp_webhook_secret=env.get("MP_WEBHOOK_SECRET") or None,
            mp_api_base=env.get("MP_API_BASE", DEFAULT_MP_API_BASE),
            public_base_url=env.get("PUBLIC_BASE_URL") or None,
            http_timeout=float(env.get("HTTP_TIMEOUT", "15")),
            session_secret=env.get("SESSION_SECRET", "dev-secret-change-me"),
            admin_username=env.get("ADMIN_USERNAME", "admin"),
            admin_password=env.get("ADMIN_PASSWORD", "supasecret"),
            changefeed_backend=backend,
            redis_url=env.get("REDIS_URL", "redis://127.0.0.1:6379"),
            token_prefix=env.get("TOKEN_PREFIX", "JPG-FF-"),
            default_max_participants=int(
                env.get("DEFAULT_MAX_PARTICIPANTS", "100")
            ),
            cors_allowed_origins=_parse_origins(
                env.get("CORS_ALLOWED_ORIGINS", "*")
            ),
            db_pool_size=int(env.get("DB_POOL_SIZE", "10")),
            db_max_overflow=int(env.get("DB_MAX_OVERFLOW", "10")),
            db_gate_limit=(
                int(env["DB_GATE_LIMIT"]) if env.get("DB_GATE_LIMIT") else None
            ),
        )


def _parse_origins(raw: str) -> Tuple[str, ...]:
    origins = tuple(o.strip() for o in (raw or "").split(",") if o.strip())
    return origins or ("*",)
