"""Environment-driven configuration for the connector components."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
import re
from typing import Literal, Mapping
from urllib.parse import urlparse

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ApiMode = Literal["real", "mock"]

DEFAULT_REQUEST_TIMEOUT = 15.0


@dataclass(slots=True, frozen=True)
class TransportConfig:
    retries: int = 2
    backoff: float = 0.4  # seconds, multiplied by the attempt number
    timeout: float = DEFAULT_REQUEST_TIMEOUT  # per attempt, when a request sets none


@dataclass(slots=True, frozen=True)
class PollConfig:
    interval: float = 1.5
    timeout: float = 120.0


@dataclass(slots=True, frozen=True)
class RefreshConfig:
    margin: float = 300.0
    period: float = 300.0
    client_id: str | None = None
    client_secret: str | None = None


@dataclass(slots=True, frozen=True)
class WebhookConfig:
    host: str = "0.0.0.0"
    port: int = 0
    token: str | None = None
    secret: str | None = None

    @property
    def enabled(self) -> bool:
        return self.port > 0


@dataclass(slots=True, frozen=True)
class AlertConfig:
    bot_token: str | None = None
    admin_ids: tuple[int, ...] = ()

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.admin_ids)


@dataclass(slots=True, frozen=True)
class AppConfig:
    base_url: str
    mode: ApiMode = "real"
    bearer: str | None = None
    tenant_id: str = "default"
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    db_dsn: str | None = None
    transport: TransportConfig = field(default_factory=TransportConfig)
    poll: PollConfig = field(default_factory=PollConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)


def derive_functions_base_url(functions_url: str | None, supabase_url: str | None) -> str:
    """
    Resolve the base URL of the edge functions.

    An explicit functions URL wins. Otherwise ``https://<ref>.supabase.co``
    becomes ``https://<ref>.functions.supabase.co/functions/v1``.
    """
    explicit = (functions_url or "").rstrip("/")
    if explicit:
        return explicit
    supabase = (supabase_url or "").rstrip("/")
    if not supabase:
        return ""
    host = urlparse(supabase).hostname
    if not host:
        return ""
    ref = host.split(".")[0]
    return f"https://{ref}.functions.supabase.co/functions/v1"


def _ms(env: Mapping[str, str], key: str, default_seconds: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default_seconds
    try:
        return max(0.0, float(raw) / 1000.0)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", key, raw)
        return default_seconds


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", key, raw)
        return default


def _admin_ids(raw: str) -> tuple[int, ...]:
    ids: list[int] = []
    for part in re.split(r"[ ,;]+", raw.strip()):
        if part.lstrip("-").isdigit():
            ids.append(int(part))
    return tuple(ids)


def load_config(env: Mapping[str, str] | None = None) -> AppConfig:
    if env is None:
        load_dotenv()
        env = os.environ
    mode = (env.get("API_MODE") or "real").strip().lower()
    if mode not in ("real", "mock"):
        logger.warning("Unknown API_MODE=%r, falling back to 'real'", mode)
        mode = "real"
    base_url = derive_functions_base_url(env.get("FUNCTIONS_BASE_URL"), env.get("SUPABASE_URL"))
    if not base_url and mode == "real":
        logger.error("Functions base URL is empty. Set FUNCTIONS_BASE_URL or SUPABASE_URL.")

    defaults = AppConfig(base_url="")
    return AppConfig(
        base_url=base_url,
        mode=mode,  # type: ignore[arg-type]
        bearer=env.get("API_BEARER") or None,
        tenant_id=env.get("TENANT_ID") or defaults.tenant_id,
        request_timeout=_ms(env, "REQUEST_TIMEOUT_MS", defaults.request_timeout),
        db_dsn=env.get("DB_DSN") or None,
        transport=TransportConfig(
            retries=max(0, _int(env, "TRANSPORT_RETRIES", defaults.transport.retries)),
            backoff=_ms(env, "TRANSPORT_BACKOFF_MS", defaults.transport.backoff),
            timeout=_ms(env, "REQUEST_TIMEOUT_MS", defaults.request_timeout),
        ),
        poll=PollConfig(
            interval=_ms(env, "QR_POLL_MS", defaults.poll.interval),
            timeout=_ms(env, "QR_POLL_TIMEOUT_MS", defaults.poll.timeout),
        ),
        refresh=RefreshConfig(
            margin=_ms(env, "TOKEN_REFRESH_MARGIN_MS", defaults.refresh.margin),
            period=_ms(env, "TOKEN_REFRESH_PERIOD_MS", defaults.refresh.period),
            client_id=env.get("BITRIX_CLIENT_ID") or None,
            client_secret=env.get("BITRIX_CLIENT_SECRET") or None,
        ),
        webhook=WebhookConfig(
            host=env.get("EVOLUTION_WEBHOOK_HOST") or defaults.webhook.host,
            port=_int(env, "EVOLUTION_WEBHOOK_PORT", 0),
            token=env.get("EVOLUTION_WEBHOOK_TOKEN") or None,
            secret=env.get("EVOLUTION_WEBHOOK_SECRET") or None,
        ),
        alerts=AlertConfig(
            bot_token=env.get("BOT_TOKEN") or None,
            admin_ids=_admin_ids(env.get("ADMIN_TG_IDS", "") or env.get("ADMIN_IDS", "")),
        ),
    )


__all__ = [
    "AlertConfig",
    "ApiMode",
    "AppConfig",
    "DEFAULT_REQUEST_TIMEOUT",
    "PollConfig",
    "RefreshConfig",
    "TransportConfig",
    "WebhookConfig",
    "derive_functions_base_url",
    "load_config",
]
