"""Lightweight configuration helpers for the WhatsApp worker."""
from __future__ import annotations

import os
from dataclasses import dataclass


DEFAULT_WA_WEB_URL = "http://waweb:9001"
DEFAULT_PORT = 3001


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _normalize_wa_url(raw: str | None) -> str:
    if not raw:
        return DEFAULT_WA_WEB_URL
    cleaned = raw.strip()
    if not cleaned:
        return DEFAULT_WA_WEB_URL
    return cleaned.rstrip("/") or DEFAULT_WA_WEB_URL


def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    multiplier = 1.0
    if cleaned.endswith("ms"):
        cleaned = cleaned[:-2]
        multiplier = 0.001
    elif cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        return float(cleaned) * multiplier
    except ValueError:
        return default


def _parse_rate(raw: str | None, *, default: tuple[int, float]) -> tuple[int, float]:
    """Parse ``"<count>/<seconds>"`` limits such as ``10/60``."""
    if not raw or "/" not in raw:
        return default
    count_raw, _, window_raw = raw.partition("/")
    count = _coerce_int(count_raw, default[0])
    window = _parse_duration(window_raw, default=default[1])
    if count <= 0 or window <= 0:
        return default
    return count, window


@dataclass(frozen=True, slots=True)
class WhatsAppConfig:
    waweb_url: str
    waweb_token: str | None
    supabase_url: str
    supabase_key: str
    admin_token: str | None
    webhook_token: str | None
    port: int
    health_interval: float
    health_ttl: float
    send_delay: float
    reconnect_max_attempts: int
    reconnect_backoff: float
    qr_poll_interval: float
    qr_poll_attempts: int
    send_rate: tuple[int, float]
    qr_rate: tuple[int, float]

    @property
    def store_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


def _optional(name: str) -> str | None:
    return (os.getenv(name) or "").strip() or None


def whatsapp_config() -> WhatsAppConfig:
    return WhatsAppConfig(
        waweb_url=_normalize_wa_url(os.getenv("WA_WEB_URL")),
        waweb_token=_optional("WA_WEB_TOKEN"),
        supabase_url=(os.getenv("SUPABASE_URL") or "").strip(),
        supabase_key=(os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "").strip(),
        admin_token=_optional("ADMIN_TOKEN"),
        webhook_token=_optional("WEBHOOK_SECRET"),
        port=_coerce_int(os.getenv("WAWORKER_PORT"), DEFAULT_PORT),
        health_interval=_parse_duration(os.getenv("WA_HEALTH_INTERVAL"), default=30.0),
        health_ttl=_parse_duration(os.getenv("WA_HEALTH_TTL"), default=300.0),
        send_delay=_parse_duration(os.getenv("WA_SEND_DELAY"), default=2.0),
        reconnect_max_attempts=max(0, _coerce_int(os.getenv("WA_RECONNECT_MAX"), 3)),
        reconnect_backoff=_parse_duration(os.getenv("WA_RECONNECT_BACKOFF"), default=5.0),
        qr_poll_interval=_parse_duration(os.getenv("WA_QR_POLL_INTERVAL"), default=1.0),
        qr_poll_attempts=max(1, _coerce_int(os.getenv("WA_QR_POLL_ATTEMPTS"), 30)),
        send_rate=_parse_rate(os.getenv("WA_SEND_RATE"), default=(10, 60.0)),
        qr_rate=_parse_rate(os.getenv("WA_QR_RATE"), default=(3, 120.0)),
    )


__all__ = [
    "DEFAULT_WA_WEB_URL",
    "WhatsAppConfig",
    "whatsapp_config",
]
