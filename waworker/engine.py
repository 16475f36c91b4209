from __future__ import annotations

import logging
import re
from typing import Any, Optional, Protocol

import httpx

from .errors import EngineError
from .events import SessionEvents


LOGGER = logging.getLogger("waworker.engine")

STATE_CONNECTED = "CONNECTED"
STATE_DISCONNECTED = "DISCONNECTED"
STATE_ERROR = "ERROR"
STATE_UNKNOWN = "UNKNOWN"


class EngineSession(Protocol):
    """One automated WhatsApp connection owned by the automation engine."""

    tenant_id: str
    events: SessionEvents

    async def initialize(self) -> None: ...

    async def get_state(self) -> str: ...

    async def send_message(self, to: str, body: str) -> None: ...

    async def destroy(self) -> None: ...


class Engine(Protocol):
    def create_session(self, tenant_id: str) -> EngineSession: ...

    async def aclose(self) -> None: ...


_SESSION_STATES = frozenset({STATE_CONNECTED, STATE_DISCONNECTED, STATE_ERROR, STATE_UNKNOWN})


def normalize_state(state: Optional[str]) -> str:
    """Collapse engine states such as ``OPENING`` or ``CONFLICT`` to ``DISCONNECTED``."""
    if not state:
        return STATE_UNKNOWN
    value = str(state).upper()
    return value if value in _SESSION_STATES else STATE_DISCONNECTED


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def to_chat_id(to: str) -> str:
    """Normalise a phone number to a WhatsApp chat id (``<digits>@c.us``)."""
    cleaned = (to or "").strip()
    if "@" in cleaned:
        return cleaned
    digits = _digits(cleaned)
    if not digits:
        raise ValueError("invalid_recipient")
    return f"{digits}@c.us"


class WawebSession:
    """Session handle backed by the waweb bridge sidecar.

    Calls go out over the engine's shared ``httpx.AsyncClient``; notifications
    come back through ``POST /webhook/waweb`` and are published on ``events``.
    """

    def __init__(self, engine: "WawebEngine", tenant_id: str) -> None:
        self._engine = engine
        self.tenant_id = tenant_id
        self.events = SessionEvents(tenant_id)

    def _path(self, suffix: str) -> str:
        return f"/session/{self.tenant_id}/{suffix}"

    async def initialize(self) -> None:
        await self._engine.request("POST", self._path("start"), json={"tenant": self.tenant_id})
        LOGGER.info("stage=engine_start tenant_id=%s", self.tenant_id)

    async def get_state(self) -> str:
        data = await self._engine.request("GET", self._path("status"))
        state = data.get("state") if isinstance(data, dict) else None
        if not state:
            return STATE_UNKNOWN
        return str(state).upper()

    async def send_message(self, to: str, body: str) -> None:
        payload = {"tenant": self.tenant_id, "to": to_chat_id(to), "text": body}
        await self._engine.request(
            "POST", "/send", json=payload, params={"tenant": self.tenant_id}
        )

    async def destroy(self) -> None:
        await self._engine.request("POST", self._path("logout"))
        LOGGER.info("stage=engine_logout tenant_id=%s", self.tenant_id)


class WawebEngine:
    """Factory and HTTP transport for :class:`WawebSession` handles."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        http_timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"X-Auth-Token": token} if token else {}
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=http_timeout,
            headers=headers,
            transport=transport,
        )

    def create_session(self, tenant_id: str) -> WawebSession:
        return WawebSession(self, tenant_id)

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        try:
            response = await self._http.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            raise EngineError(f"engine_unreachable: {exc}") from exc
        if response.status_code >= 400:
            detail = response.text.strip() or response.reason_phrase
            raise EngineError(detail, status=response.status_code)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    async def aclose(self) -> None:
        await self._http.aclose()


__all__ = [
    "Engine",
    "EngineSession",
    "STATE_CONNECTED",
    "STATE_DISCONNECTED",
    "STATE_ERROR",
    "STATE_UNKNOWN",
    "WawebEngine",
    "WawebSession",
    "normalize_state",
    "to_chat_id",
]
