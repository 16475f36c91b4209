from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Optional

from .engine import STATE_UNKNOWN, EngineSession
from .errors import CreationConflict, SessionRemoved
from .metrics import WA_SESSIONS_ACTIVE

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .health import HealthCache


LOGGER = logging.getLogger("waworker.registry")


class ConnectionPhase(str, Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    RECONNECTING = "RECONNECTING"
    FAILED = "FAILED"


@dataclass(slots=True, eq=False)
class Session:
    tenant_id: str
    handle: EngineSession
    created_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    is_healthy: bool = True
    reconnect_attempts: int = 0
    state: str = STATE_UNKNOWN
    phase: ConnectionPhase = ConnectionPhase.DISCONNECTED
    ready: bool = False

    def to_payload(self) -> dict[str, object]:
        return {
            "tenant_id": self.tenant_id,
            "state": self.state,
            "phase": self.phase.value,
            "is_healthy": self.is_healthy,
            "last_seen": int(self.last_seen * 1000),
            "reconnect_attempts": self.reconnect_attempts,
        }


SessionFactory = Callable[[str], EngineSession]


class SessionRegistry:
    """Holds one engine session per tenant.

    ``get_or_create`` is exactly-once per tenant: the first caller marks the
    tenant in flight, builds the handle and initializes it; later callers
    await the same future. While ``initialize`` runs the session is visible
    through :meth:`find` so engine events arriving during startup still land
    on it. A failed initialization leaves nothing registered, so the next
    call retries from scratch.
    """

    def __init__(self, health_cache: Optional["HealthCache"] = None) -> None:
        self._sessions: Dict[str, Session] = {}
        self._creating: Dict[str, Session] = {}
        self._inflight: Dict[str, asyncio.Future[Session]] = {}
        self._health_cache = health_cache

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, tenant_id: str) -> Optional[Session]:
        return self._sessions.get(tenant_id)

    def find(self, tenant_id: str) -> Optional[Session]:
        """Registered session, or the one still initializing."""
        return self._sessions.get(tenant_id) or self._creating.get(tenant_id)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def is_creating(self, tenant_id: str) -> bool:
        return tenant_id in self._inflight

    def _claim(self, tenant_id: str) -> asyncio.Future[Session]:
        if tenant_id in self._inflight:
            raise CreationConflict(tenant_id)
        future: asyncio.Future[Session] = asyncio.get_running_loop().create_future()
        self._inflight[tenant_id] = future
        return future

    async def get_or_create(self, tenant_id: str, factory: SessionFactory) -> Session:
        existing = self._sessions.get(tenant_id)
        if existing is not None:
            return existing
        try:
            future = self._claim(tenant_id)
        except CreationConflict:
            LOGGER.debug("stage=session_create_wait tenant_id=%s", tenant_id)
            return await asyncio.shield(self._inflight[tenant_id])

        session: Optional[Session] = None
        try:
            session = Session(tenant_id=tenant_id, handle=factory(tenant_id))
            self._creating[tenant_id] = session
            await session.handle.initialize()
            if self._creating.get(tenant_id) is not session:
                raise SessionRemoved(tenant_id)
            self._sessions[tenant_id] = session
            WA_SESSIONS_ACTIVE.set(len(self._sessions))
            LOGGER.info("stage=session_created tenant_id=%s", tenant_id)
            future.set_result(session)
            return session
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            LOGGER.warning(
                "stage=session_create_failed tenant_id=%s error=%s", tenant_id, exc
            )
            future.set_exception(exc)
            # waiters re-raise it; mark retrieved for the no-waiter case
            future.exception()
            raise
        finally:
            self._inflight.pop(tenant_id, None)
            if session is not None and self._creating.get(tenant_id) is session:
                self._creating.pop(tenant_id, None)

    async def remove(self, tenant_id: str) -> Optional[Session]:
        """Drop the tenant's session; an initializing one is abandoned by its creator."""
        session = self._sessions.pop(tenant_id, None)
        if session is None:
            session = self._creating.pop(tenant_id, None)
            if session is not None:
                LOGGER.info("stage=session_create_aborted tenant_id=%s", tenant_id)
        if self._health_cache is not None:
            self._health_cache.delete(tenant_id)
        WA_SESSIONS_ACTIVE.set(len(self._sessions))
        if session is not None:
            LOGGER.info("stage=session_removed tenant_id=%s", tenant_id)
        return session

    def clear(self) -> list[Session]:
        removed = list(self._sessions.values()) + list(self._creating.values())
        self._sessions.clear()
        self._creating.clear()
        if self._health_cache is not None:
            for session in removed:
                self._health_cache.delete(session.tenant_id)
        WA_SESSIONS_ACTIVE.set(0)
        return removed


__all__ = ["ConnectionPhase", "Session", "SessionFactory", "SessionRegistry"]
