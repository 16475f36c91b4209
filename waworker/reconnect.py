from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional

from .events import EventType, SessionEvent
from .metrics import WA_RECONNECT_TOTAL
from .registry import ConnectionPhase, Session, SessionRegistry


LOGGER = logging.getLogger("waworker.reconnect")

MAX_RECONNECT_ATTEMPTS = 3
RECONNECT_BACKOFF = 5.0

ExhaustedHook = Callable[[Session], Awaitable[None]]


class ReconnectionSupervisor:
    """Re-initializes disconnected sessions with bounded, growing delays.

    Attempt ``n`` is scheduled ``backoff * n`` seconds after the disconnect
    that triggered it. A successful re-initialization resets the counter;
    once ``max_attempts`` have been spent without success the session moves
    to ``FAILED`` and stays there until a fresh QR login replaces it.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        backoff: float = RECONNECT_BACKOFF,
        on_exhausted: Optional[ExhaustedHook] = None,
    ) -> None:
        self._registry = registry
        self._max_attempts = max_attempts
        self._backoff = backoff
        self._on_exhausted = on_exhausted
        self._tasks: Dict[str, asyncio.Task[None]] = {}

    async def on_event(self, event: SessionEvent) -> None:
        if event.type is EventType.DISCONNECTED:
            self.handle_disconnect(event.tenant_id, event.payload)
        elif event.type is EventType.READY:
            self.handle_ready(event.tenant_id)

    def handle_ready(self, tenant_id: str) -> None:
        session = self._registry.find(tenant_id)
        if session is None:
            return
        session.ready = True
        session.reconnect_attempts = 0
        self._transition(session, ConnectionPhase.CONNECTED, reason="ready")

    def handle_disconnect(self, tenant_id: str, reason: Optional[str] = None) -> None:
        session = self._registry.find(tenant_id)
        if session is None:
            return
        LOGGER.warning(
            "stage=disconnected tenant_id=%s reason=%s attempts=%s",
            tenant_id,
            reason or "unknown",
            session.reconnect_attempts,
        )
        if session.phase is ConnectionPhase.FAILED:
            return
        pending = self._tasks.get(tenant_id)
        if pending is not None and not pending.done():
            LOGGER.info("stage=reconnect_pending tenant_id=%s", tenant_id)
            return
        if session.reconnect_attempts >= self._max_attempts:
            self._fail(session)
            return

        session.reconnect_attempts += 1
        attempt = session.reconnect_attempts
        delay = self._backoff * attempt
        if session.phase is not ConnectionPhase.RECONNECTING:
            self._transition(session, ConnectionPhase.DISCONNECTED, reason=reason)
        self._transition(session, ConnectionPhase.RECONNECTING, reason=f"attempt_{attempt}")
        LOGGER.info(
            "stage=reconnect_scheduled tenant_id=%s attempt=%s/%s delay=%s",
            tenant_id,
            attempt,
            self._max_attempts,
            delay,
        )
        loop = asyncio.get_running_loop()
        self._tasks[tenant_id] = loop.create_task(
            self._reconnect(session, attempt, delay), name=f"wa-reconnect-{tenant_id}"
        )

    async def _reconnect(self, session: Session, attempt: int, delay: float) -> None:
        tenant = session.tenant_id
        try:
            await asyncio.sleep(delay)
            if self._registry.find(tenant) is not session:
                LOGGER.info("stage=reconnect_skip tenant_id=%s reason=removed", tenant)
                return
            try:
                await session.handle.initialize()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                WA_RECONNECT_TOTAL.labels("failed").inc()
                LOGGER.warning(
                    "stage=reconnect_failed tenant_id=%s attempt=%s error=%s",
                    tenant,
                    attempt,
                    exc,
                )
                if session.reconnect_attempts >= self._max_attempts:
                    self._fail(session)
                return
            WA_RECONNECT_TOTAL.labels("success").inc()
            session.reconnect_attempts = 0
            session.last_seen = time.time()
            self._transition(session, ConnectionPhase.CONNECTED, reason="reconnected")
        finally:
            if self._tasks.get(tenant) is asyncio.current_task():
                self._tasks.pop(tenant, None)

    def _fail(self, session: Session) -> None:
        if session.phase is ConnectionPhase.FAILED:
            return
        WA_RECONNECT_TOTAL.labels("exhausted").inc()
        self._transition(session, ConnectionPhase.FAILED, reason="max_attempts")
        LOGGER.error(
            "stage=reconnect_exhausted tenant_id=%s attempts=%s",
            session.tenant_id,
            session.reconnect_attempts,
        )
        if self._on_exhausted is not None:
            task = asyncio.get_running_loop().create_task(
                self._notify_exhausted(session, self._on_exhausted)
            )
            self._tasks.setdefault(f"{session.tenant_id}:exhausted", task)

    async def _notify_exhausted(self, session: Session, hook: ExhaustedHook) -> None:
        try:
            await hook(session)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("stage=reconnect_exhausted_hook_failed tenant_id=%s", session.tenant_id)
        finally:
            self._tasks.pop(f"{session.tenant_id}:exhausted", None)

    @staticmethod
    def _transition(session: Session, phase: ConnectionPhase, *, reason: Optional[str]) -> None:
        previous = session.phase
        if previous is not phase:
            LOGGER.info(
                "stage=state_transition tenant_id=%s from=%s to=%s reason=%s",
                session.tenant_id,
                previous.value,
                phase.value,
                reason or "unknown",
            )
        session.phase = phase

    def cancel(self, tenant_id: str) -> None:
        task = self._tasks.pop(tenant_id, None)
        if task is not None and not task.done():
            task.cancel()

    def pending(self, tenant_id: str) -> bool:
        task = self._tasks.get(tenant_id)
        return task is not None and not task.done()

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass


__all__ = ["MAX_RECONNECT_ATTEMPTS", "RECONNECT_BACKOFF", "ReconnectionSupervisor"]
