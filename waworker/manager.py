from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from .engine import Engine, EngineSession, WawebEngine, to_chat_id
from .errors import DeliveryFailure, EngineError, ReconnectExhausted, StoreError
from .events import EventType
from .health import HEALTH_CHECK_INTERVAL, HEALTH_TTL, HealthCache, HealthMonitor
from .outbox import SEND_DELAY, OutboundQueue, QueuedMessage
from .qr import QR_POLL_ATTEMPTS, QR_POLL_INTERVAL, QrCode, QrProvisioner
from .reconnect import MAX_RECONNECT_ATTEMPTS, RECONNECT_BACKOFF, ReconnectionSupervisor
from .registry import ConnectionPhase, Session, SessionRegistry
from .store import UserStore


LOGGER = logging.getLogger("waworker")


class WhatsAppSessionManager:
    """Owns every tenant's engine session, outbound queue and health state.

    Both the QR path and the send path create sessions through
    :meth:`_build_session`, so a tenant never ends up with two engine
    sessions regardless of which request arrives first.
    """

    def __init__(
        self,
        engine: Engine,
        store: Optional[UserStore] = None,
        *,
        health_interval: float = HEALTH_CHECK_INTERVAL,
        health_ttl: float = HEALTH_TTL,
        send_delay: float = SEND_DELAY,
        reconnect_max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        reconnect_backoff: float = RECONNECT_BACKOFF,
        qr_poll_interval: float = QR_POLL_INTERVAL,
        qr_poll_attempts: int = QR_POLL_ATTEMPTS,
    ) -> None:
        self._engine = engine
        self._store = store
        self.health_cache = HealthCache(health_ttl)
        self.registry = SessionRegistry(self.health_cache)
        self.monitor = HealthMonitor(self.registry, self.health_cache, interval=health_interval)
        self.queue = OutboundQueue(self._deliver, delay=send_delay)
        self.supervisor = ReconnectionSupervisor(
            self.registry,
            max_attempts=reconnect_max_attempts,
            backoff=reconnect_backoff,
            on_exhausted=self._on_reconnect_exhausted,
        )
        self.qr = QrProvisioner(
            self.registry,
            self._build_session,
            status_writer=self._write_connected,
            teardown=self._teardown,
            poll_interval=qr_poll_interval,
            poll_attempts=qr_poll_attempts,
        )
        self._started = False

    @classmethod
    def from_config(cls, cfg: Any) -> "WhatsAppSessionManager":
        engine = WawebEngine(cfg.waweb_url, token=cfg.waweb_token)
        store = UserStore.connect(cfg.supabase_url, cfg.supabase_key) if cfg.store_configured else None
        return cls(
            engine,
            store,
            health_interval=cfg.health_interval,
            health_ttl=cfg.health_ttl,
            send_delay=cfg.send_delay,
            reconnect_max_attempts=cfg.reconnect_max_attempts,
            reconnect_backoff=cfg.reconnect_backoff,
            qr_poll_interval=cfg.qr_poll_interval,
            qr_poll_attempts=cfg.qr_poll_attempts,
        )

    @property
    def store(self) -> Optional[UserStore]:
        return self._store

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.monitor.start()

    async def shutdown(self) -> None:
        await self.monitor.stop()
        await self.supervisor.stop()
        dropped = await self.queue.close()
        sessions = self.registry.clear()
        for session in sessions:
            await self._destroy_handle(session.tenant_id, session.handle)
        await self._engine.aclose()
        self._started = False
        LOGGER.info(
            "stage=shutdown sessions=%s dropped_messages=%s", len(sessions), dropped
        )

    def _build_session(self, tenant_id: str) -> EngineSession:
        handle = self._engine.create_session(tenant_id)
        handle.events.subscribe(self.supervisor.on_event)
        handle.events.subscribe(self.qr.on_event)
        return handle

    async def _destroy_handle(self, tenant_id: str, handle: EngineSession) -> None:
        try:
            await handle.destroy()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("stage=client_destroy_failed tenant_id=%s error=%s", tenant_id, exc)

    async def _teardown(self, session: Session) -> None:
        tenant = session.tenant_id
        self.supervisor.cancel(tenant)
        await self._destroy_handle(tenant, session.handle)

    async def _write_connected(self, tenant_id: str, connected: bool) -> None:
        if self._store is None:
            return
        await self._store.set_connected(tenant_id, connected)

    async def _on_reconnect_exhausted(self, session: Session) -> None:
        await self._write_connected(session.tenant_id, False)

    async def _deliver(self, message: QueuedMessage) -> None:
        tenant = message.tenant_id
        session = await self.registry.get_or_create(tenant, self._build_session)
        if session.phase is ConnectionPhase.FAILED:
            raise ReconnectExhausted("session_failed")
        try:
            await session.handle.send_message(message.to, message.body)
        except EngineError as exc:
            raise DeliveryFailure(str(exc)) from exc
        self.monitor.mark_seen(tenant)
        if self._store is None:
            return
        try:
            await self._store.insert_log(
                tenant, "send_message", {"to": message.to, "message": message.body}
            )
        except StoreError as exc:
            LOGGER.warning("event=audit_log_failed tenant_id=%s error=%s", tenant, exc)

    async def get_qr(self, tenant_id: str) -> QrCode:
        return await self.qr.provision(tenant_id)

    def send_message(self, tenant_id: str, to: str, body: str) -> QueuedMessage:
        to_chat_id(to)
        return self.queue.enqueue(tenant_id, to, body)

    async def remove_session(self, tenant_id: str) -> bool:
        session = await self.registry.remove(tenant_id)
        self.queue.discard(tenant_id)
        self.qr.forget(tenant_id)
        if session is None:
            return False
        await self._teardown(session)
        return True

    async def dispatch_event(
        self, tenant_id: str, event_type: EventType | str, payload: Optional[str] = None
    ) -> bool:
        session = self.registry.find(tenant_id)
        if session is None:
            LOGGER.info(
                "event=engine_event_ignored tenant_id=%s type=%s reason=no_session",
                tenant_id,
                event_type,
            )
            return False
        await session.handle.events.emit(event_type, payload)
        return True

    def connection_health(self, tenant_id: str) -> dict[str, Any]:
        snapshot = self.monitor.get_connection_health(tenant_id)
        payload = snapshot.to_payload()
        session = self.registry.get(tenant_id)
        payload["session"] = session.to_payload() if session is not None else None
        payload["queued"] = self.queue.pending(tenant_id)
        payload["processing"] = self.queue.is_processing(tenant_id)
        return payload

    def sessions_overview(self) -> list[dict[str, Any]]:
        overview = []
        for session in self.registry.sessions():
            item = session.to_payload()
            item["health"] = self.monitor.get_connection_health(session.tenant_id).to_payload()
            item["queued"] = self.queue.pending(session.tenant_id)
            overview.append(item)
        return overview

    def stats_snapshot(self) -> Dict[str, Any]:
        sessions = self.registry.sessions()
        return {
            "sessions": len(sessions),
            "healthy": sum(1 for s in sessions if s.is_healthy),
            "connected": sum(1 for s in sessions if s.phase is ConnectionPhase.CONNECTED),
            "failed": sum(1 for s in sessions if s.phase is ConnectionPhase.FAILED),
            "queued": self.queue.total_pending(),
        }


__all__ = ["WhatsAppSessionManager"]
