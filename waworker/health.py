from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .engine import STATE_CONNECTED, STATE_ERROR, STATE_UNKNOWN, normalize_state
from .errors import HealthCheckFailure
from .metrics import WA_HEALTH_CHECK_FAIL_TOTAL, WA_SESSIONS_HEALTHY
from .registry import Session, SessionRegistry


LOGGER = logging.getLogger("waworker.health")

HEALTH_CHECK_INTERVAL = 30.0
HEALTH_TTL = 300.0


@dataclass(frozen=True, slots=True)
class HealthSnapshot:
    state: str
    is_healthy: bool
    last_check: Optional[float]
    error: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "state": self.state,
            "isHealthy": self.is_healthy,
            "lastCheck": int(self.last_check * 1000) if self.last_check is not None else None,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


UNKNOWN_HEALTH = HealthSnapshot(state=STATE_UNKNOWN, is_healthy=False, last_check=None)


class HealthCache:
    """Tenant-keyed snapshots that expire ``ttl`` seconds after being stored."""

    def __init__(
        self,
        ttl: float = HEALTH_TTL,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: Dict[str, tuple[float, HealthSnapshot]] = {}

    def set(self, tenant_id: str, snapshot: HealthSnapshot) -> None:
        self._entries[tenant_id] = (self._clock() + self._ttl, snapshot)

    def get(self, tenant_id: str) -> Optional[HealthSnapshot]:
        entry = self._entries.get(tenant_id)
        if entry is None:
            return None
        expires_at, snapshot = entry
        if expires_at <= self._clock():
            self._entries.pop(tenant_id, None)
            return None
        return snapshot

    def delete(self, tenant_id: str) -> None:
        self._entries.pop(tenant_id, None)

    def purge(self) -> int:
        now = self._clock()
        stale = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in stale:
            self._entries.pop(key, None)
        return len(stale)


class HealthMonitor:
    """Periodically asks every registered session for its engine state."""

    def __init__(
        self,
        registry: SessionRegistry,
        cache: HealthCache,
        *,
        interval: float = HEALTH_CHECK_INTERVAL,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._cache = cache
        self._interval = interval
        self._wall_clock = wall_clock
        self._task: Optional[asyncio.Task[None]] = None
        self._sweep: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run_loop(), name="wa-health-monitor")
        LOGGER.info("event=health_monitor_start interval=%s", self._interval)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        sweep = self._sweep
        self._sweep = None
        if sweep is not None and not sweep.done():
            # checks already in flight run to completion
            await sweep
        LOGGER.info("event=health_monitor_stop")

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self._interval)
            self._sweep = loop.create_task(self._guarded_sweep(), name="wa-health-sweep")
            await asyncio.shield(self._sweep)

    async def _guarded_sweep(self) -> None:
        try:
            await self.sweep()
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("event=health_sweep_crashed")

    async def sweep(self) -> None:
        sessions = self._registry.sessions()
        if not sessions:
            self._cache.purge()
            WA_SESSIONS_HEALTHY.set(0)
            return
        await asyncio.gather(*(self._check(session) for session in sessions))
        self._cache.purge()
        WA_SESSIONS_HEALTHY.set(
            sum(1 for session in self._registry.sessions() if session.is_healthy)
        )

    async def _check(self, session: Session) -> None:
        tenant = session.tenant_id
        try:
            state = await session.handle.get_state()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            failure = HealthCheckFailure(str(exc) or type(exc).__name__)
            WA_HEALTH_CHECK_FAIL_TOTAL.inc()
            snapshot = HealthSnapshot(
                state=STATE_ERROR,
                is_healthy=False,
                last_check=self._wall_clock(),
                error=str(failure),
            )
            LOGGER.warning("event=health_check_failed tenant_id=%s error=%s", tenant, failure)
            self._record(session, snapshot)
            return

        state = str(state or STATE_UNKNOWN)
        snapshot = HealthSnapshot(
            state=state,
            is_healthy=state == STATE_CONNECTED,
            last_check=self._wall_clock(),
        )
        if not snapshot.is_healthy:
            LOGGER.info("event=connection_unhealthy tenant_id=%s state=%s", tenant, state)
        self._record(session, snapshot)

    def _record(self, session: Session, snapshot: HealthSnapshot) -> None:
        # the session may have been removed while its check was in flight
        if self._registry.get(session.tenant_id) is not session:
            return
        session.is_healthy = snapshot.is_healthy
        session.state = normalize_state(snapshot.state)
        self._cache.set(session.tenant_id, snapshot)

    def mark_seen(self, tenant_id: str) -> None:
        session = self._registry.get(tenant_id)
        if session is None:
            return
        session.last_seen = self._wall_clock()
        session.is_healthy = True

    def get_connection_health(self, tenant_id: str) -> HealthSnapshot:
        return self._cache.get(tenant_id) or UNKNOWN_HEALTH


__all__ = [
    "HEALTH_CHECK_INTERVAL",
    "HEALTH_TTL",
    "HealthCache",
    "HealthMonitor",
    "HealthSnapshot",
    "UNKNOWN_HEALTH",
]
