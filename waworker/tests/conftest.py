from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path
from typing import Any, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:  # pragma: no cover - path setup
    sys.path.insert(0, str(PROJECT_ROOT))

from waworker.errors import EngineError, StoreError
from waworker.events import SessionEvents
from waworker.manager import WhatsAppSessionManager


class FakeSession:
    def __init__(
        self,
        tenant_id: str,
        *,
        state: str = "CONNECTED",
        init_delay: float = 0.0,
        init_failures: int = 0,
    ) -> None:
        self.tenant_id = tenant_id
        self.events = SessionEvents(tenant_id)
        self.state = state
        self.state_error: Optional[Exception] = None
        self.init_delay = init_delay
        self.init_failures = init_failures
        self.init_calls: list[float] = []
        self.sent: list[tuple[str, str, float]] = []
        self.fail_bodies: set[str] = set()
        self.destroyed = False

    async def initialize(self) -> None:
        self.init_calls.append(time.monotonic())
        if self.init_delay:
            await asyncio.sleep(self.init_delay)
        if self.init_failures > 0:
            self.init_failures -= 1
            raise EngineError("init_failed")

    async def get_state(self) -> str:
        if self.state_error is not None:
            raise self.state_error
        return self.state

    async def send_message(self, to: str, body: str) -> None:
        if body in self.fail_bodies:
            raise EngineError("send_failed")
        self.sent.append((to, body, time.monotonic()))

    async def destroy(self) -> None:
        self.destroyed = True


class FakeEngine:
    def __init__(self, **session_kwargs: Any) -> None:
        self.session_kwargs = session_kwargs
        self.created: list[FakeSession] = []
        self.closed = False

    def create_session(self, tenant_id: str) -> FakeSession:
        session = FakeSession(tenant_id, **self.session_kwargs)
        self.created.append(session)
        return session

    def sessions_for(self, tenant_id: str) -> list[FakeSession]:
        return [session for session in self.created if session.tenant_id == tenant_id]

    async def aclose(self) -> None:
        self.closed = True


class FakeStore:
    def __init__(self) -> None:
        self.users: dict[str, dict[str, Any]] = {}
        self.logs: list[dict[str, Any]] = []
        self.connected_updates: list[tuple[str, bool]] = []
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise StoreError("store_down")

    async def set_connected(self, user_id: str, connected: bool) -> None:
        self._check()
        self.connected_updates.append((user_id, connected))
        if user_id in self.users:
            self.users[user_id]["whatsapp_connected"] = connected

    async def insert_log(self, user_id: str, action: str, details: dict[str, Any]) -> None:
        self._check()
        self.logs.append({"user_id": user_id, "action": action, "details": details})


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def make_manager(fake_engine: FakeEngine, fake_store: FakeStore):
    def _factory(**overrides: Any) -> WhatsAppSessionManager:
        options: dict[str, Any] = {
            "health_interval": 0.05,
            "health_ttl": 300.0,
            "send_delay": 0.05,
            "reconnect_max_attempts": 3,
            "reconnect_backoff": 0.01,
            "qr_poll_interval": 0.01,
            "qr_poll_attempts": 5,
        }
        options.update(overrides)
        engine = options.pop("engine", fake_engine)
        store = options.pop("store", fake_store)
        return WhatsAppSessionManager(engine, store, **options)

    return _factory
