from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, Optional

import pytest
from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:  # pragma: no cover - path setup
    sys.path.insert(0, str(ROOT_DIR))

import waworker.api as wa_api
from waworker.engine import to_chat_id
from waworker.errors import StoreError
from waworker.outbox import DeliveryReceipt
from waworker.qr import QrCode

ADMIN_TOKEN = "admin-secret"
WEBHOOK_TOKEN = "hook-secret"


class StubUserStore:
    def __init__(self) -> None:
        self.users: Dict[str, Dict[str, Any]] = {
            "u1": {
                "id": "u1",
                "email": "owner@example.com",
                "api_key": "key-u1",
                "whatsapp_number": "628111",
                "whatsapp_connected": False,
            }
        }
        self.counts = {"total_users": 1, "active_connections": 0, "messages_day": 0}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise StoreError("store_down")

    async def find_by_api_key(self, api_key: str) -> Optional[Dict[str, Any]]:
        self._check()
        return next((u for u in self.users.values() if u["api_key"] == api_key), None)

    async def find(self, user_id: str) -> Optional[Dict[str, Any]]:
        self._check()
        return self.users.get(user_id)

    async def list_users(self) -> list[Dict[str, Any]]:
        self._check()
        return list(self.users.values())

    async def update(self, user_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._check()
        user = self.users.get(user_id)
        if user is None:
            return None
        user.update(fields)
        return user

    async def delete(self, user_id: str) -> Optional[Dict[str, Any]]:
        self._check()
        return self.users.pop(user_id, None)

    async def upsert_user(
        self, email: str, api_key: str, whatsapp_number: Optional[str]
    ) -> Dict[str, Any]:
        self._check()
        for user in self.users.values():
            if user["email"] == email:
                user.update(api_key=api_key, whatsapp_number=whatsapp_number)
                return user
        user_id = f"u{len(self.users) + 1}"
        user = {
            "id": user_id,
            "email": email,
            "api_key": api_key,
            "whatsapp_number": whatsapp_number,
            "whatsapp_connected": False,
        }
        self.users[user_id] = user
        return user

    async def stats(self, since) -> Dict[str, int]:
        self._check()
        return dict(self.counts)

    async def ping(self) -> float:
        self._check()
        return 12.4


class StubSessionManager:
    def __init__(self, store: Optional[StubUserStore]) -> None:
        self.store = store
        self.qr_image = "aGVsbG8="
        self.qr_error: Optional[Exception] = None
        self.qr_calls: list[str] = []
        self.sent: list[tuple[str, str, str]] = []
        self.deliver_error: Optional[str] = None
        self.removed: list[str] = []
        self.events: list[tuple[str, str, Optional[str]]] = []
        self.known_tenants = {"u1"}
        self.stats: Dict[str, int] = {
            "sessions": 2,
            "healthy": 1,
            "connected": 1,
            "failed": 0,
            "queued": 3,
        }
        self.raise_stats = False
        self.queue = SimpleNamespace(pending=lambda tenant: 0)
        self._ids = 0

    async def start(self) -> None:  # pragma: no cover - lifecycle
        return None

    async def shutdown(self) -> None:  # pragma: no cover - lifecycle
        return None

    async def get_qr(self, tenant_id: str) -> QrCode:
        self.qr_calls.append(tenant_id)
        if self.qr_error is not None:
            raise self.qr_error
        return QrCode(tenant_id=tenant_id, image=self.qr_image, generated_at=time.time())

    def send_message(self, tenant_id: str, to: str, body: str):
        to_chat_id(to)
        self._ids += 1
        self.sent.append((tenant_id, to, body))
        delivery = asyncio.get_running_loop().create_future()
        delivery.set_result(
            DeliveryReceipt(self._ids, self.deliver_error is None, self.deliver_error)
        )
        return SimpleNamespace(id=self._ids, delivery=delivery)

    async def remove_session(self, tenant_id: str) -> bool:
        self.removed.append(tenant_id)
        return True

    async def dispatch_event(self, tenant_id: str, event_type, payload: Optional[str] = None) -> bool:
        self.events.append((tenant_id, event_type.value, payload))
        return tenant_id in self.known_tenants

    def connection_health(self, tenant_id: str) -> Dict[str, Any]:
        return {"state": "UNKNOWN", "isHealthy": False, "lastCheck": None, "error": None}

    def sessions_overview(self) -> list[Dict[str, Any]]:
        return [{"tenant_id": "u1", "phase": "CONNECTED"}]

    def stats_snapshot(self) -> Dict[str, int]:
        if self.raise_stats:
            raise RuntimeError("stats error")
        return dict(self.stats)


def _install(monkeypatch: pytest.MonkeyPatch, stub: StubSessionManager) -> None:
    monkeypatch.setenv("ADMIN_TOKEN", ADMIN_TOKEN)
    monkeypatch.setenv("WEBHOOK_SECRET", WEBHOOK_TOKEN)
    for name in ("WA_SEND_RATE", "WA_QR_RATE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(
        wa_api, "WhatsAppSessionManager", SimpleNamespace(from_config=lambda cfg: stub)
    )


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def user_store() -> StubUserStore:
    return StubUserStore()


@pytest.fixture
def waworker_client(monkeypatch: pytest.MonkeyPatch, user_store: StubUserStore):
    stub = StubSessionManager(user_store)
    _install(monkeypatch, stub)
    app = wa_api.create_app()
    with TestClient(app) as client:
        yield client, stub


@pytest.fixture
def storeless_client(monkeypatch: pytest.MonkeyPatch):
    stub = StubSessionManager(None)
    _install(monkeypatch, stub)
    app = wa_api.create_app()
    with TestClient(app) as client:
        yield client, stub


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}


@pytest.fixture
def user_headers() -> Dict[str, str]:
    return {"X-API-Key": "key-u1"}
