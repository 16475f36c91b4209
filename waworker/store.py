"""User and audit-log persistence backed by Supabase (PostgREST)."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

from supabase import Client, create_client

from .errors import StoreError


LOGGER = logging.getLogger("waworker.store")

USERS_TABLE = "users"
LOGS_TABLE = "logs"

T = TypeVar("T")


class UserStore:
    """Async facade over the blocking supabase client.

    Every query runs in a worker thread so the event loop keeps serving other
    tenants while PostgREST answers. Client errors surface as
    :class:`StoreError`.
    """

    def __init__(self, client: Client) -> None:
        self._client = client

    @classmethod
    def connect(cls, url: str, key: str) -> "UserStore":
        return cls(create_client(url, key))

    async def _run(self, op: str, call: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(call)
        except Exception as exc:
            LOGGER.error("event=store_failed op=%s error=%s", op, exc)
            raise StoreError(str(exc) or op) from exc

    def _users(self):
        return self._client.table(USERS_TABLE)

    async def find_by_api_key(self, api_key: str) -> Optional[dict[str, Any]]:
        result = await self._run(
            "find_by_api_key",
            lambda: self._users().select("*").eq("api_key", api_key).limit(1).execute(),
        )
        return result.data[0] if result.data else None

    async def find(self, user_id: str) -> Optional[dict[str, Any]]:
        result = await self._run(
            "find",
            lambda: self._users().select("*").eq("id", user_id).limit(1).execute(),
        )
        return result.data[0] if result.data else None

    async def list_users(self) -> list[dict[str, Any]]:
        result = await self._run(
            "list_users",
            lambda: self._users().select("*").order("created_at", desc=True).execute(),
        )
        return list(result.data or [])

    async def update(self, user_id: str, fields: dict[str, Any]) -> Optional[dict[str, Any]]:
        result = await self._run(
            "update",
            lambda: self._users().update(fields).eq("id", user_id).execute(),
        )
        return result.data[0] if result.data else None

    async def delete(self, user_id: str) -> Optional[dict[str, Any]]:
        result = await self._run(
            "delete",
            lambda: self._users().delete().eq("id", user_id).execute(),
        )
        return result.data[0] if result.data else None

    async def upsert_user(
        self, email: str, api_key: str, whatsapp_number: Optional[str]
    ) -> Optional[dict[str, Any]]:
        row = {"email": email, "api_key": api_key, "whatsapp_number": whatsapp_number}
        result = await self._run(
            "upsert_user",
            lambda: self._users().upsert(row, on_conflict="email").execute(),
        )
        return result.data[0] if result.data else None

    async def set_connected(self, user_id: str, connected: bool) -> None:
        await self.update(user_id, {"whatsapp_connected": connected})

    async def insert_log(self, user_id: str, action: str, details: dict[str, Any]) -> None:
        entry = {"user_id": user_id, "action": action, "details": details}
        await self._run(
            "insert_log",
            lambda: self._client.table(LOGS_TABLE).insert(entry).execute(),
        )

    async def stats(self, since: datetime) -> dict[str, int]:
        def _collect() -> dict[str, int]:
            total = self._users().select("id", count="exact").execute()
            active = (
                self._users().select("id", count="exact").eq("whatsapp_connected", True).execute()
            )
            messages = (
                self._client.table(LOGS_TABLE)
                .select("id", count="exact")
                .eq("action", "send_message")
                .gte("timestamp", since.astimezone(timezone.utc).isoformat())
                .execute()
            )
            return {
                "total_users": int(total.count or 0),
                "active_connections": int(active.count or 0),
                "messages_day": int(messages.count or 0),
            }

        return await self._run("stats", _collect)

    async def ping(self) -> float:
        """Round-trip a trivial query; returns elapsed milliseconds."""
        started = time.perf_counter()
        await self._run("ping", lambda: self._users().select("id").limit(1).execute())
        return (time.perf_counter() - started) * 1000.0


__all__ = ["UserStore", "USERS_TABLE", "LOGS_TABLE"]
