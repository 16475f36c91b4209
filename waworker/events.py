"""Per-tenant notification channel for engine events."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional


LOGGER = logging.getLogger("waworker.events")


class EventType(str, Enum):
    QR = "qr"
    READY = "ready"
    AUTH_FAILURE = "auth_failure"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True, slots=True)
class SessionEvent:
    tenant_id: str
    type: EventType
    payload: Optional[str] = None


Subscriber = Callable[[SessionEvent], Awaitable[None]]


class SessionEvents:
    """Ordered fan-out of engine notifications to async subscribers.

    Subscribers run one after another in subscription order. A failing
    subscriber is logged and skipped so the remaining ones still observe the
    event.
    """

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe

    def __len__(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: SessionEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                await subscriber(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception(
                    "event=subscriber_failed tenant_id=%s type=%s",
                    self.tenant_id,
                    event.type.value,
                )

    async def emit(self, event_type: EventType | str, payload: Optional[str] = None) -> None:
        await self.publish(SessionEvent(self.tenant_id, EventType(event_type), payload))


__all__ = ["EventType", "SessionEvent", "SessionEvents", "Subscriber"]
