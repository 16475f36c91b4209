"""Per-tenant outbound message queue with serialized, spaced delivery."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Dict, Optional

from .metrics import (
    WA_MESSAGES_FAILED_TOTAL,
    WA_MESSAGES_QUEUED_TOTAL,
    WA_MESSAGES_SENT_TOTAL,
)


LOGGER = logging.getLogger("waworker.outbox")

SEND_DELAY = 2.0

_ids = itertools.count(1)


@dataclass(frozen=True, slots=True)
class DeliveryReceipt:
    message_id: int
    ok: bool
    error: Optional[str] = None


@dataclass(slots=True)
class QueuedMessage:
    id: int
    tenant_id: str
    to: str
    body: str
    enqueued_at: float
    delivery: asyncio.Future[DeliveryReceipt] = field(repr=False, compare=False)

    def resolve(self, ok: bool, error: Optional[str] = None) -> None:
        if not self.delivery.done():
            self.delivery.set_result(DeliveryReceipt(self.id, ok, error))


Deliver = Callable[[QueuedMessage], Awaitable[None]]


class OutboundQueue:
    """FIFO queue per tenant, drained by at most one task per tenant.

    A tenant's next delivery attempt starts at least ``delay`` seconds after
    its previous one finished; different tenants drain independently. A failed
    delivery is logged and the loop moves on, so each message gets a single
    attempt.
    """

    def __init__(
        self,
        deliver: Deliver,
        *,
        delay: float = SEND_DELAY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._deliver = deliver
        self._delay = delay
        self._clock = clock
        self._queues: Dict[str, Deque[QueuedMessage]] = {}
        self._processing: set[str] = set()
        self._tasks: Dict[str, asyncio.Task[None]] = {}
        self._sending: set[str] = set()
        self._last_finished: Dict[str, float] = {}

    def enqueue(self, tenant_id: str, to: str, body: str) -> QueuedMessage:
        loop = asyncio.get_running_loop()
        message = QueuedMessage(
            id=next(_ids),
            tenant_id=tenant_id,
            to=to,
            body=body,
            enqueued_at=time.time(),
            delivery=loop.create_future(),
        )
        self._queues.setdefault(tenant_id, deque()).append(message)
        WA_MESSAGES_QUEUED_TOTAL.inc()
        LOGGER.info(
            "event=message_queued tenant_id=%s message_id=%s depth=%s",
            tenant_id,
            message.id,
            len(self._queues[tenant_id]),
        )
        if tenant_id not in self._processing:
            self._processing.add(tenant_id)
            self._tasks[tenant_id] = loop.create_task(
                self._drain(tenant_id), name=f"wa-outbox-{tenant_id}"
            )
        return message

    def is_processing(self, tenant_id: str) -> bool:
        return tenant_id in self._processing

    def pending(self, tenant_id: str) -> int:
        queue = self._queues.get(tenant_id)
        return len(queue) if queue else 0

    def total_pending(self) -> int:
        return sum(len(queue) for queue in self._queues.values())

    async def _wait_turn(self, tenant_id: str) -> None:
        last = self._last_finished.get(tenant_id)
        if last is None:
            return
        remaining = self._delay - (self._clock() - last)
        if remaining > 0:
            await asyncio.sleep(remaining)

    async def _drain(self, tenant_id: str) -> None:
        queue = self._queues[tenant_id]
        try:
            while True:
                # no await between the empty check and the flag clear
                if not queue:
                    self._processing.discard(tenant_id)
                    self._tasks.pop(tenant_id, None)
                    self._queues.pop(tenant_id, None)
                    self._expire_spacing(tenant_id)
                    return
                await self._wait_turn(tenant_id)
                if not queue:
                    continue
                message = queue.popleft()
                self._sending.add(tenant_id)
                try:
                    await self._attempt(message)
                finally:
                    self._sending.discard(tenant_id)
                    self._last_finished[tenant_id] = self._clock()
        except asyncio.CancelledError:
            self._processing.discard(tenant_id)
            self._tasks.pop(tenant_id, None)
            raise

    def _expire_spacing(self, tenant_id: str) -> None:
        finished = self._last_finished.get(tenant_id)
        if finished is None:
            return
        asyncio.get_running_loop().call_later(
            max(0.0, self._delay), self._forget_spacing, tenant_id, finished
        )

    def _forget_spacing(self, tenant_id: str, finished: float) -> None:
        if tenant_id in self._processing:
            return
        if self._last_finished.get(tenant_id) == finished:
            self._last_finished.pop(tenant_id, None)

    async def _attempt(self, message: QueuedMessage) -> None:
        try:
            await self._deliver(message)
        except asyncio.CancelledError:
            message.resolve(False, "cancelled")
            raise
        except Exception as exc:
            reason = type(exc).__name__
            WA_MESSAGES_FAILED_TOTAL.labels(reason).inc()
            LOGGER.warning(
                "event=message_failed tenant_id=%s message_id=%s error=%s",
                message.tenant_id,
                message.id,
                exc,
            )
            message.resolve(False, str(exc) or reason)
            return
        WA_MESSAGES_SENT_TOTAL.inc()
        LOGGER.info(
            "event=message_sent tenant_id=%s message_id=%s",
            message.tenant_id,
            message.id,
        )
        message.resolve(True)

    def discard(self, tenant_id: str) -> int:
        """Drop queued messages for a tenant; a running drain stops after its current send."""
        queue = self._queues.get(tenant_id)
        if not queue:
            return 0
        dropped = len(queue)
        while queue:
            queue.popleft().resolve(False, "discarded")
        LOGGER.info("event=queue_discarded tenant_id=%s dropped=%s", tenant_id, dropped)
        return dropped

    async def close(self) -> int:
        dropped = 0
        for tenant_id in list(self._queues):
            dropped += self.discard(tenant_id)
        tasks = list(self._tasks.items())
        for tenant_id, task in tasks:
            # a send already handed to the engine runs to completion
            if tenant_id not in self._sending:
                task.cancel()
        for _, task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        self._processing.clear()
        self._last_finished.clear()
        return dropped


__all__ = [
    "DeliveryReceipt",
    "OutboundQueue",
    "QueuedMessage",
    "SEND_DELAY",
]
