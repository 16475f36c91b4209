from __future__ import annotations

import asyncio
import base64
import io
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

import qrcode

from .errors import AlreadyConnected, QrRenderError, QrTimeout
from .events import EventType, SessionEvent
from .metrics import WA_QR_START_TOTAL, WA_QR_TIMEOUT_TOTAL
from .registry import ConnectionPhase, Session, SessionFactory, SessionRegistry


LOGGER = logging.getLogger("waworker.qr")

QR_POLL_INTERVAL = 1.0
QR_POLL_ATTEMPTS = 30


def render_qr_png(payload: str) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=4,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def encode_qr_image(payload: str) -> str:
    """Render ``payload`` and return the PNG as bare base64 (no data-URL prefix)."""
    if not payload:
        raise ValueError("empty_qr_payload")
    return base64.b64encode(render_qr_png(payload)).decode("ascii")


@dataclass(frozen=True, slots=True)
class QrCode:
    tenant_id: str
    image: str
    generated_at: float


StatusWriter = Callable[[str, bool], Awaitable[None]]
Teardown = Callable[[Session], Awaitable[None]]


class QrProvisioner:
    """First-login flow: create the tenant session and wait for its QR."""

    def __init__(
        self,
        registry: SessionRegistry,
        factory: SessionFactory,
        *,
        status_writer: Optional[StatusWriter] = None,
        teardown: Optional[Teardown] = None,
        renderer: Callable[[str], str] = encode_qr_image,
        poll_interval: float = QR_POLL_INTERVAL,
        poll_attempts: int = QR_POLL_ATTEMPTS,
    ) -> None:
        self._registry = registry
        self._factory = factory
        self._status_writer = status_writer
        self._teardown = teardown
        self._renderer = renderer
        self._poll_interval = poll_interval
        self._poll_attempts = poll_attempts
        self._codes: Dict[str, QrCode] = {}
        self._render_errors: Dict[str, str] = {}

    def cached(self, tenant_id: str) -> Optional[QrCode]:
        return self._codes.get(tenant_id)

    def forget(self, tenant_id: str) -> None:
        self._codes.pop(tenant_id, None)
        self._render_errors.pop(tenant_id, None)

    async def on_event(self, event: SessionEvent) -> None:
        tenant = event.tenant_id
        if event.type is EventType.QR:
            self._store_qr(tenant, event.payload or "")
        elif event.type is EventType.READY:
            self.forget(tenant)
            LOGGER.info("stage=qr_ready tenant_id=%s", tenant)
            await self._write_status(tenant, True)
        elif event.type in (EventType.AUTH_FAILURE, EventType.DISCONNECTED):
            self.forget(tenant)
            await self._write_status(tenant, False)

    def _store_qr(self, tenant_id: str, payload: str) -> None:
        try:
            image = self._renderer(payload)
        except Exception as exc:
            LOGGER.error("stage=qr_render_failed tenant_id=%s error=%s", tenant_id, exc)
            self._codes.pop(tenant_id, None)
            self._render_errors[tenant_id] = str(exc) or type(exc).__name__
            return
        self._render_errors.pop(tenant_id, None)
        self._codes[tenant_id] = QrCode(tenant_id=tenant_id, image=image, generated_at=time.time())
        LOGGER.info("event=qr_new tenant_id=%s", tenant_id)

    async def _write_status(self, tenant_id: str, connected: bool) -> None:
        if self._status_writer is None:
            return
        try:
            await self._status_writer(tenant_id, connected)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.error(
                "event=connected_flag_update_failed tenant_id=%s connected=%s error=%s",
                tenant_id,
                connected,
                exc,
            )

    async def provision(self, tenant_id: str) -> QrCode:
        session = self._registry.get(tenant_id)
        if session is not None:
            if session.ready and session.phase is ConnectionPhase.CONNECTED:
                raise AlreadyConnected(tenant_id)
            if session.phase is ConnectionPhase.FAILED:
                LOGGER.info("stage=qr_reprovision tenant_id=%s reason=failed_session", tenant_id)
                await self._discard(tenant_id, session)

        cached = self._codes.get(tenant_id)
        if cached is not None:
            return cached

        WA_QR_START_TOTAL.inc()
        LOGGER.info("stage=qr_start tenant_id=%s", tenant_id)
        session = await self._registry.get_or_create(tenant_id, self._factory)

        for _ in range(self._poll_attempts):
            code = self._poll(tenant_id, session)
            if code is not None:
                return code
            await asyncio.sleep(self._poll_interval)
        code = self._poll(tenant_id, session)
        if code is not None:
            return code

        WA_QR_TIMEOUT_TOTAL.inc()
        LOGGER.warning(
            "stage=qr_timeout tenant_id=%s attempts=%s", tenant_id, self._poll_attempts
        )
        await self._discard(tenant_id, session)
        raise QrTimeout(tenant_id, self._poll_attempts)

    def _poll(self, tenant_id: str, session: Session) -> Optional[QrCode]:
        code = self._codes.get(tenant_id)
        if code is not None:
            return code
        error = self._render_errors.pop(tenant_id, None)
        if error is not None:
            raise QrRenderError(error)
        if session.ready:
            raise AlreadyConnected(tenant_id)
        return None

    async def _discard(self, tenant_id: str, session: Session) -> None:
        if self._registry.get(tenant_id) is not session:
            return
        await self._registry.remove(tenant_id)
        self.forget(tenant_id)
        if self._teardown is not None:
            await self._teardown(session)


__all__ = [
    "QR_POLL_ATTEMPTS",
    "QR_POLL_INTERVAL",
    "QrCode",
    "QrProvisioner",
    "encode_qr_image",
    "render_qr_png",
]
