from __future__ import annotations

import asyncio
import logging
import math
import secrets
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import whatsapp_config

from .errors import (
    AlreadyConnected,
    EngineError,
    QrRenderError,
    QrTimeout,
    SessionRemoved,
    StoreError,
)
from .events import EventType
from .manager import WhatsAppSessionManager
from .ratelimit import SlidingWindowLimiter
from .store import UserStore


logger = logging.getLogger("waworker.api")

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

QR_INSTRUCTIONS = (
    "1. Open WhatsApp on your phone\n"
    "2. Go to Settings > Linked Devices\n"
    '3. Tap "Link a Device"\n'
    "4. Scan this QR code"
)


class SendMessageRequest(BaseModel):
    to: Optional[str] = None
    message: Optional[str] = None


class UserFieldsRequest(BaseModel):
    email: Optional[str] = None
    whatsappNumber: Optional[str] = None


class WawebEventRequest(BaseModel):
    tenant: str
    event: EventType
    qr: Optional[str] = None
    reason: Optional[str] = None

    @field_validator("tenant", mode="before")
    @classmethod
    def _tenant_to_str(cls, value: Any) -> str:
        cleaned = str(value if value is not None else "").strip()
        if not cleaned:
            raise ValueError("tenant_required")
        return cleaned


def _format_uptime(seconds: float) -> str:
    total = int(seconds)
    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    return f"{days}d {hours}h {minutes}m"


def create_app() -> FastAPI:
    cfg = whatsapp_config()
    manager = WhatsAppSessionManager.from_config(cfg)
    started_at = time.time()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await manager.start()
        if manager.store is None:
            logger.warning("supabase credentials are not configured")
        try:
            yield
        finally:
            await manager.shutdown()

    app = FastAPI(title="waworker", lifespan=lifespan)
    app.state.session_manager = manager
    send_limiter = SlidingWindowLimiter(*cfg.send_rate)
    qr_limiter = SlidingWindowLimiter(*cfg.qr_rate)
    app.state.send_limiter = send_limiter
    app.state.qr_limiter = qr_limiter

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        body = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
        return JSONResponse(body, status_code=exc.status_code, headers=exc.headers)

    def require_admin(request: Request) -> None:
        if not cfg.admin_token:
            return
        header = request.headers.get("X-Admin-Token", "").strip()
        if not header or header != cfg.admin_token:
            logger.warning("event=admin_token_invalid route=%s", request.url.path)
            raise HTTPException(status_code=401, detail="not_authorized")

    def _store_error(exc: StoreError) -> HTTPException:
        return HTTPException(status_code=500, detail=str(exc))

    def require_store() -> UserStore:
        store = manager.store
        if store is None:
            raise HTTPException(status_code=503, detail="store_not_configured")
        return store

    async def require_user(request: Request, store: UserStore = Depends(require_store)) -> dict[str, Any]:
        api_key = request.headers.get("X-API-Key", "").strip()
        if not api_key:
            raise HTTPException(status_code=401, detail="API key required")
        try:
            user = await store.find_by_api_key(api_key)
        except StoreError as exc:
            raise _store_error(exc)
        if not user:
            raise HTTPException(status_code=401, detail="Invalid API key")
        return user

    def _rate_limit(limiter: SlidingWindowLimiter, error: str, message: str):
        def _dependency(request: Request) -> None:
            caller = request.client.host if request.client else "unknown"
            retry_after = limiter.hit(caller)
            if retry_after > 0:
                seconds = int(math.ceil(retry_after))
                logger.info(
                    "event=rate_limited route=%s caller=%s retry_after=%s",
                    request.url.path,
                    caller,
                    seconds,
                )
                raise HTTPException(
                    status_code=429,
                    detail={"error": error, "message": message, "retryAfter": f"{seconds} seconds"},
                    headers={"Retry-After": str(seconds)},
                )

        return _dependency

    limit_send = _rate_limit(
        send_limiter, "Too many messages sent", "Please wait before sending another message"
    )
    limit_qr = _rate_limit(
        qr_limiter, "Too many QR requests", "Please wait before generating another QR code"
    )

    async def _provision(tenant: str) -> str:
        try:
            code = await manager.get_qr(tenant)
        except QrTimeout:
            raise HTTPException(
                status_code=408,
                detail={
                    "error": "QR code generation timeout",
                    "message": "Please try again. Make sure WhatsApp Web is not already open elsewhere.",
                },
                headers=dict(NO_STORE_HEADERS),
            )
        except AlreadyConnected:
            raise HTTPException(
                status_code=409,
                detail={"error": "already_connected", "message": "WhatsApp is already linked"},
            )
        except SessionRemoved:
            raise HTTPException(status_code=404, detail="User not found")
        except QrRenderError:
            raise HTTPException(status_code=500, detail="QR code rendering failed")
        except EngineError:
            raise HTTPException(status_code=500, detail="Failed to initialize WhatsApp client")
        return code.image

    @app.get("/my-qr", dependencies=[Depends(limit_qr)])
    async def my_qr(user: dict[str, Any] = Depends(require_user)):
        tenant = str(user["id"])
        qr = await _provision(tenant)
        body = {
            "qr": qr,
            "userId": user["id"],
            "message": "Scan this QR code with WhatsApp mobile app",
            "instructions": QR_INSTRUCTIONS,
        }
        return JSONResponse(body, headers=dict(NO_STORE_HEADERS))

    @app.get("/admin/qr/{user_id}", dependencies=[Depends(require_admin), Depends(limit_qr)])
    async def admin_qr(user_id: str, store: UserStore = Depends(require_store)):
        try:
            user = await store.find(user_id)
        except StoreError as exc:
            raise _store_error(exc)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        qr = await _provision(user_id)
        body = {
            "qr": qr,
            "userId": user_id,
            "userEmail": user.get("email"),
            "userWhatsapp": user.get("whatsapp_number"),
            "message": f"QR code for {user.get('email')}",
            "instructions": QR_INSTRUCTIONS,
        }
        return JSONResponse(body, headers=dict(NO_STORE_HEADERS))

    @app.post("/send-message", dependencies=[Depends(limit_send)])
    async def send_message(
        payload: SendMessageRequest,
        wait: bool = Query(False),
        user: dict[str, Any] = Depends(require_user),
    ):
        to = (payload.to or "").strip()
        text = payload.message or ""
        if not to or not text.strip():
            raise HTTPException(status_code=400, detail="To and message required")
        tenant = str(user["id"])
        try:
            message = manager.send_message(tenant, to, text)
        except ValueError:
            raise HTTPException(status_code=400, detail="invalid_recipient")
        if wait:
            receipt = await asyncio.shield(message.delivery)
            if not receipt.ok:
                raise HTTPException(status_code=500, detail=receipt.error or "send_failed")
        return {
            "success": True,
            "messageId": message.id,
            "queued": manager.queue.pending(tenant),
        }

    @app.get("/admin/users", dependencies=[Depends(require_admin)])
    async def list_users(store: UserStore = Depends(require_store)):
        try:
            users = await store.list_users()
        except StoreError as exc:
            raise _store_error(exc)
        return {"users": users}

    @app.put("/admin/users/{user_id}", dependencies=[Depends(require_admin)])
    async def update_user(
        user_id: str, payload: UserFieldsRequest, store: UserStore = Depends(require_store)
    ):
        if not payload.email:
            raise HTTPException(status_code=400, detail="Email required")
        try:
            user = await store.update(
                user_id, {"email": payload.email, "whatsapp_number": payload.whatsappNumber}
            )
        except StoreError as exc:
            raise _store_error(exc)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        return {"user": user}

    @app.delete("/admin/users/{user_id}", dependencies=[Depends(require_admin)])
    async def delete_user(user_id: str, store: UserStore = Depends(require_store)):
        try:
            user = await store.delete(user_id)
        except StoreError as exc:
            raise _store_error(exc)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        await manager.remove_session(user_id)
        return {"message": "User deleted successfully"}

    @app.post("/admin/generate-api-key", dependencies=[Depends(require_admin)])
    async def generate_api_key(
        payload: UserFieldsRequest, store: UserStore = Depends(require_store)
    ):
        if not payload.email:
            raise HTTPException(status_code=400, detail="Email required")
        api_key = secrets.token_urlsafe(32)
        try:
            user = await store.upsert_user(payload.email, api_key, payload.whatsappNumber)
        except StoreError as exc:
            raise _store_error(exc)
        logger.info("event=api_key_issued email=%s", payload.email)
        return JSONResponse({"apiKey": api_key, "user": user}, headers=dict(NO_STORE_HEADERS))

    @app.get("/admin/stats", dependencies=[Depends(require_admin)])
    async def stats(store: UserStore = Depends(require_store)):
        today = datetime.now().astimezone().replace(hour=0, minute=0, second=0, microsecond=0)
        try:
            counts = await store.stats(today)
        except StoreError:
            logger.warning("event=stats_failed", exc_info=True)
            counts = {"total_users": 0, "active_connections": 0, "messages_day": 0}
        uptime = time.time() - started_at
        return {
            "totalUsers": counts["total_users"],
            "activeConnections": counts["active_connections"],
            "messagesDay": counts["messages_day"],
            "uptime": _format_uptime(uptime),
            "uptimeSeconds": int(uptime),
        }

    @app.get("/admin/health", dependencies=[Depends(require_admin)])
    async def admin_health():
        services: list[dict[str, Any]] = []
        store = manager.store
        if store is None:
            services.append(
                {
                    "service": "Database",
                    "status": "offline",
                    "responseTime": None,
                    "details": "store_not_configured",
                }
            )
        else:
            try:
                elapsed = await store.ping()
            except StoreError as exc:
                services.append(
                    {"service": "Database", "status": "offline", "responseTime": None, "details": str(exc)}
                )
            else:
                services.append(
                    {
                        "service": "Database",
                        "status": "online",
                        "responseTime": int(elapsed),
                        "details": f"{int(elapsed)}ms",
                    }
                )

        snapshot = manager.stats_snapshot()
        sessions = int(snapshot.get("sessions", 0))
        services.append(
            {
                "service": "WhatsApp Service",
                "status": "online" if sessions > 0 else "warning",
                "responseTime": None,
                "details": f"{sessions} active sessions, {snapshot.get('healthy', 0)} healthy",
            }
        )
        services.append(
            {
                "service": "API Server",
                "status": "online",
                "responseTime": 0,
                "details": "Request processed successfully",
            }
        )
        return {"services": services}

    @app.get("/admin/test-db", dependencies=[Depends(require_admin)])
    async def test_db(store: UserStore = Depends(require_store)):
        try:
            elapsed = await store.ping()
        except StoreError as exc:
            raise _store_error(exc)
        return {"success": True, "responseTime": int(elapsed)}

    @app.get("/admin/connections/{user_id}", dependencies=[Depends(require_admin)])
    async def connection_health(user_id: str):
        return manager.connection_health(user_id)

    @app.get("/admin/sessions", dependencies=[Depends(require_admin)])
    async def list_sessions():
        return {"sessions": manager.sessions_overview()}

    @app.delete("/admin/sessions/{user_id}", dependencies=[Depends(require_admin)])
    async def remove_session(user_id: str):
        removed = await manager.remove_session(user_id)
        return {"removed": removed, "userId": user_id}

    @app.post("/webhook/waweb")
    async def waweb_webhook(request: Request, payload: WawebEventRequest):
        if cfg.webhook_token:
            header = request.headers.get("X-Webhook-Token", "").strip()
            if header != cfg.webhook_token:
                logger.warning("event=webhook_token_invalid tenant_id=%s", payload.tenant)
                raise HTTPException(status_code=401, detail="not_authorized")
        event_payload = payload.qr if payload.event is EventType.QR else payload.reason
        delivered = await manager.dispatch_event(payload.tenant, payload.event, event_payload)
        return {"ok": True, "delivered": delivered}

    def _safe_stats_snapshot() -> dict[str, Any]:
        try:
            snapshot = manager.stats_snapshot()
            if isinstance(snapshot, dict):
                return snapshot
        except Exception:
            logger.warning("event=stats_snapshot_failed", exc_info=True)
        return {"sessions": 0, "healthy": 0, "connected": 0, "failed": 0, "queued": 0}

    @app.get("/health")
    async def health():
        stats = _safe_stats_snapshot()
        return {
            "ok": True,
            "sessions": int(stats.get("sessions", 0) or 0),
            "healthy": int(stats.get("healthy", 0) or 0),
            "connected": int(stats.get("connected", 0) or 0),
            "failed": int(stats.get("failed", 0) or 0),
            "queued": int(stats.get("queued", 0) or 0),
        }

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app"]
