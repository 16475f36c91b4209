from __future__ import annotations

from prometheus_client import Counter, Gauge


WA_SESSIONS_ACTIVE = Gauge(
    "waworker_sessions_active", "Number of tenant sessions held by the registry"
)
WA_SESSIONS_HEALTHY = Gauge(
    "waworker_sessions_healthy",
    "Number of tenant sessions reporting CONNECTED on the last health sweep",
)
WA_HEALTH_CHECK_FAIL_TOTAL = Counter(
    "waworker_health_check_fail_total",
    "Health checks where the engine state query raised",
)
WA_QR_START_TOTAL = Counter(
    "waworker_qr_start_total", "Total number of QR provisioning flows initiated"
)
WA_QR_TIMEOUT_TOTAL = Counter(
    "waworker_qr_timeout_total",
    "QR provisioning flows that gave up before the engine produced a QR",
)
WA_MESSAGES_QUEUED_TOTAL = Counter(
    "waworker_messages_queued_total", "Outbound messages accepted into a tenant queue"
)
WA_MESSAGES_SENT_TOTAL = Counter(
    "waworker_messages_sent_total", "Outbound messages handed to the engine"
)
WA_MESSAGES_FAILED_TOTAL = Counter(
    "waworker_messages_failed_total",
    "Outbound messages whose delivery attempt failed",
    ["reason"],
)
WA_RECONNECT_TOTAL = Counter(
    "waworker_reconnect_total",
    "Reconnection attempts grouped by outcome",
    ["outcome"],
)

__all__ = [
    "WA_SESSIONS_ACTIVE",
    "WA_SESSIONS_HEALTHY",
    "WA_HEALTH_CHECK_FAIL_TOTAL",
    "WA_QR_START_TOTAL",
    "WA_QR_TIMEOUT_TOTAL",
    "WA_MESSAGES_QUEUED_TOTAL",
    "WA_MESSAGES_SENT_TOTAL",
    "WA_MESSAGES_FAILED_TOTAL",
    "WA_RECONNECT_TOTAL",
]
