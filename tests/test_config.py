import pytest

from config import DEFAULT_WA_WEB_URL, whatsapp_config

ENV_VARS = (
    "WA_WEB_URL",
    "WA_WEB_TOKEN",
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "ADMIN_TOKEN",
    "WEBHOOK_SECRET",
    "WAWORKER_PORT",
    "WA_HEALTH_INTERVAL",
    "WA_SEND_DELAY",
    "WA_RECONNECT_MAX",
    "WA_QR_POLL_ATTEMPTS",
    "WA_SEND_RATE",
    "WA_QR_RATE",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    cfg = whatsapp_config()

    assert cfg.waweb_url == DEFAULT_WA_WEB_URL
    assert cfg.port == 3001
    assert cfg.health_interval == 30.0
    assert cfg.health_ttl == 300.0
    assert cfg.send_delay == 2.0
    assert cfg.reconnect_max_attempts == 3
    assert cfg.reconnect_backoff == 5.0
    assert cfg.qr_poll_attempts == 30
    assert cfg.send_rate == (10, 60.0)
    assert cfg.qr_rate == (3, 120.0)
    assert cfg.admin_token is None
    assert not cfg.store_configured


def test_overrides(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("WA_WEB_URL", " http://bridge:9001/ ")
    monkeypatch.setenv("SUPABASE_URL", "https://db.example.com")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-key")
    monkeypatch.setenv("WAWORKER_PORT", "8080")
    monkeypatch.setenv("WA_HEALTH_INTERVAL", "500ms")
    monkeypatch.setenv("WA_SEND_DELAY", "3s")
    monkeypatch.setenv("WA_RECONNECT_MAX", "5")
    monkeypatch.setenv("WA_SEND_RATE", "20/30")

    cfg = whatsapp_config()

    assert cfg.waweb_url == "http://bridge:9001"
    assert cfg.store_configured
    assert cfg.port == 8080
    assert cfg.health_interval == pytest.approx(0.5)
    assert cfg.send_delay == 3.0
    assert cfg.reconnect_max_attempts == 5
    assert cfg.send_rate == (20, 30.0)


def test_malformed_values_fall_back(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("WAWORKER_PORT", "abc")
    monkeypatch.setenv("WA_SEND_DELAY", "soon")
    monkeypatch.setenv("WA_QR_RATE", "0/60")
    monkeypatch.setenv("WA_QR_POLL_ATTEMPTS", "0")

    cfg = whatsapp_config()

    assert cfg.port == 3001
    assert cfg.send_delay == 2.0
    assert cfg.qr_rate == (3, 120.0)
    assert cfg.qr_poll_attempts == 1
