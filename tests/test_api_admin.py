import re


def test_admin_routes_require_token(waworker_client):
    client, _ = waworker_client

    response = client.get("/admin/users", headers={"X-Admin-Token": "wrong"})

    assert response.status_code == 401
    assert response.json() == {"error": "not_authorized"}


def test_list_and_update_users(waworker_client, admin_headers, user_store):
    client, _ = waworker_client

    users = client.get("/admin/users", headers=admin_headers).json()["users"]
    assert [user["id"] for user in users] == ["u1"]

    response = client.put("/admin/users/u1", json={"whatsappNumber": "1"}, headers=admin_headers)
    assert response.status_code == 400
    assert response.json() == {"error": "Email required"}

    response = client.put(
        "/admin/users/missing", json={"email": "a@b.c"}, headers=admin_headers
    )
    assert response.status_code == 404

    response = client.put(
        "/admin/users/u1",
        json={"email": "new@example.com", "whatsappNumber": "628999"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.json()["user"]["email"] == "new@example.com"
    assert user_store.users["u1"]["whatsapp_number"] == "628999"


def test_delete_user_removes_session(waworker_client, admin_headers, user_store):
    client, stub = waworker_client

    response = client.delete("/admin/users/u1", headers=admin_headers)

    assert response.status_code == 200
    assert "u1" not in user_store.users
    assert stub.removed == ["u1"]
    assert client.delete("/admin/users/u1", headers=admin_headers).status_code == 404


def test_generate_api_key(waworker_client, admin_headers, user_store):
    client, _ = waworker_client

    response = client.post(
        "/admin/generate-api-key",
        json={"email": "new@example.com", "whatsappNumber": "628222"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    payload = response.json()
    assert len(payload["apiKey"]) >= 32
    assert payload["user"]["email"] == "new@example.com"
    assert user_store.users[payload["user"]["id"]]["api_key"] == payload["apiKey"]
    assert response.headers["cache-control"].startswith("no-store")


def test_store_failure_surfaces_as_server_error(waworker_client, admin_headers, user_store):
    client, _ = waworker_client
    user_store.fail = True

    response = client.get("/admin/users", headers=admin_headers)

    assert response.status_code == 500
    assert response.json() == {"error": "store_down"}


def test_stats(waworker_client, admin_headers, user_store):
    client, _ = waworker_client
    user_store.counts = {"total_users": 4, "active_connections": 2, "messages_day": 9}

    payload = client.get("/admin/stats", headers=admin_headers).json()

    assert payload["totalUsers"] == 4
    assert payload["activeConnections"] == 2
    assert payload["messagesDay"] == 9
    assert re.fullmatch(r"\d+d \d+h \d+m", payload["uptime"])

    user_store.fail = True
    payload = client.get("/admin/stats", headers=admin_headers).json()
    assert (payload["totalUsers"], payload["activeConnections"], payload["messagesDay"]) == (0, 0, 0)


def test_admin_health_lists_services(waworker_client, admin_headers, user_store):
    client, _ = waworker_client

    services = client.get("/admin/health", headers=admin_headers).json()["services"]
    assert [s["service"] for s in services] == ["Database", "WhatsApp Service", "API Server"]
    assert services[0]["status"] == "online"
    assert services[0]["responseTime"] == 12
    assert services[1]["details"] == "2 active sessions, 1 healthy"

    user_store.fail = True
    services = client.get("/admin/health", headers=admin_headers).json()["services"]
    assert services[0]["status"] == "offline"


def test_test_db(waworker_client, admin_headers, user_store):
    client, _ = waworker_client

    assert client.get("/admin/test-db", headers=admin_headers).json() == {
        "success": True,
        "responseTime": 12,
    }
    user_store.fail = True
    assert client.get("/admin/test-db", headers=admin_headers).status_code == 500


def test_session_views(waworker_client, admin_headers):
    client, stub = waworker_client

    health = client.get("/admin/connections/u1", headers=admin_headers).json()
    sessions = client.get("/admin/sessions", headers=admin_headers).json()
    removed = client.delete("/admin/sessions/u1", headers=admin_headers).json()

    assert health["state"] == "UNKNOWN"
    assert sessions == {"sessions": [{"tenant_id": "u1", "phase": "CONNECTED"}]}
    assert removed == {"removed": True, "userId": "u1"}
    assert stub.removed == ["u1"]


def test_admin_health_without_store(storeless_client, admin_headers):
    client, _ = storeless_client

    services = client.get("/admin/health", headers=admin_headers).json()["services"]

    assert services[0] == {
        "service": "Database",
        "status": "offline",
        "responseTime": None,
        "details": "store_not_configured",
    }
