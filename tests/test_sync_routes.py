from fastapi.testclient import TestClient

from conftest import USER_ID, transaction_payload
from database.ledger import StoreUnavailableError
from models.ledger import SyncStatus


def test_sync_connection(client: TestClient, aggregator, make_connection):
    connection = make_connection()
    aggregator.transactions = [transaction_payload("tx-1"), transaction_payload("tx-2")]

    response = client.post(f"/sync/connections/{connection.id}")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["transactions"]["created"] == 2
    assert body["window_reason"] == "initial_backfill"


def test_sync_connection_is_rate_limited(client: TestClient, make_connection):
    connection = make_connection()
    client.post(f"/sync/connections/{connection.id}")

    limited = client.post(f"/sync/connections/{connection.id}")
    forced = client.post(f"/sync/connections/{connection.id}", json={"force": True})

    assert limited.json()["status"] == "skipped"
    assert limited.json()["reason"] == "rate_limited"
    assert forced.json()["status"] == "success"


def test_unknown_connection_is_404(client: TestClient):
    assert client.post("/sync/connections/missing").status_code == 404
    assert client.get("/sync/connections/missing/status").status_code == 404


def test_sync_user(client: TestClient, make_connection):
    make_connection("conn-ext-1")
    make_connection("conn-ext-2")

    response = client.post(f"/sync/users/{USER_ID}")

    assert response.status_code == 200
    assert [item["status"] for item in response.json()["items"]] == ["success", "success"]


def test_connection_status_and_cancel(client: TestClient, make_connection):
    connection = make_connection()
    client.post(f"/sync/connections/{connection.id}")

    status = client.get(f"/sync/connections/{connection.id}/status").json()
    assert status["last_sync_status"] == "success"
    assert status["sync_cursor"] is not None

    cancel = client.post(f"/sync/connections/{connection.id}/cancel").json()
    assert cancel == {"connection_id": connection.id, "cancelled": False}


def test_set_primary_account(client: TestClient, store, make_connection):
    connection = make_connection()
    client.post(f"/sync/connections/{connection.id}")
    account = store.list_accounts(connection.id)[0]

    response = client.put(f"/sync/accounts/{account.id}/primary", json={"user_id": USER_ID})
    assert response.status_code == 200
    assert response.json() == {"account_id": account.id, "is_primary": True}

    foreign = client.put(f"/sync/accounts/{account.id}/primary", json={"user_id": "someone-else"})
    assert foreign.status_code == 404


def test_callback_stores_connection_and_syncs(client: TestClient, store, aggregator):
    aggregator.connections = [{"id": "conn-ext-1", "id_connector": 40, "bank_name": "Test Bank"}]

    response = client.post(
        "/sync/callback",
        json={"user_id": USER_ID, "connection_id": "conn-ext-1", "code": "abc"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["sync"]["status"] == SyncStatus.SUCCESS.value
    assert body["sync"]["sync_type"] == "callback"
    connection = store.get_connection(body["connection_id"])
    assert connection.bank_name == "Test Bank"
    assert connection.external_user_ref == "42"
    assert client.services.credentials.get(connection.id).token == "token-for-abc"


def test_webhook_triggers_sync(client: TestClient, store, make_connection):
    connection = make_connection()

    response = client.post("/webhooks/powens", json={"connection": {"id": "conn-ext-1"}})

    assert response.status_code == 200
    assert response.json() == {"received": True, "connection_id": connection.id}
    assert store.get_connection(connection.id).last_sync_status == "success"


def test_webhook_for_unknown_connection_is_acknowledged(client: TestClient):
    response = client.post("/webhooks/powens", json={"id_connection": 999})

    assert response.status_code == 200
    assert response.json() == {"received": True, "connection_id": None}


def test_webhook_is_acknowledged_when_store_is_down(client: TestClient, store, make_connection, monkeypatch):
    connection = make_connection()

    def unavailable(external_id):
        raise StoreUnavailableError("ledger store unreachable")

    monkeypatch.setattr(store, "find_connection_by_external_id", unavailable)

    response = client.post("/webhooks/powens", json={"connection": {"id": "conn-ext-1"}})

    assert response.status_code == 200
    assert response.json() == {"received": True, "connection_id": None}
    assert store.get_connection(connection.id).last_sync_status is None


def test_stats_and_jobs(client: TestClient, make_connection):
    connection = make_connection()
    client.post(f"/sync/connections/{connection.id}")

    stats = client.get("/sync/stats").json()
    assert stats["total_runs"] == 1
    assert stats["successful_runs"] == 1

    jobs = client.get("/sync/jobs").json()
    assert jobs["running"] is False
    assert {j["name"] for j in jobs["jobs"]} == {
        "full_sync",
        "health_check",
        "token_refresh",
        "housekeeping",
    }

    triggered = client.post("/sync/jobs/housekeeping")
    assert triggered.status_code == 200
    assert triggered.json()["runs"] == 1
    assert client.post("/sync/jobs/unknown").status_code == 404
