from __future__ import annotations

from datetime import date

import pytest
from fastapi.testclient import TestClient

from disconnection_web import api as api_module
from disconnection_web.main import create_app
from disconnection_web.sms_transport import StubSmsTransport
from disconnection_web.store import PersistenceError, PlannedTransition

BASE = "/api/v1/utility"


def _client(transport: StubSmsTransport | None = None) -> TestClient:
    api_module.reset_runtime_state_for_tests()
    api_module.sms_transport = transport or StubSmsTransport(enabled=True)
    return TestClient(create_app())


def _seed() -> None:
    store = api_module.utility_store
    store.upsert_consumer(
        first_name="Juan",
        last_name="Dela Cruz",
        contact_number="09171234567",
        account_number="ACC-1",
        consumer_id=1,
    )
    store.add_billing(consumer_id=1, due_date=date(2020, 1, 15), total_amount=250)
    store.add_billing(consumer_id=1, due_date=date(2020, 2, 15), total_amount=300)
    store.upsert_consumer(first_name="Maria", last_name="Santos", contact_number="09170000002", consumer_id=2)
    store.add_billing(consumer_id=2, due_date=date(2020, 3, 15), total_amount=120)
    store.upsert_consumer(first_name="Pedro", last_name="Reyes", consumer_id=3)


def test_overdue_listing_and_details() -> None:
    client = _client()
    _seed()

    response = client.get(f"{BASE}/overdue", params={"sort": "overdue_desc"})
    assert response.status_code == 200
    body = response.json()
    assert body["total_count"] == 1
    assert body["sort"] == "overdue_desc"
    assert [row["consumer_id"] for row in body["items"]] == [1]
    assert body["items"][0]["overdue_count"] == 2
    assert body["items"][0]["total_unpaid_amount"] == 550.0

    # One overdue bill is below the threshold whatever the search.
    searched = client.get(f"{BASE}/overdue", params={"search": "santos"}).json()
    assert searched["total_count"] == 0
    assert searched["items"] == []
    assert client.get(f"{BASE}/overdue", params={"search": "juan"}).json()["total_count"] == 1

    below_threshold = client.get(f"{BASE}/consumers/2").json()
    assert below_threshold["eligible_for_disconnection"] is False
    assert below_threshold["consumer"]["overdue_count"] == 1

    details = client.get(f"{BASE}/consumers/1")
    assert details.status_code == 200
    assert details.json()["eligible_for_disconnection"] is True
    assert details.json()["account_number"] == "ACC-1"

    missing = client.get(f"{BASE}/consumers/404")
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Consumer not found."


def test_transitions_map_results_to_status_codes() -> None:
    client = _client()
    _seed()

    disconnected = client.post(f"{BASE}/consumers/1/disconnect", headers={"X-Operator": "maria"})
    assert disconnected.status_code == 200
    assert disconnected.json()["status"] == "Disconnected"
    assert disconnected.json()["disconnection_id"] is not None

    assert client.post(f"{BASE}/consumers/1/disconnect").status_code == 409
    assert client.post(f"{BASE}/consumers/2/notify").status_code == 409
    assert client.post(f"{BASE}/consumers/404/reconnect").status_code == 404

    reconnected = client.post(f"{BASE}/consumers/1/reconnect")
    assert reconnected.status_code == 200
    assert reconnected.json()["status"] == "Active"

    audit = client.get(f"{BASE}/audit").json()["items"]
    assert [(row["action"], row["performed_by"]) for row in audit] == [
        ("Reconnect", "Unknown"),
        ("Disconnect", "maria"),
    ]
    history = client.get(f"{BASE}/consumers/1").json()["history"]
    assert len(history) == 1
    assert history[0]["is_reconnected"] is True


def test_bulk_sms_is_accepted_and_drained_in_the_background() -> None:
    transport = StubSmsTransport(enabled=True)
    client = _client(transport)
    _seed()

    response = client.post(
        f"{BASE}/sms/send",
        json={"message": "Hi {Name}, pay {Amount} by {DueDate}", "send_to_all": True},
        headers={"X-Operator": "cashier"},
    )

    assert response.status_code == 202
    body = response.json()
    assert body["recipient_count"] == 2
    assert body["sent_count"] == 2
    assert body["batch_id"]
    assert sorted(number for number, _ in transport.sent) == ["09170000002", "09171234567"]
    assert ("09171234567", "Hi Juan, pay 250.00 by January 15") in transport.sent

    logs = client.get(f"{BASE}/sms/logs").json()["items"]
    assert len(logs) == 2
    assert all(log["status"] == "sent" for log in logs)

    queue = client.get(f"{BASE}/sms/queue").json()
    assert queue["sent_count"] == 2
    assert queue["pending_count"] == 0
    assert queue["last_drain"]["sent_count"] == 2


def test_bulk_sms_rejections() -> None:
    client = _client()
    _seed()

    empty = client.post(f"{BASE}/sms/send", json={"message": "Hi", "consumer_ids": []})
    assert empty.status_code == 422
    assert empty.json()["detail"] == "Please select at least one consumer."

    assert client.post(f"{BASE}/sms/send", json={"message": "Hi", "consumer_ids": [404]}).status_code == 422
    assert client.post(f"{BASE}/sms/send", json={"message": "   ", "send_to_all": True}).status_code == 422
    assert client.post(f"{BASE}/sms/queue/drain", params={"max_messages": 0}).status_code == 422


def test_failed_delivery_stays_queued_until_manual_drain() -> None:
    client = _client(StubSmsTransport(enabled=False))
    _seed()

    client.post(f"{BASE}/sms/send", json={"message": "Hi {Name}", "consumer_ids": [1]})

    queue = client.get(f"{BASE}/sms/queue").json()
    assert queue["pending_count"] == 1
    assert queue["last_drain"]["retried_count"] == 1

    drained = client.post(f"{BASE}/sms/queue/drain").json()
    assert drained["claimed_count"] == 0


def test_sms_candidates_page() -> None:
    client = _client()
    _seed()

    body = client.get(f"{BASE}/sms/candidates").json()

    assert body["page_size"] == 5
    assert [item["consumer_id"] for item in body["items"]] == [1, 2]
    assert len(body["items"][0]["unpaid_billings"]) == 2


def test_notification_lifecycle() -> None:
    client = _client()
    _seed()

    created = client.post(f"{BASE}/notifications", json={"title": "Advisory", "message": "Pipe repair", "consumer_id": 2})
    assert created.status_code == 201
    [notification_id] = created.json()["notification_ids"]

    listed = client.get(f"{BASE}/notifications").json()
    assert listed["page_size"] == 7
    assert listed["items"][0]["consumer_name"] == "Maria Santos"

    assert client.post(f"{BASE}/notifications/{notification_id}/read").json()["is_read"] is True
    assert client.post(f"{BASE}/notifications/{notification_id}/archive").json()["is_archived"] is True
    archived = client.get(f"{BASE}/notifications/archived").json()
    assert [item["notification_id"] for item in archived] == [notification_id]
    assert client.post(f"{BASE}/notifications/{notification_id}/unarchive").json()["is_archived"] is False

    assert client.delete(f"{BASE}/notifications/{notification_id}").status_code == 204
    assert client.delete(f"{BASE}/notifications/{notification_id}").status_code == 404

    assert client.post(f"{BASE}/notifications", json={"title": "x", "message": "y", "consumer_id": 404}).status_code == 404
    assert client.post(f"{BASE}/notifications", json={"title": "x", "message": "y"}).status_code == 422


def test_broadcast_notification() -> None:
    client = _client()
    _seed()

    response = client.post(
        f"{BASE}/notifications",
        json={"title": "Maintenance", "message": "Water off Sunday", "send_to_all": True},
        headers={"X-Operator": "admin"},
    )

    assert response.status_code == 201
    assert response.json()["created_count"] == 3
    [audit] = client.get(f"{BASE}/audit").json()["items"]
    assert audit["action"] == "Broadcast"
    assert audit["performed_by"] == "admin"


def test_storage_failure_returns_503(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    _seed()

    def _fail(plan: PlannedTransition) -> None:
        raise PersistenceError("connection lost")

    monkeypatch.setattr(api_module.utility_store, "apply_transition", _fail)

    response = client.post(f"{BASE}/consumers/1/disconnect")

    assert response.status_code == 503
    assert response.json()["detail"] == "storage unavailable; no changes were saved"
    consumer = api_module.utility_store.find_consumer(1)
    assert consumer is not None
    assert consumer.status == "Active"
