from __future__ import annotations

from dataclasses import replace
from datetime import date

import pytest

from disconnection_web.audit import AuditTrailRecorder
from disconnection_web.disconnections import DisconnectionStateMachine
from disconnection_web.overdue import OverdueAggregator
from disconnection_web.store import (
    AuditRecord,
    ConsumerRecord,
    InMemoryUtilityStore,
    PersistenceError,
    PlannedAudit,
)

AS_OF = date(2026, 6, 1)


def _machine(store: InMemoryUtilityStore, *, strict: bool = True) -> DisconnectionStateMachine:
    return DisconnectionStateMachine(
        store,
        OverdueAggregator(store),
        AuditTrailRecorder(store),
        today=lambda: AS_OF,
        strict=strict,
    )


def _store(store: InMemoryUtilityStore | None = None, *, overdue_bills: int = 2) -> InMemoryUtilityStore:
    store = store or InMemoryUtilityStore()
    store.upsert_consumer(
        first_name="Juan",
        last_name="Dela Cruz",
        contact_number="09171234567",
        account_number="ACC-1",
        consumer_id=7,
    )
    for month in range(1, overdue_bills + 1):
        store.add_billing(consumer_id=7, due_date=date(2026, month, 15), total_amount=250)
    return store


def _open_rows(store: InMemoryUtilityStore) -> list[int]:
    return [row.disconnection_id for row in store.list_disconnections(7) if not row.is_reconnected]


def test_disconnect_writes_history_notice_and_audit() -> None:
    store = _store()

    result = _machine(store).disconnect(7, "maria")

    assert result.ok
    response = result.value
    assert response is not None
    assert response.status == "Disconnected"
    assert response.is_disconnected is True
    assert response.redundant is False

    consumer = store.find_consumer(7)
    assert consumer is not None
    assert consumer.status == "Disconnected"
    assert consumer.is_disconnected is True
    assert consumer.active_disconnection_id == response.disconnection_id

    [history] = store.list_disconnections(7)
    assert history.is_reconnected is False
    assert history.remarks == "2 or more overdue bills"
    assert history.performed_by == "maria"

    [notice] = store.list_notifications(archived=False)
    assert notice.title == "Disconnection Notice"
    assert notice.message.startswith("Hello Juan, you failed to pay any bill from your 2 overdue bills within 3 days.")
    assert "Santa Fe Municipal Hall" in notice.message

    [audit] = store.list_audit()
    assert audit.action == "Disconnect"
    assert audit.performed_by == "maria"
    assert audit.details == "Disconnected Consumer ID 7 due to 2 or more overdue bills."


def test_reconnect_closes_the_active_row() -> None:
    store = _store()
    machine = _machine(store)
    disconnected = machine.disconnect(7, "maria").value
    assert disconnected is not None

    result = machine.reconnect(7, "pedro")

    assert result.ok
    assert result.value is not None
    assert result.value.status == "Active"
    assert result.value.disconnection_id == disconnected.disconnection_id
    consumer = store.find_consumer(7)
    assert consumer is not None
    assert consumer.is_disconnected is False
    assert consumer.active_disconnection_id is None

    [history] = store.list_disconnections(7)
    assert history.is_reconnected is True
    assert history.date_reconnected is not None
    assert history.date_reconnected >= history.date_disconnected

    titles = [row.title for row in store.list_notifications(archived=False)]
    assert titles == ["Reconnection Notice", "Disconnection Notice"]
    reconnect_audit = store.list_audit()[0]
    assert reconnect_audit.action == "Reconnect"
    assert reconnect_audit.details == "Reconnected Consumer ID 7."


def test_disconnect_reconnect_cycles_keep_a_single_open_row() -> None:
    store = _store()
    machine = _machine(store)

    for _ in range(3):
        assert machine.disconnect(7, "ops").ok
        assert len(_open_rows(store)) == 1
        assert machine.reconnect(7, "ops").ok
        assert _open_rows(store) == []

    assert len(store.list_disconnections(7)) == 3


def test_strict_mode_rejects_redundant_transitions_without_writing() -> None:
    store = _store()
    machine = _machine(store)

    redundant_reconnect = machine.reconnect(7, "ops")
    assert redundant_reconnect.error == "invalid_state"

    assert machine.disconnect(7, "ops").ok
    redundant_disconnect = machine.disconnect(7, "ops")
    assert redundant_disconnect.error == "invalid_state"

    assert len(store.list_disconnections(7)) == 1
    assert len(store.list_notifications(archived=False)) == 1
    assert len(store.list_audit()) == 1


def test_permissive_redundant_disconnect_does_not_open_a_second_row() -> None:
    store = _store()
    machine = _machine(store, strict=False)
    first = machine.disconnect(7, "ops").value
    assert first is not None

    again = machine.disconnect(7, "ops")

    assert again.ok
    assert again.value is not None
    assert again.value.redundant is True
    assert again.value.disconnection_id == first.disconnection_id
    assert _open_rows(store) == [first.disconnection_id]
    assert len(store.list_notifications(archived=False)) == 2
    assert [row.action for row in store.list_audit()] == ["Disconnect", "Disconnect"]


def test_permissive_redundant_reconnect_touches_no_history() -> None:
    store = _store()

    result = _machine(store, strict=False).reconnect(7, "ops")

    assert result.ok
    assert result.value is not None
    assert result.value.redundant is True
    assert result.value.status == "Active"
    assert result.value.disconnection_id is None
    assert store.list_disconnections(7) == []
    assert [row.action for row in store.list_audit()] == ["Reconnect"]


def test_notify_requires_two_overdue_bills_at_call_time() -> None:
    store = _store(overdue_bills=1)
    machine = _machine(store)

    result = machine.notify(7, "ops")

    assert result.error == "ineligible"
    assert result.message == "Consumer does not meet disconnection criteria (must have 2 or more overdue bills)."
    assert store.list_notifications(archived=False) == []
    assert store.list_audit() == []

    store.add_billing(consumer_id=7, due_date=date(2026, 5, 1), total_amount=90)
    notified = machine.notify(7, "ops")

    assert notified.ok
    consumer = store.find_consumer(7)
    assert consumer is not None
    assert consumer.status == "Active"
    [notice] = store.list_notifications(archived=False)
    assert notice.title == "Disconnection Notice"
    assert notice.message == (
        "Hello Juan, you have 2 overdue bills that are not yet paid. "
        "Please pay at least one bill within 3 days to avoid disconnection."
    )
    [audit] = store.list_audit()
    assert audit.action == "Notify"
    assert audit.details == "Sent disconnection notice to Consumer ID 7."


def test_unknown_consumer_is_not_found_for_every_transition() -> None:
    machine = _machine(_store())

    for result in (machine.disconnect(404, "ops"), machine.reconnect(404, "ops"), machine.notify(404, "ops")):
        assert result.error == "not_found"
        assert result.message == "Consumer not found."


def test_missing_actor_is_recorded_as_unknown() -> None:
    store = _store()

    _machine(store).disconnect(7, "   ")

    assert store.list_audit()[0].performed_by == "Unknown"
    assert store.list_disconnections(7)[0].performed_by == "Unknown"


class _FailingAuditStore(InMemoryUtilityStore):
    def _insert_audit(self, planned: PlannedAudit) -> AuditRecord:
        raise RuntimeError("audit table unavailable")


def test_failed_audit_write_rolls_back_the_whole_transition() -> None:
    store = _store(_FailingAuditStore())

    with pytest.raises(PersistenceError):
        _machine(store).disconnect(7, "ops")

    consumer = store.find_consumer(7)
    assert consumer is not None
    assert consumer.status == "Active"
    assert consumer.active_disconnection_id is None
    assert store.list_disconnections(7) == []
    assert store.list_notifications(archived=False) == []


class _StaleReadStore(InMemoryUtilityStore):
    """Reports every consumer as Active, as a reader racing another writer would."""

    def find_consumer(self, consumer_id: int) -> ConsumerRecord | None:
        record = super().find_consumer(consumer_id)
        if record is None:
            return None
        return replace(record, status="Active", is_disconnected=False)


def test_status_change_between_read_and_commit_is_invalid_state() -> None:
    store = _store(_StaleReadStore())
    machine = _machine(store)
    assert machine.disconnect(7, "first").ok

    raced = machine.disconnect(7, "second")

    assert raced.error == "invalid_state"
    assert len(store.list_disconnections(7)) == 1
    assert len(store.list_audit()) == 1
