from __future__ import annotations

from disconnection_web.audit import AuditTrailRecorder
from disconnection_web.notifications import NotificationEmitter
from disconnection_web.store import InMemoryUtilityStore


def _emitter(store: InMemoryUtilityStore) -> NotificationEmitter:
    return NotificationEmitter(store, AuditTrailRecorder(store))


def _store() -> InMemoryUtilityStore:
    store = InMemoryUtilityStore()
    store.upsert_consumer(first_name="Juan", last_name="Dela Cruz", consumer_id=1)
    store.upsert_consumer(first_name="Maria", last_name="Santos", consumer_id=2)
    store.upsert_consumer(first_name="Pedro", last_name="Reyes", consumer_id=3)
    return store


def test_emit_creates_an_unread_row_for_a_known_consumer() -> None:
    store = _store()

    result = _emitter(store).emit(2, "Water Interruption", "Service paused on Friday.")

    assert result.ok
    item = result.value
    assert item is not None
    assert item.consumer_id == 2
    assert item.consumer_name == "Maria Santos"
    assert item.is_read is False
    assert item.is_archived is False
    assert item.send_to_all is False
    assert item.created_at.tzinfo is not None


def test_emit_for_unknown_consumer_is_not_found() -> None:
    store = _store()

    result = _emitter(store).emit(99, "Title", "Body")

    assert result.error == "not_found"
    assert store.list_notifications(archived=False) == []


def test_broadcast_creates_one_row_per_consumer_and_an_audit_row() -> None:
    store = _store()

    result = _emitter(store).broadcast_all("Advisory", "Scheduled maintenance.", "admin")

    assert result.ok
    assert result.value is not None
    assert result.value.created_count == 3
    rows = store.list_notifications(archived=False)
    assert sorted(row.consumer_id for row in rows) == [1, 2, 3]
    assert all(row.send_to_all for row in rows)
    assert all(row.message == "Scheduled maintenance." for row in rows)
    [audit] = store.list_audit()
    assert audit.action == "Broadcast"
    assert audit.performed_by == "admin"


def test_broadcast_without_consumers_reports_no_recipients() -> None:
    result = _emitter(InMemoryUtilityStore()).broadcast_all("Advisory", "Body", "admin")

    assert result.error == "no_recipients"


def test_mark_read_archive_unarchive_and_delete() -> None:
    store = _store()
    emitter = _emitter(store)
    item = emitter.emit(1, "Reminder", "Pay soon").value
    assert item is not None

    read = emitter.mark_read(item.notification_id)
    assert read.value is not None and read.value.is_read is True
    again = emitter.mark_read(item.notification_id)
    assert again.value is not None and again.value.is_read is True

    archived = emitter.archive(item.notification_id)
    assert archived.value is not None and archived.value.is_archived is True
    assert emitter.list_active().total_count == 0
    assert [row.notification_id for row in emitter.list_archived()] == [item.notification_id]

    restored = emitter.unarchive(item.notification_id)
    assert restored.value is not None and restored.value.is_archived is False
    assert emitter.list_archived() == []

    assert emitter.delete(item.notification_id).ok
    assert emitter.delete(item.notification_id).error == "not_found"
    for operation in (emitter.mark_read, emitter.archive, emitter.unarchive):
        assert operation(item.notification_id).error == "not_found"


def test_list_active_searches_title_and_message_and_pages_by_seven() -> None:
    store = _store()
    emitter = _emitter(store)
    for index in range(9):
        emitter.emit(1, f"Bill reminder {index}", "Please settle your account")
    emitter.emit(2, "Water interruption", "Pipe repair on Main St.")

    first = emitter.list_active()
    assert first.page_size == 7
    assert first.total_count == 10
    assert first.total_pages == 2
    assert len(first.items) == 7
    assert first.items[0].title == "Water interruption"

    second = emitter.list_active(page=2)
    assert len(second.items) == 3
    assert second.items[-1].title == "Bill reminder 0"

    by_message = emitter.list_active(search_term="PIPE")
    assert [row.title for row in by_message.items] == ["Water interruption"]
    assert by_message.search == "PIPE"
    assert emitter.list_active(search_term="reminder 3").total_count == 1
