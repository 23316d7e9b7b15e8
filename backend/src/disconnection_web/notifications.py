from __future__ import annotations

import logging
from datetime import datetime, timezone

from .audit import AuditTrailRecorder
from .listing import total_pages
from .models import NotificationCreateResponse, NotificationItem, NotificationListResponse
from .repositories import UtilityRepository
from .results import OperationResult
from .store import NotificationRecord, PlannedNotification

logger = logging.getLogger(__name__)

NOTIFICATION_NOT_FOUND = "Notification not found."


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_notification_item(record: NotificationRecord, consumer_name: str | None = None) -> NotificationItem:
    return NotificationItem(
        notification_id=record.notification_id,
        consumer_id=record.consumer_id,
        consumer_name=consumer_name,
        title=record.title,
        message=record.message,
        created_at=record.created_at,
        is_read=record.is_read,
        is_archived=record.is_archived,
        send_to_all=record.send_to_all,
    )


class NotificationEmitter:
    def __init__(
        self,
        repository: UtilityRepository,
        audit: AuditTrailRecorder,
        *,
        default_page_size: int = 7,
    ) -> None:
        self._repository = repository
        self._audit = audit
        self._default_page_size = default_page_size

    def emit(self, consumer_id: int, title: str, message: str) -> OperationResult[NotificationItem]:
        consumer = self._repository.find_consumer(consumer_id)
        if consumer is None:
            return OperationResult.failure("not_found", "Consumer not found.")
        created = self._repository.add_notifications(
            [PlannedNotification(consumer_id=consumer_id, title=title, message=message)],
            created_at=_now_utc(),
        )
        return OperationResult.success(to_notification_item(created[0], consumer.display_name))

    def broadcast_all(
        self,
        title: str,
        message: str,
        actor: str | None,
    ) -> OperationResult[NotificationCreateResponse]:
        consumers = self._repository.list_all_consumers()
        if not consumers:
            return OperationResult.failure("no_recipients", "No consumers found to notify.")
        now = _now_utc()
        created = self._repository.add_notifications(
            [
                PlannedNotification(
                    consumer_id=consumer.consumer_id,
                    title=title,
                    message=message,
                    send_to_all=True,
                )
                for consumer in consumers
            ],
            created_at=now,
            audit=self._audit.entry(
                "Broadcast",
                actor,
                f"Sent notification '{title}' to {len(consumers)} consumers.",
                now,
            ),
        )
        logger.info("broadcast notification to %d consumers", len(created))
        return OperationResult.success(
            NotificationCreateResponse(
                created_count=len(created),
                notification_ids=[record.notification_id for record in created],
            )
        )

    def mark_read(self, notification_id: int) -> OperationResult[NotificationItem]:
        record = self._repository.get_notification(notification_id)
        if record is None:
            return OperationResult.failure("not_found", NOTIFICATION_NOT_FOUND)
        if not record.is_read:
            record = self._repository.update_notification(notification_id, is_read=True) or record
        return OperationResult.success(self._item(record))

    def archive(self, notification_id: int) -> OperationResult[NotificationItem]:
        return self._set_archived(notification_id, True)

    def unarchive(self, notification_id: int) -> OperationResult[NotificationItem]:
        return self._set_archived(notification_id, False)

    def _set_archived(self, notification_id: int, archived: bool) -> OperationResult[NotificationItem]:
        record = self._repository.update_notification(notification_id, is_archived=archived)
        if record is None:
            return OperationResult.failure("not_found", NOTIFICATION_NOT_FOUND)
        return OperationResult.success(self._item(record))

    def delete(self, notification_id: int) -> OperationResult[int]:
        if not self._repository.delete_notification(notification_id):
            return OperationResult.failure("not_found", NOTIFICATION_NOT_FOUND)
        return OperationResult.success(notification_id)

    def list_active(
        self,
        search_term: str | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> NotificationListResponse:
        rows = self._repository.list_notifications(archived=False)
        normalized_search = search_term.strip() if search_term and search_term.strip() else None
        if normalized_search is not None:
            needle = normalized_search.lower()
            rows = [row for row in rows if needle in row.title.lower() or needle in row.message.lower()]

        effective_page = max(1, page)
        effective_size = page_size if page_size is not None and page_size > 0 else self._default_page_size
        start = (effective_page - 1) * effective_size
        return NotificationListResponse(
            items=self._items(rows[start : start + effective_size]),
            total_count=len(rows),
            page=effective_page,
            page_size=effective_size,
            total_pages=total_pages(len(rows), effective_size),
            search=normalized_search,
        )

    def list_archived(self) -> list[NotificationItem]:
        return self._items(self._repository.list_notifications(archived=True))

    def _item(self, record: NotificationRecord) -> NotificationItem:
        return self._items([record])[0]

    def _items(self, records: list[NotificationRecord]) -> list[NotificationItem]:
        names = {
            consumer.consumer_id: consumer.display_name
            for consumer in self._repository.list_consumers({record.consumer_id for record in records})
        }
        return [to_notification_item(record, names.get(record.consumer_id)) for record in records]
