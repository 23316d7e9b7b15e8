from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Protocol

from .store import (
    AuditRecord,
    BillingRecord,
    ConsumerRecord,
    DisconnectionRecord,
    NotificationRecord,
    OverdueBillingRow,
    PlannedAudit,
    PlannedNotification,
    PlannedSmsBatch,
    PlannedTransition,
    SmsAttemptOutcome,
    SmsLogRecord,
    SmsOutboxRecord,
    TransitionReceipt,
)


class BillingLedger(Protocol):
    def unpaid_overdue_billings(self, as_of: date) -> list[OverdueBillingRow]: ...

    def list_unpaid_billings(self, consumer_ids: Iterable[int] | None = None) -> list[BillingRecord]: ...


class ConsumerDirectory(Protocol):
    def find_consumer(self, consumer_id: int) -> ConsumerRecord | None: ...

    def list_consumers(self, consumer_ids: Iterable[int]) -> list[ConsumerRecord]: ...

    def list_all_consumers(self) -> list[ConsumerRecord]: ...


class UtilityRepository(BillingLedger, ConsumerDirectory, Protocol):
    def reset(self) -> None: ...

    def upsert_consumer(
        self,
        *,
        first_name: str,
        last_name: str,
        contact_number: str | None = None,
        account_number: str | None = None,
        consumer_id: int | None = None,
    ) -> ConsumerRecord: ...

    def add_billing(
        self,
        *,
        consumer_id: int,
        due_date: date,
        total_amount: float | Decimal,
        amount_due: float | Decimal | None = None,
        is_paid: bool = False,
    ) -> BillingRecord: ...

    def set_billing_paid(self, billing_id: int, is_paid: bool) -> BillingRecord | None: ...

    def list_disconnections(self, consumer_id: int) -> list[DisconnectionRecord]: ...

    def apply_transition(self, plan: PlannedTransition) -> TransitionReceipt: ...

    def add_notifications(
        self,
        notifications: list[PlannedNotification],
        *,
        created_at: datetime,
        audit: PlannedAudit | None = None,
    ) -> list[NotificationRecord]: ...

    def get_notification(self, notification_id: int) -> NotificationRecord | None: ...

    def list_notifications(self, *, archived: bool) -> list[NotificationRecord]: ...

    def update_notification(
        self,
        notification_id: int,
        *,
        is_read: bool | None = None,
        is_archived: bool | None = None,
    ) -> NotificationRecord | None: ...

    def delete_notification(self, notification_id: int) -> bool: ...

    def append_audit(self, entry: PlannedAudit) -> AuditRecord: ...

    def list_audit(self, limit: int | None = None) -> list[AuditRecord]: ...

    def enqueue_sms_batch(self, batch: PlannedSmsBatch) -> tuple[str, list[SmsOutboxRecord]]: ...

    def claim_pending_sms(
        self,
        *,
        max_messages: int,
        now: datetime,
        lease_until: datetime,
    ) -> list[SmsOutboxRecord]: ...

    def release_sms_claims(self, outbox_ids: Iterable[int], *, available_at: datetime) -> None: ...

    def record_sms_attempt(self, outbox_id: int, outcome: SmsAttemptOutcome) -> None: ...

    def list_sms_logs(self, limit: int | None = None) -> list[SmsLogRecord]: ...

    def list_sms_outbox(self, status: str | None = None) -> list[SmsOutboxRecord]: ...
