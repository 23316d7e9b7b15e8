from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from threading import Lock
from typing import Iterable

from .models import STATUS_ACTIVE, STATUS_DISCONNECTED

CENTS = Decimal("0.01")
# A processing row whose lease (available_at) has passed is claimable again.
CLAIMABLE_SMS_STATUSES = ("pending", "processing")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_money(value: float | int | str | Decimal) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


class ConsumerNotFoundError(KeyError):
    """Raised when a write references a consumer id that does not exist."""


class TransitionConflictError(RuntimeError):
    """Raised when a consumer's status changed between planning and commit."""


class PersistenceError(RuntimeError):
    """Raised when a multi-row write could not be applied; nothing was kept."""


@dataclass(frozen=True)
class ConsumerRecord:
    consumer_id: int
    first_name: str
    last_name: str
    contact_number: str | None
    account_number: str | None
    status: str
    is_disconnected: bool
    active_disconnection_id: int | None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class BillingRecord:
    billing_id: int
    consumer_id: int
    due_date: date
    total_amount: Decimal
    amount_due: Decimal
    is_paid: bool


@dataclass(frozen=True)
class OverdueBillingRow:
    billing_id: int
    consumer_id: int
    total_amount: Decimal
    due_date: date


@dataclass(frozen=True)
class DisconnectionRecord:
    disconnection_id: int
    consumer_id: int
    date_disconnected: datetime
    date_reconnected: datetime | None
    is_reconnected: bool
    remarks: str
    performed_by: str


@dataclass(frozen=True)
class NotificationRecord:
    notification_id: int
    consumer_id: int
    title: str
    message: str
    created_at: datetime
    is_read: bool
    is_archived: bool
    send_to_all: bool


@dataclass(frozen=True)
class AuditRecord:
    audit_id: int
    action: str
    performed_by: str
    details: str
    timestamp: datetime


@dataclass(frozen=True)
class SmsLogRecord:
    log_id: int
    outbox_id: int | None
    consumer_id: int | None
    contact_number: str
    message: str
    sent_at: datetime
    status: str
    is_success: bool
    response_message: str | None
    attempt_number: int


@dataclass(frozen=True)
class SmsOutboxRecord:
    outbox_id: int
    batch_id: str
    consumer_id: int | None
    contact_number: str
    message: str
    status: str
    tries: int
    available_at: datetime
    provider_message_id: str | None
    error_code: str | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class PlannedNotification:
    consumer_id: int
    title: str
    message: str
    send_to_all: bool = False


@dataclass(frozen=True)
class PlannedAudit:
    action: str
    performed_by: str
    details: str
    timestamp: datetime


@dataclass(frozen=True)
class PlannedDisconnection:
    remarks: str
    performed_by: str


@dataclass(frozen=True)
class PlannedTransition:
    consumer_id: int
    occurred_at: datetime
    notification: PlannedNotification
    audit: PlannedAudit
    new_status: str | None = None
    expected_status: str | None = None
    open_disconnection: PlannedDisconnection | None = None
    close_active_disconnection: bool = False


@dataclass(frozen=True)
class TransitionReceipt:
    consumer: ConsumerRecord
    notification_id: int
    audit_id: int
    opened_disconnection_id: int | None
    closed_disconnection_id: int | None


@dataclass(frozen=True)
class PlannedSmsMessage:
    consumer_id: int | None
    contact_number: str
    message: str
    notification_title: str


@dataclass(frozen=True)
class PlannedSmsBatch:
    queued_at: datetime
    messages: tuple[PlannedSmsMessage, ...]
    audit: PlannedAudit


@dataclass(frozen=True)
class SmsAttemptOutcome:
    outbox_status: str
    attempted_at: datetime
    is_success: bool
    response_message: str | None
    provider_message_id: str | None = None
    error_code: str | None = None
    retry_at: datetime | None = None


def unpaid_sort_key(billing: BillingRecord) -> tuple[date, int]:
    return (billing.due_date, billing.billing_id)


class InMemoryUtilityStore:
    """Lock-guarded in-memory store; multi-row writes restore a snapshot on failure."""

    _STATE_ATTRS = (
        "_consumer_counter",
        "_billing_counter",
        "_disconnection_counter",
        "_notification_counter",
        "_audit_counter",
        "_sms_log_counter",
        "_outbox_counter",
        "_batch_counter",
        "_consumers",
        "_billings",
        "_disconnections",
        "_notifications",
        "_audit",
        "_sms_logs",
        "_sms_log_ids_by_outbox",
        "_outbox",
    )

    def __init__(self) -> None:
        self._lock = Lock()
        self._init_state()

    def _init_state(self) -> None:
        self._consumer_counter = 1
        self._billing_counter = 1
        self._disconnection_counter = 1
        self._notification_counter = 1
        self._audit_counter = 1
        self._sms_log_counter = 1
        self._outbox_counter = 1
        self._batch_counter = 1
        self._consumers: dict[int, ConsumerRecord] = {}
        self._billings: dict[int, BillingRecord] = {}
        self._disconnections: dict[int, DisconnectionRecord] = {}
        self._notifications: dict[int, NotificationRecord] = {}
        self._audit: dict[int, AuditRecord] = {}
        self._sms_logs: dict[int, SmsLogRecord] = {}
        self._sms_log_ids_by_outbox: dict[int, list[int]] = {}
        self._outbox: dict[int, SmsOutboxRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._init_state()

    def _snapshot(self) -> dict[str, object]:
        state: dict[str, object] = {}
        for name in self._STATE_ATTRS:
            value = getattr(self, name)
            if isinstance(value, dict):
                value = {
                    key: list(item) if isinstance(item, list) else item
                    for key, item in value.items()
                }
            state[name] = value
        return state

    def _restore(self, snapshot: dict[str, object]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    # -- seeding (consumer directory and ledger are owned elsewhere) ---------

    def upsert_consumer(
        self,
        *,
        first_name: str,
        last_name: str,
        contact_number: str | None = None,
        account_number: str | None = None,
        consumer_id: int | None = None,
    ) -> ConsumerRecord:
        with self._lock:
            if consumer_id is None:
                consumer_id = self._consumer_counter
            self._consumer_counter = max(self._consumer_counter, consumer_id + 1)
            existing = self._consumers.get(consumer_id)
            if existing is None:
                record = ConsumerRecord(
                    consumer_id=consumer_id,
                    first_name=first_name,
                    last_name=last_name,
                    contact_number=contact_number,
                    account_number=account_number,
                    status=STATUS_ACTIVE,
                    is_disconnected=False,
                    active_disconnection_id=None,
                )
            else:
                record = replace(
                    existing,
                    first_name=first_name,
                    last_name=last_name,
                    contact_number=contact_number,
                    account_number=account_number,
                )
            self._consumers[consumer_id] = record
            return record

    def add_billing(
        self,
        *,
        consumer_id: int,
        due_date: date,
        total_amount: float | Decimal,
        amount_due: float | Decimal | None = None,
        is_paid: bool = False,
    ) -> BillingRecord:
        with self._lock:
            if consumer_id not in self._consumers:
                raise ConsumerNotFoundError(consumer_id)
            billing_id = self._billing_counter
            self._billing_counter += 1
            record = BillingRecord(
                billing_id=billing_id,
                consumer_id=consumer_id,
                due_date=due_date,
                total_amount=as_money(total_amount),
                amount_due=as_money(total_amount if amount_due is None else amount_due),
                is_paid=is_paid,
            )
            self._billings[billing_id] = record
            return record

    def set_billing_paid(self, billing_id: int, is_paid: bool) -> BillingRecord | None:
        with self._lock:
            record = self._billings.get(billing_id)
            if record is None:
                return None
            record = replace(record, is_paid=is_paid)
            self._billings[billing_id] = record
            return record

    # -- billing ledger -----------------------------------------------------

    def unpaid_overdue_billings(self, as_of: date) -> list[OverdueBillingRow]:
        with self._lock:
            return [
                OverdueBillingRow(
                    billing_id=row.billing_id,
                    consumer_id=row.consumer_id,
                    total_amount=row.total_amount,
                    due_date=row.due_date,
                )
                for row in sorted(self._billings.values(), key=lambda value: value.billing_id)
                if not row.is_paid and row.due_date < as_of
            ]

    def list_unpaid_billings(self, consumer_ids: Iterable[int] | None = None) -> list[BillingRecord]:
        wanted = set(consumer_ids) if consumer_ids is not None else None
        with self._lock:
            rows = [
                row
                for row in self._billings.values()
                if not row.is_paid and (wanted is None or row.consumer_id in wanted)
            ]
        return sorted(rows, key=unpaid_sort_key)

    # -- consumer directory -------------------------------------------------

    def find_consumer(self, consumer_id: int) -> ConsumerRecord | None:
        with self._lock:
            return self._consumers.get(consumer_id)

    def list_consumers(self, consumer_ids: Iterable[int]) -> list[ConsumerRecord]:
        wanted = set(consumer_ids)
        with self._lock:
            return [self._consumers[value] for value in sorted(wanted) if value in self._consumers]

    def list_all_consumers(self) -> list[ConsumerRecord]:
        with self._lock:
            return [self._consumers[value] for value in sorted(self._consumers)]

    # -- interruption history -----------------------------------------------

    def list_disconnections(self, consumer_id: int) -> list[DisconnectionRecord]:
        with self._lock:
            rows = [row for row in self._disconnections.values() if row.consumer_id == consumer_id]
        return sorted(rows, key=lambda row: (row.date_disconnected, row.disconnection_id), reverse=True)

    def apply_transition(self, plan: PlannedTransition) -> TransitionReceipt:
        with self._lock:
            snapshot = self._snapshot()
            try:
                return self._apply_transition_locked(plan)
            except (ConsumerNotFoundError, TransitionConflictError):
                self._restore(snapshot)
                raise
            except Exception as exc:
                self._restore(snapshot)
                raise PersistenceError(
                    f"transition for consumer {plan.consumer_id} was rolled back: {exc}"
                ) from exc

    def _apply_transition_locked(self, plan: PlannedTransition) -> TransitionReceipt:
        consumer = self._consumers.get(plan.consumer_id)
        if consumer is None:
            raise ConsumerNotFoundError(plan.consumer_id)
        if plan.expected_status is not None and consumer.status != plan.expected_status:
            raise TransitionConflictError(
                f"consumer {plan.consumer_id} is {consumer.status}, expected {plan.expected_status}"
            )

        active_id = consumer.active_disconnection_id
        closed_id: int | None = None
        opened_id: int | None = None
        if plan.close_active_disconnection and active_id is not None:
            self._close_disconnection(active_id, reconnected_at=plan.occurred_at)
            closed_id = active_id
            active_id = None
        if plan.open_disconnection is not None and active_id is None:
            opened = self._insert_disconnection(
                consumer_id=consumer.consumer_id,
                planned=plan.open_disconnection,
                occurred_at=plan.occurred_at,
            )
            opened_id = active_id = opened.disconnection_id

        status = plan.new_status or consumer.status
        updated = replace(
            consumer,
            status=status,
            is_disconnected=status == STATUS_DISCONNECTED,
            active_disconnection_id=active_id,
        )
        self._write_consumer(updated)
        notification = self._insert_notification(plan.notification, created_at=plan.occurred_at)
        audit = self._insert_audit(plan.audit)
        return TransitionReceipt(
            consumer=updated,
            notification_id=notification.notification_id,
            audit_id=audit.audit_id,
            opened_disconnection_id=opened_id,
            closed_disconnection_id=closed_id,
        )

    def _write_consumer(self, record: ConsumerRecord) -> None:
        self._consumers[record.consumer_id] = record

    def _insert_disconnection(
        self,
        *,
        consumer_id: int,
        planned: PlannedDisconnection,
        occurred_at: datetime,
    ) -> DisconnectionRecord:
        disconnection_id = self._disconnection_counter
        self._disconnection_counter += 1
        record = DisconnectionRecord(
            disconnection_id=disconnection_id,
            consumer_id=consumer_id,
            date_disconnected=occurred_at,
            date_reconnected=None,
            is_reconnected=False,
            remarks=planned.remarks,
            performed_by=planned.performed_by,
        )
        self._disconnections[disconnection_id] = record
        return record

    def _close_disconnection(self, disconnection_id: int, *, reconnected_at: datetime) -> None:
        record = self._disconnections.get(disconnection_id)
        if record is None or record.is_reconnected:
            return
        self._disconnections[disconnection_id] = replace(
            record,
            is_reconnected=True,
            date_reconnected=reconnected_at,
        )

    def _insert_notification(self, planned: PlannedNotification, *, created_at: datetime) -> NotificationRecord:
        notification_id = self._notification_counter
        self._notification_counter += 1
        record = NotificationRecord(
            notification_id=notification_id,
            consumer_id=planned.consumer_id,
            title=planned.title,
            message=planned.message,
            created_at=created_at,
            is_read=False,
            is_archived=False,
            send_to_all=planned.send_to_all,
        )
        self._notifications[notification_id] = record
        return record

    def _insert_audit(self, planned: PlannedAudit) -> AuditRecord:
        audit_id = self._audit_counter
        self._audit_counter += 1
        record = AuditRecord(
            audit_id=audit_id,
            action=planned.action,
            performed_by=planned.performed_by,
            details=planned.details,
            timestamp=planned.timestamp,
        )
        self._audit[audit_id] = record
        return record

    # -- notifications ------------------------------------------------------

    def add_notifications(
        self,
        notifications: list[PlannedNotification],
        *,
        created_at: datetime,
        audit: PlannedAudit | None = None,
    ) -> list[NotificationRecord]:
        with self._lock:
            snapshot = self._snapshot()
            try:
                created = [self._insert_notification(item, created_at=created_at) for item in notifications]
                if audit is not None:
                    self._insert_audit(audit)
                return created
            except Exception as exc:
                self._restore(snapshot)
                raise PersistenceError(f"notification write was rolled back: {exc}") from exc

    def get_notification(self, notification_id: int) -> NotificationRecord | None:
        with self._lock:
            return self._notifications.get(notification_id)

    def list_notifications(self, *, archived: bool) -> list[NotificationRecord]:
        with self._lock:
            rows = [row for row in self._notifications.values() if row.is_archived == archived]
        return sorted(rows, key=lambda row: (row.created_at, row.notification_id), reverse=True)

    def update_notification(
        self,
        notification_id: int,
        *,
        is_read: bool | None = None,
        is_archived: bool | None = None,
    ) -> NotificationRecord | None:
        with self._lock:
            record = self._notifications.get(notification_id)
            if record is None:
                return None
            if is_read is not None:
                record = replace(record, is_read=is_read)
            if is_archived is not None:
                record = replace(record, is_archived=is_archived)
            self._notifications[notification_id] = record
            return record

    def delete_notification(self, notification_id: int) -> bool:
        with self._lock:
            return self._notifications.pop(notification_id, None) is not None

    # -- audit trail --------------------------------------------------------

    def append_audit(self, entry: PlannedAudit) -> AuditRecord:
        with self._lock:
            try:
                return self._insert_audit(entry)
            except Exception as exc:
                raise PersistenceError(f"audit write failed: {exc}") from exc

    def list_audit(self, limit: int | None = None) -> list[AuditRecord]:
        with self._lock:
            rows = sorted(
                self._audit.values(),
                key=lambda row: (row.timestamp, row.audit_id),
                reverse=True,
            )
        return rows[:limit] if limit is not None else rows

    # -- sms outbox and delivery log ----------------------------------------

    def enqueue_sms_batch(self, batch: PlannedSmsBatch) -> tuple[str, list[SmsOutboxRecord]]:
        with self._lock:
            snapshot = self._snapshot()
            try:
                return self._enqueue_sms_batch_locked(batch)
            except Exception as exc:
                self._restore(snapshot)
                raise PersistenceError(f"sms batch was rolled back: {exc}") from exc

    def _enqueue_sms_batch_locked(self, batch: PlannedSmsBatch) -> tuple[str, list[SmsOutboxRecord]]:
        batch_id = f"smsb_{self._batch_counter:06d}"
        self._batch_counter += 1
        queued: list[SmsOutboxRecord] = []
        for message in batch.messages:
            outbox_id = self._outbox_counter
            self._outbox_counter += 1
            outbox = SmsOutboxRecord(
                outbox_id=outbox_id,
                batch_id=batch_id,
                consumer_id=message.consumer_id,
                contact_number=message.contact_number,
                message=message.message,
                status="pending",
                tries=0,
                available_at=batch.queued_at,
                provider_message_id=None,
                error_code=None,
                error_message=None,
                created_at=batch.queued_at,
                updated_at=batch.queued_at,
            )
            self._outbox[outbox_id] = outbox
            self._insert_sms_log(
                outbox_id=outbox_id,
                consumer_id=message.consumer_id,
                contact_number=message.contact_number,
                message=message.message,
                sent_at=batch.queued_at,
                status="queued",
                is_success=False,
                response_message=None,
                attempt_number=1,
            )
            if message.consumer_id is not None:
                self._insert_notification(
                    PlannedNotification(
                        consumer_id=message.consumer_id,
                        title=message.notification_title,
                        message=message.message,
                    ),
                    created_at=batch.queued_at,
                )
            queued.append(outbox)
        self._insert_audit(batch.audit)
        return batch_id, queued

    def _insert_sms_log(
        self,
        *,
        outbox_id: int | None,
        consumer_id: int | None,
        contact_number: str,
        message: str,
        sent_at: datetime,
        status: str,
        is_success: bool,
        response_message: str | None,
        attempt_number: int,
    ) -> SmsLogRecord:
        log_id = self._sms_log_counter
        self._sms_log_counter += 1
        record = SmsLogRecord(
            log_id=log_id,
            outbox_id=outbox_id,
            consumer_id=consumer_id,
            contact_number=contact_number,
            message=message,
            sent_at=sent_at,
            status=status,
            is_success=is_success,
            response_message=response_message,
            attempt_number=attempt_number,
        )
        self._sms_logs[log_id] = record
        if outbox_id is not None:
            self._sms_log_ids_by_outbox.setdefault(outbox_id, []).append(log_id)
        return record

    def claim_pending_sms(
        self,
        *,
        max_messages: int,
        now: datetime,
        lease_until: datetime,
    ) -> list[SmsOutboxRecord]:
        claimed: list[SmsOutboxRecord] = []
        with self._lock:
            for outbox_id in sorted(self._outbox):
                row = self._outbox[outbox_id]
                if row.status not in CLAIMABLE_SMS_STATUSES or row.available_at > now:
                    continue
                if len(claimed) >= max_messages:
                    break
                updated = replace(row, status="processing", available_at=lease_until, updated_at=_now_utc())
                self._outbox[outbox_id] = updated
                claimed.append(updated)
        return claimed

    def release_sms_claims(self, outbox_ids: Iterable[int], *, available_at: datetime) -> None:
        with self._lock:
            for outbox_id in outbox_ids:
                row = self._outbox.get(outbox_id)
                if row is None or row.status != "processing":
                    continue
                self._outbox[outbox_id] = replace(
                    row,
                    status="pending",
                    available_at=available_at,
                    updated_at=_now_utc(),
                )

    def record_sms_attempt(self, outbox_id: int, outcome: SmsAttemptOutcome) -> None:
        with self._lock:
            row = self._outbox.get(outbox_id)
            if row is None:
                return
            tries = row.tries + 1
            self._outbox[outbox_id] = replace(
                row,
                status=outcome.outbox_status,
                tries=tries,
                available_at=outcome.retry_at or row.available_at,
                provider_message_id=outcome.provider_message_id,
                error_code=outcome.error_code,
                error_message=None if outcome.is_success else outcome.response_message,
                updated_at=_now_utc(),
            )
            log_status = "sent" if outcome.is_success else "failed"
            queued_log = next(
                (
                    self._sms_logs[log_id]
                    for log_id in self._sms_log_ids_by_outbox.get(outbox_id, [])
                    if self._sms_logs[log_id].status == "queued"
                ),
                None,
            )
            if queued_log is not None:
                self._sms_logs[queued_log.log_id] = replace(
                    queued_log,
                    sent_at=outcome.attempted_at,
                    status=log_status,
                    is_success=outcome.is_success,
                    response_message=outcome.response_message,
                )
                return
            self._insert_sms_log(
                outbox_id=outbox_id,
                consumer_id=row.consumer_id,
                contact_number=row.contact_number,
                message=row.message,
                sent_at=outcome.attempted_at,
                status=log_status,
                is_success=outcome.is_success,
                response_message=outcome.response_message,
                attempt_number=tries,
            )

    def list_sms_logs(self, limit: int | None = None) -> list[SmsLogRecord]:
        with self._lock:
            rows = sorted(
                self._sms_logs.values(),
                key=lambda row: (row.sent_at, row.log_id),
                reverse=True,
            )
        return rows[:limit] if limit is not None else rows

    def list_sms_outbox(self, status: str | None = None) -> list[SmsOutboxRecord]:
        with self._lock:
            return [
                self._outbox[outbox_id]
                for outbox_id in sorted(self._outbox)
                if status is None or self._outbox[outbox_id].status == status
            ]
