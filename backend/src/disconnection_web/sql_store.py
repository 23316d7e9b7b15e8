from __future__ import annotations

import secrets
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterable

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
    delete,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .models import STATUS_ACTIVE, STATUS_DISCONNECTED
from .repositories import UtilityRepository
from .store import (
    CLAIMABLE_SMS_STATUSES,
    AuditRecord,
    BillingRecord,
    ConsumerNotFoundError,
    ConsumerRecord,
    DisconnectionRecord,
    InMemoryUtilityStore,
    NotificationRecord,
    OverdueBillingRow,
    PersistenceError,
    PlannedAudit,
    PlannedNotification,
    PlannedSmsBatch,
    PlannedTransition,
    SmsAttemptOutcome,
    SmsLogRecord,
    SmsOutboxRecord,
    TransitionConflictError,
    TransitionReceipt,
    as_money,
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


_BIG_ID = BigInteger().with_variant(Integer(), "sqlite")


class UtilityBase(DeclarativeBase):
    pass


class _ConsumerRow(UtilityBase):
    __tablename__ = "consumers"

    consumer_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str] = mapped_column(String(128), nullable=False)
    contact_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    account_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_ACTIVE)
    is_disconnected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    active_disconnection_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class _BillingRow(UtilityBase):
    __tablename__ = "billings"

    billing_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    consumer_id: Mapped[int] = mapped_column(Integer, ForeignKey("consumers.consumer_id"), nullable=False, index=True)
    due_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    amount_due: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)


class _DisconnectionRow(UtilityBase):
    __tablename__ = "disconnections"

    disconnection_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    consumer_id: Mapped[int] = mapped_column(Integer, ForeignKey("consumers.consumer_id"), nullable=False, index=True)
    date_disconnected: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    date_reconnected: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_reconnected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    remarks: Mapped[str] = mapped_column(String(256), nullable=False)
    performed_by: Mapped[str] = mapped_column(String(128), nullable=False)


class _NotificationRow(UtilityBase):
    __tablename__ = "notifications"

    notification_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    consumer_id: Mapped[int] = mapped_column(Integer, ForeignKey("consumers.consumer_id"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    send_to_all: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class _AuditTrailRow(UtilityBase):
    __tablename__ = "audit_trails"

    audit_id: Mapped[int] = mapped_column(_BIG_ID, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    performed_by: Mapped[str] = mapped_column(String(128), nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class _SmsOutboxRow(UtilityBase):
    __tablename__ = "sms_outbox"

    outbox_id: Mapped[int] = mapped_column(_BIG_ID, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    consumer_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    contact_number: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", index=True)
    tries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _SmsLogRow(UtilityBase):
    __tablename__ = "sms_logs"

    log_id: Mapped[int] = mapped_column(_BIG_ID, primary_key=True, autoincrement=True)
    outbox_id: Mapped[int | None] = mapped_column(_BIG_ID, ForeignKey("sms_outbox.outbox_id"), nullable=True, index=True)
    consumer_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    contact_number: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    is_success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    response_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


def _to_consumer(row: _ConsumerRow) -> ConsumerRecord:
    return ConsumerRecord(
        consumer_id=row.consumer_id,
        first_name=row.first_name,
        last_name=row.last_name,
        contact_number=row.contact_number,
        account_number=row.account_number,
        status=row.status,
        is_disconnected=row.is_disconnected,
        active_disconnection_id=row.active_disconnection_id,
    )


def _to_billing(row: _BillingRow) -> BillingRecord:
    return BillingRecord(
        billing_id=row.billing_id,
        consumer_id=row.consumer_id,
        due_date=row.due_date,
        total_amount=as_money(row.total_amount),
        amount_due=as_money(row.amount_due),
        is_paid=row.is_paid,
    )


def _to_disconnection(row: _DisconnectionRow) -> DisconnectionRecord:
    return DisconnectionRecord(
        disconnection_id=row.disconnection_id,
        consumer_id=row.consumer_id,
        date_disconnected=_coerce_utc(row.date_disconnected),
        date_reconnected=_coerce_optional_utc(row.date_reconnected),
        is_reconnected=row.is_reconnected,
        remarks=row.remarks,
        performed_by=row.performed_by,
    )


def _to_notification(row: _NotificationRow) -> NotificationRecord:
    return NotificationRecord(
        notification_id=row.notification_id,
        consumer_id=row.consumer_id,
        title=row.title,
        message=row.message,
        created_at=_coerce_utc(row.created_at),
        is_read=row.is_read,
        is_archived=row.is_archived,
        send_to_all=row.send_to_all,
    )


def _to_audit(row: _AuditTrailRow) -> AuditRecord:
    return AuditRecord(
        audit_id=row.audit_id,
        action=row.action,
        performed_by=row.performed_by,
        details=row.details,
        timestamp=_coerce_utc(row.timestamp),
    )


def _to_sms_log(row: _SmsLogRow) -> SmsLogRecord:
    return SmsLogRecord(
        log_id=row.log_id,
        outbox_id=row.outbox_id,
        consumer_id=row.consumer_id,
        contact_number=row.contact_number,
        message=row.message,
        sent_at=_coerce_utc(row.sent_at),
        status=row.status,
        is_success=row.is_success,
        response_message=row.response_message,
        attempt_number=row.attempt_number,
    )


def _to_outbox(row: _SmsOutboxRow) -> SmsOutboxRecord:
    return SmsOutboxRecord(
        outbox_id=row.outbox_id,
        batch_id=row.batch_id,
        consumer_id=row.consumer_id,
        contact_number=row.contact_number,
        message=row.message,
        status=row.status,
        tries=row.tries,
        available_at=_coerce_utc(row.available_at),
        provider_message_id=row.provider_message_id,
        error_code=row.error_code,
        error_message=row.error_message,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


class SqlAlchemyUtilityStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for UTILITY_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        # SQLite is used in tests. Production Postgres should rely on migrations.
        if database_url.startswith("sqlite"):
            UtilityBase.metadata.create_all(self._engine)

    def _session(self) -> Session:
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_SmsLogRow))
                session.execute(delete(_SmsOutboxRow))
                session.execute(delete(_AuditTrailRow))
                session.execute(delete(_NotificationRow))
                session.execute(delete(_DisconnectionRow))
                session.execute(delete(_BillingRow))
                session.execute(delete(_ConsumerRow))

    # -- seeding ------------------------------------------------------------

    def upsert_consumer(
        self,
        *,
        first_name: str,
        last_name: str,
        contact_number: str | None = None,
        account_number: str | None = None,
        consumer_id: int | None = None,
    ) -> ConsumerRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_ConsumerRow, consumer_id) if consumer_id is not None else None
                if row is None:
                    row = _ConsumerRow(
                        first_name=first_name,
                        last_name=last_name,
                        contact_number=contact_number,
                        account_number=account_number,
                        status=STATUS_ACTIVE,
                        is_disconnected=False,
                        active_disconnection_id=None,
                    )
                    if consumer_id is not None:
                        row.consumer_id = consumer_id
                    session.add(row)
                else:
                    row.first_name = first_name
                    row.last_name = last_name
                    row.contact_number = contact_number
                    row.account_number = account_number
                session.flush()
                return _to_consumer(row)

    def add_billing(
        self,
        *,
        consumer_id: int,
        due_date: date,
        total_amount: float | Decimal,
        amount_due: float | Decimal | None = None,
        is_paid: bool = False,
    ) -> BillingRecord:
        with self._session() as session:
            with session.begin():
                if session.get(_ConsumerRow, consumer_id) is None:
                    raise ConsumerNotFoundError(consumer_id)
                row = _BillingRow(
                    consumer_id=consumer_id,
                    due_date=due_date,
                    total_amount=as_money(total_amount),
                    amount_due=as_money(total_amount if amount_due is None else amount_due),
                    is_paid=is_paid,
                )
                session.add(row)
                session.flush()
                return _to_billing(row)

    def set_billing_paid(self, billing_id: int, is_paid: bool) -> BillingRecord | None:
        with self._session() as session:
            with session.begin():
                row = session.get(_BillingRow, billing_id)
                if row is None:
                    return None
                row.is_paid = is_paid
                return _to_billing(row)

    # -- billing ledger -----------------------------------------------------

    def unpaid_overdue_billings(self, as_of: date) -> list[OverdueBillingRow]:
        with self._session() as session:
            rows = session.execute(
                select(_BillingRow)
                .where(_BillingRow.is_paid.is_(False), _BillingRow.due_date < as_of)
                .order_by(_BillingRow.billing_id.asc())
            ).scalars()
            return [
                OverdueBillingRow(
                    billing_id=row.billing_id,
                    consumer_id=row.consumer_id,
                    total_amount=as_money(row.total_amount),
                    due_date=row.due_date,
                )
                for row in rows
            ]

    def list_unpaid_billings(self, consumer_ids: Iterable[int] | None = None) -> list[BillingRecord]:
        query = select(_BillingRow).where(_BillingRow.is_paid.is_(False))
        if consumer_ids is not None:
            query = query.where(_BillingRow.consumer_id.in_(list(consumer_ids)))
        query = query.order_by(_BillingRow.due_date.asc(), _BillingRow.billing_id.asc())
        with self._session() as session:
            return [_to_billing(row) for row in session.execute(query).scalars()]

    # -- consumer directory -------------------------------------------------

    def find_consumer(self, consumer_id: int) -> ConsumerRecord | None:
        with self._session() as session:
            row = session.get(_ConsumerRow, consumer_id)
            return _to_consumer(row) if row is not None else None

    def list_consumers(self, consumer_ids: Iterable[int]) -> list[ConsumerRecord]:
        wanted = list(consumer_ids)
        if not wanted:
            return []
        with self._session() as session:
            rows = session.execute(
                select(_ConsumerRow)
                .where(_ConsumerRow.consumer_id.in_(wanted))
                .order_by(_ConsumerRow.consumer_id.asc())
            ).scalars()
            return [_to_consumer(row) for row in rows]

    def list_all_consumers(self) -> list[ConsumerRecord]:
        with self._session() as session:
            rows = session.execute(select(_ConsumerRow).order_by(_ConsumerRow.consumer_id.asc())).scalars()
            return [_to_consumer(row) for row in rows]

    # -- interruption history -----------------------------------------------

    def list_disconnections(self, consumer_id: int) -> list[DisconnectionRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_DisconnectionRow)
                .where(_DisconnectionRow.consumer_id == consumer_id)
                .order_by(
                    _DisconnectionRow.date_disconnected.desc(),
                    _DisconnectionRow.disconnection_id.desc(),
                )
            ).scalars()
            return [_to_disconnection(row) for row in rows]

    def apply_transition(self, plan: PlannedTransition) -> TransitionReceipt:
        try:
            with self._session() as session:
                with session.begin():
                    return self._apply_transition(session, plan)
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"transition for consumer {plan.consumer_id} was rolled back: {exc}"
            ) from exc

    def _apply_transition(self, session: Session, plan: PlannedTransition) -> TransitionReceipt:
        consumer = session.execute(
            select(_ConsumerRow).where(_ConsumerRow.consumer_id == plan.consumer_id).with_for_update()
        ).scalar_one_or_none()
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
            active = session.get(_DisconnectionRow, active_id)
            if active is not None and not active.is_reconnected:
                active.is_reconnected = True
                active.date_reconnected = plan.occurred_at
                closed_id = active_id
            active_id = None
        if plan.open_disconnection is not None and active_id is None:
            opened = _DisconnectionRow(
                consumer_id=consumer.consumer_id,
                date_disconnected=plan.occurred_at,
                date_reconnected=None,
                is_reconnected=False,
                remarks=plan.open_disconnection.remarks,
                performed_by=plan.open_disconnection.performed_by,
            )
            session.add(opened)
            session.flush()
            opened_id = active_id = opened.disconnection_id

        status = plan.new_status or consumer.status
        consumer.status = status
        consumer.is_disconnected = status == STATUS_DISCONNECTED
        consumer.active_disconnection_id = active_id

        notification = self._add_notification(session, plan.notification, created_at=plan.occurred_at)
        audit = self._add_audit(session, plan.audit)
        session.flush()
        return TransitionReceipt(
            consumer=_to_consumer(consumer),
            notification_id=notification.notification_id,
            audit_id=audit.audit_id,
            opened_disconnection_id=opened_id,
            closed_disconnection_id=closed_id,
        )

    def _add_notification(
        self,
        session: Session,
        planned: PlannedNotification,
        *,
        created_at: datetime,
    ) -> _NotificationRow:
        row = _NotificationRow(
            consumer_id=planned.consumer_id,
            title=planned.title,
            message=planned.message,
            created_at=created_at,
            is_read=False,
            is_archived=False,
            send_to_all=planned.send_to_all,
        )
        session.add(row)
        return row

    def _add_audit(self, session: Session, planned: PlannedAudit) -> _AuditTrailRow:
        row = _AuditTrailRow(
            action=planned.action,
            performed_by=planned.performed_by,
            details=planned.details,
            timestamp=planned.timestamp,
        )
        session.add(row)
        return row

    # -- notifications ------------------------------------------------------

    def add_notifications(
        self,
        notifications: list[PlannedNotification],
        *,
        created_at: datetime,
        audit: PlannedAudit | None = None,
    ) -> list[NotificationRecord]:
        try:
            with self._session() as session:
                with session.begin():
                    rows = [self._add_notification(session, item, created_at=created_at) for item in notifications]
                    if audit is not None:
                        self._add_audit(session, audit)
                    session.flush()
                    return [_to_notification(row) for row in rows]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"notification write was rolled back: {exc}") from exc

    def get_notification(self, notification_id: int) -> NotificationRecord | None:
        with self._session() as session:
            row = session.get(_NotificationRow, notification_id)
            return _to_notification(row) if row is not None else None

    def list_notifications(self, *, archived: bool) -> list[NotificationRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_NotificationRow)
                .where(_NotificationRow.is_archived.is_(archived))
                .order_by(_NotificationRow.created_at.desc(), _NotificationRow.notification_id.desc())
            ).scalars()
            return [_to_notification(row) for row in rows]

    def update_notification(
        self,
        notification_id: int,
        *,
        is_read: bool | None = None,
        is_archived: bool | None = None,
    ) -> NotificationRecord | None:
        with self._session() as session:
            with session.begin():
                row = session.get(_NotificationRow, notification_id)
                if row is None:
                    return None
                if is_read is not None:
                    row.is_read = is_read
                if is_archived is not None:
                    row.is_archived = is_archived
                return _to_notification(row)

    def delete_notification(self, notification_id: int) -> bool:
        with self._session() as session:
            with session.begin():
                row = session.get(_NotificationRow, notification_id)
                if row is None:
                    return False
                session.delete(row)
        return True

    # -- audit trail --------------------------------------------------------

    def append_audit(self, entry: PlannedAudit) -> AuditRecord:
        try:
            with self._session() as session:
                with session.begin():
                    row = self._add_audit(session, entry)
                    session.flush()
                    return _to_audit(row)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"audit write failed: {exc}") from exc

    def list_audit(self, limit: int | None = None) -> list[AuditRecord]:
        query = select(_AuditTrailRow).order_by(_AuditTrailRow.timestamp.desc(), _AuditTrailRow.audit_id.desc())
        if limit is not None:
            query = query.limit(limit)
        with self._session() as session:
            return [_to_audit(row) for row in session.execute(query).scalars()]

    # -- sms outbox and delivery log ----------------------------------------

    def enqueue_sms_batch(self, batch: PlannedSmsBatch) -> tuple[str, list[SmsOutboxRecord]]:
        batch_id = f"smsb_{secrets.token_hex(8)}"
        try:
            with self._session() as session:
                with session.begin():
                    outbox_rows: list[_SmsOutboxRow] = []
                    for message in batch.messages:
                        outbox = _SmsOutboxRow(
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
                        session.add(outbox)
                        session.flush()
                        session.add(
                            _SmsLogRow(
                                outbox_id=outbox.outbox_id,
                                consumer_id=message.consumer_id,
                                contact_number=message.contact_number,
                                message=message.message,
                                sent_at=batch.queued_at,
                                status="queued",
                                is_success=False,
                                response_message=None,
                                attempt_number=1,
                            )
                        )
                        if message.consumer_id is not None:
                            self._add_notification(
                                session,
                                PlannedNotification(
                                    consumer_id=message.consumer_id,
                                    title=message.notification_title,
                                    message=message.message,
                                ),
                                created_at=batch.queued_at,
                            )
                        outbox_rows.append(outbox)
                    self._add_audit(session, batch.audit)
                    session.flush()
                    return batch_id, [_to_outbox(row) for row in outbox_rows]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"sms batch was rolled back: {exc}") from exc

    def claim_pending_sms(
        self,
        *,
        max_messages: int,
        now: datetime,
        lease_until: datetime,
    ) -> list[SmsOutboxRecord]:
        normalized_now = _coerce_utc(now)
        with self._session() as session:
            with session.begin():
                rows = session.execute(
                    select(_SmsOutboxRow)
                    .where(_SmsOutboxRow.status.in_(CLAIMABLE_SMS_STATUSES))
                    .where(_SmsOutboxRow.available_at <= normalized_now)
                    .order_by(_SmsOutboxRow.outbox_id.asc())
                    .limit(max_messages)
                    .with_for_update(skip_locked=True)
                ).scalars().all()
                claimed: list[SmsOutboxRecord] = []
                for row in rows:
                    row.status = "processing"
                    row.available_at = _coerce_utc(lease_until)
                    row.updated_at = _now_utc()
                    claimed.append(_to_outbox(row))
                return claimed

    def release_sms_claims(self, outbox_ids: Iterable[int], *, available_at: datetime) -> None:
        wanted = list(outbox_ids)
        if not wanted:
            return
        with self._session() as session:
            with session.begin():
                rows = session.execute(
                    select(_SmsOutboxRow)
                    .where(_SmsOutboxRow.outbox_id.in_(wanted), _SmsOutboxRow.status == "processing")
                    .with_for_update()
                ).scalars()
                for row in rows:
                    row.status = "pending"
                    row.available_at = _coerce_utc(available_at)
                    row.updated_at = _now_utc()

    def record_sms_attempt(self, outbox_id: int, outcome: SmsAttemptOutcome) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_SmsOutboxRow, outbox_id)
                if row is None:
                    return
                row.tries = row.tries + 1
                row.status = outcome.outbox_status
                if outcome.retry_at is not None:
                    row.available_at = outcome.retry_at
                row.provider_message_id = outcome.provider_message_id
                row.error_code = outcome.error_code
                row.error_message = None if outcome.is_success else outcome.response_message
                row.updated_at = _now_utc()

                log_status = "sent" if outcome.is_success else "failed"
                queued_log = session.execute(
                    select(_SmsLogRow)
                    .where(_SmsLogRow.outbox_id == outbox_id, _SmsLogRow.status == "queued")
                    .order_by(_SmsLogRow.log_id.asc())
                    .limit(1)
                ).scalar_one_or_none()
                if queued_log is not None:
                    queued_log.sent_at = outcome.attempted_at
                    queued_log.status = log_status
                    queued_log.is_success = outcome.is_success
                    queued_log.response_message = outcome.response_message
                    return
                session.add(
                    _SmsLogRow(
                        outbox_id=outbox_id,
                        consumer_id=row.consumer_id,
                        contact_number=row.contact_number,
                        message=row.message,
                        sent_at=outcome.attempted_at,
                        status=log_status,
                        is_success=outcome.is_success,
                        response_message=outcome.response_message,
                        attempt_number=row.tries,
                    )
                )

    def list_sms_logs(self, limit: int | None = None) -> list[SmsLogRecord]:
        query = select(_SmsLogRow).order_by(_SmsLogRow.sent_at.desc(), _SmsLogRow.log_id.desc())
        if limit is not None:
            query = query.limit(limit)
        with self._session() as session:
            return [_to_sms_log(row) for row in session.execute(query).scalars()]

    def list_sms_outbox(self, status: str | None = None) -> list[SmsOutboxRecord]:
        query = select(_SmsOutboxRow).order_by(_SmsOutboxRow.outbox_id.asc())
        if status is not None:
            query = query.where(_SmsOutboxRow.status == status)
        with self._session() as session:
            return [_to_outbox(row) for row in session.execute(query).scalars()]


def create_utility_store(*, backend: str, database_url: str) -> UtilityRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyUtilityStore(database_url)
    if normalized == "inmemory":
        return InMemoryUtilityStore()
    raise RuntimeError(f"unsupported UTILITY_STORE_BACKEND: {backend}")
