from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Iterable

from .audit import AuditTrailRecorder
from .listing import total_pages
from .models import (
    SmsCandidateBilling,
    SmsCandidateItem,
    SmsCandidateListResponse,
    SmsDrainResponse,
    SmsLogItem,
    SmsQueueStatusResponse,
    SmsSendResponse,
)
from .repositories import UtilityRepository
from .results import OperationResult
from .sms_transport import SmsSendResult, SmsTransport, mask_contact_number
from .store import (
    BillingRecord,
    PlannedSmsBatch,
    PlannedSmsMessage,
    SmsAttemptOutcome,
    SmsOutboxRecord,
)
from .templating import NOT_AVAILABLE, Recipient, render_message

logger = logging.getLogger(__name__)

REMINDER_TITLE = "Water Bill Reminder"
BASE_RETRY_SECONDS = 15
MAX_RETRY_SECONDS = 600


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def retry_delay_seconds(tries: int) -> int:
    return min(BASE_RETRY_SECONDS * (2 ** max(0, tries - 1)), MAX_RETRY_SECONDS)


def _group_billings(billings: Iterable[BillingRecord]) -> dict[int, list[BillingRecord]]:
    grouped: dict[int, list[BillingRecord]] = {}
    for billing in billings:
        grouped.setdefault(billing.consumer_id, []).append(billing)
    return grouped


class SmsDispatchService:
    def __init__(
        self,
        repository: UtilityRepository,
        audit: AuditTrailRecorder,
        *,
        candidates_page_size: int = 5,
        logs_limit: int = 100,
    ) -> None:
        self._repository = repository
        self._audit = audit
        self._candidates_page_size = candidates_page_size
        self._logs_limit = logs_limit

    def resolve_recipients(self, consumer_ids: Iterable[int], *, send_to_all: bool) -> list[Recipient]:
        if send_to_all:
            billings = _group_billings(self._repository.list_unpaid_billings())
            consumers = self._repository.list_consumers(billings.keys())
        else:
            consumers = self._repository.list_consumers(consumer_ids)
            billings = _group_billings(
                self._repository.list_unpaid_billings(consumer.consumer_id for consumer in consumers)
            )
        # list_unpaid_billings is ordered by due date then billing id.
        return [
            Recipient(consumer=consumer, unpaid_billings=tuple(billings.get(consumer.consumer_id, ())))
            for consumer in consumers
        ]

    def send_bulk_sms(
        self,
        consumer_ids: list[int],
        message_template: str,
        actor: str | None,
        *,
        send_to_all: bool = False,
    ) -> OperationResult[SmsSendResponse]:
        if not send_to_all and not consumer_ids:
            return OperationResult.failure("validation", "Please select at least one consumer.")

        recipients = self.resolve_recipients(consumer_ids, send_to_all=send_to_all)
        if not recipients:
            return OperationResult.failure("no_recipients", "No consumers found to send SMS.")

        return OperationResult.success(self.dispatch(recipients, message_template, actor))

    def dispatch(self, recipients: list[Recipient], template: str, actor: str | None) -> SmsSendResponse:
        """Personalize and queue one message per reachable recipient.

        Recipients without a contact number are skipped. Outbox rows, queued log rows,
        reminder notifications and the batch audit row are written in one unit.
        """
        messages: list[PlannedSmsMessage] = []
        for recipient in recipients:
            contact_number = (recipient.consumer.contact_number or "").strip()
            if not contact_number:
                continue
            messages.append(
                PlannedSmsMessage(
                    consumer_id=recipient.consumer.consumer_id,
                    contact_number=contact_number,
                    message=render_message(template, recipient),
                    notification_title=REMINDER_TITLE,
                )
            )

        skipped = len(recipients) - len(messages)
        if not messages:
            logger.info("sms dispatch skipped: none of %d recipients has a contact number", len(recipients))
            return SmsSendResponse(batch_id=None, recipient_count=len(recipients), sent_count=0, skipped_count=skipped)

        now = _now_utc()
        batch_id, queued = self._repository.enqueue_sms_batch(
            PlannedSmsBatch(
                queued_at=now,
                messages=tuple(messages),
                audit=self._audit.entry("SmsSend", actor, f"Queued SMS reminder for {len(messages)} consumer(s).", now),
            )
        )
        logger.info("queued sms batch %s with %d messages (%d skipped)", batch_id, len(queued), skipped)
        return SmsSendResponse(
            batch_id=batch_id,
            recipient_count=len(recipients),
            sent_count=len(queued),
            skipped_count=skipped,
        )

    def list_candidates(
        self,
        search_term: str | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> SmsCandidateListResponse:
        billings = _group_billings(self._repository.list_unpaid_billings())
        consumers = self._repository.list_consumers(billings.keys())
        normalized_search = search_term.strip() if search_term and search_term.strip() else None
        if normalized_search is not None:
            needle = normalized_search.lower()
            consumers = [
                consumer
                for consumer in consumers
                if needle in consumer.first_name.lower() or needle in consumer.last_name.lower()
            ]
        consumers.sort(key=lambda consumer: (consumer.first_name.lower(), consumer.consumer_id))

        effective_page = max(1, page)
        effective_size = page_size if page_size is not None and page_size > 0 else self._candidates_page_size
        start = (effective_page - 1) * effective_size
        items = [
            SmsCandidateItem(
                consumer_id=consumer.consumer_id,
                consumer_name=consumer.display_name,
                contact_number=consumer.contact_number,
                account_number=consumer.account_number,
                unpaid_billings=[
                    SmsCandidateBilling(
                        billing_id=billing.billing_id,
                        due_date=billing.due_date,
                        amount_due=float(billing.amount_due),
                        total_amount=float(billing.total_amount),
                    )
                    for billing in billings.get(consumer.consumer_id, [])
                ],
            )
            for consumer in consumers[start : start + effective_size]
        ]
        return SmsCandidateListResponse(
            items=items,
            total_count=len(consumers),
            page=effective_page,
            page_size=effective_size,
            total_pages=total_pages(len(consumers), effective_size),
            search=normalized_search,
        )

    def list_logs(self, limit: int | None = None) -> list[SmsLogItem]:
        logs = self._repository.list_sms_logs(limit if limit is not None and limit > 0 else self._logs_limit)
        names = {
            consumer.consumer_id: consumer.display_name
            for consumer in self._repository.list_consumers(
                {log.consumer_id for log in logs if log.consumer_id is not None}
            )
        }
        return [
            SmsLogItem(
                log_id=log.log_id,
                consumer_id=log.consumer_id,
                consumer_name=names.get(log.consumer_id, NOT_AVAILABLE) if log.consumer_id is not None else NOT_AVAILABLE,
                contact_number=log.contact_number,
                message=log.message,
                sent_at=log.sent_at,
                status=log.status,  # type: ignore[arg-type]
                is_success=log.is_success,
                response_message=log.response_message,
                attempt_number=log.attempt_number,
            )
            for log in logs
        ]


@dataclass(frozen=True)
class DrainReport:
    claimed_count: int
    sent_count: int
    retried_count: int
    dead_letter_count: int
    outage: bool
    finished_at: datetime

    def to_response(self) -> SmsDrainResponse:
        return SmsDrainResponse(
            claimed_count=self.claimed_count,
            sent_count=self.sent_count,
            retried_count=self.retried_count,
            dead_letter_count=self.dead_letter_count,
            outage=self.outage,
            finished_at=self.finished_at,
        )


class SmsDeliveryWorker:
    """Drains the SMS outbox through a transport.

    Failed sends are retried with exponential backoff until ``max_attempts`` and then
    dead-lettered. ``outage_threshold`` consecutive failures stop the drain and leave
    the rest of the queue pending. Claimed rows are leased for ``lease_seconds``; a row
    left in processing by a crashed drain becomes claimable again once its lease passes.
    """

    def __init__(
        self,
        repository: UtilityRepository,
        *,
        max_attempts: int = 3,
        outage_threshold: int = 5,
        batch_size: int = 100,
        lease_seconds: int = 300,
    ) -> None:
        self._repository = repository
        self._max_attempts = max(1, max_attempts)
        self._outage_threshold = max(1, outage_threshold)
        self._batch_size = max(1, batch_size)
        self._lease_seconds = max(1, lease_seconds)
        self._drain_lock = Lock()
        self._last_report: DrainReport | None = None

    def reset(self) -> None:
        self._last_report = None

    def drain(
        self,
        transport: SmsTransport,
        max_messages: int | None = None,
        *,
        now: datetime | None = None,
    ) -> DrainReport:
        with self._drain_lock:
            report = self._drain(transport, max_messages or self._batch_size, now or _now_utc())
            self._last_report = report
        if report.outage:
            logger.warning(
                "sms drain stopped after %d consecutive transport failures; remaining messages stay pending",
                self._outage_threshold,
            )
        return report

    def _drain(self, transport: SmsTransport, budget: int, now: datetime) -> DrainReport:
        claimed = sent = retried = dead = 0
        consecutive_failures = 0
        outage = False
        lease_until = now + timedelta(seconds=self._lease_seconds)
        while claimed < budget and not outage:
            # A chunk never outlasts the failures still allowed before an outage, so
            # an outage can only be reached on the last message of a chunk.
            chunk = self._repository.claim_pending_sms(
                max_messages=min(self._batch_size, budget - claimed, self._outage_threshold - consecutive_failures),
                now=now,
                lease_until=lease_until,
            )
            if not chunk:
                break
            claimed += len(chunk)
            handed_over = 0
            try:
                for row in chunk:
                    handed_over += 1
                    result = self._send(transport, row)
                    outcome = self._outcome(row, result, now)
                    self._repository.record_sms_attempt(row.outbox_id, outcome)
                    if result.is_success:
                        sent += 1
                        consecutive_failures = 0
                        continue
                    consecutive_failures += 1
                    if outcome.outbox_status == "dead_letter":
                        dead += 1
                        logger.warning(
                            "sms to %s dead-lettered after %d attempts: %s",
                            mask_contact_number(row.contact_number),
                            row.tries + 1,
                            result.error_code,
                        )
                    else:
                        retried += 1
                    if consecutive_failures >= self._outage_threshold:
                        outage = True
            finally:
                # Rows handed to the transport stay leased; the rest go straight back.
                unsent = [row.outbox_id for row in chunk[handed_over:]]
                if unsent:
                    logger.warning("sms drain aborted; returning %d unsent message(s) to the queue", len(unsent))
                    self._repository.release_sms_claims(unsent, available_at=now)
        return DrainReport(
            claimed_count=claimed,
            sent_count=sent,
            retried_count=retried,
            dead_letter_count=dead,
            outage=outage,
            finished_at=_now_utc(),
        )

    @staticmethod
    def _send(transport: SmsTransport, row: SmsOutboxRecord) -> SmsSendResult:
        try:
            return transport.send_sms(row.contact_number, row.message)
        except Exception as exc:
            logger.warning("sms transport raised for outbox %s: %s", row.outbox_id, exc)
            return SmsSendResult(
                status="failed",
                attempted_at=_now_utc(),
                error_code="transport_error",
                response_message=str(exc) or exc.__class__.__name__,
            )

    def _outcome(self, row: SmsOutboxRecord, result: SmsSendResult, now: datetime) -> SmsAttemptOutcome:
        if result.is_success:
            return SmsAttemptOutcome(
                outbox_status="sent",
                attempted_at=result.attempted_at,
                is_success=True,
                response_message=result.response_message,
                provider_message_id=result.provider_message_id,
            )
        tries = row.tries + 1
        if tries >= self._max_attempts:
            return SmsAttemptOutcome(
                outbox_status="dead_letter",
                attempted_at=result.attempted_at,
                is_success=False,
                response_message=result.response_message,
                error_code=result.error_code,
            )
        return SmsAttemptOutcome(
            outbox_status="pending",
            attempted_at=result.attempted_at,
            is_success=False,
            response_message=result.response_message,
            error_code=result.error_code,
            retry_at=max(_coerce_utc(now), _coerce_utc(result.attempted_at)) + timedelta(seconds=retry_delay_seconds(tries)),
        )

    def queue_status(self) -> SmsQueueStatusResponse:
        counts = {"pending": 0, "processing": 0, "sent": 0, "dead_letter": 0}
        for row in self._repository.list_sms_outbox():
            counts[row.status] = counts.get(row.status, 0) + 1
        return SmsQueueStatusResponse(
            pending_count=counts["pending"],
            processing_count=counts["processing"],
            sent_count=counts["sent"],
            dead_letter_count=counts["dead_letter"],
            last_drain=self._last_report.to_response() if self._last_report is not None else None,
        )


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
