from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

ConsumerStatus = Literal["Active", "Disconnected"]
AuditAction = Literal["Disconnect", "Reconnect", "Notify", "SmsSend", "Broadcast"]
TransitionAction = Literal["Disconnect", "Reconnect", "Notify"]
SmsLogStatus = Literal["queued", "sent", "failed"]
OutboxStatus = Literal["pending", "processing", "sent", "dead_letter"]
OverdueSortOrder = Literal[
    "name",
    "name_desc",
    "overdue",
    "overdue_desc",
    "amount",
    "amount_desc",
    "date",
    "date_desc",
]

STATUS_ACTIVE: ConsumerStatus = "Active"
STATUS_DISCONNECTED: ConsumerStatus = "Disconnected"


class OverdueRow(BaseModel):
    consumer_id: int
    consumer_name: str
    overdue_count: int
    total_unpaid_amount: float
    latest_due_date: date | None = None
    status: ConsumerStatus
    is_disconnected: bool


class OverduePageResponse(BaseModel):
    items: list[OverdueRow]
    total_count: int
    page: int
    page_size: int
    total_pages: int
    search: str | None = None
    sort: OverdueSortOrder = "name"


class DisconnectionHistoryItem(BaseModel):
    disconnection_id: int
    date_disconnected: datetime
    date_reconnected: datetime | None = None
    is_reconnected: bool
    remarks: str
    performed_by: str


class ConsumerDetailResponse(BaseModel):
    consumer: OverdueRow
    contact_number: str | None = None
    account_number: str | None = None
    eligible_for_disconnection: bool
    active_disconnection: DisconnectionHistoryItem | None = None
    history: list[DisconnectionHistoryItem] = Field(default_factory=list)


class TransitionResponse(BaseModel):
    consumer_id: int
    action: TransitionAction
    status: ConsumerStatus
    is_disconnected: bool
    redundant: bool = False
    notification_id: int
    audit_id: int
    disconnection_id: int | None = None
    message: str


class NotificationItem(BaseModel):
    notification_id: int
    consumer_id: int
    consumer_name: str | None = None
    title: str
    message: str
    created_at: datetime
    is_read: bool
    is_archived: bool
    send_to_all: bool = False


class NotificationListResponse(BaseModel):
    items: list[NotificationItem]
    total_count: int
    page: int
    page_size: int
    total_pages: int
    search: str | None = None


class NotificationCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=2000)
    consumer_id: int | None = Field(default=None, ge=1)
    send_to_all: bool = False

    @field_validator("title", "message")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("title and message cannot be blank")
        return normalized

    @model_validator(mode="after")
    def _validate_target(self) -> NotificationCreateRequest:
        if not self.send_to_all and self.consumer_id is None:
            raise ValueError("consumer_id is required unless send_to_all is set")
        return self


class NotificationCreateResponse(BaseModel):
    created_count: int
    notification_ids: list[int]


class SmsSendRequest(BaseModel):
    message: str = Field(min_length=1, max_length=1000)
    send_to_all: bool = False
    consumer_ids: list[int] = Field(default_factory=list, max_length=5000)

    @field_validator("message")
    @classmethod
    def _normalize_message(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("message cannot be blank")
        return normalized

    @field_validator("consumer_ids")
    @classmethod
    def _dedupe_ids(cls, value: list[int]) -> list[int]:
        seen: set[int] = set()
        deduped: list[int] = []
        for consumer_id in value:
            if consumer_id in seen:
                continue
            seen.add(consumer_id)
            deduped.append(consumer_id)
        return deduped


class SmsSendResponse(BaseModel):
    batch_id: str | None = None
    recipient_count: int
    sent_count: int
    skipped_count: int


class SmsCandidateBilling(BaseModel):
    billing_id: int
    due_date: date
    amount_due: float
    total_amount: float


class SmsCandidateItem(BaseModel):
    consumer_id: int
    consumer_name: str
    contact_number: str | None = None
    account_number: str | None = None
    unpaid_billings: list[SmsCandidateBilling]


class SmsCandidateListResponse(BaseModel):
    items: list[SmsCandidateItem]
    total_count: int
    page: int
    page_size: int
    total_pages: int
    search: str | None = None


class SmsLogItem(BaseModel):
    log_id: int
    consumer_id: int | None = None
    consumer_name: str
    contact_number: str
    message: str
    sent_at: datetime
    status: SmsLogStatus
    is_success: bool
    response_message: str | None = None
    attempt_number: int


class SmsLogListResponse(BaseModel):
    items: list[SmsLogItem]


class SmsDrainResponse(BaseModel):
    claimed_count: int
    sent_count: int
    retried_count: int
    dead_letter_count: int
    outage: bool
    finished_at: datetime


class SmsQueueStatusResponse(BaseModel):
    pending_count: int
    processing_count: int
    sent_count: int
    dead_letter_count: int
    last_drain: SmsDrainResponse | None = None


class AuditItem(BaseModel):
    audit_id: int
    action: AuditAction
    performed_by: str
    details: str
    timestamp: datetime


class AuditListResponse(BaseModel):
    items: list[AuditItem]
