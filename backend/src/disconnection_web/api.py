from __future__ import annotations

import logging
from datetime import date
from typing import TypeVar

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, Response, status

from .audit import AuditTrailRecorder, resolve_actor
from .config import get_settings
from .disconnections import DisconnectionStateMachine
from .listing import OverdueListingService
from .models import (
    AuditListResponse,
    ConsumerDetailResponse,
    NotificationCreateRequest,
    NotificationCreateResponse,
    NotificationItem,
    NotificationListResponse,
    OverduePageResponse,
    SmsCandidateListResponse,
    SmsDrainResponse,
    SmsLogListResponse,
    SmsQueueStatusResponse,
    SmsSendRequest,
    SmsSendResponse,
    TransitionResponse,
)
from .notifications import NotificationEmitter
from .overdue import OverdueAggregator, local_today
from .repositories import UtilityRepository
from .results import ErrorKind, OperationResult
from .sms_dispatch import SmsDeliveryWorker, SmsDispatchService
from .sms_transport import SmsTransport, create_sms_transport
from .sql_store import create_utility_store

logger = logging.getLogger(__name__)

T = TypeVar("T")

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/utility", tags=["utility"])

utility_store: UtilityRepository = create_utility_store(
    backend=_settings.store_backend,
    database_url=_settings.database_url,
)
# Tests patch this symbol; background drains read it at call time.
sms_transport: SmsTransport = create_sms_transport(_settings)


def _today() -> date:
    return local_today(_settings.timezone)


overdue_aggregator = OverdueAggregator(utility_store)
audit_recorder = AuditTrailRecorder(utility_store)
listing_service = OverdueListingService(
    utility_store,
    overdue_aggregator,
    today=_today,
    default_page_size=_settings.overdue_page_size,
)
state_machine = DisconnectionStateMachine(
    utility_store,
    overdue_aggregator,
    audit_recorder,
    today=_today,
    strict=_settings.strict_transitions,
)
notification_emitter = NotificationEmitter(
    utility_store,
    audit_recorder,
    default_page_size=_settings.notifications_page_size,
)
sms_service = SmsDispatchService(
    utility_store,
    audit_recorder,
    candidates_page_size=_settings.sms_candidates_page_size,
    logs_limit=_settings.sms_logs_limit,
)
sms_worker = SmsDeliveryWorker(
    utility_store,
    max_attempts=_settings.sms_max_attempts,
    outage_threshold=_settings.sms_outage_threshold,
    batch_size=_settings.sms_drain_batch_size,
    lease_seconds=_settings.sms_claim_lease_seconds,
)

_ERROR_STATUS: dict[ErrorKind, int] = {
    "not_found": 404,
    "ineligible": 409,
    "validation": 422,
    "no_recipients": 422,
    "invalid_state": 409,
}


def reset_runtime_state_for_tests() -> None:
    utility_store.reset()
    sms_worker.reset()


def _unwrap(result: OperationResult[T]) -> T:
    if result.error is not None:
        raise HTTPException(status_code=_ERROR_STATUS[result.error], detail=result.message)
    return result.value  # type: ignore[return-value]


def _operator(request: Request) -> str:
    return resolve_actor(request.headers.get("X-Operator"))


def _drain_outbox() -> None:
    report = sms_worker.drain(sms_transport)
    logger.info(
        "sms drain finished: claimed=%d sent=%d retried=%d dead_letter=%d",
        report.claimed_count,
        report.sent_count,
        report.retried_count,
        report.dead_letter_count,
    )


@router.get("/overdue", response_model=OverduePageResponse)
def list_overdue(
    search: str | None = None,
    sort: str | None = None,
    page: int = 1,
    page_size: int | None = None,
) -> OverduePageResponse:
    return listing_service.list_overdue(search, sort, page, page_size)


@router.get("/consumers/{consumer_id}", response_model=ConsumerDetailResponse)
def get_consumer_details(consumer_id: int) -> ConsumerDetailResponse:
    return _unwrap(listing_service.get_details(consumer_id))


@router.post("/consumers/{consumer_id}/disconnect", response_model=TransitionResponse)
def disconnect_consumer(consumer_id: int, request: Request) -> TransitionResponse:
    return _unwrap(state_machine.disconnect(consumer_id, _operator(request)))


@router.post("/consumers/{consumer_id}/reconnect", response_model=TransitionResponse)
def reconnect_consumer(consumer_id: int, request: Request) -> TransitionResponse:
    return _unwrap(state_machine.reconnect(consumer_id, _operator(request)))


@router.post("/consumers/{consumer_id}/notify", response_model=TransitionResponse)
def notify_consumer(consumer_id: int, request: Request) -> TransitionResponse:
    return _unwrap(state_machine.notify(consumer_id, _operator(request)))


@router.post("/sms/send", response_model=SmsSendResponse, status_code=status.HTTP_202_ACCEPTED)
def send_bulk_sms(payload: SmsSendRequest, request: Request, background_tasks: BackgroundTasks) -> SmsSendResponse:
    result = _unwrap(
        sms_service.send_bulk_sms(
            payload.consumer_ids,
            payload.message,
            _operator(request),
            send_to_all=payload.send_to_all,
        )
    )
    if result.sent_count:
        background_tasks.add_task(_drain_outbox)
    return result


@router.get("/sms/candidates", response_model=SmsCandidateListResponse)
def list_sms_candidates(search: str | None = None, page: int = 1, page_size: int | None = None) -> SmsCandidateListResponse:
    return sms_service.list_candidates(search, page, page_size)


@router.get("/sms/logs", response_model=SmsLogListResponse)
def list_sms_logs(limit: int | None = None) -> SmsLogListResponse:
    return SmsLogListResponse(items=sms_service.list_logs(limit))


@router.get("/sms/queue", response_model=SmsQueueStatusResponse)
def sms_queue_status() -> SmsQueueStatusResponse:
    return sms_worker.queue_status()


@router.post("/sms/queue/drain", response_model=SmsDrainResponse)
def drain_sms_queue(max_messages: int | None = None) -> SmsDrainResponse:
    if max_messages is not None and max_messages < 1:
        raise HTTPException(status_code=422, detail="max_messages must be positive")
    return sms_worker.drain(sms_transport, max_messages).to_response()


@router.get("/notifications", response_model=NotificationListResponse)
def list_notifications(search: str | None = None, page: int = 1, page_size: int | None = None) -> NotificationListResponse:
    return notification_emitter.list_active(search, page, page_size)


@router.get("/notifications/archived", response_model=list[NotificationItem])
def list_archived_notifications() -> list[NotificationItem]:
    return notification_emitter.list_archived()


@router.post("/notifications", response_model=NotificationCreateResponse, status_code=status.HTTP_201_CREATED)
def create_notification(payload: NotificationCreateRequest, request: Request) -> NotificationCreateResponse:
    if payload.send_to_all:
        return _unwrap(notification_emitter.broadcast_all(payload.title, payload.message, _operator(request)))
    if payload.consumer_id is None:
        raise HTTPException(status_code=422, detail="consumer_id is required unless send_to_all is set")
    item = _unwrap(notification_emitter.emit(payload.consumer_id, payload.title, payload.message))
    return NotificationCreateResponse(created_count=1, notification_ids=[item.notification_id])


@router.post("/notifications/{notification_id}/read", response_model=NotificationItem)
def mark_notification_read(notification_id: int) -> NotificationItem:
    return _unwrap(notification_emitter.mark_read(notification_id))


@router.post("/notifications/{notification_id}/archive", response_model=NotificationItem)
def archive_notification(notification_id: int) -> NotificationItem:
    return _unwrap(notification_emitter.archive(notification_id))


@router.post("/notifications/{notification_id}/unarchive", response_model=NotificationItem)
def unarchive_notification(notification_id: int) -> NotificationItem:
    return _unwrap(notification_emitter.unarchive(notification_id))


@router.delete("/notifications/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_notification(notification_id: int) -> Response:
    _unwrap(notification_emitter.delete(notification_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/audit", response_model=AuditListResponse)
def list_audit(limit: int | None = 100) -> AuditListResponse:
    return AuditListResponse(items=audit_recorder.list_entries(limit))
