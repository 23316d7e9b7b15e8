from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Callable

from .audit import AuditTrailRecorder, resolve_actor
from .models import STATUS_ACTIVE, STATUS_DISCONNECTED, TransitionAction, TransitionResponse
from .overdue import OverdueAggregator
from .repositories import UtilityRepository
from .results import OperationResult
from .store import (
    ConsumerNotFoundError,
    ConsumerRecord,
    PlannedDisconnection,
    PlannedNotification,
    PlannedTransition,
    TransitionConflictError,
    TransitionReceipt,
)

logger = logging.getLogger(__name__)

CONSUMER_NOT_FOUND = "Consumer not found."
NOT_ELIGIBLE = "Consumer does not meet disconnection criteria (must have 2 or more overdue bills)."
DISCONNECTION_REMARKS = "2 or more overdue bills"
DISCONNECTION_TITLE = "Disconnection Notice"
RECONNECTION_TITLE = "Reconnection Notice"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def disconnection_message(first_name: str) -> str:
    return (
        f"Hello {first_name}, you failed to pay any bill from your 2 overdue bills within 3 days. "
        "Your water service has been disconnected. To reconnect, please visit the main office of "
        "Santa Fe Water System located at the Santa Fe Municipal Hall. Thank you."
    )


def reconnection_message(first_name: str) -> str:
    return (
        f"Hello {first_name}, your water service has been successfully reconnected. "
        "Thank you for settling your bills. You may now continue using our services."
    )


def warning_message(first_name: str) -> str:
    return (
        f"Hello {first_name}, you have 2 overdue bills that are not yet paid. "
        "Please pay at least one bill within 3 days to avoid disconnection."
    )


class DisconnectionStateMachine:
    """Active/Disconnected transitions for a consumer.

    Each transition is planned up front and handed to the repository, which writes
    the status change, history row, notice and audit row together or not at all.

    With ``strict`` set, disconnecting a disconnected consumer or reconnecting an
    active one is refused as ``invalid_state``. Otherwise the call goes through and
    the response is flagged ``redundant``; no second open history row is created.
    """

    def __init__(
        self,
        repository: UtilityRepository,
        aggregator: OverdueAggregator,
        audit: AuditTrailRecorder,
        *,
        today: Callable[[], date],
        strict: bool = True,
    ) -> None:
        self._repository = repository
        self._aggregator = aggregator
        self._audit = audit
        self._today = today
        self._strict = strict

    def disconnect(self, consumer_id: int, actor: str | None) -> OperationResult[TransitionResponse]:
        consumer = self._repository.find_consumer(consumer_id)
        if consumer is None:
            return OperationResult.failure("not_found", CONSUMER_NOT_FOUND)
        redundant = consumer.status == STATUS_DISCONNECTED
        if redundant and self._strict:
            return OperationResult.failure("invalid_state", "Consumer is already disconnected.")

        performed_by = resolve_actor(actor)
        now = _now_utc()
        plan = PlannedTransition(
            consumer_id=consumer_id,
            occurred_at=now,
            notification=PlannedNotification(
                consumer_id=consumer_id,
                title=DISCONNECTION_TITLE,
                message=disconnection_message(consumer.first_name),
            ),
            audit=self._audit.entry(
                "Disconnect",
                performed_by,
                f"Disconnected Consumer ID {consumer_id} due to 2 or more overdue bills.",
                now,
            ),
            new_status=STATUS_DISCONNECTED,
            expected_status=consumer.status if self._strict else None,
            open_disconnection=PlannedDisconnection(remarks=DISCONNECTION_REMARKS, performed_by=performed_by),
        )
        return self._apply("Disconnect", plan, consumer, redundant=redundant, message="Consumer disconnected successfully.")

    def reconnect(self, consumer_id: int, actor: str | None) -> OperationResult[TransitionResponse]:
        consumer = self._repository.find_consumer(consumer_id)
        if consumer is None:
            return OperationResult.failure("not_found", CONSUMER_NOT_FOUND)
        redundant = consumer.status == STATUS_ACTIVE
        if redundant and self._strict:
            return OperationResult.failure("invalid_state", "Consumer is already active.")

        now = _now_utc()
        plan = PlannedTransition(
            consumer_id=consumer_id,
            occurred_at=now,
            notification=PlannedNotification(
                consumer_id=consumer_id,
                title=RECONNECTION_TITLE,
                message=reconnection_message(consumer.first_name),
            ),
            audit=self._audit.entry("Reconnect", actor, f"Reconnected Consumer ID {consumer_id}.", now),
            new_status=STATUS_ACTIVE,
            expected_status=consumer.status if self._strict else None,
            close_active_disconnection=True,
        )
        return self._apply("Reconnect", plan, consumer, redundant=redundant, message="Consumer reconnected successfully.")

    def notify(self, consumer_id: int, actor: str | None) -> OperationResult[TransitionResponse]:
        consumer = self._repository.find_consumer(consumer_id)
        if consumer is None:
            return OperationResult.failure("not_found", CONSUMER_NOT_FOUND)
        # Recomputed at call time; eligibility shown on a listing may be stale.
        if not self._aggregator.is_eligible(consumer_id, self._today()):
            return OperationResult.failure("ineligible", NOT_ELIGIBLE)

        now = _now_utc()
        plan = PlannedTransition(
            consumer_id=consumer_id,
            occurred_at=now,
            notification=PlannedNotification(
                consumer_id=consumer_id,
                title=DISCONNECTION_TITLE,
                message=warning_message(consumer.first_name),
            ),
            audit=self._audit.entry("Notify", actor, f"Sent disconnection notice to Consumer ID {consumer_id}.", now),
        )
        return self._apply("Notify", plan, consumer, redundant=False, message="Disconnection notice sent successfully.")

    def _apply(
        self,
        action: TransitionAction,
        plan: PlannedTransition,
        consumer: ConsumerRecord,
        *,
        redundant: bool,
        message: str,
    ) -> OperationResult[TransitionResponse]:
        try:
            receipt = self._repository.apply_transition(plan)
        except ConsumerNotFoundError:
            return OperationResult.failure("not_found", CONSUMER_NOT_FOUND)
        except TransitionConflictError as exc:
            logger.info("%s for consumer %s lost a race: %s", action, consumer.consumer_id, exc)
            return OperationResult.failure("invalid_state", f"Consumer status changed concurrently: {exc}")

        if redundant:
            logger.warning("%s on consumer %s was redundant (status already %s)", action, consumer.consumer_id, consumer.status)
        logger.info(
            "%s applied to consumer %s by %s",
            action,
            consumer.consumer_id,
            plan.audit.performed_by,
        )
        return OperationResult.success(self._response(action, receipt, redundant=redundant, message=message))

    @staticmethod
    def _response(
        action: TransitionAction,
        receipt: TransitionReceipt,
        *,
        redundant: bool,
        message: str,
    ) -> TransitionResponse:
        consumer = receipt.consumer
        disconnection_id = (
            receipt.opened_disconnection_id
            or receipt.closed_disconnection_id
            or consumer.active_disconnection_id
        )
        return TransitionResponse(
            consumer_id=consumer.consumer_id,
            action=action,
            status=consumer.status,  # type: ignore[arg-type]
            is_disconnected=consumer.is_disconnected,
            redundant=redundant,
            notification_id=receipt.notification_id,
            audit_id=receipt.audit_id,
            disconnection_id=disconnection_id,
            message=message,
        )
