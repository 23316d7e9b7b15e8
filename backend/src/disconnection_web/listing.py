from __future__ import annotations

import math
from datetime import date
from typing import Callable

from .models import (
    ConsumerDetailResponse,
    DisconnectionHistoryItem,
    OverduePageResponse,
    OverdueRow,
    OverdueSortOrder,
)
from .overdue import OverdueAggregator, OverdueSummary
from .repositories import UtilityRepository
from .results import OperationResult
from .store import ConsumerRecord, DisconnectionRecord

DEFAULT_SORT: OverdueSortOrder = "name"

_SORT_KEYS: dict[str, tuple[Callable[[OverdueRow], object], bool]] = {
    "name": (lambda row: row.consumer_name.lower(), False),
    "name_desc": (lambda row: row.consumer_name.lower(), True),
    "overdue": (lambda row: row.overdue_count, False),
    "overdue_desc": (lambda row: row.overdue_count, True),
    "amount": (lambda row: row.total_unpaid_amount, False),
    "amount_desc": (lambda row: row.total_unpaid_amount, True),
    "date": (lambda row: row.latest_due_date or date.min, False),
    "date_desc": (lambda row: row.latest_due_date or date.min, True),
}


def normalize_sort(sort_order: str | None) -> OverdueSortOrder:
    if sort_order is None:
        return DEFAULT_SORT
    normalized = sort_order.strip().lower()
    return normalized if normalized in _SORT_KEYS else DEFAULT_SORT  # type: ignore[return-value]


def sort_rows(rows: list[OverdueRow], sort_order: OverdueSortOrder) -> list[OverdueRow]:
    key, descending = _SORT_KEYS[sort_order]
    # Stable sorts: order by id first so equal primary keys stay id-ascending either direction.
    ordered = sorted(rows, key=lambda row: row.consumer_id)
    return sorted(ordered, key=key, reverse=descending)


def matches_search(row: OverdueRow, search_term: str | None) -> bool:
    if not search_term or not search_term.strip():
        return True
    needle = search_term.strip().lower()
    return needle in row.consumer_name.lower() or needle in str(row.consumer_id)


def total_pages(total_count: int, page_size: int) -> int:
    return math.ceil(total_count / page_size) if page_size > 0 else 0


def to_overdue_row(consumer: ConsumerRecord, summary: OverdueSummary) -> OverdueRow:
    return OverdueRow(
        consumer_id=consumer.consumer_id,
        consumer_name=consumer.display_name,
        overdue_count=summary.overdue_count,
        total_unpaid_amount=float(summary.total_unpaid_amount),
        latest_due_date=summary.latest_due_date,
        status=consumer.status,  # type: ignore[arg-type]
        is_disconnected=consumer.is_disconnected,
    )


def to_history_item(record: DisconnectionRecord) -> DisconnectionHistoryItem:
    return DisconnectionHistoryItem(
        disconnection_id=record.disconnection_id,
        date_disconnected=record.date_disconnected,
        date_reconnected=record.date_reconnected,
        is_reconnected=record.is_reconnected,
        remarks=record.remarks,
        performed_by=record.performed_by,
    )


class OverdueListingService:
    def __init__(
        self,
        repository: UtilityRepository,
        aggregator: OverdueAggregator,
        *,
        today: Callable[[], date],
        default_page_size: int = 10,
    ) -> None:
        self._repository = repository
        self._aggregator = aggregator
        self._today = today
        self._default_page_size = default_page_size

    def list_overdue(
        self,
        search_term: str | None = None,
        sort_order: str | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> OverduePageResponse:
        summaries = self._aggregator.summaries(self._today())
        consumers = {
            consumer.consumer_id: consumer
            for consumer in self._repository.list_consumers(summary.consumer_id for summary in summaries)
        }
        rows = [
            to_overdue_row(consumers[summary.consumer_id], summary)
            for summary in summaries
            if summary.consumer_id in consumers
        ]

        filtered = [row for row in rows if matches_search(row, search_term)]
        sort = normalize_sort(sort_order)
        ordered = sort_rows(filtered, sort)

        effective_page = max(1, page)
        effective_size = page_size if page_size is not None and page_size > 0 else self._default_page_size
        start = (effective_page - 1) * effective_size
        normalized_search = search_term.strip() if search_term and search_term.strip() else None
        return OverduePageResponse(
            items=ordered[start : start + effective_size],
            total_count=len(filtered),
            page=effective_page,
            page_size=effective_size,
            total_pages=total_pages(len(filtered), effective_size),
            search=normalized_search,
            sort=sort,
        )

    def get_details(self, consumer_id: int) -> OperationResult[ConsumerDetailResponse]:
        consumer = self._repository.find_consumer(consumer_id)
        if consumer is None:
            return OperationResult.failure("not_found", "Consumer not found.")

        summary = self._aggregator.summary_for(consumer_id, self._today())
        history = self._repository.list_disconnections(consumer_id)
        active = next(
            (row for row in history if row.disconnection_id == consumer.active_disconnection_id),
            None,
        )
        return OperationResult.success(
            ConsumerDetailResponse(
                consumer=to_overdue_row(consumer, summary),
                contact_number=consumer.contact_number,
                account_number=consumer.account_number,
                eligible_for_disconnection=summary.overdue_count >= self._aggregator.threshold,
                active_disconnection=to_history_item(active) if active is not None else None,
                history=[to_history_item(row) for row in history],
            )
        )
