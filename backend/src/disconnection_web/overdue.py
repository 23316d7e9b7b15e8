from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from decimal import Decimal
from typing import Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .repositories import BillingLedger
from .store import OverdueBillingRow

logger = logging.getLogger(__name__)

DISCONNECTION_THRESHOLD = 2


@dataclass(frozen=True)
class OverdueSummary:
    consumer_id: int
    overdue_count: int
    total_unpaid_amount: Decimal
    latest_due_date: date | None


def summarize_overdue(
    rows: Iterable[OverdueBillingRow],
    *,
    threshold: int = DISCONNECTION_THRESHOLD,
) -> list[OverdueSummary]:
    """Group unpaid past-due rows per consumer and keep those at or above ``threshold``."""
    counts: dict[int, int] = {}
    totals: dict[int, Decimal] = {}
    latest: dict[int, date] = {}
    for row in rows:
        counts[row.consumer_id] = counts.get(row.consumer_id, 0) + 1
        totals[row.consumer_id] = totals.get(row.consumer_id, Decimal("0")) + row.total_amount
        current = latest.get(row.consumer_id)
        if current is None or row.due_date > current:
            latest[row.consumer_id] = row.due_date

    return [
        OverdueSummary(
            consumer_id=consumer_id,
            overdue_count=count,
            total_unpaid_amount=totals[consumer_id],
            latest_due_date=latest[consumer_id],
        )
        for consumer_id, count in sorted(counts.items())
        if count >= threshold
    ]


class OverdueAggregator:
    def __init__(self, ledger: BillingLedger, *, threshold: int = DISCONNECTION_THRESHOLD) -> None:
        self._ledger = ledger
        self._threshold = threshold

    @property
    def threshold(self) -> int:
        return self._threshold

    def summaries(self, as_of: date) -> list[OverdueSummary]:
        return summarize_overdue(self._ledger.unpaid_overdue_billings(as_of), threshold=self._threshold)

    def summary_for(self, consumer_id: int, as_of: date) -> OverdueSummary:
        # No threshold: details and the notify guard need counts of 0 and 1 too.
        rows = [row for row in self._ledger.unpaid_overdue_billings(as_of) if row.consumer_id == consumer_id]
        summaries = summarize_overdue(rows, threshold=0)
        if summaries:
            return summaries[0]
        return OverdueSummary(
            consumer_id=consumer_id,
            overdue_count=0,
            total_unpaid_amount=Decimal("0.00"),
            latest_due_date=None,
        )

    def is_eligible(self, consumer_id: int, as_of: date) -> bool:
        return self.summary_for(consumer_id, as_of).overdue_count >= self._threshold


def local_today(timezone_name: str) -> date:
    """Calendar date at the utility's location; due dates are local dates."""
    try:
        zone: tzinfo = ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown UTILITY_TIMEZONE %r, falling back to UTC", timezone_name)
        zone = timezone.utc
    return datetime.now(zone).date()
