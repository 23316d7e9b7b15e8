from __future__ import annotations

from datetime import date
from decimal import Decimal

from disconnection_web.overdue import OverdueAggregator, local_today, summarize_overdue
from disconnection_web.store import InMemoryUtilityStore, OverdueBillingRow

AS_OF = date(2026, 6, 1)


def _row(billing_id: int, consumer_id: int, amount: str, due: date) -> OverdueBillingRow:
    return OverdueBillingRow(
        billing_id=billing_id,
        consumer_id=consumer_id,
        total_amount=Decimal(amount),
        due_date=due,
    )


def test_summarize_overdue_keeps_consumers_with_two_or_more_bills() -> None:
    rows = [
        _row(1, 10, "100.10", date(2026, 3, 1)),
        _row(2, 10, "200.20", date(2026, 4, 1)),
        _row(3, 20, "50.00", date(2026, 4, 15)),
        _row(4, 30, "0.10", date(2026, 1, 1)),
        _row(5, 30, "0.20", date(2026, 5, 1)),
        _row(6, 30, "0.30", date(2026, 2, 1)),
    ]

    summaries = summarize_overdue(rows)

    assert [summary.consumer_id for summary in summaries] == [10, 30]
    first, second = summaries
    assert first.overdue_count == 2
    assert first.total_unpaid_amount == Decimal("300.30")
    assert first.latest_due_date == date(2026, 4, 1)
    assert second.overdue_count == 3
    assert second.total_unpaid_amount == Decimal("0.60")
    assert second.latest_due_date == date(2026, 5, 1)


def test_summarize_overdue_of_nothing_is_empty() -> None:
    assert summarize_overdue([]) == []


def _store() -> InMemoryUtilityStore:
    store = InMemoryUtilityStore()
    store.upsert_consumer(first_name="Ana", last_name="Cruz", consumer_id=1)
    store.upsert_consumer(first_name="Ben", last_name="Reyes", consumer_id=2)
    return store


def test_aggregator_only_counts_unpaid_bills_due_strictly_before_as_of() -> None:
    store = _store()
    store.add_billing(consumer_id=1, due_date=date(2026, 4, 1), total_amount=100)
    store.add_billing(consumer_id=1, due_date=AS_OF, total_amount=100)
    store.add_billing(consumer_id=1, due_date=date(2026, 7, 1), total_amount=100)
    store.add_billing(consumer_id=2, due_date=date(2026, 3, 1), total_amount=80)
    store.add_billing(consumer_id=2, due_date=date(2026, 4, 1), total_amount=80, is_paid=True)

    aggregator = OverdueAggregator(store)

    assert aggregator.summaries(AS_OF) == []
    assert aggregator.summary_for(1, AS_OF).overdue_count == 1
    assert aggregator.summary_for(2, AS_OF).overdue_count == 1
    assert aggregator.is_eligible(1, AS_OF) is False


def test_aggregator_summary_reflects_payments_immediately() -> None:
    store = _store()
    first = store.add_billing(consumer_id=1, due_date=date(2026, 2, 1), total_amount="120.55")
    store.add_billing(consumer_id=1, due_date=date(2026, 3, 1), total_amount="79.45")
    aggregator = OverdueAggregator(store)

    [summary] = aggregator.summaries(AS_OF)
    assert summary.total_unpaid_amount == Decimal("200.00")
    assert aggregator.is_eligible(1, AS_OF) is True

    store.set_billing_paid(first.billing_id, True)

    assert aggregator.summaries(AS_OF) == []
    assert aggregator.is_eligible(1, AS_OF) is False


def test_summary_for_consumer_without_bills_is_zero() -> None:
    summary = OverdueAggregator(_store()).summary_for(2, AS_OF)

    assert summary.overdue_count == 0
    assert summary.total_unpaid_amount == Decimal("0.00")
    assert summary.latest_due_date is None


def test_local_today_falls_back_to_utc_for_unknown_zone() -> None:
    assert isinstance(local_today("Not/AZone"), date)
    assert isinstance(local_today("Asia/Manila"), date)
