"""Reconciliation of generated schedules against recorded payments.

A schedule period is *unprocessed* while no settled payment refers to its
period number. Unprocessed periods are classified as overdue or scheduled by
comparing their due date with ``today``, which callers always pass in.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Iterable, List, Mapping, Optional, Sequence

from .data_models import BulkPaymentItem, Payment, PaymentStatus, ScheduleItem, UnprocessedPeriod

logger = logging.getLogger(__name__)


def classify(due_date: date, today: date) -> PaymentStatus:
    """Overdue if the due date is strictly before ``today``, else scheduled."""
    return PaymentStatus.OVERDUE if due_date < today else PaymentStatus.SCHEDULED


def reconcile(
    schedule: Sequence[ScheduleItem],
    existing_payments: Iterable[Payment],
    today: date,
    upstream_statuses: Optional[Mapping[int, PaymentStatus]] = None,
    through: Optional[date] = None,
) -> List[UnprocessedPeriod]:
    """Return the schedule periods that have no settled payment yet.

    Parameters
    ----------
    schedule: Sequence[ScheduleItem]
        The generated schedule.
    existing_payments: Iterable[Payment]
        Payments already recorded. Canceled payments do not count.
    today: date
        The reference date for overdue classification.
    upstream_statuses: Mapping[int, PaymentStatus], optional
        Statuses reported by an upstream system, keyed by period number. A
        status other than scheduled takes precedence over the derived one.
    through: date, optional
        Only periods due on or before this date are returned.
    """
    processed = {p.period_number for p in existing_payments if p.is_settled}
    upstream_statuses = upstream_statuses or {}
    result: List[UnprocessedPeriod] = []
    for item in schedule:
        if item.period_number in processed:
            continue
        if through is not None and item.due_date > through:
            continue
        status = classify(item.due_date, today)
        upstream = upstream_statuses.get(item.period_number)
        if upstream is not None:
            upstream = PaymentStatus.parse(upstream)
            if upstream != PaymentStatus.SCHEDULED:
                status = upstream
        result.append(UnprocessedPeriod.from_item(item, status))
    logger.debug(
        "Reconciled %d periods against %d processed: %d unprocessed",
        len(schedule), len(processed), len(result),
    )
    return result


def prepare_bulk_creation(selected_periods: Iterable[UnprocessedPeriod]) -> List[BulkPaymentItem]:
    """Map selected periods to the payloads needed to create payments.

    The mapping is pure: the same input always yields the same payloads.
    Callers prevent duplicates by checking period numbers on insert.
    """
    return [
        BulkPaymentItem(
            period_number=p.period_number,
            due_date=p.due_date,
            principal_due=p.principal_due,
            interest_due=p.interest_due,
            total_due=p.total_due,
        )
        for p in selected_periods
    ]


def periods_due_on(schedule: Sequence[ScheduleItem], day: date) -> List[ScheduleItem]:
    """Schedule rows falling due exactly on ``day``."""
    return [item for item in schedule if item.due_date == day]
