"""Output helpers for the credit schedule command line.

This module renders schedules, totals and unprocessed periods as plain
tab-separated text. Amounts are printed with the precision they were rounded
to.
"""

from __future__ import annotations

from typing import Iterable

from .data_models import ScheduleItem, ScheduleResponse, Totals, UnprocessedPeriod


def print_totals(response: ScheduleResponse) -> None:
    """Print the credit summary and schedule totals."""
    totals: Totals = response.totals
    print("Summary")
    print("-" * 72)
    if response.number:
        print(f"Credit             : {response.number}")
    print(f"Method             : {response.method.value}")
    print(f"Principal          : {response.principal} {response.currency}")
    print(f"Total payments     : {totals.total_payments}")
    print(f"Total interest     : {totals.total_interest}")
    print(f"Overpayment        : {totals.overpayment}")
    if response.schedule:
        print(f"Periods            : {len(response.schedule)}")
        print(f"Final due date     : {response.schedule[-1].due_date.isoformat()}")
    print("-" * 72)


def print_schedule(schedule: Iterable[ScheduleItem]) -> None:
    """Print the payment schedule as a simple table.

    Deferment periods are marked in the last column.
    """
    headers = ["Period", "DueDate", "Principal", "Interest", "Total", "Balance", "Rate%", "Deferment"]
    print("\t".join(headers))
    for item in schedule:
        row = [
            str(item.period_number),
            item.due_date.isoformat(),
            str(item.principal_due),
            str(item.interest_due),
            str(item.total_due),
            str(item.remaining_balance),
            f"{item.average_rate * 100:.4f}",
            "Yes" if item.deferment else "No",
        ]
        print("\t".join(row))


def print_unprocessed(periods: Iterable[UnprocessedPeriod]) -> None:
    periods = list(periods)
    if not periods:
        print("No unprocessed periods.")
        return
    print("\t".join(["Period", "DueDate", "Principal", "Interest", "Total", "Status"]))
    for p in periods:
        print(
            "\t".join(
                [
                    str(p.period_number),
                    p.due_date.isoformat(),
                    str(p.principal_due),
                    str(p.interest_due),
                    str(p.total_due),
                    p.status.value,
                ]
            )
        )
