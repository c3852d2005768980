"""Command-line interface for the credit schedule engine.

This module uses the ``click`` library to implement a multi-command
interface. Users can print full payment schedules, view totals only, or list
the periods that still lack a payment. Credits are described either with
options or with a JSON request file in the same shape the web API accepts.
"""

from __future__ import annotations

import json
import logging
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import click

from .config import DEFAULT_CURRENCY
from .data_models import CalculationMethod, Credit, Payment, PrincipalAdjustment, RateEntry, ScheduleResponse
from .engine import build_schedule_response
from .exceptions import ScheduleError
from .formatter import print_schedule, print_totals, print_unprocessed
from .reconciler import reconcile
from .serializers import (
    adjustments_from_dicts,
    credit_from_dict,
    payment_from_dict,
    schedule_response_to_dict,
    unprocessed_to_dict,
)
from .utils import parse_iso_date, to_decimal

METHOD_CHOICES = [m.value for m in CalculationMethod] + ["fixed", "floating"]


def parse_amount(value: str):
    """Parse a numeric string with optional suffixes.

    Accepts plain numbers ("500000") and shorthand with ``k``/``m`` suffixes
    (e.g., "500k" meaning 500_000). Returns a ``Decimal``.
    """
    value = value.strip().lower().replace(",", "")
    factor = 1
    if value.endswith("k"):
        factor = 1_000
        value = value[:-1]
    elif value.endswith("m"):
        factor = 1_000_000
        value = value[:-1]
    try:
        return to_decimal(value) * factor
    except ValueError:
        raise click.BadParameter(f"Invalid amount: {value}")


def parse_rate(value: str):
    """Parse a rate given as a fraction ("0.125") or a percentage ("12.5%", "12.5").

    The engine works with fractions; numbers above 1 are read as percentages.
    """
    value = value.strip()
    percent = value.endswith("%")
    if percent:
        value = value[:-1]
    try:
        rate = to_decimal(value)
    except ValueError:
        raise click.BadParameter(f"Invalid rate: {value}")
    if percent or rate > 1:
        rate = rate / 100
    return rate


def parse_date_option(value: str) -> date:
    try:
        return parse_iso_date(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc))


def parse_rate_change_strings(values: Tuple[str, ...]) -> List[RateEntry]:
    entries: List[RateEntry] = []
    for item in values:
        parts = item.split(":")
        if len(parts) != 2:
            raise click.BadParameter(f"Rate change must be in YYYY-MM-DD:RATE format; got {item}")
        day, rate = parts
        entries.append(RateEntry(rate=parse_rate(rate), effective_date=parse_date_option(day)))
    return entries


def parse_adjustment_strings(values: Tuple[str, ...]) -> List[PrincipalAdjustment]:
    adjustments: List[PrincipalAdjustment] = []
    for item in values:
        day, sep, amount = item.partition(":")
        if not sep:
            raise click.BadParameter(f"Adjustment must be in YYYY-MM-DD:AMOUNT format; got {item}")
        adjustments.append(PrincipalAdjustment(amount=parse_amount(amount), effective_date=parse_date_option(day)))
    return adjustments


def build_credit_from_options(
    input_path: Optional[str],
    number: Optional[str],
    principal: Optional[str],
    currency: str,
    method: str,
    rate: Optional[str],
    rate_change: Tuple[str, ...],
    adjustment: Tuple[str, ...],
    start_date: Optional[str],
    payment_day: Optional[int],
    term: Optional[int],
    deferment: int,
) -> Tuple[Credit, List[RateEntry], List[PrincipalAdjustment]]:
    """Build the credit, its rate entries and its principal adjustments from a JSON file or options."""
    if input_path:
        with Path(input_path).open("r", encoding="utf-8") as f:
            data = json.load(f)
        try:
            credit, rates = credit_from_dict(data)
            return credit, rates, adjustments_from_dicts(data.get("adjustments"))
        except ScheduleError as exc:
            raise click.ClickException(str(exc))

    for name, value in (("--principal", principal), ("--rate", rate), ("--start-date", start_date), ("--term", term)):
        if value is None:
            raise click.UsageError(f"Missing option {name} (or give --input)")
    start = parse_date_option(start_date)
    credit = Credit(
        number=number or "",
        principal=parse_amount(principal),
        currency=currency.upper(),
        method=CalculationMethod.parse(method),
        start_date=start,
        payment_day=payment_day if payment_day is not None else start.day,
        term_months=term,
        deferment_months=deferment,
    )
    rates = [RateEntry(rate=parse_rate(rate), effective_date=start)]
    if rate_change:
        if not credit.method.is_floating:
            raise click.BadParameter("Rate changes apply to floating methods only")
        rates.extend(parse_rate_change_strings(rate_change))
    return credit, rates, parse_adjustment_strings(adjustment)


def load_payments(path: Optional[str]) -> List[Payment]:
    if not path:
        return []
    with Path(path).open("r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("payments", [])
    try:
        return [payment_from_dict(item) for item in data]
    except ScheduleError as exc:
        raise click.ClickException(str(exc))


def export_to_json(path: Path, payload: Dict[str, Any]) -> None:
    with path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)


def credit_options(func):
    """Attach the options describing a credit to a command."""
    options = [
        click.option("--input", "-i", "input_path", type=click.Path(exists=True, dir_okay=False), help="Credit request JSON file"),
        click.option("--number", "-n", "number", help="Contract number"),
        click.option("--principal", "-p", "principal", help="Principal amount (500k, 1.2m accepted)"),
        click.option("--currency", "currency", default=DEFAULT_CURRENCY, show_default=True, help="Currency code"),
        click.option("--method", "-m", "method", type=click.Choice(METHOD_CHOICES, case_sensitive=False), default="classic_annuity", show_default=True, help="Calculation method"),
        click.option("--rate", "-r", "rate", help="Annual rate as a fraction (0.099) or percent (9.9%)"),
        click.option("--rate-change", "rate_change", multiple=True, help="Floating rate change in YYYY-MM-DD:RATE format"),
        click.option("--adjustment", "adjustment", multiple=True, help="Principal adjustment in YYYY-MM-DD:AMOUNT format (negative reduces)"),
        click.option("--start-date", "-s", "start_date", help="Credit start date (YYYY-MM-DD)"),
        click.option("--payment-day", "-d", "payment_day", type=int, help="Day of month payments fall due (defaults to the start day)"),
        click.option("--term", "-t", "term", type=int, help="Term in months"),
        click.option("--deferment", "deferment", type=int, default=0, show_default=True, help="Interest-only months at the start"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _compute(
    credit: Credit, rates: List[RateEntry], adjustments: List[PrincipalAdjustment], payments: List[Payment]
) -> ScheduleResponse:
    try:
        return build_schedule_response(credit, rates, payments, adjustments)
    except ScheduleError as exc:
        raise click.ClickException(str(exc))


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log engine details")
def cli(verbose: bool) -> None:
    """Payment schedules for annuity and differentiated credits."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@credit_options
@click.option("--payments", "payments_path", type=click.Path(exists=True, dir_okay=False), help="Recorded payments JSON; settled periods are kept as recorded")
@click.option("--output", "output", type=str, help="Output file path (.json)")
def schedule(payments_path: Optional[str], output: Optional[str], **options) -> None:
    """Compute and print the full payment schedule."""
    credit, rates, adjustments = build_credit_from_options(**options)
    response = _compute(credit, rates, adjustments, load_payments(payments_path))
    if output:
        path = Path(output)
        if path.suffix.lower() != ".json":
            raise click.BadParameter("Unsupported output format; use .json")
        export_to_json(path, schedule_response_to_dict(response))
        click.echo(f"Schedule exported to {path}")
    else:
        print_totals(response)
        print_schedule(response.schedule)


@cli.command()
@credit_options
def summary(**options) -> None:
    """Compute and print only the totals of a credit."""
    credit, rates, adjustments = build_credit_from_options(**options)
    print_totals(_compute(credit, rates, adjustments, []))


@cli.command()
@credit_options
@click.option("--payments", "payments_path", type=click.Path(exists=True, dir_okay=False), help="Recorded payments JSON")
@click.option("--today", "today", required=True, help="Reference date for overdue classification (YYYY-MM-DD)")
@click.option("--through", "through", help="Only list periods due on or before this date")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
def unprocessed(payments_path: Optional[str], today: str, through: Optional[str], as_json: bool, **options) -> None:
    """List schedule periods that have no recorded payment yet."""
    credit, rates, adjustments = build_credit_from_options(**options)
    payments = load_payments(payments_path)
    response = _compute(credit, rates, adjustments, payments)
    periods = reconcile(
        response.schedule,
        payments,
        parse_date_option(today),
        through=parse_date_option(through) if through else None,
    )
    if as_json:
        click.echo(json.dumps([unprocessed_to_dict(p) for p in periods], indent=2))
    else:
        print_unprocessed(periods)


if __name__ == "__main__":
    cli()
