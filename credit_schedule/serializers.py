"""Conversion between the engine's dataclasses and JSON-ready dictionaries.

Requests use camelCase keys (``startDate``, ``termMonths``); snake_case
spellings are accepted too. Rates are fractions at this boundary, dates are
ISO calendar dates and method names are normalized here, so the rest of the
engine only ever sees ``CalculationMethod`` members.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .config import DEFAULT_CURRENCY, DEFAULT_PAYMENT_DAY
from .data_models import (
    AmendmentPolicy,
    BulkPaymentItem,
    CalculationMethod,
    Credit,
    CreditStatus,
    Payment,
    PaymentStatus,
    PrincipalAdjustment,
    RateEntry,
    ScheduleItem,
    ScheduleResponse,
    Totals,
    UnprocessedPeriod,
)
from .exceptions import ValidationError
from .utils import parse_iso_date, to_decimal

_MISSING = object()


def _get(data: Mapping[str, Any], *keys: str, default: Any = _MISSING) -> Any:
    """Return the first of ``keys`` present in ``data``."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    if default is _MISSING:
        raise ValidationError(f"Missing required field '{keys[0]}'", {"field": keys[0]})
    return default


def _decimal_field(data: Mapping[str, Any], *keys: str, default: Any = _MISSING) -> Decimal:
    value = _get(data, *keys, default=default)
    try:
        return to_decimal(value)
    except ValueError as exc:
        raise ValidationError(str(exc), {"field": keys[0]}) from exc


def _int_field(data: Mapping[str, Any], *keys: str, default: Any = _MISSING) -> int:
    value = _get(data, *keys, default=default)
    try:
        number = to_decimal(value)
    except ValueError as exc:
        raise ValidationError(str(exc), {"field": keys[0]}) from exc
    if number != number.to_integral_value():
        raise ValidationError(f"Field '{keys[0]}' must be a whole number", {"field": keys[0]})
    return int(number)


def _date_field(data: Mapping[str, Any], *keys: str, default: Any = _MISSING):
    value = _get(data, *keys, default=default)
    if value is None:
        return None
    try:
        return parse_iso_date(value)
    except ValueError as exc:
        raise ValidationError(str(exc), {"field": keys[0]}) from exc


def _credit_status(value: Any) -> CreditStatus:
    try:
        return CreditStatus(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown credit status: {value!r}", {"status": value}) from None


def _money(value: Decimal) -> float:
    return float(value)


def rate_from_dict(data: Mapping[str, Any]) -> RateEntry:
    """Parse ``{rate, effectiveDate, note}``; ``rate`` is a fraction."""
    return RateEntry(
        rate=_decimal_field(data, "rate"),
        effective_date=_date_field(data, "effectiveDate", "effective_date"),
        note=_get(data, "note", "notes", default=None),
    )


def rates_from_dicts(items: Iterable[Mapping[str, Any]]) -> List[RateEntry]:
    return [rate_from_dict(item) for item in items]


def adjustment_from_dict(data: Mapping[str, Any]) -> PrincipalAdjustment:
    """Parse ``{amount, effectiveDate, note}``; a negative amount reduces the principal."""
    return PrincipalAdjustment(
        amount=_decimal_field(data, "amount"),
        effective_date=_date_field(data, "effectiveDate", "effective_date"),
        note=_get(data, "note", "notes", default=None),
    )


def adjustments_from_dicts(items: Any) -> List[PrincipalAdjustment]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValidationError("adjustments must be an array", {"field": "adjustments"})
    return [adjustment_from_dict(item) for item in items]


def credit_from_dict(data: Mapping[str, Any]) -> Tuple[Credit, List[RateEntry]]:
    """Parse a credit-like request into a ``Credit`` and its rate entries.

    Classic credits may give a single top-level ``rate``; it becomes the
    synthetic entry dated at the start date. Floating credits give a
    ``rates`` array.
    """
    credit = Credit(
        number=str(_get(data, "number", "contractNumber", "contract_number", default="")),
        principal=_decimal_field(data, "principal"),
        currency=str(_get(data, "currency", "currencyCode", "currency_code", default=DEFAULT_CURRENCY)).upper(),
        method=CalculationMethod.parse(_get(data, "method", "calculationMethod", "calculation_method")),
        start_date=_date_field(data, "startDate", "start_date"),
        payment_day=_int_field(data, "paymentDay", "payment_day", default=DEFAULT_PAYMENT_DAY),
        term_months=_int_field(data, "termMonths", "term_months"),
        deferment_months=_int_field(data, "defermentMonths", "deferment_months", default=0),
        status=_credit_status(_get(data, "status", default=CreditStatus.ACTIVE.value)),
        notes=_get(data, "notes", default=None),
    )
    raw_rates = _get(data, "rates", default=None)
    if raw_rates:
        rates = rates_from_dicts(raw_rates)
    elif _get(data, "rate", default=None) is not None:
        rates = [RateEntry(rate=_decimal_field(data, "rate"), effective_date=credit.start_date)]
    else:
        raise ValidationError("A rate or a rates array is required", {"method": credit.method.value})
    if not credit.method.is_floating:
        rates = sorted(rates, key=lambda r: r.effective_date)[:1]
    return credit, rates


def changes_from_dict(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Parse a partial credit update into typed field values."""
    parsers = {
        "number": ("number", lambda d, *k: str(_get(d, *k))),
        "principal": ("principal", _decimal_field),
        "currency": ("currency", lambda d, *k: str(_get(d, *k)).upper()),
        "method": ("method", lambda d, *k: CalculationMethod.parse(_get(d, *k))),
        "calculationMethod": ("method", lambda d, *k: CalculationMethod.parse(_get(d, *k))),
        "startDate": ("start_date", _date_field),
        "start_date": ("start_date", _date_field),
        "paymentDay": ("payment_day", _int_field),
        "payment_day": ("payment_day", _int_field),
        "termMonths": ("term_months", _int_field),
        "term_months": ("term_months", _int_field),
        "defermentMonths": ("deferment_months", _int_field),
        "deferment_months": ("deferment_months", _int_field),
        "notes": ("notes", lambda d, *k: d.get(k[0])),
        "rates": ("rates", lambda d, *k: rates_from_dicts(_get(d, *k))),
    }
    changes: Dict[str, Any] = {}
    for key in data:
        if key not in parsers:
            raise ValidationError(f"Unknown credit field '{key}'", {"field": key})
        name, parse = parsers[key]
        changes[name] = parse(data, key)
    return changes


def payment_from_dict(data: Mapping[str, Any]) -> Payment:
    principal = _decimal_field(data, "principalDue", "principal_due", default="0")
    interest = _decimal_field(data, "interestDue", "interest_due", default="0")
    return Payment(
        period_number=_int_field(data, "periodNumber", "period_number"),
        due_date=_date_field(data, "dueDate", "due_date"),
        principal_due=principal,
        interest_due=interest,
        total_due=_decimal_field(data, "totalDue", "total_due", default=principal + interest),
        status=PaymentStatus.parse(_get(data, "status", default=PaymentStatus.SCHEDULED.value)),
    )


def bulk_item_from_dict(data: Mapping[str, Any]) -> BulkPaymentItem:
    """Parse a bulk-creation entry, rejecting negative amounts."""
    item = BulkPaymentItem(
        period_number=_int_field(data, "periodNumber", "period_number"),
        due_date=_date_field(data, "dueDate", "due_date"),
        principal_due=_decimal_field(data, "principalDue", "principal_due"),
        interest_due=_decimal_field(data, "interestDue", "interest_due"),
        total_due=_decimal_field(data, "totalDue", "total_due"),
    )
    if min(item.principal_due, item.interest_due, item.total_due) < 0:
        raise ValidationError("Payment amounts cannot be negative", {"period": item.period_number})
    return item


def schedule_item_to_dict(item: ScheduleItem) -> Dict[str, Any]:
    data = {
        "periodNumber": item.period_number,
        "dueDate": item.due_date.isoformat(),
        "principalDue": _money(item.principal_due),
        "interestDue": _money(item.interest_due),
        "totalDue": _money(item.total_due),
        "remainingBalance": _money(item.remaining_balance),
        "averageRate": float(item.average_rate),
    }
    if item.principal_adjustment:
        data["principalAdjustment"] = _money(item.principal_adjustment)
    return data


def totals_to_dict(totals: Totals) -> Dict[str, Any]:
    return {
        "totalPayments": _money(totals.total_payments),
        "totalInterest": _money(totals.total_interest),
        "overpayment": _money(totals.overpayment),
    }


def schedule_response_to_dict(response: ScheduleResponse, credit_id: Optional[int] = None) -> Dict[str, Any]:
    loan: Dict[str, Any] = {
        "number": response.number,
        "principal": _money(response.principal),
        "calculationMethod": response.method.value,
        "currency": response.currency,
    }
    if credit_id is not None:
        loan["id"] = credit_id
    return {
        "loan": loan,
        "schedule": [schedule_item_to_dict(item) for item in response.schedule],
        "totals": totals_to_dict(response.totals),
    }


def unprocessed_to_dict(period: UnprocessedPeriod) -> Dict[str, Any]:
    return {
        "periodNumber": period.period_number,
        "dueDate": period.due_date.isoformat(),
        "principalDue": _money(period.principal_due),
        "interestDue": _money(period.interest_due),
        "totalDue": _money(period.total_due),
        "remainingBalance": _money(period.remaining_balance),
        "status": period.status.value,
    }


def bulk_item_to_dict(item: BulkPaymentItem) -> Dict[str, Any]:
    return {
        "periodNumber": item.period_number,
        "dueDate": item.due_date.isoformat(),
        "principalDue": _money(item.principal_due),
        "interestDue": _money(item.interest_due),
        "totalDue": _money(item.total_due),
    }


def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        "periodNumber": payment.period_number,
        "dueDate": payment.due_date.isoformat(),
        "principalDue": _money(payment.principal_due),
        "interestDue": _money(payment.interest_due),
        "totalDue": _money(payment.total_due),
        "status": payment.status.value,
    }


def rate_to_dict(entry: RateEntry) -> Dict[str, Any]:
    return {
        "rate": float(entry.rate),
        "effectiveDate": entry.effective_date.isoformat(),
        "note": entry.note,
    }


def adjustment_to_dict(adjustment: PrincipalAdjustment) -> Dict[str, Any]:
    return {
        "amount": _money(adjustment.amount),
        "effectiveDate": adjustment.effective_date.isoformat(),
        "note": adjustment.note,
    }


def credit_to_dict(credit: Credit, credit_id: Optional[int] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "number": credit.number,
        "principal": _money(credit.principal),
        "currency": credit.currency,
        "method": credit.method.value,
        "startDate": credit.start_date.isoformat(),
        "paymentDay": credit.payment_day,
        "termMonths": credit.term_months,
        "defermentMonths": credit.deferment_months,
        "status": credit.status.value,
        "notes": credit.notes,
    }
    if credit_id is not None:
        data["id"] = credit_id
    return data


def policy_to_dict(policy: AmendmentPolicy) -> Dict[str, Any]:
    return {
        "locked": policy.locked,
        "settledPeriods": policy.settled_periods,
        "editableFields": sorted(policy.editable_fields),
        "lockedFields": sorted(policy.locked_fields),
        "settledThrough": policy.settled_through.isoformat() if policy.settled_through else None,
    }
