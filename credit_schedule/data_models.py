"""Data models for the credit schedule engine.

This module defines the enums and dataclasses used by the engine: the credit
being scheduled, its rate entries, generated periods and schedule rows,
aggregate totals, recorded payments and the reconciliation results. Amounts
are ``Decimal`` and dates are ``datetime.date`` without a time of day.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import FrozenSet, List, Optional

from .config import DEFAULT_CURRENCY, MAX_PAYMENT_DAY, MIN_PAYMENT_DAY
from .exceptions import ValidationError


class CalculationMethod(str, Enum):
    """How principal and interest are spread over the periods of a credit."""

    CLASSIC_ANNUITY = "classic_annuity"
    CLASSIC_DIFFERENTIATED = "classic_differentiated"
    FLOATING_ANNUITY = "floating_annuity"
    FLOATING_DIFFERENTIATED = "floating_differentiated"

    @property
    def is_floating(self) -> bool:
        return self in (CalculationMethod.FLOATING_ANNUITY, CalculationMethod.FLOATING_DIFFERENTIATED)

    @property
    def is_annuity(self) -> bool:
        return self in (CalculationMethod.CLASSIC_ANNUITY, CalculationMethod.FLOATING_ANNUITY)

    @classmethod
    def parse(cls, value) -> "CalculationMethod":
        """Normalize a method name, including legacy aliases, to a member.

        ``"fixed"`` is the legacy name of the classic annuity and
        ``"floating"`` the legacy name of the floating annuity. Matching is
        case-insensitive.
        """
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        if text in _METHOD_ALIASES:
            return _METHOD_ALIASES[text]
        try:
            return cls(text)
        except ValueError:
            raise ValidationError(
                f"Unknown calculation method: {value!r}",
                {"method": value, "allowed": [m.value for m in cls]},
            ) from None


_METHOD_ALIASES = {
    "fixed": CalculationMethod.CLASSIC_ANNUITY,
    "floating": CalculationMethod.FLOATING_ANNUITY,
}


class CreditStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    OVERDUE = "overdue"


class PaymentStatus(str, Enum):
    SCHEDULED = "scheduled"
    PENDING = "pending"
    PAID = "paid"
    PARTIAL = "partial"
    OVERDUE = "overdue"
    CANCELED = "canceled"

    @classmethod
    def parse(cls, value) -> "PaymentStatus":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        if text == "cancelled":
            return cls.CANCELED
        if text == "completed":
            return cls.PAID
        try:
            return cls(text)
        except ValueError:
            raise ValidationError(
                f"Unknown payment status: {value!r}",
                {"status": value, "allowed": [s.value for s in cls]},
            ) from None


@dataclass
class Credit:
    """A bank credit to be scheduled.

    Attributes
    ----------
    principal: Decimal
        The amount borrowed, in ``currency``.
    method: CalculationMethod
        One of the four calculation methods.
    start_date: date
        Disbursement date. Interest accrues from this date.
    payment_day: int
        Day of month payments fall due (1-31, clamped in short months).
    term_months: int
        Total number of periods, deferment included.
    deferment_months: int
        Leading periods during which only interest is due.
    """

    principal: Decimal
    method: CalculationMethod
    start_date: date
    payment_day: int
    term_months: int
    deferment_months: int = 0
    currency: str = DEFAULT_CURRENCY
    number: str = ""
    status: CreditStatus = CreditStatus.ACTIVE
    notes: Optional[str] = None

    @property
    def amortizing_months(self) -> int:
        """Number of periods over which principal is repaid."""
        return self.term_months - self.deferment_months

    def validate(self) -> None:
        """Raise ``ValidationError`` if the credit terms are inconsistent."""
        if self.principal is None or self.principal <= 0:
            raise ValidationError("Principal must be positive", {"principal": str(self.principal)})
        if not isinstance(self.term_months, int) or self.term_months <= 0:
            raise ValidationError("Term must be a positive number of months", {"term_months": self.term_months})
        if not isinstance(self.payment_day, int) or not MIN_PAYMENT_DAY <= self.payment_day <= MAX_PAYMENT_DAY:
            raise ValidationError(
                f"Payment day must be between {MIN_PAYMENT_DAY} and {MAX_PAYMENT_DAY}",
                {"payment_day": self.payment_day},
            )
        if not isinstance(self.deferment_months, int) or self.deferment_months < 0:
            raise ValidationError("Deferment cannot be negative", {"deferment_months": self.deferment_months})
        if self.deferment_months >= self.term_months:
            raise ValidationError(
                "Deferment must leave at least one amortizing period",
                {"deferment_months": self.deferment_months, "term_months": self.term_months},
            )
        if not self.currency:
            raise ValidationError("Currency code is required")


@dataclass(frozen=True)
class RateEntry:
    """An annual interest rate taking effect on a date.

    ``rate`` is a fraction: ``Decimal("0.125")`` means 12.5 % a year.
    """

    rate: Decimal
    effective_date: date
    note: Optional[str] = None


@dataclass(frozen=True)
class PrincipalAdjustment:
    """A change of the outstanding principal taking effect on a date.

    Positive amounts add principal (a further disbursement), negative amounts
    repay part of it early. The adjustment belongs to the period whose
    interval ``(start, due]`` contains ``effective_date`` and is added to the
    balance before that period's interest is accrued.
    """

    amount: Decimal
    effective_date: date
    note: Optional[str] = None


@dataclass(frozen=True)
class Period:
    """One generated period.

    Interest for the period accrues from ``start_date`` up to, not including,
    ``due_date``.
    """

    number: int
    start_date: date
    due_date: date
    deferment: bool = False


@dataclass
class ScheduleItem:
    """A row of the payment schedule, rounded to the currency minor unit.

    ``principal_adjustment`` is the amount added to the balance in this
    period before interest and principal were worked out.
    """

    period_number: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    total_due: Decimal
    remaining_balance: Decimal
    average_rate: Decimal
    deferment: bool = False
    principal_adjustment: Decimal = Decimal("0")


@dataclass
class Totals:
    total_principal: Decimal
    total_interest: Decimal
    total_payments: Decimal
    overpayment: Decimal


@dataclass
class Payment:
    """A payment record kept by the surrounding system.

    The engine only reads payments. Any status other than canceled marks the
    period as settled.
    """

    period_number: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    total_due: Decimal
    status: PaymentStatus = PaymentStatus.SCHEDULED

    @property
    def is_settled(self) -> bool:
        return self.status != PaymentStatus.CANCELED


@dataclass
class UnprocessedPeriod:
    """A schedule row without a settled payment, with its derived status."""

    period_number: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    total_due: Decimal
    remaining_balance: Decimal
    status: PaymentStatus

    @classmethod
    def from_item(cls, item: ScheduleItem, status: PaymentStatus) -> "UnprocessedPeriod":
        return cls(
            period_number=item.period_number,
            due_date=item.due_date,
            principal_due=item.principal_due,
            interest_due=item.interest_due,
            total_due=item.total_due,
            remaining_balance=item.remaining_balance,
            status=status,
        )


@dataclass(frozen=True)
class BulkPaymentItem:
    """Minimal fields the persistence layer needs to create a payment."""

    period_number: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    total_due: Decimal


@dataclass
class ScheduleResponse:
    """A schedule together with the credit it belongs to and its totals."""

    number: str
    principal: Decimal
    method: CalculationMethod
    currency: str
    schedule: List[ScheduleItem]
    totals: Totals


@dataclass(frozen=True)
class AmendmentPolicy:
    """Which credit fields may still change.

    ``locked`` is True once any settled payment exists; from then on the
    fields in ``locked_fields`` are read-only.
    ``settled_through`` is the due date of the last settled period; rate
    entries and principal adjustments dated on or before it cannot change.
    """

    locked: bool
    settled_periods: int
    editable_fields: FrozenSet[str] = field(default_factory=frozenset)
    locked_fields: FrozenSet[str] = field(default_factory=frozenset)
    settled_through: Optional[date] = None
