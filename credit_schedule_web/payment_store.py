"""Persistence of credits, rate histories and payments for the web API.

The store keeps the records the schedule engine reads: credits, their rate
entries, their principal adjustments and the payments already created for
their periods. It defaults to
SQLite for local development, but accepts any SQLAlchemy-compatible URL
(e.g. PostgreSQL).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from credit_schedule.config import DEFAULT_DATABASE_URL
from credit_schedule.data_models import (
    BulkPaymentItem,
    CalculationMethod,
    Credit,
    CreditStatus,
    Payment,
    PaymentStatus,
    PrincipalAdjustment,
    RateEntry,
)
from credit_schedule.exceptions import CreditNotFoundError, PaymentNotFoundError

Base = declarative_base()


class DecimalString(TypeDecorator):
    """Stores ``Decimal`` values as text so no precision is lost in SQLite."""

    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else Decimal(value)


class CreditModel(Base):
    __tablename__ = "credits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    number = Column(String(64), index=True, nullable=False, default="")
    principal = Column(DecimalString, nullable=False)
    currency = Column(String(3), nullable=False)
    method = Column(String(32), nullable=False)
    start_date = Column(Date, nullable=False)
    payment_day = Column(Integer, nullable=False)
    term_months = Column(Integer, nullable=False)
    deferment_months = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default=CreditStatus.ACTIVE.value)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    rates = relationship("RateModel", cascade="all, delete-orphan", order_by="RateModel.effective_date")
    adjustments = relationship(
        "AdjustmentModel", cascade="all, delete-orphan", order_by="AdjustmentModel.effective_date"
    )
    payments = relationship("PaymentModel", cascade="all, delete-orphan", order_by="PaymentModel.period_number")


class RateModel(Base):
    __tablename__ = "credit_rates"
    __table_args__ = (UniqueConstraint("credit_id", "effective_date"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    credit_id = Column(Integer, ForeignKey("credits.id"), index=True, nullable=False)
    rate = Column(DecimalString, nullable=False)
    effective_date = Column(Date, nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AdjustmentModel(Base):
    __tablename__ = "principal_adjustments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    credit_id = Column(Integer, ForeignKey("credits.id"), index=True, nullable=False)
    amount = Column(DecimalString, nullable=False)
    effective_date = Column(Date, nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class PaymentModel(Base):
    __tablename__ = "credit_payments"
    __table_args__ = (UniqueConstraint("credit_id", "period_number", "recalculated_version"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    credit_id = Column(Integer, ForeignKey("credits.id"), index=True, nullable=False)
    period_number = Column(Integer, nullable=False)
    due_date = Column(Date, nullable=False)
    principal_due = Column(DecimalString, nullable=False)
    interest_due = Column(DecimalString, nullable=False)
    total_due = Column(DecimalString, nullable=False)
    status = Column(String(16), nullable=False, default=PaymentStatus.SCHEDULED.value)
    recalculated_version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class PaymentStore:
    """Database-backed store of credits and their payments."""

    def __init__(self, url: str) -> None:
        self._engine = create_engine(url, future=True)
        Base.metadata.create_all(self._engine)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)

    def add_credit(
        self, credit: Credit, rates: Iterable[RateEntry], adjustments: Iterable[PrincipalAdjustment] = ()
    ) -> int:
        row = CreditModel()
        self._copy_credit(credit, row)
        row.rates = [self._rate_row(entry) for entry in rates]
        row.adjustments = [self._adjustment_row(a) for a in adjustments]
        with self._session_factory() as session:
            session.add(row)
            session.commit()
            return row.id

    def get_credit(self, credit_id: int) -> Credit:
        with self._session_factory() as session:
            return self._to_credit(self._credit_row(session, credit_id))

    def update_credit(self, credit_id: int, credit: Credit, rates: Optional[Iterable[RateEntry]] = None) -> None:
        with self._session_factory() as session:
            row = self._credit_row(session, credit_id)
            self._copy_credit(credit, row)
            if rates is not None:
                row.rates.clear()
                session.flush()
                row.rates.extend(self._rate_row(entry) for entry in rates)
            session.commit()

    def list_rates(self, credit_id: int) -> List[RateEntry]:
        with self._session_factory() as session:
            return [self._to_rate(r) for r in self._credit_row(session, credit_id).rates]

    def add_rate(self, credit_id: int, entry: RateEntry) -> None:
        with self._session_factory() as session:
            row = self._credit_row(session, credit_id)
            row.rates.append(self._rate_row(entry))
            session.commit()

    def list_adjustments(self, credit_id: int) -> List[PrincipalAdjustment]:
        with self._session_factory() as session:
            return [self._to_adjustment(a) for a in self._credit_row(session, credit_id).adjustments]

    def add_adjustment(self, credit_id: int, adjustment: PrincipalAdjustment) -> None:
        with self._session_factory() as session:
            row = self._credit_row(session, credit_id)
            row.adjustments.append(self._adjustment_row(adjustment))
            session.commit()

    def list_payments(self, credit_id: int) -> List[Payment]:
        with self._session_factory() as session:
            return [self._to_payment(p) for p in self._credit_row(session, credit_id).payments]

    def load_snapshot(
        self, credit_id: int
    ) -> Tuple[Credit, List[RateEntry], List[Payment], List[PrincipalAdjustment]]:
        """Read a credit with its rates, payments and adjustments in one session."""
        with self._session_factory() as session:
            row = self._credit_row(session, credit_id)
            return (
                self._to_credit(row),
                [self._to_rate(r) for r in row.rates],
                [self._to_payment(p) for p in row.payments],
                [self._to_adjustment(a) for a in row.adjustments],
            )

    def create_payments(
        self,
        credit_id: int,
        items: Iterable[BulkPaymentItem],
        status: PaymentStatus = PaymentStatus.SCHEDULED,
    ) -> int:
        """Insert payments for ``items`` and return how many were created.

        Periods that already have a settled payment are skipped. A period
        whose earlier payments were all canceled gets a new version.
        """
        created = 0
        with self._session_factory() as session:
            row = self._credit_row(session, credit_id)
            versions = {}
            settled = set()
            for p in row.payments:
                versions[p.period_number] = max(versions.get(p.period_number, 0), p.recalculated_version)
                if PaymentStatus.parse(p.status) != PaymentStatus.CANCELED:
                    settled.add(p.period_number)
            for item in items:
                if item.period_number in settled:
                    continue
                version = versions.get(item.period_number, 0) + 1
                session.add(
                    PaymentModel(
                        credit_id=credit_id,
                        period_number=item.period_number,
                        due_date=item.due_date,
                        principal_due=item.principal_due,
                        interest_due=item.interest_due,
                        total_due=item.total_due,
                        status=status.value,
                        recalculated_version=version,
                    )
                )
                settled.add(item.period_number)
                versions[item.period_number] = version
                created += 1
            session.commit()
        return created

    def set_payment_status(self, credit_id: int, period_number: int, status: PaymentStatus) -> None:
        """Change the status of the latest payment recorded for a period."""
        with self._session_factory() as session:
            payment = session.execute(
                select(PaymentModel)
                .where(PaymentModel.credit_id == credit_id, PaymentModel.period_number == period_number)
                .order_by(PaymentModel.recalculated_version.desc())
            ).scalars().first()
            if payment is None:
                raise PaymentNotFoundError(credit_id, period_number)
            payment.status = status.value
            session.commit()

    @staticmethod
    def _credit_row(session, credit_id: int) -> CreditModel:
        row = session.get(CreditModel, credit_id)
        if row is None:
            raise CreditNotFoundError(credit_id)
        return row

    @staticmethod
    def _copy_credit(credit: Credit, row: CreditModel) -> None:
        row.number = credit.number
        row.principal = credit.principal
        row.currency = credit.currency
        row.method = credit.method.value
        row.start_date = credit.start_date
        row.payment_day = credit.payment_day
        row.term_months = credit.term_months
        row.deferment_months = credit.deferment_months
        row.status = credit.status.value
        row.notes = credit.notes

    @staticmethod
    def _rate_row(entry: RateEntry) -> RateModel:
        return RateModel(rate=entry.rate, effective_date=entry.effective_date, note=entry.note)

    @staticmethod
    def _adjustment_row(adjustment: PrincipalAdjustment) -> AdjustmentModel:
        return AdjustmentModel(amount=adjustment.amount, effective_date=adjustment.effective_date, note=adjustment.note)

    @staticmethod
    def _to_credit(row: CreditModel) -> Credit:
        return Credit(
            number=row.number,
            principal=row.principal,
            currency=row.currency,
            method=CalculationMethod.parse(row.method),
            start_date=row.start_date,
            payment_day=row.payment_day,
            term_months=row.term_months,
            deferment_months=row.deferment_months,
            status=CreditStatus(row.status),
            notes=row.notes,
        )

    @staticmethod
    def _to_rate(row: RateModel) -> RateEntry:
        return RateEntry(rate=row.rate, effective_date=row.effective_date, note=row.note)

    @staticmethod
    def _to_adjustment(row: AdjustmentModel) -> PrincipalAdjustment:
        return PrincipalAdjustment(amount=row.amount, effective_date=row.effective_date, note=row.note)

    @staticmethod
    def _to_payment(row: PaymentModel) -> Payment:
        return Payment(
            period_number=row.period_number,
            due_date=row.due_date,
            principal_due=row.principal_due,
            interest_due=row.interest_due,
            total_due=row.total_due,
            status=PaymentStatus.parse(row.status),
        )


def create_store_from_env(url: str | None) -> PaymentStore:
    return PaymentStore(url or DEFAULT_DATABASE_URL)
