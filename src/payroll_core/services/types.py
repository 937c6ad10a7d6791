"""Pay run aggregate, pay calendars and payroll periods."""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from payroll_core.calculators.types import (
    ZERO,
    PayFrequency,
    PayRunItem,
    PayRunItemStatus,
)
from payroll_core.errors import ConfigurationError, PayRunItemNotFoundError
from payroll_core.services.state_machine import PayRunStatus


def _days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def _add_months(value: date, months: int, day: int | None = None) -> date:
    """Shift by whole months, clamping the day to the target month length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    target_day = day if day is not None else value.day
    return date(year, month, min(target_day, _days_in_month(year, month)))


class PeriodStatus(str, Enum):
    OPEN = "open"
    PROCESSING = "processing"
    CLOSED = "closed"


@dataclass(frozen=True)
class PayrollPeriod:
    """A concrete date range to be paid."""

    start_date: date
    end_date: date
    payment_date: date
    frequency: PayFrequency
    pay_calendar_id: UUID | None = None
    status: PeriodStatus = PeriodStatus.OPEN
    period_id: UUID = field(default_factory=uuid4)

    def __post_init__(self) -> None:
        if self.end_date < self.start_date:
            raise ConfigurationError(
                f"Period ends ({self.end_date}) before it starts ({self.start_date})"
            )

    def close(self) -> PayrollPeriod:
        return replace(self, status=PeriodStatus.CLOSED)


@dataclass(frozen=True)
class PayCalendar:
    """A named recurring pay schedule.

    ``pay_day`` is a day of the month for monthly, quarterly and annual
    calendars, and a weekday (0 = Monday) for weekly and biweekly ones.
    Semimonthly calendars pay on the 15th and the last day of the month.
    """

    name: str
    frequency: PayFrequency
    pay_day: int
    cutoff_day: int | None = None
    is_default: bool = False
    is_active: bool = True
    tenant_id: UUID | None = None
    calendar_id: UUID = field(default_factory=uuid4)

    def __post_init__(self) -> None:
        if self.frequency in (PayFrequency.WEEKLY, PayFrequency.BIWEEKLY):
            if not 0 <= self.pay_day <= 6:
                raise ConfigurationError(
                    f"Calendar '{self.name}' pay_day must be a weekday 0-6, got {self.pay_day}"
                )
        elif not 1 <= self.pay_day <= 31:
            raise ConfigurationError(
                f"Calendar '{self.name}' pay_day must be 1-31, got {self.pay_day}"
            )

    def next_pay_date(self, after: date) -> date:
        """First pay date strictly after ``after``."""
        if self.frequency in (PayFrequency.WEEKLY, PayFrequency.BIWEEKLY):
            days_ahead = (self.pay_day - after.weekday()) % 7 or 7
            return after + timedelta(days=days_ahead)

        if self.frequency == PayFrequency.SEMIMONTHLY:
            mid = date(after.year, after.month, 15)
            if after < mid:
                return mid
            month_end = date(after.year, after.month, _days_in_month(after.year, after.month))
            if after < month_end:
                return month_end
            return _add_months(after, 1, day=15)

        candidate = _add_months(after, 0, day=self.pay_day)
        if candidate <= after:
            step = {PayFrequency.QUARTERLY: 3, PayFrequency.ANNUALLY: 12}.get(self.frequency, 1)
            candidate = _add_months(after, step, day=self.pay_day)
        return candidate

    def period_dates(self, pay_date: date) -> tuple[date, date]:
        """Start and end dates of the period paid on ``pay_date``."""
        if self.frequency == PayFrequency.WEEKLY:
            return pay_date - timedelta(weeks=1), pay_date - timedelta(days=1)
        if self.frequency == PayFrequency.BIWEEKLY:
            return pay_date - timedelta(weeks=2), pay_date - timedelta(days=1)
        if self.frequency == PayFrequency.SEMIMONTHLY:
            if pay_date.day <= 15:
                return pay_date.replace(day=1), pay_date.replace(day=15)
            last = _days_in_month(pay_date.year, pay_date.month)
            return pay_date.replace(day=16), pay_date.replace(day=last)
        if self.frequency == PayFrequency.MONTHLY:
            return _add_months(pay_date, -1, day=self.pay_day) + timedelta(days=1), pay_date
        if self.frequency == PayFrequency.QUARTERLY:
            return _add_months(pay_date, -3, day=self.pay_day) + timedelta(days=1), pay_date
        return _add_months(pay_date, -12, day=self.pay_day) + timedelta(days=1), pay_date

    def build_period(self, pay_date: date) -> PayrollPeriod:
        start, end = self.period_dates(pay_date)
        return PayrollPeriod(
            start_date=start,
            end_date=end,
            payment_date=pay_date,
            frequency=self.frequency,
            pay_calendar_id=self.calendar_id,
        )


@dataclass
class PayRun:
    """One payroll execution batch and its items, keyed by employee."""

    tenant_id: UUID
    reference: str
    name: str
    period: PayrollPeriod
    pay_calendar_id: UUID | None = None
    pay_run_id: UUID = field(default_factory=uuid4)
    status: PayRunStatus = PayRunStatus.DRAFT
    items: dict[UUID, PayRunItem] = field(default_factory=dict)

    total_gross: Decimal = ZERO
    total_deductions: Decimal = ZERO
    total_net: Decimal = ZERO
    total_employer_cost: Decimal = ZERO
    employee_count: int = 0

    created_by: UUID | None = None
    created_at: datetime | None = None
    calculated_by: UUID | None = None
    calculated_at: datetime | None = None
    submitted_by: UUID | None = None
    submitted_at: datetime | None = None
    approved_by: UUID | None = None
    approved_at: datetime | None = None
    rejected_by: UUID | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    completed_by: UUID | None = None
    completed_at: datetime | None = None
    cancelled_by: UUID | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None

    # Optimistic concurrency token, bumped on every save
    version: int = 0

    @property
    def payroll_period_id(self) -> UUID:
        return self.period.period_id

    def get_item(self, item_id: UUID) -> PayRunItem:
        for item in self.items.values():
            if item.item_id == item_id:
                return item
        raise PayRunItemNotFoundError(self.pay_run_id, item_id=item_id)

    def item_for(self, user_id: UUID) -> PayRunItem | None:
        return self.items.get(user_id)

    def counted_items(self) -> list[PayRunItem]:
        return [item for item in self.items.values() if item.contributes_to_totals]

    def update_totals(self) -> None:
        """Recompute totals from calculated, non-excluded items."""
        counted = self.counted_items()
        self.total_gross = sum((i.gross_pay for i in counted), ZERO)
        self.total_deductions = sum((i.total_deductions for i in counted), ZERO)
        self.total_net = sum((i.net_pay for i in counted), ZERO)
        self.total_employer_cost = sum((i.total_employer_cost for i in counted), ZERO)
        self.employee_count = len(counted)

    def status_counts(self) -> dict[PayRunItemStatus, int]:
        counts = {status: 0 for status in PayRunItemStatus}
        for item in self.items.values():
            counts[item.status] += 1
        return counts


@dataclass(frozen=True)
class PayRunSummary:
    """Read-only overview of a pay run."""

    pay_run_id: UUID
    reference: str
    status: PayRunStatus
    period_start: date
    period_end: date
    payment_date: date
    employee_count: int
    item_counts: dict[str, int]
    total_gross: Decimal
    total_deductions: Decimal
    total_net: Decimal
    total_employer_cost: Decimal

    @classmethod
    def from_pay_run(cls, pay_run: PayRun) -> PayRunSummary:
        return cls(
            pay_run_id=pay_run.pay_run_id,
            reference=pay_run.reference,
            status=pay_run.status,
            period_start=pay_run.period.start_date,
            period_end=pay_run.period.end_date,
            payment_date=pay_run.period.payment_date,
            employee_count=pay_run.employee_count,
            item_counts={s.value: n for s, n in pay_run.status_counts().items()},
            total_gross=pay_run.total_gross,
            total_deductions=pay_run.total_deductions,
            total_net=pay_run.total_net,
            total_employer_cost=pay_run.total_employer_cost,
        )
