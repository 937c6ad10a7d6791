"""Pay run persistence: atomic load/save of a pay run with its items."""

from __future__ import annotations

import copy
from datetime import date
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payroll_core.calculators.line_builder import DEFAULT_MINOR_UNIT, round_money
from payroll_core.calculators.types import (
    BandTax,
    DeductionCategory,
    DeductionLine,
    EarningCategory,
    EarningLine,
    EmployerContributionLine,
    PayFrequency,
    PayRunItem,
    PayRunItemStatus,
    ReliefApplied,
    TaxComputation,
    TaxHandling,
)
from payroll_core.database import get_session
from payroll_core.errors import ConcurrentModificationError, PayRunNotFoundError
from payroll_core.models import (
    PayCalendarRecord,
    PayrollPeriodRecord,
    PayRunItemRecord,
    PayRunRecord,
)
from payroll_core.services.state_machine import PayRunStatus
from payroll_core.services.types import PayCalendar, PayrollPeriod, PayRun, PeriodStatus

REFERENCE_PREFIX = "PR"


def format_reference(on: date, sequence: int) -> str:
    """Pay run reference, e.g. PR-20250131-0001."""
    return f"{REFERENCE_PREFIX}-{on.strftime('%Y%m%d')}-{sequence:04d}"


@runtime_checkable
class PayRunRepository(Protocol):
    """Persistence boundary for pay runs.

    ``save`` is atomic and optimistic: it fails with
    ConcurrentModificationError when the stored version differs from the
    version the caller loaded.
    """

    async def get(self, pay_run_id: UUID) -> PayRun:
        ...

    async def add(self, pay_run: PayRun) -> PayRun:
        ...

    async def save(self, pay_run: PayRun) -> PayRun:
        ...

    async def find_open_for_period(self, tenant_id: UUID, period: PayrollPeriod) -> PayRun | None:
        """A non-cancelled pay run of the tenant whose period shares a day with ``period``."""
        ...

    async def next_reference(self, tenant_id: UUID, on: date) -> str:
        ...

    async def add_calendar(self, pay_calendar: PayCalendar) -> PayCalendar:
        ...

    async def get_calendar(self, calendar_id: UUID) -> PayCalendar | None:
        ...


def _overlaps(a: PayrollPeriod, b: PayrollPeriod) -> bool:
    return a.start_date <= b.end_date and a.end_date >= b.start_date


class InMemoryPayRunRepository:
    """Dictionary-backed repository. Stores and returns deep copies."""

    def __init__(self) -> None:
        self._runs: dict[UUID, PayRun] = {}
        self._calendars: dict[UUID, PayCalendar] = {}

    async def get(self, pay_run_id: UUID) -> PayRun:
        stored = self._runs.get(pay_run_id)
        if stored is None:
            raise PayRunNotFoundError(pay_run_id)
        return copy.deepcopy(stored)

    async def add(self, pay_run: PayRun) -> PayRun:
        pay_run.version = 1
        self._runs[pay_run.pay_run_id] = copy.deepcopy(pay_run)
        return pay_run

    async def save(self, pay_run: PayRun) -> PayRun:
        stored = self._runs.get(pay_run.pay_run_id)
        if stored is None:
            raise PayRunNotFoundError(pay_run.pay_run_id)
        if stored.version != pay_run.version:
            raise ConcurrentModificationError(pay_run.pay_run_id, pay_run.version)
        pay_run.version += 1
        self._runs[pay_run.pay_run_id] = copy.deepcopy(pay_run)
        return pay_run

    async def find_open_for_period(self, tenant_id: UUID, period: PayrollPeriod) -> PayRun | None:
        for run in self._runs.values():
            if (
                run.tenant_id == tenant_id
                and run.status != PayRunStatus.CANCELLED
                and _overlaps(run.period, period)
            ):
                return copy.deepcopy(run)
        return None

    async def next_reference(self, tenant_id: UUID, on: date) -> str:
        prefix = format_reference(on, 0)[:-4]
        count = sum(
            1
            for run in self._runs.values()
            if run.tenant_id == tenant_id and run.reference.startswith(prefix)
        )
        return format_reference(on, count + 1)

    async def add_calendar(self, pay_calendar: PayCalendar) -> PayCalendar:
        self._calendars[pay_calendar.calendar_id] = pay_calendar
        return pay_calendar

    async def get_calendar(self, calendar_id: UUID) -> PayCalendar | None:
        return self._calendars.get(calendar_id)


# ===== Breakdown codec =====


def _opt_str(value: Any) -> str | None:
    return str(value) if value is not None else None


def _opt_dec(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def item_breakdown(item: PayRunItem) -> dict[str, Any]:
    """JSON-safe breakdown of an item's lines and tax working."""
    tax = item.tax
    return {
        "earning_lines": [
            {
                "code": line.code,
                "name": line.name,
                "category": line.category.value,
                "amount": str(line.amount),
                "is_taxable": line.is_taxable,
                "is_pensionable": line.is_pensionable,
                "source": line.source,
                "quantity": _opt_str(line.quantity),
                "rate": _opt_str(line.rate),
            }
            for line in item.earning_lines
        ],
        "deduction_lines": [
            {
                "code": line.code,
                "name": line.name,
                "category": line.category.value,
                "amount": str(line.amount),
                "calculated_amount": str(line.calculated_amount),
                "priority": line.priority,
                "is_pre_tax": line.is_pre_tax,
                "is_statutory": line.is_statutory,
                "clamps": list(line.clamps),
                "deduction_id": _opt_str(line.deduction_id),
            }
            for line in item.deduction_lines
        ],
        "employer_contributions": [
            {
                "code": line.code,
                "name": line.name,
                "rate": str(line.rate),
                "base": str(line.base),
                "amount": str(line.amount),
            }
            for line in item.employer_contributions
        ],
        "tax": None
        if tax is None
        else {
            "handling": tax.handling.value,
            "periods_per_year": tax.periods_per_year,
            "annual_taxable_gross": str(tax.annual_taxable_gross),
            "annual_reliefs": str(tax.annual_reliefs),
            "annual_taxable_income": str(tax.annual_taxable_income),
            "annual_tax": str(tax.annual_tax),
            "period_taxable_income": str(tax.period_taxable_income),
            "period_tax": str(tax.period_tax),
            "reliefs_applied": [
                {"code": r.code, "name": r.name, "amount": str(r.amount)}
                for r in tax.reliefs_applied
            ],
            "band_breakdown": [
                {
                    "lower_bound": str(b.lower_bound),
                    "upper_bound": _opt_str(b.upper_bound),
                    "rate": str(b.rate),
                    "taxable_amount": str(b.taxable_amount),
                    "tax": str(b.tax),
                }
                for b in tax.band_breakdown
            ],
            "is_exempt": tax.is_exempt,
            "exemption_reason": tax.exemption_reason,
            "jurisdiction": tax.jurisdiction,
        },
    }


def restore_lines(
    breakdown: dict[str, Any],
) -> tuple[
    tuple[EarningLine, ...],
    tuple[DeductionLine, ...],
    tuple[EmployerContributionLine, ...],
    TaxComputation | None,
]:
    """Inverse of item_breakdown."""
    earnings = tuple(
        EarningLine(
            code=e["code"],
            name=e["name"],
            category=EarningCategory(e["category"]),
            amount=Decimal(e["amount"]),
            is_taxable=e["is_taxable"],
            is_pensionable=e["is_pensionable"],
            source=e["source"],
            quantity=_opt_dec(e["quantity"]),
            rate=_opt_dec(e["rate"]),
        )
        for e in breakdown.get("earning_lines", [])
    )
    deductions = tuple(
        DeductionLine(
            code=d["code"],
            name=d["name"],
            category=DeductionCategory(d["category"]),
            amount=Decimal(d["amount"]),
            calculated_amount=Decimal(d["calculated_amount"]),
            priority=d["priority"],
            is_pre_tax=d["is_pre_tax"],
            is_statutory=d["is_statutory"],
            clamps=tuple(d["clamps"]),
            deduction_id=UUID(d["deduction_id"]) if d["deduction_id"] else None,
        )
        for d in breakdown.get("deduction_lines", [])
    )
    employer = tuple(
        EmployerContributionLine(
            code=c["code"],
            name=c["name"],
            rate=Decimal(c["rate"]),
            base=Decimal(c["base"]),
            amount=Decimal(c["amount"]),
        )
        for c in breakdown.get("employer_contributions", [])
    )
    tax = None
    raw_tax = breakdown.get("tax")
    if raw_tax is not None:
        tax = TaxComputation(
            handling=TaxHandling(raw_tax["handling"]),
            periods_per_year=raw_tax["periods_per_year"],
            annual_taxable_gross=Decimal(raw_tax["annual_taxable_gross"]),
            annual_reliefs=Decimal(raw_tax["annual_reliefs"]),
            annual_taxable_income=Decimal(raw_tax["annual_taxable_income"]),
            annual_tax=Decimal(raw_tax["annual_tax"]),
            period_taxable_income=Decimal(raw_tax["period_taxable_income"]),
            period_tax=Decimal(raw_tax["period_tax"]),
            reliefs_applied=tuple(
                ReliefApplied(r["code"], r["name"], Decimal(r["amount"]))
                for r in raw_tax["reliefs_applied"]
            ),
            band_breakdown=tuple(
                BandTax(
                    lower_bound=Decimal(b["lower_bound"]),
                    upper_bound=_opt_dec(b["upper_bound"]),
                    rate=Decimal(b["rate"]),
                    taxable_amount=Decimal(b["taxable_amount"]),
                    tax=Decimal(b["tax"]),
                )
                for b in raw_tax["band_breakdown"]
            ),
            is_exempt=raw_tax["is_exempt"],
            exemption_reason=raw_tax["exemption_reason"],
            jurisdiction=raw_tax["jurisdiction"],
        )
    return earnings, deductions, employer, tax


# ===== SQLAlchemy =====


class SqlAlchemyPayRunRepository:
    """Async SQLAlchemy repository.

    Every call runs in its own transaction. ``save`` issues a conditional
    UPDATE on the version column and replaces the run's items, so a
    concurrent writer makes it fail without partial writes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        minor_unit: Decimal = DEFAULT_MINOR_UNIT,
    ):
        self._session_factory = session_factory
        self.minor_unit = minor_unit

    def _money(self, value: Decimal) -> Decimal:
        return round_money(Decimal(value), self.minor_unit)

    async def get(self, pay_run_id: UUID) -> PayRun:
        async with get_session(self._session_factory) as session:
            record = await session.get(PayRunRecord, pay_run_id)
            if record is None:
                raise PayRunNotFoundError(pay_run_id)
            return self._to_domain(record)

    async def add(self, pay_run: PayRun) -> PayRun:
        async with get_session(self._session_factory) as session:
            period_record = await session.get(PayrollPeriodRecord, pay_run.period.period_id)
            if period_record is None:
                session.add(self._period_record(pay_run.period))
            pay_run.version = 1
            record = PayRunRecord(pay_run_id=pay_run.pay_run_id, version=1)
            self._apply_run_fields(record, pay_run)
            record.items = [self._item_record(pay_run.pay_run_id, i) for i in pay_run.items.values()]
            session.add(record)
        return pay_run

    async def save(self, pay_run: PayRun) -> PayRun:
        async with get_session(self._session_factory) as session:
            result = await session.execute(
                update(PayRunRecord)
                .where(PayRunRecord.pay_run_id == pay_run.pay_run_id)
                .where(PayRunRecord.version == pay_run.version)
                .values(version=pay_run.version + 1, **self._run_values(pay_run))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                exists = await session.scalar(
                    select(func.count())
                    .select_from(PayRunRecord)
                    .where(PayRunRecord.pay_run_id == pay_run.pay_run_id)
                )
                if not exists:
                    raise PayRunNotFoundError(pay_run.pay_run_id)
                raise ConcurrentModificationError(pay_run.pay_run_id, pay_run.version)

            await session.execute(
                update(PayrollPeriodRecord)
                .where(PayrollPeriodRecord.period_id == pay_run.period.period_id)
                .values(status=pay_run.period.status.value)
            )
            await session.execute(
                delete(PayRunItemRecord).where(PayRunItemRecord.pay_run_id == pay_run.pay_run_id)
            )
            session.add_all(
                self._item_record(pay_run.pay_run_id, item) for item in pay_run.items.values()
            )
        pay_run.version += 1
        return pay_run

    async def find_open_for_period(self, tenant_id: UUID, period: PayrollPeriod) -> PayRun | None:
        async with get_session(self._session_factory) as session:
            result = await session.execute(
                select(PayRunRecord)
                .join(PayrollPeriodRecord)
                .where(PayRunRecord.tenant_id == tenant_id)
                .where(PayRunRecord.status != PayRunStatus.CANCELLED.value)
                .where(PayrollPeriodRecord.start_date <= period.end_date)
                .where(PayrollPeriodRecord.end_date >= period.start_date)
                .order_by(PayrollPeriodRecord.start_date)
            )
            record = result.unique().scalars().first()
            return self._to_domain(record) if record else None

    async def next_reference(self, tenant_id: UUID, on: date) -> str:
        prefix = format_reference(on, 0)[:-4]
        async with get_session(self._session_factory) as session:
            count = await session.scalar(
                select(func.count())
                .select_from(PayRunRecord)
                .where(PayRunRecord.tenant_id == tenant_id)
                .where(PayRunRecord.reference.like(f"{prefix}%"))
            )
        return format_reference(on, (count or 0) + 1)

    async def add_calendar(self, pay_calendar: PayCalendar) -> PayCalendar:
        async with get_session(self._session_factory) as session:
            session.add(
                PayCalendarRecord(
                    calendar_id=pay_calendar.calendar_id,
                    tenant_id=pay_calendar.tenant_id,
                    name=pay_calendar.name,
                    frequency=pay_calendar.frequency.value,
                    pay_day=pay_calendar.pay_day,
                    cutoff_day=pay_calendar.cutoff_day,
                    is_default=pay_calendar.is_default,
                    is_active=pay_calendar.is_active,
                )
            )
        return pay_calendar

    async def get_calendar(self, calendar_id: UUID) -> PayCalendar | None:
        async with get_session(self._session_factory) as session:
            record = await session.get(PayCalendarRecord, calendar_id)
            if record is None:
                return None
            return PayCalendar(
                name=record.name,
                frequency=PayFrequency(record.frequency),
                pay_day=record.pay_day,
                cutoff_day=record.cutoff_day,
                is_default=record.is_default,
                is_active=record.is_active,
                tenant_id=record.tenant_id,
                calendar_id=record.calendar_id,
            )

    # ===== Mapping =====

    @staticmethod
    def _period_record(period: PayrollPeriod) -> PayrollPeriodRecord:
        return PayrollPeriodRecord(
            period_id=period.period_id,
            pay_calendar_id=period.pay_calendar_id,
            start_date=period.start_date,
            end_date=period.end_date,
            payment_date=period.payment_date,
            frequency=period.frequency.value,
            status=period.status.value,
        )

    @staticmethod
    def _run_values(pay_run: PayRun) -> dict[str, Any]:
        return {
            "tenant_id": pay_run.tenant_id,
            "reference": pay_run.reference,
            "name": pay_run.name,
            "payroll_period_id": pay_run.period.period_id,
            "pay_calendar_id": pay_run.pay_calendar_id,
            "status": PayRunStatus(pay_run.status).value,
            "total_gross": pay_run.total_gross,
            "total_deductions": pay_run.total_deductions,
            "total_net": pay_run.total_net,
            "total_employer_cost": pay_run.total_employer_cost,
            "employee_count": pay_run.employee_count,
            "created_by": pay_run.created_by,
            "run_created_at": pay_run.created_at,
            "calculated_by": pay_run.calculated_by,
            "calculated_at": pay_run.calculated_at,
            "submitted_by": pay_run.submitted_by,
            "submitted_at": pay_run.submitted_at,
            "approved_by": pay_run.approved_by,
            "approved_at": pay_run.approved_at,
            "rejected_by": pay_run.rejected_by,
            "rejected_at": pay_run.rejected_at,
            "rejection_reason": pay_run.rejection_reason,
            "completed_by": pay_run.completed_by,
            "completed_at": pay_run.completed_at,
            "cancelled_by": pay_run.cancelled_by,
            "cancelled_at": pay_run.cancelled_at,
            "cancellation_reason": pay_run.cancellation_reason,
        }

    def _apply_run_fields(self, record: PayRunRecord, pay_run: PayRun) -> None:
        for key, value in self._run_values(pay_run).items():
            setattr(record, key, value)

    @staticmethod
    def _item_record(pay_run_id: UUID, item: PayRunItem) -> PayRunItemRecord:
        return PayRunItemRecord(
            item_id=item.item_id,
            pay_run_id=pay_run_id,
            user_id=item.user_id,
            status=item.status.value,
            basic_pay=item.basic_pay,
            gross_pay=item.gross_pay,
            taxable_income=item.taxable_income,
            total_deductions=item.total_deductions,
            net_pay=item.net_pay,
            employer_contributions_total=item.employer_contributions_total,
            total_employer_cost=item.total_employer_cost,
            exclusion_reason=item.exclusion_reason,
            error_message=item.error_message,
            fingerprint=item.fingerprint,
            breakdown=item_breakdown(item),
        )

    def _to_domain(self, record: PayRunRecord) -> PayRun:
        period_record = record.period
        period = PayrollPeriod(
            start_date=period_record.start_date,
            end_date=period_record.end_date,
            payment_date=period_record.payment_date,
            frequency=PayFrequency(period_record.frequency),
            pay_calendar_id=period_record.pay_calendar_id,
            status=PeriodStatus(period_record.status),
            period_id=period_record.period_id,
        )
        items: dict[UUID, PayRunItem] = {}
        for item_record in record.items:
            earnings, deductions, employer, tax = restore_lines(item_record.breakdown or {})
            items[item_record.user_id] = PayRunItem(
                user_id=item_record.user_id,
                item_id=item_record.item_id,
                status=PayRunItemStatus(item_record.status),
                basic_pay=self._money(item_record.basic_pay),
                gross_pay=self._money(item_record.gross_pay),
                taxable_income=self._money(item_record.taxable_income),
                total_deductions=self._money(item_record.total_deductions),
                net_pay=self._money(item_record.net_pay),
                employer_contributions_total=self._money(
                    item_record.employer_contributions_total
                ),
                total_employer_cost=self._money(item_record.total_employer_cost),
                earning_lines=earnings,
                deduction_lines=deductions,
                employer_contributions=employer,
                tax=tax,
                exclusion_reason=item_record.exclusion_reason,
                error_message=item_record.error_message,
                fingerprint=item_record.fingerprint,
            )
        return PayRun(
            tenant_id=record.tenant_id,
            reference=record.reference,
            name=record.name,
            period=period,
            pay_calendar_id=record.pay_calendar_id,
            pay_run_id=record.pay_run_id,
            status=PayRunStatus(record.status),
            items=dict(sorted(items.items(), key=lambda kv: str(kv[0]))),
            total_gross=self._money(record.total_gross),
            total_deductions=self._money(record.total_deductions),
            total_net=self._money(record.total_net),
            total_employer_cost=self._money(record.total_employer_cost),
            employee_count=record.employee_count,
            created_by=record.created_by,
            created_at=record.run_created_at,
            calculated_by=record.calculated_by,
            calculated_at=record.calculated_at,
            submitted_by=record.submitted_by,
            submitted_at=record.submitted_at,
            approved_by=record.approved_by,
            approved_at=record.approved_at,
            rejected_by=record.rejected_by,
            rejected_at=record.rejected_at,
            rejection_reason=record.rejection_reason,
            completed_by=record.completed_by,
            completed_at=record.completed_at,
            cancelled_by=record.cancelled_by,
            cancelled_at=record.cancelled_at,
            cancellation_reason=record.cancellation_reason,
            version=record.version,
        )
