"""Pay run service - orchestrates calculation and the approval lifecycle."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from payroll_core.calculators.calculator import EmployeeInputs, PayRunItemCalculator, PeriodContext
from payroll_core.calculators.catalog import CatalogSnapshot
from payroll_core.calculators.types import ZERO, PayRunItem, PayRunItemStatus, TaxTable
from payroll_core.config import Settings, get_settings
from payroll_core.errors import (
    BatchCalculationError,
    CalculationTimeoutError,
    ConfigurationError,
    DuplicatePayRunError,
    EmployeeCalculationError,
    InvalidTransitionError,
    PayRunItemNotFoundError,
)
from payroll_core.services.audit import AuditRecord, AuditTrail
from payroll_core.services.providers import (
    CatalogProvider,
    EmployeeDataProvider,
    PayslipPublisher,
    TaxTableProvider,
    YearToDateLedger,
)
from payroll_core.services.repository import PayRunRepository
from payroll_core.services.state_machine import (
    PayRunAction,
    PayRunStateMachine,
    PayRunStatus,
    transition,
)
from payroll_core.services.types import PayrollPeriod, PayRun, PayRunSummary

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PayRunService:
    """Service for managing the pay run lifecycle.

    Operations:
    - create_pay_run: Open a draft pay run for a calendar period
    - calculate: Calculate every eligible employee, all-or-nothing
    - recalculate_item: Re-run one employee's calculation
    - exclude_employee / include_employee: Toggle an employee's inclusion
    - add_employee / remove_employee: Change a draft run's membership
    - submit_for_approval, approve, reject, complete, cancel: Transitions

    Every mutating operation runs under a per-pay-run lock and is saved
    with an optimistic version check. Tenant and actor are explicit
    arguments; there is no ambient context.
    """

    def __init__(
        self,
        repository: PayRunRepository,
        employees: EmployeeDataProvider,
        ledger: YearToDateLedger,
        tax_tables: TaxTableProvider,
        catalogs: CatalogProvider,
        audit: AuditTrail | None = None,
        publisher: PayslipPublisher | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.repository = repository
        self.employees = employees
        self.ledger = ledger
        self.tax_tables = tax_tables
        self.catalogs = catalogs
        self.audit = audit or AuditTrail()
        self.publisher = publisher
        self.settings = settings or get_settings()
        self.clock = clock or _utcnow
        self.calculator = PayRunItemCalculator(self.settings.minor_unit)
        self._locks: dict[UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ===== Queries =====

    async def get_pay_run(self, pay_run_id: UUID) -> PayRun:
        return await self.repository.get(pay_run_id)

    async def summary(self, pay_run_id: UUID) -> PayRunSummary:
        pay_run = await self.repository.get(pay_run_id)
        return PayRunSummary.from_pay_run(pay_run)

    # ===== Creation =====

    async def create_pay_run(
        self,
        tenant_id: UUID,
        calendar_id: UUID,
        pay_date: date,
        actor_id: UUID | None = None,
        name: str | None = None,
    ) -> PayRun:
        """Open a draft pay run for the period paid on ``pay_date``.

        Raises ConfigurationError for an unknown or inactive calendar, or a
        pay date the calendar never pays on. Raises DuplicatePayRunError when
        a live pay run already covers any day of the period.
        """
        pay_calendar = await self.repository.get_calendar(calendar_id)
        if pay_calendar is None or not pay_calendar.is_active:
            raise ConfigurationError(f"Pay calendar {calendar_id} is missing or inactive")
        if pay_calendar.tenant_id is not None and pay_calendar.tenant_id != tenant_id:
            raise ConfigurationError(
                f"Pay calendar {calendar_id} does not belong to tenant {tenant_id}"
            )
        if pay_calendar.next_pay_date(pay_date - timedelta(days=1)) != pay_date:
            raise ConfigurationError(
                f"{pay_date} is not a pay date of calendar '{pay_calendar.name}'"
            )

        period = pay_calendar.build_period(pay_date)
        existing = await self.repository.find_open_for_period(tenant_id, period)
        if existing is not None:
            raise DuplicatePayRunError(existing.payroll_period_id, existing.pay_run_id)

        now = self.clock()
        pay_run = PayRun(
            tenant_id=tenant_id,
            reference=await self.repository.next_reference(tenant_id, now.date()),
            name=name or f"{pay_calendar.name} {period.start_date} to {period.end_date}",
            period=period,
            pay_calendar_id=pay_calendar.calendar_id,
            created_by=actor_id,
            created_at=now,
        )
        await self.repository.add(pay_run)
        logger.info("Created pay run %s (%s)", pay_run.pay_run_id, pay_run.reference)
        await self._audit(pay_run, "create", actor_id, None, None, PayRunStatus.DRAFT)
        return pay_run

    # ===== Calculation =====

    async def calculate(self, pay_run_id: UUID, actor_id: UUID | None = None) -> PayRun:
        """Calculate every eligible, non-excluded employee.

        The batch is all-or-nothing: if any employee fails, or the deadline
        passes, nothing is saved and the pay run keeps its prior state.
        """
        async with self._locks[pay_run_id]:
            pay_run = await self.repository.get(pay_run_id)
            from_status = pay_run.status
            pay_run.status = PayRunStateMachine.validate_action(
                pay_run.status, PayRunAction.CALCULATE
            )

            timeout = self.settings.calculation_timeout_seconds
            try:
                results = await asyncio.wait_for(self._calculate_all(pay_run), timeout)
            except asyncio.TimeoutError:
                raise CalculationTimeoutError(pay_run_id, timeout) from None

            items: dict[UUID, PayRunItem] = {
                user_id: item for user_id, item in pay_run.items.items() if item.excluded
            }
            for calculated in results:
                existing = pay_run.items.get(calculated.user_id)
                if existing is not None and not existing.excluded:
                    existing.mark_calculated(calculated)
                    items[calculated.user_id] = existing
                else:
                    items[calculated.user_id] = calculated
            pay_run.items = dict(sorted(items.items(), key=lambda kv: str(kv[0])))

            pay_run.status = transition(pay_run.status, PayRunAction.FINISH_CALCULATION)
            pay_run.calculated_by = actor_id
            pay_run.calculated_at = self.clock()
            pay_run.update_totals()
            await self.repository.save(pay_run)

        logger.info(
            "Calculated pay run %s: %d employees, total net %s",
            pay_run_id,
            pay_run.employee_count,
            pay_run.total_net,
        )
        await self._audit(
            pay_run,
            PayRunAction.CALCULATE.value,
            actor_id,
            None,
            from_status,
            pay_run.status,
            details={"employee_count": pay_run.employee_count, "total_net": str(pay_run.total_net)},
        )
        return pay_run

    async def _calculate_all(self, pay_run: PayRun) -> list[PayRunItem]:
        catalog, tables = await self._snapshot(pay_run.tenant_id)
        eligible = await self.employees.list_eligible_employees(pay_run.tenant_id, pay_run.period)
        targets = [
            user_id
            for user_id in eligible
            if not (user_id in pay_run.items and pay_run.items[user_id].excluded)
        ]

        semaphore = asyncio.Semaphore(max(1, self.settings.calculation_concurrency))
        context = self._period_context(pay_run.period)

        async def run_one(user_id: UUID) -> PayRunItem | EmployeeCalculationError:
            async with semaphore:
                inputs = await self._load_inputs(pay_run.tenant_id, user_id, pay_run.period)
                # A thread cannot be interrupted: after a timeout it runs to
                # completion in the background and its result is discarded.
                try:
                    return await asyncio.to_thread(
                        self.calculator.calculate, context, inputs, catalog, tables
                    )
                except EmployeeCalculationError as e:
                    return e

        outcomes = await asyncio.gather(*(run_one(user_id) for user_id in targets))

        failures = [o for o in outcomes if isinstance(o, EmployeeCalculationError)]
        if failures:
            for failure in failures:
                logger.error("Pay run %s: %s", pay_run.pay_run_id, failure)
            raise BatchCalculationError(pay_run.pay_run_id, failures)
        return [o for o in outcomes if isinstance(o, PayRunItem)]

    async def recalculate_item(
        self,
        pay_run_id: UUID,
        item_id: UUID | None = None,
        user_id: UUID | None = None,
        actor_id: UUID | None = None,
    ) -> PayRunItem:
        """Re-run the calculation for one employee and refresh totals.

        Data errors mark the item as ``error`` instead of raising;
        configuration errors still raise and nothing is saved.
        """
        async with self._locks[pay_run_id]:
            pay_run = await self.repository.get(pay_run_id)
            PayRunStateMachine.validate_action(pay_run.status, PayRunAction.RECALCULATE_ITEM)

            if item_id is not None:
                item = pay_run.get_item(item_id)
            else:
                item = pay_run.item_for(user_id) if user_id is not None else None
                if item is None:
                    raise PayRunItemNotFoundError(pay_run_id, user_id=user_id)
            if item.excluded:
                raise InvalidTransitionError(
                    pay_run.status.value,
                    PayRunAction.RECALCULATE_ITEM.value,
                    f"employee {item.user_id} is excluded",
                )

            catalog, tables = await self._snapshot(pay_run.tenant_id)
            inputs = await self._load_inputs(pay_run.tenant_id, item.user_id, pay_run.period)
            try:
                calculated = self.calculator.calculate(
                    self._period_context(pay_run.period), inputs, catalog, tables
                )
                item.mark_calculated(calculated)
            except EmployeeCalculationError as e:
                if e.is_configuration_error:
                    raise
                logger.warning("Pay run %s: %s", pay_run_id, e)
                item.mark_error(str(e))

            pay_run.update_totals()
            await self.repository.save(pay_run)

        await self._audit(
            pay_run,
            PayRunAction.RECALCULATE_ITEM.value,
            actor_id,
            None,
            pay_run.status,
            pay_run.status,
            details={"user_id": str(item.user_id), "item_status": item.status.value},
        )
        return item

    # ===== Inclusion =====

    async def exclude_employee(
        self,
        pay_run_id: UUID,
        user_id: UUID,
        reason: str,
        actor_id: UUID | None = None,
    ) -> PayRun:
        """Exclude an employee; a placeholder item is created if needed."""
        async with self._locks[pay_run_id]:
            pay_run = await self.repository.get(pay_run_id)
            PayRunStateMachine.validate_action(pay_run.status, PayRunAction.EXCLUDE_EMPLOYEE)

            item = pay_run.item_for(user_id)
            if item is None:
                item = PayRunItem(user_id=user_id)
                pay_run.items[user_id] = item
            item.exclude(reason)
            pay_run.update_totals()
            await self.repository.save(pay_run)

        await self._audit(
            pay_run,
            PayRunAction.EXCLUDE_EMPLOYEE.value,
            actor_id,
            reason,
            pay_run.status,
            pay_run.status,
            details={"user_id": str(user_id)},
        )
        return pay_run

    async def include_employee(
        self,
        pay_run_id: UUID,
        user_id: UUID,
        actor_id: UUID | None = None,
    ) -> PayRun:
        """Reverse an exclusion. The item stays pending until recalculated."""
        async with self._locks[pay_run_id]:
            pay_run = await self.repository.get(pay_run_id)
            PayRunStateMachine.validate_action(pay_run.status, PayRunAction.INCLUDE_EMPLOYEE)

            item = pay_run.item_for(user_id)
            if item is None:
                raise PayRunItemNotFoundError(pay_run_id, user_id=user_id)
            if not item.excluded:
                return pay_run
            item.reset()
            pay_run.update_totals()
            await self.repository.save(pay_run)

        await self._audit(
            pay_run,
            PayRunAction.INCLUDE_EMPLOYEE.value,
            actor_id,
            None,
            pay_run.status,
            pay_run.status,
            details={"user_id": str(user_id)},
        )
        return pay_run

    async def add_employee(
        self,
        pay_run_id: UUID,
        user_id: UUID,
        actor_id: UUID | None = None,
    ) -> PayRunItem:
        """Add one employee to a draft run and calculate only that employee.

        Data errors leave the item in ``error``; configuration errors raise
        and nothing is saved.
        """
        async with self._locks[pay_run_id]:
            pay_run = await self.repository.get(pay_run_id)
            PayRunStateMachine.validate_action(pay_run.status, PayRunAction.ADD_EMPLOYEE)
            if pay_run.item_for(user_id) is not None:
                raise InvalidTransitionError(
                    pay_run.status.value,
                    PayRunAction.ADD_EMPLOYEE.value,
                    f"employee {user_id} is already in the pay run",
                )

            catalog, tables = await self._snapshot(pay_run.tenant_id)
            inputs = await self._load_inputs(pay_run.tenant_id, user_id, pay_run.period)
            try:
                item = self.calculator.calculate(
                    self._period_context(pay_run.period), inputs, catalog, tables
                )
            except EmployeeCalculationError as e:
                if e.is_configuration_error:
                    raise
                logger.warning("Pay run %s: %s", pay_run_id, e)
                item = PayRunItem(user_id=user_id)
                item.mark_error(str(e))

            pay_run.items[user_id] = item
            pay_run.items = dict(sorted(pay_run.items.items(), key=lambda kv: str(kv[0])))
            pay_run.update_totals()
            await self.repository.save(pay_run)

        await self._audit(
            pay_run,
            PayRunAction.ADD_EMPLOYEE.value,
            actor_id,
            None,
            pay_run.status,
            pay_run.status,
            details={"user_id": str(user_id), "item_status": item.status.value},
        )
        return item

    async def remove_employee(
        self,
        pay_run_id: UUID,
        user_id: UUID,
        actor_id: UUID | None = None,
    ) -> PayRun:
        """Drop an employee's item from a draft run.

        Unlike exclusion nothing is kept, so a later ``calculate`` picks the
        employee up again if they are still eligible.
        """
        async with self._locks[pay_run_id]:
            pay_run = await self.repository.get(pay_run_id)
            PayRunStateMachine.validate_action(pay_run.status, PayRunAction.REMOVE_EMPLOYEE)
            if pay_run.items.pop(user_id, None) is None:
                raise PayRunItemNotFoundError(pay_run_id, user_id=user_id)
            pay_run.update_totals()
            await self.repository.save(pay_run)

        await self._audit(
            pay_run,
            PayRunAction.REMOVE_EMPLOYEE.value,
            actor_id,
            None,
            pay_run.status,
            pay_run.status,
            details={"user_id": str(user_id)},
        )
        return pay_run

    # ===== Approval lifecycle =====

    async def submit_for_approval(self, pay_run_id: UUID, actor_id: UUID | None = None) -> PayRun:
        def check(pay_run: PayRun) -> None:
            included = [i for i in pay_run.items.values() if not i.excluded]
            if not any(i.status == PayRunItemStatus.CALCULATED for i in included):
                raise InvalidTransitionError(
                    pay_run.status.value,
                    PayRunAction.SUBMIT_FOR_APPROVAL.value,
                    "no calculated employees",
                )
            unfinished = [i for i in included if i.status != PayRunItemStatus.CALCULATED]
            if unfinished:
                raise InvalidTransitionError(
                    pay_run.status.value,
                    PayRunAction.SUBMIT_FOR_APPROVAL.value,
                    f"{len(unfinished)} employee(s) are pending recalculation or in error",
                )
            if any(i.net_pay < 0 for i in included):
                raise InvalidTransitionError(
                    pay_run.status.value,
                    PayRunAction.SUBMIT_FOR_APPROVAL.value,
                    "negative net pay",
                )
            pay_run.submitted_by = actor_id
            pay_run.submitted_at = self.clock()

        return await self._transition(pay_run_id, PayRunAction.SUBMIT_FOR_APPROVAL, actor_id, check)

    async def approve(self, pay_run_id: UUID, actor_id: UUID | None = None) -> PayRun:
        def stamp(pay_run: PayRun) -> None:
            pay_run.approved_by = actor_id
            pay_run.approved_at = self.clock()

        return await self._transition(pay_run_id, PayRunAction.APPROVE, actor_id, stamp)

    async def reject(self, pay_run_id: UUID, reason: str, actor_id: UUID | None = None) -> PayRun:
        def stamp(pay_run: PayRun) -> None:
            self._require_reason(pay_run, PayRunAction.REJECT, reason)
            pay_run.rejected_by = actor_id
            pay_run.rejected_at = self.clock()
            pay_run.rejection_reason = reason

        return await self._transition(pay_run_id, PayRunAction.REJECT, actor_id, stamp, reason)

    async def complete(self, pay_run_id: UUID, actor_id: UUID | None = None) -> PayRun:
        """Complete an approved run and close its period.

        Once the completion is saved, the amounts withheld for loans and
        advances are posted to their running balances and payslips are
        published. Failures in either step are logged; the run stays
        completed.
        """

        def stamp(pay_run: PayRun) -> None:
            pay_run.completed_by = actor_id
            pay_run.completed_at = self.clock()
            pay_run.period = pay_run.period.close()

        pay_run = await self._transition(pay_run_id, PayRunAction.COMPLETE, actor_id, stamp)
        try:
            await self._post_deduction_balances(pay_run)
        except Exception:
            logger.exception("Posting deduction balances failed for pay run %s", pay_run_id)
        if self.publisher is not None:
            try:
                await self.publisher.publish(pay_run)
            except Exception:
                logger.exception("Payslip publishing failed for pay run %s", pay_run_id)
        return pay_run

    async def cancel(self, pay_run_id: UUID, reason: str, actor_id: UUID | None = None) -> PayRun:
        def stamp(pay_run: PayRun) -> None:
            self._require_reason(pay_run, PayRunAction.CANCEL, reason)
            pay_run.cancelled_by = actor_id
            pay_run.cancelled_at = self.clock()
            pay_run.cancellation_reason = reason

        return await self._transition(pay_run_id, PayRunAction.CANCEL, actor_id, stamp, reason)

    # ===== Internals =====

    async def _transition(
        self,
        pay_run_id: UUID,
        action: PayRunAction,
        actor_id: UUID | None,
        apply: Callable[[PayRun], None],
        reason: str | None = None,
    ) -> PayRun:
        async with self._locks[pay_run_id]:
            pay_run = await self.repository.get(pay_run_id)
            from_status = pay_run.status
            to_status = PayRunStateMachine.validate_action(from_status, action)
            apply(pay_run)
            pay_run.status = to_status
            await self.repository.save(pay_run)
        if PayRunStateMachine.is_terminal(to_status):
            self._locks.pop(pay_run_id, None)

        logger.info(
            "Pay run %s: %s (%s -> %s)",
            pay_run_id,
            action.value,
            from_status.value,
            to_status.value,
        )
        await self._audit(pay_run, action.value, actor_id, reason, from_status, to_status)
        return pay_run

    async def _post_deduction_balances(self, pay_run: PayRun) -> None:
        for item in pay_run.counted_items():
            payments: dict[UUID, Decimal] = {}
            for line in item.deduction_lines:
                if line.deduction_id is not None and line.amount > ZERO:
                    payments[line.deduction_id] = payments.get(line.deduction_id, ZERO) + line.amount
            if payments:
                await self.employees.record_deduction_payments(
                    pay_run.tenant_id, item.user_id, payments
                )

    @staticmethod
    def _require_reason(pay_run: PayRun, action: PayRunAction, reason: str | None) -> None:
        if not reason or not reason.strip():
            raise InvalidTransitionError(pay_run.status.value, action.value, "a reason is required")

    async def _snapshot(self, tenant_id: UUID) -> tuple[CatalogSnapshot, list[TaxTable]]:
        """Read-consistent catalog and tax tables for one calculation."""
        catalog = await self.catalogs.get_catalog(tenant_id)
        tables = await self.tax_tables.list_tax_tables(tenant_id)
        return catalog, list(tables)

    async def _load_inputs(
        self, tenant_id: UUID, user_id: UUID, period: PayrollPeriod
    ) -> EmployeeInputs:
        detail = await self.employees.get_payroll_detail(tenant_id, user_id)
        if detail is None:
            return EmployeeInputs(user_id=user_id, detail=None)
        assignments, one_offs, deductions, hours, year_to_date = await asyncio.gather(
            self.employees.get_earning_assignments(tenant_id, user_id),
            self.employees.get_one_off_earnings(tenant_id, user_id, period),
            self.employees.get_custom_deductions(tenant_id, user_id),
            self.employees.get_approved_hours(tenant_id, user_id, period),
            self.ledger.get_year_to_date(tenant_id, user_id, period.end_date.year),
        )
        return EmployeeInputs(
            user_id=user_id,
            detail=detail,
            assignments=tuple(assignments),
            one_offs=tuple(one_offs),
            custom_deductions=tuple(deductions),
            approved_hours=hours,
            year_to_date=year_to_date,
        )

    @staticmethod
    def _period_context(period: PayrollPeriod) -> PeriodContext:
        return PeriodContext(
            period_start=period.start_date,
            period_end=period.end_date,
            frequency=period.frequency,
            payment_date=period.payment_date,
        )

    async def _audit(
        self,
        pay_run: PayRun,
        transition_name: str,
        actor_id: UUID | None,
        reason: str | None,
        from_status: PayRunStatus | None,
        to_status: PayRunStatus | None,
        details: dict | None = None,
    ) -> None:
        await self.audit.record(
            AuditRecord(
                pay_run_id=pay_run.pay_run_id,
                transition=transition_name,
                actor_id=actor_id,
                timestamp=self.clock(),
                reason=reason,
                from_status=from_status.value if from_status else None,
                to_status=to_status.value if to_status else None,
                details=details or {},
            )
        )
