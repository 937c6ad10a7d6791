"""Collaborator interfaces consumed by the pay run orchestrator.

Each protocol has an in-memory implementation for tests and embedding.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import replace
from decimal import Decimal
from typing import Protocol, runtime_checkable
from uuid import UUID

from payroll_core.calculators.catalog import CatalogRegistry, CatalogSnapshot
from payroll_core.calculators.types import (
    ZERO,
    EarningAssignment,
    EmployeeCustomDeduction,
    EmployeePayrollDetail,
    OneOffEarning,
    TaxTable,
)
from payroll_core.services.types import PayrollPeriod, PayRun


@runtime_checkable
class EmployeeDataProvider(Protocol):
    """Access to employee payroll inputs.

    Inputs are read during calculation. The only write is
    ``record_deduction_payments``, which advances loan and advance balances
    once a pay run completes.
    """

    async def list_eligible_employees(self, tenant_id: UUID, period: PayrollPeriod) -> list[UUID]:
        ...

    async def get_payroll_detail(
        self, tenant_id: UUID, user_id: UUID
    ) -> EmployeePayrollDetail | None:
        ...

    async def get_earning_assignments(
        self, tenant_id: UUID, user_id: UUID
    ) -> list[EarningAssignment]:
        ...

    async def get_one_off_earnings(
        self, tenant_id: UUID, user_id: UUID, period: PayrollPeriod
    ) -> list[OneOffEarning]:
        ...

    async def get_custom_deductions(
        self, tenant_id: UUID, user_id: UUID
    ) -> list[EmployeeCustomDeduction]:
        ...

    async def get_approved_hours(
        self, tenant_id: UUID, user_id: UUID, period: PayrollPeriod
    ) -> Decimal | None:
        ...

    async def record_deduction_payments(
        self, tenant_id: UUID, user_id: UUID, payments: dict[UUID, Decimal]
    ) -> None:
        ...


@runtime_checkable
class YearToDateLedger(Protocol):
    """Amounts already withheld this year, per deduction code."""

    async def get_year_to_date(
        self, tenant_id: UUID, user_id: UUID, year: int
    ) -> dict[str, Decimal]:
        ...


@runtime_checkable
class TaxTableProvider(Protocol):
    async def list_tax_tables(self, tenant_id: UUID) -> list[TaxTable]:
        ...


@runtime_checkable
class CatalogProvider(Protocol):
    async def get_catalog(self, tenant_id: UUID) -> CatalogSnapshot:
        ...


@runtime_checkable
class PayslipPublisher(Protocol):
    """Materializes payslips for a completed pay run."""

    async def publish(self, pay_run: PayRun) -> None:
        ...


# ===== In-memory implementations =====


class InMemoryEmployeeDirectory:
    """EmployeeDataProvider backed by dictionaries, keyed by tenant."""

    def __init__(self) -> None:
        self._details: dict[UUID, dict[UUID, EmployeePayrollDetail]] = defaultdict(dict)
        self._assignments: dict[tuple[UUID, UUID], list[EarningAssignment]] = defaultdict(list)
        self._one_offs: dict[tuple[UUID, UUID, UUID], list[OneOffEarning]] = defaultdict(list)
        self._deductions: dict[tuple[UUID, UUID], list[EmployeeCustomDeduction]] = defaultdict(
            list
        )
        self._hours: dict[tuple[UUID, UUID, UUID], Decimal] = {}
        # Employees listed for a period without any payroll detail on record
        self._without_detail: dict[UUID, set[UUID]] = defaultdict(set)

    def add_employee(self, tenant_id: UUID, detail: EmployeePayrollDetail) -> None:
        self._details[tenant_id][detail.user_id] = detail

    def add_employee_without_detail(self, tenant_id: UUID, user_id: UUID) -> None:
        self._without_detail[tenant_id].add(user_id)

    def remove_employee(self, tenant_id: UUID, user_id: UUID) -> None:
        self._details[tenant_id].pop(user_id, None)
        self._without_detail[tenant_id].discard(user_id)

    def assign_earning(
        self, tenant_id: UUID, user_id: UUID, assignment: EarningAssignment
    ) -> None:
        self._assignments[(tenant_id, user_id)].append(assignment)

    def add_one_off(
        self, tenant_id: UUID, user_id: UUID, period: PayrollPeriod, entry: OneOffEarning
    ) -> None:
        self._one_offs[(tenant_id, user_id, period.period_id)].append(entry)

    def add_custom_deduction(
        self, tenant_id: UUID, user_id: UUID, deduction: EmployeeCustomDeduction
    ) -> None:
        self._deductions[(tenant_id, user_id)].append(deduction)

    def set_approved_hours(
        self, tenant_id: UUID, user_id: UUID, period: PayrollPeriod, hours: Decimal
    ) -> None:
        self._hours[(tenant_id, user_id, period.period_id)] = hours

    async def list_eligible_employees(self, tenant_id: UUID, period: PayrollPeriod) -> list[UUID]:
        eligible = set(self._without_detail[tenant_id])
        for user_id, detail in self._details[tenant_id].items():
            if not detail.is_active:
                continue
            if detail.start_date is not None and detail.start_date > period.end_date:
                continue
            if detail.end_date is not None and detail.end_date < period.start_date:
                continue
            eligible.add(user_id)
        return sorted(eligible, key=str)

    async def get_payroll_detail(
        self, tenant_id: UUID, user_id: UUID
    ) -> EmployeePayrollDetail | None:
        return self._details[tenant_id].get(user_id)

    async def get_earning_assignments(
        self, tenant_id: UUID, user_id: UUID
    ) -> list[EarningAssignment]:
        return list(self._assignments[(tenant_id, user_id)])

    async def get_one_off_earnings(
        self, tenant_id: UUID, user_id: UUID, period: PayrollPeriod
    ) -> list[OneOffEarning]:
        return list(self._one_offs[(tenant_id, user_id, period.period_id)])

    async def get_custom_deductions(
        self, tenant_id: UUID, user_id: UUID
    ) -> list[EmployeeCustomDeduction]:
        return list(self._deductions[(tenant_id, user_id)])

    async def get_approved_hours(
        self, tenant_id: UUID, user_id: UUID, period: PayrollPeriod
    ) -> Decimal | None:
        return self._hours.get((tenant_id, user_id, period.period_id))

    async def record_deduction_payments(
        self, tenant_id: UUID, user_id: UUID, payments: dict[UUID, Decimal]
    ) -> None:
        """Add withheld amounts to the matching deductions' running totals.

        A deduction whose target has been reached is deactivated.
        """
        key = (tenant_id, user_id)
        updated: list[EmployeeCustomDeduction] = []
        for deduction in self._deductions[key]:
            if deduction.deduction_id in payments:
                total = deduction.total_deducted + payments[deduction.deduction_id]
                paid_off = deduction.total_target is not None and total >= deduction.total_target
                deduction = replace(
                    deduction,
                    total_deducted=total,
                    is_active=deduction.is_active and not paid_off,
                )
            updated.append(deduction)
        self._deductions[key] = updated


class InMemoryYearToDateLedger:
    """YearToDateLedger backed by a dictionary."""

    def __init__(self) -> None:
        self._totals: dict[tuple[UUID, UUID, int], dict[str, Decimal]] = defaultdict(dict)

    def add(self, tenant_id: UUID, user_id: UUID, year: int, code: str, amount: Decimal) -> None:
        totals = self._totals[(tenant_id, user_id, year)]
        totals[code] = totals.get(code, ZERO) + amount

    async def get_year_to_date(
        self, tenant_id: UUID, user_id: UUID, year: int
    ) -> dict[str, Decimal]:
        return dict(self._totals[(tenant_id, user_id, year)])


class InMemoryTaxTableProvider:
    def __init__(self, tables: Iterable[TaxTable] = ()):
        self._tables: list[TaxTable] = list(tables)

    def add_table(self, table: TaxTable) -> None:
        self._tables.append(table)

    async def list_tax_tables(self, tenant_id: UUID) -> list[TaxTable]:
        return list(self._tables)


class InMemoryCatalogProvider:
    """Catalog per tenant, falling back to the system defaults."""

    def __init__(self, registries: dict[UUID, CatalogRegistry] | None = None):
        self._registries: dict[UUID, CatalogRegistry] = dict(registries or {})

    def registry(self, tenant_id: UUID) -> CatalogRegistry:
        if tenant_id not in self._registries:
            self._registries[tenant_id] = CatalogRegistry.with_defaults()
        return self._registries[tenant_id]

    async def get_catalog(self, tenant_id: UUID) -> CatalogSnapshot:
        return self.registry(tenant_id).snapshot()


class LedgerPayslipPublisher:
    """Publishes completed pay runs by posting deductions to the ledger."""

    def __init__(self, ledger: InMemoryYearToDateLedger):
        self.ledger = ledger
        self.published: list[UUID] = []

    async def publish(self, pay_run: PayRun) -> None:
        year = pay_run.period.end_date.year
        for item in pay_run.counted_items():
            for line in item.deduction_lines:
                self.ledger.add(pay_run.tenant_id, item.user_id, year, line.code, line.amount)
        self.published.append(pay_run.pay_run_id)
