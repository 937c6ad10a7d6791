"""Per-employee payslip calculation."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from uuid import UUID

from payroll_core.calculators.catalog import CatalogSnapshot
from payroll_core.calculators.deduction_resolver import DeductionResolver
from payroll_core.calculators.earning_resolver import EarningResolver
from payroll_core.calculators.line_builder import DEFAULT_MINOR_UNIT, LineBuilder, compute_fingerprint
from payroll_core.calculators.tax_engine import TaxEngine
from payroll_core.calculators.types import (
    PERIODS_PER_YEAR,
    ZERO,
    EarningAssignment,
    EmployeeCustomDeduction,
    EmployeePayrollDetail,
    OneOffEarning,
    PayFrequency,
    PayRunItem,
    PayRunItemStatus,
    TaxComputation,
    TaxHandling,
    TaxTable,
)
from payroll_core.errors import (
    ConfigurationError,
    EmployeeCalculationError,
    EmployeeDataError,
    PayrollError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeriodContext:
    """The period being paid."""

    period_start: date
    period_end: date
    frequency: PayFrequency
    payment_date: date | None = None

    @property
    def periods_per_year(self) -> int:
        return PERIODS_PER_YEAR[self.frequency]


@dataclass(frozen=True)
class EmployeeInputs:
    """Everything the calculator reads for one employee."""

    user_id: UUID
    detail: EmployeePayrollDetail | None
    assignments: tuple[EarningAssignment, ...] = ()
    one_offs: tuple[OneOffEarning, ...] = ()
    custom_deductions: tuple[EmployeeCustomDeduction, ...] = ()
    approved_hours: Decimal | None = None
    year_to_date: Mapping[str, Decimal] = field(default_factory=dict)


class PayRunItemCalculator:
    """Composes earnings, deductions and tax into one employee's item.

    Pipeline (stable order per employee):
    1) Resolve earning lines -> gross, taxable and pensionable gross
    2) Apply pre-tax deductions -> adjusted taxable income
    3) Compute tax on adjusted taxable income
    4) Apply post-tax deductions with tax in its priority slot
    5) Compute employer contributions
    6) net = gross - total deductions

    The result depends only on the arguments, so repeated calls with the
    same inputs give identical items and fingerprints.
    """

    def __init__(self, minor_unit: Decimal = DEFAULT_MINOR_UNIT):
        self.builder = LineBuilder(minor_unit)
        self.earnings = EarningResolver(self.builder)
        self.deductions = DeductionResolver(self.builder)
        self.tax_engine = TaxEngine(minor_unit)

    def calculate(
        self,
        period: PeriodContext,
        inputs: EmployeeInputs,
        catalog: CatalogSnapshot,
        tax_tables: Sequence[TaxTable],
    ) -> PayRunItem:
        """Calculate one employee's item.

        Raises EmployeeCalculationError naming the failing step.
        """
        user_id = inputs.user_id
        detail = inputs.detail
        if detail is None:
            raise EmployeeCalculationError(
                user_id, "profile", EmployeeDataError(user_id, "no payroll detail on record")
            )

        try:
            earnings = self.earnings.resolve(
                detail,
                catalog,
                period_end=period.period_end,
                calendar_frequency=period.frequency,
                assignments=inputs.assignments,
                one_offs=inputs.one_offs,
                approved_hours=inputs.approved_hours,
            )
        except PayrollError as e:
            raise EmployeeCalculationError(user_id, "earnings", e) from e

        def calculate_tax(adjusted_taxable: Decimal) -> TaxComputation:
            try:
                table = None
                if detail.tax_handling == TaxHandling.STANDARD:
                    table = self.tax_engine.select_table(
                        tax_tables, detail.jurisdiction, period.period_end
                    )
                return self.tax_engine.calculate(
                    detail,
                    period_taxable=adjusted_taxable,
                    period_gross=earnings.gross,
                    periods_per_year=period.periods_per_year,
                    table=table,
                )
            except PayrollError as e:
                raise EmployeeCalculationError(user_id, "tax", e) from e

        try:
            deductions = self.deductions.resolve(
                detail,
                catalog,
                earnings,
                custom_deductions=inputs.custom_deductions,
                period_end=period.period_end,
                year_to_date=inputs.year_to_date,
                calculate_tax=calculate_tax,
            )
            employer_lines = self.deductions.employer_contributions(detail, catalog, earnings)
        except EmployeeCalculationError:
            raise
        except PayrollError as e:
            raise EmployeeCalculationError(user_id, "deductions", e) from e

        sign_errors = self.builder.validate_line_signs(earnings.lines, deductions.lines)
        if sign_errors:
            raise EmployeeCalculationError(
                user_id, "deductions", ConfigurationError("; ".join(sign_errors))
            )

        gross = earnings.gross
        total_deductions = self.builder.round(deductions.total)
        net = self.builder.calculate_net(gross, deductions.lines)
        employer_total = self.builder.round(self.builder.sum_amounts(employer_lines))
        taxable_income = (
            deductions.tax.period_taxable_income
            if deductions.tax is not None and deductions.tax.handling == TaxHandling.STANDARD
            else deductions.adjusted_taxable
        )

        item = PayRunItem(
            user_id=user_id,
            status=PayRunItemStatus.CALCULATED,
            basic_pay=earnings.basic_pay,
            gross_pay=gross,
            taxable_income=self.builder.round(taxable_income),
            total_deductions=total_deductions,
            net_pay=net,
            employer_contributions_total=employer_total,
            total_employer_cost=self.builder.round(gross + employer_total),
            earning_lines=earnings.lines,
            deduction_lines=deductions.lines,
            employer_contributions=employer_lines,
            tax=deductions.tax,
        )
        if item.net_pay < ZERO:
            # Unreachable while the net-pay floor clamp holds
            raise EmployeeCalculationError(
                user_id,
                "deductions",
                EmployeeDataError(user_id, f"net pay {item.net_pay} is negative"),
            )
        item.fingerprint = compute_fingerprint(item.to_canonical_dict())

        logger.debug(
            "Calculated employee %s: gross=%s deductions=%s net=%s",
            user_id,
            gross,
            total_deductions,
            net,
        )
        return item
