"""Earning resolution: base pay, recurring earnings and one-off entries."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from decimal import Decimal

from payroll_core.calculators.catalog import BASIC, CatalogSnapshot
from payroll_core.calculators.line_builder import LineBuilder
from payroll_core.calculators.strategies import CalculationContext, get_strategy
from payroll_core.calculators.types import (
    PERIODS_PER_YEAR,
    ZERO,
    CalculationBase,
    CalculationType,
    EarningAssignment,
    EarningCategory,
    EarningLine,
    EarningsResult,
    EmployeePayrollDetail,
    OneOffEarning,
    PayFrequency,
    PayType,
)
from payroll_core.errors import ConfigurationError, EmployeeDataError


class EarningResolver:
    """Produces an employee's earning lines for one period.

    Order of lines:
    1. Base pay (derived from the payroll detail, or a base-category
       recurring earning when one is assigned)
    2. Recurring earnings, fixed amounts first, then by code
    3. One-off earnings in entry order
    """

    def __init__(self, builder: LineBuilder | None = None):
        self.builder = builder or LineBuilder()

    def resolve(
        self,
        detail: EmployeePayrollDetail,
        catalog: CatalogSnapshot,
        period_end: date,
        calendar_frequency: PayFrequency,
        assignments: Sequence[EarningAssignment] = (),
        one_offs: Sequence[OneOffEarning] = (),
        approved_hours: Decimal | None = None,
    ) -> EarningsResult:
        lines: list[EarningLine] = []

        active = [a for a in assignments if a.is_effective_on(period_end)]
        base_overrides = sorted(
            (a for a in active if catalog.earning(a.earning_code).category == EarningCategory.BASE),
            key=lambda a: a.earning_code,
        )
        recurring = [a for a in active if a not in base_overrides]

        derived_base = self.base_pay(detail, calendar_frequency, approved_hours)
        if base_overrides:
            override = base_overrides[0]
            base_line = self._assignment_line(
                override, catalog, self._bases(derived_base, []), source="base"
            )
        else:
            base_line = self._derived_base_line(detail, catalog, derived_base, approved_hours)
        lines.append(base_line)
        basic_pay = base_line.amount

        recurring.sort(
            key=lambda a: (
                catalog.earning(a.earning_code).calculation_type != CalculationType.FIXED,
                a.earning_code,
            )
        )
        for assignment in recurring:
            line = self._assignment_line(
                assignment, catalog, self._bases(basic_pay, lines), source="recurring"
            )
            lines.append(line)

        for entry in one_offs:
            lines.append(self._one_off_line(detail, entry, catalog))

        return EarningsResult(
            lines=tuple(lines),
            basic_pay=basic_pay,
            gross=self.builder.calculate_gross(lines),
            taxable_gross=self.builder.round(
                self.builder.sum_amounts(line for line in lines if line.is_taxable)
            ),
            pensionable_gross=self.builder.round(
                self.builder.sum_amounts(line for line in lines if line.is_pensionable)
            ),
        )

    def base_pay(
        self,
        detail: EmployeePayrollDetail,
        calendar_frequency: PayFrequency,
        approved_hours: Decimal | None = None,
    ) -> Decimal:
        """Base pay for one period of the calendar's frequency."""
        if detail.pay_amount is None or detail.pay_amount < ZERO:
            raise EmployeeDataError(detail.user_id, "pay amount is missing or negative")

        if detail.pay_type == PayType.HOURLY:
            if approved_hours is None or approved_hours <= ZERO:
                raise EmployeeDataError(
                    detail.user_id, "hourly employee has no approved hours for the period"
                )
            return self.builder.round(detail.pay_amount * approved_hours)

        if detail.pay_frequency == calendar_frequency:
            return self.builder.round(detail.pay_amount)
        # Convert through the annual amount
        annual = detail.pay_amount * PERIODS_PER_YEAR[detail.pay_frequency]
        return self.builder.round(annual / PERIODS_PER_YEAR[calendar_frequency])

    def _derived_base_line(
        self,
        detail: EmployeePayrollDetail,
        catalog: CatalogSnapshot,
        amount: Decimal,
        approved_hours: Decimal | None,
    ) -> EarningLine:
        earning_type = catalog.earning(BASIC)
        if detail.pay_type == PayType.HOURLY:
            return self.builder.earning_line(
                earning_type,
                amount,
                source="base",
                quantity=approved_hours,
                rate=detail.pay_amount,
            )
        return self.builder.earning_line(earning_type, amount, source="base")

    def _bases(
        self, basic: Decimal, lines: Sequence[EarningLine]
    ) -> dict[CalculationBase, Decimal]:
        if not lines:
            return {
                CalculationBase.BASIC: basic,
                CalculationBase.GROSS: basic,
                CalculationBase.PENSIONABLE: basic,
            }
        return {
            CalculationBase.BASIC: basic,
            CalculationBase.GROSS: self.builder.sum_amounts(lines),
            CalculationBase.PENSIONABLE: self.builder.sum_amounts(
                line for line in lines if line.is_pensionable
            ),
        }

    def _assignment_line(
        self,
        assignment: EarningAssignment,
        catalog: CatalogSnapshot,
        bases: dict[CalculationBase, Decimal],
        source: str,
    ) -> EarningLine:
        earning_type = catalog.earning(assignment.earning_code)
        amount = assignment.amount
        rate = assignment.rate
        context = CalculationContext(
            code=earning_type.code,
            base=earning_type.calculation_base,
            bases=bases,
            amount=amount if amount is not None else earning_type.default_amount,
            rate=rate if rate is not None else earning_type.default_rate,
            formula=earning_type.formula,
            tiers=earning_type.tiers,
        )
        if context.base_value < ZERO:
            raise ConfigurationError(
                f"Earning '{earning_type.code}' resolved a negative base", earning_type.code
            )
        amount = get_strategy(earning_type.calculation_type).compute(context)
        if amount < ZERO:
            raise ConfigurationError(
                f"Earning '{earning_type.code}' resolved a negative amount {amount}",
                earning_type.code,
            )
        rate = context.rate if earning_type.calculation_type == CalculationType.PERCENTAGE else None
        return self.builder.earning_line(earning_type, amount, source=source, rate=rate)

    def _one_off_line(
        self,
        detail: EmployeePayrollDetail,
        entry: OneOffEarning,
        catalog: CatalogSnapshot,
    ) -> EarningLine:
        earning_type = catalog.earning(entry.earning_code)
        if entry.amount is not None:
            amount = entry.amount
        elif entry.quantity is not None and entry.rate is not None:
            amount = entry.quantity * entry.rate
        else:
            raise EmployeeDataError(
                detail.user_id,
                f"one-off earning '{entry.earning_code}' needs an amount or quantity and rate",
            )
        if amount < ZERO:
            raise EmployeeDataError(
                detail.user_id, f"one-off earning '{entry.earning_code}' is negative"
            )
        return self.builder.earning_line(
            earning_type, amount, source="one_off", quantity=entry.quantity, rate=entry.rate
        )
