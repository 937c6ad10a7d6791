"""Deduction resolution in priority order with caps and a net-pay floor."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from payroll_core.calculators.catalog import (
    HEALTH_INSURANCE,
    HOUSING_FUND,
    PENSION,
    TAX,
    CatalogSnapshot,
)
from payroll_core.calculators.line_builder import LineBuilder
from payroll_core.calculators.strategies import CalculationContext, get_strategy
from payroll_core.calculators.types import (
    ZERO,
    CalculationBase,
    DeductionLine,
    DeductionsResult,
    DeductionType,
    EarningsResult,
    EmployeeCustomDeduction,
    EmployeePayrollDetail,
    EmployerContributionLine,
    TaxComputation,
)
from payroll_core.errors import ConfigurationError

logger = logging.getLogger(__name__)

TaxCallback = Callable[[Decimal], TaxComputation]

DEFAULT_EMPLOYER_PENSION_RATE = Decimal("0.10")

# Statutory codes driven by EmployeePayrollDetail toggles rather than the
# mandatory flag on the type.
TOGGLED_CODES = frozenset({PENSION, HOUSING_FUND, HEALTH_INSURANCE})

# Clamp labels recorded on deduction lines
CLAMP_MAX_AMOUNT = "max_amount"
CLAMP_BALANCE = "balance"
CLAMP_ANNUAL_CAP = "annual_cap"
CLAMP_NET_FLOOR = "net_floor"


@dataclass(frozen=True)
class DeductionAssignment:
    """A deduction type applied to one employee, with overrides."""

    deduction_type: DeductionType
    amount: Decimal | None = None
    rate: Decimal | None = None
    remaining_balance: Decimal | None = None
    deduction_id: UUID | None = None
    sequence: int = 0

    @property
    def sort_key(self) -> tuple[int, str, int]:
        return (self.deduction_type.priority, self.deduction_type.code, self.sequence)


class DeductionResolver:
    """Resolves an employee's deductions for one period.

    Pre-tax deductions are applied first in ascending priority. The tax line
    is computed on taxable gross less those pre-tax deductions, then takes
    its priority slot among the post-tax deductions. Each line is clamped in
    order: max_amount, remaining loan balance, remaining annual cap, and
    finally the net-pay floor so total deductions never exceed gross pay.
    """

    def __init__(self, builder: LineBuilder | None = None):
        self.builder = builder or LineBuilder()

    def assignments(
        self,
        detail: EmployeePayrollDetail,
        catalog: CatalogSnapshot,
        custom_deductions: Sequence[EmployeeCustomDeduction],
        period_end: date,
    ) -> list[DeductionAssignment]:
        """Active deduction assignments for the period, unordered.

        A custom deduction whose code already has a statutory line raises
        ConfigurationError.
        """
        result: list[DeductionAssignment] = []

        toggles = (
            (PENSION, detail.pension_enabled, detail.pension_rate),
            (HOUSING_FUND, detail.housing_fund_enabled, detail.housing_fund_rate),
            (HEALTH_INSURANCE, detail.health_insurance_enabled, detail.health_insurance_rate),
        )
        for code, enabled, rate in toggles:
            if enabled:
                result.append(DeductionAssignment(catalog.deduction(code), rate=rate))

        result.append(DeductionAssignment(catalog.tax_type))

        for deduction_type in catalog.deduction_types.values():
            if (
                deduction_type.is_mandatory
                and deduction_type.is_active
                and deduction_type.code not in TOGGLED_CODES
                and deduction_type.code != TAX
            ):
                result.append(DeductionAssignment(deduction_type))

        statutory = {a.deduction_type.code for a in result}
        for seq, custom in enumerate(custom_deductions, start=1):
            if not custom.is_effective_on(period_end):
                continue
            if custom.deduction_code in statutory:
                raise ConfigurationError(
                    f"Custom deduction '{custom.deduction_code}' duplicates a statutory line "
                    "already applied to this employee",
                    custom.deduction_code,
                )
            result.append(
                DeductionAssignment(
                    catalog.deduction(custom.deduction_code),
                    amount=custom.amount,
                    rate=custom.rate,
                    remaining_balance=custom.remaining_balance,
                    deduction_id=custom.deduction_id,
                    sequence=seq,
                )
            )
        return result

    def resolve(
        self,
        detail: EmployeePayrollDetail,
        catalog: CatalogSnapshot,
        earnings: EarningsResult,
        custom_deductions: Sequence[EmployeeCustomDeduction],
        period_end: date,
        year_to_date: Mapping[str, Decimal],
        calculate_tax: TaxCallback,
    ) -> DeductionsResult:
        assignments = self.assignments(detail, catalog, custom_deductions, period_end)
        pre_tax = sorted(
            (a for a in assignments if a.deduction_type.is_pre_tax), key=lambda a: a.sort_key
        )
        post_tax = sorted(
            (a for a in assignments if not a.deduction_type.is_pre_tax), key=lambda a: a.sort_key
        )

        lines: list[DeductionLine] = []
        withheld: dict[str, Decimal] = {}

        for assignment in pre_tax:
            bases = self._bases(earnings, lines, pre_tax_total=self._total(lines))
            lines.append(
                self._apply(detail, assignment, bases, earnings.gross, lines, year_to_date, withheld)
            )

        pre_tax_total = self._total(lines)
        adjusted_taxable = max(ZERO, earnings.taxable_gross - pre_tax_total)
        tax: TaxComputation | None = None

        for assignment in post_tax:
            bases = self._bases(earnings, lines, pre_tax_total=pre_tax_total)
            raw_amount = None
            if assignment.deduction_type.code == TAX:
                tax = calculate_tax(adjusted_taxable)
                raw_amount = tax.period_tax
            lines.append(
                self._apply(
                    detail,
                    assignment,
                    bases,
                    earnings.gross,
                    lines,
                    year_to_date,
                    withheld,
                    raw_amount=raw_amount,
                )
            )

        total = self._total(lines)
        statutory_total = self.builder.sum_amounts(line for line in lines if line.is_statutory)
        return DeductionsResult(
            lines=tuple(lines),
            total=total,
            pre_tax_total=pre_tax_total,
            post_tax_total=total - pre_tax_total,
            statutory_total=statutory_total,
            voluntary_total=total - statutory_total,
            adjusted_taxable=adjusted_taxable,
            tax=tax,
        )

    def employer_contributions(
        self,
        detail: EmployeePayrollDetail,
        catalog: CatalogSnapshot,
        earnings: EarningsResult,
    ) -> tuple[EmployerContributionLine, ...]:
        """Employer pension and housing-fund contributions.

        Each uses the same base as the employee's line and never touches
        net pay.
        """
        lines: list[EmployerContributionLine] = []
        bases = self._bases(earnings, [], pre_tax_total=ZERO)

        if detail.pension_enabled:
            pension_type = catalog.deduction(PENSION)
            rate = (
                detail.pension_employer_rate
                if detail.pension_employer_rate is not None
                else DEFAULT_EMPLOYER_PENSION_RATE
            )
            lines.append(
                self.builder.employer_line(
                    f"{PENSION}_ER",
                    "Pension (Employer)",
                    rate,
                    self._base_value(pension_type, bases),
                )
            )
        if detail.housing_fund_enabled and detail.housing_fund_employer_rate is not None:
            housing_type = catalog.deduction(HOUSING_FUND)
            lines.append(
                self.builder.employer_line(
                    f"{HOUSING_FUND}_ER",
                    "Housing Fund (Employer)",
                    detail.housing_fund_employer_rate,
                    self._base_value(housing_type, bases),
                )
            )
        return tuple(lines)

    # ===== Internals =====

    def _total(self, lines: Sequence[DeductionLine]) -> Decimal:
        return self.builder.sum_amounts(lines)

    def _bases(
        self,
        earnings: EarningsResult,
        lines: Sequence[DeductionLine],
        pre_tax_total: Decimal,
    ) -> dict[CalculationBase, Decimal]:
        return {
            CalculationBase.GROSS: earnings.gross,
            CalculationBase.BASIC: earnings.basic_pay,
            CalculationBase.PENSIONABLE: earnings.pensionable_gross,
            CalculationBase.TAXABLE: max(ZERO, earnings.taxable_gross - pre_tax_total),
            CalculationBase.NET: earnings.gross - self._total(lines),
        }

    @staticmethod
    def _base_value(deduction_type: DeductionType, bases: dict[CalculationBase, Decimal]) -> Decimal:
        value = bases.get(deduction_type.calculation_base)
        if value is None:
            raise ConfigurationError(
                f"Deduction '{deduction_type.code}' has unresolvable base "
                f"'{deduction_type.calculation_base}'",
                deduction_type.code,
            )
        if value < ZERO:
            raise ConfigurationError(
                f"Deduction '{deduction_type.code}' resolved a negative "
                f"{deduction_type.calculation_base.value} base {value}",
                deduction_type.code,
            )
        return value

    def _apply(
        self,
        detail: EmployeePayrollDetail,
        assignment: DeductionAssignment,
        bases: dict[CalculationBase, Decimal],
        gross: Decimal,
        applied: Sequence[DeductionLine],
        year_to_date: Mapping[str, Decimal],
        withheld: dict[str, Decimal],
        raw_amount: Decimal | None = None,
    ) -> DeductionLine:
        deduction_type = assignment.deduction_type
        code = deduction_type.code
        self._base_value(deduction_type, bases)

        if raw_amount is None:
            amount = assignment.amount
            rate = assignment.rate
            context = CalculationContext(
                code=code,
                base=deduction_type.calculation_base,
                bases=bases,
                amount=amount if amount is not None else deduction_type.default_amount,
                rate=rate if rate is not None else deduction_type.default_rate,
                formula=deduction_type.formula,
                tiers=deduction_type.tiers,
            )
            raw_amount = get_strategy(deduction_type.calculation_type).compute(context)
        if raw_amount < ZERO:
            raise ConfigurationError(
                f"Deduction '{code}' computed a negative amount {raw_amount}", code
            )

        calculated = self.builder.round(raw_amount)
        amount = calculated
        clamps: list[str] = []

        if deduction_type.max_amount is not None and amount > deduction_type.max_amount:
            amount = deduction_type.max_amount
            clamps.append(CLAMP_MAX_AMOUNT)

        if assignment.remaining_balance is not None and amount > assignment.remaining_balance:
            amount = assignment.remaining_balance
            clamps.append(CLAMP_BALANCE)

        if deduction_type.annual_cap is not None:
            already = year_to_date.get(code, ZERO) + withheld.get(code, ZERO)
            remaining = max(ZERO, deduction_type.annual_cap - already)
            if amount > remaining:
                amount = remaining
                clamps.append(CLAMP_ANNUAL_CAP)

        available = max(ZERO, gross - self._total(applied))
        if amount > available:
            logger.warning(
                "Deduction %s for employee %s clamped from %s to %s by the net-pay floor",
                code,
                detail.user_id,
                amount,
                available,
            )
            amount = available
            clamps.append(CLAMP_NET_FLOOR)

        withheld[code] = withheld.get(code, ZERO) + amount
        return self.builder.deduction_line(
            deduction_type,
            amount,
            calculated_amount=calculated,
            clamps=clamps,
            deduction_id=assignment.deduction_id,
        )
