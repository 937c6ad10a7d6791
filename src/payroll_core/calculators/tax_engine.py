"""Progressive income tax with reliefs, computed annually and de-annualized."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from payroll_core.calculators.line_builder import DEFAULT_MINOR_UNIT, round_money
from payroll_core.calculators.types import (
    PERIODS_PER_YEAR,
    ZERO,
    BandTax,
    EmployeePayrollDetail,
    PayFrequency,
    ReliefApplied,
    ReliefType,
    TaxBand,
    TaxComputation,
    TaxHandling,
    TaxRelief,
    TaxTable,
)
from payroll_core.errors import ConfigurationError, TaxTableNotFoundError

DEFAULT_RENT_RELIEF_RATE = Decimal("0.20")


def validate_bands(bands: Iterable[TaxBand], code: str | None = None) -> tuple[TaxBand, ...]:
    """Sort bands by lower bound and reject gaps, overlaps and bad rates.

    The first band starts at zero, each upper bound equals the next lower
    bound, and only the last band is (and must be) open-ended.
    """
    ordered = tuple(sorted(bands, key=lambda b: b.lower_bound))
    if not ordered:
        raise ConfigurationError("Tax table has no bands", code)
    if ordered[0].lower_bound != ZERO:
        raise ConfigurationError(
            f"First band must start at 0, not {ordered[0].lower_bound}", code
        )

    for i, band in enumerate(ordered):
        if not ZERO <= band.rate <= Decimal("1"):
            raise ConfigurationError(f"Band rate {band.rate} is outside [0, 1]", code)
        is_last = i == len(ordered) - 1
        if band.upper_bound is None:
            if not is_last:
                raise ConfigurationError(
                    f"Open-ended band at {band.lower_bound} is not the last band", code
                )
            continue
        if band.upper_bound <= band.lower_bound:
            raise ConfigurationError(
                f"Band {band.lower_bound}-{band.upper_bound} has no width", code
            )
        if is_last:
            raise ConfigurationError("Last band must have no upper bound", code)
        next_lower = ordered[i + 1].lower_bound
        if next_lower > band.upper_bound:
            raise ConfigurationError(
                f"Gap between bands at {band.upper_bound}-{next_lower}", code
            )
        if next_lower < band.upper_bound:
            raise ConfigurationError(
                f"Bands overlap at {next_lower}-{band.upper_bound}", code
            )
    return ordered


def apply_bands(
    income: Decimal, bands: Sequence[TaxBand]
) -> tuple[Decimal, tuple[BandTax, ...]]:
    """Apply marginal rates to the slice of income inside each band.

    Bands must already be ordered. Returns the unrounded total and the
    per-band breakdown of bands that received income.
    """
    if income <= ZERO:
        return ZERO, ()

    total = ZERO
    breakdown: list[BandTax] = []
    for band in bands:
        if income <= band.lower_bound:
            break
        ceiling = income if band.upper_bound is None else min(income, band.upper_bound)
        portion = ceiling - band.lower_bound
        tax = portion * band.rate
        total += tax
        breakdown.append(
            BandTax(
                lower_bound=band.lower_bound,
                upper_bound=band.upper_bound,
                rate=band.rate,
                taxable_amount=portion,
                tax=tax,
            )
        )
    return total, tuple(breakdown)


@dataclass(frozen=True)
class TaxEstimate:
    """What-if tax figures for an annual salary."""

    annual_salary: Decimal
    annual_reliefs: Decimal
    annual_taxable_income: Decimal
    annual_tax: Decimal
    period_tax: Decimal
    periods_per_year: int
    effective_rate: Decimal
    band_breakdown: tuple[BandTax, ...]
    exemption_reason: str | None = None


@dataclass(frozen=True)
class _AnnualResult:
    reliefs: tuple[ReliefApplied, ...]
    total_reliefs: Decimal
    taxable_income: Decimal
    tax: Decimal
    breakdown: tuple[BandTax, ...]
    exemption_reason: str | None = None


class TaxEngine:
    """Computes period tax liability from a tax table.

    Income for the period is annualized, reliefs and bands are applied to
    the annual figures, and the annual liability is divided by the number
    of periods per year. Marginal boundaries therefore stay the same for
    every pay frequency.
    """

    def __init__(self, minor_unit: Decimal = DEFAULT_MINOR_UNIT):
        self.minor_unit = minor_unit

    def _round(self, amount: Decimal) -> Decimal:
        return round_money(amount, self.minor_unit)

    # ===== Core banding =====

    def banded_tax(
        self,
        taxable_income: Decimal,
        bands: Iterable[TaxBand],
        relief: Decimal = ZERO,
    ) -> Decimal:
        """Tax on (taxable_income - relief), floored at zero, rounded half-up."""
        ordered = validate_bands(bands)
        banded_income = max(ZERO, taxable_income - relief)
        total, _ = apply_bands(banded_income, ordered)
        return self._round(total)

    # ===== Reliefs =====

    @staticmethod
    def relief_amount(
        relief: TaxRelief, annual_gross: Decimal, detail: EmployeePayrollDetail | None = None
    ) -> Decimal:
        """Annual amount a single relief takes off taxable income."""
        if relief.relief_type == ReliefType.FIXED:
            return relief.amount or ZERO
        if relief.relief_type == ReliefType.PERCENTAGE:
            return annual_gross * (relief.rate or ZERO)
        if relief.relief_type == ReliefType.CAPPED_PERCENTAGE:
            amount = annual_gross * (relief.rate or ZERO)
            return amount if relief.cap is None else min(amount, relief.cap)
        if relief.relief_type == ReliefType.RENT:
            if detail is None or detail.is_homeowner or detail.annual_rent_paid <= ZERO:
                return ZERO
            rate = relief.rate if relief.rate is not None else DEFAULT_RENT_RELIEF_RATE
            amount = detail.annual_rent_paid * rate
            return amount if relief.cap is None else min(amount, relief.cap)
        if relief.relief_type == ReliefType.GREATER_OF:
            base_option = annual_gross * (relief.rate or ZERO) + (relief.amount or ZERO)
            return max(base_option, annual_gross * (relief.alternative_rate or ZERO))
        raise ConfigurationError(
            f"Relief '{relief.code}' has unknown type '{relief.relief_type}'", relief.code
        )

    def resolve_reliefs(
        self,
        table: TaxTable,
        annual_gross: Decimal,
        detail: EmployeePayrollDetail | None = None,
    ) -> tuple[ReliefApplied, ...]:
        """Reliefs that apply to an employee, in table order.

        Automatic reliefs apply to everyone eligible; manual ones only when
        named in the employee's active reliefs.
        """
        settings = detail.relief_settings() if detail else {}
        active = detail.active_reliefs if detail else frozenset()
        applied: list[ReliefApplied] = []
        for relief in table.reliefs:
            if not relief.is_eligible(settings):
                continue
            if not relief.is_automatic and relief.code not in active:
                continue
            amount = self.relief_amount(relief, annual_gross, detail)
            if amount <= ZERO:
                continue
            applied.append(ReliefApplied(relief.code, relief.name, self._round(amount)))
        return tuple(applied)

    # ===== Per-period computation =====

    def _annual(
        self,
        table: TaxTable,
        annual_gross: Decimal,
        annual_taxable_gross: Decimal,
        detail: EmployeePayrollDetail | None,
    ) -> _AnnualResult:
        bands = validate_bands(table.bands, table.name)

        if table.low_income_threshold is not None and annual_gross <= table.low_income_threshold:
            return _AnnualResult(
                reliefs=(),
                total_reliefs=ZERO,
                taxable_income=ZERO,
                tax=ZERO,
                breakdown=(),
                exemption_reason="low_income",
            )

        reliefs = self.resolve_reliefs(table, annual_gross, detail)
        total_reliefs = sum((r.amount for r in reliefs), ZERO)
        taxable_income = max(ZERO, annual_taxable_gross - total_reliefs)
        tax, breakdown = apply_bands(taxable_income, bands)
        return _AnnualResult(
            reliefs=reliefs,
            total_reliefs=total_reliefs,
            taxable_income=taxable_income,
            tax=tax,
            breakdown=tuple(
                BandTax(
                    lower_bound=b.lower_bound,
                    upper_bound=b.upper_bound,
                    rate=b.rate,
                    taxable_amount=self._round(b.taxable_amount),
                    tax=self._round(b.tax),
                )
                for b in breakdown
            ),
        )

    def calculate(
        self,
        detail: EmployeePayrollDetail,
        period_taxable: Decimal,
        period_gross: Decimal,
        periods_per_year: int,
        table: TaxTable | None = None,
    ) -> TaxComputation:
        """Tax for one period on adjusted taxable income.

        ``period_taxable`` is taxable gross less pre-tax deductions;
        ``period_gross`` is the basis for percentage reliefs and the
        low-income exemption.
        """
        period_taxable = max(ZERO, period_taxable)
        annual_taxable_gross = period_taxable * periods_per_year

        if detail.tax_handling == TaxHandling.EXEMPT:
            return TaxComputation(
                handling=TaxHandling.EXEMPT,
                periods_per_year=periods_per_year,
                annual_taxable_gross=self._round(annual_taxable_gross),
                annual_reliefs=ZERO,
                annual_taxable_income=ZERO,
                annual_tax=ZERO,
                period_taxable_income=ZERO,
                period_tax=self._round(ZERO),
                is_exempt=True,
                exemption_reason="exempt",
                jurisdiction=detail.jurisdiction,
            )

        if detail.tax_handling == TaxHandling.FLAT:
            rate = detail.flat_tax_rate
            if rate is None or not ZERO <= rate <= Decimal("1"):
                raise ConfigurationError(
                    f"Flat tax handling needs a rate in [0, 1], got {rate}", "flat_tax_rate"
                )
            period_tax = self._round(period_taxable * rate)
            return TaxComputation(
                handling=TaxHandling.FLAT,
                periods_per_year=periods_per_year,
                annual_taxable_gross=self._round(annual_taxable_gross),
                annual_reliefs=ZERO,
                annual_taxable_income=self._round(annual_taxable_gross),
                annual_tax=self._round(annual_taxable_gross * rate),
                period_taxable_income=self._round(period_taxable),
                period_tax=period_tax,
                jurisdiction=detail.jurisdiction,
            )

        if table is None:
            raise ConfigurationError(
                f"No tax table supplied for jurisdiction '{detail.jurisdiction}'",
                detail.jurisdiction,
            )

        annual = self._annual(table, period_gross * periods_per_year, annual_taxable_gross, detail)
        return TaxComputation(
            handling=TaxHandling.STANDARD,
            periods_per_year=periods_per_year,
            annual_taxable_gross=self._round(annual_taxable_gross),
            annual_reliefs=self._round(annual.total_reliefs),
            annual_taxable_income=self._round(annual.taxable_income),
            annual_tax=self._round(annual.tax),
            period_taxable_income=self._round(annual.taxable_income / periods_per_year),
            period_tax=self._round(annual.tax / periods_per_year),
            reliefs_applied=annual.reliefs,
            band_breakdown=annual.breakdown,
            is_exempt=annual.exemption_reason is not None,
            exemption_reason=annual.exemption_reason,
            jurisdiction=table.jurisdiction,
        )

    def estimate(
        self,
        annual_salary: Decimal,
        table: TaxTable,
        frequency: PayFrequency = PayFrequency.MONTHLY,
        detail: EmployeePayrollDetail | None = None,
    ) -> TaxEstimate:
        """Estimate tax on an annual salary with no pre-tax deductions."""
        periods = PERIODS_PER_YEAR[frequency]
        annual = self._annual(table, annual_salary, annual_salary, detail)
        annual_tax = self._round(annual.tax)
        effective_rate = (
            (annual.tax / annual_salary).quantize(Decimal("0.0001"))
            if annual_salary > ZERO
            else ZERO
        )
        return TaxEstimate(
            annual_salary=annual_salary,
            annual_reliefs=self._round(annual.total_reliefs),
            annual_taxable_income=self._round(annual.taxable_income),
            annual_tax=annual_tax,
            period_tax=self._round(annual.tax / periods),
            periods_per_year=periods,
            effective_rate=effective_rate,
            band_breakdown=annual.breakdown,
            exemption_reason=annual.exemption_reason,
        )

    # ===== Table selection =====

    @staticmethod
    def select_table(tables: Iterable[TaxTable], jurisdiction: str, as_of: date) -> TaxTable:
        """Active table for a jurisdiction on a date; latest effective_from wins."""
        candidates = [
            t for t in tables if t.jurisdiction == jurisdiction and t.is_effective_on(as_of)
        ]
        if not candidates:
            raise TaxTableNotFoundError(jurisdiction, as_of)
        return max(candidates, key=lambda t: t.effective_from)
