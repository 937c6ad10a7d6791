"""Type definitions for the calculation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

ZERO = Decimal("0")


class PayFrequency(str, Enum):
    """How often an employee (or a calendar) is paid."""

    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    SEMIMONTHLY = "semimonthly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


PERIODS_PER_YEAR: dict[PayFrequency, int] = {
    PayFrequency.WEEKLY: 52,
    PayFrequency.BIWEEKLY: 26,
    PayFrequency.SEMIMONTHLY: 24,
    PayFrequency.MONTHLY: 12,
    PayFrequency.QUARTERLY: 4,
    PayFrequency.ANNUALLY: 1,
}


class PayType(str, Enum):
    SALARY = "salary"
    HOURLY = "hourly"


class TaxHandling(str, Enum):
    """How income tax is withheld for an employee."""

    STANDARD = "standard"  # progressive bands from the jurisdiction's table
    EXEMPT = "exempt"
    FLAT = "flat"  # flat_tax_rate on adjusted taxable income


class CalculationType(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"
    FORMULA = "formula"
    TIERED = "tiered"


class CalculationBase(str, Enum):
    """Amount a percentage/tiered/formula line is computed from."""

    GROSS = "gross"
    BASIC = "basic"
    TAXABLE = "taxable"
    PENSIONABLE = "pensionable"
    NET = "net"  # gross minus deductions already applied


class EarningCategory(str, Enum):
    BASE = "base"
    ALLOWANCE = "allowance"
    OVERTIME = "overtime"
    BONUS = "bonus"
    COMMISSION = "commission"
    REIMBURSEMENT = "reimbursement"
    OTHER = "other"


class DeductionCategory(str, Enum):
    TAX = "tax"
    PENSION = "pension"
    HOUSING_FUND = "housing_fund"
    HEALTH_INSURANCE = "health_insurance"
    STATUTORY = "statutory"
    LOAN = "loan"
    ADVANCE = "advance"
    UNION = "union"
    SAVINGS = "savings"
    INSURANCE = "insurance"
    OTHER = "other"


STATUTORY_CATEGORIES = frozenset(
    {
        DeductionCategory.TAX,
        DeductionCategory.PENSION,
        DeductionCategory.HOUSING_FUND,
        DeductionCategory.HEALTH_INSURANCE,
        DeductionCategory.STATUTORY,
    }
)


class ReliefType(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"  # rate x annual gross
    CAPPED_PERCENTAGE = "capped_percentage"
    RENT = "rent"  # min(rate x annual rent paid, cap), non-homeowners only
    GREATER_OF = "greater_of"  # max(rate x annual gross + amount, alternative_rate x annual gross)


class PayRunItemStatus(str, Enum):
    PENDING = "pending"
    CALCULATED = "calculated"
    ERROR = "error"
    EXCLUDED = "excluded"


# ===== Catalog =====


@dataclass(frozen=True)
class TaxBand:
    """Marginal-rate bracket. Also used as the tier shape for tiered amounts."""

    lower_bound: Decimal
    upper_bound: Decimal | None  # None = no upper limit
    rate: Decimal  # As decimal, e.g., 0.07 for 7%


@dataclass(frozen=True)
class EarningType:
    """Catalog definition of a pay component."""

    code: str
    name: str
    category: EarningCategory = EarningCategory.OTHER
    calculation_type: CalculationType = CalculationType.FIXED
    calculation_base: CalculationBase = CalculationBase.BASIC
    default_amount: Decimal | None = None
    default_rate: Decimal | None = None
    formula: str | None = None
    tiers: tuple[TaxBand, ...] = ()
    is_taxable: bool = True
    is_pensionable: bool = True
    is_recurring: bool = True
    is_system: bool = False
    is_active: bool = True


@dataclass(frozen=True)
class DeductionType:
    """Catalog definition of a withholding."""

    code: str
    name: str
    category: DeductionCategory = DeductionCategory.OTHER
    calculation_type: CalculationType = CalculationType.FIXED
    calculation_base: CalculationBase = CalculationBase.GROSS
    default_amount: Decimal | None = None
    default_rate: Decimal | None = None
    formula: str | None = None
    tiers: tuple[TaxBand, ...] = ()
    max_amount: Decimal | None = None
    annual_cap: Decimal | None = None
    is_pre_tax: bool = False
    is_mandatory: bool = False
    is_system: bool = False
    is_active: bool = True
    priority: int = 100

    @property
    def is_statutory(self) -> bool:
        return self.category in STATUTORY_CATEGORIES


# ===== Employee inputs =====


def _active_on(
    as_of: date, effective_from: date | None, effective_to: date | None
) -> bool:
    if effective_from is not None and effective_from > as_of:
        return False
    if effective_to is not None and effective_to < as_of:
        return False
    return True


@dataclass(frozen=True)
class EarningAssignment:
    """Recurring earning assigned to an employee."""

    earning_code: str
    amount: Decimal | None = None
    rate: Decimal | None = None
    effective_from: date | None = None
    effective_to: date | None = None
    is_active: bool = True

    def is_effective_on(self, as_of: date) -> bool:
        return self.is_active and _active_on(as_of, self.effective_from, self.effective_to)


@dataclass(frozen=True)
class OneOffEarning:
    """Earning entered for a single period (bonus, overtime hours, ...)."""

    earning_code: str
    amount: Decimal | None = None
    quantity: Decimal | None = None
    rate: Decimal | None = None
    memo: str | None = None


@dataclass(frozen=True)
class EmployeeCustomDeduction:
    """Employee-specific deduction instance."""

    deduction_code: str
    amount: Decimal | None = None
    rate: Decimal | None = None
    effective_from: date | None = None
    effective_to: date | None = None
    is_active: bool = True
    # Loan/advance balance tracking
    total_target: Decimal | None = None
    total_deducted: Decimal = ZERO
    deduction_id: UUID | None = None

    def is_effective_on(self, as_of: date) -> bool:
        return self.is_active and _active_on(as_of, self.effective_from, self.effective_to)

    @property
    def remaining_balance(self) -> Decimal | None:
        if self.total_target is None:
            return None
        return max(ZERO, self.total_target - self.total_deducted)


@dataclass(frozen=True)
class EmployeePayrollDetail:
    """Per-employee pay configuration, read-only input to calculation."""

    user_id: UUID
    pay_type: PayType
    pay_amount: Decimal
    pay_frequency: PayFrequency
    employment_type: str = "full_time"
    jurisdiction: str = "default"
    tax_handling: TaxHandling = TaxHandling.STANDARD
    flat_tax_rate: Decimal | None = None

    # Statutory toggles (rates as decimals)
    pension_enabled: bool = False
    pension_rate: Decimal | None = None
    pension_employer_rate: Decimal | None = None
    housing_fund_enabled: bool = False
    housing_fund_rate: Decimal | None = None
    housing_fund_employer_rate: Decimal | None = None
    health_insurance_enabled: bool = False
    health_insurance_rate: Decimal | None = None

    # Relief eligibility
    annual_rent_paid: Decimal = ZERO
    is_homeowner: bool = False
    active_reliefs: frozenset[str] = frozenset()

    is_active: bool = True
    start_date: date | None = None
    end_date: date | None = None
    pay_calendar_id: UUID | None = None

    bank_name: str | None = None
    bank_account_number: str | None = None
    bank_account_name: str | None = None

    def relief_settings(self) -> dict[str, Any]:
        """Settings matched against a relief's eligibility criteria."""
        return {
            "is_homeowner": self.is_homeowner,
            "employment_type": self.employment_type,
            "annual_rent_paid": self.annual_rent_paid,
        }


# ===== Tax configuration =====


@dataclass(frozen=True)
class TaxRelief:
    """Reduction of annual taxable income before banding."""

    code: str
    name: str
    relief_type: ReliefType
    amount: Decimal | None = None
    rate: Decimal | None = None
    cap: Decimal | None = None
    alternative_rate: Decimal | None = None
    is_automatic: bool = True
    is_active: bool = True
    eligibility_criteria: dict[str, Any] = field(default_factory=dict)

    def is_eligible(self, settings: dict[str, Any]) -> bool:
        if not self.is_active:
            return False
        return all(settings.get(k) == v for k, v in self.eligibility_criteria.items())


@dataclass(frozen=True)
class TaxTable:
    """Versioned jurisdiction tax rules."""

    jurisdiction: str
    name: str
    bands: tuple[TaxBand, ...]
    effective_from: date
    effective_to: date | None = None
    reliefs: tuple[TaxRelief, ...] = ()
    low_income_threshold: Decimal | None = None
    table_id: UUID = field(default_factory=uuid4)

    def is_effective_on(self, as_of: date) -> bool:
        return _active_on(as_of, self.effective_from, self.effective_to)


# ===== Calculation output =====


@dataclass(frozen=True)
class EarningLine:
    """One earning on a payslip."""

    code: str
    name: str
    category: EarningCategory
    amount: Decimal
    is_taxable: bool
    is_pensionable: bool
    source: str  # 'base', 'recurring', 'one_off'
    quantity: Decimal | None = None
    rate: Decimal | None = None

    def to_canonical_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category.value,
            "amount": str(self.amount),
            "is_taxable": self.is_taxable,
            "is_pensionable": self.is_pensionable,
            "source": self.source,
            "quantity": str(self.quantity) if self.quantity is not None else None,
            "rate": str(self.rate) if self.rate is not None else None,
        }


@dataclass(frozen=True)
class DeductionLine:
    """One withholding on a payslip."""

    code: str
    name: str
    category: DeductionCategory
    amount: Decimal
    calculated_amount: Decimal  # before clamps
    priority: int
    is_pre_tax: bool
    is_statutory: bool
    clamps: tuple[str, ...] = ()
    deduction_id: UUID | None = None

    def to_canonical_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category.value,
            "amount": str(self.amount),
            "calculated_amount": str(self.calculated_amount),
            "priority": self.priority,
            "is_pre_tax": self.is_pre_tax,
            "clamps": list(self.clamps),
            "deduction_id": str(self.deduction_id) if self.deduction_id else None,
        }


@dataclass(frozen=True)
class EmployerContributionLine:
    """Employer-side statutory contribution (not withheld from the employee)."""

    code: str
    name: str
    rate: Decimal
    base: Decimal
    amount: Decimal

    def to_canonical_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "rate": str(self.rate),
            "base": str(self.base),
            "amount": str(self.amount),
        }


@dataclass(frozen=True)
class ReliefApplied:
    code: str
    name: str
    amount: Decimal


@dataclass(frozen=True)
class BandTax:
    lower_bound: Decimal
    upper_bound: Decimal | None
    rate: Decimal
    taxable_amount: Decimal
    tax: Decimal

    def to_canonical_dict(self) -> dict[str, Any]:
        return {
            "lower_bound": str(self.lower_bound),
            "upper_bound": str(self.upper_bound) if self.upper_bound is not None else None,
            "rate": str(self.rate),
            "taxable_amount": str(self.taxable_amount),
            "tax": str(self.tax),
        }


@dataclass(frozen=True)
class TaxComputation:
    """Tax liability for one period with its annual working."""

    handling: TaxHandling
    periods_per_year: int
    annual_taxable_gross: Decimal
    annual_reliefs: Decimal
    annual_taxable_income: Decimal
    annual_tax: Decimal
    period_taxable_income: Decimal
    period_tax: Decimal
    reliefs_applied: tuple[ReliefApplied, ...] = ()
    band_breakdown: tuple[BandTax, ...] = ()
    is_exempt: bool = False
    exemption_reason: str | None = None
    jurisdiction: str | None = None

    def to_canonical_dict(self) -> dict[str, Any]:
        return {
            "handling": self.handling.value,
            "periods_per_year": self.periods_per_year,
            "annual_taxable_gross": str(self.annual_taxable_gross),
            "annual_reliefs": str(self.annual_reliefs),
            "annual_taxable_income": str(self.annual_taxable_income),
            "annual_tax": str(self.annual_tax),
            "period_taxable_income": str(self.period_taxable_income),
            "period_tax": str(self.period_tax),
            "reliefs_applied": [
                {"code": r.code, "amount": str(r.amount)} for r in self.reliefs_applied
            ],
            "band_breakdown": [b.to_canonical_dict() for b in self.band_breakdown],
            "is_exempt": self.is_exempt,
            "exemption_reason": self.exemption_reason,
            "jurisdiction": self.jurisdiction,
        }


@dataclass(frozen=True)
class EarningsResult:
    lines: tuple[EarningLine, ...]
    basic_pay: Decimal
    gross: Decimal
    taxable_gross: Decimal
    pensionable_gross: Decimal


@dataclass(frozen=True)
class DeductionsResult:
    lines: tuple[DeductionLine, ...]
    total: Decimal
    pre_tax_total: Decimal
    post_tax_total: Decimal
    statutory_total: Decimal
    voluntary_total: Decimal
    adjusted_taxable: Decimal
    tax: TaxComputation | None


@dataclass
class PayRunItem:
    """One employee's line within a pay run."""

    user_id: UUID
    item_id: UUID = field(default_factory=uuid4)
    status: PayRunItemStatus = PayRunItemStatus.PENDING
    basic_pay: Decimal = ZERO
    gross_pay: Decimal = ZERO
    taxable_income: Decimal = ZERO
    total_deductions: Decimal = ZERO
    net_pay: Decimal = ZERO
    employer_contributions_total: Decimal = ZERO
    total_employer_cost: Decimal = ZERO
    earning_lines: tuple[EarningLine, ...] = ()
    deduction_lines: tuple[DeductionLine, ...] = ()
    employer_contributions: tuple[EmployerContributionLine, ...] = ()
    tax: TaxComputation | None = None
    exclusion_reason: str | None = None
    error_message: str | None = None
    fingerprint: str | None = None

    @property
    def excluded(self) -> bool:
        return self.status == PayRunItemStatus.EXCLUDED

    @property
    def contributes_to_totals(self) -> bool:
        return self.status == PayRunItemStatus.CALCULATED

    def mark_calculated(self, calculated: PayRunItem) -> None:
        """Copy a fresh calculation into this item, keeping its identity."""
        self.status = PayRunItemStatus.CALCULATED
        self.basic_pay = calculated.basic_pay
        self.gross_pay = calculated.gross_pay
        self.taxable_income = calculated.taxable_income
        self.total_deductions = calculated.total_deductions
        self.net_pay = calculated.net_pay
        self.employer_contributions_total = calculated.employer_contributions_total
        self.total_employer_cost = calculated.total_employer_cost
        self.earning_lines = calculated.earning_lines
        self.deduction_lines = calculated.deduction_lines
        self.employer_contributions = calculated.employer_contributions
        self.tax = calculated.tax
        self.fingerprint = calculated.fingerprint
        self.exclusion_reason = None
        self.error_message = None

    def mark_error(self, message: str) -> None:
        self.reset()
        self.status = PayRunItemStatus.ERROR
        self.error_message = message

    def exclude(self, reason: str) -> None:
        self.status = PayRunItemStatus.EXCLUDED
        self.exclusion_reason = reason

    def reset(self) -> None:
        """Back to pending with no figures; needs recalculation to count."""
        self.status = PayRunItemStatus.PENDING
        self.basic_pay = ZERO
        self.gross_pay = ZERO
        self.taxable_income = ZERO
        self.total_deductions = ZERO
        self.net_pay = ZERO
        self.employer_contributions_total = ZERO
        self.total_employer_cost = ZERO
        self.earning_lines = ()
        self.deduction_lines = ()
        self.employer_contributions = ()
        self.tax = None
        self.exclusion_reason = None
        self.error_message = None
        self.fingerprint = None

    def to_canonical_dict(self) -> dict[str, Any]:
        """Return canonical dict of the calculated figures (no identity fields)."""
        return {
            "user_id": str(self.user_id),
            "status": self.status.value,
            "basic_pay": str(self.basic_pay),
            "gross_pay": str(self.gross_pay),
            "taxable_income": str(self.taxable_income),
            "total_deductions": str(self.total_deductions),
            "net_pay": str(self.net_pay),
            "employer_contributions_total": str(self.employer_contributions_total),
            "total_employer_cost": str(self.total_employer_cost),
            "earning_lines": [line.to_canonical_dict() for line in self.earning_lines],
            "deduction_lines": [line.to_canonical_dict() for line in self.deduction_lines],
            "employer_contributions": [
                line.to_canonical_dict() for line in self.employer_contributions
            ],
            "tax": self.tax.to_canonical_dict() if self.tax else None,
        }
