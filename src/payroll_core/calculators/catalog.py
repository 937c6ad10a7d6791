"""Earning and deduction catalog: registry rules and read-only snapshots."""

from __future__ import annotations

import ast
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from decimal import Decimal
from types import MappingProxyType

from payroll_core.calculators.tax_engine import validate_bands
from payroll_core.calculators.types import (
    ZERO,
    CalculationBase,
    CalculationType,
    DeductionCategory,
    DeductionType,
    EarningCategory,
    EarningType,
)
from payroll_core.errors import CatalogError, ConfigurationError

# System codes the calculation pipeline relies on
BASIC = "BASIC"
TAX = "TAX"
PENSION = "PENSION"
HOUSING_FUND = "HOUSING_FUND"
HEALTH_INSURANCE = "HEALTH_INSURANCE"


@dataclass(frozen=True)
class CatalogSnapshot:
    """Read-consistent view of a tenant catalog, taken once per calculation."""

    earning_types: Mapping[str, EarningType] = field(default_factory=dict)
    deduction_types: Mapping[str, DeductionType] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "earning_types", MappingProxyType(dict(self.earning_types)))
        object.__setattr__(self, "deduction_types", MappingProxyType(dict(self.deduction_types)))

    def earning(self, code: str) -> EarningType:
        earning_type = self.earning_types.get(code)
        if earning_type is None or not earning_type.is_active:
            raise ConfigurationError(f"Unknown or inactive earning type '{code}'", code)
        return earning_type

    def deduction(self, code: str) -> DeductionType:
        deduction_type = self.deduction_types.get(code)
        if deduction_type is None or not deduction_type.is_active:
            raise ConfigurationError(f"Unknown or inactive deduction type '{code}'", code)
        return deduction_type

    @property
    def tax_type(self) -> DeductionType:
        return self.deduction(TAX)


def validate_earning_type(earning_type: EarningType) -> list[str]:
    errors = _validate_calculation(
        earning_type.code,
        earning_type.calculation_type,
        earning_type.default_rate,
        earning_type.formula,
        earning_type.tiers,
    )
    if earning_type.default_amount is not None and earning_type.default_amount < ZERO:
        errors.append(f"{earning_type.code}: default_amount is negative")
    if earning_type.calculation_base in (CalculationBase.TAXABLE, CalculationBase.NET):
        errors.append(
            f"{earning_type.code}: earnings cannot be based on "
            f"'{earning_type.calculation_base.value}'"
        )
    return errors


def validate_deduction_type(deduction_type: DeductionType) -> list[str]:
    code = deduction_type.code
    errors = _validate_calculation(
        code,
        deduction_type.calculation_type,
        deduction_type.default_rate,
        deduction_type.formula,
        deduction_type.tiers,
    )
    if deduction_type.default_amount is not None and deduction_type.default_amount < ZERO:
        errors.append(f"{code}: default_amount is negative")
    if deduction_type.max_amount is not None and deduction_type.max_amount < ZERO:
        errors.append(f"{code}: max_amount is negative")
    if deduction_type.annual_cap is not None and deduction_type.annual_cap < ZERO:
        errors.append(f"{code}: annual_cap is negative")
    if (
        deduction_type.max_amount is not None
        and deduction_type.annual_cap is not None
        and deduction_type.max_amount > deduction_type.annual_cap
    ):
        errors.append(
            f"{code}: max_amount {deduction_type.max_amount} exceeds "
            f"annual_cap {deduction_type.annual_cap}"
        )
    if deduction_type.is_pre_tax and deduction_type.calculation_base in (
        CalculationBase.NET,
        CalculationBase.TAXABLE,
    ):
        errors.append(
            f"{code}: pre-tax deductions cannot use base "
            f"'{deduction_type.calculation_base.value}'"
        )
    if code == TAX and deduction_type.is_pre_tax:
        errors.append(f"{code}: the tax deduction cannot be pre-tax")
    return errors


def _validate_calculation(
    code: str,
    calculation_type: CalculationType,
    rate: Decimal | None,
    formula: str | None,
    tiers: tuple,
) -> list[str]:
    errors: list[str] = []
    if rate is not None and not ZERO <= rate <= Decimal("1"):
        errors.append(f"{code}: default_rate {rate} is outside [0, 1]")
    if calculation_type == CalculationType.FORMULA:
        if not formula:
            errors.append(f"{code}: formula type without an expression")
        else:
            try:
                ast.parse(formula, mode="eval")
            except SyntaxError as e:
                errors.append(f"{code}: invalid formula ({e.msg})")
    if calculation_type == CalculationType.TIERED and code != TAX:
        try:
            validate_bands(tiers, code)
        except ConfigurationError as e:
            errors.append(f"{code}: {e}")
    return errors


def validate_catalog(snapshot: CatalogSnapshot) -> list[str]:
    """Return every problem found in a catalog (empty if usable)."""
    errors: list[str] = []
    for earning_type in snapshot.earning_types.values():
        errors.extend(validate_earning_type(earning_type))
    for deduction_type in snapshot.deduction_types.values():
        errors.extend(validate_deduction_type(deduction_type))
    if BASIC not in snapshot.earning_types:
        errors.append(f"Catalog is missing the {BASIC} earning type")
    if TAX not in snapshot.deduction_types:
        errors.append(f"Catalog is missing the {TAX} deduction type")
    return errors


class CatalogRegistry:
    """Mutable tenant catalog enforcing the immutability rules.

    System entries cannot be edited or removed; entries referenced by an
    employee assignment cannot be removed. Calculations never read the
    registry directly, only a snapshot of it.
    """

    def __init__(
        self,
        earning_types: Iterable[EarningType] = (),
        deduction_types: Iterable[DeductionType] = (),
    ):
        self._earning_types: dict[str, EarningType] = {}
        self._deduction_types: dict[str, DeductionType] = {}
        for earning_type in earning_types:
            self.define_earning_type(earning_type)
        for deduction_type in deduction_types:
            self.define_deduction_type(deduction_type)

    @classmethod
    def with_defaults(cls) -> CatalogRegistry:
        snapshot = default_catalog()
        return cls(snapshot.earning_types.values(), snapshot.deduction_types.values())

    def snapshot(self) -> CatalogSnapshot:
        return CatalogSnapshot(
            earning_types=dict(self._earning_types),
            deduction_types=dict(self._deduction_types),
        )

    # ===== Earning types =====

    def define_earning_type(self, earning_type: EarningType) -> EarningType:
        if earning_type.code in self._earning_types:
            raise CatalogError(f"Earning type '{earning_type.code}' already exists", earning_type.code)
        self._raise_if_invalid(validate_earning_type(earning_type), earning_type.code)
        self._earning_types[earning_type.code] = earning_type
        return earning_type

    def update_earning_type(self, code: str, **changes) -> EarningType:
        current = self._get_mutable(self._earning_types, code, "Earning")
        updated = replace(current, **changes)
        if updated.code != code:
            raise CatalogError(f"Earning type code '{code}' cannot be changed", code)
        self._raise_if_invalid(validate_earning_type(updated), code)
        self._earning_types[code] = updated
        return updated

    def remove_earning_type(self, code: str, referenced_codes: Iterable[str] = ()) -> None:
        self._get_mutable(self._earning_types, code, "Earning")
        if code in set(referenced_codes):
            raise CatalogError(f"Earning type '{code}' is assigned to employees", code)
        del self._earning_types[code]

    # ===== Deduction types =====

    def define_deduction_type(self, deduction_type: DeductionType) -> DeductionType:
        if deduction_type.code in self._deduction_types:
            raise CatalogError(
                f"Deduction type '{deduction_type.code}' already exists", deduction_type.code
            )
        self._raise_if_invalid(validate_deduction_type(deduction_type), deduction_type.code)
        self._deduction_types[deduction_type.code] = deduction_type
        return deduction_type

    def update_deduction_type(self, code: str, **changes) -> DeductionType:
        current = self._get_mutable(self._deduction_types, code, "Deduction")
        updated = replace(current, **changes)
        if updated.code != code:
            raise CatalogError(f"Deduction type code '{code}' cannot be changed", code)
        self._raise_if_invalid(validate_deduction_type(updated), code)
        self._deduction_types[code] = updated
        return updated

    def remove_deduction_type(self, code: str, referenced_codes: Iterable[str] = ()) -> None:
        self._get_mutable(self._deduction_types, code, "Deduction")
        if code in set(referenced_codes):
            raise CatalogError(f"Deduction type '{code}' is assigned to employees", code)
        del self._deduction_types[code]

    @staticmethod
    def _get_mutable(entries: dict, code: str, kind: str):
        entry = entries.get(code)
        if entry is None:
            raise CatalogError(f"{kind} type '{code}' does not exist", code)
        if entry.is_system:
            raise CatalogError(f"{kind} type '{code}' is a system entry and is immutable", code)
        return entry

    @staticmethod
    def _raise_if_invalid(errors: list[str], code: str) -> None:
        if errors:
            raise CatalogError("; ".join(errors), code)


def default_catalog() -> CatalogSnapshot:
    """System earning and deduction types every tenant starts with."""
    earning_types = [
        EarningType(
            code=BASIC,
            name="Basic Salary",
            category=EarningCategory.BASE,
            is_system=True,
        ),
        EarningType(
            code="OVERTIME",
            name="Overtime",
            category=EarningCategory.OVERTIME,
            is_pensionable=False,
            is_recurring=False,
            is_system=True,
        ),
        EarningType(
            code="BONUS",
            name="Bonus",
            category=EarningCategory.BONUS,
            is_pensionable=False,
            is_recurring=False,
            is_system=True,
        ),
        EarningType(
            code="ALLOWANCE",
            name="Allowance",
            category=EarningCategory.ALLOWANCE,
            is_system=True,
        ),
        EarningType(
            code="REIMBURSEMENT",
            name="Reimbursement",
            category=EarningCategory.REIMBURSEMENT,
            is_taxable=False,
            is_pensionable=False,
            is_recurring=False,
            is_system=True,
        ),
    ]
    deduction_types = [
        DeductionType(
            code=PENSION,
            name="Pension (Employee)",
            category=DeductionCategory.PENSION,
            calculation_type=CalculationType.PERCENTAGE,
            calculation_base=CalculationBase.PENSIONABLE,
            default_rate=Decimal("0.08"),
            is_pre_tax=True,
            is_mandatory=True,
            is_system=True,
            priority=5,
        ),
        DeductionType(
            code=TAX,
            name="Income Tax",
            category=DeductionCategory.TAX,
            calculation_type=CalculationType.TIERED,
            calculation_base=CalculationBase.TAXABLE,
            is_mandatory=True,
            is_system=True,
            priority=10,
        ),
        DeductionType(
            code=HOUSING_FUND,
            name="Housing Fund",
            category=DeductionCategory.HOUSING_FUND,
            calculation_type=CalculationType.PERCENTAGE,
            calculation_base=CalculationBase.BASIC,
            default_rate=Decimal("0.025"),
            is_pre_tax=True,
            is_system=True,
            priority=15,
        ),
        DeductionType(
            code=HEALTH_INSURANCE,
            name="Health Insurance",
            category=DeductionCategory.HEALTH_INSURANCE,
            calculation_type=CalculationType.PERCENTAGE,
            calculation_base=CalculationBase.BASIC,
            default_rate=Decimal("0.05"),
            is_pre_tax=True,
            is_system=True,
            priority=20,
        ),
        DeductionType(
            code="LOAN",
            name="Loan Repayment",
            category=DeductionCategory.LOAN,
            is_system=True,
            priority=50,
        ),
        DeductionType(
            code="ADVANCE",
            name="Salary Advance",
            category=DeductionCategory.ADVANCE,
            is_system=True,
            priority=55,
        ),
        DeductionType(
            code="UNION_DUES",
            name="Union Dues",
            category=DeductionCategory.UNION,
            calculation_type=CalculationType.PERCENTAGE,
            calculation_base=CalculationBase.BASIC,
            is_system=True,
            priority=60,
        ),
        DeductionType(
            code="SAVINGS",
            name="Cooperative Savings",
            category=DeductionCategory.SAVINGS,
            is_system=True,
            priority=70,
        ),
        DeductionType(
            code="INSURANCE",
            name="Insurance Premium",
            category=DeductionCategory.INSURANCE,
            is_system=True,
            priority=75,
        ),
    ]
    return CatalogSnapshot(
        earning_types={t.code: t for t in earning_types},
        deduction_types={t.code: t for t in deduction_types},
    )
