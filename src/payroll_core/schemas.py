"""Pydantic schemas for JSON configuration payloads (tax tables, catalogs)."""

from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from payroll_core.calculators.catalog import CatalogRegistry, CatalogSnapshot
from payroll_core.calculators.tax_engine import validate_bands
from payroll_core.calculators.types import (
    CalculationBase,
    CalculationType,
    DeductionCategory,
    DeductionType,
    EarningCategory,
    EarningType,
    ReliefType,
    TaxBand,
    TaxRelief,
    TaxTable,
)
from payroll_core.errors import ConfigurationError


# ============================================================================
# Tax table schemas
# ============================================================================


class TaxBandSchema(BaseModel):
    """One marginal-rate band. ``upper_bound`` null means open-ended."""

    model_config = ConfigDict(frozen=True)

    lower_bound: Decimal = Field(ge=0)
    upper_bound: Decimal | None = None
    rate: Decimal = Field(ge=0, le=1)

    def to_domain(self) -> TaxBand:
        return TaxBand(self.lower_bound, self.upper_bound, self.rate)


class TaxReliefSchema(BaseModel):
    code: str
    name: str
    relief_type: ReliefType
    amount: Decimal | None = Field(default=None, ge=0)
    rate: Decimal | None = Field(default=None, ge=0, le=1)
    cap: Decimal | None = Field(default=None, ge=0)
    alternative_rate: Decimal | None = Field(default=None, ge=0, le=1)
    is_automatic: bool = True
    is_active: bool = True
    eligibility_criteria: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_parameters(self) -> "TaxReliefSchema":
        if self.relief_type == ReliefType.FIXED and self.amount is None:
            raise ValueError(f"Relief {self.code}: fixed relief needs an amount")
        percentage_types = (ReliefType.PERCENTAGE, ReliefType.CAPPED_PERCENTAGE)
        if self.relief_type in percentage_types and self.rate is None:
            raise ValueError(f"Relief {self.code}: {self.relief_type.value} relief needs a rate")
        if self.relief_type == ReliefType.CAPPED_PERCENTAGE and self.cap is None:
            raise ValueError(f"Relief {self.code}: capped_percentage relief needs a cap")
        if self.relief_type == ReliefType.GREATER_OF and (
            self.rate is None or self.amount is None or self.alternative_rate is None
        ):
            raise ValueError(
                f"Relief {self.code}: greater_of relief needs a rate, an amount and an "
                "alternative_rate"
            )
        return self

    def to_domain(self) -> TaxRelief:
        return TaxRelief(
            code=self.code,
            name=self.name,
            relief_type=self.relief_type,
            amount=self.amount,
            rate=self.rate,
            cap=self.cap,
            alternative_rate=self.alternative_rate,
            is_automatic=self.is_automatic,
            is_active=self.is_active,
            eligibility_criteria=dict(self.eligibility_criteria),
        )


class TaxTableSchema(BaseModel):
    """Tax table payload.

    Bands are validated as a whole: they must start at zero, be contiguous,
    and end with a single open-ended band.
    """

    jurisdiction: str = "default"
    name: str
    effective_from: date
    effective_to: date | None = None
    bands: list[TaxBandSchema] = Field(min_length=1)
    reliefs: list[TaxReliefSchema] = Field(default_factory=list)
    low_income_threshold: Decimal | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_table(self) -> "TaxTableSchema":
        if self.effective_to is not None and self.effective_to < self.effective_from:
            raise ValueError("effective_to must not precede effective_from")
        try:
            validate_bands([band.to_domain() for band in self.bands], self.name)
        except ConfigurationError as e:
            raise ValueError(str(e)) from e
        return self

    def to_domain(self) -> TaxTable:
        return TaxTable(
            jurisdiction=self.jurisdiction,
            name=self.name,
            bands=validate_bands([band.to_domain() for band in self.bands], self.name),
            effective_from=self.effective_from,
            effective_to=self.effective_to,
            reliefs=tuple(relief.to_domain() for relief in self.reliefs),
            low_income_threshold=self.low_income_threshold,
        )


# ============================================================================
# Catalog schemas
# ============================================================================


class EarningTypeSchema(BaseModel):
    code: str = Field(min_length=1)
    name: str
    category: EarningCategory = EarningCategory.OTHER
    calculation_type: CalculationType = CalculationType.FIXED
    calculation_base: CalculationBase = CalculationBase.BASIC
    default_amount: Decimal | None = None
    default_rate: Decimal | None = None
    formula: str | None = None
    tiers: list[TaxBandSchema] = Field(default_factory=list)
    is_taxable: bool = True
    is_pensionable: bool = True
    is_recurring: bool = True
    is_active: bool = True

    def to_domain(self) -> EarningType:
        return EarningType(
            code=self.code,
            name=self.name,
            category=self.category,
            calculation_type=self.calculation_type,
            calculation_base=self.calculation_base,
            default_amount=self.default_amount,
            default_rate=self.default_rate,
            formula=self.formula,
            tiers=tuple(tier.to_domain() for tier in self.tiers),
            is_taxable=self.is_taxable,
            is_pensionable=self.is_pensionable,
            is_recurring=self.is_recurring,
            is_active=self.is_active,
        )


class DeductionTypeSchema(BaseModel):
    code: str = Field(min_length=1)
    name: str
    category: DeductionCategory = DeductionCategory.OTHER
    calculation_type: CalculationType = CalculationType.FIXED
    calculation_base: CalculationBase = CalculationBase.GROSS
    default_amount: Decimal | None = None
    default_rate: Decimal | None = None
    formula: str | None = None
    tiers: list[TaxBandSchema] = Field(default_factory=list)
    max_amount: Decimal | None = Field(default=None, ge=0)
    annual_cap: Decimal | None = Field(default=None, ge=0)
    is_pre_tax: bool = False
    is_mandatory: bool = False
    is_active: bool = True
    priority: int = 100

    def to_domain(self) -> DeductionType:
        return DeductionType(
            code=self.code,
            name=self.name,
            category=self.category,
            calculation_type=self.calculation_type,
            calculation_base=self.calculation_base,
            default_amount=self.default_amount,
            default_rate=self.default_rate,
            formula=self.formula,
            tiers=tuple(tier.to_domain() for tier in self.tiers),
            max_amount=self.max_amount,
            annual_cap=self.annual_cap,
            is_pre_tax=self.is_pre_tax,
            is_mandatory=self.is_mandatory,
            is_active=self.is_active,
            priority=self.priority,
        )


class CatalogSchema(BaseModel):
    """Tenant catalog payload.

    With ``include_defaults`` the payload extends the built-in catalog
    instead of replacing it.
    """

    include_defaults: bool = True
    earning_types: list[EarningTypeSchema] = Field(default_factory=list)
    deduction_types: list[DeductionTypeSchema] = Field(default_factory=list)

    def to_registry(self) -> CatalogRegistry:
        """Build a registry; raises CatalogError on duplicates or invalid entries."""
        registry = CatalogRegistry.with_defaults() if self.include_defaults else CatalogRegistry()
        for earning_type in self.earning_types:
            registry.define_earning_type(earning_type.to_domain())
        for deduction_type in self.deduction_types:
            registry.define_deduction_type(deduction_type.to_domain())
        return registry

    def to_domain(self) -> CatalogSnapshot:
        return self.to_registry().snapshot()
