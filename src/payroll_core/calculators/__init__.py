"""Payroll calculation pipeline."""

from payroll_core.calculators.calculator import EmployeeInputs, PayRunItemCalculator, PeriodContext
from payroll_core.calculators.catalog import CatalogRegistry, CatalogSnapshot, default_catalog
from payroll_core.calculators.deduction_resolver import DeductionResolver
from payroll_core.calculators.earning_resolver import EarningResolver
from payroll_core.calculators.line_builder import LineBuilder
from payroll_core.calculators.tax_engine import TaxEngine, TaxEstimate

__all__ = [
    "PayRunItemCalculator",
    "EmployeeInputs",
    "PeriodContext",
    "CatalogRegistry",
    "CatalogSnapshot",
    "default_catalog",
    "DeductionResolver",
    "EarningResolver",
    "LineBuilder",
    "TaxEngine",
    "TaxEstimate",
]
