"""Tests for DeductionResolver ordering, clamps and employer contributions."""

import logging
from dataclasses import replace
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from payroll_core.calculators.catalog import CatalogRegistry, CatalogSnapshot
from payroll_core.calculators.deduction_resolver import DeductionResolver
from payroll_core.calculators.earning_resolver import EarningResolver
from payroll_core.calculators.tax_engine import TaxEngine
from payroll_core.calculators.types import (
    CalculationType,
    DeductionType,
    EmployeeCustomDeduction,
    PayFrequency,
    TaxHandling,
)
from payroll_core.errors import ConfigurationError

from tests.conftest import make_detail

PERIOD_END = date(2024, 3, 31)


@pytest.fixture
def resolver() -> DeductionResolver:
    return DeductionResolver()


@pytest.fixture
def run(resolver, catalog, tax_table):
    """Resolve deductions for a detail against a 200000 monthly salary."""

    def _run(detail, custom=(), year_to_date=None, snapshot: CatalogSnapshot | None = None):
        snapshot = snapshot or catalog
        earnings = EarningResolver().resolve(detail, snapshot, PERIOD_END, PayFrequency.MONTHLY)
        engine = TaxEngine()

        def calculate_tax(adjusted):
            return engine.calculate(detail, adjusted, earnings.gross, 12, tax_table)

        return resolver.resolve(
            detail,
            snapshot,
            earnings,
            custom_deductions=list(custom),
            period_end=PERIOD_END,
            year_to_date=year_to_date or {},
            calculate_tax=calculate_tax,
        )

    return _run


def codes(result) -> list[str]:
    return [line.code for line in result.lines]


class TestOrdering:
    """Test pre-tax first, then tax in its priority slot."""

    def test_pre_tax_pension_reduces_taxable_income(self, run):
        result = run(make_detail(pension_enabled=True))

        assert codes(result) == ["PENSION", "TAX"]
        assert result.lines[0].amount == Decimal("16000.00")
        assert result.adjusted_taxable == Decimal("184000.00")
        # Annual 2208000: 21000 + 33000 + 1608000 * 15% = 295200
        assert result.tax.period_tax == Decimal("24600.00")
        assert result.total == Decimal("40600.00")
        assert result.pre_tax_total == Decimal("16000.00")
        assert result.statutory_total == Decimal("40600.00")

    def test_statutory_toggles_in_priority_order(self, run):
        detail = make_detail(
            pension_enabled=True, housing_fund_enabled=True, health_insurance_enabled=True
        )
        result = run(detail)

        assert codes(result) == ["PENSION", "HOUSING_FUND", "HEALTH_INSURANCE", "TAX"]
        assert [line.amount for line in result.lines[:3]] == [
            Decimal("16000.00"),
            Decimal("5000.00"),
            Decimal("10000.00"),
        ]
        assert result.pre_tax_total == Decimal("31000.00")

    def test_employee_rate_overrides_default(self, run):
        result = run(make_detail(pension_enabled=True, pension_rate=Decimal("0.10")))
        assert result.lines[0].amount == Decimal("20000.00")

    def test_ties_broken_by_code_then_entry_order(self, run, catalog):
        registry = CatalogRegistry.with_defaults()
        for code in ("ZETA", "ALPHA"):
            registry.define_deduction_type(DeductionType(code=code, name=code, priority=90))
        custom = [
            EmployeeCustomDeduction("ZETA", amount=Decimal("100")),
            EmployeeCustomDeduction("ALPHA", amount=Decimal("300")),
            EmployeeCustomDeduction("ALPHA", amount=Decimal("200")),
        ]
        result = run(make_detail(tax_handling=TaxHandling.EXEMPT), custom, snapshot=registry.snapshot())

        assert codes(result) == ["TAX", "ALPHA", "ALPHA", "ZETA"]
        assert [line.amount for line in result.lines[1:3]] == [Decimal("300.00"), Decimal("200.00")]

    def test_inactive_and_expired_custom_deductions_ignored(self, run):
        custom = [
            EmployeeCustomDeduction("SAVINGS", amount=Decimal("1000"), is_active=False),
            EmployeeCustomDeduction("SAVINGS", amount=Decimal("1000"), effective_to=date(2024, 3, 30)),
            EmployeeCustomDeduction("SAVINGS", amount=Decimal("1000"), effective_from=date(2024, 4, 1)),
        ]
        result = run(make_detail(tax_handling=TaxHandling.EXEMPT), custom)
        assert codes(result) == ["TAX"]

    def test_percentage_custom_deduction(self, run):
        custom = [EmployeeCustomDeduction("UNION_DUES", rate=Decimal("0.01"))]
        result = run(make_detail(tax_handling=TaxHandling.EXEMPT), custom)
        assert result.lines[-1].amount == Decimal("2000.00")
        assert result.voluntary_total == Decimal("2000.00")


class TestClamps:
    """Test max_amount, balance, annual cap and net-pay floor."""

    def test_annual_cap_limits_pension(self, run, catalog):
        pension = replace(catalog.deduction("PENSION"), annual_cap=Decimal("50000"))
        snapshot = CatalogSnapshot(
            earning_types=catalog.earning_types,
            deduction_types={**catalog.deduction_types, "PENSION": pension},
        )
        result = run(
            make_detail(pension_enabled=True),
            year_to_date={"PENSION": Decimal("40000")},
            snapshot=snapshot,
        )

        line = result.lines[0]
        assert line.calculated_amount == Decimal("16000.00")
        assert line.amount == Decimal("10000.00")
        assert line.clamps == ("annual_cap",)
        assert result.adjusted_taxable == Decimal("190000.00")

    def test_exhausted_cap_keeps_zero_line(self, run, catalog):
        pension = replace(catalog.deduction("PENSION"), annual_cap=Decimal("50000"))
        snapshot = CatalogSnapshot(
            earning_types=catalog.earning_types,
            deduction_types={**catalog.deduction_types, "PENSION": pension},
        )
        result = run(
            make_detail(pension_enabled=True),
            year_to_date={"PENSION": Decimal("50000")},
            snapshot=snapshot,
        )
        assert codes(result)[0] == "PENSION"
        assert result.lines[0].amount == Decimal("0.00")

    def test_loan_balance(self, run):
        loan_id = uuid4()
        custom = [
            EmployeeCustomDeduction(
                "LOAN",
                amount=Decimal("30000"),
                total_target=Decimal("100000"),
                total_deducted=Decimal("80000"),
                deduction_id=loan_id,
            )
        ]
        result = run(make_detail(tax_handling=TaxHandling.EXEMPT), custom)

        line = result.lines[-1]
        assert line.amount == Decimal("20000.00")
        assert line.clamps == ("balance",)
        assert line.deduction_id == loan_id

    def test_max_amount(self, run):
        registry = CatalogRegistry.with_defaults()
        registry.define_deduction_type(
            DeductionType(
                code="GYM",
                name="Gym",
                default_amount=Decimal("8000"),
                max_amount=Decimal("5000"),
            )
        )
        custom = [EmployeeCustomDeduction("GYM")]
        result = run(make_detail(tax_handling=TaxHandling.EXEMPT), custom, snapshot=registry.snapshot())

        assert result.lines[-1].amount == Decimal("5000.00")
        assert result.lines[-1].clamps == ("max_amount",)

    def test_net_pay_floor(self, run, caplog):
        custom = [
            EmployeeCustomDeduction("ADVANCE", amount=Decimal("150000")),
            EmployeeCustomDeduction("LOAN", amount=Decimal("100000")),
        ]
        with caplog.at_level(logging.WARNING, logger="payroll_core.calculators.deduction_resolver"):
            result = run(make_detail(tax_handling=TaxHandling.EXEMPT), custom)

        assert codes(result) == ["TAX", "LOAN", "ADVANCE"]
        advance = result.lines[-1]
        assert advance.calculated_amount == Decimal("150000.00")
        assert advance.amount == Decimal("100000.00")
        assert advance.clamps == ("net_floor",)
        assert result.total == Decimal("200000.00")
        assert "net-pay floor" in caplog.text

    def test_negative_amount_is_configuration_error(self, run):
        custom = [EmployeeCustomDeduction("SAVINGS", amount=Decimal("-5"))]
        with pytest.raises(ConfigurationError):
            run(make_detail(tax_handling=TaxHandling.EXEMPT), custom)

    def test_unknown_custom_code(self, run):
        with pytest.raises(ConfigurationError):
            run(make_detail(), [EmployeeCustomDeduction("MYSTERY", amount=Decimal("1"))])

    def test_custom_tax_row_rejected(self, run):
        with pytest.raises(ConfigurationError, match="duplicates"):
            run(make_detail(), [EmployeeCustomDeduction("TAX", amount=Decimal("1000"))])

    def test_custom_row_for_enabled_toggle_rejected(self, run):
        custom = [EmployeeCustomDeduction("PENSION", amount=Decimal("5000"))]
        with pytest.raises(ConfigurationError, match="duplicates") as exc_info:
            run(make_detail(pension_enabled=True), custom)
        assert exc_info.value.code == "PENSION"

    def test_custom_statutory_row_without_toggle(self, run):
        custom = [EmployeeCustomDeduction("PENSION", rate=Decimal("0.05"))]
        result = run(make_detail(), custom)

        assert codes(result) == ["PENSION", "TAX"]
        assert result.lines[0].amount == Decimal("10000.00")

    def test_formula_deduction_on_net_base(self, run):
        registry = CatalogRegistry.with_defaults()
        registry.define_deduction_type(
            DeductionType(
                code="CHARITY",
                name="Charity",
                calculation_type=CalculationType.FORMULA,
                formula="min(net * 0.01, 1000)",
                priority=200,
            )
        )
        custom = [EmployeeCustomDeduction("CHARITY")]
        result = run(make_detail(tax_handling=TaxHandling.EXEMPT), custom, snapshot=registry.snapshot())
        assert result.lines[-1].amount == Decimal("1000.00")


class TestEmployerContributions:
    def test_pension_and_housing(self, resolver, catalog):
        detail = make_detail(
            pension_enabled=True,
            housing_fund_enabled=True,
            housing_fund_employer_rate=Decimal("0.025"),
        )
        earnings = EarningResolver().resolve(detail, catalog, PERIOD_END, PayFrequency.MONTHLY)
        lines = resolver.employer_contributions(detail, catalog, earnings)

        assert [(line.code, line.amount) for line in lines] == [
            ("PENSION_ER", Decimal("20000.00")),
            ("HOUSING_FUND_ER", Decimal("5000.00")),
        ]

    def test_housing_without_employer_rate(self, resolver, catalog):
        detail = make_detail(housing_fund_enabled=True)
        earnings = EarningResolver().resolve(detail, catalog, PERIOD_END, PayFrequency.MONTHLY)
        assert resolver.employer_contributions(detail, catalog, earnings) == ()
