"""Line builder with rounding and deterministic fingerprints."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from payroll_core.calculators.types import (
    ZERO,
    DeductionLine,
    DeductionType,
    EarningLine,
    EarningType,
    EmployerContributionLine,
)

DEFAULT_MINOR_UNIT = Decimal("0.01")


def round_money(amount: Decimal, minor_unit: Decimal = DEFAULT_MINOR_UNIT) -> Decimal:
    """Round to the minor currency unit, half-up."""
    return amount.quantize(minor_unit, rounding=ROUND_HALF_UP)


def compute_fingerprint(canonical: dict[str, Any]) -> str:
    """SHA-256 of a canonical dict; identical figures give identical hashes."""
    json_str = json.dumps(canonical, sort_keys=True)
    return hashlib.sha256(json_str.encode()).hexdigest()


class LineBuilder:
    """Builds payslip lines rounded to one minor unit.

    Sign conventions:
    - Earning lines: non-negative
    - Deduction lines: non-negative amounts, subtracted from gross
    - Employer contributions: non-negative, never part of net pay
    """

    def __init__(self, minor_unit: Decimal = DEFAULT_MINOR_UNIT):
        self.minor_unit = minor_unit

    def round(self, amount: Decimal) -> Decimal:
        return round_money(amount, self.minor_unit)

    def earning_line(
        self,
        earning_type: EarningType,
        amount: Decimal,
        source: str,
        quantity: Decimal | None = None,
        rate: Decimal | None = None,
    ) -> EarningLine:
        """Create an earning line carrying the type's taxable/pensionable flags."""
        return EarningLine(
            code=earning_type.code,
            name=earning_type.name,
            category=earning_type.category,
            amount=self.round(amount),
            is_taxable=earning_type.is_taxable,
            is_pensionable=earning_type.is_pensionable,
            source=source,
            quantity=quantity,
            rate=rate,
        )

    def deduction_line(
        self,
        deduction_type: DeductionType,
        amount: Decimal,
        calculated_amount: Decimal,
        clamps: Iterable[str] = (),
        deduction_id: UUID | None = None,
    ) -> DeductionLine:
        return DeductionLine(
            code=deduction_type.code,
            name=deduction_type.name,
            category=deduction_type.category,
            amount=self.round(amount),
            calculated_amount=self.round(calculated_amount),
            priority=deduction_type.priority,
            is_pre_tax=deduction_type.is_pre_tax,
            is_statutory=deduction_type.is_statutory,
            clamps=tuple(clamps),
            deduction_id=deduction_id,
        )

    def employer_line(
        self, code: str, name: str, rate: Decimal, base: Decimal
    ) -> EmployerContributionLine:
        return EmployerContributionLine(
            code=code,
            name=name,
            rate=rate,
            base=base,
            amount=self.round(base * rate),
        )

    @staticmethod
    def sum_amounts(lines: Iterable[Any]) -> Decimal:
        total = ZERO
        for line in lines:
            total += line.amount
        return total

    def calculate_gross(self, lines: Iterable[EarningLine]) -> Decimal:
        """GROSS = sum of all earning lines."""
        return self.round(self.sum_amounts(lines))

    def calculate_net(self, gross: Decimal, deductions: Iterable[DeductionLine]) -> Decimal:
        """NET = GROSS - sum of deduction lines. Employer lines are excluded."""
        return self.round(gross - self.sum_amounts(deductions))

    @staticmethod
    def validate_line_signs(
        earnings: Iterable[EarningLine], deductions: Iterable[DeductionLine]
    ) -> list[str]:
        """Return error messages for negative line amounts (empty if all valid)."""
        errors: list[str] = []
        for line in earnings:
            if line.amount < 0:
                errors.append(f"Earning {line.code} has negative amount {line.amount}")
        for line in deductions:
            if line.amount < 0:
                errors.append(f"Deduction {line.code} has negative amount {line.amount}")
        return errors
