"""Calculation strategies, one per calculation type.

Earning and deduction types declare a ``calculation_type``; the resolvers
look up the matching strategy here instead of branching on the type.
"""

from __future__ import annotations

import ast
import operator
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from payroll_core.calculators.tax_engine import apply_bands
from payroll_core.calculators.types import ZERO, CalculationBase, CalculationType, TaxBand
from payroll_core.errors import ConfigurationError


@dataclass(frozen=True)
class CalculationContext:
    """Inputs a strategy may use to compute one line amount."""

    code: str
    base: CalculationBase
    bases: Mapping[CalculationBase, Decimal]
    amount: Decimal | None = None
    rate: Decimal | None = None
    formula: str | None = None
    tiers: tuple[TaxBand, ...] = field(default_factory=tuple)

    @property
    def base_value(self) -> Decimal:
        try:
            return self.bases[self.base]
        except KeyError:
            raise ConfigurationError(
                f"'{self.code}' uses calculation base '{self.base.value}' "
                "which is not available at this point",
                code=self.code,
            ) from None


class CalculationStrategy(ABC):
    """Computes the raw (unclamped, unrounded) amount of a line."""

    calculation_type: CalculationType

    @abstractmethod
    def compute(self, context: CalculationContext) -> Decimal:
        pass


class FixedStrategy(CalculationStrategy):
    calculation_type = CalculationType.FIXED

    def compute(self, context: CalculationContext) -> Decimal:
        if context.amount is None:
            raise ConfigurationError(f"'{context.code}' is fixed but has no amount", context.code)
        return context.amount


class PercentageStrategy(CalculationStrategy):
    calculation_type = CalculationType.PERCENTAGE

    def compute(self, context: CalculationContext) -> Decimal:
        if context.rate is None:
            raise ConfigurationError(
                f"'{context.code}' is a percentage but has no rate", context.code
            )
        return context.base_value * context.rate


class TieredStrategy(CalculationStrategy):
    """Marginal tiers over the base value, like tax bands."""

    calculation_type = CalculationType.TIERED

    def compute(self, context: CalculationContext) -> Decimal:
        if not context.tiers:
            raise ConfigurationError(f"'{context.code}' is tiered but has no tiers", context.code)
        total, _ = apply_bands(context.base_value, context.tiers)
        return total


class FormulaStrategy(CalculationStrategy):
    """Arithmetic expression over the calculation bases.

    Available names: gross, basic, taxable, pensionable, net, base, amount, rate.
    Supported: numbers, + - * /, unary minus, parentheses, min(), max().
    """

    calculation_type = CalculationType.FORMULA

    _BINARY_OPS = {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: operator.mul,
        ast.Div: operator.truediv,
    }
    _FUNCTIONS = {"min": min, "max": max}

    def compute(self, context: CalculationContext) -> Decimal:
        if not context.formula:
            raise ConfigurationError(
                f"'{context.code}' is a formula but has no expression", context.code
            )
        variables = {base.value: value for base, value in context.bases.items()}
        if context.base in context.bases:
            variables["base"] = context.bases[context.base]
        variables["amount"] = context.amount if context.amount is not None else ZERO
        variables["rate"] = context.rate if context.rate is not None else ZERO

        try:
            tree = ast.parse(context.formula, mode="eval")
            return self._eval(tree.body, variables, context.code)
        except SyntaxError as e:
            raise ConfigurationError(
                f"'{context.code}' has an invalid formula: {e.msg}", context.code
            ) from e
        except (ZeroDivisionError, InvalidOperation) as e:
            raise ConfigurationError(
                f"'{context.code}' formula could not be evaluated: {e}", context.code
            ) from e

    def _eval(self, node: ast.AST, variables: dict[str, Decimal], code: str) -> Decimal:
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
            return Decimal(str(node.value))
        if isinstance(node, ast.Name):
            if node.id not in variables:
                raise ConfigurationError(f"'{code}' formula uses unknown name '{node.id}'", code)
            return variables[node.id]
        if isinstance(node, ast.BinOp) and type(node.op) in self._BINARY_OPS:
            left = self._eval(node.left, variables, code)
            right = self._eval(node.right, variables, code)
            return self._BINARY_OPS[type(node.op)](left, right)
        if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
            value = self._eval(node.operand, variables, code)
            return -value if isinstance(node.op, ast.USub) else value
        if (
            isinstance(node, ast.Call)
            and isinstance(node.func, ast.Name)
            and node.func.id in self._FUNCTIONS
            and node.args
            and not node.keywords
        ):
            args = [self._eval(arg, variables, code) for arg in node.args]
            return self._FUNCTIONS[node.func.id](args)
        raise ConfigurationError(
            f"'{code}' formula contains an unsupported expression: {ast.dump(node)}", code
        )


_STRATEGIES: dict[CalculationType, CalculationStrategy] = {
    strategy.calculation_type: strategy
    for strategy in (FixedStrategy(), PercentageStrategy(), TieredStrategy(), FormulaStrategy())
}


def get_strategy(calculation_type: CalculationType) -> CalculationStrategy:
    """Return the strategy registered for a calculation type."""
    try:
        return _STRATEGIES[calculation_type]
    except KeyError:
        raise ConfigurationError(
            f"No strategy for calculation type '{calculation_type}'"
        ) from None
