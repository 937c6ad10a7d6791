"""Payroll Command Line Interface.

Provides operational tools for:
- Tax estimates against a tax table file
- Catalog validation
- Database schema creation

Usage:
    python -m payroll_core estimate-tax --table table.json --salary 6000000
    python -m payroll_core validate-catalog catalog.json
    python -m payroll_core init-db --database-url sqlite+aiosqlite:///payroll.db
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from payroll_core.calculators.catalog import validate_catalog
from payroll_core.calculators.tax_engine import TaxEngine
from payroll_core.calculators.types import PayFrequency
from payroll_core.config import get_settings
from payroll_core.errors import PayrollError
from payroll_core.schemas import CatalogSchema, TaxTableSchema

logger = logging.getLogger(__name__)


def parse_decimal(s: str) -> Decimal:
    """Parse a decimal amount for argparse."""
    try:
        return Decimal(s)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a decimal amount: {s!r}") from None


class PayrollCli:
    """Payroll Command Line Interface."""

    def __init__(self) -> None:
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m payroll_core",
            description="Payroll calculation tools",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # estimate-tax command
        estimate = subparsers.add_parser(
            "estimate-tax",
            help="Estimate tax on an annual salary",
        )
        estimate.add_argument(
            "--table",
            type=Path,
            required=True,
            help="Tax table JSON file",
        )
        estimate.add_argument(
            "--salary",
            type=parse_decimal,
            required=True,
            help="Annual gross salary",
        )
        estimate.add_argument(
            "--frequency",
            choices=[f.value for f in PayFrequency],
            default=PayFrequency.MONTHLY.value,
            help="Pay frequency for the per-period figure (default: monthly)",
        )
        estimate.add_argument(
            "--json",
            action="store_true",
            help="Print the estimate as JSON",
        )

        # validate-catalog command
        validate = subparsers.add_parser(
            "validate-catalog",
            help="Validate a tenant catalog JSON file",
        )
        validate.add_argument("path", type=Path, help="Catalog JSON file")

        # init-db command
        init_db = subparsers.add_parser(
            "init-db",
            help="Create the payroll tables",
        )
        init_db.add_argument(
            "--database-url",
            type=str,
            help="Database URL (default: DATABASE_URL)",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        handlers: dict[str, Callable[..., int]] = {
            "estimate-tax": self._cmd_estimate_tax,
            "validate-catalog": self._cmd_validate_catalog,
            "init-db": self._cmd_init_db,
        }

        handler = handlers.get(parsed.command)
        if handler:
            return handler(parsed)

        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return 1

    def _cmd_estimate_tax(self, args: argparse.Namespace) -> int:
        """Print a tax estimate."""
        try:
            table = TaxTableSchema.model_validate_json(args.table.read_text()).to_domain()
        except (OSError, ValidationError) as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1

        engine = TaxEngine(get_settings().minor_unit)
        estimate = engine.estimate(args.salary, table, PayFrequency(args.frequency))

        if args.json:
            print(
                json.dumps(
                    {
                        "annual_salary": str(estimate.annual_salary),
                        "annual_reliefs": str(estimate.annual_reliefs),
                        "annual_taxable_income": str(estimate.annual_taxable_income),
                        "annual_tax": str(estimate.annual_tax),
                        "period_tax": str(estimate.period_tax),
                        "periods_per_year": estimate.periods_per_year,
                        "effective_rate": str(estimate.effective_rate),
                        "exemption_reason": estimate.exemption_reason,
                        "bands": [band.to_canonical_dict() for band in estimate.band_breakdown],
                    },
                    indent=2,
                )
            )
            return 0

        print(f"Tax estimate ({table.name}, {table.jurisdiction})")
        print(f"  Annual salary:   {estimate.annual_salary:>15,.2f}")
        print(f"  Reliefs:         {estimate.annual_reliefs:>15,.2f}")
        print(f"  Taxable income:  {estimate.annual_taxable_income:>15,.2f}")
        print(f"  Annual tax:      {estimate.annual_tax:>15,.2f}")
        print(f"  Per period ({estimate.periods_per_year}): {estimate.period_tax:>12,.2f}")
        print(f"  Effective rate:  {estimate.effective_rate * 100:>14.2f}%")
        if estimate.exemption_reason:
            print(f"  Exempt: {estimate.exemption_reason}")
        for band in estimate.band_breakdown:
            upper = f"{band.upper_bound:,.2f}" if band.upper_bound is not None else "and above"
            print(f"    {band.lower_bound:>12,.2f} - {upper:<14} @ {band.rate:<6} {band.tax:>12,.2f}")
        return 0

    def _cmd_validate_catalog(self, args: argparse.Namespace) -> int:
        """Validate a catalog file."""
        try:
            schema = CatalogSchema.model_validate_json(args.path.read_text())
            snapshot = schema.to_domain()
        except (OSError, ValidationError, PayrollError) as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1

        issues = validate_catalog(snapshot)
        if issues:
            print("Catalog validation: FAILED")
            print(f"\n{len(issues)} issue(s) found:")
            for issue in issues:
                print(f"  - {issue}")
            return 1

        print("Catalog validation: PASSED")
        print(f"  Earning types:   {len(snapshot.earning_types)}")
        print(f"  Deduction types: {len(snapshot.deduction_types)}")
        return 0

    def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create tables."""
        from payroll_core.database import create_schema, get_engine

        async def _create() -> None:
            engine = get_engine(args.database_url)
            try:
                await create_schema(engine)
            finally:
                await engine.dispose()

        try:
            asyncio.run(_create())
        except Exception as e:
            logger.exception("Schema creation failed")
            print(f"ERROR: {e}", file=sys.stderr)
            return 1
        print("Database schema created.")
        return 0


def main(args: list[str] | None = None) -> int:
    """CLI entry point."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cli = PayrollCli()
    return cli.run(args)


if __name__ == "__main__":
    sys.exit(main())
