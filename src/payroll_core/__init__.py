"""Payroll calculation engine and pay run lifecycle."""

__version__ = "0.1.0"
