"""Typed errors raised by the payroll core.

Four categories are distinguished so callers can present them differently:

- Configuration errors: catalog or tax-table data that cannot be used.
- State errors: a pay-run action attempted outside its guard.
- Data errors: employee inputs missing or unusable for the period.
- Operation errors: timeouts and concurrent modification, safe to retry.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID


class PayrollError(Exception):
    """Base class for all payroll core errors."""


# ===== Configuration =====


class ConfigurationError(PayrollError):
    """Raised when catalog or tax configuration cannot be applied."""

    def __init__(self, message: str, code: str | None = None):
        self.code = code
        super().__init__(message)


class CatalogError(ConfigurationError):
    """Raised when a catalog mutation breaks an immutability rule."""


class TaxTableNotFoundError(ConfigurationError):
    """Raised when no tax table is active for a jurisdiction and date."""

    def __init__(self, jurisdiction: str, as_of_date: Any):
        self.jurisdiction = jurisdiction
        self.as_of_date = as_of_date
        super().__init__(
            f"No active tax table for jurisdiction '{jurisdiction}' on {as_of_date}",
            code=jurisdiction,
        )


# ===== State =====


class InvalidTransitionError(PayrollError):
    """Raised when a pay-run action is not allowed in the current status."""

    def __init__(self, from_status: str, action: str, reason: str | None = None):
        self.from_status = from_status
        self.action = action
        self.reason = reason
        msg = f"Cannot {action} a pay run in status '{from_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


PayRunStateError = InvalidTransitionError


class DuplicatePayRunError(PayrollError):
    """Raised when a period already has a pay run that is not cancelled."""

    def __init__(self, payroll_period_id: UUID, existing_pay_run_id: UUID):
        self.payroll_period_id = payroll_period_id
        self.existing_pay_run_id = existing_pay_run_id
        super().__init__(
            f"Payroll period {payroll_period_id} already has pay run {existing_pay_run_id}"
        )


# ===== Data =====


class EmployeeDataError(PayrollError):
    """Raised when an employee's payroll inputs are missing or unusable."""

    def __init__(self, user_id: UUID, message: str):
        self.user_id = user_id
        super().__init__(f"Employee {user_id}: {message}")


class EmployeeCalculationError(PayrollError):
    """Calculation failure for one employee, naming the failing step."""

    def __init__(self, user_id: UUID, step: str, cause: PayrollError):
        self.user_id = user_id
        self.step = step
        self.cause = cause
        super().__init__(f"Calculation failed for employee {user_id} at step '{step}': {cause}")

    @property
    def is_configuration_error(self) -> bool:
        return isinstance(self.cause, ConfigurationError)


class BatchCalculationError(PayrollError):
    """Raised when a pay-run calculation is aborted by employee failures."""

    def __init__(self, pay_run_id: UUID, failures: list[EmployeeCalculationError]):
        self.pay_run_id = pay_run_id
        self.failures = failures
        details = "; ".join(str(f) for f in failures)
        super().__init__(
            f"Pay run {pay_run_id} calculation aborted, "
            f"{len(failures)} employee(s) failed: {details}"
        )


# ===== Lookup / operation =====


class PayRunNotFoundError(PayrollError):
    """Raised when a pay run does not exist."""

    def __init__(self, pay_run_id: UUID):
        self.pay_run_id = pay_run_id
        super().__init__(f"Pay run {pay_run_id} not found")


class PayRunItemNotFoundError(PayrollError):
    """Raised when a pay-run item does not belong to the pay run."""

    def __init__(self, pay_run_id: UUID, item_id: UUID | None = None, user_id: UUID | None = None):
        self.pay_run_id = pay_run_id
        self.item_id = item_id
        self.user_id = user_id
        target = f"item {item_id}" if item_id else f"employee {user_id}"
        super().__init__(f"Pay run {pay_run_id} has no {target}")


class ConcurrentModificationError(PayrollError):
    """Raised when a pay run was saved by someone else since it was loaded."""

    retryable = True

    def __init__(self, pay_run_id: UUID, expected_version: int):
        self.pay_run_id = pay_run_id
        self.expected_version = expected_version
        super().__init__(
            f"Pay run {pay_run_id} changed concurrently (expected version {expected_version})"
        )


class CalculationTimeoutError(PayrollError):
    """Raised when a pay-run calculation exceeds its deadline."""

    retryable = True

    def __init__(self, pay_run_id: UUID, timeout_seconds: float):
        self.pay_run_id = pay_run_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Calculation of pay run {pay_run_id} exceeded {timeout_seconds}s; "
            "no changes were saved"
        )
