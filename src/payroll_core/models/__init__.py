"""SQLAlchemy ORM models."""

from payroll_core.models.base import Base, TimestampMixin
from payroll_core.models.payroll import (
    PayCalendarRecord,
    PayrollPeriodRecord,
    PayRunItemRecord,
    PayRunRecord,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "PayCalendarRecord",
    "PayrollPeriodRecord",
    "PayRunRecord",
    "PayRunItemRecord",
]
