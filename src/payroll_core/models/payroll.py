"""Pay calendar, period, pay run and pay run item tables."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_core.models.base import Base, TimestampMixin

_FREQUENCIES = "'weekly', 'biweekly', 'semimonthly', 'monthly', 'quarterly', 'annually'"


class PayCalendarRecord(Base, TimestampMixin):
    """Recurring pay schedule."""

    __tablename__ = "pay_calendar"

    calendar_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID | None] = mapped_column(nullable=True, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    frequency: Mapped[str] = mapped_column(String, nullable=False)
    pay_day: Mapped[int] = mapped_column(Integer, nullable=False)
    cutoff_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="pay_calendar_tenant_name_unique"),
        CheckConstraint(f"frequency IN ({_FREQUENCIES})", name="pay_calendar_frequency_check"),
    )


class PayrollPeriodRecord(Base, TimestampMixin):
    """Concrete date range paid by one pay run."""

    __tablename__ = "payroll_period"

    period_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    pay_calendar_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("pay_calendar.calendar_id"),
        nullable=True,
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    frequency: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="open")

    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="payroll_period_dates_check"),
        CheckConstraint(
            "status IN ('open', 'processing', 'closed')",
            name="payroll_period_status_check",
        ),
    )


class PayRunRecord(Base, TimestampMixin):
    """Payroll run container with totals and lifecycle stamps."""

    __tablename__ = "pay_run"

    pay_run_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    reference: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    payroll_period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.period_id"),
        nullable=False,
    )
    pay_calendar_id: Mapped[UUID | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")

    total_gross: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_deductions: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_net: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_employer_cost: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    employee_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_by: Mapped[UUID | None] = mapped_column(nullable=True)
    calculated_by: Mapped[UUID | None] = mapped_column(nullable=True)
    calculated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    submitted_by: Mapped[UUID | None] = mapped_column(nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    approved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejected_by: Mapped[UUID | None] = mapped_column(nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_by: Mapped[UUID | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_by: Mapped[UUID | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_created_at: Mapped[datetime | None] = mapped_column(nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("tenant_id", "reference", name="pay_run_tenant_reference_unique"),
        CheckConstraint(
            "status IN ('draft', 'calculated', 'pending_approval', 'approved', "
            "'completed', 'rejected', 'cancelled')",
            name="pay_run_status_check",
        ),
    )

    # Relationships
    period: Mapped[PayrollPeriodRecord] = relationship(lazy="joined")
    items: Mapped[list[PayRunItemRecord]] = relationship(
        back_populates="pay_run",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class PayRunItemRecord(Base, TimestampMixin):
    """One employee's line within a pay run."""

    __tablename__ = "pay_run_item"

    item_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    pay_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_run.pay_run_id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[UUID] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")

    basic_pay: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    gross_pay: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    taxable_income: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_deductions: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    net_pay: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    employer_contributions_total: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0")
    )
    total_employer_cost: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    exclusion_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    breakdown: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("pay_run_id", "user_id", name="pay_run_item_run_user_unique"),
        CheckConstraint(
            "status IN ('pending', 'calculated', 'error', 'excluded')",
            name="pay_run_item_status_check",
        ),
        CheckConstraint("net_pay >= 0", name="pay_run_item_net_non_negative"),
    )

    pay_run: Mapped[PayRunRecord] = relationship(back_populates="items")
