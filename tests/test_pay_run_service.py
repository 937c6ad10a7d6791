"""Tests for PayRunService lifecycle, aggregation and failure handling."""

import asyncio
import threading
from dataclasses import replace
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from payroll_core.calculators.types import EmployeeCustomDeduction, PayFrequency, PayRunItemStatus
from payroll_core.errors import (
    BatchCalculationError,
    CalculationTimeoutError,
    ConcurrentModificationError,
    ConfigurationError,
    DuplicatePayRunError,
    InvalidTransitionError,
    PayRunItemNotFoundError,
)
from payroll_core.services.pay_run_service import PayRunService
from payroll_core.services.providers import InMemoryEmployeeDirectory, InMemoryTaxTableProvider
from payroll_core.services.state_machine import PayRunStatus
from payroll_core.services.types import PayCalendar, PeriodStatus

from tests.conftest import PAY_DATE, make_detail

pytestmark = pytest.mark.asyncio


@pytest.fixture
def employees(directory, tenant_id):
    """Two monthly employees with pension enabled."""
    details = [make_detail(pension_enabled=True) for _ in range(2)]
    for detail in details:
        directory.add_employee(tenant_id, detail)
    return details


@pytest.fixture
def create_run(service, tenant_id, pay_calendar, actor_id):
    async def _create():
        return await service.create_pay_run(tenant_id, pay_calendar.calendar_id, PAY_DATE, actor_id)

    return _create


@pytest.fixture
def calculated_run(service, create_run, employees, actor_id):
    async def _calculated():
        pay_run = await create_run()
        return await service.calculate(pay_run.pay_run_id, actor_id)

    return _calculated


class TestCreate:
    async def test_creates_draft(self, create_run, audit_sink):
        pay_run = await create_run()

        assert pay_run.status == PayRunStatus.DRAFT
        assert pay_run.items == {}
        assert pay_run.reference.startswith("PR-")
        assert pay_run.reference.endswith("-0001")
        assert pay_run.period.start_date.isoformat() == "2024-03-01"
        assert pay_run.period.end_date == PAY_DATE
        assert audit_sink.transitions(pay_run.pay_run_id) == ["create"]

    async def test_duplicate_period_rejected(self, create_run):
        first = await create_run()
        with pytest.raises(DuplicatePayRunError) as exc_info:
            await create_run()
        assert exc_info.value.existing_pay_run_id == first.pay_run_id

    async def test_cancelled_period_can_be_reopened(self, service, create_run, actor_id):
        first = await create_run()
        await service.cancel(first.pay_run_id, "wrong calendar", actor_id)

        second = await create_run()
        assert second.pay_run_id != first.pay_run_id
        assert second.reference.endswith("-0002")

    async def test_unknown_calendar(self, service, tenant_id):
        with pytest.raises(ConfigurationError):
            await service.create_pay_run(tenant_id, uuid4(), PAY_DATE)

    async def test_inactive_calendar(self, service, repository, tenant_id):
        calendar = PayCalendar(
            name="Retired", frequency=PayFrequency.MONTHLY, pay_day=28, is_active=False
        )
        await repository.add_calendar(calendar)
        with pytest.raises(ConfigurationError):
            await service.create_pay_run(tenant_id, calendar.calendar_id, PAY_DATE)

    async def test_other_tenants_calendar(self, service, pay_calendar):
        with pytest.raises(ConfigurationError):
            await service.create_pay_run(uuid4(), pay_calendar.calendar_id, PAY_DATE)

    async def test_pay_date_must_fall_on_calendar(self, service, tenant_id, pay_calendar, actor_id):
        with pytest.raises(ConfigurationError, match="not a pay date"):
            await service.create_pay_run(
                tenant_id, pay_calendar.calendar_id, date(2024, 3, 15), actor_id
            )

    async def test_month_end_calendar_pays_short_months(
        self, service, tenant_id, pay_calendar, actor_id
    ):
        pay_run = await service.create_pay_run(
            tenant_id, pay_calendar.calendar_id, date(2024, 4, 30), actor_id
        )
        assert pay_run.period.start_date == date(2024, 4, 1)
        assert pay_run.period.end_date == date(2024, 4, 30)

    async def test_overlapping_period_rejected(
        self, service, repository, create_run, tenant_id, actor_id
    ):
        march = await create_run()
        semimonthly = PayCalendar(
            name="Semimonthly",
            frequency=PayFrequency.SEMIMONTHLY,
            pay_day=15,
            tenant_id=tenant_id,
        )
        await repository.add_calendar(semimonthly)

        with pytest.raises(DuplicatePayRunError) as exc_info:
            await service.create_pay_run(
                tenant_id, semimonthly.calendar_id, date(2024, 3, 15), actor_id
            )
        assert exc_info.value.existing_pay_run_id == march.pay_run_id

        april = await service.create_pay_run(
            tenant_id, semimonthly.calendar_id, date(2024, 4, 15), actor_id
        )
        assert (april.period.start_date, april.period.end_date) == (
            date(2024, 4, 1),
            date(2024, 4, 15),
        )


class TestCalculate:
    async def test_totals_match_items(self, calculated_run, audit_sink):
        pay_run = await calculated_run()

        assert pay_run.status == PayRunStatus.CALCULATED
        assert pay_run.employee_count == 2
        assert pay_run.total_gross == Decimal("400000.00")
        assert pay_run.total_deductions == Decimal("81200.00")
        assert pay_run.total_net == Decimal("318800.00")
        assert pay_run.total_employer_cost == Decimal("440000.00")
        assert pay_run.total_net == sum(i.net_pay for i in pay_run.items.values())
        assert all(i.net_pay >= 0 for i in pay_run.items.values())
        assert audit_sink.transitions(pay_run.pay_run_id) == ["create", "calculate"]
        assert audit_sink.records[-1].details["employee_count"] == 2

    async def test_persisted_state(self, service, calculated_run, actor_id):
        pay_run = await calculated_run()
        stored = await service.get_pay_run(pay_run.pay_run_id)

        assert stored.status == PayRunStatus.CALCULATED
        assert stored.calculated_by == actor_id
        assert stored.calculated_at is not None
        assert stored.total_net == pay_run.total_net

    async def test_recalculating_is_idempotent(self, service, calculated_run, actor_id):
        first = await calculated_run()
        second = await service.calculate(first.pay_run_id, actor_id)

        assert second.total_net == first.total_net
        for user_id, item in first.items.items():
            again = second.items[user_id]
            assert again.item_id == item.item_id
            assert again.fingerprint == item.fingerprint

    async def test_excluded_items_are_kept(self, service, create_run, employees, actor_id):
        pay_run = await create_run()
        excluded_user = employees[0].user_id
        await service.exclude_employee(pay_run.pay_run_id, excluded_user, "on leave", actor_id)

        pay_run = await service.calculate(pay_run.pay_run_id, actor_id)

        assert pay_run.employee_count == 1
        assert pay_run.items[excluded_user].status == PayRunItemStatus.EXCLUDED
        assert pay_run.items[excluded_user].exclusion_reason == "on leave"
        assert pay_run.total_net == Decimal("159400.00")

    async def test_failure_leaves_state_unchanged(
        self, service, create_run, employees, directory, tenant_id, actor_id
    ):
        pay_run = await create_run()
        broken = uuid4()
        directory.add_employee_without_detail(tenant_id, broken)

        with pytest.raises(BatchCalculationError) as exc_info:
            await service.calculate(pay_run.pay_run_id, actor_id)

        assert [f.user_id for f in exc_info.value.failures] == [broken]
        assert exc_info.value.failures[0].step == "profile"
        stored = await service.get_pay_run(pay_run.pay_run_id)
        assert stored.status == PayRunStatus.DRAFT
        assert stored.items == {}
        assert stored.version == pay_run.version

    async def test_missing_tax_table_aborts_batch(
        self, repository, directory, ledger, catalog_provider, settings, create_run, employees
    ):
        service = PayRunService(
            repository=repository,
            employees=directory,
            ledger=ledger,
            tax_tables=InMemoryTaxTableProvider(),
            catalogs=catalog_provider,
            settings=settings,
        )
        pay_run = await create_run()

        with pytest.raises(BatchCalculationError) as exc_info:
            await service.calculate(pay_run.pay_run_id)

        assert len(exc_info.value.failures) == len(employees)
        assert all(f.step == "tax" for f in exc_info.value.failures)
        assert all(f.is_configuration_error for f in exc_info.value.failures)

    async def test_timeout_is_retryable(
        self, repository, ledger, tax_table, catalog_provider, settings, create_run, tenant_id
    ):
        class SlowDirectory(InMemoryEmployeeDirectory):
            async def get_payroll_detail(self, tenant_id, user_id):
                await asyncio.sleep(1)
                return await super().get_payroll_detail(tenant_id, user_id)

        slow = SlowDirectory()
        slow.add_employee(tenant_id, make_detail())
        service = PayRunService(
            repository=repository,
            employees=slow,
            ledger=ledger,
            tax_tables=InMemoryTaxTableProvider([tax_table]),
            catalogs=catalog_provider,
            settings=replace(settings, calculation_timeout_seconds=0.05),
        )
        pay_run = await create_run()

        with pytest.raises(CalculationTimeoutError) as exc_info:
            await service.calculate(pay_run.pay_run_id)

        assert exc_info.value.retryable
        stored = await service.get_pay_run(pay_run.pay_run_id)
        assert stored.status == PayRunStatus.DRAFT

    async def test_calculate_after_submission_rejected(self, service, calculated_run, actor_id):
        pay_run = await calculated_run()
        await service.submit_for_approval(pay_run.pay_run_id, actor_id)

        with pytest.raises(InvalidTransitionError):
            await service.calculate(pay_run.pay_run_id, actor_id)

    async def test_employees_calculated_off_the_event_loop(
        self, service, create_run, employees, actor_id
    ):
        threads = set()
        calculate = service.calculator.calculate

        def recording(*args):
            threads.add(threading.get_ident())
            return calculate(*args)

        service.calculator.calculate = recording
        pay_run = await create_run()
        pay_run = await service.calculate(pay_run.pay_run_id, actor_id)

        assert pay_run.employee_count == 2
        assert threads
        assert threading.get_ident() not in threads


class TestRecalculateItem:
    async def test_data_error_marks_item(
        self, service, calculated_run, employees, directory, tenant_id, actor_id
    ):
        pay_run = await calculated_run()
        target = employees[0].user_id
        directory.remove_employee(tenant_id, target)

        item = await service.recalculate_item(pay_run.pay_run_id, user_id=target, actor_id=actor_id)

        assert item.status == PayRunItemStatus.ERROR
        assert "profile" in item.error_message
        stored = await service.get_pay_run(pay_run.pay_run_id)
        assert stored.status == PayRunStatus.CALCULATED
        assert stored.employee_count == 1
        assert stored.total_net == Decimal("159400.00")

    async def test_recalculate_by_item_id(
        self, service, calculated_run, employees, directory, tenant_id, actor_id
    ):
        pay_run = await calculated_run()
        target = employees[1]
        directory.add_employee(tenant_id, replace(target, pension_enabled=False))
        item_id = pay_run.items[target.user_id].item_id

        item = await service.recalculate_item(pay_run.pay_run_id, item_id=item_id, actor_id=actor_id)

        assert item.item_id == item_id
        assert item.net_pay == Decimal("173000.00")
        stored = await service.get_pay_run(pay_run.pay_run_id)
        assert stored.total_net == Decimal("332400.00")

    async def test_unknown_item(self, service, calculated_run):
        pay_run = await calculated_run()
        with pytest.raises(PayRunItemNotFoundError):
            await service.recalculate_item(pay_run.pay_run_id, item_id=uuid4())
        with pytest.raises(PayRunItemNotFoundError):
            await service.recalculate_item(pay_run.pay_run_id, user_id=uuid4())

    async def test_excluded_item_cannot_be_recalculated(
        self, service, calculated_run, employees, actor_id
    ):
        pay_run = await calculated_run()
        target = employees[0].user_id
        await service.exclude_employee(pay_run.pay_run_id, target, "left", actor_id)

        with pytest.raises(InvalidTransitionError):
            await service.recalculate_item(pay_run.pay_run_id, user_id=target)


class TestInclusion:
    async def test_exclude_and_include(self, service, calculated_run, employees, actor_id, audit_sink):
        pay_run = await calculated_run()
        target = employees[0].user_id

        excluded = await service.exclude_employee(pay_run.pay_run_id, target, "unpaid leave", actor_id)
        assert excluded.employee_count == 1
        assert excluded.total_net == Decimal("159400.00")

        included = await service.include_employee(pay_run.pay_run_id, target, actor_id)
        assert included.items[target].status == PayRunItemStatus.PENDING
        # Needs recalculation before it counts again
        assert included.employee_count == 1

        await service.recalculate_item(pay_run.pay_run_id, user_id=target, actor_id=actor_id)
        stored = await service.get_pay_run(pay_run.pay_run_id)
        assert stored.employee_count == 2
        assert audit_sink.transitions(pay_run.pay_run_id)[-3:] == [
            "exclude_employee",
            "include_employee",
            "recalculate_item",
        ]

    async def test_exclude_before_calculation_creates_placeholder(
        self, service, create_run, actor_id
    ):
        pay_run = await create_run()
        user_id = uuid4()
        pay_run = await service.exclude_employee(pay_run.pay_run_id, user_id, "contractor", actor_id)

        assert pay_run.status == PayRunStatus.DRAFT
        assert pay_run.items[user_id].excluded

    async def test_include_unknown_employee(self, service, create_run):
        pay_run = await create_run()
        with pytest.raises(PayRunItemNotFoundError):
            await service.include_employee(pay_run.pay_run_id, uuid4())

    async def test_include_when_not_excluded_is_noop(self, service, calculated_run, employees):
        pay_run = await calculated_run()
        target = employees[0].user_id

        result = await service.include_employee(pay_run.pay_run_id, target)
        assert result.items[target].status == PayRunItemStatus.CALCULATED
        assert result.version == pay_run.version

    async def test_exclusion_locked_after_submission(
        self, service, calculated_run, employees, actor_id
    ):
        pay_run = await calculated_run()
        await service.submit_for_approval(pay_run.pay_run_id, actor_id)

        with pytest.raises(InvalidTransitionError):
            await service.exclude_employee(pay_run.pay_run_id, employees[0].user_id, "late", actor_id)


class TestMembership:
    async def test_add_to_draft_calculates_one_employee(
        self, service, create_run, employees, actor_id, audit_sink
    ):
        pay_run = await create_run()
        target = employees[0].user_id

        item = await service.add_employee(pay_run.pay_run_id, target, actor_id)

        assert item.status == PayRunItemStatus.CALCULATED
        assert item.net_pay == Decimal("159400.00")
        stored = await service.get_pay_run(pay_run.pay_run_id)
        assert stored.status == PayRunStatus.DRAFT
        assert list(stored.items) == [target]
        assert stored.employee_count == 1
        assert stored.total_net == Decimal("159400.00")
        assert audit_sink.transitions(pay_run.pay_run_id)[-1] == "add_employee"

    async def test_add_to_rejected_run_keeps_other_items(
        self, service, calculated_run, directory, tenant_id, actor_id
    ):
        pay_run = await calculated_run()
        await service.submit_for_approval(pay_run.pay_run_id, actor_id)
        await service.reject(pay_run.pay_run_id, "new joiner missing", actor_id)
        joiner = make_detail()
        directory.add_employee(tenant_id, joiner)

        item = await service.add_employee(pay_run.pay_run_id, joiner.user_id, actor_id)

        assert item.net_pay == Decimal("173000.00")
        stored = await service.get_pay_run(pay_run.pay_run_id)
        assert stored.status == PayRunStatus.REJECTED
        assert stored.employee_count == 3
        assert stored.total_net == Decimal("491800.00")
        for user_id, before in pay_run.items.items():
            assert stored.items[user_id].item_id == before.item_id
            assert stored.items[user_id].fingerprint == before.fingerprint

    async def test_add_existing_employee_rejected(self, service, create_run, employees, actor_id):
        pay_run = await create_run()
        await service.add_employee(pay_run.pay_run_id, employees[0].user_id, actor_id)

        with pytest.raises(InvalidTransitionError, match="already in the pay run"):
            await service.add_employee(pay_run.pay_run_id, employees[0].user_id, actor_id)

    async def test_add_without_payroll_detail_marks_error(self, service, create_run, actor_id):
        pay_run = await create_run()

        item = await service.add_employee(pay_run.pay_run_id, uuid4(), actor_id)

        assert item.status == PayRunItemStatus.ERROR
        assert "profile" in item.error_message
        stored = await service.get_pay_run(pay_run.pay_run_id)
        assert stored.employee_count == 0

    async def test_add_after_calculation_rejected(self, service, calculated_run, actor_id):
        pay_run = await calculated_run()
        with pytest.raises(InvalidTransitionError):
            await service.add_employee(pay_run.pay_run_id, uuid4(), actor_id)

    async def test_remove_employee(self, service, create_run, employees, actor_id, audit_sink):
        pay_run = await create_run()
        target = employees[0].user_id
        await service.add_employee(pay_run.pay_run_id, target, actor_id)

        removed = await service.remove_employee(pay_run.pay_run_id, target, actor_id)

        assert removed.items == {}
        assert removed.employee_count == 0
        assert removed.total_net == Decimal("0")
        assert audit_sink.transitions(pay_run.pay_run_id)[-1] == "remove_employee"
        with pytest.raises(PayRunItemNotFoundError):
            await service.remove_employee(pay_run.pay_run_id, target, actor_id)

    async def test_remove_after_submission_rejected(
        self, service, calculated_run, employees, actor_id
    ):
        pay_run = await calculated_run()
        await service.submit_for_approval(pay_run.pay_run_id, actor_id)

        with pytest.raises(InvalidTransitionError):
            await service.remove_employee(pay_run.pay_run_id, employees[0].user_id, actor_id)


class TestApprovalLifecycle:
    async def test_full_lifecycle(
        self, service, calculated_run, actor_id, audit_sink, publisher, ledger, employees, tenant_id
    ):
        pay_run = await calculated_run()
        run_id = pay_run.pay_run_id

        submitted = await service.submit_for_approval(run_id, actor_id)
        assert submitted.status == PayRunStatus.PENDING_APPROVAL
        assert submitted.submitted_by == actor_id

        approved = await service.approve(run_id, actor_id)
        assert approved.status == PayRunStatus.APPROVED
        assert approved.approved_at is not None

        completed = await service.complete(run_id, actor_id)
        assert completed.status == PayRunStatus.COMPLETED
        assert completed.period.status == PeriodStatus.CLOSED

        assert publisher.published == [run_id]
        ytd = await ledger.get_year_to_date(tenant_id, employees[0].user_id, 2024)
        assert ytd == {"PENSION": Decimal("16000.00"), "TAX": Decimal("24600.00")}

        records = [r for r in audit_sink.records if r.pay_run_id == run_id]
        assert [r.transition for r in records] == [
            "create",
            "calculate",
            "submit_for_approval",
            "approve",
            "complete",
        ]
        assert all(r.actor_id == actor_id for r in records)
        assert (records[-1].from_status, records[-1].to_status) == ("approved", "completed")

    async def test_reject_reopens_for_correction(self, service, calculated_run, actor_id, audit_sink):
        pay_run = await calculated_run()
        await service.submit_for_approval(pay_run.pay_run_id, actor_id)

        rejected = await service.reject(pay_run.pay_run_id, "wrong bonus", actor_id)
        assert rejected.status == PayRunStatus.REJECTED
        assert rejected.rejection_reason == "wrong bonus"
        assert audit_sink.records[-1].reason == "wrong bonus"

        recalculated = await service.calculate(pay_run.pay_run_id, actor_id)
        assert recalculated.status == PayRunStatus.CALCULATED

    async def test_reject_requires_reason(self, service, calculated_run, actor_id):
        pay_run = await calculated_run()
        await service.submit_for_approval(pay_run.pay_run_id, actor_id)
        with pytest.raises(InvalidTransitionError, match="reason"):
            await service.reject(pay_run.pay_run_id, "  ", actor_id)

    async def test_approve_draft_rejected(self, service, create_run, actor_id):
        pay_run = await create_run()
        with pytest.raises(InvalidTransitionError):
            await service.approve(pay_run.pay_run_id, actor_id)
        stored = await service.get_pay_run(pay_run.pay_run_id)
        assert stored.status == PayRunStatus.DRAFT

    async def test_submit_requires_calculated_items(self, service, calculated_run, employees, actor_id):
        pay_run = await calculated_run()
        for detail in employees:
            await service.exclude_employee(pay_run.pay_run_id, detail.user_id, "none", actor_id)

        with pytest.raises(InvalidTransitionError, match="no calculated employees"):
            await service.submit_for_approval(pay_run.pay_run_id, actor_id)

    async def test_submit_blocked_by_pending_item(
        self, service, calculated_run, employees, actor_id
    ):
        pay_run = await calculated_run()
        target = employees[0].user_id
        await service.exclude_employee(pay_run.pay_run_id, target, "check", actor_id)
        await service.include_employee(pay_run.pay_run_id, target, actor_id)

        with pytest.raises(InvalidTransitionError, match="pending recalculation"):
            await service.submit_for_approval(pay_run.pay_run_id, actor_id)

    async def test_cancel(self, service, calculated_run, actor_id):
        pay_run = await calculated_run()
        cancelled = await service.cancel(pay_run.pay_run_id, "duplicate", actor_id)

        assert cancelled.status == PayRunStatus.CANCELLED
        assert cancelled.cancellation_reason == "duplicate"
        with pytest.raises(InvalidTransitionError):
            await service.cancel(pay_run.pay_run_id, "again", actor_id)

    async def test_submit_uncalculated_draft_rejected(self, service, create_run, employees, actor_id):
        pay_run = await create_run()

        with pytest.raises(InvalidTransitionError):
            await service.submit_for_approval(pay_run.pay_run_id, actor_id)
        stored = await service.get_pay_run(pay_run.pay_run_id)
        assert stored.status == PayRunStatus.DRAFT
        assert stored.submitted_by is None

    async def test_recalculate_after_approval_rejected(
        self, service, calculated_run, employees, actor_id
    ):
        pay_run = await calculated_run()
        await service.submit_for_approval(pay_run.pay_run_id, actor_id)
        approved = await service.approve(pay_run.pay_run_id, actor_id)

        with pytest.raises(InvalidTransitionError):
            await service.recalculate_item(
                pay_run.pay_run_id, user_id=employees[0].user_id, actor_id=actor_id
            )
        stored = await service.get_pay_run(pay_run.pay_run_id)
        assert stored.status == PayRunStatus.APPROVED
        assert stored.version == approved.version

    async def test_cancel_after_completion_rejected(self, service, calculated_run, actor_id):
        pay_run = await calculated_run()
        await service.submit_for_approval(pay_run.pay_run_id, actor_id)
        await service.approve(pay_run.pay_run_id, actor_id)
        await service.complete(pay_run.pay_run_id, actor_id)

        with pytest.raises(InvalidTransitionError):
            await service.cancel(pay_run.pay_run_id, "too late", actor_id)
        stored = await service.get_pay_run(pay_run.pay_run_id)
        assert stored.status == PayRunStatus.COMPLETED
        assert stored.cancellation_reason is None

    async def test_lock_dropped_once_terminal(self, service, calculated_run, actor_id):
        pay_run = await calculated_run()
        assert pay_run.pay_run_id in service._locks

        await service.cancel(pay_run.pay_run_id, "duplicate", actor_id)

        assert pay_run.pay_run_id not in service._locks

    async def test_cancel_requires_reason(self, service, create_run, actor_id):
        pay_run = await create_run()
        with pytest.raises(InvalidTransitionError):
            await service.cancel(pay_run.pay_run_id, "", actor_id)

    async def test_concurrent_approvals_only_one_succeeds(self, service, calculated_run, actor_id):
        pay_run = await calculated_run()
        await service.submit_for_approval(pay_run.pay_run_id, actor_id)

        results = await asyncio.gather(
            service.approve(pay_run.pay_run_id, actor_id),
            service.approve(pay_run.pay_run_id, actor_id),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, InvalidTransitionError)) == 1
        assert sum(1 for r in results if not isinstance(r, Exception)) == 1


class TestDeductionBalances:
    async def test_loan_balance_carries_across_runs(
        self, service, directory, tenant_id, pay_calendar, actor_id
    ):
        detail = make_detail()
        directory.add_employee(tenant_id, detail)
        directory.add_custom_deduction(
            tenant_id,
            detail.user_id,
            EmployeeCustomDeduction(
                "LOAN",
                amount=Decimal("60000"),
                total_target=Decimal("100000"),
                deduction_id=uuid4(),
            ),
        )

        withheld = []
        for pay_date in (PAY_DATE, date(2024, 4, 30)):
            pay_run = await service.create_pay_run(
                tenant_id, pay_calendar.calendar_id, pay_date, actor_id
            )
            await service.calculate(pay_run.pay_run_id, actor_id)
            await service.submit_for_approval(pay_run.pay_run_id, actor_id)
            await service.approve(pay_run.pay_run_id, actor_id)
            completed = await service.complete(pay_run.pay_run_id, actor_id)
            item = completed.items[detail.user_id]
            withheld.append(next(line for line in item.deduction_lines if line.code == "LOAN"))

        assert [line.amount for line in withheld] == [Decimal("60000.00"), Decimal("40000.00")]
        assert withheld[1].clamps == ("balance",)
        (loan,) = await directory.get_custom_deductions(tenant_id, detail.user_id)
        assert loan.total_deducted == Decimal("100000.00")
        assert loan.remaining_balance == Decimal("0")
        assert not loan.is_active

    async def test_unfinished_run_leaves_balance(
        self, service, calculated_run, directory, employees, tenant_id, actor_id
    ):
        loan = EmployeeCustomDeduction(
            "LOAN", amount=Decimal("10000"), total_target=Decimal("50000"), deduction_id=uuid4()
        )
        directory.add_custom_deduction(tenant_id, employees[0].user_id, loan)

        pay_run = await calculated_run()
        await service.submit_for_approval(pay_run.pay_run_id, actor_id)
        await service.approve(pay_run.pay_run_id, actor_id)

        (stored,) = await directory.get_custom_deductions(tenant_id, employees[0].user_id)
        assert stored.total_deducted == Decimal("0")


class TestFailureIsolation:
    async def test_failing_audit_sink_does_not_block(self, service, create_run, actor_id):
        class BrokenSink:
            def record(self, record):
                raise RuntimeError("sink down")

        service.audit.add_sink(BrokenSink())
        pay_run = await create_run()
        cancelled = await service.cancel(pay_run.pay_run_id, "test", actor_id)
        assert cancelled.status == PayRunStatus.CANCELLED

    async def test_failing_publisher_is_logged(self, service, calculated_run, actor_id, caplog):
        class BrokenPublisher:
            async def publish(self, pay_run):
                raise RuntimeError("printer on fire")

        service.publisher = BrokenPublisher()
        pay_run = await calculated_run()
        await service.submit_for_approval(pay_run.pay_run_id, actor_id)
        await service.approve(pay_run.pay_run_id, actor_id)

        completed = await service.complete(pay_run.pay_run_id, actor_id)

        assert completed.status == PayRunStatus.COMPLETED
        assert "Payslip publishing failed" in caplog.text

    async def test_stale_save_is_rejected(self, repository, create_run):
        pay_run = await create_run()
        first = await repository.get(pay_run.pay_run_id)
        second = await repository.get(pay_run.pay_run_id)

        first.name = "renamed"
        await repository.save(first)
        second.name = "also renamed"
        with pytest.raises(ConcurrentModificationError) as exc_info:
            await repository.save(second)
        assert exc_info.value.retryable


class TestSummary:
    async def test_summary_counts(self, service, calculated_run, employees, actor_id):
        pay_run = await calculated_run()
        await service.exclude_employee(pay_run.pay_run_id, employees[0].user_id, "leave", actor_id)

        summary = await service.summary(pay_run.pay_run_id)

        assert summary.reference == pay_run.reference
        assert summary.employee_count == 1
        assert summary.item_counts["excluded"] == 1
        assert summary.item_counts["calculated"] == 1
        assert summary.total_net == Decimal("159400.00")
