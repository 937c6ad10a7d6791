"""Pytest fixtures for payroll core tests."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import AsyncGenerator
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from payroll_core.calculators.catalog import CatalogSnapshot, default_catalog
from payroll_core.calculators.types import (
    EmployeePayrollDetail,
    PayFrequency,
    PayType,
    TaxBand,
    TaxTable,
)
from payroll_core.config import Settings
from payroll_core.database import create_schema, create_session_factory
from payroll_core.services.audit import AuditTrail, InMemoryAuditSink
from payroll_core.services.pay_run_service import PayRunService
from payroll_core.services.providers import (
    InMemoryCatalogProvider,
    InMemoryEmployeeDirectory,
    InMemoryTaxTableProvider,
    InMemoryYearToDateLedger,
    LedgerPayslipPublisher,
)
from payroll_core.services.repository import InMemoryPayRunRepository, SqlAlchemyPayRunRepository
from payroll_core.services.types import PayCalendar

# Use in-memory SQLite for tests (with async support)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

PAY_DATE = date(2024, 3, 31)

STANDARD_BANDS = (
    TaxBand(Decimal("0"), Decimal("300000"), Decimal("0.07")),
    TaxBand(Decimal("300000"), Decimal("600000"), Decimal("0.11")),
    TaxBand(Decimal("600000"), None, Decimal("0.15")),
)


def make_detail(
    user_id: UUID | None = None,
    pay_amount: str = "200000",
    **overrides,
) -> EmployeePayrollDetail:
    """Monthly salaried employee with no statutory toggles unless overridden."""
    fields = {
        "user_id": user_id or uuid4(),
        "pay_type": PayType.SALARY,
        "pay_amount": Decimal(pay_amount),
        "pay_frequency": PayFrequency.MONTHLY,
    }
    fields.update(overrides)
    return EmployeePayrollDetail(**fields)


@pytest.fixture
def tenant_id() -> UUID:
    return uuid4()


@pytest.fixture
def actor_id() -> UUID:
    return uuid4()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url=TEST_DATABASE_URL,
        calculation_concurrency=4,
        calculation_timeout_seconds=5.0,
        minor_unit=Decimal("0.01"),
        log_level="DEBUG",
    )


@pytest.fixture
def catalog() -> CatalogSnapshot:
    return default_catalog()


@pytest.fixture
def tax_table() -> TaxTable:
    return TaxTable(
        jurisdiction="default",
        name="Standard 2024",
        bands=STANDARD_BANDS,
        effective_from=date(2024, 1, 1),
    )


@pytest.fixture
def pay_calendar(tenant_id) -> PayCalendar:
    return PayCalendar(
        name="Monthly",
        frequency=PayFrequency.MONTHLY,
        pay_day=31,
        is_default=True,
        tenant_id=tenant_id,
    )


@pytest.fixture
def directory() -> InMemoryEmployeeDirectory:
    return InMemoryEmployeeDirectory()


@pytest.fixture
def ledger() -> InMemoryYearToDateLedger:
    return InMemoryYearToDateLedger()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def catalog_provider() -> InMemoryCatalogProvider:
    return InMemoryCatalogProvider()


@pytest.fixture
def publisher(ledger) -> LedgerPayslipPublisher:
    return LedgerPayslipPublisher(ledger)


@pytest_asyncio.fixture
async def repository(pay_calendar) -> InMemoryPayRunRepository:
    repository = InMemoryPayRunRepository()
    await repository.add_calendar(pay_calendar)
    return repository


@pytest.fixture
def service(
    repository,
    directory,
    ledger,
    tax_table,
    catalog_provider,
    audit_sink,
    publisher,
    settings,
) -> PayRunService:
    return PayRunService(
        repository=repository,
        employees=directory,
        ledger=ledger,
        tax_tables=InMemoryTaxTableProvider([tax_table]),
        catalogs=catalog_provider,
        audit=AuditTrail([audit_sink]),
        publisher=publisher,
        settings=settings,
    )


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create test database engine with the payroll schema."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def sql_repository(engine, pay_calendar) -> SqlAlchemyPayRunRepository:
    repository = SqlAlchemyPayRunRepository(create_session_factory(engine))
    await repository.add_calendar(pay_calendar)
    return repository
