"""Pay run services."""

from payroll_core.services.audit import AuditRecord, AuditTrail, InMemoryAuditSink, LoggingAuditSink
from payroll_core.services.pay_run_service import PayRunService
from payroll_core.services.repository import InMemoryPayRunRepository, SqlAlchemyPayRunRepository
from payroll_core.services.state_machine import PayRunAction, PayRunStateMachine, PayRunStatus
from payroll_core.services.types import PayCalendar, PayrollPeriod, PayRun, PayRunSummary

__all__ = [
    "AuditRecord",
    "AuditTrail",
    "InMemoryAuditSink",
    "LoggingAuditSink",
    "PayRunService",
    "InMemoryPayRunRepository",
    "SqlAlchemyPayRunRepository",
    "PayRunAction",
    "PayRunStateMachine",
    "PayRunStatus",
    "PayCalendar",
    "PayrollPeriod",
    "PayRun",
    "PayRunSummary",
]
