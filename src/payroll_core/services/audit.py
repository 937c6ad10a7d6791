"""Audit trail for pay run transitions and mutating actions.

The trail provides:
- A narrow sink interface for external audit storage
- Fan-out to every registered sink
- Error isolation (a failing sink never blocks a transition)
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditRecord:
    """One audited action on a pay run."""

    pay_run_id: UUID
    transition: str
    actor_id: UUID | None
    timestamp: datetime
    reason: str | None = None
    from_status: str | None = None
    to_status: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class AuditSink(Protocol):
    """Receives audit records. May be sync or async."""

    def record(self, record: AuditRecord) -> Any:
        ...


class AuditTrail:
    """Fans audit records out to sinks, isolating failures.

    Usage:
        trail = AuditTrail([LoggingAuditSink()])
        await trail.record(AuditRecord(...))
    """

    def __init__(self, sinks: list[AuditSink] | None = None):
        self._sinks: list[AuditSink] = list(sinks or [])

    def add_sink(self, sink: AuditSink) -> None:
        self._sinks.append(sink)

    async def record(self, record: AuditRecord) -> list[Exception]:
        """Deliver a record to every sink.

        Returns list of any exceptions raised by sinks.
        """
        errors: list[Exception] = []
        for sink in self._sinks:
            try:
                result = sink.record(record)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(
                    "Audit sink %s failed for %s on pay run %s",
                    sink,
                    record.transition,
                    record.pay_run_id,
                )
                errors.append(e)
        return errors


class LoggingAuditSink:
    """Writes audit records to the standard logger."""

    def __init__(self, logger_name: str = "payroll_core.audit"):
        self._logger = logging.getLogger(logger_name)

    def record(self, record: AuditRecord) -> None:
        self._logger.info(
            "pay_run=%s transition=%s actor=%s %s->%s reason=%s",
            record.pay_run_id,
            record.transition,
            record.actor_id,
            record.from_status,
            record.to_status,
            record.reason,
        )


class InMemoryAuditSink:
    """Keeps records in a list. Used in tests."""

    def __init__(self) -> None:
        self.records: list[AuditRecord] = []

    def record(self, record: AuditRecord) -> None:
        self.records.append(record)

    def transitions(self, pay_run_id: UUID | None = None) -> list[str]:
        return [
            r.transition
            for r in self.records
            if pay_run_id is None or r.pay_run_id == pay_run_id
        ]
