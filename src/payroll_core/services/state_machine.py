"""Pay run state machine as a pure transition table."""

from __future__ import annotations

from enum import Enum

from payroll_core.errors import InvalidTransitionError


class PayRunStatus(str, Enum):
    """Pay run status values."""

    DRAFT = "draft"
    CALCULATING = "calculating"  # transient, never persisted
    CALCULATED = "calculated"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class PayRunAction(str, Enum):
    """Operations that are guarded by the pay run status."""

    CALCULATE = "calculate"
    FINISH_CALCULATION = "finish_calculation"
    RECALCULATE_ITEM = "recalculate_item"
    EXCLUDE_EMPLOYEE = "exclude_employee"
    INCLUDE_EMPLOYEE = "include_employee"
    ADD_EMPLOYEE = "add_employee"
    REMOVE_EMPLOYEE = "remove_employee"
    SUBMIT_FOR_APPROVAL = "submit_for_approval"
    APPROVE = "approve"
    REJECT = "reject"
    COMPLETE = "complete"
    CANCEL = "cancel"


# Rejected runs return to draft semantics for correction
EDITABLE_STATUSES = frozenset(
    {PayRunStatus.DRAFT, PayRunStatus.CALCULATED, PayRunStatus.REJECTED}
)
# Runs that accept adding or removing a single employee
DRAFT_STATUSES = frozenset({PayRunStatus.DRAFT, PayRunStatus.REJECTED})
TERMINAL_STATUSES = frozenset({PayRunStatus.COMPLETED, PayRunStatus.CANCELLED})
FROZEN_STATUSES = frozenset(
    {PayRunStatus.APPROVED, PayRunStatus.COMPLETED, PayRunStatus.CANCELLED}
)


def _build_transitions() -> dict[tuple[PayRunStatus, PayRunAction], PayRunStatus]:
    table: dict[tuple[PayRunStatus, PayRunAction], PayRunStatus] = {}
    for status in EDITABLE_STATUSES:
        table[(status, PayRunAction.CALCULATE)] = PayRunStatus.CALCULATING
        # Item-level edits keep the current status
        table[(status, PayRunAction.RECALCULATE_ITEM)] = status
        table[(status, PayRunAction.EXCLUDE_EMPLOYEE)] = status
        table[(status, PayRunAction.INCLUDE_EMPLOYEE)] = status
    for status in DRAFT_STATUSES:
        table[(status, PayRunAction.ADD_EMPLOYEE)] = status
        table[(status, PayRunAction.REMOVE_EMPLOYEE)] = status
    table[(PayRunStatus.CALCULATING, PayRunAction.FINISH_CALCULATION)] = PayRunStatus.CALCULATED
    table[(PayRunStatus.CALCULATED, PayRunAction.SUBMIT_FOR_APPROVAL)] = (
        PayRunStatus.PENDING_APPROVAL
    )
    table[(PayRunStatus.PENDING_APPROVAL, PayRunAction.APPROVE)] = PayRunStatus.APPROVED
    table[(PayRunStatus.PENDING_APPROVAL, PayRunAction.REJECT)] = PayRunStatus.REJECTED
    table[(PayRunStatus.APPROVED, PayRunAction.COMPLETE)] = PayRunStatus.COMPLETED
    for status in PayRunStatus:
        if status not in TERMINAL_STATUSES:
            table[(status, PayRunAction.CANCEL)] = PayRunStatus.CANCELLED
    return table


TRANSITIONS: dict[tuple[PayRunStatus, PayRunAction], PayRunStatus] = _build_transitions()


def transition(status: PayRunStatus, action: PayRunAction) -> PayRunStatus:
    """Return the status after performing ``action`` in ``status``.

    Raises InvalidTransitionError when the action is not allowed.
    """
    try:
        return TRANSITIONS[(PayRunStatus(status), PayRunAction(action))]
    except KeyError:
        raise InvalidTransitionError(
            PayRunStatus(status).value, PayRunAction(action).value
        ) from None


class PayRunStateMachine:
    """Queries over the transition table.

    Allowed transitions:
    - draft/calculated/rejected -> calculating -> calculated
    - draft/rejected: add or remove a single employee, status unchanged
    - calculated -> pending_approval
    - pending_approval -> approved | rejected
    - approved -> completed
    - any non-terminal -> cancelled
    """

    @classmethod
    def can_perform(cls, status: PayRunStatus, action: PayRunAction) -> bool:
        return (PayRunStatus(status), PayRunAction(action)) in TRANSITIONS

    @classmethod
    def validate_action(
        cls, status: PayRunStatus, action: PayRunAction, reason: str | None = None
    ) -> PayRunStatus:
        """Validate an action, raising InvalidTransitionError if invalid."""
        if not cls.can_perform(status, action):
            raise InvalidTransitionError(
                PayRunStatus(status).value, PayRunAction(action).value, reason
            )
        return transition(status, action)

    @classmethod
    def allowed_actions(cls, status: PayRunStatus) -> list[PayRunAction]:
        return [action for (s, action) in TRANSITIONS if s == status]

    @classmethod
    def can_calculate(cls, status: PayRunStatus) -> bool:
        """Check if calculation is allowed in this status."""
        return cls.can_perform(status, PayRunAction.CALCULATE)

    @classmethod
    def is_editable(cls, status: PayRunStatus) -> bool:
        """Check if items can be recalculated, excluded or included."""
        return status in EDITABLE_STATUSES

    @classmethod
    def are_items_frozen(cls, status: PayRunStatus) -> bool:
        return status in FROZEN_STATUSES

    @classmethod
    def is_terminal(cls, status: PayRunStatus) -> bool:
        return status in TERMINAL_STATUSES
