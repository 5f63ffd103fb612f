"""
Task review workflow.

`transition(status, action)` is pure: it returns the next status or raises
InvalidTransition. Persistence, audit logging and the completion event are
the service layer's job.
"""

from .exceptions import InvalidTransition
from .models import IntelTask

Status = IntelTask.Status


class Action:
    SUBMIT = 'submit'
    APPROVE = 'approve'
    REJECT = 'reject'
    COMPLETE = 'complete'
    MARK_OVERDUE = 'mark_overdue'


# action -> (allowed source statuses, target status)
TRANSITIONS = {
    Action.SUBMIT: ((Status.PENDING, Status.RETURNED, Status.OVERDUE), Status.SUBMITTED),
    Action.APPROVE: ((Status.SUBMITTED,), Status.COMPLETED),
    Action.REJECT: ((Status.SUBMITTED,), Status.RETURNED),
    Action.COMPLETE: (
        (Status.PENDING, Status.SUBMITTED, Status.RETURNED, Status.OVERDUE),
        Status.COMPLETED,
    ),
    Action.MARK_OVERDUE: ((Status.PENDING,), Status.OVERDUE),
}


def can_transition(status, action):
    allowed = TRANSITIONS.get(action)
    return bool(allowed) and status in allowed[0]


def transition(status, action):
    """Return the status `action` leads to from `status`."""
    if not can_transition(status, action):
        raise InvalidTransition(status, action)
    return TRANSITIONS[action][1]
