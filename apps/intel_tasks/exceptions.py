"""
Exceptions raised by the intel task service layer.
"""

from django.core.exceptions import ValidationError


class InvalidTransition(ValidationError):
    """A workflow action is not allowed from the task's current status."""

    def __init__(self, status, action):
        self.status = status
        self.action = action
        super().__init__(
            f"Cannot {action} a task in status '{status}'.",
            code='invalid_transition',
        )
