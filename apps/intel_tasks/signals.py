"""
Signals for the intel_tasks app.

task_completed is sent (after the transaction commits) whenever a task
reaches COMPLETED through the review workflow. Forced completions done by
the group completion engine do not send it.

    sender: IntelTask
    task_id: primary key of the completed task
"""

from django.dispatch import Signal

task_completed = Signal()
