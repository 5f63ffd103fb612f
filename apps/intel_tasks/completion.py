"""
Group completion engine.

Consumes the task_completed signal. When a grouped task reaches COMPLETED,
the rule's completion policy decides whether the group closes:

- EACH (or no rule): nothing cascades
- ANY_ONE: one completion closes the group and force-completes the rest
- QUORUM: the policy's quorum closes the group and force-completes the rest
- ALL: the group closes once every task is completed

Closing uses a conditional update on status=OPEN, so a concurrent or
repeated close is a no-op.
"""

import logging

from django.db import transaction
from django.dispatch import receiver
from django.utils import timezone

from apps.activity_log.models import TaskActivity, log_task_activity

from .models import IntelTask, TaskGroup, TaskRule
from .signals import task_completed

logger = logging.getLogger(__name__)

Policy = TaskRule.CompletionPolicy


def required_completions(rule, total):
    """How many completed tasks close a group of `total` under `rule`."""
    policy = rule.completion_policy
    if policy == Policy.ANY_ONE:
        return 1
    if policy == Policy.QUORUM:
        return rule.policy.required_completions(total)
    if policy == Policy.ALL:
        return total
    return None


def handle_task_completed(task_id):
    """
    Evaluate the group of a freshly completed task.

    Returns:
        Number of sibling tasks force-completed (0 when nothing cascades)
    """
    task = (
        IntelTask.objects.select_related('task_group__rule', 'rule')
        .filter(pk=task_id)
        .first()
    )
    if task is None or task.task_group is None:
        return 0

    group = task.task_group
    if group.status == TaskGroup.Status.COMPLETED:
        return 0

    rule = group.rule or task.rule
    if rule is None or rule.completion_policy == Policy.EACH:
        return 0

    siblings = IntelTask.objects.filter(task_group=group)
    total = siblings.count()
    completed = siblings.filter(status=IntelTask.Status.COMPLETED).count()
    required = required_completions(rule, total)
    if required is None or completed < required:
        return 0

    with transaction.atomic():
        now = timezone.now()
        closed = TaskGroup.objects.filter(
            pk=group.pk, status=TaskGroup.Status.OPEN
        ).update(status=TaskGroup.Status.COMPLETED, completed_at=now, updated_at=now)
        if not closed:
            return 0

        logger.info(
            "Task group %s closed (%s, %d/%d completed)",
            group.group_key or group.pk, rule.completion_policy, completed, total,
        )
        if rule.completion_policy == Policy.ALL:
            return 0

        remaining = list(
            siblings.select_for_update().exclude(status=IntelTask.Status.COMPLETED)
        )
        for sibling in remaining:
            old_status = sibling.status
            sibling.status = IntelTask.Status.COMPLETED
            sibling.completed_at = now
            sibling.is_late = sibling.lateness_at(now)
            sibling.updated_at = now
            sibling.save(update_fields=['status', 'completed_at', 'is_late', 'updated_at'])
            log_task_activity(
                task=sibling,
                user=None,
                action_type=TaskActivity.ActionType.AUTO_COMPLETE,
                description=(
                    f'Auto-completed: group {group.group_key or group.pk} '
                    f'closed by {rule.completion_policy} policy'
                ),
                field_name='status',
                old_value=old_status,
                new_value=IntelTask.Status.COMPLETED,
            )

    return len(remaining)


@receiver(task_completed, dispatch_uid='intel_tasks.group_completion')
def on_task_completed(sender, task_id, **kwargs):
    # Runs after the completing transaction committed; the completion itself stands
    try:
        handle_task_completed(task_id)
    except Exception:
        logger.exception("Group completion failed for task %s", task_id)
