"""
Service layer for the intel_tasks app.

All business logic for task distribution and the review workflow is
centralized here. Used by the scheduler loop, the management commands and
the Django-Q jobs.

Services:
- create_tasks_from_template: Instantiate one period of a template
- create_tasks_from_rule: Instantiate one period of a rule (with grouping)
- distribute_tasks: Manual "distribute now" with assignee/deadline override
- execute_template_by_point_type: Batch over every point of the target type(s)
- preview_distribution: Dry run of a distribution, no writes
- submit_task / approve_task / reject_task / complete_task: Review workflow
- check_overdue_tasks: Flip PENDING tasks past their due time to OVERDUE
- create_template / update_template: Template lifecycle with next-run bookkeeping
"""

import logging

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models.functions import Coalesce
from django.utils import timezone

from apps.accounts.models import User
from apps.activity_log.models import TaskActivity, log_task_activity
from apps.organizations.services import get_assignee_snapshots

from .assignees import (
    allocation_commodities,
    get_template_points,
    resolve_assignee_ids,
    resolve_point_targets,
    resolve_rule_targets,
    resolve_template_targets,
)
from .models import IntelTask, TaskGroup, TaskTemplate, build_dedupe_key
from .schedule import compute_next_run_at, compute_period_info
from .signals import task_completed
from .state_machine import Action, transition

logger = logging.getLogger(__name__)

# Template fields that feed the next-run calculation
CYCLE_FIELDS = (
    'cycle_type', 'run_at_minute', 'run_day_of_week', 'run_day_of_month',
    'active_from', 'active_until',
)


def _empty_result(point_count=None):
    return {'count': 0, 'assignee_ids': [], 'point_count': point_count}


def generate_task_title(template_name, period_key, commodity=None):
    title = f"{template_name} [{period_key}]"
    if commodity:
        title += f" [{commodity}]"
    return title


# =============================================================================
# Task Instantiation
# =============================================================================

def _build_tasks(template, targets, period, deadline, created_by, rule=None, task_group=None):
    """Build unsaved IntelTask rows for `targets`, org/dept snapshotted now."""
    snapshots = get_assignee_snapshots({target.user_id for target in targets})
    tasks = []
    for target in targets:
        org_id, dept_id = snapshots.get(target.user_id, (None, None))
        tasks.append(IntelTask(
            title=generate_task_title(template.name, period.period_key, target.commodity),
            description=template.description,
            task_type=template.task_type,
            priority=template.priority,
            deadline=deadline,
            period_start=period.period_start,
            period_end=period.period_end,
            due_at=period.due_at,
            period_key=period.period_key,
            assignee_id=target.user_id,
            assignee_org_id=org_id,
            assignee_dept_id=dept_id,
            created_by=created_by,
            template=template,
            rule=rule,
            task_group=task_group,
            collection_point_id=target.collection_point_id,
            commodity=target.commodity,
            dedupe_key=build_dedupe_key(
                template.pk,
                period.period_key,
                target.user_id,
                target.collection_point_id,
                target.commodity,
                rule_id=rule.pk if rule else None,
            ),
        ))
    return tasks


def _insert_tasks(tasks, created_by=None):
    """
    Bulk insert tasks, skipping any whose dedupe key already exists.

    Returns the number of rows actually created.
    """
    keys = [task.dedupe_key for task in tasks]
    existing = set(
        IntelTask.objects.filter(dedupe_key__in=keys).values_list('dedupe_key', flat=True)
    )
    new_keys = set(keys) - existing
    if not new_keys:
        return 0

    IntelTask.objects.bulk_create(
        tasks,
        batch_size=settings.TASK_INSERT_BATCH_SIZE,
        ignore_conflicts=True,
    )

    created = list(IntelTask.objects.filter(dedupe_key__in=new_keys).only('pk', 'title'))
    TaskActivity.objects.bulk_create(
        [
            TaskActivity(
                task=task,
                user=created_by,
                action_type=TaskActivity.ActionType.CREATED,
                description=f'Task distributed: "{task.title}"',
            )
            for task in created
        ],
        batch_size=settings.TASK_INSERT_BATCH_SIZE,
    )
    return len(created)


def create_tasks_from_template(template, run_at, assignee_ids=None, override_deadline=None,
                               triggered_by=None, points=None):
    """
    Instantiate one period of a template.

    Args:
        template: TaskTemplate instance
        run_at: Instant the distribution fires; anchors the period
        assignee_ids: Optional override list, replaces assignee resolution
        override_deadline: Optional explicit due time (also used as anchor)
        triggered_by: User who triggered a manual run, None for the scheduler
        points: Optional pre-selected collection points (point default mode)

    Returns:
        dict with count (tasks created), assignee_ids and point_count
    """
    if points is not None:
        targets, point_count = resolve_point_targets(points), len(points)
    else:
        targets, point_count = resolve_template_targets(template, assignee_ids)

    if not targets:
        return _empty_result(point_count)

    anchor = override_deadline or run_at
    period = compute_period_info(template.cycle_spec, anchor, override_deadline)
    deadline = override_deadline or period.due_at
    created_by = triggered_by or template.created_by

    with transaction.atomic():
        tasks = _build_tasks(template, targets, period, deadline, created_by)
        count = _insert_tasks(tasks, created_by=triggered_by)
        template.last_run_at = run_at
        template.save(update_fields=['last_run_at', 'updated_at'])

    assignee_ids = list(dict.fromkeys(target.user_id for target in targets))
    logger.info(
        "Template %s period %s: %d task(s) created for %d assignee(s)",
        template.pk, period.period_key, count, len(assignee_ids),
    )
    return {'count': count, 'assignee_ids': assignee_ids, 'point_count': point_count}


def create_tasks_from_rule(rule, run_at, triggered_by=None):
    """
    Instantiate one period of a rule.

    With grouping on, tasks share the TaskGroup keyed "<rule id>:<period key>";
    a group that is already COMPLETED produces nothing.
    """
    template = rule.template
    period = compute_period_info(rule.cycle_spec, run_at)

    targets = resolve_rule_targets(rule)
    if not targets:
        return _empty_result()

    created_by = triggered_by or template.created_by

    with transaction.atomic():
        task_group = None
        if rule.grouping:
            task_group, _ = TaskGroup.objects.get_or_create(
                group_key=f"{rule.pk}:{period.period_key}",
                defaults={'template': template, 'rule': rule},
            )
            if task_group.status == TaskGroup.Status.COMPLETED:
                return _empty_result()

        tasks = _build_tasks(
            template, targets, period, period.due_at, created_by,
            rule=rule, task_group=task_group,
        )
        count = _insert_tasks(tasks, created_by=triggered_by)
        template.last_run_at = run_at
        template.save(update_fields=['last_run_at', 'updated_at'])

    assignee_ids = list(dict.fromkeys(target.user_id for target in targets))
    if count:
        logger.info(
            "Rule %s period %s: %d task(s) created", rule.pk, period.period_key, count
        )
    return {'count': count, 'assignee_ids': assignee_ids, 'point_count': None}


# =============================================================================
# Manual distribution
# =============================================================================

def distribute_tasks(template_id, triggered_by=None, assignee_ids=None, override_deadline=None):
    """
    Distribute a template now.

    Templates with target point type(s) run the point-type batch instead.

    Raises:
        TaskTemplate.DoesNotExist: If the template does not exist
    """
    template = TaskTemplate.objects.get(pk=template_id)

    if template.targets_point_types:
        result = execute_template_by_point_type(template.pk, triggered_by=triggered_by)
        return {
            'count': result['count'],
            'message': result['message'],
            'assignee_ids': [],
            'point_count': result['point_count'],
        }

    result = create_tasks_from_template(
        template,
        run_at=timezone.now(),
        assignee_ids=assignee_ids,
        override_deadline=override_deadline,
        triggered_by=triggered_by,
    )
    return {
        'count': result['count'],
        'message': f"Distributed {result['count']} task(s)",
        'assignee_ids': result['assignee_ids'],
    }


def execute_template_by_point_type(template_id, triggered_by=None):
    """
    Generate tasks for every active point of the template's target type(s),
    assigned to each point's allocated users.

    Raises:
        TaskTemplate.DoesNotExist: If the template does not exist
        ValidationError: If the template has no target point type
    """
    template = TaskTemplate.objects.get(pk=template_id)

    if not template.targets_point_types:
        raise ValidationError("Template has no target collection point type.")

    points = get_template_points(template)
    if not points:
        types = ', '.join(template.target_point_types)
        return {
            'count': 0,
            'point_count': 0,
            'message': f"No active collection points of type {types}",
        }

    result = create_tasks_from_template(
        template, run_at=timezone.now(), triggered_by=triggered_by, points=points
    )
    return {
        'count': result['count'],
        'point_count': result['point_count'],
        'message': (
            f"Generated {result['count']} task(s) for "
            f"{result['point_count']} collection point(s)"
        ),
    }


def preview_distribution(template_id):
    """
    Describe what distributing a template would produce. No writes.

    Returns:
        dict with total_tasks, total_assignees, assignees (per-assignee
        breakdown) and unassigned_points (active points with no allocation)

    Raises:
        TaskTemplate.DoesNotExist: If the template does not exist
    """
    template = TaskTemplate.objects.get(pk=template_id)

    result = {
        'total_tasks': 0,
        'total_assignees': 0,
        'assignees': [],
        'unassigned_points': [],
    }

    if template.targets_collection_points:
        points = get_template_points(template)
        users = User.objects.in_bulk(
            {a.user_id for point in points for a in point.active_allocations}
        )
        entries = {}
        for point in points:
            if not point.active_allocations:
                result['unassigned_points'].append(
                    {'id': point.pk, 'name': point.name, 'type': point.type}
                )
                continue
            for allocation in point.active_allocations:
                entry = entries.get(allocation.user_id)
                if entry is None:
                    entry = _preview_entry(users.get(allocation.user_id), allocation.user_id)
                    entries[allocation.user_id] = entry
                count = len(allocation_commodities(point, allocation))
                entry['collection_points'].append({
                    'id': point.pk,
                    'name': point.name,
                    'type': point.type,
                    'commodity': allocation.commodity or 'All',
                    'count': count,
                })
                entry['task_count'] += count
        result['assignees'] = list(entries.values())
    else:
        user_ids = resolve_assignee_ids(template)
        users = User.objects.in_bulk(user_ids)
        for user_id in user_ids:
            entry = _preview_entry(users.get(user_id), user_id)
            entry['task_count'] = 1
            result['assignees'].append(entry)

    result['total_tasks'] = sum(entry['task_count'] for entry in result['assignees'])
    result['total_assignees'] = len(result['assignees'])
    return result


def _preview_entry(user, user_id):
    department = getattr(user, 'department', None)
    organization = getattr(user, 'organization', None)
    return {
        'user_id': user_id,
        'user_name': user.get_full_name() if user else None,
        'department_name': department.name if department else None,
        'organization_name': organization.name if organization else None,
        'collection_points': [],
        'task_count': 0,
    }


# =============================================================================
# Review workflow
# =============================================================================

def _transition_task(task_id, action, user, action_type, description, review_comment=None,
                     noop_if_completed=False):
    """
    Apply a workflow action to a task.

    Stamps completed_at/is_late on the COMPLETED edge and sends
    task_completed once the transaction commits. With noop_if_completed, a
    task found COMPLETED under the row lock is returned unchanged.

    Raises:
        IntelTask.DoesNotExist: If the task does not exist
        InvalidTransition: If the action is not allowed from the current status
    """
    with transaction.atomic():
        task = IntelTask.objects.select_for_update().get(pk=task_id)
        if noop_if_completed and task.status == IntelTask.Status.COMPLETED:
            return task
        old_status = task.status
        task.status = transition(old_status, action)
        update_fields = ['status', 'updated_at']

        if task.status == IntelTask.Status.COMPLETED:
            now = timezone.now()
            task.completed_at = now
            task.is_late = task.lateness_at(now)
            update_fields += ['completed_at', 'is_late']

        if review_comment is not None:
            task.review_comment = review_comment
            update_fields.append('review_comment')

        task.save(update_fields=update_fields)

        log_task_activity(
            task=task,
            user=user,
            action_type=action_type,
            description=description,
            field_name='status',
            old_value=old_status,
            new_value=task.status,
        )

        if task.status == IntelTask.Status.COMPLETED:
            transaction.on_commit(
                lambda: task_completed.send(sender=IntelTask, task_id=task.pk)
            )

    return task


def submit_task(task_id, user=None):
    """Submit a task for review (PENDING / RETURNED / OVERDUE -> SUBMITTED)."""
    return _transition_task(
        task_id, Action.SUBMIT, user,
        TaskActivity.ActionType.SUBMITTED, 'Task submitted for review',
    )


def approve_task(task_id, user=None, comment=None):
    """Approve a submitted task (SUBMITTED -> COMPLETED)."""
    return _transition_task(
        task_id, Action.APPROVE, user,
        TaskActivity.ActionType.APPROVED, 'Task approved',
        review_comment=comment,
    )


def reject_task(task_id, user=None, reason=None):
    """Return a submitted task to its assignee (SUBMITTED -> RETURNED)."""
    description = 'Task returned'
    if reason:
        description += f': {reason}'
    return _transition_task(
        task_id, Action.REJECT, user,
        TaskActivity.ActionType.RETURNED, description,
        review_comment=reason,
    )


def complete_task(task_id, user=None):
    """
    Complete a task directly.

    Completing an already completed task is a no-op and sends no event.
    """
    return _transition_task(
        task_id, Action.COMPLETE, user,
        TaskActivity.ActionType.COMPLETED, 'Task completed',
        noop_if_completed=True,
    )


def check_overdue_tasks(now=None):
    """
    Mark every PENDING task whose due time (due_at, else deadline) has
    passed as OVERDUE.

    Returns:
        Number of tasks marked overdue
    """
    now = now or timezone.now()
    candidate_ids = list(
        IntelTask.objects.annotate(due_basis_at=Coalesce('due_at', 'deadline'))
        .filter(status=IntelTask.Status.PENDING, due_basis_at__lt=now)
        .values_list('pk', flat=True)
    )
    if not candidate_ids:
        return 0

    # Validates the edge; raises if the workflow ever stops allowing it
    new_status = transition(IntelTask.Status.PENDING, Action.MARK_OVERDUE)

    with transaction.atomic():
        count = IntelTask.objects.filter(
            pk__in=candidate_ids,
            status=IntelTask.Status.PENDING,
        ).update(status=new_status, updated_at=now)
        # Rows that left PENDING since selection were skipped and get no entry
        flipped_ids = IntelTask.objects.filter(
            pk__in=candidate_ids, status=new_status, updated_at=now,
        ).values_list('pk', flat=True)
        TaskActivity.objects.bulk_create(
            [
                TaskActivity(
                    task_id=task_id,
                    user=None,
                    action_type=TaskActivity.ActionType.OVERDUE,
                    description='Task is overdue',
                    field_name='status',
                    old_value=IntelTask.Status.PENDING,
                    new_value=new_status,
                )
                for task_id in flipped_ids
            ],
            batch_size=settings.TASK_INSERT_BATCH_SIZE,
        )

    logger.info("Overdue sweep marked %d task(s) overdue", count)
    return count


# =============================================================================
# Template lifecycle
# =============================================================================

def create_template(created_by=None, **fields):
    """Create a template and compute its initial next_run_at."""
    template = TaskTemplate(created_by=created_by, **fields)
    template.next_run_at = compute_next_run_at(template.cycle_spec, timezone.now())
    template.save()
    return template


def update_template(template, **fields):
    """
    Update template fields.

    next_run_at is recomputed when any field feeding the next-run
    calculation changes.
    """
    cycle_changed = False
    for field, value in fields.items():
        if field in CYCLE_FIELDS and getattr(template, field) != value:
            cycle_changed = True
        setattr(template, field, value)

    if cycle_changed:
        template.next_run_at = compute_next_run_at(template.cycle_spec, timezone.now())

    template.save()
    return template
