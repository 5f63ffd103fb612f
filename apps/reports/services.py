"""
Service layer for reports app.

Completion metrics over intel tasks:
- get_task_metrics: totals and rates for a filtered task set
- get_group_metrics: the same, broken down by organization, department or rule

Filters are the IntelTaskFilter parameters (status, assignee, organization,
department, template, period_key, due_from, due_to, ...).
"""

from django.core.exceptions import ValidationError
from django.db.models import Count, Q

from apps.intel_tasks.filters import IntelTaskFilter
from apps.intel_tasks.models import IntelTask, TaskRule
from apps.organizations.models import Department, Organization

Status = IntelTask.Status

# group_by -> (task field, model, name attribute, fallback name)
GROUPINGS = {
    'organization': ('assignee_org', Organization, 'name', 'Unknown organization'),
    'department': ('assignee_dept', Department, 'name', 'Unknown department'),
    'rule': ('rule', TaskRule, None, 'Unknown rule'),
}


def _filtered_tasks(filters=None):
    filterset = IntelTaskFilter(filters or {}, queryset=IntelTask.objects.all())
    if not filterset.is_valid():
        raise ValidationError(filterset.errors)
    return filterset.qs


def _rates(row):
    total = row['total']
    row['completion_rate'] = row['completed'] / total if total else 0
    row['overdue_rate'] = row['overdue'] / total if total else 0
    row['late_rate'] = row['late'] / total if total else 0
    return row


COUNTS = {
    'total': Count('pk'),
    'pending': Count('pk', filter=Q(status=Status.PENDING)),
    'completed': Count('pk', filter=Q(status=Status.COMPLETED)),
    'overdue': Count('pk', filter=Q(status=Status.OVERDUE)),
    'late': Count('pk', filter=Q(is_late=True)),
}


def get_task_metrics(filters=None):
    """
    Get completion metrics for tasks matching `filters`.

    Returns dict with total, pending, completed, overdue, late and
    completion_rate, overdue_rate, late_rate (0 when there are no tasks).
    """
    row = _filtered_tasks(filters).aggregate(**COUNTS)
    return _rates(row)


def get_group_metrics(group_by='organization', filters=None):
    """
    Get completion metrics per organization, department or rule.

    Tasks without a value for the grouping field are left out.
    Rows are sorted by total, largest first.

    Raises:
        ValidationError: If group_by is not a supported grouping
    """
    if group_by not in GROUPINGS:
        raise ValidationError(f"Unsupported grouping: {group_by}")
    field, model, name_attr, fallback = GROUPINGS[group_by]
    key = f'{field}_id'

    rows = list(
        _filtered_tasks(filters)
        .filter(**{f'{key}__isnull': False})
        .order_by()
        .values(key)
        .annotate(**COUNTS)
    )
    objects = model.objects.in_bulk([row[key] for row in rows])

    result = []
    for row in rows:
        obj = objects.get(row[key])
        if obj is None:
            name = fallback
        elif name_attr:
            name = getattr(obj, name_attr)
        else:
            name = str(obj)
        result.append(_rates({
            'id': row[key],
            'name': name,
            'total': row['total'],
            'pending': row['pending'],
            'completed': row['completed'],
            'overdue': row['overdue'],
            'late': row['late'],
        }))

    return sorted(result, key=lambda item: item['total'], reverse=True)
