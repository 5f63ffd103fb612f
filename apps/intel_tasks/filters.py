"""
Intel task filters using django-filter.

Provides filtering for task querysets (metrics, exports, operator lists):
- Status / priority / type filters (multi-select)
- Assignee, organization and department (the snapshot taken at creation)
- Template, rule, group, collection point, commodity, period key
- Period range and due range (due_at, falling back to deadline)
- Search (title, description)
"""

import django_filters
from django.db.models import Q
from django.db.models.functions import Coalesce

from apps.accounts.models import User
from apps.collection_points.models import CollectionPoint
from apps.organizations.models import Department, Organization

from .models import IntelTask, Priority, TaskGroup, TaskRule, TaskTemplate, TaskType


class IntelTaskFilter(django_filters.FilterSet):
    """
    Task filter.

    Usage:
        filterset = IntelTaskFilter(params, queryset=IntelTask.objects.all())
        tasks = filterset.qs
    """

    search = django_filters.CharFilter(method='filter_search', label='Search')

    status = django_filters.MultipleChoiceFilter(
        choices=IntelTask.Status.choices,
        label='Status'
    )
    priority = django_filters.MultipleChoiceFilter(
        choices=Priority.choices,
        label='Priority'
    )
    task_type = django_filters.MultipleChoiceFilter(
        choices=TaskType.choices,
        label='Task Type'
    )

    assignee = django_filters.ModelChoiceFilter(
        queryset=User.objects.all(),
        label='Assignee'
    )
    organization = django_filters.ModelChoiceFilter(
        field_name='assignee_org',
        queryset=Organization.objects.all(),
        label='Organization'
    )
    department = django_filters.ModelChoiceFilter(
        field_name='assignee_dept',
        queryset=Department.objects.all(),
        label='Department'
    )
    template = django_filters.ModelChoiceFilter(
        queryset=TaskTemplate.objects.all(),
        label='Template'
    )
    rule = django_filters.ModelChoiceFilter(
        queryset=TaskRule.objects.all(),
        label='Rule'
    )
    task_group = django_filters.ModelChoiceFilter(
        queryset=TaskGroup.objects.all(),
        label='Group'
    )
    collection_point = django_filters.ModelChoiceFilter(
        queryset=CollectionPoint.objects.all(),
        label='Collection Point'
    )
    commodity = django_filters.CharFilter(label='Commodity')
    period_key = django_filters.CharFilter(label='Period Key')
    is_late = django_filters.BooleanFilter(label='Late')

    # Period range
    period_from = django_filters.DateTimeFilter(
        field_name='period_start',
        lookup_expr='gte',
        label='Period From'
    )
    period_to = django_filters.DateTimeFilter(
        field_name='period_end',
        lookup_expr='lte',
        label='Period To'
    )

    # Due range (due_at, else the legacy deadline)
    due_from = django_filters.DateTimeFilter(method='filter_due_from', label='Due From')
    due_to = django_filters.DateTimeFilter(method='filter_due_to', label='Due To')

    class Meta:
        model = IntelTask
        fields = ['status', 'priority', 'task_type', 'assignee', 'template', 'rule']

    def filter_search(self, queryset, name, value):
        """Case-insensitive partial match on title and description."""
        if not value:
            return queryset
        return queryset.filter(
            Q(title__icontains=value) |
            Q(description__icontains=value)
        )

    def _with_due_basis(self, queryset):
        return queryset.annotate(due_basis_at=Coalesce('due_at', 'deadline'))

    def filter_due_from(self, queryset, name, value):
        if not value:
            return queryset
        return self._with_due_basis(queryset).filter(due_basis_at__gte=value)

    def filter_due_to(self, queryset, name, value):
        if not value:
            return queryset
        return self._with_due_basis(queryset).filter(due_basis_at__lte=value)
