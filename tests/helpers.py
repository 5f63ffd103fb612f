"""Shared builders for the test suite."""

from datetime import datetime

from django.utils import timezone

from apps.accounts.models import User
from apps.collection_points.models import CollectionPoint, CollectionPointAllocation
from apps.intel_tasks.models import CycleType, IntelTask, TaskRule, TaskTemplate


def local(*args):
    """Aware datetime in the configured TIME_ZONE."""
    return timezone.make_aware(datetime(*args))


def make_user(email, **extra):
    extra.setdefault('first_name', email.split('@')[0].title())
    return User.objects.create_user(email=email, password='pass', **extra)


def make_template(**fields):
    defaults = {
        'name': 'Daily price check',
        'cycle_type': CycleType.DAILY,
        'run_at_minute': 540,
        'due_at_minute': 1080,
    }
    defaults.update(fields)
    return TaskTemplate.objects.create(**defaults)


def make_rule(template, **fields):
    defaults = {
        'scope_type': TaskRule.ScopeType.USER,
        'frequency_type': CycleType.DAILY,
        'dispatch_at_minute': 0,
    }
    defaults.update(fields)
    return TaskRule.objects.create(template=template, **defaults)


def make_point(code, **fields):
    defaults = {
        'name': f'Point {code}',
        'type': CollectionPoint.PointType.PORT,
        'commodities': [],
    }
    defaults.update(fields)
    return CollectionPoint.objects.create(code=code, **defaults)


def allocate(user, point, commodity=None, **fields):
    return CollectionPointAllocation.objects.create(
        user=user, collection_point=point, commodity=commodity, **fields
    )


def make_task(assignee, **fields):
    defaults = {'title': 'Manual task'}
    defaults.update(fields)
    return IntelTask.objects.create(assignee=assignee, **defaults)
