"""
Assignee resolution.

Turns a template's distribution settings (or a rule's scope) into a list
of concrete Targets: (user, collection point, commodity). Output order is
stable and duplicates are removed; an empty list is a valid outcome.

Collection point allocations expand per commodity:
- allocation with a commodity -> one target for that commodity
- allocation without one -> one target per commodity the point handles,
  or a single unscoped target when the point lists none
"""

from dataclasses import dataclass

from django.db.models import Prefetch, Q

from apps.collection_points.models import CollectionPoint, CollectionPointAllocation
from apps.organizations.services import (
    get_active_user_ids_in_departments,
    get_active_user_ids_in_organizations,
    get_all_active_user_ids,
)

from .models import TaskRule, TaskTemplate


@dataclass(frozen=True)
class Target:
    user_id: int
    collection_point_id: int | None = None
    commodity: str | None = None


def _unique(values):
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def _user_ids(values):
    """Coerce ids from JSON payloads to ints, dropping any that do not parse."""
    user_ids = []
    for value in values or []:
        if isinstance(value, bool):
            continue
        try:
            user_ids.append(int(value))
        except (TypeError, ValueError):
            continue
    return _unique(user_ids)


def allocation_commodities(point, allocation):
    """Commodities a single allocation produces tasks for."""
    if allocation.commodity:
        return [allocation.commodity]
    return list(point.commodities or []) or [None]


def active_points_queryset():
    """Active points with their active allocations prefetched."""
    return CollectionPoint.objects.filter(is_active=True).prefetch_related(
        Prefetch(
            'allocations',
            queryset=CollectionPointAllocation.objects.filter(is_active=True).order_by('pk'),
            to_attr='active_allocations',
        )
    ).order_by('pk')


def get_template_points(template, point_types=None):
    """
    Active points a template targets.

    Point types (batch mode) win over explicit collection point ids.
    """
    point_types = point_types if point_types is not None else template.target_point_types
    if point_types:
        return list(active_points_queryset().filter(type__in=point_types))
    if template.collection_point_ids:
        return list(active_points_queryset().filter(pk__in=template.collection_point_ids))
    return []


def resolve_point_targets(points):
    """Expand the active allocations of `points` into per-commodity targets."""
    targets = []
    for point in points:
        for allocation in point.active_allocations:
            for commodity in allocation_commodities(point, allocation):
                targets.append(Target(allocation.user_id, point.pk, commodity))
    return _unique(targets)


def resolve_assignee_ids(template, override_ids=None):
    """
    Resolve the user ids a template distributes to.

    A non-empty override list short-circuits every other source. Otherwise
    this is the ordered union of the static assignee ids and whatever the
    assignee mode adds.
    """
    if override_ids:
        return _user_ids(override_ids)

    mode = template.assignee_mode
    Mode = TaskTemplate.AssigneeMode
    user_ids = _user_ids(template.assignee_ids)

    if mode == Mode.BY_DEPARTMENT:
        user_ids += get_active_user_ids_in_departments(template.department_ids)
    elif mode == Mode.BY_ORGANIZATION:
        user_ids += get_active_user_ids_in_organizations(template.organization_ids)
    elif mode == Mode.ALL_ACTIVE:
        user_ids += get_all_active_user_ids()

    return _unique(user_ids)


def resolve_template_targets(template, override_ids=None):
    """
    Resolve a template into targets.

    Returns (targets, point_count); point_count is None unless the template
    distributes through collection point allocations.
    """
    if not override_ids and template.targets_collection_points:
        points = get_template_points(template)
        return resolve_point_targets(points), len(points)

    user_ids = resolve_assignee_ids(template, override_ids)
    return [Target(user_id) for user_id in user_ids], None


# =============================================================================
# Rule scopes
# =============================================================================

def get_rule_points(rule):
    """Active points in a POINT-scoped rule's scope."""
    query = rule.scope_query or {}
    point_ids = query.get('collectionPointIds') or []
    point_types = query.get('pointTypes') or []
    if not point_ids and not point_types:
        point_ids = rule.template.collection_point_ids or []
        point_types = rule.template.target_point_types or []
    if not point_ids and not point_types:
        return []
    return list(active_points_queryset().filter(Q(pk__in=point_ids) | Q(type__in=point_types)))


def resolve_rule_targets(rule):
    """
    Resolve a rule's scope into targets.

    - POINT + POINT_OWNER: the points' allocations (per commodity)
    - POINT + USER_POOL: every user in scope_query.userIds, once per point
    - USER / DEPARTMENT / ORGANIZATION: the listed users / active members
    Unsupported scopes resolve to nothing.
    """
    query = rule.scope_query or {}
    Scope = TaskRule.ScopeType

    if rule.scope_type == Scope.POINT:
        points = get_rule_points(rule)
        if rule.assignee_strategy == TaskRule.AssigneeStrategy.USER_POOL:
            pool = _user_ids(query.get('userIds'))
            return [Target(user_id, point.pk) for point in points for user_id in pool]
        return resolve_point_targets(points)

    if rule.scope_type == Scope.USER:
        user_ids = _user_ids(query.get('userIds'))
    elif rule.scope_type == Scope.DEPARTMENT:
        user_ids = get_active_user_ids_in_departments(query.get('departmentIds') or [])
    elif rule.scope_type == Scope.ORGANIZATION:
        user_ids = get_active_user_ids_in_organizations(query.get('organizationIds') or [])
    else:
        return []

    return [Target(user_id) for user_id in user_ids]
