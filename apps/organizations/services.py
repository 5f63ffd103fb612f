"""
Service layer for the organizations app.

Directory lookups used by the assignee resolver. Every lookup returns
user ids of ACTIVE users only, in a stable order (by id).
"""

from apps.accounts.models import User


def get_active_user_ids_in_departments(department_ids):
    """Return ids of active users belonging to any of the given departments."""
    if not department_ids:
        return []
    return list(
        User.objects.active()
        .filter(department_id__in=department_ids)
        .order_by('pk')
        .values_list('pk', flat=True)
    )


def get_active_user_ids_in_organizations(organization_ids):
    """Return ids of active users belonging to any of the given organizations."""
    if not organization_ids:
        return []
    return list(
        User.objects.active()
        .filter(organization_id__in=organization_ids)
        .order_by('pk')
        .values_list('pk', flat=True)
    )


def get_all_active_user_ids():
    """Return ids of every active user. Use with care on large directories."""
    return list(User.objects.active().order_by('pk').values_list('pk', flat=True))


def get_assignee_snapshots(user_ids):
    """
    Map user id -> (organization_id, department_id) for the given users.

    Used to denormalize org/department onto tasks at instantiation time.
    Unknown ids are simply absent from the result.
    """
    if not user_ids:
        return {}
    rows = User.objects.filter(pk__in=user_ids).values_list(
        'pk', 'organization_id', 'department_id'
    )
    return {pk: (org_id, dept_id) for pk, org_id, dept_id in rows}
