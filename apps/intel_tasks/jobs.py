"""
Scheduled jobs for the intel_tasks app, run by the Django-Q2 cluster.

Registered by the setup_schedules management command:
- check_overdue_tasks: every OVERDUE_SWEEP_MINUTES minutes
"""

import logging

from . import services

logger = logging.getLogger(__name__)


def check_overdue_tasks():
    """
    Scheduled job: mark PENDING tasks past their due time as OVERDUE.

    Returns the count so it shows up in the Django-Q task result.
    """
    count = services.check_overdue_tasks()
    logger.info("check_overdue_tasks job: %d task(s) marked overdue", count)
    return count
