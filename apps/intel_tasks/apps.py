"""Django app configuration for intel tasks."""

import os
import sys

from django.apps import AppConfig
from django.conf import settings


def _should_start_scheduler():
    """Determine if the in-process task scheduler should start."""
    if not getattr(settings, 'TASK_SCHEDULER_ENABLED', True):
        return False

    if getattr(settings, 'IS_TESTING', False):
        return False

    # Server binaries pass flags as argv[1], so check argv[0] first
    argv0 = os.path.basename(sys.argv[0] or '')
    if any(server in argv0 for server in ('gunicorn', 'uvicorn', 'daphne')):
        return True

    # Management commands other than runserver never start it
    # (run_task_scheduler runs its own loop in the foreground)
    return len(sys.argv) > 1 and sys.argv[1] == 'runserver'


class IntelTasksConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.intel_tasks'
    label = 'intel_tasks'
    verbose_name = 'Intel Tasks'

    def ready(self):
        # Connect the group completion receiver
        from . import completion  # noqa: F401

        if _should_start_scheduler():
            from .scheduler import start_scheduler

            start_scheduler()
