"""
Management command to run the intel task scheduler in the foreground.

Usage:
    python manage.py run_task_scheduler           # loop forever
    python manage.py run_task_scheduler --once    # single tick
"""
from django.core.management.base import BaseCommand

from apps.intel_tasks.scheduler import TaskScheduler


class Command(BaseCommand):
    help = 'Run the intel task distribution scheduler'

    def add_arguments(self, parser):
        parser.add_argument(
            '--once',
            action='store_true',
            help='Run a single tick and exit',
        )
        parser.add_argument(
            '--interval-ms',
            type=int,
            default=None,
            help='Tick interval in milliseconds (default: TASK_SCHEDULER_INTERVAL_MS)',
        )

    def handle(self, *args, **options):
        scheduler = TaskScheduler(interval_ms=options['interval_ms'])

        if options['once']:
            created = scheduler.tick()
            self.stdout.write(self.style.SUCCESS(f'Tick finished: {created or 0} task(s) created'))
            return

        self.stdout.write(
            f'Running task scheduler every {scheduler.interval_seconds:.0f}s (Ctrl+C to stop)'
        )
        try:
            scheduler.run_forever()
        except KeyboardInterrupt:
            scheduler.stop()
            self.stdout.write(self.style.WARNING('Task scheduler stopped'))
