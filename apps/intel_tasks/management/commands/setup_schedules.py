"""
Management command to set up Django-Q2 schedules for intel task jobs.

This command creates/updates the scheduled tasks required for:
- The overdue sweep (every OVERDUE_SWEEP_MINUTES minutes, default 60)

Usage:
    python manage.py setup_schedules

The command is idempotent - safe to run multiple times.
Existing schedules will be updated if their configuration changes.
"""
from django.conf import settings
from django.core.management.base import BaseCommand
from django_q.models import Schedule

SCHEDULES = [
    {
        'name': 'Overdue Task Sweep',
        'func': 'apps.intel_tasks.jobs.check_overdue_tasks',
    },
]


class Command(BaseCommand):
    help = 'Set up Django-Q2 schedules for intel task jobs'

    def handle(self, *args, **options):
        self.stdout.write('\nSetting up Django-Q2 schedules...\n')

        minutes = settings.OVERDUE_SWEEP_MINUTES
        schedules_created = 0
        schedules_updated = 0

        for entry in SCHEDULES:
            _, created = Schedule.objects.update_or_create(
                name=entry['name'],
                defaults={
                    'func': entry['func'],
                    'schedule_type': Schedule.MINUTES,
                    'minutes': minutes,
                    'repeats': -1,  # Run forever
                },
            )
            if created:
                schedules_created += 1
                self.stdout.write(
                    self.style.SUCCESS(f"✓ Created schedule: {entry['name']} (every {minutes} min)")
                )
            else:
                schedules_updated += 1
                self.stdout.write(
                    self.style.WARNING(f"↻ Updated schedule: {entry['name']} (every {minutes} min)")
                )

        total = schedules_created + schedules_updated
        self.stdout.write('')
        self.stdout.write(
            self.style.SUCCESS(
                f'Done! {schedules_created} schedule(s) created, '
                f'{schedules_updated} schedule(s) updated. '
                f'Total: {total} schedules configured.'
            )
        )
        self.stdout.write('')
        self.stdout.write(
            self.style.NOTICE(
                'Note: Ensure Django-Q cluster is running: python manage.py qcluster'
            )
        )
        self.stdout.write('')
