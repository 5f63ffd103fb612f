"""Polling scheduler that advances task templates through their periods."""

from __future__ import annotations

import enum
import logging
import threading
import time
from datetime import timedelta

from django.conf import settings
from django.core.exceptions import ObjectDoesNotExist
from django.db import close_old_connections, connection
from django.db.models import F, Q
from django.utils import timezone

from .assignees import get_template_points
from .models import CycleType, TaskTemplate
from .schedule import compute_next_run_at
from .services import create_tasks_from_rule, create_tasks_from_template

logger = logging.getLogger(__name__)


def _tick_lock_id():
    return int(getattr(settings, 'TASK_SCHEDULER_LEADER_LOCK_ID', 4242101))


def acquire_tick_lock() -> bool:
    """
    Best-effort cross-process tick lock (Postgres advisory lock).

    Every web worker may run its own scheduler thread; with the lock enabled
    only one of them ticks at a time. Other databases skip the lock.
    """
    if not getattr(settings, 'TASK_SCHEDULER_LEADER_LOCK_ENABLED', False):
        return True
    if connection.vendor != 'postgresql':
        return True
    with connection.cursor() as cursor:
        cursor.execute("SELECT pg_try_advisory_lock(%s)", [_tick_lock_id()])
        return bool(cursor.fetchone()[0])


def release_tick_lock() -> None:
    if not getattr(settings, 'TASK_SCHEDULER_LEADER_LOCK_ENABLED', False):
        return
    if connection.vendor != 'postgresql':
        return
    with connection.cursor() as cursor:
        cursor.execute("SELECT pg_advisory_unlock(%s)", [_tick_lock_id()])


class SchedulerState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


class TaskScheduler:
    """
    Runs ticks on a fixed interval; each tick drives every active template
    whose activation window contains now.

    A tick that starts while another is still in flight is dropped, never
    queued. Templates are processed sequentially and a failing template is
    logged and skipped.
    """

    def __init__(self, interval_ms: int | None = None):
        if interval_ms is None:
            interval_ms = settings.TASK_SCHEDULER_INTERVAL_MS
        self.interval_seconds = max(1, int(interval_ms)) / 1000
        self._state = SchedulerState.IDLE
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> SchedulerState:
        with self._lock:
            return self._state

    def _try_begin(self) -> bool:
        with self._lock:
            if self._state is SchedulerState.RUNNING:
                return False
            self._state = SchedulerState.RUNNING
            return True

    def _finish(self) -> None:
        with self._lock:
            self._state = SchedulerState.IDLE

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def get_active_templates(self, now):
        """Active templates with now in [active_from, active_until), next_run_at ascending."""
        return list(
            TaskTemplate.objects.filter(is_active=True)
            .filter(Q(active_from__isnull=True) | Q(active_from__lte=now))
            .filter(Q(active_until__isnull=True) | Q(active_until__gt=now))
            .order_by(F('next_run_at').asc(nulls_first=True), 'pk')
        )

    def tick(self, now=None) -> int | None:
        """
        Run one scheduler pass.

        Returns the number of tasks created, or None when the tick was
        dropped because another one is still running (in this process, or in
        another one holding the tick lock).
        """
        if not self._try_begin():
            logger.warning("Task scheduler tick skipped: previous tick still running")
            return None

        try:
            locked = acquire_tick_lock()
        except Exception:
            self._finish()
            raise
        if not locked:
            self._finish()
            logger.info("Task scheduler tick skipped: another process holds the tick lock")
            return None

        start_time = time.monotonic()
        created = 0
        try:
            now = now or timezone.now()
            templates = self.get_active_templates(now)
            logger.info("Task scheduler tick started (%d active template(s))", len(templates))
            for template in templates:
                try:
                    created += self.process_template(template, now)
                except ObjectDoesNotExist:
                    logger.info("Template %s vanished during the tick; skipping", template.pk)
                except Exception:
                    logger.exception("Task scheduler failed for template %s", template.pk)
            logger.info(
                "Task scheduler tick finished in %.2fs (%d task(s) created)",
                time.monotonic() - start_time,
                created,
            )
            return created
        finally:
            try:
                release_tick_lock()
            finally:
                self._finish()

    def process_template(self, template, now) -> int:
        """Drive one template; returns the number of tasks created."""
        if (
            template.schedule_mode == TaskTemplate.ScheduleMode.POINT_DEFAULT
            and template.targets_collection_points
        ):
            return self._process_point_default(template, now)

        rules = list(template.rules.filter(is_active=True).select_related('template'))
        if rules:
            return self._process_rules(rules, now)

        return self._process_backfill(template, now)

    def _process_point_default(self, template, now) -> int:
        points = [point for point in get_template_points(template) if point.is_due(now)]
        if not points:
            return 0
        result = create_tasks_from_template(template, run_at=now, points=points)
        return result['count']

    def _process_rules(self, rules, now) -> int:
        created = 0
        for rule in rules:
            if not rule.is_due(now):
                continue
            if rule.frequency_type == CycleType.ONE_TIME and rule.tasks.exists():
                continue
            created += create_tasks_from_rule(rule, run_at=now)['count']
        return created

    def _process_backfill(self, template, now) -> int:
        spec = template.cycle_spec

        if template.next_run_at is None:
            template.next_run_at = compute_next_run_at(spec, now)
            template.save(update_fields=['next_run_at', 'updated_at'])
        if template.next_run_at is None or template.next_run_at > now:
            return 0

        max_runs = max(1, template.max_backfill_periods or 0)
        runs = 0
        created = 0
        next_run_at = template.next_run_at
        is_one_time = template.cycle_type == CycleType.ONE_TIME

        while next_run_at is not None and next_run_at <= now and runs < max_runs:
            result = create_tasks_from_template(template, run_at=next_run_at)
            created += result['count']
            template.last_run_at = next_run_at
            runs += 1

            if is_one_time:
                next_run_at = None
                break

            next_run_at = compute_next_run_at(spec, next_run_at + timedelta(seconds=1))
            if next_run_at and template.active_until and next_run_at > template.active_until:
                next_run_at = None
                break

        template.next_run_at = next_run_at
        update_fields = ['last_run_at', 'next_run_at', 'updated_at']
        if is_one_time:
            template.is_active = False
            update_fields.append('is_active')
        template.save(update_fields=update_fields)

        if runs > 1:
            logger.info("Template %s backfilled %d period(s)", template.pk, runs)
        return created

    # ------------------------------------------------------------------
    # Background thread
    # ------------------------------------------------------------------

    def _run_loop(self) -> None:
        logger.info("Task scheduler started (interval %.0fs)", self.interval_seconds)
        while not self._stop_event.is_set():
            close_old_connections()
            try:
                self.tick()
            except Exception:
                logger.exception("Task scheduler tick failed")
            finally:
                close_old_connections()
            self._stop_event.wait(timeout=self.interval_seconds)
        logger.info("Task scheduler stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="intel-task-scheduler",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def run_forever(self) -> None:
        """Run the loop in the calling thread (management command)."""
        self._stop_event.clear()
        self._run_loop()


_scheduler: TaskScheduler | None = None
_scheduler_lock = threading.Lock()


def get_scheduler() -> TaskScheduler:
    global _scheduler
    with _scheduler_lock:
        if _scheduler is None:
            _scheduler = TaskScheduler()
        return _scheduler


def start_scheduler() -> None:
    get_scheduler().start()
