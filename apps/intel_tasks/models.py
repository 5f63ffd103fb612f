"""
Intel task models.

Models:
- TaskTemplate: Recurring distribution definition (cycle, assignee rule, window)
- TaskRule: Optional rule attached to a template (scope, frequency, completion policy)
- TaskGroup: Batch of tasks generated by one rule run, closed by the completion engine
- IntelTask: The unit of work with review workflow and lateness tracking
"""

import dataclasses

from django.conf import settings
from django.db import models

from .policies import parse_due_policy
from .schedule import CycleSpec, is_dispatch_due


class TaskType(models.TextChoices):
    COLLECTION = 'COLLECTION', 'Collection'
    REPORT = 'REPORT', 'Report'
    RESEARCH = 'RESEARCH', 'Research'
    VERIFICATION = 'VERIFICATION', 'Verification'
    OTHER = 'OTHER', 'Other'


class Priority(models.TextChoices):
    LOW = 'LOW', 'Low'
    MEDIUM = 'MEDIUM', 'Medium'
    HIGH = 'HIGH', 'High'
    URGENT = 'URGENT', 'Urgent'


class CycleType(models.TextChoices):
    DAILY = 'DAILY', 'Daily'
    WEEKLY = 'WEEKLY', 'Weekly'
    MONTHLY = 'MONTHLY', 'Monthly'
    ONE_TIME = 'ONE_TIME', 'One Time'


class TaskTemplate(models.Model):
    """
    Recurring task distribution template.

    Lifecycle:
    - Created/edited by an operator
    - `last_run_at` / `next_run_at` advanced only by the scheduler loop
      (and `last_run_at` by manual distribution)
    - A ONE_TIME template deactivates itself after it has fired once
    """

    class AssigneeMode(models.TextChoices):
        MANUAL = 'MANUAL', 'Manual'
        BY_DEPARTMENT = 'BY_DEPARTMENT', 'By Department'
        BY_ORGANIZATION = 'BY_ORGANIZATION', 'By Organization'
        ALL_ACTIVE = 'ALL_ACTIVE', 'All Active Users'
        BY_COLLECTION_POINT = 'BY_COLLECTION_POINT', 'By Collection Point'

    class ScheduleMode(models.TextChoices):
        POINT_DEFAULT = 'POINT_DEFAULT', 'Point Default'
        TEMPLATE_OVERRIDE = 'TEMPLATE_OVERRIDE', 'Template Override'

    # Core fields
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    task_type = models.CharField(
        max_length=20,
        choices=TaskType.choices,
        default=TaskType.COLLECTION,
    )
    priority = models.CharField(
        max_length=10,
        choices=Priority.choices,
        default=Priority.MEDIUM,
    )
    schedule_mode = models.CharField(
        max_length=20,
        choices=ScheduleMode.choices,
        default=ScheduleMode.TEMPLATE_OVERRIDE,
    )

    # Cycle specification
    cycle_type = models.CharField(
        max_length=10,
        choices=CycleType.choices,
        default=CycleType.ONE_TIME,
    )
    run_at_minute = models.PositiveSmallIntegerField(
        default=540,
        help_text='Minute of day (0-1439) the template fires'
    )
    run_day_of_week = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        help_text='1=Mon..7=Sun (weekly cycles)'
    )
    run_day_of_month = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        help_text='1..31, 0 = last day (monthly cycles)'
    )
    due_at_minute = models.PositiveSmallIntegerField(
        default=1080,
        help_text='Minute of day (0-1439) tasks are due'
    )
    due_day_of_week = models.PositiveSmallIntegerField(null=True, blank=True)
    due_day_of_month = models.PositiveSmallIntegerField(null=True, blank=True)
    deadline_offset = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text='Legacy: hours after the anchor a one-time task is due'
    )
    active_from = models.DateTimeField(null=True, blank=True)
    active_until = models.DateTimeField(null=True, blank=True)
    max_backfill_periods = models.PositiveSmallIntegerField(
        default=1,
        help_text='Missed periods generated per scheduler tick'
    )

    # Assignee resolution
    assignee_mode = models.CharField(
        max_length=20,
        choices=AssigneeMode.choices,
        default=AssigneeMode.MANUAL,
    )
    assignee_ids = models.JSONField(default=list, blank=True)
    department_ids = models.JSONField(default=list, blank=True)
    organization_ids = models.JSONField(default=list, blank=True)
    collection_point_ids = models.JSONField(default=list, blank=True)
    target_point_types = models.JSONField(
        default=list,
        blank=True,
        help_text='Batch mode: every active point of these types'
    )

    # Scheduling state
    is_active = models.BooleanField(default=True, db_index=True)
    last_run_at = models.DateTimeField(null=True, blank=True)
    next_run_at = models.DateTimeField(null=True, blank=True, db_index=True)

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='created_task_templates',
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'task template'
        verbose_name_plural = 'task templates'
        ordering = ['-updated_at']
        indexes = [
            models.Index(fields=['is_active', 'next_run_at']),
        ]

    def __str__(self):
        return f"{self.name} ({self.get_cycle_type_display()})"

    @property
    def cycle_spec(self):
        """The template's cycle fields as a CycleSpec for the period/next-run math."""
        return CycleSpec(
            cycle_type=self.cycle_type,
            run_at_minute=self.run_at_minute,
            due_at_minute=self.due_at_minute,
            run_day_of_week=self.run_day_of_week,
            due_day_of_week=self.due_day_of_week,
            run_day_of_month=self.run_day_of_month,
            due_day_of_month=self.due_day_of_month,
            deadline_offset=self.deadline_offset,
            active_from=self.active_from,
            active_until=self.active_until,
        )

    @property
    def targets_point_types(self):
        return bool(self.target_point_types)

    @property
    def targets_collection_points(self):
        return self.targets_point_types or (
            self.assignee_mode == self.AssigneeMode.BY_COLLECTION_POINT
            and bool(self.collection_point_ids)
        )


class TaskRule(models.Model):
    """
    Distribution rule attached to a template.

    Rule-based templates are re-evaluated on every scheduler tick instead of
    following the template's backfill bookkeeping; duplicate tasks are
    skipped by the instantiation idempotency guard.

    due_policy payload (all keys optional):
        {"quorumCount": 2, "quorumRatio": 0.6,
         "dueAtMinute": 1080, "dueDayOfWeek": 5, "dueDayOfMonth": 0}
    """

    class ScopeType(models.TextChoices):
        POINT = 'POINT', 'Collection Point'
        USER = 'USER', 'User'
        DEPARTMENT = 'DEPARTMENT', 'Department'
        ORGANIZATION = 'ORGANIZATION', 'Organization'

    class AssigneeStrategy(models.TextChoices):
        POINT_OWNER = 'POINT_OWNER', 'Point Owner'
        USER_POOL = 'USER_POOL', 'User Pool'

    class CompletionPolicy(models.TextChoices):
        EACH = 'EACH', 'Each'
        ANY_ONE = 'ANY_ONE', 'Any One'
        QUORUM = 'QUORUM', 'Quorum'
        ALL = 'ALL', 'All'

    template = models.ForeignKey(
        TaskTemplate,
        on_delete=models.CASCADE,
        related_name='rules',
    )
    scope_type = models.CharField(max_length=20, choices=ScopeType.choices)
    scope_query = models.JSONField(
        default=dict,
        blank=True,
        help_text='e.g. {"collectionPointIds": [...], "pointTypes": [...], "userIds": [...]}'
    )
    frequency_type = models.CharField(
        max_length=10,
        choices=CycleType.choices,
        default=CycleType.DAILY,
    )
    weekdays = models.JSONField(default=list, blank=True)
    month_days = models.JSONField(default=list, blank=True)
    dispatch_at_minute = models.PositiveSmallIntegerField(default=540)
    due_policy = models.JSONField(null=True, blank=True)
    assignee_strategy = models.CharField(
        max_length=20,
        choices=AssigneeStrategy.choices,
        default=AssigneeStrategy.POINT_OWNER,
    )
    completion_policy = models.CharField(
        max_length=10,
        choices=CompletionPolicy.choices,
        default=CompletionPolicy.EACH,
    )
    grouping = models.BooleanField(
        default=False,
        help_text='Put tasks of one run into a shared TaskGroup'
    )
    is_active = models.BooleanField(default=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'task rule'
        verbose_name_plural = 'task rules'
        ordering = ['pk']

    def __str__(self):
        return f"Rule #{self.pk} ({self.get_scope_type_display()}, {self.completion_policy})"

    @property
    def policy(self):
        return parse_due_policy(self.due_policy)

    @property
    def cycle_spec(self):
        """
        The template's cycle spec with this rule's frequency and dispatch
        minute, and any due overrides from the due policy.
        """
        spec = self.template.cycle_spec
        policy = self.policy
        return dataclasses.replace(
            spec,
            cycle_type=self.frequency_type,
            run_at_minute=self.dispatch_at_minute,
            due_at_minute=spec.due_at_minute if policy.due_at_minute is None else policy.due_at_minute,
            due_day_of_week=spec.due_day_of_week if policy.due_day_of_week is None else policy.due_day_of_week,
            due_day_of_month=(
                spec.due_day_of_month if policy.due_day_of_month is None else policy.due_day_of_month
            ),
        )

    def is_due(self, now):
        return is_dispatch_due(
            self.frequency_type, self.weekdays, self.month_days, self.dispatch_at_minute, now
        )


class TaskGroup(models.Model):
    """
    Batch identifier shared by all tasks of one rule run.

    Created at instantiation time, closed only by the group completion engine.
    """

    class Status(models.TextChoices):
        OPEN = 'OPEN', 'Open'
        COMPLETED = 'COMPLETED', 'Completed'

    template = models.ForeignKey(
        TaskTemplate,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='task_groups',
    )
    rule = models.ForeignKey(
        TaskRule,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='task_groups',
    )
    status = models.CharField(
        max_length=10,
        choices=Status.choices,
        default=Status.OPEN,
        db_index=True,
    )
    group_key = models.CharField(
        max_length=100,
        unique=True,
        null=True,
        blank=True,
        help_text='"<rule id>:<period key>"'
    )
    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'task group'
        verbose_name_plural = 'task groups'
        ordering = ['-created_at']

    def __str__(self):
        return f"Group {self.group_key or self.pk} ({self.status})"


class IntelTask(models.Model):
    """
    Main intel task model.

    Status workflow:
    - pending/returned/overdue → submitted → completed (approved)
    - submitted → returned (rejected)
    - pending/submitted/returned/overdue → completed (direct completion)
    - pending → overdue (overdue sweep)

    `is_late` is stamped once when the task is completed, comparing the
    completion time to `due_at` (falling back to `deadline`), and is never
    recomputed afterwards.
    """

    class Status(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        SUBMITTED = 'SUBMITTED', 'Submitted'
        RETURNED = 'RETURNED', 'Returned'
        COMPLETED = 'COMPLETED', 'Completed'
        OVERDUE = 'OVERDUE', 'Overdue'

    # Core fields
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    task_type = models.CharField(
        max_length=20,
        choices=TaskType.choices,
        default=TaskType.COLLECTION,
    )
    priority = models.CharField(
        max_length=10,
        choices=Priority.choices,
        default=Priority.MEDIUM,
        db_index=True,
    )
    status = models.CharField(
        max_length=10,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True,
    )

    # Period and deadline
    deadline = models.DateTimeField(null=True, blank=True, db_index=True)
    period_start = models.DateTimeField(null=True, blank=True)
    period_end = models.DateTimeField(null=True, blank=True)
    due_at = models.DateTimeField(null=True, blank=True, db_index=True)
    period_key = models.CharField(max_length=10, null=True, blank=True, db_index=True)

    # Relationships
    assignee = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='intel_tasks',
    )
    assignee_org = models.ForeignKey(
        'organizations.Organization',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='intel_tasks',
        help_text='Snapshot of the assignee organization at instantiation'
    )
    assignee_dept = models.ForeignKey(
        'organizations.Department',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='intel_tasks',
        help_text='Snapshot of the assignee department at instantiation'
    )
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='created_intel_tasks',
    )
    template = models.ForeignKey(
        TaskTemplate,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='tasks',
    )
    rule = models.ForeignKey(
        TaskRule,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='tasks',
    )
    task_group = models.ForeignKey(
        TaskGroup,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='tasks',
    )
    collection_point = models.ForeignKey(
        'collection_points.CollectionPoint',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='intel_tasks',
    )
    commodity = models.CharField(max_length=50, null=True, blank=True)

    # Idempotency guard for generated tasks
    dedupe_key = models.CharField(
        max_length=255,
        unique=True,
        null=True,
        blank=True,
        editable=False,
        help_text='template:rule:period:assignee:point:commodity'
    )

    # Completion tracking
    completed_at = models.DateTimeField(null=True, blank=True)
    is_late = models.BooleanField(default=False)
    review_comment = models.TextField(blank=True)

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'intel task'
        verbose_name_plural = 'intel tasks'
        ordering = ['deadline', 'pk']
        indexes = [
            models.Index(fields=['status', 'assignee']),
            models.Index(fields=['status', 'due_at']),
            models.Index(fields=['assignee_org', 'status']),
            models.Index(fields=['assignee_dept', 'status']),
            models.Index(fields=['task_group', 'status']),
        ]

    def __str__(self):
        return f"#{self.pk}: {self.title}"

    @property
    def due_basis(self):
        """The instant lateness is measured against: due_at, else deadline."""
        return self.due_at or self.deadline

    def lateness_at(self, completed_at):
        """Whether completing at `completed_at` counts as late."""
        due = self.due_basis
        return bool(due and completed_at > due)


def build_dedupe_key(template_id, period_key, assignee_id,
                     collection_point_id=None, commodity=None, rule_id=None):
    """Unique key of a generated task: one per template, rule, period, assignee, point, commodity."""
    return ':'.join(
        str(part) if part not in (None, '') else '-'
        for part in (template_id, rule_id, period_key, assignee_id, collection_point_id, commodity)
    )
