"""
Collection point models.

Models:
- CollectionPoint: A place intel is collected from (enterprise, port, market...)
  with the commodities it handles and its own default dispatch frequency
- CollectionPointAllocation: Assignment of a user to a collection point,
  optionally scoped to a single commodity
"""

from django.conf import settings
from django.db import models

from apps.intel_tasks.schedule import is_dispatch_due


class CollectionPoint(models.Model):
    """
    A collection point.

    Frequency fields drive the "point default" schedule mode:
    - DAILY / CUSTOM: due every day
    - WEEKLY: due on the ISO weekdays listed in `weekdays` (1=Mon..7=Sun)
    - MONTHLY: due on the days listed in `month_days` (0 = last day of month)
    In every case the point is only due once the local time of day has
    reached `dispatch_at_minute`.
    """

    class PointType(models.TextChoices):
        ENTERPRISE = 'ENTERPRISE', 'Enterprise'
        PORT = 'PORT', 'Port'
        STATION = 'STATION', 'Station'
        REGION = 'REGION', 'Region'
        MARKET = 'MARKET', 'Market'

    class FrequencyType(models.TextChoices):
        DAILY = 'DAILY', 'Daily'
        WEEKLY = 'WEEKLY', 'Weekly'
        MONTHLY = 'MONTHLY', 'Monthly'
        CUSTOM = 'CUSTOM', 'Custom'

    code = models.CharField(max_length=50, unique=True)
    name = models.CharField(max_length=255)
    type = models.CharField(
        max_length=20,
        choices=PointType.choices,
        db_index=True,
    )
    commodities = models.JSONField(
        default=list,
        blank=True,
        help_text='Commodity codes handled at this point'
    )
    is_active = models.BooleanField(default=True, db_index=True)

    # Default dispatch frequency
    frequency_type = models.CharField(
        max_length=10,
        choices=FrequencyType.choices,
        default=FrequencyType.DAILY,
    )
    weekdays = models.JSONField(default=list, blank=True)
    month_days = models.JSONField(default=list, blank=True)
    dispatch_at_minute = models.PositiveSmallIntegerField(
        default=540,
        help_text='Minute of day (0-1439) after which tasks are dispatched'
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'collection point'
        verbose_name_plural = 'collection points'
        ordering = ['code']
        indexes = [
            models.Index(fields=['type', 'is_active']),
        ]

    def __str__(self):
        return f"{self.code}: {self.name}"

    def is_due(self, now):
        return is_dispatch_due(
            self.frequency_type, self.weekdays, self.month_days, self.dispatch_at_minute, now
        )


class CollectionPointAllocation(models.Model):
    """
    Allocation of a user to a collection point.

    `commodity` empty/null means the user covers every commodity the
    point handles.
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='point_allocations',
    )
    collection_point = models.ForeignKey(
        CollectionPoint,
        on_delete=models.CASCADE,
        related_name='allocations',
    )
    commodity = models.CharField(max_length=50, null=True, blank=True)
    is_active = models.BooleanField(default=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'collection point allocation'
        verbose_name_plural = 'collection point allocations'
        ordering = ['collection_point_id', 'pk']
        constraints = [
            models.UniqueConstraint(
                fields=['user', 'collection_point', 'commodity'],
                name='collection_point_allocation_unique_user_point_commodity',
            )
        ]

    def __str__(self):
        scope = self.commodity or 'All'
        return f"{self.user} @ {self.collection_point.code} [{scope}]"
