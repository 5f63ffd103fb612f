"""
Organization and Department models for the assignee directory.

Organizations group departments; a user belongs to at most one of each.
Departments are flat within their organization (no nesting).
"""

from django.db import models


class Organization(models.Model):
    """
    Represents an organization (branch, subsidiary, regional office).

    Code is a short identifier (e.g., "HQ", "EAST").
    """

    name = models.CharField(
        max_length=100,
        unique=True,
        help_text='Full organization name'
    )
    code = models.CharField(
        max_length=20,
        unique=True,
        help_text='Short identifier (e.g., HQ, EAST)'
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'organization'
        verbose_name_plural = 'organizations'
        ordering = ['name']

    def __str__(self):
        return f"{self.name} ({self.code})"

    def save(self, *args, **kwargs):
        # Ensure code is uppercase
        if self.code:
            self.code = self.code.upper()
        super().save(*args, **kwargs)


class Department(models.Model):
    """
    Represents a department inside an organization.

    Notes:
    - Departments are flat (no parent/child relationships)
    - Code is a short identifier (e.g., "RES", "OPS")
    """

    organization = models.ForeignKey(
        Organization,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='departments',
    )
    name = models.CharField(
        max_length=100,
        help_text='Full department name'
    )
    code = models.CharField(
        max_length=20,
        unique=True,
        help_text='Short identifier (e.g., RES, OPS)'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'department'
        verbose_name_plural = 'departments'
        ordering = ['name']
        indexes = [
            models.Index(fields=['code']),
            models.Index(fields=['name']),
        ]

    def __str__(self):
        return f"{self.name} ({self.code})"

    def save(self, *args, **kwargs):
        # Ensure code is uppercase
        if self.code:
            self.code = self.code.upper()
        super().save(*args, **kwargs)
