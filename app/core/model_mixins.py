"""
Model mixins providing reusable functionality for Django models.

This module contains abstract mixin classes that can be combined with
BaseModel to add specific functionality. These are generic infrastructure
classes with no domain-specific logic.

Available Mixins:
    UUIDPrimaryKeyMixin: Use UUID as primary key
    AppendOnlyMixin: Reject updates and deletes once a row is written

Usage:
    from core.models import BaseModel
    from core.model_mixins import AppendOnlyMixin, UUIDPrimaryKeyMixin

    class AuditRecord(UUIDPrimaryKeyMixin, AppendOnlyMixin, BaseModel):
        action = models.CharField(max_length=50)

Note:
    - Always list mixins before BaseModel in inheritance
    - Mixins are abstract and don't create database tables
"""

from __future__ import annotations

import uuid

from django.db import models

from core.exceptions import ConflictError


class UUIDPrimaryKeyMixin(models.Model):
    """
    Use UUID as primary key instead of auto-increment integer.

    Benefits:
        - Non-guessable IDs
        - Safe for distributed systems (no ID collisions)
        - Can be generated client-side before database insert
        - URLs don't reveal record count or order

    Fields:
        id: UUIDField as primary key (auto-generated)
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
    )

    class Meta:
        abstract = True


class AppendOnlyMixin(models.Model):
    """
    Make a model insert-only at the ORM level.

    The first save() inserts the row. Any later save() or delete() on the
    instance raises ConflictError. Queryset-level update()/delete() bypass
    this guard and must not be used on append-only models.

    Usage:
        entry = AuditRecord.objects.create(action="CREATED")
        entry.action = "CHANGED"
        entry.save()  # raises ConflictError
    """

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ConflictError(
                f"{self.__class__.__name__} is append-only and cannot be modified",
                error_code="APPEND_ONLY_RECORD",
                details={"pk": str(self.pk)},
            )
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ConflictError(
            f"{self.__class__.__name__} is append-only and cannot be deleted",
            error_code="APPEND_ONLY_RECORD",
            details={"pk": str(self.pk)},
        )
