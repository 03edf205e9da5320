"""
Append-only audit log for engine state changes.

Rows are written by premiums.services.audit_trail.AuditTrail inside the
same transaction as the change they describe, so an entry exists if and
only if the change committed.
"""

from __future__ import annotations

from django.db import models

from core.models import BaseModel
from core.model_mixins import AppendOnlyMixin, UUIDPrimaryKeyMixin
from premiums.state_machines import AuditAction


class AuditLogEntry(UUIDPrimaryKeyMixin, AppendOnlyMixin, BaseModel):
    action = models.CharField(
        max_length=40,
        choices=AuditAction.choices,
        db_index=True,
    )

    entity_type = models.CharField(
        max_length=50,
        help_text="Model name of the affected record",
    )
    entity_id = models.CharField(max_length=64)

    old_state = models.CharField(max_length=30, null=True, blank=True)
    new_state = models.CharField(max_length=30, null=True, blank=True)

    actor = models.CharField(
        max_length=100,
        default="system",
        help_text="'system' or the operator who triggered the change",
    )

    details = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Audit Log Entry"
        verbose_name_plural = "Audit Log Entries"
        indexes = [
            models.Index(
                fields=["entity_type", "entity_id", "created_at"],
                name="premiums_au_entity__3a6f12_idx",
            ),
            models.Index(fields=["action", "created_at"], name="premiums_au_action_b81e4f_idx"),
        ]

    def __str__(self) -> str:
        return f"AuditLogEntry({self.action}, {self.entity_type}:{self.entity_id})"
