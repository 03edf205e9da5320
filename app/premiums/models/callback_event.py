"""
CallbackEvent model for inbound M-Pesa notifications.

Every STK callback, B2C result and B2C queue timeout is stored before it
is processed. The unique dedup_key makes a redelivered notification
collapse onto the existing row.

Usage:
    from premiums.models import CallbackEvent

    event, created = CallbackEvent.objects.get_or_create(
        dedup_key=CallbackEvent.build_dedup_key(kind, checkout_request_id),
        defaults={"kind": kind, "payload": payload},
    )
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin
from premiums.state_machines import CallbackEventStatus, CallbackKind


class CallbackEvent(UUIDPrimaryKeyMixin, BaseModel):
    """
    Tracks inbound gateway notifications for idempotent processing.

    Processing Flow:
        1. Callback view validates structure
        2. get_or_create on dedup_key
        3. If already PROCESSED -> acknowledge, don't queue
        4. Otherwise queue process_callback_event
        5. Task dispatches by kind and sets PROCESSED or FAILED
        6. retry_failed_callbacks re-queues FAILED rows within budget

    Note:
        No version field. The reconciler is idempotent on its own, so a
        second processing of the same event is harmless.
    """

    # ==========================================================================
    # Event Identification
    # ==========================================================================

    kind = models.CharField(
        max_length=20,
        choices=CallbackKind.choices,
        db_index=True,
    )

    dedup_key = models.CharField(
        max_length=255,
        unique=True,
        help_text="kind:gateway-correlation-id, unique for idempotency",
    )

    payload = models.JSONField(help_text="Notification body as received")

    # ==========================================================================
    # Processing Status
    # ==========================================================================

    status = models.CharField(
        max_length=20,
        choices=CallbackEventStatus.choices,
        default=CallbackEventStatus.PENDING,
        db_index=True,
    )

    processed_at = models.DateTimeField(null=True, blank=True)

    error_message = models.TextField(null=True, blank=True)

    retry_count = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of processing attempts",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Callback Event"
        verbose_name_plural = "Callback Events"
        indexes = [
            models.Index(fields=["status", "created_at"], name="premiums_ca_status_71b0aa_idx"),
            models.Index(fields=["status", "retry_count"], name="premiums_ca_status_e4d3c2_idx"),
        ]

    def __str__(self) -> str:
        return f"CallbackEvent({self.dedup_key}, {self.status})"

    @staticmethod
    def build_dedup_key(kind: str, correlation_id: str) -> str:
        return f"{kind}:{correlation_id}"

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_processed(self) -> bool:
        return self.status == CallbackEventStatus.PROCESSED

    @property
    def can_retry(self) -> bool:
        max_retries = getattr(settings, "CALLBACK_MAX_RETRIES", 5)
        return self.status == CallbackEventStatus.FAILED and self.retry_count < max_retries

    # ==========================================================================
    # Helper Methods
    # ==========================================================================

    def mark_processing(self) -> None:
        """Note: Does not save - caller must save after calling."""
        self.status = CallbackEventStatus.PROCESSING
        self.retry_count += 1

    def mark_processed(self) -> None:
        self.status = CallbackEventStatus.PROCESSED
        self.processed_at = timezone.now()
        self.error_message = None

    def mark_failed(self, error_message: str) -> None:
        self.status = CallbackEventStatus.FAILED
        self.error_message = error_message
