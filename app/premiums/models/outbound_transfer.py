"""
OutboundTransfer model for one B2C disbursement attempt.

Every attempt to pay a CommissionPayoutLineItem creates a new transfer
with a fresh correlation_token, sent to M-Pesa as the
OriginatorConversationID. The gateway's ConversationID is stored once the
request is accepted; result callbacks are matched on either.

Outcome is a plain column moved by conditional updates through
premiums.correlation.transfer_index:

    in_flight -> succeeded | failed | timed_out
"""

from __future__ import annotations

from django.db import models
from django.db.models import Q

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin
from premiums.state_machines import TransferOutcome


class OutboundTransfer(UUIDPrimaryKeyMixin, BaseModel):
    """
    One B2C payment request for a line item.

    Constraints:
        - (line_item, attempt_number) is unique
        - at most one SUCCEEDED transfer per line item
        - at most one IN_FLIGHT transfer per line item
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    line_item = models.ForeignKey(
        "premiums.CommissionPayoutLineItem",
        on_delete=models.PROTECT,
        related_name="transfers",
    )

    attempt_number = models.PositiveSmallIntegerField()

    amount = models.PositiveBigIntegerField()

    # ==========================================================================
    # Correlation
    # ==========================================================================

    correlation_token = models.CharField(
        max_length=64,
        unique=True,
        editable=False,
        help_text="Sent as OriginatorConversationID",
    )

    conversation_id = models.CharField(
        max_length=100,
        null=True,
        blank=True,
        unique=True,
        help_text="M-Pesa ConversationID returned on acceptance",
    )

    # ==========================================================================
    # Outcome
    # ==========================================================================

    outcome = models.CharField(
        max_length=20,
        choices=TransferOutcome.choices,
        default=TransferOutcome.IN_FLIGHT,
        db_index=True,
    )

    result_code = models.CharField(max_length=20, null=True, blank=True)
    failure_description = models.TextField(null=True, blank=True)

    transaction_id = models.CharField(
        max_length=50,
        null=True,
        blank=True,
        unique=True,
        help_text="M-Pesa TransactionID, set on success",
    )

    raw_result = models.JSONField(null=True, blank=True)

    completed_at = models.DateTimeField(null=True, blank=True)

    version = models.PositiveIntegerField(default=1)

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Outbound Transfer"
        verbose_name_plural = "Outbound Transfers"
        indexes = [
            models.Index(fields=["outcome", "created_at"], name="premiums_ou_outcome_2f9c7d_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["line_item", "attempt_number"],
                name="unique_transfer_attempt_number",
            ),
            models.UniqueConstraint(
                fields=["line_item"],
                condition=Q(outcome=TransferOutcome.SUCCEEDED),
                name="one_succeeded_transfer_per_line_item",
            ),
            models.UniqueConstraint(
                fields=["line_item"],
                condition=Q(outcome=TransferOutcome.IN_FLIGHT),
                name="one_in_flight_transfer_per_line_item",
            ),
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name="transfer_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return (
            f"OutboundTransfer({self.line_item_id}, attempt {self.attempt_number}, "
            f"{self.outcome})"
        )

    @property
    def is_terminal(self) -> bool:
        return self.outcome in TransferOutcome.terminal_states()

    @property
    def is_in_flight(self) -> bool:
        return self.outcome == TransferOutcome.IN_FLIGHT
