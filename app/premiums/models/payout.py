"""
Commission payout line item model.

A line item is the amount owed to one recipient, in one role, out of one
settlement batch. Each attempt to pay it is an OutboundTransfer.

Usage:
    from premiums.models import CommissionPayoutLineItem
    from premiums.state_machines import PayoutLineItemState

    due = CommissionPayoutLineItem.objects.filter(
        state=PayoutLineItemState.PENDING,
    )

    # After the B2C result callback reports success
    item.mark_paid(transfer_reference="QKJ12ABC34")
    item.save()

Note:
    The pending -> processing claim is done with a conditional UPDATE
    (premiums.locks.conditional_transition) so two workers can never
    both claim the same item. All other edges go through the FSM methods
    below on a row-locked instance.
"""

from __future__ import annotations

from django.db import models
from django.db.models import F, Q
from django.utils import timezone
from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin
from premiums.state_machines import PayoutLineItemState, RecipientRole


class CommissionPayoutLineItem(UUIDPrimaryKeyMixin, BaseModel):
    """
    Commission owed to a recipient for one settlement batch.

    State Flow:
        PENDING -> PROCESSING (claim, conditional update)
        PROCESSING -> PAID (transfer succeeded)
        PROCESSING -> FAILED (transfer failed or timed out)
        FAILED -> PENDING (retry within budget, or operator retry)
        PENDING -> FAILED (no payable destination)

    PAID is terminal.

    Fields:
        attempt_count: Transfers created so far for this item
        next_attempt_at: Earliest time the dispatcher may pick it up again
        transfer_reference: M-Pesa TransactionID of the successful transfer
        current_transfer_token: correlation_token of the latest transfer
        requires_intervention: Retry budget spent or destination unpayable
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    batch = models.ForeignKey(
        "premiums.SettlementBatch",
        on_delete=models.PROTECT,
        related_name="line_items",
    )

    recipient = models.ForeignKey(
        "membership.Member",
        on_delete=models.PROTECT,
        related_name="payout_line_items",
    )

    recipient_role = models.CharField(
        max_length=10,
        choices=RecipientRole.choices,
    )

    # ==========================================================================
    # Amount
    # ==========================================================================

    amount = models.PositiveBigIntegerField(
        help_text="Amount owed, whole KES",
    )

    payment_count = models.PositiveIntegerField(
        default=0,
        help_text="Number of batch payments contributing to this amount",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    state = FSMField(
        default=PayoutLineItemState.PENDING,
        choices=PayoutLineItemState.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the line item (managed by FSM)",
    )

    # ==========================================================================
    # Attempts
    # ==========================================================================

    attempt_count = models.PositiveSmallIntegerField(default=0)

    next_attempt_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Not eligible for dispatch before this time",
    )

    current_transfer_token = models.CharField(
        max_length=64,
        null=True,
        blank=True,
        help_text="correlation_token of the most recent OutboundTransfer",
    )

    transfer_reference = models.CharField(
        max_length=50,
        null=True,
        blank=True,
        help_text="M-Pesa TransactionID of the successful transfer",
    )

    # ==========================================================================
    # Failure Info
    # ==========================================================================

    failure_reason = models.TextField(null=True, blank=True)

    requires_intervention = models.BooleanField(
        default=False,
        db_index=True,
        help_text="Needs an operator before another attempt is made",
    )

    # ==========================================================================
    # Concurrency Control & Timestamps
    # ==========================================================================

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    paid_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Commission Payout Line Item"
        verbose_name_plural = "Commission Payout Line Items"
        indexes = [
            models.Index(fields=["state", "next_attempt_at"], name="premiums_co_state_5a8e21_idx"),
            models.Index(fields=["state", "requires_intervention"], name="premiums_co_state_c37f90_idx"),
            models.Index(fields=["recipient", "state"], name="premiums_co_recipie_8d14b6_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["batch", "recipient", "recipient_role"],
                name="unique_line_item_per_recipient_role",
            ),
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name="line_item_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return (
            f"CommissionPayoutLineItem({self.id}, {self.recipient_role}, "
            f"{self.state}, KES {self.amount})"
        )

    def save(self, *args, **kwargs):
        """
        Save with version auto-increment for optimistic locking.
        """
        is_update = self.pk and not self._state.adding
        if is_update:
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=state,
        source=PayoutLineItemState.PROCESSING,
        target=PayoutLineItemState.PAID,
    )
    def mark_paid(self, transfer_reference: str | None):
        """
        Mark the line item as paid.

        Transition: PROCESSING -> PAID

        An intervention flag raised while this attempt was in flight (an
        earlier, written-off attempt also paid out) is kept along with its
        reason, so the double payout stays on the operator queue.
        """
        self.transfer_reference = transfer_reference
        self.paid_at = timezone.now()
        if not self.requires_intervention:
            self.failure_reason = None

    @transition(
        field=state,
        source=PayoutLineItemState.PROCESSING,
        target=PayoutLineItemState.FAILED,
    )
    def mark_failed(self, reason: str):
        """
        Record a failed transfer attempt.

        Transition: PROCESSING -> FAILED

        The payout service follows this with requeue() or escalate().
        """
        self.failure_reason = reason
        self.failed_at = timezone.now()

    @transition(
        field=state,
        source=PayoutLineItemState.PENDING,
        target=PayoutLineItemState.FAILED,
    )
    def reject(self, reason: str):
        """
        Fail the item without attempting a transfer.

        Transition: PENDING -> FAILED

        Used when the recipient has no payable destination.
        """
        self.failure_reason = reason
        self.failed_at = timezone.now()
        self.requires_intervention = True

    @transition(
        field=state,
        source=PayoutLineItemState.FAILED,
        target=PayoutLineItemState.PENDING,
    )
    def requeue(self, next_attempt_at=None):
        """
        Put a failed item back in the dispatch queue.

        Transition: FAILED -> PENDING
        """
        self.next_attempt_at = next_attempt_at
        self.requires_intervention = False

    def escalate(self, reason: str | None = None) -> None:
        """
        Flag the item for operator attention.

        Not a state change: the item keeps whatever state it is in.
        """
        self.requires_intervention = True
        if reason:
            self.failure_reason = reason

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_paid(self) -> bool:
        return self.state == PayoutLineItemState.PAID

    @property
    def is_due(self) -> bool:
        """Pending and not waiting out a backoff delay."""
        return self.state == PayoutLineItemState.PENDING and (
            self.next_attempt_at is None or self.next_attempt_at <= timezone.now()
        )

    @property
    def can_retry(self) -> bool:
        return self.state == PayoutLineItemState.FAILED

    @property
    def recipient_status(self) -> str:
        """
        Status shown to the recipient: paid or pending.

        Failures and retries stay an operator concern until resolved, so
        anything short of PAID reads as pending.
        """
        return "paid" if self.is_paid else "pending"
