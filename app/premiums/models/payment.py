"""
Payment model for one attempted M-Pesa STK-push collection.

A Payment is created in INITIATED before the gateway is called, and is
moved to a terminal state exactly once by the callback reconciler. The
commission split is written in the same transition that confirms it.

Usage:
    from premiums.models import Payment
    from premiums.state_machines import PaymentState

    payment = Payment.objects.create(
        payer=member,
        subscription=subscription,
        phone_number="254712345678",
        requested_amount=50,
        correlation_token=uuid.uuid4().hex,
    )

    # Inside CallbackReconciler, under a row lock
    payment.confirm(
        confirmed_amount=50,
        receipt_number="QKJ12ABC34",
        allocation=allocation,
    )
    payment.save()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.db import models
from django.db.models import F, Q
from django.utils import timezone
from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin
from premiums.state_machines import PaymentFailureCategory, PaymentState

if TYPE_CHECKING:
    from datetime import datetime

    from premiums.services.commission_calculator import CommissionAllocation


SPLIT_FIELDS = (
    "insurer_portion",
    "tier1_commission",
    "tier2_commission",
    "platform_residual",
)


class Payment(UUIDPrimaryKeyMixin, BaseModel):
    """
    One attempted collection from a member.

    State Flow:
        INITIATED -> CONFIRMED (split populated in the same save)
        INITIATED -> CONFIRMED_UNSPLIT (money received, split blocked)
        INITIATED -> FAILED
        CONFIRMED_UNSPLIT -> CONFIRMED (operator resolution)

    Correlation:
        correlation_token is ours, generated before the gateway call.
        gateway_request_id is the CheckoutRequestID the gateway returns
        and echoes in its callback; the reconciler matches on it.

    Invariants (enforced by database constraints):
        - split columns are non-null iff state is CONFIRMED
        - when CONFIRMED, the four split columns sum to confirmed_amount
        - correlation_token, gateway_request_id and receipt_number are unique
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    payer = models.ForeignKey(
        "membership.Member",
        on_delete=models.PROTECT,
        related_name="payments",
    )

    subscription = models.ForeignKey(
        "membership.MemberSubscription",
        on_delete=models.PROTECT,
        related_name="payments",
    )

    # ==========================================================================
    # Request
    # ==========================================================================

    phone_number = models.CharField(
        max_length=12,
        help_text="Normalised payer phone (2547XXXXXXXX)",
    )

    requested_amount = models.PositiveBigIntegerField(
        help_text="Amount requested from the payer, whole KES",
    )

    description = models.CharField(max_length=100, blank=True, default="")

    account_reference = models.CharField(max_length=12, blank=True, default="")

    # ==========================================================================
    # Correlation
    # ==========================================================================

    correlation_token = models.CharField(
        max_length=64,
        unique=True,
        editable=False,
        help_text="Token generated at initiation, never reused",
    )

    gateway_request_id = models.CharField(
        max_length=100,
        null=True,
        blank=True,
        unique=True,
        help_text="M-Pesa CheckoutRequestID",
    )

    merchant_request_id = models.CharField(max_length=100, null=True, blank=True)

    # ==========================================================================
    # State
    # ==========================================================================

    state = FSMField(
        default=PaymentState.INITIATED,
        choices=PaymentState.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the payment (managed by FSM)",
    )

    failure_category = models.CharField(
        max_length=30,
        choices=PaymentFailureCategory.choices,
        null=True,
        blank=True,
    )
    failure_reason = models.TextField(null=True, blank=True)

    # ==========================================================================
    # Gateway Outcome
    # ==========================================================================

    result_code = models.CharField(max_length=20, null=True, blank=True)
    result_description = models.TextField(null=True, blank=True)

    receipt_number = models.CharField(
        max_length=50,
        null=True,
        blank=True,
        unique=True,
        help_text="MpesaReceiptNumber, set only on success",
    )

    confirmed_amount = models.PositiveBigIntegerField(
        null=True,
        blank=True,
        help_text="Amount the gateway reports as processed (authoritative)",
    )

    amount_discrepancy = models.BigIntegerField(
        null=True,
        blank=True,
        help_text="confirmed_amount - requested_amount when they differ",
    )

    gateway_transaction_at = models.DateTimeField(null=True, blank=True)

    # ==========================================================================
    # Commission Split
    # ==========================================================================

    insurer_portion = models.PositiveBigIntegerField(null=True, blank=True)
    tier1_commission = models.PositiveBigIntegerField(null=True, blank=True)
    tier2_commission = models.PositiveBigIntegerField(null=True, blank=True)
    platform_residual = models.PositiveBigIntegerField(null=True, blank=True)

    # Frozen at split time so later hierarchy changes don't rewrite history
    tier1_recipient = models.ForeignKey(
        "membership.Member",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="tier1_payments",
    )
    tier2_recipient = models.ForeignKey(
        "membership.Member",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="tier2_payments",
    )

    scheme_code = models.CharField(max_length=50, null=True, blank=True)
    nominal_unit = models.PositiveIntegerField(null=True, blank=True)

    unsplit_reason = models.TextField(null=True, blank=True)

    # ==========================================================================
    # Concurrency Control & Timestamps
    # ==========================================================================

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    confirmed_at = models.DateTimeField(null=True, blank=True, db_index=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    last_status_query_at = models.DateTimeField(null=True, blank=True)

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment"
        verbose_name_plural = "Payments"
        indexes = [
            models.Index(fields=["state", "confirmed_at"], name="premiums_pa_state_1c6f0e_idx"),
            models.Index(fields=["state", "created_at"], name="premiums_pa_state_9b2d41_idx"),
            models.Index(fields=["payer", "state"], name="premiums_pa_payer_i_4e7a53_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(requested_amount__gt=0),
                name="payment_requested_amount_positive",
            ),
            models.CheckConstraint(
                condition=(
                    Q(
                        state=PaymentState.CONFIRMED,
                        insurer_portion__isnull=False,
                        tier1_commission__isnull=False,
                        tier2_commission__isnull=False,
                        platform_residual__isnull=False,
                    )
                    | (
                        ~Q(state=PaymentState.CONFIRMED)
                        & Q(
                            insurer_portion__isnull=True,
                            tier1_commission__isnull=True,
                            tier2_commission__isnull=True,
                            platform_residual__isnull=True,
                        )
                    )
                ),
                name="payment_split_iff_confirmed",
            ),
            models.CheckConstraint(
                condition=(
                    ~Q(state=PaymentState.CONFIRMED)
                    | Q(
                        confirmed_amount=F("insurer_portion")
                        + F("tier1_commission")
                        + F("tier2_commission")
                        + F("platform_residual")
                    )
                ),
                name="payment_split_sums_to_confirmed_amount",
            ),
        ]

    def __str__(self) -> str:
        return f"Payment({self.id}, {self.state}, KES {self.requested_amount})"

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

    def _record_gateway_outcome(
        self,
        confirmed_amount: int,
        receipt_number: str | None,
        result_code: str | None,
        result_description: str | None,
        gateway_transaction_at: datetime | None,
    ) -> None:
        self.confirmed_amount = confirmed_amount
        self.receipt_number = receipt_number or None
        self.result_code = result_code
        self.result_description = result_description
        self.gateway_transaction_at = gateway_transaction_at
        if confirmed_amount != self.requested_amount:
            self.amount_discrepancy = confirmed_amount - self.requested_amount

    def _apply_allocation(self, allocation: CommissionAllocation) -> None:
        split = allocation.split
        self.insurer_portion = split.insurer_portion
        self.tier1_commission = split.tier1_commission
        self.tier2_commission = split.tier2_commission
        self.platform_residual = split.platform_residual
        self.tier1_recipient_id = allocation.tier1_recipient_id
        self.tier2_recipient_id = allocation.tier2_recipient_id
        self.scheme_code = allocation.rates.scheme_code
        self.nominal_unit = allocation.rates.nominal_unit

    @transition(
        field=state,
        source=PaymentState.INITIATED,
        target=PaymentState.CONFIRMED,
    )
    def confirm(
        self,
        *,
        confirmed_amount: int,
        allocation: CommissionAllocation,
        receipt_number: str | None = None,
        result_code: str | None = "0",
        result_description: str | None = None,
        gateway_transaction_at: datetime | None = None,
    ):
        """
        Confirm the payment and freeze its commission split.

        Transition: INITIATED -> CONFIRMED

        The allocation must have been computed for confirmed_amount.
        """
        self._record_gateway_outcome(
            confirmed_amount,
            receipt_number,
            result_code,
            result_description,
            gateway_transaction_at,
        )
        self._apply_allocation(allocation)
        self.confirmed_at = timezone.now()

    @transition(
        field=state,
        source=PaymentState.INITIATED,
        target=PaymentState.CONFIRMED_UNSPLIT,
    )
    def confirm_unsplit(
        self,
        *,
        confirmed_amount: int,
        reason: str,
        receipt_number: str | None = None,
        result_code: str | None = "0",
        result_description: str | None = None,
        gateway_transaction_at: datetime | None = None,
    ):
        """
        Record a successful collection whose split could not be computed.

        Transition: INITIATED -> CONFIRMED_UNSPLIT

        Split columns stay null. The payment is invisible to settlement
        until an operator resolves it.
        """
        self._record_gateway_outcome(
            confirmed_amount,
            receipt_number,
            result_code,
            result_description,
            gateway_transaction_at,
        )
        self.unsplit_reason = reason

    @transition(
        field=state,
        source=PaymentState.CONFIRMED_UNSPLIT,
        target=PaymentState.CONFIRMED,
    )
    def resolve_split(self, *, allocation: CommissionAllocation):
        """
        Attach a split to a confirmed-unsplit payment.

        Transition: CONFIRMED_UNSPLIT -> CONFIRMED

        confirmed_at is stamped now, so the payment falls into the
        settlement period in which it became splittable.
        """
        self._apply_allocation(allocation)
        self.confirmed_at = timezone.now()

    @transition(
        field=state,
        source=PaymentState.INITIATED,
        target=PaymentState.FAILED,
    )
    def fail(
        self,
        *,
        category: str,
        reason: str,
        result_code: str | None = None,
        result_description: str | None = None,
    ):
        """
        Mark the payment as failed.

        Transition: INITIATED -> FAILED
        """
        self.failure_category = category
        self.failure_reason = reason
        self.result_code = result_code
        self.result_description = result_description
        self.failed_at = timezone.now()

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_terminal(self) -> bool:
        return self.state in PaymentState.terminal_states()

    @property
    def split_total(self) -> int | None:
        if self.state != PaymentState.CONFIRMED:
            return None
        return sum(getattr(self, name) for name in SPLIT_FIELDS)

    @property
    def payer_status(self) -> str:
        """Simple status shown to the payer: pending, success or failed."""
        if self.state == PaymentState.INITIATED:
            return "pending"
        if self.state == PaymentState.FAILED:
            return "failed"
        return "success"
