"""
Settlement batch models.

A SettlementBatch freezes one local calendar day of confirmed payments.
Once inserted, neither the batch nor its entries can be changed; the
period_key uniqueness constraint guarantees at most one batch per day
and the OneToOne on SettlementBatchEntry.payment guarantees a payment
is settled at most once.

Usage:
    from premiums.models import SettlementBatch

    batch = SettlementBatch.objects.get(period_key=date(2025, 1, 15))
    payments = [entry.payment for entry in batch.entries.select_related("payment")]
"""

from __future__ import annotations

from django.db import models
from django.db.models import F, Q

from core.models import BaseModel
from core.model_mixins import AppendOnlyMixin, UUIDPrimaryKeyMixin


class SettlementBatch(UUIDPrimaryKeyMixin, AppendOnlyMixin, BaseModel):
    """
    Immutable aggregate of one day's confirmed payments.

    Fields:
        period_key: Local calendar date this batch settles (unique)
        period_start/period_end: Half-open UTC interval [start, end)
        total_*: Sums over member payments
        payment_count: Number of member payments
        unique_payers: Number of distinct payers

    Invariant:
        total_collected == total_insurer + total_tier1 + total_tier2 + total_residual
    """

    # ==========================================================================
    # Period
    # ==========================================================================

    period_key = models.DateField(
        unique=True,
        help_text="Local calendar date of the settlement period",
    )

    period_start = models.DateTimeField(
        help_text="Inclusive start of the period",
    )

    period_end = models.DateTimeField(
        help_text="Exclusive end of the period",
    )

    # ==========================================================================
    # Totals
    # ==========================================================================

    total_collected = models.PositiveBigIntegerField(default=0)
    total_insurer = models.PositiveBigIntegerField(default=0)
    total_tier1 = models.PositiveBigIntegerField(default=0)
    total_tier2 = models.PositiveBigIntegerField(default=0)
    total_residual = models.PositiveBigIntegerField(default=0)

    payment_count = models.PositiveIntegerField(default=0)
    unique_payers = models.PositiveIntegerField(default=0)

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-period_key"]
        verbose_name = "Settlement Batch"
        verbose_name_plural = "Settlement Batches"
        constraints = [
            models.CheckConstraint(
                condition=Q(period_end__gt=F("period_start")),
                name="settlement_period_not_empty",
            ),
            models.CheckConstraint(
                condition=Q(
                    total_collected=F("total_insurer")
                    + F("total_tier1")
                    + F("total_tier2")
                    + F("total_residual")
                ),
                name="settlement_totals_balance",
            ),
        ]

    def __str__(self) -> str:
        return f"SettlementBatch({self.period_key}, {self.payment_count} payments)"


class SettlementBatchEntry(UUIDPrimaryKeyMixin, AppendOnlyMixin, BaseModel):
    """Membership of one payment in one settlement batch."""

    batch = models.ForeignKey(
        SettlementBatch,
        on_delete=models.PROTECT,
        related_name="entries",
    )

    payment = models.OneToOneField(
        "premiums.Payment",
        on_delete=models.PROTECT,
        related_name="settlement_entry",
        help_text="A payment belongs to at most one batch",
    )

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Settlement Batch Entry"
        verbose_name_plural = "Settlement Batch Entries"

    def __str__(self) -> str:
        return f"SettlementBatchEntry({self.batch_id}, {self.payment_id})"
