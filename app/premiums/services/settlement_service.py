"""
Settlement service: freezes a day's confirmed payments into a batch.

A settlement period is one local calendar day in SETTLEMENT_TIME_ZONE,
the half-open interval [00:00, next 00:00). Generating a settlement:

1. Refuses periods that have not ended (SETTLEMENT_PERIOD_OPEN)
2. Returns the existing batch if the period is already settled
3. Otherwise, in one transaction, selects CONFIRMED payments in the
   period that belong to no batch, writes the batch and its entries, and
   creates one payout line item per (recipient, role) with a non-zero
   total

Two concurrent runs for the same day collide on the period_key unique
constraint; the loser rolls back and reports created=False.

Read-side queries cover per-recipient commission breakdowns, summaries
over a date range, rolling totals, and a recipient's own payouts.

Usage:
    from premiums.services import SettlementService

    result = SettlementService.generate_settlement(date(2025, 1, 15))
    if result.success and result.data.created:
        batch = result.data.batch
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from django.conf import settings
from django.db import IntegrityError
from django.db.models import Count, Q, QuerySet, Sum
from django.utils import timezone

from core.services import BaseService, ServiceResult
from premiums.models import (
    CommissionPayoutLineItem,
    Payment,
    SettlementBatch,
    SettlementBatchEntry,
)
from premiums.services.audit_trail import AuditTrail
from premiums.state_machines import (
    AuditAction,
    PaymentState,
    PayoutLineItemState,
    RecipientRole,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Helpers
# =============================================================================


def settlement_time_zone() -> ZoneInfo:
    return ZoneInfo(getattr(settings, "SETTLEMENT_TIME_ZONE", "Africa/Nairobi"))


def period_bounds(period_date: date) -> tuple[datetime, datetime]:
    """[start, end) of the local calendar day ``period_date``."""
    tz = settlement_time_zone()
    start = datetime.combine(period_date, time.min, tzinfo=tz)
    end = datetime.combine(period_date + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def local_today() -> date:
    return timezone.localdate(timezone=settlement_time_zone())


BATCH_TOTAL_FIELDS = (
    "total_collected",
    "total_insurer",
    "total_tier1",
    "total_tier2",
    "total_residual",
    "payment_count",
)


def batch_totals(batches: QuerySet[SettlementBatch]) -> dict[str, int]:
    """Summed totals and the number of batches in ``batches``."""
    totals = batches.aggregate(
        settlement_count=Count("id"),
        **{name: Sum(name) for name in BATCH_TOTAL_FIELDS},
    )
    return {name: value or 0 for name, value in totals.items()}


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class SettlementRunResult:
    """
    Attributes:
        batch: The batch for the period (new or pre-existing)
        created: False when the period was already settled
        line_items: Line items created by this run
    """

    batch: SettlementBatch
    created: bool
    line_items: list[CommissionPayoutLineItem] = field(default_factory=list)


@dataclass
class SettlementSummary:
    start: date
    end: date
    batches: list[SettlementBatch]
    totals: dict[str, int]


# =============================================================================
# Settlement Service
# =============================================================================


class SettlementService(BaseService):
    """Daily settlement generation, payout statistics and reporting."""

    @classmethod
    def generate_settlement(cls, period_date: date) -> ServiceResult[SettlementRunResult]:
        start, end = period_bounds(period_date)

        if end > timezone.now():
            return ServiceResult.failure(
                f"Settlement period {period_date} has not ended",
                error_code="SETTLEMENT_PERIOD_OPEN",
            )

        existing = SettlementBatch.objects.filter(period_key=period_date).first()
        if existing is not None:
            cls.get_logger().info(
                "Settlement already exists for period",
                extra={"period_key": str(period_date), "batch_id": str(existing.id)},
            )
            return ServiceResult.success(SettlementRunResult(batch=existing, created=False))

        try:
            with cls.atomic() as scope:
                batch, line_items = cls._build_batch(scope, period_date, start, end)
        except IntegrityError:
            existing = SettlementBatch.objects.filter(period_key=period_date).first()
            if existing is None:
                raise
            cls.get_logger().info(
                "Concurrent settlement run won the period",
                extra={"period_key": str(period_date), "batch_id": str(existing.id)},
            )
            return ServiceResult.success(SettlementRunResult(batch=existing, created=False))

        cls.get_logger().info(
            "Settlement generated",
            extra={
                "period_key": str(period_date),
                "batch_id": str(batch.id),
                "payment_count": batch.payment_count,
                "total_collected": batch.total_collected,
                "line_item_count": len(line_items),
            },
        )
        return ServiceResult.success(
            SettlementRunResult(batch=batch, created=True, line_items=line_items)
        )

    @classmethod
    def _build_batch(
        cls,
        scope,
        period_date: date,
        start: datetime,
        end: datetime,
    ) -> tuple[SettlementBatch, list[CommissionPayoutLineItem]]:
        payments = list(
            Payment.objects.using(scope.using)
            .filter(
                state=PaymentState.CONFIRMED,
                confirmed_at__gte=start,
                confirmed_at__lt=end,
                settlement_entry__isnull=True,
            )
            .order_by("confirmed_at", "id")
        )

        batch = SettlementBatch.objects.using(scope.using).create(
            period_key=period_date,
            period_start=start,
            period_end=end,
            total_collected=sum(p.confirmed_amount for p in payments),
            total_insurer=sum(p.insurer_portion for p in payments),
            total_tier1=sum(p.tier1_commission for p in payments),
            total_tier2=sum(p.tier2_commission for p in payments),
            total_residual=sum(p.platform_residual for p in payments),
            payment_count=len(payments),
            unique_payers=len({p.payer_id for p in payments}),
        )

        SettlementBatchEntry.objects.using(scope.using).bulk_create(
            [SettlementBatchEntry(batch=batch, payment=payment) for payment in payments]
        )

        # (recipient_id, role) -> [amount, payment_count]
        groups: dict[tuple[uuid.UUID, str], list[int]] = defaultdict(lambda: [0, 0])
        for payment in payments:
            for recipient_id, role, amount in (
                (payment.tier1_recipient_id, RecipientRole.TIER_1, payment.tier1_commission),
                (payment.tier2_recipient_id, RecipientRole.TIER_2, payment.tier2_commission),
            ):
                if recipient_id is None or not amount:
                    continue
                groups[(recipient_id, role)][0] += amount
                groups[(recipient_id, role)][1] += 1

        line_items = CommissionPayoutLineItem.objects.using(scope.using).bulk_create(
            [
                CommissionPayoutLineItem(
                    batch=batch,
                    recipient_id=recipient_id,
                    recipient_role=role,
                    amount=amount,
                    payment_count=count,
                )
                for (recipient_id, role), (amount, count) in sorted(
                    groups.items(), key=lambda item: (str(item[0][0]), item[0][1])
                )
            ]
        )

        AuditTrail.record(
            scope,
            AuditAction.SETTLEMENT_GENERATED,
            batch,
            details={
                "period_key": period_date,
                "payment_count": batch.payment_count,
                "unique_payers": batch.unique_payers,
                "total_collected": batch.total_collected,
                "total_insurer": batch.total_insurer,
                "total_tier1": batch.total_tier1,
                "total_tier2": batch.total_tier2,
                "total_residual": batch.total_residual,
                "line_item_count": len(line_items),
            },
        )
        return batch, line_items

    @classmethod
    def generate_missing_settlements(
        cls,
        days_back: int | None = None,
    ) -> ServiceResult[list[SettlementRunResult]]:
        """
        Settle every closed day in the last ``days_back`` days lacking a batch.

        Oldest day first. A failing day is logged and skipped so later days
        still settle.
        """
        if days_back is None:
            days_back = settings.SETTLEMENT_CATCH_UP_DAYS

        today = local_today()
        candidates = [today - timedelta(days=offset) for offset in range(days_back, 0, -1)]
        settled = set(
            SettlementBatch.objects.filter(period_key__in=candidates).values_list(
                "period_key", flat=True
            )
        )

        created = []
        for period_date in candidates:
            if period_date in settled:
                continue
            result = cls.generate_settlement(period_date)
            if not result.success:
                cls.get_logger().warning(
                    "Catch-up settlement failed",
                    extra={
                        "period_key": str(period_date),
                        "error_code": result.error_code,
                        "error": result.error,
                    },
                )
                continue
            if result.data.created:
                created.append(result.data)

        return ServiceResult.success(created)

    @classmethod
    def get_payout_statistics(cls, batch_id: uuid.UUID) -> ServiceResult[dict]:
        """Counts and amounts per line-item state for one batch."""
        batch = SettlementBatch.objects.filter(id=batch_id).first()
        if batch is None:
            return ServiceResult.failure(
                f"Settlement batch {batch_id} not found",
                error_code="SETTLEMENT_NOT_FOUND",
            )

        by_state = {state: {"count": 0, "amount": 0} for state in PayoutLineItemState.values}
        rows = (
            batch.line_items.order_by()
            .values("state")
            .annotate(count=Count("id"), amount=Sum("amount"))
        )
        for row in rows:
            by_state[row["state"]] = {"count": row["count"], "amount": row["amount"] or 0}

        intervention = batch.line_items.filter(requires_intervention=True).aggregate(
            count=Count("id"),
            amount=Sum("amount"),
        )

        return ServiceResult.success(
            {
                "batch_id": str(batch.id),
                "period_key": batch.period_key.isoformat(),
                "total_line_items": sum(s["count"] for s in by_state.values()),
                "total_amount": sum(s["amount"] for s in by_state.values()),
                "by_state": by_state,
                "requires_intervention": {
                    "count": intervention["count"],
                    "amount": intervention["amount"] or 0,
                },
            }
        )

    # =========================================================================
    # Reporting
    # =========================================================================

    @classmethod
    def get_commission_breakdown(cls, batch_id: uuid.UUID) -> ServiceResult[dict]:
        """
        Commission owed to each recipient in one batch, grouped by tier.

        A line item already carries one recipient's total for one role, so
        the breakdown is a projection of the batch's line items, largest
        amount first.
        """
        batch = SettlementBatch.objects.filter(id=batch_id).first()
        if batch is None:
            return ServiceResult.failure(
                f"Settlement batch {batch_id} not found",
                error_code="SETTLEMENT_NOT_FOUND",
            )

        by_role = {role: [] for role in RecipientRole.values}
        items = batch.line_items.select_related("recipient").order_by(
            "-amount", "recipient__full_name"
        )
        for item in items:
            by_role[item.recipient_role].append(
                {
                    "recipient_id": str(item.recipient_id),
                    "recipient_name": item.recipient.full_name,
                    "phone_number": item.recipient.phone_number,
                    "amount": item.amount,
                    "payment_count": item.payment_count,
                    "state": item.state,
                }
            )

        return ServiceResult.success(
            {
                "batch_id": str(batch.id),
                "period_key": batch.period_key.isoformat(),
                "total_tier1": batch.total_tier1,
                "total_tier2": batch.total_tier2,
                "tier1": by_role[RecipientRole.TIER_1],
                "tier2": by_role[RecipientRole.TIER_2],
            }
        )

    @classmethod
    def get_settlement_summary(cls, start: date, end: date) -> ServiceResult[SettlementSummary]:
        """
        Batches settled for the local dates start..end (inclusive), newest
        first, with their combined totals.

        Error codes:
            VALIDATION_ERROR: start is after end
        """
        if start > end:
            return ServiceResult.failure(
                "start must not be after end",
                error_code="VALIDATION_ERROR",
            )

        batches = SettlementBatch.objects.filter(period_key__range=(start, end))
        return ServiceResult.success(
            SettlementSummary(
                start=start,
                end=end,
                batches=list(batches.order_by("-period_key")),
                totals=batch_totals(batches),
            )
        )

    @classmethod
    def get_overall_stats(cls, days: int = 30) -> ServiceResult[dict]:
        """
        Totals over the last ``days`` closed days, plus how much of the
        commission in that window has been paid out.
        """
        if days < 1:
            return ServiceResult.failure(
                "days must be at least 1",
                error_code="VALIDATION_ERROR",
            )

        end = local_today()
        start = end - timedelta(days=days)
        batches = SettlementBatch.objects.filter(period_key__gte=start, period_key__lt=end)
        totals = batch_totals(batches)

        payouts = CommissionPayoutLineItem.objects.filter(batch__in=batches).aggregate(
            paid=Sum("amount", filter=Q(state=PayoutLineItemState.PAID)),
            outstanding=Sum("amount", filter=~Q(state=PayoutLineItemState.PAID)),
            requires_intervention=Count("id", filter=Q(requires_intervention=True)),
        )

        count = totals["settlement_count"]
        return ServiceResult.success(
            {
                "days": days,
                "start": start.isoformat(),
                "end": (end - timedelta(days=1)).isoformat(),
                **totals,
                "total_commissions": totals["total_tier1"] + totals["total_tier2"],
                "average_collected_per_day": (
                    round(totals["total_collected"] / count, 2) if count else 0
                ),
                "paid_commissions": payouts["paid"] or 0,
                "outstanding_commissions": payouts["outstanding"] or 0,
                "requires_intervention": payouts["requires_intervention"],
            }
        )

    # =========================================================================
    # Recipient Views
    # =========================================================================

    @classmethod
    def recipient_payouts(cls, recipient_id: uuid.UUID) -> QuerySet[CommissionPayoutLineItem]:
        """A recipient's line items, newest period first."""
        return (
            CommissionPayoutLineItem.objects.filter(recipient_id=recipient_id)
            .select_related("batch")
            .order_by("-batch__period_key", "recipient_role")
        )

    @classmethod
    def get_recipient_summary(
        cls,
        recipient_id: uuid.UUID,
        start: date,
        end: date,
    ) -> ServiceResult[dict]:
        """
        What a recipient earned for periods start..end and how much of it
        has been paid.

        Only paid and pending amounts are reported. A failed transfer is
        still money owed, so it counts as pending.
        """
        if start > end:
            return ServiceResult.failure(
                "start must not be after end",
                error_code="VALIDATION_ERROR",
            )

        paid = Q(state=PayoutLineItemState.PAID)
        totals = CommissionPayoutLineItem.objects.filter(
            recipient_id=recipient_id,
            batch__period_key__range=(start, end),
        ).aggregate(
            line_item_count=Count("id"),
            payment_count=Sum("payment_count"),
            total_amount=Sum("amount"),
            paid_amount=Sum("amount", filter=paid),
            tier1_amount=Sum("amount", filter=Q(recipient_role=RecipientRole.TIER_1)),
            tier2_amount=Sum("amount", filter=Q(recipient_role=RecipientRole.TIER_2)),
        )
        total = totals["total_amount"] or 0
        paid_amount = totals["paid_amount"] or 0

        return ServiceResult.success(
            {
                "start": start.isoformat(),
                "end": end.isoformat(),
                "line_item_count": totals["line_item_count"],
                "payment_count": totals["payment_count"] or 0,
                "total_amount": total,
                "paid_amount": paid_amount,
                "pending_amount": total - paid_amount,
                "tier1_amount": totals["tier1_amount"] or 0,
                "tier2_amount": totals["tier2_amount"] or 0,
            }
        )
