"""
State enums for premium collection and payout models.

This module defines the state enums used by the engine's models with
django-fsm, plus plain choice enums for non-FSM status columns.

State Machines Overview:

Payment States:
    initiated → confirmed (result code 0, split computed)
    initiated → confirmed_unsplit (result code 0, split could not be computed)
    initiated → failed (gateway unreachable, rejected, or declined)
    confirmed_unsplit → confirmed (operator resolution)

Payout Line Item States:
    pending → processing → paid
    pending → processing → failed → pending (retry within budget)
    pending → failed (no payable destination)

Outbound Transfer Outcomes (plain column, conditional updates):
    in_flight → succeeded | failed | timed_out
"""

from django.db import models


class PaymentState(models.TextChoices):
    """
    States for the Payment lifecycle.

    Terminal states: CONFIRMED, FAILED. CONFIRMED_UNSPLIT is terminal for
    the gateway (money has moved) but waits on an operator to fix rates.
    """

    INITIATED = "initiated", "Initiated"
    CONFIRMED = "confirmed", "Confirmed"
    CONFIRMED_UNSPLIT = "confirmed_unsplit", "Confirmed (Unsplit)"
    FAILED = "failed", "Failed"

    @classmethod
    def terminal_states(cls) -> list[str]:
        return [cls.CONFIRMED, cls.CONFIRMED_UNSPLIT, cls.FAILED]


class PaymentFailureCategory(models.TextChoices):
    """Why a payment ended in FAILED."""

    GATEWAY_UNREACHABLE = "gateway_unreachable", "Never Reached Gateway"
    GATEWAY_REJECTED = "gateway_rejected", "Rejected By Gateway"
    EXPLICIT_DECLINE = "explicit_decline", "Declined"


class PayoutLineItemState(models.TextChoices):
    """
    States for the CommissionPayoutLineItem lifecycle.

    Terminal states: PAID. FAILED is terminal only once the retry budget
    is spent (requires_intervention is set); otherwise the item is
    re-queued to PENDING.
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PAID = "paid", "Paid"
    FAILED = "failed", "Failed"


class RecipientRole(models.TextChoices):
    TIER_1 = "tier1", "Tier 1 (Delegate)"
    TIER_2 = "tier2", "Tier 2 (Coordinator)"


class TransferOutcome(models.TextChoices):
    IN_FLIGHT = "in_flight", "In Flight"
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"
    TIMED_OUT = "timed_out", "Timed Out"

    @classmethod
    def terminal_states(cls) -> list[str]:
        return [cls.SUCCEEDED, cls.FAILED, cls.TIMED_OUT]


class CallbackKind(models.TextChoices):
    """Inbound gateway notification types."""

    STK_CALLBACK = "stk_callback", "STK Push Callback"
    B2C_RESULT = "b2c_result", "B2C Result"
    B2C_TIMEOUT = "b2c_timeout", "B2C Queue Timeout"


class CallbackEventStatus(models.TextChoices):
    """
    Processing status for stored inbound callbacks.

    Flow:
        PENDING → PROCESSING → PROCESSED (success)
        PENDING → PROCESSING → FAILED (error, will retry)
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"
    FAILED = "failed", "Failed"


class AuditAction(models.TextChoices):
    PAYMENT_INITIATED = "PAYMENT_INITIATED", "Payment Initiated"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED", "Payment Confirmed"
    PAYMENT_CONFIRMED_UNSPLIT = "PAYMENT_CONFIRMED_UNSPLIT", "Payment Confirmed Unsplit"
    PAYMENT_FAILED = "PAYMENT_FAILED", "Payment Failed"
    PAYMENT_UNSPLIT_RESOLVED = "PAYMENT_UNSPLIT_RESOLVED", "Payment Split Resolved"
    DUPLICATE_NOTIFICATION = "DUPLICATE_NOTIFICATION", "Duplicate Notification"
    AMOUNT_DISCREPANCY = "AMOUNT_DISCREPANCY", "Amount Discrepancy"
    SETTLEMENT_GENERATED = "SETTLEMENT_GENERATED", "Settlement Generated"
    PAYOUT_INITIATED = "PAYOUT_INITIATED", "Payout Initiated"
    PAYOUT_COMPLETED = "PAYOUT_COMPLETED", "Payout Completed"
    PAYOUT_FAILED = "PAYOUT_FAILED", "Payout Failed"
    PAYOUT_RETRY_SCHEDULED = "PAYOUT_RETRY_SCHEDULED", "Payout Retry Scheduled"
    PAYOUT_ESCALATED = "PAYOUT_ESCALATED", "Payout Escalated"
    PAYOUT_MANUAL_RETRY = "PAYOUT_MANUAL_RETRY", "Payout Manual Retry"
    LATE_TRANSFER_RESULT = "LATE_TRANSFER_RESULT", "Late Transfer Result"
    LATE_COLLECTION_SUCCESS = "LATE_COLLECTION_SUCCESS", "Late Collection Success"
