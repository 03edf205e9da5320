"""
Payout service for disbursing commissions to tier recipients via M-Pesa B2C.

This module handles the critical path for money leaving the platform.
Every attempt to pay a CommissionPayoutLineItem is an OutboundTransfer
with its own correlation token.

The service implements a two-phase pattern for safety:
1. Phase 1: Claim the item (PENDING -> PROCESSING) and create the
   IN_FLIGHT transfer, commit transaction
2. Phase 2: Call B2C payment request (outside transaction)
3. Phase 3: Store the gateway ConversationID, let the result callback
   advance state

If the gateway call times out the outcome is unknown: the transfer stays
IN_FLIGHT until its result arrives or the stale sweep escalates it. An
ambiguous attempt is never retried automatically.

Retry-or-escalate:
    attempt_count < PAYOUT_MAX_ATTEMPTS -> FAILED -> PENDING after backoff
    otherwise                           -> stays FAILED, requires_intervention

Usage:
    from premiums.services import PayoutService

    result = PayoutService.dispatch_line_item(line_item_id)

    if result.success and result.data.dispatched:
        print(f"Transfer in flight: {result.data.transfer.correlation_token}")
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.db.models import F, Q
from django.utils import timezone

from core.exceptions import NotFoundError
from core.services import BaseService, ServiceResult
from premiums.adapters import (
    B2CParams,
    MpesaAdapter,
    backoff_delay,
    build_callback_url,
    format_phone_number,
    get_error_message,
)
from premiums.correlation import transfer_index
from premiums.exceptions import (
    MpesaError,
    MpesaTimeoutError,
    PaymentValidationError,
    StaleRecordError,
)
from premiums.locks import check_version, conditional_transition
from premiums.models import CommissionPayoutLineItem, OutboundTransfer
from premiums.services.audit_trail import AuditTrail
from premiums.state_machines import AuditAction, PayoutLineItemState, TransferOutcome

if TYPE_CHECKING:
    from core.services import TransactionScope
    from membership.models import Member
    from premiums.webhooks.payloads import TransferResult, TransferTimeout


logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

B2C_RESULT_ROUTE = "premiums:mpesa-b2c-result"
B2C_TIMEOUT_ROUTE = "premiums:mpesa-b2c-timeout"


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class PayoutDispatchResult:
    """
    Result of a dispatch attempt.

    Attributes:
        line_item: The line item as of the end of the call
        dispatched: True when a transfer was sent to the gateway
        transfer: The OutboundTransfer created for this attempt
        reason: Why nothing was dispatched, or why the outcome is unknown
    """

    line_item: CommissionPayoutLineItem
    dispatched: bool
    transfer: OutboundTransfer | None = None
    reason: str | None = None


@dataclass
class TransferReconciliationOutcome:
    transfer: OutboundTransfer
    line_item: CommissionPayoutLineItem
    duplicate: bool = False
    late: bool = False


@dataclass
class SweepResult:
    swept: int = 0
    correlation_tokens: list[str] = field(default_factory=list)


# =============================================================================
# Payout Service
# =============================================================================


class PayoutService(BaseService):
    """
    Service for dispatching commission payouts.

    Error Handling:
        - MpesaTimeoutError: Outcome unknown, transfer left IN_FLIGHT
        - Other MpesaError (unreachable, rejected, auth, credential):
          transfer FAILED, then retry-or-escalate
        - Recipient without a payable phone: item rejected, no transfer

    Safety Guarantees:
        - Conditional claim: only one worker moves PENDING -> PROCESSING
        - Partial unique index: at most one IN_FLIGHT transfer per item
        - Partial unique index: at most one SUCCEEDED transfer per item
        - PAID is terminal
    """

    # M-Pesa adapter - can be injected for testing
    _mpesa_adapter: type | None = None

    @classmethod
    def get_mpesa_adapter(cls) -> type:
        """Get the M-Pesa adapter class."""
        return cls._mpesa_adapter or MpesaAdapter

    @classmethod
    def set_mpesa_adapter(cls, adapter: type | None) -> None:
        """Set the M-Pesa adapter class (for testing)."""
        cls._mpesa_adapter = adapter

    # =========================================================================
    # Dispatch
    # =========================================================================

    @classmethod
    def dispatch_line_item(
        cls,
        line_item_id: uuid.UUID,
    ) -> ServiceResult[PayoutDispatchResult]:
        """
        Send one B2C transfer for a due line item.

        Returns:
            ServiceResult containing PayoutDispatchResult. A not-due or
            already-claimed item is a success with dispatched=False.
            Failure codes: LINE_ITEM_NOT_FOUND, RECIPIENT_NOT_PAYABLE,
            and the gateway error code when the transfer failed.
        """
        item = (
            CommissionPayoutLineItem.objects.select_related("recipient", "batch")
            .filter(id=line_item_id)
            .first()
        )
        if item is None:
            return ServiceResult.failure(
                f"Line item {line_item_id} not found",
                error_code="LINE_ITEM_NOT_FOUND",
            )

        # Step 1: Idempotent no-op unless due
        if not item.is_due:
            cls.get_logger().info(
                "Line item not due, skipping",
                extra={
                    "line_item_id": str(item.id),
                    "current_state": item.state,
                    "next_attempt_at": item.next_attempt_at.isoformat()
                    if item.next_attempt_at
                    else None,
                },
            )
            return ServiceResult.success(
                PayoutDispatchResult(line_item=item, dispatched=False, reason="not due")
            )

        # Step 2: Validate the payable destination
        phone_number, reason = cls._payable_phone(item.recipient)
        if phone_number is None:
            item = cls._reject(item.id, reason)
            return ServiceResult.failure(reason, error_code="RECIPIENT_NOT_PAYABLE")

        correlation_token = uuid.uuid4().hex
        params = B2CParams(
            phone_number=phone_number,
            amount=item.amount,
            originator_conversation_id=correlation_token,
            remarks=f"Commission {item.batch.period_key.isoformat()}",
            result_url=build_callback_url(B2C_RESULT_ROUTE),
            timeout_url=build_callback_url(B2C_TIMEOUT_ROUTE),
            occasion=item.recipient_role,
        )

        # Step 3: Phase 1 - claim and record the attempt
        with cls.atomic() as scope:
            claimed = conditional_transition(
                scope,
                CommissionPayoutLineItem,
                item.id,
                from_states=[PayoutLineItemState.PENDING],
                to_state=PayoutLineItemState.PROCESSING,
                attempt_count=F("attempt_count") + 1,
                current_transfer_token=correlation_token,
                next_attempt_at=None,
            )
            if not claimed:
                cls.get_logger().info(
                    "Line item claimed by another worker",
                    extra={"line_item_id": str(item.id)},
                )
                item = CommissionPayoutLineItem.objects.get(id=item.id)
                return ServiceResult.success(
                    PayoutDispatchResult(line_item=item, dispatched=False, reason="claimed")
                )

            item = CommissionPayoutLineItem.objects.using(scope.using).get(id=item.id)
            transfer = OutboundTransfer.objects.using(scope.using).create(
                line_item=item,
                attempt_number=item.attempt_count,
                amount=item.amount,
                correlation_token=correlation_token,
            )
            AuditTrail.record(
                scope,
                AuditAction.PAYOUT_INITIATED,
                item,
                old_state=PayoutLineItemState.PENDING,
                new_state=item.state,
                details={
                    "transfer_id": transfer.id,
                    "attempt_number": transfer.attempt_number,
                    "correlation_token": correlation_token,
                    "amount": item.amount,
                },
            )

        cls.get_logger().info(
            "Phase 2: Calling B2C payment request",
            extra={
                "line_item_id": str(item.id),
                "correlation_token": correlation_token,
                "attempt_number": transfer.attempt_number,
                "amount": item.amount,
            },
        )

        # Step 4: Phase 2 - gateway call outside the transaction
        start = time.monotonic()
        try:
            accepted = cls.get_mpesa_adapter().b2c_payment(params)
        except MpesaTimeoutError:
            cls.get_logger().warning(
                "B2C request timed out, outcome unknown; leaving transfer in flight",
                extra={
                    "line_item_id": str(item.id),
                    "correlation_token": correlation_token,
                    "attempt_number": transfer.attempt_number,
                },
            )
            return ServiceResult.success(
                PayoutDispatchResult(
                    line_item=item,
                    dispatched=True,
                    transfer=transfer,
                    reason="gateway timeout, awaiting result",
                )
            )
        except MpesaError as e:
            cls.get_logger().error(
                f"B2C request failed: {type(e).__name__}",
                extra={
                    "line_item_id": str(item.id),
                    "correlation_token": correlation_token,
                    "error_code": e.error_code,
                    "result_code": e.result_code,
                    "is_retryable": e.is_retryable,
                },
            )
            cls._fail_attempt(
                correlation_token,
                reason=e.message,
                result_code=e.result_code,
            )
            return ServiceResult.failure(e.message, error_code=e.error_code)

        # Step 5: Phase 3 - store the ConversationID (result may already be in)
        if accepted.conversation_id:
            OutboundTransfer.objects.filter(
                correlation_token=correlation_token,
                conversation_id__isnull=True,
            ).update(conversation_id=accepted.conversation_id, updated_at=timezone.now())

        transfer = OutboundTransfer.objects.get(correlation_token=correlation_token)
        item = CommissionPayoutLineItem.objects.get(id=item.id)

        cls.get_logger().info(
            "B2C request accepted",
            extra={
                "line_item_id": str(item.id),
                "correlation_token": correlation_token,
                "conversation_id": accepted.conversation_id,
                "duration_ms": round((time.monotonic() - start) * 1000),
            },
        )

        return ServiceResult.success(
            PayoutDispatchResult(line_item=item, dispatched=True, transfer=transfer)
        )

    @staticmethod
    def _payable_phone(member: Member) -> tuple[str | None, str | None]:
        if not member.is_active:
            return None, "Recipient is not an active member"
        try:
            return format_phone_number(member.phone_number), None
        except PaymentValidationError:
            return None, "Recipient phone number is not a valid M-Pesa number"

    @classmethod
    def _reject(cls, line_item_id: uuid.UUID, reason: str) -> CommissionPayoutLineItem:
        with cls.atomic() as scope:
            item = (
                CommissionPayoutLineItem.objects.using(scope.using)
                .select_for_update()
                .get(id=line_item_id)
            )
            if item.state != PayoutLineItemState.PENDING:
                return item
            old_state = item.state
            item.reject(reason)
            item.save()
            AuditTrail.record(
                scope,
                AuditAction.PAYOUT_ESCALATED,
                item,
                old_state=old_state,
                new_state=item.state,
                details={"reason": reason, "transfer_attempted": False},
            )

        cls.get_logger().warning(
            "Line item rejected, recipient not payable",
            extra={"line_item_id": str(line_item_id), "reason": reason},
        )
        return item

    @classmethod
    def _fail_attempt(
        cls,
        correlation_token: str,
        *,
        reason: str,
        result_code: str | None = None,
    ) -> None:
        with cls.atomic() as scope:
            transfer = transfer_index.lookup_by_token(scope, correlation_token)
            moved = transfer_index.mark_terminal(
                scope,
                correlation_token,
                [TransferOutcome.IN_FLIGHT],
                outcome=TransferOutcome.FAILED,
                result_code=result_code,
                failure_description=reason,
                completed_at=timezone.now(),
            )
            if not moved:
                # The result callback got there first
                return
            cls._fail_and_reschedule(scope, transfer, reason)

    # =========================================================================
    # Retry / Escalation
    # =========================================================================

    @classmethod
    def _fail_and_reschedule(
        cls,
        scope: TransactionScope,
        transfer: OutboundTransfer,
        reason: str,
    ) -> CommissionPayoutLineItem:
        item = (
            CommissionPayoutLineItem.objects.using(scope.using)
            .select_for_update()
            .get(id=transfer.line_item_id)
        )

        if (
            item.state != PayoutLineItemState.PROCESSING
            or item.current_transfer_token != transfer.correlation_token
        ):
            AuditTrail.record(
                scope,
                AuditAction.LATE_TRANSFER_RESULT,
                item,
                old_state=item.state,
                new_state=item.state,
                details={
                    "transfer_id": transfer.id,
                    "correlation_token": transfer.correlation_token,
                    "reason": reason,
                },
            )
            return item

        old_state = item.state
        item.mark_failed(reason)
        item.save()
        AuditTrail.record(
            scope,
            AuditAction.PAYOUT_FAILED,
            item,
            old_state=old_state,
            new_state=item.state,
            details={
                "transfer_id": transfer.id,
                "attempt_number": transfer.attempt_number,
                "reason": reason,
            },
        )
        cls._retry_or_escalate(scope, item)
        return item

    @classmethod
    def _retry_or_escalate(
        cls,
        scope: TransactionScope,
        item: CommissionPayoutLineItem,
    ) -> None:
        max_attempts = settings.PAYOUT_MAX_ATTEMPTS

        if item.attempt_count < max_attempts:
            delay = backoff_delay(
                item.attempt_count,
                base=settings.PAYOUT_RETRY_BASE_SECONDS,
                max_delay=settings.PAYOUT_RETRY_MAX_SECONDS,
            )
            next_attempt_at = timezone.now() + timedelta(seconds=delay)
            item.requeue(next_attempt_at=next_attempt_at)
            item.save()
            AuditTrail.record(
                scope,
                AuditAction.PAYOUT_RETRY_SCHEDULED,
                item,
                old_state=PayoutLineItemState.FAILED,
                new_state=item.state,
                details={
                    "attempt_count": item.attempt_count,
                    "next_attempt_at": next_attempt_at,
                    "delay_seconds": round(delay, 1),
                },
            )
            cls.get_logger().info(
                "Payout retry scheduled",
                extra={
                    "line_item_id": str(item.id),
                    "attempt_count": item.attempt_count,
                    "delay_seconds": round(delay, 1),
                },
            )
            return

        item.escalate()
        item.save()
        AuditTrail.record(
            scope,
            AuditAction.PAYOUT_ESCALATED,
            item,
            old_state=PayoutLineItemState.FAILED,
            new_state=item.state,
            details={
                "attempt_count": item.attempt_count,
                "max_attempts": max_attempts,
                "reason": item.failure_reason,
            },
        )
        cls.get_logger().error(
            "Payout attempts exhausted, requires intervention",
            extra={
                "line_item_id": str(item.id),
                "attempt_count": item.attempt_count,
            },
        )

    # =========================================================================
    # Result Reconciliation
    # =========================================================================

    @staticmethod
    def _find_transfer(scope: TransactionScope, *tokens: str) -> OutboundTransfer | None:
        for token in tokens:
            transfer = transfer_index.lookup_by_token(scope, token)
            if transfer is not None:
                return transfer
        return None

    @classmethod
    def reconcile_transfer_result(
        cls,
        result: TransferResult,
    ) -> ServiceResult[TransferReconciliationOutcome]:
        """
        Apply a B2C result callback to its transfer and line item.

        Returns:
            ServiceResult containing TransferReconciliationOutcome, or
            failure TRANSFER_NOT_FOUND.
        """
        with cls.atomic() as scope:
            transfer = cls._find_transfer(
                scope, result.conversation_id, result.originator_conversation_id
            )
            if transfer is None:
                cls.get_logger().warning(
                    "B2C result for unknown transfer",
                    extra={
                        "conversation_id": result.conversation_id,
                        "originator_conversation_id": result.originator_conversation_id,
                    },
                )
                return ServiceResult.failure(
                    "No transfer for this B2C result",
                    error_code="TRANSFER_NOT_FOUND",
                )

            if transfer.is_terminal:
                item = cls._handle_terminal_transfer(scope, transfer, result)
                return ServiceResult.success(
                    TransferReconciliationOutcome(
                        transfer=transfer,
                        line_item=item,
                        duplicate=True,
                    )
                )

            now = timezone.now()
            changes = {
                "result_code": str(result.result_code),
                "raw_result": result.raw,
                "completed_at": now,
            }
            if transfer.conversation_id is None and result.conversation_id:
                changes["conversation_id"] = result.conversation_id

            if result.is_success:
                transfer_index.mark_terminal(
                    scope,
                    transfer.correlation_token,
                    [TransferOutcome.IN_FLIGHT],
                    outcome=TransferOutcome.SUCCEEDED,
                    transaction_id=result.transaction_id,
                    **changes,
                )
                item, late = cls._complete_line_item(scope, transfer, result)
            else:
                reason = result.result_description or get_error_message(result.result_code)
                transfer_index.mark_terminal(
                    scope,
                    transfer.correlation_token,
                    [TransferOutcome.IN_FLIGHT],
                    outcome=TransferOutcome.FAILED,
                    failure_description=reason,
                    **changes,
                )
                item = cls._fail_and_reschedule(scope, transfer, reason)
                late = item.current_transfer_token != transfer.correlation_token

            transfer = OutboundTransfer.objects.using(scope.using).get(id=transfer.id)

        cls.get_logger().info(
            "B2C result reconciled",
            extra={
                "line_item_id": str(item.id),
                "correlation_token": transfer.correlation_token,
                "outcome": transfer.outcome,
                "line_item_state": item.state,
                "result_code": result.result_code,
            },
        )
        return ServiceResult.success(
            TransferReconciliationOutcome(transfer=transfer, line_item=item, late=late)
        )

    @classmethod
    def _complete_line_item(
        cls,
        scope: TransactionScope,
        transfer: OutboundTransfer,
        result: TransferResult,
    ) -> tuple[CommissionPayoutLineItem, bool]:
        item = (
            CommissionPayoutLineItem.objects.using(scope.using)
            .select_for_update()
            .get(id=transfer.line_item_id)
        )
        if (
            item.state == PayoutLineItemState.PROCESSING
            and item.current_transfer_token == transfer.correlation_token
        ):
            old_state = item.state
            item.mark_paid(result.transaction_id)
            item.save()
            AuditTrail.record(
                scope,
                AuditAction.PAYOUT_COMPLETED,
                item,
                old_state=old_state,
                new_state=item.state,
                details={
                    "transfer_id": transfer.id,
                    "transaction_id": result.transaction_id,
                    "amount": result.amount,
                    "receiver": result.receiver_name,
                },
            )
            return item, False

        cls._record_late_success(scope, item, transfer, result)
        return item, True

    @classmethod
    def _handle_terminal_transfer(
        cls,
        scope: TransactionScope,
        transfer: OutboundTransfer,
        result: TransferResult | TransferTimeout,
    ) -> CommissionPayoutLineItem:
        item = (
            CommissionPayoutLineItem.objects.using(scope.using)
            .select_for_update()
            .get(id=transfer.line_item_id)
        )

        succeeded_late = (
            getattr(result, "is_success", False)
            and transfer.outcome != TransferOutcome.SUCCEEDED
        )
        if succeeded_late:
            # Money moved on an attempt we had already written off
            cls._record_late_success(scope, item, transfer, result)
            return item

        AuditTrail.record(
            scope,
            AuditAction.DUPLICATE_NOTIFICATION,
            transfer,
            old_state=transfer.outcome,
            new_state=transfer.outcome,
            details={
                "kind": result.kind,
                "correlation_token": transfer.correlation_token,
                "line_item_id": item.id,
            },
        )
        cls.get_logger().info(
            "Duplicate B2C notification ignored",
            extra={
                "correlation_token": transfer.correlation_token,
                "outcome": transfer.outcome,
            },
        )
        return item

    @classmethod
    def _record_late_success(
        cls,
        scope: TransactionScope,
        item: CommissionPayoutLineItem,
        transfer: OutboundTransfer,
        result: TransferResult,
    ) -> None:
        """
        A transfer succeeded that is not the item's live attempt.

        A PENDING item is pulled from the queue so it is not paid again.
        Any other item, PAID included, keeps its state and is flagged for an
        operator: the recipient has been paid more than once, or money has
        moved on an item we still consider unpaid.
        """
        reason = (
            f"Transfer attempt {transfer.attempt_number} succeeded "
            f"(TransactionID {result.transaction_id}) after being written off"
        )
        old_state = item.state
        if item.state == PayoutLineItemState.PENDING:
            item.reject(reason)
        else:
            item.escalate(reason)
        item.save()

        AuditTrail.record(
            scope,
            AuditAction.LATE_TRANSFER_RESULT,
            item,
            old_state=old_state,
            new_state=item.state,
            details={
                "transfer_id": transfer.id,
                "transfer_outcome": transfer.outcome,
                "transaction_id": result.transaction_id,
                "result_code": result.result_code,
            },
        )
        cls.get_logger().error(
            "Late B2C success for a superseded attempt",
            extra={
                "line_item_id": str(item.id),
                "correlation_token": transfer.correlation_token,
                "transaction_id": result.transaction_id,
                "line_item_state": item.state,
            },
        )

    @classmethod
    def handle_transfer_timeout(
        cls,
        timeout: TransferTimeout,
    ) -> ServiceResult[TransferReconciliationOutcome]:
        """
        Apply a B2C queue timeout: the request expired before processing.

        The transfer is TIMED_OUT and the item goes through retry-or-escalate.
        """
        with cls.atomic() as scope:
            transfer = cls._find_transfer(
                scope, timeout.conversation_id, timeout.originator_conversation_id
            )
            if transfer is None:
                cls.get_logger().warning(
                    "B2C timeout for unknown transfer",
                    extra={
                        "conversation_id": timeout.conversation_id,
                        "originator_conversation_id": timeout.originator_conversation_id,
                    },
                )
                return ServiceResult.failure(
                    "No transfer for this B2C timeout",
                    error_code="TRANSFER_NOT_FOUND",
                )

            if transfer.is_terminal:
                item = cls._handle_terminal_transfer(scope, transfer, timeout)
                return ServiceResult.success(
                    TransferReconciliationOutcome(
                        transfer=transfer,
                        line_item=item,
                        duplicate=True,
                    )
                )

            reason = timeout.result_description
            transfer_index.mark_terminal(
                scope,
                transfer.correlation_token,
                [TransferOutcome.IN_FLIGHT],
                outcome=TransferOutcome.TIMED_OUT,
                failure_description=reason,
                raw_result=timeout.raw,
                completed_at=timezone.now(),
            )
            item = cls._fail_and_reschedule(scope, transfer, reason)
            transfer = OutboundTransfer.objects.using(scope.using).get(id=transfer.id)

        cls.get_logger().warning(
            "B2C request timed out in gateway queue",
            extra={
                "line_item_id": str(item.id),
                "correlation_token": transfer.correlation_token,
                "line_item_state": item.state,
            },
        )
        return ServiceResult.success(
            TransferReconciliationOutcome(
                transfer=transfer,
                line_item=item,
                late=item.current_transfer_token != transfer.correlation_token,
            )
        )

    # =========================================================================
    # Stale Transfer Sweep
    # =========================================================================

    @classmethod
    def sweep_stale_transfers(cls) -> ServiceResult[SweepResult]:
        """
        Write off IN_FLIGHT transfers with no result after the stale window.

        Each is marked TIMED_OUT and its item escalated; the item is never
        requeued automatically because the money may have moved.
        """
        minutes = settings.PAYOUT_STALE_TRANSFER_MINUTES
        cutoff = timezone.now() - timedelta(minutes=minutes)
        tokens = list(
            OutboundTransfer.objects.filter(
                outcome=TransferOutcome.IN_FLIGHT,
                created_at__lt=cutoff,
            ).values_list("correlation_token", flat=True)
        )

        result = SweepResult()
        reason = f"No B2C result within {minutes} minutes; outcome unknown"

        for token in tokens:
            with cls.atomic() as scope:
                transfer = transfer_index.lookup_by_token(scope, token)
                moved = transfer_index.mark_terminal(
                    scope,
                    token,
                    [TransferOutcome.IN_FLIGHT],
                    outcome=TransferOutcome.TIMED_OUT,
                    failure_description=reason,
                    completed_at=timezone.now(),
                )
                if not moved:
                    continue

                item = (
                    CommissionPayoutLineItem.objects.using(scope.using)
                    .select_for_update()
                    .get(id=transfer.line_item_id)
                )
                old_state = item.state
                if (
                    item.state == PayoutLineItemState.PROCESSING
                    and item.current_transfer_token == token
                ):
                    item.mark_failed(reason)
                if item.state != PayoutLineItemState.PAID:
                    item.escalate(reason)
                    item.save()
                AuditTrail.record(
                    scope,
                    AuditAction.PAYOUT_ESCALATED,
                    item,
                    old_state=old_state,
                    new_state=item.state,
                    details={
                        "transfer_id": transfer.id,
                        "correlation_token": token,
                        "reason": reason,
                    },
                )

            result.swept += 1
            result.correlation_tokens.append(token)
            cls.get_logger().error(
                "Stale transfer written off, line item escalated",
                extra={
                    "line_item_id": str(transfer.line_item_id),
                    "correlation_token": token,
                },
            )

        return ServiceResult.success(result)

    # =========================================================================
    # Operator Actions & Queries
    # =========================================================================

    @classmethod
    def manual_retry(
        cls,
        line_item_id: uuid.UUID,
        expected_version: int,
        actor: str = "operator",
    ) -> ServiceResult[CommissionPayoutLineItem]:
        """
        Put a FAILED line item back in the queue, granting one more attempt.

        Failure codes: STALE_RECORD, LINE_ITEM_NOT_FOUND,
        INVALID_STATE_TRANSITION.
        """
        try:
            with cls.atomic() as scope:
                item = check_version(scope, CommissionPayoutLineItem, line_item_id, expected_version)
                if not item.can_retry:
                    return ServiceResult.failure(
                        f"Cannot retry a line item in state {item.state}",
                        error_code="INVALID_STATE_TRANSITION",
                    )

                old_state = item.state
                item.requeue(next_attempt_at=None)
                item.save()
                AuditTrail.record(
                    scope,
                    AuditAction.PAYOUT_MANUAL_RETRY,
                    item,
                    old_state=old_state,
                    new_state=item.state,
                    actor=actor,
                    details={
                        "attempt_count": item.attempt_count,
                        "previous_failure": item.failure_reason,
                    },
                )
        except NotFoundError as e:
            return ServiceResult.failure(e.message, error_code="LINE_ITEM_NOT_FOUND")
        except StaleRecordError as e:
            return ServiceResult.from_exception(e)

        cls.get_logger().info(
            "Line item manually requeued",
            extra={"line_item_id": str(line_item_id), "actor": actor},
        )
        return ServiceResult.success(item)

    @staticmethod
    def get_due_line_items(limit: int = 100) -> list[CommissionPayoutLineItem]:
        """PENDING items whose backoff (if any) has elapsed, oldest first."""
        now = timezone.now()
        return list(
            CommissionPayoutLineItem.objects.filter(state=PayoutLineItemState.PENDING)
            .filter(Q(next_attempt_at__isnull=True) | Q(next_attempt_at__lte=now))
            .order_by("created_at")[:limit]
        )
