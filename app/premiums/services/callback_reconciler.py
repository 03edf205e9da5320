"""
Callback reconciler: applies STK-push outcomes to payments.

The gateway reports the result of an STK push asynchronously. The
reconciler matches the notification to its Payment by CheckoutRequestID
and moves the payment to a terminal state exactly once:

    ResultCode 0, split computable   -> CONFIRMED (split frozen in the same save)
    ResultCode 0, split blocked      -> CONFIRMED_UNSPLIT
    ResultCode != 0                  -> FAILED (explicit_decline)
    ResultCode 0, payment FAILED     -> stays FAILED, audited as a late success
    payment already terminal         -> no-op, audited as a duplicate

All of it happens under a row lock inside one transaction, so concurrent
deliveries of the same notification are serialised and the second one
sees a terminal payment.

Usage:
    from premiums.services import CallbackReconciler
    from premiums.webhooks.payloads import parse_stk_callback

    result = CallbackReconciler.reconcile_collection(parse_stk_callback(body))
    if result.success and result.data.duplicate:
        ...
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from django.utils import timezone

from core.exceptions import NotFoundError
from core.services import BaseService, ServiceResult
from premiums.adapters import MpesaAdapter, get_error_message
from premiums.correlation import payment_index
from premiums.exceptions import (
    CommissionComputationError,
    MpesaError,
    StaleRecordError,
)
from premiums.locks import check_version
from premiums.models import Payment
from premiums.services.audit_trail import AuditTrail
from premiums.services.commission_calculator import CommissionCalculator
from premiums.state_machines import AuditAction, PaymentFailureCategory, PaymentState
from premiums.webhooks.payloads import StkCallback

logger = logging.getLogger(__name__)


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class ReconciliationOutcome:
    """
    Attributes:
        payment: The payment after reconciliation
        duplicate: True when the payment was already terminal
        previous_state: State before this notification was applied
    """

    payment: Payment
    duplicate: bool = False
    previous_state: str | None = None


@dataclass
class StatusQueryOutcome:
    payment: Payment
    queried: bool
    final: bool = False
    result_code: str | None = None
    reconciliation: ReconciliationOutcome | None = None


# =============================================================================
# Callback Reconciler
# =============================================================================


class CallbackReconciler(BaseService):
    """Moves payments to their terminal state from gateway notifications."""

    # M-Pesa adapter - can be injected for testing
    _mpesa_adapter: type | None = None

    @classmethod
    def get_mpesa_adapter(cls) -> type:
        return cls._mpesa_adapter or MpesaAdapter

    @classmethod
    def set_mpesa_adapter(cls, adapter: type | None) -> None:
        cls._mpesa_adapter = adapter

    @classmethod
    def reconcile_collection(
        cls,
        callback: StkCallback,
    ) -> ServiceResult[ReconciliationOutcome]:
        """
        Apply an STK callback (real or synthesised) to its payment.

        Returns:
            ServiceResult containing ReconciliationOutcome, or failure
            PAYMENT_NOT_FOUND when no payment carries the CheckoutRequestID.
        """
        with cls.atomic() as scope:
            payment = payment_index.lookup_by_token(scope, callback.checkout_request_id)
            if payment is None:
                if callback.is_success:
                    # Money moved but nothing here knows about it, e.g. the
                    # push timed out before the CheckoutRequestID was stored.
                    cls.get_logger().error(
                        "Successful STK callback for unknown CheckoutRequestID",
                        extra={
                            "checkout_request_id": callback.checkout_request_id,
                            "receipt_number": callback.receipt_number,
                            "amount": callback.amount,
                            "phone_number": callback.phone_number,
                        },
                    )
                else:
                    cls.get_logger().warning(
                        "STK callback for unknown CheckoutRequestID",
                        extra={
                            "checkout_request_id": callback.checkout_request_id,
                            "result_code": callback.result_code,
                        },
                    )
                return ServiceResult.failure(
                    f"No payment for CheckoutRequestID {callback.checkout_request_id}",
                    error_code="PAYMENT_NOT_FOUND",
                )

            late_success = callback.is_success and payment.state == PaymentState.FAILED
            if late_success:
                cls._record_late_success(scope, payment, callback)
                return ServiceResult.success(
                    ReconciliationOutcome(
                        payment=payment,
                        duplicate=True,
                        previous_state=payment.state,
                    )
                )

            if payment.is_terminal:
                AuditTrail.record(
                    scope,
                    AuditAction.DUPLICATE_NOTIFICATION,
                    payment,
                    old_state=payment.state,
                    new_state=payment.state,
                    details={
                        "kind": callback.kind,
                        "checkout_request_id": callback.checkout_request_id,
                        "result_code": callback.result_code,
                        "synthetic": callback.synthetic,
                    },
                )
                cls.get_logger().info(
                    "Duplicate STK notification ignored",
                    extra={
                        "payment_id": str(payment.id),
                        "current_state": payment.state,
                        "result_code": callback.result_code,
                    },
                )
                return ServiceResult.success(
                    ReconciliationOutcome(
                        payment=payment,
                        duplicate=True,
                        previous_state=payment.state,
                    )
                )

            previous_state = payment.state
            if callback.is_success:
                cls._confirm(scope, payment, callback)
            else:
                cls._decline(scope, payment, callback)

        cls.get_logger().info(
            "Collection reconciled",
            extra={
                "payment_id": str(payment.id),
                "correlation_token": payment.correlation_token,
                "previous_state": previous_state,
                "new_state": payment.state,
                "result_code": callback.result_code,
                "synthetic": callback.synthetic,
            },
        )

        return ServiceResult.success(
            ReconciliationOutcome(payment=payment, previous_state=previous_state)
        )

    @classmethod
    def _confirm(cls, scope, payment: Payment, callback: StkCallback) -> None:
        confirmed_amount = (
            callback.amount if callback.amount is not None else payment.requested_amount
        )
        outcome = {
            "confirmed_amount": confirmed_amount,
            "receipt_number": callback.receipt_number,
            "result_code": str(callback.result_code),
            "result_description": callback.result_description or None,
            "gateway_transaction_at": callback.transaction_date,
        }
        old_state = payment.state

        try:
            allocation = CommissionCalculator.apply(scope, payment, confirmed_amount)
        except CommissionComputationError as e:
            cls.get_logger().warning(
                "Split blocked, confirming unsplit",
                extra={
                    "payment_id": str(payment.id),
                    "error_code": e.error_code,
                    "reason": e.message,
                },
            )
            payment.confirm_unsplit(reason=e.message, **outcome)
            payment.save()
            action = AuditAction.PAYMENT_CONFIRMED_UNSPLIT
            details = {"reason": e.message, "error_code": e.error_code}
        else:
            payment.confirm(allocation=allocation, **outcome)
            payment.save()
            action = AuditAction.PAYMENT_CONFIRMED
            details = {
                "insurer_portion": payment.insurer_portion,
                "tier1_commission": payment.tier1_commission,
                "tier2_commission": payment.tier2_commission,
                "platform_residual": payment.platform_residual,
                "scheme_code": payment.scheme_code,
            }

        details.update(
            confirmed_amount=confirmed_amount,
            receipt_number=callback.receipt_number,
            synthetic=callback.synthetic,
        )

        if payment.amount_discrepancy:
            AuditTrail.record(
                scope,
                AuditAction.AMOUNT_DISCREPANCY,
                payment,
                old_state=old_state,
                new_state=payment.state,
                details={
                    "requested_amount": payment.requested_amount,
                    "confirmed_amount": confirmed_amount,
                    "discrepancy": payment.amount_discrepancy,
                },
            )
            cls.get_logger().warning(
                "Confirmed amount differs from requested amount",
                extra={
                    "payment_id": str(payment.id),
                    "requested_amount": payment.requested_amount,
                    "confirmed_amount": confirmed_amount,
                },
            )

        AuditTrail.record(
            scope,
            action,
            payment,
            old_state=old_state,
            new_state=payment.state,
            details=details,
        )

    @classmethod
    def _decline(cls, scope, payment: Payment, callback: StkCallback) -> None:
        old_state = payment.state
        reason = callback.result_description or get_error_message(callback.result_code)
        payment.fail(
            category=PaymentFailureCategory.EXPLICIT_DECLINE,
            reason=reason,
            result_code=str(callback.result_code),
            result_description=callback.result_description or None,
        )
        payment.save()
        AuditTrail.record(
            scope,
            AuditAction.PAYMENT_FAILED,
            payment,
            old_state=old_state,
            new_state=payment.state,
            details={
                "failure_category": PaymentFailureCategory.EXPLICIT_DECLINE,
                "result_code": callback.result_code,
                "reason": reason,
                "synthetic": callback.synthetic,
            },
        )

    @classmethod
    def _record_late_success(cls, scope, payment: Payment, callback: StkCallback) -> None:
        """
        Record money received for a payment already marked FAILED.

        The payment stays FAILED and no commission is split; an operator
        has to refund the payer or reconcile the receipt by hand.
        """
        AuditTrail.record(
            scope,
            AuditAction.LATE_COLLECTION_SUCCESS,
            payment,
            old_state=payment.state,
            new_state=payment.state,
            details={
                "checkout_request_id": callback.checkout_request_id,
                "receipt_number": callback.receipt_number,
                "amount": callback.amount,
                "failure_category": payment.failure_category,
                "synthetic": callback.synthetic,
            },
        )
        cls.get_logger().error(
            "Successful STK callback for a failed payment",
            extra={
                "payment_id": str(payment.id),
                "failure_category": payment.failure_category,
                "receipt_number": callback.receipt_number,
                "amount": callback.amount,
            },
        )

    # =========================================================================
    # Status Query Fallback
    # =========================================================================

    @classmethod
    def apply_status_query(cls, payment_id: uuid.UUID) -> ServiceResult[StatusQueryOutcome]:
        """
        Ask the gateway for the outcome of an INITIATED payment.

        A final ResultCode is turned into a synthetic callback and
        reconciled. A request the gateway still reports as processing is
        left untouched; a payment is never failed just because time passed.
        """
        payment = Payment.objects.filter(id=payment_id).first()
        if payment is None:
            return ServiceResult.failure(
                f"Payment {payment_id} not found",
                error_code="PAYMENT_NOT_FOUND",
            )

        if payment.state != PaymentState.INITIATED or not payment.gateway_request_id:
            return ServiceResult.success(StatusQueryOutcome(payment=payment, queried=False))

        Payment.objects.filter(id=payment.id).update(
            last_status_query_at=timezone.now(),
            updated_at=timezone.now(),
        )

        try:
            query = cls.get_mpesa_adapter().stk_query(payment.gateway_request_id)
        except MpesaError as e:
            cls.get_logger().warning(
                "STK status query failed",
                extra={
                    "payment_id": str(payment.id),
                    "checkout_request_id": payment.gateway_request_id,
                    "error_code": e.error_code,
                },
            )
            return ServiceResult.from_exception(e)

        result_code = None
        if query.is_final:
            try:
                result_code = int(query.result_code)
            except (TypeError, ValueError):
                cls.get_logger().warning(
                    "Unparseable ResultCode from status query",
                    extra={
                        "payment_id": str(payment.id),
                        "result_code": query.result_code,
                    },
                )

        if result_code is None:
            cls.get_logger().info(
                "Collection still processing at gateway",
                extra={
                    "payment_id": str(payment.id),
                    "checkout_request_id": payment.gateway_request_id,
                    "error_code": query.error_code,
                },
            )
            return ServiceResult.success(
                StatusQueryOutcome(payment=payment, queried=True, final=False)
            )

        synthetic = StkCallback(
            checkout_request_id=payment.gateway_request_id,
            merchant_request_id=query.merchant_request_id or payment.merchant_request_id or "",
            result_code=result_code,
            result_description=query.result_description or "",
            synthetic=True,
            raw=query.raw_response,
        )
        reconciled = cls.reconcile_collection(synthetic)
        if not reconciled.success:
            return reconciled

        return ServiceResult.success(
            StatusQueryOutcome(
                payment=reconciled.data.payment,
                queried=True,
                final=True,
                result_code=str(result_code),
                reconciliation=reconciled.data,
            )
        )

    # =========================================================================
    # Operator Resolution
    # =========================================================================

    @classmethod
    def resolve_unsplit(
        cls,
        payment_id: uuid.UUID,
        expected_version: int,
        actor: str = "operator",
    ) -> ServiceResult[Payment]:
        """
        Compute the split for a CONFIRMED_UNSPLIT payment.

        Returns:
            ServiceResult containing the confirmed Payment. Failure codes:
            STALE_RECORD, PAYMENT_NOT_FOUND, INVALID_STATE_TRANSITION,
            RATE_STRUCTURE_MISSING, NEGATIVE_RESIDUAL.
        """
        try:
            with cls.atomic() as scope:
                payment = check_version(scope, Payment, payment_id, expected_version)
                if payment.state != PaymentState.CONFIRMED_UNSPLIT:
                    return ServiceResult.failure(
                        f"Cannot resolve split of a payment in state {payment.state}",
                        error_code="INVALID_STATE_TRANSITION",
                    )

                allocation = CommissionCalculator.apply(scope, payment, payment.confirmed_amount)
                old_state = payment.state
                payment.resolve_split(allocation=allocation)
                payment.save()
                AuditTrail.record(
                    scope,
                    AuditAction.PAYMENT_UNSPLIT_RESOLVED,
                    payment,
                    old_state=old_state,
                    new_state=payment.state,
                    actor=actor,
                    details={
                        "insurer_portion": payment.insurer_portion,
                        "tier1_commission": payment.tier1_commission,
                        "tier2_commission": payment.tier2_commission,
                        "platform_residual": payment.platform_residual,
                        "unsplit_reason": payment.unsplit_reason,
                    },
                )
        except CommissionComputationError as e:
            cls.get_logger().info(
                "Split still blocked",
                extra={"payment_id": str(payment_id), "error_code": e.error_code},
            )
            return ServiceResult.failure(e.message, error_code=e.error_code)
        except NotFoundError as e:
            return ServiceResult.failure(e.message, error_code="PAYMENT_NOT_FOUND")
        except StaleRecordError as e:
            return ServiceResult.from_exception(e)

        cls.get_logger().info(
            "Unsplit payment resolved",
            extra={"payment_id": str(payment_id), "actor": actor},
        )
        return ServiceResult.success(payment)
