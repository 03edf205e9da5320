"""
Collection service for initiating M-Pesa STK-push premium payments.

Initiation follows a two-phase pattern:
1. Phase 1: Validate, create the Payment in INITIATED, commit
2. Phase 2: Call the gateway exactly once (outside any transaction)
3. Phase 3: Store the CheckoutRequestID the callback will be matched on

The Payment row exists before the payer's phone ever rings, so a callback
can always be reconciled against it. Initiation is never retried here: a
repeated STK push would prompt the payer a second time.

Usage:
    from premiums.services import CollectionService, InitiateCollectionParams

    result = CollectionService.initiate_collection(
        InitiateCollectionParams(
            payer_id=member.id,
            subscription_id=subscription.id,
            amount=50,
        )
    )

    if result.success:
        token = result.data.correlation_token
    elif result.error_code == "GATEWAY_UNREACHABLE":
        # Safe to ask the payer to try again
        ...
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any

from django.conf import settings
from django.db.models import QuerySet

from core.services import BaseService, ServiceResult
from membership.models import Member, MemberSubscription, SubscriptionStatus
from premiums.adapters import (
    MpesaAdapter,
    StkPushParams,
    build_account_reference,
    build_callback_url,
    format_phone_number,
    get_error_message,
)
from premiums.exceptions import (
    MpesaAuthenticationError,
    MpesaError,
    MpesaGatewayUnreachableError,
    MpesaTimeoutError,
    PaymentValidationError,
)
from premiums.locks import conditional_transition
from premiums.models import Payment
from premiums.services.audit_trail import AuditTrail
from premiums.services.commission_calculator import parse_whole_amount
from premiums.state_machines import AuditAction, PaymentFailureCategory, PaymentState

logger = logging.getLogger(__name__)

STK_CALLBACK_ROUTE = "premiums:mpesa-stk-callback"

DEFAULT_DESCRIPTION = "Premium payment"

STATUS_MESSAGES = {
    "pending": "Waiting for M-Pesa confirmation. Check your phone to complete the payment.",
    "success": "Payment received. Thank you.",
}


# =============================================================================
# Parameter & Result Types
# =============================================================================


@dataclass
class InitiateCollectionParams:
    """
    Input for a premium collection.

    Attributes:
        payer_id: Member being debited
        subscription_id: Subscription the premium is for (must be the payer's)
        amount: Whole shillings; int, integral float or integral Decimal
        phone_number: Optional override of the payer's registered phone
        description: TransactionDesc shown in the payer's statement
    """

    payer_id: uuid.UUID
    subscription_id: uuid.UUID
    amount: Any
    phone_number: str | None = None
    description: str = DEFAULT_DESCRIPTION


@dataclass
class CollectionInitiationResult:
    payment: Payment
    correlation_token: str
    checkout_request_id: str
    customer_message: str


@dataclass
class PaymentStatus:
    """Payer-visible status of a collection."""

    correlation_token: str
    status: str
    message: str
    payment: Payment


# =============================================================================
# Collection Service
# =============================================================================


class CollectionService(BaseService):
    """
    Initiates STK-push collections and reports their payer-visible status.

    Failure Mapping:
        MpesaGatewayUnreachableError  -> FAILED (gateway_unreachable), GATEWAY_UNREACHABLE
        MpesaTimeoutError             -> FAILED (gateway_unreachable), GATEWAY_UNREACHABLE
        MpesaAuthenticationError      -> FAILED (gateway_unreachable), GATEWAY_UNREACHABLE
        MpesaRequestRejectedError     -> FAILED (gateway_rejected),    GATEWAY_REJECTED
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

    @classmethod
    def initiate_collection(
        cls,
        params: InitiateCollectionParams,
    ) -> ServiceResult[CollectionInitiationResult]:
        """
        Create a Payment and send the STK push for it.

        Returns:
            ServiceResult containing CollectionInitiationResult on success.
            Failure codes: VALIDATION_ERROR, GATEWAY_UNREACHABLE,
            GATEWAY_REJECTED.
        """
        validation = cls.validate_required(
            payer_id=params.payer_id,
            subscription_id=params.subscription_id,
            amount=params.amount,
        )
        if validation:
            return validation

        # Step 1: Validate input
        try:
            amount = parse_whole_amount(params.amount)
        except PaymentValidationError as e:
            return ServiceResult.failure(e.message, error_code="VALIDATION_ERROR")

        min_amount = settings.MPESA_MIN_AMOUNT
        max_amount = settings.MPESA_MAX_AMOUNT
        if amount < min_amount or amount > max_amount:
            return ServiceResult.failure(
                f"Amount must be between KES {min_amount} and KES {max_amount}",
                error_code="VALIDATION_ERROR",
            )

        payer = Member.objects.filter(id=params.payer_id).first()
        if payer is None or not payer.is_active:
            return ServiceResult.failure(
                "Payer not found or inactive",
                error_code="VALIDATION_ERROR",
            )

        subscription = (
            MemberSubscription.objects.filter(
                id=params.subscription_id,
                member_id=payer.id,
            )
            .select_related("scheme")
            .first()
        )
        if subscription is None:
            return ServiceResult.failure(
                "Subscription does not belong to this payer",
                error_code="VALIDATION_ERROR",
            )
        if subscription.status != SubscriptionStatus.ACTIVE:
            return ServiceResult.failure(
                f"Subscription is {subscription.status}",
                error_code="VALIDATION_ERROR",
            )

        try:
            phone_number = format_phone_number(params.phone_number or payer.phone_number)
        except PaymentValidationError as e:
            return ServiceResult.failure(e.message, error_code="VALIDATION_ERROR")

        correlation_token = uuid.uuid4().hex
        description = (params.description or DEFAULT_DESCRIPTION)[:100]
        stk_params = StkPushParams(
            phone_number=phone_number,
            amount=amount,
            account_reference=build_account_reference(
                payer.id, subscription.id, correlation_token
            ),
            description=description,
            callback_url=build_callback_url(STK_CALLBACK_ROUTE),
        )

        # Step 2: Phase 1 - persist before touching the gateway
        with cls.atomic() as scope:
            payment = Payment.objects.using(scope.using).create(
                payer=payer,
                subscription=subscription,
                phone_number=phone_number,
                requested_amount=amount,
                description=description,
                account_reference=stk_params.account_reference,
                correlation_token=correlation_token,
            )
            AuditTrail.record(
                scope,
                AuditAction.PAYMENT_INITIATED,
                payment,
                new_state=payment.state,
                details={
                    "requested_amount": amount,
                    "subscription_id": subscription.id,
                    "scheme_code": subscription.scheme.code,
                },
            )

        cls.get_logger().info(
            "Collection initiated, sending STK push",
            extra={
                "payment_id": str(payment.id),
                "correlation_token": correlation_token,
                "amount": amount,
            },
        )

        # Step 3: Phase 2 - exactly one gateway call, outside the transaction
        start = time.monotonic()
        try:
            push = cls.get_mpesa_adapter().stk_push(stk_params)
        except (
            MpesaGatewayUnreachableError,
            MpesaTimeoutError,
            MpesaAuthenticationError,
        ) as e:
            if isinstance(e, MpesaTimeoutError):
                reason = "No confirmed response from the gateway within the timeout"
            else:
                reason = f"Request never reached the gateway: {e.message}"
            cls._fail_payment(
                payment.id,
                category=PaymentFailureCategory.GATEWAY_UNREACHABLE,
                reason=reason,
                result_code=e.result_code,
            )
            return ServiceResult.failure(
                "Could not reach M-Pesa. Please try again.",
                error_code="GATEWAY_UNREACHABLE",
            )
        except MpesaError as e:
            # MpesaRequestRejectedError and anything else the gateway refused
            cls._fail_payment(
                payment.id,
                category=PaymentFailureCategory.GATEWAY_REJECTED,
                reason=e.message,
                result_code=e.result_code,
            )
            return ServiceResult.failure(e.message, error_code="GATEWAY_REJECTED")

        # Step 4: Phase 3 - store the correlation id for the callback
        with cls.atomic() as scope:
            stored = conditional_transition(
                scope,
                Payment,
                payment.id,
                from_states=[PaymentState.INITIATED],
                to_state=PaymentState.INITIATED,
                gateway_request_id=push.checkout_request_id,
                merchant_request_id=push.merchant_request_id or None,
            )

        if not stored:
            cls.get_logger().warning(
                "Payment left INITIATED before its CheckoutRequestID was stored",
                extra={
                    "payment_id": str(payment.id),
                    "checkout_request_id": push.checkout_request_id,
                },
            )

        payment = Payment.objects.get(id=payment.id)

        cls.get_logger().info(
            "STK push accepted",
            extra={
                "payment_id": str(payment.id),
                "correlation_token": correlation_token,
                "checkout_request_id": push.checkout_request_id,
                "duration_ms": round((time.monotonic() - start) * 1000),
            },
        )

        return ServiceResult.success(
            CollectionInitiationResult(
                payment=payment,
                correlation_token=correlation_token,
                checkout_request_id=push.checkout_request_id,
                customer_message=push.customer_message,
            )
        )

    @classmethod
    def _fail_payment(
        cls,
        payment_id: uuid.UUID,
        *,
        category: str,
        reason: str,
        result_code: str | None = None,
    ) -> Payment:
        with cls.atomic() as scope:
            payment = Payment.objects.using(scope.using).select_for_update().get(id=payment_id)
            if payment.state != PaymentState.INITIATED:
                cls.get_logger().info(
                    "Payment already resolved, not failing it",
                    extra={"payment_id": str(payment_id), "current_state": payment.state},
                )
                return payment

            old_state = payment.state
            payment.fail(category=category, reason=reason, result_code=result_code)
            payment.save()
            AuditTrail.record(
                scope,
                AuditAction.PAYMENT_FAILED,
                payment,
                old_state=old_state,
                new_state=payment.state,
                details={
                    "failure_category": category,
                    "reason": reason,
                    "result_code": result_code,
                },
            )

        cls.get_logger().warning(
            "Collection failed at initiation",
            extra={
                "payment_id": str(payment_id),
                "failure_category": category,
                "result_code": result_code,
            },
        )
        return payment

    @classmethod
    def get_payment_status(cls, correlation_token: str) -> ServiceResult[PaymentStatus]:
        """Payer-visible status: pending, success or failed, with a message."""
        payment = Payment.objects.filter(correlation_token=correlation_token).first()
        if payment is None:
            return ServiceResult.failure(
                "Payment not found",
                error_code="PAYMENT_NOT_FOUND",
            )

        status = payment.payer_status
        if status == "failed":
            message = payment.failure_reason or get_error_message(payment.result_code)
        else:
            message = STATUS_MESSAGES[status]

        return ServiceResult.success(
            PaymentStatus(
                correlation_token=correlation_token,
                status=status,
                message=message,
                payment=payment,
            )
        )

    @classmethod
    def payment_history(cls, payer_id: uuid.UUID) -> QuerySet[Payment]:
        """A payer's payments, newest first, with subscription and scheme loaded."""
        return (
            Payment.objects.filter(payer_id=payer_id)
            .select_related("subscription__scheme")
            .order_by("-created_at")
        )
