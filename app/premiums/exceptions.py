"""
Exceptions for premium collection, commission, settlement and payout.

Exception Hierarchy:
    PaymentError (base for the engine)
    ├── PaymentNotFoundError - Payment/line item/transfer lookup failures
    ├── PaymentValidationError - Amount, phone or ownership validation failures
    ├── PaymentProcessingError - Gateway processing failures
    │   └── MpesaError - Base for all M-Pesa errors
    │       ├── MpesaAuthenticationError - OAuth token could not be obtained
    │       ├── MpesaGatewayUnreachableError - Request never reached the gateway
    │       ├── MpesaTimeoutError - No response within the bound (outcome unknown)
    │       ├── MpesaRequestRejectedError - Gateway answered with an error
    │       └── MpesaSecurityCredentialError - Initiator credential cannot be built
    ├── CommissionComputationError - Split cannot be computed
    │   ├── RateStructureMissingError - Scheme has no usable rates
    │   └── NegativeResidualError - Scaled commissions exceed the amount
    ├── SettlementError - Settlement generation failures
    │   └── SettlementPeriodOpenError - Period has not ended yet
    └── MalformedCallbackError - Inbound notification failed validation

    StaleRecordError - Optimistic locking conflict (inherits ConflictError)
    LockAcquisitionError - Distributed lock timeout (inherits ConflictError)
    InvalidStateTransitionError - FSM transition not allowed (inherits ConflictError)

Usage:
    from premiums.exceptions import MpesaError, StaleRecordError

    try:
        MpesaAdapter.stk_push(params)
    except MpesaError as e:
        if e.is_retryable:
            ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError, ConflictError

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Engine Domain Exceptions
# =============================================================================


class PaymentError(BaseApplicationError):
    """
    Base exception for all engine operations.

    Example:
        try:
            CollectionService.initiate_collection(params)
        except PaymentError as e:
            return Response(e.to_dict(), status=400)
    """

    default_error_code: str = "PAYMENT_ERROR"


class PaymentNotFoundError(PaymentError):
    """
    Raised when a payment entity cannot be found.

    Use for:
    - Payment lookup fails
    - Payout line item lookup fails
    - Settlement batch lookup fails
    """

    default_error_code: str = "PAYMENT_NOT_FOUND"


class PaymentValidationError(PaymentError):
    """
    Raised when payment validation fails.

    Use for:
    - Amount not a whole number of shillings
    - Amount outside gateway minimum/maximum
    - Phone number that cannot be normalised to 2547XXXXXXXX
    """

    default_error_code: str = "VALIDATION_ERROR"


class PaymentProcessingError(PaymentError):
    """Raised when payment processing fails at the gateway."""

    default_error_code: str = "PAYMENT_PROCESSING_ERROR"


# =============================================================================
# M-Pesa Exceptions
# =============================================================================


class MpesaError(PaymentProcessingError):
    """
    Base exception for all M-Pesa (Daraja) errors.

    Attributes:
        result_code: Gateway error/response code (e.g. "500.001.1001")
        is_retryable: Whether the operation is safe to repeat

    Note:
        is_retryable describes the gateway error only. Collection
        initiation never retries regardless, because a repeated STK push
        prompts the payer twice.
    """

    default_error_code: str = "MPESA_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        result_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if result_code:
            details["result_code"] = result_code
        super().__init__(message, error_code=error_code, details=details)
        self.result_code = result_code


class MpesaAuthenticationError(MpesaError):
    """
    OAuth access token could not be obtained.

    Usually wrong consumer key/secret, so the request was never accepted.
    """

    default_error_code: str = "MPESA_AUTH_FAILED"
    is_retryable: bool = False


class MpesaGatewayUnreachableError(MpesaError):
    """
    The request never reached the gateway.

    Covers connection refused, DNS failure, TLS errors and 5xx responses
    from the gateway's edge. No money can have moved.
    """

    default_error_code: str = "MPESA_UNREACHABLE"
    is_retryable: bool = True


class MpesaTimeoutError(MpesaError):
    """
    The gateway did not answer within MPESA_API_TIMEOUT_SECONDS.

    The request may or may not have been accepted. Callers must not
    assume either outcome for money-moving calls.
    """

    default_error_code: str = "MPESA_TIMEOUT"
    is_retryable: bool = False


class MpesaRequestRejectedError(MpesaError):
    """
    The gateway answered but rejected the request.

    Raised for an errorCode body or a non-"0" ResponseCode. The message
    is the human text from MPESA_ERROR_MESSAGES where the code is known.
    """

    default_error_code: str = "MPESA_REJECTED"
    is_retryable: bool = False


class MpesaSecurityCredentialError(MpesaError):
    """The B2C security credential could not be generated."""

    default_error_code: str = "MPESA_SECURITY_CREDENTIAL"
    is_retryable: bool = False


# =============================================================================
# Commission / Settlement Exceptions
# =============================================================================


class CommissionComputationError(PaymentError):
    """
    Raised when a payment's split cannot be computed.

    The reconciler catches this and parks the payment in
    CONFIRMED_UNSPLIT instead of confirming it with a default split.
    """

    default_error_code: str = "COMMISSION_COMPUTATION_ERROR"


class RateStructureMissingError(CommissionComputationError):
    default_error_code: str = "RATE_STRUCTURE_MISSING"


class NegativeResidualError(CommissionComputationError):
    default_error_code: str = "NEGATIVE_RESIDUAL"


class SettlementError(PaymentError):
    default_error_code: str = "SETTLEMENT_ERROR"


class SettlementPeriodOpenError(SettlementError):
    """Raised when settling a period that has not ended yet."""

    default_error_code: str = "SETTLEMENT_PERIOD_OPEN"


class MalformedCallbackError(PaymentError):
    """
    Raised when an inbound gateway notification fails validation.

    details carries the serializer errors.
    """

    default_error_code: str = "MALFORMED_CALLBACK"


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class StaleRecordError(ConflictError):
    """
    Raised when optimistic locking detects a concurrent modification.

    Operator actions carry the version they were shown; if the row has
    moved on since, the action is refused rather than applied to state
    the operator never saw.

    Example:
        raise StaleRecordError(
            f"CommissionPayoutLineItem {pk} was modified by another process",
            details={"pk": str(pk), "expected_version": 3, "current_version": 5},
        )
    """

    default_error_code: str = "STALE_RECORD"


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired.

    Another process holds the lock and did not release it within the
    wait timeout.

    Attributes:
        details: Contains key and timeout information
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


class InvalidStateTransitionError(ConflictError):
    """
    Raised when a state transition is not allowed.

    Example:
        raise InvalidStateTransitionError(
            "Cannot retry a paid line item",
            details={"current_state": "paid", "attempted_transition": "requeue"},
        )
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"
