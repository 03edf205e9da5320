"""
M-Pesa (Safaricom Daraja) API adapter.

This module provides the MpesaAdapter class which encapsulates all
Daraja API interactions. All gateway calls should go through this
adapter to ensure consistent error handling, timeouts, token caching
and observability.

Features:
- Configurable timeout on every request
- OAuth access token shared through the Django cache, refreshed by one
  process at a time behind a Redis lock
- Automatic error translation to domain exceptions
- Structured logging with timing metrics (no secrets)

Configuration (via settings):
- MPESA_ENVIRONMENT: "sandbox" or "production"
- MPESA_CONSUMER_KEY / MPESA_CONSUMER_SECRET: OAuth client credentials
- MPESA_SHORTCODE / MPESA_PASSKEY: STK push credentials
- MPESA_B2C_SHORTCODE / MPESA_INITIATOR_NAME: B2C initiator
- MPESA_B2C_COMMAND_ID: B2C command (default: BusinessPayment)
- MPESA_CALLBACK_BASE_URL / MPESA_CALLBACK_TOKEN: callback URLs
- MPESA_API_TIMEOUT_SECONDS: request timeout (default: 30)

Usage:
    from premiums.adapters import MpesaAdapter, StkPushParams

    result = MpesaAdapter.stk_push(
        StkPushParams(
            phone_number="254712345678",
            amount=50,
            account_reference="MWU1a2b3c4d5",
            description="Premium",
            callback_url=build_callback_url("premiums:mpesa-stk-callback"),
        )
    )
    checkout_request_id = result.checkout_request_id
"""

from __future__ import annotations

import base64
import logging
import random
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from zoneinfo import ZoneInfo

import requests
from django.conf import settings
from django.core.cache import cache
from django.urls import reverse
from django.utils import timezone
from redis.exceptions import RedisError

from premiums.exceptions import (
    LockAcquisitionError,
    MpesaAuthenticationError,
    MpesaError,
    MpesaGatewayUnreachableError,
    MpesaRequestRejectedError,
    MpesaTimeoutError,
    PaymentValidationError,
)
from premiums.locks import DistributedLock

logger = logging.getLogger(__name__)


BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"
B2C_PAYMENT_PATH = "/mpesa/b2c/v1/paymentrequest"

GATEWAY_TIME_ZONE = ZoneInfo("Africa/Nairobi")


# =============================================================================
# Error Code Table
# =============================================================================

MPESA_ERROR_MESSAGES: dict[str, str] = {
    # Phone number errors
    "404.001.03": "Invalid phone number. Please check and try again.",
    "400.008.03": "Invalid phone number format.",
    # Amount errors
    "400.002.02": "Invalid amount. Please enter a valid amount.",
    "400.002.03": "Amount too low. Please enter a higher amount.",
    "400.002.04": "Amount too high. Please enter a lower amount.",
    # Transaction errors
    "500.001.1001": "Unable to lock subscriber. Please try again later.",
    "500.001.1019": "Transaction failed. Insufficient funds in your M-Pesa account.",
    "500.001.1032": "Transaction cancelled by user.",
    "500.001.1037": "Transaction timeout. Please try again.",
    "500.001.1025": "Unable to process request. Please try again later.",
    # Business shortcode errors
    "400.001.01": "Invalid business shortcode. Please contact support.",
    "400.001.02": "Business shortcode not configured.",
    # Authentication errors
    "401.001.01": "Authentication failed. Please try again.",
    "401.001.02": "Invalid credentials.",
    # General errors
    "500.001.1000": "System error. Please try again later.",
    "500.001.1002": "Service temporarily unavailable.",
}

# ResultCode values carried by STK callbacks and status queries
STK_RESULT_MESSAGES: dict[str, str] = {
    "1": "Insufficient M-Pesa balance.",
    "1001": "Unable to lock subscriber. Another transaction is in progress.",
    "1019": "Transaction expired.",
    "1025": "Unable to send the payment prompt.",
    "1032": "Transaction cancelled by user.",
    "1037": "Payer could not be reached.",
    "2001": "Wrong M-Pesa PIN entered.",
}


def get_error_message(code: str | int | None) -> str:
    """Human-readable message for a gateway error or result code."""
    code = str(code) if code is not None else ""
    if code in MPESA_ERROR_MESSAGES:
        return MPESA_ERROR_MESSAGES[code]
    if code in STK_RESULT_MESSAGES:
        return STK_RESULT_MESSAGES[code]
    return f"Transaction failed with error code: {code}. Please try again."


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class StkPushParams:
    """
    Parameters for an STK push (Lipa na M-Pesa Online) request.

    Attributes:
        phone_number: Payer phone, already normalised to 2547XXXXXXXX
        amount: Whole shillings
        account_reference: Shown to the payer, at most 12 characters
        description: TransactionDesc, truncated to 13 characters
        callback_url: Where the gateway posts the result
    """

    phone_number: str
    amount: int
    account_reference: str
    description: str
    callback_url: str

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError("amount must be positive")
        if not re.fullmatch(r"254\d{9}", self.phone_number or ""):
            raise ValueError("phone_number must be in 2547XXXXXXXX format")
        if not self.account_reference or len(self.account_reference) > 12:
            raise ValueError("account_reference must be 1-12 characters")
        if not self.callback_url:
            raise ValueError("callback_url is required")


@dataclass
class StkPushResult:
    merchant_request_id: str
    checkout_request_id: str
    response_code: str
    response_description: str
    customer_message: str
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class StkQueryResult:
    """
    Result of an STK push status query.

    result_code is None while the gateway still reports the request as
    being processed; error_code then carries the gateway's errorCode.
    """

    checkout_request_id: str
    result_code: str | None = None
    result_description: str | None = None
    merchant_request_id: str | None = None
    error_code: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def is_final(self) -> bool:
        return self.result_code is not None


@dataclass
class B2CParams:
    """
    Parameters for a B2C payment request.

    Attributes:
        phone_number: Recipient phone (PartyB), 2547XXXXXXXX
        amount: Whole shillings
        originator_conversation_id: Our correlation token for the attempt
        remarks: Free text, 2-100 characters
        result_url / timeout_url: Callback URLs
        occasion: Optional free text
    """

    phone_number: str
    amount: int
    originator_conversation_id: str
    remarks: str
    result_url: str
    timeout_url: str
    occasion: str = ""

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError("amount must be positive")
        if not re.fullmatch(r"254\d{9}", self.phone_number or ""):
            raise ValueError("phone_number must be in 2547XXXXXXXX format")
        if not self.originator_conversation_id:
            raise ValueError("originator_conversation_id is required")


@dataclass
class B2CResult:
    conversation_id: str
    originator_conversation_id: str
    response_code: str
    response_description: str
    raw_response: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Helpers
# =============================================================================


def format_phone_number(raw: str | None) -> str:
    """
    Normalise a Kenyan mobile number to 2547XXXXXXXX / 2541XXXXXXXX.

    Accepts "0712345678", "+254712345678", "254712345678", "712345678"
    and the same with spaces or dashes.

    Raises:
        PaymentValidationError: If the number cannot be normalised
    """
    digits = re.sub(r"\D", "", raw or "")

    if digits.startswith("0"):
        digits = "254" + digits[1:]
    elif len(digits) == 9 and digits[0] in ("7", "1"):
        digits = "254" + digits

    if len(digits) != 12 or not digits.startswith("254"):
        raise PaymentValidationError(
            "Invalid phone number. Please enter a valid Kenyan phone number.",
            error_code="INVALID_PHONE_NUMBER",
            details={"phone_number": raw},
        )
    return digits


def build_account_reference(member_id: Any, subscription_id: Any, token: str) -> str:
    """
    Short payer-visible reference: "MWU" + id fragments, at most 12 chars.

    Example:
        build_account_reference(member.id, subscription.id, token)
        # "MWU4F2A9C7E1"
    """

    def fragment(value: Any) -> str:
        return re.sub(r"[^0-9A-Za-z]", "", str(value))[-3:].upper()

    return f"MWU{fragment(member_id)}{fragment(subscription_id)}{fragment(token)}"[:12]


def build_callback_url(route_name: str) -> str:
    """
    Absolute callback URL for a named route.

    Appends ?token=... when MPESA_CALLBACK_TOKEN is configured.
    """
    base = settings.MPESA_CALLBACK_BASE_URL.rstrip("/")
    url = f"{base}{reverse(route_name)}"
    token = getattr(settings, "MPESA_CALLBACK_TOKEN", "")
    if token:
        url = f"{url}?token={token}"
    return url


def gateway_timestamp() -> str:
    """Current time in the gateway's YYYYMMDDHHMMSS format (Nairobi)."""
    return timezone.now().astimezone(GATEWAY_TIME_ZONE).strftime("%Y%m%d%H%M%S")


def is_retryable_mpesa_error(error: Exception) -> bool:
    if isinstance(error, MpesaError):
        return getattr(error, "is_retryable", False)
    return False


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base: Base delay in seconds
        max_delay: Maximum delay in seconds (jitter never exceeds it)

    Returns:
        Delay in seconds with 0-25% jitter

    Example:
        # Attempt 0: 1.0 - 1.25 seconds
        # Attempt 2: 4.0 - 5.0 seconds
        delay = backoff_delay(attempt=2)
    """
    delay = min(base * (2 ** max(attempt, 0)), max_delay)
    jitter = delay * random.uniform(0, 0.25)
    return min(delay + jitter, max_delay)


# =============================================================================
# Access Token Cache
# =============================================================================


class AccessTokenCache:
    """
    Cache for the Daraja OAuth access token, shared by every process.

    The token and its expiry are stored in the default Django cache so all
    web and worker processes share one token. A refresh runs behind a
    Redis DistributedLock, so only one process fetches at a time; the
    others wait, then re-check the cache before fetching themselves.

    Stored value: {"token": str, "expires_at": float (epoch seconds)}
    """

    CACHE_KEY = "premiums:mpesa:access_token"
    LOCK_KEY = "premiums:mpesa:access_token_refresh"
    EXPIRY_MARGIN_SECONDS = 60

    @classmethod
    def get(cls) -> str | None:
        entry = cache.get(cls.CACHE_KEY)
        if not entry:
            return None
        if entry.get("expires_at", 0) <= time.time():
            return None
        return entry.get("token")

    @classmethod
    def store(cls, token: str, expires_in: int) -> None:
        lifetime = max(int(expires_in) - cls.EXPIRY_MARGIN_SECONDS, 1)
        cache.set(
            cls.CACHE_KEY,
            {"token": token, "expires_at": time.time() + lifetime},
            timeout=lifetime,
        )

    @classmethod
    def invalidate(cls) -> None:
        cache.delete(cls.CACHE_KEY)

    @classmethod
    def refresh_lock(cls, request_timeout: float) -> DistributedLock:
        # Held for at most one token request; waiters give up just after it
        return DistributedLock(
            cls.LOCK_KEY,
            ttl=int(request_timeout) + 10,
            timeout=request_timeout + 5,
        )

    @classmethod
    def get_or_fetch(
        cls,
        fetch: Callable[[], tuple[str, int]],
        request_timeout: float = 30.0,
    ) -> str:
        """
        Return a valid token, calling ``fetch`` at most once per refresh.

        Args:
            fetch: Returns (access_token, expires_in_seconds)
            request_timeout: Bound on one ``fetch`` call, used to size the lock

        Raises:
            MpesaGatewayUnreachableError: Lock could not be taken or Redis is
                down; no gateway request was sent
        """
        token = cls.get()
        if token:
            return token

        try:
            with cls.refresh_lock(request_timeout):
                token = cls.get()
                if token:
                    return token
                token, expires_in = fetch()
                cls.store(token, expires_in)
                return token
        except LockAcquisitionError as e:
            token = cls.get()
            if token:
                return token
            logger.warning(
                "Timed out waiting for access token refresh",
                extra={"operation": "oauth_token", "lock_key": e.details.get("key")},
            )
            raise MpesaGatewayUnreachableError(
                "Timed out waiting for another process to refresh the access token",
                details={"operation": "oauth_token"},
            ) from e
        except RedisError as e:
            logger.error(
                "Token refresh lock unavailable",
                extra={"operation": "oauth_token", "error_type": type(e).__name__},
            )
            raise MpesaGatewayUnreachableError(
                "Token refresh lock unavailable",
                details={"operation": "oauth_token"},
            ) from e



# =============================================================================
# M-Pesa Adapter
# =============================================================================


class MpesaAdapter:
    """
    Adapter for Daraja API operations.

    All methods are classmethods - no instance state is maintained.
    Thread-safe for use from Celery workers.

    Error translation:
        requests.ConnectionError -> MpesaGatewayUnreachableError
        requests.Timeout -> MpesaTimeoutError (outcome unknown)
        HTTP 401 / failed token fetch -> MpesaAuthenticationError
        errorCode body / ResponseCode != "0" -> MpesaRequestRejectedError
        HTTP 5xx without errorCode body -> MpesaGatewayUnreachableError
    """

    # =========================================================================
    # Configuration
    # =========================================================================

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @staticmethod
    def base_url() -> str:
        environment = getattr(settings, "MPESA_ENVIRONMENT", "sandbox")
        return BASE_URLS.get(environment, BASE_URLS["sandbox"])

    @staticmethod
    def timeout() -> float:
        return float(getattr(settings, "MPESA_API_TIMEOUT_SECONDS", 30))

    @staticmethod
    def stk_password(timestamp: str) -> str:
        raw = f"{settings.MPESA_SHORTCODE}{settings.MPESA_PASSKEY}{timestamp}"
        return base64.b64encode(raw.encode()).decode("ascii")

    # =========================================================================
    # Authentication
    # =========================================================================

    @classmethod
    def get_access_token(cls) -> str:
        return AccessTokenCache.get_or_fetch(cls._fetch_access_token, cls.timeout())

    @classmethod
    def _fetch_access_token(cls) -> tuple[str, int]:
        """
        Request a new OAuth token with client credentials.

        A connection failure or timeout here means no money-moving request
        was sent, so both surface as MpesaGatewayUnreachableError.
        """
        logger = cls.get_logger()
        log_context = {"operation": "oauth_token"}
        start_time = time.time()

        try:
            response = requests.get(
                f"{cls.base_url()}{TOKEN_PATH}",
                auth=(settings.MPESA_CONSUMER_KEY, settings.MPESA_CONSUMER_SECRET),
                timeout=cls.timeout(),
            )
        except requests.RequestException as e:
            logger.error(
                "Could not reach M-Pesa for access token",
                extra={**log_context, "error_type": type(e).__name__},
            )
            raise MpesaGatewayUnreachableError(
                "Could not reach M-Pesa to obtain an access token",
                details={"error": type(e).__name__},
            ) from e

        duration_ms = (time.time() - start_time) * 1000
        body = cls._json_body(response)
        token = body.get("access_token")

        if response.status_code != 200 or not token:
            logger.error(
                "M-Pesa access token request failed",
                extra={
                    **log_context,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                },
            )
            raise MpesaAuthenticationError(
                "Failed to authenticate with M-Pesa",
                details={"status_code": response.status_code},
            )

        logger.info(
            "M-Pesa access token obtained",
            extra={**log_context, "duration_ms": duration_ms},
        )
        return token, int(body.get("expires_in", 3599))

    # =========================================================================
    # Core Operations
    # =========================================================================

    @classmethod
    def stk_push(cls, params: StkPushParams) -> StkPushResult:
        """
        Send an STK push prompt to the payer's phone.

        Returns:
            StkPushResult with the CheckoutRequestID the callback will carry

        Raises:
            MpesaGatewayUnreachableError: Request never reached the gateway
            MpesaTimeoutError: No response within the timeout
            MpesaAuthenticationError: Token could not be obtained or was refused
            MpesaRequestRejectedError: Gateway rejected the request
        """
        timestamp = gateway_timestamp()
        payload = {
            "BusinessShortCode": settings.MPESA_SHORTCODE,
            "Password": cls.stk_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(params.amount),
            "PartyA": params.phone_number,
            "PartyB": settings.MPESA_SHORTCODE,
            "PhoneNumber": params.phone_number,
            "CallBackURL": params.callback_url,
            "AccountReference": params.account_reference,
            "TransactionDesc": (params.description or "Premium")[:13],
        }
        log_context = {
            "operation": "stk_push",
            "amount": params.amount,
            "account_reference": params.account_reference,
        }

        body = cls._post(STK_PUSH_PATH, payload, log_context)

        return StkPushResult(
            merchant_request_id=body.get("MerchantRequestID", ""),
            checkout_request_id=body.get("CheckoutRequestID", ""),
            response_code=str(body.get("ResponseCode", "")),
            response_description=body.get("ResponseDescription", ""),
            customer_message=body.get("CustomerMessage", ""),
            raw_response=body,
        )

    @classmethod
    def stk_query(cls, checkout_request_id: str) -> StkQueryResult:
        """
        Query the status of an STK push.

        A request the gateway is still processing comes back as an
        errorCode body; that is returned as a non-final result rather
        than raised.
        """
        timestamp = gateway_timestamp()
        payload = {
            "BusinessShortCode": settings.MPESA_SHORTCODE,
            "Password": cls.stk_password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        log_context = {
            "operation": "stk_query",
            "checkout_request_id": checkout_request_id,
        }

        try:
            body = cls._post(STK_QUERY_PATH, payload, log_context)
        except MpesaRequestRejectedError as e:
            return StkQueryResult(
                checkout_request_id=checkout_request_id,
                error_code=e.result_code,
                result_description=e.message,
                raw_response=e.details,
            )

        result_code = body.get("ResultCode")
        return StkQueryResult(
            checkout_request_id=body.get("CheckoutRequestID", checkout_request_id),
            result_code=str(result_code) if result_code not in (None, "") else None,
            result_description=body.get("ResultDesc"),
            merchant_request_id=body.get("MerchantRequestID"),
            raw_response=body,
        )

    @classmethod
    def b2c_payment(cls, params: B2CParams) -> B2CResult:
        """
        Send a business-to-customer payment.

        Acceptance only means the request was queued; the outcome arrives
        on the result URL (or the queue-timeout URL).

        Raises:
            MpesaSecurityCredentialError: Initiator credential unavailable
            MpesaTimeoutError: No response; the transfer may still happen
            (plus the errors listed on stk_push)
        """
        from premiums.adapters.security_credential import get_security_credential

        payload = {
            "OriginatorConversationID": params.originator_conversation_id,
            "InitiatorName": settings.MPESA_INITIATOR_NAME,
            "SecurityCredential": get_security_credential(),
            "CommandID": getattr(settings, "MPESA_B2C_COMMAND_ID", "BusinessPayment"),
            "Amount": int(params.amount),
            "PartyA": settings.MPESA_B2C_SHORTCODE,
            "PartyB": params.phone_number,
            "Remarks": (params.remarks or "Commission payout")[:100],
            "QueueTimeOutURL": params.timeout_url,
            "ResultURL": params.result_url,
            "Occasion": params.occasion[:100],
        }
        log_context = {
            "operation": "b2c_payment",
            "amount": params.amount,
            "originator_conversation_id": params.originator_conversation_id,
        }

        body = cls._post(B2C_PAYMENT_PATH, payload, log_context)

        return B2CResult(
            conversation_id=body.get("ConversationID", ""),
            originator_conversation_id=body.get(
                "OriginatorConversationID", params.originator_conversation_id
            ),
            response_code=str(body.get("ResponseCode", "")),
            response_description=body.get("ResponseDescription", ""),
            raw_response=body,
        )

    # =========================================================================
    # Transport & Error Handling
    # =========================================================================

    @staticmethod
    def _json_body(response: requests.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    @classmethod
    def _post(
        cls,
        path: str,
        payload: dict[str, Any],
        log_context: dict[str, Any],
    ) -> dict[str, Any]:
        """
        POST an authenticated request and return the accepted JSON body.

        Raises one of the MpesaError subclasses for anything other than
        a ResponseCode "0" acceptance.
        """
        logger = cls.get_logger()
        token = cls.get_access_token()

        start_time = time.time()
        logger.info("Starting M-Pesa operation", extra=log_context)

        try:
            response = requests.post(
                f"{cls.base_url()}{path}",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
                timeout=cls.timeout(),
            )
        except requests.RequestException as e:
            duration_ms = (time.time() - start_time) * 1000
            cls._handle_transport_error(e, log_context, duration_ms)
            raise

        duration_ms = (time.time() - start_time) * 1000
        body = cls._json_body(response)
        cls._check_response(response, body, log_context, duration_ms)

        logger.info(
            "M-Pesa operation completed",
            extra={
                **log_context,
                "status_code": response.status_code,
                "response_code": body.get("ResponseCode"),
                "duration_ms": duration_ms,
            },
        )
        return body

    @classmethod
    def _handle_transport_error(
        cls,
        error: requests.RequestException,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        logger = cls.get_logger()
        log_context = {
            **log_context,
            "duration_ms": duration_ms,
            "error_type": type(error).__name__,
        }

        # ConnectTimeout is both a ConnectionError and a Timeout; the
        # request never left, so it is not ambiguous.
        if isinstance(error, requests.ConnectTimeout) or (
            isinstance(error, requests.ConnectionError)
            and not isinstance(error, requests.Timeout)
        ):
            logger.error("Could not connect to M-Pesa", extra=log_context)
            raise MpesaGatewayUnreachableError(
                "The request never reached M-Pesa. Please retry.",
                details={"error": type(error).__name__},
            ) from error

        if isinstance(error, requests.Timeout):
            logger.warning("M-Pesa request timed out", extra=log_context)
            raise MpesaTimeoutError(
                "M-Pesa did not respond in time; outcome unknown.",
                details={"error": type(error).__name__},
            ) from error

        logger.error(
            "Unexpected transport error calling M-Pesa",
            extra=log_context,
            exc_info=True,
        )
        raise MpesaGatewayUnreachableError(
            f"Unexpected error calling M-Pesa: {type(error).__name__}",
            details={"error": type(error).__name__},
        ) from error

    @classmethod
    def _check_response(
        cls,
        response: requests.Response,
        body: dict[str, Any],
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        logger = cls.get_logger()
        log_context = {
            **log_context,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }

        if response.status_code == 401:
            AccessTokenCache.invalidate()
            logger.error("M-Pesa refused the access token", extra=log_context)
            raise MpesaAuthenticationError(
                "M-Pesa authentication failed",
                details={"status_code": 401},
            )

        error_code = body.get("errorCode")
        if error_code:
            message = MPESA_ERROR_MESSAGES.get(error_code) or body.get(
                "errorMessage", get_error_message(error_code)
            )
            logger.warning(
                "M-Pesa rejected request",
                extra={**log_context, "error_code": error_code},
            )
            raise MpesaRequestRejectedError(
                message,
                result_code=error_code,
                details={"error_message": body.get("errorMessage")},
            )

        if response.status_code >= 500:
            logger.error("M-Pesa server error", extra=log_context)
            raise MpesaGatewayUnreachableError(
                "M-Pesa service error. Please retry.",
                details={"status_code": response.status_code},
            )

        response_code = str(body.get("ResponseCode", ""))
        if response.status_code >= 400 or response_code != "0":
            logger.warning(
                "M-Pesa rejected request",
                extra={**log_context, "response_code": response_code},
            )
            raise MpesaRequestRejectedError(
                body.get("ResponseDescription") or get_error_message(response_code),
                result_code=response_code or str(response.status_code),
                details={"status_code": response.status_code},
            )
