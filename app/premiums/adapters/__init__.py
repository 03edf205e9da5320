"""
Gateway adapters for external services.

All M-Pesa API calls should go through these adapters to ensure
consistent error handling, timeouts, token caching and observability.

Usage:
    from premiums.adapters import MpesaAdapter, B2CParams

    result = MpesaAdapter.b2c_payment(
        B2CParams(
            phone_number="254712345678",
            amount=120,
            originator_conversation_id=transfer.correlation_token,
            remarks="Commission payout",
            result_url=result_url,
            timeout_url=timeout_url,
        )
    )
"""

from premiums.adapters.mpesa_adapter import (
    MPESA_ERROR_MESSAGES,
    AccessTokenCache,
    B2CParams,
    B2CResult,
    MpesaAdapter,
    StkPushParams,
    StkPushResult,
    StkQueryResult,
    backoff_delay,
    build_account_reference,
    build_callback_url,
    format_phone_number,
    get_error_message,
    is_retryable_mpesa_error,
)
from premiums.adapters.security_credential import (
    generate_security_credential,
    get_security_credential,
)

__all__ = [
    "MPESA_ERROR_MESSAGES",
    "AccessTokenCache",
    "B2CParams",
    "B2CResult",
    "MpesaAdapter",
    "StkPushParams",
    "StkPushResult",
    "StkQueryResult",
    "backoff_delay",
    "build_account_reference",
    "build_callback_url",
    "format_phone_number",
    "generate_security_credential",
    "get_error_message",
    "get_security_credential",
    "is_retryable_mpesa_error",
]
