"""
Webhook handling for M-Pesa gateway notifications.

This module provides views and handlers for processing STK push callbacks
and B2C results/timeouts. Notifications are validated, stored
idempotently, and processed asynchronously via Celery tasks.

Usage:
    # In urls.py
    from premiums.webhooks.views import mpesa_b2c_result

    urlpatterns = [
        path("webhooks/mpesa/b2c/result/", mpesa_b2c_result, name="mpesa-b2c-result"),
    ]
"""

from premiums.webhooks.payloads import (
    StkCallback,
    TransferResult,
    TransferTimeout,
    parse_callback,
    parse_stk_callback,
    parse_transfer_result,
    parse_transfer_timeout,
)

__all__ = [
    "StkCallback",
    "TransferResult",
    "TransferTimeout",
    "parse_callback",
    "parse_stk_callback",
    "parse_transfer_result",
    "parse_transfer_timeout",
]
