"""
Callback event handlers for M-Pesa notifications.

This module provides a handler registry and implementations for
processing each kind of stored CallbackEvent.

Usage:
    from premiums.webhooks.handlers import dispatch_callback, register_handler

    # Register a handler
    @register_handler(CallbackKind.B2C_RESULT)
    def handle_b2c_result(event: CallbackEvent) -> ServiceResult:
        ...

    # Dispatch an event to its handler
    result = dispatch_callback(event)
"""

from __future__ import annotations

import logging
from typing import Callable

from core.services import ServiceResult
from premiums.models import CallbackEvent
from premiums.services import CallbackReconciler, PayoutService
from premiums.state_machines import CallbackKind
from premiums.webhooks.payloads import (
    parse_stk_callback,
    parse_transfer_result,
    parse_transfer_timeout,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Handler Registry
# =============================================================================


# Maps callback kinds to handler functions
CALLBACK_HANDLERS: dict[str, Callable[[CallbackEvent], ServiceResult]] = {}


def register_handler(kind: str) -> Callable:
    """
    Decorator to register a callback handler.

    Args:
        kind: A CallbackKind value

    Returns:
        Decorator function that registers the handler
    """

    def decorator(func: Callable[[CallbackEvent], ServiceResult]) -> Callable:
        CALLBACK_HANDLERS[kind] = func
        logger.debug(f"Registered callback handler for {kind}")
        return func

    return decorator


def dispatch_callback(event: CallbackEvent) -> ServiceResult:
    """
    Dispatch a callback event to the handler for its kind.

    An unknown kind is logged and treated as success so it is not retried
    forever.

    Raises:
        MalformedCallbackError: Stored payload no longer parses
    """
    handler = CALLBACK_HANDLERS.get(event.kind)

    if not handler:
        logger.info(
            f"No handler registered for callback kind: {event.kind}",
            extra={"callback_event_id": str(event.id)},
        )
        return ServiceResult.success(None)

    logger.info(
        f"Dispatching {event.kind} to handler",
        extra={"callback_event_id": str(event.id), "dedup_key": event.dedup_key},
    )

    return handler(event)


# =============================================================================
# Handlers
# =============================================================================


@register_handler(CallbackKind.STK_CALLBACK)
def handle_stk_callback(event: CallbackEvent) -> ServiceResult:
    """Reconcile an STK push result against its payment."""
    return CallbackReconciler.reconcile_collection(parse_stk_callback(event.payload))


@register_handler(CallbackKind.B2C_RESULT)
def handle_b2c_result(event: CallbackEvent) -> ServiceResult:
    return PayoutService.reconcile_transfer_result(parse_transfer_result(event.payload))


@register_handler(CallbackKind.B2C_TIMEOUT)
def handle_b2c_timeout(event: CallbackEvent) -> ServiceResult:
    return PayoutService.handle_transfer_timeout(parse_transfer_timeout(event.payload))
