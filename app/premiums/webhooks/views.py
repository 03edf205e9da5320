"""
Callback endpoint views for M-Pesa.

Each view:
1. Checks the shared callback token (when configured)
2. Validates the notification body
3. Creates/retrieves the CallbackEvent record (idempotent on dedup_key)
4. Queues the event for async processing
5. Acknowledges immediately

The gateway only needs to know the notification was received; all
business logic runs in process_callback_event.

Usage:
    # In urls.py
    from premiums.webhooks.views import mpesa_stk_callback

    urlpatterns = [
        path("webhooks/mpesa/stk/", mpesa_stk_callback, name="mpesa-stk-callback"),
    ]
"""

from __future__ import annotations

import hmac
import json
import logging

from django.conf import settings
from django.http import HttpRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from premiums.exceptions import MalformedCallbackError
from premiums.models import CallbackEvent
from premiums.state_machines import CallbackEventStatus, CallbackKind
from premiums.webhooks.payloads import parse_callback

logger = logging.getLogger(__name__)

ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}


def _token_matches(request: HttpRequest) -> bool:
    expected = getattr(settings, "MPESA_CALLBACK_TOKEN", "")
    if not expected:
        return True
    supplied = request.GET.get("token", "")
    return hmac.compare_digest(supplied.encode(), expected.encode())


def _receive(request: HttpRequest, kind: str) -> JsonResponse:
    """
    Store and queue one notification of ``kind``.

    Returns:
        JsonResponse with status:
        - 200: Notification accepted (new or duplicate)
        - 400: Body is not JSON or fails validation
        - 403: Callback token missing or wrong
    """
    if not _token_matches(request):
        logger.warning(
            "Callback rejected: bad token",
            extra={"kind": kind, "remote_addr": request.META.get("REMOTE_ADDR")},
        )
        return JsonResponse({"ResultCode": 1, "ResultDesc": "Forbidden"}, status=403)

    # Step 1: Parse and validate
    try:
        body = json.loads(request.body)
    except (ValueError, UnicodeDecodeError):
        logger.warning("Callback body is not valid JSON", extra={"kind": kind})
        return JsonResponse({"ResultCode": 1, "ResultDesc": "Invalid JSON"}, status=400)

    try:
        notification = parse_callback(kind, body)
    except MalformedCallbackError as e:
        logger.warning(
            "Malformed callback payload",
            extra={"kind": kind, "errors": e.details.get("errors")},
        )
        return JsonResponse({"ResultCode": 1, "ResultDesc": "Malformed payload"}, status=400)

    dedup_key = CallbackEvent.build_dedup_key(kind, notification.correlation_id)

    logger.info(
        f"Received M-Pesa {kind}",
        extra={"kind": kind, "dedup_key": dedup_key},
    )

    # Step 2: Create/get CallbackEvent (idempotent)
    event, created = CallbackEvent.objects.get_or_create(
        dedup_key=dedup_key,
        defaults={
            "kind": kind,
            "payload": body,
            "status": CallbackEventStatus.PENDING,
        },
    )

    # Step 3: If already processed, acknowledge without re-queuing
    if not created:
        if event.is_processed:
            logger.info(
                "Callback already processed, acknowledging",
                extra={"dedup_key": dedup_key},
            )
            return JsonResponse(ACCEPTED)

        logger.info(
            f"Callback already exists with status: {event.status}",
            extra={"dedup_key": dedup_key},
        )

    # Step 4: Queue for async processing
    try:
        from premiums.tasks import process_callback_event

        process_callback_event.delay(str(event.id))
        logger.info(
            "Callback queued for processing",
            extra={"dedup_key": dedup_key, "callback_event_id": str(event.id)},
        )
    except Exception as e:
        # The event is stored; cleanup_stuck_callbacks re-queues it
        logger.error(
            f"Failed to queue callback: {type(e).__name__}",
            extra={"dedup_key": dedup_key},
            exc_info=True,
        )

    return JsonResponse(ACCEPTED)


@csrf_exempt
@require_POST
def mpesa_stk_callback(request: HttpRequest) -> JsonResponse:
    """Result of an STK push (Lipa na M-Pesa Online)."""
    return _receive(request, CallbackKind.STK_CALLBACK)


@csrf_exempt
@require_POST
def mpesa_b2c_result(request: HttpRequest) -> JsonResponse:
    """Final result of a B2C commission transfer."""
    return _receive(request, CallbackKind.B2C_RESULT)


@csrf_exempt
@require_POST
def mpesa_b2c_timeout(request: HttpRequest) -> JsonResponse:
    """B2C request expired in the gateway queue."""
    return _receive(request, CallbackKind.B2C_TIMEOUT)
