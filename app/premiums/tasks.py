"""
Celery tasks for premium processing.

This module provides async tasks for:
- Processing stored M-Pesa callback events
- Retrying failed callback events
- Re-queuing callback events stuck in PENDING or PROCESSING

Settlement, payout and status-query workers live in premiums.workers and
are re-exported at the bottom of this module.

Usage:
    from premiums.tasks import process_callback_event

    # Queue a callback for async processing
    process_callback_event.delay(str(callback_event_id))

    # Process all due payouts (typically via celery-beat)
    from premiums.tasks import process_pending_payouts
    process_pending_payouts.delay()
"""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from celery import shared_task
from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from premiums.exceptions import MalformedCallbackError
from premiums.models import CallbackEvent
from premiums.state_machines import CallbackEventStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MAX_CALLBACK_RETRIES = getattr(settings, "CALLBACK_MAX_RETRIES", 5)
STUCK_CALLBACK_THRESHOLD_MINUTES = 30
RETRY_BATCH_SIZE = 100


# =============================================================================
# Callback Processing Tasks
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_CALLBACK_RETRIES},
    acks_late=True,
)
def process_callback_event(self, callback_event_id: str) -> dict:
    """
    Process a stored M-Pesa callback asynchronously.

    This task:
    1. Loads the CallbackEvent by ID
    2. Checks if already processed (idempotency)
    3. Marks as processing
    4. Dispatches to the handler for its kind
    5. Marks as processed or failed

    A handler failure result (e.g. payment not found yet) marks the event
    FAILED for retry_failed_callbacks to pick up. A payload that no longer
    parses is marked FAILED and not retried by Celery.

    Raises:
        Exception: Re-raised to trigger Celery retry mechanism
    """
    # Import here to avoid circular imports
    from premiums.webhooks.handlers import dispatch_callback

    if isinstance(callback_event_id, str):
        callback_event_id = UUID(callback_event_id)

    logger.info(
        "Processing callback event",
        extra={"callback_event_id": str(callback_event_id)},
    )

    try:
        event = CallbackEvent.objects.get(id=callback_event_id)
    except CallbackEvent.DoesNotExist:
        logger.error(
            "CallbackEvent not found",
            extra={"callback_event_id": str(callback_event_id)},
        )
        return {"status": "not_found", "callback_event_id": str(callback_event_id)}

    if event.is_processed:
        logger.info(
            "CallbackEvent already processed, skipping",
            extra={"callback_event_id": str(callback_event_id), "dedup_key": event.dedup_key},
        )
        return {"status": "already_processed", "callback_event_id": str(callback_event_id)}

    event.mark_processing()
    event.save()

    try:
        with transaction.atomic():
            result = dispatch_callback(event)
    except MalformedCallbackError as e:
        event.mark_failed(f"Malformed payload: {e.message}")
        event.save()
        logger.error(
            "Stored callback payload is malformed",
            extra={"callback_event_id": str(callback_event_id), "dedup_key": event.dedup_key},
        )
        return {"status": "malformed", "callback_event_id": str(callback_event_id)}
    except Exception as e:
        error_msg = f"{type(e).__name__}: {str(e)}"
        event.mark_failed(error_msg)
        event.save()
        logger.exception(
            "Callback processing failed with exception",
            extra={
                "callback_event_id": str(callback_event_id),
                "dedup_key": event.dedup_key,
                "error": error_msg,
            },
        )
        # Re-raise to trigger Celery retry
        raise

    if not result.success:
        error_msg = result.error or "Handler returned failure"
        event.mark_failed(error_msg)
        event.save()
        logger.warning(
            f"Callback handler failed: {error_msg}",
            extra={
                "callback_event_id": str(callback_event_id),
                "dedup_key": event.dedup_key,
                "error_code": result.error_code,
            },
        )
        return {
            "status": "handler_failed",
            "callback_event_id": str(callback_event_id),
            "error": error_msg,
            "error_code": result.error_code,
        }

    event.mark_processed()
    event.save()
    logger.info(
        "Callback processed successfully",
        extra={"callback_event_id": str(callback_event_id), "dedup_key": event.dedup_key},
    )
    return {"status": "processed", "callback_event_id": str(callback_event_id)}


@shared_task
def retry_failed_callbacks() -> dict:
    """
    Periodic task to retry failed callback events within the retry budget.

    Returns:
        Dict with count of callbacks queued for retry
    """
    failed_events = CallbackEvent.objects.filter(
        status=CallbackEventStatus.FAILED,
        retry_count__lt=MAX_CALLBACK_RETRIES,
    ).order_by("created_at")[:RETRY_BATCH_SIZE]

    queued_count = 0
    for event in failed_events:
        try:
            process_callback_event.delay(str(event.id))
            queued_count += 1
            logger.info(
                "Queued failed callback for retry",
                extra={
                    "callback_event_id": str(event.id),
                    "dedup_key": event.dedup_key,
                    "retry_count": event.retry_count,
                },
            )
        except Exception as e:
            logger.error(
                f"Failed to queue callback for retry: {e}",
                extra={"callback_event_id": str(event.id)},
            )

    logger.info(
        f"Queued {queued_count} failed callbacks for retry",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count}


@shared_task
def cleanup_stuck_callbacks() -> dict:
    """
    Periodic task to recover callbacks a worker never finished.

    PROCESSING events older than the threshold are reset to FAILED so
    retry_failed_callbacks picks them up. PENDING events that old were
    never queued (broker outage) and are queued now.

    Returns:
        Dict with counts of reset and re-queued callbacks
    """
    threshold = timezone.now() - timedelta(minutes=STUCK_CALLBACK_THRESHOLD_MINUTES)

    stuck_events = CallbackEvent.objects.filter(
        Q(status=CallbackEventStatus.PROCESSING) | Q(status=CallbackEventStatus.PENDING),
        updated_at__lt=threshold,
    )

    reset_count = 0
    requeued_count = 0
    for event in stuck_events:
        if event.status == CallbackEventStatus.PROCESSING:
            event.mark_failed("Processing timed out - reset for retry")
            event.save()
            reset_count += 1
            logger.warning(
                "Reset stuck callback",
                extra={
                    "callback_event_id": str(event.id),
                    "dedup_key": event.dedup_key,
                    "stuck_since": event.updated_at.isoformat(),
                },
            )
            continue

        try:
            process_callback_event.delay(str(event.id))
            requeued_count += 1
        except Exception as e:
            logger.error(
                f"Failed to re-queue pending callback: {e}",
                extra={"callback_event_id": str(event.id)},
            )

    if reset_count or requeued_count:
        logger.info(
            f"Recovered {reset_count + requeued_count} stuck callbacks",
            extra={"reset_count": reset_count, "requeued_count": requeued_count},
        )

    return {"reset_count": reset_count, "requeued_count": requeued_count}


# =============================================================================
# Re-exported Worker Tasks
# =============================================================================
# These tasks are defined in premiums.workers but re-exported here for
# convenience and to ensure Celery autodiscover finds them.

from premiums.workers import (  # noqa: E402, F401
    execute_line_item_payout,
    generate_daily_settlement,
    generate_settlement_for_date,
    process_pending_payouts,
    query_stale_collections,
    sweep_stale_transfers,
)
