"""
Reconciliation worker for collections whose callback never arrived.

Tasks:
- query_stale_collections: Periodic task that runs an STK status query
  for every INITIATED payment older than
  COLLECTION_STATUS_QUERY_AFTER_MINUTES

A status query only ever applies a final result from the gateway; a
payment the gateway still reports as processing stays INITIATED.

Usage:
    from premiums.workers import query_stale_collections

    query_stale_collections.delay()
"""

from __future__ import annotations

import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from premiums.models import Payment
from premiums.state_machines import PaymentState

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_MAX_RECORDS = 100


# =============================================================================
# Periodic Task: Status Query Fallback
# =============================================================================


@shared_task(bind=True)
def query_stale_collections(self, max_records: int = DEFAULT_MAX_RECORDS) -> dict:
    """
    Query the gateway for INITIATED payments with no callback yet.

    A payment is queried at most once per threshold window, so a gateway
    that keeps answering "still processing" is not hammered.

    Returns:
        Dict with:
        - checked: Payments queried
        - resolved: Payments moved to a terminal state
        - errors: Queries that failed
    """
    from premiums.services import CallbackReconciler

    minutes = settings.COLLECTION_STATUS_QUERY_AFTER_MINUTES
    threshold = timezone.now() - timedelta(minutes=minutes)

    payment_ids = list(
        Payment.objects.filter(
            state=PaymentState.INITIATED,
            gateway_request_id__isnull=False,
            created_at__lt=threshold,
        )
        .filter(Q(last_status_query_at__isnull=True) | Q(last_status_query_at__lt=threshold))
        .order_by("created_at")
        .values_list("id", flat=True)[:max_records]
    )

    checked = resolved = errors = 0
    for payment_id in payment_ids:
        checked += 1
        try:
            result = CallbackReconciler.apply_status_query(payment_id)
        except Exception:
            errors += 1
            logger.exception(
                "Status query raised",
                extra={"payment_id": str(payment_id)},
            )
            continue

        if not result.success:
            errors += 1
        elif result.data.final:
            resolved += 1

    logger.info(
        f"Stale collection scan complete: {resolved}/{checked} resolved",
        extra={"checked": checked, "resolved": resolved, "errors": errors},
    )
    return {"checked": checked, "resolved": resolved, "errors": errors}
