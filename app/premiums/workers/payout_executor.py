"""
Payout executor worker for dispatching commission line items.

Tasks:
- process_pending_payouts: Periodic task that queues due line items
- execute_line_item_payout: Dispatches one line item via B2C
- sweep_stale_transfers: Periodic task that writes off transfers with no
  result and escalates their line items

Usage:
    from premiums.workers import process_pending_payouts

    process_pending_payouts.delay()
    execute_line_item_payout.delay(str(line_item.id))
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Maximum line items to queue per scan (prevents memory issues)
BATCH_SIZE = 100


# =============================================================================
# Periodic Task: Scan for Due Line Items
# =============================================================================


@shared_task(bind=True)
def process_pending_payouts(self, limit: int = BATCH_SIZE) -> dict:
    """
    Scan for due line items and queue a dispatch task for each.

    Idempotent: execute_line_item_payout claims each item with a
    conditional update, so queuing one twice dispatches it once.

    Returns:
        Dict with:
        - queued_count: Number of line items queued
    """
    from premiums.services import PayoutService

    logger.info("Starting pending payout scan")

    queued_count = 0
    for item in PayoutService.get_due_line_items(limit):
        try:
            execute_line_item_payout.delay(str(item.id))
            queued_count += 1
            logger.info(
                "Queued line item for payout",
                extra={
                    "line_item_id": str(item.id),
                    "recipient_role": item.recipient_role,
                    "amount": item.amount,
                    "attempt_count": item.attempt_count,
                },
            )
        except Exception as e:
            logger.error(
                f"Failed to queue line item for payout: {e}",
                extra={"line_item_id": str(item.id)},
            )

    logger.info(
        f"Pending payout scan complete: queued {queued_count} line items",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count}


# =============================================================================
# Individual Dispatch Task
# =============================================================================


@shared_task(bind=True, acks_late=True)
def execute_line_item_payout(self, line_item_id: str) -> dict:
    """
    Dispatch one line item.

    Gateway failures are not retried by Celery: the payout service
    records them and schedules the next attempt itself.

    Returns:
        Dict with:
        - status: "dispatched", "skipped", "not_found" or "failed"
        - line_item_id: The line item processed
        - correlation_token: Token of the transfer, when one was sent
        - error / error_code: When failed
    """
    from premiums.services import PayoutService

    try:
        line_item_uuid = UUID(str(line_item_id))
    except ValueError:
        logger.error(f"Invalid line_item_id format: {line_item_id}")
        return {"status": "not_found", "line_item_id": line_item_id}

    result = PayoutService.dispatch_line_item(line_item_uuid)

    if not result.success:
        status = "not_found" if result.error_code == "LINE_ITEM_NOT_FOUND" else "failed"
        logger.warning(
            f"Line item payout {status}: {result.error}",
            extra={"line_item_id": line_item_id, "error_code": result.error_code},
        )
        return {
            "status": status,
            "line_item_id": line_item_id,
            "error": result.error,
            "error_code": result.error_code,
        }

    dispatch = result.data
    if not dispatch.dispatched:
        return {"status": "skipped", "line_item_id": line_item_id, "reason": dispatch.reason}

    return {
        "status": "dispatched",
        "line_item_id": line_item_id,
        "correlation_token": dispatch.transfer.correlation_token,
    }


# =============================================================================
# Periodic Task: Stale Transfer Sweep
# =============================================================================


@shared_task
def sweep_stale_transfers() -> dict:
    """
    Write off in-flight transfers with no result after the stale window.

    Returns:
        Dict with:
        - swept_count: Number of transfers marked timed out
    """
    from premiums.services import PayoutService

    result = PayoutService.sweep_stale_transfers()
    swept = result.data.swept

    if swept:
        logger.warning(
            f"Swept {swept} stale transfers",
            extra={"swept_count": swept},
        )
    return {"swept_count": swept}
