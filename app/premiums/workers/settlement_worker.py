"""
Settlement worker for daily settlement generation.

Tasks:
- generate_daily_settlement: Periodic task that settles yesterday and
  catches up any missed days in the window
- generate_settlement_for_date: On-demand settlement of one day

Usage:
    from premiums.workers import generate_settlement_for_date

    generate_settlement_for_date.delay("2025-01-15")

Celery Beat Schedule:
    Created by migration 0002_add_periodic_schedules: daily at 00:30
    Africa/Nairobi.
"""

from __future__ import annotations

import logging
from datetime import date

from celery import shared_task

logger = logging.getLogger(__name__)


# =============================================================================
# Periodic Task: Daily Settlement
# =============================================================================


@shared_task(bind=True)
def generate_daily_settlement(self, days_back: int | None = None) -> dict:
    """
    Settle every closed day in the catch-up window that has no batch.

    Normally this is just yesterday; after downtime it also covers the
    missed days, oldest first.

    Returns:
        Dict with:
        - status: "completed"
        - created_count: Number of batches created
        - period_keys: ISO dates of the created batches
    """
    from premiums.services import SettlementService

    logger.info("Starting daily settlement run", extra={"days_back": days_back})

    result = SettlementService.generate_missing_settlements(days_back)
    period_keys = [run.batch.period_key.isoformat() for run in result.data]

    logger.info(
        f"Daily settlement complete: created {len(period_keys)} batches",
        extra={"created_count": len(period_keys), "period_keys": period_keys},
    )
    return {
        "status": "completed",
        "created_count": len(period_keys),
        "period_keys": period_keys,
    }


# =============================================================================
# On-demand Task: Single Day
# =============================================================================


@shared_task(bind=True)
def generate_settlement_for_date(self, period_date: str) -> dict:
    """
    Settle one local calendar day.

    Args:
        period_date: ISO date, e.g. "2025-01-15"

    Returns:
        Dict with:
        - status: "created", "exists", "invalid_date" or "failed"
        - batch_id: The batch for the day, when there is one
        - error_code: Failure code, e.g. SETTLEMENT_PERIOD_OPEN
    """
    from premiums.services import SettlementService

    try:
        day = date.fromisoformat(period_date)
    except (TypeError, ValueError):
        logger.error(f"Invalid settlement date: {period_date}")
        return {"status": "invalid_date", "period_date": period_date}

    result = SettlementService.generate_settlement(day)
    if not result.success:
        logger.warning(
            f"Settlement for {period_date} failed: {result.error}",
            extra={"period_date": period_date, "error_code": result.error_code},
        )
        return {
            "status": "failed",
            "period_date": period_date,
            "error": result.error,
            "error_code": result.error_code,
        }

    return {
        "status": "created" if result.data.created else "exists",
        "period_date": period_date,
        "batch_id": str(result.data.batch.id),
    }
