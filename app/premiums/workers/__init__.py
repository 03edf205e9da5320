"""
Workers for async premium processing.

This module contains Celery tasks for background engine operations:
- SettlementWorker: Generates daily settlement batches
- PayoutExecutor: Dispatches commission line items and sweeps stale transfers
- ReconciliationWorker: Queries the gateway for collections with no callback

Usage:
    from premiums.workers import (
        generate_daily_settlement,
        generate_settlement_for_date,
        process_pending_payouts,
        execute_line_item_payout,
        sweep_stale_transfers,
        query_stale_collections,
    )

    process_pending_payouts.delay()
    generate_settlement_for_date.delay("2025-01-15")
"""

from premiums.workers.payout_executor import (
    execute_line_item_payout,
    process_pending_payouts,
    sweep_stale_transfers,
)
from premiums.workers.reconciliation_worker import query_stale_collections
from premiums.workers.settlement_worker import (
    generate_daily_settlement,
    generate_settlement_for_date,
)

__all__ = [
    # Settlement Worker
    "generate_daily_settlement",
    "generate_settlement_for_date",
    # Payout Executor
    "execute_line_item_payout",
    "process_pending_payouts",
    "sweep_stale_transfers",
    # Reconciliation Worker
    "query_stale_collections",
]
