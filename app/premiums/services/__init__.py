"""
Engine services for collection, reconciliation, settlement and payout.

This module provides:
- CollectionService: Entry point for STK-push premium collection
- CallbackReconciler: Applies gateway outcomes to payments
- CommissionCalculator: Computes the four-way split of a confirmed amount
- SettlementService: Freezes a day's payments into a settlement batch
- PayoutService: Disburses commissions via B2C with bounded retry
- AuditTrail: Records every state change

Usage:
    from premiums.services import CollectionService, InitiateCollectionParams

    # Initiate a collection
    result = CollectionService.initiate_collection(
        InitiateCollectionParams(
            payer_id=member.id,
            subscription_id=subscription.id,
            amount=50,
        )
    )

    # Settle yesterday
    from premiums.services import SettlementService

    result = SettlementService.generate_settlement(yesterday)

    # Dispatch a payout line item
    from premiums.services import PayoutService

    result = PayoutService.dispatch_line_item(line_item_id)
"""

from premiums.services.audit_trail import AuditTrail
from premiums.services.callback_reconciler import (
    CallbackReconciler,
    ReconciliationOutcome,
    StatusQueryOutcome,
)
from premiums.services.collection_service import (
    CollectionInitiationResult,
    CollectionService,
    InitiateCollectionParams,
    PaymentStatus,
)
from premiums.services.commission_calculator import (
    CommissionAllocation,
    CommissionCalculator,
    CommissionSplit,
    calculate_split,
)
from premiums.services.payout_service import (
    PayoutDispatchResult,
    PayoutService,
    SweepResult,
    TransferReconciliationOutcome,
)
from premiums.services.rate_resolver import RateResolver, RateStructure
from premiums.services.settlement_service import (
    SettlementRunResult,
    SettlementService,
    SettlementSummary,
    period_bounds,
)

__all__ = [
    "AuditTrail",
    "CallbackReconciler",
    "CollectionInitiationResult",
    "CollectionService",
    "CommissionAllocation",
    "CommissionCalculator",
    "CommissionSplit",
    "InitiateCollectionParams",
    "PaymentStatus",
    "PayoutDispatchResult",
    "PayoutService",
    "RateResolver",
    "RateStructure",
    "ReconciliationOutcome",
    "SettlementRunResult",
    "SettlementService",
    "SettlementSummary",
    "StatusQueryOutcome",
    "SweepResult",
    "TransferReconciliationOutcome",
    "calculate_split",
    "period_bounds",
]
