"""
State machine enums for premium collection and payout models.
"""

from premiums.state_machines.states import (
    AuditAction,
    CallbackEventStatus,
    CallbackKind,
    PaymentFailureCategory,
    PaymentState,
    PayoutLineItemState,
    RecipientRole,
    TransferOutcome,
)

__all__ = [
    "AuditAction",
    "CallbackEventStatus",
    "CallbackKind",
    "PaymentFailureCategory",
    "PaymentState",
    "PayoutLineItemState",
    "RecipientRole",
    "TransferOutcome",
]
