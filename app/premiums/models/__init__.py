"""
Premium engine models.

This module contains all engine models:
- Payment: One attempted STK-push collection and its frozen commission split
- SettlementBatch / SettlementBatchEntry: Immutable daily settlement
- CommissionPayoutLineItem: Commission owed to one recipient per batch
- OutboundTransfer: One B2C disbursement attempt for a line item
- CallbackEvent: Inbound gateway notification store
- AuditLogEntry: Append-only record of state changes
"""

from premiums.models.audit_log import AuditLogEntry
from premiums.models.callback_event import CallbackEvent
from premiums.models.outbound_transfer import OutboundTransfer
from premiums.models.payment import Payment
from premiums.models.payout import CommissionPayoutLineItem
from premiums.models.settlement import SettlementBatch, SettlementBatchEntry

__all__ = [
    "AuditLogEntry",
    "CallbackEvent",
    "CommissionPayoutLineItem",
    "OutboundTransfer",
    "Payment",
    "SettlementBatch",
    "SettlementBatchEntry",
]
