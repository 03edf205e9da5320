"""
Tests for payout_executor worker tasks.

This module tests the Celery tasks that queue due commission line items,
dispatch them over B2C and sweep transfers whose result never arrived.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch
from uuid import uuid4

import pytest
from django.utils import timezone

from membership.tests.factories import MemberFactory
from premiums.models import CommissionPayoutLineItem, OutboundTransfer
from premiums.state_machines import PayoutLineItemState, TransferOutcome
from premiums.tests.factories import CommissionPayoutLineItemFactory
from premiums.workers.payout_executor import (
    execute_line_item_payout,
    process_pending_payouts,
    sweep_stale_transfers,
)


@pytest.fixture
def mock_execute_delay():
    with patch("premiums.workers.payout_executor.execute_line_item_payout.delay") as mocked:
        yield mocked


# =============================================================================
# process_pending_payouts
# =============================================================================


@pytest.mark.django_db
class TestProcessPendingPayouts:
    def test_queues_due_line_items(self, mock_execute_delay):
        due = [CommissionPayoutLineItemFactory(), CommissionPayoutLineItemFactory()]
        CommissionPayoutLineItemFactory(state=PayoutLineItemState.PAID)
        CommissionPayoutLineItemFactory(next_attempt_at=timezone.now() + timedelta(hours=1))

        result = process_pending_payouts()

        assert result == {"queued_count": 2}
        queued = {call.args[0] for call in mock_execute_delay.call_args_list}
        assert queued == {str(item.id) for item in due}

    def test_respects_limit(self, mock_execute_delay):
        for _ in range(3):
            CommissionPayoutLineItemFactory()

        result = process_pending_payouts(limit=2)

        assert result["queued_count"] == 2

    def test_queue_failure_is_not_counted(self, mock_execute_delay):
        CommissionPayoutLineItemFactory()
        mock_execute_delay.side_effect = ConnectionError("broker down")

        result = process_pending_payouts()

        assert result["queued_count"] == 0

    def test_nothing_due(self, mock_execute_delay):
        assert process_pending_payouts() == {"queued_count": 0}
        mock_execute_delay.assert_not_called()


# =============================================================================
# execute_line_item_payout
# =============================================================================


@pytest.mark.django_db
class TestExecuteLineItemPayout:
    def test_dispatches(self, pending_line_item, mock_mpesa_adapter):
        result = execute_line_item_payout(str(pending_line_item.id))

        assert result["status"] == "dispatched"
        transfer = OutboundTransfer.objects.get(line_item_id=pending_line_item.id)
        assert result["correlation_token"] == transfer.correlation_token
        assert transfer.outcome == TransferOutcome.IN_FLIGHT
        item = CommissionPayoutLineItem.objects.get(id=pending_line_item.id)
        assert item.state == PayoutLineItemState.PROCESSING
        mock_mpesa_adapter.b2c_payment.assert_called_once()

    def test_second_run_does_not_dispatch_again(self, pending_line_item, mock_mpesa_adapter):
        execute_line_item_payout(str(pending_line_item.id))

        result = execute_line_item_payout(str(pending_line_item.id))

        assert result["status"] == "skipped"
        assert mock_mpesa_adapter.b2c_payment.call_count == 1

    def test_not_due_is_skipped(self, mock_mpesa_adapter):
        item = CommissionPayoutLineItemFactory(
            next_attempt_at=timezone.now() + timedelta(minutes=10)
        )

        result = execute_line_item_payout(str(item.id))

        assert result == {
            "status": "skipped",
            "line_item_id": str(item.id),
            "reason": "not due",
        }

    def test_invalid_id(self, db, mock_mpesa_adapter):
        result = execute_line_item_payout("not-a-uuid")

        assert result["status"] == "not_found"

    def test_unknown_id(self, db, mock_mpesa_adapter):
        result = execute_line_item_payout(str(uuid4()))

        assert result["status"] == "not_found"
        assert result["error_code"] == "LINE_ITEM_NOT_FOUND"

    def test_unpayable_recipient_fails(self, mock_mpesa_adapter):
        item = CommissionPayoutLineItemFactory(recipient=MemberFactory(is_active=False))

        result = execute_line_item_payout(str(item.id))

        assert result["status"] == "failed"
        assert result["error_code"] == "RECIPIENT_NOT_PAYABLE"
        mock_mpesa_adapter.b2c_payment.assert_not_called()


# =============================================================================
# sweep_stale_transfers
# =============================================================================


@pytest.mark.django_db
class TestSweepStaleTransfers:
    def test_reports_swept_count(self, in_flight_transfer, settings):
        settings.PAYOUT_STALE_TRANSFER_MINUTES = 60
        OutboundTransfer.objects.filter(id=in_flight_transfer.id).update(
            created_at=timezone.now() - timedelta(minutes=90)
        )

        assert sweep_stale_transfers() == {"swept_count": 1}
        item = CommissionPayoutLineItem.objects.get(id=in_flight_transfer.line_item_id)
        assert item.requires_intervention is True

    def test_nothing_stale(self, in_flight_transfer):
        assert sweep_stale_transfers() == {"swept_count": 0}
