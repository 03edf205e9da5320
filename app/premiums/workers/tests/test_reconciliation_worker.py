"""
Tests for reconciliation_worker tasks.

Tests cover:
- Which INITIATED payments are queried
- Final results applied, non-final results left alone
- Gateway failures counted as errors
"""

from datetime import timedelta

import pytest
from django.utils import timezone

from premiums.adapters import StkQueryResult
from premiums.exceptions import MpesaGatewayUnreachableError
from premiums.models import Payment
from premiums.state_machines import PaymentState
from premiums.tests.factories import PaymentFactory
from premiums.workers.reconciliation_worker import query_stale_collections


def get_fresh_payment(payment_id):
    return Payment.objects.get(id=payment_id)


def backdate(payment, minutes: int) -> None:
    Payment.objects.filter(id=payment.id).update(
        created_at=timezone.now() - timedelta(minutes=minutes)
    )


@pytest.fixture
def stale_payment(initiated_payment, settings):
    settings.COLLECTION_STATUS_QUERY_AFTER_MINUTES = 5
    backdate(initiated_payment, 10)
    return initiated_payment


@pytest.mark.django_db
class TestQueryStaleCollections:
    def test_final_result_resolves_payment(self, stale_payment, mock_mpesa_adapter):
        result = query_stale_collections()

        assert result == {"checked": 1, "resolved": 1, "errors": 0}
        mock_mpesa_adapter.stk_query.assert_called_once_with(stale_payment.gateway_request_id)
        assert get_fresh_payment(stale_payment.id).state == PaymentState.CONFIRMED

    def test_decline_resolves_payment(self, stale_payment, mock_mpesa_adapter):
        mock_mpesa_adapter.stk_query.side_effect = lambda checkout_request_id: StkQueryResult(
            checkout_request_id=checkout_request_id,
            result_code="1032",
            result_description="Request cancelled by user",
        )

        result = query_stale_collections()

        assert result["resolved"] == 1
        assert get_fresh_payment(stale_payment.id).state == PaymentState.FAILED

    def test_still_processing_left_initiated(self, stale_payment, mock_mpesa_adapter):
        mock_mpesa_adapter.stk_query.side_effect = lambda checkout_request_id: StkQueryResult(
            checkout_request_id=checkout_request_id,
            error_code="500.001.1001",
        )

        result = query_stale_collections()

        assert result == {"checked": 1, "resolved": 0, "errors": 0}
        payment = get_fresh_payment(stale_payment.id)
        assert payment.state == PaymentState.INITIATED
        assert payment.last_status_query_at is not None

    def test_queried_at_most_once_per_window(self, stale_payment, mock_mpesa_adapter):
        mock_mpesa_adapter.stk_query.side_effect = lambda checkout_request_id: StkQueryResult(
            checkout_request_id=checkout_request_id,
            error_code="500.001.1001",
        )
        query_stale_collections()

        result = query_stale_collections()

        assert result["checked"] == 0
        assert mock_mpesa_adapter.stk_query.call_count == 1

    def test_recent_payment_not_queried(self, initiated_payment, mock_mpesa_adapter):
        result = query_stale_collections()

        assert result["checked"] == 0
        mock_mpesa_adapter.stk_query.assert_not_called()

    def test_terminal_and_unsent_payments_not_queried(
        self, payer, subscription, mock_mpesa_adapter
    ):
        for payment in (
            PaymentFactory(payer=payer, subscription=subscription, confirmed=True),
            PaymentFactory(payer=payer, subscription=subscription, failed=True),
            PaymentFactory(payer=payer, subscription=subscription, gateway_request_id=None),
        ):
            backdate(payment, 30)

        result = query_stale_collections()

        assert result["checked"] == 0

    def test_gateway_error_counted(self, stale_payment, mock_mpesa_adapter):
        mock_mpesa_adapter.stk_query.side_effect = MpesaGatewayUnreachableError("down")

        result = query_stale_collections()

        assert result == {"checked": 1, "resolved": 0, "errors": 1}
        assert get_fresh_payment(stale_payment.id).state == PaymentState.INITIATED

    def test_oldest_first_and_limited(self, payer, subscription, mock_mpesa_adapter):
        older = PaymentFactory(payer=payer, subscription=subscription)
        newer = PaymentFactory(payer=payer, subscription=subscription)
        backdate(older, 30)
        backdate(newer, 20)

        result = query_stale_collections(max_records=1)

        assert result["checked"] == 1
        mock_mpesa_adapter.stk_query.assert_called_once_with(older.gateway_request_id)
