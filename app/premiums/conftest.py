"""
Pytest fixtures for premium engine tests.

Lives at the app root so every tests/ package under premiums/ (services,
adapters, webhooks, workers) shares the same fixtures.

Usage:
    def test_confirm(initiated_payment, mock_mpesa_adapter):
        ...
"""

from unittest.mock import MagicMock

import pytest
from rest_framework.test import APIClient

from membership.tests.factories import MemberFactory, SubscriptionFactory
from premiums.adapters import B2CResult, StkPushResult, StkQueryResult
from premiums.services import CallbackReconciler, CollectionService, PayoutService
from premiums.state_machines import PayoutLineItemState
from premiums.tests.factories import (
    CommissionPayoutLineItemFactory,
    OutboundTransferFactory,
    PaymentFactory,
)


# =============================================================================
# Members
# =============================================================================


@pytest.fixture
def payer(db):
    """Member with a delegate (tier 1) and coordinator (tier 2)."""
    return MemberFactory(with_hierarchy=True)


@pytest.fixture
def subscription(db, payer):
    """Active subscription on the default 50/40/6/2 scheme."""
    return SubscriptionFactory(member=payer)


# =============================================================================
# Payments
# =============================================================================


@pytest.fixture
def initiated_payment(db, payer, subscription):
    """Payment awaiting its STK callback."""
    return PaymentFactory(payer=payer, subscription=subscription)


@pytest.fixture
def confirmed_payment(db, payer, subscription):
    return PaymentFactory(payer=payer, subscription=subscription, confirmed=True)


# =============================================================================
# Payouts
# =============================================================================


@pytest.fixture
def pending_line_item(db):
    """Due tier-1 line item with a payable recipient."""
    return CommissionPayoutLineItemFactory()


@pytest.fixture
def in_flight_transfer(db):
    """
    Transfer awaiting its B2C result, with its line item PROCESSING.

    The item's current_transfer_token points at this transfer.
    """
    item = CommissionPayoutLineItemFactory(
        state=PayoutLineItemState.PROCESSING,
        attempt_count=1,
    )
    transfer = OutboundTransferFactory(line_item=item)
    type(item).objects.filter(id=item.id).update(
        current_transfer_token=transfer.correlation_token
    )
    return transfer


# =============================================================================
# Gateway
# =============================================================================


@pytest.fixture
def mock_mpesa_adapter():
    """
    Mock MpesaAdapter injected into every service that calls the gateway.

    Defaults: STK push accepted, status query final with ResultCode 0,
    B2C request accepted.
    """
    adapter = MagicMock()
    adapter.stk_push.return_value = StkPushResult(
        merchant_request_id="29115-34620561-1",
        checkout_request_id="ws_CO_191220191020363925",
        response_code="0",
        response_description="Success. Request accepted for processing",
        customer_message="Success. Request accepted for processing",
    )
    adapter.stk_query.side_effect = lambda checkout_request_id: StkQueryResult(
        checkout_request_id=checkout_request_id,
        result_code="0",
        result_description="The service request is processed successfully.",
    )
    adapter.b2c_payment.side_effect = lambda params: B2CResult(
        conversation_id=f"AG_20250115_{params.originator_conversation_id[:12]}",
        originator_conversation_id=params.originator_conversation_id,
        response_code="0",
        response_description="Accept the service request successfully.",
    )

    services = (CollectionService, CallbackReconciler, PayoutService)
    for service in services:
        service.set_mpesa_adapter(adapter)
    yield adapter
    for service in services:
        service.set_mpesa_adapter(None)


# =============================================================================
# API Clients
# =============================================================================


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def payer_client(db, django_user_model, payer):
    """Client authenticated as the non-staff user linked to ``payer``."""
    user = django_user_model.objects.create_user(username="payer", password="testpass123")
    payer.user = user
    payer.save(update_fields=["user"])
    client = APIClient()
    client.force_authenticate(user=user)
    return client


@pytest.fixture
def operator_client(db, admin_user):
    """Client authenticated as a staff user (IsAdminUser)."""
    client = APIClient()
    client.force_authenticate(user=admin_user)
    return client


# =============================================================================
# Redis
# =============================================================================


@pytest.fixture(autouse=True)
def mock_redis(mocker):
    """
    Mock Redis client behind DistributedLock.

    Tests run on the local-memory cache, which has no raw Redis
    connection. Locks are free by default; set ``mock_redis.set`` to
    simulate contention.
    """
    client = mocker.MagicMock()
    client.set.return_value = True
    client.eval.return_value = 1
    mocker.patch("premiums.locks.get_redis_connection", return_value=client)
    return client
