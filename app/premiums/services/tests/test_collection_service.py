"""
Tests for CollectionService.

Tests cover:
- Input validation (amount, payer, subscription, phone)
- Payment persisted before the gateway call
- Exactly one STK push per initiation
- Failure mapping for unreachable / rejected gateway responses
- Payer-visible status
- A payer's payment history
"""

import uuid
from decimal import Decimal

import pytest

from membership.models import SubscriptionStatus
from membership.tests.factories import MemberFactory, SubscriptionFactory
from premiums.adapters import StkPushResult
from premiums.exceptions import (
    MpesaAuthenticationError,
    MpesaGatewayUnreachableError,
    MpesaRequestRejectedError,
    MpesaTimeoutError,
)
from premiums.models import AuditLogEntry, Payment
from premiums.services import CollectionService, InitiateCollectionParams
from premiums.state_machines import AuditAction, PaymentFailureCategory, PaymentState
from premiums.tests.factories import PaymentFactory


def get_fresh_payment(payment_id) -> Payment:
    """Re-read a Payment; protected FSM fields can't be refreshed in place."""
    return Payment.objects.get(id=payment_id)


def make_params(payer, subscription, **overrides):
    values = {
        "payer_id": payer.id,
        "subscription_id": subscription.id,
        "amount": 50,
    }
    values.update(overrides)
    return InitiateCollectionParams(**values)


# =============================================================================
# Validation
# =============================================================================


@pytest.mark.django_db
class TestInitiateCollectionValidation:
    def test_missing_fields(self, mock_mpesa_adapter):
        result = CollectionService.initiate_collection(
            InitiateCollectionParams(payer_id=None, subscription_id=None, amount=None)
        )

        assert result.success is False
        assert result.error_code == "VALIDATION_ERROR"
        assert set(result.errors) == {"payer_id", "subscription_id", "amount"}
        mock_mpesa_adapter.stk_push.assert_not_called()

    @pytest.mark.parametrize("amount", [Decimal("50.5"), 12.25, "fifty"])
    def test_fractional_amount_rejected(self, payer, subscription, mock_mpesa_adapter, amount):
        result = CollectionService.initiate_collection(
            make_params(payer, subscription, amount=amount)
        )

        assert result.error_code == "VALIDATION_ERROR"
        assert Payment.objects.count() == 0

    def test_amount_below_minimum(self, payer, subscription, mock_mpesa_adapter, settings):
        settings.MPESA_MIN_AMOUNT = 10

        result = CollectionService.initiate_collection(make_params(payer, subscription, amount=5))

        assert result.error_code == "VALIDATION_ERROR"
        assert "between" in result.error

    def test_amount_above_maximum(self, payer, subscription, mock_mpesa_adapter, settings):
        settings.MPESA_MAX_AMOUNT = 1000

        result = CollectionService.initiate_collection(
            make_params(payer, subscription, amount=1001)
        )

        assert result.error_code == "VALIDATION_ERROR"
        mock_mpesa_adapter.stk_push.assert_not_called()

    def test_unknown_payer(self, subscription, mock_mpesa_adapter):
        result = CollectionService.initiate_collection(
            InitiateCollectionParams(
                payer_id=uuid.uuid4(), subscription_id=subscription.id, amount=50
            )
        )

        assert result.error_code == "VALIDATION_ERROR"

    def test_inactive_payer(self, payer, subscription, mock_mpesa_adapter):
        payer.is_active = False
        payer.save()

        result = CollectionService.initiate_collection(make_params(payer, subscription))

        assert result.error_code == "VALIDATION_ERROR"

    def test_subscription_of_another_member(self, payer, mock_mpesa_adapter):
        other = SubscriptionFactory(member=MemberFactory())

        result = CollectionService.initiate_collection(make_params(payer, other))

        assert result.error_code == "VALIDATION_ERROR"
        assert "does not belong" in result.error

    def test_suspended_subscription(self, payer, mock_mpesa_adapter):
        suspended = SubscriptionFactory(member=payer, status=SubscriptionStatus.SUSPENDED)

        result = CollectionService.initiate_collection(make_params(payer, suspended))

        assert result.error_code == "VALIDATION_ERROR"

    def test_bad_phone_override(self, payer, subscription, mock_mpesa_adapter):
        result = CollectionService.initiate_collection(
            make_params(payer, subscription, phone_number="12345")
        )

        assert result.error_code == "VALIDATION_ERROR"
        mock_mpesa_adapter.stk_push.assert_not_called()


# =============================================================================
# Successful Initiation
# =============================================================================


@pytest.mark.django_db
class TestInitiateCollection:
    def test_creates_payment_and_stores_checkout_id(self, payer, subscription, mock_mpesa_adapter):
        result = CollectionService.initiate_collection(make_params(payer, subscription))

        assert result.success is True
        data = result.data
        assert data.checkout_request_id == "ws_CO_191220191020363925"
        assert len(data.correlation_token) == 32

        payment = get_fresh_payment(data.payment.id)
        assert payment.state == PaymentState.INITIATED
        assert payment.requested_amount == 50
        assert payment.gateway_request_id == "ws_CO_191220191020363925"
        assert payment.merchant_request_id == "29115-34620561-1"
        assert payment.correlation_token == data.correlation_token
        assert payment.version == 2

    def test_sends_exactly_one_push(self, payer, subscription, mock_mpesa_adapter):
        CollectionService.initiate_collection(make_params(payer, subscription))

        mock_mpesa_adapter.stk_push.assert_called_once()
        params = mock_mpesa_adapter.stk_push.call_args.args[0]
        assert params.amount == 50
        assert params.phone_number == f"254{payer.phone_number[1:]}"
        assert params.callback_url.startswith(
            "https://api.example.com/api/v1/premiums/webhooks/mpesa/stk/"
        )
        assert params.account_reference.startswith("MWU")
        assert len(params.account_reference) <= 12

    def test_phone_override_is_normalised(self, payer, subscription, mock_mpesa_adapter):
        result = CollectionService.initiate_collection(
            make_params(payer, subscription, phone_number="+254 711 222 333")
        )

        assert result.data.payment.phone_number == "254711222333"

    def test_integral_decimal_amount_accepted(self, payer, subscription, mock_mpesa_adapter):
        result = CollectionService.initiate_collection(
            make_params(payer, subscription, amount=Decimal("25.00"))
        )

        assert result.success is True
        assert result.data.payment.requested_amount == 25

    def test_audits_initiation(self, payer, subscription, mock_mpesa_adapter):
        result = CollectionService.initiate_collection(make_params(payer, subscription))

        entry = AuditLogEntry.objects.get(
            action=AuditAction.PAYMENT_INITIATED,
            entity_id=str(result.data.payment.id),
        )
        assert entry.new_state == PaymentState.INITIATED
        assert entry.details["requested_amount"] == 50

    def test_each_initiation_gets_new_token(self, payer, subscription, mock_mpesa_adapter):
        first = CollectionService.initiate_collection(make_params(payer, subscription))
        mock_mpesa_adapter.stk_push.return_value = StkPushResult(
            merchant_request_id="29115-34620561-2",
            checkout_request_id="ws_CO_191220191020363926",
            response_code="0",
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
        )
        second = CollectionService.initiate_collection(make_params(payer, subscription))

        assert first.data.correlation_token != second.data.correlation_token
        assert Payment.objects.count() == 2


# =============================================================================
# Gateway Failures
# =============================================================================


@pytest.mark.django_db
class TestInitiateCollectionGatewayFailures:
    @pytest.mark.parametrize(
        "error",
        [
            MpesaGatewayUnreachableError("Connection refused"),
            MpesaTimeoutError("Read timed out"),
            MpesaAuthenticationError("Invalid credentials"),
        ],
    )
    def test_unreachable_fails_payment(self, payer, subscription, mock_mpesa_adapter, error):
        mock_mpesa_adapter.stk_push.side_effect = error

        result = CollectionService.initiate_collection(make_params(payer, subscription))

        assert result.success is False
        assert result.error_code == "GATEWAY_UNREACHABLE"
        payment = Payment.objects.get()
        assert payment.state == PaymentState.FAILED
        assert payment.failure_category == PaymentFailureCategory.GATEWAY_UNREACHABLE
        assert payment.gateway_request_id is None

    def test_rejection_fails_payment(self, payer, subscription, mock_mpesa_adapter):
        mock_mpesa_adapter.stk_push.side_effect = MpesaRequestRejectedError(
            "Invalid phone number",
            result_code="400.002.02",
        )

        result = CollectionService.initiate_collection(make_params(payer, subscription))

        assert result.error_code == "GATEWAY_REJECTED"
        payment = Payment.objects.get()
        assert payment.state == PaymentState.FAILED
        assert payment.failure_category == PaymentFailureCategory.GATEWAY_REJECTED
        assert payment.result_code == "400.002.02"

    def test_failure_is_audited(self, payer, subscription, mock_mpesa_adapter):
        mock_mpesa_adapter.stk_push.side_effect = MpesaGatewayUnreachableError("DNS failure")

        CollectionService.initiate_collection(make_params(payer, subscription))

        payment = Payment.objects.get()
        actions = set(
            AuditLogEntry.objects.filter(entity_id=str(payment.id)).values_list(
                "action", flat=True
            )
        )
        assert actions == {AuditAction.PAYMENT_INITIATED, AuditAction.PAYMENT_FAILED}

    def test_initiation_is_never_retried(self, payer, subscription, mock_mpesa_adapter):
        mock_mpesa_adapter.stk_push.side_effect = MpesaGatewayUnreachableError("Refused")

        CollectionService.initiate_collection(make_params(payer, subscription))

        assert mock_mpesa_adapter.stk_push.call_count == 1


# =============================================================================
# Status
# =============================================================================


@pytest.mark.django_db
class TestGetPaymentStatus:
    def test_pending(self, initiated_payment):
        result = CollectionService.get_payment_status(initiated_payment.correlation_token)

        assert result.success is True
        assert result.data.status == "pending"
        assert "Check your phone" in result.data.message

    def test_success(self, confirmed_payment):
        result = CollectionService.get_payment_status(confirmed_payment.correlation_token)

        assert result.data.status == "success"

    def test_unsplit_reads_as_success(self, payer, subscription):
        payment = PaymentFactory(payer=payer, subscription=subscription, unsplit=True)

        result = CollectionService.get_payment_status(payment.correlation_token)

        assert result.data.status == "success"

    def test_failed_uses_failure_reason(self, payer, subscription):
        payment = PaymentFactory(payer=payer, subscription=subscription, failed=True)

        result = CollectionService.get_payment_status(payment.correlation_token)

        assert result.data.status == "failed"
        assert result.data.message == "Transaction cancelled by user."

    def test_unknown_token(self, db):
        result = CollectionService.get_payment_status("does-not-exist")

        assert result.error_code == "PAYMENT_NOT_FOUND"


# =============================================================================
# History
# =============================================================================


@pytest.mark.django_db
class TestPaymentHistory:
    def test_only_payers_payments_newest_first(self, payer, subscription):
        first = PaymentFactory(payer=payer, subscription=subscription, confirmed=True)
        second = PaymentFactory(payer=payer, subscription=subscription, failed=True)
        third = PaymentFactory(payer=payer, subscription=subscription)
        PaymentFactory()

        history = list(CollectionService.payment_history(payer.id))

        assert history == [third, second, first]

    def test_unknown_payer_is_empty(self, db):
        assert list(CollectionService.payment_history(uuid.uuid4())) == []
