"""
Tests for CallbackReconciler.

Tests cover:
- Success callbacks confirming with a frozen split
- Blocked splits parking the payment in CONFIRMED_UNSPLIT
- Declines failing the payment
- Duplicate deliveries and late callbacks after a terminal state
- The status-query fallback
- Operator resolution of unsplit payments
"""

import uuid
from unittest.mock import patch

import pytest

from membership.tests.factories import MedicalSchemeFactory, SubscriptionFactory
from premiums.adapters import StkQueryResult
from premiums.exceptions import MpesaGatewayUnreachableError
from premiums.models import AuditLogEntry, Payment
from premiums.services import CallbackReconciler
from premiums.state_machines import AuditAction, PaymentFailureCategory, PaymentState
from premiums.tests.factories import PaymentFactory, stk_callback_payload
from premiums.webhooks.payloads import parse_stk_callback


def get_fresh_payment(payment_id) -> Payment:
    return Payment.objects.get(id=payment_id)


def audit_actions(payment) -> list[str]:
    return list(
        AuditLogEntry.objects.filter(entity_id=str(payment.id)).values_list("action", flat=True)
    )


def success_callback(payment, **kwargs):
    return parse_stk_callback(stk_callback_payload(payment.gateway_request_id, **kwargs))


@pytest.fixture
def unsplittable_payment(db, payer):
    """INITIATED payment whose scheme has no rate structure."""
    scheme = MedicalSchemeFactory(insurer_portion=None)
    subscription = SubscriptionFactory(member=payer, scheme=scheme)
    return PaymentFactory(payer=payer, subscription=subscription)


# =============================================================================
# Success
# =============================================================================


@pytest.mark.django_db
class TestReconcileSuccess:
    def test_confirms_with_split(self, initiated_payment):
        result = CallbackReconciler.reconcile_collection(success_callback(initiated_payment))

        assert result.success is True
        assert result.data.duplicate is False
        assert result.data.previous_state == PaymentState.INITIATED

        payment = get_fresh_payment(initiated_payment.id)
        assert payment.state == PaymentState.CONFIRMED
        assert payment.confirmed_amount == 50
        assert payment.receipt_number == "QKJ12ABC34"
        assert payment.insurer_portion == 40
        assert payment.tier1_commission == 6
        assert payment.tier2_commission == 2
        assert payment.platform_residual == 2
        assert payment.tier1_recipient_id == initiated_payment.payer.delegate_id
        assert payment.tier2_recipient_id == initiated_payment.payer.coordinator_id
        assert payment.confirmed_at is not None
        assert payment.gateway_transaction_at is not None

    def test_confirmed_amount_is_authoritative(self, initiated_payment):
        CallbackReconciler.reconcile_collection(success_callback(initiated_payment, amount=25))

        payment = get_fresh_payment(initiated_payment.id)
        assert payment.confirmed_amount == 25
        assert payment.amount_discrepancy == -25
        assert payment.insurer_portion == 20
        assert payment.split_total == 25
        assert AuditAction.AMOUNT_DISCREPANCY in audit_actions(payment)

    def test_missing_amount_falls_back_to_requested(self, initiated_payment):
        CallbackReconciler.reconcile_collection(
            success_callback(initiated_payment, amount=None)
        )

        payment = get_fresh_payment(initiated_payment.id)
        assert payment.confirmed_amount == 50
        assert payment.amount_discrepancy is None

    def test_audits_confirmation(self, initiated_payment):
        CallbackReconciler.reconcile_collection(success_callback(initiated_payment))

        entry = AuditLogEntry.objects.get(
            action=AuditAction.PAYMENT_CONFIRMED,
            entity_id=str(initiated_payment.id),
        )
        assert entry.old_state == PaymentState.INITIATED
        assert entry.new_state == PaymentState.CONFIRMED
        assert entry.details["platform_residual"] == 2
        assert entry.details["synthetic"] is False

    def test_blocked_split_confirms_unsplit(self, unsplittable_payment):
        result = CallbackReconciler.reconcile_collection(success_callback(unsplittable_payment))

        assert result.success is True
        payment = get_fresh_payment(unsplittable_payment.id)
        assert payment.state == PaymentState.CONFIRMED_UNSPLIT
        assert payment.confirmed_amount == 50
        assert payment.insurer_portion is None
        assert "no rate structure" in payment.unsplit_reason
        assert audit_actions(payment) == [AuditAction.PAYMENT_CONFIRMED_UNSPLIT]

    def test_unknown_checkout_request_id(self, db):
        callback = parse_stk_callback(stk_callback_payload("ws_CO_UNKNOWN"))

        result = CallbackReconciler.reconcile_collection(callback)

        assert result.success is False
        assert result.error_code == "PAYMENT_NOT_FOUND"

    def test_success_for_payment_that_timed_out_logs_error(self, payer, subscription):
        # The push timed out, so the payment never learned its CheckoutRequestID
        PaymentFactory(
            payer=payer,
            subscription=subscription,
            failed=True,
            failure_category=PaymentFailureCategory.GATEWAY_UNREACHABLE,
            gateway_request_id=None,
        )
        callback = parse_stk_callback(stk_callback_payload("ws_CO_AFTER_TIMEOUT"))

        with patch.object(CallbackReconciler, "get_logger") as get_logger:
            result = CallbackReconciler.reconcile_collection(callback)

        assert result.error_code == "PAYMENT_NOT_FOUND"
        get_logger.return_value.error.assert_called_once()
        assert get_logger.return_value.error.call_args.kwargs["extra"]["receipt_number"] == (
            "QKJ12ABC34"
        )

    def test_unknown_decline_only_warns(self, db):
        callback = parse_stk_callback(stk_callback_payload("ws_CO_UNKNOWN", result_code=1032))

        with patch.object(CallbackReconciler, "get_logger") as get_logger:
            CallbackReconciler.reconcile_collection(callback)

        get_logger.return_value.error.assert_not_called()
        get_logger.return_value.warning.assert_called_once()


# =============================================================================
# Decline
# =============================================================================


@pytest.mark.django_db
class TestReconcileDecline:
    def test_decline_fails_payment(self, initiated_payment):
        callback = success_callback(initiated_payment, result_code=1032)

        result = CallbackReconciler.reconcile_collection(callback)

        assert result.success is True
        payment = get_fresh_payment(initiated_payment.id)
        assert payment.state == PaymentState.FAILED
        assert payment.failure_category == PaymentFailureCategory.EXPLICIT_DECLINE
        assert payment.result_code == "1032"
        assert payment.failure_reason == "Request cancelled by user"
        assert payment.receipt_number is None
        assert audit_actions(payment) == [AuditAction.PAYMENT_FAILED]

    def test_decline_without_description_uses_known_message(self, initiated_payment):
        callback = parse_stk_callback(
            {
                "Body": {
                    "stkCallback": {
                        "MerchantRequestID": "29115-1",
                        "CheckoutRequestID": initiated_payment.gateway_request_id,
                        "ResultCode": 1,
                        "ResultDesc": "",
                    }
                }
            }
        )

        CallbackReconciler.reconcile_collection(callback)

        payment = get_fresh_payment(initiated_payment.id)
        assert payment.state == PaymentState.FAILED
        assert payment.failure_reason


# =============================================================================
# Duplicates
# =============================================================================


@pytest.mark.django_db
class TestReconcileDuplicates:
    def test_second_delivery_is_noop(self, initiated_payment):
        callback = success_callback(initiated_payment)
        CallbackReconciler.reconcile_collection(callback)
        first = get_fresh_payment(initiated_payment.id)

        result = CallbackReconciler.reconcile_collection(callback)

        assert result.success is True
        assert result.data.duplicate is True
        second = get_fresh_payment(initiated_payment.id)
        assert second.version == first.version
        assert second.confirmed_at == first.confirmed_at
        assert AuditAction.DUPLICATE_NOTIFICATION in audit_actions(second)

    def test_late_success_after_failure_does_not_confirm(self, payer, subscription):
        payment = PaymentFactory(payer=payer, subscription=subscription, failed=True)

        result = CallbackReconciler.reconcile_collection(success_callback(payment))

        assert result.data.duplicate is True
        assert get_fresh_payment(payment.id).state == PaymentState.FAILED

    def test_late_success_after_failure_is_audited_for_refund(self, payer, subscription):
        payment = PaymentFactory(payer=payer, subscription=subscription, failed=True)

        with patch.object(CallbackReconciler, "get_logger") as get_logger:
            CallbackReconciler.reconcile_collection(success_callback(payment))

        get_logger.return_value.error.assert_called_once()
        assert AuditAction.LATE_COLLECTION_SUCCESS in audit_actions(payment)
        assert AuditAction.DUPLICATE_NOTIFICATION not in audit_actions(payment)
        entry = AuditLogEntry.objects.get(
            entity_id=str(payment.id), action=AuditAction.LATE_COLLECTION_SUCCESS
        )
        assert entry.details["checkout_request_id"] == payment.gateway_request_id
        assert entry.details["receipt_number"]
        assert get_fresh_payment(payment.id).confirmed_amount is None

    def test_late_decline_after_failure_is_plain_duplicate(self, payer, subscription):
        payment = PaymentFactory(payer=payer, subscription=subscription, failed=True)

        CallbackReconciler.reconcile_collection(success_callback(payment, result_code=1032))

        assert AuditAction.DUPLICATE_NOTIFICATION in audit_actions(payment)
        assert AuditAction.LATE_COLLECTION_SUCCESS not in audit_actions(payment)

    def test_decline_after_confirmation_is_ignored(self, initiated_payment):
        CallbackReconciler.reconcile_collection(success_callback(initiated_payment))

        CallbackReconciler.reconcile_collection(
            success_callback(initiated_payment, result_code=1032)
        )

        assert get_fresh_payment(initiated_payment.id).state == PaymentState.CONFIRMED


# =============================================================================
# Status Query Fallback
# =============================================================================


@pytest.mark.django_db
class TestApplyStatusQuery:
    def test_final_success_confirms(self, initiated_payment, mock_mpesa_adapter):
        result = CallbackReconciler.apply_status_query(initiated_payment.id)

        assert result.success is True
        assert result.data.queried is True
        assert result.data.final is True
        assert result.data.result_code == "0"
        payment = get_fresh_payment(initiated_payment.id)
        assert payment.state == PaymentState.CONFIRMED
        assert payment.confirmed_amount == 50
        assert payment.last_status_query_at is not None

        entry = AuditLogEntry.objects.get(
            action=AuditAction.PAYMENT_CONFIRMED,
            entity_id=str(payment.id),
        )
        assert entry.details["synthetic"] is True

    def test_final_decline_fails(self, initiated_payment, mock_mpesa_adapter):
        mock_mpesa_adapter.stk_query.side_effect = lambda checkout_request_id: StkQueryResult(
            checkout_request_id=checkout_request_id,
            result_code="1032",
            result_description="Request cancelled by user",
        )

        CallbackReconciler.apply_status_query(initiated_payment.id)

        assert get_fresh_payment(initiated_payment.id).state == PaymentState.FAILED

    def test_still_processing_leaves_payment(self, initiated_payment, mock_mpesa_adapter):
        mock_mpesa_adapter.stk_query.side_effect = lambda checkout_request_id: StkQueryResult(
            checkout_request_id=checkout_request_id,
            error_code="500.001.1001",
            result_description="The transaction is being processed",
        )

        result = CallbackReconciler.apply_status_query(initiated_payment.id)

        assert result.data.queried is True
        assert result.data.final is False
        payment = get_fresh_payment(initiated_payment.id)
        assert payment.state == PaymentState.INITIATED
        assert payment.last_status_query_at is not None

    def test_gateway_error_is_reported(self, initiated_payment, mock_mpesa_adapter):
        mock_mpesa_adapter.stk_query.side_effect = MpesaGatewayUnreachableError("Refused")

        result = CallbackReconciler.apply_status_query(initiated_payment.id)

        assert result.success is False
        assert result.error_code == "MPESA_UNREACHABLE"
        assert get_fresh_payment(initiated_payment.id).state == PaymentState.INITIATED

    def test_terminal_payment_not_queried(self, confirmed_payment, mock_mpesa_adapter):
        result = CallbackReconciler.apply_status_query(confirmed_payment.id)

        assert result.data.queried is False
        mock_mpesa_adapter.stk_query.assert_not_called()

    def test_payment_without_checkout_id_not_queried(self, payer, subscription, mock_mpesa_adapter):
        payment = PaymentFactory(payer=payer, subscription=subscription, gateway_request_id=None)

        result = CallbackReconciler.apply_status_query(payment.id)

        assert result.data.queried is False
        mock_mpesa_adapter.stk_query.assert_not_called()

    def test_late_real_callback_is_duplicate(self, initiated_payment, mock_mpesa_adapter):
        CallbackReconciler.apply_status_query(initiated_payment.id)

        result = CallbackReconciler.reconcile_collection(success_callback(initiated_payment))

        assert result.data.duplicate is True


# =============================================================================
# Operator Resolution
# =============================================================================


@pytest.mark.django_db
class TestResolveUnsplit:
    def test_resolves_once_rates_exist(self, unsplittable_payment):
        CallbackReconciler.reconcile_collection(success_callback(unsplittable_payment))
        scheme = unsplittable_payment.subscription.scheme
        scheme.insurer_portion = 40
        scheme.save()
        payment = get_fresh_payment(unsplittable_payment.id)

        result = CallbackReconciler.resolve_unsplit(payment.id, payment.version, actor="ops@example.com")

        assert result.success is True
        payment = get_fresh_payment(payment.id)
        assert payment.state == PaymentState.CONFIRMED
        assert payment.split_total == 50
        assert payment.confirmed_at is not None

        entry = AuditLogEntry.objects.get(
            action=AuditAction.PAYMENT_UNSPLIT_RESOLVED,
            entity_id=str(payment.id),
        )
        assert entry.actor == "ops@example.com"
        assert entry.old_state == PaymentState.CONFIRMED_UNSPLIT

    def test_still_missing_rates(self, unsplittable_payment):
        CallbackReconciler.reconcile_collection(success_callback(unsplittable_payment))
        payment = get_fresh_payment(unsplittable_payment.id)

        result = CallbackReconciler.resolve_unsplit(payment.id, payment.version)

        assert result.error_code == "RATE_STRUCTURE_MISSING"
        assert get_fresh_payment(payment.id).state == PaymentState.CONFIRMED_UNSPLIT

    def test_stale_version(self, payer, subscription):
        payment = PaymentFactory(payer=payer, subscription=subscription, unsplit=True)

        result = CallbackReconciler.resolve_unsplit(payment.id, payment.version + 1)

        assert result.error_code == "STALE_RECORD"

    def test_wrong_state(self, confirmed_payment):
        result = CallbackReconciler.resolve_unsplit(confirmed_payment.id, confirmed_payment.version)

        assert result.error_code == "INVALID_STATE_TRANSITION"

    def test_unknown_payment(self, db):
        result = CallbackReconciler.resolve_unsplit(uuid.uuid4(), 1)

        assert result.error_code == "PAYMENT_NOT_FOUND"
