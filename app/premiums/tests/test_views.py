"""
Tests for the premiums API views.

Tests cover:
- Collection initiation and status polling (payer derived from the signed-in member)
- Settlement browsing and on-demand generation (staff only)
- Payout listing, filtering and manual retry
- Resolving the split of an unsplit payment
- Settlement reporting (breakdown, summary, stats)
- A payer's history and a recipient's own payouts
- Error code to HTTP status mapping
"""

import uuid
from datetime import date

import pytest
from django.urls import reverse
from freezegun import freeze_time
from rest_framework.test import APIClient

from membership.tests.factories import MedicalSchemeFactory, MemberFactory, SubscriptionFactory
from premiums.exceptions import MpesaGatewayUnreachableError
from premiums.models import Payment, SettlementBatch
from premiums.state_machines import PaymentState, PayoutLineItemState, RecipientRole
from premiums.tests.factories import (
    CommissionPayoutLineItemFactory,
    PaymentFactory,
    SettlementBatchFactory,
)


# =============================================================================
# Authentication
# =============================================================================


@pytest.mark.django_db
class TestPermissions:
    @pytest.mark.parametrize(
        "route_name",
        [
            "premiums:collection-initiate",
            "premiums:payment-history",
            "premiums:my-payout-list",
            "premiums:settlement-list",
            "premiums:payout-list",
        ],
    )
    def test_anonymous_forbidden(self, api_client, route_name):
        response = api_client.get(reverse(route_name))

        assert response.status_code == 403

    @pytest.mark.parametrize(
        "route_name",
        [
            "premiums:settlement-list",
            "premiums:settlement-summary",
            "premiums:settlement-stats",
            "premiums:payout-list",
        ],
    )
    def test_operator_views_require_staff(self, payer_client, route_name):
        response = payer_client.get(reverse(route_name))

        assert response.status_code == 403


# =============================================================================
# Collections
# =============================================================================


@pytest.mark.django_db
class TestCollectionInitiateView:
    def post(self, client, **data):
        return client.post(reverse("premiums:collection-initiate"), data, format="json")

    def test_push_sent(self, payer_client, payer, subscription, mock_mpesa_adapter):
        response = self.post(
            payer_client,
            payer_id=str(payer.id),
            subscription_id=str(subscription.id),
            amount="50",
        )

        assert response.status_code == 202
        assert response.data["checkout_request_id"] == "ws_CO_191220191020363925"
        assert response.data["status"] == "pending"
        payment = Payment.objects.get(correlation_token=response.data["correlation_token"])
        assert payment.state == PaymentState.INITIATED
        assert payment.requested_amount == 50

    def test_missing_fields(self, payer_client, mock_mpesa_adapter):
        response = self.post(payer_client, amount="50")

        assert response.status_code == 400
        assert "payer_id" not in response.data
        assert "subscription_id" in response.data
        mock_mpesa_adapter.stk_push.assert_not_called()

    def test_fractional_amount(self, payer_client, payer, subscription, mock_mpesa_adapter):
        response = self.post(
            payer_client,
            payer_id=str(payer.id),
            subscription_id=str(subscription.id),
            amount="50.50",
        )

        assert response.status_code == 400
        assert response.data["error_code"] == "VALIDATION_ERROR"
        assert Payment.objects.count() == 0

    def test_gateway_unreachable(self, payer_client, payer, subscription, mock_mpesa_adapter):
        mock_mpesa_adapter.stk_push.side_effect = MpesaGatewayUnreachableError("down")

        response = self.post(
            payer_client,
            payer_id=str(payer.id),
            subscription_id=str(subscription.id),
            amount="50",
        )

        assert response.status_code == 502
        assert response.data["error_code"] == "GATEWAY_UNREACHABLE"

    def test_payer_taken_from_signed_in_member(
        self, payer_client, payer, subscription, mock_mpesa_adapter
    ):
        response = self.post(payer_client, subscription_id=str(subscription.id), amount="50")

        assert response.status_code == 202
        payment = Payment.objects.get(correlation_token=response.data["correlation_token"])
        assert payment.payer_id == payer.id

    def test_cannot_pay_as_another_member(self, payer_client, mock_mpesa_adapter):
        other = MemberFactory(with_hierarchy=True)
        other_subscription = SubscriptionFactory(member=other)

        response = self.post(
            payer_client,
            payer_id=str(other.id),
            subscription_id=str(other_subscription.id),
            amount="50",
        )

        assert response.status_code == 403
        assert response.data["error_code"] == "PAYER_MISMATCH"
        mock_mpesa_adapter.stk_push.assert_not_called()
        assert Payment.objects.count() == 0

    def test_user_without_member_profile(self, django_user_model, subscription, mock_mpesa_adapter):
        user = django_user_model.objects.create_user(username="visitor", password="testpass123")
        client = APIClient()
        client.force_authenticate(user=user)

        response = self.post(client, subscription_id=str(subscription.id), amount="50")

        assert response.status_code == 403
        assert response.data["error_code"] == "MEMBER_PROFILE_REQUIRED"

    def test_staff_initiates_on_behalf_of_member(
        self, operator_client, payer, subscription, mock_mpesa_adapter
    ):
        response = self.post(
            operator_client,
            payer_id=str(payer.id),
            subscription_id=str(subscription.id),
            amount="50",
        )

        assert response.status_code == 202
        assert Payment.objects.get().payer_id == payer.id

    def test_staff_must_name_payer(self, operator_client, subscription, mock_mpesa_adapter):
        response = self.post(operator_client, subscription_id=str(subscription.id), amount="50")

        assert response.status_code == 400
        assert "payer_id" in response.data


@pytest.mark.django_db
class TestCollectionStatusView:
    def test_pending(self, payer_client, initiated_payment):
        response = payer_client.get(
            reverse("premiums:collection-status", args=[initiated_payment.correlation_token])
        )

        assert response.status_code == 200
        assert response.data["status"] == "pending"
        assert response.data["amount"] == 50
        assert response.data["receipt_number"] is None

    def test_confirmed(self, payer_client, payer, subscription):
        payment = PaymentFactory(
            payer=payer, subscription=subscription, confirmed=True, requested_amount=25
        )

        response = payer_client.get(
            reverse("premiums:collection-status", args=[payment.correlation_token])
        )

        assert response.data["status"] == "success"
        assert response.data["amount"] == 25
        assert response.data["receipt_number"] == payment.receipt_number

    def test_unknown_token(self, payer_client):
        response = payer_client.get(reverse("premiums:collection-status", args=["nope"]))

        assert response.status_code == 404
        assert response.data["error_code"] == "PAYMENT_NOT_FOUND"


@pytest.mark.django_db
class TestPaymentHistoryView:
    def test_own_payments_newest_first(self, payer_client, payer, subscription):
        older = PaymentFactory(payer=payer, subscription=subscription, confirmed=True)
        newer = PaymentFactory(payer=payer, subscription=subscription, failed=True)
        PaymentFactory()

        response = payer_client.get(reverse("premiums:payment-history"))

        assert response.status_code == 200
        rows = response.data["results"]
        assert [row["correlation_token"] for row in rows] == [
            newer.correlation_token,
            older.correlation_token,
        ]
        assert rows[0]["status"] == "failed"
        assert rows[1]["status"] == "success"
        assert rows[1]["scheme_code"] == subscription.scheme.code

    def test_user_without_member_profile(self, django_user_model):
        user = django_user_model.objects.create_user(username="visitor", password="testpass123")
        client = APIClient()
        client.force_authenticate(user=user)

        response = client.get(reverse("premiums:payment-history"))

        assert response.status_code == 403
        assert response.data["error_code"] == "MEMBER_PROFILE_REQUIRED"


# =============================================================================
# Settlement
# =============================================================================


@pytest.mark.django_db
class TestSettlementViews:
    def test_list_newest_first(self, operator_client):
        SettlementBatchFactory(period_key=date(2025, 1, 14))
        SettlementBatchFactory(period_key=date(2025, 1, 15))

        response = operator_client.get(reverse("premiums:settlement-list"))

        assert response.status_code == 200
        keys = [row["period_key"] for row in response.data["results"]]
        assert keys == ["2025-01-15", "2025-01-14"]

    def test_detail_with_statistics(self, operator_client):
        batch = SettlementBatchFactory()
        CommissionPayoutLineItemFactory(batch=batch, amount=120)

        response = operator_client.get(reverse("premiums:settlement-detail", args=[batch.id]))

        assert response.status_code == 200
        assert len(response.data["line_items"]) == 1
        assert response.data["statistics"]["total_amount"] == 120

    def test_detail_not_found(self, operator_client):
        response = operator_client.get(
            reverse("premiums:settlement-detail", args=[uuid.uuid4()])
        )

        assert response.status_code == 404

    @freeze_time("2025-01-17 06:00:00")
    def test_generate_then_exists(self, operator_client):
        url = reverse("premiums:settlement-generate")

        first = operator_client.post(url, {"date": "2025-01-15"}, format="json")
        second = operator_client.post(url, {"date": "2025-01-15"}, format="json")

        assert first.status_code == 201
        assert second.status_code == 200
        assert first.data["id"] == second.data["id"]
        assert SettlementBatch.objects.count() == 1

    @freeze_time("2025-01-17 06:00:00")
    def test_generate_open_period(self, operator_client):
        response = operator_client.post(
            reverse("premiums:settlement-generate"), {"date": "2025-01-17"}, format="json"
        )

        assert response.status_code == 409
        assert response.data["error_code"] == "SETTLEMENT_PERIOD_OPEN"

    def test_generate_requires_date(self, operator_client):
        response = operator_client.post(
            reverse("premiums:settlement-generate"), {}, format="json"
        )

        assert response.status_code == 400


@pytest.mark.django_db
class TestSettlementReportingViews:
    def test_breakdown(self, operator_client):
        batch = SettlementBatchFactory()
        delegate = CommissionPayoutLineItemFactory(batch=batch, amount=6)

        response = operator_client.get(reverse("premiums:settlement-breakdown", args=[batch.id]))

        assert response.status_code == 200
        assert response.data["tier1"][0]["recipient_id"] == str(delegate.recipient_id)
        assert response.data["tier2"] == []

    def test_breakdown_not_found(self, operator_client):
        response = operator_client.get(
            reverse("premiums:settlement-breakdown", args=[uuid.uuid4()])
        )

        assert response.status_code == 404

    def test_summary_for_range(self, operator_client):
        SettlementBatchFactory(period_key=date(2025, 1, 9))
        SettlementBatchFactory(period_key=date(2025, 1, 10))
        SettlementBatchFactory(period_key=date(2025, 1, 11))

        response = operator_client.get(
            reverse("premiums:settlement-summary"), {"start": "2025-01-10", "end": "2025-01-11"}
        )

        assert response.status_code == 200
        assert [row["period_key"] for row in response.data["batches"]] == [
            "2025-01-11",
            "2025-01-10",
        ]
        assert response.data["totals"]["settlement_count"] == 2

    @freeze_time("2025-01-20 06:00:00")
    def test_summary_defaults_to_last_30_days(self, operator_client):
        SettlementBatchFactory(period_key=date(2024, 12, 20))
        SettlementBatchFactory(period_key=date(2025, 1, 19))

        response = operator_client.get(reverse("premiums:settlement-summary"))

        assert response.data["start"] == "2024-12-21"
        assert response.data["end"] == "2025-01-20"
        assert len(response.data["batches"]) == 1

    def test_summary_reversed_range(self, operator_client):
        response = operator_client.get(
            reverse("premiums:settlement-summary"), {"start": "2025-01-11", "end": "2025-01-10"}
        )

        assert response.status_code == 400
        assert "start" in response.data

    @freeze_time("2025-01-20 06:00:00")
    def test_stats(self, operator_client):
        SettlementBatchFactory(period_key=date(2025, 1, 19))

        response = operator_client.get(reverse("premiums:settlement-stats"), {"days": 7})

        assert response.status_code == 200
        assert response.data["days"] == 7
        assert response.data["settlement_count"] == 1

    def test_stats_rejects_zero_days(self, operator_client):
        response = operator_client.get(reverse("premiums:settlement-stats"), {"days": 0})

        assert response.status_code == 400


# =============================================================================
# Payouts
# =============================================================================


@pytest.mark.django_db
class TestPayoutViews:
    def test_filter_requiring_intervention(self, operator_client):
        flagged = CommissionPayoutLineItemFactory(
            state=PayoutLineItemState.FAILED,
            requires_intervention=True,
        )
        CommissionPayoutLineItemFactory(state=PayoutLineItemState.FAILED)
        CommissionPayoutLineItemFactory()

        response = operator_client.get(
            reverse("premiums:payout-list"),
            {"state": "failed", "requires_intervention": "true"},
        )

        assert response.status_code == 200
        assert [row["id"] for row in response.data["results"]] == [str(flagged.id)]

    def test_invalid_filter(self, operator_client):
        response = operator_client.get(reverse("premiums:payout-list"), {"state": "lost"})

        assert response.status_code == 400

    def test_retry(self, operator_client):
        item = CommissionPayoutLineItemFactory(
            state=PayoutLineItemState.FAILED,
            requires_intervention=True,
        )

        response = operator_client.post(
            reverse("premiums:payout-retry", args=[item.id]), {"version": 1}, format="json"
        )

        assert response.status_code == 200
        assert response.data["state"] == PayoutLineItemState.PENDING
        assert response.data["version"] == 2
        assert response.data["transfers"] == []

    def test_retry_stale_version(self, operator_client):
        item = CommissionPayoutLineItemFactory(state=PayoutLineItemState.FAILED)

        response = operator_client.post(
            reverse("premiums:payout-retry", args=[item.id]), {"version": 7}, format="json"
        )

        assert response.status_code == 409
        assert response.data["error_code"] == "STALE_RECORD"

    def test_retry_paid_item(self, operator_client):
        item = CommissionPayoutLineItemFactory(state=PayoutLineItemState.PAID)

        response = operator_client.post(
            reverse("premiums:payout-retry", args=[item.id]), {"version": 1}, format="json"
        )

        assert response.status_code == 409
        assert response.data["error_code"] == "INVALID_STATE_TRANSITION"

    def test_retry_unknown(self, operator_client):
        response = operator_client.post(
            reverse("premiums:payout-retry", args=[uuid.uuid4()]), {"version": 1}, format="json"
        )

        assert response.status_code == 404


# =============================================================================
# Unsplit Payments
# =============================================================================


@pytest.mark.django_db
class TestResolveSplitView:
    def test_resolves(self, operator_client, payer, subscription):
        payment = PaymentFactory(payer=payer, subscription=subscription, unsplit=True)

        response = operator_client.post(
            reverse("premiums:payment-resolve-split", args=[payment.id]),
            {"version": 1},
            format="json",
        )

        assert response.status_code == 200
        assert response.data["state"] == PaymentState.CONFIRMED
        assert response.data["insurer_portion"] == 40

    def test_rates_still_missing(self, operator_client, payer):
        from membership.tests.factories import SubscriptionFactory

        subscription = SubscriptionFactory(
            member=payer,
            scheme=MedicalSchemeFactory(insurer_portion=None),
        )
        payment = PaymentFactory(payer=payer, subscription=subscription, unsplit=True)

        response = operator_client.post(
            reverse("premiums:payment-resolve-split", args=[payment.id]),
            {"version": 1},
            format="json",
        )

        assert response.status_code == 400
        assert response.data["error_code"] == "RATE_STRUCTURE_MISSING"

    def test_missing_version(self, operator_client, payer, subscription):
        payment = PaymentFactory(payer=payer, subscription=subscription, unsplit=True)

        response = operator_client.post(
            reverse("premiums:payment-resolve-split", args=[payment.id]), {}, format="json"
        )

        assert response.status_code == 400


# =============================================================================
# Recipient Payouts
# =============================================================================


@pytest.mark.django_db
class TestRecipientPayoutViews:
    def test_lists_only_own_items(self, payer_client, payer):
        mine = CommissionPayoutLineItemFactory(recipient=payer)
        CommissionPayoutLineItemFactory()

        response = payer_client.get(reverse("premiums:my-payout-list"))

        assert response.status_code == 200
        assert [row["id"] for row in response.data["results"]] == [str(mine.id)]

    def test_failure_shown_as_pending(self, payer_client, payer):
        CommissionPayoutLineItemFactory(
            recipient=payer,
            state=PayoutLineItemState.FAILED,
            requires_intervention=True,
            failure_reason="The initiator information is invalid.",
        )

        response = payer_client.get(reverse("premiums:my-payout-list"))

        row = response.data["results"][0]
        assert row["status"] == "pending"
        assert "failure_reason" not in row
        assert "requires_intervention" not in row
        assert "attempt_count" not in row

    def test_paid_item_shows_reference(self, payer_client, payer):
        CommissionPayoutLineItemFactory(
            recipient=payer,
            state=PayoutLineItemState.PAID,
            transfer_reference="NLJ41HAY6Q",
        )

        response = payer_client.get(reverse("premiums:my-payout-list"))

        row = response.data["results"][0]
        assert row["status"] == "paid"
        assert row["transfer_reference"] == "NLJ41HAY6Q"

    def test_summary(self, payer_client, payer):
        batch = SettlementBatchFactory(period_key=date(2025, 1, 10))
        CommissionPayoutLineItemFactory(
            recipient=payer, batch=batch, amount=6, state=PayoutLineItemState.PAID
        )
        CommissionPayoutLineItemFactory(
            recipient=payer,
            batch=batch,
            recipient_role=RecipientRole.TIER_2,
            amount=2,
            state=PayoutLineItemState.FAILED,
        )

        response = payer_client.get(
            reverse("premiums:my-payout-summary"), {"start": "2025-01-01", "end": "2025-01-31"}
        )

        assert response.status_code == 200
        assert response.data["paid_amount"] == 6
        assert response.data["pending_amount"] == 2

    def test_summary_without_member_profile(self, django_user_model):
        user = django_user_model.objects.create_user(username="visitor", password="testpass123")
        client = APIClient()
        client.force_authenticate(user=user)

        response = client.get(reverse("premiums:my-payout-summary"))

        assert response.status_code == 403
