"""
DRF serializers for the premiums API.

This module provides serializers for:
- Collection initiation requests and status responses
- Settlement batches with their line items
- Payout line items and operator actions
- Payer history and recipient payout views
- Reporting query parameters

Related files:
    - views.py: Premiums API views
    - services/: Business logic the views delegate to

Usage:
    serializer = InitiateCollectionSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
"""

from __future__ import annotations

from rest_framework import serializers

from premiums.models import (
    CommissionPayoutLineItem,
    OutboundTransfer,
    Payment,
    SettlementBatch,
)
from premiums.state_machines import PayoutLineItemState


# =============================================================================
# Collections
# =============================================================================


class InitiateCollectionSerializer(serializers.Serializer):
    """
    Request body for POST collections/.

    payer_id is only honoured for staff; members always pay as themselves.

    Amount is accepted as a decimal so that fractional input reaches the
    service and is rejected there with a clear message.
    """

    payer_id = serializers.UUIDField(required=False)
    subscription_id = serializers.UUIDField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    phone_number = serializers.CharField(max_length=20, required=False, allow_blank=True)
    description = serializers.CharField(max_length=100, required=False)


class CollectionInitiatedSerializer(serializers.Serializer):
    correlation_token = serializers.CharField()
    checkout_request_id = serializers.CharField()
    customer_message = serializers.CharField()
    status = serializers.CharField()


class PaymentStatusSerializer(serializers.Serializer):
    """Payer-facing status of a collection."""

    correlation_token = serializers.CharField()
    status = serializers.CharField()
    message = serializers.CharField()
    amount = serializers.SerializerMethodField()
    receipt_number = serializers.SerializerMethodField()

    def get_amount(self, obj) -> int:
        payment = obj.payment
        if payment.confirmed_amount is not None:
            return payment.confirmed_amount
        return payment.requested_amount

    def get_receipt_number(self, obj) -> str | None:
        return obj.payment.receipt_number


class PaymentHistorySerializer(serializers.ModelSerializer):
    """A payer's own payment, with the simple status the payer sees."""

    status = serializers.CharField(source="payer_status", read_only=True)
    amount = serializers.SerializerMethodField()
    scheme_code = serializers.CharField(source="subscription.scheme.code", read_only=True)
    scheme_name = serializers.CharField(source="subscription.scheme.name", read_only=True)

    class Meta:
        model = Payment
        fields = [
            "correlation_token",
            "status",
            "amount",
            "receipt_number",
            "failure_reason",
            "scheme_code",
            "scheme_name",
            "confirmed_at",
            "created_at",
        ]
        read_only_fields = fields

    def get_amount(self, obj) -> int:
        if obj.confirmed_amount is not None:
            return obj.confirmed_amount
        return obj.requested_amount


class PaymentSerializer(serializers.ModelSerializer):
    """Operator view of a payment and its frozen split."""

    class Meta:
        model = Payment
        fields = [
            "id",
            "payer",
            "subscription",
            "correlation_token",
            "gateway_request_id",
            "state",
            "failure_category",
            "failure_reason",
            "requested_amount",
            "confirmed_amount",
            "amount_discrepancy",
            "receipt_number",
            "insurer_portion",
            "tier1_commission",
            "tier2_commission",
            "platform_residual",
            "unsplit_reason",
            "version",
            "confirmed_at",
            "created_at",
        ]
        read_only_fields = fields


# =============================================================================
# Settlement
# =============================================================================


class OutboundTransferSerializer(serializers.ModelSerializer):
    class Meta:
        model = OutboundTransfer
        fields = [
            "id",
            "attempt_number",
            "amount",
            "correlation_token",
            "conversation_id",
            "outcome",
            "result_code",
            "failure_description",
            "transaction_id",
            "completed_at",
            "created_at",
        ]
        read_only_fields = fields


class PayoutLineItemSerializer(serializers.ModelSerializer):
    """Payout line item with the recipient's display name."""

    recipient_name = serializers.CharField(source="recipient.full_name", read_only=True)
    period_key = serializers.DateField(source="batch.period_key", read_only=True)

    class Meta:
        model = CommissionPayoutLineItem
        fields = [
            "id",
            "batch",
            "period_key",
            "recipient",
            "recipient_name",
            "recipient_role",
            "amount",
            "payment_count",
            "state",
            "attempt_count",
            "next_attempt_at",
            "transfer_reference",
            "failure_reason",
            "requires_intervention",
            "version",
            "paid_at",
            "failed_at",
            "created_at",
        ]
        read_only_fields = fields


class PayoutLineItemDetailSerializer(PayoutLineItemSerializer):
    transfers = OutboundTransferSerializer(many=True, read_only=True)

    class Meta(PayoutLineItemSerializer.Meta):
        fields = PayoutLineItemSerializer.Meta.fields + ["transfers"]
        read_only_fields = fields


class SettlementBatchSerializer(serializers.ModelSerializer):
    class Meta:
        model = SettlementBatch
        fields = [
            "id",
            "period_key",
            "period_start",
            "period_end",
            "total_collected",
            "total_insurer",
            "total_tier1",
            "total_tier2",
            "total_residual",
            "payment_count",
            "unique_payers",
            "created_at",
        ]
        read_only_fields = fields


class SettlementBatchDetailSerializer(SettlementBatchSerializer):
    """Batch with line items and payout statistics (passed in context)."""

    line_items = PayoutLineItemSerializer(many=True, read_only=True)
    statistics = serializers.SerializerMethodField()

    class Meta(SettlementBatchSerializer.Meta):
        fields = SettlementBatchSerializer.Meta.fields + ["line_items", "statistics"]
        read_only_fields = fields

    def get_statistics(self, obj) -> dict | None:
        return self.context.get("statistics")


class SettlementSummarySerializer(serializers.Serializer):
    start = serializers.DateField()
    end = serializers.DateField()
    totals = serializers.DictField(child=serializers.IntegerField())
    batches = SettlementBatchSerializer(many=True)


class GenerateSettlementSerializer(serializers.Serializer):
    date = serializers.DateField(help_text="Local calendar date to settle (YYYY-MM-DD)")


# =============================================================================
# Operator Actions
# =============================================================================


class VersionedActionSerializer(serializers.Serializer):
    """Body for operator actions guarded by optimistic locking."""

    version = serializers.IntegerField(min_value=1)


class PayoutFilterSerializer(serializers.Serializer):
    """
    Query parameters for the payout list.

    requires_intervention is a choice rather than a BooleanField because
    DRF reads an absent boolean in query data as False.
    """

    state = serializers.ChoiceField(choices=PayoutLineItemState.choices, required=False)
    requires_intervention = serializers.ChoiceField(choices=["true", "false"], required=False)


class DateRangeQuerySerializer(serializers.Serializer):
    """
    Optional ?start=&end= local dates. The view fills in whichever is
    missing.
    """

    start = serializers.DateField(required=False)
    end = serializers.DateField(required=False)

    def validate(self, attrs):
        start, end = attrs.get("start"), attrs.get("end")
        if start and end and start > end:
            raise serializers.ValidationError({"start": "Must not be after end."})
        return attrs


class OverallStatsQuerySerializer(serializers.Serializer):
    days = serializers.IntegerField(min_value=1, max_value=366, default=30)


# =============================================================================
# Recipients
# =============================================================================


class RecipientPayoutSerializer(serializers.ModelSerializer):
    """
    A recipient's own line item.

    Only paid or pending is shown; retry and failure details are left out.
    """

    period_key = serializers.DateField(source="batch.period_key", read_only=True)
    status = serializers.CharField(source="recipient_status", read_only=True)
    transfer_reference = serializers.SerializerMethodField()

    class Meta:
        model = CommissionPayoutLineItem
        fields = [
            "id",
            "period_key",
            "recipient_role",
            "amount",
            "payment_count",
            "status",
            "transfer_reference",
            "paid_at",
        ]
        read_only_fields = fields

    def get_transfer_reference(self, obj) -> str | None:
        return obj.transfer_reference if obj.is_paid else None
