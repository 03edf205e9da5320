import uuid

import django.db.models.deletion
import django_fsm
from django.db import migrations, models


def base_fields():
    return [
        (
            "created_at",
            models.DateTimeField(
                auto_now_add=True,
                db_index=True,
                help_text="Timestamp when this record was created",
            ),
        ),
        (
            "updated_at",
            models.DateTimeField(
                auto_now=True,
                help_text="Timestamp when this record was last modified",
            ),
        ),
        (
            "id",
            models.UUIDField(
                default=uuid.uuid4,
                editable=False,
                help_text="Unique identifier for this record",
                primary_key=True,
                serialize=False,
            ),
        ),
    ]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("membership", "0001_initial"),
    ]

    operations = [
        # ======================================================================
        # Payment
        # ======================================================================
        migrations.CreateModel(
            name="Payment",
            fields=base_fields()
            + [
                (
                    "phone_number",
                    models.CharField(
                        help_text="Normalised payer phone (2547XXXXXXXX)",
                        max_length=12,
                    ),
                ),
                (
                    "requested_amount",
                    models.PositiveBigIntegerField(
                        help_text="Amount requested from the payer, whole KES",
                    ),
                ),
                ("description", models.CharField(blank=True, default="", max_length=100)),
                ("account_reference", models.CharField(blank=True, default="", max_length=12)),
                (
                    "correlation_token",
                    models.CharField(
                        editable=False,
                        help_text="Token generated at initiation, never reused",
                        max_length=64,
                        unique=True,
                    ),
                ),
                (
                    "gateway_request_id",
                    models.CharField(
                        blank=True,
                        help_text="M-Pesa CheckoutRequestID",
                        max_length=100,
                        null=True,
                        unique=True,
                    ),
                ),
                ("merchant_request_id", models.CharField(blank=True, max_length=100, null=True)),
                (
                    "state",
                    django_fsm.FSMField(
                        choices=[
                            ("initiated", "Initiated"),
                            ("confirmed", "Confirmed"),
                            ("confirmed_unsplit", "Confirmed (Unsplit)"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="initiated",
                        help_text="Current state of the payment (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "failure_category",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("gateway_unreachable", "Never Reached Gateway"),
                            ("gateway_rejected", "Rejected By Gateway"),
                            ("explicit_decline", "Declined"),
                        ],
                        max_length=30,
                        null=True,
                    ),
                ),
                ("failure_reason", models.TextField(blank=True, null=True)),
                ("result_code", models.CharField(blank=True, max_length=20, null=True)),
                ("result_description", models.TextField(blank=True, null=True)),
                (
                    "receipt_number",
                    models.CharField(
                        blank=True,
                        help_text="MpesaReceiptNumber, set only on success",
                        max_length=50,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "confirmed_amount",
                    models.PositiveBigIntegerField(
                        blank=True,
                        help_text="Amount the gateway reports as processed (authoritative)",
                        null=True,
                    ),
                ),
                (
                    "amount_discrepancy",
                    models.BigIntegerField(
                        blank=True,
                        help_text="confirmed_amount - requested_amount when they differ",
                        null=True,
                    ),
                ),
                ("gateway_transaction_at", models.DateTimeField(blank=True, null=True)),
                ("insurer_portion", models.PositiveBigIntegerField(blank=True, null=True)),
                ("tier1_commission", models.PositiveBigIntegerField(blank=True, null=True)),
                ("tier2_commission", models.PositiveBigIntegerField(blank=True, null=True)),
                ("platform_residual", models.PositiveBigIntegerField(blank=True, null=True)),
                ("scheme_code", models.CharField(blank=True, max_length=50, null=True)),
                ("nominal_unit", models.PositiveIntegerField(blank=True, null=True)),
                ("unsplit_reason", models.TextField(blank=True, null=True)),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                ("confirmed_at", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("last_status_query_at", models.DateTimeField(blank=True, null=True)),
                (
                    "payer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="membership.member",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="membership.membersubscription",
                    ),
                ),
                (
                    "tier1_recipient",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="tier1_payments",
                        to="membership.member",
                    ),
                ),
                (
                    "tier2_recipient",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="tier2_payments",
                        to="membership.member",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment",
                "verbose_name_plural": "Payments",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["state", "confirmed_at"],
                        name="premiums_pa_state_1c6f0e_idx",
                    ),
                    models.Index(
                        fields=["state", "created_at"],
                        name="premiums_pa_state_9b2d41_idx",
                    ),
                    models.Index(
                        fields=["payer", "state"],
                        name="premiums_pa_payer_i_4e7a53_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("requested_amount__gt", 0)),
                        name="payment_requested_amount_positive",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(
                                ("state", "confirmed"),
                                ("insurer_portion__isnull", False),
                                ("tier1_commission__isnull", False),
                                ("tier2_commission__isnull", False),
                                ("platform_residual__isnull", False),
                            ),
                            models.Q(
                                models.Q(("state", "confirmed"), _negated=True),
                                models.Q(
                                    ("insurer_portion__isnull", True),
                                    ("tier1_commission__isnull", True),
                                    ("tier2_commission__isnull", True),
                                    ("platform_residual__isnull", True),
                                ),
                            ),
                            _connector="OR",
                        ),
                        name="payment_split_iff_confirmed",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("state", "confirmed"), _negated=True),
                            (
                                "confirmed_amount",
                                models.F("insurer_portion")
                                + models.F("tier1_commission")
                                + models.F("tier2_commission")
                                + models.F("platform_residual"),
                            ),
                            _connector="OR",
                        ),
                        name="payment_split_sums_to_confirmed_amount",
                    ),
                ],
            },
        ),
        # ======================================================================
        # Settlement
        # ======================================================================
        migrations.CreateModel(
            name="SettlementBatch",
            fields=base_fields()
            + [
                (
                    "period_key",
                    models.DateField(
                        help_text="Local calendar date of the settlement period",
                        unique=True,
                    ),
                ),
                ("period_start", models.DateTimeField(help_text="Inclusive start of the period")),
                ("period_end", models.DateTimeField(help_text="Exclusive end of the period")),
                ("total_collected", models.PositiveBigIntegerField(default=0)),
                ("total_insurer", models.PositiveBigIntegerField(default=0)),
                ("total_tier1", models.PositiveBigIntegerField(default=0)),
                ("total_tier2", models.PositiveBigIntegerField(default=0)),
                ("total_residual", models.PositiveBigIntegerField(default=0)),
                ("payment_count", models.PositiveIntegerField(default=0)),
                ("unique_payers", models.PositiveIntegerField(default=0)),
            ],
            options={
                "verbose_name": "Settlement Batch",
                "verbose_name_plural": "Settlement Batches",
                "ordering": ["-period_key"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("period_end__gt", models.F("period_start"))),
                        name="settlement_period_not_empty",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            (
                                "total_collected",
                                models.F("total_insurer")
                                + models.F("total_tier1")
                                + models.F("total_tier2")
                                + models.F("total_residual"),
                            )
                        ),
                        name="settlement_totals_balance",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="SettlementBatchEntry",
            fields=base_fields()
            + [
                (
                    "batch",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="entries",
                        to="premiums.settlementbatch",
                    ),
                ),
                (
                    "payment",
                    models.OneToOneField(
                        help_text="A payment belongs to at most one batch",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="settlement_entry",
                        to="premiums.payment",
                    ),
                ),
            ],
            options={
                "verbose_name": "Settlement Batch Entry",
                "verbose_name_plural": "Settlement Batch Entries",
                "ordering": ["created_at"],
            },
        ),
        # ======================================================================
        # Payouts
        # ======================================================================
        migrations.CreateModel(
            name="CommissionPayoutLineItem",
            fields=base_fields()
            + [
                (
                    "recipient_role",
                    models.CharField(
                        choices=[
                            ("tier1", "Tier 1 (Delegate)"),
                            ("tier2", "Tier 2 (Coordinator)"),
                        ],
                        max_length=10,
                    ),
                ),
                ("amount", models.PositiveBigIntegerField(help_text="Amount owed, whole KES")),
                (
                    "payment_count",
                    models.PositiveIntegerField(
                        default=0,
                        help_text="Number of batch payments contributing to this amount",
                    ),
                ),
                (
                    "state",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("paid", "Paid"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current state of the line item (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("attempt_count", models.PositiveSmallIntegerField(default=0)),
                (
                    "next_attempt_at",
                    models.DateTimeField(
                        blank=True,
                        db_index=True,
                        help_text="Not eligible for dispatch before this time",
                        null=True,
                    ),
                ),
                (
                    "current_transfer_token",
                    models.CharField(
                        blank=True,
                        help_text="correlation_token of the most recent OutboundTransfer",
                        max_length=64,
                        null=True,
                    ),
                ),
                (
                    "transfer_reference",
                    models.CharField(
                        blank=True,
                        help_text="M-Pesa TransactionID of the successful transfer",
                        max_length=50,
                        null=True,
                    ),
                ),
                ("failure_reason", models.TextField(blank=True, null=True)),
                (
                    "requires_intervention",
                    models.BooleanField(
                        db_index=True,
                        default=False,
                        help_text="Needs an operator before another attempt is made",
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "batch",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="line_items",
                        to="premiums.settlementbatch",
                    ),
                ),
                (
                    "recipient",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payout_line_items",
                        to="membership.member",
                    ),
                ),
            ],
            options={
                "verbose_name": "Commission Payout Line Item",
                "verbose_name_plural": "Commission Payout Line Items",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["state", "next_attempt_at"],
                        name="premiums_co_state_5a8e21_idx",
                    ),
                    models.Index(
                        fields=["state", "requires_intervention"],
                        name="premiums_co_state_c37f90_idx",
                    ),
                    models.Index(
                        fields=["recipient", "state"],
                        name="premiums_co_recipie_8d14b6_idx",
                    ),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("batch", "recipient", "recipient_role"),
                        name="unique_line_item_per_recipient_role",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("amount__gt", 0)),
                        name="line_item_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="OutboundTransfer",
            fields=base_fields()
            + [
                ("attempt_number", models.PositiveSmallIntegerField()),
                ("amount", models.PositiveBigIntegerField()),
                (
                    "correlation_token",
                    models.CharField(
                        editable=False,
                        help_text="Sent as OriginatorConversationID",
                        max_length=64,
                        unique=True,
                    ),
                ),
                (
                    "conversation_id",
                    models.CharField(
                        blank=True,
                        help_text="M-Pesa ConversationID returned on acceptance",
                        max_length=100,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "outcome",
                    models.CharField(
                        choices=[
                            ("in_flight", "In Flight"),
                            ("succeeded", "Succeeded"),
                            ("failed", "Failed"),
                            ("timed_out", "Timed Out"),
                        ],
                        db_index=True,
                        default="in_flight",
                        max_length=20,
                    ),
                ),
                ("result_code", models.CharField(blank=True, max_length=20, null=True)),
                ("failure_description", models.TextField(blank=True, null=True)),
                (
                    "transaction_id",
                    models.CharField(
                        blank=True,
                        help_text="M-Pesa TransactionID, set on success",
                        max_length=50,
                        null=True,
                        unique=True,
                    ),
                ),
                ("raw_result", models.JSONField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("version", models.PositiveIntegerField(default=1)),
                (
                    "line_item",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transfers",
                        to="premiums.commissionpayoutlineitem",
                    ),
                ),
            ],
            options={
                "verbose_name": "Outbound Transfer",
                "verbose_name_plural": "Outbound Transfers",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["outcome", "created_at"],
                        name="premiums_ou_outcome_2f9c7d_idx",
                    ),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("line_item", "attempt_number"),
                        name="unique_transfer_attempt_number",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("outcome", "succeeded")),
                        fields=("line_item",),
                        name="one_succeeded_transfer_per_line_item",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("outcome", "in_flight")),
                        fields=("line_item",),
                        name="one_in_flight_transfer_per_line_item",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("amount__gt", 0)),
                        name="transfer_amount_positive",
                    ),
                ],
            },
        ),
        # ======================================================================
        # Callbacks & Audit
        # ======================================================================
        migrations.CreateModel(
            name="CallbackEvent",
            fields=base_fields()
            + [
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("stk_callback", "STK Push Callback"),
                            ("b2c_result", "B2C Result"),
                            ("b2c_timeout", "B2C Queue Timeout"),
                        ],
                        db_index=True,
                        max_length=20,
                    ),
                ),
                (
                    "dedup_key",
                    models.CharField(
                        help_text="kind:gateway-correlation-id, unique for idempotency",
                        max_length=255,
                        unique=True,
                    ),
                ),
                ("payload", models.JSONField(help_text="Notification body as received")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("processed", "Processed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
                (
                    "retry_count",
                    models.PositiveSmallIntegerField(
                        default=0,
                        help_text="Number of processing attempts",
                    ),
                ),
            ],
            options={
                "verbose_name": "Callback Event",
                "verbose_name_plural": "Callback Events",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "created_at"],
                        name="premiums_ca_status_71b0aa_idx",
                    ),
                    models.Index(
                        fields=["status", "retry_count"],
                        name="premiums_ca_status_e4d3c2_idx",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="AuditLogEntry",
            fields=base_fields()
            + [
                (
                    "action",
                    models.CharField(
                        choices=[
                            ("PAYMENT_INITIATED", "Payment Initiated"),
                            ("PAYMENT_CONFIRMED", "Payment Confirmed"),
                            ("PAYMENT_CONFIRMED_UNSPLIT", "Payment Confirmed Unsplit"),
                            ("PAYMENT_FAILED", "Payment Failed"),
                            ("PAYMENT_UNSPLIT_RESOLVED", "Payment Split Resolved"),
                            ("DUPLICATE_NOTIFICATION", "Duplicate Notification"),
                            ("AMOUNT_DISCREPANCY", "Amount Discrepancy"),
                            ("SETTLEMENT_GENERATED", "Settlement Generated"),
                            ("PAYOUT_INITIATED", "Payout Initiated"),
                            ("PAYOUT_COMPLETED", "Payout Completed"),
                            ("PAYOUT_FAILED", "Payout Failed"),
                            ("PAYOUT_RETRY_SCHEDULED", "Payout Retry Scheduled"),
                            ("PAYOUT_ESCALATED", "Payout Escalated"),
                            ("PAYOUT_MANUAL_RETRY", "Payout Manual Retry"),
                            ("LATE_TRANSFER_RESULT", "Late Transfer Result"),
                            ("LATE_COLLECTION_SUCCESS", "Late Collection Success"),
                        ],
                        db_index=True,
                        max_length=40,
                    ),
                ),
                (
                    "entity_type",
                    models.CharField(
                        help_text="Model name of the affected record",
                        max_length=50,
                    ),
                ),
                ("entity_id", models.CharField(max_length=64)),
                ("old_state", models.CharField(blank=True, max_length=30, null=True)),
                ("new_state", models.CharField(blank=True, max_length=30, null=True)),
                (
                    "actor",
                    models.CharField(
                        default="system",
                        help_text="'system' or the operator who triggered the change",
                        max_length=100,
                    ),
                ),
                ("details", models.JSONField(blank=True, default=dict)),
            ],
            options={
                "verbose_name": "Audit Log Entry",
                "verbose_name_plural": "Audit Log Entries",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["entity_type", "entity_id", "created_at"],
                        name="premiums_au_entity__3a6f12_idx",
                    ),
                    models.Index(
                        fields=["action", "created_at"],
                        name="premiums_au_action_b81e4f_idx",
                    ),
                ],
            },
        ),
    ]
