"""
Premiums admin configuration.

All engine records change only through services (FSM fields are protected,
settlement and audit rows are append-only), so every admin here is
read-only. Failed payouts can be requeued with a bulk action that goes
through PayoutService.
"""

from django.contrib import admin

from premiums.models import (
    AuditLogEntry,
    CallbackEvent,
    CommissionPayoutLineItem,
    OutboundTransfer,
    Payment,
    SettlementBatch,
    SettlementBatchEntry,
)
from premiums.services import PayoutService

__all__ = [
    "PaymentAdmin",
    "SettlementBatchAdmin",
    "CommissionPayoutLineItemAdmin",
    "OutboundTransferAdmin",
    "CallbackEventAdmin",
    "AuditLogEntryAdmin",
]


class ReadOnlyAdmin(admin.ModelAdmin):
    """Admin with every field read-only and no add/delete."""

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]

    def has_add_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(Payment)
class PaymentAdmin(ReadOnlyAdmin):
    """
    Admin configuration for Payment.

    Confirmed_unsplit payments are resolved through the API, which checks
    the version the operator saw.
    """

    list_display = [
        "id",
        "payer",
        "state",
        "requested_amount",
        "confirmed_amount",
        "receipt_number",
        "failure_category",
        "created_at",
    ]
    list_filter = ["state", "failure_category", "created_at"]
    search_fields = ["id", "correlation_token", "gateway_request_id", "receipt_number", "phone_number"]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    fieldsets = (
        (None, {"fields": ("id", "payer", "subscription", "phone_number", "description")}),
        (
            "Correlation",
            {"fields": ("correlation_token", "gateway_request_id", "merchant_request_id")},
        ),
        (
            "Outcome",
            {
                "fields": (
                    "state",
                    "requested_amount",
                    "confirmed_amount",
                    "amount_discrepancy",
                    "receipt_number",
                    "result_code",
                    "result_description",
                    "failure_category",
                    "failure_reason",
                ),
            },
        ),
        (
            "Split",
            {
                "fields": (
                    "scheme_code",
                    "nominal_unit",
                    "insurer_portion",
                    "tier1_commission",
                    "tier2_commission",
                    "platform_residual",
                    "unsplit_reason",
                ),
            },
        ),
        (
            "Timestamps",
            {
                "fields": (
                    "confirmed_at",
                    "failed_at",
                    "gateway_transaction_at",
                    "last_status_query_at",
                    "version",
                    "created_at",
                    "updated_at",
                ),
                "classes": ("collapse",),
            },
        ),
    )

    def get_readonly_fields(self, request, obj=None):
        return [name for fieldset in self.fieldsets for name in fieldset[1]["fields"]]


class SettlementBatchEntryInline(admin.TabularInline):
    model = SettlementBatchEntry
    fields = ["payment", "created_at"]
    readonly_fields = fields
    extra = 0
    can_delete = False

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(SettlementBatch)
class SettlementBatchAdmin(ReadOnlyAdmin):
    list_display = [
        "period_key",
        "total_collected",
        "total_insurer",
        "total_tier1",
        "total_tier2",
        "total_residual",
        "payment_count",
        "unique_payers",
    ]
    date_hierarchy = "period_key"
    ordering = ["-period_key"]
    inlines = [SettlementBatchEntryInline]


class OutboundTransferInline(admin.TabularInline):
    model = OutboundTransfer
    fields = [
        "attempt_number",
        "amount",
        "outcome",
        "conversation_id",
        "transaction_id",
        "result_code",
        "completed_at",
    ]
    readonly_fields = fields
    extra = 0
    can_delete = False

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(CommissionPayoutLineItem)
class CommissionPayoutLineItemAdmin(ReadOnlyAdmin):
    """
    Admin configuration for CommissionPayoutLineItem.

    Filter by requires_intervention to find items the retry loop gave up on.
    """

    list_display = [
        "id",
        "batch",
        "recipient",
        "recipient_role",
        "amount",
        "state",
        "attempt_count",
        "requires_intervention",
        "next_attempt_at",
    ]
    list_filter = ["state", "recipient_role", "requires_intervention"]
    search_fields = ["id", "recipient__full_name", "recipient__phone_number", "transfer_reference"]
    ordering = ["-created_at"]
    inlines = [OutboundTransferInline]
    actions = ["retry_selected"]

    @admin.action(description="Retry selected failed payouts")
    def retry_selected(self, request, queryset):
        """Requeue each selected item at the version shown in the list."""
        retried = 0
        for item in queryset:
            result = PayoutService.manual_retry(
                item.id,
                item.version,
                actor=request.user.get_username(),
            )
            if result.success:
                retried += 1
        self.message_user(request, f"Requeued {retried} of {queryset.count()} payouts.")


@admin.register(OutboundTransfer)
class OutboundTransferAdmin(ReadOnlyAdmin):
    list_display = [
        "correlation_token",
        "line_item",
        "attempt_number",
        "amount",
        "outcome",
        "transaction_id",
        "created_at",
    ]
    list_filter = ["outcome"]
    search_fields = ["correlation_token", "conversation_id", "transaction_id"]
    ordering = ["-created_at"]


@admin.register(CallbackEvent)
class CallbackEventAdmin(ReadOnlyAdmin):
    """
    Admin configuration for CallbackEvent.

    Callback events are immutable once received.
    """

    list_display = ["id", "kind", "dedup_key", "status", "retry_count", "processed_at", "created_at"]
    list_filter = ["status", "kind", "created_at"]
    search_fields = ["id", "dedup_key"]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]


@admin.register(AuditLogEntry)
class AuditLogEntryAdmin(ReadOnlyAdmin):
    list_display = ["created_at", "action", "entity_type", "entity_id", "old_state", "new_state", "actor"]
    list_filter = ["action", "entity_type", "actor"]
    search_fields = ["entity_id"]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    def has_change_permission(self, request, obj=None) -> bool:
        return False
