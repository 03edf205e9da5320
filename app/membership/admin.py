"""
Read-only admin views for membership lookups.

Members, schemes and subscriptions are owned by other parts of the
platform; the admin here exists so operators can check a recipient's
phone number or a scheme's rates while resolving payout failures.
"""

from django.contrib import admin

from membership.models import MedicalScheme, Member, MemberSubscription


class ReadOnlyAdmin(admin.ModelAdmin):
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Member)
class MemberAdmin(ReadOnlyAdmin):
    list_display = [
        "id",
        "full_name",
        "phone_number",
        "user",
        "delegate",
        "coordinator",
        "is_active",
    ]
    list_filter = ["is_active"]
    search_fields = ["id", "full_name", "phone_number"]


@admin.register(MedicalScheme)
class MedicalSchemeAdmin(ReadOnlyAdmin):
    list_display = [
        "code",
        "name",
        "daily_premium",
        "insurer_portion",
        "delegate_commission",
        "coordinator_commission",
    ]
    search_fields = ["code", "name"]


@admin.register(MemberSubscription)
class MemberSubscriptionAdmin(ReadOnlyAdmin):
    list_display = ["id", "member", "scheme", "status", "created_at"]
    list_filter = ["status"]
    search_fields = ["id", "member__full_name", "member__phone_number"]
