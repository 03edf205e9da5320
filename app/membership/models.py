"""
Read-only membership models.

Usage:
    from membership.models import Member, MemberSubscription

    subscription = MemberSubscription.objects.select_related(
        "member", "scheme"
    ).get(id=subscription_id)
    delegate = subscription.member.delegate
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin


class Member(UUIDPrimaryKeyMixin, BaseModel):
    """
    A platform member who pays premiums and may earn commissions.

    The referral hierarchy is two levels deep: a member's delegate is the
    tier-1 recipient of commissions on their payments, the coordinator
    is the tier-2 recipient. Either may be unassigned.

    A member who signs in to the API is linked to their user account;
    payer and recipient endpoints act on that member.
    """

    full_name = models.CharField(max_length=255)

    phone_number = models.CharField(
        max_length=20,
        blank=True,
        default="",
        help_text="Mobile-money phone number as entered (normalised at use)",
    )

    delegate = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="delegated_members",
        help_text="Tier-1 referral recipient",
    )

    coordinator = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="coordinated_members",
        help_text="Tier-2 referral recipient",
    )

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="member",
        help_text="Login account, when the member has one",
    )

    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["full_name"]
        verbose_name = "Member"
        verbose_name_plural = "Members"

    def __str__(self) -> str:
        return f"Member({self.full_name}, {self.phone_number})"


class MedicalScheme(UUIDPrimaryKeyMixin, BaseModel):
    """
    A medical cover plan and its per-day premium split.

    All rate columns are whole shillings for one nominal unit
    (daily_premium). A null rate column means the scheme has no usable
    rate structure yet.
    """

    code = models.CharField(max_length=50, unique=True)
    name = models.CharField(max_length=255)

    daily_premium = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Nominal daily unit the fixed portions are defined against",
    )
    insurer_portion = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Portion of one nominal unit remitted to the insurer",
    )
    delegate_commission = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Tier-1 commission for one nominal unit",
    )
    coordinator_commission = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Tier-2 commission for one nominal unit",
    )

    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["name"]
        verbose_name = "Medical Scheme"
        verbose_name_plural = "Medical Schemes"

    def __str__(self) -> str:
        return f"MedicalScheme({self.code})"


class SubscriptionStatus(models.TextChoices):
    ACTIVE = "active", "Active"
    SUSPENDED = "suspended", "Suspended"
    CANCELLED = "cancelled", "Cancelled"


class MemberSubscription(UUIDPrimaryKeyMixin, BaseModel):
    """A member's enrolment in a medical scheme."""

    member = models.ForeignKey(
        Member,
        on_delete=models.PROTECT,
        related_name="subscriptions",
    )
    scheme = models.ForeignKey(
        MedicalScheme,
        on_delete=models.PROTECT,
        related_name="subscriptions",
    )
    status = models.CharField(
        max_length=20,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.ACTIVE,
        db_index=True,
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Member Subscription"
        verbose_name_plural = "Member Subscriptions"

    def __str__(self) -> str:
        return f"MemberSubscription({self.member_id}, {self.scheme_id}, {self.status})"

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE
