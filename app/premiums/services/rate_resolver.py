"""
Rate structure lookup for commission computation.

Usage:
    from premiums.services.rate_resolver import RateResolver

    rates = RateResolver.resolve(payment.subscription_id)
    tier1_id, tier2_id = RateResolver.resolve_recipients(payment.payer)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from core.services import BaseService
from membership.models import MemberSubscription
from premiums.exceptions import RateStructureMissingError

if TYPE_CHECKING:
    from membership.models import Member


@dataclass(frozen=True)
class RateStructure:
    """
    Fixed per-unit amounts for one scheme.

    Each portion is whole shillings for one nominal unit; the calculator
    scales them by confirmed_amount / nominal_unit.
    """

    scheme_code: str
    nominal_unit: int
    insurer_portion: int
    tier1_commission: int
    tier2_commission: int


class RateResolver(BaseService):
    """Pure lookups: subscription -> scheme -> rates, payer -> recipients."""

    @classmethod
    def resolve(cls, subscription_id: uuid.UUID) -> RateStructure:
        """
        Raises:
            RateStructureMissingError: Unknown subscription, a missing rate,
                or a non-positive nominal unit
        """
        subscription = (
            MemberSubscription.objects.select_related("scheme")
            .filter(id=subscription_id)
            .first()
        )
        if subscription is None:
            raise RateStructureMissingError(
                f"Subscription {subscription_id} not found",
                details={"subscription_id": str(subscription_id)},
            )

        scheme = subscription.scheme
        rates = {
            "daily_premium": scheme.daily_premium,
            "insurer_portion": scheme.insurer_portion,
            "delegate_commission": scheme.delegate_commission,
            "coordinator_commission": scheme.coordinator_commission,
        }
        missing = sorted(name for name, value in rates.items() if value is None)
        if missing:
            raise RateStructureMissingError(
                f"Scheme {scheme.code} has no rate structure",
                details={"scheme_code": scheme.code, "missing": missing},
            )
        if scheme.daily_premium <= 0:
            raise RateStructureMissingError(
                f"Scheme {scheme.code} has a non-positive nominal unit",
                details={"scheme_code": scheme.code, "nominal_unit": scheme.daily_premium},
            )

        return RateStructure(
            scheme_code=scheme.code,
            nominal_unit=scheme.daily_premium,
            insurer_portion=scheme.insurer_portion,
            tier1_commission=scheme.delegate_commission,
            tier2_commission=scheme.coordinator_commission,
        )

    @staticmethod
    def resolve_recipients(member: Member) -> tuple[uuid.UUID | None, uuid.UUID | None]:
        """The payer's current (delegate, coordinator) ids; either may be None."""
        return member.delegate_id, member.coordinator_id
