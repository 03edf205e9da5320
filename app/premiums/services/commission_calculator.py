"""
Commission split for confirmed payments.

calculate_split() is a pure function. Each fixed portion is scaled by
confirmed_amount / nominal_unit with integer floor arithmetic, and the
platform residual is whatever is left. The four parts therefore sum to
the confirmed amount by construction; no rounding correction is applied.

Example (scheme 50 / 40 / 6 / 2):
    confirmed 50  -> insurer 40, tier1 6, tier2 2, residual 2
    confirmed 25  -> insurer 20, tier1 3, tier2 1, residual 1
    confirmed 37  -> insurer 29, tier1 4, tier2 1, residual 3
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from core.services import BaseService
from premiums.exceptions import NegativeResidualError, PaymentValidationError
from premiums.services.rate_resolver import RateResolver, RateStructure

if TYPE_CHECKING:
    from core.services import TransactionScope
    from premiums.models import Payment


@dataclass(frozen=True)
class CommissionSplit:
    insurer_portion: int
    tier1_commission: int
    tier2_commission: int
    platform_residual: int

    @property
    def total(self) -> int:
        return (
            self.insurer_portion
            + self.tier1_commission
            + self.tier2_commission
            + self.platform_residual
        )


@dataclass(frozen=True)
class CommissionAllocation:
    """A split plus the recipients and rates it was computed with."""

    split: CommissionSplit
    tier1_recipient_id: uuid.UUID | None
    tier2_recipient_id: uuid.UUID | None
    rates: RateStructure

    def __iter__(self):
        # split, tier1_id, tier2_id, rates = allocation
        return iter((self.split, self.tier1_recipient_id, self.tier2_recipient_id, self.rates))


def parse_whole_amount(amount) -> int:
    """
    Return amount as a non-negative int, rejecting anything fractional.

    bool is rejected even though it is an int subclass.
    """
    if isinstance(amount, bool):
        raise PaymentValidationError("Amount must be a whole number", details={"amount": amount})
    if isinstance(amount, int):
        value = amount
    elif isinstance(amount, float) and amount.is_integer():
        value = int(amount)
    elif isinstance(amount, Decimal) and amount.is_finite() and amount == amount.to_integral_value():
        value = int(amount)
    else:
        raise PaymentValidationError(
            "Amount must be a whole number of shillings",
            details={"amount": str(amount)},
        )
    if value < 0:
        raise PaymentValidationError("Amount cannot be negative", details={"amount": value})
    return value


def calculate_split(
    confirmed_amount: int,
    rates: RateStructure,
    has_tier1: bool = True,
    has_tier2: bool = True,
) -> CommissionSplit:
    """
    Split confirmed_amount into insurer, tier1, tier2 and residual.

    A tier without a recipient contributes 0, leaving its share in the
    residual.

    Raises:
        PaymentValidationError: Negative or non-integral amount
        NegativeResidualError: Scaled portions exceed the amount
    """
    amount = parse_whole_amount(confirmed_amount)
    unit = rates.nominal_unit

    insurer = rates.insurer_portion * amount // unit
    tier1 = rates.tier1_commission * amount // unit if has_tier1 else 0
    tier2 = rates.tier2_commission * amount // unit if has_tier2 else 0
    residual = amount - insurer - tier1 - tier2

    if residual < 0:
        raise NegativeResidualError(
            f"Scheme {rates.scheme_code} portions exceed the confirmed amount",
            details={
                "scheme_code": rates.scheme_code,
                "confirmed_amount": amount,
                "insurer_portion": insurer,
                "tier1_commission": tier1,
                "tier2_commission": tier2,
            },
        )

    return CommissionSplit(
        insurer_portion=insurer,
        tier1_commission=tier1,
        tier2_commission=tier2,
        platform_residual=residual,
    )


class CommissionCalculator(BaseService):
    """Resolves rates and recipients for a payment and computes its split."""

    @classmethod
    def apply(
        cls,
        scope: TransactionScope,
        payment: Payment,
        confirmed_amount: int,
    ) -> CommissionAllocation:
        """
        Compute the split to freeze onto ``payment``.

        Must run in the same transaction that confirms the payment.

        Raises:
            CommissionComputationError: Rates missing or residual negative
        """
        scope.require_active()

        rates = RateResolver.resolve(payment.subscription_id)
        tier1_id, tier2_id = RateResolver.resolve_recipients(payment.payer)
        split = calculate_split(
            confirmed_amount,
            rates,
            has_tier1=tier1_id is not None,
            has_tier2=tier2_id is not None,
        )

        cls.get_logger().info(
            "Commission split computed",
            extra={
                "payment_id": str(payment.id),
                "scheme_code": rates.scheme_code,
                "confirmed_amount": confirmed_amount,
                "insurer_portion": split.insurer_portion,
                "tier1_commission": split.tier1_commission,
                "tier2_commission": split.tier2_commission,
                "platform_residual": split.platform_residual,
            },
        )

        return CommissionAllocation(
            split=split,
            tier1_recipient_id=tier1_id,
            tier2_recipient_id=tier2_id,
            rates=rates,
        )
