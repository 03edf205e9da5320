"""Tests for RateResolver lookups."""

import uuid

import pytest

from membership.tests.factories import MedicalSchemeFactory, MemberFactory, SubscriptionFactory
from premiums.exceptions import RateStructureMissingError
from premiums.services import RateResolver


@pytest.mark.django_db
class TestResolve:
    def test_returns_scheme_rates(self):
        scheme = MedicalSchemeFactory(code="FAMILY", daily_premium=100, insurer_portion=75)
        subscription = SubscriptionFactory(scheme=scheme)

        rates = RateResolver.resolve(subscription.id)

        assert rates.scheme_code == "FAMILY"
        assert rates.nominal_unit == 100
        assert rates.insurer_portion == 75
        assert rates.tier1_commission == 6
        assert rates.tier2_commission == 2

    def test_unknown_subscription(self):
        with pytest.raises(RateStructureMissingError):
            RateResolver.resolve(uuid.uuid4())

    def test_missing_rate_lists_fields(self):
        scheme = MedicalSchemeFactory(delegate_commission=None, coordinator_commission=None)
        subscription = SubscriptionFactory(scheme=scheme)

        with pytest.raises(RateStructureMissingError) as exc_info:
            RateResolver.resolve(subscription.id)

        assert exc_info.value.details["missing"] == [
            "coordinator_commission",
            "delegate_commission",
        ]

    def test_zero_nominal_unit(self):
        subscription = SubscriptionFactory(scheme=MedicalSchemeFactory(daily_premium=0))

        with pytest.raises(RateStructureMissingError):
            RateResolver.resolve(subscription.id)


@pytest.mark.django_db
class TestResolveRecipients:
    def test_delegate_and_coordinator(self):
        payer = MemberFactory(with_hierarchy=True)

        assert RateResolver.resolve_recipients(payer) == (payer.delegate_id, payer.coordinator_id)

    def test_member_without_hierarchy(self):
        assert RateResolver.resolve_recipients(MemberFactory()) == (None, None)
