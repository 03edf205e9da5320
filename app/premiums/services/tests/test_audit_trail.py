"""Tests for AuditTrail."""

import uuid
from datetime import date, timedelta

import pytest
from django.utils import timezone

from core.services import TransactionScope
from premiums.models import AuditLogEntry
from premiums.services import AuditTrail
from premiums.state_machines import AuditAction, PaymentState
from premiums.tests.factories import PaymentFactory


@pytest.mark.django_db
class TestRecord:
    def test_writes_entry(self, initiated_payment):
        with AuditTrail.atomic() as scope:
            entry = AuditTrail.record(
                scope,
                AuditAction.PAYMENT_FAILED,
                initiated_payment,
                old_state=PaymentState.INITIATED,
                new_state=PaymentState.FAILED,
                details={"result_code": "1032"},
                actor="ops@example.com",
            )

        assert entry.entity_type == "Payment"
        assert entry.entity_id == str(initiated_payment.id)
        assert entry.actor == "ops@example.com"
        assert entry.details == {"result_code": "1032"}

    def test_details_are_json_safe(self, initiated_payment):
        transfer_id = uuid.uuid4()

        with AuditTrail.atomic() as scope:
            entry = AuditTrail.record(
                scope,
                AuditAction.PAYMENT_CONFIRMED,
                initiated_payment,
                details={"transfer_id": transfer_id, "period_key": date(2025, 1, 15)},
            )

        stored = AuditLogEntry.objects.get(id=entry.id)
        assert stored.details == {"transfer_id": str(transfer_id), "period_key": "2025-01-15"}

    def test_rolled_back_with_its_transaction(self, initiated_payment):
        with pytest.raises(RuntimeError):
            with AuditTrail.atomic() as scope:
                AuditTrail.record(scope, AuditAction.PAYMENT_FAILED, initiated_payment)
                raise RuntimeError("boom")

        assert AuditLogEntry.objects.count() == 0

    @pytest.mark.django_db(transaction=True)
    def test_requires_open_transaction(self, initiated_payment):
        with pytest.raises(RuntimeError):
            AuditTrail.record(
                TransactionScope(), AuditAction.PAYMENT_FAILED, initiated_payment
            )


@pytest.mark.django_db
class TestEntriesFor:
    def test_only_entries_for_entity_oldest_first(self, payer, subscription):
        payment = PaymentFactory(payer=payer, subscription=subscription)
        other = PaymentFactory(payer=payer, subscription=subscription)
        with AuditTrail.atomic() as scope:
            first = AuditTrail.record(scope, AuditAction.PAYMENT_INITIATED, payment)
            AuditTrail.record(scope, AuditAction.PAYMENT_INITIATED, other)
            second = AuditTrail.record(scope, AuditAction.PAYMENT_FAILED, payment)
        AuditLogEntry.objects.filter(id=first.id).update(
            created_at=timezone.now() - timedelta(minutes=1)
        )

        entries = list(AuditTrail.entries_for(payment))

        assert [e.id for e in entries] == [first.id, second.id]
