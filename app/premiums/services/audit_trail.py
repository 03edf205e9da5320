"""
Audit trail for engine state changes.

Every state change in the engine writes one AuditLogEntry inside the same
transaction as the change. Because the scope is passed in, an entry can
never be written for a change that rolls back.

Usage:
    from premiums.services.audit_trail import AuditTrail
    from premiums.state_machines import AuditAction

    with CallbackReconciler.atomic() as scope:
        payment.fail(...)
        payment.save()
        AuditTrail.record(
            scope,
            AuditAction.PAYMENT_FAILED,
            payment,
            old_state="initiated",
            new_state=payment.state,
            details={"result_code": "1032"},
        )
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from django.core.serializers.json import DjangoJSONEncoder

from core.services import BaseService
from premiums.models import AuditLogEntry

if TYPE_CHECKING:
    from django.db.models import Model, QuerySet

    from core.services import TransactionScope

logger = logging.getLogger(__name__)


def _json_safe(details: dict[str, Any] | None) -> dict[str, Any]:
    """Coerce UUIDs, datetimes and Decimals to JSON-friendly values."""
    if not details:
        return {}
    encoder = DjangoJSONEncoder()
    safe = {}
    for key, value in details.items():
        if value is None or isinstance(value, (str, int, float, bool, list, dict)):
            safe[key] = value
        else:
            safe[key] = encoder.default(value)
    return safe


class AuditTrail(BaseService):
    """Write-only audit log, plus a read helper for the dashboard."""

    @classmethod
    def record(
        cls,
        scope: TransactionScope,
        action: str,
        entity: Model,
        *,
        old_state: str | None = None,
        new_state: str | None = None,
        details: dict[str, Any] | None = None,
        actor: str = "system",
    ) -> AuditLogEntry:
        scope.require_active()

        entry = AuditLogEntry.objects.using(scope.using).create(
            action=action,
            entity_type=entity.__class__.__name__,
            entity_id=str(entity.pk),
            old_state=old_state,
            new_state=new_state,
            actor=actor,
            details=_json_safe(details),
        )

        cls.get_logger().debug(
            "Audit entry recorded",
            extra={
                "action": action,
                "entity_type": entry.entity_type,
                "entity_id": entry.entity_id,
            },
        )
        return entry

    @classmethod
    def entries_for(cls, entity: Model) -> QuerySet[AuditLogEntry]:
        """All entries for one record, oldest first."""
        return AuditLogEntry.objects.filter(
            entity_type=entity.__class__.__name__,
            entity_id=str(entity.pk),
        ).order_by("created_at")
