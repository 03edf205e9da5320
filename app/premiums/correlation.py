"""
Correlation index over gateway-facing records.

Inbound notifications identify the record they belong to only by a
gateway correlation id. CorrelationIndex gives the reconciler and the
payout service one narrow way to find that record and move it out of a
non-terminal state, always inside a caller-supplied transaction scope.

Two indexes are provided:

    payment_index   Payment keyed by gateway_request_id (CheckoutRequestID)
    transfer_index  OutboundTransfer keyed by conversation_id, falling back
                    to correlation_token (OriginatorConversationID) when the
                    result arrives before the acceptance response was stored

Usage:
    from premiums.correlation import payment_index

    with CallbackReconciler.atomic() as scope:
        payment = payment_index.lookup_by_token(scope, checkout_request_id)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from django.db.models import F, Model
from django.utils import timezone

if TYPE_CHECKING:
    from collections.abc import Iterable

    from core.services import TransactionScope

logger = logging.getLogger(__name__)


class CorrelationIndex:
    """
    Lookup and conditional update of a model by correlation token.

    Args:
        model_path: "app_label.ModelName", resolved lazily
        token_fields: Fields tried in order when looking up a token
        state_field: Column holding the record's state
    """

    def __init__(
        self,
        model_path: str,
        token_fields: tuple[str, ...],
        state_field: str = "state",
    ):
        self.model_path = model_path
        self.token_fields = token_fields
        self.state_field = state_field

    @property
    def model(self) -> type[Model]:
        from django.apps import apps

        return apps.get_model(self.model_path)

    def __repr__(self) -> str:
        return f"CorrelationIndex({self.model_path}, {self.token_fields})"

    def lookup_by_token(
        self,
        scope: TransactionScope,
        token: str,
        *,
        for_update: bool = True,
    ) -> Model | None:
        """
        Return the record matching ``token``, or None.

        With for_update the row is locked until the scope's transaction
        ends, which serialises concurrent notifications for the same record.
        """
        if not token:
            return None
        if for_update:
            scope.require_active()

        queryset = self.model.objects.using(scope.using)
        if for_update:
            queryset = queryset.select_for_update()

        for field in self.token_fields:
            instance = queryset.filter(**{field: token}).first()
            if instance is not None:
                return instance

        logger.info(
            "Correlation token not found",
            extra={"index": self.model_path, "token": token},
        )
        return None

    def mark_terminal(
        self,
        scope: TransactionScope,
        token: str,
        from_states: Iterable[str],
        **changes: Any,
    ) -> bool:
        """
        Move the record out of ``from_states`` in a single UPDATE.

        ``changes`` must include the new state column value. Bumps version.

        Returns:
            True if exactly one row moved.
        """
        scope.require_active()
        if self.state_field not in changes:
            raise ValueError(f"mark_terminal requires a new '{self.state_field}' value")
        changes.setdefault("updated_at", timezone.now())

        from_states = list(from_states)
        queryset = self.model.objects.using(scope.using)
        for field in self.token_fields:
            if not queryset.filter(**{field: token}).exists():
                continue
            updated = queryset.filter(
                **{field: token, f"{self.state_field}__in": from_states}
            ).update(version=F("version") + 1, **changes)
            return updated == 1
        return False


payment_index = CorrelationIndex(
    "premiums.Payment",
    token_fields=("gateway_request_id",),
)

transfer_index = CorrelationIndex(
    "premiums.OutboundTransfer",
    token_fields=("conversation_id", "correlation_token"),
    state_field="outcome",
)
