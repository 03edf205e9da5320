"""
Concurrency control utilities for engine state transitions.

Correctness here rests on atomic state transitions against the database
rather than on long-held locks. Three primitives are provided:

1. **Distributed Lock** (DistributedLock)
   - Redis ``SET NX EX`` shared by every web and worker process
   - Token-owned release so a slow holder never frees someone else's lock
   - Use for: single-flight work outside the database, such as refreshing
     the gateway access token

2. **Optimistic Locking** (check_version)
   - Version-based conflict detection for operator actions
   - The caller passes the version it was shown; a mismatch raises
   - Returns the row locked for the rest of the transaction

3. **Conditional Transition** (conditional_transition)
   - ``UPDATE ... WHERE pk = ? AND state IN (...)`` in one statement
   - Exactly one of two concurrent callers moves the row
   - Use for claims (pending → processing) where the loser simply backs off

Usage:
    from premiums.locks import DistributedLock, check_version, conditional_transition

    with DistributedLock("mpesa:access_token", ttl=40, timeout=35.0):
        refresh_token()

    with PayoutService.atomic() as scope:
        item = check_version(scope, CommissionPayoutLineItem, item_id, 3)

    with PayoutService.atomic() as scope:
        claimed = conditional_transition(
            scope,
            CommissionPayoutLineItem,
            item_id,
            from_states=[PayoutLineItemState.PENDING],
            to_state=PayoutLineItemState.PROCESSING,
        )

Note:
    check_version and conditional_transition take a TransactionScope so
    they can only run inside an open transaction. DistributedLock never
    touches the database.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING, Any, TypeVar

from django.db.models import F, Model
from django.utils import timezone
from django_redis import get_redis_connection

from core.exceptions import NotFoundError
from premiums.exceptions import LockAcquisitionError, StaleRecordError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from redis import Redis

    from core.services import TransactionScope

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Model)


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis-based lock with a TTL, held across processes.

    The TTL bounds how long a crashed holder can block everyone else.
    Release only deletes the key if it still holds this lock's token.

    Example:
        try:
            with DistributedLock("mpesa:access_token", ttl=40, timeout=35.0):
                ...
        except LockAcquisitionError:
            # Another process held the lock for the whole wait
            ...

    Args:
        key: Lock identifier (prefixed with "lock:")
        ttl: Seconds before Redis expires the lock on its own
        blocking: If True, acquire() polls until ``timeout``
        timeout: Maximum wait in seconds (blocking mode only)
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    POLL_INTERVAL_SECONDS = 0.05

    def __init__(
        self,
        key: str,
        ttl: int = 30,
        blocking: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.key = f"lock:{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self._token: str | None = None
        self._redis: Redis | None = None

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    def acquire(self) -> bool:
        """
        Take the lock or raise.

        Raises:
            LockAcquisitionError: Held elsewhere (non-blocking) or still
                held when ``timeout`` ran out (blocking)
        """
        token = uuid.uuid4().hex
        redis = self._get_redis()

        if self.blocking:
            deadline = time.monotonic() + self.timeout
            while True:
                if redis.set(self.key, token, nx=True, ex=self.ttl):
                    self._token = token
                    return True
                if time.monotonic() >= deadline:
                    break
                time.sleep(self.POLL_INTERVAL_SECONDS)

            raise LockAcquisitionError(
                f"Failed to acquire lock '{self.key}' within {self.timeout}s",
                details={"key": self.key, "timeout": self.timeout},
            )

        if not redis.set(self.key, token, nx=True, ex=self.ttl):
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )
        self._token = token
        return True

    def release(self) -> bool:
        """
        Release the lock if this instance still owns it.

        Returns False when the lock was never taken or has already
        expired and been taken by someone else.
        """
        if self._token is None:
            return False

        result = self._get_redis().eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False


# =============================================================================
# Optimistic Locking
# =============================================================================


def check_version(
    scope: TransactionScope,
    model_class: type[T],
    pk: Any,
    expected_version: int,
) -> T:
    """
    Atomically check version and lock a record for update.

    Args:
        scope: Open transaction the lock belongs to
        model_class: Django model class (must have 'version' field)
        pk: Primary key of the record
        expected_version: Version the caller expects

    Returns:
        The locked model instance

    Raises:
        StaleRecordError: If version doesn't match (concurrent modification)
        NotFoundError: If record doesn't exist
    """
    scope.require_active()

    instance = (
        model_class.objects.using(scope.using)
        .select_for_update()
        .filter(pk=pk, version=expected_version)
        .first()
    )

    if instance is None:
        model_name = model_class.__name__
        current = model_class.objects.using(scope.using).filter(pk=pk).first()
        if current is None:
            raise NotFoundError(
                f"{model_name} {pk} not found",
                error_code=f"{model_name.upper()}_NOT_FOUND",
                details={"pk": str(pk)},
            )

        logger.info(
            "Optimistic lock conflict",
            extra={
                "model": model_name,
                "pk": str(pk),
                "expected_version": expected_version,
                "current_version": current.version,
            },
        )
        raise StaleRecordError(
            f"{model_name} {pk} has been modified "
            f"(expected version {expected_version}, current {current.version})",
            details={
                "pk": str(pk),
                "expected_version": expected_version,
                "current_version": current.version,
            },
        )

    return instance


# =============================================================================
# Conditional Transitions
# =============================================================================


def conditional_transition(
    scope: TransactionScope,
    model_class: type[Model],
    pk: Any,
    *,
    from_states: Iterable[str],
    to_state: str,
    state_field: str = "state",
    **changes: Any,
) -> bool:
    """
    Move a row to ``to_state`` only if it is currently in ``from_states``.

    Runs as a single UPDATE, bumping ``version`` and applying ``changes``
    in the same statement. Bypasses django-fsm's protected field, so
    callers must only use it for edges the model's FSM declares.

    Returns:
        True if this call moved the row, False if it was not in an
        allowed source state (someone else got there first).
    """
    scope.require_active()
    changes.setdefault("updated_at", timezone.now())

    updated = (
        model_class.objects.using(scope.using)
        .filter(pk=pk, **{f"{state_field}__in": list(from_states)})
        .update(**{state_field: to_state}, version=F("version") + 1, **changes)
    )
    return updated == 1
