"""
Concurrency control for escrow operations.

Two layers protect each state-changing operation:

1. **Distributed lock** (DistributedLock, escrow_account_lock, contract_lock)
   - Redis-based mutual exclusion across processes/servers
   - Held across the gateway call, so two requests can never both pay out
     the same milestone or bill the same hours
   - TTL prevents deadlocks from crashed processes

2. **Row lock** (select_for_update inside transaction.atomic)
   - Used by the services when they write balances and state after the
     gateway confirms

Usage:
    from escrow.locks import escrow_account_lock

    with escrow_account_lock(account.id):
        service.release_milestone(...)

Note:
    Contention raises LockAcquisitionError with a retry_after hint; callers
    retry after a short backoff.
"""

from __future__ import annotations

import time
import uuid as uuid_module
from typing import TYPE_CHECKING

from django.conf import settings

from django_redis import get_redis_connection

from escrow.exceptions import LockAcquisitionError, NotFoundError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis


class DistributedLock:
    """
    Redis-based distributed lock with TTL.

    Features:
        - Automatic TTL prevents deadlocks from crashed processes
        - Token-based ownership prevents release by another process
        - Blocking (with timeout) and non-blocking acquisition

    Example:
        with DistributedLock("escrow:123", ttl=60, timeout=5.0):
            release_milestone()

    Args:
        key: Lock identifier (will be prefixed with "lock:")
        ttl: Lock TTL in seconds (auto-releases after this time)
        blocking: If True, acquire() waits until the lock is available
        timeout: Maximum wait time in seconds (only if blocking=True)
    """

    # Atomic check-and-delete so we only release a lock we own
    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    # Atomic check-and-extend
    EXTEND_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("expire", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

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

    def _contended(self, message: str) -> LockAcquisitionError:
        return LockAcquisitionError(
            message,
            details={
                "key": self.key,
                "retry_after": getattr(settings, "ESCROW_LOCK_RETRY_AFTER_SECONDS", 2),
            },
        )

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Raises:
            LockAcquisitionError: If the lock couldn't be acquired
        """
        self._token = str(uuid_module.uuid4())
        redis = self._get_redis()

        if self.blocking:
            end_time = time.monotonic() + self.timeout
            while True:
                if self._try_acquire(redis):
                    return True
                if time.monotonic() >= end_time:
                    break
                time.sleep(0.05)
            self._token = None
            raise self._contended("Another operation is in progress. Please retry shortly.")

        if not self._try_acquire(redis):
            self._token = None
            raise self._contended("Another operation is in progress. Please retry shortly.")
        return True

    def _try_acquire(self, redis: Redis) -> bool:
        return bool(redis.set(self.key, self._token, nx=True, ex=self.ttl))

    def release(self) -> bool:
        """
        Release the lock if we hold it.

        Returns:
            True if released, False if we didn't hold it (or it expired)
        """
        if self._token is None:
            return False

        redis = self._get_redis()
        result = redis.eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    def extend(self, additional_ttl: int | None = None) -> bool:
        """Reset the TTL if we still hold the lock."""
        if self._token is None:
            return False
        redis = self._get_redis()
        result = redis.eval(self.EXTEND_SCRIPT, 1, self.key, self._token, additional_ttl or self.ttl)
        return bool(result)

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        self.release()
        return False


def escrow_account_lock(escrow_id: Any) -> DistributedLock:
    """
    Lock serializing every state-changing operation on one escrow account.

    The key uses the canonical UUID form, so every spelling the database
    accepts for an id (upper case, no hyphens, a UUID object) locks the
    same account.

    Raises:
        NotFoundError: escrow_id is not a valid UUID
    """
    try:
        canonical = escrow_id if isinstance(escrow_id, uuid_module.UUID) else uuid_module.UUID(str(escrow_id))
    except ValueError:
        raise NotFoundError(
            "Escrow account not found",
            error_code="ESCROW_NOT_FOUND",
            details={"escrow_id": str(escrow_id)},
        ) from None
    return DistributedLock(
        f"escrow:{canonical}",
        ttl=settings.ESCROW_LOCK_TTL_SECONDS,
        timeout=settings.ESCROW_LOCK_TIMEOUT_SECONDS,
    )


def contract_lock(contract_id: str) -> DistributedLock:
    """Lock serializing biweekly processing for one contract."""
    return DistributedLock(
        f"contract:{contract_id}",
        ttl=settings.ESCROW_LOCK_TTL_SECONDS,
        timeout=settings.ESCROW_LOCK_TIMEOUT_SECONDS,
    )


__all__ = [
    "DistributedLock",
    "contract_lock",
    "escrow_account_lock",
]
