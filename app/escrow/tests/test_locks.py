"""
Tests for escrow locking.

Redis is replaced by the autouse mock_redis fixture; set() controls whether
acquisition succeeds and eval() whether the owner check passes.
"""

import uuid

import pytest

from escrow.exceptions import LockAcquisitionError, NotFoundError
from escrow.locks import DistributedLock, contract_lock, escrow_account_lock

ESCROW_ID = uuid.UUID("0f9c2b1e-5a4d-4c3b-8e2f-1a2b3c4d5e6f")


class TestDistributedLock:
    """Tests for DistributedLock."""

    def test_acquire_sets_key_with_ttl(self, mock_redis):
        """Acquisition is a SET NX EX on the prefixed key."""
        lock = DistributedLock("escrow:abc", ttl=45, blocking=False)

        assert lock.acquire() is True
        assert lock.is_held

        args, kwargs = mock_redis.set.call_args
        assert args[0] == "lock:escrow:abc"
        assert kwargs == {"nx": True, "ex": 45}

    def test_each_acquisition_gets_its_own_token(self, mock_redis):
        first = DistributedLock("a", blocking=False)
        second = DistributedLock("b", blocking=False)

        first.acquire()
        second.acquire()

        assert first._token != second._token

    def test_contention_raises_with_retry_hint(self, mock_redis, settings):
        """A held lock raises LockAcquisitionError carrying retry_after."""
        settings.ESCROW_LOCK_RETRY_AFTER_SECONDS = 7
        mock_redis.set.return_value = False

        lock = DistributedLock("escrow:abc", blocking=False)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert exc_info.value.details == {"key": "lock:escrow:abc", "retry_after": 7}
        assert not lock.is_held

    def test_blocking_acquire_retries_until_free(self, mock_redis):
        mock_redis.set.side_effect = [False, False, True]

        lock = DistributedLock("escrow:abc", blocking=True, timeout=1.0)

        assert lock.acquire() is True
        assert mock_redis.set.call_count == 3

    def test_blocking_acquire_gives_up_after_timeout(self, mock_redis):
        mock_redis.set.return_value = False

        lock = DistributedLock("escrow:abc", blocking=True, timeout=0.1)

        with pytest.raises(LockAcquisitionError):
            lock.acquire()
        assert not lock.is_held

    def test_release_runs_owner_checked_script(self, mock_redis):
        lock = DistributedLock("escrow:abc", blocking=False)
        lock.acquire()
        token = lock._token

        assert lock.release() is True
        assert not lock.is_held
        args, _ = mock_redis.eval.call_args
        assert args[1:] == (1, "lock:escrow:abc", token)

    def test_release_of_expired_lock_returns_false(self, mock_redis):
        """Another owner took the key after our TTL expired."""
        mock_redis.eval.return_value = 0
        lock = DistributedLock("escrow:abc", blocking=False)
        lock.acquire()

        assert lock.release() is False

    def test_release_without_acquire(self, mock_redis):
        lock = DistributedLock("escrow:abc")

        assert lock.release() is False
        mock_redis.eval.assert_not_called()

    def test_extend_uses_given_ttl(self, mock_redis):
        lock = DistributedLock("escrow:abc", ttl=30, blocking=False)
        lock.acquire()

        assert lock.extend(additional_ttl=90) is True
        args, _ = mock_redis.eval.call_args
        assert args[4] == 90

    def test_extend_without_lock(self, mock_redis):
        assert DistributedLock("escrow:abc").extend() is False
        mock_redis.eval.assert_not_called()

    def test_context_manager_releases_on_error(self, mock_redis):
        """The lock is released and the error propagates."""
        with pytest.raises(RuntimeError, match="gateway down"):
            with DistributedLock("escrow:abc"):
                raise RuntimeError("gateway down")

        mock_redis.eval.assert_called_once()


class TestLockFactories:
    """Tests for the per-account and per-contract lock helpers."""

    def test_escrow_account_lock_uses_settings(self, settings):
        settings.ESCROW_LOCK_TTL_SECONDS = 120
        settings.ESCROW_LOCK_TIMEOUT_SECONDS = 3.0

        lock = escrow_account_lock(ESCROW_ID)

        assert lock.key == f"lock:escrow:{ESCROW_ID}"
        assert lock.ttl == 120
        assert lock.timeout == 3.0

    def test_contract_lock_key(self):
        assert contract_lock("hourly-1").key == "lock:contract:hourly-1"

    def test_account_and_contract_locks_do_not_collide(self):
        """An account and a contract with the same id lock different keys."""
        assert escrow_account_lock(ESCROW_ID).key != contract_lock(str(ESCROW_ID)).key

    @pytest.mark.parametrize(
        "spelling",
        [str(ESCROW_ID).upper(), ESCROW_ID.hex, f"{{{ESCROW_ID}}}", f"urn:uuid:{ESCROW_ID}"],
        ids=["upper", "hex", "braces", "urn"],
    )
    def test_every_spelling_of_an_id_locks_the_same_key(self, spelling):
        """The database accepts these spellings for one account, so the lock must too."""
        assert escrow_account_lock(spelling).key == escrow_account_lock(ESCROW_ID).key

    def test_malformed_escrow_id_is_not_found(self):
        with pytest.raises(NotFoundError) as exc_info:
            escrow_account_lock("not-a-uuid")

        assert exc_info.value.error_code == "ESCROW_NOT_FOUND"

    def test_lock_held_under_one_spelling_blocks_another(self, redis_locks):
        with escrow_account_lock(ESCROW_ID):
            contender = escrow_account_lock(str(ESCROW_ID).upper())
            contender.blocking = False
            with pytest.raises(LockAcquisitionError):
                contender.acquire()
