"""
Per-key mutual exclusion and storage retry for the scheduling core.

Two independent layers guard every "check + commit" region:

1. An in-process lock per provider / per group session for the threads of
   one worker. Backends without row locks (SQLite) rely on it alone.
2. transaction.atomic() + select_for_update() on the owning row for separate
   worker processes on PostgreSQL.

Order is always: acquire key lock → open transaction → row lock → work →
commit → release key lock. Locks are per key, never global.
"""

import logging
import threading
import time
from contextlib import contextmanager
from functools import wraps

from django.db import OperationalError, transaction
from tenacity import (
    RetryCallState,
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from appointments.conf import scheduling_setting
from appointments.exceptions import NotFoundError, StorageUnavailableError

logger = logging.getLogger(__name__)


class KeyedLockRegistry:
    """
    Hands out one threading.Lock per key, created on first use.

    An entry is dropped once no thread holds or waits on it, so the registry
    only ever contains keys that are currently in use.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of threads holding or waiting]
        self._locks = {}

    def __len__(self):
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


_provider_locks = KeyedLockRegistry()
_session_locks = KeyedLockRegistry()


@contextmanager
def provider_lock(provider_id):
    """
    Serialize conflict check + commit for one provider.

    Yields the ProviderProfile row locked FOR UPDATE inside an open
    transaction.
    """
    from providers.models import ProviderProfile

    with _provider_locks.hold(int(provider_id)):
        with transaction.atomic():
            try:
                provider = ProviderProfile.objects.select_for_update().get(pk=provider_id)
            except ProviderProfile.DoesNotExist:
                raise NotFoundError("Provider not found.")
            yield provider


@contextmanager
def session_lock(session_id):
    """Serialize capacity check + counter update for one group session."""
    from group_sessions.models import GroupSession

    with _session_locks.hold(int(session_id)):
        with transaction.atomic():
            try:
                session = GroupSession.objects.select_for_update().get(pk=session_id)
            except GroupSession.DoesNotExist:
                raise NotFoundError("Session not found.")
            yield session


def _log_before_sleep(retry_state: RetryCallState) -> None:
    logger.warning(
        "[STORAGE] %s attempt %d failed (%s), retrying in %.2fs",
        retry_state.fn.__name__,
        retry_state.attempt_number,
        retry_state.outcome.exception(),
        retry_state.next_action.sleep,
    )


def with_storage_retry(func):
    """
    Retry `func` on transient database errors.

    Only django.db.OperationalError (deadlock, serialization failure,
    "database is locked") is retried, with exponential backoff. Once the
    attempts are exhausted the failure surfaces as StorageUnavailableError.
    Domain errors propagate on the first occurrence.
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        attempts = max(1, scheduling_setting("STORAGE_RETRY_ATTEMPTS"))
        backoff = scheduling_setting("STORAGE_RETRY_BACKOFF_SECONDS")
        decorated = retry(
            retry=retry_if_exception_type(OperationalError),
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=backoff, max=backoff * 2 ** attempts),
            before_sleep=_log_before_sleep,
            sleep=time.sleep,
        )(func)
        try:
            return decorated(*args, **kwargs)
        except RetryError as exc:
            cause = exc.last_attempt.exception()
            logger.error(
                "[STORAGE] %s failed after %d attempts: %s",
                func.__name__, attempts, cause,
            )
            raise StorageUnavailableError() from cause

    return wrapper
