"""
Per-account serialization for automation state changes

Pause, resume, rebalance and disconnect of the same follower account run one
at a time in this process. Cross-process safety comes from the versioned
FollowerAccount row (see account_repository.update_account).
"""

import threading
import logging
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class AccountLockManager:
    """Keyed table of re-entrant locks, one per account id"""

    def __init__(self):
        self._locks = {}
        self._registry_lock = threading.Lock()

    def lock_for(self, account_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[account_id] = lock
            return lock

    @contextmanager
    def hold(self, account_id: str):
        """Hold the account's lock for the duration of the block"""
        lock = self.lock_for(account_id)
        with lock:
            yield

    def forget(self, account_id: str):
        """Drop the lock of a removed account"""
        with self._registry_lock:
            self._locks.pop(account_id, None)
