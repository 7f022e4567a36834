"""
Follower account persistence

All automation writes to FollowerAccount go through update_account(), which
holds the per-account lock and retries when the versioned row was changed by
another process in the meantime.
"""

import logging
from typing import Callable, List, Optional, Any

from sqlalchemy.orm.exc import StaleDataError

from account_locks import AccountLockManager
from database import SessionLocal
from models import FollowerAccount, MasterStrategy

logger = logging.getLogger(__name__)


class AccountNotFoundError(LookupError):
    """Follower account does not exist"""


def setting(value, default):
    """Account setting with fallback to the engine default"""
    return value if value is not None else default


class AccountRepository:
    """Loads follower accounts and applies serialized updates"""

    def __init__(self, session_factory=None, locks: Optional[AccountLockManager] = None,
                 max_attempts: int = 3):
        self.session_factory = session_factory or SessionLocal
        self.locks = locks or AccountLockManager()
        self.max_attempts = max_attempts

    def get_account(self, account_id: str) -> Optional[FollowerAccount]:
        """Detached snapshot of the account, or None"""
        db = self.session_factory()
        try:
            account = db.query(FollowerAccount).filter(FollowerAccount.id == account_id).first()
            if account is not None:
                db.expunge(account)
            return account
        finally:
            db.close()

    def require_account(self, account_id: str) -> FollowerAccount:
        account = self.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Copy trading account {account_id} not found")
        return account

    def get_strategy(self, strategy_id: Optional[str]) -> Optional[MasterStrategy]:
        if not strategy_id:
            return None
        db = self.session_factory()
        try:
            strategy = db.query(MasterStrategy).filter(MasterStrategy.id == strategy_id).first()
            if strategy is not None:
                db.expunge(strategy)
            return strategy
        finally:
            db.close()

    def list_accounts(self, statuses: Optional[List[str]] = None, **flags) -> List[FollowerAccount]:
        """
        Detached snapshots of matching accounts

        Args:
            statuses: Restrict to these lifecycle states
            **flags: Boolean column filters, e.g. auto_rebalancing_enabled=True
        """
        db = self.session_factory()
        try:
            query = db.query(FollowerAccount)
            if statuses:
                query = query.filter(FollowerAccount.status.in_(statuses))
            for column, value in flags.items():
                query = query.filter(getattr(FollowerAccount, column) == value)
            accounts = query.order_by(FollowerAccount.id).all()
            for account in accounts:
                db.expunge(account)
            return accounts
        finally:
            db.close()

    def update_account(self, account_id: str, mutate: Callable[[FollowerAccount, Any], Any]) -> Any:
        """
        Apply mutate(account, db) in one transaction under the account lock

        mutate must only change local state; it may return a value which is
        passed through. Remote calls belong outside of it since the
        transaction is retried on version conflicts.

        Raises:
            AccountNotFoundError: unknown account
            StaleDataError: still conflicting after max_attempts
        """
        with self.locks.hold(account_id):
            for attempt in range(1, self.max_attempts + 1):
                db = self.session_factory()
                try:
                    account = db.query(FollowerAccount).filter(FollowerAccount.id == account_id).first()
                    if account is None:
                        raise AccountNotFoundError(f"Copy trading account {account_id} not found")
                    result = mutate(account, db)
                    db.commit()
                    return result
                except StaleDataError:
                    db.rollback()
                    if attempt == self.max_attempts:
                        logger.error(f"❌ Account {account_id} update conflicted {attempt} times, giving up")
                        raise
                    logger.warning(f"⚠️ Account {account_id} changed concurrently, retrying ({attempt}/{self.max_attempts})")
                except Exception:
                    db.rollback()
                    raise
                finally:
                    db.close()
