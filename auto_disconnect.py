"""
Auto Disconnect

Counts consecutive errors of a follower account inside a sliding window and
permanently disconnects accounts that keep failing.

- An error arriving more than error_window_minutes after the previous one
  starts a new window: the count is reset to 0 before it is incremented.
- Reaching max_consecutive_errors disconnects the account once: the
  subscription and the remote account are removed (best-effort) and the
  account is marked disconnected.
- reset_error_count() is called on recovery signals (successful broker
  probe, successful reconnect).
"""

import logging
from datetime import timedelta
from typing import Optional, Dict, List

from sqlalchemy.exc import SQLAlchemyError

import automation_config as config
from account_repository import AccountRepository, AccountNotFoundError, setting
from automation_log import AutomationLogger, ACTION_AUTO_DISCONNECT
from copyfactory_client import CopyFactoryClient, SubscriptionError, ConfigurationError
from models import FollowerAccount, ErrorHistoryEntry, STATUS_DISCONNECTED
from timezone_manager import tz

logger = logging.getLogger(__name__)


class AutoDisconnectService:
    """Error tracker and disconnect action"""

    def __init__(self, accounts: AccountRepository, client: CopyFactoryClient,
                 audit: Optional[AutomationLogger] = None, notifications=None):
        self.accounts = accounts
        self.client = client
        self.audit = audit or AutomationLogger(accounts.session_factory)
        self.notifications = notifications

    def should_disconnect(self, account: FollowerAccount) -> bool:
        if not account.auto_disconnect_enabled or account.auto_disconnected_at:
            return False
        max_errors = setting(account.max_consecutive_errors, config.DEFAULT_MAX_CONSECUTIVE_ERRORS)
        return (account.consecutive_error_count or 0) >= max_errors

    def track_error(self, account_id: str, error_text: str) -> Dict:
        """
        Record an error of the account and disconnect at the threshold

        Never raises: tracking runs on error paths of other components.

        Returns:
            Dict with tracked, count, disconnected
        """
        if not config.is_automation_enabled():
            return {'tracked': False, 'count': None, 'disconnected': False,
                    'reason': config.AUTOMATION_DISABLED_REASON}

        try:
            with self.accounts.locks.hold(account_id):
                account = self.accounts.get_account(account_id)
                if account is None:
                    logger.warning(f"Error for unknown account {account_id} not tracked: {error_text}")
                    return {'tracked': False, 'count': None, 'disconnected': False, 'reason': 'Account not found'}
                if not account.auto_disconnect_enabled:
                    return {'tracked': False, 'count': None, 'disconnected': False,
                            'reason': 'Auto-disconnect disabled'}
                if account.auto_disconnected_at:
                    return {'tracked': False, 'count': account.consecutive_error_count,
                            'disconnected': False, 'reason': 'Account already disconnected'}

                window = timedelta(minutes=setting(account.error_window_minutes, config.DEFAULT_ERROR_WINDOW_MINUTES))
                max_errors = setting(account.max_consecutive_errors, config.DEFAULT_MAX_CONSECUTIVE_ERRORS)
                now = tz.now_naive_utc()

                def mutate(acc, db):
                    if acc.last_error_at is not None and now - acc.last_error_at > window:
                        acc.consecutive_error_count = 0
                    acc.consecutive_error_count = (acc.consecutive_error_count or 0) + 1
                    acc.last_error_at = now
                    acc.last_error = error_text
                    db.add(ErrorHistoryEntry(
                        account_id=acc.id,
                        user_id=acc.user_id,
                        error=error_text,
                        consecutive_count=acc.consecutive_error_count,
                        timestamp=now
                    ))
                    return acc.consecutive_error_count

                count = self.accounts.update_account(account_id, mutate)
                logger.warning(f"⚠️ Error {count}/{max_errors} for {account_id}: {error_text}")

                disconnected = False
                if count >= max_errors:
                    reason = (
                        f"Exceeded error threshold: {count} consecutive errors "
                        f"within {int(window.total_seconds() // 60)} minutes"
                    )
                    disconnected = self.disconnect_account(account_id, reason)

                return {'tracked': True, 'count': count, 'disconnected': disconnected}

        except (SQLAlchemyError, AccountNotFoundError, ConfigurationError) as e:
            logger.error(f"❌ Error tracking failed for {account_id}: {e}", exc_info=True)
            return {'tracked': False, 'count': None, 'disconnected': False, 'reason': str(e)}

    def disconnect_account(self, account_id: str, reason: str) -> bool:
        """
        Disconnect an account once

        Remote cleanup failures are logged; the local state is committed anyway.

        Returns:
            True if this call disconnected the account
        """
        with self.accounts.locks.hold(account_id):
            account = self.accounts.require_account(account_id)
            if account.auto_disconnected_at:
                logger.info(f"Account {account_id} already disconnected at {account.auto_disconnected_at}")
                return False

            strategy = self.accounts.get_strategy(account.strategy_id)
            token = strategy.api_token if strategy else None
            if strategy is not None:
                try:
                    self.client.unsubscribe(account.id, strategy.id, token=token)
                except (SubscriptionError, ConfigurationError) as e:
                    logger.error(f"❌ Unsubscribe during disconnect of {account_id} failed: {e}")
            try:
                self.client.remove_account(account.id, token=token)
            except (SubscriptionError, ConfigurationError) as e:
                logger.error(f"❌ Remote account removal for {account_id} failed: {e}")

            now = tz.now_naive_utc()

            def mutate(acc, db):
                if acc.auto_disconnected_at:
                    return False
                acc.status = STATUS_DISCONNECTED
                acc.auto_disconnected_at = now
                acc.auto_disconnect_reason = reason
                return True

            changed = self.accounts.update_account(account_id, mutate)

        if changed:
            logger.error(f"🔌 Account {account_id} AUTO-DISCONNECTED: {reason}")
            self.audit.log_action(
                account_id, ACTION_AUTO_DISCONNECT, reason,
                details={'errorCount': account.consecutive_error_count, 'lastError': account.last_error},
                user_id=account.user_id
            )
            if self.notifications is not None:
                try:
                    self.notifications.notify(
                        account.user_id,
                        'Account Auto-Disconnected',
                        f"Your copy trading account {account.label or account.id} was disconnected. {reason}",
                        metadata={'accountId': account.id, 'reason': reason},
                        notification_type='error'
                    )
                except Exception as e:
                    logger.error(f"Disconnect notification for {account_id} failed: {e}")
        return changed

    def reset_error_count(self, account_id: str) -> bool:
        """
        Clear the error counter after recovery

        Returns:
            True if a non-zero count was reset
        """
        account = self.accounts.get_account(account_id)
        if account is None or not account.consecutive_error_count:
            return False

        def mutate(acc, db):
            if not acc.consecutive_error_count:
                return False
            acc.consecutive_error_count = 0
            acc.last_error_at = None
            return True

        changed = self.accounts.update_account(account_id, mutate)
        if changed:
            logger.info(f"✅ Error count reset for {account_id}")
        return changed

    def get_error_history(self, account_id: str, limit: int = config.ERROR_HISTORY_DEFAULT_LIMIT) -> List[Dict]:
        """Tracked errors of the account, newest first"""
        db = self.accounts.session_factory()
        try:
            entries = db.query(ErrorHistoryEntry).filter(
                ErrorHistoryEntry.account_id == account_id
            ).order_by(ErrorHistoryEntry.timestamp.desc(), ErrorHistoryEntry.id.desc()).limit(limit).all()
            return [
                {
                    'id': e.id,
                    'error': e.error,
                    'consecutive_count': e.consecutive_count,
                    'timestamp': tz.isoformat(e.timestamp),
                }
                for e in entries
            ]
        finally:
            db.close()
