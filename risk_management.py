"""
Copy Trading Risk Management

Drawdown-driven pause/resume of follower accounts:
1. Pauses copying (unsubscribe) when drawdown reaches max_drawdown_percent
2. Resumes copying (re-subscribe) once drawdown falls below resume_drawdown_percent
3. Logs every transition for user visibility

drawdown % = (balance - equity) / balance * 100

States: active -> paused -> active. Disconnected accounts are never resumed
here; that transition belongs to auto_disconnect.

A failed unsubscribe/subscribe is logged and the local transition still
commits. Missing strategy or credentials raise ConfigurationError.

Configuration per account:
- auto_pause_enabled / auto_resume_enabled
- max_drawdown_percent (default: 20%)
- resume_drawdown_percent (default: 15%)
"""

import logging
from typing import Optional, Dict

import automation_config as config
from account_repository import AccountRepository, setting
from account_stats import AccountStats
from automation_log import AutomationLogger, ACTION_AUTO_PAUSE, ACTION_AUTO_RESUME
from copyfactory_client import CopyFactoryClient, ConfigurationError, SubscriptionError
from models import FollowerAccount, MasterStrategy, STATUS_ACTIVE, STATUS_PAUSED
from timezone_manager import tz

logger = logging.getLogger(__name__)


def calculate_drawdown(balance: float, equity: float) -> float:
    """Drawdown in percent of balance, 0 when balance is not positive"""
    if not balance or balance <= 0:
        return 0.0
    return (balance - equity) * 100 / balance


def _decision(should_act: bool, reason: str, drawdown: Optional[float] = None) -> Dict:
    return {'should_act': should_act, 'reason': reason, 'drawdown': drawdown}


class RiskManagementService:
    """Pause/resume state machine for follower accounts"""

    def __init__(self, accounts: AccountRepository, client: CopyFactoryClient,
                 audit: Optional[AutomationLogger] = None, notifications=None):
        self.accounts = accounts
        self.client = client
        self.audit = audit or AutomationLogger(accounts.session_factory)
        self.notifications = notifications

    # ==================== DECISIONS ====================

    def should_pause(self, account: FollowerAccount, stats: AccountStats) -> Dict:
        """
        Check the pause trigger

        Returns:
            Dict with should_act, reason, drawdown
        """
        if not config.is_automation_enabled():
            return _decision(False, config.AUTOMATION_DISABLED_REASON)
        if not account.auto_pause_enabled:
            return _decision(False, 'Auto-pause disabled')
        if account.status != STATUS_ACTIVE:
            return _decision(False, f'Account is {account.status}')

        drawdown = calculate_drawdown(stats.balance, stats.equity)
        max_drawdown = setting(account.max_drawdown_percent, config.DEFAULT_MAX_DRAWDOWN_PERCENT)

        if drawdown >= max_drawdown:
            return _decision(True, f"Drawdown {drawdown:.2f}% exceeds threshold of {max_drawdown:g}%", drawdown)
        return _decision(False, f"Drawdown {drawdown:.2f}% within threshold of {max_drawdown:g}%", drawdown)

    def should_resume(self, account: FollowerAccount, stats: AccountStats) -> Dict:
        """Check the resume trigger"""
        if not config.is_automation_enabled():
            return _decision(False, config.AUTOMATION_DISABLED_REASON)
        if not account.auto_resume_enabled:
            return _decision(False, 'Auto-resume disabled')
        if account.status != STATUS_PAUSED:
            return _decision(False, f'Account is {account.status}')

        drawdown = calculate_drawdown(stats.balance, stats.equity)
        resume_drawdown = setting(account.resume_drawdown_percent, config.DEFAULT_RESUME_DRAWDOWN_PERCENT)

        if drawdown < resume_drawdown:
            return _decision(True, f"Drawdown {drawdown:.2f}% is below resume threshold of {resume_drawdown:g}%", drawdown)
        return _decision(False, f"Drawdown {drawdown:.2f}% not below resume threshold of {resume_drawdown:g}%", drawdown)

    # ==================== TRANSITIONS ====================

    def _require_strategy(self, account: FollowerAccount) -> MasterStrategy:
        strategy = self.accounts.get_strategy(account.strategy_id)
        if strategy is None:
            raise ConfigurationError(f"Master strategy not found for account {account.id}")
        return strategy

    def pause_copying(self, account_id: str, reason: str, drawdown: Optional[float] = None) -> bool:
        """
        Pause copying: unsubscribe, then mark the account paused

        Returns:
            True if the account transitioned to paused
        """
        if not config.is_automation_enabled():
            logger.debug(f"Pause of {account_id} skipped: automation disabled")
            return False

        with self.accounts.locks.hold(account_id):
            account = self.accounts.require_account(account_id)
            if account.status != STATUS_ACTIVE:
                logger.info(f"Pause of {account_id} skipped: account is {account.status}")
                return False

            strategy = self._require_strategy(account)
            remote_ok = True
            try:
                self.client.unsubscribe(account.id, strategy.id, token=strategy.api_token)
            except SubscriptionError as e:
                remote_ok = False
                logger.error(f"❌ Unsubscribe failed for {account_id}, pausing locally anyway: {e}")

            def mutate(acc, db):
                if acc.status != STATUS_ACTIVE:
                    return False
                acc.status = STATUS_PAUSED
                acc.auto_paused_at = tz.now_naive_utc()
                acc.auto_pause_reason = reason
                return True

            changed = self.accounts.update_account(account_id, mutate)

        if changed:
            logger.warning(f"⏸️ Copying PAUSED for {account_id}: {reason}")
            self.audit.log_action(
                account_id, ACTION_AUTO_PAUSE, reason,
                details={'drawdown': drawdown, 'strategy_id': strategy.id, 'remote_unsubscribed': remote_ok},
                user_id=account.user_id
            )
            self._notify(account, 'Copy Trading Paused', reason)
        return changed

    def resume_copying(self, account_id: str, reason: Optional[str] = None,
                       drawdown: Optional[float] = None) -> bool:
        """
        Resume copying: re-subscribe with the account's current settings,
        then mark the account active and clear the pause fields

        Returns:
            True if the account transitioned to active
        """
        if not config.is_automation_enabled():
            logger.debug(f"Resume of {account_id} skipped: automation disabled")
            return False

        with self.accounts.locks.hold(account_id):
            account = self.accounts.require_account(account_id)
            if account.status != STATUS_PAUSED:
                logger.info(f"Resume of {account_id} skipped: account is {account.status}")
                return False

            strategy = self._require_strategy(account)
            remote_ok = True
            try:
                self.client.subscribe(
                    account.id, strategy.id, account.risk_multiplier,
                    reverse=bool(account.reverse_trading),
                    symbol_mapping=account.symbol_mapping or None,
                    max_risk=account.max_risk_percent / 100 if account.max_risk_percent else None,
                    name=account.label,
                    token=strategy.api_token
                )
            except SubscriptionError as e:
                remote_ok = False
                logger.error(f"❌ Re-subscribe failed for {account_id}, resuming locally anyway: {e}")

            def mutate(acc, db):
                if acc.status != STATUS_PAUSED:
                    return False
                acc.status = STATUS_ACTIVE
                acc.auto_paused_at = None
                acc.auto_pause_reason = None
                return True

            changed = self.accounts.update_account(account_id, mutate)

        if changed:
            reason = reason or 'Copying resumed'
            logger.info(f"▶️ Copying RESUMED for {account_id}: {reason}")
            self.audit.log_action(
                account_id, ACTION_AUTO_RESUME, reason,
                details={
                    'drawdown': drawdown,
                    'strategy_id': strategy.id,
                    'risk_multiplier': account.risk_multiplier,
                    'remote_subscribed': remote_ok,
                },
                user_id=account.user_id
            )
            self._notify(account, 'Copy Trading Resumed', reason)
        return changed

    def _notify(self, account: FollowerAccount, title: str, message: str):
        if self.notifications is None:
            return
        try:
            self.notifications.notify(
                account.user_id, title, message,
                metadata={'accountId': account.id, 'status': title}, notification_type='warning'
            )
        except Exception as e:
            logger.error(f"Risk notification for {account.id} failed: {e}")

    # ==================== ENTRY POINTS ====================

    def evaluate_account(self, account_id: str, stats: AccountStats) -> Dict:
        """
        Run the pause or resume trigger for one account

        Returns:
            Dict with action ('paused', 'resumed' or None) and reason
        """
        if not config.is_automation_enabled():
            return {'action': None, 'reason': config.AUTOMATION_DISABLED_REASON}

        account = self.accounts.require_account(account_id)

        pause = self.should_pause(account, stats)
        if pause['should_act']:
            if self.pause_copying(account_id, pause['reason'], pause['drawdown']):
                return {'action': 'paused', 'reason': pause['reason']}
            return {'action': None, 'reason': 'Pause not applied (state changed)'}

        resume = self.should_resume(account, stats)
        if resume['should_act']:
            if self.resume_copying(account_id, resume['reason'], resume['drawdown']):
                return {'action': 'resumed', 'reason': resume['reason']}
            return {'action': None, 'reason': 'Resume not applied (state changed)'}

        reason = pause['reason'] if account.status == STATUS_ACTIVE else resume['reason']
        return {'action': None, 'reason': reason}

    def get_risk_status(self, account_id: str, stats: AccountStats) -> Dict:
        """Current drawdown and pause state of an account"""
        account = self.accounts.require_account(account_id)
        drawdown = calculate_drawdown(stats.balance, stats.equity)
        resume_drawdown = setting(account.resume_drawdown_percent, config.DEFAULT_RESUME_DRAWDOWN_PERCENT)
        is_paused = account.status == STATUS_PAUSED

        return {
            'is_paused': is_paused,
            'status': account.status,
            'current_drawdown': round(drawdown, 2),
            'max_drawdown': setting(account.max_drawdown_percent, config.DEFAULT_MAX_DRAWDOWN_PERCENT),
            'resume_drawdown': resume_drawdown,
            'pause_reason': account.auto_pause_reason,
            'paused_at': tz.isoformat(account.auto_paused_at),
            'can_resume': is_paused and drawdown < resume_drawdown,
        }
