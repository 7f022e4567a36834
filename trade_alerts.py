"""
Trade Alerts

Threshold-based alerts for copied trades.

Alert types (checked in this order, first match wins):
- largeTrade: volume >= min_trade_size_for_alert
- highProfit: closed trade with profit >= min_profit_for_alert
- highLoss: closed trade with profit <= min_loss_for_alert
- milestone: closed trade that brings the account's archived trade count to
  one of TRADE_COUNT_MILESTONES

Delivery:
1. In-app notification (primary, failure fails the dispatch)
2. Telegram message (secondary, best-effort)
3. Automation log entry (best-effort)
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional, Dict, Any, Union

import automation_config as config
from account_repository import AccountRepository, setting
from automation_log import AutomationLogger, ACTION_TRADE_ALERT, ACTION_DAILY_SUMMARY
from models import FollowerAccount
from notification_service import NotificationService
from telegram_notifier import TelegramNotifier
from timezone_manager import tz
from trade_history import TradeHistoryRepository, TradeHistoryFilter, TradeRecord, summarize_trades

logger = logging.getLogger(__name__)

ALERT_LARGE_TRADE = 'largeTrade'
ALERT_HIGH_PROFIT = 'highProfit'
ALERT_HIGH_LOSS = 'highLoss'
ALERT_MILESTONE = 'milestone'
ALERT_DAILY_SUMMARY = 'dailySummary'

SOUND_TYPES = {
    ALERT_LARGE_TRADE: 'alert',
    ALERT_HIGH_PROFIT: 'success',
    ALERT_HIGH_LOSS: 'warning',
    ALERT_MILESTONE: 'success',
}


@dataclass
class AlertDecision:
    should_send: bool
    alert_type: Optional[str] = None
    reason: str = ''


def trade_view(trade: Union[TradeRecord, Dict[str, Any]]) -> Dict[str, Any]:
    """Common dict shape for closed TradeRecords and open-position payloads"""
    if isinstance(trade, TradeRecord):
        return {
            'id': trade.id,
            'position_id': trade.position_id,
            'account_id': trade.account_id,
            'symbol': trade.symbol,
            'side': trade.side,
            'volume': trade.volume,
            'profit': trade.profit,
            'pips': trade.pips,
            'is_closed': trade.is_closed,
        }
    view = dict(trade)
    view.setdefault('is_closed', False)
    view['volume'] = float(view.get('volume') or 0.0)
    if view.get('profit') is not None:
        view['profit'] = float(view['profit'])
    return view


class TradeAlertService:
    """Evaluates and dispatches trade alerts"""

    def __init__(self, accounts: AccountRepository, notifications: NotificationService,
                 telegram: Optional[TelegramNotifier] = None,
                 history: Optional[TradeHistoryRepository] = None,
                 audit: Optional[AutomationLogger] = None):
        self.accounts = accounts
        self.notifications = notifications
        self.telegram = telegram
        self.history = history or TradeHistoryRepository(accounts.session_factory)
        self.audit = audit or AutomationLogger(accounts.session_factory)

    # ==================== EVALUATION ====================

    def evaluate(self, trade, account: FollowerAccount, trade_count: Optional[int] = None) -> AlertDecision:
        """
        Decide whether the trade warrants an alert

        Args:
            trade: TradeRecord or position dict
            account: Owning follower account
            trade_count: Archived trade count of the account, for milestones
        """
        if not config.is_automation_enabled():
            return AlertDecision(False, reason=config.AUTOMATION_DISABLED_REASON)
        if not account.trade_alerts_enabled:
            return AlertDecision(False, reason='Trade alerts disabled')

        alert_types = account.alert_types or []
        if not alert_types:
            return AlertDecision(False, reason='No alert types configured')

        view = trade_view(trade)
        symbol = view.get('symbol') or '?'
        volume = view['volume']
        profit = view.get('profit')

        min_size = setting(account.min_trade_size_for_alert, config.DEFAULT_MIN_TRADE_SIZE_FOR_ALERT)
        if ALERT_LARGE_TRADE in alert_types and volume >= min_size:
            return AlertDecision(True, ALERT_LARGE_TRADE, f"Large trade opened: {volume:g} lots on {symbol}")

        if view['is_closed'] and profit is not None:
            min_profit = setting(account.min_profit_for_alert, config.DEFAULT_MIN_PROFIT_FOR_ALERT)
            min_loss = setting(account.min_loss_for_alert, config.DEFAULT_MIN_LOSS_FOR_ALERT)

            if ALERT_HIGH_PROFIT in alert_types and profit >= min_profit:
                return AlertDecision(True, ALERT_HIGH_PROFIT, f"High profit trade: ${profit:.2f} on {symbol}")
            if ALERT_HIGH_LOSS in alert_types and profit <= min_loss:
                return AlertDecision(True, ALERT_HIGH_LOSS, f"High loss trade: ${profit:.2f} on {symbol}")

        if view['is_closed'] and ALERT_MILESTONE in alert_types and trade_count in config.TRADE_COUNT_MILESTONES:
            return AlertDecision(True, ALERT_MILESTONE, f"Milestone reached: {trade_count} trades copied")

        return AlertDecision(False, reason='No alert thresholds reached')

    # ==================== DISPATCH ====================

    def dispatch(self, user_id: str, trade, alert_type: str, reason: str,
                 account: Optional[FollowerAccount] = None) -> Dict:
        """
        Deliver an alert to the user

        Raises:
            NotificationError: the in-app notification could not be stored
        """
        view = trade_view(trade)
        account_id = view.get('account_id') or (account.id if account else None)
        trade_id = view.get('id') or view.get('position_id')

        notification_id = self.notifications.notify(
            user_id,
            f"Trade Alert: {alert_type}",
            reason,
            metadata={
                'tradeId': trade_id,
                'accountId': account_id,
                'alertType': alert_type,
                'symbol': view.get('symbol'),
                'soundType': SOUND_TYPES.get(alert_type, 'alert'),
            },
            notification_type='trade_alert'
        )

        message_id = None
        if self.telegram is not None and account is not None and account.telegram_chat_id:
            try:
                text = TelegramNotifier.format_trade_alert(view, alert_type, reason, account.label or account.id)
                message_id = self.telegram.send_message(account.telegram_chat_id, text)
            except Exception as e:
                logger.error(f"Telegram alert for {account_id} failed: {e}")

        self.audit.log_action(
            account_id or '', ACTION_TRADE_ALERT, reason,
            details={
                'alertType': alert_type,
                'tradeId': trade_id,
                'notificationId': notification_id,
                'telegramMessageId': message_id,
            },
            user_id=user_id
        )
        logger.info(f"🔔 Alert {alert_type} sent to {user_id}: {reason}")
        return {'notification_id': notification_id, 'telegram_message_id': message_id}

    def process_trade(self, trade, account: FollowerAccount) -> Optional[Dict]:
        """
        Evaluate and dispatch in one step. Never raises.

        Returns:
            Dispatch result, or None when nothing was sent
        """
        try:
            trade_count = None
            view = trade_view(trade)
            if view['is_closed'] and ALERT_MILESTONE in (account.alert_types or []):
                trade_count = self.history.count_trades(account.id)

            decision = self.evaluate(trade, account, trade_count=trade_count)
            if not decision.should_send:
                logger.debug(f"No alert for {view.get('position_id')} on {account.id}: {decision.reason}")
                return None
            return self.dispatch(account.user_id, trade, decision.alert_type, decision.reason, account)
        except Exception as e:
            logger.error(f"❌ Alert processing failed for account {account.id}: {e}", exc_info=True)
            return None

    # ==================== SUMMARIES ====================

    def send_daily_summary(self, account_id: str, day: Optional[date] = None) -> Optional[Dict]:
        """
        Send the daily performance summary of an account

        Requires the 'dailySummary' alert type. Days without trades are skipped.

        Returns:
            Summary dict, or None when nothing was sent
        """
        if not config.is_automation_enabled():
            return None

        account = self.accounts.require_account(account_id)
        if not account.trade_alerts_enabled or ALERT_DAILY_SUMMARY not in (account.alert_types or []):
            return None

        day = day or tz.today_utc()
        start, end = tz.day_bounds(day)
        trades = self.history.get_trade_history(TradeHistoryFilter(
            start_date=start, end_date=end, account_id=account_id
        ))
        if not trades:
            logger.debug(f"No trades on {day} for {account_id}, daily summary skipped")
            return None

        summary = summarize_trades(trades)
        summary['date'] = day.isoformat()

        message = (
            f"{summary['total_trades']} trades, {summary['win_rate']:.0f}% win rate, "
            f"${summary['total_profit']:+.2f}, {summary['total_pips']:+.1f} pips"
        )
        self.notifications.notify(
            account.user_id,
            f"Daily Summary: {day.isoformat()}",
            message,
            metadata={'accountId': account_id, 'date': day.isoformat(), 'summary': summary},
            notification_type='info'
        )

        if self.telegram is not None and account.telegram_chat_id:
            try:
                self.telegram.send_message(
                    account.telegram_chat_id,
                    TelegramNotifier.format_daily_summary(summary, account.label or account.id),
                    silent=True
                )
            except Exception as e:
                logger.error(f"Telegram daily summary for {account_id} failed: {e}")

        self.audit.log_action(account_id, ACTION_DAILY_SUMMARY, message, details=summary, user_id=account.user_id)
        return summary

    def send_test_alert(self, account_id: str) -> Dict:
        """Send a test alert through all channels of the account"""
        account = self.accounts.require_account(account_id)
        trade = {
            'position_id': 'test',
            'account_id': account_id,
            'symbol': 'EURUSD',
            'side': 'BUY',
            'volume': 1.0,
            'profit': 150.0,
            'pips': 15.0,
            'is_closed': True,
        }
        return self.dispatch(account.user_id, trade, 'test', 'Test alert: your trade alerts are working', account)
