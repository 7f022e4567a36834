#!/usr/bin/env python3
"""
Telegram Notification Channel
Sends trade alerts and daily summaries via Telegram Bot API

Delivery is best-effort: every method returns None/False on failure and
never raises.
"""

import html
import logging
import requests
from typing import Optional, Dict
import os

logger = logging.getLogger(__name__)

ALERT_EMOJIS = {
    'largeTrade': '📈',
    'highProfit': '💰',
    'highLoss': '🔻',
    'milestone': '🏆',
    'test': '🧪',
}


class TelegramNotifier:
    """Send notifications via Telegram"""

    def __init__(self, bot_token: Optional[str] = None, timeout: int = 10):
        """
        Initialize Telegram Notifier

        Args:
            bot_token: Telegram Bot Token (from @BotFather)
            timeout: HTTP timeout in seconds
        """
        self.bot_token = bot_token or os.getenv('TELEGRAM_BOT_TOKEN')
        self.timeout = timeout
        self.enabled = bool(self.bot_token)

        if not self.enabled:
            logger.warning("Telegram notifications DISABLED - Missing TELEGRAM_BOT_TOKEN")
        else:
            logger.info("Telegram notifications ENABLED")

    def send_message(self, chat_id: Optional[str], text: str, parse_mode: str = 'HTML',
                     silent: bool = False) -> Optional[int]:
        """
        Send a message via Telegram

        Args:
            chat_id: Target chat
            text: Message text (supports HTML formatting)
            parse_mode: 'HTML' or 'Markdown'
            silent: Send silently (no notification sound)

        Returns:
            Telegram message id, or None if the message was not delivered
        """
        if not self.enabled:
            logger.debug(f"Telegram disabled, would have sent: {text}")
            return None

        if not chat_id:
            logger.debug("No Telegram chat id configured, message skipped")
            return None

        try:
            url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"

            payload = {
                'chat_id': chat_id,
                'text': text,
                'parse_mode': parse_mode,
                'disable_notification': silent
            }

            response = requests.post(url, json=payload, timeout=self.timeout)

            if response.status_code == 200:
                message_id = response.json().get('result', {}).get('message_id')
                logger.debug(f"Telegram message {message_id} sent to {chat_id}")
                return message_id
            else:
                logger.error(f"Telegram API error: {response.status_code} - {response.text}")
                return None

        except Exception as e:
            logger.error(f"Error sending Telegram message: {e}")
            return None

    @staticmethod
    def format_trade_alert(trade: Dict, alert_type: str, reason: str,
                           account_label: Optional[str] = None) -> str:
        """Build the HTML body of a trade alert"""
        emoji = ALERT_EMOJIS.get(alert_type, '🔔')
        symbol = html.escape(str(trade.get('symbol') or '?'))
        side = html.escape(str(trade.get('side') or ''))
        lines = [
            f"{emoji} <b>Trade Alert</b> | {html.escape(alert_type)}",
            "",
            html.escape(reason),
            "",
        ]
        if account_label:
            lines.append(f"<b>Account:</b> {html.escape(account_label)}")
        lines.append(f"<b>{symbol} {side}</b> | Vol: {trade.get('volume') or 0}")

        profit = trade.get('profit')
        if profit is not None:
            lines.append(f"<b>P/L:</b> ${float(profit):+.2f}")
        pips = trade.get('pips')
        if pips:
            lines.append(f"<b>Pips:</b> {float(pips):+.1f}")

        return "\n".join(lines)

    @staticmethod
    def format_daily_summary(summary: Dict, account_label: Optional[str] = None) -> str:
        """Build the HTML body of a daily performance summary"""
        profit = summary.get('total_profit', 0.0)
        if profit > 0:
            profit_emoji = '✅'
        elif profit < 0:
            profit_emoji = '❌'
        else:
            profit_emoji = '➖'

        title = "📊 <b>Daily Summary</b>"
        if account_label:
            title += f" | {html.escape(account_label)}"

        message = f"""{title} | {summary.get('date')}

{profit_emoji} <b>${profit:+.2f}</b> | {summary.get('total_pips', 0.0):+.1f} pips

{summary.get('total_trades', 0)} Trades | {summary.get('win_rate', 0.0):.0f}% WR ({summary.get('winning_trades', 0)}W/{summary.get('losing_trades', 0)}L)"""

        best = summary.get('best_trade')
        worst = summary.get('worst_trade')
        if best:
            message += f"\nBest: {html.escape(best['symbol'])} ${best['profit']:+.2f}"
        if worst:
            message += f"\nWorst: {html.escape(worst['symbol'])} ${worst['profit']:+.2f}"

        return message


# Singleton instance
_notifier_instance = None


def get_telegram_notifier() -> TelegramNotifier:
    """Get or create Telegram notifier singleton"""
    global _notifier_instance

    if _notifier_instance is None:
        _notifier_instance = TelegramNotifier()

    return _notifier_instance
