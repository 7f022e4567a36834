#!/usr/bin/env python3
"""
Daily Summary Worker

Sends the daily performance summary (in-app + Telegram) to every account
that subscribed to the 'dailySummary' alert type.
"""

import logging
from datetime import date
from typing import Dict, Optional

import automation_config as config
from timezone_manager import tz
from workers.account_job_runner import run_for_accounts, skipped

logger = logging.getLogger(__name__)

JOB_NAME = 'daily_summary'


class DailySummaryWorker:
    """Daily summary dispatch"""

    def __init__(self, automation, day: Optional[date] = None):
        self.automation = automation
        self.day = day

    def _send(self, account) -> Optional[str]:
        summary = self.automation.alerts.send_daily_summary(account.id, self.day)
        return 'daily-summary' if summary else None

    def run(self) -> Dict:
        if not config.is_automation_enabled():
            return skipped(JOB_NAME, config.AUTOMATION_DISABLED_REASON)

        self.day = self.day or tz.today_utc()
        accounts = [
            a for a in self.automation.accounts.list_accounts(trade_alerts_enabled=True)
            if 'dailySummary' in (a.alert_types or [])
        ]
        logger.info(f"📊 Sending daily summaries for {self.day} to {len(accounts)} accounts")
        return run_for_accounts(JOB_NAME, accounts, self._send)


def run_daily_summary(automation=None, day: Optional[date] = None) -> Dict:
    """Scheduler entry point"""
    if automation is None:
        from copy_trading_automation import get_automation
        automation = get_automation()
    return DailySummaryWorker(automation, day).run()
