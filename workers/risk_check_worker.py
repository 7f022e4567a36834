#!/usr/bin/env python3
"""
Risk Check Worker

Every RISK_CHECK_INTERVAL_MINUTES: fetch balance/equity of every active or
paused account with auto-pause/auto-resume enabled and run the drawdown
pause/resume state machine.

A failed statistics fetch counts as an account error for auto-disconnect.
"""

import logging
from typing import Dict, Optional

import automation_config as config
from copyfactory_client import SubscriptionError
from models import STATUS_ACTIVE, STATUS_PAUSED
from workers.account_job_runner import run_for_accounts, skipped

logger = logging.getLogger(__name__)

JOB_NAME = 'risk_check'


class RiskCheckWorker:
    """Drawdown pause/resume for all eligible accounts"""

    def __init__(self, automation):
        self.automation = automation

    def _check_account(self, account) -> Optional[str]:
        try:
            stats = self.automation.stats.get_stats(account, use_cache=False)
        except SubscriptionError as e:
            self.automation.disconnect.track_error(account.id, f"Account information unavailable: {e}")
            raise

        result = self.automation.risk.evaluate_account(account.id, stats)
        return result['action']

    def run(self) -> Dict:
        if not config.is_automation_enabled():
            return skipped(JOB_NAME, config.AUTOMATION_DISABLED_REASON)

        accounts = [
            a for a in self.automation.accounts.list_accounts(statuses=[STATUS_ACTIVE, STATUS_PAUSED])
            if a.auto_pause_enabled or a.auto_resume_enabled
        ]
        return run_for_accounts(JOB_NAME, accounts, self._check_account)


def run_risk_check(automation=None) -> Dict:
    """Scheduler entry point"""
    if automation is None:
        from copy_trading_automation import get_automation
        automation = get_automation()
    return RiskCheckWorker(automation).run()
