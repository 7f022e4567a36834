#!/usr/bin/env python3
"""
Disconnect Check Worker

Every DISCONNECT_CHECK_INTERVAL_MINUTES, for accounts with a non-zero error
count:
1. Disconnect accounts already at the threshold (a previous disconnect
   attempt may have been interrupted)
2. Probe the broker; a successful probe resets the error count
"""

import logging
from typing import Dict, Optional

import automation_config as config
from copyfactory_client import SubscriptionError
from models import STATUS_DISCONNECTED
from workers.account_job_runner import run_for_accounts, skipped

logger = logging.getLogger(__name__)

JOB_NAME = 'disconnect_check'


class DisconnectCheckWorker:
    """Recovery probe and catch-up disconnect"""

    def __init__(self, automation):
        self.automation = automation

    def _check_account(self, account) -> Optional[str]:
        disconnect = self.automation.disconnect

        if disconnect.should_disconnect(account):
            reason = (
                f"Exceeded error threshold: {account.consecutive_error_count} consecutive errors "
                f"within {account.error_window_minutes or config.DEFAULT_ERROR_WINDOW_MINUTES} minutes"
            )
            if disconnect.disconnect_account(account.id, reason):
                return 'disconnected'
            return None

        try:
            self.automation.client.get_account_information(account.id)
        except SubscriptionError as e:
            logger.info(f"Account {account.id} still failing: {e}")
            return None

        if disconnect.reset_error_count(account.id):
            return 'error-count-reset'
        return None

    def run(self) -> Dict:
        if not config.is_automation_enabled():
            return skipped(JOB_NAME, config.AUTOMATION_DISABLED_REASON)

        accounts = [
            a for a in self.automation.accounts.list_accounts(auto_disconnect_enabled=True)
            if (a.consecutive_error_count or 0) > 0
            and a.status != STATUS_DISCONNECTED
            and not a.auto_disconnected_at
        ]
        return run_for_accounts(JOB_NAME, accounts, self._check_account)


def run_disconnect_check(automation=None) -> Dict:
    """Scheduler entry point"""
    if automation is None:
        from copy_trading_automation import get_automation
        automation = get_automation()
    return DisconnectCheckWorker(automation).run()
