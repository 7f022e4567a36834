#!/usr/bin/env python3
"""
Rebalance Worker

Every REBALANCE_INTERVAL_HOURS: retune the risk multiplier of active
accounts with auto-rebalancing enabled. The per-account 6 hour minimum
interval is enforced by the rebalancer itself.
"""

import logging
from typing import Dict, Optional

import automation_config as config
from copyfactory_client import SubscriptionError
from models import STATUS_ACTIVE
from workers.account_job_runner import run_for_accounts, skipped

logger = logging.getLogger(__name__)

JOB_NAME = 'rebalance'


class RebalanceWorker:
    """Multiplier retuning for all eligible accounts"""

    def __init__(self, automation):
        self.automation = automation

    def _rebalance_account(self, account) -> Optional[str]:
        try:
            stats = self.automation.stats.get_stats(account)
        except SubscriptionError as e:
            self.automation.disconnect.track_error(account.id, f"Account information unavailable: {e}")
            raise

        result = self.automation.rebalancer.rebalance_account(account.id, stats)
        if result['rebalanced']:
            return f"rebalanced {result['old_multiplier']} -> {result['new_multiplier']}"
        logger.debug(f"No rebalance for {account.id}: {result['reason']}")
        return None

    def run(self) -> Dict:
        if not config.is_automation_enabled():
            return skipped(JOB_NAME, config.AUTOMATION_DISABLED_REASON)

        accounts = self.automation.accounts.list_accounts(
            statuses=[STATUS_ACTIVE], auto_rebalancing_enabled=True
        )
        return run_for_accounts(JOB_NAME, accounts, self._rebalance_account)


def run_rebalance(automation=None) -> Dict:
    """Scheduler entry point"""
    if automation is None:
        from copy_trading_automation import get_automation
        automation = get_automation()
    return RebalanceWorker(automation).run()
