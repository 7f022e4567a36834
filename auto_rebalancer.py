"""
Auto Rebalancer

Retunes a follower's risk multiplier from its current performance.

Adjustment factor (starts at 1.0, factors multiply):
- equity ratio < 0.9      -> 0.9 - (0.9 - ratio) * 0.5
- equity ratio > 1.1      -> 1 + (ratio - 1.1) * 0.3
- drawdown > 15%          -> x 0.8
- drawdown < 5%, ratio>1  -> x 1.1
- margin level < 200%     -> x 0.85
- margin level > 500%, ratio>1 -> x 1.05
- account younger than 7 days  -> x 0.95

new multiplier = original * factor, rounded to the nearest step and clamped
to [min, max]. A change is applied only when it moves the multiplier by at
least max(0.1, 5% of original) and the last rebalance is 6 hours old.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP, ROUND_CEILING, ROUND_FLOOR
from typing import Optional, Dict, List

import automation_config as config
from account_repository import AccountRepository, setting
from account_stats import AccountStats
from automation_log import AutomationLogger, ACTION_REBALANCE
from copyfactory_client import CopyFactoryClient, ConfigurationError, SubscriptionError
from models import FollowerAccount, STATUS_ACTIVE
from timezone_manager import tz

logger = logging.getLogger(__name__)

# Float noise allowance when comparing multipliers
_EPSILON = 1e-9


@dataclass
class RebalancingRules:
    min_multiplier: float = config.DEFAULT_MIN_RISK_MULTIPLIER
    max_multiplier: float = config.DEFAULT_MAX_RISK_MULTIPLIER
    step: float = config.DEFAULT_RISK_ADJUSTMENT_STEP

    @classmethod
    def for_account(cls, account: FollowerAccount) -> 'RebalancingRules':
        return cls(
            min_multiplier=setting(account.min_risk_multiplier, config.DEFAULT_MIN_RISK_MULTIPLIER),
            max_multiplier=setting(account.max_risk_multiplier, config.DEFAULT_MAX_RISK_MULTIPLIER),
            step=setting(account.risk_adjustment_step, config.DEFAULT_RISK_ADJUSTMENT_STEP),
        )


def quantize_multiplier(value: float, rules: RebalancingRules) -> float:
    """
    Round to the nearest multiple of step, then clamp into [min, max]

    The bounds themselves are snapped inwards to the step grid so the result
    is always both in range and a multiple of step.

    Raises:
        ValueError: step is not positive or no multiple of step lies in [min, max]
    """
    step = Decimal(str(rules.step))
    if step <= 0:
        raise ValueError(f"Adjustment step must be positive, got {rules.step}")

    lowest = (Decimal(str(rules.min_multiplier)) / step).to_integral_value(rounding=ROUND_CEILING)
    highest = (Decimal(str(rules.max_multiplier)) / step).to_integral_value(rounding=ROUND_FLOOR)
    if lowest > highest:
        raise ValueError(
            f"No multiple of {rules.step} between {rules.min_multiplier} and {rules.max_multiplier}"
        )

    steps = (Decimal(str(value)) / step).to_integral_value(rounding=ROUND_HALF_UP)
    steps = max(lowest, min(highest, steps))
    return float(steps * step)


def calculate_optimal_risk_multiplier(stats: AccountStats, original: float,
                                      rules: Optional[RebalancingRules] = None) -> float:
    """
    Target multiplier for the given account statistics

    Args:
        stats: Balance, equity, margin level and account age
        original: Multiplier the user configured
        rules: Bounds and step

    Returns:
        Quantized, clamped multiplier
    """
    rules = rules or RebalancingRules()
    if stats.balance <= 0:
        return quantize_multiplier(original, rules)

    ratio = stats.equity_ratio
    drawdown = stats.drawdown_fraction
    factor = 1.0

    if ratio < 0.9:
        factor = 0.9 - (0.9 - ratio) * 0.5
    elif ratio > 1.1:
        factor = 1 + (ratio - 1.1) * 0.3

    if drawdown > 0.15:
        factor *= 0.8
    elif drawdown < 0.05 and ratio > 1.0:
        factor *= 1.1

    if stats.margin_level is not None:
        if stats.margin_level < 200:
            factor *= 0.85
        elif stats.margin_level > 500 and ratio > 1.0:
            factor *= 1.05

    if stats.account_age_days is not None and stats.account_age_days < 7:
        factor *= 0.95

    return quantize_multiplier(original * factor, rules)


def minimum_change(original: float) -> float:
    return max(config.REBALANCE_MIN_CHANGE_ABSOLUTE, original * config.REBALANCE_MIN_CHANGE_RELATIVE)


def build_rebalance_reason(stats: AccountStats, old: float, new: float) -> str:
    reason = (
        f"Performance adjustment: equity ratio {stats.equity_ratio * 100:.1f}%, "
        f"drawdown {stats.drawdown_fraction * 100:.1f}%"
    )
    if new < old:
        reason += " - Reducing risk due to drawdown" if stats.drawdown_fraction > 0.1 else " - Reducing risk"
    else:
        reason += " - Increasing risk due to good performance"
    return reason


def is_copying(account: FollowerAccount) -> bool:
    """Active and never auto-disconnected"""
    return account.status == STATUS_ACTIVE and account.auto_disconnected_at is None


class AutoRebalancer:
    """Applies multiplier changes to follower accounts"""

    def __init__(self, accounts: AccountRepository, client: CopyFactoryClient,
                 audit: Optional[AutomationLogger] = None):
        self.accounts = accounts
        self.client = client
        self.audit = audit or AutomationLogger(accounts.session_factory)

    def should_rebalance(self, account: FollowerAccount, stats: AccountStats,
                         ignore_interval: bool = False) -> Dict:
        """
        Decide whether the account's multiplier should change

        Returns:
            Dict with should_rebalance, new_multiplier, reason
        """
        if not config.is_automation_enabled():
            return {'should_rebalance': False, 'new_multiplier': None, 'reason': config.AUTOMATION_DISABLED_REASON}
        if not account.auto_rebalancing_enabled:
            return {'should_rebalance': False, 'new_multiplier': None, 'reason': 'Auto-rebalancing disabled'}
        if not is_copying(account):
            return {'should_rebalance': False, 'new_multiplier': None, 'reason': f'Account is {account.status}'}

        if not ignore_interval and account.last_rebalanced_at:
            elapsed = tz.now_naive_utc() - account.last_rebalanced_at
            if elapsed < timedelta(hours=config.REBALANCE_MIN_INTERVAL_HOURS):
                hours = elapsed.total_seconds() / 3600
                return {
                    'should_rebalance': False,
                    'new_multiplier': None,
                    'reason': f'Last rebalance {hours:.1f}h ago (minimum {config.REBALANCE_MIN_INTERVAL_HOURS}h)'
                }

        current = float(account.risk_multiplier or 1.0)
        original = float(setting(account.original_risk_multiplier, current))
        new = calculate_optimal_risk_multiplier(stats, original, RebalancingRules.for_account(account))

        if abs(new - current) + _EPSILON < minimum_change(original):
            return {
                'should_rebalance': False,
                'new_multiplier': new,
                'reason': f'Change {current} -> {new} below minimum of {minimum_change(original):.2f}'
            }

        return {
            'should_rebalance': True,
            'new_multiplier': new,
            'reason': build_rebalance_reason(stats, current, new),
        }

    def update_risk_multiplier(self, account_id: str, new_multiplier: float, reason: str,
                               stats: Optional[AccountStats] = None) -> Optional[Dict]:
        """
        Subscribe with the new multiplier and persist it

        Unlike pause/resume the local value is only changed when the broker
        accepted it, so the stored multiplier always matches what is copied.

        Returns:
            The history entry, or None when the account stopped being active
            (paused or disconnected) before the change could be applied

        Raises:
            ConfigurationError: missing strategy/credentials
            SubscriptionError: broker rejected or unreachable
        """
        with self.accounts.locks.hold(account_id):
            account = self.accounts.require_account(account_id)
            if not is_copying(account):
                logger.info(f"Rebalance of {account_id} skipped, account is {account.status}")
                return None

            strategy = self.accounts.get_strategy(account.strategy_id)
            if strategy is None:
                raise ConfigurationError(f"Master strategy not found for account {account_id}")

            old_multiplier = float(account.risk_multiplier or 1.0)
            try:
                self.client.subscribe(
                    account.id, strategy.id, new_multiplier,
                    reverse=bool(account.reverse_trading),
                    symbol_mapping=account.symbol_mapping or None,
                    max_risk=account.max_risk_percent / 100 if account.max_risk_percent else None,
                    name=account.label,
                    token=strategy.api_token
                )
            except SubscriptionError as e:
                logger.error(f"❌ Rebalance of {account_id} to {new_multiplier} failed at broker: {e}")
                raise

            now = tz.now_naive_utc()
            entry = {
                'timestamp': tz.isoformat(now),
                'oldMultiplier': old_multiplier,
                'newMultiplier': new_multiplier,
                'reason': reason,
            }

            def mutate(acc, db):
                # Another process may have paused or disconnected it meanwhile
                if not is_copying(acc):
                    return False
                if acc.original_risk_multiplier is None:
                    acc.original_risk_multiplier = old_multiplier
                acc.risk_multiplier = new_multiplier
                acc.last_rebalanced_at = now
                history = list(acc.rebalancing_history or [])
                history.append(entry)
                acc.rebalancing_history = history[-config.REBALANCING_HISTORY_LIMIT:]
                return True

            if not self.accounts.update_account(account_id, mutate):
                logger.warning(f"⚠️ Account {account_id} left active state during rebalance, multiplier not stored")
                return None

        logger.info(f"⚖️ Rebalanced {account_id}: {old_multiplier} -> {new_multiplier} | {reason}")
        self.audit.log_action(
            account_id, ACTION_REBALANCE, reason,
            details={
                'oldMultiplier': old_multiplier,
                'newMultiplier': new_multiplier,
                'stats': stats.to_dict() if stats else None,
            },
            user_id=account.user_id
        )
        return entry

    def rebalance_account(self, account_id: str, stats: AccountStats, force: bool = False) -> Dict:
        """
        Evaluate and, if warranted, apply a rebalance

        Args:
            force: Skip the minimum interval (manual trigger)

        Returns:
            Dict with rebalanced, old/new multiplier and reason
        """
        account = self.accounts.require_account(account_id)
        old_multiplier = account.risk_multiplier
        decision = self.should_rebalance(account, stats, ignore_interval=force)
        if not decision['should_rebalance']:
            return {
                'rebalanced': False,
                'old_multiplier': old_multiplier,
                'new_multiplier': decision['new_multiplier'],
                'reason': decision['reason'],
            }

        entry = self.update_risk_multiplier(account_id, decision['new_multiplier'], decision['reason'], stats)
        if entry is None:
            return {
                'rebalanced': False,
                'old_multiplier': old_multiplier,
                'new_multiplier': None,
                'reason': 'Account no longer active',
            }
        return {
            'rebalanced': True,
            'old_multiplier': entry['oldMultiplier'],
            'new_multiplier': entry['newMultiplier'],
            'reason': decision['reason'],
        }

    def get_rebalancing_history(self, account_id: str) -> List[Dict]:
        """Rebalancing history, newest first"""
        account = self.accounts.require_account(account_id)
        return list(reversed(account.rebalancing_history or []))
