"""
Account statistics provider

Balance/equity snapshot of a follower account as used by the risk evaluator
and the rebalancer. Fetched from MetaApi and cached in Redis for a few
minutes so the risk check and the rebalance job do not both hit the broker.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Optional, Dict

import automation_config as config
from copyfactory_client import CopyFactoryClient
from models import FollowerAccount
from timezone_manager import tz

logger = logging.getLogger(__name__)


@dataclass
class AccountStats:
    balance: float
    equity: float
    margin_level: Optional[float] = None
    profit_loss: float = 0.0
    account_age_days: Optional[float] = None

    @property
    def equity_ratio(self) -> float:
        return self.equity / self.balance if self.balance > 0 else 1.0

    @property
    def drawdown_fraction(self) -> float:
        """(balance - equity) / balance, 0 when balance is not positive"""
        if self.balance <= 0:
            return 0.0
        return (self.balance - self.equity) / self.balance

    @property
    def drawdown_percent(self) -> float:
        return self.drawdown_fraction * 100

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'AccountStats':
        return cls(
            balance=float(data.get('balance') or 0.0),
            equity=float(data.get('equity') or 0.0),
            margin_level=float(data['margin_level']) if data.get('margin_level') is not None else None,
            profit_loss=float(data.get('profit_loss') or 0.0),
            account_age_days=float(data['account_age_days']) if data.get('account_age_days') is not None else None,
        )


class AccountStatsProvider:
    """Loads AccountStats through the broker client with an optional Redis cache"""

    def __init__(self, client: CopyFactoryClient, redis_client=None, ttl: Optional[int] = None):
        self.client = client
        self.redis = redis_client
        self.ttl = ttl or config.ACCOUNT_STATS_CACHE_TTL

    def get_stats(self, account: FollowerAccount, use_cache: bool = True) -> AccountStats:
        """
        Current statistics of a follower account

        Raises:
            SubscriptionError / ConfigurationError from the broker client
        """
        if use_cache and self.redis is not None:
            try:
                cached = self.redis.get_account_stats(account.id)
                if cached:
                    return AccountStats.from_dict(cached)
            except Exception as e:
                logger.warning(f"Redis stats lookup failed for {account.id}: {e}")

        info = self.client.get_account_information(account.id)
        balance = info.get('balance', 0.0)
        equity = info.get('equity', 0.0)

        age_days = None
        if account.created_at:
            age_days = round((tz.now_naive_utc() - account.created_at).total_seconds() / 86400, 2)

        stats = AccountStats(
            balance=balance,
            equity=equity,
            margin_level=info.get('marginLevel'),
            profit_loss=round(equity - balance, 2),
            account_age_days=age_days,
        )

        if self.redis is not None:
            try:
                self.redis.cache_account_stats(account.id, stats.to_dict(), ttl=self.ttl)
            except Exception as e:
                logger.warning(f"Redis stats cache write failed for {account.id}: {e}")

        return stats
