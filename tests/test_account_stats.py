import json
from unittest.mock import MagicMock

import pytest

from account_stats import AccountStats, AccountStatsProvider
from redis_client import RedisClient


@pytest.fixture
def redis_backend():
    store = {}
    backend = MagicMock()
    backend.setex.side_effect = lambda key, ttl, value: store.__setitem__(key, value)
    backend.get.side_effect = store.get
    backend.store = store
    return backend


def test_stats_from_broker(make_account, broker):
    account = make_account()
    broker.get_account_information.return_value = {
        'balance': 10000.0, 'equity': 9200.0, 'margin': 0.0, 'freeMargin': 0.0, 'marginLevel': 420.0,
    }

    stats = AccountStatsProvider(broker).get_stats(account)

    assert stats.balance == 10000.0
    assert stats.profit_loss == -800.0
    assert stats.margin_level == 420.0
    assert stats.drawdown_percent == pytest.approx(8.0)
    assert stats.account_age_days is not None and stats.account_age_days < 1


def test_stats_are_cached(make_account, broker, redis_backend):
    account = make_account()
    provider = AccountStatsProvider(broker, RedisClient(client=redis_backend), ttl=120)

    first = provider.get_stats(account)
    second = provider.get_stats(account)

    assert first == second
    assert broker.get_account_information.call_count == 1
    assert redis_backend.setex.call_args[0][:2] == ('copytrading:stats:acc-1', 120)

    provider.get_stats(account, use_cache=False)
    assert broker.get_account_information.call_count == 2


def test_broken_cache_falls_back_to_broker(make_account, broker):
    account = make_account()
    backend = MagicMock()
    backend.get.side_effect = ConnectionError('redis down')
    backend.setex.side_effect = ConnectionError('redis down')

    stats = AccountStatsProvider(broker, RedisClient(client=backend)).get_stats(account)

    assert stats.equity == 10000.0


def test_job_metrics_are_stamped(redis_backend):
    RedisClient(client=redis_backend).store_job_metrics('risk_check', {'processed': 3})

    stored = json.loads(redis_backend.store['copytrading:jobs:risk_check'])
    assert stored['processed'] == 3
    assert 'updated_at' in stored


def test_equity_ratio_without_balance():
    stats = AccountStats(balance=0, equity=50)
    assert stats.equity_ratio == 1.0
    assert stats.drawdown_percent == 0.0
    assert AccountStats.from_dict(stats.to_dict()) == stats
