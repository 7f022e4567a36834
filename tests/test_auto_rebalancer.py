from datetime import timedelta

import pytest

from account_stats import AccountStats
from auto_rebalancer import (
    RebalancingRules, quantize_multiplier, calculate_optimal_risk_multiplier, minimum_change,
)
from copyfactory_client import SubscriptionError
from models import STATUS_PAUSED, STATUS_DISCONNECTED
from timezone_manager import tz

DRAWDOWN_STATS = AccountStats(balance=10000, equity=8000, margin_level=150)
GROWTH_STATS = AccountStats(balance=10000, equity=12000, margin_level=800, account_age_days=30)


def _rebalancing(make_account, **fields):
    values = dict(auto_rebalancing_enabled=True, risk_multiplier=1.0,
                  min_risk_multiplier=0.1, max_risk_multiplier=5.0, risk_adjustment_step=0.1)
    values.update(fields)
    return make_account(**values)


def _is_multiple(value, step):
    return abs(round(value / step) * step - value) < 1e-9


def test_drawdown_reduces_multiplier():
    rules = RebalancingRules(min_multiplier=0.1, max_multiplier=5.0, step=0.1)

    new = calculate_optimal_risk_multiplier(DRAWDOWN_STATS, 1.0, rules)

    assert new == 0.6
    assert rules.min_multiplier <= new <= rules.max_multiplier


def test_good_performance_increases_multiplier():
    rules = RebalancingRules(min_multiplier=0.1, max_multiplier=5.0, step=0.1)
    assert calculate_optimal_risk_multiplier(GROWTH_STATS, 1.0, rules) == 1.2


def test_young_account_is_scaled_down():
    rules = RebalancingRules(min_multiplier=0.1, max_multiplier=5.0, step=0.1)
    stats = AccountStats(balance=10000, equity=10000, account_age_days=2)
    assert calculate_optimal_risk_multiplier(stats, 2.0, rules) == 1.9


@pytest.mark.parametrize('rules', [
    RebalancingRules(0.1, 10.0, 0.1),
    RebalancingRules(0.15, 2.05, 0.1),
    RebalancingRules(0.5, 3.0, 0.25),
    RebalancingRules(1.0, 1.0, 0.5),
])
@pytest.mark.parametrize('value', [0.0, 0.04, 0.149, 0.55, 1.0, 1.374, 2.2, 9.96, 250.0])
def test_quantized_multiplier_is_bounded_multiple_of_step(rules, value):
    result = quantize_multiplier(value, rules)

    assert rules.min_multiplier - 1e-9 <= result <= rules.max_multiplier + 1e-9
    assert _is_multiple(result, rules.step)


def test_quantize_rounds_half_up():
    assert quantize_multiplier(0.25, RebalancingRules(0.1, 10.0, 0.1)) == 0.3
    assert quantize_multiplier(0.15, RebalancingRules(0.1, 10.0, 0.1)) == 0.2


def test_quantize_rejects_impossible_rules():
    with pytest.raises(ValueError):
        quantize_multiplier(1.0, RebalancingRules(0.11, 0.19, 0.1))
    with pytest.raises(ValueError):
        quantize_multiplier(1.0, RebalancingRules(0.1, 1.0, 0))


def test_minimum_change():
    assert minimum_change(1.0) == 0.1
    assert minimum_change(4.0) == 0.2


def test_should_rebalance_respects_interval(automation, make_account):
    account = _rebalancing(make_account, last_rebalanced_at=tz.now_naive_utc() - timedelta(hours=1))

    decision = automation.rebalancer.should_rebalance(account, DRAWDOWN_STATS)
    assert not decision['should_rebalance']
    assert 'minimum 6h' in decision['reason']

    forced = automation.rebalancer.should_rebalance(account, DRAWDOWN_STATS, ignore_interval=True)
    assert forced['should_rebalance']
    assert forced['new_multiplier'] == 0.6


def test_small_change_is_ignored(automation, make_account):
    account = _rebalancing(make_account)

    decision = automation.rebalancer.should_rebalance(account, AccountStats(balance=10000, equity=10000))

    assert not decision['should_rebalance']
    assert 'below minimum' in decision['reason']


def test_paused_account_is_not_rebalanced(automation, make_account):
    account = _rebalancing(make_account, status=STATUS_PAUSED)
    assert not automation.rebalancer.should_rebalance(account, DRAWDOWN_STATS)['should_rebalance']


def test_rebalance_applies_and_records_history(automation, make_account, broker):
    _rebalancing(make_account)

    result = automation.rebalancer.rebalance_account('acc-1', DRAWDOWN_STATS)

    assert result['rebalanced']
    assert result['old_multiplier'] == 1.0
    assert result['new_multiplier'] == 0.6
    assert result['reason'] == (
        "Performance adjustment: equity ratio 80.0%, drawdown 20.0% - Reducing risk due to drawdown"
    )
    assert broker.subscribe.call_args[0][:3] == ('acc-1', 'strat-1', 0.6)

    account = automation.accounts.get_account('acc-1')
    assert account.risk_multiplier == 0.6
    assert account.original_risk_multiplier == 1.0
    assert account.last_rebalanced_at is not None

    history = automation.rebalancer.get_rebalancing_history('acc-1')
    assert len(history) == 1
    assert history[0]['oldMultiplier'] == 1.0
    assert history[0]['newMultiplier'] == 0.6
    assert [a['action_type'] for a in automation.audit.get_recent_actions('acc-1')] == ['rebalance']


def test_rebalance_starts_from_original_multiplier(automation, make_account):
    _rebalancing(make_account, risk_multiplier=0.6, original_risk_multiplier=1.0)

    result = automation.rebalancer.rebalance_account('acc-1', GROWTH_STATS, force=True)

    assert result['new_multiplier'] == 1.2
    assert 'Increasing risk' in result['reason']


def test_failed_subscribe_leaves_multiplier_unchanged(automation, make_account, broker):
    _rebalancing(make_account)
    broker.subscribe.side_effect = SubscriptionError('broker down', 502)

    with pytest.raises(SubscriptionError):
        automation.rebalancer.rebalance_account('acc-1', DRAWDOWN_STATS)

    account = automation.accounts.get_account('acc-1')
    assert account.risk_multiplier == 1.0
    assert not account.rebalancing_history


def test_history_is_capped(automation, make_account):
    old_entries = [
        {'timestamp': '2025-01-01T00:00:00Z', 'oldMultiplier': 1.0, 'newMultiplier': 1.0, 'reason': str(i)}
        for i in range(50)
    ]
    _rebalancing(make_account, rebalancing_history=old_entries)

    automation.rebalancer.rebalance_account('acc-1', DRAWDOWN_STATS)

    history = automation.rebalancer.get_rebalancing_history('acc-1')
    assert len(history) == 50
    assert history[0]['newMultiplier'] == 0.6
    assert history[-1]['reason'] == '1'


def test_disconnect_between_decision_and_apply_wins(automation, make_account, broker, monkeypatch):
    _rebalancing(make_account)
    decide = automation.rebalancer.should_rebalance

    def decide_then_disconnect(account, stats, ignore_interval=False):
        decision = decide(account, stats, ignore_interval=ignore_interval)
        automation.disconnect.disconnect_account('acc-1', 'Exceeded error threshold')
        return decision

    monkeypatch.setattr(automation.rebalancer, 'should_rebalance', decide_then_disconnect)

    result = automation.rebalancer.rebalance_account('acc-1', DRAWDOWN_STATS)

    assert not result['rebalanced']
    broker.subscribe.assert_not_called()
    account = automation.accounts.get_account('acc-1')
    assert account.status == STATUS_DISCONNECTED
    assert account.risk_multiplier == 1.0
    assert not account.rebalancing_history


def test_pause_between_decision_and_apply_wins(automation, make_account, broker, monkeypatch):
    _rebalancing(make_account)
    decide = automation.rebalancer.should_rebalance

    def decide_then_pause(account, stats, ignore_interval=False):
        decision = decide(account, stats, ignore_interval=ignore_interval)
        automation.risk.pause_copying('acc-1', 'Drawdown 20.00% exceeds threshold of 15%')
        return decision

    monkeypatch.setattr(automation.rebalancer, 'should_rebalance', decide_then_pause)

    assert not automation.rebalancer.rebalance_account('acc-1', DRAWDOWN_STATS)['rebalanced']
    broker.subscribe.assert_not_called()
    assert automation.accounts.get_account('acc-1').risk_multiplier == 1.0


def test_auto_disconnected_account_is_not_rebalanced(automation, make_account, broker):
    _rebalancing(make_account, auto_disconnected_at=tz.now_naive_utc())

    assert automation.rebalancer.update_risk_multiplier('acc-1', 0.6, 'manual') is None
    broker.subscribe.assert_not_called()
