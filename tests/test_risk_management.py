import pytest

from account_stats import AccountStats
from copyfactory_client import ConfigurationError, SubscriptionError
from models import STATUS_ACTIVE, STATUS_PAUSED, STATUS_DISCONNECTED
from risk_management import calculate_drawdown


def _pausable(make_account, **fields):
    values = dict(auto_pause_enabled=True, auto_resume_enabled=True,
                  max_drawdown_percent=15.0, resume_drawdown_percent=10.0)
    values.update(fields)
    return make_account(**values)


def test_calculate_drawdown():
    assert calculate_drawdown(10000, 8000) == 20.0
    assert calculate_drawdown(10000, 10500) == -5.0
    assert calculate_drawdown(0, 100) == 0.0


def test_pause_fires_above_threshold(automation, make_account):
    account = _pausable(make_account)

    decision = automation.risk.should_pause(account, AccountStats(balance=10000, equity=8000))

    assert decision['should_act']
    assert '20.00%' in decision['reason']
    assert decision['drawdown'] == 20.0


def test_no_action_when_automation_disabled(automation, make_account, monkeypatch):
    monkeypatch.setenv('ENABLE_AUTOMATION_FEATURES', 'false')
    account = _pausable(make_account)

    decision = automation.risk.should_pause(account, AccountStats(balance=10000, equity=5000))
    assert not decision['should_act']
    assert 'disabled' in decision['reason']
    assert automation.risk.evaluate_account(account.id, AccountStats(10000, 5000))['action'] is None


def test_evaluate_pauses_account(automation, make_account, broker):
    _pausable(make_account)

    result = automation.risk.evaluate_account('acc-1', AccountStats(balance=10000, equity=8000))

    assert result['action'] == 'paused'
    broker.unsubscribe.assert_called_once_with('acc-1', 'strat-1', token='strategy-token')
    account = automation.accounts.get_account('acc-1')
    assert account.status == STATUS_PAUSED
    assert account.auto_paused_at is not None
    assert '20.00%' in account.auto_pause_reason

    actions = automation.audit.get_recent_actions('acc-1')
    assert [a['action_type'] for a in actions] == ['auto-pause']
    assert automation.notifications.get_unread('user-1')[0]['title'] == 'Copy Trading Paused'


def test_failed_unsubscribe_still_pauses_locally(automation, make_account, broker):
    _pausable(make_account)
    broker.unsubscribe.side_effect = SubscriptionError('broker down', 503)

    assert automation.risk.pause_copying('acc-1', 'Drawdown 25.00% exceeds threshold of 15%')
    assert automation.accounts.get_account('acc-1').status == STATUS_PAUSED
    details = automation.audit.get_recent_actions('acc-1')[0]['details']
    assert details['remote_unsubscribed'] is False


def test_pause_is_applied_once(automation, make_account, broker):
    _pausable(make_account)

    assert automation.risk.pause_copying('acc-1', 'first')
    assert not automation.risk.pause_copying('acc-1', 'second')
    assert broker.unsubscribe.call_count == 1
    assert automation.accounts.get_account('acc-1').auto_pause_reason == 'first'


def test_pause_without_strategy_is_a_configuration_error(automation, make_account):
    _pausable(make_account, strategy_id=None)

    with pytest.raises(ConfigurationError):
        automation.risk.pause_copying('acc-1', 'Drawdown too high')
    assert automation.accounts.get_account('acc-1').status == STATUS_ACTIVE


def test_resume_below_threshold(automation, make_account, broker):
    _pausable(make_account, status=STATUS_PAUSED, risk_multiplier=0.5, max_risk_percent=2.0,
              symbol_mapping={'XAUUSD': 'GOLD'}, auto_pause_reason='Drawdown 20.00% exceeds threshold of 15%')

    result = automation.risk.evaluate_account('acc-1', AccountStats(balance=10000, equity=9200))

    assert result['action'] == 'resumed'
    assert 'below resume threshold' in result['reason']
    broker.subscribe.assert_called_once_with(
        'acc-1', 'strat-1', 0.5,
        reverse=False,
        symbol_mapping={'XAUUSD': 'GOLD'},
        max_risk=0.02,
        name='Account acc-1',
        token='strategy-token'
    )
    account = automation.accounts.get_account('acc-1')
    assert account.status == STATUS_ACTIVE
    assert account.auto_paused_at is None
    assert account.auto_pause_reason is None


def test_no_resume_while_drawdown_is_high(automation, make_account, broker):
    _pausable(make_account, status=STATUS_PAUSED)

    result = automation.risk.evaluate_account('acc-1', AccountStats(balance=10000, equity=8800))

    assert result['action'] is None
    broker.subscribe.assert_not_called()


def test_disconnected_account_is_never_resumed(automation, make_account, broker):
    _pausable(make_account, status=STATUS_DISCONNECTED)

    assert automation.risk.evaluate_account('acc-1', AccountStats(10000, 10000))['action'] is None
    assert not automation.risk.resume_copying('acc-1')
    broker.subscribe.assert_not_called()


def test_risk_status(automation, make_account):
    _pausable(make_account, status=STATUS_PAUSED, auto_pause_reason='Drawdown 20.00% exceeds threshold of 15%')

    status = automation.risk.get_risk_status('acc-1', AccountStats(balance=10000, equity=9500))

    assert status['is_paused']
    assert status['current_drawdown'] == 5.0
    assert status['max_drawdown'] == 15.0
    assert status['can_resume']
    assert status['pause_reason'].startswith('Drawdown 20.00%')


def test_pause_fires_exactly_at_threshold(automation, make_account):
    account = _pausable(make_account)

    decision = automation.risk.should_pause(account, AccountStats(balance=10000, equity=8500))

    assert decision['should_act']
    assert decision['drawdown'] == pytest.approx(15.0)


def test_no_pause_just_below_threshold(automation, make_account):
    account = _pausable(make_account)

    decision = automation.risk.should_pause(account, AccountStats(balance=10000, equity=8501))

    assert not decision['should_act']
