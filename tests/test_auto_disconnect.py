import threading
from datetime import timedelta

from copyfactory_client import SubscriptionError
from models import STATUS_DISCONNECTED, STATUS_ACTIVE
from timezone_manager import tz


def _tracked(make_account, **fields):
    values = dict(auto_disconnect_enabled=True, max_consecutive_errors=3, error_window_minutes=60)
    values.update(fields)
    return make_account(**values)


def test_disconnects_at_threshold(automation, make_account, broker):
    _tracked(make_account)

    results = [automation.disconnect.track_error('acc-1', f"Request timeout #{i}") for i in range(3)]

    assert [r['count'] for r in results] == [1, 2, 3]
    assert [r['disconnected'] for r in results] == [False, False, True]
    broker.unsubscribe.assert_called_once_with('acc-1', 'strat-1', token='strategy-token')
    broker.remove_account.assert_called_once_with('acc-1', token='strategy-token')

    account = automation.accounts.get_account('acc-1')
    assert account.status == STATUS_DISCONNECTED
    assert account.auto_disconnected_at is not None
    assert account.auto_disconnect_reason == 'Exceeded error threshold: 3 consecutive errors within 60 minutes'

    notification = automation.notifications.get_unread('user-1')[0]
    assert notification['title'] == 'Account Auto-Disconnected'


def test_errors_after_disconnect_are_ignored(automation, make_account, broker):
    _tracked(make_account)
    for i in range(3):
        automation.disconnect.track_error('acc-1', 'boom')

    result = automation.disconnect.track_error('acc-1', 'boom')

    assert not result['tracked']
    assert not result['disconnected']
    assert broker.remove_account.call_count == 1
    assert not automation.disconnect.disconnect_account('acc-1', 'again')


def test_concurrent_errors_disconnect_once(automation, make_account, broker):
    _tracked(make_account, max_consecutive_errors=5)
    results = []

    def report():
        results.append(automation.disconnect.track_error('acc-1', 'stream dropped'))

    threads = [threading.Thread(target=report) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for r in results if r['disconnected']) == 1
    assert broker.remove_account.call_count == 1
    assert automation.accounts.get_account('acc-1').consecutive_error_count == 5


def test_error_outside_window_restarts_count(automation, make_account):
    _tracked(make_account, consecutive_error_count=2,
             last_error_at=tz.now_naive_utc() - timedelta(minutes=61))

    result = automation.disconnect.track_error('acc-1', 'late error')

    assert result['count'] == 1
    assert not result['disconnected']


def test_error_inside_window_accumulates(automation, make_account):
    _tracked(make_account, consecutive_error_count=1,
             last_error_at=tz.now_naive_utc() - timedelta(minutes=30))

    assert automation.disconnect.track_error('acc-1', 'again')['count'] == 2


def test_remote_cleanup_failures_do_not_block_disconnect(automation, make_account, broker):
    _tracked(make_account, max_consecutive_errors=1)
    broker.unsubscribe.side_effect = SubscriptionError('unreachable')
    broker.remove_account.side_effect = SubscriptionError('unreachable')

    result = automation.disconnect.track_error('acc-1', 'fatal')

    assert result['disconnected']
    assert automation.accounts.get_account('acc-1').status == STATUS_DISCONNECTED


def test_not_tracked_when_disabled_or_unknown(automation, make_account, monkeypatch):
    make_account(auto_disconnect_enabled=False)

    assert not automation.disconnect.track_error('acc-1', 'boom')['tracked']
    assert not automation.disconnect.track_error('missing', 'boom')['tracked']

    monkeypatch.setenv('ENABLE_AUTOMATION_FEATURES', 'false')
    assert not automation.disconnect.track_error('acc-1', 'boom')['tracked']


def test_reset_error_count(automation, make_account):
    _tracked(make_account)
    automation.disconnect.track_error('acc-1', 'boom')

    assert automation.disconnect.reset_error_count('acc-1')
    assert not automation.disconnect.reset_error_count('acc-1')
    account = automation.accounts.get_account('acc-1')
    assert account.consecutive_error_count == 0
    assert account.status == STATUS_ACTIVE


def test_error_history_newest_first(automation, make_account):
    _tracked(make_account, max_consecutive_errors=10)
    for i in range(4):
        automation.disconnect.track_error('acc-1', f"error {i}")

    history = automation.disconnect.get_error_history('acc-1', limit=3)

    assert [h['error'] for h in history] == ['error 3', 'error 2', 'error 1']
    assert history[0]['consecutive_count'] == 4


def test_should_disconnect(automation, make_account):
    account = _tracked(make_account, consecutive_error_count=3)
    assert automation.disconnect.should_disconnect(account)

    account.consecutive_error_count = 2
    assert not automation.disconnect.should_disconnect(account)
