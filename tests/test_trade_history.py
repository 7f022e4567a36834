from datetime import datetime

import pytest
from sqlalchemy.exc import OperationalError

from trade_history import TradeHistoryRepository, TradeHistoryFilter, TradeRecord, summarize_trades


@pytest.fixture
def history(session_factory):
    return TradeHistoryRepository(session_factory)


def _failing_query(flt):
    raise OperationalError('SELECT ...', {}, Exception('index not available'))


def test_legacy_rows_are_normalized(history, make_account, add_trade):
    make_account('acc-1', user_id='user-1')
    add_trade(
        position_id='legacy-1', user_id=None, side='sell', closed_by=None,
        swap=None, commission=None, duration_seconds=None,
        open_time=datetime(2025, 3, 10, 9, 0), close_time=datetime(2025, 3, 10, 9, 30),
    )

    trades = history.get_trade_history(TradeHistoryFilter(user_id='user-1'))

    assert len(trades) == 1
    trade = trades[0]
    assert trade.user_id == 'user-1'
    assert trade.side == 'SELL'
    assert trade.closed_by == 'UNKNOWN'
    assert trade.swap == 0.0
    assert trade.commission == 0.0
    assert trade.duration_seconds == 1800


def test_user_filter_excludes_other_users(history, make_account, add_trade):
    make_account('acc-1', user_id='user-1')
    make_account('acc-2', user_id='user-2')
    add_trade(account_id='acc-1', user_id='user-1')
    add_trade(account_id='acc-2', user_id=None)

    trades = history.get_trade_history(TradeHistoryFilter(user_id='user-1'))
    assert [t.account_id for t in trades] == ['acc-1']


def test_filters_and_ordering(history, add_trade):
    add_trade(position_id='a', side='BUY', profit=20.0, close_time=datetime(2025, 3, 10, 10, 0))
    add_trade(position_id='b', side='sell', profit=-15.0, close_time=datetime(2025, 3, 11, 10, 0))
    add_trade(position_id='c', side='SELL', profit=5.0, close_time=datetime(2025, 3, 12, 10, 0))
    add_trade(position_id='d', side='BUY', symbol='USDJPY', profit=-1.0, close_time=datetime(2025, 3, 13, 0, 0))

    all_trades = history.get_trade_history()
    assert [t.position_id for t in all_trades] == ['d', 'c', 'b', 'a']

    sells = history.get_trade_history(TradeHistoryFilter(side='sell'))
    assert [t.position_id for t in sells] == ['c', 'b']

    losses = history.get_trade_history(TradeHistoryFilter(profit_loss='loss'))
    assert {t.position_id for t in losses} == {'b', 'd'}

    # end_date is exclusive
    window = history.get_trade_history(TradeHistoryFilter(
        start_date=datetime(2025, 3, 11), end_date=datetime(2025, 3, 13)
    ))
    assert [t.position_id for t in window] == ['c', 'b']

    limited = history.get_trade_history(TradeHistoryFilter(limit=2))
    assert [t.position_id for t in limited] == ['d', 'c']

    assert history.get_trade_history_symbols() == ['EURUSD', 'USDJPY']


def test_broad_query_when_composite_queries_unsupported(session_factory, add_trade):
    add_trade(position_id='a', account_id='acc-1')
    add_trade(position_id='b', account_id='acc-2')
    history = TradeHistoryRepository(session_factory, composite_queries=False)

    assert not history.supports_composite_query()
    trades = history.get_trade_history(TradeHistoryFilter(account_id='acc-2'))
    assert [t.position_id for t in trades] == ['b']


def test_falls_back_when_composite_query_fails(history, add_trade, monkeypatch):
    add_trade(position_id='a', account_id='acc-1')
    monkeypatch.setattr(history, '_composite_query', _failing_query)

    trades = history.get_trade_history(TradeHistoryFilter(account_id='acc-1'))
    assert [t.position_id for t in trades] == ['a']


def test_recent_scan_is_last_resort(history, add_trade, monkeypatch):
    add_trade(position_id='a', account_id='acc-1')
    monkeypatch.setattr(history, '_composite_query', _failing_query)
    monkeypatch.setattr(history, '_date_range_query', _failing_query)

    trades = history.get_trade_history(TradeHistoryFilter(account_id='acc-1'))
    assert [t.position_id for t in trades] == ['a']


def test_empty_history_when_every_query_fails(history, add_trade, monkeypatch):
    add_trade(position_id='a')
    for name in ('_composite_query', '_date_range_query', '_recent_scan'):
        monkeypatch.setattr(history, name, _failing_query)

    assert history.get_trade_history() == []


def test_backfill_legacy_owners(history, make_account, add_trade):
    make_account('acc-1', user_id='user-1')
    add_trade(user_id=None)
    add_trade(user_id=None)
    add_trade(account_id='orphan', user_id=None)

    assert history.backfill_legacy_owners() == 2
    assert history.backfill_legacy_owners() == 0


def _record(position_id, profit, pips=None, duration=None, risk_reward=None):
    return TradeRecord(
        id=None, position_id=position_id, account_id='acc-1', user_id='user-1',
        symbol='EURUSD', side='BUY', volume=0.1, open_price=1.1, close_price=1.1,
        stop_loss=None, take_profit=None, open_time=None, close_time=None,
        profit=profit, pips=pips, commission=0.0, swap=0.0, duration_seconds=duration,
        closed_by='MANUAL', risk_reward=risk_reward,
    )


def test_summarize_trades():
    stats = summarize_trades([
        _record('a', 100.0, pips=20.0, duration=600, risk_reward=2.0),
        _record('b', -50.0, pips=-10.0, duration=1200),
        _record('c', 30.0, pips=5.5, risk_reward=1.0),
    ])

    assert stats['total_trades'] == 3
    assert stats['winning_trades'] == 2
    assert stats['losing_trades'] == 1
    assert stats['win_rate'] == 66.67
    assert stats['total_profit'] == 80.0
    assert stats['total_pips'] == 15.5
    assert stats['average_profit'] == 26.67
    assert stats['average_duration'] == 900.0
    assert stats['profit_factor'] == 2.6
    assert stats['average_risk_reward'] == 1.5
    assert stats['best_trade']['position_id'] == 'a'
    assert stats['worst_trade']['position_id'] == 'b'


def test_profit_factor_without_losses():
    assert summarize_trades([_record('a', 10.0)])['profit_factor'] == 999.0
    assert summarize_trades([])['total_trades'] == 0
    empty = summarize_trades([])
    assert empty['win_rate'] == 0.0
    assert empty['average_profit'] == 0.0
    assert empty['best_trade'] is None and empty['worst_trade'] is None
