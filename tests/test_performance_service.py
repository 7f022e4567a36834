from datetime import date, datetime

import pytest

import automation_config as config
from models import DailyPerformanceSnapshot
from performance_service import PerformanceService, get_iso_week_id, is_valid_pips
from trade_history import TradeHistoryRepository

TODAY = date(2025, 3, 20)


@pytest.fixture
def performance(session_factory):
    return PerformanceService(session_factory, TradeHistoryRepository(session_factory))


def _snapshot_count(session_factory):
    db = session_factory()
    try:
        return db.query(DailyPerformanceSnapshot).count()
    finally:
        db.close()


def _store_snapshot(session_factory, day, trade_count, total_profit, total_pips):
    db = session_factory()
    try:
        db.add(DailyPerformanceSnapshot(
            date=day, account_id='acc-1', strategy_key='all', trade_count=trade_count,
            winning_trades=trade_count, total_profit=total_profit, total_pips=total_pips,
            win_rate=100.0 if trade_count else 0.0
        ))
        db.commit()
    finally:
        db.close()


def test_daily_is_computed_then_served_from_cache(performance, add_trade):
    add_trade(profit=25.0, pips=12.0, close_time=datetime(2025, 3, 10, 12, 0))
    add_trade(profit=-5.0, pips=-3.0, close_time=datetime(2025, 3, 10, 15, 0))

    first = performance.get_daily(date(2025, 3, 10), 'acc-1', today=TODAY)
    assert not first.cached
    assert first.total_trades == 2
    assert first.winning_trades == 1
    assert first.total_profit == 20.0
    assert first.total_pips == 9.0
    assert first.win_rate == 50.0

    # A late trade does not change a usable snapshot
    add_trade(profit=100.0, pips=50.0, close_time=datetime(2025, 3, 10, 18, 0))
    second = performance.get_daily(date(2025, 3, 10), 'acc-1', today=TODAY)
    assert second.cached
    assert second.total_trades == 2


def test_snapshot_without_pips_is_recomputed(performance, session_factory, add_trade):
    _store_snapshot(session_factory, date(2025, 3, 10), trade_count=1, total_profit=20.0, total_pips=0.0)
    add_trade(pips=None, open_price=1.1000, close_price=1.1020, profit=20.0,
              close_time=datetime(2025, 3, 10, 12, 0))

    perf = performance.get_daily(date(2025, 3, 10), 'acc-1', today=TODAY)

    assert not perf.cached
    assert perf.total_pips == 20.0
    assert performance.get_daily(date(2025, 3, 10), 'acc-1', today=TODAY).cached


def test_recalculated_pips_follow_profit_sign(performance, add_trade):
    # Price moved up but the broker reported a loss
    add_trade(pips=None, side='BUY', open_price=1.1000, close_price=1.1020, profit=-20.0,
              close_time=datetime(2025, 3, 10, 12, 0))

    perf = performance.calculate_daily(date(2025, 3, 10), 'acc-1')
    assert perf.total_pips == -20.0


def test_empty_snapshot_is_recomputed(performance, session_factory, add_trade):
    _store_snapshot(session_factory, date(2025, 3, 10), trade_count=0, total_profit=0.0, total_pips=0.0)
    add_trade(close_time=datetime(2025, 3, 10, 12, 0))

    assert performance.get_daily(date(2025, 3, 10), 'acc-1', today=TODAY).total_trades == 1


def test_old_uncached_day_is_a_zero_row(performance, session_factory, add_trade):
    add_trade(close_time=datetime(2025, 1, 5, 12, 0))

    perf = performance.get_daily(date(2025, 1, 5), 'acc-1', today=TODAY)

    assert perf.total_trades == 0
    assert perf.total_profit == 0.0
    assert _snapshot_count(session_factory) == 0


def test_old_cached_day_is_served(performance, session_factory):
    _store_snapshot(session_factory, date(2025, 1, 5), trade_count=3, total_profit=42.0, total_pips=17.5)

    perf = performance.get_daily(date(2025, 1, 5), 'acc-1', today=TODAY)
    assert perf.cached
    assert perf.total_profit == 42.0


def test_calendar_has_one_sorted_row_per_day(performance, add_trade):
    add_trade(profit=30.0, pips=15.0, close_time=datetime(2025, 3, 5, 12, 0))

    days = performance.get_calendar(3, 2025, 'acc-1', today=TODAY)

    assert len(days) == 31
    assert [d.date.day for d in days] == list(range(1, 32))
    assert days[4].total_profit == 30.0
    assert all(d.total_trades == 0 for d in days if d.date > TODAY)


def test_calendar_respects_recalculation_budget(performance, add_trade, monkeypatch):
    monkeypatch.setattr(config, 'CALENDAR_MAX_RECALCULATIONS', 2)
    add_trade(profit=30.0, pips=15.0, close_time=datetime(2025, 3, 5, 12, 0))

    days = performance.get_calendar(3, 2025, 'acc-1', today=TODAY)

    assert len(days) == 31
    assert days[4].total_trades == 0


def test_weekly_rollup(performance, add_trade):
    add_trade(profit=100.0, pips=40.0, close_time=datetime(2025, 3, 10, 12, 0))
    add_trade(profit=-40.0, pips=-20.0, close_time=datetime(2025, 3, 12, 12, 0))

    week = performance.get_weekly(2025, 11, 'acc-1', today=TODAY)

    assert week.week_id == '2025-W11'
    assert week.start_date == date(2025, 3, 10)
    assert week.end_date == date(2025, 3, 16)
    assert week.total_trades == 2
    assert week.total_profit == 60.0
    assert week.win_rate == 50.0
    assert week.best_day.date == date(2025, 3, 10)
    assert week.worst_day.date == date(2025, 3, 12)
    assert len(week.daily_breakdown) == 7


def test_monthly_rollup_with_growth(performance, add_trade):
    add_trade(profit=50.0, pips=10.0, close_time=datetime(2025, 2, 25, 12, 0))
    add_trade(profit=40.0, pips=8.0, close_time=datetime(2025, 3, 3, 12, 0))
    add_trade(profit=20.0, pips=4.0, close_time=datetime(2025, 3, 4, 12, 0))

    month = performance.get_monthly(3, 2025, 'acc-1', today=TODAY)

    assert month.month_id == '2025-03'
    assert month.total_trades == 2
    assert month.total_profit == 60.0
    assert month.average_daily_profit == 30.0
    assert month.growth_rate == 20.0
    assert sum(w.total_trades for w in month.weekly_breakdown) == 2
    assert month.to_dict()['weekly_breakdown'][0]['week_id'] == '2025-W09'


def test_monthly_growth_is_none_without_previous_profit(performance, add_trade):
    add_trade(profit=40.0, pips=8.0, close_time=datetime(2025, 3, 3, 12, 0))

    assert performance.get_monthly(3, 2025, 'acc-1', today=TODAY).growth_rate is None


def test_iso_week_id():
    assert get_iso_week_id(date(2025, 3, 10)) == '2025-W11'
    assert get_iso_week_id(date(2024, 12, 30)) == '2025-W01'


@pytest.mark.parametrize('value, expected', [
    (12.5, True),
    (-3.0, True),
    (0, False),
    (None, False),
    (float('nan'), False),
    ('abc', False),
])
def test_is_valid_pips(value, expected):
    assert is_valid_pips(value) is expected


def test_calculate_daily_is_idempotent(performance, session_factory, add_trade):
    add_trade(profit=25.0, pips=12.0, close_time=datetime(2025, 3, 10, 12, 0))
    add_trade(profit=-5.0, pips=None, open_price=1.1000, close_price=1.0995,
              close_time=datetime(2025, 3, 10, 15, 0))

    first = performance.calculate_daily(date(2025, 3, 10), 'acc-1')
    second = performance.calculate_daily(date(2025, 3, 10), 'acc-1')

    assert first.to_dict() == second.to_dict()
    assert second.total_pips == 7.0
    assert _snapshot_count(session_factory) == 1
