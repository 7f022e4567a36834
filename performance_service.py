"""
Copy Trading Performance Aggregator

Per-day totals of the closed-trade ledger, cached in daily_performance_snapshots.

Cache policy of get_daily():
- cached snapshot is returned only when trade_count > 0 and total_pips is a
  valid non-zero number
- trade_count > 0 with missing/zero pips is recomputed (pips were not
  available when the snapshot was written)
- trade_count == 0 is recomputed, trades may have arrived late
- days older than PERFORMANCE_FRESHNESS_DAYS without a usable snapshot are
  returned as zero rows without touching the ledger

Weekly and monthly views are rollups of daily snapshots.
"""

import calendar
import logging
import math
from dataclasses import dataclass, field, asdict, replace
from datetime import date, timedelta
from typing import Optional, List, Dict

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import automation_config as config
from database import SessionLocal
from models import DailyPerformanceSnapshot
from pip_calculator import calculate_pips
from timezone_manager import tz
from trade_archiver import reconcile_pips_with_profit
from trade_history import TradeHistoryRepository, TradeHistoryFilter, summarize_trades, calculate_win_rate

logger = logging.getLogger(__name__)


@dataclass
class DailyPerformance:
    date: date
    account_id: str
    strategy_id: Optional[str]
    total_trades: int = 0
    winning_trades: int = 0
    total_profit: float = 0.0
    total_pips: float = 0.0
    win_rate: float = 0.0
    cached: bool = False

    @property
    def average_profit(self) -> float:
        return round(self.total_profit / self.total_trades, 2) if self.total_trades else 0.0

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['date'] = self.date.isoformat()
        data['average_profit'] = self.average_profit
        return data


@dataclass
class WeeklyPerformance:
    week_id: str
    start_date: date
    end_date: date
    total_profit: float
    total_trades: int
    win_rate: float
    best_day: Optional[DailyPerformance]
    worst_day: Optional[DailyPerformance]
    daily_breakdown: List[DailyPerformance] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'week_id': self.week_id,
            'start_date': self.start_date.isoformat(),
            'end_date': self.end_date.isoformat(),
            'total_profit': self.total_profit,
            'total_trades': self.total_trades,
            'win_rate': self.win_rate,
            'best_day': self.best_day.to_dict() if self.best_day else None,
            'worst_day': self.worst_day.to_dict() if self.worst_day else None,
            'daily_breakdown': [d.to_dict() for d in self.daily_breakdown],
        }


@dataclass
class MonthlyPerformance:
    month_id: str
    total_profit: float
    total_trades: int
    win_rate: float
    average_daily_profit: float
    growth_rate: Optional[float]
    weekly_breakdown: List[WeeklyPerformance] = field(default_factory=list)

    def to_dict(self) -> Dict:
        data = {k: v for k, v in asdict(self).items() if k != 'weekly_breakdown'}
        data['weekly_breakdown'] = [w.to_dict() for w in self.weekly_breakdown]
        return data


def get_iso_week_id(day: date) -> str:
    """ISO week id, e.g. '2025-W07'"""
    iso_year, iso_week, _ = day.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def is_valid_pips(value) -> bool:
    """A usable cached pip total: a real, finite, non-zero number"""
    if value is None:
        return False
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(number) and number != 0


def _rollup(days: List[DailyPerformance]):
    total_trades = sum(d.total_trades for d in days)
    winning = sum(d.winning_trades for d in days)
    total_profit = round(sum(d.total_profit for d in days), 2)
    return total_trades, total_profit, calculate_win_rate(winning, total_trades)


class PerformanceService:
    """Daily snapshots with cache-or-recompute and calendar/weekly/monthly rollups"""

    def __init__(self, session_factory=None, history: Optional[TradeHistoryRepository] = None):
        self.session_factory = session_factory or SessionLocal
        self.history = history or TradeHistoryRepository(self.session_factory)

    # ==================== CACHE ====================

    def _load_snapshot(self, day: date, account_id: str, strategy_key: str) -> Optional[DailyPerformance]:
        db = self.session_factory()
        try:
            row = db.query(DailyPerformanceSnapshot).filter(
                DailyPerformanceSnapshot.date == day,
                DailyPerformanceSnapshot.account_id == account_id,
                DailyPerformanceSnapshot.strategy_key == strategy_key
            ).first()
            return self._from_row(row) if row else None
        except SQLAlchemyError as e:
            logger.warning(f"Snapshot lookup failed for {day} / {account_id}: {e}")
            return None
        finally:
            db.close()

    def _load_month_snapshots(self, year: int, month: int, account_id: str,
                              strategy_key: str) -> Dict[date, DailyPerformance]:
        first = date(year, month, 1)
        last = date(year, month, calendar.monthrange(year, month)[1])
        db = self.session_factory()
        try:
            rows = db.query(DailyPerformanceSnapshot).filter(
                DailyPerformanceSnapshot.date >= first,
                DailyPerformanceSnapshot.date <= last,
                DailyPerformanceSnapshot.account_id == account_id,
                DailyPerformanceSnapshot.strategy_key == strategy_key
            ).all()
            return {row.date: self._from_row(row) for row in rows}
        except SQLAlchemyError as e:
            logger.warning(f"Snapshot lookup failed for {year}-{month:02d} / {account_id}: {e}")
            return {}
        finally:
            db.close()

    @staticmethod
    def _from_row(row: DailyPerformanceSnapshot) -> DailyPerformance:
        return DailyPerformance(
            date=row.date,
            account_id=row.account_id,
            strategy_id=None if row.strategy_key == 'all' else row.strategy_key,
            total_trades=row.trade_count or 0,
            winning_trades=row.winning_trades or 0,
            total_profit=float(row.total_profit or 0.0),
            total_pips=float(row.total_pips) if row.total_pips is not None else 0.0,
            win_rate=float(row.win_rate or 0.0),
            cached=True,
        )

    def _save_snapshot(self, perf: DailyPerformance, strategy_key: str):
        """Upsert the snapshot. Failures are logged; the computed value is still returned."""
        for attempt in range(2):
            db = self.session_factory()
            try:
                row = db.query(DailyPerformanceSnapshot).filter(
                    DailyPerformanceSnapshot.date == perf.date,
                    DailyPerformanceSnapshot.account_id == perf.account_id,
                    DailyPerformanceSnapshot.strategy_key == strategy_key
                ).first()
                if row is None:
                    row = DailyPerformanceSnapshot(
                        date=perf.date, account_id=perf.account_id, strategy_key=strategy_key
                    )
                    db.add(row)
                row.trade_count = perf.total_trades
                row.winning_trades = perf.winning_trades
                row.total_profit = perf.total_profit
                row.total_pips = perf.total_pips
                row.win_rate = perf.win_rate
                row.calculated_at = tz.now_naive_utc()
                db.commit()
                return
            except IntegrityError:
                db.rollback()
                if attempt == 1:
                    logger.error(f"Snapshot {perf.date} / {perf.account_id} write conflicted twice")
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to cache snapshot {perf.date} / {perf.account_id}: {e}", exc_info=True)
                return
            finally:
                db.close()

    # ==================== DAILY ====================

    def get_daily(self, day: date, account_id: str, strategy_id: Optional[str] = None,
                  today: Optional[date] = None) -> DailyPerformance:
        """
        Daily performance of an account, from cache when the cache is usable

        Args:
            day: UTC calendar day
            account_id: Follower account id
            strategy_id: Optional strategy the snapshot is keyed by
            today: Reference day for the freshness horizon (default: UTC today)
        """
        strategy_key = strategy_id or 'all'
        today = today or tz.today_utc()

        cached = self._load_snapshot(day, account_id, strategy_key)
        if cached and cached.total_trades > 0 and is_valid_pips(cached.total_pips):
            return cached

        if cached and cached.total_trades > 0:
            logger.info(f"🔁 Snapshot {day} / {account_id} has {cached.total_trades} trades but no pips, recomputing")
            return self.calculate_daily(day, account_id, strategy_id)

        if tz.days_between(day, today) > config.PERFORMANCE_FRESHNESS_DAYS:
            return cached or DailyPerformance(date=day, account_id=account_id, strategy_id=strategy_id)

        return self.calculate_daily(day, account_id, strategy_id)

    def calculate_daily(self, day: date, account_id: str, strategy_id: Optional[str] = None) -> DailyPerformance:
        """
        Recompute a day from the ledger and write the snapshot back

        Records with missing or zero pips get their pips recalculated from
        prices and aligned with their stored profit.
        """
        start, end = tz.day_bounds(day)
        trades = self.history.get_trade_history(TradeHistoryFilter(
            start_date=start,
            end_date=end,
            account_id=account_id,
            limit=config.TRADE_HISTORY_ACCOUNT_LIMIT,
        ))

        recalculated = 0
        for index, trade in enumerate(trades):
            if not is_valid_pips(trade.pips):
                pips = reconcile_pips_with_profit(
                    calculate_pips(trade.symbol, trade.side, trade.open_price, trade.close_price),
                    trade.profit
                )
                trades[index] = replace(trade, pips=pips)
                recalculated += 1

        summary = summarize_trades(trades)
        count = summary['total_trades']
        perf = DailyPerformance(
            date=day,
            account_id=account_id,
            strategy_id=strategy_id,
            total_trades=count,
            winning_trades=summary['winning_trades'],
            total_profit=summary['total_profit'],
            total_pips=summary['total_pips'],
            win_rate=summary['win_rate'],
        )

        self._save_snapshot(perf, strategy_id or 'all')
        logger.debug(
            f"📊 Daily {day} / {account_id}: {count} trades, {perf.total_profit:+.2f}, "
            f"{perf.total_pips:+.1f} pips ({recalculated} pip values recalculated)"
        )
        return perf

    # ==================== CALENDAR ====================

    def get_calendar(self, month: int, year: int, account_id: str, strategy_id: Optional[str] = None,
                     today: Optional[date] = None) -> List[DailyPerformance]:
        """
        One row per day of the month, sorted by date

        At most CALENDAR_MAX_RECALCULATIONS days are recomputed per call.
        Days that are uncached and too old, in the future, beyond the
        recompute budget or failing to compute come back as zero rows.
        """
        strategy_key = strategy_id or 'all'
        today = today or tz.today_utc()
        cached = self._load_month_snapshots(year, month, account_id, strategy_key)

        rows = []
        recalculations = 0
        for day_number in range(1, calendar.monthrange(year, month)[1] + 1):
            day = date(year, month, day_number)
            snapshot = cached.get(day)
            zero = snapshot or DailyPerformance(date=day, account_id=account_id, strategy_id=strategy_id)

            if snapshot and snapshot.total_trades > 0 and is_valid_pips(snapshot.total_pips):
                rows.append(snapshot)
                continue

            needs_pips = snapshot is not None and snapshot.total_trades > 0
            age = tz.days_between(day, today)
            if age < 0 or (age > config.PERFORMANCE_FRESHNESS_DAYS and not needs_pips):
                rows.append(zero)
                continue

            if recalculations >= config.CALENDAR_MAX_RECALCULATIONS:
                rows.append(zero)
                continue

            recalculations += 1
            try:
                rows.append(self.calculate_daily(day, account_id, strategy_id))
            except Exception as e:
                logger.error(f"Calendar day {day} for {account_id} failed: {e}", exc_info=True)
                rows.append(zero)

        rows.sort(key=lambda d: d.date)
        if recalculations:
            logger.info(f"📅 Calendar {year}-{month:02d} / {account_id}: {recalculations} days recomputed")
        return rows

    # ==================== ROLLUPS ====================

    def _week_from_days(self, days: List[DailyPerformance]) -> WeeklyPerformance:
        total_trades, total_profit, win_rate = _rollup(days)
        trading_days = [d for d in days if d.total_trades > 0]
        return WeeklyPerformance(
            week_id=get_iso_week_id(days[0].date),
            start_date=days[0].date,
            end_date=days[-1].date,
            total_profit=total_profit,
            total_trades=total_trades,
            win_rate=win_rate,
            best_day=max(trading_days, key=lambda d: d.total_profit) if trading_days else None,
            worst_day=min(trading_days, key=lambda d: d.total_profit) if trading_days else None,
            daily_breakdown=days,
        )

    def get_weekly(self, iso_year: int, iso_week: int, account_id: str,
                   strategy_id: Optional[str] = None, today: Optional[date] = None) -> WeeklyPerformance:
        """ISO week (Monday to Sunday) rolled up from daily snapshots"""
        today = today or tz.today_utc()
        monday = date.fromisocalendar(iso_year, iso_week, 1)
        days = []
        for offset in range(7):
            day = monday + timedelta(days=offset)
            if day > today:
                days.append(DailyPerformance(date=day, account_id=account_id, strategy_id=strategy_id))
            else:
                days.append(self.get_daily(day, account_id, strategy_id, today=today))
        return self._week_from_days(days)

    def _month_total(self, month: int, year: int, account_id: str, strategy_id: Optional[str],
                     today: date) -> List[DailyPerformance]:
        return self.get_calendar(month, year, account_id, strategy_id, today=today)

    def get_monthly(self, month: int, year: int, account_id: str,
                    strategy_id: Optional[str] = None, today: Optional[date] = None) -> MonthlyPerformance:
        """
        Month rolled up from the calendar

        growth_rate compares total profit with the previous month in percent
        of the previous month's absolute profit; None when that was zero.
        """
        today = today or tz.today_utc()
        days = self._month_total(month, year, account_id, strategy_id, today)
        total_trades, total_profit, win_rate = _rollup(days)
        trading_days = [d for d in days if d.total_trades > 0]

        weeks: Dict[str, List[DailyPerformance]] = {}
        for day in days:
            weeks.setdefault(get_iso_week_id(day.date), []).append(day)

        prev_month, prev_year = (12, year - 1) if month == 1 else (month - 1, year)
        prev_days = self._month_total(prev_month, prev_year, account_id, strategy_id, today)
        prev_profit = round(sum(d.total_profit for d in prev_days), 2)
        growth_rate = round((total_profit - prev_profit) / abs(prev_profit) * 100, 2) if prev_profit else None

        return MonthlyPerformance(
            month_id=f"{year}-{month:02d}",
            total_profit=total_profit,
            total_trades=total_trades,
            win_rate=win_rate,
            average_daily_profit=round(total_profit / len(trading_days), 2) if trading_days else 0.0,
            growth_rate=growth_rate,
            weekly_breakdown=[self._week_from_days(week_days) for week_days in weeks.values()],
        )
