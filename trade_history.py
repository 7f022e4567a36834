"""
Trade History Repository

Read side of the closed-trade ledger.

- Rows are normalized once, at the read boundary, into TradeRecord. Legacy rows
  (no user_id, NULL swap/commission/closed_by, lowercase or broker-style side)
  come out fully typed, so callers never branch on missing fields.
- supports_composite_query() tells whether the store can combine equality and
  date-range filters in one query. When it cannot, the broad date-range query
  runs and the rest is filtered client-side.
- Query failures fall back: composite -> date range only -> recent scan ->
  empty result. Callers never see an exception for an unavailable query shape.
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional, List, Dict, Iterable, Callable

from sqlalchemy import func, or_, and_
from sqlalchemy.exc import SQLAlchemyError

import automation_config as config
from database import SessionLocal
from models import ClosedTrade, FollowerAccount
from pip_calculator import normalize_side, SIDE_BUY
from timezone_manager import tz

logger = logging.getLogger(__name__)

CLOSED_BY_VALUES = ('TP', 'SL', 'MANUAL', 'UNKNOWN')

# Ledger rows examined by the last-resort scan
RECENT_SCAN_LIMIT = 5000


@dataclass
class TradeRecord:
    """Fully-typed closed trade as seen by the rest of the engine"""
    id: Optional[int]
    position_id: str
    account_id: str
    user_id: Optional[str]
    symbol: str
    side: str
    volume: float
    open_price: Optional[float]
    close_price: Optional[float]
    stop_loss: Optional[float]
    take_profit: Optional[float]
    open_time: Optional[datetime]
    close_time: Optional[datetime]
    profit: float
    pips: Optional[float]
    commission: float
    swap: float
    duration_seconds: Optional[int]
    closed_by: str
    risk_reward: Optional[float]
    signal_id: Optional[str] = None
    is_closed: bool = True

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['open_time'] = tz.isoformat(self.open_time)
        data['close_time'] = tz.isoformat(self.close_time)
        return data


@dataclass
class TradeHistoryFilter:
    """Optional filters of a ledger query. Dates bound close_time as [start, end)."""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    symbol: Optional[str] = None
    side: Optional[str] = None
    profit_loss: Optional[str] = None  # 'profit' / 'loss'
    closed_by: Optional[str] = None
    account_id: Optional[str] = None
    user_id: Optional[str] = None
    limit: Optional[int] = None
    account_ids: List[str] = field(default_factory=list)

    def effective_limit(self) -> int:
        if self.limit:
            return self.limit
        if self.account_id:
            return config.TRADE_HISTORY_ACCOUNT_LIMIT
        return config.TRADE_HISTORY_DEFAULT_LIMIT


def _as_float(value, default=None):
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def normalize_trade_record(row: ClosedTrade, owners: Dict[str, str]) -> TradeRecord:
    """
    Convert a ledger row (current or legacy shape) into a TradeRecord

    Args:
        row: ClosedTrade row
        owners: account_id -> user_id, used for rows stored without user_id
    """
    side = normalize_side(row.side)
    if side is None:
        logger.warning(f"Ledger row {row.position_id} has unknown side '{row.side}', assuming BUY")
        side = SIDE_BUY

    closed_by = (row.closed_by or 'UNKNOWN').upper()
    if closed_by not in CLOSED_BY_VALUES:
        closed_by = 'UNKNOWN'

    duration = row.duration_seconds
    if duration is None and row.open_time and row.close_time:
        duration = max(0, int((row.close_time - row.open_time).total_seconds()))

    return TradeRecord(
        id=row.id,
        position_id=str(row.position_id),
        account_id=row.account_id,
        user_id=row.user_id or owners.get(row.account_id),
        symbol=(row.symbol or '').upper(),
        side=side,
        volume=_as_float(row.volume, 0.0),
        open_price=_as_float(row.open_price),
        close_price=_as_float(row.close_price),
        stop_loss=_as_float(row.stop_loss),
        take_profit=_as_float(row.take_profit),
        open_time=row.open_time,
        close_time=row.close_time,
        profit=_as_float(row.profit, 0.0),
        pips=_as_float(row.pips),
        commission=_as_float(row.commission, 0.0),
        swap=_as_float(row.swap, 0.0),
        duration_seconds=duration,
        closed_by=closed_by,
        risk_reward=_as_float(row.risk_reward),
        signal_id=row.signal_id,
    )


def matches_filter(record: TradeRecord, flt: TradeHistoryFilter) -> bool:
    """Client-side evaluation of a filter against a normalized record"""
    if flt.start_date and (record.close_time is None or record.close_time < flt.start_date):
        return False
    if flt.end_date and (record.close_time is None or record.close_time >= flt.end_date):
        return False
    if flt.symbol and record.symbol != flt.symbol.upper():
        return False
    if flt.side and record.side != normalize_side(flt.side):
        return False
    if flt.closed_by and record.closed_by != flt.closed_by.upper():
        return False
    if flt.profit_loss == 'profit' and record.profit <= 0:
        return False
    if flt.profit_loss == 'loss' and record.profit >= 0:
        return False
    if flt.account_id and record.account_id != flt.account_id:
        return False
    if flt.account_ids and record.account_id not in flt.account_ids:
        return False
    if flt.user_id and record.user_id != flt.user_id:
        return False
    return True


class TradeHistoryRepository:
    """Ledger queries with capability-based degradation"""

    def __init__(self, session_factory=None, composite_queries: bool = True):
        self.session_factory = session_factory or SessionLocal
        self._composite_queries = composite_queries

    def supports_composite_query(self) -> bool:
        return self._composite_queries

    # ==================== QUERIES ====================

    def get_trade_history(self, flt: Optional[TradeHistoryFilter] = None) -> List[TradeRecord]:
        """
        Closed trades matching the filter, newest close first

        Never raises: when every query shape fails, an empty list is returned.
        """
        flt = flt or TradeHistoryFilter()
        strategies: List[Callable] = []
        if self.supports_composite_query():
            strategies.append(self._composite_query)
        strategies.append(self._date_range_query)
        strategies.append(self._recent_scan)

        for strategy in strategies:
            try:
                records = strategy(flt)
            except SQLAlchemyError as e:
                logger.warning(f"⚠️ Ledger query '{strategy.__name__}' failed, falling back: {e}")
                continue
            records = [r for r in records if matches_filter(r, flt)]
            records.sort(key=lambda r: r.close_time or datetime.min, reverse=True)
            return records[:flt.effective_limit()]

        logger.error("❌ All ledger query strategies failed, returning empty history")
        return []

    def _composite_query(self, flt: TradeHistoryFilter) -> List[TradeRecord]:
        db = self.session_factory()
        try:
            owners = {}
            query = db.query(ClosedTrade)
            if flt.start_date:
                query = query.filter(ClosedTrade.close_time >= flt.start_date)
            if flt.end_date:
                query = query.filter(ClosedTrade.close_time < flt.end_date)
            if flt.account_id:
                query = query.filter(ClosedTrade.account_id == flt.account_id)
            if flt.account_ids:
                query = query.filter(ClosedTrade.account_id.in_(flt.account_ids))
            if flt.symbol:
                query = query.filter(ClosedTrade.symbol == flt.symbol.upper())
            if flt.closed_by:
                query = query.filter(ClosedTrade.closed_by == flt.closed_by.upper())
            if flt.profit_loss == 'profit':
                query = query.filter(ClosedTrade.profit > 0)
            elif flt.profit_loss == 'loss':
                query = query.filter(ClosedTrade.profit < 0)
            if flt.user_id:
                owned = self._accounts_of_user(db, flt.user_id)
                owners = {account_id: flt.user_id for account_id in owned}
                # Legacy rows have no user_id and match through their account
                query = query.filter(or_(
                    ClosedTrade.user_id == flt.user_id,
                    and_(ClosedTrade.user_id.is_(None), ClosedTrade.account_id.in_(owned or ['']))
                ))
            # side is filtered client-side: legacy rows store broker-style values
            rows = query.order_by(ClosedTrade.close_time.desc()).limit(flt.effective_limit() * 2).all()
            if not owners:
                owners = self._owner_map(db, {r.account_id for r in rows if not r.user_id})
            return [normalize_trade_record(r, owners) for r in rows]
        finally:
            db.close()

    def _date_range_query(self, flt: TradeHistoryFilter) -> List[TradeRecord]:
        db = self.session_factory()
        try:
            query = db.query(ClosedTrade)
            if flt.start_date:
                query = query.filter(ClosedTrade.close_time >= flt.start_date)
            if flt.end_date:
                query = query.filter(ClosedTrade.close_time < flt.end_date)
            rows = query.order_by(ClosedTrade.close_time.desc()).limit(RECENT_SCAN_LIMIT).all()
            owners = self._owner_map(db, {r.account_id for r in rows if not r.user_id})
            return [normalize_trade_record(r, owners) for r in rows]
        finally:
            db.close()

    def _recent_scan(self, flt: TradeHistoryFilter) -> List[TradeRecord]:
        db = self.session_factory()
        try:
            rows = db.query(ClosedTrade).order_by(ClosedTrade.id.desc()).limit(RECENT_SCAN_LIMIT).all()
            owners = self._owner_map(db, {r.account_id for r in rows if not r.user_id})
            return [normalize_trade_record(r, owners) for r in rows]
        finally:
            db.close()

    @staticmethod
    def _owner_map(db, account_ids: Iterable[str]) -> Dict[str, str]:
        account_ids = [a for a in account_ids if a]
        if not account_ids:
            return {}
        rows = db.query(FollowerAccount.id, FollowerAccount.user_id).filter(
            FollowerAccount.id.in_(account_ids)
        ).all()
        return {account_id: user_id for account_id, user_id in rows}

    @staticmethod
    def _accounts_of_user(db, user_id: str) -> List[str]:
        return [
            account_id for (account_id,) in
            db.query(FollowerAccount.id).filter(FollowerAccount.user_id == user_id).all()
        ]

    def get_trade(self, position_id: str) -> Optional[TradeRecord]:
        db = self.session_factory()
        try:
            row = db.query(ClosedTrade).filter(ClosedTrade.position_id == str(position_id)).first()
            if row is None:
                return None
            owners = self._owner_map(db, [row.account_id]) if not row.user_id else {}
            return normalize_trade_record(row, owners)
        finally:
            db.close()

    def count_trades(self, account_id: str) -> int:
        db = self.session_factory()
        try:
            return db.query(func.count(ClosedTrade.id)).filter(
                ClosedTrade.account_id == account_id
            ).scalar() or 0
        except SQLAlchemyError as e:
            logger.warning(f"Trade count for {account_id} unavailable: {e}")
            return 0
        finally:
            db.close()

    # ==================== MIGRATION ====================

    def backfill_legacy_owners(self) -> int:
        """
        Write user_id into legacy rows whose account owner is known

        Returns:
            Number of rows updated
        """
        db = self.session_factory()
        try:
            legacy_accounts = {
                account_id for (account_id,) in
                db.query(ClosedTrade.account_id).filter(ClosedTrade.user_id.is_(None)).distinct().all()
            }
            owners = self._owner_map(db, legacy_accounts)
            updated = 0
            for account_id, user_id in owners.items():
                updated += db.query(ClosedTrade).filter(
                    ClosedTrade.account_id == account_id,
                    ClosedTrade.user_id.is_(None)
                ).update({ClosedTrade.user_id: user_id}, synchronize_session=False)
            db.commit()
            if updated:
                logger.info(f"🔧 Backfilled user_id on {updated} legacy ledger rows")
            return updated
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Legacy ledger backfill failed: {e}", exc_info=True)
            raise
        finally:
            db.close()

    # ==================== STATISTICS ====================

    def get_trade_history_stats(self, flt: Optional[TradeHistoryFilter] = None) -> Dict:
        """
        Aggregate statistics over the filtered history

        Returns:
            Dict with total_trades, winning_trades, losing_trades, win_rate,
            total_pips, total_profit, average_profit, average_duration,
            best_trade, worst_trade, profit_factor, average_risk_reward
        """
        trades = self.get_trade_history(flt)
        return summarize_trades(trades)

    def get_trade_history_symbols(self, flt: Optional[TradeHistoryFilter] = None) -> List[str]:
        trades = self.get_trade_history(flt)
        return sorted({t.symbol for t in trades if t.symbol})


def calculate_win_rate(winning: int, total: int) -> float:
    return round(winning / total * 100, 2) if total else 0.0


def _trade_ref(trade: Optional[TradeRecord]) -> Optional[Dict]:
    if trade is None:
        return None
    return {'position_id': trade.position_id, 'symbol': trade.symbol, 'profit': round(trade.profit, 2)}


def summarize_trades(trades: List[TradeRecord]) -> Dict:
    """Statistics block shared by the history endpoint, daily snapshots and summaries"""
    total = len(trades)
    winners = [t for t in trades if t.profit > 0]
    losers = [t for t in trades if t.profit < 0]
    gross_profit = sum(t.profit for t in winners)
    gross_loss = abs(sum(t.profit for t in losers))

    if gross_loss > 0:
        profit_factor = round(gross_profit / gross_loss, 2)
    elif winners:
        profit_factor = 999.0
    else:
        profit_factor = 0.0

    durations = [t.duration_seconds for t in trades if t.duration_seconds is not None]
    rr_values = [t.risk_reward for t in trades if t.risk_reward is not None]
    total_profit = sum(t.profit for t in trades)

    return {
        'total_trades': total,
        'winning_trades': len(winners),
        'losing_trades': len(losers),
        'win_rate': calculate_win_rate(len(winners), total),
        'total_pips': round(sum(t.pips or 0.0 for t in trades), 1),
        'total_profit': round(total_profit, 2),
        'average_profit': round(total_profit / total, 2) if total else 0.0,
        'average_duration': round(sum(durations) / len(durations), 1) if durations else 0.0,
        'best_trade': _trade_ref(max(trades, key=lambda t: t.profit, default=None)),
        'worst_trade': _trade_ref(min(trades, key=lambda t: t.profit, default=None)),
        'profit_factor': profit_factor,
        'average_risk_reward': round(sum(rr_values) / len(rr_values), 1) if rr_values else None,
    }
