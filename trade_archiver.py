"""
Trade Event Archiver

Writes exactly one canonical ClosedTrade row per closed position.

Resolution order for every field: live position data from the broker feed,
then the originating signal's defaults, then engine defaults.

Post-processing steps, in order:
1. pips from price movement (pip_calculator)
2. reconcile_pips_with_profit: broker profit is ground truth for direction
3. classify_closed_by: TP / SL / MANUAL / UNKNOWN
4. duration and realized risk-reward

Duplicate arrivals for the same position id are merged inside one
transaction that locks the existing row (SELECT ... FOR UPDATE). Concurrent
first inserts collide on the unique position_id and the loser retries as a
merge. The stored record is the candidate carrying SL/TP when exactly one
does, otherwise the first-seen record.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy.exc import IntegrityError

from database import SessionLocal
from models import ClosedTrade
from pip_calculator import calculate_pips, get_pip_size, normalize_side, SIDE_BUY, SIDE_SELL
from timezone_manager import tz

logger = logging.getLogger(__name__)

DEFAULT_VOLUME = 0.1

# Columns a merge may overwrite (id, position_id and archived_at stay)
MERGEABLE_FIELDS = (
    'account_id', 'user_id', 'symbol', 'side', 'volume', 'open_price', 'close_price',
    'stop_loss', 'take_profit', 'open_time', 'close_time', 'profit', 'pips',
    'commission', 'swap', 'duration_seconds', 'closed_by', 'risk_reward', 'signal_id',
)


@dataclass
class SignalDefaults:
    """What the originating trade signal said about the position"""
    symbol: Optional[str] = None
    side: Optional[str] = None
    entry_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    posted_at: Optional[datetime] = None
    signal_id: Optional[str] = None


@dataclass
class ArchiveContext:
    """Who the position belongs to and what is known about its close"""
    account_id: str
    user_id: Optional[str] = None
    final_profit: Optional[float] = None
    final_price: Optional[float] = None
    closed_at: Optional[datetime] = None
    signal: Optional[SignalDefaults] = None


# ============================================================================
# PURE STEPS
# ============================================================================

def _sign(value: float) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


def reconcile_pips_with_profit(pips: float, profit: float) -> float:
    """
    Align the pip sign with the broker-reported profit

    Profit comes from the broker and already accounts for side, contract
    size and quote conversion, so it decides the direction. Pips computed
    from prices can disagree when the side was inferred wrongly or the
    signal's defaults were used. Zero on either side is left as is.

    Returns:
        pips with the sign of profit
    """
    pips = float(pips or 0.0)
    profit = float(profit or 0.0)
    if pips == 0 or profit == 0:
        return pips
    if _sign(pips) != _sign(profit):
        logger.info(f"🔄 Pip sign corrected to match profit: {pips} -> {-pips} (profit {profit})")
        return -pips
    return pips


def classify_closed_by(close_price: Optional[float], take_profit: Optional[float],
                       stop_loss: Optional[float], pip_size: float) -> str:
    """
    How the position ended

    A close within one pip of TP/SL counts as hit. Without a close price the
    outcome is UNKNOWN.
    """
    if not close_price:
        return 'UNKNOWN'
    tolerance = pip_size
    if take_profit and abs(close_price - take_profit) <= tolerance:
        return 'TP'
    if stop_loss and abs(close_price - stop_loss) <= tolerance:
        return 'SL'
    return 'MANUAL'


def calculate_risk_reward(side: str, entry: Optional[float], stop_loss: Optional[float],
                          take_profit: Optional[float]) -> Optional[float]:
    """
    Planned reward/risk ratio of the position

    Returns:
        Ratio rounded to 1 decimal, None when SL/TP are missing or risk <= 0
    """
    if not entry or not stop_loss or not take_profit:
        return None
    if side == SIDE_BUY:
        reward = take_profit - entry
        risk = entry - stop_loss
    else:
        reward = entry - take_profit
        risk = stop_loss - entry
    if risk <= 0:
        return None
    return round(reward / risk, 1)


def has_protection(record: Dict[str, Any]) -> bool:
    """True when the record carries a non-zero stop-loss or take-profit"""
    return bool(record.get('stop_loss')) or bool(record.get('take_profit'))


def choose_canonical(existing: Dict[str, Any], candidate: Dict[str, Any]) -> str:
    """
    Decide which of two records for the same position is kept

    Returns:
        'existing' or 'candidate'
    """
    existing_protected = has_protection(existing)
    candidate_protected = has_protection(candidate)
    if candidate_protected and not existing_protected:
        return 'candidate'
    return 'existing'


def _pick(data: Dict[str, Any], *keys):
    for key in keys:
        value = data.get(key)
        if value is not None and value != '':
            return value
    return None


def _float_or_none(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _audit_view(record: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (tz.isoformat(v) if isinstance(v, datetime) else v) for k, v in record.items()}


# ============================================================================
# ARCHIVER
# ============================================================================

class TradeArchiver:
    """Builds canonical records and merges them into the ledger"""

    def __init__(self, session_factory=None, max_attempts: int = 3):
        self.session_factory = session_factory or SessionLocal
        self.max_attempts = max_attempts

    def build_record(self, position_id: str, raw_position_data: Optional[Dict[str, Any]],
                     context: ArchiveContext) -> Dict[str, Any]:
        """
        Resolve all fields of the canonical record without touching the store

        Args:
            position_id: Broker position id
            raw_position_data: Position payload from the feed (MetaApi field names)
            context: Owning account/user and originating signal

        Returns:
            Dict of ClosedTrade column values
        """
        raw = raw_position_data or {}
        signal = context.signal or SignalDefaults()

        symbol = (_pick(raw, 'symbol') or signal.symbol or '').upper()
        if not symbol:
            logger.warning(f"Position {position_id} archived without symbol")

        side = normalize_side(_pick(raw, 'type', 'side')) or normalize_side(signal.side)
        if side is None:
            logger.warning(f"Position {position_id}: side unknown, assuming BUY")
            side = SIDE_BUY

        open_price = _float_or_none(_pick(raw, 'openPrice', 'open_price')) or _float_or_none(signal.entry_price)
        close_price = (
            _float_or_none(_pick(raw, 'closePrice', 'close_price', 'currentPrice'))
            or _float_or_none(context.final_price)
        )
        stop_loss = _float_or_none(_pick(raw, 'stopLoss', 'stop_loss')) or _float_or_none(signal.stop_loss)
        take_profit = _float_or_none(_pick(raw, 'takeProfit', 'take_profit')) or _float_or_none(signal.take_profit)
        volume = _float_or_none(_pick(raw, 'volume')) or DEFAULT_VOLUME

        profit = _float_or_none(_pick(raw, 'profit'))
        if profit is None:
            profit = _float_or_none(context.final_profit) or 0.0
        # Stored with cent precision, reconcile against what is stored
        profit = round(profit, 2)

        open_time = tz.parse_timestamp(_pick(raw, 'openTime', 'time', 'open_time')) or signal.posted_at
        close_time = (
            tz.parse_timestamp(_pick(raw, 'closeTime', 'close_time', 'updateTime'))
            or context.closed_at
            or tz.now_naive_utc()
        )

        duration = None
        if open_time and close_time:
            duration = int((close_time - open_time).total_seconds())
            if duration < 0:
                logger.warning(f"Position {position_id}: close time before open time, duration set to 0")
                duration = 0

        pips = calculate_pips(symbol, side, open_price, close_price)
        pips = reconcile_pips_with_profit(pips, profit)

        return {
            'position_id': str(position_id),
            'account_id': context.account_id,
            'user_id': context.user_id,
            'symbol': symbol or 'UNKNOWN',
            'side': side,
            'volume': volume,
            'open_price': open_price,
            'close_price': close_price,
            'stop_loss': stop_loss,
            'take_profit': take_profit,
            'open_time': open_time,
            'close_time': close_time,
            'profit': profit,
            'pips': pips,
            'commission': _float_or_none(_pick(raw, 'commission')) or 0.0,
            'swap': _float_or_none(_pick(raw, 'swap')) or 0.0,
            'duration_seconds': duration,
            'closed_by': classify_closed_by(close_price, take_profit, stop_loss, get_pip_size(symbol)),
            'risk_reward': calculate_risk_reward(side, open_price, stop_loss, take_profit),
            'signal_id': signal.signal_id,
        }

    def archive(self, position_id: str, raw_position_data: Optional[Dict[str, Any]],
                context: ArchiveContext) -> int:
        """
        Archive a closed position

        Returns:
            Id of the canonical ledger row
        """
        if not position_id:
            raise ValueError("position_id is required to archive a trade")
        if not context or not context.account_id:
            raise ValueError(f"Position {position_id}: account_id is required to archive a trade")

        candidate = self.build_record(position_id, raw_position_data, context)
        record_id = self._merge(candidate)
        logger.info(
            f"📦 Archived {candidate['side']} {candidate['symbol']} position {position_id} "
            f"(profit {candidate['profit']:+.2f}, pips {candidate['pips']:+.1f}, {candidate['closed_by']})"
        )
        return record_id

    def _merge(self, candidate: Dict[str, Any]) -> int:
        position_id = candidate['position_id']

        for attempt in range(1, self.max_attempts + 1):
            db = self.session_factory()
            try:
                existing = db.query(ClosedTrade).filter(
                    ClosedTrade.position_id == position_id
                ).with_for_update().first()

                if existing is None:
                    row = ClosedTrade(**candidate)
                    db.add(row)
                    db.commit()
                    return row.id

                existing_view = {name: getattr(existing, name) for name in MERGEABLE_FIELDS}
                winner = choose_canonical(existing_view, candidate)
                differs = any(existing_view[name] != candidate.get(name) for name in MERGEABLE_FIELDS)

                if winner == 'candidate':
                    for name in MERGEABLE_FIELDS:
                        setattr(existing, name, candidate.get(name))
                    # Older rows may predate user tracking
                    if existing.user_id is None:
                        existing.user_id = existing_view.get('user_id')

                if differs:
                    logger.warning(
                        f"⚠️ Duplicate archive for position {position_id}, kept {winner} record | "
                        f"existing={_audit_view(existing_view)} candidate={_audit_view(candidate)}"
                    )

                db.commit()
                return existing.id

            except IntegrityError:
                # Concurrent first insert for the same position, merge on retry
                db.rollback()
                if attempt == self.max_attempts:
                    raise
                logger.info(f"Position {position_id} inserted concurrently, retrying as merge")
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
