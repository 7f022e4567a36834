"""
Database models for the copy-trading automation engine
SQLAlchemy ORM models for PostgreSQL (SQLite is used by the test suite)
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, Date, Boolean,
    Numeric, Text, ForeignKey, Index, UniqueConstraint, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime

from timezone_manager import tz

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), 'postgresql')


def _utcnow():
    return tz.now_naive_utc()


# Account lifecycle states
STATUS_ACTIVE = 'active'
STATUS_PAUSED = 'paused'
STATUS_DISCONNECTED = 'disconnected'
STATUS_ERROR = 'error'

ACCOUNT_STATUSES = (STATUS_ACTIVE, STATUS_PAUSED, STATUS_DISCONNECTED, STATUS_ERROR)


class MasterStrategy(Base):
    """Master strategy whose trades are mirrored by follower accounts"""
    __tablename__ = 'master_strategies'

    id = Column(String(64), primary_key=True)  # CopyFactory strategy id
    name = Column(String(200))
    provider_account_id = Column(String(64))
    api_token = Column(Text)  # falls back to METAAPI_TOKEN when empty
    created_at = Column(DateTime, default=_utcnow)

    followers = relationship("FollowerAccount", back_populates="strategy")

    def __repr__(self):
        return f"<MasterStrategy(id={self.id}, name={self.name})>"


class FollowerAccount(Base):
    """Follower account copying a master strategy

    Only the automation services change the lifecycle, risk and error fields.
    The row is versioned so concurrent writers from different processes fail
    with StaleDataError instead of overwriting each other.
    """
    __tablename__ = 'copy_trading_accounts'
    __table_args__ = (
        Index('idx_copy_accounts_strategy', 'strategy_id'),
        Index('idx_copy_accounts_user', 'user_id'),
    )

    id = Column(String(64), primary_key=True)  # MetaApi account id
    user_id = Column(String(64), nullable=False)
    strategy_id = Column(String(64), ForeignKey('master_strategies.id'))
    label = Column(String(200))
    status = Column(String(20), nullable=False, default=STATUS_ACTIVE)

    # Subscription settings
    risk_multiplier = Column(Numeric(10, 4, asdecimal=False), nullable=False, default=1.0)
    original_risk_multiplier = Column(Numeric(10, 4, asdecimal=False))
    reverse_trading = Column(Boolean, default=False)
    symbol_mapping = Column(JSONType)  # {"XAUUSD": "GOLD"}
    max_risk_percent = Column(Numeric(10, 4, asdecimal=False))

    # Drawdown pause/resume
    auto_pause_enabled = Column(Boolean, default=False)
    auto_resume_enabled = Column(Boolean, default=False)
    max_drawdown_percent = Column(Numeric(10, 4, asdecimal=False))
    resume_drawdown_percent = Column(Numeric(10, 4, asdecimal=False))
    auto_paused_at = Column(DateTime)
    auto_pause_reason = Column(String(500))

    # Rebalancing
    auto_rebalancing_enabled = Column(Boolean, default=False)
    min_risk_multiplier = Column(Numeric(10, 4, asdecimal=False))
    max_risk_multiplier = Column(Numeric(10, 4, asdecimal=False))
    risk_adjustment_step = Column(Numeric(10, 4, asdecimal=False))
    last_rebalanced_at = Column(DateTime)
    rebalancing_history = Column(JSONType)  # newest last, capped

    # Error tracking / auto-disconnect
    auto_disconnect_enabled = Column(Boolean, default=False)
    max_consecutive_errors = Column(Integer)
    error_window_minutes = Column(Integer)
    consecutive_error_count = Column(Integer, nullable=False, default=0)
    last_error_at = Column(DateTime)
    last_error = Column(Text)
    auto_disconnected_at = Column(DateTime)
    auto_disconnect_reason = Column(String(500))

    # Alert preferences
    trade_alerts_enabled = Column(Boolean, default=False)
    alert_types = Column(JSONType)  # ["largeTrade", "highProfit", ...]
    min_trade_size_for_alert = Column(Numeric(10, 4, asdecimal=False))
    min_profit_for_alert = Column(Numeric(15, 2, asdecimal=False))
    min_loss_for_alert = Column(Numeric(15, 2, asdecimal=False))
    telegram_chat_id = Column(String(64))

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    version_id = Column(Integer, nullable=False, default=1)

    strategy = relationship("MasterStrategy", back_populates="followers")

    __mapper_args__ = {'version_id_col': version_id}

    def __repr__(self):
        return f"<FollowerAccount(id={self.id}, status={self.status}, multiplier={self.risk_multiplier})>"


class ClosedTrade(Base):
    """Canonical ledger record, one row per closed position"""
    __tablename__ = 'closed_trades'
    __table_args__ = (
        Index('idx_closed_trades_account_close', 'account_id', 'close_time'),
        Index('idx_closed_trades_close_time', 'close_time'),
        Index('idx_closed_trades_user', 'user_id'),
    )

    id = Column(Integer, primary_key=True)
    position_id = Column(String(64), nullable=False, unique=True)
    account_id = Column(String(64), nullable=False)
    user_id = Column(String(64))  # NULL on legacy rows

    symbol = Column(String(30), nullable=False)
    side = Column(String(10), nullable=False)  # BUY / SELL
    volume = Column(Numeric(10, 2, asdecimal=False))
    open_price = Column(Numeric(20, 6, asdecimal=False))
    close_price = Column(Numeric(20, 6, asdecimal=False))
    stop_loss = Column(Numeric(20, 6, asdecimal=False))
    take_profit = Column(Numeric(20, 6, asdecimal=False))
    open_time = Column(DateTime)
    close_time = Column(DateTime)

    profit = Column(Numeric(15, 2, asdecimal=False))
    pips = Column(Numeric(15, 1, asdecimal=False))
    commission = Column(Numeric(15, 2, asdecimal=False))
    swap = Column(Numeric(15, 2, asdecimal=False))
    duration_seconds = Column(Integer)
    closed_by = Column(String(10))  # TP / SL / MANUAL / UNKNOWN
    risk_reward = Column(Numeric(10, 1, asdecimal=False))

    signal_id = Column(String(64))
    archived_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<ClosedTrade(position={self.position_id}, {self.side} {self.symbol}, profit={self.profit}, pips={self.pips})>"


class DailyPerformanceSnapshot(Base):
    """Cached per-day aggregate of the ledger"""
    __tablename__ = 'daily_performance_snapshots'
    __table_args__ = (
        UniqueConstraint('date', 'account_id', 'strategy_key', name='uq_daily_performance_key'),
    )

    id = Column(Integer, primary_key=True)
    date = Column(Date, nullable=False)
    account_id = Column(String(64), nullable=False)
    strategy_key = Column(String(64), nullable=False, default='all')
    trade_count = Column(Integer, nullable=False, default=0)
    winning_trades = Column(Integer, nullable=False, default=0)
    total_profit = Column(Numeric(15, 2, asdecimal=False), nullable=False, default=0.0)
    total_pips = Column(Numeric(15, 1, asdecimal=False))
    win_rate = Column(Numeric(5, 2, asdecimal=False), nullable=False, default=0.0)
    calculated_at = Column(DateTime, default=_utcnow)

    @property
    def cache_key(self):
        return f"{self.date.isoformat()}-{self.account_id}-{self.strategy_key}"

    def __repr__(self):
        return f"<DailyPerformanceSnapshot({self.cache_key}, trades={self.trade_count}, profit={self.total_profit})>"


class ErrorHistoryEntry(Base):
    """Append-only record of a tracked account error"""
    __tablename__ = 'copy_trading_error_history'
    __table_args__ = (
        Index('idx_error_history_account_time', 'account_id', 'timestamp'),
    )

    id = Column(Integer, primary_key=True)
    account_id = Column(String(64), nullable=False)
    user_id = Column(String(64))
    error = Column(Text, nullable=False)
    consecutive_count = Column(Integer)
    timestamp = Column(DateTime, nullable=False, default=_utcnow)


class AutomationLogEntry(Base):
    """Append-only record of every automated action"""
    __tablename__ = 'copy_trading_automation_log'
    __table_args__ = (
        Index('idx_automation_log_account_time', 'account_id', 'timestamp'),
    )

    id = Column(Integer, primary_key=True)
    account_id = Column(String(64), nullable=False)
    user_id = Column(String(64))
    action_type = Column(String(50), nullable=False)  # auto-pause, auto-resume, rebalance, ...
    reason = Column(String(500))
    details = Column(JSONType)
    timestamp = Column(DateTime, nullable=False, default=_utcnow)


class UserNotification(Base):
    """In-app notification shown in the user's inbox"""
    __tablename__ = 'user_notifications'
    __table_args__ = (
        Index('idx_user_notifications_user_created', 'user_id', 'created_at'),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False)
    type = Column(String(50), nullable=False, default='info')
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSONType)
    read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=_utcnow)
