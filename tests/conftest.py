"""
Shared fixtures: in-memory SQLite ledger, mocked broker and Telegram channel
"""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy.pool import StaticPool

import database
from copy_trading_automation import CopyTradingAutomation, set_automation
from copyfactory_client import CopyFactoryClient
from models import Base, MasterStrategy, FollowerAccount, ClosedTrade
from telegram_notifier import TelegramNotifier


@pytest.fixture(scope='session')
def engine():
    return database.init_engine(
        'sqlite://',
        poolclass=StaticPool,
        connect_args={'check_same_thread': False}
    )


@pytest.fixture(autouse=True)
def tables(engine):
    Base.metadata.create_all(bind=engine)
    yield
    database.ScopedSession.remove()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def automation_enabled(monkeypatch):
    monkeypatch.setenv('ENABLE_AUTOMATION_FEATURES', 'true')


@pytest.fixture
def session_factory():
    return database.SessionLocal


@pytest.fixture
def broker():
    client = MagicMock(spec=CopyFactoryClient)
    client.get_account_information.return_value = {
        'balance': 10000.0,
        'equity': 10000.0,
        'margin': 0.0,
        'freeMargin': 10000.0,
        'marginLevel': None,
    }
    return client


@pytest.fixture
def telegram():
    notifier = MagicMock(spec=TelegramNotifier)
    notifier.send_message.return_value = 4711
    return notifier


@pytest.fixture
def automation(session_factory, broker, telegram):
    engine = CopyTradingAutomation(session_factory=session_factory, client=broker, telegram=telegram)
    yield engine
    engine.shutdown()
    set_automation(None)


@pytest.fixture
def make_account(session_factory):
    """Insert a follower account (and its strategy) and return a detached copy"""
    def _make(account_id='acc-1', user_id='user-1', strategy_id='strat-1', **fields):
        db = session_factory()
        try:
            if strategy_id and db.get(MasterStrategy, strategy_id) is None:
                db.add(MasterStrategy(id=strategy_id, name='Master', api_token='strategy-token'))
            account = FollowerAccount(
                id=account_id,
                user_id=user_id,
                strategy_id=strategy_id,
                label=f"Account {account_id}",
                **fields
            )
            db.add(account)
            db.commit()
            return account
        finally:
            db.close()
    return _make


@pytest.fixture
def add_trade(session_factory):
    """Insert a raw ledger row, legacy shapes included"""
    counter = {'n': 0}

    def _add(**fields):
        counter['n'] += 1
        values = {
            'position_id': f"pos-{counter['n']}",
            'account_id': 'acc-1',
            'user_id': 'user-1',
            'symbol': 'EURUSD',
            'side': 'BUY',
            'volume': 0.1,
            'open_price': 1.1000,
            'close_price': 1.1010,
            'open_time': datetime(2025, 3, 10, 9, 0),
            'close_time': datetime(2025, 3, 10, 12, 0),
            'profit': 10.0,
            'pips': 10.0,
            'commission': 0.0,
            'swap': 0.0,
            'closed_by': 'MANUAL',
        }
        values.update(fields)
        db = session_factory()
        try:
            row = ClosedTrade(**values)
            db.add(row)
            db.commit()
            return row
        finally:
            db.close()
    return _add
