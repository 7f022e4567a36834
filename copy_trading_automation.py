"""
Copy Trading Automation Engine

Wires the automation services together. Collaborators (session factory,
broker client, Telegram channel, Redis) are passed in, so tests and the web
app can build their own engine; get_automation() returns the process-wide
instance used by the scheduler and the API.
"""

import logging
from typing import Optional

from account_locks import AccountLockManager
from account_repository import AccountRepository
from account_stats import AccountStatsProvider
from auto_disconnect import AutoDisconnectService
from auto_rebalancer import AutoRebalancer
from automation_log import AutomationLogger
from copyfactory_client import CopyFactoryClient
from database import SessionLocal
from notification_service import NotificationService
from performance_service import PerformanceService
from position_stream import PositionEventRouter
from risk_management import RiskManagementService
from streaming_connection_manager import StreamingConnectionManager
from telegram_notifier import TelegramNotifier, get_telegram_notifier
from trade_alerts import TradeAlertService
from trade_archiver import TradeArchiver
from trade_history import TradeHistoryRepository

logger = logging.getLogger(__name__)


class CopyTradingAutomation:
    """All automation services sharing one set of collaborators"""

    def __init__(self, session_factory=None, client: Optional[CopyFactoryClient] = None,
                 telegram: Optional[TelegramNotifier] = None, redis_client=None,
                 locks: Optional[AccountLockManager] = None, composite_queries: bool = True):
        self.session_factory = session_factory or SessionLocal
        self.locks = locks or AccountLockManager()
        self.client = client or CopyFactoryClient()
        self.telegram = telegram if telegram is not None else get_telegram_notifier()

        self.accounts = AccountRepository(self.session_factory, self.locks)
        self.audit = AutomationLogger(self.session_factory)
        self.notifications = NotificationService(self.session_factory)
        self.history = TradeHistoryRepository(self.session_factory, composite_queries=composite_queries)
        self.archiver = TradeArchiver(self.session_factory)
        self.performance = PerformanceService(self.session_factory, self.history)
        self.stats = AccountStatsProvider(self.client, redis_client)

        self.risk = RiskManagementService(self.accounts, self.client, self.audit, self.notifications)
        self.rebalancer = AutoRebalancer(self.accounts, self.client, self.audit)
        self.disconnect = AutoDisconnectService(self.accounts, self.client, self.audit, self.notifications)
        self.alerts = TradeAlertService(
            self.accounts, self.notifications, self.telegram, self.history, self.audit
        )

        self.connections = StreamingConnectionManager(
            on_failure=self.disconnect.track_error,
            on_recovery=self.disconnect.reset_error_count
        )
        self.router = PositionEventRouter(
            self.archiver, self.accounts, self.alerts, self.history, self.connections,
            on_error=self.disconnect.track_error
        )

    def shutdown(self):
        self.router.stop()


# Singleton instance
_automation_instance = None


def get_automation() -> CopyTradingAutomation:
    """Get or create the automation engine singleton"""
    global _automation_instance

    if _automation_instance is None:
        from redis_client import get_redis_optional
        _automation_instance = CopyTradingAutomation(redis_client=get_redis_optional())
        logger.info("🤖 Copy trading automation engine initialized")

    return _automation_instance


def set_automation(automation: Optional[CopyTradingAutomation]):
    """Replace the singleton (app factory and tests)"""
    global _automation_instance
    _automation_instance = automation
