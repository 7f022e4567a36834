"""
Copy-Trading Automation Configuration
Centralized defaults and environment settings for the automation engine
"""

import os

# ============================================================================
# MASTER GATE
# ============================================================================

# When disabled every evaluator returns "no action, automation disabled".
# Read at call time so operators can flip it without a restart.
AUTOMATION_DISABLED_REASON = 'Automation features are disabled'


def is_automation_enabled() -> bool:
    """Master switch for risk, rebalance, disconnect and alert automation"""
    return os.getenv('ENABLE_AUTOMATION_FEATURES', 'false').lower() == 'true'


# ============================================================================
# EXTERNAL SERVICES
# ============================================================================

METAAPI_TOKEN = os.getenv('METAAPI_TOKEN')
METAAPI_REGION = os.getenv('METAAPI_REGION', 'new-york')
COPYFACTORY_API_URL = os.getenv(
    'COPYFACTORY_API_URL',
    f'https://copyfactory-api-v1.{METAAPI_REGION}.agiliumtrade.ai'
)
METAAPI_CLIENT_API_URL = os.getenv(
    'METAAPI_CLIENT_API_URL',
    f'https://mt-client-api-v1.{METAAPI_REGION}.agiliumtrade.ai'
)
METAAPI_PROVISIONING_URL = os.getenv(
    'METAAPI_PROVISIONING_URL',
    'https://mt-provisioning-api-v1.agiliumtrade.agiliumtrade.ai'
)

# Broker calls are blocking I/O: bounded timeout and bounded retries
BROKER_REQUEST_TIMEOUT = int(os.getenv('BROKER_REQUEST_TIMEOUT', '10'))  # seconds
BROKER_MAX_RETRIES = int(os.getenv('BROKER_MAX_RETRIES', '3'))  # total attempts
BROKER_RETRY_BACKOFF_SECONDS = float(os.getenv('BROKER_RETRY_BACKOFF_SECONDS', '1.0'))

TELEGRAM_BOT_TOKEN = os.getenv('TELEGRAM_BOT_TOKEN')

def get_cron_secret():
    """Shared secret for /cron endpoints (Authorization: Bearer <secret>)"""
    return os.getenv('CRON_SECRET')


# Account statistics cache TTL (seconds)
ACCOUNT_STATS_CACHE_TTL = int(os.getenv('ACCOUNT_STATS_CACHE_TTL', '300'))

# ============================================================================
# DRAWDOWN PAUSE / RESUME
# ============================================================================

DEFAULT_MAX_DRAWDOWN_PERCENT = 20.0
DEFAULT_RESUME_DRAWDOWN_PERCENT = 15.0

# ============================================================================
# REBALANCING
# ============================================================================

DEFAULT_MIN_RISK_MULTIPLIER = 0.1
DEFAULT_MAX_RISK_MULTIPLIER = 10.0
DEFAULT_RISK_ADJUSTMENT_STEP = 0.1

# Minimum time between two rebalances of the same account
REBALANCE_MIN_INTERVAL_HOURS = 6

# Changes smaller than max(MIN_CHANGE_ABSOLUTE, original * MIN_CHANGE_RELATIVE) are ignored
REBALANCE_MIN_CHANGE_ABSOLUTE = 0.1
REBALANCE_MIN_CHANGE_RELATIVE = 0.05

# Ring buffer size of the per-account rebalancing history
REBALANCING_HISTORY_LIMIT = 50

# ============================================================================
# ERROR TRACKING / AUTO-DISCONNECT
# ============================================================================

DEFAULT_MAX_CONSECUTIVE_ERRORS = 5
DEFAULT_ERROR_WINDOW_MINUTES = 60
ERROR_HISTORY_DEFAULT_LIMIT = 20

# ============================================================================
# TRADE ALERTS
# ============================================================================

DEFAULT_MIN_TRADE_SIZE_FOR_ALERT = 0.1  # lots
DEFAULT_MIN_PROFIT_FOR_ALERT = 100.0
DEFAULT_MIN_LOSS_FOR_ALERT = -100.0

# Archived-trade counts that raise a milestone alert
TRADE_COUNT_MILESTONES = (100, 250, 500, 1000, 5000)

# ============================================================================
# PERFORMANCE AGGREGATION
# ============================================================================

# Uncached days older than this are returned as zero rows
PERFORMANCE_FRESHNESS_DAYS = 30

# Upper bound of recomputed days per calendar request
CALENDAR_MAX_RECALCULATIONS = 30

# Default number of ledger rows returned by history queries
TRADE_HISTORY_DEFAULT_LIMIT = 1000
TRADE_HISTORY_ACCOUNT_LIMIT = 5000

# ============================================================================
# SCHEDULED JOBS
# ============================================================================

SCHEDULER_ENABLED = os.getenv('AUTOMATION_SCHEDULER_ENABLED', 'true').lower() == 'true'
RISK_CHECK_INTERVAL_MINUTES = int(os.getenv('RISK_CHECK_INTERVAL_MINUTES', '30'))
DISCONNECT_CHECK_INTERVAL_MINUTES = int(os.getenv('DISCONNECT_CHECK_INTERVAL_MINUTES', '15'))
REBALANCE_INTERVAL_HOURS = int(os.getenv('REBALANCE_INTERVAL_HOURS', '6'))
DAILY_SUMMARY_HOUR_UTC = int(os.getenv('DAILY_SUMMARY_HOUR_UTC', '22'))

# Parallel accounts per job run
AUTOMATION_MAX_WORKERS = int(os.getenv('AUTOMATION_MAX_WORKERS', '8'))
