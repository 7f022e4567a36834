"""
Timezone Manager
================
Consistent timestamp handling for the automation engine.

CONTEXT:
--------
1. Broker / MetaApi timestamps arrive in several shapes:
   - ISO strings with an offset ("2025-10-17T10:30:00.000Z")
   - Unix epoch seconds, or milliseconds from the streaming API
   - datetime objects, aware or naive (naive means UTC)

2. Database stores naive UTC (SQLAlchemy DateTime without timezone)

3. Daily performance days are UTC calendar days

USAGE:
------
from timezone_manager import tz

now = tz.now_naive_utc()
close_time = tz.parse_timestamp(event.get('closeTime'))
start, end = tz.day_bounds(date(2025, 10, 17))
"""

import logging
from datetime import datetime, date, timedelta
from typing import Optional, Tuple, Union
import pytz

logger = logging.getLogger(__name__)

# Epoch values above this are milliseconds (year 33658 in seconds)
_EPOCH_MILLIS_THRESHOLD = 10 ** 12


class TimezoneManager:
    """
    Centralized timezone handling.

    Everything leaving this class towards the database is naive UTC.
    """

    def __init__(self):
        self.utc = pytz.UTC

    # ==================== CURRENT TIME ====================

    def now_utc(self) -> datetime:
        """Get current time in UTC (timezone-aware)"""
        return datetime.now(self.utc)

    def now_naive_utc(self) -> datetime:
        """Get current UTC time without timezone (database format)"""
        return datetime.now(self.utc).replace(tzinfo=None)

    def today_utc(self) -> date:
        return self.now_utc().date()

    # ==================== PARSING ====================

    def parse_timestamp(self, value: Union[None, str, int, float, datetime]) -> Optional[datetime]:
        """
        Parse a broker timestamp into naive UTC.

        Args:
            value: ISO string, epoch seconds/milliseconds or datetime

        Returns:
            Naive UTC datetime, or None when the value is missing or unparseable
        """
        if value is None or value == '':
            return None

        if isinstance(value, datetime):
            return self.to_db(value)

        if isinstance(value, (int, float)):
            seconds = value / 1000.0 if value > _EPOCH_MILLIS_THRESHOLD else float(value)
            return datetime.fromtimestamp(seconds, tz=self.utc).replace(tzinfo=None)

        if isinstance(value, str):
            text = value.strip()
            if text.endswith('Z'):
                text = text[:-1] + '+00:00'
            try:
                return self.to_db(datetime.fromisoformat(text))
            except ValueError:
                logger.warning(f"Failed to parse timestamp '{value}'")
                return None

        logger.warning(f"Unsupported timestamp type {type(value).__name__}: {value!r}")
        return None

    # ==================== DATABASE HELPERS ====================

    def to_db(self, dt: datetime) -> datetime:
        """
        Prepare datetime for database storage (naive UTC).

        Args:
            dt: Datetime object (aware or naive)

        Returns:
            Naive datetime in UTC (for SQLAlchemy compatibility)
        """
        if dt.tzinfo is None:
            # Assume it's already UTC
            return dt

        return dt.astimezone(self.utc).replace(tzinfo=None)

    def isoformat(self, dt: Optional[datetime]) -> Optional[str]:
        """Format a stored datetime as an ISO string with 'Z' suffix"""
        if dt is None:
            return None
        return self.to_db(dt).isoformat() + 'Z'

    # ==================== CALENDAR HELPERS ====================

    def day_bounds(self, day: date) -> Tuple[datetime, datetime]:
        """Naive UTC [start, end) of a calendar day"""
        start = datetime(day.year, day.month, day.day)
        return start, start + timedelta(days=1)

    def days_between(self, earlier: date, later: date) -> int:
        return (later - earlier).days


# ==================== GLOBAL INSTANCE ====================

tz = TimezoneManager()

__all__ = [
    'TimezoneManager',
    'tz',
]
