#!/usr/bin/env python3
"""
Streaming Connection Manager
============================
Keeps track of the position-feed connection of every follower account.

The manager owns a keyed table account_id -> ConnectionHealth and is passed
to the components that need it; there is no module-level registry.

Key Principles:
--------------
- Reconnect with exponential backoff (5s base, 300s cap, +-20% jitter)
- Circuit breaker opens after 10 consecutive failures
- Health score 0-100 for monitoring
- Failures are forwarded to the error tracker, recoveries reset it
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock
from typing import Callable, Dict, List, Optional

from timezone_manager import tz

logger = logging.getLogger(__name__)

BACKOFF_BASE_SECONDS = 5
BACKOFF_MAX_SECONDS = 300
BACKOFF_JITTER = 0.2
CIRCUIT_BREAKER_THRESHOLD = 10
STALE_EVENT_SECONDS = 300


# ============================================================================
# ENUMS & DATA CLASSES
# ============================================================================

class ConnectionState(Enum):
    """Position-feed connection states"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CIRCUIT_OPEN = "circuit_open"


@dataclass
class ConnectionHealth:
    """Connection metrics of one account"""
    account_id: str
    state: ConnectionState = ConnectionState.DISCONNECTED
    connected_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    reconnect_attempts: int = 0
    consecutive_failures: int = 0
    total_failures: int = 0
    event_count: int = 0
    last_error: Optional[str] = None

    @property
    def circuit_open(self) -> bool:
        return self.consecutive_failures >= CIRCUIT_BREAKER_THRESHOLD

    def health_score(self, now: Optional[datetime] = None) -> float:
        """0-100: -10 per reconnect attempt, -5 per failure, -20 when stale, 0 when circuit is open"""
        if self.circuit_open:
            return 0.0
        score = 100.0
        score -= self.reconnect_attempts * 10
        score -= self.consecutive_failures * 5
        if self.last_event_at is not None:
            now = now or tz.now_naive_utc()
            if (now - self.last_event_at).total_seconds() > STALE_EVENT_SECONDS:
                score -= 20
        return max(0.0, min(100.0, score))

    def get_status_dict(self) -> Dict:
        return {
            'account_id': self.account_id,
            'state': self.state.value,
            'connected_at': tz.isoformat(self.connected_at),
            'last_event_at': tz.isoformat(self.last_event_at),
            'reconnect_attempts': self.reconnect_attempts,
            'consecutive_failures': self.consecutive_failures,
            'total_failures': self.total_failures,
            'event_count': self.event_count,
            'last_error': self.last_error,
            'circuit_open': self.circuit_open,
            'health_score': round(self.health_score(), 2),
        }


def calculate_backoff(attempt: int, rng: Callable[[], float] = random.random) -> float:
    """
    Reconnect delay for the given attempt (1-based)

    5s, 10s, 20s, ... capped at 300s, with +-20% jitter.
    """
    base = min(BACKOFF_MAX_SECONDS, BACKOFF_BASE_SECONDS * (2 ** max(0, attempt - 1)))
    jitter = base * BACKOFF_JITTER * (2 * rng() - 1)
    return max(0.0, min(BACKOFF_MAX_SECONDS, base + jitter))


# ============================================================================
# MANAGER
# ============================================================================

class StreamingConnectionManager:
    """Owns the connection table of all follower accounts"""

    def __init__(self, on_failure: Optional[Callable[[str, str], object]] = None,
                 on_recovery: Optional[Callable[[str], object]] = None):
        """
        Args:
            on_failure: called with (account_id, error) for every failure,
                usually AutoDisconnectService.track_error
            on_recovery: called with account_id when a connection recovers
                after failures, usually AutoDisconnectService.reset_error_count
        """
        self._connections: Dict[str, ConnectionHealth] = {}
        self._lock = Lock()
        self.on_failure = on_failure
        self.on_recovery = on_recovery

    def _get_or_create(self, account_id: str) -> ConnectionHealth:
        connection = self._connections.get(account_id)
        if connection is None:
            connection = ConnectionHealth(account_id=account_id)
            self._connections[account_id] = connection
        return connection

    def get(self, account_id: str) -> Optional[ConnectionHealth]:
        with self._lock:
            return self._connections.get(account_id)

    def register(self, account_id: str) -> ConnectionHealth:
        with self._lock:
            connection = self._get_or_create(account_id)
            connection.state = ConnectionState.CONNECTING
            return connection

    def remove(self, account_id: str):
        with self._lock:
            self._connections.pop(account_id, None)
        logger.info(f"Connection of {account_id} removed")

    def account_ids(self) -> List[str]:
        with self._lock:
            return list(self._connections)

    def mark_connected(self, account_id: str):
        with self._lock:
            connection = self._get_or_create(account_id)
            recovered = connection.consecutive_failures > 0 or connection.reconnect_attempts > 0
            connection.state = ConnectionState.CONNECTED
            connection.connected_at = tz.now_naive_utc()
            connection.reconnect_attempts = 0
            connection.consecutive_failures = 0
        logger.info(f"🟢 Position stream connected for {account_id}")

        if recovered and self.on_recovery is not None:
            try:
                self.on_recovery(account_id)
            except Exception as e:
                logger.error(f"Recovery callback for {account_id} failed: {e}")

    def record_event(self, account_id: str):
        with self._lock:
            connection = self._get_or_create(account_id)
            connection.last_event_at = tz.now_naive_utc()
            connection.event_count += 1

    def record_failure(self, account_id: str, error: str) -> Optional[float]:
        """
        Record a stream failure

        Returns:
            Seconds to wait before the next reconnect attempt, or None when
            the circuit breaker is open and no reconnect should happen
        """
        with self._lock:
            connection = self._get_or_create(account_id)
            connection.consecutive_failures += 1
            connection.total_failures += 1
            connection.last_error = error
            if connection.circuit_open:
                connection.state = ConnectionState.CIRCUIT_OPEN
                delay = None
            else:
                connection.state = ConnectionState.RECONNECTING
                connection.reconnect_attempts += 1
                delay = calculate_backoff(connection.reconnect_attempts)

        if delay is None:
            logger.error(f"🔴 Circuit breaker OPEN for {account_id} after {CIRCUIT_BREAKER_THRESHOLD} failures: {error}")
        else:
            logger.warning(f"🟡 Stream failure for {account_id}, reconnecting in {delay:.1f}s: {error}")

        if self.on_failure is not None:
            try:
                self.on_failure(account_id, f"Streaming connection error: {error}")
            except Exception as e:
                logger.error(f"Failure callback for {account_id} failed: {e}")

        return delay

    def reset_circuit(self, account_id: str):
        with self._lock:
            connection = self._get_or_create(account_id)
            connection.consecutive_failures = 0
            connection.reconnect_attempts = 0
            connection.state = ConnectionState.DISCONNECTED
        logger.info(f"Circuit breaker reset for {account_id}")

    def get_status(self) -> List[Dict]:
        with self._lock:
            connections = list(self._connections.values())
        return [c.get_status_dict() for c in connections]
