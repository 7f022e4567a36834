"""
Automation Log

Append-only audit trail of every automated action taken on a follower account.
Lets the user see what the automation did and why.

Action Types:
- auto-pause: Copying paused because drawdown crossed the threshold
- auto-resume: Copying resumed after drawdown recovered
- rebalance: Risk multiplier retuned from account performance
- auto-disconnect: Account disconnected after repeated errors
- trade-alert: Trade alert dispatched to the user
- daily-summary: Daily summary dispatched to the user

Writing is fire-and-forget: failures are logged and never reach the caller.
"""

import logging
from typing import Optional, List, Dict

from database import SessionLocal
from models import AutomationLogEntry
from timezone_manager import tz

logger = logging.getLogger(__name__)

ACTION_AUTO_PAUSE = 'auto-pause'
ACTION_AUTO_RESUME = 'auto-resume'
ACTION_REBALANCE = 'rebalance'
ACTION_AUTO_DISCONNECT = 'auto-disconnect'
ACTION_TRADE_ALERT = 'trade-alert'
ACTION_DAILY_SUMMARY = 'daily-summary'


class AutomationLogger:
    """Writes AutomationLogEntry rows"""

    ACTION_EMOJIS = {
        ACTION_AUTO_PAUSE: '⏸️',
        ACTION_AUTO_RESUME: '▶️',
        ACTION_REBALANCE: '⚖️',
        ACTION_AUTO_DISCONNECT: '🔌',
        ACTION_TRADE_ALERT: '🔔',
        ACTION_DAILY_SUMMARY: '📊',
    }

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def log_action(
        self,
        account_id: str,
        action_type: str,
        reason: Optional[str] = None,
        details: Optional[Dict] = None,
        user_id: Optional[str] = None
    ) -> Optional[int]:
        """
        Append an automation log entry

        Args:
            account_id: Follower account id
            action_type: One of the ACTION_* constants
            reason: Short human-readable reason
            details: JSON-serializable context
            user_id: Owning user

        Returns:
            Entry id, or None if the write failed
        """
        db = self.session_factory()

        try:
            entry = AutomationLogEntry(
                account_id=account_id,
                user_id=user_id,
                action_type=action_type,
                reason=reason[:500] if reason else None,
                details=details or {},
                timestamp=tz.now_naive_utc()
            )
            db.add(entry)
            db.commit()

            emoji = self.ACTION_EMOJIS.get(action_type, '🤖')
            logger.info(f"{emoji} Automation: {action_type} | account {account_id} | {reason or '-'}")
            return entry.id

        except Exception as e:
            logger.error(f"Error writing automation log ({action_type}, account {account_id}): {e}", exc_info=True)
            db.rollback()
            return None
        finally:
            db.close()

    def get_recent_actions(
        self,
        account_id: str,
        limit: int = 50,
        action_type: Optional[str] = None
    ) -> List[Dict]:
        """Most recent entries for an account, newest first"""
        db = self.session_factory()

        try:
            query = db.query(AutomationLogEntry).filter(
                AutomationLogEntry.account_id == account_id
            )
            if action_type:
                query = query.filter(AutomationLogEntry.action_type == action_type)

            entries = query.order_by(
                AutomationLogEntry.timestamp.desc(),
                AutomationLogEntry.id.desc()
            ).limit(limit).all()

            return [
                {
                    'id': e.id,
                    'account_id': e.account_id,
                    'user_id': e.user_id,
                    'action_type': e.action_type,
                    'reason': e.reason,
                    'details': e.details or {},
                    'timestamp': tz.isoformat(e.timestamp),
                }
                for e in entries
            ]

        except Exception as e:
            logger.error(f"Error retrieving automation log for {account_id}: {e}")
            return []
        finally:
            db.close()
