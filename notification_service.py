"""
In-app notification sink

Writes UserNotification rows that the dashboard shows in the user's inbox.
Unlike the Telegram channel this is the primary channel: failures raise.
"""

import logging
from typing import Optional, Dict, List

from sqlalchemy.exc import SQLAlchemyError

from database import SessionLocal
from models import UserNotification
from timezone_manager import tz

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when an in-app notification could not be stored"""


class NotificationService:
    """Stores in-app notifications"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def notify(self, user_id: str, title: str, message: str,
               metadata: Optional[Dict] = None, notification_type: str = 'info') -> int:
        """
        Store an in-app notification

        Args:
            user_id: Recipient
            title: Short title
            message: Body text
            metadata: JSON context (trade id, account id, alert type, ...)
            notification_type: info / warning / error / trade_alert

        Returns:
            Notification id

        Raises:
            NotificationError: if the notification could not be persisted
        """
        if not user_id:
            raise NotificationError("Cannot notify without a user id")

        db = self.session_factory()
        try:
            notification = UserNotification(
                user_id=user_id,
                type=notification_type,
                title=title,
                message=message,
                data=metadata or {},
                read=False,
                created_at=tz.now_naive_utc()
            )
            db.add(notification)
            db.commit()
            logger.debug(f"Notification {notification.id} stored for user {user_id}: {title}")
            return notification.id
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to store notification for user {user_id}: {e}")
            raise NotificationError(str(e)) from e
        finally:
            db.close()

    def get_unread(self, user_id: str, limit: int = 50) -> List[Dict]:
        db = self.session_factory()
        try:
            rows = db.query(UserNotification).filter(
                UserNotification.user_id == user_id,
                UserNotification.read.is_(False)
            ).order_by(UserNotification.created_at.desc()).limit(limit).all()
            return [
                {
                    'id': n.id,
                    'type': n.type,
                    'title': n.title,
                    'message': n.message,
                    'data': n.data or {},
                    'created_at': tz.isoformat(n.created_at),
                }
                for n in rows
            ]
        finally:
            db.close()
