"""
Notification Service for in-app messaging
"""
import logging
from typing import Any, Dict, Iterable, List, Optional
from datetime import datetime
from quoteflow.extensions import db, socketio
from quoteflow.models import Notification, User

logger = logging.getLogger(__name__)

class NotificationService:
    """Persist in-app notifications and push them over Socket.IO.

    Rows are added to the current session and flushed; the caller owns the
    commit so notifications land in the same transaction as the state change
    that produced them.
    """

    def notify_user(self, user_id: int, title: str, message: str,
                    notification_type: str, priority: str = 'normal',
                    client_id: Optional[int] = None,
                    related_type: Optional[str] = None,
                    related_id: Optional[int] = None,
                    data: Optional[Dict[str, Any]] = None) -> Notification:
        """Create one notification and emit it to the user's room."""
        notification = Notification(
            client_id=client_id,
            user_id=user_id,
            title=title,
            message=message,
            notification_type=notification_type,
            priority=priority,
            related_type=related_type,
            related_id=related_id,
            notification_metadata=data or {},
            status='pending'
        )
        db.session.add(notification)
        db.session.flush()

        if self._send_in_app(notification):
            notification.status = 'sent'
            notification.sent_at = datetime.utcnow()
        else:
            notification.status = 'failed'
        return notification

    def notify_users(self, user_ids: Iterable[int], **kwargs) -> List[Notification]:
        """Create one notification per user id."""
        return [self.notify_user(user_id, **kwargs) for user_id in user_ids]

    def notify_client_users(self, client_id: int, **kwargs) -> List[Notification]:
        """Notify every active user of a client."""
        users = User.query.filter_by(client_id=client_id, is_active=True).all()
        return self.notify_users([user.id for user in users], client_id=client_id, **kwargs)

    def _send_in_app(self, notification: Notification) -> bool:
        """Send in-app notification."""
        try:
            socketio.emit(
                'notification',
                {
                    'id': notification.id,
                    'type': notification.notification_type,
                    'title': notification.title,
                    'message': notification.message,
                    'priority': notification.priority,
                    'related_type': notification.related_type,
                    'related_id': notification.related_id,
                    'timestamp': datetime.utcnow().isoformat()
                },
                to=f"user_{notification.user_id}"
            )
            logger.info(f"In-app notification sent to user {notification.user_id}")
            return True

        except Exception as e:
            # The persisted row is the source of truth; a push failure only marks it
            logger.error(f"Error sending in-app notification: {e}")
            return False

notification_service = NotificationService()
