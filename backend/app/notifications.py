"""In-app and email notifications for billing events."""
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from app.database import Database
from app.email_sender import is_email_configured, send_billing_notice_email
from app.models import Notification, NotificationType

logger = logging.getLogger(__name__)

SUBSCRIPTION_SETTINGS_URL = "/dashboard/settings/subscription"


class Notifier:
    """Stores a notification for the dashboard and mails it when SMTP is set up.

    Delivery is best-effort: failures are logged and never reach the caller.
    """

    def __init__(self, database: Database):
        self.db = database

    async def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        notification_type: NotificationType = NotificationType.SYSTEM,
        action_url: Optional[str] = SUBSCRIPTION_SETTINGS_URL,
    ) -> Optional[Notification]:
        notification = Notification(
            user_id=user_id,
            type=notification_type,
            title=title,
            message=message,
            action_url=action_url,
        )
        try:
            self.db.create_notification(notification)
        except SQLAlchemyError as e:
            logger.error(f"[Notifications] Failed to store notification for user {user_id}: {e}")
            return None

        try:
            if is_email_configured():
                user = self.db.get_user(user_id)
                if user:
                    await send_billing_notice_email(user.email, user.name, title, message, action_url)
        except (SQLAlchemyError, ValueError, OSError) as e:
            # Bad SMTP settings or a failed user lookup; the in-app notification is already stored
            logger.error(f"[Notifications] Failed to email notification to user {user_id}: {e}")
        return notification
