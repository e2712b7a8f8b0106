import logging
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_CHANNELS = ["email"]
CHANNEL_SENDERS = {"email": "_send_email", "in_app": "_send_in_app", "sms": "_send_sms"}

class NotificationTool:
    """Log-backed delivery of approval notifications; one send per recipient and channel."""

    async def send_notification(self, users: List[str], subject: str, message: str,
                                channels: Optional[List[str]] = None):
        for channel in channels or DEFAULT_CHANNELS:
            method = CHANNEL_SENDERS.get(channel)
            if method is None:
                logger.warning(f"Unknown notification channel {channel}, skipping {len(users)} recipient(s)")
                continue
            sender = getattr(self, method)
            for user in users:
                await sender(user, subject, message)

    async def _send_email(self, user: str, subject: str, message: str):
        logger.info(f"[EMAIL] {user} <- {subject}")

    async def _send_in_app(self, user: str, subject: str, message: str):
        logger.info(f"[IN_APP] {user} <- {subject}")

    async def _send_sms(self, user: str, subject: str, message: str):
        # sms carries the body only
        logger.info(f"[SMS] {user} <- {message[:50]}")

notification_tool = NotificationTool()
