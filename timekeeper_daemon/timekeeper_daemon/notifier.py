"""
Notification delivery for timer warnings and expiry notices.

The sweep only decides that a notice is due; a Notifier delivers it and
reports whether delivery succeeded.
"""

import asyncio
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import TYPE_CHECKING

from timekeeper_daemon.logging import get_logger

if TYPE_CHECKING:
    from timekeeper_daemon.storage import Storage

logger = get_logger("Notifier")


class Notifier:
    """Interface of a notification channel."""

    async def notify(self, user_id: int, message: str, subject: str) -> bool:
        """
        Delivers one message to one user.

        Returns:
            bool: True when the channel accepted the message.
        """
        raise NotImplementedError


class LogNotifier(Notifier):
    """Writes notices to the daemon log. Used when no mail server is configured."""

    async def notify(self, user_id: int, message: str, subject: str) -> bool:
        logger.info(f"Notification for user {user_id}: {subject}", body=message.strip())
        return True


class EmailNotifier(Notifier):
    """
    Sends notices by SMTP to the address stored for the user.
    """

    def __init__(self, storage: "Storage", smtp_config: dict):
        self.storage = storage
        self.host = smtp_config.get("host")
        self.port = smtp_config.get("port", 587)
        self.starttls = smtp_config.get("starttls", True)
        self.username = smtp_config.get("username")
        self.password = smtp_config.get("password")
        self.from_name = smtp_config.get("from_name")
        self.timeout = smtp_config.get("timeout", 30)

    async def notify(self, user_id: int, message: str, subject: str) -> bool:
        user = await self.storage.get_user(user_id)
        if user is None or not user.email:
            logger.warning(f"No email address for user {user_id}, notification not sent")
            return False
        return await asyncio.to_thread(self._send, user.email, subject, message)

    def _build_message(self, to_address: str, subject: str, body: str) -> EmailMessage:
        sender = self.username or f"timekeeper@{self.host}"
        msg = EmailMessage()
        msg["From"] = formataddr((self.from_name, sender)) if self.from_name else sender
        msg["To"] = to_address
        msg["Subject"] = subject
        msg.set_content(body)
        return msg

    def _send(self, to_address: str, subject: str, body: str) -> bool:
        msg = self._build_message(to_address, subject, body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.starttls:
                    smtp.starttls()
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
            logger.info(f"Sent '{subject}' to {to_address}")
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send '{subject}' to {to_address}: {e}")
            return False


def create_notifier(config, storage: "Storage") -> Notifier:
    """Builds the notifier selected by notifications.backend."""
    backend = config.get("notifications", {}).get("backend", "log")
    if backend == "email":
        logger.info("Using email notifications")
        return EmailNotifier(storage, config.get("smtp", {}))
    logger.info("Using log-only notifications")
    return LogNotifier()
