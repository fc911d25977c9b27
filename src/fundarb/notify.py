"""Notification port for operator alerts.

Delivery is best effort: a failed send is logged and swallowed so that a
Telegram outage never interrupts an execution task or the scan loop.
"""

from abc import ABC, abstractmethod
from enum import Enum

import aiohttp

from fundarb.config import NotificationSettings
from fundarb.logging import get_logger

logger = get_logger(__name__)

_TELEGRAM_API = "https://api.telegram.org"


class Priority(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class Notifier(ABC):
    """Abstract operator notification channel."""

    @abstractmethod
    async def notify(self, message: str, priority: Priority = Priority.INFO) -> None:
        """Deliver a message. Must not raise."""
        ...

    async def close(self) -> None:
        """Release resources held by the channel."""


class LogNotifier(Notifier):
    """Writes notifications to the structured log only."""

    async def notify(self, message: str, priority: Priority = Priority.INFO) -> None:
        if priority is Priority.CRITICAL:
            logger.critical("notification", message=message, priority=priority.value)
        elif priority is Priority.WARNING:
            logger.warning("notification", message=message, priority=priority.value)
        else:
            logger.info("notification", message=message, priority=priority.value)


class TelegramNotifier(Notifier):
    """Sends notifications through the Telegram Bot API sendMessage call.

    Every message is also written to the log, so nothing is lost when the
    HTTP call fails.

    Args:
        settings: Bot token, chat id and request timeout.
        session: Optional pre-built aiohttp session (tests inject a mock).
    """

    def __init__(
        self,
        settings: NotificationSettings,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._token = settings.telegram_bot_token.get_secret_value()
        self._chat_id = settings.telegram_chat_id
        self._timeout = settings.timeout_seconds
        self._session = session
        self._log = LogNotifier()

    @property
    def url(self) -> str:
        return f"{_TELEGRAM_API}/bot{self._token}/sendMessage"

    async def notify(self, message: str, priority: Priority = Priority.INFO) -> None:
        await self._log.notify(message, priority)

        prefix = "[CRITICAL] " if priority is Priority.CRITICAL else ""
        payload = {
            "chat_id": self._chat_id,
            "text": f"{prefix}{message}",
            "disable_notification": priority is Priority.INFO,
        }
        try:
            if self._session is None:
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self._timeout)
                )
            async with self._session.post(self.url, json=payload) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    logger.warning(
                        "telegram_send_failed",
                        status=resp.status,
                        response=body[:200],
                    )
        except Exception as e:
            logger.warning("telegram_send_error", error=str(e))

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


def build_notifier(settings: NotificationSettings) -> Notifier:
    """Telegram when enabled and configured, otherwise log-only."""
    if (
        settings.telegram_enabled
        and settings.telegram_bot_token.get_secret_value()
        and settings.telegram_chat_id
    ):
        return TelegramNotifier(settings)
    if settings.telegram_enabled:
        logger.warning("telegram_not_configured", note="Falling back to log notifier")
    return LogNotifier()
