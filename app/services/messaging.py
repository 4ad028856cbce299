"""
Messaging delivery channels for one-time codes.

Defines the channel interface plus the Telegram bot implementation used in
deployment. Delivery is best effort: channels report success as a bool and
never raise for transport failures.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)


class MessagingChannel(ABC):
    """
    Abstract delivery channel.

    Implementations must return within a bounded time and report
    non-delivery by returning False rather than raising.
    """

    name = "channel"

    @abstractmethod
    def send(self, recipient_handle: str, message: str) -> bool:
        """
        Deliver a message.

        Args:
            recipient_handle: Channel-specific recipient (e.g. Telegram chat ID)
            message: Plain-text message body

        Returns:
            bool: True if the channel accepted the message
        """
        pass

    @property
    def fallback_hint(self) -> str:
        return "We could not deliver your code. Please try again or use another sign-in method."


class TelegramChannel(MessagingChannel):
    """Send messages through the Telegram Bot API."""

    name = "telegram"

    def __init__(
        self,
        bot_token: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.bot_token = bot_token or settings.TELEGRAM_BOT_TOKEN
        self.api_base = (api_base or settings.TELEGRAM_API_BASE).rstrip("/")
        self.timeout = timeout or settings.DELIVERY_TIMEOUT_SECONDS
        self.transport = transport

    def send(self, recipient_handle: str, message: str) -> bool:
        url = f"{self.api_base}/bot{self.bot_token}/sendMessage"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(
                    url,
                    json={"chat_id": recipient_handle, "text": message, "parse_mode": "HTML"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Telegram delivery to {recipient_handle} failed: {type(e).__name__}: {e}")
            return False

        if response.status_code != 200:
            logger.error(f"Telegram delivery to {recipient_handle} rejected: HTTP {response.status_code}")
            return False

        try:
            data = response.json()
        except ValueError:
            logger.error(f"Telegram delivery to {recipient_handle} returned a non-JSON body")
            return False
        if not isinstance(data, dict) or not data.get("ok"):
            logger.error(f"Telegram delivery to {recipient_handle} rejected: {data.get('description')}")
            return False

        logger.info(f"Telegram message delivered to {recipient_handle}")
        return True

    @property
    def fallback_hint(self) -> str:
        return "Telegram delivery failed. Make sure you have started a chat with the bot, then request a new code."


class ConsoleChannel(MessagingChannel):
    """
    Development channel that writes messages to the application log.

    Reports non-delivery so clients still show the fallback path.
    Refuses to run in production.
    """

    name = "console"

    def __init__(self):
        if settings.is_production:
            raise RuntimeError("ConsoleChannel cannot be used in production")

    def send(self, recipient_handle: str, message: str) -> bool:
        logger.warning(f"[console delivery] to {recipient_handle}: {message}")
        return False

    @property
    def fallback_hint(self) -> str:
        return "Messaging is not configured; the code was written to the server console."


class DisabledChannel(MessagingChannel):
    """Channel used when no delivery credentials are configured in production."""

    name = "disabled"

    def send(self, recipient_handle: str, message: str) -> bool:
        logger.error(f"No messaging channel configured; message to {recipient_handle} dropped")
        return False


def build_code_message(code: str, purpose: str, expires_minutes: int) -> str:
    """Render the text sent with a one-time code."""
    action = {
        "SIGNUP": "complete your sign-up",
        "LOGIN": "sign in",
        "RESET_PASSCODE": "reset your passcode",
    }.get(purpose, "continue")
    return (
        f"🔐 <b>OneStep verification</b>\n\n"
        f"Your code to {action} is: <code>{code}</code>\n\n"
        f"It expires in {expires_minutes} minutes. Never share this code with anyone."
    )


def get_messaging_channel() -> MessagingChannel:
    """Pick the delivery channel for the current configuration."""
    if settings.TELEGRAM_BOT_TOKEN:
        return TelegramChannel()
    if not settings.is_production:
        return ConsoleChannel()
    return DisabledChannel()
