from __future__ import annotations

import logging
from dataclasses import dataclass

import requests

from levelwatch.notification.base import NotificationEvent

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
TELEGRAM_MAX_MESSAGE_CHARS = 4096


@dataclass(frozen=True)
class TelegramConfig:
    """
    Configuration for Telegram Bot API delivery.

    Parameters
    ----------
    bot_token
        Bot token issued by BotFather.
    alert_chat_id
        Chat (or channel) receiving alarm notifications.
    api_base
        Bot API base URL.
    timeout_s
        HTTP request timeout in seconds.
    poll_timeout_s
        Long-poll timeout used by the command receiver.
    """

    bot_token: str
    alert_chat_id: str | None = None
    api_base: str = TELEGRAM_API_BASE
    timeout_s: float = 5.0
    poll_timeout_s: int = 25

    def method_url(self, method: str) -> str:
        return f"{self.api_base}/bot{self.bot_token}/{method}"


def send_message(cfg: TelegramConfig, chat_id: str, text: str) -> None:
    """
    Call ``sendMessage`` for one chat.

    Raises
    ------
    requests.HTTPError
        If the HTTP response status indicates an error.
    requests.RequestException
        For network-related errors.
    """
    r = requests.post(
        cfg.method_url("sendMessage"),
        json={"chat_id": chat_id, "text": text[:TELEGRAM_MAX_MESSAGE_CHARS]},
        timeout=cfg.timeout_s,
    )
    r.raise_for_status()


class TelegramNotifier:
    """
    Notification sender that delivers events via the Telegram Bot API.

    Notes
    -----
    - This class performs side effects (network I/O).
    - Events without a target are written to the log instead of being sent.
    - HTTP errors are surfaced via ``raise_for_status()``.
    """

    def __init__(self, cfg: TelegramConfig):
        self._cfg = cfg

    def notify(self, event: NotificationEvent) -> None:
        if not event.target:
            logger.info("Telegram notification (no target): %s", event.text)
            return
        send_message(self._cfg, event.target, event.text)
