from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from levelwatch.notification.telegram_notifier import TelegramConfig, send_message

logger = logging.getLogger(__name__)

CommandFn = Callable[[str], Optional[str]]
ReplyFn = Callable[[str, str], None]


@dataclass(frozen=True)
class PollerConfig:
    """
    Configuration for the Telegram command poller.

    Parameters
    ----------
    reconnect_delay_s
        Delay in seconds before polling again after a failure.
    """

    reconnect_delay_s: float = 5.0


class TelegramCommandPoller:
    """
    Dedicated I/O thread that long-polls ``getUpdates`` and answers commands.

    Responsibilities
    ----------------
    - Own the update offset so each message is handled once.
    - Pass message text to `on_command` and send the reply to the same chat.
    - Retry after `reconnect_delay_s` on any polling failure until stopped.

    Stop Behavior
    -------------
    :meth:`stop` sets the stop event; the thread exits after the current long
    poll returns (at most ``poll_timeout_s`` later).
    """

    def __init__(
        self,
        tg: TelegramConfig,
        on_command: CommandFn,
        stop_event: threading.Event,
        cfg: Optional[PollerConfig] = None,
        reply: Optional[ReplyFn] = None,
    ):
        self._tg = tg
        self._on_command = on_command
        self._stop = stop_event
        self._cfg = cfg or PollerConfig()
        self._reply = reply or (lambda chat_id, text: send_message(self._tg, chat_id, text))
        self._offset: Optional[int] = None
        self._thread = threading.Thread(target=self._run, name="telegram-poller", daemon=True)

    def start(self) -> None:
        if not self._thread.is_alive():
            self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: float | None = 2.0) -> None:
        self._thread.join(timeout=timeout)

    def poll_once(self) -> int:
        """
        Fetch one batch of updates and dispatch them.

        Returns
        -------
        int
            Number of updates processed.

        Raises
        ------
        requests.RequestException
            On network or HTTP errors.
        """
        params: Dict[str, Any] = {"timeout": self._tg.poll_timeout_s, "allowed_updates": '["message"]'}
        if self._offset is not None:
            params["offset"] = self._offset

        r = requests.get(
            self._tg.method_url("getUpdates"),
            params=params,
            timeout=self._tg.poll_timeout_s + self._tg.timeout_s,
        )
        r.raise_for_status()
        body = r.json()
        if not body.get("ok", False):
            raise requests.HTTPError(f"getUpdates failed: {body.get('description')}")

        updates: List[Dict[str, Any]] = body.get("result") or []
        for upd in updates:
            self._offset = int(upd["update_id"]) + 1
            self._dispatch(upd)
        return len(updates)

    def _dispatch(self, upd: Dict[str, Any]) -> None:
        msg = upd.get("message") or {}
        text = msg.get("text")
        chat_id = (msg.get("chat") or {}).get("id")
        if not text or chat_id is None:
            return
        try:
            reply = self._on_command(text)
            if reply:
                self._reply(str(chat_id), reply)
        except Exception as e:
            logger.exception("Command %r from chat %s failed: %r", text, chat_id, e)

    def _run(self) -> None:
        logger.info("Telegram command poller started")
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception as e:
                if self._stop.is_set():
                    break
                logger.error("Telegram polling error: %r", e)
                self._stop.wait(self._cfg.reconnect_delay_s)
        logger.info("Telegram command poller stopped")
