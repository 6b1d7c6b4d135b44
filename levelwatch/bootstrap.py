from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from flask import Flask

from levelwatch.config.yaml_config import AppConfig, LogStoreConfig, load_app_config
from levelwatch.core.engine import AlarmStateEngine
from levelwatch.notification.notification_thread import NotificationWorkerThread
from levelwatch.notification.telegram_notifier import TelegramNotifier
from levelwatch.runtime.telegram_poller import PollerConfig, TelegramCommandPoller
from levelwatch.storage.durable_log import DurableLog
from levelwatch.storage.log_backends import CsvLogBackend, LogBackend, SheetsLogBackend
from levelwatch.storage.snapshot_store import JsonSnapshotStore
from levelwatch.transport.commands import CommandHandler
from levelwatch.transport.http_api import create_app

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppWiring:
    """Everything the server entrypoint needs to run the system."""
    config: AppConfig
    engine: AlarmStateEngine
    notifier: Optional[NotificationWorkerThread]
    commands: CommandHandler
    poller: Optional[TelegramCommandPoller]
    http_app: Flask
    stop_event: threading.Event

    def start(self) -> None:
        if self.notifier is not None:
            self.notifier.start()
        if self.poller is not None:
            self.poller.start()

    def stop(self) -> None:
        self.stop_event.set()
        self.engine.shutdown()
        if self.poller is not None:
            self.poller.stop()
            self.poller.join()
        if self.notifier is not None:
            self.notifier.stop()


def build_log_backend(cfg: LogStoreConfig) -> LogBackend:
    if cfg.backend == "csv":
        return CsvLogBackend(cfg.csv_dir)
    return SheetsLogBackend(spreadsheet_id=cfg.spreadsheet_id or "", credentials=cfg.credentials)


def build_notifier(cfg: AppConfig) -> Optional[NotificationWorkerThread]:
    if cfg.telegram is None:
        logger.warning("TELEGRAM_BOT_TOKEN not set; notifications will only be logged")
        return None
    return NotificationWorkerThread(notifiers=[TelegramNotifier(cfg.telegram)], cfg=cfg.notifications)


def build_app_system(config_path: Optional[str] = None, cfg: Optional[AppConfig] = None) -> AppWiring:
    """
    Load configuration and wire the engine, stores, notifier and transports.

    The engine is warmed from the snapshot first, then reconciled with the
    durable log. Threads are not started; call :meth:`AppWiring.start`.
    """
    cfg = cfg or load_app_config(config_path)

    # --- STORAGE ---
    log = DurableLog(build_log_backend(cfg.log_store))
    snapshots = JsonSnapshotStore(cfg.snapshot.path) if cfg.snapshot.enabled else None

    # --- NOTIFICATIONS ---
    notifier = build_notifier(cfg)

    # --- ENGINE ---
    engine = AlarmStateEngine(log=log, snapshots=snapshots, notifier=notifier, cfg=cfg.engine)
    engine.load_snapshot()
    if engine.reinit_log():
        engine.restore()

    # --- TRANSPORTS ---
    commands = CommandHandler(
        engine,
        limits=cfg.limits,
        deployment=cfg.deployment,
        tz=cfg.engine.display_timezone,
    )
    stop_event = threading.Event()
    poller = None
    if cfg.telegram is not None and cfg.commands.polling_enabled:
        poller = TelegramCommandPoller(
            cfg.telegram,
            on_command=commands.handle,
            stop_event=stop_event,
            cfg=PollerConfig(reconnect_delay_s=cfg.commands.reconnect_delay_s),
        )

    http_app = create_app(engine, deployment=cfg.deployment)

    return AppWiring(
        config=cfg,
        engine=engine,
        notifier=notifier,
        commands=commands,
        poller=poller,
        http_app=http_app,
        stop_event=stop_event,
    )
