from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

from levelwatch.core.engine import EngineConfig
from levelwatch.domain.errors import ConfigError
from levelwatch.notification.notification_thread import NotificationThreadConfig
from levelwatch.notification.telegram_notifier import TELEGRAM_API_BASE, TelegramConfig

APP_VERSION = "2.1.0"


@dataclass(frozen=True)
class LimitsConfig:
    """
    Trigger-level bounds.

    The HTTP setter enforces only ``trigger_min_exclusive``; the chat
    command also enforces ``command_trigger_max``.
    """
    trigger_min_exclusive: float = 0.0
    command_trigger_max: float = 200.0


@dataclass(frozen=True)
class LogStoreConfig:
    """Durable log backend selection and credentials."""
    backend: str = "sheets"
    spreadsheet_id: Optional[str] = None
    credentials: Optional[Dict[str, Any]] = None
    csv_dir: str = "data/log"


@dataclass(frozen=True)
class SnapshotConfig:
    """Local snapshot file."""
    enabled: bool = True
    path: str = "data/state.json"


@dataclass(frozen=True)
class ServerConfig:
    """HTTP server bind settings."""
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass(frozen=True)
class CommandsConfig:
    """Chat command receiver."""
    polling_enabled: bool = True
    reconnect_delay_s: float = 5.0


@dataclass(frozen=True)
class DeploymentInfo:
    """Shown in status/info replies."""
    platform: str = "Local"
    environment: str = "development"
    version: str = APP_VERSION


@dataclass(frozen=True)
class AppConfig:
    """
    Root application configuration loaded from YAML plus environment.

    Secrets (bot token, spreadsheet id, service-account credentials) are read
    from the environment, optionally via a ``.env`` file, and override YAML.
    """
    engine: EngineConfig
    limits: LimitsConfig
    log_store: LogStoreConfig
    snapshot: SnapshotConfig
    server: ServerConfig
    telegram: Optional[TelegramConfig]
    commands: CommandsConfig
    notifications: NotificationThreadConfig
    deployment: DeploymentInfo
    log_level: str = "INFO"


def _read_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError("config.yaml must contain a YAML mapping at the root")
    return data


def _exe_dir() -> Path:
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path.cwd()


def _resolve_default_config_path(env: Mapping[str, str]) -> Optional[Path]:
    """
    Resolve config.yaml location.

    Priority:
    1) LEVELWATCH_CONFIG env var if provided
    2) config.yaml next to the executable (frozen builds)
    3) ./config.yaml in current working directory

    Returns None when no file exists; the service then runs from
    environment variables and defaults alone.
    """
    explicit = env.get("LEVELWATCH_CONFIG")
    if explicit:
        return Path(explicit).expanduser().resolve()

    for candidate in (_exe_dir() / "config.yaml", Path("config.yaml").resolve()):
        if candidate.exists():
            return candidate
    return None


def _section(raw: Mapping[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return value


def _load_credentials(env: Mapping[str, str], ls: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Service-account credentials, in priority order: GOOGLE_CREDENTIALS (JSON
    string), GOOGLE_CREDENTIALS_FILE, ``log_store.credentials_file``.
    """
    inline = env.get("GOOGLE_CREDENTIALS")
    if inline:
        try:
            creds = json.loads(inline)
        except ValueError as e:
            raise ConfigError(f"Failed to parse GOOGLE_CREDENTIALS: {e}") from e
    else:
        path = env.get("GOOGLE_CREDENTIALS_FILE") or ls.get("credentials_file")
        if not path:
            return None
        p = Path(str(path)).expanduser()
        try:
            with p.open("r", encoding="utf-8") as f:
                creds = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Failed to load service account file {p}: {e}") from e

    if not isinstance(creds, dict) or not creds.get("client_email") or not creds.get("private_key"):
        raise ConfigError("Invalid Google service account credentials")
    return creds


def load_app_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """
    Load application configuration from YAML and environment variables.

    Parameters
    ----------
    path
        Explicit path to config.yaml. If None, uses default resolution.
    env
        Environment mapping. If None, ``.env`` next to the executable is
        loaded into ``os.environ`` and ``os.environ`` is used.

    Returns
    -------
    AppConfig
        Parsed and validated configuration.

    Raises
    ------
    FileNotFoundError
        If an explicitly requested config file does not exist.
    ConfigError
        If required fields are missing or invalid.
    """
    if env is None:
        load_dotenv(_exe_dir() / ".env")
        env = os.environ

    if path:
        cfg_path: Optional[Path] = Path(path).expanduser().resolve()
        if not cfg_path.exists():
            raise FileNotFoundError(f"Config not found: {cfg_path}")
    else:
        cfg_path = _resolve_default_config_path(env)
        if cfg_path is not None and not cfg_path.exists():
            raise FileNotFoundError(f"Config not found: {cfg_path}")

    raw = _read_yaml(cfg_path) if cfg_path else {}

    try:
        return _build(raw, env)
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def _build(raw: Mapping[str, Any], env: Mapping[str, str]) -> AppConfig:
    # ---- limits ----
    lim = _section(raw, "limits")
    limits = LimitsConfig(
        trigger_min_exclusive=float(lim.get("trigger_min_exclusive", 0.0)),
        command_trigger_max=float(lim.get("command_trigger_max", 200.0)),
    )

    # ---- telegram ----
    tg = _section(raw, "telegram")
    token = env.get("TELEGRAM_BOT_TOKEN") or tg.get("bot_token")
    alert_chat = env.get("TELEGRAM_ALERT_CHAT_ID") or tg.get("alert_chat_id")
    telegram = None
    if token:
        telegram = TelegramConfig(
            bot_token=str(token),
            alert_chat_id=str(alert_chat) if alert_chat is not None else None,
            api_base=str(tg.get("api_base", TELEGRAM_API_BASE)),
            timeout_s=float(tg.get("timeout_s", 5.0)),
            poll_timeout_s=int(tg.get("poll_timeout_s", 25)),
        )

    # ---- engine ----
    e = _section(raw, "engine")
    trigger = float(e.get("default_trigger_level", 50.0))
    if trigger <= limits.trigger_min_exclusive:
        raise ConfigError(f"engine.default_trigger_level must be > {limits.trigger_min_exclusive}")
    engine = EngineConfig(
        default_trigger_level=trigger,
        override_expiry_s=float(e.get("override_expiry_s", 240.0)),
        trigger_min_exclusive=limits.trigger_min_exclusive,
        alert_target=str(alert_chat) if alert_chat is not None else None,
        notify_every_reading=bool(e.get("notify_every_reading", False)),
        display_timezone=str(e.get("display_timezone", "Asia/Jakarta")),
        history_rows=int(e.get("history_rows", 5)),
    )

    # ---- log store ----
    ls = _section(raw, "log_store")
    backend = str(env.get("LOG_BACKEND") or ls.get("backend", "sheets")).lower()
    if backend not in ("sheets", "csv"):
        raise ConfigError(f"log_store.backend must be 'sheets' or 'csv', got {backend!r}")
    spreadsheet_id = env.get("SPREADSHEET_ID") or ls.get("spreadsheet_id")
    credentials = _load_credentials(env, ls) if backend == "sheets" else None
    if backend == "sheets":
        if not spreadsheet_id:
            raise ConfigError("SPREADSHEET_ID is required for the sheets log backend")
        if credentials is None:
            raise ConfigError("GOOGLE_CREDENTIALS or GOOGLE_CREDENTIALS_FILE is required for the sheets log backend")
    log_store = LogStoreConfig(
        backend=backend,
        spreadsheet_id=str(spreadsheet_id) if spreadsheet_id else None,
        credentials=credentials,
        csv_dir=str(ls.get("csv_dir", "data/log")),
    )

    # ---- snapshot ----
    sn = _section(raw, "snapshot")
    snapshot = SnapshotConfig(
        enabled=bool(sn.get("enabled", True)),
        path=str(sn.get("path", "data/state.json")),
    )

    # ---- server ----
    sv = _section(raw, "server")
    server = ServerConfig(
        host=str(sv.get("host", "0.0.0.0")),
        port=int(env.get("PORT") or sv.get("port", 3000)),
    )

    # ---- commands ----
    cm = _section(raw, "commands")
    commands = CommandsConfig(
        polling_enabled=bool(cm.get("polling_enabled", True)),
        reconnect_delay_s=float(cm.get("reconnect_delay_s", 5.0)),
    )

    # ---- notifications ----
    nt = _section(raw, "notifications")
    notifications = NotificationThreadConfig(
        max_queue=int(nt.get("max_queue", 2000)),
        retry_count=int(nt.get("retry_count", 3)),
        retry_backoff_s=float(nt.get("retry_backoff_s", 0.5)),
        poll_timeout_s=float(nt.get("poll_timeout_s", 0.5)),
    )

    deployment = DeploymentInfo(
        platform="Render.com" if env.get("RENDER") else "Local",
        environment=str(env.get("APP_ENV") or raw.get("environment", "development")),
    )

    return AppConfig(
        engine=engine,
        limits=limits,
        log_store=log_store,
        snapshot=snapshot,
        server=server,
        telegram=telegram,
        commands=commands,
        notifications=notifications,
        deployment=deployment,
        log_level=str(raw.get("log_level", "INFO")).upper(),
    )
