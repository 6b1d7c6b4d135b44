"""
Operator chat commands.

`CommandHandler.handle` maps one incoming chat message to a plain-text reply.
It is transport-agnostic; the Telegram poller feeds it message text and
sends the reply back to the originating chat.
"""

from __future__ import annotations

import logging
import platform
import re
from datetime import datetime
from typing import Callable, Dict, Optional

from levelwatch.config.yaml_config import DeploymentInfo, LimitsConfig
from levelwatch.core.engine import AlarmStateEngine
from levelwatch.domain.models import utc_now
from levelwatch.notification.messages import DEFAULT_DISPLAY_TZ, format_level, format_time, format_uptime

logger = logging.getLogger(__name__)

_COMMAND_RE = re.compile(r"^/(?P<name>[A-Za-z_]+)(?:@\S+)?(?:\s+(?P<args>.*))?$", re.DOTALL)


class CommandHandler:
    """
    Dispatch ``/command`` messages to the engine.

    Parameters
    ----------
    engine
        Shared alarm state engine.
    limits
        Trigger bounds; ``/set_trigger`` enforces ``command_trigger_max``.
    deployment
        Deployment metadata shown by ``/start``, ``/health`` and ``/info``.
    tz
        Display timezone for timestamps.
    clock
        Current UTC time, for uptime.
    """

    def __init__(
        self,
        engine: AlarmStateEngine,
        limits: Optional[LimitsConfig] = None,
        deployment: Optional[DeploymentInfo] = None,
        tz: str = DEFAULT_DISPLAY_TZ,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._engine = engine
        self._limits = limits or LimitsConfig()
        self._deploy = deployment or DeploymentInfo()
        self._tz = tz
        self._clock = clock
        self._handlers: Dict[str, Callable[[str], str]] = {
            "start": self._start,
            "status": self._status,
            "set_trigger": self._set_trigger,
            "alarm_on": self._alarm_on,
            "alarm_off": self._alarm_off,
            "history": self._history,
            "health": self._health,
            "info": self._info,
        }

    @property
    def trigger_usage(self) -> str:
        lo = format_level(self._limits.trigger_min_exclusive)
        hi = format_level(self._limits.command_trigger_max)
        return f"❌ Invalid trigger level. Usage: /set_trigger <value> ({lo}-{hi} cm)"

    def handle(self, text: str) -> Optional[str]:
        """
        Return the reply for one message, or None if it is not a known command.
        """
        m = _COMMAND_RE.match((text or "").strip())
        if not m:
            return None
        fn = self._handlers.get(m.group("name").lower())
        if fn is None:
            return None
        logger.info("Chat command /%s", m.group("name"))
        return fn((m.group("args") or "").strip())

    def _uptime(self) -> float:
        started = self._engine.status().started_at
        return (self._clock() - started).total_seconds() if started else 0.0

    def _start(self, _args: str) -> str:
        return (
            "🌊 Welcome to Levelwatch (water level alarm system)!\n\n"
            f"🚀 Platform: {self._deploy.platform}\n"
            f"📋 Version: {self._deploy.version}\n\n"
            "Available commands:\n"
            "/status - Current system status\n"
            "/set_trigger <value> - Set trigger level (cm)\n"
            "/alarm_on - Manual alarm ON\n"
            "/alarm_off - Manual alarm OFF\n"
            "/history - Latest logged readings\n"
            "/health - System health check\n"
            "/info - Deployment info"
        )

    def _status(self, _args: str) -> str:
        s = self._engine.status()
        return (
            "📊 SYSTEM STATUS\n\n"
            f"💧 Water Level: {format_level(s.current_water_level)} cm\n"
            f"⚡ Trigger Level: {format_level(s.trigger_level)} cm\n"
            f"🚨 Alarm: {s.alarm_status.value}\n"
            f"🔧 Manual Override: {'YES' if s.manual_override else 'NO'}\n"
            f"📊 Sheets: {'Connected' if s.log_store_ready else 'Error'}\n"
            f"🔗 Connections: {s.connection_count}\n"
            f"🚀 Platform: {self._deploy.platform}\n"
            f"⏰ Server Uptime: {format_uptime(self._uptime(), with_seconds=False)}\n"
            f"🕕 Last Reading: {format_time(s.last_reading_at, self._tz, missing='No data')}"
        )

    def _set_trigger(self, args: str) -> str:
        try:
            value = float(args.split()[0]) if args else None
        except ValueError:
            value = None
        if value is None:
            return self.trigger_usage

        outcome = self._engine.set_trigger(value, max_level=self._limits.command_trigger_max)
        if not outcome.ok:
            return self.trigger_usage
        return f"✅ Trigger level set to {format_level(value)} cm"

    def _alarm_on(self, _args: str) -> str:
        self._engine.force_alarm(True)
        minutes = self._engine.config.override_expiry_s / 60.0
        return (
            "🚨 Alarm manually activated\n"
            f"⏰ Turns off automatically after {minutes:g} minutes\n"
            f"🚀 Platform: {self._deploy.platform}"
        )

    def _alarm_off(self, _args: str) -> str:
        self._engine.force_alarm(False)
        return f"✅ Alarm manually deactivated\n🚀 Platform: {self._deploy.platform}"

    def _history(self, _args: str) -> str:
        rows = self._engine.history()
        if not rows:
            s = self._engine.status()
            return (
                "📈 LATEST DATA\n\n"
                "No rows logged this month.\n"
                f"💧 Water Level: {format_level(s.current_water_level)} cm\n"
                f"🕕 Reading Time: {format_time(s.last_reading_at, self._tz, missing='No data yet')}"
            )

        lines = ["📈 LATEST DATA", ""]
        for r in reversed(rows):
            lines.append(
                f"🕕 {format_time(r.timestamp, self._tz)} | 💧 {format_level(r.water_level)} cm"
                f" | ⚡ {format_level(r.trigger_level)} cm | 🚨 {r.alarm_status.value} | {r.node_id}"
            )
        return "\n".join(lines)

    def _health(self, _args: str) -> str:
        s = self._engine.status()
        lines = [
            "🔧 SYSTEM HEALTH CHECK",
            "",
            "🖥️ Server: Running",
            f"🚀 Platform: {self._deploy.platform}",
            f"🌍 Environment: {self._deploy.environment}",
            f"⏱️ Uptime: {format_uptime(self._uptime(), with_seconds=False)}",
            f"📊 Sheets: {'✅ Connected' if s.log_store_ready else '❌ Error'}",
            "📱 Bot: ✅ Active",
            f"🔗 Total Connections: {s.connection_count}",
        ]
        if s.last_reading_at:
            lines.append(f"🕕 Last Connection: {format_time(s.last_reading_at, self._tz)}")

        log = self._engine.log_health()
        if log.get("connection") == "ok":
            if log.get("title"):
                lines.append(f"📄 Log Title: {log['title']}")
            if log.get("partition_count") is not None:
                lines.append(f"📋 Total Partitions: {log['partition_count']}")
        else:
            lines.append(f"📄 Log Error: {log.get('error')}")
        return "\n".join(lines)

    def _info(self, _args: str) -> str:
        s = self._engine.status()
        return (
            "ℹ️ DEPLOYMENT INFO\n\n"
            f"🚀 Platform: {self._deploy.platform}\n"
            f"🌍 Environment: {self._deploy.environment}\n"
            f"📋 Version: {self._deploy.version}\n"
            f"🕕 Started: {format_time(s.started_at, self._tz)}\n"
            f"🐍 Python: {platform.python_version()}\n"
            f"🔗 Total Requests: {s.connection_count}"
        )
