"""
Shared fakes for the unit and stress tests.

- `FakeClock`: settable UTC clock.
- `ManualTimerFactory`: records armed timers; tests fire them explicitly.
- `MemoryLogBackend`: in-memory `LogBackend` with injectable failures.
- `RecordingSink`: notification sink that keeps emitted events.
- `ingest_level`: feed one reading stamped with the engine's own clock.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest

from levelwatch.core.engine import AlarmStateEngine, EngineConfig
from levelwatch.domain.models import UNKNOWN_NODE, IngestOutcome, Reading
from levelwatch.domain.errors import StaleHandleError
from levelwatch.notification.base import NotificationEvent
from levelwatch.storage.durable_log import DurableLog
from levelwatch.storage.snapshot_store import JsonSnapshotStore

T0 = datetime(2026, 3, 10, 8, 0, 0, tzinfo=timezone.utc)


@dataclass
class FakeClock:
    now: datetime = T0

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@dataclass
class ManualTimer:
    delay_s: float
    fn: Callable[[], None]
    started: bool = False
    cancelled: bool = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        """Run the callback as the timer thread would, even if cancelled."""
        self.fn()


@dataclass
class ManualTimerFactory:
    timers: List[ManualTimer] = field(default_factory=list)

    def __call__(self, delay_s: float, fn: Callable[[], None]) -> ManualTimer:
        t = ManualTimer(delay_s=delay_s, fn=fn)
        self.timers.append(t)
        return t

    @property
    def last(self) -> ManualTimer:
        return self.timers[-1]


class MemoryLogBackend:
    """
    In-memory partitioned row store.

    ``fail_appends`` makes the next N appends raise a generic error;
    ``stale_appends`` makes them raise `StaleHandleError`.
    """

    def __init__(self) -> None:
        self.partitions: Dict[str, List[List[Any]]] = {}
        self.headers: Dict[str, List[str]] = {}
        self.open_calls = 0
        self.create_calls = 0
        self.fail_open = False
        self.fail_appends = 0
        self.stale_appends = 0
        self._lock = threading.Lock()

    def open(self) -> None:
        self.open_calls += 1
        if self.fail_open:
            raise ConnectionError("network down")

    def get_partition(self, key: str) -> Optional[str]:
        return key if key in self.partitions else None

    def create_partition(self, key: str, header: Sequence[str]) -> str:
        with self._lock:
            self.create_calls += 1
            self.partitions[key] = []
            self.headers[key] = list(header)
        return key

    def append_row(self, ref: str, values: Sequence[Any]) -> str:
        with self._lock:
            if self.stale_appends > 0:
                self.stale_appends -= 1
                raise StaleHandleError(f"partition {ref} not found")
            if self.fail_appends > 0:
                self.fail_appends -= 1
                raise RuntimeError("quota exceeded")
            rows = self.partitions[ref]
            rows.append(list(values))
            return f"{ref}!{len(rows)}"

    def read_records(self, ref: str, n: int) -> List[Dict[str, Any]]:
        header = self.headers[ref]
        rows = self.partitions[ref][-n:] if n > 0 else []
        return [dict(zip(header, r)) for r in rows]

    def describe(self) -> Dict[str, Any]:
        return {"title": "memory", "partition_count": len(self.partitions)}

    def rows(self, key: str = "2026-03") -> List[List[Any]]:
        return self.partitions.get(key, [])


@dataclass
class RecordingSink:
    events: List[NotificationEvent] = field(default_factory=list)

    def emit(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [e.type for e in self.events]


def ingest_level(
    engine: AlarmStateEngine,
    water_level: Any,
    node_id: Optional[str] = None,
    wifi_rssi: Optional[int] = None,
) -> IngestOutcome:
    return engine.ingest(
        Reading(
            water_level=water_level,
            node_id=node_id or UNKNOWN_NODE,
            observed_at=engine._clock(),
            wifi_rssi=wifi_rssi,
        )
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def timers() -> ManualTimerFactory:
    return ManualTimerFactory()


@pytest.fixture
def backend() -> MemoryLogBackend:
    return MemoryLogBackend()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def snapshot_path(tmp_path):
    return tmp_path / "state.json"


@pytest.fixture
def make_engine(backend, sink, clock, timers, snapshot_path):
    """Build an engine over the shared fakes; keyword args override `EngineConfig`."""

    def _make(**cfg_kwargs: Any) -> AlarmStateEngine:
        cfg = EngineConfig(alert_target="chat-1", **cfg_kwargs)
        return AlarmStateEngine(
            log=DurableLog(backend),
            snapshots=JsonSnapshotStore(snapshot_path),
            notifier=sink,
            cfg=cfg,
            clock=clock,
            timer_factory=timers,
        )

    return _make


@pytest.fixture
def engine(make_engine) -> AlarmStateEngine:
    return make_engine()
