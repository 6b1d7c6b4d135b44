"""
Durable log adapter.

Wraps a `LogBackend` with the behavior the engine relies on:
- monthly partitions keyed ``YYYY-MM`` (UTC), created lazily and exactly once
- exactly one reinit-and-retry when an append hits a stale handle
- `LogUnavailable` for every other failure, so callers handle a single type
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from levelwatch.domain.errors import LogUnavailable, StaleHandleError
from levelwatch.domain.models import LOG_HEADER, LogRow
from levelwatch.storage.log_backends import LogBackend

logger = logging.getLogger(__name__)

_STALE_MARKERS = ("not found", "loadinfo", "not loaded", "unloaded")


def partition_key(now: datetime) -> str:
    """
    Partition key for a timestamp: calendar ``YYYY-MM`` in UTC.

    Naive datetimes are assumed to be UTC.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m")


def is_stale_handle_error(exc: Optional[BaseException]) -> bool:
    """
    True if ``exc`` (or its cause) indicates the document or partition handle
    must be reloaded before the next attempt.
    """
    while exc is not None:
        if isinstance(exc, StaleHandleError):
            return True
        text = str(exc).lower()
        if any(marker in text for marker in _STALE_MARKERS):
            return True
        exc = exc.__cause__
    return False


@dataclass(frozen=True)
class PartitionHandle:
    """Resolved partition: its key and the backend's reference to it."""

    key: str
    ref: Any


class DurableLog:
    """
    Append-only monthly log on top of a `LogBackend`.

    Concurrency Model
    -----------------
    Opening the backend and resolving/creating partitions are serialized by
    one lock, so concurrent callers resolving a new month create it once.
    Appends themselves are not serialized here.

    Parameters
    ----------
    backend
        Row store implementation.
    header
        Header row written when a partition is created.
    """

    def __init__(self, backend: LogBackend, header: Sequence[str] = LOG_HEADER):
        self._backend = backend
        self._header = list(header)
        self._lock = threading.Lock()
        self._partitions: Dict[str, PartitionHandle] = {}
        self._opened = False

    @property
    def backend(self) -> LogBackend:
        return self._backend

    def open(self) -> None:
        """
        (Re)load the backend document and drop cached partition handles.

        Raises
        ------
        LogUnavailable
            If the backend cannot be opened.
        """
        with self._lock:
            self._open_locked()

    reinit = open

    def _open_locked(self) -> None:
        self._opened = False
        self._partitions.clear()
        try:
            self._backend.open()
        except Exception as e:
            raise LogUnavailable(f"log store open failed: {e}") from e
        self._opened = True

    def ensure_partition(self, now: datetime) -> PartitionHandle:
        """
        Resolve the partition for ``now``, creating it if absent.

        Parameters
        ----------
        now
            Time whose month selects the partition.

        Returns
        -------
        PartitionHandle
            Cached handle for the month.

        Raises
        ------
        LogUnavailable
            If the backend cannot be opened or the partition resolved.
        """
        key = partition_key(now)
        with self._lock:
            if not self._opened:
                self._open_locked()

            handle = self._partitions.get(key)
            if handle is not None:
                return handle

            try:
                ref = self._backend.get_partition(key)
                if ref is None:
                    logger.info("Creating log partition %s", key)
                    ref = self._backend.create_partition(key, self._header)
                else:
                    logger.debug("Using existing log partition %s", key)
            except Exception as e:
                raise LogUnavailable(f"partition {key} resolve failed: {e}") from e

            handle = PartitionHandle(key=key, ref=ref)
            self._partitions[key] = handle
            return handle

    def append(self, row: LogRow, handle: Optional[PartitionHandle] = None) -> str:
        """
        Append one row, retrying once after a reinit on a stale handle.

        Parameters
        ----------
        row
            Row to append. Its timestamp selects the partition when no
            handle is given, and on retry.
        handle
            Optional pre-resolved partition.

        Returns
        -------
        str
            Backend row reference.

        Raises
        ------
        LogUnavailable
            On any non-stale failure, or when the retry fails too.
        """
        try:
            return self._append_once(row, handle)
        except Exception as e:
            if not is_stale_handle_error(e):
                raise LogUnavailable(f"append failed: {e}") from e
            logger.warning("Stale log handle (%s); reinitializing and retrying once", e)

        try:
            self.reinit()
            return self._append_once(row, None)
        except Exception as e:
            raise LogUnavailable(f"append failed after reinit: {e}") from e

    def _append_once(self, row: LogRow, handle: Optional[PartitionHandle]) -> str:
        h = handle or self.ensure_partition(row.timestamp)
        return self._backend.append_row(h.ref, row.to_values())

    def read_tail(self, handle: PartitionHandle, n: int) -> List[LogRow]:
        """
        Return up to the last ``n`` rows of a partition, oldest first.

        Rows that cannot be parsed are skipped.

        Raises
        ------
        LogUnavailable
            If the backend read fails.
        """
        try:
            records = self._backend.read_records(handle.ref, n)
        except Exception as e:
            raise LogUnavailable(f"read failed: {e}") from e

        rows: List[LogRow] = []
        for rec in records:
            row = LogRow.from_record(rec)
            if row is None:
                logger.debug("Skipping unparsable log record: %r", rec)
                continue
            rows.append(row)
        return rows

    def tail(self, now: datetime, n: int) -> List[LogRow]:
        """Resolve the partition for ``now`` and read its last ``n`` rows."""
        return self.read_tail(self.ensure_partition(now), n)

    def describe(self) -> Dict[str, Any]:
        """
        Backend description for health reports.

        Raises
        ------
        LogUnavailable
            If the backend cannot be reached.
        """
        try:
            return dict(self._backend.describe())
        except Exception as e:
            raise LogUnavailable(f"describe failed: {e}") from e
