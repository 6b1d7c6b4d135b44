"""
Backends for the durable append-only log.

A backend stores rows in named partitions (one per calendar month) and knows
nothing about alarm semantics. `DurableLog` drives it and owns partition
caching and the reinit-and-retry policy.

Implementations
---------------
- `SheetsLogBackend`: Google Sheets spreadsheet, one worksheet per partition.
- `CsvLogBackend`: local directory, one CSV file per partition.
"""

from __future__ import annotations

import csv
import logging
import threading
from collections import deque
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import gspread
from gspread.exceptions import APIError, WorksheetNotFound

from levelwatch.domain.errors import StaleHandleError

logger = logging.getLogger(__name__)


class LogBackend(Protocol):
    """
    Protocol for partitioned append-only row stores.

    Methods
    -------
    open()
        (Re)load the underlying document/handle. Called on first use and on
        every reinit.
    get_partition(key)
        Return a partition reference, or None if it does not exist.
    create_partition(key, header)
        Create a partition with the given header row and return its reference.
    append_row(ref, values)
        Append one row; return an opaque row reference string.
    read_records(ref, n)
        Return up to the last ``n`` data rows as header-keyed dicts, oldest first.
    describe()
        Return a small dict describing the store (title, partition count).
    """

    def open(self) -> None:
        ...

    def get_partition(self, key: str) -> Optional[Any]:
        ...

    def create_partition(self, key: str, header: Sequence[str]) -> Any:
        ...

    def append_row(self, ref: Any, values: Sequence[Any]) -> str:
        ...

    def read_records(self, ref: Any, n: int) -> List[Dict[str, Any]]:
        ...

    def describe(self) -> Dict[str, Any]:
        ...


ClientFactory = Callable[[], Any]


class SheetsLogBackend:
    """
    Google Sheets backend: one worksheet per monthly partition.

    Notes
    -----
    - Authentication uses a service account (``credentials`` is the parsed
      service-account JSON). The spreadsheet must be shared with it.
    - A worksheet that disappears or a document that was never loaded is
      reported as `StaleHandleError` so the adapter can reinit once.

    Parameters
    ----------
    spreadsheet_id
        Key of the target spreadsheet.
    credentials
        Service-account info dict.
    client_factory
        Optional factory returning an authorized gspread client.
    """

    def __init__(
        self,
        spreadsheet_id: str,
        credentials: Optional[Dict[str, Any]] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self._spreadsheet_id = spreadsheet_id
        self._credentials = credentials or {}
        self._factory = client_factory or self._service_account_client
        self._doc: Any = None

    def _service_account_client(self) -> Any:
        return gspread.service_account_from_dict(self._credentials)

    def open(self) -> None:
        client = self._factory()
        self._doc = client.open_by_key(self._spreadsheet_id)
        logger.info(
            "Connected to spreadsheet %r (%d worksheets)",
            self._doc.title,
            len(self._doc.worksheets()),
        )

    def _require_doc(self) -> Any:
        if self._doc is None:
            raise StaleHandleError("spreadsheet not loaded")
        return self._doc

    def get_partition(self, key: str) -> Optional[Any]:
        doc = self._require_doc()
        try:
            return doc.worksheet(key)
        except WorksheetNotFound:
            return None

    def create_partition(self, key: str, header: Sequence[str]) -> Any:
        doc = self._require_doc()
        ws = doc.add_worksheet(title=key, rows=1000, cols=len(header))
        ws.append_row(list(header), value_input_option="RAW")
        return ws

    def append_row(self, ref: Any, values: Sequence[Any]) -> str:
        try:
            resp = ref.append_row(list(values), value_input_option="RAW")
        except WorksheetNotFound as e:
            raise StaleHandleError(f"worksheet not found: {e}") from e
        except APIError as e:
            if getattr(e, "code", None) in (400, 404) and "range" in str(e).lower():
                raise StaleHandleError(f"worksheet not found: {e}") from e
            raise
        updates = (resp or {}).get("updates", {})
        return str(updates.get("updatedRange", ""))

    def read_records(self, ref: Any, n: int) -> List[Dict[str, Any]]:
        rows = ref.get_all_values()
        if not rows:
            return []
        header = rows[0]
        return [dict(zip(header, r)) for r in rows[1:][-n:]] if n > 0 else []

    def describe(self) -> Dict[str, Any]:
        doc = self._require_doc()
        return {"title": doc.title, "partition_count": len(doc.worksheets())}


class CsvLogBackend:
    """
    Local backend: one CSV file per monthly partition in ``directory``.

    Row references have the form ``"<key>!<data row number>"``.

    Parameters
    ----------
    directory
        Folder holding the partition files. Created by :meth:`open`.
    """

    def __init__(self, directory: str | Path):
        self._dir = Path(directory)
        self._lock = threading.Lock()
        self._row_counts: Dict[str, int] = {}
        self._opened = False

    def _path(self, key: str) -> Path:
        return self._dir / f"{key}.csv"

    def open(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        with self._lock:
            self._row_counts.clear()
            self._opened = True

    def get_partition(self, key: str) -> Optional[str]:
        if not self._opened:
            raise StaleHandleError("log directory not loaded")
        return key if self._path(key).exists() else None

    def create_partition(self, key: str, header: Sequence[str]) -> str:
        path = self._path(key)
        with self._lock:
            if not path.exists():
                with path.open("w", encoding="utf-8", newline="") as f:
                    csv.writer(f).writerow(list(header))
                self._row_counts[key] = 0
        return key

    def append_row(self, ref: str, values: Sequence[Any]) -> str:
        path = self._path(ref)
        with self._lock:
            if not path.exists():
                raise StaleHandleError(f"partition {ref} not found")
            count = self._row_counts.get(ref)
            if count is None:
                count = self._count_rows(path)
            with path.open("a", encoding="utf-8", newline="") as f:
                csv.writer(f).writerow(list(values))
            count += 1
            self._row_counts[ref] = count
        return f"{ref}!{count}"

    def read_records(self, ref: str, n: int) -> List[Dict[str, Any]]:
        path = self._path(ref)
        if not path.exists():
            raise StaleHandleError(f"partition {ref} not found")
        if n <= 0:
            return []
        with path.open("r", encoding="utf-8", newline="") as f:
            return list(deque(csv.DictReader(f), maxlen=n))

    def describe(self) -> Dict[str, Any]:
        return {
            "title": str(self._dir),
            "partition_count": len(list(self._dir.glob("*.csv"))) if self._dir.exists() else 0,
        }

    @staticmethod
    def _count_rows(path: Path) -> int:
        with path.open("r", encoding="utf-8", newline="") as f:
            return max(sum(1 for _ in csv.reader(f)) - 1, 0)
