"""JSON-file record store.

Every collection lives in one JSON document ``{collection: [record, ...]}``.
Each mutation (or each ``transaction()`` block) is written atomically: the
new document goes to a temp file in the same directory and replaces the old
one with ``os.replace``, so readers see either the old or the new state and
a failed write leaves the previous document intact.
"""

import copy
import json
import logging
import os
import tempfile
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

logger = logging.getLogger(__name__)

Record = dict[str, Any]

# One lock per store file, shared by every RecordStore opened on that path
_file_locks: dict[Path, threading.RLock] = {}
_file_locks_guard = threading.Lock()


def _lock_for(path: Path) -> threading.RLock:
    key = path.resolve()
    with _file_locks_guard:
        if key not in _file_locks:
            _file_locks[key] = threading.RLock()
        return _file_locks[key]


class StoreError(Exception):
    """Raised when the store cannot be read or written."""
    pass


class RecordNotFoundError(StoreError):
    """Raised when an update targets a record that does not exist."""
    pass


def _matches(record: Record, filters: dict[str, Any] | None) -> bool:
    if not filters:
        return True
    return all(record.get(key) == value for key, value in filters.items())


class StoreTransaction:
    """Mutations applied to an in-memory copy, committed in one write."""

    def __init__(self, data: dict[str, list[Record]]):
        self._data = data

    def _collection(self, name: str) -> list[Record]:
        return self._data.setdefault(name, [])

    def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[Record]:
        rows = [copy.deepcopy(r) for r in self._collection(collection) if _matches(r, filters)]
        if order_by:
            # Records missing the field sort last
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by) or ""), reverse=descending)
        return rows

    def get(self, collection: str, record_id: str) -> Record | None:
        rows = self.query(collection, {"id": record_id})
        return rows[0] if rows else None

    def insert(self, collection: str, record: Record) -> Record:
        row = copy.deepcopy(record)
        if not row.get("id"):
            row["id"] = str(uuid.uuid4())
        row.setdefault("created_at", datetime.now(timezone.utc).isoformat())
        self._collection(collection).append(row)
        return copy.deepcopy(row)

    def update(self, collection: str, record_id: str, changes: Record) -> Record:
        for row in self._collection(collection):
            if row.get("id") == record_id:
                row.update(copy.deepcopy({k: v for k, v in changes.items() if k != "id"}))
                return copy.deepcopy(row)
        raise RecordNotFoundError(f"No {collection} record with id {record_id}")

    def delete(self, collection: str, filters: dict[str, Any]) -> int:
        rows = self._collection(collection)
        kept = [r for r in rows if not _matches(r, filters)]
        self._data[collection] = kept
        return len(rows) - len(kept)

    def upsert(self, collection: str, record: Record, conflict_on: Iterable[str]) -> Record:
        """Update the record sharing *conflict_on* values with *record*, else insert it."""
        conflict_filter = {key: record.get(key) for key in conflict_on}
        for row in self._collection(collection):
            if _matches(row, conflict_filter):
                return self.update(collection, row["id"], record)
        return self.insert(collection, record)

    def replace_all(self, collection: str, filters: dict[str, Any], records: Iterable[Record]) -> list[Record]:
        """Swap every record matching *filters* for *records*."""
        self.delete(collection, filters)
        return [self.insert(collection, record) for record in records]


class RecordStore:
    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._lock = _lock_for(self.path)

    def _read(self) -> dict[str, list[Record]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StoreError(f"Invalid JSON in store file {self.path}: {e}") from e
        except OSError as e:
            raise StoreError(f"Failed to read store file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StoreError(f"Store file {self.path} must contain a JSON object")
        return data

    def _write(self, data: dict[str, list[Record]]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # Same directory as the target so os.replace stays on one filesystem
            temp_fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".store_tmp_", suffix=".json")
            try:
                with os.fdopen(temp_fd, "w") as f:
                    json.dump(data, f, indent=2)
                os.replace(temp_path, self.path)
            except Exception:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass
                raise
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(f"Failed to write store file {self.path}: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """Apply several mutations as one atomic write.

        Nothing is written if the block raises.
        """
        with self._lock:
            data = self._read()
            yield StoreTransaction(data)
            self._write(data)

    def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[Record]:
        with self._lock:
            return StoreTransaction(self._read()).query(collection, filters, order_by, descending)

    def get(self, collection: str, record_id: str) -> Record | None:
        with self._lock:
            return StoreTransaction(self._read()).get(collection, record_id)

    def insert(self, collection: str, record: Record) -> Record:
        with self.transaction() as tx:
            return tx.insert(collection, record)

    def update(self, collection: str, record_id: str, changes: Record) -> Record:
        with self.transaction() as tx:
            return tx.update(collection, record_id, changes)

    def delete(self, collection: str, filters: dict[str, Any]) -> int:
        with self.transaction() as tx:
            return tx.delete(collection, filters)

    def upsert(self, collection: str, record: Record, conflict_on: Iterable[str]) -> Record:
        with self.transaction() as tx:
            return tx.upsert(collection, record, conflict_on)

    def replace_all(self, collection: str, filters: dict[str, Any], records: Iterable[Record]) -> list[Record]:
        with self.transaction() as tx:
            result = tx.replace_all(collection, filters, records)
        logger.debug("Replaced records", extra={"collection": collection, "count": len(result)})
        return result
