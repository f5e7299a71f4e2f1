from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path

from .records import (
    ChangeSet,
    Clock,
    Collection,
    Pet,
    SyncRecord,
    empty_changes,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CacheEntry:
    record: SyncRecord
    dirty: bool


class LocalCache:
    """Per-device SQLite mirror of the pets a caller can see.

    Each row carries a ``dirty`` flag set by local edits and cleared once the
    server has acknowledged the write. Watermarks are kept per (pet, device).
    """

    def __init__(self, path: str | Path, device_id: str = "default", *, clock: Clock = utcnow) -> None:
        self.path = Path(path)
        self.device_id = device_id
        self._clock = clock
        self._is_memory = str(path) == ":memory:"
        if not self._is_memory:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._shared_conn: sqlite3.Connection | None = None
        self._ensure_schema()

    # ------------------------------------------------------------------
    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._is_memory:
            if self._shared_conn is None:
                self._shared_conn = sqlite3.connect(":memory:", check_same_thread=False)
                self._shared_conn.row_factory = sqlite3.Row
            yield self._shared_conn
        else:
            conn = sqlite3.connect(self.path)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS cached_records (
                    collection TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    id TEXT NOT NULL,
                    last_modified TEXT NOT NULL,
                    is_deleted INTEGER NOT NULL DEFAULT 0,
                    dirty INTEGER NOT NULL DEFAULT 0,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (collection, scope, id)
                );

                CREATE TABLE IF NOT EXISTS watermarks (
                    pet_id TEXT NOT NULL,
                    device_id TEXT NOT NULL,
                    watermark TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (pet_id, device_id)
                );
                """
            )
            conn.commit()

    def _write(self, records: Iterable[SyncRecord], *, dirty: bool) -> int:
        rows = [
            (
                record.collection.value,
                record.scope_id,
                record.id,
                format_timestamp(record.last_modified),
                int(record.is_deleted),
                int(dirty),
                json.dumps(record.to_json(), sort_keys=True),
            )
            for record in records
        ]
        if not rows:
            return 0
        with self._connection() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO cached_records(collection, scope, id, last_modified, is_deleted, dirty, payload)
                VALUES(?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            conn.commit()
        return len(rows)

    # ------------------------------------------------------------------
    def save_local(self, record: SyncRecord) -> SyncRecord:
        """Store a local edit: stamp it with the device clock and mark it dirty."""

        stamped = replace(record, last_modified=self._clock())
        self._write((stamped,), dirty=True)
        return stamped

    def delete_local(self, collection: Collection, scope: str, record_id: str) -> SyncRecord | None:
        """Tombstone a cached record locally; it is pushed on the next round."""

        entry = self.get_entry(collection, scope, record_id)
        if entry is None:
            return None
        return self.save_local(replace(entry.record, is_deleted=True))

    def save_synced(self, records: Iterable[SyncRecord]) -> int:
        return self._write(records, dirty=False)

    def get_entry(self, collection: Collection, scope: str, record_id: str) -> CacheEntry | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT payload, dirty FROM cached_records WHERE collection = ? AND scope = ? AND id = ?",
                (collection.value, scope, record_id),
            ).fetchone()
        if row is None:
            return None
        record = collection.record_type.from_json(json.loads(row["payload"]))
        return CacheEntry(record=record, dirty=bool(row["dirty"]))

    def get(self, collection: Collection, scope: str, record_id: str) -> SyncRecord | None:
        entry = self.get_entry(collection, scope, record_id)
        return entry.record if entry is not None else None

    def get_dirty(self, pet_id: str) -> ChangeSet:
        changes = empty_changes()
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT collection, payload FROM cached_records WHERE scope = ? AND dirty = 1 ORDER BY last_modified",
                (pet_id,),
            ).fetchall()
        for row in rows:
            collection = Collection(row["collection"])
            changes[collection].append(collection.record_type.from_json(json.loads(row["payload"])))
        return changes

    def mark_synced(self, records: Iterable[SyncRecord]) -> int:
        """Clear dirty flags for pushed records.

        A row edited again while the round was in flight keeps its flag: only rows
        whose ``last_modified`` still equals the pushed value are cleared.
        """

        params = [
            (record.collection.value, record.scope_id, record.id, format_timestamp(record.last_modified))
            for record in records
        ]
        if not params:
            return 0
        with self._connection() as conn:
            before = conn.total_changes
            conn.executemany(
                """
                UPDATE cached_records SET dirty = 0
                WHERE collection = ? AND scope = ? AND id = ? AND last_modified = ?
                """,
                params,
            )
            conn.commit()
            return conn.total_changes - before

    def list_pets(self, *, include_deleted: bool = False) -> list[Pet]:
        return [
            record
            for record in self.list_records(Collection.PETS, include_deleted=include_deleted)
            if isinstance(record, Pet)
        ]

    def list_records(
        self,
        collection: Collection,
        pet_id: str | None = None,
        *,
        include_deleted: bool = False,
    ) -> list[SyncRecord]:
        query = "SELECT payload FROM cached_records WHERE collection = ?"
        params: list[str] = [collection.value]
        if pet_id is not None:
            query += " AND scope = ?"
            params.append(pet_id)
        if not include_deleted:
            query += " AND is_deleted = 0"
        query += " ORDER BY last_modified ASC, id ASC"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        record_type = collection.record_type
        return [record_type.from_json(json.loads(row["payload"])) for row in rows]

    # ------------------------------------------------------------------
    def get_watermark(self, pet_id: str) -> datetime | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT watermark FROM watermarks WHERE pet_id = ? AND device_id = ?",
                (pet_id, self.device_id),
            ).fetchone()
        if row is None:
            return None
        return parse_timestamp(row["watermark"])

    def set_watermark(self, pet_id: str, watermark: datetime) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO watermarks(pet_id, device_id, watermark, updated_at)
                VALUES(?, ?, ?, ?)
                """,
                (pet_id, self.device_id, format_timestamp(watermark), format_timestamp(self._clock())),
            )
            conn.commit()

    def purge_pet(self, pet_id: str) -> int:
        """Forget a pet and everything cached under it, watermark included."""

        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM cached_records WHERE scope = ?", (pet_id,))
            conn.execute("DELETE FROM watermarks WHERE pet_id = ?", (pet_id,))
            conn.commit()
            removed = cursor.rowcount
        _LOGGER.info("Purged pet %s from local cache (%d record(s))", pet_id, removed)
        return removed

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None


__all__ = ["CacheEntry", "LocalCache"]
