from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from .records import (
    Collection,
    Pet,
    Redemption,
    ShareToken,
    SyncRecord,
    Tier,
    format_timestamp,
    parse_timestamp,
)

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class RecordStore:
    """Authoritative SQLite store for pet records, share tokens and redemptions.

    Records are partitioned by ``scope`` (the owning pet id) and keyed by
    ``(collection, scope, id)``. Timestamps are stored as fixed-width ISO text so
    the "modified since" query is a plain string comparison.

    The public API is async; SQLite work runs in a worker thread and a single
    lock serialises access so the shared ``:memory:`` connection stays usable.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._is_memory = str(path) == ":memory:"
        if not self._is_memory:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._shared_conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
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
                CREATE TABLE IF NOT EXISTS records (
                    collection TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    id TEXT NOT NULL,
                    last_modified TEXT NOT NULL,
                    is_deleted INTEGER NOT NULL DEFAULT 0,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (collection, scope, id)
                );

                CREATE INDEX IF NOT EXISTS records_by_modified
                    ON records(collection, scope, last_modified);

                CREATE TABLE IF NOT EXISTS share_tokens (
                    code TEXT PRIMARY KEY,
                    pet_id TEXT NOT NULL,
                    tier TEXT NOT NULL,
                    created_by_id TEXT NOT NULL,
                    created_by_name TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS redemptions (
                    pet_id TEXT NOT NULL,
                    caller_id TEXT NOT NULL,
                    code TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    tier TEXT NOT NULL,
                    redeemed_at TEXT NOT NULL,
                    revoked INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (pet_id, caller_id)
                );
                """
            )
            conn.commit()

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(func, *args)

    def close(self) -> None:
        with self._lock:
            if self._shared_conn is not None:
                self._shared_conn.close()
                self._shared_conn = None

    # ------------------------------------------------------------------
    # records
    async def upsert(self, record: SyncRecord) -> None:
        await self._run(self._upsert_many, (record,))

    async def upsert_many(self, records: Iterable[SyncRecord]) -> int:
        return await self._run(self._upsert_many, tuple(records))

    def _upsert_many(self, records: tuple[SyncRecord, ...]) -> int:
        if not records:
            return 0
        rows = [
            (
                record.collection.value,
                record.scope_id,
                record.id,
                format_timestamp(record.last_modified),
                int(record.is_deleted),
                json.dumps(record.to_json(), sort_keys=True),
            )
            for record in records
        ]
        with self._connection() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO records(collection, scope, id, last_modified, is_deleted, payload)
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            conn.commit()
        _LOGGER.debug("Stored %d record(s) in %s", len(rows), self.path)
        return len(rows)

    async def insert_if_absent(self, record: SyncRecord) -> bool:
        """Insert ``record`` unless its key is taken; returns ``False`` when it was."""

        return await self._run(self._insert_if_absent, record)

    def _insert_if_absent(self, record: SyncRecord) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO records(collection, scope, id, last_modified, is_deleted, payload)
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (
                    record.collection.value,
                    record.scope_id,
                    record.id,
                    format_timestamp(record.last_modified),
                    int(record.is_deleted),
                    json.dumps(record.to_json(), sort_keys=True),
                ),
            )
            conn.commit()
        return cursor.rowcount == 1

    async def get(self, collection: Collection, scope: str, record_id: str) -> SyncRecord | None:
        return await self._run(self._get, collection, scope, record_id)

    def _get(self, collection: Collection, scope: str, record_id: str) -> SyncRecord | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT payload FROM records WHERE collection = ? AND scope = ? AND id = ?",
                (collection.value, scope, record_id),
            ).fetchone()
        if row is None:
            return None
        return collection.record_type.from_json(json.loads(row["payload"]))

    async def get_pet(self, pet_id: str) -> Pet | None:
        record = await self.get(Collection.PETS, pet_id, pet_id)
        return record if isinstance(record, Pet) else None

    async def list_since(
        self,
        collection: Collection,
        scope: str,
        since: datetime | None = None,
        *,
        include_deleted: bool = True,
    ) -> list[SyncRecord]:
        """Records in ``scope`` with ``last_modified >= since`` (inclusive)."""

        return await self._run(self._list_since, collection, scope, since, include_deleted)

    def _list_since(
        self,
        collection: Collection,
        scope: str,
        since: datetime | None,
        include_deleted: bool,
    ) -> list[SyncRecord]:
        query = "SELECT payload FROM records WHERE collection = ? AND scope = ?"
        params: list[Any] = [collection.value, scope]
        if since is not None:
            query += " AND last_modified >= ?"
            params.append(format_timestamp(since))
        if not include_deleted:
            query += " AND is_deleted = 0"
        query += " ORDER BY last_modified ASC, id ASC"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        record_type = collection.record_type
        return [record_type.from_json(json.loads(row["payload"])) for row in rows]

    # ------------------------------------------------------------------
    # share tokens
    async def insert_token(self, token: ShareToken) -> bool:
        """Insert ``token``; returns ``False`` when the code is already taken."""

        return await self._run(self._insert_token, token)

    def _insert_token(self, token: ShareToken) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO share_tokens(code, pet_id, tier, created_by_id, created_by_name, created_at)
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (
                    token.code,
                    token.pet_id,
                    token.tier.value,
                    token.created_by_id,
                    token.created_by_name,
                    format_timestamp(token.created_at),
                ),
            )
            conn.commit()
            return cursor.rowcount == 1

    async def get_token(self, code: str) -> ShareToken | None:
        return await self._run(self._get_token, code)

    def _get_token(self, code: str) -> ShareToken | None:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM share_tokens WHERE code = ?", (code,)).fetchone()
        return _token_from_row(row) if row is not None else None

    async def list_tokens(self, pet_id: str) -> list[ShareToken]:
        return await self._run(self._list_tokens, pet_id)

    def _list_tokens(self, pet_id: str) -> list[ShareToken]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM share_tokens WHERE pet_id = ? ORDER BY created_at ASC, code ASC",
                (pet_id,),
            ).fetchall()
        return [_token_from_row(row) for row in rows]

    async def delete_token(self, code: str) -> bool:
        return await self._run(self._delete_token, code)

    def _delete_token(self, code: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM share_tokens WHERE code = ?", (code,))
            conn.commit()
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # redemptions
    async def upsert_redemption(self, redemption: Redemption) -> None:
        await self._run(self._upsert_redemption, redemption)

    def _upsert_redemption(self, redemption: Redemption) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO redemptions(pet_id, caller_id, code, display_name, tier, redeemed_at, revoked)
                VALUES(?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    redemption.pet_id,
                    redemption.caller_id,
                    redemption.code,
                    redemption.display_name,
                    redemption.tier.value,
                    format_timestamp(redemption.redeemed_at),
                    int(redemption.revoked),
                ),
            )
            conn.commit()

    async def get_redemption(self, pet_id: str, caller_id: str) -> Redemption | None:
        return await self._run(self._get_redemption, pet_id, caller_id)

    def _get_redemption(self, pet_id: str, caller_id: str) -> Redemption | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM redemptions WHERE pet_id = ? AND caller_id = ?",
                (pet_id, caller_id),
            ).fetchone()
        return _redemption_from_row(row) if row is not None else None

    async def list_redemptions(self, pet_id: str) -> list[Redemption]:
        return await self._run(self._list_redemptions, pet_id)

    def _list_redemptions(self, pet_id: str) -> list[Redemption]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM redemptions WHERE pet_id = ? ORDER BY redeemed_at ASC, caller_id ASC",
                (pet_id,),
            ).fetchall()
        return [_redemption_from_row(row) for row in rows]

    async def set_revoked(self, pet_id: str, caller_id: str, revoked: bool = True) -> bool:
        return await self._run(self._set_revoked, pet_id, caller_id, revoked)

    def _set_revoked(self, pet_id: str, caller_id: str, revoked: bool) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE redemptions SET revoked = ? WHERE pet_id = ? AND caller_id = ?",
                (int(revoked), pet_id, caller_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    async def delete_redemption(self, pet_id: str, caller_id: str) -> bool:
        return await self._run(self._delete_redemption, pet_id, caller_id)

    def _delete_redemption(self, pet_id: str, caller_id: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM redemptions WHERE pet_id = ? AND caller_id = ?",
                (pet_id, caller_id),
            )
            conn.commit()
            return cursor.rowcount > 0


def _token_from_row(row: sqlite3.Row) -> ShareToken:
    return ShareToken(
        code=row["code"],
        pet_id=row["pet_id"],
        tier=Tier(row["tier"]),
        created_by_id=row["created_by_id"],
        created_by_name=row["created_by_name"],
        created_at=parse_timestamp(row["created_at"]),
    )


def _redemption_from_row(row: sqlite3.Row) -> Redemption:
    return Redemption(
        pet_id=row["pet_id"],
        caller_id=row["caller_id"],
        code=row["code"],
        display_name=row["display_name"],
        tier=Tier(row["tier"]),
        redeemed_at=parse_timestamp(row["redeemed_at"]),
        revoked=bool(row["revoked"]),
    )


__all__ = ["RecordStore"]
