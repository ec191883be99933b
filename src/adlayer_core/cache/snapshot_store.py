"""Durable snapshot store: the last successful payload per query shape.

Backends implement the ``SnapshotStore`` protocol. ``GuardedSnapshotStore``
wraps any backend so that an unreachable store degrades to "no snapshot"
instead of failing the request.
"""
import asyncio
import itertools
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from ..upstream.exceptions import PersistenceUnavailableError
from .schema import init_snapshot_database


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotRecord:
    """One persisted payload for (store_id, endpoint, scope_id, variant)."""

    store_id: str
    endpoint: str
    scope_id: str
    variant: str
    payload: Any
    updated_at: datetime
    row_count: int = 0

    @property
    def is_empty(self) -> bool:
        return _is_empty_payload(self.payload)


def _is_empty_payload(payload: Any) -> bool:
    if payload is None:
        return True
    if isinstance(payload, (list, dict)):
        return len(payload) == 0
    return False


def _row_count(payload: Any) -> int:
    return len(payload) if isinstance(payload, list) else 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotStore(Protocol):
    """Keyed get/upsert persistence collaborator."""

    async def get(
        self, store_id: str, endpoint: str, scope_id: str, variant: str
    ) -> Optional[SnapshotRecord]:
        ...

    async def get_latest(
        self, store_id: str, endpoint: str, scope_id: str
    ) -> Optional[SnapshotRecord]:
        """Most recent record for the scope, any variant, skipping empty payloads."""
        ...

    async def get_recent(
        self, store_id: str, endpoint: str, limit: int = 50
    ) -> list[SnapshotRecord]:
        ...

    async def upsert(
        self,
        store_id: str,
        endpoint: str,
        scope_id: str,
        variant: str,
        payload: Any,
        updated_at: Optional[datetime] = None,
    ) -> None:
        ...


class InMemorySnapshotStore:
    """Dict-backed store for tests and single-process development."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str, str, str], tuple[int, SnapshotRecord]] = {}
        self._sequence = itertools.count()

    async def get(
        self, store_id: str, endpoint: str, scope_id: str, variant: str
    ) -> Optional[SnapshotRecord]:
        item = self._records.get((store_id, endpoint, scope_id, variant))
        return item[1] if item else None

    async def get_latest(
        self, store_id: str, endpoint: str, scope_id: str
    ) -> Optional[SnapshotRecord]:
        matches = [
            item
            for key, item in self._records.items()
            if key[:3] == (store_id, endpoint, scope_id) and not item[1].is_empty
        ]
        if not matches:
            return None
        return max(matches, key=lambda item: (item[1].updated_at, item[0]))[1]

    async def get_recent(
        self, store_id: str, endpoint: str, limit: int = 50
    ) -> list[SnapshotRecord]:
        matches = [
            item
            for key, item in self._records.items()
            if key[:2] == (store_id, endpoint)
        ]
        matches.sort(key=lambda item: (item[1].updated_at, item[0]), reverse=True)
        return [record for _, record in matches[: max(1, limit)]]

    async def upsert(
        self,
        store_id: str,
        endpoint: str,
        scope_id: str,
        variant: str,
        payload: Any,
        updated_at: Optional[datetime] = None,
    ) -> None:
        record = SnapshotRecord(
            store_id=store_id,
            endpoint=endpoint,
            scope_id=scope_id,
            variant=variant,
            payload=payload,
            updated_at=updated_at or _utcnow(),
            row_count=_row_count(payload),
        )
        self._records[(store_id, endpoint, scope_id, variant)] = (
            next(self._sequence),
            record,
        )


class SQLiteSnapshotStore:
    """SQLite-backed snapshot store (one row per key tuple).

    Queries run in a worker thread so the event loop is not blocked.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        init_snapshot_database(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as exc:
            raise PersistenceUnavailableError(f"Cannot open {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _to_record(row: sqlite3.Row) -> Optional[SnapshotRecord]:
        try:
            payload = json.loads(row["payload_json"])
        except (TypeError, ValueError):
            logger.warning(
                "Ignoring malformed snapshot payload: %s/%s/%s",
                row["endpoint"],
                row["scope_id"],
                row["variant_key"],
            )
            return None
        return SnapshotRecord(
            store_id=row["store_id"],
            endpoint=row["endpoint"],
            scope_id=row["scope_id"],
            variant=row["variant_key"],
            payload=payload,
            updated_at=datetime.fromisoformat(row["updated_at"]),
            row_count=row["row_count"],
        )

    def _query(self, sql: str, params: tuple) -> list[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceUnavailableError(str(exc)) from exc
        finally:
            conn.close()

    def _write(self, sql: str, params: tuple) -> None:
        conn = self._connect()
        try:
            conn.execute(sql, params)
            conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceUnavailableError(str(exc)) from exc
        finally:
            conn.close()

    async def get(
        self, store_id: str, endpoint: str, scope_id: str, variant: str
    ) -> Optional[SnapshotRecord]:
        rows = await asyncio.to_thread(
            self._query,
            """
            SELECT * FROM endpoint_snapshots
            WHERE store_id=? AND endpoint=? AND scope_id=? AND variant_key=?
            LIMIT 1
            """,
            (store_id, endpoint, scope_id, variant),
        )
        return self._to_record(rows[0]) if rows else None

    async def get_latest(
        self, store_id: str, endpoint: str, scope_id: str
    ) -> Optional[SnapshotRecord]:
        """Most recent record for the scope whose payload is not empty."""
        rows = await asyncio.to_thread(
            self._query,
            """
            SELECT * FROM endpoint_snapshots
            WHERE store_id=? AND endpoint=? AND scope_id=?
              AND payload_json NOT IN ('[]', '{}', 'null')
            ORDER BY updated_at DESC, id DESC
            LIMIT 1
            """,
            (store_id, endpoint, scope_id),
        )
        return self._to_record(rows[0]) if rows else None

    async def get_recent(
        self, store_id: str, endpoint: str, limit: int = 50
    ) -> list[SnapshotRecord]:
        rows = await asyncio.to_thread(
            self._query,
            """
            SELECT * FROM endpoint_snapshots
            WHERE store_id=? AND endpoint=?
            ORDER BY updated_at DESC, id DESC
            LIMIT ?
            """,
            (store_id, endpoint, max(1, limit)),
        )
        records = (self._to_record(row) for row in rows)
        return [record for record in records if record is not None]

    async def upsert(
        self,
        store_id: str,
        endpoint: str,
        scope_id: str,
        variant: str,
        payload: Any,
        updated_at: Optional[datetime] = None,
    ) -> None:
        stamp = (updated_at or _utcnow()).isoformat()
        await asyncio.to_thread(
            self._write,
            """
            INSERT INTO endpoint_snapshots (
                store_id, endpoint, scope_id, variant_key,
                row_count, payload_json, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(store_id, endpoint, scope_id, variant_key)
            DO UPDATE SET
                row_count=excluded.row_count,
                payload_json=excluded.payload_json,
                updated_at=excluded.updated_at
            """,
            (
                store_id,
                endpoint,
                scope_id,
                variant,
                _row_count(payload),
                json.dumps(payload, separators=(",", ":")),
                stamp,
            ),
        )


class GuardedSnapshotStore:
    """Wraps a backend so failures read as empty and writes are dropped.

    Records with empty payloads are also hidden from readers, so a snapshot
    of an empty response never shadows an older populated one.
    """

    def __init__(self, backend: SnapshotStore) -> None:
        self.backend = backend
        self.available = True

    def _mark_failed(self, operation: str, exc: Exception) -> None:
        if self.available:
            logger.warning("Snapshot store unavailable during %s: %s", operation, exc)
        self.available = False

    async def get(
        self, store_id: str, endpoint: str, scope_id: str, variant: str
    ) -> Optional[SnapshotRecord]:
        try:
            record = await self.backend.get(store_id, endpoint, scope_id, variant)
        except Exception as exc:
            self._mark_failed("get", exc)
            return None
        self.available = True
        if record is None or record.is_empty:
            return None
        return record

    async def get_latest(
        self, store_id: str, endpoint: str, scope_id: str
    ) -> Optional[SnapshotRecord]:
        try:
            record = await self.backend.get_latest(store_id, endpoint, scope_id)
        except Exception as exc:
            self._mark_failed("get_latest", exc)
            return None
        self.available = True
        if record is None or record.is_empty:
            return None
        return record

    async def get_recent(
        self, store_id: str, endpoint: str, limit: int = 50
    ) -> list[SnapshotRecord]:
        try:
            records = await self.backend.get_recent(store_id, endpoint, limit)
        except Exception as exc:
            self._mark_failed("get_recent", exc)
            return []
        self.available = True
        return [record for record in records if not record.is_empty]

    async def upsert(
        self,
        store_id: str,
        endpoint: str,
        scope_id: str,
        variant: str,
        payload: Any,
        updated_at: Optional[datetime] = None,
    ) -> None:
        try:
            await self.backend.upsert(
                store_id, endpoint, scope_id, variant, payload, updated_at=updated_at
            )
        except Exception as exc:
            self._mark_failed("upsert", exc)
            return
        self.available = True
