"""Redis-backed snapshot store for multi-process deployments.

Layout:
    adlayer:snapshot:<store>:<endpoint>:<scope>:<variant>   hash (payload_json, updated_at, row_count)
    adlayer:snapshot_scope:<store>:<endpoint>:<scope>       zset variant -> updated_at epoch
    adlayer:snapshot_recent:<store>:<endpoint>              zset "<scope>\\x1f<variant>" -> epoch
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..upstream.exceptions import PersistenceUnavailableError
from .snapshot_store import SnapshotRecord


logger = logging.getLogger(__name__)

_SEP = "\x1f"


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisSnapshotStore:
    """Snapshot store keeping one hash per key tuple plus sorted-set indexes."""

    KEY_PREFIX = "adlayer"

    def __init__(self, redis: Redis) -> None:
        """Initialize store.

        Args:
            redis: Injected redis.asyncio.Redis client
        """
        self.redis = redis

    def _record_key(self, store_id: str, endpoint: str, scope_id: str, variant: str) -> str:
        return f"{self.KEY_PREFIX}:snapshot:{store_id}:{endpoint}:{scope_id}:{variant}"

    def _scope_index(self, store_id: str, endpoint: str, scope_id: str) -> str:
        return f"{self.KEY_PREFIX}:snapshot_scope:{store_id}:{endpoint}:{scope_id}"

    def _recent_index(self, store_id: str, endpoint: str) -> str:
        return f"{self.KEY_PREFIX}:snapshot_recent:{store_id}:{endpoint}"

    async def _load(
        self, store_id: str, endpoint: str, scope_id: str, variant: str
    ) -> Optional[SnapshotRecord]:
        raw = await self.redis.hgetall(self._record_key(store_id, endpoint, scope_id, variant))
        if not raw:
            return None
        fields = {_text(k): _text(v) for k, v in raw.items()}
        try:
            payload = json.loads(fields["payload_json"])
            updated_at = datetime.fromisoformat(fields["updated_at"])
        except (KeyError, ValueError) as exc:
            logger.warning("Ignoring malformed Redis snapshot %s/%s: %s", endpoint, variant, exc)
            return None
        return SnapshotRecord(
            store_id=store_id,
            endpoint=endpoint,
            scope_id=scope_id,
            variant=variant,
            payload=payload,
            updated_at=updated_at,
            row_count=int(fields.get("row_count", "0") or 0),
        )

    async def get(
        self, store_id: str, endpoint: str, scope_id: str, variant: str
    ) -> Optional[SnapshotRecord]:
        try:
            return await self._load(store_id, endpoint, scope_id, variant)
        except RedisError as exc:
            raise PersistenceUnavailableError(str(exc)) from exc

    async def get_latest(
        self, store_id: str, endpoint: str, scope_id: str
    ) -> Optional[SnapshotRecord]:
        try:
            members = await self.redis.zrevrange(
                self._scope_index(store_id, endpoint, scope_id), 0, -1
            )
            for member in members:
                record = await self._load(store_id, endpoint, scope_id, _text(member))
                if record is not None and not record.is_empty:
                    return record
            return None
        except RedisError as exc:
            raise PersistenceUnavailableError(str(exc)) from exc

    async def get_recent(
        self, store_id: str, endpoint: str, limit: int = 50
    ) -> list[SnapshotRecord]:
        try:
            members = await self.redis.zrevrange(
                self._recent_index(store_id, endpoint), 0, max(1, limit) - 1
            )
            records: list[SnapshotRecord] = []
            for member in members:
                scope_id, _, variant = _text(member).partition(_SEP)
                record = await self._load(store_id, endpoint, scope_id, variant)
                if record is not None:
                    records.append(record)
            return records
        except RedisError as exc:
            raise PersistenceUnavailableError(str(exc)) from exc

    async def upsert(
        self,
        store_id: str,
        endpoint: str,
        scope_id: str,
        variant: str,
        payload: Any,
        updated_at: Optional[datetime] = None,
    ) -> None:
        stamp = updated_at or datetime.now(timezone.utc)
        score = stamp.timestamp()
        mapping = {
            "payload_json": json.dumps(payload, separators=(",", ":")),
            "updated_at": stamp.isoformat(),
            "row_count": str(len(payload) if isinstance(payload, list) else 0),
        }
        record_key = self._record_key(store_id, endpoint, scope_id, variant)
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                pipe.delete(record_key)
                pipe.hset(record_key, mapping=mapping)
                pipe.zadd(self._scope_index(store_id, endpoint, scope_id), {variant: score})
                pipe.zadd(
                    self._recent_index(store_id, endpoint),
                    {f"{scope_id}{_SEP}{variant}": score},
                )
                await pipe.execute()
        except RedisError as exc:
            raise PersistenceUnavailableError(str(exc)) from exc
