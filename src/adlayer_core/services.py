"""Wiring: build the shared cache, orchestrator, resolver and refresh services."""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import aiohttp
from redis.asyncio import Redis

from .attribution.resolver import AttributionResolver
from .cache.ephemeral import EphemeralCache
from .cache.redis_store import RedisSnapshotStore
from .cache.snapshot_store import (
    GuardedSnapshotStore,
    InMemorySnapshotStore,
    SnapshotStore,
    SQLiteSnapshotStore,
)
from .config import Settings
from .fetch.orchestrator import FetchOrchestrator
from .refresh.sections import AuditRefreshService
from .upstream.client import EnvTokenProvider, MetaGraphClient, TokenProvider


logger = logging.getLogger(__name__)


@dataclass
class AdLayerServices:
    """Process-wide service instances shared by every request."""

    settings: Settings
    client: MetaGraphClient
    tokens: TokenProvider
    snapshots: GuardedSnapshotStore
    cache: EphemeralCache
    orchestrator: FetchOrchestrator
    resolver: AttributionResolver
    refresh: AuditRefreshService

    @classmethod
    def build(
        cls,
        settings: Settings,
        client: MetaGraphClient,
        backend: SnapshotStore,
        tokens: Optional[TokenProvider] = None,
    ) -> "AdLayerServices":
        tokens = tokens or EnvTokenProvider(settings)
        snapshots = GuardedSnapshotStore(backend)
        cache = EphemeralCache(max_entries=settings.ephemeral_max_entries)
        orchestrator = FetchOrchestrator(
            client,
            tokens,
            snapshots,
            cache,
            retry_delay_s=settings.rate_limit_retry_delay_s,
        )
        return cls(
            settings=settings,
            client=client,
            tokens=tokens,
            snapshots=snapshots,
            cache=cache,
            orchestrator=orchestrator,
            resolver=AttributionResolver(
                client, tokens, snapshots, ttl_s=settings.attribution_ttl_s
            ),
            refresh=AuditRefreshService(orchestrator, tokens, snapshots),
        )


@asynccontextmanager
async def open_services(
    settings: Optional[Settings] = None,
    tokens: Optional[TokenProvider] = None,
) -> AsyncIterator[AdLayerServices]:
    """Open the HTTP session and snapshot backend for the process lifetime."""
    settings = settings or Settings.from_env()
    timeout = aiohttp.ClientTimeout(total=60, connect=10)

    async with aiohttp.ClientSession(timeout=timeout) as session:
        redis: Optional[Redis] = None
        if settings.snapshot_backend == "redis":
            redis = Redis.from_url(settings.redis_url, decode_responses=False)
            backend: SnapshotStore = RedisSnapshotStore(redis)
        elif settings.snapshot_backend == "memory":
            backend = InMemorySnapshotStore()
        else:
            backend = SQLiteSnapshotStore(settings.snapshot_db_path)
        logger.info("Snapshot backend: %s", settings.snapshot_backend)

        client = MetaGraphClient(session, settings.meta_graph_url)
        try:
            yield AdLayerServices.build(settings, client, backend, tokens)
        finally:
            if redis is not None:
                await redis.aclose()
