"""Cache/fetch/fallback cascade fronting the upstream API.

Read path for one request:

    fresh ephemeral entry
    -> (prefer_cache) exact snapshot -> default-window snapshot (non-strict only)
       -> variant-qualified latest pointer -> scope's most recent snapshot
    -> live fetch (one retry on rate limiting; deep modes raced against a ceiling)
    -> on failure: ephemeral entry for the scope -> exact snapshot
       -> scope's most recent snapshot -> degraded live fetch
       -> RateLimitedError / FetchFailedError

Tiers are always consulted in this order.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from ..cache.ephemeral import EphemeralCache
from ..cache.snapshot_store import GuardedSnapshotStore, SnapshotRecord, SnapshotStore
from ..cache.variants import VariantSet, derive_variants
from ..upstream.client import MetaGraphClient, TokenProvider
from ..upstream.exceptions import (
    FetchFailedError,
    MissingCredentialsError,
    RateLimitedError,
    UpstreamTimeoutError,
)
from .endpoints import DEFAULT_PROFILES, EndpointProfile, FetchContext
from .models import FetchRequest, FetchResult, StaleReason


class FetchOrchestrator:
    """Serves FetchRequests through the cascade.

    The ephemeral cache and snapshot store are injected so tests and
    processes can hold isolated instances.
    """

    RATE_LIMIT_RETRY_DELAY_S = 0.6
    LIVE_ATTEMPTS = 2

    def __init__(
        self,
        client: MetaGraphClient,
        tokens: TokenProvider,
        snapshots: SnapshotStore,
        cache: EphemeralCache,
        profiles: Optional[dict[str, EndpointProfile]] = None,
        retry_delay_s: float = RATE_LIMIT_RETRY_DELAY_S,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            client: Upstream Graph API client
            tokens: Credential provider (token + linked ad accounts per store)
            snapshots: Durable snapshot store; wrapped so failures are non-fatal
            cache: Ephemeral cache instance
            profiles: Endpoint profiles keyed by endpoint name
            retry_delay_s: Fixed delay before the single rate-limit retry
            sleep: Injected sleep coroutine
            logger: Optional logger instance
        """
        self.client = client
        self.tokens = tokens
        if not isinstance(snapshots, GuardedSnapshotStore):
            snapshots = GuardedSnapshotStore(snapshots)
        self.snapshots = snapshots
        self.cache = cache
        self.profiles = dict(profiles or DEFAULT_PROFILES)
        self.retry_delay_s = retry_delay_s
        self._sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------

    def profile_for(self, endpoint: str) -> EndpointProfile:
        try:
            return self.profiles[endpoint]
        except KeyError:
            raise ValueError(f"Unknown endpoint: {endpoint}") from None

    def variants_for(self, request: FetchRequest) -> VariantSet:
        profile = self.profile_for(request.endpoint)
        return derive_variants(
            self._with_default_window(request, profile).variant_params,
            profile.window_params,
            profile.default_window,
            request.strict_date,
        )

    async def fetch(self, request: FetchRequest) -> FetchResult:
        """Serve a request through the cascade.

        Raises:
            ValueError: Unknown endpoint
            RateLimitedError: Every tier exhausted and the live failure was throttling
            MissingCredentialsError: No token and nothing cached
            FetchFailedError: Every tier exhausted
        """
        profile = self.profile_for(request.endpoint)
        request = self._with_default_window(request, profile)
        variants = derive_variants(
            request.variant_params,
            profile.window_params,
            profile.default_window,
            request.strict_date,
        )
        cache_key = (
            request.store_id,
            request.endpoint,
            request.scope_id,
            variants.exact.encode(),
        )

        entry = self.cache.get(cache_key, profile.ttl_s)
        if entry is not None:
            self.logger.debug("Ephemeral hit: %s", cache_key)
            return FetchResult(data=entry.payload, cached=True)

        if request.prefer_cache:
            served = await self._serve_preferred_snapshot(request, variants)
            if served is not None:
                return served

        ctx: Optional[FetchContext] = None
        try:
            ctx = await self._build_context(request, profile)
            payload = await self._fetch_live(profile, ctx)
        except Exception as exc:
            return await self._fallback(request, profile, variants, cache_key, ctx, exc)

        await self._store_success(request, profile, variants, cache_key, payload)
        return FetchResult(data=payload)

    # ------------------------------------------------------------
    # Cascade tiers
    # ------------------------------------------------------------

    @staticmethod
    def _with_default_window(request: FetchRequest, profile: EndpointProfile) -> FetchRequest:
        if profile.default_window is None:
            return request
        if any(request.params.get(name) for name in profile.window_params):
            return request
        return request.model_copy(
            update={"params": {**request.params, **profile.default_window}}
        )

    @staticmethod
    def _stale(record: SnapshotRecord, reason: StaleReason) -> FetchResult:
        return FetchResult(
            data=record.payload,
            cached=True,
            stale=True,
            stale_reason=reason,
            snapshot_at=record.updated_at,
        )

    async def _serve_preferred_snapshot(
        self, request: FetchRequest, variants: VariantSet
    ) -> Optional[FetchResult]:
        key = (request.store_id, request.endpoint, request.scope_id)

        tiers: list[tuple[StaleReason, Optional[str]]] = [
            (StaleReason.SNAPSHOT_EXACT_FAST, variants.exact.encode()),
        ]
        if not variants.is_strict:
            tiers.append((StaleReason.SNAPSHOT_DEFAULT_WINDOW_FAST, variants.broad.encode()))
        tiers.append((StaleReason.SNAPSHOT_LATEST_POINTER_FAST, variants.latest.encode()))
        tiers.append((StaleReason.SNAPSHOT_LATEST_FAST, None))

        for reason, variant in tiers:
            if variant is None:
                record = await self.snapshots.get_latest(*key)
            else:
                record = await self.snapshots.get(*key, variant)
            if record is not None:
                self.logger.info("Serving %s for %s/%s", reason.value, request.endpoint, request.scope_id)
                return self._stale(record, reason)
        return None

    async def _build_context(
        self, request: FetchRequest, profile: EndpointProfile
    ) -> FetchContext:
        token = await self.tokens.get_token(request.store_id)
        if not token:
            raise MissingCredentialsError(request.store_id)
        accounts = await self.tokens.get_ad_accounts(request.store_id)
        return FetchContext(
            client=self.client,
            access_token=token,
            request=request,
            timeout_s=profile.timeout_s,
            ad_accounts=accounts,
        )

    async def _run_attempt(self, profile: EndpointProfile, ctx: FetchContext) -> Any:
        if ctx.request.mode not in profile.deep_modes:
            return await profile.fetch(ctx)
        try:
            return await asyncio.wait_for(profile.fetch(ctx), timeout=profile.deep_ceiling_s)
        except asyncio.TimeoutError as exc:
            raise UpstreamTimeoutError(
                f"{profile.name}:{ctx.request.mode}", profile.deep_ceiling_s
            ) from exc

    async def _fetch_live(self, profile: EndpointProfile, ctx: FetchContext) -> Any:
        attempt = 0
        while True:
            try:
                return await self._run_attempt(profile, ctx)
            except RateLimitedError:
                attempt += 1
                if attempt >= self.LIVE_ATTEMPTS:
                    raise
                self.logger.warning(
                    "Rate limited on %s/%s, retrying in %.1fs",
                    profile.name,
                    ctx.request.scope_id,
                    self.retry_delay_s,
                )
                await self._sleep(self.retry_delay_s)

    async def _store_success(
        self,
        request: FetchRequest,
        profile: EndpointProfile,
        variants: VariantSet,
        cache_key: tuple[str, str, str, str],
        payload: Any,
    ) -> None:
        self.cache.set(cache_key, payload)

        key = (request.store_id, request.endpoint, request.scope_id)
        writes = [
            self.snapshots.upsert(*key, variants.exact.encode(), payload),
            self.snapshots.upsert(*key, variants.latest.encode(), payload),
        ]
        window_is_default = profile.default_window is None or not variants.is_strict
        if window_is_default and profile.has_signal(payload):
            writes.append(self.snapshots.upsert(*key, variants.broad.encode(), payload))
        await asyncio.gather(*writes)

    async def _fallback(
        self,
        request: FetchRequest,
        profile: EndpointProfile,
        variants: VariantSet,
        cache_key: tuple[str, str, str, str],
        ctx: Optional[FetchContext],
        exc: Exception,
    ) -> FetchResult:
        self.logger.warning(
            "Live fetch failed for %s/%s (%s): %s",
            request.endpoint,
            request.scope_id,
            type(exc).__name__,
            exc,
        )
        key = (request.store_id, request.endpoint, request.scope_id)

        entry = self.cache.peek(cache_key)
        if entry is None or entry.is_empty:
            entry = self.cache.find_freshest(*key)
        if entry is not None:
            self.logger.info("Serving ephemeral fallback for %s/%s", request.endpoint, request.scope_id)
            return FetchResult(
                data=entry.payload,
                cached=True,
                stale=True,
                stale_reason=StaleReason.LIVE_ERROR_EPHEMERAL,
                snapshot_at=entry.stored_at,
            )

        record = await self.snapshots.get(*key, variants.exact.encode())
        if record is not None:
            return self._stale(record, StaleReason.LIVE_ERROR_EXACT)

        record = await self.snapshots.get_latest(*key)
        if record is not None:
            return self._stale(record, StaleReason.LIVE_ERROR_LATEST)

        if (
            ctx is not None
            and profile.degraded_fetch is not None
            and request.mode not in profile.deep_modes
        ):
            try:
                payload = await profile.degraded_fetch(ctx)
            except Exception as degraded_exc:
                self.logger.warning(
                    "Degraded fetch failed for %s/%s: %s",
                    request.endpoint,
                    request.scope_id,
                    degraded_exc,
                )
            else:
                self.logger.info("Serving basic fallback for %s/%s", request.endpoint, request.scope_id)
                return FetchResult(data=payload, fallback_mode="basic")

        if isinstance(exc, (RateLimitedError, MissingCredentialsError)):
            raise exc
        raise FetchFailedError(
            f"Failed to fetch {request.endpoint} for scope={request.scope_id}: {exc}"
        ) from exc
