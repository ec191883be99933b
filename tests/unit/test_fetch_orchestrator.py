"""Unit tests for the cache/fetch/fallback cascade."""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.adlayer_core.cache.snapshot_store import GuardedSnapshotStore
from src.adlayer_core.fetch.endpoints import EndpointProfile
from src.adlayer_core.fetch.models import FetchRequest, StaleReason
from src.adlayer_core.fetch.orchestrator import FetchOrchestrator
from src.adlayer_core.upstream.exceptions import (
    FetchFailedError,
    MissingCredentialsError,
    PersistenceUnavailableError,
    RateLimitedError,
    UpstreamError,
)


T0 = datetime(2024, 12, 1, tzinfo=timezone.utc)

ROWS = [{"id": "ad_1", "metrics": {"spend": 12.5, "impressions": 100, "conversions": 1}}]
ZERO_ROWS = [{"id": "ad_1", "metrics": {"spend": 0, "impressions": 0, "conversions": 0}}]
BASIC_ROWS = [{"id": "ad_1", "metrics": {}}]


def _profiles(fetch, degraded=None, insights_fetch=None, deep_ceiling_s=18.0):
    return {
        "ads": EndpointProfile(
            name="ads",
            fetch=fetch,
            degraded_fetch=degraded,
            deep_modes=frozenset({"audit"}),
            deep_ceiling_s=deep_ceiling_s,
        ),
        "insights": EndpointProfile(
            name="insights",
            fetch=insights_fetch or AsyncMock(return_value=ROWS),
            ttl_s=600,
            default_window={"date_preset": "last_30d"},
        ),
    }


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def make_orchestrator(tokens, snapshots, cache, sleep):
    def factory(profiles, store=None):
        return FetchOrchestrator(
            client=MagicMock(),
            tokens=tokens,
            snapshots=store or snapshots,
            cache=cache,
            profiles=profiles,
            retry_delay_s=0.6,
            sleep=sleep,
        )

    return factory


def _ads_request(**overrides):
    fields = {"store_id": "S", "endpoint": "ads", "scope_id": "as_1", "params": {"date_preset": "last_7d"}}
    fields.update(overrides)
    return FetchRequest(**fields)


# ------------------------------------------------------------
# Scenario A: live fetch, write-through, ephemeral hit
# ------------------------------------------------------------

@pytest.mark.asyncio
async def test_live_fetch_writes_cache_and_snapshots_then_serves_ephemeral(
    make_orchestrator, backend, cache
):
    fetch = AsyncMock(return_value=ROWS)
    orchestrator = make_orchestrator(_profiles(fetch))
    request = _ads_request()
    variants = orchestrator.variants_for(request)

    first = await orchestrator.fetch(request)

    assert first.data == ROWS
    assert (first.cached, first.stale, first.stale_reason) == (False, False, None)
    assert fetch.await_count == 1
    assert len(cache) == 1
    assert (await backend.get("S", "ads", "as_1", variants.exact.encode())).payload == ROWS
    assert (await backend.get("S", "ads", "as_1", variants.latest.encode())).payload == ROWS

    second = await orchestrator.fetch(_ads_request())

    assert second.data == ROWS
    assert second.cached is True
    assert second.stale is False
    assert fetch.await_count == 1


@pytest.mark.asyncio
async def test_equivalent_params_share_cache_entry(make_orchestrator):
    fetch = AsyncMock(return_value=ROWS)
    orchestrator = make_orchestrator(_profiles(fetch))

    await orchestrator.fetch(_ads_request(params={"breakdowns": "age,gender", "date_preset": "last_7d"}))
    again = await orchestrator.fetch(
        _ads_request(params={"date_preset": "last_7d", "breakdowns": "gender, age"})
    )

    assert again.cached is True
    assert fetch.await_count == 1


@pytest.mark.asyncio
async def test_ephemeral_entry_expires_after_ttl(make_orchestrator, clock):
    fetch = AsyncMock(return_value=ROWS)
    orchestrator = make_orchestrator(_profiles(fetch))

    await orchestrator.fetch(_ads_request())
    clock.advance(31 * 60)
    result = await orchestrator.fetch(_ads_request())

    assert result.cached is False
    assert fetch.await_count == 2


# ------------------------------------------------------------
# Scenario B: rate limit, one retry
# ------------------------------------------------------------

@pytest.mark.asyncio
async def test_rate_limited_first_attempt_retries_once(make_orchestrator, sleep):
    fetch = AsyncMock(side_effect=[RateLimitedError("/as_1/ads"), ROWS])
    orchestrator = make_orchestrator(_profiles(fetch))

    result = await orchestrator.fetch(_ads_request())

    assert result.data == ROWS
    assert result.stale is False
    assert result.cached is False
    assert fetch.await_count == 2
    sleep.assert_awaited_once_with(0.6)


@pytest.mark.asyncio
async def test_rate_limited_twice_with_nothing_cached_surfaces_rate_limit(make_orchestrator, sleep):
    fetch = AsyncMock(side_effect=RateLimitedError("/as_1/ads"))
    orchestrator = make_orchestrator(_profiles(fetch))

    with pytest.raises(RateLimitedError):
        await orchestrator.fetch(_ads_request())

    assert fetch.await_count == 2
    assert sleep.await_count == 1


# ------------------------------------------------------------
# Scenario C: degraded fetch
# ------------------------------------------------------------

@pytest.mark.asyncio
async def test_degraded_fetch_when_every_cached_tier_is_empty(make_orchestrator):
    fetch = AsyncMock(side_effect=UpstreamError("boom", status=500))
    degraded = AsyncMock(return_value=BASIC_ROWS)
    orchestrator = make_orchestrator(_profiles(fetch, degraded))

    result = await orchestrator.fetch(_ads_request())

    assert result.data == BASIC_ROWS
    assert result.fallback_mode == "basic"
    degraded.assert_awaited_once()


@pytest.mark.asyncio
async def test_degraded_fetch_skipped_for_deep_mode(make_orchestrator):
    async def slow(ctx):
        await asyncio.sleep(5)
        return ROWS

    degraded = AsyncMock(return_value=BASIC_ROWS)
    orchestrator = make_orchestrator(_profiles(slow, degraded, deep_ceiling_s=0.05))

    with pytest.raises(FetchFailedError) as exc_info:
        await orchestrator.fetch(_ads_request(mode="audit"))

    assert "timeout" in str(exc_info.value).lower()
    degraded.assert_not_awaited()


@pytest.mark.asyncio
async def test_generic_failure_when_every_tier_is_exhausted(make_orchestrator):
    fetch = AsyncMock(side_effect=UpstreamError("boom", status=500))
    degraded = AsyncMock(side_effect=UpstreamError("still down", status=500))
    orchestrator = make_orchestrator(_profiles(fetch, degraded))

    with pytest.raises(FetchFailedError):
        await orchestrator.fetch(_ads_request())


# ------------------------------------------------------------
# prefer_cache snapshot tiers
# ------------------------------------------------------------

async def _seed_insights(orchestrator, backend, request, tiers):
    variants = orchestrator.variants_for(request)
    keys = {
        "exact": variants.exact.encode(),
        "broad": variants.broad.encode(),
        "latest": variants.latest.encode(),
        "other": "mode:basic|date_preset:last_90d",
    }
    # Oldest first so the exact variant carries the oldest timestamp.
    for offset, name in enumerate(["exact", "broad", "latest", "other"]):
        if name in tiers:
            await backend.upsert(
                "S", "insights", "accounts:act_1", keys[name], [{"tier": name}],
                updated_at=T0 + timedelta(hours=offset),
            )


def _insights_request(**overrides):
    fields = {"store_id": "S", "endpoint": "insights", "scope_id": "accounts:act_1", "prefer_cache": True}
    fields.update(overrides)
    return FetchRequest(**fields)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "tiers, expected, reason",
    [
        ({"exact", "broad", "latest", "other"}, "exact", StaleReason.SNAPSHOT_EXACT_FAST),
        ({"broad", "latest", "other"}, "broad", StaleReason.SNAPSHOT_DEFAULT_WINDOW_FAST),
        ({"latest", "other"}, "latest", StaleReason.SNAPSHOT_LATEST_POINTER_FAST),
        ({"other"}, "other", StaleReason.SNAPSHOT_LATEST_FAST),
    ],
)
async def test_prefer_cache_tier_priority_ignores_timestamps(
    make_orchestrator, backend, tiers, expected, reason
):
    insights_fetch = AsyncMock(return_value=ROWS)
    orchestrator = make_orchestrator(_profiles(AsyncMock(), insights_fetch=insights_fetch))
    request = _insights_request()
    await _seed_insights(orchestrator, backend, request, tiers)

    result = await orchestrator.fetch(request)

    assert result.data == [{"tier": expected}]
    assert result.stale is True
    assert result.cached is True
    assert result.stale_reason == reason
    assert result.snapshot_at is not None
    insights_fetch.assert_not_awaited()


@pytest.mark.asyncio
async def test_prefer_cache_strict_preset_skips_default_window(make_orchestrator, backend):
    orchestrator = make_orchestrator(_profiles(AsyncMock()))
    default_request = _insights_request()
    await _seed_insights(orchestrator, backend, default_request, {"broad"})
    strict_request = _insights_request(params={"date_preset": "last_7d"})

    result = await orchestrator.fetch(strict_request)

    # The broad record is still the scope's most recent snapshot.
    assert result.stale_reason == StaleReason.SNAPSHOT_LATEST_FAST


@pytest.mark.asyncio
async def test_prefer_cache_goes_live_when_no_snapshot(make_orchestrator):
    insights_fetch = AsyncMock(return_value=ROWS)
    orchestrator = make_orchestrator(_profiles(AsyncMock(), insights_fetch=insights_fetch))

    result = await orchestrator.fetch(_insights_request())

    assert result.stale is False
    insights_fetch.assert_awaited_once()


# ------------------------------------------------------------
# Live-error fallback tiers
# ------------------------------------------------------------

@pytest.mark.asyncio
async def test_live_error_serves_expired_ephemeral_entry(make_orchestrator, clock):
    fetch = AsyncMock(side_effect=[ROWS, UpstreamError("boom", status=500)])
    orchestrator = make_orchestrator(_profiles(fetch))

    await orchestrator.fetch(_ads_request())
    clock.advance(31 * 60)
    result = await orchestrator.fetch(_ads_request())

    assert result.data == ROWS
    assert result.stale is True
    assert result.stale_reason == StaleReason.LIVE_ERROR_EPHEMERAL


@pytest.mark.asyncio
async def test_live_error_ephemeral_matches_other_variant_of_scope(make_orchestrator):
    fetch = AsyncMock(side_effect=[ROWS, UpstreamError("boom", status=500)])
    orchestrator = make_orchestrator(_profiles(fetch))

    await orchestrator.fetch(_ads_request(params={"date_preset": "last_7d"}))
    result = await orchestrator.fetch(_ads_request(params={"date_preset": "last_14d"}))

    assert result.stale_reason == StaleReason.LIVE_ERROR_EPHEMERAL


@pytest.mark.asyncio
async def test_live_error_prefers_exact_over_newer_variant(make_orchestrator, backend):
    fetch = AsyncMock(side_effect=UpstreamError("boom", status=500))
    orchestrator = make_orchestrator(_profiles(fetch))
    request = _ads_request()
    exact = orchestrator.variants_for(request).exact.encode()
    await backend.upsert("S", "ads", "as_1", exact, ["exact"], updated_at=T0)
    await backend.upsert("S", "ads", "as_1", "mode:basic", ["newer"], updated_at=T0 + timedelta(days=1))

    result = await orchestrator.fetch(request)

    assert result.data == ["exact"]
    assert result.stale_reason == StaleReason.LIVE_ERROR_EXACT
    assert result.snapshot_at == T0


@pytest.mark.asyncio
async def test_live_error_falls_back_to_scope_latest(make_orchestrator, backend):
    fetch = AsyncMock(side_effect=UpstreamError("boom", status=500))
    degraded = AsyncMock(return_value=BASIC_ROWS)
    orchestrator = make_orchestrator(_profiles(fetch, degraded))
    await backend.upsert("S", "ads", "as_1", "mode:basic", ["any"], updated_at=T0)

    result = await orchestrator.fetch(_ads_request())

    assert result.data == ["any"]
    assert result.stale_reason == StaleReason.LIVE_ERROR_LATEST
    degraded.assert_not_awaited()


@pytest.mark.asyncio
async def test_live_error_skips_empty_ephemeral_entry_for_populated_variant(
    make_orchestrator, clock
):
    fetch = AsyncMock(side_effect=[ROWS, [], UpstreamError("boom", status=500)])
    orchestrator = make_orchestrator(_profiles(fetch))

    await orchestrator.fetch(_ads_request(params={"date_preset": "last_7d"}))
    empty = await orchestrator.fetch(_ads_request(params={"date_preset": "last_14d"}))
    assert empty.data == []
    clock.advance(31 * 60)

    result = await orchestrator.fetch(_ads_request(params={"date_preset": "last_14d"}))

    assert result.data == ROWS
    assert result.stale is True
    assert result.stale_reason == StaleReason.LIVE_ERROR_EPHEMERAL


@pytest.mark.asyncio
async def test_live_error_latest_skips_newer_empty_snapshot(make_orchestrator, backend):
    fetch = AsyncMock(side_effect=UpstreamError("boom", status=500))
    orchestrator = make_orchestrator(_profiles(fetch))
    await backend.upsert("S", "ads", "as_1", "mode:basic", ROWS, updated_at=T0)
    await backend.upsert("S", "ads", "as_1", "mode:fast", [], updated_at=T0 + timedelta(days=1))

    result = await orchestrator.fetch(_ads_request())

    assert result.data == ROWS
    assert result.stale_reason == StaleReason.LIVE_ERROR_LATEST
    assert result.snapshot_at == T0


@pytest.mark.asyncio
async def test_rate_limit_after_retry_still_serves_snapshot(make_orchestrator, backend):
    fetch = AsyncMock(side_effect=RateLimitedError("/as_1/ads"))
    orchestrator = make_orchestrator(_profiles(fetch))
    await backend.upsert("S", "ads", "as_1", "mode:basic", ["any"], updated_at=T0)

    result = await orchestrator.fetch(_ads_request())

    assert result.stale is True
    assert result.stale_reason == StaleReason.LIVE_ERROR_LATEST


# ------------------------------------------------------------
# Credentials, persistence, write policy
# ------------------------------------------------------------

@pytest.mark.asyncio
async def test_missing_token_without_cache_raises(make_orchestrator, tokens):
    tokens.token = None
    fetch = AsyncMock(return_value=ROWS)
    orchestrator = make_orchestrator(_profiles(fetch))

    with pytest.raises(MissingCredentialsError):
        await orchestrator.fetch(_ads_request())

    fetch.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_token_serves_snapshot(make_orchestrator, tokens, backend):
    tokens.token = None
    orchestrator = make_orchestrator(_profiles(AsyncMock()))
    exact = orchestrator.variants_for(_ads_request()).exact.encode()
    await backend.upsert("S", "ads", "as_1", exact, ROWS)

    result = await orchestrator.fetch(_ads_request())

    assert result.stale_reason == StaleReason.LIVE_ERROR_EXACT


@pytest.mark.asyncio
async def test_unavailable_snapshot_store_is_not_fatal(make_orchestrator):
    broken = AsyncMock()
    for name in ("get", "get_latest", "get_recent", "upsert"):
        getattr(broken, name).side_effect = PersistenceUnavailableError("down")
    store = GuardedSnapshotStore(broken)
    fetch = AsyncMock(return_value=ROWS)
    orchestrator = make_orchestrator(_profiles(fetch), store=store)

    result = await orchestrator.fetch(_ads_request(prefer_cache=True))

    assert result.data == ROWS
    assert result.stale is False
    assert store.available is False


@pytest.mark.asyncio
async def test_broad_variant_written_only_with_signal(make_orchestrator, backend):
    fetch = AsyncMock(side_effect=[ZERO_ROWS, ROWS])
    orchestrator = make_orchestrator(_profiles(fetch))
    quiet = _ads_request(scope_id="as_quiet")
    busy = _ads_request(scope_id="as_busy")

    await orchestrator.fetch(quiet)
    await orchestrator.fetch(busy)

    broad_quiet = orchestrator.variants_for(quiet).broad.encode()
    broad_busy = orchestrator.variants_for(busy).broad.encode()
    assert await backend.get("S", "ads", "as_quiet", broad_quiet) is None
    assert (await backend.get("S", "ads", "as_busy", broad_busy)).payload == ROWS


@pytest.mark.asyncio
async def test_insights_default_window_is_filled_and_written(make_orchestrator, backend):
    insights_fetch = AsyncMock(return_value=ROWS)
    orchestrator = make_orchestrator(_profiles(AsyncMock(), insights_fetch=insights_fetch))
    request = _insights_request(prefer_cache=False)

    await orchestrator.fetch(request)

    ctx = insights_fetch.await_args.args[0]
    assert ctx.request.params == {"date_preset": "last_30d"}
    variants = orchestrator.variants_for(request)
    assert variants.is_strict is False
    assert await backend.get("S", "insights", "accounts:act_1", variants.broad.encode()) is not None


@pytest.mark.asyncio
async def test_explicit_preset_does_not_overwrite_default_window(make_orchestrator, backend):
    orchestrator = make_orchestrator(_profiles(AsyncMock()))
    request = _insights_request(prefer_cache=False, params={"date_preset": "last_7d"})

    await orchestrator.fetch(request)

    broad = orchestrator.variants_for(request).broad.encode()
    assert await backend.get("S", "insights", "accounts:act_1", broad) is None


@pytest.mark.asyncio
async def test_unknown_endpoint(make_orchestrator):
    orchestrator = make_orchestrator(_profiles(AsyncMock()))

    with pytest.raises(ValueError):
        await orchestrator.fetch(_ads_request(endpoint="nope"))
