"""Audit section catalogue and composite snapshot persistence.

The audit view is a composite of independently fetched sections. The
composite is persisted through the snapshot store under the ``audit``
endpoint so a page load can show the last-known-good audit immediately.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from ..cache.snapshot_store import GuardedSnapshotStore
from ..fetch.endpoints import DEFAULT_DATE_PRESET, HOURLY_BREAKDOWN, insights_scope_id
from ..fetch.models import FetchRequest
from ..fetch.orchestrator import FetchOrchestrator
from ..upstream.client import TokenProvider
from ..upstream.exceptions import MissingCredentialsError
from .scheduler import RefreshMode, RefreshScheduler, Section


logger = logging.getLogger(__name__)

AUDIT_ENDPOINT = "audit"
COMPOSITE_VERSION = "audit-v1"
COMPOSITE_MAX_AGE = timedelta(days=7)

CREATIVE_TIMEOUT_S = 150.0
AD_COPY_TIMEOUT_S = 70.0
AD_COPY_MAX_ADSETS = 10

CORE_SECTIONS = ("overview", "targeting", "auction", "geo_demo", "creative")


def window_key(params: dict[str, Any]) -> str:
    """Scope for a composite: the date window it was computed over."""
    since = params.get("since")
    until = params.get("until")
    if since and until:
        return f"range:{since}_{until}"
    return f"preset:{params.get('date_preset') or DEFAULT_DATE_PRESET}"


def _window_params(params: dict[str, Any]) -> dict[str, Any]:
    return {k: params[k] for k in ("date_preset", "since", "until") if params.get(k)}


def build_audit_sections(
    orchestrator: FetchOrchestrator,
    store_id: str,
    ad_accounts: list[str],
) -> list[Section]:
    """Bind every audit section to the orchestrator for one store."""
    account_scope = insights_scope_id(account_ids=ad_accounts)

    async def insights(params: dict[str, Any], breakdowns: Optional[str] = None) -> Any:
        query = _window_params(params)
        if breakdowns:
            query["breakdowns"] = breakdowns
        result = await orchestrator.fetch(
            FetchRequest(
                store_id=store_id,
                endpoint="insights",
                scope_id=account_scope,
                params=query,
            )
        )
        return result.data

    async def per_account(endpoint: str, params: dict[str, Any], mode: str = "fast") -> list:
        results = await asyncio.gather(
            *(
                orchestrator.fetch(
                    FetchRequest(
                        store_id=store_id,
                        endpoint=endpoint,
                        scope_id=account,
                        params=_window_params(params),
                        mode=mode,
                    )
                )
                for account in ad_accounts
            )
        )
        rows: list = []
        for result in results:
            rows.extend(result.data or [])
        return rows

    async def overview(params: dict[str, Any]) -> Any:
        return await insights(params)

    async def targeting(params: dict[str, Any]) -> Any:
        return await insights(params, "publisher_platform,platform_position")

    async def auction(params: dict[str, Any]) -> Any:
        return await insights(params, HOURLY_BREAKDOWN)

    async def geo_demo(params: dict[str, Any]) -> Any:
        by_country, by_age_gender = await asyncio.gather(
            insights(params, "country"),
            insights(params, "age,gender"),
        )
        return {"country": by_country, "age_gender": by_age_gender}

    async def creative(params: dict[str, Any]) -> Any:
        return await per_account("campaigns", params)

    async def ad_copy(params: dict[str, Any]) -> Any:
        adsets = await per_account("adsets", params)
        adsets.sort(key=lambda row: row.get("metrics", {}).get("spend", 0), reverse=True)
        ranked = dict.fromkeys(row["id"] for row in adsets if row.get("id"))
        top = list(ranked)[:AD_COPY_MAX_ADSETS]
        results = await asyncio.gather(
            *(
                orchestrator.fetch(
                    FetchRequest(
                        store_id=store_id,
                        endpoint="ads",
                        scope_id=adset_id,
                        params=_window_params(params),
                        mode="audit",
                    )
                )
                for adset_id in top
            ),
            return_exceptions=True,
        )
        ads: list = []
        for adset_id, result in zip(top, results):
            if isinstance(result, BaseException):
                logger.warning("Ad copy fetch failed for adset %s: %s", adset_id, result)
                continue
            ads.extend(result.data or [])
        return ads

    return [
        Section("overview", overview),
        Section("targeting", targeting),
        Section("auction", auction),
        Section("geo_demo", geo_demo),
        Section("creative", creative, timeout_s=CREATIVE_TIMEOUT_S),
        Section("ad_copy", ad_copy, timeout_s=AD_COPY_TIMEOUT_S, deferred=True),
    ]


class AuditRefreshService:
    """Per-store audit schedulers plus composite snapshot load/save."""

    def __init__(
        self,
        orchestrator: FetchOrchestrator,
        tokens: TokenProvider,
        snapshots: Optional[GuardedSnapshotStore] = None,
        max_age: timedelta = COMPOSITE_MAX_AGE,
    ) -> None:
        self.orchestrator = orchestrator
        self.tokens = tokens
        self.snapshots = snapshots or orchestrator.snapshots
        self.max_age = max_age
        self._schedulers: dict[str, RefreshScheduler] = {}
        self._windows: dict[str, str] = {}
        self._background: set[asyncio.Task] = set()

    def scheduler(self, store_id: str) -> Optional[RefreshScheduler]:
        return self._schedulers.get(store_id)

    async def scheduler_for(self, store_id: str) -> RefreshScheduler:
        scheduler = self._schedulers.get(store_id)
        if scheduler is None:
            accounts = await self.tokens.get_ad_accounts(store_id)
            if not accounts:
                raise MissingCredentialsError(store_id)
            scheduler = RefreshScheduler(
                build_audit_sections(self.orchestrator, store_id, accounts)
            )
            self._schedulers[store_id] = scheduler
        return scheduler

    async def load_composite(self, store_id: str, window: str) -> Optional[dict[str, Any]]:
        """Last persisted composite for a window, if younger than max_age."""
        record = await self.snapshots.get(store_id, AUDIT_ENDPOINT, window, COMPOSITE_VERSION)
        if record is None or not isinstance(record.payload, dict):
            return None
        age = datetime.now(timezone.utc) - record.updated_at
        if age > self.max_age:
            logger.info("Audit snapshot for %s/%s expired (%s old)", store_id, window, age)
            return None
        return record.payload

    async def save_composite(self, store_id: str, window: str, results: dict[str, Any]) -> None:
        if not any(value is not None for value in results.values()):
            return
        await self.snapshots.upsert(store_id, AUDIT_ENDPOINT, window, COMPOSITE_VERSION, results)

    async def refresh(
        self,
        store_id: str,
        params: Optional[dict[str, Any]] = None,
        mode: RefreshMode = RefreshMode.FOREGROUND,
    ) -> dict[str, Any]:
        """Run a refresh and persist the merged composite.

        Raises:
            MissingCredentialsError: Store has no linked ad accounts
        """
        params = dict(params or {})
        scheduler = await self.scheduler_for(store_id)
        window = window_key(params)

        if self._windows.get(store_id) != window or not scheduler.results:
            scheduler.seed(await self.load_composite(store_id, window))
            self._windows[store_id] = window

        async def persist(results: dict[str, Any]) -> None:
            await self.save_composite(store_id, window, results)

        results = await scheduler.run(params, mode=mode, on_complete=persist)
        if RefreshMode(mode) == RefreshMode.FOREGROUND:
            await persist(results)
        return results

    def start_background(self, store_id: str, params: Optional[dict[str, Any]] = None) -> asyncio.Task:
        """Fire-and-forget background refresh."""
        task = asyncio.create_task(self.refresh(store_id, params, RefreshMode.BACKGROUND))
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background refresh failed: %s", task.exception())
