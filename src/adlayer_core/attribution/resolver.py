"""Resolve marketing names (UTM values) to ad-platform entity IDs.

Per store, the resolver lists campaigns, ad sets and ads for every linked
ad account and builds six normalized-name tables. A name that maps to two
distinct IDs is dropped from its table rather than resolved arbitrarily.
Scoped tables (keyed ``"<parent_id>|<name>"``) take precedence over the
name-only tables, so a name that is ambiguous store-wide can still resolve
within its parent.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from pydantic import BaseModel, Field

from ..cache.snapshot_store import GuardedSnapshotStore
from ..upstream.client import MetaGraphClient, TokenProvider
from ..upstream.exceptions import AdLayerError
from .normalize import best_fuzzy_match, compound_key, normalize_name


logger = logging.getLogger(__name__)

LOOKUP_TTL_S = 30 * 60
LISTING_ENDPOINT = "attribution_listing"
LISTING_VARIANT = "v1"

# (edge, fields, max_pages)
LISTINGS = (
    ("campaigns", "id,name", 5),
    ("adsets", "id,name,campaign_id", 8),
    ("ads", "id,name,adset_id,campaign_id", 8),
)


class ResolveRequest(BaseModel):
    """Marketing identifiers to resolve; IDs already known pass through."""

    campaign_name: Optional[str] = Field(None, description="utm_campaign")
    ad_set_name: Optional[str] = Field(None, description="utm_medium")
    ad_name: Optional[str] = Field(None, description="utm_content / utm_term")
    campaign_id: Optional[str] = None
    ad_set_id: Optional[str] = None
    ad_id: Optional[str] = None


class ResolvedIds(BaseModel):
    campaign_id: Optional[str] = None
    ad_set_id: Optional[str] = None
    ad_id: Optional[str] = None


@dataclass
class UniqueMap:
    """Name -> ID table that excludes names claimed by distinct IDs."""

    entries: dict[str, str] = field(default_factory=dict)
    ambiguous: set[str] = field(default_factory=set)

    @classmethod
    def build(cls, pairs: Iterable[tuple[str, str]]) -> "UniqueMap":
        seen: dict[str, str] = {}
        ambiguous: set[str] = set()
        for key, value in pairs:
            if not key or not value:
                continue
            previous = seen.setdefault(key, value)
            if previous != value:
                ambiguous.add(key)
        for key in ambiguous:
            seen.pop(key, None)
        return cls(entries=seen, ambiguous=ambiguous)

    def get(self, key: str) -> Optional[str]:
        return self.entries.get(key) if key else None

    def __contains__(self, key: str) -> bool:
        return key in self.entries

    def __len__(self) -> int:
        return len(self.entries)


def _scoped_pairs(rows: list[dict], parent_field: str) -> list[tuple[str, str]]:
    pairs = []
    for row in rows:
        parent = str(row.get(parent_field) or "")
        name = normalize_name(row.get("name"))
        if parent and name:
            pairs.append((compound_key(parent, name), str(row.get("id") or "")))
    return pairs


def _name_pairs(rows: list[dict]) -> list[tuple[str, str]]:
    return [(normalize_name(row.get("name")), str(row.get("id") or "")) for row in rows]


@dataclass
class LookupMaps:
    campaign_by_name: UniqueMap = field(default_factory=UniqueMap)
    ad_set_by_name: UniqueMap = field(default_factory=UniqueMap)
    ad_set_by_campaign_and_name: UniqueMap = field(default_factory=UniqueMap)
    ad_by_name: UniqueMap = field(default_factory=UniqueMap)
    ad_by_campaign_and_name: UniqueMap = field(default_factory=UniqueMap)
    ad_by_ad_set_and_name: UniqueMap = field(default_factory=UniqueMap)

    @classmethod
    def from_rows(
        cls, campaigns: list[dict], ad_sets: list[dict], ads: list[dict]
    ) -> "LookupMaps":
        return cls(
            campaign_by_name=UniqueMap.build(_name_pairs(campaigns)),
            ad_set_by_name=UniqueMap.build(_name_pairs(ad_sets)),
            ad_set_by_campaign_and_name=UniqueMap.build(_scoped_pairs(ad_sets, "campaign_id")),
            ad_by_name=UniqueMap.build(_name_pairs(ads)),
            ad_by_campaign_and_name=UniqueMap.build(_scoped_pairs(ads, "campaign_id")),
            ad_by_ad_set_and_name=UniqueMap.build(_scoped_pairs(ads, "adset_id")),
        )


@dataclass
class _CacheEntry:
    built_at: float
    maps: LookupMaps


class AttributionResolver:
    """Per-store lookup tables with a TTL and in-flight build dedupe."""

    def __init__(
        self,
        client: MetaGraphClient,
        tokens: TokenProvider,
        snapshots: Optional[GuardedSnapshotStore] = None,
        ttl_s: float = LOOKUP_TTL_S,
        fuzzy: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.tokens = tokens
        self.snapshots = snapshots
        self.ttl_s = ttl_s
        self.fuzzy = fuzzy
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}
        self._building: dict[str, asyncio.Task] = {}

    def invalidate(self, store_id: Optional[str] = None) -> None:
        if store_id is None:
            self._cache.clear()
        else:
            self._cache.pop(store_id, None)

    async def get_maps(self, store_id: str) -> LookupMaps:
        """Cached lookup maps for a store, rebuilt after the TTL.

        Concurrent callers share one in-flight build.
        """
        entry = self._cache.get(store_id)
        if entry is not None and self._clock() - entry.built_at < self.ttl_s:
            return entry.maps

        task = self._building.get(store_id)
        if task is None:
            task = asyncio.create_task(self._build(store_id))
            self._building[store_id] = task
            task.add_done_callback(lambda _t: self._building.pop(store_id, None))
        maps = await asyncio.shield(task)
        self._cache[store_id] = _CacheEntry(self._clock(), maps)
        return maps

    async def _build(self, store_id: str) -> LookupMaps:
        token = await self.tokens.get_token(store_id)
        if not token:
            logger.info("No Meta token for store=%s, attribution maps empty", store_id)
            return LookupMaps()
        accounts = await self.tokens.get_ad_accounts(store_id)
        if not accounts:
            return LookupMaps()

        rows: dict[str, list[dict]] = {edge: [] for edge, _, _ in LISTINGS}
        for account in accounts:
            for edge, fields, max_pages in LISTINGS:
                rows[edge].extend(
                    await self._list(store_id, token, account, edge, fields, max_pages)
                )

        maps = LookupMaps.from_rows(rows["campaigns"], rows["adsets"], rows["ads"])
        logger.info(
            "Built attribution maps for store=%s: %d campaigns, %d ad sets, %d ads",
            store_id,
            len(rows["campaigns"]),
            len(rows["adsets"]),
            len(rows["ads"]),
        )
        return maps

    async def _list(
        self,
        store_id: str,
        token: str,
        account: str,
        edge: str,
        fields: str,
        max_pages: int,
    ) -> list[dict]:
        scope = f"{account}/{edge}"
        try:
            listed = await self.client.fetch_all_pages(
                token,
                f"/{account}/{edge}",
                {"fields": fields, "limit": "300"},
                max_pages=max_pages,
            )
        except AdLayerError as exc:
            logger.warning("Listing %s failed for store=%s: %s", scope, store_id, exc)
            if self.snapshots is None:
                return []
            record = await self.snapshots.get(store_id, LISTING_ENDPOINT, scope, LISTING_VARIANT)
            if record is None:
                return []
            logger.info("Using snapshot of %s from %s", scope, record.updated_at.isoformat())
            return list(record.payload)

        if self.snapshots is not None and listed:
            await self.snapshots.upsert(store_id, LISTING_ENDPOINT, scope, LISTING_VARIANT, listed)
        return listed

    def _fallback_name(self, key: str, table: UniqueMap) -> Optional[str]:
        found = table.get(key)
        if found or not self.fuzzy:
            return found
        return best_fuzzy_match(key, table.entries, excluded=table.ambiguous)

    async def resolve(self, store_id: str, request: Optional[ResolveRequest] = None, **names: Any) -> ResolvedIds:
        """Resolve names to IDs with scoped precedence.

        Campaign by name. Ad set by (campaign, name), else by name. Ad by
        (ad set, name), else (campaign, name), else name. Unresolvable or
        ambiguous names yield None.

        Args:
            store_id: Store whose ad accounts are searched
            request: Names and known IDs; keyword arguments are accepted instead

        Returns:
            ResolvedIds with nullable campaign_id, ad_set_id, ad_id
        """
        request = request or ResolveRequest(**names)
        result = ResolvedIds(
            campaign_id=request.campaign_id,
            ad_set_id=request.ad_set_id,
            ad_id=request.ad_id,
        )
        campaign_key = normalize_name(request.campaign_name)
        ad_set_key = normalize_name(request.ad_set_name)
        ad_key = normalize_name(request.ad_name)

        wanted = (
            (campaign_key and not result.campaign_id)
            or (ad_set_key and not result.ad_set_id)
            or (ad_key and not result.ad_id)
        )
        if not wanted:
            return result

        maps = await self.get_maps(store_id)

        if campaign_key and not result.campaign_id:
            result.campaign_id = self._fallback_name(campaign_key, maps.campaign_by_name)

        if ad_set_key and not result.ad_set_id:
            if result.campaign_id:
                result.ad_set_id = maps.ad_set_by_campaign_and_name.get(
                    compound_key(result.campaign_id, ad_set_key)
                )
            if not result.ad_set_id:
                result.ad_set_id = self._fallback_name(ad_set_key, maps.ad_set_by_name)

        if ad_key and not result.ad_id:
            if result.ad_set_id:
                result.ad_id = maps.ad_by_ad_set_and_name.get(
                    compound_key(result.ad_set_id, ad_key)
                )
            if not result.ad_id and result.campaign_id:
                result.ad_id = maps.ad_by_campaign_and_name.get(
                    compound_key(result.campaign_id, ad_key)
                )
            if not result.ad_id:
                result.ad_id = self._fallback_name(ad_key, maps.ad_by_name)

        return result
