"""Endpoint profiles: how each logical query family is fetched live.

A profile bundles the live fetcher with the cascade policy knobs the
orchestrator needs (TTL, deadline, default window, degraded fetcher,
signal check).
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

from ..upstream.client import MetaGraphClient
from ..upstream.exceptions import UpstreamError
from .models import FetchRequest


logger = logging.getLogger(__name__)


HOURLY_BREAKDOWN = "hourly_stats_aggregated_by_advertiser_time_zone"
DEFAULT_DATE_PRESET = "last_30d"
WINDOW_PARAMS = ("date_preset", "since", "until")

INSIGHT_FIELDS = [
    "date_start",
    "date_stop",
    "spend",
    "impressions",
    "reach",
    "clicks",
    "actions",
    "action_values",
]

# Meta reports the same event under several action types; first match wins.
ACTION_PRIORITY: dict[str, list[str]] = {
    "conversions": ["offsite_conversion.fb_pixel_purchase", "purchase"],
    "add_to_cart": ["offsite_conversion.fb_pixel_add_to_cart", "add_to_cart"],
    "initiate_checkout": [
        "offsite_conversion.fb_pixel_initiate_checkout",
        "initiate_checkout",
    ],
    "leads": ["offsite_conversion.fb_pixel_lead", "lead"],
    "link_clicks": ["link_click"],
    "landing_page_views": ["landing_page_view"],
}
VALUE_PRIORITY: dict[str, list[str]] = {
    "revenue": ["offsite_conversion.fb_pixel_purchase", "purchase", "omni_purchase"],
}
SUMMED_METRICS = (
    "spend",
    "impressions",
    "reach",
    "clicks",
    *ACTION_PRIORITY.keys(),
    *VALUE_PRIORITY.keys(),
)


@dataclass(frozen=True)
class FetchContext:
    """Everything a live fetcher needs for one attempt."""

    client: MetaGraphClient
    access_token: str
    request: FetchRequest
    timeout_s: float
    ad_accounts: list[str] = field(default_factory=list)


Fetcher = Callable[[FetchContext], Awaitable[Any]]


def has_metric_signal(rows: Any) -> bool:
    """True if any row reports spend, impressions or conversions."""
    if not isinstance(rows, list):
        return bool(rows)
    for row in rows:
        metrics = row.get("metrics") if isinstance(row, dict) else None
        if not metrics:
            continue
        if any((metrics.get(key) or 0) > 0 for key in ("spend", "impressions", "conversions")):
            return True
    return False


@dataclass(frozen=True)
class EndpointProfile:
    """Cascade policy and live fetchers for one endpoint family."""

    name: str
    fetch: Fetcher
    ttl_s: float = 30 * 60
    timeout_s: float = 15.0
    window_params: tuple[str, ...] = WINDOW_PARAMS
    default_window: Optional[dict[str, Any]] = None
    degraded_fetch: Optional[Fetcher] = None
    deep_modes: frozenset[str] = frozenset()
    deep_ceiling_s: float = 18.0
    has_signal: Callable[[Any], bool] = has_metric_signal


# ------------------------------------------------------------
# Metric mapping
# ------------------------------------------------------------

def _safe_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _safe_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _extract_actions(actions: Optional[Iterable[dict]]) -> dict[str, float]:
    out: dict[str, float] = {}
    for action in actions or []:
        action_type = str(action.get("action_type", "") or "").strip()
        if not action_type:
            continue
        out[action_type] = out.get(action_type, 0.0) + _safe_float(action.get("value"))
    return out


def _pick_by_priority(values: dict[str, float], priorities: list[str]) -> float:
    for action_type in priorities:
        if action_type in values:
            return values[action_type]
    return 0.0


def empty_metrics() -> dict[str, float]:
    metrics = {name: 0 for name in SUMMED_METRICS}
    finalize_derived_metrics(metrics)
    return metrics


def map_insights_to_metrics(row: dict) -> dict[str, float]:
    """Map one Meta insights row to a flat metrics dict."""
    counts = _extract_actions(row.get("actions"))
    values = _extract_actions(row.get("action_values"))

    metrics: dict[str, float] = {
        "spend": _safe_float(row.get("spend")),
        "impressions": _safe_int(row.get("impressions")),
        "reach": _safe_int(row.get("reach")),
        "clicks": _safe_int(row.get("clicks")),
    }
    for key, priorities in ACTION_PRIORITY.items():
        metrics[key] = _pick_by_priority(counts, priorities)
    for key, priorities in VALUE_PRIORITY.items():
        metrics[key] = _pick_by_priority(values, priorities)

    finalize_derived_metrics(metrics)
    return metrics


def accumulate_metrics(target: dict[str, float], incoming: dict[str, float]) -> None:
    for key in SUMMED_METRICS:
        target[key] = target.get(key, 0) + incoming.get(key, 0)


def finalize_derived_metrics(m: dict[str, float]) -> None:
    spend = m.get("spend", 0)
    impressions = m.get("impressions", 0)
    clicks = m.get("clicks", 0)
    conversions = m.get("conversions", 0)
    m["roas"] = m.get("revenue", 0) / spend if spend > 0 else 0.0
    m["ctr"] = clicks / impressions * 100 if impressions > 0 else 0.0
    m["cpc"] = spend / clicks if clicks > 0 else 0.0
    m["cpm"] = spend / impressions * 1000 if impressions > 0 else 0.0
    m["cpa"] = spend / conversions if conversions > 0 else 0.0
    m["cvr"] = conversions / clicks * 100 if clicks > 0 else 0.0
    m["frequency"] = impressions / m["reach"] if m.get("reach", 0) > 0 else 0.0


def _date_params(request: FetchRequest) -> dict[str, str]:
    since = request.params.get("since")
    until = request.params.get("until")
    if since and until:
        return {"time_range": json.dumps({"since": since, "until": until}, separators=(",", ":"))}
    return {"date_preset": request.params.get("date_preset") or DEFAULT_DATE_PRESET}


def _insights_expansion(request: FetchRequest) -> str:
    dates = _date_params(request)
    if "time_range" in dates:
        selector = f"time_range({dates['time_range']})"
    else:
        selector = f"date_preset({dates['date_preset']})"
    return f"insights.{selector}{{{','.join(INSIGHT_FIELDS[2:])}}}"


def _row_metrics(raw: dict) -> dict[str, float]:
    insights = (raw.get("insights") or {}).get("data") or []
    metrics = empty_metrics()
    for row in insights:
        accumulate_metrics(metrics, map_insights_to_metrics(row))
    finalize_derived_metrics(metrics)
    return metrics


# ------------------------------------------------------------
# Entity list fetchers
# ------------------------------------------------------------

def _map_entity(raw: dict, with_metrics: bool) -> dict[str, Any]:
    return {
        "id": str(raw.get("id", "")),
        "name": raw.get("name", ""),
        "status": raw.get("effective_status") or raw.get("status") or "",
        "campaign_id": raw.get("campaign_id"),
        "adset_id": raw.get("adset_id"),
        "metrics": _row_metrics(raw) if with_metrics else empty_metrics(),
    }


async def _fetch_entities(
    ctx: FetchContext, edge: str, base_fields: list[str], with_metrics: bool
) -> list[dict[str, Any]]:
    fields = list(base_fields)
    if with_metrics:
        fields.append(_insights_expansion(ctx.request))
    rows = await ctx.client.fetch_all_pages(
        ctx.access_token,
        f"/{ctx.request.scope_id}/{edge}",
        {"fields": ",".join(fields), "limit": "100"},
        max_pages=5,
        timeout_s=ctx.timeout_s,
    )
    return [_map_entity(raw, with_metrics) for raw in rows]


AD_FIELDS = ["id", "name", "status", "effective_status", "adset_id", "campaign_id"]
ADSET_FIELDS = ["id", "name", "status", "effective_status", "campaign_id"]
CAMPAIGN_FIELDS = ["id", "name", "status", "effective_status", "objective"]


async def fetch_ads(ctx: FetchContext) -> list[dict[str, Any]]:
    return await _fetch_entities(ctx, "ads", AD_FIELDS, with_metrics=ctx.request.mode != "basic")


async def fetch_ads_basic(ctx: FetchContext) -> list[dict[str, Any]]:
    """Degraded ads listing: entity fields only, no insights expansion."""
    return await _fetch_entities(ctx, "ads", AD_FIELDS, with_metrics=False)


async def fetch_adsets(ctx: FetchContext) -> list[dict[str, Any]]:
    return await _fetch_entities(
        ctx, "adsets", ADSET_FIELDS, with_metrics=ctx.request.mode != "basic"
    )


async def fetch_adsets_basic(ctx: FetchContext) -> list[dict[str, Any]]:
    return await _fetch_entities(ctx, "adsets", ADSET_FIELDS, with_metrics=False)


async def fetch_campaigns(ctx: FetchContext) -> list[dict[str, Any]]:
    return await _fetch_entities(ctx, "campaigns", CAMPAIGN_FIELDS, with_metrics=True)


# ------------------------------------------------------------
# Insights
# ------------------------------------------------------------

def insights_scope_id(object_id: Optional[str] = None, account_ids: Iterable[str] = ()) -> str:
    """Scope for insights: a single object, or a sorted, de-duplicated account set."""
    if object_id:
        return f"object:{object_id}"
    return "accounts:" + ",".join(sorted({a for a in account_ids if a}))


def _insights_targets(ctx: FetchContext) -> list[str]:
    kind, _, rest = ctx.request.scope_id.partition(":")
    if kind == "object" and rest:
        return [rest]
    targets = [item for item in rest.split(",") if item] if kind == "accounts" else []
    return targets or sorted(set(ctx.ad_accounts))


def _breakdown_keys(request: FetchRequest) -> list[str]:
    raw = request.params.get("breakdowns") or ""
    if isinstance(raw, (list, tuple)):
        raw = ",".join(raw)
    return sorted({item.strip() for item in raw.split(",") if item.strip()})


async def _fetch_target_rows(ctx: FetchContext, target: str, extra: dict[str, str]) -> list[dict]:
    params = {"fields": ",".join(INSIGHT_FIELDS), "limit": "500", **_date_params(ctx.request)}
    params.update(extra)
    return await ctx.client.fetch_all_pages(
        ctx.access_token,
        f"/{target}/insights",
        params,
        max_pages=10,
        timeout_s=ctx.timeout_s,
    )


async def _gather_targets(ctx: FetchContext, extra: dict[str, str]) -> list[list[dict]]:
    targets = _insights_targets(ctx)
    if not targets:
        raise UpstreamError(f"No ad accounts to fetch insights for scope={ctx.request.scope_id}")

    results = await asyncio.gather(
        *(_fetch_target_rows(ctx, target, extra) for target in targets),
        return_exceptions=True,
    )
    rows: list[list[dict]] = []
    errors: list[BaseException] = []
    for target, result in zip(targets, results):
        if isinstance(result, BaseException):
            logger.warning("Insights fetch failed for %s: %s", target, result)
            errors.append(result)
        else:
            rows.append(result)
    if errors and not rows:
        raise errors[0]
    return rows


async def fetch_insights(ctx: FetchContext) -> list[dict[str, Any]]:
    """Fetch and aggregate insights across every target in scope.

    Daily rows aggregate by date, hourly rows by (date, hour) and breakdown
    rows by their dimension values. A target that fails is skipped unless
    every target fails.
    """
    breakdowns = _breakdown_keys(ctx.request)

    if breakdowns == [HOURLY_BREAKDOWN]:
        per_target = await _gather_targets(ctx, {"breakdowns": HOURLY_BREAKDOWN})
        buckets: dict[tuple[str, int], dict[str, float]] = {}
        for rows in per_target:
            for row in rows:
                hour_text = row.get(HOURLY_BREAKDOWN) or "00:00:00"
                key = (row.get("date_start", ""), _safe_int(hour_text.split(":")[0]))
                bucket = buckets.setdefault(key, {name: 0 for name in SUMMED_METRICS})
                accumulate_metrics(bucket, map_insights_to_metrics(row))
        result = []
        for (day, hour), metrics in sorted(buckets.items()):
            finalize_derived_metrics(metrics)
            result.append({"date": day, "hour": hour, "metrics": metrics})
        return result

    if breakdowns:
        per_target = await _gather_targets(ctx, {"breakdowns": ",".join(breakdowns)})
        grouped: dict[tuple, dict[str, Any]] = {}
        for rows in per_target:
            for row in rows:
                dims = {
                    name: (str(row.get(name) or "").strip() or "unknown") for name in breakdowns
                }
                key = tuple(dims[name].lower() for name in breakdowns)
                entry = grouped.setdefault(
                    key, {"dims": dims, "metrics": {name: 0 for name in SUMMED_METRICS}}
                )
                accumulate_metrics(entry["metrics"], map_insights_to_metrics(row))
        result = []
        for entry in grouped.values():
            finalize_derived_metrics(entry["metrics"])
            result.append({**entry["dims"], "metrics": entry["metrics"]})
        result.sort(key=lambda item: item["metrics"].get("spend", 0), reverse=True)
        return result

    per_target = await _gather_targets(ctx, {"time_increment": "1", "level": "account"})
    by_date: dict[str, dict[str, float]] = {}
    for rows in per_target:
        for row in rows:
            day = row.get("date_start", "")
            bucket = by_date.setdefault(day, {name: 0 for name in SUMMED_METRICS})
            accumulate_metrics(bucket, map_insights_to_metrics(row))
    result = []
    for day, metrics in sorted(by_date.items()):
        finalize_derived_metrics(metrics)
        result.append({"date": day, "date_end": day, "metrics": metrics})
    return result


DEFAULT_PROFILES: dict[str, EndpointProfile] = {
    "ads": EndpointProfile(
        name="ads",
        fetch=fetch_ads,
        degraded_fetch=fetch_ads_basic,
        deep_modes=frozenset({"audit"}),
    ),
    "adsets": EndpointProfile(
        name="adsets",
        fetch=fetch_adsets,
        degraded_fetch=fetch_adsets_basic,
    ),
    "campaigns": EndpointProfile(name="campaigns", fetch=fetch_campaigns),
    "insights": EndpointProfile(
        name="insights",
        fetch=fetch_insights,
        ttl_s=10 * 60,
        timeout_s=20.0,
        default_window={"date_preset": DEFAULT_DATE_PRESET},
    ),
}
