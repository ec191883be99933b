"""FastAPI routes for the adlayer data-acquisition API."""
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from ..attribution.resolver import ResolvedIds, ResolveRequest
from ..attribution.utm import extract_order_utm, utm_to_resolve_request
from ..fetch.endpoints import insights_scope_id
from ..fetch.models import FetchRequest, FetchResult
from ..refresh.scheduler import RefreshMode
from ..services import AdLayerServices
from ..upstream.exceptions import (
    FetchFailedError,
    MissingCredentialsError,
    RateLimitedError,
)
from .auth import require_api_key


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1",
    tags=["adlayer"],
    dependencies=[Depends(require_api_key)],
)


def get_services(request: Request) -> AdLayerServices:
    return request.app.state.services


class RefreshRequest(BaseModel):
    """Composite audit refresh trigger."""

    store_id: str = Field(..., description="Tenant store identifier")
    date_preset: Optional[str] = Field(None, description="Meta date preset, e.g. last_30d")
    since: Optional[str] = Field(None, description="Range start (YYYY-MM-DD)")
    until: Optional[str] = Field(None, description="Range end (YYYY-MM-DD)")
    mode: RefreshMode = Field(RefreshMode.FOREGROUND, description="foreground|background")


class RefreshResponse(BaseModel):
    store_id: str
    mode: RefreshMode
    sections: dict[str, Any] = Field(default_factory=dict)
    status: dict[str, Any] = Field(default_factory=dict)


class AttributionRequest(ResolveRequest):
    """Names to resolve, or an order node to extract UTM values from."""

    store_id: str = Field(..., description="Tenant store identifier")
    order: Optional[dict[str, Any]] = Field(
        None, description="Shopify order node; its UTM values are used when present"
    )


class AttributionResponse(ResolvedIds):
    attribution_tier: Optional[int] = None
    utm: dict[str, Any] = Field(default_factory=dict)


def _fetch_error(exc: Exception) -> HTTPException:
    if isinstance(exc, RateLimitedError):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": str(exc), "rate_limited": True},
        )
    if isinstance(exc, MissingCredentialsError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"error": str(exc), "rate_limited": False},
    )


@router.get(
    "/meta/{endpoint}",
    response_model=FetchResult,
    summary="Fetch one analytical query through the cache/fallback cascade",
)
async def get_meta_endpoint(
    endpoint: str,
    store_id: str = Query(..., description="Tenant store identifier"),
    scope_id: Optional[str] = Query(None, description="Entity scope (required except for insights)"),
    date_preset: Optional[str] = Query(None),
    since: Optional[str] = Query(None),
    until: Optional[str] = Query(None),
    breakdowns: Optional[str] = Query(None),
    mode: str = Query("fast", description="fast|basic|audit"),
    strict_date: bool = Query(False),
    prefer_cache: bool = Query(False),
    services: AdLayerServices = Depends(get_services),
) -> FetchResult:
    if endpoint not in services.orchestrator.profiles:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown endpoint: {endpoint}")

    if not scope_id:
        if endpoint != "insights":
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="scope_id is required")
        accounts = await services.tokens.get_ad_accounts(store_id)
        if not accounts:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No ad accounts linked")
        scope_id = insights_scope_id(account_ids=accounts)

    params = {
        key: value
        for key, value in {
            "date_preset": date_preset,
            "since": since,
            "until": until,
            "breakdowns": breakdowns,
        }.items()
        if value
    }
    fetch_request = FetchRequest(
        store_id=store_id,
        endpoint=endpoint,
        scope_id=scope_id,
        params=params,
        mode=mode,
        strict_date=strict_date,
        prefer_cache=prefer_cache,
    )
    try:
        return await services.orchestrator.fetch(fetch_request)
    except (RateLimitedError, MissingCredentialsError, FetchFailedError) as exc:
        logger.warning("Fetch %s/%s failed: %s", endpoint, scope_id, exc)
        raise _fetch_error(exc) from exc


@router.post(
    "/refresh",
    response_model=RefreshResponse,
    summary="Trigger a composite audit refresh",
)
async def trigger_refresh(
    payload: RefreshRequest,
    services: AdLayerServices = Depends(get_services),
) -> RefreshResponse:
    params = payload.model_dump(include={"date_preset", "since", "until"}, exclude_none=True)
    try:
        scheduler = await services.refresh.scheduler_for(payload.store_id)
    except MissingCredentialsError as exc:
        raise _fetch_error(exc) from exc

    if payload.mode == RefreshMode.BACKGROUND:
        services.refresh.start_background(payload.store_id, params)
        return RefreshResponse(
            store_id=payload.store_id,
            mode=payload.mode,
            sections=dict(scheduler.results),
            status=scheduler.status(),
        )

    sections = await services.refresh.refresh(payload.store_id, params, payload.mode)
    return RefreshResponse(
        store_id=payload.store_id,
        mode=payload.mode,
        sections=sections,
        status=scheduler.status(),
    )


@router.get("/refresh/{store_id}", summary="Refresh progress for a store")
async def get_refresh_status(
    store_id: str,
    services: AdLayerServices = Depends(get_services),
) -> dict[str, Any]:
    scheduler = services.refresh.scheduler(store_id)
    if scheduler is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No refresh for store")
    return scheduler.status()


@router.post(
    "/attribution/resolve",
    response_model=AttributionResponse,
    summary="Resolve UTM names to campaign/ad set/ad IDs",
)
async def resolve_attribution(
    payload: AttributionRequest,
    services: AdLayerServices = Depends(get_services),
) -> AttributionResponse:
    resolve_request = ResolveRequest(**payload.model_dump(include=set(ResolveRequest.model_fields)))
    tier = None
    utm: dict[str, Any] = {}
    if payload.order:
        extracted = extract_order_utm(payload.order)
        tier = extracted["tier"]
        utm = extracted["utm"]
        if tier:
            from_order = utm_to_resolve_request(utm)
            resolve_request = resolve_request.model_copy(
                update={
                    "campaign_name": resolve_request.campaign_name or from_order.campaign_name,
                    "ad_set_name": resolve_request.ad_set_name or from_order.ad_set_name,
                    "ad_name": resolve_request.ad_name or from_order.ad_name,
                }
            )

    resolved = await services.resolver.resolve(payload.store_id, resolve_request)
    return AttributionResponse(**resolved.model_dump(), attribution_tier=tier, utm=utm)
