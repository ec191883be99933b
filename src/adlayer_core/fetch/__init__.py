"""Fetch orchestration: the cache/fetch/fallback cascade."""
from .endpoints import DEFAULT_PROFILES, EndpointProfile, FetchContext, insights_scope_id
from .models import FetchRequest, FetchResult, StaleReason
from .orchestrator import FetchOrchestrator

__all__ = [
    "DEFAULT_PROFILES",
    "EndpointProfile",
    "FetchContext",
    "FetchOrchestrator",
    "FetchRequest",
    "FetchResult",
    "StaleReason",
    "insights_scope_id",
]
