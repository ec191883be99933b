"""Upstream ad-platform API access."""
from .client import EnvTokenProvider, MetaGraphClient, TokenProvider, is_rate_limit_response
from .exceptions import (
    AdLayerError,
    FetchFailedError,
    MissingCredentialsError,
    PersistenceUnavailableError,
    RateLimitedError,
    SectionTimeoutError,
    UpstreamError,
    UpstreamTimeoutError,
)

__all__ = [
    "MetaGraphClient",
    "TokenProvider",
    "EnvTokenProvider",
    "is_rate_limit_response",
    "AdLayerError",
    "UpstreamError",
    "RateLimitedError",
    "UpstreamTimeoutError",
    "MissingCredentialsError",
    "PersistenceUnavailableError",
    "FetchFailedError",
    "SectionTimeoutError",
]
