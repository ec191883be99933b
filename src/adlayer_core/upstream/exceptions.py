"""Exception taxonomy for the data-acquisition layer."""


class AdLayerError(Exception):
    """Base exception for all data-acquisition errors."""


class UpstreamError(AdLayerError):
    """Raised for upstream API failures (HTTP 4xx/5xx, malformed payloads)."""

    def __init__(self, message: str, status: int = 0, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(message)


class RateLimitedError(UpstreamError):
    """Raised when the upstream API throttles the request."""

    def __init__(self, endpoint: str, status: int = 429, body: str = ""):
        self.endpoint = endpoint
        super().__init__(
            f"Meta API rate limited on {endpoint}, try again in a minute",
            status=status,
            body=body,
        )


class UpstreamTimeoutError(UpstreamError):
    """Raised when a request exceeds its client-side deadline."""

    def __init__(self, endpoint: str, timeout_s: float):
        self.endpoint = endpoint
        self.timeout_s = timeout_s
        super().__init__(f"Meta API timeout ({timeout_s:g}s) for {endpoint}")


class MissingCredentialsError(AdLayerError):
    """Raised when no access token is available for a store."""

    def __init__(self, store_id: str):
        self.store_id = store_id
        super().__init__(f"Not authenticated with Meta for store={store_id}")


class PersistenceUnavailableError(AdLayerError):
    """Raised by snapshot backends when the durable store cannot be reached."""


class FetchFailedError(AdLayerError):
    """Raised when every tier of the fetch cascade is exhausted.

    Throttling is never wrapped; it surfaces as RateLimitedError.
    """


class SectionTimeoutError(AdLayerError):
    """Raised when a refresh section does not settle within its budget."""

    def __init__(self, key: str, timeout_s: float):
        self.key = key
        self.timeout_s = timeout_s
        super().__init__(f"Section timeout: {key} after {timeout_s:g}s")
