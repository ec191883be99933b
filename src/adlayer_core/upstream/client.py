"""Async Meta Graph API client with deadline enforcement and rate-limit detection."""
import asyncio
import logging
from typing import Any, Optional, Protocol

import aiohttp

from ..config import Settings
from .exceptions import RateLimitedError, UpstreamError, UpstreamTimeoutError


RATE_LIMIT_MARKERS = (
    '"code":17',
    '"code": 17',
    "Too Many",
    "User request limit reached",
    "too many api calls",
    "2446079",
)


class TokenProvider(Protocol):
    """Supplies credentials and linked ad accounts per store."""

    async def get_token(self, store_id: str) -> Optional[str]:
        ...

    async def get_ad_accounts(self, store_id: str) -> list[str]:
        ...


class EnvTokenProvider:
    """Single-tenant token provider backed by META_ACCESS_TOKEN/META_AD_ACCOUNT_IDS."""

    def __init__(self, settings: Settings) -> None:
        self._token = settings.meta_access_token
        self._accounts = [
            account if account.startswith("act_") else f"act_{account}"
            for account in settings.meta_ad_account_ids
        ]

    async def get_token(self, store_id: str) -> Optional[str]:
        return self._token

    async def get_ad_accounts(self, store_id: str) -> list[str]:
        return list(self._accounts)


def is_rate_limit_response(status: int, body: str) -> bool:
    """Classify an error response as throttling.

    Meta signals throttling with HTTP 429, or with 400/403 carrying error
    code 17 / subcode 2446079 in the body.
    """
    if status == 429:
        return True
    if status in (400, 403):
        return any(marker in body for marker in RATE_LIMIT_MARKERS)
    return False


class MetaGraphClient:
    """Issues single logical queries against the Graph API.

    Concurrency is capped per client instance. Each request carries its own
    total deadline; exceeding it raises UpstreamTimeoutError.
    """

    MAX_CONCURRENT = 5
    DEFAULT_TIMEOUT_S = 15.0
    RETRY_BASE_DELAY = 2.0  # seconds

    def __init__(
        self,
        session: aiohttp.ClientSession,
        graph_url: str = "https://graph.facebook.com/v21.0",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize Graph client.

        Args:
            session: Injected aiohttp ClientSession
            graph_url: Versioned Graph API base URL
            logger: Optional logger instance
        """
        self.session = session
        self.graph_url = graph_url.rstrip("/")
        self.logger = logger or logging.getLogger(__name__)
        self._semaphore = asyncio.Semaphore(self.MAX_CONCURRENT)

    @staticmethod
    def _redact(text: str, token: str) -> str:
        if not text or not token:
            return text
        return text.replace(token, "[REDACTED]")

    async def _parse_json(self, resp: aiohttp.ClientResponse, path: str) -> dict[str, Any]:
        try:
            payload = await resp.json()
        except ValueError as exc:
            raise UpstreamError(f"Malformed JSON from {path}: {exc}", status=resp.status) from exc
        if not isinstance(payload, dict):
            raise UpstreamError(
                f"Unexpected {type(payload).__name__} body from {path}", status=resp.status
            )
        return payload

    async def get(
        self,
        access_token: str,
        path: str,
        params: Optional[dict[str, str]] = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        max_retries: int = 0,
    ) -> dict[str, Any]:
        """GET a Graph API path.

        Args:
            access_token: Store access token (never logged)
            path: Path relative to graph_url, e.g. "/act_123/ads"
            params: Query parameters
            timeout_s: Total request deadline in seconds
            max_retries: Extra attempts on rate limiting, with exponential backoff

        Returns:
            Parsed JSON response

        Raises:
            RateLimitedError: Throttled on the final attempt
            UpstreamTimeoutError: Deadline exceeded
            UpstreamError: Any other non-2xx or network failure
        """
        url = f"{self.graph_url}{path}"
        query = dict(params or {})
        query["access_token"] = access_token

        attempt = 0
        while True:
            if attempt > 0:
                delay = self.RETRY_BASE_DELAY * (2 ** (attempt - 1))
                self.logger.info(
                    "Rate limit retry %s/%s for %s, waiting %.1fs",
                    attempt,
                    max_retries,
                    path,
                    delay,
                )
                await asyncio.sleep(delay)

            async with self._semaphore:
                try:
                    timeout = aiohttp.ClientTimeout(total=timeout_s)
                    async with self.session.get(
                        url, params=query, timeout=timeout
                    ) as resp:
                        if resp.status == 200:
                            return await self._parse_json(resp, path)

                        body = await resp.text()
                        if is_rate_limit_response(resp.status, body):
                            if attempt < max_retries:
                                self.logger.warning(
                                    "Rate limited on %s (attempt %s/%s)",
                                    path,
                                    attempt + 1,
                                    max_retries + 1,
                                )
                                attempt += 1
                                continue
                            raise RateLimitedError(
                                path,
                                status=resp.status,
                                body=self._redact(body[:500], access_token),
                            )

                        redacted = self._redact(body[:500], access_token)
                        self.logger.error("Meta API error (%s): %s", resp.status, redacted)
                        raise UpstreamError(
                            f"Meta API error ({resp.status}) for {path}",
                            status=resp.status,
                            body=redacted,
                        )

                except asyncio.TimeoutError as exc:
                    raise UpstreamTimeoutError(path, timeout_s) from exc
                except aiohttp.ClientError as exc:
                    raise UpstreamError(
                        f"Network error for {path}: {self._redact(str(exc), access_token)}"
                    ) from exc

    async def fetch_all_pages(
        self,
        access_token: str,
        path: str,
        params: Optional[dict[str, str]] = None,
        max_pages: int = 10,
        timeout_s: float = 10.0,
    ) -> list[dict[str, Any]]:
        """Fetch a list endpoint, following paging.next up to max_pages.

        The first page propagates errors; later pages stop pagination quietly.
        """
        result = await self.get(access_token, path, params, timeout_s=timeout_s)
        rows: list[dict[str, Any]] = list(result.get("data") or [])
        next_url = (result.get("paging") or {}).get("next")
        page = 1

        while next_url and page < max_pages:
            page += 1
            try:
                timeout = aiohttp.ClientTimeout(total=timeout_s)
                async with self._semaphore:
                    async with self.session.get(next_url, timeout=timeout) as resp:
                        if resp.status != 200:
                            self.logger.warning(
                                "Meta pagination failed for %s: %s", path, resp.status
                            )
                            break
                        result = await self._parse_json(resp, path)
            except (aiohttp.ClientError, asyncio.TimeoutError, UpstreamError) as exc:
                self.logger.warning("Meta pagination error for %s: %s", path, exc)
                break

            rows.extend(result.get("data") or [])
            next_url = (result.get("paging") or {}).get("next")

        self.logger.debug("Fetched %s rows from %s in %s page(s)", len(rows), path, page)
        return rows
