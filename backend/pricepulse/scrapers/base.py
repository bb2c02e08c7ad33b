"""Base scraper adapter interface.

Every site adapter implements ``search(query) -> List[RawRecord]``.
Adapters return ``[]`` for "no results" and raise a FetchError subclass
only on operational failure, classified where the failure happens.
"""

import socket
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
import structlog

from pricepulse.core.exceptions import FetchError, NonRetryableFetchError, TransientNetworkError
from pricepulse.scrapers.utils.retry import adapter_retry

# Unstructured adapter output; validated downstream
RawRecord = Dict[str, Any]

USER_AGENT = "PricePulse/0.1 (+price comparison refresh)"


def _caused_by_dns_failure(exc: BaseException) -> bool:
    """Walk the exception chain looking for a resolver failure."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, socket.gaierror):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def classify_http_error(site: str, exc: Exception) -> FetchError:
    """Map an httpx / decoding failure onto the fetch error taxonomy.

    Args:
        site: Site slug the request was made for
        exc: Exception raised by httpx or by response decoding

    Returns:
        TransientNetworkError for timeouts, resets, 429 and 5xx;
        NonRetryableFetchError for DNS failures, auth and other 4xx
        responses, and malformed bodies
    """
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429 or status >= 500:
            return TransientNetworkError(site, f"HTTP {status}")
        if status in (401, 403):
            return NonRetryableFetchError(site, f"authentication rejected (HTTP {status})")
        return NonRetryableFetchError(site, f"HTTP {status}")

    if isinstance(exc, httpx.TimeoutException):
        return TransientNetworkError(site, f"timeout: {exc}")

    if isinstance(exc, httpx.ConnectError) and _caused_by_dns_failure(exc):
        return NonRetryableFetchError(site, f"DNS resolution failed: {exc}")

    if isinstance(exc, (httpx.InvalidURL, httpx.UnsupportedProtocol)):
        return NonRetryableFetchError(site, f"bad request URL: {exc}")

    if isinstance(exc, httpx.TransportError):
        # Connection refused/reset, read/write errors, protocol hiccups
        return TransientNetworkError(site, f"network error: {exc}")

    if isinstance(exc, ValueError):
        return NonRetryableFetchError(site, f"malformed response: {exc}")

    return TransientNetworkError(site, str(exc))


class BaseScraperAdapter(ABC):
    """Abstract base class for all site adapters."""

    site: str = ""  # Must be set by subclass or constructor (e.g., "amazon")

    def __init__(self):
        self.logger = structlog.get_logger(__name__).bind(adapter=self.site)

    @abstractmethod
    async def search(self, query: str) -> List[RawRecord]:
        """Search the site for a query.

        Args:
            query: Free-text search query

        Returns:
            Raw records, empty when the site has no results

        Raises:
            TransientNetworkError: Retryable operational failure
            NonRetryableFetchError: Failure that retrying will not fix
        """

    async def health_check(self) -> bool:
        """Check whether the adapter can reach its source.

        Returns:
            True if healthy, False otherwise
        """
        try:
            await self.search("test")
            return True
        except FetchError as e:
            self.logger.error("health_check_failed", error=str(e))
            return False

    async def cleanup(self) -> None:
        """Release network resources."""


class BaseHttpAdapter(BaseScraperAdapter):
    """Base class for adapters that talk JSON over HTTP.

    Owns one httpx.AsyncClient (unless one is injected), retries transient
    failures with tenacity and classifies everything else at the origin.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        retry_attempts: int = 3,
        retry_min_wait: float = 1.0,
    ):
        """Initialize HTTP adapter.

        Args:
            client: Pre-built client (tests pass one with a MockTransport)
            timeout: Per-request timeout in seconds
            retry_attempts: Total attempts for transient failures
            retry_min_wait: First backoff delay in seconds
        """
        super().__init__()
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._get_json = adapter_retry(attempts=retry_attempts, min_wait=retry_min_wait)(
            self._get_json_once
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            )
        return self._client

    async def _get_json_once(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Single GET returning decoded JSON.

        Raises:
            TransientNetworkError: Timeouts, resets, 429/5xx
            NonRetryableFetchError: DNS, auth, other 4xx, malformed JSON
        """
        self.logger.debug("adapter_request", url=url)
        try:
            response = await self._get_client().get(url, params=params)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            error = classify_http_error(self.site, e)
            self.logger.warning(
                "adapter_request_failed",
                url=url,
                error=str(e),
                retryable=error.retryable,
            )
            raise error from e

    async def cleanup(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
