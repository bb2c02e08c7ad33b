"""Generic JSON search-feed adapter.

Covers any site that exposes a search endpoint returning product JSON,
configured through SCRAPER_FEEDS as ``site|https://host/search?q={query}``.
"""

from typing import Any, List, Optional
from urllib.parse import quote_plus

import httpx

from pricepulse.core.exceptions import NonRetryableFetchError
from pricepulse.scrapers.base import BaseHttpAdapter, RawRecord

# Keys under which feeds commonly nest their result list
RESULT_KEYS = ("results", "products", "items", "data")


class JsonFeedAdapter(BaseHttpAdapter):
    """Adapter for a site's JSON search endpoint."""

    def __init__(
        self,
        site: str,
        url_template: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        retry_attempts: int = 3,
        retry_min_wait: float = 1.0,
    ):
        """Initialize feed adapter.

        Args:
            site: Site slug stamped on every record
            url_template: Search URL containing a ``{query}`` placeholder
            client: Optional injected httpx client
            timeout: Per-request timeout in seconds
            retry_attempts: Total attempts for transient failures
            retry_min_wait: First backoff delay in seconds
        """
        if "{query}" not in url_template:
            raise ValueError(f"url_template for {site} must contain '{{query}}'")
        self.site = site.lower().strip()
        self.url_template = url_template
        super().__init__(
            client=client,
            timeout=timeout,
            retry_attempts=retry_attempts,
            retry_min_wait=retry_min_wait,
        )

    def build_url(self, query: str) -> str:
        return self.url_template.replace("{query}", quote_plus(query.strip()))

    def _extract_items(self, payload: Any) -> List[Any]:
        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict):
            for key in RESULT_KEYS:
                items = payload.get(key)
                if isinstance(items, list):
                    return items
            # An object with none of the known keys means "no results"
            return []
        raise NonRetryableFetchError(self.site, f"unexpected payload type {type(payload).__name__}")

    async def search(self, query: str) -> List[RawRecord]:
        """Fetch and unwrap the feed's results for a query.

        Args:
            query: Search query

        Returns:
            Raw records with ``site`` filled in
        """
        payload = await self._get_json(self.build_url(query))

        records: List[RawRecord] = []
        for item in self._extract_items(payload):
            if not isinstance(item, dict):
                continue
            record = dict(item)
            record.setdefault("site", self.site)
            records.append(record)

        self.logger.info("feed_search_complete", query=query, records=len(records))
        return records
