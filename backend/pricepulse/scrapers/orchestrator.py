"""Concurrent fan-out of a query to every active adapter."""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import structlog

from pricepulse.core.exceptions import FetchError, TransientNetworkError
from pricepulse.scrapers.base import BaseScraperAdapter, RawRecord
from pricepulse.scrapers.registry import AdapterRegistry
from pricepulse.scrapers.utils.rate_limiter import SiteRateLimiter

logger = structlog.get_logger(__name__)


@dataclass
class FanOutResult:
    """All-settled outcome of one fan-out."""

    records: List[RawRecord] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    errors: Dict[str, Exception] = field(default_factory=dict)

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.errors)

    @property
    def all_failed(self) -> bool:
        return not self.succeeded and bool(self.errors)

    def raise_if_all_failed(self) -> None:
        """Raise when no adapter produced an answer.

        Raises:
            NonRetryableFetchError: Every failure was non-retryable
            TransientNetworkError: At least one failure may succeed on retry
        """
        if not self.all_failed:
            return
        non_retryable = [e for e in self.errors.values() if isinstance(e, FetchError) and not e.retryable]
        if len(non_retryable) == len(self.errors):
            raise non_retryable[0]
        raise TransientNetworkError(
            ",".join(sorted(self.errors)),
            f"all {len(self.errors)} adapters failed",
        )


class ScrapeOrchestrator:
    """Runs adapters in parallel under per-adapter and overall timeouts.

    One adapter's failure or timeout never cancels its siblings; whatever
    finished before the overall deadline is returned.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        rate_limiter: Optional[SiteRateLimiter] = None,
        adapter_timeout: float = 15.0,
        overall_timeout: float = 20.0,
    ):
        self.registry = registry
        self.rate_limiter = rate_limiter or registry.rate_limiter
        self.adapter_timeout = adapter_timeout
        self.overall_timeout = overall_timeout
        self.logger = logger.bind(service="scrape_orchestrator")

    async def _run_adapter(self, adapter: BaseScraperAdapter, query: str) -> List[RawRecord]:
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire(adapter.site)
        try:
            records = await asyncio.wait_for(adapter.search(query), timeout=self.adapter_timeout)
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(adapter.site, f"timed out after {self.adapter_timeout}s") from e

        for record in records:
            if isinstance(record, dict):
                record.setdefault("site", adapter.site)
        return list(records)

    async def fan_out(self, query: str, sites: Optional[Iterable[str]] = None) -> FanOutResult:
        """Query all (or the named) active adapters concurrently.

        Args:
            query: Search query
            sites: Restrict to these site slugs

        Returns:
            FanOutResult with partial results and per-site errors
        """
        adapters = self.registry.active()
        if sites is not None:
            wanted = set(sites)
            adapters = [a for a in adapters if a.site in wanted]

        result = FanOutResult()
        if not adapters:
            self.logger.warning("fan_out_no_adapters", query=query)
            return result

        tasks: Dict[asyncio.Task, str] = {
            asyncio.create_task(self._run_adapter(adapter, query)): adapter.site
            for adapter in adapters
        }
        done, pending = await asyncio.wait(tasks.keys(), timeout=self.overall_timeout)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for task, site in tasks.items():
            if task in pending:
                result.errors[site] = TransientNetworkError(
                    site, f"overall fan-out deadline of {self.overall_timeout}s exceeded"
                )
                continue
            exc = task.exception()
            if exc is not None:
                result.errors[site] = exc
                self.logger.warning(
                    "adapter_failed",
                    site=site,
                    query=query,
                    error=str(exc),
                    retryable=getattr(exc, "retryable", True),
                )
                continue
            records = task.result()
            result.succeeded.append(site)
            result.records.extend(records)

        self.logger.info(
            "fan_out_complete",
            query=query,
            adapters=len(tasks),
            succeeded=len(result.succeeded),
            failed=len(result.errors),
            records=len(result.records),
        )
        return result
