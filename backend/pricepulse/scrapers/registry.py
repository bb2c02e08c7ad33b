"""Typed registry of site adapter instances."""

from typing import Dict, List, Optional, Set

import structlog

from pricepulse.scrapers.base import BaseScraperAdapter
from pricepulse.scrapers.utils.rate_limiter import SiteRateLimiter


logger = structlog.get_logger(__name__)


class AdapterRegistry:
    """Holds one adapter per site and the rate limiter they share.

    Adapters can be disabled at runtime (e.g., a site blocking us) without
    being unregistered.
    """

    def __init__(self, rate_limiter: Optional[SiteRateLimiter] = None):
        self.rate_limiter = rate_limiter
        self._adapters: Dict[str, BaseScraperAdapter] = {}
        self._disabled: Set[str] = set()

    def register(self, adapter: BaseScraperAdapter, enabled: bool = True) -> None:
        """Register an adapter instance under its site slug.

        Args:
            adapter: Adapter instance (must inherit from BaseScraperAdapter)
            enabled: Whether the adapter takes part in fan-out immediately
        """
        if not isinstance(adapter, BaseScraperAdapter):
            raise ValueError(f"Adapter must inherit from BaseScraperAdapter: {adapter!r}")
        if not adapter.site:
            raise ValueError(f"Adapter has no site slug: {adapter!r}")

        self._adapters[adapter.site] = adapter
        if enabled:
            self._disabled.discard(adapter.site)
        else:
            self._disabled.add(adapter.site)

        logger.info("adapter_registered", site=adapter.site, adapter_class=type(adapter).__name__, enabled=enabled)

    def get(self, site: str) -> Optional[BaseScraperAdapter]:
        return self._adapters.get(site)

    def enable(self, site: str) -> None:
        if site not in self._adapters:
            raise KeyError(site)
        self._disabled.discard(site)
        logger.info("adapter_enabled", site=site)

    def disable(self, site: str) -> None:
        if site not in self._adapters:
            raise KeyError(site)
        self._disabled.add(site)
        logger.info("adapter_disabled", site=site)

    def is_enabled(self, site: str) -> bool:
        return site in self._adapters and site not in self._disabled

    def active(self) -> List[BaseScraperAdapter]:
        """Enabled adapters in registration order."""
        return [a for site, a in self._adapters.items() if site not in self._disabled]

    def sites(self) -> List[str]:
        return list(self._adapters.keys())

    async def close(self) -> None:
        """Clean up every registered adapter."""
        for adapter in self._adapters.values():
            await adapter.cleanup()
