"""Register configured site adapters with a registry.

Called once during application startup.
"""

import structlog

from pricepulse.config import Settings
from pricepulse.scrapers.adapters import JsonFeedAdapter
from pricepulse.scrapers.registry import AdapterRegistry

logger = structlog.get_logger(__name__)


def register_adapters(registry: AdapterRegistry, settings: Settings) -> None:
    """Register one JsonFeedAdapter per SCRAPER_FEEDS entry.

    A malformed entry is logged and skipped so one bad feed does not keep
    the rest from loading.
    """
    for site, template in settings.get_scraper_feeds().items():
        try:
            registry.register(
                JsonFeedAdapter(
                    site=site,
                    url_template=template,
                    timeout=settings.ADAPTER_TIMEOUT_SECONDS,
                )
            )
        except ValueError as e:
            logger.error("adapter_registration_failed", site=site, error=str(e))

    logger.info(
        "all_adapters_registered",
        count=len(registry.sites()),
        sites=registry.sites(),
    )
