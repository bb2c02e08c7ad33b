"""PricePulse: freshness-aware product ingestion and tiered re-scraping."""

__version__ = "0.1.0"
