"""Scraper layer: adapter interface, registry and concurrent fan-out.

This package provides:
- Base adapter classes and the HTTP error classifier
- A registry of site adapters with enable/disable switches
- The fan-out orchestrator used by the cold path and refresh jobs
- Utilities for rate limiting, retry, and normalization
"""

from .base import BaseHttpAdapter, BaseScraperAdapter, RawRecord, classify_http_error
from .orchestrator import FanOutResult, ScrapeOrchestrator
from .registry import AdapterRegistry

__all__ = [
    "BaseHttpAdapter",
    "BaseScraperAdapter",
    "RawRecord",
    "classify_http_error",
    "FanOutResult",
    "ScrapeOrchestrator",
    "AdapterRegistry",
]
