"""Scraper utilities for rate limiting, retry, and data normalization."""

from .rate_limiter import SiteRateLimiter, TokenBucket
from .normalizer import (
    clean_price_string,
    extract_site_product_id,
    generate_product_id,
    is_absolute_http_url,
    normalize_title,
    normalize_url,
    url_path,
)
from .retry import adapter_retry, compute_backoff


__all__ = [
    # Rate limiting
    "SiteRateLimiter",
    "TokenBucket",
    # Normalization
    "clean_price_string",
    "extract_site_product_id",
    "generate_product_id",
    "is_absolute_http_url",
    "normalize_title",
    "normalize_url",
    "url_path",
    # Retry
    "adapter_retry",
    "compute_backoff",
]
