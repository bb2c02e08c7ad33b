"""Normalization helpers shared by the validation pipeline and adapters."""

import hashlib
import math
import re
import unicodedata
from decimal import Decimal
from typing import Any, Optional
from urllib.parse import urlsplit, urlunsplit

# Arabic-Indic and Extended Arabic-Indic digits, plus Arabic separators
_DIGIT_TABLE = str.maketrans(
    "٠١٢٣٤٥٦٧٨٩۰۱۲۳۴۵۶۷۸۹٫٬",
    "01234567890123456789.,",
)

_AMAZON_ID_RE = re.compile(r"/(?:dp|gp/product)/([A-Z0-9]{10})")
_NOON_ID_RE = re.compile(r"/p-([^/]+)")
_WHITESPACE_RE = re.compile(r"\s+")
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_TWO_PLACES = Decimal("0.01")


def clean_price_string(raw: Any) -> Optional[Decimal]:
    """Parse a scraped price into a positive 2dp Decimal.

    Handles various formats:
    - "SAR 1,299.00" -> 1299.00
    - "1,299.50 ر.س" -> 1299.50
    - "٣٤٩ ر.س" -> 349.00
    - 95 -> 95.00

    Args:
        raw: Price as string or number

    Returns:
        Decimal price, or None if it is not a finite positive number
    """
    if raw is None or isinstance(raw, bool):
        return None

    if isinstance(raw, (int, float, Decimal)):
        if isinstance(raw, float) and not math.isfinite(raw):
            return None
        value = Decimal(str(raw))
    elif isinstance(raw, str):
        # First numeric token; currency text like "ر.س" may carry dots
        match = _NUMBER_RE.search(raw.translate(_DIGIT_TABLE).replace(",", ""))
        if not match:
            return None
        value = Decimal(match.group(0))
    else:
        return None

    if not value.is_finite() or value <= 0:
        return None
    return value.quantize(_TWO_PLACES)


def normalize_title(title: Optional[str]) -> Optional[str]:
    """NFKC-normalize a product title and collapse whitespace."""
    if not title:
        return None
    normalized = unicodedata.normalize("NFKC", title)
    normalized = _WHITESPACE_RE.sub(" ", normalized).strip()
    return normalized or None


def is_absolute_http_url(url: Any) -> bool:
    if not isinstance(url, str):
        return False
    if not url.startswith(("http://", "https://")):
        return False
    try:
        return bool(urlsplit(url).netloc)
    except ValueError:
        return False


def normalize_url(url: str) -> str:
    """Strip query string and fragment from an absolute URL.

    Args:
        url: URL to normalize

    Returns:
        Normalized URL
    """
    if not url:
        return url
    parts = urlsplit(url.strip())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def url_path(url: Optional[str]) -> Optional[str]:
    """Path component of a URL, or None if it cannot be parsed."""
    if not url:
        return None
    try:
        return urlsplit(url).path or "/"
    except ValueError:
        return None


def extract_site_product_id(url: Optional[str], site: Optional[str]) -> Optional[str]:
    """Derive a site-local product id from a product URL.

    Amazon ASINs and Noon ``/p-<id>`` paths are recognized; anything else
    falls back to the last path segment longer than three characters.
    """
    if not url or not site:
        return None
    path = url_path(url)
    if path is None:
        return None

    site = site.lower()
    if "amazon" in site:
        match = _AMAZON_ID_RE.search(path)
        if match:
            return match.group(1)
    elif "noon" in site:
        match = _NOON_ID_RE.search(path)
        if match:
            return match.group(1)

    segments = [segment for segment in path.split("/") if len(segment) > 3]
    return segments[-1] if segments else None


def generate_product_id(site: str, site_product_id: Optional[str], url: Optional[str]) -> Optional[str]:
    """Stable 16-char identity for a product.

    Args:
        site: Lowercased site slug
        site_product_id: Site-local id, if known
        url: Product URL, used when no site-local id is available

    Returns:
        Hex digest prefix, or None when neither id nor URL is given
    """
    if not site:
        return None
    if site_product_id:
        basis = f"{site}:{site_product_id}"
    elif url:
        basis = f"{site}:{url_path(url) or url}"
    else:
        return None
    return hashlib.md5(basis.encode("utf-8")).hexdigest()[:16]
