"""Validation and normalization pipeline for scraped records.

Stages, in order:
    A  schema presence (name, price, url, site)
    B  value validation (positive price, absolute URL, image filtering)
    C  defaults for optional seller/shipping fields
    D  normalization and stable identity
    E  enrichment (derived flags, shipping days, currency symbol, VAT)

A failure short-circuits only the record being validated; batches return a
valid/invalid partition.
"""

import json
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog

from pricepulse.core.exceptions import RecordValidationError, SchemaValidationError, ValueValidationError
from pricepulse.core.timeutils import utcnow
from pricepulse.schemas.product import ValidatedProduct
from pricepulse.scrapers.base import RawRecord
from pricepulse.scrapers.utils.normalizer import (
    clean_price_string,
    extract_site_product_id,
    generate_product_id,
    is_absolute_http_url,
    normalize_title,
    normalize_url,
    url_path,
)

logger = structlog.get_logger(__name__)

# Raw field aliases, first present wins
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "name": ("product_name", "name", "title"),
    "price": ("price", "price_amount"),
    "url": ("url", "product_url"),
    "site": ("site",),
    "currency": ("currency", "price_currency"),
    "image_url": ("image_url", "image"),
    "affiliate_url": ("affiliate_url", "affiliate_link"),
}

REQUIRED_FIELDS = ("name", "price", "url", "site")

PLACEHOLDER_IMAGE_PATTERNS = (
    re.compile(r"placeholder", re.IGNORECASE),
    re.compile(r"no-image", re.IGNORECASE),
    re.compile(r"default", re.IGNORECASE),
    re.compile(r"^data:image/svg", re.IGNORECASE),
)

RETAILER_FULFILLED_SELLER_TYPES = {"fulfilled by amazon", "noon fulfilled"}

CURRENCY_SYMBOLS = {
    "SAR": "SAR",
    "AED": "AED",
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
}

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_FIRST_INT_RE = re.compile(r"(\d+)")
_SNAPSHOT_LIMIT = 500


def _pick(raw: Mapping[str, Any], name: str) -> Any:
    for alias in FIELD_ALIASES[name]:
        value = raw.get(alias)
        if value is not None and value != "":
            return value
    return None


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def validate_image_url(image_url: Any) -> Optional[str]:
    """Return the image URL, or None for placeholders and relative URLs."""
    if not image_url or not isinstance(image_url, str):
        return None
    if any(pattern.search(image_url) for pattern in PLACEHOLDER_IMAGE_PATTERNS):
        return None
    if not is_absolute_http_url(image_url):
        return None
    return image_url


def validate_currency(currency: Any, default: str = "SAR") -> str:
    """Uppercase ISO-4217 code, or the default when unusable."""
    if not currency or not isinstance(currency, str):
        return default
    normalized = currency.strip().upper()
    return normalized if _CURRENCY_RE.match(normalized) else default


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


def check_schema(raw: Mapping[str, Any], site: Optional[str] = None) -> None:
    """Stage A: every required field must be present and non-blank.

    Raises:
        SchemaValidationError: Listing the missing fields
    """
    missing = []
    for name in REQUIRED_FIELDS:
        value = _pick(raw, name)
        if name == "site" and _is_missing(value):
            value = site
        if _is_missing(value):
            missing.append(name)
    if missing:
        raise SchemaValidationError(missing)


def check_values(raw: Mapping[str, Any]) -> Tuple[Decimal, str, Optional[str]]:
    """Stage B: price and URL must be usable; bad images are dropped.

    Returns:
        (price, url, image_url or None)

    Raises:
        ValueValidationError: Listing every unusable value
    """
    errors = []

    price = clean_price_string(_pick(raw, "price"))
    if price is None:
        errors.append("invalid price: must be a positive number")

    url = _pick(raw, "url")
    if isinstance(url, str):
        url = url.strip()
    if not is_absolute_http_url(url):
        errors.append("invalid url: must be an absolute http(s) URL")

    if errors:
        raise ValueValidationError(errors)

    return price, url, validate_image_url(_pick(raw, "image_url"))


def _parse_rating(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        rating = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    if not rating.is_finite() or rating < 0 or rating > 5:
        return None
    return rating.quantize(Decimal("0.01"))


def _parse_count(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        return max(0, int(str(value).replace(",", "").strip()))
    except ValueError:
        return 0


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def fill_defaults(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Stage C: optional seller/shipping fields, never blocking."""
    shipping_info = raw.get("shipping_info")
    return {
        "seller_rating": _parse_rating(raw.get("seller_rating")),
        "seller_rating_count": _parse_count(raw.get("seller_rating_count")),
        "seller_type": _optional_text(raw.get("seller_type")),
        "seller_location": _optional_text(raw.get("seller_location")),
        "shipping_estimate": _optional_text(raw.get("shipping_estimate")),
        "shipping_info": shipping_info if isinstance(shipping_info, dict) else None,
        "source_sku": _optional_text(raw.get("source_sku")),
    }


def normalize_identity(
    raw: Mapping[str, Any],
    url: str,
    site: str,
) -> Tuple[str, str, str]:
    """Stage D identity: (site, site_product_id, product_id).

    The product id is derived before the URL-path fallback is stored as
    site_product_id, so validating the output again yields the same id.
    """
    site = site.strip().lower()
    site_product_id = _optional_text(raw.get("site_product_id")) or extract_site_product_id(url, site)
    product_id = generate_product_id(site, site_product_id, url)
    if not site_product_id:
        site_product_id = url_path(url) or url
    return site, site_product_id, product_id


def enrich(fields: Dict[str, Any], raw: Mapping[str, Any], default_currency: str) -> Dict[str, Any]:
    """Stage E: derived flags, shipping days, symbol and VAT flag."""
    seller_type = (fields.get("seller_type") or "").strip().lower()
    fulfilled_by = str(raw.get("fulfilled_by") or "").strip().lower()
    fields["is_fulfilled_by_retailer"] = (
        seller_type in RETAILER_FULFILLED_SELLER_TYPES or fulfilled_by == "retailer"
    )

    days = None
    estimate = fields.get("shipping_estimate")
    if estimate:
        match = _FIRST_INT_RE.search(estimate)
        if match:
            days = int(match.group(1))
    if days is None and isinstance(raw.get("shipping_estimate_days"), int):
        days = raw["shipping_estimate_days"]
    fields["shipping_estimate_days"] = days

    currency = fields["price_currency"]
    fields["currency_symbol"] = CURRENCY_SYMBOLS.get(currency, currency)
    # Listed prices in the local market currency are VAT-inclusive
    fields["vat_included"] = currency == default_currency
    return fields


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


@dataclass
class InvalidRecord:
    """A rejected raw record with the reason."""

    raw: RawRecord
    error: str
    error_type: str


@dataclass
class ValidationResult:
    """Partition of a batch into accepted and rejected records."""

    valid: List[ValidatedProduct] = field(default_factory=list)
    invalid: List[InvalidRecord] = field(default_factory=list)


def _snapshot(raw: Mapping[str, Any]) -> str:
    try:
        text = json.dumps(raw, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        text = repr(raw)
    return text[:_SNAPSHOT_LIMIT]


class ValidationPipeline:
    """Runs raw scraper output through stages A to E."""

    def __init__(self, default_currency: str = "SAR"):
        self.default_currency = default_currency
        self.logger = logger.bind(service="validation")

    def validate_record(self, raw: Mapping[str, Any], metadata: Optional[Mapping[str, Any]] = None) -> ValidatedProduct:
        """Validate and normalize one raw record.

        Args:
            raw: Adapter output (or a previously validated product dump)
            metadata: Optional context such as ``site`` and ``query``

        Returns:
            ValidatedProduct with is_valid=True

        Raises:
            SchemaValidationError: Required field missing
            ValueValidationError: Price or URL unusable
        """
        metadata = metadata or {}
        try:
            check_schema(raw, site=metadata.get("site"))
            price, url, image_url = check_values(raw)
            product_name = normalize_title(str(_pick(raw, "name")))
            if not product_name:
                raise ValueValidationError(["invalid product_name: empty after normalization"])

            site_value = _pick(raw, "site") or metadata.get("site")
            site, site_product_id, product_id = normalize_identity(raw, url, str(site_value))

            fields: Dict[str, Any] = {
                "product_id": product_id,
                "site": site,
                "site_product_id": site_product_id,
                "product_name": product_name,
                "price_amount": price,
                "price_currency": validate_currency(_pick(raw, "currency"), self.default_currency),
                "url": normalize_url(url),
                "image_url": image_url,
                "affiliate_url": _optional_text(_pick(raw, "affiliate_url")) or normalize_url(url),
                "is_valid": True,
                "last_checked_at": utcnow(),
            }
            fields.update(fill_defaults(raw))
            fields = enrich(fields, raw, self.default_currency)

        except RecordValidationError as e:
            self.logger.warning(
                "record_rejected",
                error=e.message,
                error_type=type(e).__name__,
                site=raw.get("site") or metadata.get("site"),
                query=metadata.get("query"),
                raw=_snapshot(raw),
            )
            raise

        product = ValidatedProduct(**fields)
        self.logger.debug(
            "record_validated",
            product_id=product.product_id,
            site=product.site,
            product_name=product.product_name[:50],
        )
        return product

    def validate_records(
        self,
        raw_records: List[Mapping[str, Any]],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> ValidationResult:
        """Validate a batch; one bad record never blocks the rest.

        Returns:
            ValidationResult(valid, invalid)
        """
        result = ValidationResult()
        for raw in raw_records:
            if not isinstance(raw, Mapping):
                result.invalid.append(
                    InvalidRecord(
                        raw={"value": repr(raw)},
                        error="record is not an object",
                        error_type=SchemaValidationError.__name__,
                    )
                )
                continue
            try:
                result.valid.append(self.validate_record(raw, metadata))
            except RecordValidationError as e:
                result.invalid.append(InvalidRecord(raw=dict(raw), error=e.message, error_type=type(e).__name__))

        if raw_records:
            self.logger.info(
                "batch_validated",
                total=len(raw_records),
                valid=len(result.valid),
                invalid=len(result.invalid),
            )
        return result
