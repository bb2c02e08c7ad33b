"""Canonical product record produced by the validation pipeline."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class ValidatedProduct(BaseModel):
    """Product record that passed every validation stage.

    product_id is a pure function of (site, site_product_id | url path), so
    the cache, the products table and the metrics table all agree on it.
    """

    model_config = ConfigDict(from_attributes=True)

    # Identity
    product_id: str
    site: str
    site_product_id: str

    # Core fields
    product_name: str
    price_amount: Decimal
    price_currency: str = "SAR"
    url: str
    image_url: Optional[str] = None
    affiliate_url: Optional[str] = None

    # Seller / shipping (defaulted in stage C)
    seller_rating: Optional[Decimal] = None
    seller_rating_count: int = 0
    seller_type: Optional[str] = None
    seller_location: Optional[str] = None
    shipping_estimate: Optional[str] = None
    shipping_info: Optional[Dict[str, Any]] = None
    source_sku: Optional[str] = None

    # Enrichment (stage E)
    is_fulfilled_by_retailer: bool = False
    shipping_estimate_days: Optional[int] = None
    vat_included: bool = True
    currency_symbol: str = ""

    # Metadata
    is_valid: bool = True
    trust_score: Optional[Decimal] = None
    last_checked_at: datetime

    def to_cache_item(self) -> Dict[str, Any]:
        """JSON-safe dict for cache envelopes."""
        return self.model_dump(mode="json")
