"""SQLAlchemy models for PricePulse.

All models are imported here so Base.metadata knows every table.
"""

from pricepulse.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from pricepulse.models.product import Product
from pricepulse.models.price_history import PriceHistory
from pricepulse.models.product_metrics import ProductMetrics
from pricepulse.models.scrape_job import ScrapeJob

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "Product",
    "PriceHistory",
    "ProductMetrics",
    "ScrapeJob",
]
