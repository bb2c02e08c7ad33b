"""Product model holding the latest canonical state of a scraped listing."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from pricepulse.models.base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin


class Product(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Validated product listing from one site.

    Each product is uniquely identified by the (site, site_product_id) pair.
    product_id is the deterministic hash shared with the cache and metrics.
    """

    __tablename__ = "products"

    # Identity
    site: Mapped[str] = mapped_column(String(50), nullable=False, comment="Lowercased site slug")
    site_product_id: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        comment="Product ID on the source site (or normalized URL path)"
    )
    product_id: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        index=True,
        comment="Stable hash of (site, site_product_id | url path)"
    )

    # Product info
    name: Mapped[str] = mapped_column(String(1000), nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="SAR")

    # Links
    url: Mapped[str] = mapped_column(String(2000), nullable=False)
    image_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    affiliate_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)

    # Seller / shipping
    seller_rating: Mapped[Optional[Decimal]] = mapped_column(Numeric(3, 2), nullable=True)
    seller_rating_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    seller_type: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    seller_location: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    source_sku: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    shipping_info: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    shipping_estimate_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_fulfilled_by_retailer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    vat_included: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Quality
    is_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    trust_score: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("site", "site_product_id", name="uq_products_site_product"),
        Index("idx_products_valid_checked", "is_valid", "last_checked_at"),
    )

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, product_id='{self.product_id}', site='{self.site}', name='{self.name[:50]}')>"
