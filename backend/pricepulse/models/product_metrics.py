"""Demand metrics and tier assignment per product."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Enum, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from pricepulse.models.base import Base
from pricepulse.schemas.common import Tier


class ProductMetrics(Base):
    """Search demand and refresh bookkeeping for one product_id.

    Rows are created lazily (first flushed search or first scrape) and
    never deleted.
    """

    __tablename__ = "product_metrics"

    product_id: Mapped[str] = mapped_column(String(32), primary_key=True)

    search_count_week: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Decaying weekly search counter"
    )
    last_scraped_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last refresh attempt for this product"
    )
    tier: Mapped[Tier] = mapped_column(
        Enum(Tier, name="product_tier", values_callable=lambda e: [t.value for t in e]),
        nullable=False,
        default=Tier.COLD,
    )
    is_tracked: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Manual pin, forces HOT"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_product_metrics_tier_scraped", "tier", "last_scraped_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ProductMetrics(product_id='{self.product_id}', tier={self.tier.value}, "
            f"search_count_week={self.search_count_week}, is_tracked={self.is_tracked})>"
        )
