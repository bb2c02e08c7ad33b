"""Price history tracking for products."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, Index, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from pricepulse.models.base import Base, UUIDPrimaryKeyMixin


class PriceHistory(UUIDPrimaryKeyMixin, Base):
    """One observed price for a product at a point in time.

    Keyed by the stable product_id hash rather than the row id so history
    survives re-creation of the product row.
    """

    __tablename__ = "price_history"

    product_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    site: Mapped[str] = mapped_column(String(50), nullable=False)
    url: Mapped[str] = mapped_column(String(2000), nullable=False)

    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, comment="Price at this point in time")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="SAR")

    source: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="scraper",
        comment="Site or pipeline that observed the price"
    )

    scraped_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_price_history_product_scraped", "product_id", "scraped_at"),
    )

    def __repr__(self) -> str:
        return f"<PriceHistory(id={self.id}, product_id='{self.product_id}', price={self.price}, scraped_at={self.scraped_at})>"
