"""Durable scrape job queue rows."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from pricepulse.models.base import Base, JSONType


class ScrapeJob(Base):
    """One unit of background scrape work.

    Jobs survive restarts: workers claim rows atomically, retries push
    available_at into the future, and rows stuck in 'running' past the
    stale timeout are reclaimed.
    """

    __tablename__ = "scrape_jobs"

    # Integer id gives FIFO ordering within a priority band
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    job_type: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        comment="'full_search' or 'delta_refresh'"
    )
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="Status: 'pending', 'running', 'completed', 'failed'"
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    dedupe_key: Mapped[Optional[str]] = mapped_column(String(500), nullable=True, index=True)

    # Timing
    enqueued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="Earliest time a worker may claim the job (retry backoff)"
    )
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    worker_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Outcome
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        Index("idx_scrape_jobs_claim", "status", "priority", "available_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ScrapeJob(id={self.id}, type='{self.job_type}', status='{self.status}', "
            f"priority={self.priority}, attempt={self.attempt})>"
        )
