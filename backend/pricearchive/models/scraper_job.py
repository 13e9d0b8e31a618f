"""Scraper job tracking and monitoring."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, Text, Integer, Numeric, DateTime, func
from sqlalchemy.orm import Mapped, mapped_column

from pricearchive.models.base import Base, UUIDPrimaryKeyMixin


class ScraperJob(UUIDPrimaryKeyMixin, Base):
    """Tracks execution of scheduled scrape runs.

    Each run of a source creates a ScraperJob record to track status,
    timings, counters and errors. Purely an audit trail: scraping is
    idempotent, so nothing resumes from these rows.
    """

    __tablename__ = "scraper_jobs"

    source: Mapped[str] = mapped_column(String(50), nullable=False, index=True, comment="Source slug (e.g. 'metro')")

    # Job status
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="Status: 'pending', 'running', 'completed', 'failed'"
    )

    # Timing
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 2), nullable=True)

    # Metrics
    requests_planned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    requests_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="Canonical products interpreted")
    items_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="New products inserted")
    items_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="Existing products updated")
    price_points_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="Candidates that failed to reconcile")

    # Error tracking
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_traceback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<ScraperJob(id={self.id}, source='{self.source}', status='{self.status}', created_at={self.created_at})>"
