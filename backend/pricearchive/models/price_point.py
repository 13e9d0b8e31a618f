"""Hourly price history for products."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Numeric, DateTime, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pricearchive.models.base import Base, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from pricearchive.models.product import Product


class PricePoint(UUIDPrimaryKeyMixin, Base):
    """One price observation for a product, bucketed to the hour.

    Append-only. At most one row exists per (product_id, recorded_at), so
    repeated runs inside the same hour do not grow the history.
    """

    __tablename__ = "price_points"

    product_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, comment="Price per unit at this hour")
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="Observation time truncated to the hour (UTC)",
    )

    __table_args__ = (
        UniqueConstraint("product_id", "recorded_at", name="uq_price_point_product_hour"),
        Index("idx_price_points_recorded", "recorded_at"),
    )

    product: Mapped["Product"] = relationship(back_populates="price_points")

    def __repr__(self) -> str:
        return f"<PricePoint(id={self.id}, product_id={self.product_id}, price={self.price}, recorded_at={self.recorded_at})>"
