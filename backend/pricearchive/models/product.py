"""Product model representing items scraped from retail sources."""

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import String, ForeignKey, Numeric, DateTime, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pricearchive.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from pricearchive.models.category import Category
    from pricearchive.models.manufacturer import Manufacturer
    from pricearchive.models.store import Store
    from pricearchive.models.price_point import PricePoint


class Product(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Product sold by a store.

    Each product is uniquely identified by the five-tuple
    (name, unit, category_id, manufacturer_id, store_id). Only the price
    and image are mutated after creation; price observations are kept in
    the append-only price_points table.
    """

    __tablename__ = "products"

    # Identity
    name: Mapped[str] = mapped_column(String(500), nullable=False, index=True, comment="Display name, first char capitalized")
    unit: Mapped[str] = mapped_column(String(20), nullable=False, comment="Unit the price refers to (e.g. 'Kg', 'L', 'Buc')")
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    manufacturer_id: Mapped[int] = mapped_column(
        ForeignKey("manufacturers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    store_id: Mapped[int] = mapped_column(
        ForeignKey("stores.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # Mutable fields
    price_per_unit: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        index=True,
        comment="Latest observed price per unit",
    )
    image_uri: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    last_scraped_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Hour bucket of the last run that observed this product",
    )

    __table_args__ = (
        UniqueConstraint(
            "name", "unit", "category_id", "manufacturer_id", "store_id",
            name="uq_product_identity",
        ),
        Index("idx_products_category_price", "category_id", "price_per_unit"),
    )

    # Relationships
    category: Mapped["Category"] = relationship(back_populates="products")
    manufacturer: Mapped["Manufacturer"] = relationship(back_populates="products")
    store: Mapped["Store"] = relationship(back_populates="products")
    price_points: Mapped[list["PricePoint"]] = relationship(
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="PricePoint.recorded_at",
    )

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, name='{self.name[:50]}', unit='{self.unit}', store_id={self.store_id})>"
