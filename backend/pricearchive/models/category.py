"""Category model for product classification."""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Mapped, relationship

from pricearchive.models.base import Base, NamedEntityMixin

if TYPE_CHECKING:
    from pricearchive.models.product import Product


class Category(NamedEntityMixin, Base):
    """Canonical product category (e.g. 'Lactate/Oua').

    Source-specific category codes are mapped to these names by the
    category map; the row itself is created lazily on first sighting.
    """

    __tablename__ = "categories"

    products: Mapped[list["Product"]] = relationship(back_populates="category")

    def __repr__(self) -> str:
        return f"<Category(id={self.id}, name='{self.name}')>"
