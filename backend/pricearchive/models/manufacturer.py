"""Manufacturer (brand) reference entity."""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Mapped, relationship

from pricearchive.models.base import Base, NamedEntityMixin

if TYPE_CHECKING:
    from pricearchive.models.product import Product


class Manufacturer(NamedEntityMixin, Base):
    __tablename__ = "manufacturers"

    products: Mapped[list["Product"]] = relationship(back_populates="manufacturer")

    def __repr__(self) -> str:
        return f"<Manufacturer(id={self.id}, name='{self.name}')>"
