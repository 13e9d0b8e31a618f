"""Store model representing retail chains."""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Mapped, relationship

from pricearchive.models.base import Base, NamedEntityMixin

if TYPE_CHECKING:
    from pricearchive.models.product import Product


class Store(NamedEntityMixin, Base):
    """Retail chain a product is sold by (e.g. 'Mega Image', 'Metro').

    Each source adapter reports exactly one store name.
    """

    __tablename__ = "stores"

    products: Mapped[list["Product"]] = relationship(back_populates="store")

    def __repr__(self) -> str:
        return f"<Store(id={self.id}, name='{self.name}')>"
