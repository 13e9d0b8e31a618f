"""SQLAlchemy models for the price archive.

All models are imported here so metadata.create_all can discover them.
"""

from pricearchive.models.base import Base, NamedEntityMixin, TimestampMixin, UUIDPrimaryKeyMixin
from pricearchive.models.category import Category
from pricearchive.models.manufacturer import Manufacturer
from pricearchive.models.store import Store
from pricearchive.models.product import Product
from pricearchive.models.price_point import PricePoint
from pricearchive.models.scraper_job import ScraperJob

__all__ = [
    "Base",
    "NamedEntityMixin",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "Category",
    "Manufacturer",
    "Store",
    "Product",
    "PricePoint",
    "ScraperJob",
]
