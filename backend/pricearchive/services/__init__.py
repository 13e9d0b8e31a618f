"""Services module for business logic and data operations."""

from pricearchive.services.product_service import ProductFilter, ProductService, hour_bucket

__all__ = [
    "ProductFilter",
    "ProductService",
    "hour_bucket",
]
