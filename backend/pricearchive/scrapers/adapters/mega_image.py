"""Mega Image adapter.

Mega Image exposes a persisted-query GraphQL endpoint that returns one page
of products per category code. The page count is only known after asking
for page 0, so planning is a discovery pass (one cheap request per code,
all codes concurrently) followed by one request per page.
"""

import json
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog

from pricearchive.core.exceptions import InterpretationError
from pricearchive.scrapers.base import ITEM_ERRORS, CanonicalProduct, CategoryRequests, RequestDescriptor
from pricearchive.scrapers.category_map import MEGA_IMAGE_CATEGORIES
from pricearchive.scrapers.entity_registry import EntityKind, EntityRef, EntityRegistry
from pricearchive.scrapers.fetcher import Fetcher
from pricearchive.scrapers.utils.normalizer import capitalize_first, parse_price


logger = structlog.get_logger(__name__)


class MegaImageAdapter:
    """Paginated-discovery adapter for the Mega Image product search API."""

    source_slug = "mega-image"
    store_name = "Mega Image"

    API_BASE_URL = "https://api.mega-image.ro/"
    IMAGE_BASE_URL = "https://d1lqpgkqcok0l.cloudfront.net"
    OPERATION_NAME = "GetCategoryProductSearch"
    PERSISTED_QUERY_HASH = "10ddc63b94cf5c83b7474746ae22bab24e83d503834a72942577672af7df4cb2"
    PAGE_SIZE = 50
    LANGUAGE = "ro"

    def __init__(self, categories: Optional[Mapping[str, Sequence[str]]] = None):
        """Initialize the adapter.

        Args:
            categories: Canonical category name -> Mega Image category codes.
                Defaults to the static category map.
        """
        self.categories = dict(categories if categories is not None else MEGA_IMAGE_CATEGORIES)
        self.logger = logger.bind(source=self.source_slug)

    def build_page_request(self, category_code: str, page_number: int) -> RequestDescriptor:
        variables = {
            "lang": self.LANGUAGE,
            "category": category_code,
            "pageNumber": page_number,
            "pageSize": self.PAGE_SIZE,
        }
        extensions = {
            "persistedQuery": {"version": 1, "sha256Hash": self.PERSISTED_QUERY_HASH},
        }
        return RequestDescriptor(
            url=self.API_BASE_URL,
            params=(
                ("operationName", self.OPERATION_NAME),
                ("variables", json.dumps(variables, separators=(",", ":"))),
                ("extensions", json.dumps(extensions, separators=(",", ":"))),
            ),
        )

    async def plan_requests(self, fetcher: Fetcher) -> List[CategoryRequests]:
        """Discover page counts for every category code, then plan all pages.

        Discovery for every code of every category runs concurrently; a
        category's page requests are known only once its discovery is done.
        """
        discovery = [
            (category_name, code, self.build_page_request(code, 0))
            for category_name, codes in self.categories.items()
            for code in codes
        ]
        results = await fetcher.fetch_all([request for _, _, request in discovery])

        planned: Dict[str, CategoryRequests] = {
            name: CategoryRequests(category_name=name) for name in self.categories
        }

        for (category_name, code, _), result in zip(discovery, results):
            if not result.ok:
                self.logger.warning(
                    "page_discovery_failed",
                    category=category_name,
                    code=code,
                    error=str(result.error),
                )
                continue

            try:
                total_pages = self._total_pages(result.json())
            except (InterpretationError, ValueError) as e:
                self.logger.warning(
                    "page_discovery_unreadable",
                    category=category_name,
                    code=code,
                    error=str(e),
                )
                continue

            planned[category_name].requests.extend(
                self.build_page_request(code, page) for page in range(total_pages)
            )
            self.logger.debug("pages_discovered", category=category_name, code=code, total_pages=total_pages)

        plan = list(planned.values())
        self.logger.info(
            "requests_planned",
            categories=len(plan),
            requests=sum(len(c.requests) for c in plan),
        )
        return plan

    async def interpret(
        self,
        payload: Any,
        category: EntityRef,
        registry: EntityRegistry,
    ) -> List[CanonicalProduct]:
        """Map one product-search page to canonical products.

        Raises:
            InterpretationError: If the page has no product list at all
        """
        items = self._search_result(payload).get("products")
        if not isinstance(items, list):
            raise InterpretationError(self.source_slug, "response has no product list")

        products: List[CanonicalProduct] = []
        for index, item in enumerate(items):
            try:
                products.append(await self._normalize_item(item, category, registry))
            except ITEM_ERRORS as e:
                self.logger.warning(
                    "item_interpretation_failed",
                    category=category.name,
                    index=index,
                    error=str(e),
                )

        self.logger.debug(
            "page_interpreted",
            category=category.name,
            items=len(items),
            products=len(products),
        )
        return products

    async def _normalize_item(
        self,
        item: Dict[str, Any],
        category: EntityRef,
        registry: EntityRegistry,
    ) -> CanonicalProduct:
        name = item.get("name")
        if not name:
            raise InterpretationError(self.source_slug, "item has no name")

        manufacturer_name = capitalize_first(item.get("manufacturerName"))
        if not manufacturer_name:
            raise InterpretationError(self.source_slug, f"item '{name}' has no manufacturer")

        price_info = item["price"]
        price = parse_price(price_info.get("unitPrice"))
        if price is None:
            raise InterpretationError(self.source_slug, f"item '{name}' has no unit price")

        unit = price_info.get("unit")
        if not unit:
            raise InterpretationError(self.source_slug, f"item '{name}' has no unit")

        manufacturer = await registry.get_or_create(EntityKind.MANUFACTURER, manufacturer_name)

        return CanonicalProduct(
            name=name,
            unit=unit,
            price_per_unit=price,
            category_name=category.name,
            manufacturer_name=manufacturer.name,
            store_name=self.store_name,
            image_uri=self._image_uri(item.get("images")),
        )

    def _image_uri(self, images: Any) -> Optional[str]:
        # Images are ordered by size; the last one is the largest
        if not isinstance(images, list) or not images:
            return None
        url = (images[-1] or {}).get("url")
        if not url:
            return None
        return f"{self.IMAGE_BASE_URL}{url}"

    def _search_result(self, payload: Any) -> Dict[str, Any]:
        try:
            result = payload["data"]["categoryProductSearch"]
        except (KeyError, TypeError) as e:
            raise InterpretationError(self.source_slug, f"unexpected response shape: {e!r}") from e
        if not isinstance(result, dict):
            raise InterpretationError(self.source_slug, "categoryProductSearch is not an object")
        return result

    def _total_pages(self, payload: Any) -> int:
        try:
            total_pages = int(self._search_result(payload)["pagination"]["totalPages"])
        except (KeyError, TypeError) as e:
            raise InterpretationError(self.source_slug, f"missing pagination: {e!r}") from e
        return max(0, total_pages)
