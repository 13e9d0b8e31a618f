"""Metro adapter.

Metro's catalog is split over two services: an article search that returns
only result ids for a category filter, and a variants endpoint that returns
article details for up to 40 ids per call. Planning therefore searches
every category first and then batches the collected ids into detail
requests.
"""

from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog

from pricearchive.core.exceptions import InterpretationError
from pricearchive.scrapers.base import ITEM_ERRORS, CanonicalProduct, CategoryRequests, RequestDescriptor
from pricearchive.scrapers.category_map import METRO_CATEGORIES
from pricearchive.scrapers.entity_registry import EntityKind, EntityRef, EntityRegistry
from pricearchive.scrapers.fetcher import Fetcher
from pricearchive.scrapers.utils.normalizer import (
    capitalize_first,
    extract_quantity_and_unit,
    parse_price,
    unit_price,
)


logger = structlog.get_logger(__name__)


def _first_value(mapping: Any) -> Any:
    """First value of a JSON object keyed by opaque ids."""
    if not isinstance(mapping, dict) or not mapping:
        raise KeyError("expected a non-empty object")
    return next(iter(mapping.values()))


class MetroAdapter:
    """Two-phase (search ids, then batched details) adapter for Metro."""

    source_slug = "metro"
    store_name = "Metro"

    SEARCH_URL = "https://produse.metro.ro/explore.articlesearch.v1/search"
    DETAILS_URL = "https://produse.metro.ro/evaluate.article.v1/betty-variants"
    STORE_ID = "00013"
    COUNTRY = "RO"
    LOCALE = "ro-RO"
    SEARCH_ROWS = 1000
    BATCH_SIZE = 40

    def __init__(self, categories: Optional[Mapping[str, Sequence[str]]] = None):
        """Initialize the adapter.

        Args:
            categories: Canonical category name -> Metro category filters.
                Defaults to the static category map.
        """
        self.categories = dict(categories if categories is not None else METRO_CATEGORIES)
        self.logger = logger.bind(source=self.source_slug)

    def build_search_request(self, category_filter: str) -> RequestDescriptor:
        return RequestDescriptor(
            url=self.SEARCH_URL,
            params=(
                ("storeId", self.STORE_ID),
                ("language", self.LOCALE),
                ("country", self.COUNTRY),
                ("query", "*"),
                ("rows", str(self.SEARCH_ROWS)),
                ("page", "1"),
                ("filter", f"category:{category_filter}"),
            ),
        )

    def build_detail_requests(self, article_ids: Sequence[str]) -> List[RequestDescriptor]:
        """Partition ids into batches of BATCH_SIZE, one request per batch."""
        requests = []
        for start in range(0, len(article_ids), self.BATCH_SIZE):
            batch = article_ids[start:start + self.BATCH_SIZE]
            requests.append(
                RequestDescriptor(
                    url=self.DETAILS_URL,
                    params=(
                        ("storeIds", self.STORE_ID),
                        ("country", self.COUNTRY),
                        ("locale", self.LOCALE),
                        *(("ids", article_id) for article_id in batch),
                    ),
                    # The variants service rejects calls without a call-tree id
                    headers=(("calltreeid", "a"),),
                )
            )
        return requests

    async def plan_requests(self, fetcher: Fetcher) -> List[CategoryRequests]:
        """Search every category filter, then batch the result ids.

        All searches run concurrently; a category's detail requests are
        built only after every search for that category has returned.
        """
        searches = [
            (category_name, category_filter, self.build_search_request(category_filter))
            for category_name, filters in self.categories.items()
            for category_filter in filters
        ]
        results = await fetcher.fetch_all([request for _, _, request in searches])

        ids_by_category: Dict[str, Dict[str, None]] = {name: {} for name in self.categories}
        for (category_name, category_filter, _), result in zip(searches, results):
            if not result.ok:
                self.logger.warning(
                    "id_search_failed",
                    category=category_name,
                    filter=category_filter,
                    error=str(result.error),
                )
                continue

            try:
                result_ids = self._result_ids(result.json())
            except (InterpretationError, ValueError) as e:
                self.logger.warning(
                    "id_search_unreadable",
                    category=category_name,
                    filter=category_filter,
                    error=str(e),
                )
                continue

            # dict keeps first-seen order while dropping ids shared by filters
            ids_by_category[category_name].update(dict.fromkeys(result_ids))

        plan = [
            CategoryRequests(
                category_name=category_name,
                requests=self.build_detail_requests(list(ids)),
            )
            for category_name, ids in ids_by_category.items()
        ]
        self.logger.info(
            "requests_planned",
            categories=len(plan),
            article_ids=sum(len(ids) for ids in ids_by_category.values()),
            requests=sum(len(c.requests) for c in plan),
        )
        return plan

    async def interpret(
        self,
        payload: Any,
        category: EntityRef,
        registry: EntityRegistry,
    ) -> List[CanonicalProduct]:
        """Map one variants batch to canonical products.

        Raises:
            InterpretationError: If the batch has no result object
        """
        articles = payload.get("result") if isinstance(payload, dict) else None
        if not isinstance(articles, dict):
            raise InterpretationError(self.source_slug, "response has no result object")

        products: List[CanonicalProduct] = []
        for article_id, article in articles.items():
            try:
                products.append(await self._normalize_article(article, category, registry))
            except ITEM_ERRORS as e:
                self.logger.warning(
                    "item_interpretation_failed",
                    category=category.name,
                    article_id=article_id,
                    error=str(e),
                )

        self.logger.debug(
            "batch_interpreted",
            category=category.name,
            items=len(articles),
            products=len(products),
        )
        return products

    async def _normalize_article(
        self,
        article: Dict[str, Any],
        category: EntityRef,
        registry: EntityRegistry,
    ) -> CanonicalProduct:
        variant = _first_value(article["variants"])
        bundle = _first_value(variant["bundles"])

        description = bundle.get("description")
        if not description:
            raise InterpretationError(self.source_slug, "bundle has no description")

        manufacturer_name = capitalize_first(bundle.get("brandName"))
        if not manufacturer_name:
            raise InterpretationError(self.source_slug, f"'{description}' has no brand")

        price = parse_price(_first_value(bundle["stores"])["sellingPriceInfo"]["finalPrice"])
        if price is None:
            raise InterpretationError(self.source_slug, f"'{description}' has no final price")

        quantity = extract_quantity_and_unit(description)
        if not quantity.matched and variant.get("description"):
            # Some bundles only carry the size on the variant title
            from_variant = extract_quantity_and_unit(variant["description"])
            if from_variant.matched:
                quantity = replace(
                    quantity,
                    quantity=from_variant.quantity,
                    unit=from_variant.unit,
                    matched=True,
                )

        manufacturer = await registry.get_or_create(EntityKind.MANUFACTURER, manufacturer_name)

        return CanonicalProduct(
            name=quantity.name or description,
            unit=quantity.unit,
            price_per_unit=unit_price(price, quantity.quantity),
            category_name=category.name,
            manufacturer_name=manufacturer.name,
            store_name=self.store_name,
            image_uri=variant.get("imageUrl") or None,
        )

    def _result_ids(self, payload: Any) -> List[str]:
        try:
            result_ids = payload["resultIds"]
        except (KeyError, TypeError) as e:
            raise InterpretationError(self.source_slug, f"search response has no resultIds: {e!r}") from e
        if not isinstance(result_ids, list):
            raise InterpretationError(self.source_slug, "resultIds is not a list")
        return [str(result_id) for result_id in result_ids if result_id is not None]
