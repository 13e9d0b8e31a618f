"""Product service for reconciling scraped products and reading the archive.

Reconciliation turns one run's canonical products into at most one product
row per identity and at most one price point per product per hour. Every
candidate is applied inside its own savepoint, so a failing candidate never
leaves a product change without its price point (or the reverse), and never
stops the rest of the batch.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from pricearchive.core.exceptions import ReconciliationError
from pricearchive.models.category import Category
from pricearchive.models.price_point import PricePoint
from pricearchive.models.product import Product
from pricearchive.scrapers.base import CanonicalProduct
from pricearchive.scrapers.entity_registry import EntityKind, EntityRef, EntityRegistry

logger = structlog.get_logger(__name__)


def hour_bucket(ts: datetime) -> datetime:
    """Truncate a timestamp to the start of its hour in UTC.

    Naive timestamps are taken to be UTC already.
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    else:
        ts = ts.astimezone(timezone.utc)
    return ts.replace(minute=0, second=0, microsecond=0)


@dataclass
class ProductFilter:
    """Query options for browsing the archive."""

    name: Optional[str] = None  # Substring of the product name
    category: Optional[str] = None  # Substring of the category name
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None
    sort_by: str = "price"  # "price" or "name"
    descending: bool = False
    page: int = 1  # 1-indexed
    page_size: int = 50


class ProductService:
    """Service for reconciling products and querying price history."""

    SORT_COLUMNS = {
        "price": Product.price_per_unit,
        "name": Product.name,
    }

    def __init__(self, db: AsyncSession, registry: Optional[EntityRegistry] = None):
        """Initialize product service.

        Args:
            db: Async database session used for product and price point writes
            registry: Entity registry resolving category/manufacturer/store
                names. Only needed for reconcile().
        """
        self.db = db
        self.registry = registry
        self.logger = logger.bind(service="product_service")

    async def reconcile(
        self,
        candidates: Iterable[CanonicalProduct],
        as_of: datetime,
    ) -> Dict[str, int]:
        """Upsert a batch of canonical products and record hourly price points.

        For each distinct identity (last observation wins):
        1. Find the product by (name, unit, category, manufacturer, store)
        2. Update its price and image, or insert it
        3. Add a price point for the hour of ``as_of`` unless one exists

        Args:
            candidates: Canonical products from one run
            as_of: Observation time; truncated to the hour

        Returns:
            Reconciliation statistics dict

        Raises:
            ValueError: If the service was built without a registry
            ReconciliationError: If the batch cannot be committed
        """
        if self.registry is None:
            raise ValueError("reconcile() requires an EntityRegistry")

        bucket = hour_bucket(as_of)

        unique: Dict[Tuple[str, str, str, str, str], CanonicalProduct] = {}
        total = 0
        for candidate in candidates:
            total += 1
            unique[candidate.identity] = candidate

        stats = {
            "candidates": total,
            "duplicates": total - len(unique),
            "products_created": 0,
            "products_updated": 0,
            "price_points_created": 0,
            "price_points_skipped": 0,
            "errors": 0,
        }

        self.logger.info(
            "reconciling_products",
            candidates=total,
            unique=len(unique),
            bucket=bucket.isoformat(),
        )

        # Registry writes use their own sessions, so settle every name
        # before this session starts its transaction
        refs = await self._resolve_references(unique.values())

        for candidate in unique.values():
            try:
                category = refs[(EntityKind.CATEGORY, candidate.category_name)]
                manufacturer = refs[(EntityKind.MANUFACTURER, candidate.manufacturer_name)]
                store = refs[(EntityKind.STORE, candidate.store_name)]
                if category is None or manufacturer is None or store is None:
                    raise LookupError(f"unresolved reference for '{candidate.name}'")

                async with self.db.begin_nested():
                    created, point_created = await self._apply(
                        candidate, category, manufacturer, store, bucket
                    )
            except Exception as e:
                stats["errors"] += 1
                self.logger.error(
                    "candidate_reconcile_failed",
                    name=candidate.name[:50],
                    store=candidate.store_name,
                    error=str(e),
                    exc_info=True,
                )
                continue

            stats["products_created" if created else "products_updated"] += 1
            stats["price_points_created" if point_created else "price_points_skipped"] += 1

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            self.logger.error("reconcile_commit_failed", error=str(e), exc_info=True)
            raise ReconciliationError(f"Could not commit reconciliation batch: {e}") from e

        self.logger.info("products_reconciled", **stats)
        return stats

    async def _resolve_references(
        self,
        candidates: Iterable[CanonicalProduct],
    ) -> Dict[Tuple[EntityKind, str], Optional[EntityRef]]:
        wanted = set()
        for candidate in candidates:
            wanted.add((EntityKind.CATEGORY, candidate.category_name))
            wanted.add((EntityKind.MANUFACTURER, candidate.manufacturer_name))
            wanted.add((EntityKind.STORE, candidate.store_name))

        refs: Dict[Tuple[EntityKind, str], Optional[EntityRef]] = {}
        for kind, name in sorted(wanted, key=lambda key: (key[0].value, key[1])):
            try:
                refs[(kind, name)] = await self.registry.get_or_create(kind, name)
            except Exception as e:
                # Candidates referring to this name fail individually
                refs[(kind, name)] = None
                self.logger.error(
                    "reference_resolution_failed",
                    kind=kind.value,
                    name=name,
                    error=str(e),
                )
        return refs

    async def _apply(
        self,
        candidate: CanonicalProduct,
        category: EntityRef,
        manufacturer: EntityRef,
        store: EntityRef,
        bucket: datetime,
    ) -> Tuple[bool, bool]:
        """Upsert one product and its price point for the hour.

        A concurrent writer that inserts the same product or the same hourly
        point first is not an error: the product is re-read and updated, and
        the point is counted as skipped.

        Returns:
            (product_created, price_point_created)
        """
        product = await self._find_product(candidate, category, manufacturer, store)

        created = False
        if product is None:
            try:
                async with self.db.begin_nested():
                    product = Product(
                        name=candidate.name,
                        unit=candidate.unit,
                        category_id=category.id,
                        manufacturer_id=manufacturer.id,
                        store_id=store.id,
                        price_per_unit=candidate.price_per_unit,
                        image_uri=candidate.image_uri,
                        last_scraped_at=bucket,
                    )
                    self.db.add(product)
                    await self.db.flush()
                created = True
            except IntegrityError:
                self.logger.info("product_insert_conflict", name=candidate.name[:50])
                product = await self._find_product(candidate, category, manufacturer, store)
                if product is None:
                    raise

        if not created:
            product.price_per_unit = candidate.price_per_unit
            product.image_uri = candidate.image_uri
            product.last_scraped_at = bucket
            await self.db.flush()

        if not created and await self._price_point_exists(product.id, bucket):
            return created, False

        try:
            async with self.db.begin_nested():
                self.db.add(
                    PricePoint(
                        product_id=product.id,
                        price=candidate.price_per_unit,
                        recorded_at=bucket,
                    )
                )
                await self.db.flush()
        except IntegrityError:
            # Another writer recorded this hour first
            self.logger.debug("price_point_conflict", product_id=str(product.id))
            return created, False
        return created, True

    async def _find_product(
        self,
        candidate: CanonicalProduct,
        category: EntityRef,
        manufacturer: EntityRef,
        store: EntityRef,
    ) -> Optional[Product]:
        result = await self.db.execute(
            select(Product).where(and_(
                Product.name == candidate.name,
                Product.unit == candidate.unit,
                Product.category_id == category.id,
                Product.manufacturer_id == manufacturer.id,
                Product.store_id == store.id,
            ))
        )
        return result.scalar_one_or_none()

    async def _price_point_exists(self, product_id: UUID, bucket: datetime) -> bool:
        result = await self.db.execute(
            select(PricePoint.id).where(and_(
                PricePoint.product_id == product_id,
                PricePoint.recorded_at == bucket,
            ))
        )
        return result.first() is not None

    async def get_product_by_id(self, product_id: UUID) -> Optional[Product]:
        """Get product by ID with its reference entities loaded."""
        query = (
            select(Product)
            .options(
                selectinload(Product.category),
                selectinload(Product.manufacturer),
                selectinload(Product.store),
            )
            .where(Product.id == product_id)
        )

        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_products(
        self,
        filters: Optional[ProductFilter] = None,
    ) -> Tuple[List[Product], int]:
        """Get a filtered, sorted page of products.

        Args:
            filters: Query options; defaults to the first page by ascending price

        Returns:
            Tuple of (products list, total count)

        Raises:
            ValueError: On an unknown sort key or a non-positive page/page size
        """
        filters = filters or ProductFilter()
        if filters.sort_by not in self.SORT_COLUMNS:
            raise ValueError(f"Unknown sort key: {filters.sort_by}")
        if filters.page < 1 or filters.page_size < 1:
            raise ValueError("page and page_size must be positive")

        conditions = []
        if filters.name:
            conditions.append(Product.name.ilike(f"%{filters.name}%"))
        if filters.category:
            conditions.append(Category.name.ilike(f"%{filters.category}%"))
        if filters.min_price is not None:
            conditions.append(Product.price_per_unit >= filters.min_price)
        if filters.max_price is not None:
            conditions.append(Product.price_per_unit <= filters.max_price)

        query = (
            select(Product)
            .join(Category, Product.category_id == Category.id)
            .options(
                selectinload(Product.category),
                selectinload(Product.manufacturer),
                selectinload(Product.store),
            )
        )
        count_q = select(func.count(Product.id)).join(Category, Product.category_id == Category.id)
        if conditions:
            query = query.where(and_(*conditions))
            count_q = count_q.where(and_(*conditions))

        sort_column = self.SORT_COLUMNS[filters.sort_by]
        order = sort_column.desc() if filters.descending else sort_column.asc()
        # Secondary key keeps paging stable across equal prices
        query = query.order_by(order, Product.name.asc(), Product.id.asc())

        offset = (filters.page - 1) * filters.page_size
        query = query.offset(offset).limit(filters.page_size)

        result = await self.db.execute(query)
        products = list(result.scalars().all())

        total_result = await self.db.execute(count_q)
        total = total_result.scalar() or 0

        return products, total

    async def get_price_history(
        self,
        product_id: UUID,
        days: Optional[int] = None,
    ) -> List[PricePoint]:
        """Get price points for a product, oldest first.

        Args:
            product_id: Product UUID
            days: Only return points from the last N days (default: all)
        """
        query = select(PricePoint).where(PricePoint.product_id == product_id)
        if days is not None:
            cutoff = hour_bucket(datetime.now(timezone.utc) - timedelta(days=days))
            query = query.where(PricePoint.recorded_at >= cutoff)

        result = await self.db.execute(query.order_by(PricePoint.recorded_at.asc()))
        history = list(result.scalars().all())

        self.logger.debug(
            "price_history_fetched",
            product_id=str(product_id),
            days=days,
            count=len(history),
        )
        return history
