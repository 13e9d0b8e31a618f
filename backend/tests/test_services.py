"""Test suite for the persistence services.

Tests cover:
- Entity registry (concurrent get-or-create, cache, conflict recovery)
- Product reconciliation (create/update, hourly price points, isolation)
- Product queries (filters, sorting, paging, price history)
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from pricearchive.core.exceptions import EntityCreationConflict
from pricearchive.models import Category, Manufacturer, PricePoint, Product, Store
from pricearchive.scrapers.base import CanonicalProduct
from pricearchive.scrapers.entity_registry import EntityKind, EntityRegistry
from pricearchive.services.product_service import ProductFilter, ProductService, hour_bucket


# ============================================================================
# HELPERS
# ============================================================================

AS_OF = datetime(2026, 3, 14, 10, 25, 41, tzinfo=timezone.utc)


def candidate(name="Lapte", price="5.99", unit="L", category="Lactate/Oua",
              manufacturer="Zuzu", store="Metro", image=None) -> CanonicalProduct:
    return CanonicalProduct(
        name=name,
        unit=unit,
        price_per_unit=Decimal(price),
        category_name=category,
        manufacturer_name=manufacturer,
        store_name=store,
        image_uri=image,
    )


async def count(session_factory, model) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(model))
        return result.scalar_one()


class StaleReadSession:
    """Session proxy whose lookups never see existing rows."""

    def __init__(self, session):
        self._session = session

    async def __aenter__(self):
        await self._session.__aenter__()
        return self

    async def __aexit__(self, *exc_info):
        return await self._session.__aexit__(*exc_info)

    async def execute(self, *args, **kwargs):
        miss = MagicMock()
        miss.scalar_one_or_none.return_value = None
        return miss

    def __getattr__(self, name):
        return getattr(self._session, name)


# ============================================================================
# TESTS: ENTITY REGISTRY
# ============================================================================

class TestEntityRegistry:
    """Tests for race-free reference entity creation."""

    async def test_concurrent_requests_create_one_row(self, session_factory):
        registry = EntityRegistry(session_factory)

        refs = await asyncio.gather(*(
            registry.get_or_create(EntityKind.MANUFACTURER, "Zuzu") for _ in range(20)
        ))

        assert len({ref.id for ref in refs}) == 1
        assert await count(session_factory, Manufacturer) == 1

    async def test_existing_row_is_reused_and_cached(self, session_factory, test_db):
        test_db.add(Store(name="Metro"))
        await test_db.commit()

        registry = EntityRegistry(session_factory)
        ref = await registry.get_or_create(EntityKind.STORE, "Metro")

        assert registry.cached(EntityKind.STORE, "Metro") == ref
        assert len(registry) == 1
        assert await count(session_factory, Store) == 1

    async def test_kinds_are_independent(self, session_factory):
        registry = EntityRegistry(session_factory)

        category = await registry.get_or_create(EntityKind.CATEGORY, "Carne")
        manufacturer = await registry.get_or_create(EntityKind.MANUFACTURER, "Carne")

        assert category.name == manufacturer.name == "Carne"
        assert await count(session_factory, Category) == 1
        assert await count(session_factory, Manufacturer) == 1

    async def test_empty_name_is_rejected(self, session_factory):
        with pytest.raises(ValueError):
            await EntityRegistry(session_factory).get_or_create(EntityKind.CATEGORY, "")

    async def test_conflicting_insert_rereads_winner(self, session_factory, test_db):
        test_db.add(Category(name="Lactate/Oua"))
        await test_db.commit()

        reads = {"stale": 1}

        def factory():
            session = session_factory()
            if reads["stale"]:
                reads["stale"] -= 1
                return StaleReadSession(session)
            return session

        registry = EntityRegistry(factory, max_attempts=2)
        ref = await registry.get_or_create(EntityKind.CATEGORY, "Lactate/Oua")

        assert ref.id == 1
        assert await count(session_factory, Category) == 1

    async def test_single_attempt_conflict_still_reads_winner(self, session_factory, test_db):
        test_db.add(Category(name="Lactate/Oua"))
        await test_db.commit()

        sessions = {"opened": 0}

        def factory():
            sessions["opened"] += 1
            session = session_factory()
            return StaleReadSession(session) if sessions["opened"] == 1 else session

        registry = EntityRegistry(factory, max_attempts=1)
        ref = await registry.get_or_create(EntityKind.CATEGORY, "Lactate/Oua")

        assert ref.id == 1
        assert sessions["opened"] == 2
        assert await count(session_factory, Category) == 1

    async def test_unresolvable_conflict_raises(self, session_factory, test_db):
        test_db.add(Category(name="Lactate/Oua"))
        await test_db.commit()

        registry = EntityRegistry(lambda: StaleReadSession(session_factory()), max_attempts=3)

        with pytest.raises(EntityCreationConflict):
            await registry.get_or_create(EntityKind.CATEGORY, "Lactate/Oua")
        assert registry.cached(EntityKind.CATEGORY, "Lactate/Oua") is None


# ============================================================================
# TESTS: RECONCILIATION
# ============================================================================

class TestReconcile:
    """Tests for ProductService.reconcile."""

    async def reconcile(self, session_factory, registry, candidates, as_of=AS_OF):
        async with session_factory() as session:
            return await ProductService(session, registry).reconcile(candidates, as_of)

    def test_hour_bucket(self):
        assert hour_bucket(AS_OF) == datetime(2026, 3, 14, 10, tzinfo=timezone.utc)
        assert hour_bucket(datetime(2026, 3, 14, 10, 59)) == datetime(2026, 3, 14, 10, tzinfo=timezone.utc)
        local = datetime(2026, 3, 14, 12, 30, tzinfo=timezone(timedelta(hours=2)))
        assert hour_bucket(local) == datetime(2026, 3, 14, 10, tzinfo=timezone.utc)

    async def test_new_products_are_created_with_price_points(self, session_factory, test_db):
        registry = EntityRegistry(session_factory)

        stats = await self.reconcile(session_factory, registry, [
            candidate("Lapte", image="https://cdn/lapte.jpg"),
            candidate("Iaurt", price="1.49", unit="Buc"),
        ])

        assert stats["products_created"] == 2
        assert stats["price_points_created"] == 2
        assert stats["errors"] == 0

        result = await test_db.execute(select(Product).where(Product.name == "Lapte"))
        product = result.scalar_one()
        assert product.price_per_unit == Decimal("5.99")
        assert product.image_uri == "https://cdn/lapte.jpg"
        assert product.last_scraped_at.replace(tzinfo=None) == datetime(2026, 3, 14, 10)

        points = (await test_db.execute(select(PricePoint).where(PricePoint.product_id == product.id))).scalars().all()
        assert len(points) == 1
        assert points[0].price == Decimal("5.99")
        assert points[0].recorded_at.replace(tzinfo=None) == datetime(2026, 3, 14, 10)

    async def test_existing_product_is_updated_not_duplicated(self, session_factory, test_db):
        registry = EntityRegistry(session_factory)
        await self.reconcile(session_factory, registry, [candidate(price="5.99", image="https://cdn/a.jpg")])

        stats = await self.reconcile(
            session_factory,
            registry,
            [candidate(price="6.49", image=None)],
            as_of=AS_OF + timedelta(hours=1),
        )

        assert stats["products_created"] == 0
        assert stats["products_updated"] == 1
        assert await count(session_factory, Product) == 1

        product = (await test_db.execute(select(Product))).scalar_one()
        assert product.price_per_unit == Decimal("6.49")
        assert product.image_uri is None

    async def test_same_hour_is_idempotent(self, session_factory):
        registry = EntityRegistry(session_factory)
        batch = [candidate("Lapte"), candidate("Unt", price="45.00", unit="Kg")]

        first = await self.reconcile(session_factory, registry, batch)
        second = await self.reconcile(session_factory, registry, batch, as_of=AS_OF + timedelta(minutes=20))

        assert first["price_points_created"] == 2
        assert second["price_points_created"] == 0
        assert second["price_points_skipped"] == 2
        assert await count(session_factory, Product) == 2
        assert await count(session_factory, PricePoint) == 2

    async def test_distinct_hours_add_one_point_each(self, session_factory, test_db):
        registry = EntityRegistry(session_factory)

        for hour in range(4):
            await self.reconcile(
                session_factory,
                registry,
                [candidate(price=f"5.{hour}0")],
                as_of=AS_OF + timedelta(hours=hour),
            )

        product = (await test_db.execute(select(Product))).scalar_one()
        history = await ProductService(test_db).get_price_history(product.id)
        assert [p.price for p in history] == [Decimal("5.00"), Decimal("5.10"), Decimal("5.20"), Decimal("5.30")]
        assert await count(session_factory, Product) == 1

    async def test_duplicates_in_batch_last_wins(self, session_factory, test_db):
        registry = EntityRegistry(session_factory)

        stats = await self.reconcile(session_factory, registry, [
            candidate(price="5.99"),
            candidate(price="6.29"),
        ])

        assert stats["candidates"] == 2
        assert stats["duplicates"] == 1
        assert stats["products_created"] == 1
        product = (await test_db.execute(select(Product))).scalar_one()
        assert product.price_per_unit == Decimal("6.29")

    async def test_identity_includes_store_and_unit(self, session_factory):
        registry = EntityRegistry(session_factory)

        stats = await self.reconcile(session_factory, registry, [
            candidate(store="Metro"),
            candidate(store="Mega Image"),
            candidate(unit="Ml"),
        ])

        assert stats["products_created"] == 3
        assert await count(session_factory, Store) == 2

    async def test_failing_candidate_is_isolated(self, session_factory, test_db):
        registry = EntityRegistry(session_factory)

        async with session_factory() as session:
            service = ProductService(session, registry)
            apply = service._apply

            async def flaky_apply(item, *args):
                created, point_created = await apply(item, *args)
                if item.name == "Branza":
                    raise RuntimeError("constraint violated")
                return created, point_created

            service._apply = flaky_apply
            stats = await service.reconcile(
                [candidate("Lapte"), candidate("Branza", price="30.00", unit="Kg"), candidate("Unt")],
                AS_OF,
            )

        assert stats["errors"] == 1
        assert stats["products_created"] == 2
        assert stats["price_points_created"] == 2

        names = (await test_db.execute(select(Product.name).order_by(Product.name))).scalars().all()
        assert names == ["Lapte", "Unt"]
        assert await count(session_factory, PricePoint) == 2

    async def test_concurrent_price_point_is_skipped(self, session_factory, test_db):
        registry = EntityRegistry(session_factory)
        await self.reconcile(session_factory, registry, [candidate(price="7.00")])

        # The existence check misses a point another writer has just committed
        with patch.object(ProductService, "_price_point_exists", AsyncMock(return_value=False)):
            stats = await self.reconcile(
                session_factory,
                registry,
                [candidate(price="8.00")],
                as_of=AS_OF + timedelta(minutes=10),
            )

        assert stats["errors"] == 0
        assert stats["products_updated"] == 1
        assert stats["price_points_skipped"] == 1
        assert stats["price_points_created"] == 0

        product = (await test_db.execute(select(Product))).scalar_one()
        assert product.price_per_unit == Decimal("8.00")
        assert await count(session_factory, PricePoint) == 1

    async def test_concurrent_product_insert_updates_winner(self, session_factory, test_db):
        registry = EntityRegistry(session_factory)
        await self.reconcile(session_factory, registry, [candidate(price="7.00")])

        async with session_factory() as session:
            service = ProductService(session, registry)
            find = service._find_product
            misses = {"left": 1}

            async def stale_find(*args):
                if misses["left"]:
                    misses["left"] -= 1
                    return None
                return await find(*args)

            service._find_product = stale_find
            stats = await service.reconcile([candidate(price="8.00")], AS_OF + timedelta(hours=1))

        assert stats["errors"] == 0
        assert stats["products_created"] == 0
        assert stats["products_updated"] == 1
        assert stats["price_points_created"] == 1

        product = (await test_db.execute(select(Product))).scalar_one()
        assert product.price_per_unit == Decimal("8.00")
        assert await count(session_factory, PricePoint) == 2

    async def test_reconcile_requires_registry(self, test_db):
        with pytest.raises(ValueError):
            await ProductService(test_db).reconcile([candidate()], AS_OF)


# ============================================================================
# TESTS: PRODUCT QUERIES
# ============================================================================

class TestProductQueries:
    """Tests for archive read helpers."""

    @pytest.fixture
    async def catalog(self, session_factory):
        registry = EntityRegistry(session_factory)
        async with session_factory() as session:
            await ProductService(session, registry).reconcile([
                candidate("Lapte integral", price="6.50", category="Lactate/Oua"),
                candidate("Lapte degresat", price="5.20", category="Lactate/Oua"),
                candidate("Iaurt grecesc", price="12.00", unit="Kg", category="Lactate/Oua"),
                candidate("Piept de pui", price="24.90", unit="Kg", category="Carne"),
                candidate("Ceafa de porc", price="29.90", unit="Kg", category="Carne"),
            ], AS_OF)

    async def test_default_sort_is_ascending_price(self, test_db, catalog):
        products, total = await ProductService(test_db).get_products()

        assert total == 5
        assert [p.price_per_unit for p in products] == sorted(p.price_per_unit for p in products)

    async def test_filter_by_name_and_category(self, test_db, catalog):
        service = ProductService(test_db)

        by_name, total = await service.get_products(ProductFilter(name="lapte"))
        assert total == 2
        assert {p.name for p in by_name} == {"Lapte integral", "Lapte degresat"}

        by_category, total = await service.get_products(ProductFilter(category="carne"))
        assert total == 2
        assert all(p.category.name == "Carne" for p in by_category)

    async def test_price_range_and_descending_sort(self, test_db, catalog):
        products, total = await ProductService(test_db).get_products(ProductFilter(
            min_price=Decimal("6"),
            max_price=Decimal("25"),
            descending=True,
        ))

        assert total == 3
        assert [p.name for p in products] == ["Piept de pui", "Iaurt grecesc", "Lapte integral"]

    async def test_sort_by_name_with_paging(self, test_db, catalog):
        service = ProductService(test_db)

        first, total = await service.get_products(ProductFilter(sort_by="name", page=1, page_size=2))
        second, _ = await service.get_products(ProductFilter(sort_by="name", page=2, page_size=2))
        last, _ = await service.get_products(ProductFilter(sort_by="name", page=3, page_size=2))

        assert total == 5
        assert [p.name for p in first] == ["Ceafa de porc", "Iaurt grecesc"]
        assert [p.name for p in second] == ["Lapte degresat", "Lapte integral"]
        assert [p.name for p in last] == ["Piept de pui"]

    async def test_invalid_sort_key(self, test_db):
        with pytest.raises(ValueError):
            await ProductService(test_db).get_products(ProductFilter(sort_by="popularity"))

    async def test_get_product_by_id(self, test_db, catalog):
        products, _ = await ProductService(test_db).get_products(ProductFilter(name="Piept"))

        product = await ProductService(test_db).get_product_by_id(products[0].id)

        assert product.name == "Piept de pui"
        assert product.store.name == "Metro"
        assert product.manufacturer.name == "Zuzu"

    async def test_get_product_by_id_not_found(self, test_db):
        assert await ProductService(test_db).get_product_by_id(uuid4()) is None
