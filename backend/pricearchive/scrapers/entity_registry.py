"""Race-free get-or-create for reference entities (category, manufacturer, store).

Within a process, misses for one entity kind are serialized behind a
single lock, so concurrent interpretation tasks asking for the same unseen
name create exactly one row. Across processes, the unique constraint on
``name`` is the arbiter: a losing insert rolls back and re-reads the
winner's row.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple, Type

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricearchive.config import settings
from pricearchive.core.exceptions import EntityCreationConflict
from pricearchive.models.base import NamedEntityMixin
from pricearchive.models.category import Category
from pricearchive.models.manufacturer import Manufacturer
from pricearchive.models.store import Store


logger = structlog.get_logger(__name__)


class EntityKind(str, Enum):
    CATEGORY = "category"
    MANUFACTURER = "manufacturer"
    STORE = "store"


ENTITY_MODELS: Dict[EntityKind, Type[NamedEntityMixin]] = {
    EntityKind.CATEGORY: Category,
    EntityKind.MANUFACTURER: Manufacturer,
    EntityKind.STORE: Store,
}


@dataclass(frozen=True)
class EntityRef:
    """Detached reference to a persisted reference entity."""

    id: int
    name: str


class EntityRegistry:
    """Resolves names to stable reference entities, creating them once.

    One registry lives for the duration of a run; its cache is never
    invalidated because reference entities are never renamed or deleted.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: Optional[int] = None,
    ):
        """Initialize the registry.

        Args:
            session_factory: Factory for the short sessions used by creates
            max_attempts: Insert/re-read attempts before giving up
        """
        self.session_factory = session_factory
        self.max_attempts = max_attempts or settings.ENTITY_CREATE_MAX_ATTEMPTS
        self._cache: Dict[Tuple[EntityKind, str], EntityRef] = {}
        self._locks: Dict[EntityKind, asyncio.Lock] = {kind: asyncio.Lock() for kind in EntityKind}
        self.logger = logger.bind(service="entity_registry")

    def cached(self, kind: EntityKind, name: str) -> Optional[EntityRef]:
        return self._cache.get((kind, name))

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    async def get_or_create(self, kind: EntityKind, name: str) -> EntityRef:
        """Resolve a name to its entity, creating the row on first sighting.

        Args:
            kind: Entity kind
            name: Exact entity name (already normalized by the caller)

        Returns:
            EntityRef of the single persisted row for (kind, name)

        Raises:
            ValueError: If name is empty
            EntityCreationConflict: If the winning row of a conflicting
                insert still cannot be read after max_attempts
        """
        if not name:
            raise ValueError(f"{kind.value} name is required")

        key = (kind, name)
        ref = self._cache.get(key)
        if ref is not None:
            return ref

        async with self._locks[kind]:
            # Another task may have resolved it while we waited
            ref = self._cache.get(key)
            if ref is None:
                ref = await self._lookup_or_insert(kind, name)
                self._cache[key] = ref
        return ref

    async def _lookup_or_insert(self, kind: EntityKind, name: str) -> EntityRef:
        model = ENTITY_MODELS[kind]

        for attempt in range(1, self.max_attempts + 1):
            async with self.session_factory() as session:
                existing = await self._read(session, model, name)
                if existing is not None:
                    return existing

                entity = model(name=name)
                session.add(entity)
                try:
                    await session.flush()
                    ref = EntityRef(id=entity.id, name=entity.name)
                    await session.commit()
                except IntegrityError:
                    # Lost a race against another writer; re-read on the next attempt
                    await session.rollback()
                    self.logger.info(
                        "entity_creation_conflict",
                        kind=kind.value,
                        name=name,
                        attempt=attempt,
                    )
                    continue

                self.logger.info("entity_created", kind=kind.value, name=name, id=ref.id)
                return ref

        # The last attempt lost a race, so the winner's row should be visible now
        async with self.session_factory() as session:
            existing = await self._read(session, model, name)
        if existing is not None:
            return existing

        raise EntityCreationConflict(kind.value, name)

    @staticmethod
    async def _read(
        session: AsyncSession,
        model: Type[NamedEntityMixin],
        name: str,
    ) -> Optional[EntityRef]:
        result = await session.execute(select(model).where(model.name == name))
        existing = result.scalar_one_or_none()
        if existing is None:
            return None
        return EntityRef(id=existing.id, name=existing.name)
