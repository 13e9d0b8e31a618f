"""Source adapter contract and the canonical records adapters produce.

A source adapter is anything with the capability set below: it names its
source and store, plans the HTTP requests for a run, and interprets each
response body into CanonicalProduct records. Adapters share no base class;
the Protocol is the whole contract.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, List, Optional, Protocol, Tuple, runtime_checkable

from pricearchive.core.exceptions import EntityCreationConflict, InterpretationError
from pricearchive.scrapers.utils.normalizer import capitalize_first

if TYPE_CHECKING:
    from pricearchive.scrapers.entity_registry import EntityRef, EntityRegistry
    from pricearchive.scrapers.fetcher import Fetcher


# Failures that disqualify only the single item being interpreted
ITEM_ERRORS = (
    InterpretationError,
    EntityCreationConflict,
    KeyError,
    TypeError,
    ValueError,
    IndexError,
    AttributeError,
)


@dataclass(eq=False)
class CanonicalProduct:
    """Normalized, source-agnostic product observed during one run.

    Two records are the same product iff their identity five-tuple
    (name, unit, category, manufacturer, store) matches exactly after
    normalization; price and image do not take part in equality.
    """

    name: str
    unit: str
    price_per_unit: Decimal
    category_name: str
    manufacturer_name: str
    store_name: str
    image_uri: Optional[str] = None

    def __post_init__(self):
        """Normalize names and validate data after initialization."""
        self.name = capitalize_first(self.name)
        self.unit = capitalize_first(self.unit)
        self.category_name = (self.category_name or "").strip()
        self.manufacturer_name = (self.manufacturer_name or "").strip()
        self.store_name = (self.store_name or "").strip()

        if not self.name:
            raise ValueError("name is required")
        if not self.unit:
            raise ValueError("unit is required")
        if not self.category_name:
            raise ValueError("category_name is required")
        if not self.manufacturer_name:
            raise ValueError("manufacturer_name is required")
        if not self.store_name:
            raise ValueError("store_name is required")

        if self.price_per_unit is None:
            raise ValueError("price_per_unit must be a non-negative Decimal")
        if not isinstance(self.price_per_unit, Decimal):
            try:
                self.price_per_unit = Decimal(str(self.price_per_unit))
            except InvalidOperation as e:
                raise ValueError("price_per_unit must be a non-negative Decimal") from e
        if self.price_per_unit < 0:
            raise ValueError("price_per_unit must be a non-negative Decimal")

    @property
    def identity(self) -> Tuple[str, str, str, str, str]:
        return (
            self.name,
            self.unit,
            self.category_name,
            self.manufacturer_name,
            self.store_name,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CanonicalProduct):
            return NotImplemented
        return self.identity == other.identity

    def __hash__(self) -> int:
        return hash(self.identity)


@dataclass(frozen=True)
class RequestDescriptor:
    """One GET request against a source API.

    params and headers are tuples of pairs so the same key may repeat
    (e.g. ``ids=1&ids=2``) and descriptors stay hashable.
    """

    url: str
    params: Tuple[Tuple[str, str], ...] = ()
    headers: Tuple[Tuple[str, str], ...] = ()


@dataclass
class CategoryRequests:
    """Requests planned for one canonical category."""

    category_name: str
    requests: List[RequestDescriptor] = field(default_factory=list)


@runtime_checkable
class SourceAdapter(Protocol):
    """Capability set every retail source implements."""

    source_slug: str  # Registry key, e.g. "metro"
    store_name: str  # Store reference name, e.g. "Metro"

    async def plan_requests(self, fetcher: "Fetcher") -> List[CategoryRequests]:
        """Build the page/batch requests for every configured category.

        May issue discovery requests through the fetcher. Categories whose
        discovery fails are returned with fewer (or no) requests.
        """
        ...

    async def interpret(
        self,
        payload: Any,
        category: "EntityRef",
        registry: "EntityRegistry",
    ) -> List[CanonicalProduct]:
        """Map one decoded response body to canonical products.

        Items that cannot be interpreted are skipped individually.

        Raises:
            InterpretationError: If the response as a whole is unusable
        """
        ...
