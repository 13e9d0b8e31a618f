"""Static mapping from source category codes to canonical category names.

Loaded once at import and exposed read-only; adapters take their own copy
so tests can pass a reduced map.
"""

from types import MappingProxyType
from typing import Mapping, Tuple


# Canonical category names shared by all stores
FRUCTE_LEGUME = "Fructe/Legume"
CARNE = "Carne"
LACTATE_OUA = "Lactate/Oua"
MEZELURI = "Mezeluri"
PAINE = "Paine/Patiserie"
BAUTURI = "Bauturi"

CANONICAL_CATEGORIES: Tuple[str, ...] = (
    FRUCTE_LEGUME,
    CARNE,
    LACTATE_OUA,
    MEZELURI,
    PAINE,
    BAUTURI,
)

# Mega Image GraphQL category codes
MEGA_IMAGE_CATEGORIES: Mapping[str, Tuple[str, ...]] = MappingProxyType({
    FRUCTE_LEGUME: ("001001", "001002"),
    CARNE: ("002001", "002002", "002003"),
    LACTATE_OUA: ("003001", "003002", "003003"),
    MEZELURI: ("004001",),
    PAINE: ("005001",),
    BAUTURI: ("006001", "006002"),
})

# Metro article-search category filters
METRO_CATEGORIES: Mapping[str, Tuple[str, ...]] = MappingProxyType({
    FRUCTE_LEGUME: ("alimentare/fructe-legume",),
    CARNE: ("alimentare/carne", "alimentare/peste"),
    LACTATE_OUA: ("alimentare/lactate",),
    MEZELURI: ("alimentare/mezeluri",),
})
