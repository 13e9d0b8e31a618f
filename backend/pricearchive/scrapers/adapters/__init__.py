"""Store-specific source adapter implementations.

Each adapter module implements a class satisfying the SourceAdapter
protocol (source_slug, store_name, plan_requests, interpret).
"""

from .mega_image import MegaImageAdapter
from .metro import MetroAdapter

__all__ = [
    "MegaImageAdapter",
    "MetroAdapter",
]
