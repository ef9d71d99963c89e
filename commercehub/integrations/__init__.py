# Source Integrations Package
from .base import (
    BaseSourceClient,
    CanonicalOrder,
    CanonicalOrderLine,
    CanonicalEvent,
    CanonicalRecord,
    CustomerIdentityRef,
)
from .shopify import ShopifyClient
from .square import SquareClient
from .anyroad import AnyRoadClient
from .registry import SourceRegistry, build_source_registry, SOURCE_NAMES

__all__ = [
    "BaseSourceClient",
    "CanonicalOrder",
    "CanonicalOrderLine",
    "CanonicalEvent",
    "CanonicalRecord",
    "CustomerIdentityRef",
    "ShopifyClient",
    "SquareClient",
    "AnyRoadClient",
    "SourceRegistry",
    "build_source_registry",
    "SOURCE_NAMES",
]
