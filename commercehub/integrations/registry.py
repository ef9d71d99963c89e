"""
Source Registry - Builds one client per source at startup and closes them at shutdown
"""
from typing import Dict, Iterator, Optional
import logging

import httpx

from commercehub.core.config import Settings
from commercehub.services.identity_service import IdentityResolver
from .base import BaseSourceClient
from .shopify import ShopifyClient
from .square import SquareClient
from .anyroad import AnyRoadClient

logger = logging.getLogger(__name__)

SOURCE_NAMES = ("shopify", "square", "anyroad")


class SourceRegistry:
    """Explicit container for the long-lived source clients"""

    def __init__(self, clients: Dict[str, BaseSourceClient]):
        self._clients = dict(clients)

    def get(self, name: str) -> BaseSourceClient:
        if name not in self._clients:
            raise KeyError(f"Unknown source: {name}")
        return self._clients[name]

    def __getitem__(self, name: str) -> BaseSourceClient:
        return self.get(name)

    def names(self):
        return list(self._clients)

    def __contains__(self, name: str) -> bool:
        return name in self._clients

    def __iter__(self) -> Iterator[str]:
        return iter(self._clients)

    def items(self):
        return self._clients.items()

    async def aclose(self):
        for name, client in self._clients.items():
            try:
                await client.aclose()
            except Exception as e:
                logger.warning(f"Error closing {name} client: {e}")
        logger.info("Source clients closed")


def build_source_registry(
    settings: Settings,
    identity: Optional[IdentityResolver] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SourceRegistry:
    """Construct every source client from settings"""
    identity = identity or IdentityResolver(settings.PII_HASH_SECRET)

    def http_client() -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=settings.SOURCE_TIMEOUT_SECONDS, transport=transport)

    common = {
        "identity": identity,
        "timeout": settings.SOURCE_TIMEOUT_SECONDS,
        "max_retries": settings.SOURCE_MAX_RETRIES,
        "retry_base_delay": settings.SOURCE_RETRY_BASE_DELAY,
    }

    clients = {
        "shopify": ShopifyClient(
            store_domain=settings.SHOPIFY_STORE_DOMAIN,
            access_token=settings.SHOPIFY_ADMIN_ACCESS_TOKEN,
            webhook_secret=settings.SHOPIFY_WEBHOOK_SECRET,
            api_version=settings.SHOPIFY_API_VERSION,
            page_size=settings.BACKFILL_PAGE_SIZE,
            http_client=http_client(),
            **common,
        ),
        "square": SquareClient(
            access_token=settings.SQUARE_ACCESS_TOKEN,
            webhook_secret=settings.SQUARE_WEBHOOK_SIGNATURE_KEY,
            location_ids=settings.SQUARE_LOCATION_IDS,
            environment=settings.SQUARE_ENV,
            webhook_url=settings.SQUARE_WEBHOOK_URL,
            http_client=http_client(),
            **common,
        ),
        "anyroad": AnyRoadClient(
            api_key=settings.ANYROAD_API_KEY,
            webhook_secret=settings.ANYROAD_WEBHOOK_SECRET,
            api_url=settings.ANYROAD_API_URL,
            http_client=http_client(),
            **common,
        ),
    }
    logger.info(f"Built source clients: {', '.join(clients)}")
    return SourceRegistry(clients)
