import os

# Settings are read at import time
os.environ.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import base64
import hashlib
import hmac
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from commercehub.api.deps import get_sources
from commercehub.core.database import Base, build_engine, get_db
from commercehub.core.errors import TransientSourceError
from commercehub.core.money import to_money
from commercehub.integrations.base import (
    BaseSourceClient,
    CanonicalOrder,
    CanonicalOrderLine,
    parse_timestamp,
)
from commercehub.integrations.registry import SourceRegistry
from commercehub.services.identity_service import IdentityResolver
import commercehub.models  # noqa: F401

TEST_PII_SECRET = "test-pii-secret"


@pytest.fixture
def engine():
    engine = build_engine("sqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def identity():
    return IdentityResolver(TEST_PII_SECRET)


def sign_base64(secret: str, message: bytes) -> str:
    return base64.b64encode(hmac.new(secret.encode(), message, hashlib.sha256).digest()).decode()


def sign_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class FakeOrderSource(BaseSourceClient):
    """
    In-memory source serving fixed pages of simple order dicts:
    {"id", "total", "created_at", "refunds"?, "email"?}
    """
    SOURCE_NAME = "fake"

    def __init__(self, pages: List[List[Dict[str, Any]]], fail_on_token: Optional[str] = None):
        super().__init__(webhook_secret="fake-secret", identity=IdentityResolver(TEST_PII_SECRET))
        self.pages = pages
        self.fail_on_token = fail_on_token
        self.calls: List[Optional[str]] = []
        self.windows: List[tuple] = []

    async def fetch_by_date_range(self, start: date, end: date, page_token: Optional[str] = None):
        self.calls.append(page_token)
        self.windows.append((start.isoformat(), page_token))
        if self.fail_on_token is not None and page_token == self.fail_on_token:
            raise TransientSourceError("connection reset", self.SOURCE_NAME)
        index = int(page_token or 0)
        if index >= len(self.pages):
            return [], None
        next_token = str(index + 1) if index + 1 < len(self.pages) else None
        return list(self.pages[index]), next_token

    def normalize(self, raw: Dict[str, Any]) -> CanonicalOrder:
        try:
            created_at = parse_timestamp(raw["created_at"])
            total = to_money(raw["total"])
            return CanonicalOrder(
                external_id=f"fake_order_{raw['id']}",
                channel_id=self.SOURCE_NAME,
                location_id="fake-store",
                created_at=created_at,
                updated_at=created_at,
                customer_hash=self.identity.resolve_customer(raw.get("email")),
                gross_total=total,
                refunds_total=to_money(raw.get("refunds")),
                raw=raw,
                lines=[CanonicalOrderLine(
                    external_id=f"fake_line_{raw['id']}",
                    product_title=raw.get("title", "Tasting flight"),
                    sku=raw.get("sku", "SKU-1"),
                    category=raw.get("category"),
                    qty=int(raw.get("qty", 1)),
                    line_total=total,
                )],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise self._malformed(raw, e) from e

    async def test_connection(self) -> bool:
        return True


def make_orders(count: int, day: str = "2024-03-01", total: str = "100.00", start_id: int = 1):
    return [
        {"id": i, "total": total, "created_at": f"{day}T10:{i % 60:02d}:00Z"}
        for i in range(start_id, start_id + count)
    ]


@pytest.fixture
def fake_source_factory():
    return FakeOrderSource


@pytest.fixture
def order_factory():
    return make_orders


def canonical_order(
    external_id: str = "shopify_order_1",
    gross: str = "100.00",
    refunds: str = "0.00",
    created: str = "2024-03-01T10:00:00",
    updated: Optional[str] = None,
    lines: Optional[List[CanonicalOrderLine]] = None,
    channel_id: str = "shopify",
    **kwargs,
) -> CanonicalOrder:
    created_at = datetime.fromisoformat(created)
    return CanonicalOrder(
        external_id=external_id,
        channel_id=channel_id,
        location_id=kwargs.pop("location_id", "online-shopify"),
        created_at=created_at,
        updated_at=datetime.fromisoformat(updated) if updated else created_at,
        gross_total=Decimal(gross),
        refunds_total=Decimal(refunds),
        lines=lines if lines is not None else [
            CanonicalOrderLine(external_id=f"{external_id}_line_1", product_title="Gin", qty=2,
                               line_total=Decimal(gross), sku="GIN-70", category="Spirits"),
        ],
        **kwargs,
    )


@pytest.fixture
def order_builder():
    return canonical_order


@pytest.fixture
def signers():
    return {"base64": sign_base64, "hex": sign_hex}


@pytest.fixture
def api_client(session_factory):
    """TestClient bound to the in-memory database and the given source clients"""
    from main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def build(sources: Dict[str, BaseSourceClient]) -> TestClient:
        registry = SourceRegistry(sources)
        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_sources] = lambda: registry
        return TestClient(app)

    yield build
    app.dependency_overrides.clear()
