"""
Base Source Client - Canonical records and the abstract client every commerce source implements
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional, List, Dict, Any, Tuple, Union
import asyncio
import base64
import hashlib
import hmac
import logging

import httpx
from dateutil.parser import isoparse

from commercehub.core.errors import (
    RateLimited,
    TransientSourceError,
    PermanentSourceError,
    MalformedPayload,
)
from commercehub.core.money import ZERO
from commercehub.services.identity_service import IdentityResolver

logger = logging.getLogger(__name__)


# ========== Time ==========

def parse_timestamp(value: Any) -> datetime:
    """ISO-8601 string to naive UTC datetime. Naive input is taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = isoparse(value)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def day_bounds(start: date, end: date) -> Tuple[str, str]:
    """Inclusive date range to ISO bounds covering whole UTC days"""
    return f"{start.isoformat()}T00:00:00Z", f"{end.isoformat()}T23:59:59Z"


# ========== Canonical Records ==========

@dataclass
class CustomerIdentityRef:
    """Channel-native customer id to merge into the identity bridge"""
    channel_field: str  # shopify_customer_id, square_customer_id, anyroad_guest_id
    native_id: str


@dataclass
class CanonicalOrderLine:
    external_id: str
    product_title: str
    qty: int
    line_total: Decimal
    sku: Optional[str] = None
    category: Optional[str] = None

    def __post_init__(self):
        if self.qty < 1:
            raise MalformedPayload(f"Line {self.external_id} has non-positive quantity {self.qty}")


@dataclass
class CanonicalOrder:
    """
    Source-agnostic order. net_total is always derived as gross_total - refunds_total.
    """
    external_id: str
    channel_id: str
    created_at: datetime
    updated_at: datetime
    gross_total: Decimal
    location_id: Optional[str] = None
    customer_hash: Optional[str] = None
    tax_total: Decimal = ZERO
    discount_total: Decimal = ZERO
    refunds_total: Decimal = ZERO
    tenders: List[Dict[str, Any]] = None
    raw: Dict[str, Any] = None
    lines: List[CanonicalOrderLine] = None
    identity: Optional[CustomerIdentityRef] = None
    net_total: Decimal = field(init=False)

    def __post_init__(self):
        if self.tenders is None:
            self.tenders = []
        if self.raw is None:
            self.raw = {}
        if self.lines is None:
            self.lines = []
        for name in ("gross_total", "tax_total", "discount_total", "refunds_total"):
            if getattr(self, name) < 0:
                raise MalformedPayload(f"Order {self.external_id} has negative {name}")
        self.net_total = self.gross_total - self.refunds_total


@dataclass
class CanonicalEvent:
    """Source-agnostic booking / experience occurrence"""
    external_id: str
    channel_id: str
    event_type: str
    starts_at: datetime
    ends_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    attendees: int = 0
    revenue: Decimal = ZERO
    add_on_sales: Decimal = ZERO
    customer_hash: Optional[str] = None
    raw: Dict[str, Any] = None
    identity: Optional[CustomerIdentityRef] = None

    def __post_init__(self):
        if self.raw is None:
            self.raw = {}
        if self.revenue < 0 or self.add_on_sales < 0:
            raise MalformedPayload(f"Event {self.external_id} has negative revenue")

    @property
    def total_revenue(self) -> Decimal:
        return self.revenue + self.add_on_sales


CanonicalRecord = Union[CanonicalOrder, CanonicalEvent]


# ========== Signatures ==========

def compute_signature(secret: str, message: bytes, encoding: str = "base64") -> str:
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    if encoding == "hex":
        return digest.hex()
    return base64.b64encode(digest).decode("ascii")


def signatures_match(expected: str, provided: Any) -> bool:
    """Constant-time comparison that returns False on any malformed input"""
    if not expected or not isinstance(provided, str) or not provided:
        return False
    try:
        return hmac.compare_digest(expected.encode("utf-8"), provided.strip().encode("utf-8"))
    except (TypeError, ValueError, UnicodeError):
        return False


class BaseSourceClient(ABC):
    """
    Abstract base class for commerce source integrations.
    One instance per source is built at process start and closed at shutdown.
    """
    SOURCE_NAME: str = "base"
    RECORD_KIND: str = "order"  # order or event
    SIGNATURE_HEADER: str = ""
    SIGNATURE_ENCODING: str = "base64"

    def __init__(
        self,
        webhook_secret: str,
        identity: IdentityResolver,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
    ):
        self.webhook_secret = webhook_secret
        self.identity = identity
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_base_delay = retry_base_delay
        self._client = http_client

    # ========== HTTP ==========

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    def _auth_headers(self) -> Dict[str, str]:
        return {}

    def _is_throttled(self, data: Any) -> bool:
        """Hook for sources that signal throttling inside a 200 body"""
        return False

    async def _after_response(self, response: httpx.Response) -> None:
        """Hook for proactive throttling based on response headers"""
        return None

    def _backoff(self, attempt: int, response: Optional[httpx.Response] = None) -> float:
        wait = self.retry_base_delay * (2 ** (attempt - 1))
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    wait = max(wait, float(retry_after))
                except ValueError:
                    pass
        return wait

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """
        Make a request with exponential backoff.
        429/throttled -> RateLimited, network/timeout/5xx -> TransientSourceError once the cap is spent.
        Other 4xx -> PermanentSourceError immediately.
        """
        client = await self._get_client()
        request_headers = {**self._auth_headers(), **(headers or {})}

        for attempt in range(1, self.max_retries + 1):
            last_attempt = attempt == self.max_retries
            try:
                response = await client.request(
                    method, url, params=params, json=json, headers=request_headers,
                )
            except httpx.RequestError as e:
                if last_attempt:
                    raise TransientSourceError(
                        f"{self.SOURCE_NAME} request failed after {self.max_retries} attempts: {e}",
                        self.SOURCE_NAME,
                    ) from e
                wait = self._backoff(attempt)
                logger.warning(f"[{self.SOURCE_NAME}] Request error: {e}. Retrying in {wait}s (attempt {attempt}/{self.max_retries})")
                await asyncio.sleep(wait)
                continue

            status = response.status_code
            if status == 429:
                if last_attempt:
                    raise RateLimited(f"{self.SOURCE_NAME} rate limit exceeded, max retries reached", self.SOURCE_NAME, status)
                wait = self._backoff(attempt, response)
                logger.warning(f"[{self.SOURCE_NAME}] Rate limited (429). Retrying in {wait}s (attempt {attempt}/{self.max_retries})")
                await asyncio.sleep(wait)
                continue

            if status >= 500:
                if last_attempt:
                    raise TransientSourceError(f"{self.SOURCE_NAME} server error {status}", self.SOURCE_NAME, status)
                wait = self._backoff(attempt, response)
                logger.warning(f"[{self.SOURCE_NAME}] Server error {status}. Retrying in {wait}s")
                await asyncio.sleep(wait)
                continue

            if status in (401, 403):
                raise PermanentSourceError(f"{self.SOURCE_NAME} rejected credentials ({status})", self.SOURCE_NAME, status)

            if status >= 400:
                raise PermanentSourceError(
                    f"{self.SOURCE_NAME} API error {status}: {response.text[:200]}", self.SOURCE_NAME, status,
                )

            try:
                data = response.json()
            except ValueError as e:
                raise MalformedPayload(f"{self.SOURCE_NAME} returned a non-JSON body", self.SOURCE_NAME, response.text[:500]) from e

            if self._is_throttled(data):
                if last_attempt:
                    raise RateLimited(f"{self.SOURCE_NAME} throttled, max retries reached", self.SOURCE_NAME, status)
                wait = self._backoff(attempt, response)
                logger.warning(f"[{self.SOURCE_NAME}] Throttled. Retrying in {wait}s (attempt {attempt}/{self.max_retries})")
                await asyncio.sleep(wait)
                continue

            await self._after_response(response)
            return data

        raise TransientSourceError(f"{self.SOURCE_NAME} retries exhausted", self.SOURCE_NAME)

    # ========== Data ==========

    @abstractmethod
    async def fetch_by_date_range(
        self,
        start: date,
        end: date,
        page_token: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """
        Fetch one page of raw records created in [start, end], ascending by creation time.
        Returns: (records, next_page_token). next_page_token is None on the last page.
        """
        pass

    @abstractmethod
    def normalize(self, raw: Dict[str, Any]) -> CanonicalRecord:
        """Pure, deterministic conversion of one raw record to a canonical record"""
        pass

    @abstractmethod
    async def test_connection(self) -> bool:
        pass

    # ========== Webhooks ==========

    def signing_payload(self, raw_body: bytes, url: Optional[str] = None) -> bytes:
        """Bytes the source signs. Raw body unless the source says otherwise."""
        return raw_body

    def verify_webhook_signature(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        url: Optional[str] = None,
    ) -> bool:
        """HMAC-SHA256 check in constant time. Never raises."""
        if not self.webhook_secret:
            logger.error(f"[{self.SOURCE_NAME}] Webhook secret not configured")
            return False
        try:
            message = self.signing_payload(raw_body, url)
            expected = compute_signature(self.webhook_secret, message, self.SIGNATURE_ENCODING)
        except (TypeError, ValueError, UnicodeError):
            return False
        return signatures_match(expected, signature_header)

    def webhook_event_type(self, payload: Dict[str, Any], header_value: Optional[str] = None) -> str:
        return header_value or str(payload.get("type") or "unknown")

    def _malformed(self, raw: Any, error: Exception) -> MalformedPayload:
        return MalformedPayload(f"Invalid {self.SOURCE_NAME} record: {error!r}", self.SOURCE_NAME, raw)
