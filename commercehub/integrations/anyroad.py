"""
AnyRoad API Client - Experience bookings
"""
from datetime import date
from typing import Optional, List, Dict, Any, Tuple
import logging

from commercehub.core.errors import MalformedPayload
from commercehub.core.money import ZERO, to_money
from .base import (
    BaseSourceClient,
    CanonicalEvent,
    CustomerIdentityRef,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"


def booking_external_id(booking_id: Any) -> str:
    return f"anyroad_booking_{booking_id}"


class AnyRoadClient(BaseSourceClient):
    """
    AnyRoad REST v2 client, paginated by page number
    """
    SOURCE_NAME = "anyroad"
    CHANNEL_ID = "anyroad"
    RECORD_KIND = "event"
    SIGNATURE_HEADER = "x-anyroad-signature"
    SIGNATURE_ENCODING = "hex"

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        identity,
        api_url: str = "https://api.anyroad.com/v2",
        page_size: int = 100,
        **kwargs,
    ):
        super().__init__(webhook_secret=webhook_secret, identity=identity, **kwargs)
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")
        self.page_size = page_size

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    # ========== Bookings ==========

    async def fetch_bookings(self, start: date, end: date, page: int = 1) -> Dict[str, Any]:
        return await self._request("GET", f"{self.api_url}/bookings", params={
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "page": page,
            "per_page": self.page_size,
        })

    async def fetch_experiences(self, page: int = 1, status: str = "active") -> Dict[str, Any]:
        return await self._request("GET", f"{self.api_url}/experiences", params={
            "page": page,
            "per_page": self.page_size,
            "status": status,
        })

    async def fetch_by_date_range(
        self,
        start: date,
        end: date,
        page_token: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        try:
            page = int(page_token) if page_token else 1
        except ValueError as e:
            raise MalformedPayload(f"Invalid AnyRoad page token: {page_token!r}", self.SOURCE_NAME) from e

        data = await self.fetch_bookings(start, end, page)
        try:
            bookings = data["data"]
            total_pages = int((data.get("pagination") or {}).get("total_pages", 1))
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedPayload(f"Unexpected AnyRoad bookings shape: {e!r}", self.SOURCE_NAME, data) from e

        next_token = str(page + 1) if page < total_pages else None
        logger.info(f"AnyRoad: fetched {len(bookings)} bookings {start}..{end} page {page}/{total_pages}")
        return bookings, next_token

    @staticmethod
    def event_type_for(booking: Dict[str, Any]) -> str:
        experience = booking.get("experience") or {}
        if experience.get("category"):
            return experience["category"]
        return "tour" if "tour" in str(experience.get("name") or "").lower() else "experience"

    def normalize(self, raw: Dict[str, Any]) -> CanonicalEvent:
        """
        Normalize one booking. Cancelled bookings carry zero revenue so a re-fetch
        agrees with an earlier cancellation webhook.
        """
        try:
            event_date = raw["event_date"]
            starts_at = parse_timestamp(f"{event_date}T{raw['start_time']}")
            ends_at = parse_timestamp(f"{event_date}T{raw['end_time']}") if raw.get("end_time") else None

            cancelled = str(raw.get("status") or "").lower() == CANCELLED
            revenue = ZERO if cancelled else to_money(raw.get("total_price"))
            add_ons = ZERO if cancelled else to_money(raw.get("add_ons_total"))

            customer_hash = None
            identity = None
            guest = raw.get("primary_guest") or None
            if guest:
                customer_hash = self.identity.resolve_customer(guest.get("email"), guest.get("phone"))
                if customer_hash and guest.get("id"):
                    identity = CustomerIdentityRef("anyroad_guest_id", f"anyroad_guest_{guest['id']}")

            return CanonicalEvent(
                external_id=booking_external_id(raw["id"]),
                channel_id=self.CHANNEL_ID,
                event_type=self.event_type_for(raw),
                starts_at=starts_at,
                ends_at=ends_at,
                updated_at=parse_timestamp(raw["updated_at"]) if raw.get("updated_at") else None,
                attendees=int(raw.get("guests_count") or 0),
                revenue=revenue,
                add_on_sales=add_ons,
                customer_hash=customer_hash,
                raw={**raw, "cancelled": True} if cancelled else raw,
                identity=identity,
            )
        except MalformedPayload:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise self._malformed(raw, e) from e

    # ========== Webhooks ==========

    def webhook_event_type(self, payload: Dict[str, Any], header_value: Optional[str] = None) -> str:
        return str(payload.get("event_type") or payload.get("type") or header_value or "unknown")

    # ========== Health ==========

    async def test_connection(self) -> bool:
        try:
            data = await self.fetch_experiences(page=1)
            logger.info(f"AnyRoad connection successful: {len(data.get('data', []))} experiences")
            return True
        except Exception as e:
            logger.error(f"AnyRoad connection failed: {e}")
            return False
