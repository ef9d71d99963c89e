"""
Square API Client - Point-of-sale orders, payments and locations
"""
from datetime import date
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Optional, List, Dict, Any, Tuple
import logging

from commercehub.core.errors import PermanentSourceError, MalformedPayload
from commercehub.core.money import from_minor_units, money_str
from commercehub.services.payment_service import PaymentReconciler
from .base import (
    BaseSourceClient,
    CanonicalOrder,
    CanonicalOrderLine,
    CustomerIdentityRef,
    parse_timestamp,
    day_bounds,
)

logger = logging.getLogger(__name__)


def _money(obj: Optional[Dict[str, Any]]) -> Decimal:
    return from_minor_units((obj or {}).get("amount"))


def _quantity(value: Any) -> int:
    """Square quantities are decimal strings; fractional quantities round to the nearest unit"""
    qty = int(Decimal(str(value)).to_integral_value(rounding=ROUND_HALF_EVEN))
    return max(qty, 1)


class SquareClient(BaseSourceClient):
    """
    Square Connect v2 client
    Docs: https://developer.squareup.com/reference/square
    """
    SOURCE_NAME = "square"
    CHANNEL_ID = "square"
    SIGNATURE_HEADER = "x-square-hmacsha256-signature"
    SIGNATURE_ENCODING = "base64"
    API_VERSION = "2024-01-18"

    PRODUCTION_URL = "https://connect.squareup.com"
    SANDBOX_URL = "https://connect.squareupsandbox.com"

    def __init__(
        self,
        access_token: str,
        webhook_secret: str,
        identity,
        location_ids: Optional[List[str]] = None,
        environment: str = "sandbox",
        webhook_url: str = "",
        page_size: int = 100,
        **kwargs,
    ):
        super().__init__(webhook_secret=webhook_secret, identity=identity, **kwargs)
        self.access_token = access_token
        self.location_ids = list(location_ids or [])
        self.base_url = self.PRODUCTION_URL if environment == "production" else self.SANDBOX_URL
        self.webhook_url = webhook_url
        self.page_size = page_size
        # (start, end) -> payments for the window pass in progress
        self._payments_cache: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Square-Version": self.API_VERSION,
        }

    # ========== Locations ==========

    async def list_locations(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"{self.base_url}/v2/locations")
        return data.get("locations", [])

    async def _resolve_location_ids(self) -> List[str]:
        if not self.location_ids:
            locations = await self.list_locations()
            self.location_ids = [loc["id"] for loc in locations if loc.get("status", "ACTIVE") == "ACTIVE"]
            logger.info(f"Square: using {len(self.location_ids)} active locations")
        return self.location_ids

    # ========== Orders & Payments ==========

    async def search_orders(
        self,
        begin_time: str,
        end_time: str,
        cursor: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        body = {
            "location_ids": await self._resolve_location_ids(),
            "limit": self.page_size,
            "query": {
                "filter": {"date_time_filter": {"created_at": {"start_at": begin_time, "end_at": end_time}}},
                "sort": {"sort_field": "CREATED_AT", "sort_order": "ASC"},
            },
        }
        if cursor:
            body["cursor"] = cursor
        data = await self._request("POST", f"{self.base_url}/v2/orders/search", json=body)
        return data.get("orders", []), data.get("cursor")

    async def list_payments(
        self,
        begin_time: str,
        end_time: str,
        cursor: Optional[str] = None,
        location_id: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        params = {"begin_time": begin_time, "end_time": end_time, "sort_order": "ASC", "limit": self.page_size}
        if cursor:
            params["cursor"] = cursor
        if location_id:
            params["location_id"] = location_id
        data = await self._request("GET", f"{self.base_url}/v2/payments", params=params)
        return data.get("payments", []), data.get("cursor")

    async def fetch_window_payments(self, begin_time: str, end_time: str, refresh: bool = False) -> List[Dict[str, Any]]:
        """
        All payments for a window across every location. Later pages of the same pass
        reuse the list; a refresh re-lists so late fees and refunds are picked up.
        """
        key = (begin_time, end_time)
        if not refresh and key in self._payments_cache:
            return self._payments_cache[key]

        payments = []
        for location_id in await self._resolve_location_ids():
            cursor = None
            while True:
                page, cursor = await self.list_payments(begin_time, end_time, cursor, location_id)
                payments.extend(page)
                if not cursor:
                    break
        self._payments_cache = {key: payments}
        return payments

    async def retrieve_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        try:
            data = await self._request("GET", f"{self.base_url}/v2/orders/{order_id}")
        except PermanentSourceError as e:
            if e.status_code == 404:
                return None
            raise
        return data.get("order")

    async def retrieve_payment(self, payment_id: str) -> Optional[Dict[str, Any]]:
        try:
            data = await self._request("GET", f"{self.base_url}/v2/payments/{payment_id}")
        except PermanentSourceError as e:
            if e.status_code == 404:
                return None
            raise
        return data.get("payment")

    async def fetch_order_bundle(self, order_id: str) -> Optional[Dict[str, Any]]:
        """Order plus the payments referenced by its tenders"""
        order = await self.retrieve_order(order_id)
        if order is None:
            return None
        payments = []
        for tender in order.get("tenders") or []:
            payment_id = tender.get("payment_id") or tender.get("id")
            if not payment_id:
                continue
            payment = await self.retrieve_payment(payment_id)
            if payment:
                payments.append(payment)
        return {"order": order, "payments": payments}

    async def fetch_by_date_range(
        self,
        start: date,
        end: date,
        page_token: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """
        One page of orders, each joined with the window's payments.
        Record shape: {"order": {...}, "payments": [...]}
        """
        begin_time, end_time = day_bounds(start, end)
        orders, next_cursor = await self.search_orders(begin_time, end_time, page_token)
        # First page starts a new pass over the window
        payments = await self.fetch_window_payments(begin_time, end_time, refresh=page_token is None)

        summaries = PaymentReconciler.reconcile(orders, payments)
        records = [
            {"order": order, "payments": summaries[order["id"]].payments}
            for order in orders
        ]
        logger.info(f"Square: fetched {len(records)} orders {start}..{end} (more={bool(next_cursor)})")
        return records, next_cursor

    def normalize(self, raw: Dict[str, Any]) -> CanonicalOrder:
        """
        Normalize {"order", "payments"}.
        Money arrives in cents; refunds and fees come from COMPLETED payments only.
        """
        try:
            order = raw["order"]
            payments = raw.get("payments") or []
            summary = PaymentReconciler.reconcile([order], payments)[order["id"]]

            email = next(
                (p["buyer_email_address"] for p in summary.payments if p.get("buyer_email_address")),
                None,
            )
            customer_hash = self.identity.resolve_customer(email, None)
            identity = None
            if customer_hash and order.get("customer_id"):
                identity = CustomerIdentityRef("square_customer_id", f"square_customer_{order['customer_id']}")

            tenders = []
            for payment in summary.payments:
                card = (payment.get("card_details") or {}).get("card") or {}
                tenders.append({
                    "payment_id": payment.get("id"),
                    "status": payment.get("status"),
                    "source_type": payment.get("source_type"),
                    "amount": money_str(_money(payment.get("amount_money"))),
                    "card_brand": card.get("card_brand"),
                    "last4": card.get("last_4"),
                    "processing_fees": [
                        {"type": fee.get("type"), "amount": money_str(_money(fee.get("amount_money")))}
                        for fee in payment.get("processing_fee") or []
                    ],
                })

            lines = []
            for item in order.get("line_items") or []:
                title = item.get("name") or "Custom amount"
                if item.get("variation_name"):
                    title = f"{title} - {item['variation_name']}"
                lines.append(CanonicalOrderLine(
                    external_id=f"square_lineitem_{item['uid']}",
                    sku=item.get("catalog_object_id") or None,
                    product_title=title,
                    category=None,
                    qty=_quantity(item.get("quantity", "1")),
                    line_total=_money(item.get("total_money")),
                ))

            created_at = parse_timestamp(order["created_at"])
            return CanonicalOrder(
                external_id=f"square_order_{order['id']}",
                channel_id=self.CHANNEL_ID,
                location_id=f"square_location_{order['location_id']}" if order.get("location_id") else None,
                created_at=created_at,
                updated_at=parse_timestamp(order["updated_at"]) if order.get("updated_at") else created_at,
                customer_hash=customer_hash,
                gross_total=_money(order["total_money"]),
                tax_total=_money(order.get("total_tax_money")),
                discount_total=_money(order.get("total_discount_money")),
                refunds_total=summary.refunded,
                tenders=tenders,
                raw={"order": order, "payments": summary.payments, "fees": money_str(summary.fees)},
                lines=lines,
                identity=identity,
            )
        except MalformedPayload:
            raise
        except (KeyError, TypeError, ValueError, ArithmeticError, AttributeError) as e:
            raise self._malformed(raw, e) from e

    # ========== Webhooks ==========

    def signing_payload(self, raw_body: bytes, url: Optional[str] = None) -> bytes:
        """Square signs notification URL + raw body"""
        return (url or self.webhook_url).encode("utf-8") + raw_body

    # ========== Health ==========

    async def test_connection(self) -> bool:
        try:
            locations = await self.list_locations()
            logger.info(f"Square connection successful: {len(locations)} locations")
            return True
        except Exception as e:
            logger.error(f"Square connection failed: {e}")
            return False
