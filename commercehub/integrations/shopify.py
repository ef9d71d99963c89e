"""
Shopify Admin GraphQL Client - Storefront orders, refunds and webhooks
"""
from datetime import date
from decimal import Decimal
from typing import Optional, List, Dict, Any, Tuple
import asyncio
import logging

import httpx

from commercehub.core.errors import PermanentSourceError, MalformedPayload
from commercehub.core.money import ZERO, to_money, money_str
from .base import (
    BaseSourceClient,
    CanonicalOrder,
    CanonicalOrderLine,
    CustomerIdentityRef,
    parse_timestamp,
    day_bounds,
)

logger = logging.getLogger(__name__)

ORDER_FIELDS = """
    id
    name
    createdAt
    updatedAt
    totalPriceSet { shopMoney { amount } }
    currentSubtotalPriceSet { shopMoney { amount } }
    totalDiscountsSet { shopMoney { amount } }
    totalTaxSet { shopMoney { amount } }
    totalRefundedSet { shopMoney { amount } }
    customer { id email phone }
    lineItems(first: 100) {
      edges { node { id name sku quantity originalTotalSet { shopMoney { amount } } product { id productType } } }
    }
    transactions(first: 10) { kind status gateway amountSet { shopMoney { amount } } }
"""

ORDERS_QUERY = """
query GetOrders($first: Int!, $after: String, $query: String) {
  orders(first: $first, after: $after, query: $query, sortKey: CREATED_AT) {
    edges { cursor node { %s } }
    pageInfo { hasNextPage endCursor }
  }
}
""" % ORDER_FIELDS

ORDER_QUERY = """
query GetOrder($id: ID!) {
  order(id: $id) { %s }
}
""" % ORDER_FIELDS

SHOP_QUERY = "query { shop { name } }"


def extract_shopify_id(gid: str) -> str:
    """gid://shopify/Order/123456 -> shopify_order_123456"""
    parts = str(gid).split("/")
    if len(parts) >= 5 and parts[0] == "gid:":
        return f"shopify_{parts[3].lower()}_{parts[4]}"
    return f"shopify_unknown_{gid}"


def _shop_amount(money_set: Optional[Dict[str, Any]]) -> Decimal:
    if not money_set:
        return ZERO
    return to_money((money_set.get("shopMoney") or {}).get("amount"))


def _nodes(connection: Any) -> List[Dict[str, Any]]:
    """Accept both a GraphQL connection ({edges: [{node}]}) and a plain list"""
    if connection is None:
        return []
    if isinstance(connection, list):
        return connection
    return [edge["node"] for edge in connection.get("edges", [])]


class ShopifyClient(BaseSourceClient):
    """
    Shopify Admin API client
    Docs: https://shopify.dev/docs/api/admin-graphql
    """
    SOURCE_NAME = "shopify"
    CHANNEL_ID = "shopify"
    LOCATION_ID = "online-shopify"
    SIGNATURE_HEADER = "x-shopify-hmac-sha256"
    TOPIC_HEADER = "x-shopify-topic"
    SIGNATURE_ENCODING = "base64"

    def __init__(
        self,
        store_domain: str,
        access_token: str,
        webhook_secret: str,
        identity,
        api_version: str = "2024-01",
        page_size: int = 50,
        **kwargs,
    ):
        super().__init__(webhook_secret=webhook_secret, identity=identity, **kwargs)
        self.store_domain = store_domain
        self.access_token = access_token
        self.api_version = api_version
        self.page_size = page_size

    @property
    def graphql_endpoint(self) -> str:
        return f"https://{self.store_domain}/admin/api/{self.api_version}/graphql.json"

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": self.access_token,
        }

    def _is_throttled(self, data: Any) -> bool:
        if not isinstance(data, dict):
            return False
        return any(
            (err.get("extensions") or {}).get("code") == "THROTTLED"
            for err in data.get("errors") or []
        )

    async def _after_response(self, response: httpx.Response) -> None:
        # REST-style call limit header, e.g. "36/40"
        call_limit = response.headers.get("X-Shopify-Shop-Api-Call-Limit")
        if not call_limit:
            return
        try:
            used, total = (int(part) for part in call_limit.split("/"))
        except ValueError:
            return
        if total and used >= total * 0.9:
            logger.warning(f"Approaching Shopify rate limit: {used}/{total}")
            await asyncio.sleep(0.5)

    async def _graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        result = await self._request(
            "POST",
            self.graphql_endpoint,
            json={"query": query, "variables": variables or {}},
        )
        if result.get("errors"):
            logger.error(f"Shopify GraphQL errors: {result['errors']}")
            raise PermanentSourceError(f"GraphQL errors: {result['errors']}", self.SOURCE_NAME)
        if "data" not in result:
            raise MalformedPayload("Shopify response has no data", self.SOURCE_NAME, result)
        return result["data"]

    # ========== Orders ==========

    async def fetch_by_date_range(
        self,
        start: date,
        end: date,
        page_token: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        time_from, time_to = day_bounds(start, end)
        data = await self._graphql(ORDERS_QUERY, {
            "first": self.page_size,
            "after": page_token,
            "query": f"created_at:>='{time_from}' AND created_at:<='{time_to}'",
        })
        try:
            connection = data["orders"]
            orders = [edge["node"] for edge in connection["edges"]]
            page_info = connection["pageInfo"]
        except (KeyError, TypeError) as e:
            raise MalformedPayload(f"Unexpected Shopify orders shape: {e!r}", self.SOURCE_NAME, data) from e

        next_token = page_info.get("endCursor") if page_info.get("hasNextPage") else None
        logger.info(f"Shopify: fetched {len(orders)} orders {start}..{end} (more={bool(next_token)})")
        return orders, next_token

    async def fetch_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one order node by numeric id or GID"""
        gid = order_id if str(order_id).startswith("gid://") else f"gid://shopify/Order/{order_id}"
        data = await self._graphql(ORDER_QUERY, {"id": gid})
        return data.get("order")

    def normalize(self, raw: Dict[str, Any]) -> CanonicalOrder:
        """
        Normalize a GraphQL order node.
        net_total = totalPrice - totalRefunded; tenders are successful SALE transactions.
        """
        try:
            customer = raw.get("customer") or None
            customer_hash = None
            identity = None
            if customer:
                customer_hash = self.identity.resolve_customer(customer.get("email"), customer.get("phone"))
                if customer_hash and customer.get("id"):
                    identity = CustomerIdentityRef("shopify_customer_id", extract_shopify_id(customer["id"]))

            tenders = [
                {
                    "gateway": txn.get("gateway") or "unknown",
                    "amount": money_str(_shop_amount(txn.get("amountSet"))),
                }
                for txn in _nodes(raw.get("transactions"))
                if str(txn.get("kind", "")).upper() == "SALE" and str(txn.get("status", "")).upper() == "SUCCESS"
            ]

            lines = []
            for item in _nodes(raw.get("lineItems")):
                product = item.get("product") or {}
                lines.append(CanonicalOrderLine(
                    external_id=extract_shopify_id(item["id"]),
                    sku=item.get("sku") or None,
                    product_title=item.get("name") or "Unknown item",
                    category=product.get("productType") or None,
                    qty=int(item["quantity"]),
                    line_total=_shop_amount(item.get("originalTotalSet")),
                ))

            created_at = parse_timestamp(raw["createdAt"])
            return CanonicalOrder(
                external_id=extract_shopify_id(raw["id"]),
                channel_id=self.CHANNEL_ID,
                location_id=self.LOCATION_ID,
                created_at=created_at,
                updated_at=parse_timestamp(raw["updatedAt"]) if raw.get("updatedAt") else created_at,
                customer_hash=customer_hash,
                gross_total=_shop_amount(raw["totalPriceSet"]),
                tax_total=_shop_amount(raw.get("totalTaxSet")),
                discount_total=_shop_amount(raw.get("totalDiscountsSet")),
                refunds_total=_shop_amount(raw.get("totalRefundedSet")),
                tenders=tenders,
                raw=raw,
                lines=lines,
                identity=identity,
            )
        except MalformedPayload:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise self._malformed(raw, e) from e

    # ========== Webhooks ==========

    def webhook_event_type(self, payload: Dict[str, Any], header_value: Optional[str] = None) -> str:
        return header_value or "unknown"

    @staticmethod
    def total_refunded(payload: Dict[str, Any]) -> Decimal:
        """Sum refunds from a REST order payload"""
        total = ZERO
        for refund in payload.get("refunds") or []:
            refund_set = refund.get("total_refund_set")
            if refund_set:
                total += to_money((refund_set.get("shop_money") or {}).get("amount"))
            else:
                total += ShopifyClient.refund_amount(refund)
        return total

    @staticmethod
    def refund_amount(refund: Dict[str, Any]) -> Decimal:
        """Amount of one refund: explicit amount, else its successful refund transactions"""
        if refund.get("amount") not in (None, ""):
            return to_money(refund["amount"])
        return sum(
            (
                to_money(txn.get("amount"))
                for txn in refund.get("transactions") or []
                if str(txn.get("kind", "refund")).lower() == "refund"
                and str(txn.get("status", "success")).lower() == "success"
            ),
            ZERO,
        )

    @staticmethod
    def webhook_to_node(payload: Dict[str, Any]) -> Dict[str, Any]:
        """Convert a REST webhook order into the GraphQL node shape normalize() reads"""
        customer = payload.get("customer")
        return {
            "id": f"gid://shopify/Order/{payload['id']}",
            "name": payload.get("name") or payload.get("order_number"),
            "createdAt": payload.get("created_at"),
            "updatedAt": payload.get("updated_at"),
            "totalPriceSet": {"shopMoney": {"amount": payload.get("total_price") or "0"}},
            "currentSubtotalPriceSet": {"shopMoney": {"amount": payload.get("subtotal_price") or "0"}},
            "totalDiscountsSet": {"shopMoney": {"amount": payload.get("total_discounts") or "0"}},
            "totalTaxSet": {"shopMoney": {"amount": payload.get("total_tax") or "0"}},
            "totalRefundedSet": {"shopMoney": {"amount": str(ShopifyClient.total_refunded(payload))}},
            "customer": {
                "id": f"gid://shopify/Customer/{customer['id']}",
                "email": customer.get("email"),
                "phone": customer.get("phone"),
            } if customer else None,
            "lineItems": {"edges": [
                {"node": {
                    "id": f"gid://shopify/LineItem/{item['id']}",
                    "name": item.get("name"),
                    "sku": item.get("sku"),
                    "quantity": item.get("quantity"),
                    "originalTotalSet": {"shopMoney": {
                        "amount": str(to_money(item.get("price")) * int(item.get("quantity") or 0)),
                    }},
                    "product": {
                        "id": f"gid://shopify/Product/{item['product_id']}",
                        "productType": item.get("product_type"),
                    } if item.get("product_id") else None,
                }}
                for item in payload.get("line_items") or []
            ]},
            "transactions": [
                {
                    "kind": str(txn.get("kind") or "sale").upper(),
                    "status": str(txn.get("status") or "success").upper(),
                    "amountSet": {"shopMoney": {"amount": txn.get("amount") or "0"}},
                    "gateway": txn.get("gateway") or "unknown",
                }
                for txn in payload.get("transactions") or []
            ],
        }

    # ========== Health ==========

    async def test_connection(self) -> bool:
        try:
            data = await self._graphql(SHOP_QUERY)
            logger.info(f"Shopify connection successful: {data['shop']['name']}")
            return True
        except Exception as e:
            logger.error(f"Shopify connection failed: {e}")
            return False
