"""
Webhook Schemas - Envelope validation at the edge; inner records stay opaque until normalize()
"""
from pydantic import AliasChoices, BaseModel, Field
from typing import Optional, List, Dict, Any
from decimal import Decimal


class ShopifyRefundTransaction(BaseModel):
    id: Optional[int] = None
    kind: Optional[str] = "refund"
    status: Optional[str] = "success"
    amount: Optional[Decimal] = None


class ShopifyRefundWebhook(BaseModel):
    id: int
    order_id: int
    created_at: Optional[str] = None
    amount: Optional[Decimal] = None
    transactions: List[ShopifyRefundTransaction] = []

    def as_refund(self) -> Dict[str, Any]:
        return self.model_dump()


class SquareEventData(BaseModel):
    type: Optional[str] = None
    id: str
    object: Dict[str, Any] = {}


class SquareWebhookEvent(BaseModel):
    merchant_id: Optional[str] = None
    type: str
    event_id: Optional[str] = None
    created_at: Optional[str] = None
    data: SquareEventData


class AnyRoadWebhookEvent(BaseModel):
    event_type: str = Field(validation_alias=AliasChoices("event_type", "type"))
    data: Dict[str, Any]
    timestamp: Optional[str] = None
