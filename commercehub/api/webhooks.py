"""
Webhook API Endpoints - Receive notifications from Shopify, Square and AnyRoad
"""
from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
import logging

from commercehub.core.database import get_db
from commercehub.integrations.registry import SourceRegistry
from commercehub.services.webhook_service import get_webhook_handler
from .deps import get_sources

logger = logging.getLogger(__name__)

webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _handle(source: str, request: Request, db: Session, sources: SourceRegistry) -> JSONResponse:
    # Signatures are computed over the exact bytes received
    body = await request.body()
    handler = get_webhook_handler(db, sources[source])
    result = await handler.handle(body, request.headers)
    return JSONResponse(status_code=result.http_status, content=result.to_dict())


# ========== Shopify Webhook ==========

@webhook_router.post("/shopify")
async def shopify_webhook(
    request: Request,
    db: Session = Depends(get_db),
    sources: SourceRegistry = Depends(get_sources),
):
    """
    Topics: orders/create, orders/updated, orders/paid, orders/cancelled, refunds/create
    Signature: base64 HMAC-SHA256 of the raw body in X-Shopify-Hmac-Sha256
    """
    return await _handle("shopify", request, db, sources)


# ========== Square Webhook ==========

@webhook_router.post("/square")
async def square_webhook(
    request: Request,
    db: Session = Depends(get_db),
    sources: SourceRegistry = Depends(get_sources),
):
    """
    Events: payment.created, payment.updated, order.created, order.updated
    Signature: base64 HMAC-SHA256 of notification URL + raw body
    """
    return await _handle("square", request, db, sources)


# ========== AnyRoad Webhook ==========

@webhook_router.post("/anyroad")
async def anyroad_webhook(
    request: Request,
    db: Session = Depends(get_db),
    sources: SourceRegistry = Depends(get_sources),
):
    """
    Events: booking.created, booking.updated, booking.cancelled, booking.completed
    Signature: hex HMAC-SHA256 of the raw body
    """
    return await _handle("anyroad", request, db, sources)
