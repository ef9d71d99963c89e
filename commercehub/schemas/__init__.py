from .webhooks import ShopifyRefundWebhook, SquareWebhookEvent, AnyRoadWebhookEvent
from .admin import ResyncRequest, ReconcileRequest
