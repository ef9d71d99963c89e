"""
API dependencies - Injected source clients and shared-secret checks
"""
from typing import Optional
import hmac

from fastapi import Header, HTTPException, Request

from commercehub.core.config import settings
from commercehub.integrations.registry import SourceRegistry


def get_sources(request: Request) -> SourceRegistry:
    """Source clients built once in the app lifespan"""
    return request.app.state.sources


def _secret_matches(expected: Optional[str], provided: Optional[str]) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def require_admin_secret(x_admin_secret: Optional[str] = Header(None)):
    if not _secret_matches(settings.ADMIN_SECRET, x_admin_secret):
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_cron_secret(authorization: Optional[str] = Header(None)):
    token = None
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):]
    if not _secret_matches(settings.CRON_SECRET, token):
        raise HTTPException(status_code=401, detail="Unauthorized")
