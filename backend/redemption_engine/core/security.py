"""Security dependencies"""
import logging
import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request

from redemption_engine.core.config import settings

security_logger = logging.getLogger("security")


def require_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(None, alias="X-API-Key")
) -> str:
    """Dependency: require the admin API key for operations that move funds"""
    expected = settings.ADMIN_API_KEY
    if not expected:
        security_logger.warning(f"Rejected {request.method} {request.url.path}: ADMIN_API_KEY not configured")
        raise HTTPException(503, "Manual redemption is disabled")

    if not x_api_key or not secrets.compare_digest(x_api_key, expected):
        client_host = request.client.host if request.client else "unknown"
        security_logger.warning(f"Invalid API key for {request.method} {request.url.path} from {client_host}")
        raise HTTPException(401, "Invalid or missing API key")

    return x_api_key
