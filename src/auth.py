"""
Quorum Broker Authentication Module
Admin API key validation and caller identity extraction for HTTP and
WebSocket endpoints

Security-critical: Uses constant-time comparison to prevent timing attacks
"""

import os
import secrets
import logging
from typing import Optional

from fastapi import HTTPException, Header, WebSocket, status

logger = logging.getLogger("quorum.auth")


def get_admin_api_key() -> Optional[str]:
    """Admin API key from environment (MUST be set in production)"""
    return os.getenv("BROKER_ADMIN_API_KEY") or None


def _key_matches(candidate: str, expected: str) -> bool:
    return secrets.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


async def verify_admin_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key")
) -> str:
    """
    FastAPI dependency for administrative endpoints.

    Returns:
        str: The validated API key (or "dev-bypass" when no key is configured)

    Raises:
        HTTPException: 401 if key missing, 403 if key invalid
    """
    expected = get_admin_api_key()
    if not expected:
        logger.debug("Admin authentication bypassed - BROKER_ADMIN_API_KEY not configured")
        return "dev-bypass"

    if not x_api_key:
        logger.warning("Request rejected - missing X-API-Key header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-API-Key header",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not _key_matches(x_api_key, expected):
        key_preview = x_api_key[:8] if len(x_api_key) >= 8 else x_api_key
        logger.warning(f"Request rejected - invalid API key: {key_preview}...")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key"
        )

    return x_api_key


def require_identity(header_value: Optional[str], header_name: str) -> str:
    """Identity headers are mandatory on every actor-specific endpoint"""
    if not header_value:
        logger.warning(f"Request rejected - missing {header_name} header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {header_name} header",
        )
    return header_value


async def verify_provider_websocket(websocket: WebSocket) -> bool:
    """
    Verify a provider WebSocket BEFORE calling websocket.accept().

    Providers present the same admin-issued key; with no key configured the
    check is bypassed (development mode).
    """
    expected = get_admin_api_key()
    if not expected:
        return True

    api_key = websocket.headers.get("X-API-Key")
    if not api_key or not _key_matches(api_key, expected):
        logger.warning(
            f"Provider WebSocket rejected - bad or missing X-API-Key "
            f"(client: {websocket.client.host if websocket.client else 'unknown'})"
        )
        return False

    return True


def is_auth_enabled() -> bool:
    """Check if authentication is enabled (API key configured)."""
    return get_admin_api_key() is not None
