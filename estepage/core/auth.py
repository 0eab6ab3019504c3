"""
Tenant identity for API requests.

Identity is issued upstream; this module only verifies it.
Priority:
1. HS256 JWT in the Authorization header (tenant id in `sub`)
2. X-Tenant-Id header, only with AUTH_ALLOW_TENANT_HEADER set and outside production
"""
import logging
from typing import List, Optional

import jwt
from fastapi import Header, HTTPException, Request

from estepage.core.config import settings

logger = logging.getLogger(__name__)


def _algorithms() -> List[str]:
    return [alg.strip() for alg in settings.AUTH_JWT_ALGORITHMS.split(",") if alg.strip()]


def verify_tenant_jwt(token: str) -> Optional[str]:
    """
    Verify a tenant JWT and return its subject.

    Returns None when no signing secret is configured.

    Raises:
        HTTPException 401: Invalid or expired token
    """
    if not settings.AUTH_JWT_SECRET:
        logger.debug("No AUTH_JWT_SECRET configured, skipping JWT validation")
        return None

    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=_algorithms(),
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    tenant_id = payload.get("sub")
    if not tenant_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return str(tenant_id)


async def get_current_tenant_id(
    request: Request,
    x_tenant_id: Optional[str] = Header(None, description="Opt-in, non-production: tenant id"),
) -> str:
    """Resolve the calling tenant or raise 401."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        tenant_id = verify_tenant_jwt(auth_header[7:])
        if tenant_id:
            return tenant_id

    if x_tenant_id and settings.AUTH_ALLOW_TENANT_HEADER and settings.ENV != "production":
        return x_tenant_id

    raise HTTPException(status_code=401, detail="Missing Authorization (Bearer JWT)")
