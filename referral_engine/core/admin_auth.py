"""Admin authentication.

Admin routes are guarded by a shared bearer secret (``ADMIN_SECRET_KEY``).
End-user identity comes from the host application's wallet layer.
"""

import logging
import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from referral_engine.config import settings

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def verify_admin_key(token: str | None) -> bool:
    if not token or not settings.admin_secret_key:
        return False
    return secrets.compare_digest(token.encode(), settings.admin_secret_key.encode())


async def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> None:
    """Dependency that requires a valid admin bearer token."""
    if not settings.admin_secret_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin access is not configured",
        )

    token = credentials.credentials if credentials else None
    if not verify_admin_key(token):
        logger.warning(f"Rejected admin request from {get_client_ip(request)} to {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_client_ip(request: Request) -> str:
    """Extract client IP from request."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"
