from fastapi import Request, HTTPException, Header, status
from pydantic import BaseModel
from typing import Optional
import hmac
import logging
import os
from auth import decode_access_token

logger = logging.getLogger(__name__)

EXECUTOR_API_TOKEN = os.getenv("EXECUTOR_API_TOKEN", "")


class CurrentUser(BaseModel):
    """Authenticated caller, taken from the bearer token."""
    user_id: str
    email: Optional[str] = None


async def get_current_user(request: Request) -> Optional[CurrentUser]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ", 1)[1]
    payload = decode_access_token(token)

    if not payload or not payload.get("sub"):
        return None

    return CurrentUser(user_id=str(payload["sub"]), email=payload.get("email"))

async def require_auth(request: Request) -> CurrentUser:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def require_executor_token(x_executor_token: Optional[str] = Header(None)) -> None:
    """Guard for executor callbacks: shared secret in X-Executor-Token."""
    if not EXECUTOR_API_TOKEN:
        logger.error("EXECUTOR_API_TOKEN is not configured; rejecting executor callback")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Executor callbacks are not configured"
        )
    if not x_executor_token or not hmac.compare_digest(x_executor_token, EXECUTOR_API_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid executor token"
        )

def get_credit_services(request: Request):
    """Credit services wired onto the app in the server lifespan."""
    services = getattr(request.app.state, "credit_services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not ready"
        )
    return services
