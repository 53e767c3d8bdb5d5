import hmac
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from perdexa.core.config import settings
from perdexa.core.security import decode_access_token

security = HTTPBearer()


@dataclass
class Actor:
    """Who is calling, as asserted by the access token."""
    user_id: uuid.UUID
    tenant_id: Optional[uuid.UUID] = None
    is_admin: bool = False
    email: Optional[str] = None


def _claim_uuid(payload: dict, key: str) -> Optional[uuid.UUID]:
    value = payload.get(key)
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid {key} in token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_current_actor(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Actor:
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user_id = _claim_uuid(payload, "user_id")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
        )
    return Actor(
        user_id=user_id,
        tenant_id=_claim_uuid(payload, "tenant_id"),
        is_admin=bool(payload.get("is_admin")),
        email=payload.get("sub"),
    )


def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    """Platform super admin only (billing operations on any tenant)."""
    if not actor.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return actor


def require_tenant_actor(actor: Actor = Depends(get_current_actor)) -> Actor:
    """A user acting inside a tenant; order endpoints are scoped to actor.tenant_id."""
    if actor.tenant_id is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No tenant selected")
    return actor


def require_cron_secret(x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret")) -> None:
    expected = settings.CRON_SECRET
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="CRON_SECRET not configured")
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")
