"""
API dependencies
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from jits_shipping.core.security import decode_token

security = HTTPBearer()


@dataclass(frozen=True)
class CurrentUser:
    """Identity carried by a storefront access token."""
    id: int
    is_admin: bool = False


def _user_from_token(token: str) -> Optional[CurrentUser]:
    payload = decode_token(token)
    if not payload or payload.get("type") != "access":
        return None

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None

    return CurrentUser(id=user_id, is_admin=bool(payload.get("is_admin", False)))


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> CurrentUser:
    """Get current authenticated user"""
    user = _user_from_token(credentials.credentials)

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )

    return user


async def get_current_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Require admin user"""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return user

