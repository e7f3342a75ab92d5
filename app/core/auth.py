from datetime import datetime, timedelta, timezone
from typing import Iterable, List
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer
from pydantic import BaseModel
from app.core.config import settings

security = HTTPBearer()

PERM_PAYMENT_EDIT = "payment:edit"
PERM_SALES_EDIT = "sales:edit"


class Operator(BaseModel):
    """Authenticated till operator, as carried in the token."""
    id: str
    permissions: List[str] = []


def create_access_token(
    operator_id: str,
    permissions: Iterable[str] = (),
    expires_delta: timedelta | None = None
) -> str:
    """Create JWT access token."""
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)
    
    now = datetime.now(timezone.utc)
    expire = now + expires_delta
    
    payload = {
        "sub": operator_id,
        "perms": list(permissions),
        "exp": int(expire.timestamp()),
        "iat": int(now.timestamp())
    }
    
    encoded_jwt = jwt.encode(
        payload,
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM
    )
    return encoded_jwt

async def get_current_operator(credentials = Depends(security)) -> Operator:
    """Get current operator from JWT token."""
    token = credentials.credentials
    
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token"
        )

    operator_id = payload.get("sub")
    if operator_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token"
        )
    
    return Operator(id=operator_id, permissions=payload.get("perms") or [])

def require_permission(permission: str):
    """Dependency factory: the operator's token must carry `permission`."""
    async def checker(operator: Operator = Depends(get_current_operator)) -> Operator:
        if permission not in operator.permissions:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission}"
            )
        return operator
    return checker
