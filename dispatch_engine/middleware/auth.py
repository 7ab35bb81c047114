from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from dispatch_engine.config import get_settings

settings = get_settings()
bearer_scheme = HTTPBearer(auto_error=False)

REQUESTER_ROLE = "requester"
DRIVER_ROLE = "driver"


def create_access_token(subject: str, role: str, **claims) -> str:
    """Sign a JWT for ``subject`` acting as ``role``."""
    return jwt.encode(
        {"sub": subject, "role": role, **claims}, settings.secret_key, algorithm=settings.jwt_algorithm
    )


async def get_token_payload(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> dict:
    """Decode and validate the JWT Bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return payload


def _require_role(payload: dict, role: str) -> str:
    if payload.get("role") != role:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"{role} token required")
    return payload["sub"]


async def get_current_requester(payload: dict = Depends(get_token_payload)) -> str:
    return _require_role(payload, REQUESTER_ROLE)


async def get_current_driver(payload: dict = Depends(get_token_payload)) -> str:
    return _require_role(payload, DRIVER_ROLE)


def ensure_same_driver(path_driver_id: str, token_driver_id: str) -> None:
    """Drivers may only act on their own resources."""
    if path_driver_id != token_driver_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token does not match driver")
