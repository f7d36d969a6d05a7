import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from config.settings import settings
from models.tracking import Principal, Role

logger = logging.getLogger(__name__)

# Define security scheme for Swagger UI (auto_error=False allows us to handle missing tokens gracefully)
security = HTTPBearer(auto_error=False)


class InvalidTokenError(Exception):
    pass


def extract_token(header_val: str) -> Optional[str]:
    """Helper to strip 'Bearer ' prefix if present."""
    if not header_val:
        return None
    hv = header_val.strip()
    if hv.lower().startswith("bearer "):
        return hv.split(None, 1)[1].strip()
    return hv  # accept raw token


def create_access_token(user_id: str, role: str, expires_in: timedelta = timedelta(hours=12)) -> str:
    """Issue a signed token. Used by tests and tools/gps_simulator.py; the real issuer is the auth service."""
    now = datetime.now(timezone.utc)
    payload = {"sub": user_id, "role": role, "iat": now, "exp": now + expires_in}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token_value: str) -> Principal:
    """
    Verify the token and return the principal it names.
    Raises InvalidTokenError with a client-safe message.
    """
    try:
        payload = jwt.decode(token_value, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise InvalidTokenError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning("Token decode error: %s", e)
        raise InvalidTokenError("Invalid token")

    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id or role not in {r.value for r in Role}:
        raise InvalidTokenError("Token is missing subject or role")
    return Principal(user_id=user_id, role=Role(role))


async def get_current_principal(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(security),
    authorization: Optional[str] = Header(None),
) -> Principal:
    """
    Async JWT auth dependency.
    Accepts the standard bearer header, a raw Authorization header or a `token` query param.
    """
    token_value = None

    if creds and creds.credentials:
        token_value = creds.credentials

    if not token_value and authorization:
        token_value = extract_token(authorization)

    if not token_value:
        token_value = request.query_params.get("token")

    if not token_value:
        logger.warning("Authentication failed: no token on %s", request.url.path)
        raise HTTPException(status_code=401, detail="Missing Authorization token")

    try:
        return decode_token(token_value)
    except InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e))


def require_roles(*roles: Role):
    """Dependency factory: reject principals whose role is not listed."""
    async def _checker(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in roles:
            raise HTTPException(status_code=403, detail=f"Not allowed for role {principal.role.value}")
        return principal
    return _checker
