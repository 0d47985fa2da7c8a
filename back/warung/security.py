import secrets
from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .settings import settings

TOKEN_TYPE = "table"

bearer_scheme = HTTPBearer(auto_error=False)
staff_key_scheme = APIKeyHeader(name="X-Staff-Key", auto_error=False)


def create_table_token(table_number: str, expires_delta: timedelta | None = None) -> str:
    """Opaque access token printed in a table's QR code."""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(days=settings.table_token_expire_days)
    )
    to_encode = {"sub": table_number, "type": TOKEN_TYPE, "exp": expire}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_table_token(token: str) -> str | None:
    """Return the table number a token grants, or None if it is invalid or expired."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    if payload.get("type") != TOKEN_TYPE:
        return None
    return payload.get("sub")


async def get_token_table(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> str:
    """Table number granted by the `Authorization: Bearer <table token>` header."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    table_number = decode_table_token(credentials.credentials)
    if table_number is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid table token",
        )
    return table_number


async def get_client_id(x_client_id: Annotated[str | None, Header()] = None) -> str | None:
    return x_client_id


async def require_staff(
    staff_key: Annotated[str | None, Depends(staff_key_scheme)],
) -> None:
    """Guard for endpoints only restaurant staff may call."""
    if not settings.staff_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Staff endpoints are disabled: STAFF_API_KEY is not configured",
        )
    if not staff_key or not secrets.compare_digest(staff_key, settings.staff_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid staff key",
        )
