from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader
from jose import jwt, JWTError

from .config import settings

api_key_header = APIKeyHeader(name="Authorization")


async def get_key_by_user_id_or_ip(request: Request) -> str:
    """
    Rate-limit key: the user ID from the JWT token, or the client's IP
    when there is no valid token.
    """
    try:
        token = request.headers.get("Authorization")
        scheme, jwt_token = token.split()
        if scheme.lower() != "bearer":
            return request.client.host

        payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = payload.get("sub")

        if user_id:
            return str(user_id)
    except (JWTError, ValueError, AttributeError, TypeError):
        pass
    return request.client.host


async def get_token_claims(
        token: Annotated[str, Depends(api_key_header)]
) -> dict:
    """
    Decodes the JWT from the 'Authorization: Bearer ...' header.
    The token must carry a subject (the user ID).
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        scheme, jwt_token = token.split()
        if scheme.lower() != "bearer":
            raise credentials_exception
        payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except (JWTError, ValueError, AttributeError):
        raise credentials_exception

    if not payload.get("sub"):
        raise credentials_exception
    return payload


TokenClaims = Annotated[dict, Depends(get_token_claims)]


def is_admin(claims: dict) -> bool:
    return claims.get("role") == "admin"


async def get_current_user_id(claims: TokenClaims) -> str:
    return str(claims["sub"])


CurrentUserId = Annotated[str, Depends(get_current_user_id)]


async def get_current_admin_id(claims: TokenClaims) -> str:
    """
    Like get_current_user_id, but the token must carry ``"role": "admin"``.
    """
    if not is_admin(claims):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required")
    return str(claims["sub"])


CurrentAdminId = Annotated[str, Depends(get_current_admin_id)]
