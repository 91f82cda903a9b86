from typing import Optional

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from jojopay.config import get_settings


def decode_token(token: str) -> dict:
    secret = get_settings().jwt_secret
    if not secret:
        raise JWTError("JWT_SECRET is not set")
    # Tokens from the managed auth provider carry an "authenticated" audience
    return jwt.decode(token, secret, algorithms=["HS256"], options={"verify_aud": False})


def _bearer(authorization: Optional[str]) -> str:
    scheme, token = authorization.split()
    if scheme.lower() != "bearer":
        raise ValueError("not a bearer token")
    return token


def verify_token(authorization: str = Header(...)) -> dict:
    try:
        return decode_token(_bearer(authorization))
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def optional_user(authorization: Optional[str] = Header(None)) -> Optional[dict]:
    """Claims of the caller when a valid bearer token is present, else ``None``."""
    if not authorization:
        return None
    try:
        return decode_token(_bearer(authorization))
    except (ValueError, JWTError):
        return None


def is_admin(claims: dict) -> bool:
    role = claims.get("role")
    app_role = (claims.get("app_metadata") or {}).get("role")
    return "admin" in (role, app_role)


def require_admin(claims: dict = Depends(verify_token)) -> dict:
    if not is_admin(claims):
        raise HTTPException(status_code=403, detail="Insufficient permissions for subscription management")
    return claims
