import hmac
from typing import Optional

from fastapi import Header, HTTPException
from jose import JWTError, jwt

from app import config


def _bearer_token(authorization: str) -> str:
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return token.strip()


def _customer_from_token(token: str) -> str:
    try:
        claims = jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    customer_id = claims.get("sub")
    if not customer_id:
        raise HTTPException(status_code=401, detail="Token has no customer")
    return str(customer_id)


def optional_customer(authorization: Optional[str] = Header(None)) -> Optional[str]:
    """Customer id for an authenticated shopper, None for an anonymous one."""
    if not authorization:
        return None
    return _customer_from_token(_bearer_token(authorization))


def require_customer(authorization: str = Header(...)) -> str:
    return _customer_from_token(_bearer_token(authorization))


def _same_key(given: Optional[str], expected: str) -> bool:
    return given is not None and hmac.compare_digest(given.encode(), expected.encode())


def verify_sepay_key(x_api_key: Optional[str] = Header(None)):
    if config.SEPAY_API_KEY and not _same_key(x_api_key, config.SEPAY_API_KEY):
        raise HTTPException(status_code=401, detail="Invalid API key")


def verify_admin_key(x_admin_key: Optional[str] = Header(None)):
    if not config.ADMIN_API_KEY or not _same_key(x_admin_key, config.ADMIN_API_KEY):
        raise HTTPException(status_code=401, detail="Invalid admin key")
