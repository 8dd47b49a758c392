"""
Security helpers: rate limiter, response headers, password hashing, token decoding.
Tokens are issued by the external auth service; this API only verifies them.
"""

from passlib.context import CryptContext
from slowapi import Limiter
from slowapi.util import get_remote_address
import jwt

from copytrade.core.config import settings

limiter = Limiter(key_func=get_remote_address)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def get_security_headers() -> dict[str, str]:
    headers = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "strict-origin-when-cross-origin",
    }
    if settings.ENVIRONMENT == "production":
        headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
    return headers


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def decode_access_token(token: str) -> dict:
    """Decode and verify a bearer token. Raises jwt.InvalidTokenError on failure."""
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.JWT_ALGORITHM])


def create_access_token(data: dict) -> str:
    """Sign a token with the shared secret (used by tooling and tests)."""
    return jwt.encode(data, settings.jwt_secret, algorithm=settings.JWT_ALGORITHM)
