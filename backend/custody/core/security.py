from datetime import datetime, timedelta, timezone
from passlib.hash import argon2
from jose import JWTError, jwt

from custody.core.config import settings

ALGORITHM = "HS256"
ACCESS_TOKEN_TYPE = "access"


def hash_password(plain: str) -> str:
    return argon2.hash(plain)


def verify_password(plain: str, hashed: str) -> bool:
    # malformed hashes count as a mismatch
    try:
        return argon2.verify(plain, hashed)
    except (ValueError, TypeError):
        return False


def create_access_token(sub: str, expires_minutes: int | None = None) -> str:
    issued = datetime.now(timezone.utc)
    lifetime = timedelta(minutes=expires_minutes or settings.JWT_EXPIRE_MIN)
    claims = {"sub": sub, "iat": issued, "exp": issued + lifetime, "type": ACCESS_TOKEN_TYPE}
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Return the claims of a valid access token, raising ``JWTError`` otherwise."""
    claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGORITHM])
    if claims.get("type") != ACCESS_TOKEN_TYPE or not claims.get("sub"):
        raise JWTError("not an access token")
    return claims
