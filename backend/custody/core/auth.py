from fastapi import Depends, HTTPException, Request, status
from jose import JWTError
from sqlalchemy.orm import Session
from custody.core.db import get_db
from custody.core.enums import UserRole
from custody.core.security import decode_access_token
from custody.models import User


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


# cookie first, bearer header for API clients
def _read_token(request: Request) -> str | None:
    token = request.cookies.get("accessToken")
    if token:
        return token
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return None


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    token = _read_token(request)
    if not token:
        raise _unauthorized("No session. Please log in again.")

    try:
        claims = decode_access_token(token)
        user_id = int(claims["sub"])
    except (JWTError, ValueError):
        raise _unauthorized("Invalid or expired session.")

    user = db.get(User, user_id)
    if user is None:
        raise _unauthorized("User not found.")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account disabled.")
    return user


def get_current_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != UserRole.ADMIN.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required."
        )
    return current_user
