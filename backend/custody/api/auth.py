from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session
from custody.core.config import settings
from custody.core.db import get_db
from custody.core.security import verify_password, create_access_token
from custody.schemas.auth import LoginIn, Tokens
from custody.models.user import User

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=Tokens)
def login(data: LoginIn, response: Response, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == data.email).first()
    if not user or not verify_password(data.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password.",
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account disabled.")
    token = create_access_token(sub=str(user.id))
    response.set_cookie(
        "accessToken",
        token,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
        max_age=settings.JWT_EXPIRE_MIN * 60,
    )
    return Tokens(access=token, expires_in=settings.JWT_EXPIRE_MIN * 60)


@router.post("/logout")
def logout(response: Response):
    response.delete_cookie("accessToken")
    return {"message": "Logged out."}
