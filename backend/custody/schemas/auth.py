from pydantic import BaseModel, EmailStr, Field


class LoginIn(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=256)


class Tokens(BaseModel):
    access: str
    token_type: str = "bearer"
    expires_in: int
