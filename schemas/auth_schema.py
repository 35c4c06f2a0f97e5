# auth_schema.py
from pydantic import BaseModel, EmailStr, Field

from models.models import AccountRole


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)
    account_type: AccountRole = AccountRole.DONOR


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    account_type: AccountRole
    account_id: int
    email: EmailStr
