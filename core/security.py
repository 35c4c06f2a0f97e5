# core/security.py
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlmodel import Session

from core.database import get_session
from core.config import settings
from models.models import AccountRole, AdminUser, Donor, Organization

logger = logging.getLogger(__name__)


# ========================================
# 🔑 JWT / APP CONFIG
# ========================================
SECRET_KEY = settings.SECRET_KEY
ALGORITHM = settings.ALGORITHM or "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = getattr(settings, "ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


# ========================================
# 🔐 Password Hashing (Argon2)
# ========================================
pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


def hash_password(password: str) -> str:
    """Hash password using Argon2."""
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify password using Argon2."""
    return pwd_context.verify(plain_password, hashed_password)


# ========================================
# 🔑 Token Helpers
# ========================================
def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode JWT and return payload."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


# ========================================
# 👤 Request-scoped account context
# ========================================
@dataclass(frozen=True)
class AccountContext:
    """The authenticated caller, resolved once per request from the bearer token."""
    role: AccountRole
    account_id: int
    email: str

    @property
    def is_admin(self) -> bool:
        return self.role == AccountRole.ADMIN

    def can_access_donor(self, donor_id: int) -> bool:
        return self.is_admin or (self.role == AccountRole.DONOR and self.account_id == donor_id)


ACCOUNT_MODELS = {
    AccountRole.ADMIN: AdminUser,
    AccountRole.ORGANIZATION: Organization,
    AccountRole.DONOR: Donor,
}


def create_token_for_account(role: AccountRole, account_id: int, email: str) -> str:
    return create_access_token({"sub": email, "account_id": account_id, "role": role.value})


def get_current_account(
    token: str = Depends(oauth2_scheme),
    session: Session = Depends(get_session),
) -> AccountContext:
    """Resolve the bearer token into an AccountContext backed by a live DB record."""
    payload = decode_token(token)
    account_id = payload.get("account_id")
    email = payload.get("sub")

    try:
        role = AccountRole(payload.get("role"))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    if not account_id or not email:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    account = session.get(ACCOUNT_MODELS[role], account_id)
    if not account:
        raise HTTPException(status_code=401, detail="Account not found")
    if not getattr(account, "is_active", True):
        raise HTTPException(status_code=403, detail="Account is inactive")

    return AccountContext(role=role, account_id=account.id, email=account.email)


def ensure_donor_access(account: AccountContext, donor_id: int) -> None:
    """Donors may only touch their own records; admins may touch any."""
    if not account.can_access_donor(donor_id):
        logger.warning(f"⚠️ {account.role.value} {account.account_id} denied access to donor {donor_id}")
        raise HTTPException(status_code=403, detail="Not allowed to access this donor")
