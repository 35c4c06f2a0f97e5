import logging

from fastapi import APIRouter, HTTPException, Depends
from sqlmodel import Session, select
from sqlalchemy.exc import SQLAlchemyError

from schemas.auth_schema import LoginRequest, TokenResponse
from core.database import get_session
from core.security import ACCOUNT_MODELS, verify_password, create_token_for_account

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Authentication"])


# ==========================================================
# ✅ Login: admin, organization or donor account
# ==========================================================
@router.post("/login", response_model=TokenResponse)
def login(credentials: LoginRequest, session: Session = Depends(get_session)):
    """Authenticate an account of the requested type and issue a bearer token"""
    model = ACCOUNT_MODELS[credentials.account_type]

    try:
        account = session.exec(
            select(model).where(model.email == credentials.email).order_by(model.id)
        ).first()
    except SQLAlchemyError as e:
        logger.error(f"❌ Login database error: {e}")
        raise HTTPException(
            status_code=500,
            detail="We're having trouble logging you in. Please try again later."
        )

    if not account or not account.password_hash:
        raise HTTPException(status_code=401, detail="Invalid email or password.")

    if not verify_password(credentials.password, account.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password.")

    if not getattr(account, "is_active", True):
        raise HTTPException(status_code=403, detail="Your account is inactive. Contact support.")

    token = create_token_for_account(credentials.account_type, account.id, account.email)
    logger.info(f"✅ Login successful for {credentials.account_type.value} {account.email}")

    return TokenResponse(
        access_token=token,
        account_type=credentials.account_type,
        account_id=account.id,
        email=account.email,
    )
