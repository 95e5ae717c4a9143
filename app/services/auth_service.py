import logging

from sqlalchemy.orm import Session

from app.core.exceptions import AppException
from app.core.security import create_access_token, verify_password
from app.db.models import User
from app.schemas.auth import AuthResponse

logger = logging.getLogger(__name__)


def serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "fullName": user.full_name,
        "email": user.email,
        "role": user.role.value,
        "phone": user.phone,
    }


def login(db: Session, email: str, password: str) -> AuthResponse:
    login_key = (email or "").strip().lower()
    user = db.query(User).filter(User.email == login_key).first()
    if not user or not verify_password(password, user.password_hash):
        logger.warning("login rejected email=%s", login_key)
        raise AppException("Invalid credentials", status_code=401)
    if not user.is_active:
        raise AppException("Account is disabled", status_code=403)
    return AuthResponse(
        accessToken=create_access_token(user.id, user.role.value),
        user=serialize_user(user),
    )
