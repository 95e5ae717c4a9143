from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.security import decode_token
from app.db.models import User, UserRole
from app.db.session import get_db
from app.notifications.dispatcher import Scheduler, schedule_processing

bearer_scheme = HTTPBearer(auto_error=False)

STAGE_ROLES = {
    1: (UserRole.approver1, UserRole.admin),
    2: (UserRole.approver2, UserRole.admin),
}


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")

    try:
        payload = decode_token(credentials.credentials)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

    if payload.get("type") != "access":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token type")

    user = db.query(User).filter(User.id == payload.get("sub")).first()
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def ensure_role(user: User, *roles: UserRole | str) -> None:
    allowed = {role.value if isinstance(role, UserRole) else role for role in roles}
    if user.role.value not in allowed:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")


def require_roles(*roles: UserRole | str):
    def dependency(user: User = Depends(get_current_user)) -> User:
        ensure_role(user, *roles)
        return user

    return dependency


def get_scheduler() -> Scheduler:
    """Out-of-band notification processing; overridden in tests."""
    return schedule_processing
