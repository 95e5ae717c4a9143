import logging

from app.core.config import get_settings
from app.core.security import decode_token

settings = get_settings()
logger = logging.getLogger(__name__)


def _resolve_identity(auth: dict | None) -> tuple[str | None, str | None]:
    token = (auth or {}).get("token")
    if not token:
        return None, None
    try:
        payload = decode_token(token)
    except ValueError:
        return None, None
    return payload.get("sub"), payload.get("role")


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def role_room(role: str) -> str:
    return f"role:{role}"


def register_socket_events(sio):
    @sio.event(namespace=settings.DASHBOARD_NAMESPACE)
    async def connect(sid, environ, auth):
        user_id, role = _resolve_identity(auth)
        if not user_id:
            # Anonymous sockets are refused; dashboards carry the access token.
            return False
        await sio.enter_room(sid, user_room(user_id), namespace=settings.DASHBOARD_NAMESPACE)
        if role:
            await sio.enter_room(sid, role_room(role), namespace=settings.DASHBOARD_NAMESPACE)
        await sio.emit(
            "dashboard.snapshot",
            {"data": {"message": "connected", "role": role}},
            to=sid,
            namespace=settings.DASHBOARD_NAMESPACE,
        )
        return True

    @sio.event(namespace=settings.DASHBOARD_NAMESPACE)
    async def disconnect(sid):
        logger.debug("dashboard socket disconnected sid=%s", sid)
