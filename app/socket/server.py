import logging

import socketio

from app.core.config import get_settings
from app.db.models import UserRole
from app.socket.events import register_socket_events, role_room, user_room

settings = get_settings()
logger = logging.getLogger(__name__)

socket_cors_origins = list(settings.cors_origins)

sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins="*" if settings.DEBUG else socket_cors_origins,
    logger=False,
    engineio_logger=False,
)

register_socket_events(sio)


STAFF_ROLES = (UserRole.admin, UserRole.approver1, UserRole.approver2, UserRole.reception)


def request_update_rooms(request_payload: dict) -> list[str]:
    """Staff dashboards see every request; a requester only sees their own."""
    rooms = [role_room(role.value) for role in STAFF_ROLES]
    requester_id = request_payload.get("requestedById")
    if requester_id:
        rooms.append(user_room(requester_id))
    return rooms


async def emit_request_updated(request_payload: dict) -> None:
    """Push a request patch to dashboards; failures are logged only."""
    try:
        await sio.emit(
            "request.updated",
            {"data": request_payload},
            to=request_update_rooms(request_payload),
            namespace=settings.DASHBOARD_NAMESPACE,
        )
        requester_id = request_payload.get("requestedById")
        if requester_id:
            await sio.emit(
                "notification.new",
                {"data": {"requestId": request_payload.get("id"), "status": request_payload.get("status")}},
                to=user_room(requester_id),
                namespace=settings.DASHBOARD_NAMESPACE,
            )
    except Exception:
        logger.exception("realtime emit failed request_id=%s", request_payload.get("id"))
