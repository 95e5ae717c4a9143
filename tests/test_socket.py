import pytest

from app.socket import server
from app.socket.events import role_room, user_room


class RecordingEmitter:
    def __init__(self):
        self.calls = []

    async def __call__(self, event, data=None, to=None, room=None, namespace=None, **kwargs):
        self.calls.append({"event": event, "data": data, "to": to or room, "namespace": namespace})


@pytest.mark.anyio
async def test_request_update_goes_to_staff_roles_and_owner(monkeypatch) -> None:
    emitter = RecordingEmitter()
    monkeypatch.setattr(server.sio, "emit", emitter)

    await server.emit_request_updated({"id": "req-1", "requestedById": "user-1", "status": "stage2-pending"})

    update, notice = emitter.calls
    assert update["event"] == "request.updated"
    assert set(update["to"]) == {
        role_room("admin"),
        role_room("approver1"),
        role_room("approver2"),
        role_room("reception"),
        user_room("user-1"),
    }
    assert role_room("requester") not in update["to"]
    assert notice["event"] == "notification.new"
    assert notice["to"] == user_room("user-1")
    assert notice["data"] == {"data": {"requestId": "req-1", "status": "stage2-pending"}}


@pytest.mark.anyio
async def test_emit_failures_are_swallowed(monkeypatch) -> None:
    async def failing_emit(*args, **kwargs):
        raise RuntimeError("socket layer down")

    monkeypatch.setattr(server.sio, "emit", failing_emit)

    await server.emit_request_updated({"id": "req-1", "requestedById": "user-1"})
