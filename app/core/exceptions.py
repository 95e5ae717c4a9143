import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppException(Exception):
    code = "app_error"

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class InvalidSelection(AppException):
    code = "invalid_selection"

    def __init__(self, message: str = "Select at least one guest that has not been processed yet"):
        super().__init__(message, status_code=400)


class CommentRequired(AppException):
    code = "comment_required"

    def __init__(self, message: str = "A comment is required for this action"):
        super().__init__(message, status_code=400)


class BlacklistedGuest(AppException):
    code = "blacklisted_guest"

    def __init__(self, guest_name: str, matched_by: list[str]):
        self.guest_name = guest_name
        self.matched_by = matched_by
        super().__init__(f"Blacklisted guest detected: {guest_name}", status_code=400)


class RequestNotFound(AppException):
    code = "request_not_found"

    def __init__(self, request_id: str):
        super().__init__(f"Request {request_id} not found", status_code=404)


class GuestNotFound(AppException):
    code = "guest_not_found"

    def __init__(self, guest_id: str):
        super().__init__(f"Guest {guest_id} not found", status_code=404)


class InvalidStage(AppException):
    code = "invalid_stage"

    def __init__(self, message: str):
        super().__init__(message, status_code=409)


class InvalidGuestState(AppException):
    code = "invalid_guest_state"

    def __init__(self, message: str):
        super().__init__(message, status_code=409)


class DispatchNotConfigured(AppException):
    code = "dispatch_not_configured"

    def __init__(self, message: str = "NOTIFICATIONS_DISPATCH_SECRET not configured"):
        super().__init__(message, status_code=500)


class Unauthorized(AppException):
    code = "unauthorized"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, status_code=401)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppException)
    async def _app_exception_handler(_: Request, exc: AppException):
        content = {"message": exc.message, "code": exc.code}
        if isinstance(exc, BlacklistedGuest):
            content["matchedBy"] = exc.matched_by
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled error path=%s", request.url.path)
        return JSONResponse(
            status_code=500,
            content={"message": "Internal server error"},
        )
