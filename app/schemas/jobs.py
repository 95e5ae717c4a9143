from pydantic import BaseModel


class DispatchJobRequest(BaseModel):
    notificationId: str | None = None


class RequeueStaleRequest(BaseModel):
    olderThanMinutes: int = 15


class PanicRequest(BaseModel):
    location: str | None = None
    message: str | None = None
