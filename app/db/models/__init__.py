from app.db.models.audit import AuditLog
from app.db.models.blacklist import BlacklistEntry
from app.db.models.notification import DispatchChannel, DispatchStatus, Notification, NotificationDispatch
from app.db.models.request import Guest, GuestDecision, RequestStatus, VisitRequest
from app.db.models.system_setting import SETTINGS_ROW_ID, SystemSetting
from app.db.models.user import User, UserRole

__all__ = [
    "AuditLog",
    "BlacklistEntry",
    "DispatchChannel",
    "DispatchStatus",
    "Guest",
    "GuestDecision",
    "Notification",
    "NotificationDispatch",
    "RequestStatus",
    "SETTINGS_ROW_ID",
    "SystemSetting",
    "User",
    "UserRole",
    "VisitRequest",
]
