import logging
from dataclasses import dataclass, field, replace
from typing import Any

from sqlalchemy.orm import Session

from app.core.crypto import decrypt_secret, encrypt_secret
from app.core.exceptions import AppException
from app.db.models import SETTINGS_ROW_ID, SystemSetting

logger = logging.getLogger(__name__)

DEFAULT_GATES = ("228", "229", "230")
SECRET_FIELDS = ("smtp_password", "sms_api_key", "email_api_key")


@dataclass(frozen=True)
class SettingsSnapshot:
    """Read-only view of the settings row, fetched once and passed into each flow."""

    approval_steps: int = 2
    email_notifications: bool = True
    sms_notifications: bool = True
    check_in_out_notifications: bool = True
    gates: tuple[str, ...] = field(default=DEFAULT_GATES)
    smtp_host: str | None = None
    smtp_port: int | None = None
    smtp_user: str | None = None
    smtp_password: str | None = None
    sms_gateway_url: str | None = None
    sms_api_key: str | None = None
    email_gateway_url: str | None = None
    email_api_key: str | None = None

    def with_overrides(self, **overrides: Any) -> "SettingsSnapshot":
        known = {key: value for key, value in overrides.items() if key in self.__dataclass_fields__ and value is not None}
        return replace(self, **known)


def _decrypt_or_none(row: SystemSetting, field_name: str) -> str | None:
    try:
        return decrypt_secret(getattr(row, field_name))
    except ValueError:
        logger.warning("settings.%s could not be decrypted; treating as unset", field_name)
        return None


def _parse_gates(raw: str | None) -> tuple[str, ...]:
    gates = tuple(item.strip() for item in (raw or "").split(",") if item.strip())
    return gates or DEFAULT_GATES


def snapshot_from_row(row: SystemSetting | None) -> SettingsSnapshot:
    if row is None:
        return SettingsSnapshot()
    return SettingsSnapshot(
        approval_steps=2 if row.approval_steps not in (1, 2) else row.approval_steps,
        email_notifications=bool(row.email_notifications),
        sms_notifications=bool(row.sms_notifications),
        check_in_out_notifications=bool(row.check_in_out_notifications),
        gates=_parse_gates(row.gates_csv),
        smtp_host=row.smtp_host or None,
        smtp_port=row.smtp_port or None,
        smtp_user=row.smtp_user or None,
        smtp_password=_decrypt_or_none(row, "smtp_password"),
        sms_gateway_url=row.sms_gateway_url or None,
        sms_api_key=_decrypt_or_none(row, "sms_api_key"),
        email_gateway_url=row.email_gateway_url or None,
        email_api_key=_decrypt_or_none(row, "email_api_key"),
    )


def get_settings_snapshot(db: Session) -> SettingsSnapshot:
    row = db.query(SystemSetting).filter(SystemSetting.id == SETTINGS_ROW_ID).first()
    return snapshot_from_row(row)


def get_settings_payload(db: Session) -> dict:
    row = db.query(SystemSetting).filter(SystemSetting.id == SETTINGS_ROW_ID).first()
    snapshot = snapshot_from_row(row)
    return {
        "approvalSteps": snapshot.approval_steps,
        "emailNotifications": snapshot.email_notifications,
        "smsNotifications": snapshot.sms_notifications,
        "checkInOutNotifications": snapshot.check_in_out_notifications,
        "gates": list(snapshot.gates),
        "smtpHost": snapshot.smtp_host,
        "smtpPort": snapshot.smtp_port,
        "smtpUser": snapshot.smtp_user,
        "smtpPasswordSet": bool(row and row.smtp_password),
        "smsGatewayUrl": snapshot.sms_gateway_url,
        "smsApiKeySet": bool(row and row.sms_api_key),
        "emailGatewayUrl": snapshot.email_gateway_url,
        "emailApiKeySet": bool(row and row.email_api_key),
    }


def save_settings(db: Session, changes: dict[str, Any]) -> dict:
    """Partial update; only keys present in ``changes`` are written."""
    row = db.query(SystemSetting).filter(SystemSetting.id == SETTINGS_ROW_ID).first()
    if not row:
        row = SystemSetting(id=SETTINGS_ROW_ID, gates_csv=",".join(DEFAULT_GATES))
        db.add(row)

    if "approval_steps" in changes and changes["approval_steps"] is not None:
        if changes["approval_steps"] not in (1, 2):
            raise AppException("Approval steps must be 1 or 2", status_code=400)
        row.approval_steps = changes["approval_steps"]
    if "gates" in changes and changes["gates"] is not None:
        gates = [str(gate).strip() for gate in changes["gates"] if str(gate).strip()]
        if not gates:
            raise AppException("At least one gate is required", status_code=400)
        row.gates_csv = ",".join(gates)

    for key in (
        "email_notifications",
        "sms_notifications",
        "check_in_out_notifications",
        "smtp_host",
        "smtp_port",
        "smtp_user",
        "sms_gateway_url",
        "email_gateway_url",
    ):
        if key in changes and changes[key] is not None:
            setattr(row, key, changes[key])

    for key in SECRET_FIELDS:
        value = changes.get(key)
        if value:
            setattr(row, key, encrypt_secret(value))

    db.commit()
    return get_settings_payload(db)
