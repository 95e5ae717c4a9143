from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base

SETTINGS_ROW_ID = 1


class SystemSetting(Base):
    __tablename__ = "system_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=SETTINGS_ROW_ID)
    approval_steps: Mapped[int] = mapped_column(Integer, default=2)
    email_notifications: Mapped[bool] = mapped_column(Boolean, default=True)
    sms_notifications: Mapped[bool] = mapped_column(Boolean, default=True)
    check_in_out_notifications: Mapped[bool] = mapped_column(Boolean, default=True)
    gates_csv: Mapped[str] = mapped_column(String(500), default="228,229,230")
    smtp_host: Mapped[str | None] = mapped_column(String(255), nullable=True)
    smtp_port: Mapped[int | None] = mapped_column(Integer, nullable=True)
    smtp_user: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Secrets below are stored Fernet-encrypted.
    smtp_password: Mapped[str | None] = mapped_column(String(500), nullable=True)
    sms_gateway_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    sms_api_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    email_gateway_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    email_api_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
