from functools import lru_cache
from pathlib import Path
from typing import List
from urllib.parse import urlparse
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=str(ENV_FILE), case_sensitive=False, extra="ignore")

    APP_NAME: str = "Visitor Management Backend"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    API_V1_PREFIX: str = "/api/v1"
    BACKEND_HOST: str = "0.0.0.0"
    BACKEND_PORT: int = 8000

    DATABASE_URL: str = "sqlite:///./vms.db"

    JWT_SECRET_KEY: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    CORS_ORIGINS: str = "http://localhost:3000,http://127.0.0.1:3000"

    SOCKET_PATH: str = "/socket.io"
    DASHBOARD_NAMESPACE: str = "/realtime/dashboard"

    # Public base URL of the web client, used for survey links in outbound messages.
    APP_BASE_URL: str = ""

    # Optional external queue for notification processing. All three must be set to use it.
    QSTASH_TOKEN: str = ""
    QSTASH_PUBLISH_URL: str = "https://qstash.upstash.io/v2/publish"
    NOTIFICATIONS_DISPATCH_URL: str = ""
    NOTIFICATIONS_DISPATCH_SECRET: str = ""

    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = ""
    SMTP_HOST: str = ""
    SMTP_PORT: int = 0
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""

    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_FROM: str = ""
    SMS_BASE_URL: str = ""
    SMS_API_KEY: str = ""

    SECURITY_PHONES: str = ""
    PROVIDER_TIMEOUT_SECONDS: float = 15.0
    SETTINGS_ENCRYPTION_KEY: str = ""

    @property
    def cors_origins(self) -> List[str]:
        origins: list[str] = []
        for raw in self.CORS_ORIGINS.split(","):
            value = raw.strip()
            if not value:
                continue
            parsed = urlparse(value)
            if parsed.scheme and parsed.netloc:
                value = f"{parsed.scheme}://{parsed.netloc}"
            origins.append(value.rstrip("/"))
        return origins

    @property
    def security_phones(self) -> List[str]:
        return [item.strip() for item in self.SECURITY_PHONES.split(",") if item.strip()]

    @property
    def qstash_enabled(self) -> bool:
        return bool(self.QSTASH_TOKEN and self.NOTIFICATIONS_DISPATCH_URL and self.NOTIFICATIONS_DISPATCH_SECRET)


@lru_cache
def get_settings() -> Settings:
    return Settings()
