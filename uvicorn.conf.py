from app.core.config import get_settings

settings = get_settings()

app = "app.main:app"
host = settings.BACKEND_HOST
port = settings.BACKEND_PORT
log_level = "debug" if settings.DEBUG else "info"
# Background dispatch tasks and socket rooms live in-process; more workers need QStash configured.
workers = 1 if settings.DEBUG or not settings.qstash_enabled else 2
