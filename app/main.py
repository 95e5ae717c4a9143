import logging

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.api.routes import api_router
from app.core.config import get_settings
from app.core.exceptions import register_exception_handlers
from app.core.logging import setup_logging
from app.core.security import hash_password
from app.db.base import Base
from app.db.models import SETTINGS_ROW_ID, SystemSetting, User, UserRole
from app.db.session import SessionLocal, engine
from app.middleware.request_context import RequestContextMiddleware
from app.services.settings_service import DEFAULT_GATES
from app.socket.server import sio

settings = get_settings()
setup_logging(logging.DEBUG if settings.DEBUG else logging.INFO)
logger = logging.getLogger(__name__)

fastapi_app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG)
fastapi_app.include_router(api_router, prefix=settings.API_V1_PREFIX)
fastapi_app.add_middleware(RequestContextMiddleware)
fastapi_app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(fastapi_app)

DEV_USERS = (
    ("Demo Admin", "admin@vms.local", UserRole.admin),
    ("Demo Requester", "requester@vms.local", UserRole.requester),
    ("Demo Approver One", "approver1@vms.local", UserRole.approver1),
    ("Demo Approver Two", "approver2@vms.local", UserRole.approver2),
    ("Demo Reception", "reception@vms.local", UserRole.reception),
)


def _ensure_settings_row(db: Session) -> None:
    if db.query(SystemSetting).filter(SystemSetting.id == SETTINGS_ROW_ID).first():
        return
    db.add(SystemSetting(id=SETTINGS_ROW_ID, approval_steps=2, gates_csv=",".join(DEFAULT_GATES)))
    try:
        db.commit()
    except IntegrityError:
        # Another worker created it first.
        db.rollback()


def _seed_dev_data(db: Session) -> None:
    if db.query(User).count() > 0:
        return
    try:
        db.add_all(
            [
                User(
                    full_name=full_name,
                    email=email,
                    password_hash=hash_password("Password123!"),
                    role=role,
                )
                for full_name, email, role in DEV_USERS
            ]
        )
        db.commit()
        logger.info("seeded %s development users", len(DEV_USERS))
    except IntegrityError:
        db.rollback()


@fastapi_app.on_event("startup")
async def on_startup():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        _ensure_settings_row(db)
        if settings.ENVIRONMENT.lower() == "development":
            _seed_dev_data(db)
    finally:
        db.close()


app = socketio.ASGIApp(
    sio,
    other_asgi_app=fastapi_app,
    socketio_path=settings.SOCKET_PATH.lstrip("/"),
)
