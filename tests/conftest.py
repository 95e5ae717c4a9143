"""
Shared fixtures: an in-memory database per test, seeded users, and helpers
that build requests and record scheduled notification ids.
"""

from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import app.db.models  # noqa: F401  (registers tables)
from app.db.base import Base
from app.db.models import Guest, GuestDecision, RequestStatus, SystemSetting, User, UserRole, VisitRequest
from app.services.settings_service import SettingsSnapshot


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory) -> Session:
    session = session_factory()
    yield session
    session.close()


def _user(db: Session, full_name: str, email: str, role: UserRole, phone: str | None = None) -> User:
    user = User(full_name=full_name, email=email, phone=phone, password_hash="not-a-real-hash", role=role)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def admin(db) -> User:
    return _user(db, "Ada Admin", "admin@vms.test", UserRole.admin, phone="+15550000001")


@pytest.fixture
def requester(db) -> User:
    return _user(db, "Rita Requester", "requester@vms.test", UserRole.requester)


@pytest.fixture
def approver1(db) -> User:
    return _user(db, "Alan Approver", "approver1@vms.test", UserRole.approver1)


@pytest.fixture
def approver2(db) -> User:
    return _user(db, "Bea Approver", "approver2@vms.test", UserRole.approver2)


@pytest.fixture
def reception(db) -> User:
    return _user(db, "Rex Reception", "reception@vms.test", UserRole.reception)


@pytest.fixture
def settings_row(db):
    """Factory that writes the settings row; defaults mirror a fresh install."""

    def _configure(**fields) -> SystemSetting:
        row = db.get(SystemSetting, 1) or SystemSetting(id=1, gates_csv="228,229,230")
        values = {
            "approval_steps": 2,
            "email_notifications": True,
            "sms_notifications": True,
            "check_in_out_notifications": True,
        }
        values.update(fields)
        for key, value in values.items():
            setattr(row, key, value)
        db.add(row)
        db.commit()
        return row

    return _configure


@pytest.fixture
def one_step() -> SettingsSnapshot:
    return SettingsSnapshot(approval_steps=1)


@pytest.fixture
def two_step() -> SettingsSnapshot:
    return SettingsSnapshot(approval_steps=2)


@pytest.fixture
def make_request(db, requester):
    """Factory for a submitted request with ``guests`` guests, each with email and phone."""

    def _make(guests: int = 2, status: RequestStatus = RequestStatus.submitted) -> VisitRequest:
        request = VisitRequest(
            requested_by_id=requester.id,
            requested_by_email=requester.email,
            requested_by_name=requester.full_name,
            destination="Building A",
            gate="228",
            from_date=date(2026, 11, 2),
            to_date=date(2026, 11, 3),
            purpose="Site visit",
            status=status,
        )
        request.guests = [
            Guest(
                position=index,
                name=f"Guest {index + 1}",
                organization="Acme",
                email=f"guest{index + 1}@example.com",
                phone=f"+1555010{index:04d}",
                stage1_decision=GuestDecision.unset,
                stage2_decision=GuestDecision.unset,
            )
            for index in range(guests)
        ]
        db.add(request)
        db.commit()
        return request

    return _make


class RecordingScheduler:
    def __init__(self):
        self.scheduled: list[str] = []

    async def __call__(self, notification_id: str) -> None:
        self.scheduled.append(notification_id)


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()
