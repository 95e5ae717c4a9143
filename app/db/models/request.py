import uuid
from datetime import date, datetime
from enum import Enum

from sqlalchemy import Boolean, Date, DateTime, Enum as SqlEnum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class RequestStatus(str, Enum):
    submitted = "submitted"
    stage1_pending = "stage1-pending"
    stage1_approved = "stage1-approved"
    stage1_rejected = "stage1-rejected"
    stage2_pending = "stage2-pending"
    stage2_approved = "stage2-approved"
    stage2_rejected = "stage2-rejected"

    @classmethod
    def parse(cls, raw: "str | RequestStatus") -> "RequestStatus":
        """Accept the public value, the stored name, or the legacy approverN spelling."""
        if isinstance(raw, cls):
            return raw
        value = (raw or "").strip().lower().replace("_", "-")
        value = value.replace("approver1", "stage1").replace("approver2", "stage2")
        if value == "draft":
            value = cls.submitted.value
        return cls(value)

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_REQUEST_STATUSES


TERMINAL_REQUEST_STATUSES = frozenset(
    {RequestStatus.stage1_rejected, RequestStatus.stage2_approved, RequestStatus.stage2_rejected}
)


class GuestDecision(str, Enum):
    unset = "unset"
    approved = "approved"
    rejected = "rejected"
    blacklisted = "blacklisted"

    @property
    def is_terminal(self) -> bool:
        return self is not GuestDecision.unset


class VisitRequest(Base):
    __tablename__ = "requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    requested_by_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    requested_by_email: Mapped[str] = mapped_column(String(255), nullable=False)
    requested_by_name: Mapped[str] = mapped_column(String(120), default="")
    destination: Mapped[str] = mapped_column(String(160), nullable=False)
    gate: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    from_date: Mapped[date] = mapped_column(Date, nullable=False)
    to_date: Mapped[date] = mapped_column(Date, nullable=False)
    purpose: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[RequestStatus] = mapped_column(
        SqlEnum(RequestStatus, native_enum=False, length=32),
        nullable=False,
        default=RequestStatus.submitted,
        index=True,
    )
    approval_number: Mapped[str | None] = mapped_column(String(40), unique=True, nullable=True)
    # Step count in force when stage 1 closed; later settings changes do not apply.
    approval_steps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    stage1_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    stage1_decided_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    stage1_decided_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    stage2_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    stage2_decided_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    stage2_decided_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    guests = relationship(
        "Guest",
        back_populates="request",
        order_by="Guest.position",
        cascade="save-update, merge",
    )

    __mapper_args__ = {"version_id_col": version}


class Guest(Base):
    __tablename__ = "guests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id: Mapped[str] = mapped_column(String(36), ForeignKey("requests.id"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    organization: Mapped[str] = mapped_column(String(160), default="")
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    laptop: Mapped[bool] = mapped_column(Boolean, default=False)
    mobile: Mapped[bool] = mapped_column(Boolean, default=False)
    flash: Mapped[bool] = mapped_column(Boolean, default=False)
    other_device: Mapped[bool] = mapped_column(Boolean, default=False)
    other_device_description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    id_photo_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    check_in_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    check_out_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    stage1_decision: Mapped[GuestDecision] = mapped_column(
        SqlEnum(GuestDecision, native_enum=False, length=16), nullable=False, default=GuestDecision.unset
    )
    stage1_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    stage2_decision: Mapped[GuestDecision] = mapped_column(
        SqlEnum(GuestDecision, native_enum=False, length=16), nullable=False, default=GuestDecision.unset
    )
    stage2_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    request = relationship("VisitRequest", back_populates="guests")
