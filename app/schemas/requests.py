from datetime import date
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class GuestCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    organization: str = ""
    email: str | None = None
    phone: str | None = None
    laptop: bool = False
    mobile: bool = False
    flash: bool = False
    otherDevice: bool = False
    otherDeviceDescription: str | None = None
    idPhotoUrl: str | None = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Guest name is required")
        return value


class RequestCreate(BaseModel):
    destination: str = Field(min_length=1, max_length=160)
    gate: str
    fromDate: date
    toDate: date
    purpose: str = ""
    guests: list[GuestCreate]


class StageActionRequest(BaseModel):
    guestIds: list[str]
    action: Literal["approve", "reject", "blacklist"]
    comment: str | None = None
