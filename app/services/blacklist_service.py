import logging
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.core.exceptions import AppException
from app.db.models import BlacklistEntry, Guest

logger = logging.getLogger(__name__)


def _clean(value: str | None) -> str | None:
    value = (value or "").strip()
    return value or None


def check_blacklist(
    db: Session,
    *,
    name: str | None = None,
    organization: str | None = None,
    email: str | None = None,
    phone: str | None = None,
) -> dict[str, Any]:
    """Match a guest fingerprint against active entries.

    Name, organization and email compare case-insensitively; phone must match exactly.
    """
    name, organization, email, phone = _clean(name), _clean(organization), _clean(email), _clean(phone)
    clauses = []
    if name:
        clauses.append(func.lower(BlacklistEntry.name) == name.lower())
    if organization:
        clauses.append(func.lower(BlacklistEntry.organization) == organization.lower())
    if email:
        clauses.append(func.lower(BlacklistEntry.email) == email.lower())
    if phone:
        clauses.append(BlacklistEntry.phone == phone)
    if not clauses:
        return {"blacklisted": False, "matchedBy": []}

    entry = (
        db.query(BlacklistEntry)
        .filter(BlacklistEntry.active.is_(True), or_(*clauses))
        .order_by(BlacklistEntry.created_at.asc())
        .first()
    )
    if not entry:
        return {"blacklisted": False, "matchedBy": []}

    matched_by: list[str] = []
    if name and entry.name.lower() == name.lower():
        matched_by.append("name")
    if organization and (entry.organization or "").lower() == organization.lower():
        matched_by.append("organization")
    if email and (entry.email or "").lower() == email.lower():
        matched_by.append("email")
    if phone and (entry.phone or "") == phone:
        matched_by.append("phone")
    return {"blacklisted": True, "matchedBy": matched_by, "entryId": entry.id}


def _find_entry_for_guest(db: Session, guest: Guest) -> BlacklistEntry | None:
    query = db.query(BlacklistEntry).filter(func.lower(BlacklistEntry.name) == guest.name.strip().lower())
    if guest.email:
        query = query.filter(func.lower(BlacklistEntry.email) == guest.email.strip().lower())
    elif guest.phone:
        query = query.filter(BlacklistEntry.phone == guest.phone.strip())
    return query.first()


def upsert_entries_for_guests(db: Session, guests: list[Guest], reason: str) -> int:
    """Record blocked guests on the blacklist; commits on its own.

    Failures are logged and swallowed so the calling approval still proceeds.
    """
    try:
        for guest in guests:
            entry = _find_entry_for_guest(db, guest)
            if entry is None:
                entry = BlacklistEntry(
                    name=guest.name.strip(),
                    organization=_clean(guest.organization),
                    email=_clean(guest.email),
                    phone=_clean(guest.phone),
                )
                db.add(entry)
            entry.reason = reason
            entry.active = True
        db.commit()
        return len(guests)
    except Exception:
        db.rollback()
        logger.exception("blacklist upsert failed for %s guest(s)", len(guests))
        return 0


def serialize_entry(entry: BlacklistEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "name": entry.name,
        "organization": entry.organization,
        "email": entry.email,
        "phone": entry.phone,
        "reason": entry.reason,
        "active": entry.active,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
        "updatedAt": entry.updated_at.isoformat() if entry.updated_at else None,
    }


def list_blacklist(db: Session, include_inactive: bool = True) -> list[dict[str, Any]]:
    query = db.query(BlacklistEntry)
    if not include_inactive:
        query = query.filter(BlacklistEntry.active.is_(True))
    return [serialize_entry(row) for row in query.order_by(BlacklistEntry.created_at.desc()).all()]


def save_blacklist_entry(db: Session, data: dict[str, Any], entry_id: str | None = None) -> BlacklistEntry:
    if entry_id:
        entry = db.query(BlacklistEntry).filter(BlacklistEntry.id == entry_id).first()
        if not entry:
            raise AppException("Blacklist entry not found", status_code=404)
    else:
        if not _clean(data.get("name")):
            raise AppException("Name is required", status_code=400)
        entry = BlacklistEntry(active=True)
        db.add(entry)

    for key in ("name", "organization", "email", "phone", "reason"):
        if key in data and data[key] is not None:
            setattr(entry, key, _clean(data[key]) if key != "name" else data[key].strip())
    if data.get("active") is not None:
        entry.active = bool(data["active"])

    db.commit()
    db.refresh(entry)
    return entry


def delete_blacklist_entry(db: Session, entry_id: str) -> None:
    entry = db.query(BlacklistEntry).filter(BlacklistEntry.id == entry_id).first()
    if not entry:
        raise AppException("Blacklist entry not found", status_code=404)
    db.delete(entry)
    db.commit()
