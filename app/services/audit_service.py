import json
import logging
from typing import Any

from sqlalchemy.orm import Session

from app.db.models import AuditLog

logger = logging.getLogger(__name__)


def write_audit_log(
    db: Session,
    actor_user_id: str | None,
    action: str,
    entity: str,
    entity_id: str | None = None,
    meta: dict[str, Any] | None = None,
) -> AuditLog | None:
    """Best effort: an audit failure is logged and never fails the caller."""
    try:
        row = AuditLog(
            actor_user_id=actor_user_id,
            action=action,
            entity=entity,
            entity_id=entity_id,
            meta_json=json.dumps(meta or {}, ensure_ascii=True, default=str),
        )
        db.add(row)
        db.commit()
        return row
    except Exception:
        db.rollback()
        logger.exception("audit write failed action=%s entity=%s entity_id=%s", action, entity, entity_id)
        return None


def list_audit_logs(db: Session, limit: int = 200) -> list[dict[str, Any]]:
    rows = db.query(AuditLog).order_by(AuditLog.created_at.desc()).limit(limit).all()
    return [
        {
            "id": row.id,
            "actorUserId": row.actor_user_id,
            "action": row.action,
            "entity": row.entity,
            "entityId": row.entity_id,
            "meta": json.loads(row.meta_json or "{}"),
            "createdAt": row.created_at.isoformat(),
        }
        for row in rows
    ]
