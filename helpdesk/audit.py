from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from helpdesk.errors import DependencyError
from helpdesk.models import ActivityLog, isoformat, now_utc

logger = logging.getLogger(__name__)


def record(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: Optional[str] = None,
    details: Optional[str] = None,
    actor_id: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> None:
    """Append an activity log entry. Failures are logged and swallowed."""

    try:
        db.add(
            ActivityLog(
                user_id=actor_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                details=details,
                ip_address=ip_address or None,
                created_at=now_utc(),
            )
        )
        db.commit()
    except Exception as exc:
        db.rollback()
        error = DependencyError(f"Failed to log activity {action} {entity_type}/{entity_id}: {exc}")
        logger.warning("%s", error.message)


def list_recent(db: Session, limit: int = 50) -> list[ActivityLog]:
    return (
        db.query(ActivityLog)
        .order_by(desc(ActivityLog.created_at), desc(ActivityLog.id))
        .limit(max(1, limit))
        .all()
    )


def serialize_entry(entry: ActivityLog) -> dict:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "action": entry.action,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "details": entry.details,
        "ip_address": entry.ip_address,
        "created_at": isoformat(entry.created_at),
    }
