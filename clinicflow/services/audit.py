"""Audit logging service for compliance tracking."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from clinicflow.models.clinical import AuditLog

logger = logging.getLogger(__name__)


def log_action(
    db: Session,
    *,
    actor: str,
    action: str,
    resource_type: str,
    resource_id: int | str,
    detail: dict[str, Any] | None = None,
) -> AuditLog:
    """
    Stage an immutable audit log entry in the caller's transaction.
    The entry becomes durable with the caller's commit, never on its own.
    """
    entry = AuditLog(
        actor=actor,
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id),
        detail=detail,
    )
    db.add(entry)
    db.flush()
    logger.info("AUDIT: %s %s %s/%s", actor, action, resource_type, resource_id)
    return entry


def entries_for(db: Session, resource_type: str, resource_id: int | str) -> list[AuditLog]:
    return (
        db.query(AuditLog)
        .filter(
            AuditLog.resource_type == resource_type,
            AuditLog.resource_id == str(resource_id),
        )
        .order_by(AuditLog.id)
        .all()
    )
