"""Audit trail for every write the billing engine makes."""

from __future__ import annotations

import logging
from typing import Optional

from extensions import db
from models import AuditLog

logger = logging.getLogger(__name__)


def log_action(
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    details: str = "",
) -> None:
    """Record an audit log entry.

    Does NOT commit: the entry belongs to the caller's unit of work and is
    rolled back with it.
    """
    logger.debug("audit %s %s %s: %s", action, entity_type, entity_id, details)
    db.session.add(
        AuditLog(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
        )
    )


def entity_history(entity_type: str, entity_id: int) -> list[AuditLog]:
    """Audit entries for one invoice or payment, oldest first."""
    return (
        AuditLog.query.filter_by(entity_type=entity_type, entity_id=entity_id)
        .order_by(AuditLog.created_at, AuditLog.id)
        .all()
    )
