"""Audit trail for state-changing actions."""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from dockgate.models.audit_log import AuditLog
from dockgate.services.event_bus import event_bus

logger = logging.getLogger(__name__)


async def record_audit_event(
    db: AsyncSession,
    action: str,
    entity_type: str,
    entity_id: str | None,
    entity_name: str | None,
    environment_id: int | None = None,
    metadata: dict[str, Any] | None = None,
    triggered_by: str = "user",
) -> AuditLog:
    """Persist an audit entry and broadcast it on the event bus."""
    entry = AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        entity_name=entity_name,
        environment_id=environment_id,
        triggered_by=triggered_by,
        details=metadata or {},
    )
    db.add(entry)
    await db.commit()
    await db.refresh(entry)

    logger.info(f"Audit: {action} {entity_type} {entity_name} ({(entity_id or '')[:12]})")

    await event_bus.publish(
        {
            "type": f"{entity_type}-{action}",
            "entity_id": entity_id,
            "entity_name": entity_name,
            "environment_id": environment_id,
            "details": metadata or {},
        }
    )
    return entry
