from __future__ import annotations

import logging
from typing import Any

from catalog_sync.services.models import AuditEvent
from catalog_sync.services.repository import SyncRepository

logger = logging.getLogger(__name__)


async def record_event(
    repository: SyncRepository,
    action: str,
    *,
    actor_type: str = "system",
    actor_id: str | None = None,
    target: str | None = None,
    payload: dict[str, Any] | None = None,
) -> AuditEvent:
    event = AuditEvent(
        action=action,
        actor_type=actor_type,
        actor_id=actor_id,
        target=target,
        payload=payload or {},
    )
    await repository.record_audit(event)
    logger.info("audit action=%s actor=%s:%s target=%s", action, actor_type, actor_id, target)
    return event
