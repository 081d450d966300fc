import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.audit_model import AuditLog
from .clock import utcnow

logger = logging.getLogger(__name__)


def record_audit(
    session: AsyncSession,
    action: str,
    target_type: str,
    target_id,
    details: Optional[dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    actor_id=None,
) -> AuditLog:
    """Stage an audit entry in the caller's transaction; it commits with the change it describes."""
    entry = AuditLog(
        action=action,
        target_type=target_type,
        target_id=target_id,
        actor_id=actor_id,
        ip_address=ip_address,
        details=details or {},
        timestamp=utcnow(),
    )
    session.add(entry)
    logger.info("audit %s %s=%s %s", action, target_type, target_id, details or "")
    return entry


async def get_audit_trail(session: AsyncSession, target_type: str, target_id) -> list[AuditLog]:
    res = await session.execute(
        select(AuditLog)
        .where(AuditLog.target_type == target_type, AuditLog.target_id == target_id)
        .order_by(AuditLog.timestamp, AuditLog.id)
    )
    return list(res.scalars().all())
