"""
Audit collaborator.

Writes audit entries and login attempts in their own session so they never
interfere with the caller's transaction. Failures are logged and swallowed:
an audit outage must not fail an authentication operation.
"""

from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.logging import get_logger
from app.models.audit_log import AuditAction, AuditLog
from app.models.login_attempt import LoginAttempt
from app.models.user import User

logger = get_logger("audit")


class AuditService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self,
        action: AuditAction,
        user: Optional[User] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        tenant_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        entity_type: str = "user",
    ) -> None:
        """
        Record an audit entry (fire and forget).

        Args:
            action: What happened
            user: Actor, when known
            ip_address: Client IP
            user_agent: Client user agent
            tenant_id: Tenant, defaults to the actor's tenant
            details: Extra JSON payload (never secrets)
            entity_type: Kind of entity acted upon
        """
        entry = AuditLog(
            tenant_id=tenant_id if tenant_id is not None else (user.tenant_id if user else None),
            user_id=user.id if user else None,
            action=action.value,
            entity_type=entity_type,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self._write(entry, action=action.value)

    async def record_login_attempt(
        self,
        identifier: Optional[str],
        success: bool,
        user: Optional[User] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> None:
        attempt = LoginAttempt(
            user_id=user.id if user else None,
            identifier=identifier,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
            failure_reason=failure_reason,
        )
        await self._write(attempt, action="login_attempt")

    async def _write(self, row, action: str) -> None:
        try:
            async with self.session_factory() as db:
                db.add(row)
                await db.commit()
        except Exception as e:
            logger.error(f"Audit write failed: {e}", exc_info=True, action=action)
