"""
Audit logging service for security and compliance.

Audit writes are best-effort: a failure to record never aborts or alters the
operation being audited. Callers commit (or roll back) their own work first.
"""
from typing import Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from auth.context import RequestContext
from database.models import AuditLog
from core.logger import logger


class AuditService:
    """Service for audit logging."""

    @staticmethod
    def record(
        db: Session,
        action: str,
        actor_id: Optional[int] = None,
        table_name: Optional[str] = None,
        row_id: Optional[object] = None,
        detail: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> Optional[AuditLog]:
        """
        Append one row to the audit trail.

        Args:
            db: Database session
            action: Action name (e.g., "login_failed", "pin_success", "user_deleted")
            actor_id: Identity performing the action, None when anonymous
            table_name: Affected table
            row_id: Affected row
            detail: Free-form detail (failure reason, changed fields)
            ip_address: Source address
            user_agent: User agent string

        Returns:
            Created AuditLog, or None if the write failed
        """
        audit_log = AuditLog(
            actor_id=actor_id,
            action=action,
            table_name=table_name,
            row_id=str(row_id) if row_id is not None else None,
            detail=detail,
            ip_address=ip_address,
            user_agent=user_agent[:500] if user_agent else None
        )
        try:
            db.add(audit_log)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Audit write failed for action '{action}' (actor={actor_id}): {e}")
            return None
        return audit_log

    @staticmethod
    def record_from_context(
        db: Session,
        ctx: RequestContext,
        action: str,
        table_name: Optional[str] = None,
        row_id: Optional[object] = None,
        detail: Optional[str] = None,
        actor_id: Optional[int] = None
    ) -> Optional[AuditLog]:
        """
        Record an action using the client and identity of a request.

        actor_id overrides the session identity (e.g. a failed login names the
        identity that was attempted).
        """
        return AuditService.record(
            db=db,
            action=action,
            actor_id=actor_id if actor_id is not None else ctx.actor_id,
            table_name=table_name,
            row_id=row_id,
            detail=detail,
            ip_address=ctx.client.ip_address,
            user_agent=ctx.client.user_agent
        )
