"""
Authentication dependencies for FastAPI.
"""
from typing import Optional
from fastapi import Depends, HTTPException, Request, Security
from sqlalchemy.orm import Session

from auth.context import ClientInfo, CurrentIdentity, RequestContext
from auth.security import session_cookie, session_header
from core.exceptions import AuthorizationError
from core.utils import get_client_ip
from services.audit_service import AuditService
from services.session_service import SessionService
import config


def get_db_session():
    """Get database session."""
    if not config.db:
        raise HTTPException(status_code=503, detail="Database not initialized")
    with config.db.get_session() as session:
        yield session


def get_client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent")
    )


def get_session_key(
    cookie_key: Optional[str] = Security(session_cookie),
    header_key: Optional[str] = Security(session_header)
) -> Optional[str]:
    """Session key from the HttpOnly cookie, or the X-Session-Key header."""
    return cookie_key or header_key


async def get_public_context(client: ClientInfo = Depends(get_client_info)) -> RequestContext:
    """Context for routes that do not require a session."""
    return RequestContext(client=client)


async def get_request_context(
    client: ClientInfo = Depends(get_client_info),
    session_key: Optional[str] = Depends(get_session_key),
    db: Session = Depends(get_db_session)
) -> RequestContext:
    """
    Session guard. Resolves the session, enforces the inactivity window and
    refreshes last activity.

    Raises:
        UnauthenticatedError: No usable session
        SessionExpiredError: Session idle too long
    """
    session = SessionService.validate_session(db, session_key)
    user = session.user
    identity = CurrentIdentity(id=user.id, username=user.username, role=session.role)
    return RequestContext(client=client, identity=identity, session_hash=session.session_hash)


async def current_identity(ctx: RequestContext = Depends(get_request_context)) -> CurrentIdentity:
    return ctx.identity


def require_role(allowed_roles: list[str]):
    """
    Dependency factory for role-based access control.

    Args:
        allowed_roles: List of allowed roles

    Returns:
        Dependency function
    """
    async def role_checker(
        ctx: RequestContext = Depends(get_request_context),
        db: Session = Depends(get_db_session)
    ) -> RequestContext:
        if ctx.identity.role.value not in allowed_roles:
            AuditService.record_from_context(
                db, ctx, "access_denied", None, None,
                f"role={ctx.identity.role.value} required={','.join(allowed_roles)}"
            )
            raise AuthorizationError(reason="role_denied")
        return ctx

    return role_checker


require_admin = require_role(["Admin"])