"""
Server-side sessions: creation with id rotation, inactivity enforcement, revocation.
"""
from datetime import datetime, timedelta
from typing import Optional, Tuple
from sqlalchemy.orm import Session
from sqlalchemy import update

from auth.context import ClientInfo
from auth.security import generate_session_key, hash_session_key
from core.exceptions import UnauthenticatedError, SessionExpiredError
from core.logger import logger
from core.utils import utcnow
from database.models import User, Session as DBSession
import config


class SessionService:
    """Service for session lifecycle operations."""

    @staticmethod
    def create_session(
        db: Session,
        user: User,
        client: ClientInfo,
        presented_key: Optional[str] = None
    ) -> Tuple[str, DBSession]:
        """
        Create a new session for user.

        Any session key the client presented is revoked first, so a login
        always yields a brand-new session id.

        Args:
            db: Database session
            user: Authenticated user
            client: Source address and user agent
            presented_key: Session key sent with the login request, if any

        Returns:
            Tuple of (session_key, DBSession object)
        """
        if presented_key:
            SessionService.destroy_session(db, hash_session_key(presented_key))

        session_key, encrypted_key, session_hash = generate_session_key()
        now = utcnow()
        session = DBSession(
            user_id=user.id,
            role=user.role,
            session_key=encrypted_key,
            session_hash=session_hash,
            ip_address=client.ip_address,
            user_agent=client.user_agent[:500] if client.user_agent else None,
            created_at=now,
            last_activity=now,
            expires_at=now + timedelta(hours=config.SESSION_EXPIRE_HOURS),
            is_active=True
        )
        db.add(session)
        db.commit()
        db.refresh(session)

        logger.info(f"Created session for user: {user.id}")
        return session_key, session

    @staticmethod
    def validate_session(
        db: Session,
        session_key: Optional[str],
        now: Optional[datetime] = None
    ) -> DBSession:
        """
        Enforce the session guard for one protected request.

        Raises:
            UnauthenticatedError: No usable session
            SessionExpiredError: Idle longer than SESSION_TIMEOUT_SECONDS
        """
        if not session_key:
            raise UnauthenticatedError()

        now = now or utcnow()
        session = db.query(DBSession).filter(
            DBSession.session_hash == hash_session_key(session_key),
            DBSession.is_active == True
        ).first()
        if session is None:
            raise UnauthenticatedError()

        user = session.user
        if session.expires_at <= now or user is None or not user.is_active:
            session.is_active = False
            db.commit()
            raise UnauthenticatedError()

        elapsed = (now - session.last_activity).total_seconds()
        if elapsed > config.SESSION_TIMEOUT_SECONDS:
            session.is_active = False
            db.commit()
            logger.info(f"Session timed out for user {session.user_id} after {int(elapsed)}s idle")
            raise SessionExpiredError()

        session.last_activity = now
        db.commit()
        return session

    @staticmethod
    def destroy_session(db: Session, session_hash: str) -> bool:
        """Revoke a session."""
        session = db.query(DBSession).filter(
            DBSession.session_hash == session_hash,
            DBSession.is_active == True
        ).first()

        if not session:
            return False

        session.is_active = False
        db.commit()
        return True

    @staticmethod
    def revoke_user_sessions(db: Session, user_id: int) -> int:
        """
        Deactivate every session of an identity.

        Does not commit: runs inside the caller's transaction.
        """
        result = db.execute(
            update(DBSession)
            .where(DBSession.user_id == user_id, DBSession.is_active == True)
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
