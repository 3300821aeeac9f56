"""
Authentication service: credential verification, login, logout and self-registration.
"""
from datetime import date
from typing import Optional, Tuple
from sqlalchemy.orm import Session
from sqlalchemy import update

from auth.context import RequestContext
from auth.security import verify_password, hash_session_key
from core.exceptions import (
    AuthenticationError, ConfigurationError, LockoutError, PinRejectedError, ValidationError
)
from core.logger import logger
from core.utils import utcnow
from core.validators import validate_pin
from database.models import User, UserRole, LoginAttempt, Session as DBSession
from services.audit_service import AuditService
from services.directory_service import DirectoryService, NewUser
from services.pin_service import PinService
from services.session_service import SessionService


class AuthService:
    """Service for authentication operations."""

    @staticmethod
    def verify(
        db: Session,
        username: str,
        password: str,
        role: str,
        admin_pin: Optional[str] = None
    ) -> User:
        """
        Check a login attempt. Checks run in a fixed order and stop at the first failure.

        Raises:
            AuthenticationError: reason is one of user_not_found, pending_approval,
                role_mismatch, pin_invalid_format, admin_record_missing, pin_locked,
                pin_mismatch, bad_password
        """
        user = db.query(User).filter(User.username == username).first()
        if user is None:
            raise AuthenticationError(reason="user_not_found")
        if not user.is_active:
            raise AuthenticationError(reason="pending_approval", user_id=user.id)
        if user.role != role:
            raise AuthenticationError(reason="role_mismatch", user_id=user.id)

        if user.role == UserRole.ADMIN:
            is_valid, _ = validate_pin(admin_pin)
            if not is_valid:
                raise AuthenticationError(reason="pin_invalid_format", user_id=user.id)
            try:
                PinService.check(db, user.id, admin_pin, count_failure=False)
            except ConfigurationError:
                raise AuthenticationError(reason="admin_record_missing", user_id=user.id)
            except LockoutError:
                raise AuthenticationError(reason="pin_locked", user_id=user.id)
            except (PinRejectedError, ValidationError):
                raise AuthenticationError(reason="pin_mismatch", user_id=user.id)

        if not verify_password(password, user.hashed_password):
            raise AuthenticationError(reason="bad_password", user_id=user.id)
        return user

    @staticmethod
    def login(
        db: Session,
        ctx: RequestContext,
        username: str,
        password: str,
        role: str,
        admin_pin: Optional[str] = None,
        presented_key: Optional[str] = None
    ) -> Tuple[str, DBSession, User]:
        """
        Verify credentials and open a fresh session.

        Every attempt is written to login_attempts and the audit trail; the
        caller only ever sees the generic AuthenticationError message.

        Returns:
            Tuple of (session_key, DBSession, User)
        """
        try:
            user = AuthService.verify(db, username, password, role, admin_pin)
        except AuthenticationError as e:
            user_id = e.context.get("user_id")
            db.add(LoginAttempt(user_id=user_id, is_successful=False, ip_address=ctx.client.ip_address))
            db.commit()
            AuditService.record_from_context(
                db, ctx, "login_failed", "users", user_id,
                f"username={username} role={role} reason={e.reason}",
                actor_id=user_id
            )
            logger.warning(f"Failed login for '{username}' as {role}: {e.reason}")
            raise

        now = utcnow()
        db.execute(
            update(User)
            .where(User.id == user.id)
            .values(login_count=User.login_count + 1, last_login=now)
            .execution_options(synchronize_session=False)
        )
        db.add(LoginAttempt(user_id=user.id, is_successful=True, ip_address=ctx.client.ip_address))
        db.commit()
        db.refresh(user)

        session_key, session = SessionService.create_session(db, user, ctx.client, presented_key)
        AuditService.record_from_context(
            db, ctx, "login_success", "users", user.id,
            f"role={user.role.value} login_count={user.login_count}",
            actor_id=user.id
        )
        logger.info(f"User logged in: {user.username} ({user.role.value})")
        return session_key, session, user

    @staticmethod
    def logout(db: Session, ctx: RequestContext, session_key: Optional[str]) -> bool:
        """Destroy the presented session."""
        if not session_key:
            return False
        destroyed = SessionService.destroy_session(db, hash_session_key(session_key))
        if destroyed:
            AuditService.record_from_context(db, ctx, "logout", "users", ctx.actor_id, "Session destroyed")
        return destroyed

    @staticmethod
    def register(db: Session, ctx: RequestContext, data: NewUser) -> User:
        """
        Self-registration: inactive Staff or Student awaiting admin approval.

        Raises:
            ValidationError: Any field rule failed, or the role is not self-service
        """
        if data.role not in (UserRole.STAFF.value, UserRole.STUDENT.value):
            raise ValidationError(["Invalid role selected."], reason="register_role")
        if data.role == UserRole.STAFF.value:
            # Employment details are filled in by an admin after approval
            profile = data.profile
            data = data.model_copy(update={"profile": profile.model_copy(update={
                "department": profile.department or "General",
                "salary": profile.salary if profile.salary is not None else 0.0,
                "hire_date": profile.hire_date or date.today(),
            })})
        DirectoryService.validate_new_user(db, data)

        user = DirectoryService.create_user(db, data, is_active=False)
        db.commit()

        AuditService.record_from_context(
            db, ctx, "self_registration", "users", user.id,
            f"Username: {user.username} (Role: {user.role.value}, Pending)",
            actor_id=None
        )
        return user

    @staticmethod
    def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
        """Get user by ID."""
        return db.query(User).filter(User.id == user_id).first()
