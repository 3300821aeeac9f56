"""
Password reset token lifecycle: Pending -> Expired | Used (both terminal).
"""
from datetime import timedelta
from typing import Optional, Tuple
from sqlalchemy.orm import Session
from sqlalchemy import func, or_, update

from auth.security import generate_reset_token, get_password_hash
from core.exceptions import NotFoundError, TokenError, ValidationError
from core.logger import logger
from core.utils import utcnow
from core.validators import validate_password
from database.models import User, StaffProfile, StudentProfile, PasswordReset, ResetTokenStatus
from services.session_service import SessionService
import config


class ResetTokenService:
    """Issue, verify and consume single-use password reset tokens."""

    @staticmethod
    def find_user(db: Session, username_or_email: str) -> Optional[User]:
        """Resolve by username, or by e-mail on the identity or either profile table."""
        value = (username_or_email or "").strip()
        if not value:
            return None
        user = db.query(User).filter(User.username == value).first()
        if user is not None:
            return user

        email = value.lower()
        return (
            db.query(User)
            .outerjoin(StaffProfile, StaffProfile.user_id == User.id)
            .outerjoin(StudentProfile, StudentProfile.user_id == User.id)
            .filter(or_(
                func.lower(User.email) == email,
                func.lower(StaffProfile.email) == email,
                func.lower(StudentProfile.email) == email,
            ))
            .first()
        )

    @staticmethod
    def issue(db: Session, username_or_email: str) -> Tuple[str, PasswordReset]:
        """
        Create a fresh reset token, replacing any pending one.

        Raises:
            NotFoundError: No identity matches
        """
        user = ResetTokenService.find_user(db, username_or_email)
        if user is None:
            raise NotFoundError(reason="reset_user_not_found")

        db.query(PasswordReset).filter(
            PasswordReset.user_id == user.id,
            PasswordReset.status == ResetTokenStatus.PENDING
        ).delete(synchronize_session=False)

        now = utcnow()
        record = PasswordReset(
            user_id=user.id,
            token=generate_reset_token(),
            expires_at=now + timedelta(minutes=config.RESET_TOKEN_EXPIRE_MINUTES),
            status=ResetTokenStatus.PENDING,
            created_at=now,
        )
        db.add(record)
        db.commit()
        db.refresh(record)
        logger.info(f"Issued password reset token for user {user.id}")
        return record.token, record

    @staticmethod
    def expire_stale(db: Session) -> int:
        """Move every overdue Pending token to Expired."""
        result = db.execute(
            update(PasswordReset)
            .where(
                PasswordReset.status == ResetTokenStatus.PENDING,
                PasswordReset.expires_at < utcnow()
            )
            .values(status=ResetTokenStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount or 0

    @staticmethod
    def verify(db: Session, token: str) -> PasswordReset:
        """
        Look up a usable token. Stale tokens are expired first.

        Raises:
            TokenError: Unknown, expired or already used
        """
        ResetTokenService.expire_stale(db)
        record = None
        if token:
            record = db.query(PasswordReset).filter(
                PasswordReset.token == token,
                PasswordReset.status == ResetTokenStatus.PENDING
            ).first()
        if record is None:
            raise TokenError(reason="reset_token_invalid")
        return record

    @staticmethod
    def consume(
        db: Session,
        token: str,
        new_password: str,
        confirm_password: Optional[str] = None
    ) -> PasswordReset:
        """
        Set a new password with a reset token and burn the token.

        Raises:
            ValidationError: Weak password or confirmation mismatch
            TokenError: Token not usable
        """
        is_valid, error_message = validate_password(new_password)
        if not is_valid:
            raise ValidationError([error_message], reason="reset_password_weak")
        if confirm_password is not None and confirm_password != new_password:
            raise ValidationError(["Passwords do not match."], reason="reset_password_mismatch")

        record = ResetTokenService.verify(db, token)
        now = utcnow()

        burned = db.execute(
            update(PasswordReset)
            .where(PasswordReset.id == record.id, PasswordReset.status == ResetTokenStatus.PENDING)
            .values(status=ResetTokenStatus.USED, used_at=now)
            .execution_options(synchronize_session=False)
        )
        if burned.rowcount != 1:
            db.rollback()
            raise TokenError(reason="reset_token_invalid")

        db.execute(
            update(User)
            .where(User.id == record.user_id)
            .values(hashed_password=get_password_hash(new_password), password_changed_at=now)
            .execution_options(synchronize_session=False)
        )
        revoked = SessionService.revoke_user_sessions(db, record.user_id)
        db.commit()
        db.refresh(record)

        logger.info(f"Password reset for user {record.user_id} ({revoked} sessions revoked)")
        return record
