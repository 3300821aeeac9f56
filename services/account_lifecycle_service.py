"""
Account activation and deactivation across the identity and profile tables.
"""
from typing import List
from sqlalchemy.orm import Session
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError

from core.exceptions import TransactionError
from core.logger import logger
from database.models import User, StaffProfile, StudentProfile
from services.session_service import SessionService


class AccountLifecycleService:
    """All-or-nothing activation state changes."""

    @staticmethod
    def set_active(db: Session, user_id: int, active: bool) -> None:
        """
        Set the active flag on users, staff and students in one transaction.

        Profile tables without a row for user_id are simply unaffected.
        Deactivation also revokes the identity's sessions.

        Raises:
            TransactionError: Any statement failed; nothing was changed
        """
        try:
            for model, key in (
                (User, User.id),
                (StaffProfile, StaffProfile.user_id),
                (StudentProfile, StudentProfile.user_id),
            ):
                db.execute(
                    update(model)
                    .where(key == user_id)
                    .values(is_active=active)
                    .execution_options(synchronize_session=False)
                )
            if not active:
                SessionService.revoke_user_sessions(db, user_id)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"{'Activation' if active else 'Deactivation'} of user {user_id} rolled back: {e}")
            raise TransactionError(reason="set_active_failed")

        # Bulk updates bypass the identity map
        db.expire_all()
        logger.info(f"User {user_id} {'activated' if active else 'deactivated'}")

    @staticmethod
    def list_pending(db: Session) -> List[User]:
        """Identities awaiting approval, newest first."""
        return db.query(User).filter(User.is_active == False).order_by(User.created_at.desc()).all()

    @staticmethod
    def count_pending(db: Session) -> int:
        return db.query(func.count(User.id)).filter(User.is_active == False).scalar() or 0
