"""
Admin PIN gate.

State per admin: (failed_attempts, lock_until).

    Unlocked(n < max-1) --wrong-->   Unlocked(n+1)
    Unlocked(max-1)     --wrong-->   Locked(now + lockout), counter 0
    Unlocked(any)       --correct--> Unlocked(0)
    Locked              --time-->    Unlocked(0)   (applied lazily on load)

Every counter transition is a single conditional UPDATE.
"""
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy.orm import Session
from sqlalchemy import update, case, or_

from auth.context import RequestContext
from auth.security import verify_password, get_pin_hash
from core.exceptions import (
    ConfigurationError, LockoutError, PinRejectedError, ValidationError
)
from core.logger import logger
from core.utils import utcnow
from core.validators import validate_pin
from database.models import AdminPin
from services.audit_service import AuditService
import config


class PinService:
    """PIN verification, lockout and PIN change for admins."""

    @staticmethod
    def load(db: Session, user_id: int, now: Optional[datetime] = None) -> Optional[AdminPin]:
        """
        Load (and row-lock where supported) an admin's PIN record.

        An elapsed lock is cleared here, before any decision is made on it.
        The unlock is not committed: it lands together with the attempt that
        follows, while the row lock is still held.
        """
        now = now or utcnow()
        record = db.query(AdminPin).filter(AdminPin.user_id == user_id).with_for_update().first()
        if record is None:
            return None

        if record.lock_until is not None and record.lock_until <= now:
            db.execute(
                update(AdminPin)
                .where(AdminPin.user_id == user_id, AdminPin.lock_until == record.lock_until)
                .values(lock_until=None, failed_attempts=0)
                .execution_options(synchronize_session=False)
            )
            db.refresh(record)
            logger.info(f"PIN lock expired for admin {user_id}")
        return record

    @staticmethod
    def check(
        db: Session,
        user_id: int,
        pin: Optional[str],
        now: Optional[datetime] = None,
        count_failure: bool = True
    ) -> AdminPin:
        """
        Run one PIN attempt through the gate.

        With count_failure=False (admin login) an existing lock is honoured but
        a wrong PIN leaves the counter alone.

        Raises:
            ConfigurationError: No PIN record for this admin
            LockoutError: Gate is locked, or this failure locked it
            ValidationError: PIN is not six digits (counter untouched)
            PinRejectedError: Wrong PIN, attempts remain
        """
        now = now or utcnow()
        record = PinService.load(db, user_id, now)
        if record is None:
            logger.error(f"Admin PIN record missing for user {user_id}")
            raise ConfigurationError(reason="admin_record_missing")

        if record.lock_until is not None and record.lock_until > now:
            raise LockoutError(record.lock_until, now)

        is_valid, error_message = validate_pin(pin)
        if not is_valid:
            raise ValidationError([error_message], reason="pin_invalid_format")

        if not count_failure:
            matched = verify_password(pin, record.pin_hash)
            db.commit()
            if not matched:
                raise PinRejectedError(config.PIN_MAX_ATTEMPTS - record.failed_attempts)
            return record

        if verify_password(pin, record.pin_hash):
            if record.failed_attempts:
                db.execute(
                    update(AdminPin)
                    .where(AdminPin.user_id == user_id)
                    .values(failed_attempts=0)
                    .execution_options(synchronize_session=False)
                )
            db.commit()
            db.refresh(record)
            return record

        return PinService._register_failure(db, record, now)

    @staticmethod
    def _register_failure(db: Session, record: AdminPin, now: datetime) -> AdminPin:
        reaches_limit = AdminPin.failed_attempts + 1 >= config.PIN_MAX_ATTEMPTS
        lock_until = now + timedelta(minutes=config.PIN_LOCKOUT_MINUTES)

        # SET expressions all read the pre-update row
        db.execute(
            update(AdminPin)
            .where(
                AdminPin.user_id == record.user_id,
                or_(AdminPin.lock_until.is_(None), AdminPin.lock_until <= now)
            )
            .values(
                failed_attempts=case((reaches_limit, 0), else_=AdminPin.failed_attempts + 1),
                lock_until=case((reaches_limit, lock_until), else_=None)
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(record)

        if record.lock_until is not None and record.lock_until > now:
            logger.warning(f"Admin {record.user_id} PIN locked until {record.lock_until}")
            raise LockoutError(record.lock_until, now)

        raise PinRejectedError(config.PIN_MAX_ATTEMPTS - record.failed_attempts)

    @staticmethod
    def verify(db: Session, ctx: RequestContext, pin: Optional[str], purpose: str) -> AdminPin:
        """
        Gate check for the acting admin, with every outcome audited.

        Args:
            purpose: Short label written to the audit detail (e.g. "delete user 7")
        """
        user_id = ctx.actor_id
        try:
            record = PinService.check(db, user_id, pin)
        except ConfigurationError:
            AuditService.record_from_context(db, ctx, "pin_record_missing", "admin_pins", user_id, purpose)
            raise
        except LockoutError as e:
            AuditService.record_from_context(
                db, ctx, "pin_locked", "admin_pins", user_id,
                f"{purpose}: locked until {e.locked_until.isoformat()}"
            )
            raise
        except PinRejectedError as e:
            AuditService.record_from_context(
                db, ctx, "pin_failed", "admin_pins", user_id,
                f"{purpose}: {e.attempts_left} attempts left"
            )
            raise
        AuditService.record_from_context(db, ctx, "pin_success", "admin_pins", user_id, purpose)
        return record

    @staticmethod
    def change_pin(
        db: Session,
        ctx: RequestContext,
        old_pin: str,
        new_pin: str,
        confirm_pin: str
    ) -> AdminPin:
        """Replace the acting admin's PIN. The old PIN goes through the gate."""
        user_id = ctx.actor_id
        now = utcnow()
        record = PinService.load(db, user_id, now)
        if record is not None and record.lock_until is not None and record.lock_until > now:
            raise LockoutError(record.lock_until, now)

        errors = []
        is_valid, error_message = validate_pin(new_pin)
        if not is_valid:
            errors.append(f"New PIN: {error_message}")
        elif new_pin != confirm_pin:
            errors.append("New PIN and confirmation do not match.")
        if errors:
            raise ValidationError(errors, reason="pin_change_invalid")

        record = PinService.verify(db, ctx, old_pin, "change PIN")

        record.pin_hash = get_pin_hash(new_pin)
        record.pin_last_changed = utcnow()
        record.failed_attempts = 0
        record.lock_until = None
        db.commit()

        AuditService.record_from_context(db, ctx, "pin_changed", "admin_pins", user_id, "PIN update successful")
        logger.info(f"Admin PIN changed for user {user_id}")
        return record

    @staticmethod
    def set_pin(db: Session, user_id: int, pin: str) -> AdminPin:
        """Create or overwrite an admin's PIN record. Does not commit."""
        record = db.query(AdminPin).filter(AdminPin.user_id == user_id).first()
        if record is None:
            record = AdminPin(user_id=user_id, failed_attempts=0)
            db.add(record)
        record.pin_hash = get_pin_hash(pin)
        record.pin_last_changed = utcnow()
        record.failed_attempts = 0
        record.lock_until = None
        return record
