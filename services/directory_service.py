"""
Directory entries: field validation and the create/update/delete writes.

Profile fields are a tagged union on ``role``; each variant is validated in
full before anything is staged or written. Writes here never commit: they run
inside the caller's transaction.
"""
from datetime import date
from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session
from sqlalchemy import func

from auth.security import get_password_hash
from core.exceptions import NotFoundError, ValidationError
from core.logger import logger
from core.utils import utcnow
from core import validators
from database.models import User, UserRole, StaffProfile, StudentProfile, AdminPin
from services.pin_service import PinService
from services.session_service import SessionService
import config


# ============================================================================
# Field models
# ============================================================================

class AdminFields(BaseModel):
    role: Literal["Admin"]
    email: Optional[EmailStr] = None
    pin: Optional[str] = None


class StaffFields(BaseModel):
    role: Literal["Staff"]
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    department: Optional[str] = None
    salary: Optional[float] = None
    hire_date: Optional[date] = None


class StudentFields(BaseModel):
    role: Literal["Student"]
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    dob: Optional[date] = None
    age: Optional[int] = None
    gpa: Optional[float] = None


ProfileFields = Annotated[Union[AdminFields, StaffFields, StudentFields], Field(discriminator="role")]


class NewUser(BaseModel):
    """Everything needed to create an identity and its profile row."""
    username: str
    password: str
    profile: ProfileFields

    @property
    def role(self) -> str:
        return self.profile.role


class UserChanges(BaseModel):
    """
    Full replacement of an identity's editable fields.
    is_active left out keeps the target's current state.
    """
    username: str
    password: Optional[str] = None
    role: str
    is_active: Optional[bool] = None
    department: Optional[str] = None
    salary: Optional[float] = None
    gpa: Optional[float] = None
    new_admin_pin: Optional[str] = None


# ============================================================================
# Service
# ============================================================================

def _check(errors: List[str], result) -> None:
    is_valid, error_message = result
    if not is_valid:
        errors.append(error_message)


def email_in_use(db: Session, email: str, exclude_user_id: Optional[int] = None) -> bool:
    """Whether an e-mail is taken by any identity or profile row."""
    needle = email.strip().lower()
    for model in (User, StaffProfile, StudentProfile):
        owner = User.id if model is User else model.user_id
        query = db.query(owner).filter(func.lower(model.email) == needle)
        if exclude_user_id is not None:
            query = query.filter(owner != exclude_user_id)
        if query.first() is not None:
            return True
    return False


class DirectoryService:
    """Validation and writes for directory entries."""

    @staticmethod
    def profile_errors(profile: Union[AdminFields, StaffFields, StudentFields], today: Optional[date] = None) -> List[str]:
        """Every rule of one profile variant."""
        errors: List[str] = []
        if isinstance(profile, AdminFields):
            _check(errors, validators.validate_school_email(profile.email))
            _check(errors, validators.validate_pin(profile.pin))
        elif isinstance(profile, StaffFields):
            _check(errors, validators.validate_name(profile.first_name, "First name"))
            _check(errors, validators.validate_name(profile.last_name, "Last name"))
            _check(errors, validators.validate_school_email(profile.email))
            _check(errors, validators.validate_department(profile.department))
            _check(errors, validators.validate_salary(profile.salary))
            _check(errors, validators.validate_hire_date(profile.hire_date, today))
        else:
            _check(errors, validators.validate_name(profile.first_name, "First name"))
            _check(errors, validators.validate_name(profile.last_name, "Last name"))
            _check(errors, validators.validate_school_email(profile.email))
            _check(errors, validators.validate_dob(profile.dob, today))
            _check(errors, validators.validate_age(profile.age))
            _check(errors, validators.validate_gpa(profile.gpa))
        return errors

    @staticmethod
    def validate_new_user(db: Session, data: NewUser) -> None:
        """
        Validate a create request against format rules and current directory state.

        Raises:
            ValidationError: With every failing rule
        """
        errors: List[str] = []
        _check(errors, validators.validate_username(data.username))
        _check(errors, validators.validate_password(data.password))
        errors.extend(DirectoryService.profile_errors(data.profile))

        if db.query(User.id).filter(User.username == data.username).first() is not None:
            errors.append("This username is already taken. Please choose another.")
        if data.profile.email and email_in_use(db, data.profile.email):
            errors.append("This email is already registered.")

        if errors:
            raise ValidationError(errors, reason="create_invalid")

    @staticmethod
    def validate_changes(db: Session, actor_id: int, user_id: int, data: UserChanges) -> User:
        """
        Validate an update request for an existing identity.

        Returns:
            The target identity

        Raises:
            NotFoundError: Target does not exist
            ValidationError: With every failing rule
        """
        user = db.query(User).filter(User.id == user_id).first()
        if user is None:
            raise NotFoundError(reason="target_missing")

        errors: List[str] = []
        _check(errors, validators.validate_username(data.username))
        _check(errors, validators.validate_role(data.role))
        if data.password:
            _check(errors, validators.validate_password(data.password))

        current_role = user.role.value if isinstance(user.role, UserRole) else user.role
        if UserRole.STAFF.value in (current_role, data.role):
            _check(errors, validators.validate_department(data.department))
            _check(errors, validators.validate_salary(data.salary))
        if UserRole.STUDENT.value in (current_role, data.role):
            _check(errors, validators.validate_gpa(data.gpa))

        if data.role == UserRole.ADMIN.value:
            if data.new_admin_pin:
                _check(errors, validators.validate_pin(data.new_admin_pin))
            elif current_role != UserRole.ADMIN.value:
                errors.append("A 6-digit admin PIN is required when granting the Admin role.")

        if user.id == actor_id:
            if data.is_active is False:
                errors.append("You cannot deactivate your own account.")
            if data.role != UserRole.ADMIN.value:
                errors.append("You cannot remove the Admin role from your own account.")

        taken = db.query(User.id).filter(User.username == data.username, User.id != user_id).first()
        if taken is not None:
            errors.append("This username is already taken. Please choose another.")

        if errors:
            raise ValidationError(errors, reason="update_invalid")
        return user

    @staticmethod
    def validate_delete(db: Session, actor_id: int, user_id: int) -> User:
        user = db.query(User).filter(User.id == user_id).first()
        if user is None:
            raise NotFoundError(reason="target_missing")
        if user.id == actor_id:
            raise ValidationError(["You cannot delete your own account."], reason="self_delete")
        return user

    @staticmethod
    def create_user(db: Session, data: NewUser, is_active: bool = True) -> User:
        """Insert identity plus profile (or PIN) row."""
        profile = data.profile
        now = utcnow()
        email = (profile.email or f"{data.username}@{config.SCHOOL_EMAIL_DOMAIN}").strip()
        user = User(
            username=data.username,
            email=email,
            hashed_password=get_password_hash(data.password),
            role=UserRole(profile.role),
            is_active=is_active,
            password_changed_at=now,
        )
        db.add(user)
        db.flush()

        if isinstance(profile, AdminFields):
            PinService.set_pin(db, user.id, profile.pin)
        elif isinstance(profile, StaffFields):
            db.add(StaffProfile(
                user_id=user.id,
                first_name=profile.first_name,
                last_name=profile.last_name,
                email=email,
                department=profile.department,
                salary=profile.salary,
                hire_date=profile.hire_date or now.date(),
                is_active=is_active,
            ))
        else:
            db.add(StudentProfile(
                user_id=user.id,
                first_name=profile.first_name,
                last_name=profile.last_name,
                email=email,
                date_of_birth=profile.dob,
                age=profile.age,
                gpa=profile.gpa,
                is_active=is_active,
            ))
        db.flush()
        logger.info(f"Created user: {data.username} (role: {profile.role})")
        return user

    @staticmethod
    def update_user(db: Session, user: User, data: UserChanges) -> User:
        """Apply validated changes, moving the profile row when the role changes."""
        new_role = UserRole(data.role)
        role_changed = user.role != new_role
        is_active = user.is_active if data.is_active is None else data.is_active

        user.username = data.username
        user.is_active = is_active
        if data.password:
            user.hashed_password = get_password_hash(data.password)
            user.password_changed_at = utcnow()

        if role_changed:
            DirectoryService._drop_role_rows(db, user)
            user.role = new_role
            SessionService.revoke_user_sessions(db, user.id)
        if new_role != UserRole.ADMIN and DirectoryService._role_row(db, user) is None:
            DirectoryService._add_default_role_row(db, user)
        db.flush()

        if new_role == UserRole.STAFF:
            staff = DirectoryService._role_row(db, user)
            if data.department:
                staff.department = data.department
            if data.salary is not None:
                staff.salary = data.salary
            staff.is_active = is_active
        elif new_role == UserRole.STUDENT:
            student = DirectoryService._role_row(db, user)
            if data.gpa is not None:
                student.gpa = data.gpa
            student.is_active = is_active
        elif data.new_admin_pin:
            PinService.set_pin(db, user.id, data.new_admin_pin)

        if not is_active:
            SessionService.revoke_user_sessions(db, user.id)
        db.flush()
        logger.info(f"Updated user {user.id} (role: {new_role.value}, active: {is_active})")
        return user

    @staticmethod
    def delete_user(db: Session, user: User) -> None:
        user_id = user.id
        db.delete(user)
        db.flush()
        logger.info(f"Deleted user {user_id}")

    @staticmethod
    def _drop_role_rows(db: Session, user: User) -> None:
        db.query(StaffProfile).filter(StaffProfile.user_id == user.id).delete(synchronize_session=False)
        db.query(StudentProfile).filter(StudentProfile.user_id == user.id).delete(synchronize_session=False)
        db.query(AdminPin).filter(AdminPin.user_id == user.id).delete(synchronize_session=False)
        db.expire(user, ["staff_profile", "student_profile", "admin_pin"])

    @staticmethod
    def _role_row(db: Session, user: User):
        if user.role == UserRole.STAFF:
            return db.query(StaffProfile).filter(StaffProfile.user_id == user.id).first()
        if user.role == UserRole.STUDENT:
            return db.query(StudentProfile).filter(StudentProfile.user_id == user.id).first()
        return None

    @staticmethod
    def _add_default_role_row(db: Session, user: User) -> None:
        first_name = user.username.capitalize()
        if user.role == UserRole.STAFF:
            db.add(StaffProfile(
                user_id=user.id, first_name=first_name, last_name="Staff", email=user.email,
                department="General", salary=0.0, hire_date=utcnow().date(), is_active=user.is_active,
            ))
        elif user.role == UserRole.STUDENT:
            db.add(StudentProfile(
                user_id=user.id, first_name=first_name, last_name="Student", email=user.email,
                gpa=0.0, is_active=user.is_active,
            ))
