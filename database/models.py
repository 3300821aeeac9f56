"""
Database models for the school directory security core.
"""
from core.utils import utcnow
from sqlalchemy import (
    Column, Integer, String, Float, Boolean, Date, DateTime, Text,
    ForeignKey, JSON, Index, TypeDecorator
)
from sqlalchemy.orm import declarative_base, relationship
import enum

Base = declarative_base()


# ============================================================================
# Custom Type Decorator for Enum Values
# ============================================================================

class EnumValue(TypeDecorator):
    """Type decorator to ensure enum values (not names) are stored."""
    impl = String
    cache_ok = True

    def __init__(self, enum_class, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.enum_class = enum_class

    def process_bind_param(self, value, dialect):
        """Convert enum to its value when writing to database."""
        if value is None:
            return None
        if isinstance(value, enum.Enum):
            return value.value
        return value

    def process_result_value(self, value, dialect):
        """Convert database value back to enum when reading."""
        if value is None:
            return None
        if isinstance(value, str):
            try:
                return self.enum_class(value)
            except ValueError:
                return value
        return value


# ============================================================================
# Enums - Must be defined before models that use them
# ============================================================================

class UserRole(str, enum.Enum):
    """Directory roles."""
    ADMIN = "Admin"
    STAFF = "Staff"
    STUDENT = "Student"


class ResetTokenStatus(str, enum.Enum):
    """Password reset token lifecycle. Expired and Used are terminal."""
    PENDING = "Pending"
    EXPIRED = "Expired"
    USED = "Used"


class MutationKind(str, enum.Enum):
    """Privileged mutations that need PIN confirmation."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# ============================================================================
# Models
# ============================================================================

class User(Base):
    """Directory identity used for authentication and authorization."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(20), unique=True, index=True, nullable=False)
    email = Column(String(255), nullable=True, index=True)
    hashed_password = Column(String(255), nullable=False)
    role = Column(EnumValue(UserRole, 20), nullable=False)
    is_active = Column(Boolean, default=False, nullable=False)  # Self-registered accounts wait for approval

    login_count = Column(Integer, default=0, nullable=False)
    last_login = Column(DateTime, nullable=True)
    password_changed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    staff_profile = relationship("StaffProfile", back_populates="user", uselist=False, cascade="all, delete-orphan")
    student_profile = relationship("StudentProfile", back_populates="user", uselist=False, cascade="all, delete-orphan")
    admin_pin = relationship("AdminPin", back_populates="user", uselist=False, cascade="all, delete-orphan")
    sessions = relationship("Session", back_populates="user", cascade="all, delete-orphan")
    reset_tokens = relationship("PasswordReset", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_user_role', 'role'),
        Index('idx_user_active', 'is_active'),
    )


class StaffProfile(Base):
    """Staff-specific profile row (one per Staff identity)."""
    __tablename__ = "staff"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    first_name = Column(String(40), nullable=False)
    last_name = Column(String(40), nullable=False)
    email = Column(String(255), nullable=True, index=True)
    department = Column(String(100), nullable=True)
    salary = Column(Float, nullable=True)
    hire_date = Column(Date, nullable=True)
    is_active = Column(Boolean, default=False, nullable=False)

    user = relationship("User", back_populates="staff_profile")


class StudentProfile(Base):
    """Student-specific profile row (one per Student identity)."""
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    first_name = Column(String(40), nullable=False)
    last_name = Column(String(40), nullable=False)
    email = Column(String(255), nullable=True, index=True)
    date_of_birth = Column(Date, nullable=True)
    age = Column(Integer, nullable=True)
    gpa = Column(Float, nullable=True)
    is_active = Column(Boolean, default=False, nullable=False)

    user = relationship("User", back_populates="student_profile")


class AdminPin(Base):
    """Secondary PIN credential + lockout state for an Admin identity."""
    __tablename__ = "admin_pins"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    pin_hash = Column(String(255), nullable=False)
    failed_attempts = Column(Integer, default=0, nullable=False)  # 0..PIN_MAX_ATTEMPTS-1
    pin_last_changed = Column(DateTime, default=utcnow, nullable=True)
    lock_until = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="admin_pin")


class PasswordReset(Base):
    """Single-use password reset token."""
    __tablename__ = "password_resets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token = Column(String(64), unique=True, index=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    status = Column(EnumValue(ResetTokenStatus, 10), default=ResetTokenStatus.PENDING, nullable=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="reset_tokens")

    __table_args__ = (
        Index('idx_reset_user_status', 'user_id', 'status'),
        Index('idx_reset_expires', 'expires_at'),
    )


class StagedMutation(Base):
    """Privileged mutation held server-side until the acting admin confirms with a PIN."""
    __tablename__ = "staged_mutations"

    id = Column(String(36), primary_key=True)  # UUID, referenced by the signed transfer token
    actor_id = Column(Integer, nullable=False, index=True)
    kind = Column(EnumValue(MutationKind, 10), nullable=False)
    target_user_id = Column(Integer, nullable=True)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_staged_expires', 'expires_at'),
    )


class AuditLog(Base):
    """Append-only audit trail. No foreign keys: rows outlive the identities they mention."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    actor_id = Column(Integer, nullable=True)
    action = Column(String(100), nullable=False)  # e.g. "login_failed", "pin_failed", "user_deleted"
    table_name = Column(String(50), nullable=True)
    row_id = Column(String(100), nullable=True)
    detail = Column(Text, nullable=True)
    ip_address = Column(String(45), nullable=True)  # IPv6 compatible
    user_agent = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('idx_audit_actor', 'actor_id'),
        Index('idx_audit_action', 'action'),
    )


class LoginAttempt(Base):
    """Ledger of every login attempt, separate from the audit trail."""
    __tablename__ = "login_attempts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True)
    is_successful = Column(Boolean, nullable=False)
    ip_address = Column(String(45), nullable=True)
    attempted_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('idx_login_attempt_user', 'user_id'),
    )


class Session(Base):
    """Server-side session keyed by the hash of an opaque cookie value."""
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role = Column(EnumValue(UserRole, 20), nullable=False)
    session_key = Column(String(255), nullable=False)  # Encrypted session key
    session_hash = Column(String(64), unique=True, index=True, nullable=False)  # Hashed for lookup
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_activity = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)

    user = relationship("User", back_populates="sessions")

    __table_args__ = (
        Index('idx_session_user', 'user_id'),
    )
