"""
Authentication endpoints: login, logout, registration, password reset and PIN change.
"""
from fastapi import APIRouter, Depends, Response, Query, status
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Optional

from auth.context import RequestContext
from auth.dependencies import (
    get_db_session, get_public_context, get_request_context, get_session_key, require_admin
)
from core.exceptions import NotFoundError, ValidationError
from services.auth_service import AuthService
from services.audit_service import AuditService
from services.directory_service import NewUser, ProfileFields
from services.pin_service import PinService
from services.reset_token_service import ResetTokenService
from core.logger import logger
import config


router = APIRouter(prefix="/api/auth", tags=["authentication"])

RESET_REQUEST_MESSAGE = "If an account matches, a password reset link has been issued."


# Request Models
class LoginRequest(BaseModel):
    """Login request. Admins must also send their 6-digit PIN."""
    username: str
    password: str
    role: str
    admin_pin: Optional[str] = None


class RegisterRequest(BaseModel):
    """Self-registration request (Staff or Student)."""
    username: str
    password: str
    confirm_password: str
    profile: ProfileFields


class ResetTokenRequest(BaseModel):
    username_or_email: str


class ResetPasswordRequest(BaseModel):
    """Reset password request."""
    token: str
    new_password: str
    confirm_password: str


class ChangePinRequest(BaseModel):
    old_pin: str
    new_pin: str
    confirm_pin: str


def _set_session_cookie(response: Response, session_key: str) -> None:
    response.set_cookie(
        key=config.SESSION_COOKIE_NAME,
        value=session_key,
        httponly=True,
        secure=config.SESSION_COOKIE_SECURE,
        samesite="lax",
        max_age=config.SESSION_EXPIRE_HOURS * 3600,
        path="/"
    )


@router.post("/login")
async def login(
    login_data: LoginRequest,
    response: Response,
    ctx: RequestContext = Depends(get_public_context),
    presented_key: Optional[str] = Depends(get_session_key),
    db: Session = Depends(get_db_session)
):
    """
    Log in with username, password and role (plus PIN for Admin).
    Any session the client already holds is replaced by a new one.
    """
    session_key, session, user = AuthService.login(
        db,
        ctx,
        username=login_data.username.strip(),
        password=login_data.password,
        role=login_data.role,
        admin_pin=login_data.admin_pin.strip() if login_data.admin_pin else None,
        presented_key=presented_key
    )
    _set_session_cookie(response, session_key)

    return {
        "success": True,
        "session_key": session_key,
        "expires_in": config.SESSION_TIMEOUT_SECONDS,
        "user": {
            "id": user.id,
            "username": user.username,
            "role": user.role.value,
            "login_count": user.login_count,
            "last_login": user.last_login.isoformat() if user.last_login else None,
        }
    }


@router.post("/logout")
async def logout(
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
    session_key: Optional[str] = Depends(get_session_key),
    db: Session = Depends(get_db_session)
):
    """Destroy the current session."""
    AuthService.logout(db, ctx, session_key)
    response.delete_cookie(config.SESSION_COOKIE_NAME, path="/")
    return {"success": True}


@router.get("/me", response_model=dict)
async def get_me(
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db_session)
):
    """Get the identity behind the current session."""
    user = AuthService.get_user_by_id(db, ctx.identity.id)
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "role": ctx.identity.role.value,
        "is_active": user.is_active,
        "login_count": user.login_count,
        "last_login": user.last_login.isoformat() if user.last_login else None,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    request_data: RegisterRequest,
    ctx: RequestContext = Depends(get_public_context),
    db: Session = Depends(get_db_session)
):
    """
    Register a Staff or Student account.
    The account stays inactive until an admin approves it.
    """
    if request_data.password != request_data.confirm_password:
        raise ValidationError(["Password and confirm password do not match."], reason="register_mismatch")

    user = AuthService.register(
        db,
        ctx,
        NewUser(username=request_data.username.strip(), password=request_data.password, profile=request_data.profile)
    )
    return {
        "success": True,
        "id": user.id,
        "message": "Registration successful! Your account is pending admin approval."
    }


@router.post("/reset-request")
async def request_password_reset(
    request_data: ResetTokenRequest,
    ctx: RequestContext = Depends(get_public_context),
    db: Session = Depends(get_db_session)
):
    """
    Issue a password reset token.
    The response does not reveal whether an account matched.
    """
    result = {"success": True, "message": RESET_REQUEST_MESSAGE}
    try:
        token, record = ResetTokenService.issue(db, request_data.username_or_email)
    except NotFoundError:
        AuditService.record_from_context(
            db, ctx, "reset_request_unknown", "password_resets", None,
            "No account matched the reset request"
        )
        return result

    AuditService.record_from_context(
        db, ctx, "reset_requested", "password_resets", record.id,
        "Reset token issued", actor_id=record.user_id
    )
    if config.ENVIRONMENT != "production":
        # No mail delivery outside production; hand the link back directly
        result["reset_url"] = f"{config.RESET_PASSWORD_URL}?token={token}"
    return result


@router.get("/reset-password/verify")
async def verify_reset_token(
    token: str = Query(..., description="Reset token from the link"),
    db: Session = Depends(get_db_session)
):
    """Check that a reset link is still usable."""
    record = ResetTokenService.verify(db, token)
    return {"valid": True, "expires_at": record.expires_at.isoformat()}


@router.post("/reset-password")
async def reset_password(
    request_data: ResetPasswordRequest,
    ctx: RequestContext = Depends(get_public_context),
    db: Session = Depends(get_db_session)
):
    """Set a new password with a reset token. The token works once."""
    record = ResetTokenService.consume(
        db, request_data.token, request_data.new_password, request_data.confirm_password
    )
    AuditService.record_from_context(
        db, ctx, "password_reset", "users", record.user_id,
        "Password reset via token", actor_id=record.user_id
    )
    logger.info(f"Password reset completed for user {record.user_id}")
    return {"success": True, "message": "Your password has been reset. You can now log in."}


@router.post("/change-pin")
async def change_pin(
    request_data: ChangePinRequest,
    ctx: RequestContext = Depends(require_admin),
    db: Session = Depends(get_db_session)
):
    """Change the acting admin's PIN."""
    record = PinService.change_pin(
        db, ctx, request_data.old_pin.strip(), request_data.new_pin.strip(), request_data.confirm_pin.strip()
    )
    return {
        "success": True,
        "pin_last_changed": record.pin_last_changed.isoformat() if record.pin_last_changed else None
    }
