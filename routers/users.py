"""
User Management APIs (Admin).

Create, update and delete are two-step: the first call validates and stages
the change, POST /confirm executes it after checking the admin's PIN.
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Optional

from auth.context import RequestContext
from auth.dependencies import get_db_session, require_admin
from core.exceptions import NotFoundError, ValidationError
from database.models import MutationKind, StagedMutation
from services.account_lifecycle_service import AccountLifecycleService
from services.audit_service import AuditService
from services.auth_service import AuthService
from services.directory_service import NewUser, UserChanges
from services.privileged_action_service import PrivilegedActionService


router = APIRouter(prefix="/api/users", tags=["users"])


class ConfirmRequest(BaseModel):
    """PIN confirmation of a staged change."""
    transfer_token: str
    pin: Optional[str] = None


def _staged_response(token: str, staged: StagedMutation) -> dict:
    return {
        "success": True,
        "action": staged.kind.value,
        "target_user_id": staged.target_user_id,
        "transfer_token": token,
        "expires_at": staged.expires_at.isoformat(),
        "message": "Enter your admin PIN to confirm this action."
    }


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def stage_create_user(
    user_data: NewUser,
    ctx: RequestContext = Depends(require_admin),
    db: Session = Depends(get_db_session)
):
    """Validate and stage a new Admin, Staff or Student account."""
    token, staged = PrivilegedActionService.stage_mutation(db, ctx, MutationKind.CREATE, data=user_data)
    return _staged_response(token, staged)


@router.put("/{user_id}", status_code=status.HTTP_202_ACCEPTED)
async def stage_update_user(
    user_id: int,
    user_data: UserChanges,
    ctx: RequestContext = Depends(require_admin),
    db: Session = Depends(get_db_session)
):
    """Validate and stage changes to an account."""
    token, staged = PrivilegedActionService.stage_mutation(
        db, ctx, MutationKind.UPDATE, data=user_data, target_user_id=user_id
    )
    return _staged_response(token, staged)


@router.delete("/{user_id}", status_code=status.HTTP_202_ACCEPTED)
async def stage_delete_user(
    user_id: int,
    ctx: RequestContext = Depends(require_admin),
    db: Session = Depends(get_db_session)
):
    """Stage deletion of an account. Admins cannot delete themselves."""
    token, staged = PrivilegedActionService.stage_mutation(
        db, ctx, MutationKind.DELETE, target_user_id=user_id
    )
    return _staged_response(token, staged)


@router.post("/confirm")
async def confirm_staged_action(
    confirm_data: ConfirmRequest,
    ctx: RequestContext = Depends(require_admin),
    db: Session = Depends(get_db_session)
):
    """Execute a staged change after verifying the acting admin's PIN."""
    pin = confirm_data.pin.strip() if confirm_data.pin else None
    result = PrivilegedActionService.execute_staged_mutation(db, ctx, confirm_data.transfer_token, pin)
    messages = {
        "create": "User created successfully!",
        "update": "User updated successfully!",
        "delete": "User deleted successfully!",
    }
    return {"success": True, "message": messages[result["kind"]], **result}


@router.get("/pending")
async def list_pending_users(
    ctx: RequestContext = Depends(require_admin),
    db: Session = Depends(get_db_session)
):
    """Accounts awaiting approval."""
    users = AccountLifecycleService.list_pending(db)
    return {
        "count": AccountLifecycleService.count_pending(db),
        "data": [
            {
                "id": u.id,
                "username": u.username,
                "role": u.role.value,
                "created_at": u.created_at.isoformat() if u.created_at else None,
            }
            for u in users
        ]
    }


def _require_user(db: Session, user_id: int) -> None:
    if AuthService.get_user_by_id(db, user_id) is None:
        raise NotFoundError(reason="target_missing")


@router.post("/{user_id}/approve")
async def approve_user(
    user_id: int,
    ctx: RequestContext = Depends(require_admin),
    db: Session = Depends(get_db_session)
):
    """Activate an account and its profile row."""
    _require_user(db, user_id)
    AccountLifecycleService.set_active(db, user_id, True)
    AuditService.record_from_context(db, ctx, "user_approved", "users", user_id, "Account activated")
    return {"success": True, "message": f"User ID {user_id} approved successfully."}


@router.post("/{user_id}/deactivate")
async def deactivate_user(
    user_id: int,
    ctx: RequestContext = Depends(require_admin),
    db: Session = Depends(get_db_session)
):
    """Deactivate an account and end its sessions."""
    _require_user(db, user_id)
    if user_id == ctx.actor_id:
        raise ValidationError(["You cannot deactivate your own account."], reason="self_deactivate")
    AccountLifecycleService.set_active(db, user_id, False)
    AuditService.record_from_context(db, ctx, "user_deactivated", "users", user_id, "Account deactivated")
    return {"success": True, "message": f"User ID {user_id} deactivated."}
