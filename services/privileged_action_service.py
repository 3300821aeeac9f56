"""
Two-phase privileged mutations.

Phase 1 validates the request and holds it server-side as a StagedMutation,
handing the client a signed transfer token that names the staged record.
Phase 2 takes that token plus the acting admin's PIN, runs the PIN gate and
re-validates the held fields before executing them in one transaction.
"""
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple, Union
from cryptography.fernet import InvalidToken
from pydantic import ValidationError as SchemaError
from sqlalchemy.orm import Session
from sqlalchemy import update, or_
from sqlalchemy.exc import SQLAlchemyError

from auth.context import RequestContext
from auth.security import (
    create_transfer_token, decode_transfer_token, encrypt_data, decrypt_data
)
from core.exceptions import NotFoundError, TokenError, TransactionError, ValidationError
from core.logger import logger
from core.utils import utcnow
from database.models import MutationKind, StagedMutation
from services.audit_service import AuditService
from services.directory_service import DirectoryService, NewUser, UserChanges
from services.pin_service import PinService
import config

SECRET_FIELDS = ("password", "pin", "new_admin_pin")

AUDIT_ACTIONS = {
    MutationKind.CREATE: "user_created",
    MutationKind.UPDATE: "user_updated",
    MutationKind.DELETE: "user_deleted",
}


def _seal(payload: Any) -> Any:
    """Encrypt secret values anywhere in a JSON-able payload."""
    if isinstance(payload, dict):
        return {
            key: encrypt_data(value) if key in SECRET_FIELDS and isinstance(value, str) and value else _seal(value)
            for key, value in payload.items()
        }
    return payload


def _unseal(payload: Any) -> Any:
    if isinstance(payload, dict):
        return {
            key: decrypt_data(value) if key in SECRET_FIELDS and isinstance(value, str) and value else _unseal(value)
            for key, value in payload.items()
        }
    return payload


class PrivilegedActionService:
    """Stage and confirm create/update/delete of directory entries."""

    @staticmethod
    def stage_mutation(
        db: Session,
        ctx: RequestContext,
        kind: MutationKind,
        data: Optional[Union[NewUser, UserChanges]] = None,
        target_user_id: Optional[int] = None
    ) -> Tuple[str, StagedMutation]:
        """
        Validate and hold a mutation until it is confirmed with a PIN.

        Returns:
            Tuple of (transfer_token, StagedMutation)

        Raises:
            ValidationError: Any field rule failed; nothing is staged
            NotFoundError: Update/delete target does not exist
        """
        try:
            if kind == MutationKind.CREATE:
                DirectoryService.validate_new_user(db, data)
            elif kind == MutationKind.UPDATE:
                DirectoryService.validate_changes(db, ctx.actor_id, target_user_id, data)
            else:
                DirectoryService.validate_delete(db, ctx.actor_id, target_user_id)
        except ValidationError as e:
            AuditService.record_from_context(
                db, ctx, f"{kind.value}_user_rejected", "users", target_user_id,
                "; ".join(e.errors)
            )
            raise

        now = utcnow()
        PrivilegedActionService.purge_expired(db)
        staged = StagedMutation(
            id=str(uuid.uuid4()),
            actor_id=ctx.actor_id,
            kind=kind,
            target_user_id=target_user_id,
            payload=_seal(data.model_dump(mode="json")) if data is not None else {},
            created_at=now,
            expires_at=now + timedelta(minutes=config.STAGED_MUTATION_EXPIRE_MINUTES),
        )
        db.add(staged)
        db.commit()

        token = create_transfer_token(
            staged.id, ctx.actor_id, config.SECRET_KEY,
            timedelta(minutes=config.STAGED_MUTATION_EXPIRE_MINUTES)
        )
        AuditService.record_from_context(
            db, ctx, f"{kind.value}_user_staged", "users", target_user_id,
            f"Awaiting PIN confirmation ({staged.id})"
        )
        logger.info(f"Staged {kind.value} by admin {ctx.actor_id} (target={target_user_id})")
        return token, staged

    @staticmethod
    def load_staged(db: Session, ctx: RequestContext, transfer_token: str) -> StagedMutation:
        """
        Resolve a transfer token to its pending staged record.

        Raises:
            TokenError: Bad signature, other admin's token, expired or consumed
        """
        claims = decode_transfer_token(transfer_token or "", config.SECRET_KEY)
        staged = None
        if claims is not None and claims.get("actor") == ctx.actor_id:
            staged = db.query(StagedMutation).filter(StagedMutation.id == claims["sub"]).first()

        if (
            staged is None
            or staged.actor_id != ctx.actor_id
            or staged.consumed_at is not None
            or staged.expires_at <= utcnow()
        ):
            AuditService.record_from_context(db, ctx, "staged_token_rejected", "staged_mutations", None,
                                             "Transfer token invalid, expired or already used")
            raise TokenError(reason="transfer_token_invalid")
        return staged

    @staticmethod
    def execute_staged_mutation(
        db: Session,
        ctx: RequestContext,
        transfer_token: str,
        pin: Optional[str]
    ) -> Dict[str, Any]:
        """
        Confirm a staged mutation with the acting admin's PIN and execute it.

        A rejected PIN leaves the staged record pending so it can be retried
        until it expires.

        Returns:
            {"kind": ..., "user_id": ...}
        """
        staged = PrivilegedActionService.load_staged(db, ctx, transfer_token)
        kind = staged.kind
        purpose = f"{kind.value} user {staged.target_user_id or 'new'}"

        PinService.verify(db, ctx, pin, purpose)

        now = utcnow()
        claimed = db.execute(
            update(StagedMutation)
            .where(StagedMutation.id == staged.id, StagedMutation.consumed_at.is_(None))
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            db.rollback()
            raise TokenError(reason="transfer_token_replayed")
        db.commit()

        try:
            user_id = PrivilegedActionService._apply(db, ctx, staged)
            db.commit()
        except (ValidationError, NotFoundError, TokenError) as e:
            db.rollback()
            detail = "; ".join(e.errors) if isinstance(e, ValidationError) else e.reason
            AuditService.record_from_context(db, ctx, f"{kind.value}_user_failed", "users",
                                             staged.target_user_id, detail)
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Staged {kind.value} {staged.id} rolled back: {e}")
            AuditService.record_from_context(db, ctx, f"{kind.value}_user_failed", "users",
                                             staged.target_user_id, "Transaction rolled back")
            raise TransactionError(reason="mutation_failed")

        AuditService.record_from_context(
            db, ctx, AUDIT_ACTIONS[kind], "users", user_id,
            "Action executed via PIN confirmation"
        )
        return {"kind": kind.value, "user_id": user_id}

    @staticmethod
    def _apply(db: Session, ctx: RequestContext, staged: StagedMutation) -> int:
        """Re-validate the held fields against current state and write them."""
        try:
            payload = _unseal(staged.payload)
        except InvalidToken:
            raise TokenError(reason="staged_payload_unreadable")

        try:
            if staged.kind == MutationKind.CREATE:
                data = NewUser.model_validate(payload)
            elif staged.kind == MutationKind.UPDATE:
                data = UserChanges.model_validate(payload)
        except SchemaError as e:
            raise ValidationError([err["msg"] for err in e.errors()], reason="staged_payload_invalid")

        if staged.kind == MutationKind.CREATE:
            DirectoryService.validate_new_user(db, data)
            return DirectoryService.create_user(db, data, is_active=True).id

        if staged.kind == MutationKind.UPDATE:
            user = DirectoryService.validate_changes(db, ctx.actor_id, staged.target_user_id, data)
            return DirectoryService.update_user(db, user, data).id

        user = DirectoryService.validate_delete(db, ctx.actor_id, staged.target_user_id)
        user_id = user.id
        DirectoryService.delete_user(db, user)
        return user_id

    @staticmethod
    def purge_expired(db: Session) -> int:
        """Drop staged records that can no longer be confirmed. Does not commit."""
        result = db.execute(
            StagedMutation.__table__.delete().where(
                or_(StagedMutation.expires_at <= utcnow(), StagedMutation.consumed_at.isnot(None))
            )
        )
        return result.rowcount or 0
