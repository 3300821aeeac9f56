"""
Password reset tokens: issue, lazy expiry and single use.
"""
from datetime import timedelta

import pytest

from core.exceptions import NotFoundError, TokenError, ValidationError
from core.utils import utcnow
from database.models import PasswordReset, ResetTokenStatus, Session as DBSession, User, AuditLog
from services.reset_token_service import ResetTokenService
from services.session_service import SessionService
from auth.context import ClientInfo
from auth.security import verify_password
from conftest import USER_PASSWORD

NEW_PASSWORD = "Fresh2026pass"


def test_issue_by_username_or_profile_email(db_session, make_user):
    user = make_user("erin", role="Student", email="Erin.Park@school.edu")

    token, record = ResetTokenService.issue(db_session, "erin")
    assert len(token) == 64
    assert record.status == ResetTokenStatus.PENDING
    assert record.expires_at - record.created_at == timedelta(minutes=30)

    _, by_email = ResetTokenService.issue(db_session, "erin.park@SCHOOL.edu")
    assert by_email.user_id == user.id


def test_unknown_account_is_not_found(db_session):
    with pytest.raises(NotFoundError):
        ResetTokenService.issue(db_session, "ghost@school.edu")


def test_reissue_replaces_pending_token(db_session, make_user):
    user = make_user("erin", role="Student")
    first, _ = ResetTokenService.issue(db_session, "erin")
    second, _ = ResetTokenService.issue(db_session, "erin")

    assert first != second
    rows = db_session.query(PasswordReset).filter(PasswordReset.user_id == user.id).all()
    assert [row.token for row in rows] == [second]
    with pytest.raises(TokenError):
        ResetTokenService.verify(db_session, first)


def test_token_can_be_consumed_once(db_session, make_user):
    user = make_user("erin", role="Student")
    token, _ = ResetTokenService.issue(db_session, "erin")

    record = ResetTokenService.consume(db_session, token, NEW_PASSWORD, NEW_PASSWORD)
    assert record.status == ResetTokenStatus.USED
    assert record.used_at is not None

    db_session.expire_all()
    assert verify_password(NEW_PASSWORD, db_session.get(User, user.id).hashed_password)
    with pytest.raises(TokenError):
        ResetTokenService.consume(db_session, token, "Another2026x")


def test_overdue_token_is_expired_on_lookup(db_session, make_user):
    make_user("erin", role="Student")
    token, record = ResetTokenService.issue(db_session, "erin")
    record.expires_at = utcnow() - timedelta(seconds=1)
    db_session.commit()

    with pytest.raises(TokenError):
        ResetTokenService.verify(db_session, token)

    db_session.expire_all()
    assert db_session.get(PasswordReset, record.id).status == ResetTokenStatus.EXPIRED


def test_weak_password_leaves_token_pending(db_session, make_user):
    make_user("erin", role="Student")
    token, record = ResetTokenService.issue(db_session, "erin")

    with pytest.raises(ValidationError) as exc:
        ResetTokenService.consume(db_session, token, "weak")
    assert exc.value.reason == "reset_password_weak"

    with pytest.raises(ValidationError):
        ResetTokenService.consume(db_session, token, NEW_PASSWORD, "Mismatch2026")

    db_session.expire_all()
    assert db_session.get(PasswordReset, record.id).status == ResetTokenStatus.PENDING


def test_consume_revokes_open_sessions(db_session, make_user):
    user = make_user("erin", role="Student")
    SessionService.create_session(db_session, user, ClientInfo("10.0.0.5", "pytest"))
    token, _ = ResetTokenService.issue(db_session, "erin")

    ResetTokenService.consume(db_session, token, NEW_PASSWORD)

    db_session.expire_all()
    active = db_session.query(DBSession).filter(DBSession.user_id == user.id, DBSession.is_active == True)
    assert active.count() == 0


def test_reset_request_response_does_not_reveal_accounts(client, make_user, db_session):
    make_user("erin", role="Student")

    known = client.post("/api/auth/reset-request", json={"username_or_email": "erin"})
    unknown = client.post("/api/auth/reset-request", json={"username_or_email": "nobody"})

    assert known.status_code == unknown.status_code == 200
    assert known.json()["message"] == unknown.json()["message"]
    assert "reset_url" not in unknown.json()
    assert known.json()["reset_url"].startswith("http://localhost:8000/reset-password?token=")
    actions = [row.action for row in db_session.query(AuditLog).order_by(AuditLog.id)]
    assert actions == ["reset_requested", "reset_request_unknown"]


def test_reset_flow_over_http(client, login, make_user):
    make_user("erin", role="Student")
    reset_url = client.post("/api/auth/reset-request", json={"username_or_email": "erin"}).json()["reset_url"]
    token = reset_url.split("token=")[1]

    assert client.get("/api/auth/reset-password/verify", params={"token": token}).status_code == 200

    reset = client.post("/api/auth/reset-password", json={
        "token": token, "new_password": NEW_PASSWORD, "confirm_password": NEW_PASSWORD
    })
    assert reset.status_code == 200

    replay = client.post("/api/auth/reset-password", json={
        "token": token, "new_password": NEW_PASSWORD, "confirm_password": NEW_PASSWORD
    })
    assert replay.status_code == 400
    assert replay.json()["code"] == "invalid_token"

    assert login("erin", USER_PASSWORD, "Student").status_code == 401
    assert login("erin", NEW_PASSWORD, "Student").status_code == 200
