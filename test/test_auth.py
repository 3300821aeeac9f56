"""
Login, session guard, logout and registration over the HTTP API.
"""
from datetime import timedelta

from fastapi.testclient import TestClient

from app import app
from auth.security import hash_session_key
from core.utils import utcnow
from database.models import AuditLog, LoginAttempt, Session as DBSession, User, AdminPin
from conftest import ADMIN_PASSWORD, ADMIN_PIN, USER_PASSWORD

GENERIC_FAILURE = "Invalid username, password, or role."


def _failure_reasons(db_session):
    db_session.expire_all()
    return [
        entry.detail.split("reason=")[1]
        for entry in db_session.query(AuditLog).filter(AuditLog.action == "login_failed").order_by(AuditLog.id)
    ]


def test_staff_login_updates_counters_and_sets_session(client, login, make_user, db_session):
    alice = make_user("alice", role="Staff", login_count=4)

    response = login("alice", USER_PASSWORD, "Staff")

    assert response.status_code == 200
    body = response.json()
    assert body["user"]["login_count"] == 5
    assert body["user"]["role"] == "Staff"
    assert client.cookies.get("directory_session") == body["session_key"]

    db_session.expire_all()
    stored = db_session.get(User, alice.id)
    assert stored.login_count == 5
    assert stored.last_login is not None
    assert db_session.query(LoginAttempt).filter_by(user_id=alice.id, is_successful=True).count() == 1
    assert db_session.query(AuditLog).filter_by(action="login_success", actor_id=alice.id).count() == 1

    me = client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.json()["username"] == "alice"


def test_role_mismatch_is_generic_to_user_but_audited(client, login, make_user, db_session):
    alice = make_user("alice", role="Staff", login_count=4)

    response = login("alice", USER_PASSWORD, "Student")

    assert response.status_code == 401
    assert response.json()["detail"] == GENERIC_FAILURE
    assert _failure_reasons(db_session) == ["role_mismatch"]
    assert db_session.query(LoginAttempt).filter_by(user_id=alice.id, is_successful=False).count() == 1
    assert db_session.get(User, alice.id).login_count == 4


def test_every_failure_shows_the_same_message(client, login, make_user, db_session):
    make_user("alice", role="Staff")
    make_user("pending_bob", role="Student", is_active=False)

    responses = [
        login("nobody", USER_PASSWORD, "Staff"),
        login("pending_bob", USER_PASSWORD, "Student"),
        login("alice", "Wrong1234", "Staff"),
    ]

    assert {r.status_code for r in responses} == {401}
    assert {r.json()["detail"] for r in responses} == {GENERIC_FAILURE}
    assert _failure_reasons(db_session) == ["user_not_found", "pending_approval", "bad_password"]
    unknown = db_session.query(LoginAttempt).filter(LoginAttempt.user_id.is_(None)).one()
    assert unknown.is_successful is False


def test_admin_login_checks_pin_before_password(client, login, admin, db_session):
    missing = login(admin.username, ADMIN_PASSWORD, "Admin")
    wrong_pin = login(admin.username, "Wrong1234", "Admin", "000000")
    ok = login(admin.username, ADMIN_PASSWORD, "Admin", ADMIN_PIN)

    assert missing.status_code == 401
    assert wrong_pin.status_code == 401
    assert ok.status_code == 200
    assert _failure_reasons(db_session) == ["pin_invalid_format", "pin_mismatch"]


def test_admin_login_respects_pin_lock(client, login, admin, db_session):
    record = db_session.query(AdminPin).filter_by(user_id=admin.id).one()
    record.lock_until = utcnow() + timedelta(minutes=5)
    db_session.commit()

    response = login(admin.username, ADMIN_PASSWORD, "Admin", ADMIN_PIN)

    assert response.status_code == 401
    assert _failure_reasons(db_session) == ["pin_locked"]


def test_wrong_login_pins_do_not_lock_the_confirmation_gate(admin_client, admin, db_session):
    anonymous = TestClient(app)
    for _ in range(3):
        response = anonymous.post("/api/auth/login", json={
            "username": admin.username, "password": "x", "role": "Admin", "admin_pin": "000000"
        })
        assert response.status_code == 401

    db_session.expire_all()
    record = db_session.query(AdminPin).filter_by(user_id=admin.id).one()
    assert record.failed_attempts == 0
    assert record.lock_until is None

    token = admin_client.post("/api/users", json={
        "username": "mona_r",
        "password": "Student2026",
        "profile": {
            "role": "Student", "first_name": "Mona", "last_name": "Reyes",
            "email": "mona.reyes@school.edu", "dob": "2007-09-14", "age": 18,
        },
    }).json()["transfer_token"]
    confirmed = admin_client.post("/api/users/confirm", json={"transfer_token": token, "pin": ADMIN_PIN})
    assert confirmed.status_code == 200, confirmed.text


def test_login_rotates_presented_session(client, login, make_user):
    make_user("alice", role="Staff")
    first_key = login("alice", USER_PASSWORD, "Staff").json()["session_key"]

    second_key = login("alice", USER_PASSWORD, "Staff").json()["session_key"]

    assert second_key != first_key
    client.cookies.clear()
    stale = client.get("/api/auth/me", headers={"X-Session-Key": first_key})
    fresh = client.get("/api/auth/me", headers={"X-Session-Key": second_key})
    assert stale.status_code == 401
    assert fresh.status_code == 200


def test_missing_session_redirects_to_login(client):
    response = client.get("/api/auth/me")

    assert response.status_code == 401
    assert response.json()["code"] == "unauthenticated"
    assert response.json()["redirect"] == "/login?error=unauthorized"


def test_idle_session_times_out(client, login, make_user, db_session):
    make_user("alice", role="Staff")
    key = login("alice", USER_PASSWORD, "Staff").json()["session_key"]
    session = db_session.query(DBSession).filter_by(session_hash=hash_session_key(key)).one()
    session.last_activity = utcnow() - timedelta(seconds=901)
    db_session.commit()

    response = client.get("/api/auth/me")

    assert response.status_code == 401
    assert response.json()["code"] == "session_expired"
    assert response.json()["redirect"] == "/login?error=timeout"
    db_session.expire_all()
    assert db_session.get(DBSession, session.id).is_active is False
    assert client.get("/api/auth/me", headers={"X-Session-Key": key}).json()["code"] == "unauthenticated"


def test_activity_inside_window_extends_session(client, login, make_user, db_session):
    make_user("alice", role="Staff")
    key = login("alice", USER_PASSWORD, "Staff").json()["session_key"]
    session = db_session.query(DBSession).filter_by(session_hash=hash_session_key(key)).one()
    stale_activity = utcnow() - timedelta(seconds=880)
    session.last_activity = stale_activity
    db_session.commit()

    assert client.get("/api/auth/me").status_code == 200

    db_session.expire_all()
    assert db_session.get(DBSession, session.id).last_activity > stale_activity


def test_logout_destroys_session(client, login, make_user, db_session):
    make_user("alice", role="Staff")
    key = login("alice", USER_PASSWORD, "Staff").json()["session_key"]

    assert client.post("/api/auth/logout").status_code == 200

    assert client.get("/api/auth/me", headers={"X-Session-Key": key}).status_code == 401
    assert db_session.query(AuditLog).filter_by(action="logout").count() == 1


def test_self_registration_waits_for_approval(admin_client, db_session):
    response = admin_client.post("/api/auth/register", json={
        "username": "new_student",
        "password": "Student123",
        "confirm_password": "Student123",
        "profile": {
            "role": "Student",
            "first_name": "Nina",
            "last_name": "Lee",
            "email": "nina.lee@school.edu",
            "dob": "2006-04-02",
            "age": 19,
        },
    })

    assert response.status_code == 201, response.text
    user = db_session.query(User).filter_by(username="new_student").one()
    assert user.is_active is False
    assert user.student_profile.is_active is False
    assert db_session.query(AuditLog).filter_by(action="self_registration").count() == 1

    pending = admin_client.get("/api/users/pending").json()
    assert pending["count"] == 1
    assert pending["data"][0]["username"] == "new_student"


def test_registration_reports_every_field_problem(client):
    response = client.post("/api/auth/register", json={
        "username": "x!",
        "password": "short",
        "confirm_password": "short",
        "profile": {"role": "Staff", "first_name": "J", "last_name": "Doe", "email": "jd@gmail.com"},
    })

    assert response.status_code == 422
    errors = response.json()["errors"]
    assert len(errors) == 4
    assert "Email must end with @school.edu." in errors


def test_admin_accounts_cannot_self_register(client):
    response = client.post("/api/auth/register", json={
        "username": "sneaky",
        "password": "Sneaky123",
        "confirm_password": "Sneaky123",
        "profile": {"role": "Admin", "email": "sneaky@school.edu", "pin": "123456"},
    })

    assert response.status_code == 422
    assert response.json()["errors"] == ["Invalid role selected."]
