"""
Role gate on the user management routes.
"""
from database.models import AuditLog
from conftest import USER_PASSWORD


def test_staff_cannot_reach_admin_routes(client, login, make_user, db_session):
    staff = make_user("carol", role="Staff")
    assert login("carol", USER_PASSWORD, "Staff").status_code == 200

    response = client.get("/api/users/pending")

    assert response.status_code == 403
    assert response.json()["code"] == "access_denied"
    entry = db_session.query(AuditLog).filter(AuditLog.action == "access_denied").one()
    assert entry.actor_id == staff.id
    assert entry.detail == "role=Staff required=Admin"


def test_student_cannot_stage_changes(client, login, make_user):
    make_user("danny", role="Student")
    login("danny", USER_PASSWORD, "Student")

    response = client.delete("/api/users/1")

    assert response.status_code == 403


def test_role_gate_runs_after_session_guard(client):
    response = client.get("/api/users/pending")

    assert response.status_code == 401
    assert response.json()["code"] == "unauthenticated"


def test_admin_passes_role_gate(admin_client):
    response = admin_client.get("/api/users/pending")

    assert response.status_code == 200
    assert response.json() == {"count": 0, "data": []}
