"""
Shared fixtures: temporary SQLite database, seeded identities and an API client.
"""
import os
import sys
import tempfile
from datetime import date
from pathlib import Path

from cryptography.fernet import Fernet

# Add parent directory to the system path
sys.path.insert(0, str(Path(__file__).parent.parent))

_TMP_DIR = Path(tempfile.mkdtemp(prefix="directory-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR / 'test.db'}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_FILE"] = str(_TMP_DIR / "app.log")
os.environ["RATE_LIMIT_PER_MINUTE"] = "100000"
os.environ["RATE_LIMIT_PER_HOUR"] = "100000"
os.environ["RATE_LIMIT_CREDENTIAL_PER_MINUTE"] = "100000"

import pytest
from fastapi.testclient import TestClient

import config
from auth.context import ClientInfo, CurrentIdentity, RequestContext
from auth.security import get_password_hash, get_pin_hash
from database.connection import Database
from database.models import User, UserRole, StaffProfile, StudentProfile, AdminPin

ADMIN_PASSWORD = "Admin1234"
ADMIN_PIN = "123456"
USER_PASSWORD = "Passw0rd1"


@pytest.fixture(scope="session")
def database():
    config.db = Database(config.DATABASE_URL)
    yield config.db
    config.db.engine.dispose()


@pytest.fixture(autouse=True)
def fresh_schema(database):
    database.drop_tables()
    database.create_tables()
    yield


@pytest.fixture
def db_session(database):
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(database):
    from app import app
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_user(db_session):
    """Insert an identity with its profile (or PIN) row directly."""
    def _make(
        username: str,
        role: str = "Staff",
        password: str = USER_PASSWORD,
        is_active: bool = True,
        pin: str = ADMIN_PIN,
        login_count: int = 0,
        email: str = None
    ) -> User:
        email = email or f"{username}@school.edu"
        user = User(
            username=username,
            email=email,
            hashed_password=get_password_hash(password),
            role=UserRole(role),
            is_active=is_active,
            login_count=login_count,
        )
        db_session.add(user)
        db_session.flush()

        if role == "Admin":
            db_session.add(AdminPin(user_id=user.id, pin_hash=get_pin_hash(pin), failed_attempts=0))
        elif role == "Staff":
            db_session.add(StaffProfile(
                user_id=user.id, first_name=username.capitalize(), last_name="Tester", email=email,
                department="Science", salary=50000.0, hire_date=date(2020, 1, 1), is_active=is_active,
            ))
        else:
            db_session.add(StudentProfile(
                user_id=user.id, first_name=username.capitalize(), last_name="Tester", email=email,
                date_of_birth=date(2005, 5, 1), age=20, gpa=3.2, is_active=is_active,
            ))
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture
def login(client):
    def _login(username: str, password: str, role: str, admin_pin: str = None):
        payload = {"username": username, "password": password, "role": role}
        if admin_pin is not None:
            payload["admin_pin"] = admin_pin
        return client.post("/api/auth/login", json=payload)

    return _login


@pytest.fixture
def admin(make_user):
    return make_user("admin_one", role="Admin", password=ADMIN_PASSWORD)


@pytest.fixture
def admin_client(client, login, admin):
    """Client holding a logged-in admin session cookie."""
    response = login(admin.username, ADMIN_PASSWORD, "Admin", ADMIN_PIN)
    assert response.status_code == 200, response.text
    return client


@pytest.fixture
def admin_ctx(admin):
    return RequestContext(
        client=ClientInfo(ip_address="127.0.0.1", user_agent="pytest"),
        identity=CurrentIdentity(id=admin.id, username=admin.username, role=UserRole.ADMIN),
    )
