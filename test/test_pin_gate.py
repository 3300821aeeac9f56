"""
Admin PIN gate: counter, lockout and lazy unlock.
"""
from datetime import datetime, timedelta

import pytest

from core.exceptions import ConfigurationError, LockoutError, PinRejectedError, ValidationError
from database.models import AdminPin, AuditLog
from services.pin_service import PinService
from conftest import ADMIN_PIN

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _pin_record(db_session, user_id):
    db_session.expire_all()
    return db_session.query(AdminPin).filter(AdminPin.user_id == user_id).one()


def test_correct_pin_passes_and_resets_counter(db_session, admin):
    record = _pin_record(db_session, admin.id)
    record.failed_attempts = 1
    db_session.commit()

    PinService.check(db_session, admin.id, ADMIN_PIN, NOW)

    assert _pin_record(db_session, admin.id).failed_attempts == 0


def test_wrong_pins_count_down_then_lock(db_session, admin):
    with pytest.raises(PinRejectedError) as first:
        PinService.check(db_session, admin.id, "000000", NOW)
    assert first.value.attempts_left == 2
    assert first.value.user_message == "Incorrect admin PIN. Attempts left: 2"

    with pytest.raises(PinRejectedError) as second:
        PinService.check(db_session, admin.id, "000000", NOW)
    assert second.value.attempts_left == 1

    with pytest.raises(LockoutError) as locked:
        PinService.check(db_session, admin.id, "000000", NOW)
    assert locked.value.retry_after == 600
    assert "10 minutes" in locked.value.user_message

    record = _pin_record(db_session, admin.id)
    assert record.failed_attempts == 0
    assert record.lock_until == NOW + timedelta(minutes=10)


def test_third_failure_from_two_locks_for_ten_minutes(db_session, admin):
    record = _pin_record(db_session, admin.id)
    record.failed_attempts = 2
    db_session.commit()

    with pytest.raises(LockoutError):
        PinService.check(db_session, admin.id, "999999", NOW)

    record = _pin_record(db_session, admin.id)
    assert record.failed_attempts == 0
    assert record.lock_until == NOW + timedelta(minutes=10)


def test_locked_gate_rejects_correct_pin_without_counting(db_session, admin):
    record = _pin_record(db_session, admin.id)
    record.lock_until = NOW + timedelta(minutes=4)
    db_session.commit()

    with pytest.raises(LockoutError) as locked:
        PinService.check(db_session, admin.id, ADMIN_PIN, NOW)
    assert "4 minutes" in locked.value.user_message

    record = _pin_record(db_session, admin.id)
    assert record.failed_attempts == 0
    assert record.lock_until == NOW + timedelta(minutes=4)


def test_lock_clears_once_time_has_passed(db_session, admin):
    record = _pin_record(db_session, admin.id)
    record.lock_until = NOW - timedelta(seconds=1)
    db_session.commit()

    PinService.check(db_session, admin.id, ADMIN_PIN, NOW)

    record = _pin_record(db_session, admin.id)
    assert record.lock_until is None
    assert record.failed_attempts == 0


def test_lazy_unlock_belongs_to_the_attempt_transaction(db_session, admin):
    record = _pin_record(db_session, admin.id)
    record.lock_until = NOW - timedelta(seconds=1)
    db_session.commit()

    loaded = PinService.load(db_session, admin.id, NOW)
    assert loaded.lock_until is None
    db_session.rollback()

    assert _pin_record(db_session, admin.id).lock_until == NOW - timedelta(seconds=1)


def test_login_check_honours_lock_without_counting(db_session, admin):
    with pytest.raises(PinRejectedError):
        PinService.check(db_session, admin.id, "000000", NOW, count_failure=False)
    assert _pin_record(db_session, admin.id).failed_attempts == 0

    record = _pin_record(db_session, admin.id)
    record.lock_until = NOW + timedelta(minutes=3)
    db_session.commit()

    with pytest.raises(LockoutError):
        PinService.check(db_session, admin.id, ADMIN_PIN, NOW, count_failure=False)


def test_malformed_pin_does_not_consume_an_attempt(db_session, admin):
    with pytest.raises(ValidationError) as exc:
        PinService.check(db_session, admin.id, "12ab", NOW)
    assert exc.value.errors == ["Admin PIN must be exactly 6 digits."]
    assert _pin_record(db_session, admin.id).failed_attempts == 0


def test_missing_pin_record_is_a_configuration_error(db_session, make_user):
    staff = make_user("carol", role="Staff")
    with pytest.raises(ConfigurationError):
        PinService.check(db_session, staff.id, ADMIN_PIN, NOW)


def test_verify_audits_failures(db_session, admin, admin_ctx):
    with pytest.raises(PinRejectedError):
        PinService.verify(db_session, admin_ctx, "111111", "delete user 9")

    entry = db_session.query(AuditLog).filter(AuditLog.action == "pin_failed").one()
    assert entry.actor_id == admin.id
    assert entry.detail == "delete user 9: 2 attempts left"
    assert entry.ip_address == "127.0.0.1"


def test_change_pin_endpoint(admin_client, db_session, admin, login):
    rejected = admin_client.post("/api/auth/change-pin", json={
        "old_pin": "000000", "new_pin": "654321", "confirm_pin": "654321"
    })
    assert rejected.status_code == 403
    assert rejected.json()["attempts_left"] == 2

    mismatch = admin_client.post("/api/auth/change-pin", json={
        "old_pin": ADMIN_PIN, "new_pin": "654321", "confirm_pin": "654320"
    })
    assert mismatch.status_code == 422
    assert _pin_record(db_session, admin.id).failed_attempts == 1

    changed = admin_client.post("/api/auth/change-pin", json={
        "old_pin": ADMIN_PIN, "new_pin": "654321", "confirm_pin": "654321"
    })
    assert changed.status_code == 200
    assert _pin_record(db_session, admin.id).failed_attempts == 0

    admin_client.cookies.clear()
    assert login(admin.username, "Admin1234", "Admin", ADMIN_PIN).status_code == 401
    assert login(admin.username, "Admin1234", "Admin", "654321").status_code == 200
