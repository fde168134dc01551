"""Tests for password hashing, registration, login and password resets."""

from datetime import timedelta

import pytest

from lobster.errors import LobsterError
from lobster.models.action_log import ActionLog
from lobster.models.auth import PasswordResetToken
from lobster.models.user import UserStatus
from lobster.services.auth_service import AuthService, check_password, make_password
from lobster.services.common import utcnow
from tests.conftest import PASSWORD, make_user

IP = "10.0.0.1"


def test_password_hash_format_and_check():
    stored = make_password("hunter22")
    salt_hex, hash_hex = stored.split(":")
    assert len(bytes.fromhex(salt_hex)) == 16
    assert len(bytes.fromhex(hash_hex)) == 64
    assert check_password("hunter22", stored)
    assert not check_password("hunter23", stored)


def test_password_hash_is_salted():
    assert make_password("same-password") != make_password("same-password")


def test_check_password_rejects_malformed():
    assert not check_password("x", "not-a-hash")


def test_create_account(db_session, outbox):
    user = AuthService(db_session).create(IP, "bob", "secret123", "bob@example.com")
    db_session.commit()
    assert user.status == UserStatus.new
    assert check_password("secret123", user.password_hash)
    assert db_session.query(ActionLog).filter_by(user_id=user.id, name="Registered account").count() == 1
    # admin is told about new accounts
    assert any("bob" in message["body"] for message in outbox)


@pytest.mark.parametrize(
    ("username", "password", "code"),
    [
        ("ab", "secret123", "username_length"),
        ("bad\tname", "secret123", "username_invalid_characters"),
        ("carol", "123", "password_length"),
    ],
)
def test_create_validation(db_session, username, password, code):
    with pytest.raises(LobsterError) as excinfo:
        AuthService(db_session).create(IP, username, password)
    assert excinfo.value.code == code


def test_create_rejects_duplicates(db_session, user):
    svc = AuthService(db_session)
    with pytest.raises(LobsterError) as excinfo:
        svc.create(IP, user.username, "secret123")
    assert excinfo.value.code == "username_taken"
    with pytest.raises(LobsterError) as excinfo:
        svc.create(IP, "someone", "secret123", user.email)
    assert excinfo.value.code == "email_taken"


def test_create_is_rate_limited(db_session):
    svc = AuthService(db_session)
    for i in range(3):
        svc.create(IP, f"user{i}", "secret123")
    with pytest.raises(LobsterError) as excinfo:
        svc.create(IP, "user4", "secret123")
    assert excinfo.value.code == "try_again_later"


def test_login(db_session, user):
    assert AuthService(db_session).login(IP, user.username, PASSWORD).id == user.id


def test_login_wrong_password_then_limited(db_session, user):
    svc = AuthService(db_session)
    for _ in range(12):
        with pytest.raises(LobsterError) as excinfo:
            svc.login(IP, user.username, "wrong-password")
        assert excinfo.value.code == "incorrect_username_or_password"
    with pytest.raises(LobsterError) as excinfo:
        svc.login(IP, user.username, PASSWORD)
    assert excinfo.value.code == "try_again_later"


def test_login_refuses_disabled_user(db_session):
    make_user(db_session, "mallory", status=UserStatus.disabled)
    with pytest.raises(LobsterError):
        AuthService(db_session).login(IP, "mallory", PASSWORD)


def test_change_password(db_session, user, outbox):
    svc = AuthService(db_session)
    with pytest.raises(LobsterError) as excinfo:
        svc.change_password(IP, user.id, "wrong-password", "newsecret")
    assert excinfo.value.code == "incorrect_password"
    svc.change_password(IP, user.id, PASSWORD, "newsecret")
    assert check_password("newsecret", user.password_hash)
    assert outbox


def test_pwreset_flow(db_session, user, outbox):
    svc = AuthService(db_session)
    svc.pwreset_request(IP, user.username, user.email)
    token = db_session.query(PasswordResetToken).filter_by(user_id=user.id).one().token
    assert any(token in message["body"] for message in outbox)

    with pytest.raises(LobsterError) as excinfo:
        svc.pwreset_request(IP, user.username, user.email)
    assert excinfo.value.code == "pwreset_outstanding"

    with pytest.raises(LobsterError) as excinfo:
        svc.pwreset_submit(IP, user.id, "wrong-token", "newsecret")
    assert excinfo.value.code == "incorrect_token"

    svc.pwreset_submit(IP, user.id, token, "newsecret")
    db_session.refresh(user)
    assert check_password("newsecret", user.password_hash)
    assert db_session.query(PasswordResetToken).count() == 0


def test_pwreset_requires_matching_email(db_session, user):
    with pytest.raises(LobsterError) as excinfo:
        AuthService(db_session).pwreset_request(IP, user.username, "other@example.com")
    assert excinfo.value.code == "incorrect_username_email"


def test_cleanup_pwreset_drops_expired(db_session, user):
    db_session.add(PasswordResetToken(user_id=user.id, token="x" * 32, time=utcnow() - timedelta(hours=2)))
    db_session.commit()
    assert AuthService(db_session).cleanup_pwreset() == 1
