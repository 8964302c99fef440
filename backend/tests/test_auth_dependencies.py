import pathlib
import sys
from datetime import timedelta

import pytest
from fastapi import HTTPException


ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import backend.main as backend_main


def _fail_lookup(_uid: int):
    raise AssertionError("get_user_by_id should not be called")


@pytest.mark.parametrize("token", [None, "", "not-a-valid-token"])
def test_missing_or_garbled_cookie_is_unauthorized(monkeypatch, token):
    monkeypatch.setattr(backend_main, "get_user_by_id", _fail_lookup)

    with pytest.raises(HTTPException) as excinfo:
        backend_main.get_current_user(token)

    assert excinfo.value.status_code == 401
    assert excinfo.value.detail == {"error": "unauthorized", "message": "Not authenticated"}


def test_expired_token_skips_lookup(monkeypatch):
    expired_token = backend_main.create_access_token(subject="42", expires_delta=timedelta(minutes=-5))
    monkeypatch.setattr(backend_main, "get_user_by_id", _fail_lookup)

    with pytest.raises(HTTPException):
        backend_main.get_current_user(expired_token)


def test_non_numeric_subject_is_rejected():
    token = backend_main.create_access_token(subject="alice")

    assert backend_main.decode_session_subject(token) is None


def test_deleted_user_is_unauthorized(monkeypatch):
    monkeypatch.setattr(backend_main, "get_user_by_id", lambda uid: None)
    token = backend_main.create_access_token(subject="7")

    with pytest.raises(HTTPException) as excinfo:
        backend_main.get_current_user(token)

    assert excinfo.value.status_code == 401
    assert excinfo.value.detail["error"] == "unauthorized"


def test_valid_token_returns_user(monkeypatch):
    user = backend_main.SessionUser(id=123, username="alice", email="alice@example.com")
    monkeypatch.setattr(backend_main, "get_user_by_id", lambda uid: user if uid == 123 else None)

    token = backend_main.create_access_token(subject=str(user.id))

    assert backend_main.get_current_user(token) is user


def test_db_settings_round_timeout_up():
    settings = backend_main.load_db_settings({"DB_NAME": "ledger", "DB_CONNECT_TIMEOUT": "2.5"})

    assert settings["dbname"] == "ledger"
    assert settings["connect_timeout"] == 3
    with pytest.raises(ValueError):
        backend_main.load_db_settings({"DB_CONNECT_TIMEOUT": "-1"})


def test_app_mounts_billing_routes():
    paths = backend_main.app.openapi()["paths"]

    assert "get" in paths["/api/plans"]
    assert "post" in paths["/api/subscriptions/check-limits"]
    assert "post" in paths["/api/billing/webhook"]


def test_app_context_delegates_to_registered_resolver(monkeypatch):
    from backend import app_context

    monkeypatch.setattr(app_context, "_user_resolver", lambda **kwargs: kwargs)

    assert app_context.get_current_user(session_token="abc") == {"session_token": "abc"}
