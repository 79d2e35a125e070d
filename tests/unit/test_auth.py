import time

import jwt
import pytest
from fastapi import HTTPException

from syncwatch.auth import verify
from syncwatch.auth.verify import admin_dependency, verify_jwt

SECRET = "test-secret"


@pytest.fixture(autouse=True)
def jwt_settings(monkeypatch):
    monkeypatch.setattr(verify.settings, "JWT_SECRET", SECRET)
    monkeypatch.setattr(verify.settings, "JWT_AUDIENCE", "authenticated")


def _token(**claims):
    payload = {"sub": "user-123", "aud": "authenticated", "exp": int(time.time()) + 60}
    payload.update(claims)
    return jwt.encode(payload, SECRET, algorithm="HS256")


def test_valid_token_returns_claims():
    assert verify_jwt(_token())["sub"] == "user-123"


def test_expired_token_is_rejected():
    with pytest.raises(HTTPException) as exc_info:
        verify_jwt(_token(exp=int(time.time()) - 10))
    assert exc_info.value.status_code == 401


def test_missing_secret_is_service_unavailable(monkeypatch):
    monkeypatch.setattr(verify.settings, "JWT_SECRET", None)
    with pytest.raises(HTTPException) as exc_info:
        verify_jwt(_token())
    assert exc_info.value.status_code == 503


def test_admin_dependency_accepts_role_claim_or_app_metadata():
    assert admin_dependency({"sub": "a", "role": "admin"})["sub"] == "a"
    assert admin_dependency({"sub": "b", "app_metadata": {"roles": ["admin"]}})["sub"] == "b"


def test_admin_dependency_rejects_regular_users():
    with pytest.raises(HTTPException) as exc_info:
        admin_dependency({"sub": "user-123", "role": "authenticated"})
    assert exc_info.value.status_code == 403
