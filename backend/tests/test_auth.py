"""Test authentication utilities and the current-user dependency."""

from datetime import timedelta

import pytest
from fastapi import HTTPException

from app.auth import AUTH_COOKIE_NAME, create_access_token, decode_token
from app.config import get_settings


class TestAuthUtilities:
    """Test token helpers."""

    def test_create_and_decode_token(self):
        settings = get_settings()
        token = create_access_token("usr_test123456", settings)
        assert isinstance(token, str)

        payload = decode_token(token, settings)
        assert payload["sub"] == "usr_test123456"
        assert payload["type"] == "access"
        assert "exp" in payload
        assert "iat" in payload
        assert "email" not in payload

    def test_token_carries_email(self):
        settings = get_settings()
        token = create_access_token("usr_abc", settings, email="abc@example.test")
        assert decode_token(token, settings)["email"] == "abc@example.test"

    def test_expired_token_rejected(self):
        settings = get_settings()
        token = create_access_token("usr_abc", settings, expires_delta=timedelta(seconds=-5))
        with pytest.raises(HTTPException) as exc_info:
            decode_token(token, settings)
        assert exc_info.value.status_code == 401

    def test_garbage_token_rejected(self):
        with pytest.raises(HTTPException) as exc_info:
            decode_token("not-a-jwt", get_settings())
        assert exc_info.value.status_code == 401


class TestCurrentUser:
    """Test authentication on real routes."""

    def test_requires_auth(self, client):
        response = client.get("/api/v1/payments/me")
        assert response.status_code == 401

    def test_bearer_token(self, client, poster_headers):
        response = client.get("/api/v1/payments/me", headers=poster_headers)
        assert response.status_code == 200
        assert response.json() == []

    def test_cookie_fallback(self, client, poster_id):
        token = create_access_token(poster_id, get_settings())
        client.cookies.set(AUTH_COOKIE_NAME, token)
        response = client.get("/api/v1/earnings/me")
        assert response.status_code == 200

    def test_token_without_subject(self, client):
        from jose import jwt

        settings = get_settings()
        token = jwt.encode({"type": "access"}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
        response = client.get("/api/v1/payments/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
