"""
Tests for authentication.

Covers:
- Password hashing
- JWT creation, decoding, revocation
- CSRF and security-header middleware
- Register / login / logout / me endpoints, including the tenant context
  returned at login and forgotten at logout
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import jwt as pyjwt
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tenantgate_shared.schemas.common import OrgRole

from tenantgate.context import SelectionStore
from tenantgate.core.auth import (
    create_jwt,
    decode_jwt,
    generate_csrf_token,
    hash_password,
    verify_password,
)
from tenantgate.core.middleware import CSRFMiddleware, SECURITY_HEADERS, SecurityHeadersMiddleware

from conftest import TEST_PASSWORD, bearer


# ---------------------------------------------------------------------------
# Unit Tests: Password hashing
# ---------------------------------------------------------------------------

class TestPasswordHashing:
    def test_hash_and_verify(self):
        password = "MySecureP@ssw0rd!"
        hashed = hash_password(password)
        assert hashed != password
        assert verify_password(password, hashed)

    def test_wrong_password_fails(self):
        hashed = hash_password("correct-password")
        assert not verify_password("wrong-password", hashed)

    def test_different_hashes_for_same_password(self):
        """bcrypt uses random salt, so hashes differ."""
        h1 = hash_password("same")
        h2 = hash_password("same")
        assert h1 != h2
        assert verify_password("same", h1)
        assert verify_password("same", h2)


# ---------------------------------------------------------------------------
# Unit Tests: JWT
# ---------------------------------------------------------------------------

class TestJWT:
    def test_create_and_decode(self):
        uid = uuid.uuid4()
        token, jti = create_jwt(uid)
        payload = decode_jwt(token)
        assert payload["sub"] == str(uid)
        assert payload["jti"] == jti

    def test_token_carries_identity_only(self):
        token, _ = create_jwt(uuid.uuid4())
        assert set(decode_jwt(token)) == {"sub", "iat", "exp", "jti"}

    def test_expired_jwt_raises(self):
        token, _ = create_jwt(uuid.uuid4(), expires_delta=timedelta(seconds=-1))
        with pytest.raises(pyjwt.ExpiredSignatureError):
            decode_jwt(token)

    def test_tampered_jwt_raises(self):
        token, _ = create_jwt(uuid.uuid4())
        tampered = token[:-5] + "XXXXX"
        with pytest.raises(pyjwt.InvalidTokenError):
            decode_jwt(tampered)


class TestCSRFToken:
    def test_generates_unique_tokens(self):
        t1 = generate_csrf_token()
        t2 = generate_csrf_token()
        assert t1 != t2
        assert len(t1) > 20


# ---------------------------------------------------------------------------
# Unit Tests: JWT Revocation (mocked Redis)
# ---------------------------------------------------------------------------

class TestJWTRevocation:
    async def test_revoke_and_check(self):
        mock_redis = AsyncMock()
        mock_redis.setex = AsyncMock()
        mock_redis.exists = AsyncMock(return_value=1)

        with patch("tenantgate.core.auth.get_redis", return_value=mock_redis):
            from tenantgate.core.auth import is_jwt_revoked, revoke_jwt

            await revoke_jwt("test-jti-123")
            mock_redis.setex.assert_called_once_with("tg:jwt:revoked:test-jti-123", 3600, "1")

            result = await is_jwt_revoked("test-jti-123")
            assert result is True

    async def test_non_revoked_jwt(self):
        mock_redis = AsyncMock()
        mock_redis.exists = AsyncMock(return_value=0)

        with patch("tenantgate.core.auth.get_redis", return_value=mock_redis):
            from tenantgate.core.auth import is_jwt_revoked

            result = await is_jwt_revoked("non-existent-jti")
            assert result is False


# ---------------------------------------------------------------------------
# Integration Tests: Middleware
# ---------------------------------------------------------------------------

class TestSecurityHeadersMiddleware:
    def test_headers_present(self):
        app = FastAPI()
        app.add_middleware(SecurityHeadersMiddleware)

        @app.get("/test")
        async def test_endpoint():
            return {"ok": True}

        client = TestClient(app)
        resp = client.get("/test")
        assert resp.status_code == 200
        for header, value in SECURITY_HEADERS.items():
            assert resp.headers.get(header) == value


class TestCSRFMiddleware:
    def _make_app(self) -> FastAPI:
        app = FastAPI()
        app.add_middleware(CSRFMiddleware)

        @app.get("/test")
        async def get_test():
            return {"ok": True}

        @app.post("/test")
        async def post_test():
            return {"ok": True}

        return app

    def test_get_passes_without_csrf(self):
        client = TestClient(self._make_app())
        resp = client.get("/test")
        assert resp.status_code == 200

    def test_post_with_bearer_skips_csrf(self):
        client = TestClient(self._make_app())
        resp = client.post("/test", headers={"Authorization": "Bearer some-jwt"})
        assert resp.status_code == 200

    def test_post_without_session_cookie_passes(self):
        """No session cookie = not a browser request, skip CSRF."""
        client = TestClient(self._make_app())
        resp = client.post("/test")
        assert resp.status_code == 200

    def test_post_with_session_but_no_csrf_fails(self):
        client = TestClient(self._make_app(), cookies={"tg_session": "some-jwt"})
        resp = client.post("/test")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "CSRF_VALIDATION_FAILED"

    def test_post_with_matching_csrf_passes(self):
        csrf_token = "test-csrf-token"
        client = TestClient(
            self._make_app(),
            cookies={"tg_session": "some-jwt", "tg_csrf": csrf_token},
        )
        resp = client.post("/test", headers={"X-CSRF-Token": csrf_token})
        assert resp.status_code == 200

    def test_post_with_mismatched_csrf_fails(self):
        client = TestClient(
            self._make_app(),
            cookies={"tg_session": "some-jwt", "tg_csrf": "token-a"},
        )
        resp = client.post("/test", headers={"X-CSRF-Token": "token-b"})
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Integration Tests: Auth Endpoints
# ---------------------------------------------------------------------------

class TestAuthEndpoints:
    async def test_register(self, client):
        resp = await client.post(
            "/api/v1/auth/register",
            json={"email": "Erin@Example.com", "display_name": "Erin", "password": TEST_PASSWORD},
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["email"] == "erin@example.com"
        assert data["system_role"] == "user"

    async def test_register_duplicate_email(self, client, factory):
        await factory.user("erin", email="erin@example.com")
        resp = await client.post(
            "/api/v1/auth/register",
            json={"email": "erin@example.com", "display_name": "Erin", "password": TEST_PASSWORD},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "CONFLICT"

    async def test_register_short_password(self, client):
        resp = await client.post(
            "/api/v1/auth/register",
            json={"email": "erin@example.com", "display_name": "Erin", "password": "short"},
        )
        assert resp.status_code == 422

    async def test_login_returns_ready_context(self, client, factory):
        alice = await factory.user("alice", email="alice@example.com", password=TEST_PASSWORD)
        org = await factory.org("Acme")
        await factory.org_member(alice, org, OrgRole.OWNER, is_default=True)

        resp = await client.post(
            "/api/v1/auth/login", json={"email": "alice@example.com", "password": TEST_PASSWORD}
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["context"]["state"] == "ready"
        assert data["context"]["organisation_id"] == str(org.id)
        assert "tg_session" in resp.cookies
        assert "tg_csrf" in resp.cookies

    async def test_login_without_organisations(self, client, factory):
        await factory.user("dave", email="dave@example.com", password=TEST_PASSWORD)
        resp = await client.post(
            "/api/v1/auth/login", json={"email": "dave@example.com", "password": TEST_PASSWORD}
        )
        assert resp.status_code == 200
        assert resp.json()["context"]["state"] == "no_access"

    async def test_login_wrong_password(self, client, factory):
        await factory.user("alice", email="alice@example.com", password=TEST_PASSWORD)
        resp = await client.post(
            "/api/v1/auth/login", json={"email": "alice@example.com", "password": "wrong-password"}
        )
        assert resp.status_code == 401
        assert resp.json() == {
            "error": {"code": "NOT_AUTHENTICATED", "message": "Invalid email or password", "status": 401}
        }

    async def test_me(self, client, factory):
        alice = await factory.user("alice", email="alice@example.com")
        resp = await client.get("/api/v1/auth/me", headers=bearer(alice))
        assert resp.status_code == 200
        assert resp.json()["id"] == str(alice.id)

    async def test_me_without_session(self, client):
        resp = await client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "NOT_AUTHENTICATED"

    async def test_logout_revokes_and_forgets_selection(self, client, fake_redis, acme):
        headers = bearer(acme.carol)
        resp = await client.get("/api/v1/context", headers=headers)
        assert resp.json()["organisation_id"] == str(acme.org.id)

        resp = await client.post("/api/v1/auth/logout", headers=headers)
        assert resp.status_code == 204
        assert await SelectionStore(fake_redis, acme.carol.id).get() == (None, None)

        resp = await client.get("/api/v1/auth/me", headers=headers)
        assert resp.status_code == 401
