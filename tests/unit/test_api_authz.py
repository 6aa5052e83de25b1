from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from apps.api.authz import (
    RequestIdentity,
    get_idempotency_key,
    get_request_context,
    get_request_identity,
    hipaa_enforcement_enabled,
)
from packages.shared.models import RequestContext


def _request(method: str = "GET", path: str = "/encounters", headers: list | None = None) -> Request:
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "path": path,
        "raw_path": path.encode("utf-8"),
        "headers": headers or [],
        "query_string": b"",
        "server": ("testserver", 80),
        "client": ("127.0.0.1", 12345),
        "scheme": "http",
        "state": {},
    }
    return Request(scope)


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _make_jwt(secret: str, *, user_id: str, tenant_id: str, method: str, path: str, ttl: int = 60) -> str:
    now = int(time.time())
    header = {"alg": "HS256", "typ": "JWT"}
    payload = {
        "sub": user_id,
        "tenant_id": tenant_id,
        "iat": now,
        "exp": now + ttl,
        "mth": method.upper(),
        "pth": path,
    }
    h = _b64url(json.dumps(header).encode("utf-8"))
    p = _b64url(json.dumps(payload).encode("utf-8"))
    signing_input = f"{h}.{p}".encode("utf-8")
    sig = hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest()
    return f"{h}.{p}.{_b64url(sig)}"


def _jwt_mode(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HIPAA_ENFORCEMENT", "true")
    monkeypatch.setenv("API_INTERNAL_AUTH_MODE", "jwt")
    monkeypatch.setenv("API_INTERNAL_JWT_SECRET", "x" * 32)


def test_hipaa_enforcement_disabled_by_default(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("HIPAA_ENFORCEMENT", raising=False)
    assert hipaa_enforcement_enabled() is False


def test_get_request_identity_returns_none_when_disabled(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("HIPAA_ENFORCEMENT", "false")
    identity = get_request_identity(_request(), x_user_id=None, x_tenant_id=None)
    assert identity is None


def test_get_request_identity_requires_internal_auth_when_enabled(monkeypatch: pytest.MonkeyPatch):
    _jwt_mode(monkeypatch)
    with pytest.raises(HTTPException) as exc:
        get_request_identity(_request(), x_internal_auth=None)
    assert exc.value.status_code == 401


def test_get_request_identity_resolves_from_jwt(monkeypatch: pytest.MonkeyPatch):
    _jwt_mode(monkeypatch)
    req = _request("POST", "/encounters/e1:finalize")
    token = _make_jwt("x" * 32, user_id="u1", tenant_id="t1", method="POST", path="/encounters/e1:finalize")

    identity = get_request_identity(
        req,
        x_user_id=None,
        x_tenant_id=None,
        x_internal_token=None,
        x_internal_auth=f"Bearer {token}",
    )
    assert identity == RequestIdentity(user_id="u1", tenant_id="t1")


def test_get_request_identity_rejects_jwt_path_mismatch(monkeypatch: pytest.MonkeyPatch):
    _jwt_mode(monkeypatch)
    req = _request("GET", "/encounters/e1")
    token = _make_jwt("x" * 32, user_id="u1", tenant_id="t1", method="GET", path="/encounters/e2")

    with pytest.raises(HTTPException) as exc:
        get_request_identity(
            req,
            x_user_id=None,
            x_tenant_id=None,
            x_internal_token=None,
            x_internal_auth=f"Bearer {token}",
        )
    assert exc.value.status_code == 401


def test_get_request_identity_rejects_tenant_header_mismatch(monkeypatch: pytest.MonkeyPatch):
    _jwt_mode(monkeypatch)
    req = _request("GET", "/encounters")
    token = _make_jwt("x" * 32, user_id="u1", tenant_id="t1", method="GET", path="/encounters")

    with pytest.raises(HTTPException) as exc:
        get_request_identity(
            req,
            x_user_id=None,
            x_tenant_id="t2",
            x_internal_token=None,
            x_internal_auth=token,
        )
    assert exc.value.status_code == 401


def test_get_request_identity_rejects_expired_jwt(monkeypatch: pytest.MonkeyPatch):
    _jwt_mode(monkeypatch)
    token = _make_jwt("x" * 32, user_id="u1", tenant_id="t1", method="GET", path="/encounters", ttl=-5)
    with pytest.raises(HTTPException) as exc:
        get_request_identity(_request(), x_user_id=None, x_tenant_id=None, x_internal_token=None, x_internal_auth=token)
    assert exc.value.status_code == 401


def test_get_request_identity_static_mode(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("HIPAA_ENFORCEMENT", "true")
    monkeypatch.setenv("API_INTERNAL_AUTH_MODE", "static")
    monkeypatch.setenv("API_INTERNAL_TOKEN", "x" * 32)

    identity = get_request_identity(
        _request(),
        x_user_id="u1",
        x_tenant_id="t1",
        x_internal_token="x" * 32,
    )
    assert identity == RequestIdentity(user_id="u1", tenant_id="t1")


def test_request_context_from_headers(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("HIPAA_ENFORCEMENT", raising=False)
    req = _request(headers=[(b"x-correlation-id", b"corr-42")])
    ctx = get_request_context(req, x_user_id=" u1 ", x_tenant_id="t1", x_internal_token=None, x_internal_auth=None)
    assert ctx == RequestContext(tenant_id="t1", actor_id="u1", correlation_id="corr-42")


def test_request_context_requires_tenant(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("HIPAA_ENFORCEMENT", raising=False)
    with pytest.raises(HTTPException) as exc:
        get_request_context(_request(), x_user_id="u1", x_tenant_id="  ", x_internal_token=None, x_internal_auth=None)
    assert exc.value.status_code == 401


def test_request_context_generates_correlation_id(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("HIPAA_ENFORCEMENT", raising=False)
    ctx = get_request_context(_request(), x_user_id=None, x_tenant_id="t1", x_internal_token=None, x_internal_auth=None)
    assert ctx.actor_id is None
    assert ctx.correlation_id and len(ctx.correlation_id) == 32


def test_idempotency_key_blank_is_none():
    assert get_idempotency_key("  ") is None
    assert get_idempotency_key(" k-1 ") == "k-1"
