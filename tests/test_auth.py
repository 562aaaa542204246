import pytest
from fastapi.testclient import TestClient

from followup.core import security
from followup.core.security import create_access_token, decode_access_token
from followup.main import create_app


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("FOLLOWUP_AUTH_DISABLED", "false")
    monkeypatch.setenv("FOLLOWUP_JWT_SECRET", "test-jwt-secret-strong-value-123456")
    with TestClient(create_app()) as test_client:
        yield test_client


def _bearer(**claims) -> dict:
    return {"Authorization": f"Bearer {create_access_token(**claims)}"}


def test_missing_token_is_rejected(client):
    resp = client.get("/api/v1/rules")
    assert resp.status_code == 401
    assert resp.json()["issues"][0]["code"] == "AUTH_REQUIRED"


def test_tampered_token_is_rejected(client):
    headers = _bearer(sub="ana", role="TENANT_USER", user_id="u1", tenant_id="tenant-auth")
    headers["Authorization"] = headers["Authorization"][:-4] + "AAAA"
    resp = client.get("/api/v1/rules", headers=headers)
    assert resp.status_code == 401
    assert resp.json()["issues"][0]["code"] == "AUTH_INVALID"


def test_tenant_token_is_scoped(client):
    headers = _bearer(sub="ana", role="TENANT_USER", user_id="u1", tenant_id="tenant-auth")
    resp = client.get("/api/v1/connections", headers=headers)
    assert resp.status_code == 200
    assert all(item["tenant_id"] == "tenant-auth" for item in resp.json()["items"])


def test_tenant_role_without_tenant_is_forbidden(client):
    headers = _bearer(sub="ana", role="TENANT_USER", user_id="u1", tenant_id=None)
    resp = client.get("/api/v1/rules", headers=headers)
    assert resp.status_code == 403
    assert resp.json()["issues"][0]["code"] == "TENANT_REQUIRED"


def test_platform_admin_needs_no_tenant(client):
    headers = _bearer(sub="ops", role="PLATFORM_ADMIN", user_id="u0", tenant_id=None)
    assert client.get("/api/v1/rules", headers=headers).status_code == 200


def test_admin_must_name_tenant_when_creating_connection(client):
    headers = _bearer(sub="ops", role="PLATFORM_ADMIN", user_id="u0", tenant_id=None)
    resp = client.post(
        "/api/v1/connections",
        json={"name": "crm", "type": "MONGODB", "database": "crm"},
        headers=headers,
    )
    assert resp.status_code == 400
    assert resp.json()["issues"][0]["code"] == "TENANT_REQUIRED"


def test_health_is_public(client):
    assert client.get("/api/v1/health").status_code == 200


def test_expired_token_is_rejected(monkeypatch):
    monkeypatch.setenv("FOLLOWUP_JWT_SECRET", "test-jwt-secret-strong-value-123456")
    token = create_access_token(sub="ana", role="TENANT_USER", user_id="u1", tenant_id="t")
    assert decode_access_token(token)["tenant_id"] == "t"

    monkeypatch.setattr(security, "_jwt_exp_minutes", lambda: -5)
    expired = create_access_token(sub="ana", role="TENANT_USER", user_id="u1", tenant_id="t")
    with pytest.raises(ValueError):
        decode_access_token(expired)


def _forge(payload: dict, secret_key: bytes) -> str:
    header = security._encode_segment({"alg": "HS256", "typ": "JWT"})
    signing_input = f"{header}.{security._encode_segment(payload)}"
    return f"{signing_input}.{security._b64url_encode(security._sign(secret_key, signing_input))}"


def test_token_from_another_issuer_is_rejected(monkeypatch):
    monkeypatch.setenv("FOLLOWUP_JWT_SECRET", "test-jwt-secret-strong-value-123456")
    payload = {"iss": "billing", "sub": "ana", "role": "TENANT_USER", "user_id": "u1", "tenant_id": "t", "exp": 4102444800}
    with pytest.raises(security.TokenError):
        decode_access_token(_forge(payload, security._jwt_secret()))


def test_raw_secret_does_not_sign_tokens(monkeypatch):
    secret = "test-jwt-secret-strong-value-123456"
    monkeypatch.setenv("FOLLOWUP_JWT_SECRET", secret)
    payload = {"iss": "followup", "sub": "ana", "role": "TENANT_USER", "user_id": "u1", "tenant_id": "t", "exp": 4102444800}
    with pytest.raises(security.TokenError):
        decode_access_token(_forge(payload, secret.encode("utf-8")))


def test_prod_refuses_weak_secret(monkeypatch):
    monkeypatch.setenv("FOLLOWUP_ENV", "prod")
    monkeypatch.setenv("FOLLOWUP_JWT_SECRET", "changeme")
    with pytest.raises(security.TokenError):
        create_access_token(sub="ana", role="TENANT_USER", user_id="u1", tenant_id="t")


def test_dev_key_is_bound_to_ledger_url(monkeypatch):
    monkeypatch.setenv("FOLLOWUP_ENV", "dev")
    monkeypatch.delenv("FOLLOWUP_JWT_SECRET", raising=False)
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:////tmp/ledger-one.db")
    token = create_access_token(sub="ana", role="TENANT_USER", user_id="u1", tenant_id="t")
    assert decode_access_token(token)["tenant_id"] == "t"

    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:////tmp/ledger-two.db")
    with pytest.raises(security.TokenError):
        decode_access_token(token)
