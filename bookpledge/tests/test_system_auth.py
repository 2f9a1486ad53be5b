"""
System-caller guard for the reaper trigger.
"""

import hmac
from unittest.mock import patch

import jwt
import pytest

from bookpledge.api.reaper import get_notification_dispatcher, get_payment_gateway
from bookpledge.core.system_auth import extract_bearer, is_system_token, match_system_token
from bookpledge.main import app


SERVICE = "test-service-role-key"
CRON = "test-cron-secret"


@pytest.mark.parametrize(
    "token,expected",
    [
        (SERVICE, True),
        (CRON, True),
        ("", False),
        ("test-service-role-ke", False),
        ("test-service-role-key-extra", False),
        ("TEST-CRON-SECRET", False),
    ],
)
def test_is_system_token(token, expected):
    assert is_system_token(token, SERVICE, CRON) is expected


def test_no_configured_secrets_rejects_everything():
    assert is_system_token("", None, None) is False
    assert is_system_token("anything", None, "") is False


def test_match_reports_which_secret():
    assert match_system_token(SERVICE, SERVICE, CRON) == "service_role"
    assert match_system_token(CRON, SERVICE, CRON) == "cron_secret"


def test_both_secrets_always_compared():
    with patch("bookpledge.core.system_auth.hmac.compare_digest", side_effect=hmac.compare_digest) as cmp:
        is_system_token(SERVICE, SERVICE, CRON)
    assert cmp.call_count == 2


def test_extract_bearer():
    assert extract_bearer("Bearer abc") == "abc"
    assert extract_bearer("bearer  abc ") == "abc"
    assert extract_bearer(None) == ""


@pytest.fixture
def reaper_client(client, gateway, dispatcher):
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher
    return client


def test_missing_header_is_401(reaper_client):
    resp = reaper_client.post("/api/reaper/run", json={})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_user_jwt_is_403(reaper_client):
    user_token = jwt.encode({"sub": "user-1", "aud": "authenticated"}, "test-user-jwt-secret-0123456789abcdef", algorithm="HS256")
    resp = reaper_client.post("/api/reaper/run", json={}, headers={"Authorization": f"Bearer {user_token}"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


@pytest.mark.parametrize("secret", [SERVICE, CRON])
def test_system_secrets_run_the_reaper(reaper_client, make_user, make_commitment, gateway, secret):
    make_user("user-1")
    make_commitment()

    resp = reaper_client.post(
        "/api/reaper/run",
        json={"source": "cron"},
        headers={"Authorization": f"Bearer {secret}"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["mode"] == "normal"
    assert body["stats"]["defaulted"] == 1
    assert body["stats"]["charged"] == 1
    assert gateway.charge.call_count == 1


def test_retry_mode_flag(reaper_client):
    resp = reaper_client.post(
        "/api/reaper/run",
        json={"retry_mode": True},
        headers={"Authorization": f"Bearer {CRON}"},
    )
    assert resp.status_code == 200
    assert resp.json()["mode"] == "retry"
    assert resp.json()["stats"]["processed"] == 0


def test_empty_body_accepted(reaper_client):
    resp = reaper_client.post("/api/reaper/run", headers={"Authorization": f"Bearer {SERVICE}"})
    assert resp.status_code == 200
    assert resp.json()["mode"] == "normal"


def test_unit_failure_detail_stays_internal(reaper_client, make_user, make_commitment, gateway):
    make_user("user-1")
    c = make_commitment()
    gateway.charge.side_effect = RuntimeError("psycopg2 password=hunter2 host=db-internal")

    resp = reaper_client.post("/api/reaper/run", json={}, headers={"Authorization": f"Bearer {SERVICE}"})

    assert resp.status_code == 200
    assert resp.json()["stats"]["errors"] == [f"commitment:{c.id}: RuntimeError"]
    assert "hunter2" not in resp.text
    assert "db-internal" not in resp.text
