from fastapi.testclient import TestClient

from marketplace.main import app


client = TestClient(app)


def test_health_endpoint():
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json().get("status") == "ok"


def test_request_id_is_echoed():
    r = client.get("/health", headers={"X-Request-ID": "abc123"})
    assert r.headers.get("X-Request-ID") == "abc123"


def test_metrics_exposed():
    client.get("/health")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "http_requests_total" in r.text


def test_missing_token_uses_error_envelope():
    r = client.get("/wallet")
    assert r.status_code in (401, 403)
    assert "error" in r.json()


def test_dev_login_issues_usable_token():
    r = client.post("/auth/dev/login", json={"phone": "+201011112222", "name": "Dev"})
    assert r.status_code == 200, r.text
    headers = {"Authorization": f"Bearer {r.json()['access_token']}"}
    w = client.get("/wallet", headers=headers)
    assert w.status_code == 200
    assert w.json()["balance_cents"] == 0
