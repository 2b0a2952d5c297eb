from __future__ import annotations

from fastapi.testclient import TestClient

from throttle.main import app


client = TestClient(app)


def test_preserves_incoming_request_id_header():
    incoming_id = "test-request-id-123"
    resp = client.get("/health", headers={"X-Request-ID": incoming_id})

    assert resp.status_code == 200
    assert resp.headers.get("X-Request-ID") == incoming_id


def test_generates_request_id_when_missing():
    resp = client.get("/health")

    assert resp.status_code == 200
    generated = resp.headers.get("X-Request-ID")
    assert generated
    assert isinstance(generated, str)

    duration = resp.headers.get("X-Request-Duration-ms")
    assert duration is not None


def test_rejected_requests_keep_request_id():
    # The module-level app uses the configured 10/second limit
    statuses = []
    last = None
    for _ in range(25):
        last = client.get("/v1/ping", headers={"X-Request-ID": "burst-1"})
        statuses.append(last.status_code)

    assert 429 in statuses
    assert last.headers.get("X-Request-ID") == "burst-1"
