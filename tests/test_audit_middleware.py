import json

import pytest

from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import RecordingAuditService, login
from middleware.audit import (
    REDACTED_HEADER_MARKER,
    SENSITIVE_DATA_MARKER,
    AuditMiddleware,
    is_security_relevant,
)
from schema.audit import AuditCategory, AuditSeverity


@pytest.mark.parametrize(
    "path, method, expected",
    [
        ("/api/auth/login", "POST", True),
        ("/api/Auth/validate", "GET", True),
        ("/api/users/5", "PUT", True),
        ("/api/users/5", "GET", False),
        ("/api/roles/1", "GET", True),
        ("/api/permissions/", "GET", True),
        ("/api/settings/theme", "POST", True),
        ("/api/settings/theme", "GET", False),
        ("/api/questions/1", "DELETE", False),
    ],
)
def test_security_relevance(path, method, expected):
    assert is_security_relevant(path, method) is expected


def test_login_is_audited_as_security_event_with_redacted_bodies(client, audit_service):
    login(client)

    [entry] = audit_service.entries

    assert entry.category == AuditCategory.SECURITY
    assert entry.severity == AuditSeverity.MEDIUM
    assert entry.action == "API_POST"
    assert entry.details == "POST /api/auth/login - Status 200"
    assert entry.user_identifier == "Unknown"
    assert entry.request.request_body == SENSITIVE_DATA_MARKER
    assert entry.response.response_body == SENSITIVE_DATA_MARKER
    assert entry.response.status_code == 200
    assert entry.response.duration_ms >= 0


def test_sensitive_headers_are_redacted(client, audit_service):
    access_token = login(client).json()["accessToken"]
    audit_service.entries.clear()

    client.get(
        "/api/users/me",
        headers={
            "Authorization": f"Bearer {access_token}",
            "X-Api-Key": "secret",
            "X-Trace": "abc",
            "Cookie": "session=secret",
        },
    )

    [entry] = audit_service.entries
    headers = {name.lower(): value for name, value in entry.request.headers.items()}

    assert headers["authorization"] == REDACTED_HEADER_MARKER
    assert headers["x-api-key"] == REDACTED_HEADER_MARKER
    assert headers["cookie"] == REDACTED_HEADER_MARKER
    assert headers["x-trace"] == "abc"


def test_regular_request_is_audited_as_system_action(client, audit_service):
    access_token = login(client).json()["accessToken"]
    audit_service.entries.clear()

    response = client.get("/api/users/me?verbose=1", headers={"Authorization": f"Bearer {access_token}"})

    [entry] = audit_service.entries

    assert entry.category == AuditCategory.SYSTEM
    assert entry.severity == AuditSeverity.LOW
    assert entry.entity_type == "API"
    assert entry.user_identifier == "amal"
    assert entry.request.query_string == "verbose=1"
    assert entry.response.response_body == response.text


def test_excluded_paths_are_not_audited(client, audit_service):
    client.get("/api/health")
    client.get("/openapi.json")

    assert audit_service.entries == []


def build_app(audit_service) -> FastAPI:
    app = FastAPI()
    app.add_middleware(AuditMiddleware, audit_service=audit_service)

    @app.post("/api/questions")
    async def create_question(payload: dict):
        return {"received": payload}

    @app.get("/api/questions/broken")
    async def broken():
        raise RuntimeError("database is down")

    return app


def test_request_body_is_recorded_and_still_readable():
    audit_service = RecordingAuditService()

    with TestClient(build_app(audit_service)) as client:
        response = client.post("/api/questions", json={"text": "2 + 2?"})

    assert response.json() == {"received": {"text": "2 + 2?"}}
    [entry] = audit_service.entries
    assert json.loads(entry.request.request_body) == {"text": "2 + 2?"}


def test_audit_failure_does_not_affect_response():
    with TestClient(build_app(RecordingAuditService(fail=True))) as client:
        response = client.post("/api/questions", json={"text": "2 + 2?"})

    assert response.status_code == 200
    assert response.json() == {"received": {"text": "2 + 2?"}}


def test_downstream_exception_is_recorded_and_propagated():
    audit_service = RecordingAuditService()

    with TestClient(build_app(audit_service)) as client:
        with pytest.raises(RuntimeError, match="database is down"):
            client.get("/api/questions/broken")

    [entry] = audit_service.entries
    assert entry.action == "MIDDLEWARE_ERROR"
    assert entry.entity_type == "Middleware"
    assert "database is down" in entry.details
