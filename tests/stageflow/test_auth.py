from __future__ import annotations

from datetime import datetime, timedelta

import jwt
from fastapi.testclient import TestClient

from stageflow.app.main import create_app


def _token(secret: str, subject: str, roles: list[str]) -> str:
    payload = {
        "sub": subject,
        "roles": roles,
        "exp": datetime.utcnow() + timedelta(hours=1),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def _auth_client(monkeypatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    return TestClient(create_app())


def test_auth_blocks_missing_token_when_enabled(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    response = client.post("/jobs", json={"title": "Auth Test"})
    assert response.status_code == 401


def test_auth_rejects_bad_signature(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _token("other-secret", "recruiter-1", ["recruiter"])
    response = client.post(
        "/jobs",
        headers={"Authorization": f"Bearer {token}"},
        json={"title": "Auth Test"},
    )
    assert response.status_code == 401


def test_auth_allows_recruiter_token(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _token("test-secret", "recruiter-1", ["recruiter"])
    headers = {"Authorization": f"Bearer {token}"}

    job = client.post("/jobs", headers=headers, json={"title": "Auth Test"})
    assert job.status_code == 200
    candidate = client.post(
        f"/jobs/{job.json()['id']}/candidates",
        headers=headers,
        json={"name": "Asha Rao", "email": "asha@example.com"},
    ).json()
    moved = client.post(
        f"/candidates/{candidate['id']}/stage",
        headers=headers,
        json={"target_stage": "SHORTLISTED"},
    )
    assert moved.status_code == 200
    history = client.get(f"/candidates/{candidate['id']}/stage-history", headers=headers)
    assert history.json()[-1]["actor"] == "recruiter-1"


def test_hiring_manager_cannot_move_candidates(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    recruiter = {"Authorization": f"Bearer {_token('test-secret', 'r-1', ['recruiter'])}"}
    manager = {"Authorization": f"Bearer {_token('test-secret', 'hm-1', ['hiring_manager'])}"}
    job = client.post("/jobs", headers=recruiter, json={"title": "Auth Test"}).json()
    candidate = client.post(
        f"/jobs/{job['id']}/candidates",
        headers=recruiter,
        json={"name": "Asha Rao", "email": "asha@example.com"},
    ).json()

    assert client.get(f"/candidates/{candidate['id']}", headers=manager).status_code == 200
    moved = client.post(
        f"/candidates/{candidate['id']}/stage",
        headers=manager,
        json={"target_stage": "SHORTLISTED"},
    )
    assert moved.status_code == 403


def test_only_admin_edits_hiring_flows(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    payload = {"name": "Engineering", "stages": ["Apply", "Technical"]}
    recruiter = {"Authorization": f"Bearer {_token('test-secret', 'r-1', ['recruiter'])}"}
    admin = {"Authorization": f"Bearer {_token('test-secret', 'a-1', ['admin'])}"}

    assert client.post("/hiring-flows", headers=recruiter, json=payload).status_code == 403
    assert client.post("/hiring-flows", headers=admin, json=payload).status_code == 200


def test_unknown_roles_are_forbidden(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _token("test-secret", "x-1", ["superuser"])
    response = client.get("/stages/resolve", params={"label": "Offer"})
    assert response.status_code == 200
    blocked = client.get(
        "/hiring-flows",
        headers={"Authorization": f"Bearer {token}"},
    )
    assert blocked.status_code == 403


def test_health_is_public_even_when_auth_enabled(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    assert client.get("/health").status_code == 200
    assert client.get("/stages").status_code == 200
