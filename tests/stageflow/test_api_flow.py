from __future__ import annotations

from datetime import datetime, timedelta


def build_flow_payload(**overrides) -> dict:
    payload = {
        "name": "Engineering",
        "description": "Default engineering loop",
        "stages": ["Apply", "People Chat", "Coding Test", "Panel", "Offer"],
    }
    payload.update(overrides)
    return payload


def create_job(client, **overrides) -> dict:
    payload = {"title": "Backend Engineer"}
    payload.update(overrides)
    response = client.post("/jobs", json=payload)
    assert response.status_code == 200
    return response.json()


def link_candidate(client, job_id: str, name: str = "Asha Rao") -> dict:
    response = client.post(
        f"/jobs/{job_id}/candidates",
        json={"name": name, "email": f"{name.split()[0].lower()}@example.com"},
    )
    assert response.status_code == 200
    return response.json()


def enable_offer_email(client, template_id: str, **extra) -> None:
    response = client.put(
        "/settings/notifications",
        json={"stages": {"OFFER": {"enabled": True, "template_id": template_id, **extra}}},
    )
    assert response.status_code == 200


def test_stage_catalog_and_resolution(client) -> None:
    stages = client.get("/stages")
    assert stages.status_code == 200
    assert len(stages.json()) == 14
    assert stages.json()[-1] == {"value": "ARCHIVED", "label": "Archived", "is_terminal": True}

    resolved = client.get("/stages/resolve", params={"label": "Shortlisted Candidates"})
    assert resolved.json()["stage"]["value"] == "SHORTLISTED"
    assert resolved.json()["normalized"] == "SHORTLISTEDCANDIDATES"

    unknown = client.get("/stages/resolve", params={"label": "Bake Off"})
    assert unknown.json()["stage"] is None


def test_hiring_flow_lifecycle(client) -> None:
    created = client.post("/hiring-flows", json=build_flow_payload())
    assert created.status_code == 200
    flow = created.json()
    assert flow["is_default"] is True
    assert flow["version"] == 1
    assert flow["resolved_stages"][2] == {"label": "Coding Test", "stage": "TECHNICAL"}

    job = create_job(client)
    assert job["hiring_flow_id"] == flow["id"]
    assert job["hiring_flow_version"] == 1

    updated = client.put(
        f"/hiring-flows/{flow['id']}",
        json={"stages": ["Apply", "Technical", "Offer"]},
    )
    assert updated.status_code == 200
    assert updated.json()["version"] == 2
    assert updated.json()["outdated_jobs"] == 1

    outdated = client.get(f"/hiring-flows/{flow['id']}/outdated-jobs")
    assert [item["id"] for item in outdated.json()] == [job["id"]]

    in_use = client.delete(f"/hiring-flows/{flow['id']}")
    assert in_use.status_code == 409

    deactivate = client.put(f"/hiring-flows/{flow['id']}", json={"is_active": False})
    assert deactivate.status_code == 409

    resynced = client.put(
        f"/jobs/{job['id']}/hiring-flow", json={"hiring_flow_id": flow["id"]}
    )
    assert resynced.json()["hiring_flow_version"] == 2
    assert resynced.json()["hiring_flow_stages"] == ["Apply", "Technical", "Offer"]


def test_second_flow_can_become_default(client) -> None:
    first = client.post("/hiring-flows", json=build_flow_payload()).json()
    second = client.post(
        "/hiring-flows", json=build_flow_payload(name="Sales", stages=["Apply", "Trial"])
    ).json()
    assert second["is_default"] is False

    promoted = client.post(f"/hiring-flows/{second['id']}/default")
    assert promoted.json()["is_default"] is True
    listed = client.get("/hiring-flows").json()
    assert listed[0]["id"] == second["id"]
    assert client.get(f"/hiring-flows/{first['id']}").json()["is_default"] is False


def test_flow_validation(client) -> None:
    empty = client.post("/hiring-flows", json=build_flow_payload(stages=[]))
    assert empty.status_code == 422
    blank = client.post("/hiring-flows", json=build_flow_payload(stages=["Apply", "  "]))
    assert blank.status_code == 422
    missing = client.get("/hiring-flows/flow_missing")
    assert missing.status_code == 404


def test_available_transitions_follow_job_flow(client) -> None:
    job = create_job(client, hiring_flow_stages=["Apply", "People Chat", "Panel", "Bake Off"])
    candidate = link_candidate(client, job["id"])
    assert candidate["current_stage"] == "APPLIED"
    assert candidate["stage_version"] == 0

    response = client.get(f"/candidates/{candidate['id']}/transitions")
    assert response.status_code == 200
    body = response.json()
    assert [item["value"] for item in body["available"]] == [
        "HR_SCREEN",
        "PANEL",
        "HIRED",
        "REJECTED",
        "WITHDRAWN",
        "ARCHIVED",
    ]
    assert body["unresolved_flow_stages"] == ["Bake Off"]


def test_stage_move_sends_configured_email(client, dispatcher) -> None:
    job = create_job(client)
    candidate = link_candidate(client, job["id"])
    enable_offer_email(client, "t1")

    moved = client.post(f"/candidates/{candidate['id']}/stage", json={"target_stage": "OFFER"})
    assert moved.status_code == 200
    body = moved.json()
    assert body["ok"] is True
    assert body["from_stage"] == "APPLIED"
    assert body["current_stage"] == "OFFER"
    assert body["stage_version"] == 1
    assert body["queued_email_status"] == "SENT"
    assert body["template_id"] == "t1"
    assert body["warnings"] == []
    assert dispatcher.calls == [("t1", candidate["id"], 0)]

    history = client.get(f"/candidates/{candidate['id']}/stage-history").json()
    assert [event["to_stage"] for event in history] == ["APPLIED", "OFFER"]
    assert history[-1]["actor"] == "dev-local"


def test_backward_move_returns_conflict(client) -> None:
    job = create_job(client)
    candidate = link_candidate(client, job["id"])
    client.post(f"/candidates/{candidate['id']}/stage", json={"target_stage": "PANEL"})

    back = client.post(f"/candidates/{candidate['id']}/stage", json={"target_stage": "HR_SCREEN"})
    assert back.status_code == 409
    assert client.get(f"/candidates/{candidate['id']}").json()["current_stage"] == "PANEL"


def test_backward_move_allowed_when_job_permits(client) -> None:
    job = create_job(client, allow_backward_movement=True)
    candidate = link_candidate(client, job["id"])
    client.post(f"/candidates/{candidate['id']}/stage", json={"target_stage": "PANEL"})
    back = client.post(f"/candidates/{candidate['id']}/stage", json={"target_stage": "HR_SCREEN"})
    assert back.status_code == 200
    assert back.json()["stage_version"] == 2


def test_skip_auto_email_records_cancelled_email(client, dispatcher) -> None:
    job = create_job(client)
    candidate = link_candidate(client, job["id"])
    enable_offer_email(client, "t1")

    moved = client.post(
        f"/candidates/{candidate['id']}/stage",
        json={"target_stage": "OFFER", "skip_auto_email": True},
    )
    assert moved.status_code == 200
    assert moved.json()["queued_email_status"] == "CANCELLED"
    assert dispatcher.calls == []


def test_send_failure_returns_warning(client, dispatcher) -> None:
    dispatcher.fail_with = "relay timeout"
    job = create_job(client)
    candidate = link_candidate(client, job["id"])
    enable_offer_email(client, "t1")

    moved = client.post(f"/candidates/{candidate['id']}/stage", json={"target_stage": "OFFER"})
    assert moved.status_code == 200
    assert moved.json()["current_stage"] == "OFFER"
    assert moved.json()["queued_email_status"] == "FAILED"
    assert moved.json()["warnings"] == ["stage email not sent: relay timeout"]


def test_inline_template_validation_returns_422(client) -> None:
    job = create_job(client)
    candidate = link_candidate(client, job["id"])
    enable_offer_email(client, "t1")

    response = client.post(
        f"/candidates/{candidate['id']}/stage",
        json={"target_stage": "OFFER", "inline_template": {"name": "Offer", "subject": ""}},
    )
    assert response.status_code == 422
    assert client.get(f"/candidates/{candidate['id']}").json()["current_stage"] == "APPLIED"


def test_expected_version_mismatch_returns_conflict(client) -> None:
    job = create_job(client)
    candidate = link_candidate(client, job["id"])
    first = client.post(
        f"/candidates/{candidate['id']}/stage",
        json={"target_stage": "SHORTLISTED", "expected_version": 0},
    )
    assert first.status_code == 200
    stale = client.post(
        f"/candidates/{candidate['id']}/stage",
        json={"target_stage": "HR_SCREEN", "expected_version": 0},
    )
    assert stale.status_code == 409


def test_templates_and_job_overrides(client, dispatcher) -> None:
    job = create_job(client)
    candidate = link_candidate(client, job["id"])
    template = client.post(
        "/email-templates",
        json={
            "name": "Panel invite",
            "subject": "Your panel interview",
            "html_body": "<p>See you soon</p>",
            "stage": "PANEL",
            "job_id": job["id"],
        },
    )
    assert template.status_code == 200
    template_id = template.json()["id"]

    listed = client.get("/email-templates", params={"stage": "PANEL"})
    assert [item["id"] for item in listed.json()] == [template_id]

    overrides = client.put(
        f"/jobs/{job['id']}/notification-overrides",
        json={"stages": {"PANEL": {"enabled": True, "delay_minutes": 15}}},
    )
    assert overrides.status_code == 200
    panel = client.get("/settings/notifications/PANEL", params={"job_id": job["id"]}).json()
    assert panel["enabled"] is True
    assert client.get("/settings/notifications/PANEL").json()["enabled"] is False

    moved = client.post(f"/candidates/{candidate['id']}/stage", json={"target_stage": "PANEL"})
    assert moved.json()["queued_email_status"] == "PENDING"
    assert dispatcher.calls == [(template_id, candidate["id"], 15)]

    pending = client.get(f"/candidates/{candidate['id']}/queued-emails").json()
    assert len(pending) == 1
    cancelled = client.post(f"/queued-emails/{pending[0]['id']}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "CANCELLED"
    again = client.post(f"/queued-emails/{pending[0]['id']}/cancel")
    assert again.status_code == 409


def test_template_missing_fields_rejected(client) -> None:
    response = client.post("/email-templates", json={"name": "Empty"})
    assert response.status_code == 422


def test_bulk_stage_transition(client, dispatcher) -> None:
    job = create_job(client)
    first = link_candidate(client, job["id"], "Asha Rao")
    second = link_candidate(client, job["id"], "Ravi Kumar")
    client.post(f"/candidates/{second['id']}/stage", json={"target_stage": "WITHDRAWN"})
    enable_offer_email(client, "t1")

    response = client.post(
        "/candidates/stage/bulk",
        json={"candidate_ids": [first["id"], second["id"]], "target_stage": "OFFER"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["moved"] == 1
    assert body["results"][0]["ok"] is True
    assert body["results"][1]["ok"] is False
    assert dispatcher.calls == [("t1", first["id"], 0)]


def test_pipeline_counts(client) -> None:
    job = create_job(client)
    first = link_candidate(client, job["id"], "Asha Rao")
    link_candidate(client, job["id"], "Ravi Kumar")
    client.post(f"/candidates/{first['id']}/stage", json={"target_stage": "TECHNICAL"})

    pipeline = client.get(f"/jobs/{job['id']}/pipeline").json()
    assert pipeline["counts"]["APPLIED"] == 1
    assert pipeline["counts"]["TECHNICAL"] == 1
    assert len(pipeline["candidates"]) == 2


def test_reminder_processing_endpoint(client, dispatcher) -> None:
    job = create_job(client)
    candidate = link_candidate(client, job["id"])
    enable_offer_email(client, "t1", reminder_enabled=True, reminder_delay_hours=1)
    client.post(f"/candidates/{candidate['id']}/stage", json={"target_stage": "OFFER"})

    early = client.post("/reminders/process", json={})
    assert early.json()["processed"] == 0

    queued = client.get(
        f"/candidates/{candidate['id']}/queued-emails", params={"pending_only": False}
    ).json()
    due = datetime.fromisoformat(queued[0]["scheduled_for_utc"]) + timedelta(hours=2)
    response = client.post(
        "/reminders/process",
        json={"now_utc": due.isoformat(), "responded_candidate_ids": []},
    )
    assert response.status_code == 200
    assert response.json()["sent"] == 1
    assert dispatcher.calls[-1] == ("t1", candidate["id"], 0)


def test_unknown_candidate_returns_404(client) -> None:
    assert client.get("/candidates/cand_missing").status_code == 404
    response = client.post("/candidates/cand_missing/stage", json={"target_stage": "OFFER"})
    assert response.status_code == 404
