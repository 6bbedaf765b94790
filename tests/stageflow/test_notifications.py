from __future__ import annotations

import pytest
from pydantic import ValidationError

from stageflow.app.models import JobCandidateStage, NotificationConfig, NotificationSettings
from stageflow.app.services.notifications import (
    DEFAULT_REMINDER_DELAY_HOURS,
    all_stage_configs,
    evaluate_notification,
    stage_config_view,
)


def _lookup(found=None):
    calls: list[tuple] = []

    def lookup(stage, job_id):
        calls.append((stage, job_id))
        return found

    lookup.calls = calls
    return lookup


def test_disabled_or_missing_config_does_not_send() -> None:
    settings = NotificationSettings(
        stages={JobCandidateStage.offer: NotificationConfig(enabled=False, template_id="t1")}
    )
    decision = evaluate_notification(
        JobCandidateStage.offer, "job_1", settings=settings, template_lookup=_lookup("t9")
    )
    assert decision.should_send is False

    decision = evaluate_notification(
        JobCandidateStage.panel, "job_1", settings=settings, template_lookup=_lookup("t9")
    )
    assert decision.should_send is False


def test_template_resolution_order() -> None:
    settings = NotificationSettings(
        stages={JobCandidateStage.offer: NotificationConfig(enabled=True, template_id="t1")}
    )
    lookup = _lookup("t_lookup")

    override = evaluate_notification(
        JobCandidateStage.offer,
        "job_1",
        settings=settings,
        template_lookup=lookup,
        template_override_id="t_override",
    )
    assert override.template_id == "t_override"

    configured = evaluate_notification(
        JobCandidateStage.offer, "job_1", settings=settings, template_lookup=lookup
    )
    assert configured.template_id == "t1"
    assert lookup.calls == []

    settings.stages[JobCandidateStage.offer] = NotificationConfig(enabled=True)
    fallback = evaluate_notification(
        JobCandidateStage.offer, "job_1", settings=settings, template_lookup=lookup
    )
    assert fallback.template_id == "t_lookup"
    assert lookup.calls == [(JobCandidateStage.offer, "job_1")]


def test_send_without_any_template_still_reports_should_send() -> None:
    settings = NotificationSettings(
        stages={JobCandidateStage.trial: NotificationConfig(enabled=True, delay_minutes=30)}
    )
    decision = evaluate_notification(
        JobCandidateStage.trial, None, settings=settings, template_lookup=_lookup(None)
    )
    assert decision.should_send is True
    assert decision.template_id is None
    assert decision.delay_minutes == 30


def test_job_override_wins_over_global_config() -> None:
    settings = NotificationSettings(
        stages={JobCandidateStage.offer: NotificationConfig(enabled=True, template_id="t1")},
        job_overrides={
            "job_2": {JobCandidateStage.offer: NotificationConfig(enabled=False)},
        },
    )
    assert not evaluate_notification(
        JobCandidateStage.offer, "job_2", settings=settings, template_lookup=_lookup()
    ).should_send
    assert evaluate_notification(
        JobCandidateStage.offer, "job_3", settings=settings, template_lookup=_lookup()
    ).should_send


def test_reminder_policy_defaults() -> None:
    settings = NotificationSettings(
        stages={
            JobCandidateStage.offer: NotificationConfig(
                enabled=True, template_id="t1", reminder_enabled=True
            ),
            JobCandidateStage.panel: NotificationConfig(
                enabled=True, template_id="t2", reminder_enabled=True, reminder_delay_hours=24
            ),
        }
    )
    offer = evaluate_notification(
        JobCandidateStage.offer, None, settings=settings, template_lookup=_lookup()
    )
    assert offer.reminder is not None
    assert offer.reminder.after_hours == DEFAULT_REMINDER_DELAY_HOURS

    panel = evaluate_notification(
        JobCandidateStage.panel, None, settings=settings, template_lookup=_lookup()
    )
    assert panel.reminder.after_hours == 24


@pytest.mark.parametrize(
    "payload",
    [
        {"delay_minutes": -1},
        {"delay_minutes": 1441},
        {"reminder_delay_hours": 0},
        {"reminder_delay_hours": 169},
    ],
)
def test_config_bounds(payload: dict) -> None:
    with pytest.raises(ValidationError):
        NotificationConfig(**payload)


def test_config_views_cover_every_stage() -> None:
    settings = NotificationSettings()
    views = all_stage_configs(settings, default_reminder_delay_hours=48)
    assert len(views) == len(JobCandidateStage)
    assert all(not view.enabled for view in views)
    assert all(view.reminder_delay_hours == 48 for view in views)

    view = stage_config_view(settings, JobCandidateStage.hired)
    assert view.delay_minutes == 0
    assert view.template_id is None
