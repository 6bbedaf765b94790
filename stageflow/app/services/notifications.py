from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from stageflow.app.models import (
    JobCandidateStage,
    NotificationConfig,
    NotificationSettings,
    StageConfigItem,
)
from stageflow.app.services.catalog import ALL_STAGES

DEFAULT_REMINDER_DELAY_HOURS = 72

TemplateLookup = Callable[[JobCandidateStage, Optional[str]], Optional[str]]


@dataclass(frozen=True)
class ReminderPolicy:
    enabled: bool
    after_hours: int


@dataclass(frozen=True)
class NotificationDecision:
    should_send: bool
    delay_minutes: int
    template_id: Optional[str]
    reminder: Optional[ReminderPolicy]


NO_SEND = NotificationDecision(should_send=False, delay_minutes=0, template_id=None, reminder=None)


def evaluate_notification(
    target_stage: JobCandidateStage,
    job_id: Optional[str],
    *,
    settings: NotificationSettings,
    template_lookup: TemplateLookup,
    template_override_id: Optional[str] = None,
    default_reminder_delay_hours: int = DEFAULT_REMINDER_DELAY_HOURS,
) -> NotificationDecision:
    """Decide whether a move into ``target_stage`` emails the candidate.

    Templates resolve in order: the operator's override, the stage config's
    template, then whatever ``template_lookup`` finds for (stage, job). A
    decision may carry ``should_send=True`` with no template when nothing is
    configured; the executor reports that as a failed send.
    """
    config = settings.config_for(target_stage, job_id)
    if config is None or not config.enabled:
        return NO_SEND

    template_id = template_override_id or config.template_id
    if not template_id:
        template_id = template_lookup(target_stage, job_id)

    reminder = None
    if config.reminder_enabled:
        reminder = ReminderPolicy(
            enabled=True,
            after_hours=config.reminder_delay_hours or default_reminder_delay_hours,
        )
    return NotificationDecision(
        should_send=True,
        delay_minutes=config.delay_minutes or 0,
        template_id=template_id,
        reminder=reminder,
    )


def stage_config_view(
    settings: NotificationSettings,
    stage: JobCandidateStage,
    job_id: Optional[str] = None,
    *,
    default_reminder_delay_hours: int = DEFAULT_REMINDER_DELAY_HOURS,
) -> StageConfigItem:
    config = settings.config_for(stage, job_id) or NotificationConfig()
    return StageConfigItem(
        stage=stage,
        enabled=config.enabled,
        delay_minutes=config.delay_minutes,
        template_id=config.template_id,
        reminder_enabled=bool(config.reminder_enabled),
        reminder_delay_hours=config.reminder_delay_hours or default_reminder_delay_hours,
    )


def all_stage_configs(
    settings: NotificationSettings,
    job_id: Optional[str] = None,
    *,
    default_reminder_delay_hours: int = DEFAULT_REMINDER_DELAY_HOURS,
) -> list[StageConfigItem]:
    return [
        stage_config_view(
            settings,
            stage.value,
            job_id,
            default_reminder_delay_hours=default_reminder_delay_hours,
        )
        for stage in ALL_STAGES
    ]
