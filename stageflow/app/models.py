from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.utcnow()


class JobCandidateStage(str, Enum):
    applied = "APPLIED"
    shortlisted = "SHORTLISTED"
    hr_screen = "HR_SCREEN"
    team_chat = "TEAM_CHAT"
    advisor_chat = "ADVISOR_CHAT"
    technical = "TECHNICAL"
    panel = "PANEL"
    trial = "TRIAL"
    ceo_chat = "CEO_CHAT"
    offer = "OFFER"
    hired = "HIRED"
    rejected = "REJECTED"
    withdrawn = "WITHDRAWN"
    archived = "ARCHIVED"


class QueuedEmailStatus(str, Enum):
    pending = "PENDING"
    sent = "SENT"
    failed = "FAILED"
    cancelled = "CANCELLED"


class ReminderStatus(str, Enum):
    pending = "PENDING"
    sent = "SENT"
    skipped = "SKIPPED"
    failed = "FAILED"
    cancelled = "CANCELLED"


def _clean_flow_stages(values: list[str]) -> list[str]:
    cleaned = [value.strip() for value in values]
    if any(not value for value in cleaned):
        raise ValueError("hiring flow stages cannot be blank")
    return cleaned


class NotificationConfig(BaseModel):
    enabled: bool = False
    delay_minutes: int = Field(default=0, ge=0, le=1440)
    template_id: Optional[str] = None
    reminder_enabled: Optional[bool] = None
    reminder_delay_hours: Optional[int] = Field(default=None, ge=1, le=168)


class NotificationSettings(BaseModel):
    stages: dict[JobCandidateStage, NotificationConfig] = Field(default_factory=dict)
    job_overrides: dict[str, dict[JobCandidateStage, NotificationConfig]] = Field(
        default_factory=dict
    )

    def config_for(
        self, stage: JobCandidateStage, job_id: Optional[str] = None
    ) -> Optional[NotificationConfig]:
        if job_id:
            override = self.job_overrides.get(job_id, {}).get(stage)
            if override is not None:
                return override
        return self.stages.get(stage)


class StageConfigItem(BaseModel):
    stage: JobCandidateStage
    enabled: bool
    delay_minutes: int
    template_id: Optional[str]
    reminder_enabled: bool
    reminder_delay_hours: int


class StageDefinitionItem(BaseModel):
    value: JobCandidateStage
    label: str
    is_terminal: bool


class StageResolveResponse(BaseModel):
    label: str
    normalized: str
    stage: Optional[StageDefinitionItem]


class FlowStageItem(BaseModel):
    label: str
    stage: Optional[JobCandidateStage]


class HiringFlowCreateRequest(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    description: Optional[str] = Field(default=None, max_length=500)
    stages: list[str] = Field(min_length=1)
    is_default: bool = False

    @field_validator("stages")
    @classmethod
    def validate_stages(cls, values: list[str]) -> list[str]:
        cleaned = _clean_flow_stages(values)
        if any(len(value) > 100 for value in cleaned):
            raise ValueError("hiring flow stage names are limited to 100 characters")
        return cleaned


class HiringFlowUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=120)
    description: Optional[str] = Field(default=None, max_length=500)
    stages: Optional[list[str]] = Field(default=None, min_length=1)
    is_active: Optional[bool] = None

    @field_validator("stages")
    @classmethod
    def validate_stages(cls, values: Optional[list[str]]) -> Optional[list[str]]:
        if values is None:
            return None
        cleaned = _clean_flow_stages(values)
        if any(len(value) > 100 for value in cleaned):
            raise ValueError("hiring flow stage names are limited to 100 characters")
        return cleaned


class HiringFlowResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    stages: list[str]
    resolved_stages: list[FlowStageItem]
    is_default: bool
    is_active: bool
    version: int
    jobs_count: int
    outdated_jobs: int


class JobCreateRequest(BaseModel):
    title: str = Field(min_length=2, max_length=160)
    hiring_flow_id: Optional[str] = None
    hiring_flow_stages: Optional[list[str]] = None
    allow_backward_movement: bool = False

    @field_validator("hiring_flow_stages")
    @classmethod
    def validate_stages(cls, values: Optional[list[str]]) -> Optional[list[str]]:
        if values is None:
            return None
        return _clean_flow_stages(values)


class JobHiringFlowUpdateRequest(BaseModel):
    hiring_flow_id: Optional[str] = None
    hiring_flow_stages: Optional[list[str]] = None
    allow_backward_movement: Optional[bool] = None

    @field_validator("hiring_flow_stages")
    @classmethod
    def validate_stages(cls, values: Optional[list[str]]) -> Optional[list[str]]:
        if values is None:
            return None
        if not values:
            raise ValueError("hiring flow must contain at least one stage")
        return _clean_flow_stages(values)


class JobResponse(BaseModel):
    id: str
    title: str
    hiring_flow_id: Optional[str]
    hiring_flow_version: Optional[int]
    hiring_flow_stages: list[str]
    resolved_stages: list[FlowStageItem]
    allow_backward_movement: bool


class CandidateCreateRequest(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    email: str = Field(min_length=3, max_length=254)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        value = value.strip()
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError("invalid email address")
        return value


class CandidateResponse(BaseModel):
    id: str
    job_id: str
    name: str
    email: str
    current_stage: JobCandidateStage
    current_stage_label: str
    stage_version: int
    is_terminal: bool


class AvailableTransitionsResponse(BaseModel):
    candidate_id: str
    current_stage: JobCandidateStage
    allow_backward_movement: bool
    stage_version: int
    available: list[StageDefinitionItem]
    unresolved_flow_stages: list[str]


class EmailTemplateDraft(BaseModel):
    name: Optional[str] = Field(default=None, max_length=160)
    subject: Optional[str] = Field(default=None, max_length=300)
    html_body: Optional[str] = None
    stage: Optional[JobCandidateStage] = None
    job_id: Optional[str] = None
    is_default: bool = False


class EmailTemplateResponse(BaseModel):
    id: str
    name: str
    subject: str
    html_body: str
    stage: Optional[JobCandidateStage]
    job_id: Optional[str]
    is_default: bool


class StageTransitionRequest(BaseModel):
    target_stage: JobCandidateStage
    skip_auto_email: bool = False
    template_override_id: Optional[str] = None
    inline_template: Optional[EmailTemplateDraft] = None
    expected_version: Optional[int] = Field(default=None, ge=0)
    reason: Optional[str] = Field(default=None, max_length=200)


class StageTransitionResponse(BaseModel):
    ok: bool
    candidate_id: str
    from_stage: JobCandidateStage
    current_stage: JobCandidateStage
    stage_version: int
    queued_email_id: Optional[str]
    queued_email_status: Optional[QueuedEmailStatus]
    template_id: Optional[str]
    warnings: list[str]


class BulkStageTransitionRequest(BaseModel):
    candidate_ids: list[str] = Field(min_length=1, max_length=200)
    target_stage: JobCandidateStage
    skip_auto_email: bool = False
    template_override_id: Optional[str] = None


class BulkStageTransitionItem(BaseModel):
    candidate_id: str
    ok: bool
    current_stage: Optional[JobCandidateStage]
    detail: Optional[str]
    warnings: list[str] = Field(default_factory=list)


class BulkStageTransitionResponse(BaseModel):
    target_stage: JobCandidateStage
    moved: int
    results: list[BulkStageTransitionItem]


class NotificationSettingsUpdateRequest(BaseModel):
    stages: dict[JobCandidateStage, NotificationConfig]


class JobNotificationOverridesRequest(BaseModel):
    stages: dict[JobCandidateStage, NotificationConfig]


class PipelineCandidate(BaseModel):
    candidate_id: str
    name: str
    current_stage: JobCandidateStage


class PipelineResponse(BaseModel):
    job_id: str
    counts: dict[JobCandidateStage, int]
    candidates: list[PipelineCandidate]


class ReminderProcessRequest(BaseModel):
    now_utc: Optional[datetime] = None
    responded_candidate_ids: list[str] = Field(default_factory=list)


class ReminderProcessResponse(BaseModel):
    processed: int
    sent: int
    skipped: int
    failed: int


class JobRecord(BaseModel):
    id: str
    title: str
    hiring_flow_id: Optional[str] = None
    hiring_flow_version: Optional[int] = None
    hiring_flow_stages: list[str] = Field(default_factory=list)
    allow_backward_movement: bool = False
    created_at_utc: datetime
    updated_at_utc: datetime


class HiringFlowRecord(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    stages: list[str]
    is_default: bool = False
    is_active: bool = True
    version: int = 1
    created_at_utc: datetime
    updated_at_utc: datetime


class CandidateRecord(BaseModel):
    id: str
    job_id: str
    name: str
    email: str
    current_stage: JobCandidateStage = JobCandidateStage.applied
    stage_version: int = 0
    created_at_utc: datetime
    updated_at_utc: datetime


class EmailTemplateRecord(BaseModel):
    id: str
    name: str
    subject: str
    html_body: str
    stage: Optional[JobCandidateStage] = None
    job_id: Optional[str] = None
    is_default: bool = False
    is_active: bool = True
    created_at_utc: datetime


class AuditEventRecord(BaseModel):
    id: str
    candidate_id: str
    from_stage: Optional[JobCandidateStage]
    to_stage: JobCandidateStage
    reason: str
    actor: Optional[str] = None
    created_at_utc: datetime


class QueuedStageEmailRecord(BaseModel):
    id: str
    candidate_id: str
    from_stage: Optional[JobCandidateStage]
    to_stage: JobCandidateStage
    template_id: Optional[str]
    delay_minutes: int = 0
    scheduled_for_utc: datetime
    skip_auto_email: bool = False
    status: QueuedEmailStatus = QueuedEmailStatus.pending
    message_id: Optional[str] = None
    error: Optional[str] = None
    processed_at_utc: Optional[datetime] = None
    created_at_utc: datetime


class EmailReminderRecord(BaseModel):
    id: str
    queued_email_id: str
    candidate_id: str
    stage: JobCandidateStage
    template_id: str
    due_utc: datetime
    status: ReminderStatus = ReminderStatus.pending
    detail: Optional[str] = None
    created_at_utc: datetime
    processed_at_utc: Optional[datetime] = None
