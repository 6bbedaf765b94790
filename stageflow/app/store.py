from __future__ import annotations

from datetime import datetime, timedelta
from threading import RLock
from typing import TYPE_CHECKING, Optional
from uuid import uuid4

from stageflow.app.models import (
    AuditEventRecord,
    CandidateCreateRequest,
    CandidateRecord,
    EmailReminderRecord,
    EmailTemplateRecord,
    HiringFlowCreateRequest,
    HiringFlowRecord,
    HiringFlowUpdateRequest,
    JobCandidateStage,
    JobCreateRequest,
    JobHiringFlowUpdateRequest,
    JobRecord,
    NotificationConfig,
    NotificationSettings,
    QueuedEmailStatus,
    QueuedStageEmailRecord,
    ReminderStatus,
    utc_now,
)

if TYPE_CHECKING:
    from stageflow.app.persistence import SqlitePersistence


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class InMemoryStore:
    def __init__(self, persistence: Optional["SqlitePersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.hiring_flows: dict[str, HiringFlowRecord] = {}
        self.jobs: dict[str, JobRecord] = {}
        self.candidates: dict[str, CandidateRecord] = {}
        self.email_templates: dict[str, EmailTemplateRecord] = {}
        self.audit_events: list[AuditEventRecord] = []
        self.queued_emails: dict[str, QueuedStageEmailRecord] = {}
        self.reminders: dict[str, EmailReminderRecord] = {}
        self.notification_settings = NotificationSettings()

        if self.persistence:
            snapshot = self.persistence.load_snapshot()
            if snapshot:
                self._hydrate_from_snapshot(snapshot)
            else:
                for queued in self.persistence.list_queued_emails(limit=500):
                    self.queued_emails[queued.id] = queued

    # Hiring flows

    def create_hiring_flow(self, request: HiringFlowCreateRequest) -> HiringFlowRecord:
        with self._lock:
            now = utc_now()
            flow = HiringFlowRecord(
                id=new_id("flow"),
                name=request.name.strip(),
                description=request.description,
                stages=list(request.stages),
                is_default=request.is_default or not self.hiring_flows,
                created_at_utc=now,
                updated_at_utc=now,
            )
            if flow.is_default:
                self._clear_default_flow()
            self.hiring_flows[flow.id] = flow
            self._persist_state()
            return flow

    def get_hiring_flow(self, flow_id: str) -> HiringFlowRecord:
        flow = self.hiring_flows.get(flow_id)
        if not flow:
            raise StoreNotFoundError(f"hiring flow not found: {flow_id}")
        return flow

    def list_hiring_flows(self, *, include_inactive: bool = False) -> list[HiringFlowRecord]:
        with self._lock:
            flows = [
                flow
                for flow in self.hiring_flows.values()
                if include_inactive or flow.is_active
            ]
        flows.sort(key=lambda item: (not item.is_default, item.name.lower()))
        return flows

    def get_default_hiring_flow(self) -> Optional[HiringFlowRecord]:
        for flow in self.hiring_flows.values():
            if flow.is_default and flow.is_active:
                return flow
        return None

    def update_hiring_flow(
        self, flow_id: str, request: HiringFlowUpdateRequest
    ) -> HiringFlowRecord:
        with self._lock:
            flow = self.get_hiring_flow(flow_id)
            changes: dict = {"updated_at_utc": utc_now()}
            if request.name is not None:
                changes["name"] = request.name.strip()
            if request.description is not None:
                changes["description"] = request.description
            if request.is_active is not None:
                if not request.is_active and flow.is_default:
                    raise StoreConflictError("default hiring flow cannot be deactivated")
                changes["is_active"] = request.is_active
            if request.stages is not None and request.stages != flow.stages:
                changes["stages"] = list(request.stages)
                changes["version"] = flow.version + 1
            updated = flow.model_copy(update=changes)
            self.hiring_flows[flow_id] = updated
            self._persist_state()
            return updated

    def delete_hiring_flow(self, flow_id: str) -> None:
        with self._lock:
            flow = self.get_hiring_flow(flow_id)
            in_use = self.list_jobs_for_flow(flow_id)
            if in_use:
                raise StoreConflictError(
                    f"hiring flow {flow_id} is used by {len(in_use)} job(s)"
                )
            if flow.is_default and len(self.hiring_flows) > 1:
                raise StoreConflictError("set another default flow before deleting this one")
            del self.hiring_flows[flow_id]
            self._persist_state()

    def set_default_hiring_flow(self, flow_id: str) -> HiringFlowRecord:
        with self._lock:
            flow = self.get_hiring_flow(flow_id)
            if not flow.is_active:
                raise StoreConflictError("inactive hiring flow cannot be the default")
            self._clear_default_flow()
            updated = flow.model_copy(update={"is_default": True, "updated_at_utc": utc_now()})
            self.hiring_flows[flow_id] = updated
            self._persist_state()
            return updated

    def list_jobs_for_flow(self, flow_id: str) -> list[JobRecord]:
        return [job for job in self.jobs.values() if job.hiring_flow_id == flow_id]

    def list_outdated_jobs(self, flow_id: str) -> list[JobRecord]:
        flow = self.get_hiring_flow(flow_id)
        return [
            job
            for job in self.list_jobs_for_flow(flow_id)
            if (job.hiring_flow_version or 0) < flow.version
        ]

    # Jobs

    def create_job(self, request: JobCreateRequest) -> JobRecord:
        with self._lock:
            now = utc_now()
            flow_id, flow_version, stages = self._flow_snapshot(
                hiring_flow_id=request.hiring_flow_id,
                hiring_flow_stages=request.hiring_flow_stages,
                use_default=True,
            )
            job = JobRecord(
                id=new_id("job"),
                title=request.title.strip(),
                hiring_flow_id=flow_id,
                hiring_flow_version=flow_version,
                hiring_flow_stages=stages,
                allow_backward_movement=request.allow_backward_movement,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.jobs[job.id] = job
            self._persist_state()
            return job

    def get_job(self, job_id: str) -> JobRecord:
        job = self.jobs.get(job_id)
        if not job:
            raise StoreNotFoundError(f"job not found: {job_id}")
        return job

    def update_job_hiring_flow(
        self, job_id: str, request: JobHiringFlowUpdateRequest
    ) -> JobRecord:
        with self._lock:
            job = self.get_job(job_id)
            changes: dict = {"updated_at_utc": utc_now()}
            if request.hiring_flow_id is not None or request.hiring_flow_stages is not None:
                flow_id, flow_version, stages = self._flow_snapshot(
                    hiring_flow_id=request.hiring_flow_id,
                    hiring_flow_stages=request.hiring_flow_stages,
                    use_default=False,
                )
                changes.update(
                    hiring_flow_id=flow_id,
                    hiring_flow_version=flow_version,
                    hiring_flow_stages=stages,
                )
            if request.allow_backward_movement is not None:
                changes["allow_backward_movement"] = request.allow_backward_movement
            updated = job.model_copy(update=changes)
            self.jobs[job_id] = updated
            self._persist_state()
            return updated

    # Candidates

    def create_candidate(self, job_id: str, request: CandidateCreateRequest) -> CandidateRecord:
        with self._lock:
            self.get_job(job_id)
            now = utc_now()
            candidate = CandidateRecord(
                id=new_id("cand"),
                job_id=job_id,
                name=request.name.strip(),
                email=request.email.strip().lower(),
                current_stage=JobCandidateStage.applied,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.candidates[candidate.id] = candidate
            self._add_audit_event(
                candidate_id=candidate.id,
                from_stage=None,
                to_stage=JobCandidateStage.applied,
                reason="candidate_linked",
                actor=None,
            )
            self._persist_state()
            return candidate

    def get_candidate(self, candidate_id: str) -> CandidateRecord:
        candidate = self.candidates.get(candidate_id)
        if not candidate:
            raise StoreNotFoundError(f"candidate not found: {candidate_id}")
        return candidate

    def list_job_candidates(self, job_id: str) -> list[CandidateRecord]:
        with self._lock:
            return [
                candidate
                for candidate in self.candidates.values()
                if candidate.job_id == job_id
            ]

    def set_candidate_stage(
        self,
        candidate_id: str,
        stage: JobCandidateStage,
        *,
        reason: str,
        actor: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> CandidateRecord:
        with self._lock:
            candidate = self.get_candidate(candidate_id)
            if expected_version is not None and expected_version != candidate.stage_version:
                raise StoreConflictError(
                    f"candidate {candidate_id} changed since version {expected_version} "
                    f"(now {candidate.stage_version})"
                )
            from_stage = candidate.current_stage
            updated = candidate.model_copy(
                update={
                    "current_stage": stage,
                    "stage_version": candidate.stage_version + 1,
                    "updated_at_utc": utc_now(),
                }
            )
            self.candidates[candidate_id] = updated
            self._add_audit_event(
                candidate_id=candidate_id,
                from_stage=from_stage,
                to_stage=stage,
                reason=reason,
                actor=actor,
            )
            self._persist_state()
            return updated

    def list_audit_events(self, candidate_id: str) -> list[AuditEventRecord]:
        with self._lock:
            return [event for event in self.audit_events if event.candidate_id == candidate_id]

    # Email templates

    def create_email_template(
        self,
        *,
        name: str,
        subject: str,
        html_body: str,
        stage: Optional[JobCandidateStage] = None,
        job_id: Optional[str] = None,
        is_default: bool = False,
    ) -> EmailTemplateRecord:
        with self._lock:
            if job_id:
                self.get_job(job_id)
            template = EmailTemplateRecord(
                id=new_id("tpl"),
                name=name.strip(),
                subject=subject.strip(),
                html_body=html_body,
                stage=stage,
                job_id=job_id,
                is_default=is_default,
                created_at_utc=utc_now(),
            )
            self.email_templates[template.id] = template
            self._persist_state()
            return template

    def get_email_template(self, template_id: str) -> EmailTemplateRecord:
        template = self.email_templates.get(template_id)
        if not template:
            raise StoreNotFoundError(f"email template not found: {template_id}")
        return template

    def delete_email_template(self, template_id: str) -> None:
        with self._lock:
            self.get_email_template(template_id)
            del self.email_templates[template_id]
            self._persist_state()

    def list_email_templates(
        self,
        *,
        stage: Optional[JobCandidateStage] = None,
        job_id: Optional[str] = None,
    ) -> list[EmailTemplateRecord]:
        with self._lock:
            templates = [
                template
                for template in self.email_templates.values()
                if (stage is None or template.stage == stage)
                and (job_id is None or template.job_id == job_id)
            ]
        templates.sort(key=lambda item: item.created_at_utc)
        return templates

    def find_template_for_stage(
        self, stage: JobCandidateStage, job_id: Optional[str] = None
    ) -> Optional[str]:
        with self._lock:
            active = [
                template
                for template in self.email_templates.values()
                if template.is_active and template.stage == stage
            ]
        if job_id:
            for template in active:
                if template.job_id == job_id:
                    return template.id
        for template in active:
            if template.job_id is None and template.is_default:
                return template.id
        return None

    # Notification settings

    def get_notification_settings(self) -> NotificationSettings:
        with self._lock:
            return self.notification_settings.model_copy(deep=True)

    def update_notification_stages(
        self, stages: dict[JobCandidateStage, NotificationConfig]
    ) -> NotificationSettings:
        with self._lock:
            merged = dict(self.notification_settings.stages)
            merged.update(stages)
            self.notification_settings = self.notification_settings.model_copy(
                update={"stages": merged}
            )
            self._persist_state()
            return self.get_notification_settings()

    def set_job_notification_overrides(
        self, job_id: str, stages: dict[JobCandidateStage, NotificationConfig]
    ) -> NotificationSettings:
        with self._lock:
            self.get_job(job_id)
            overrides = dict(self.notification_settings.job_overrides)
            if stages:
                overrides[job_id] = dict(stages)
            else:
                overrides.pop(job_id, None)
            self.notification_settings = self.notification_settings.model_copy(
                update={"job_overrides": overrides}
            )
            self._persist_state()
            return self.get_notification_settings()

    # Queued stage emails

    def create_queued_email(
        self,
        *,
        candidate_id: str,
        from_stage: Optional[JobCandidateStage],
        to_stage: JobCandidateStage,
        template_id: Optional[str],
        delay_minutes: int = 0,
        skip_auto_email: bool = False,
    ) -> QueuedStageEmailRecord:
        with self._lock:
            now = utc_now()
            record = QueuedStageEmailRecord(
                id=new_id("qem"),
                candidate_id=candidate_id,
                from_stage=from_stage,
                to_stage=to_stage,
                template_id=template_id,
                delay_minutes=delay_minutes,
                scheduled_for_utc=now + timedelta(minutes=delay_minutes),
                skip_auto_email=skip_auto_email,
                status=QueuedEmailStatus.cancelled if skip_auto_email else QueuedEmailStatus.pending,
                processed_at_utc=now if skip_auto_email else None,
                created_at_utc=now,
            )
            self.queued_emails[record.id] = record
            self._persist_queued_email(record)
            self._persist_state()
            return record

    def get_queued_email(self, queued_email_id: str) -> QueuedStageEmailRecord:
        record = self.queued_emails.get(queued_email_id)
        if not record:
            raise StoreNotFoundError(f"queued email not found: {queued_email_id}")
        return record

    def mark_queued_email(
        self,
        queued_email_id: str,
        status: QueuedEmailStatus,
        *,
        message_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> QueuedStageEmailRecord:
        with self._lock:
            record = self.get_queued_email(queued_email_id)
            updated = record.model_copy(
                update={
                    "status": status,
                    "message_id": message_id or record.message_id,
                    "error": error,
                    "processed_at_utc": utc_now(),
                }
            )
            self.queued_emails[queued_email_id] = updated
            self._persist_queued_email(updated)
            self._persist_state()
            return updated

    def cancel_queued_email(self, queued_email_id: str) -> QueuedStageEmailRecord:
        with self._lock:
            record = self.get_queued_email(queued_email_id)
            if record.status != QueuedEmailStatus.pending:
                raise StoreConflictError(
                    f"queued email {queued_email_id} is already {record.status.value}"
                )
            for reminder in self.reminders.values():
                if (
                    reminder.queued_email_id == queued_email_id
                    and reminder.status == ReminderStatus.pending
                ):
                    self.reminders[reminder.id] = reminder.model_copy(
                        update={"status": ReminderStatus.cancelled, "processed_at_utc": utc_now()}
                    )
            return self.mark_queued_email(queued_email_id, QueuedEmailStatus.cancelled)

    def list_queued_emails(
        self,
        *,
        status: Optional[QueuedEmailStatus] = None,
        candidate_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[QueuedStageEmailRecord]:
        safe_limit = max(1, min(limit, 100))
        with self._lock:
            records = [
                record
                for record in self.queued_emails.values()
                if (status is None or record.status == status)
                and (candidate_id is None or record.candidate_id == candidate_id)
            ]
        records.sort(key=lambda item: item.scheduled_for_utc, reverse=True)
        return records[:safe_limit]

    # Reminders

    def create_reminder(
        self,
        *,
        queued_email: QueuedStageEmailRecord,
        template_id: str,
        after_hours: int,
    ) -> EmailReminderRecord:
        with self._lock:
            now = utc_now()
            reminder = EmailReminderRecord(
                id=new_id("rem"),
                queued_email_id=queued_email.id,
                candidate_id=queued_email.candidate_id,
                stage=queued_email.to_stage,
                template_id=template_id,
                due_utc=queued_email.scheduled_for_utc + timedelta(hours=after_hours),
                created_at_utc=now,
            )
            self.reminders[reminder.id] = reminder
            self._persist_state()
            return reminder

    def list_due_reminders(self, now: datetime) -> list[EmailReminderRecord]:
        with self._lock:
            due = [
                reminder
                for reminder in self.reminders.values()
                if reminder.status == ReminderStatus.pending and reminder.due_utc <= now
            ]
        due.sort(key=lambda item: item.due_utc)
        return due

    def list_candidate_reminders(self, candidate_id: str) -> list[EmailReminderRecord]:
        with self._lock:
            return [
                reminder
                for reminder in self.reminders.values()
                if reminder.candidate_id == candidate_id
            ]

    def mark_reminder(
        self,
        reminder_id: str,
        status: ReminderStatus,
        *,
        detail: Optional[str] = None,
    ) -> EmailReminderRecord:
        with self._lock:
            reminder = self.reminders.get(reminder_id)
            if not reminder:
                raise StoreNotFoundError(f"reminder not found: {reminder_id}")
            updated = reminder.model_copy(
                update={"status": status, "detail": detail, "processed_at_utc": utc_now()}
            )
            self.reminders[reminder_id] = updated
            self._persist_state()
            return updated

    # Internals

    def _flow_snapshot(
        self,
        *,
        hiring_flow_id: Optional[str],
        hiring_flow_stages: Optional[list[str]],
        use_default: bool,
    ) -> tuple[Optional[str], Optional[int], list[str]]:
        if hiring_flow_id:
            flow = self.get_hiring_flow(hiring_flow_id)
            if not flow.is_active:
                raise StoreConflictError(f"hiring flow is inactive: {hiring_flow_id}")
            return flow.id, flow.version, list(flow.stages)
        if hiring_flow_stages:
            return None, None, list(hiring_flow_stages)
        if use_default:
            default_flow = self.get_default_hiring_flow()
            if default_flow:
                return default_flow.id, default_flow.version, list(default_flow.stages)
        return None, None, []

    def _clear_default_flow(self) -> None:
        for flow_id, flow in list(self.hiring_flows.items()):
            if flow.is_default:
                self.hiring_flows[flow_id] = flow.model_copy(update={"is_default": False})

    def _add_audit_event(
        self,
        *,
        candidate_id: str,
        from_stage: Optional[JobCandidateStage],
        to_stage: JobCandidateStage,
        reason: str,
        actor: Optional[str],
    ) -> None:
        event = AuditEventRecord(
            id=new_id("aud"),
            candidate_id=candidate_id,
            from_stage=from_stage,
            to_stage=to_stage,
            reason=reason,
            actor=actor,
            created_at_utc=utc_now(),
        )
        self.audit_events.append(event)

    def _persist_queued_email(self, record: QueuedStageEmailRecord) -> None:
        if self.persistence:
            self.persistence.upsert_queued_email(record)

    def _persist_state(self) -> None:
        if not self.persistence:
            return
        with self._lock:
            self.persistence.save_snapshot(self._snapshot_data())

    def _snapshot_data(self) -> dict:
        return {
            "hiring_flows": [
                record.model_dump(mode="json") for record in self.hiring_flows.values()
            ],
            "jobs": [record.model_dump(mode="json") for record in self.jobs.values()],
            "candidates": [record.model_dump(mode="json") for record in self.candidates.values()],
            "email_templates": [
                record.model_dump(mode="json") for record in self.email_templates.values()
            ],
            "audit_events": [record.model_dump(mode="json") for record in self.audit_events],
            "queued_emails": [
                record.model_dump(mode="json") for record in self.queued_emails.values()
            ],
            "reminders": [record.model_dump(mode="json") for record in self.reminders.values()],
            "notification_settings": self.notification_settings.model_dump(mode="json"),
        }

    def _hydrate_from_snapshot(self, snapshot: dict) -> None:
        self.hiring_flows = {
            record["id"]: HiringFlowRecord.model_validate(record)
            for record in snapshot.get("hiring_flows", [])
        }
        self.jobs = {
            record["id"]: JobRecord.model_validate(record)
            for record in snapshot.get("jobs", [])
        }
        self.candidates = {
            record["id"]: CandidateRecord.model_validate(record)
            for record in snapshot.get("candidates", [])
        }
        self.email_templates = {
            record["id"]: EmailTemplateRecord.model_validate(record)
            for record in snapshot.get("email_templates", [])
        }
        self.audit_events = [
            AuditEventRecord.model_validate(record) for record in snapshot.get("audit_events", [])
        ]
        self.queued_emails = {
            record["id"]: QueuedStageEmailRecord.model_validate(record)
            for record in snapshot.get("queued_emails", [])
        }
        self.reminders = {
            record["id"]: EmailReminderRecord.model_validate(record)
            for record in snapshot.get("reminders", [])
        }
        self.notification_settings = NotificationSettings.model_validate(
            snapshot.get("notification_settings") or {}
        )
