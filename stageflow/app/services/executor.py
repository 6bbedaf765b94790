from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from stageflow.app.models import (
    CandidateRecord,
    EmailTemplateDraft,
    EmailTemplateRecord,
    JobCandidateStage,
    NotificationSettings,
    QueuedEmailStatus,
    QueuedStageEmailRecord,
)
from stageflow.app.services.email_dispatch import EmailDispatcher, EmailDispatchError
from stageflow.app.services.notifications import (
    DEFAULT_REMINDER_DELAY_HOURS,
    NotificationDecision,
    evaluate_notification,
)
from stageflow.app.services.workflow import is_transition_allowed
from stageflow.app.store import InMemoryStore, StoreConflictError, StoreNotFoundError

if TYPE_CHECKING:
    from stageflow.app.observability import MetricsRegistry

logger = logging.getLogger("stageflow.transitions")


class InvalidTransition(Exception):
    pass


class TemplateValidationError(Exception):
    pass


class NotificationSendError(Exception):
    pass


@dataclass
class TransitionOutcome:
    candidate: CandidateRecord
    from_stage: JobCandidateStage
    queued_email: Optional[QueuedStageEmailRecord] = None
    template_id: Optional[str] = None
    warnings: list[str] = field(default_factory=list)


def validate_template_draft(draft: EmailTemplateDraft) -> None:
    missing = [
        name
        for name, value in (
            ("name", draft.name),
            ("subject", draft.subject),
            ("html_body", draft.html_body),
        )
        if not value or not value.strip()
    ]
    if missing:
        raise TemplateValidationError(f"email template missing: {', '.join(missing)}")


def create_template_from_draft(
    store: InMemoryStore, draft: EmailTemplateDraft
) -> EmailTemplateRecord:
    validate_template_draft(draft)
    return store.create_email_template(
        name=draft.name or "",
        subject=draft.subject or "",
        html_body=draft.html_body or "",
        stage=draft.stage,
        job_id=draft.job_id,
        is_default=draft.is_default,
    )


class StageTransitionExecutor:
    """Applies a validated stage change and runs the send-or-skip email policy.

    The only durable effect that must succeed is the stage write. Email
    problems after that point are recorded on the queued email, logged, and
    returned as warnings; they never undo the move.
    """

    def __init__(
        self,
        store: InMemoryStore,
        dispatcher: EmailDispatcher,
        *,
        metrics: Optional["MetricsRegistry"] = None,
        default_reminder_delay_hours: int = DEFAULT_REMINDER_DELAY_HOURS,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.metrics = metrics
        self.default_reminder_delay_hours = default_reminder_delay_hours

    def transition(
        self,
        candidate_id: str,
        target_stage: JobCandidateStage,
        *,
        notification_settings: NotificationSettings,
        skip_auto_email: bool = False,
        template_override_id: Optional[str] = None,
        inline_template: Optional[EmailTemplateDraft] = None,
        expected_version: Optional[int] = None,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TransitionOutcome:
        candidate = self.store.get_candidate(candidate_id)
        job = self.store.get_job(candidate.job_id)
        target_stage = JobCandidateStage(target_stage)
        if not is_transition_allowed(
            candidate.current_stage,
            target_stage,
            job.hiring_flow_stages,
            job.allow_backward_movement,
        ):
            raise InvalidTransition(
                f"cannot move candidate {candidate_id} from "
                f"{candidate.current_stage.value} to {target_stage.value}"
            )

        if expected_version is not None and expected_version != candidate.stage_version:
            raise StoreConflictError(
                f"candidate {candidate_id} changed since version {expected_version} "
                f"(now {candidate.stage_version})"
            )

        created_template_id: Optional[str] = None
        if not skip_auto_email:
            if template_override_id:
                self.store.get_email_template(template_override_id)
            if inline_template is not None:
                draft = inline_template.model_copy(
                    update={
                        "stage": inline_template.stage or target_stage,
                        "job_id": inline_template.job_id or job.id,
                    }
                )
                created_template_id = create_template_from_draft(self.store, draft).id
                template_override_id = created_template_id

        from_stage = candidate.current_stage
        try:
            updated = self.store.set_candidate_stage(
                candidate_id,
                target_stage,
                reason=reason or "stage_changed",
                actor=actor,
                expected_version=expected_version,
            )
        except (StoreConflictError, StoreNotFoundError):
            # A lost version race must not leave the inline template behind.
            if created_template_id:
                self.store.delete_email_template(created_template_id)
            raise
        logger.info(
            "stage_transition candidate_id=%s job_id=%s from=%s to=%s actor=%s",
            candidate_id,
            job.id,
            from_stage.value,
            target_stage.value,
            actor or "-",
        )
        if self.metrics:
            self.metrics.record_transition(target_stage.value)

        outcome = TransitionOutcome(candidate=updated, from_stage=from_stage)
        if skip_auto_email:
            outcome.queued_email = self.store.create_queued_email(
                candidate_id=candidate_id,
                from_stage=from_stage,
                to_stage=target_stage,
                template_id=template_override_id,
                skip_auto_email=True,
            )
            self._record_notification("skipped")
            return outcome

        decision = evaluate_notification(
            target_stage,
            job.id,
            settings=notification_settings,
            template_lookup=self.store.find_template_for_stage,
            template_override_id=template_override_id,
            default_reminder_delay_hours=self.default_reminder_delay_hours,
        )
        if not decision.should_send:
            self._record_notification("disabled")
            return outcome

        outcome.template_id = decision.template_id
        queued = self.store.create_queued_email(
            candidate_id=candidate_id,
            from_stage=from_stage,
            to_stage=target_stage,
            template_id=decision.template_id,
            delay_minutes=decision.delay_minutes,
        )
        try:
            outcome.queued_email = self._dispatch(queued, decision)
        except NotificationSendError as exc:
            logger.warning(
                "stage_email_failed candidate_id=%s stage=%s queued_email_id=%s error=%s",
                candidate_id,
                target_stage.value,
                queued.id,
                exc,
            )
            outcome.queued_email = self.store.mark_queued_email(
                queued.id, QueuedEmailStatus.failed, error=str(exc)
            )
            outcome.warnings.append(f"stage email not sent: {exc}")
            self._record_notification("failed")
        return outcome

    def _dispatch(
        self, queued: QueuedStageEmailRecord, decision: NotificationDecision
    ) -> QueuedStageEmailRecord:
        if not decision.template_id:
            raise NotificationSendError(f"no email template found for stage {queued.to_stage.value}")
        try:
            result = self.dispatcher.send(
                decision.template_id, queued.candidate_id, decision.delay_minutes
            )
        except EmailDispatchError as exc:
            raise NotificationSendError(str(exc)) from exc
        except Exception as exc:
            # The stage is already saved; any dispatcher fault becomes a warning.
            logger.exception(
                "email_dispatcher_crashed candidate_id=%s queued_email_id=%s",
                queued.candidate_id,
                queued.id,
            )
            raise NotificationSendError(f"email dispatcher error: {exc}") from exc
        if not result.accepted:
            raise NotificationSendError(result.detail or "email dispatcher did not accept message")

        # Delayed sends stay pending until the relay's scheduled job runs.
        status = QueuedEmailStatus.sent if decision.delay_minutes == 0 else QueuedEmailStatus.pending
        updated = self.store.mark_queued_email(queued.id, status, message_id=result.message_id)
        if decision.reminder and decision.reminder.enabled:
            self.store.create_reminder(
                queued_email=updated,
                template_id=decision.template_id,
                after_hours=decision.reminder.after_hours,
            )
        self._record_notification("sent")
        return updated

    def _record_notification(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_notification(outcome)


@dataclass
class BulkTransitionResult:
    candidate_id: str
    outcome: Optional[TransitionOutcome] = None
    error: Optional[str] = None


def bulk_transition(
    executor: StageTransitionExecutor,
    candidate_ids: list[str],
    target_stage: JobCandidateStage,
    *,
    notification_settings: NotificationSettings,
    skip_auto_email: bool = False,
    template_override_id: Optional[str] = None,
    actor: Optional[str] = None,
) -> list[BulkTransitionResult]:
    results: list[BulkTransitionResult] = []
    for candidate_id in dict.fromkeys(candidate_ids):
        try:
            outcome = executor.transition(
                candidate_id,
                target_stage,
                notification_settings=notification_settings,
                skip_auto_email=skip_auto_email,
                template_override_id=template_override_id,
                actor=actor,
                reason="bulk_stage_change",
            )
        except (InvalidTransition, StoreConflictError, StoreNotFoundError) as exc:
            results.append(BulkTransitionResult(candidate_id=candidate_id, error=str(exc)))
            continue
        results.append(BulkTransitionResult(candidate_id=candidate_id, outcome=outcome))
    return results
