from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from stageflow.app.auth import (
    ADMIN,
    PIPELINE_VIEWERS,
    SERVICE,
    STAGE_EDITORS,
    AuthContext,
    require_roles,
)
from stageflow.app.models import (
    AuditEventRecord,
    AvailableTransitionsResponse,
    BulkStageTransitionItem,
    BulkStageTransitionRequest,
    BulkStageTransitionResponse,
    CandidateCreateRequest,
    CandidateRecord,
    CandidateResponse,
    EmailTemplateDraft,
    EmailTemplateRecord,
    EmailTemplateResponse,
    FlowStageItem,
    HiringFlowCreateRequest,
    HiringFlowRecord,
    HiringFlowResponse,
    HiringFlowUpdateRequest,
    JobCandidateStage,
    JobCreateRequest,
    JobHiringFlowUpdateRequest,
    JobNotificationOverridesRequest,
    JobRecord,
    JobResponse,
    NotificationSettingsUpdateRequest,
    PipelineCandidate,
    PipelineResponse,
    QueuedEmailStatus,
    QueuedStageEmailRecord,
    ReminderProcessRequest,
    ReminderProcessResponse,
    StageConfigItem,
    StageDefinitionItem,
    StageResolveResponse,
    StageTransitionRequest,
    StageTransitionResponse,
)
from stageflow.app.observability import MetricsRegistry, configure_logging, observe_request
from stageflow.app.persistence import SqlitePersistence
from stageflow.app.services.catalog import (
    ALL_STAGES,
    StageDefinition,
    describe_flow,
    get_stage_definition,
    normalize_stage_label,
    resolve_stage,
)
from stageflow.app.services.email_dispatch import EmailDispatcher, build_dispatcher
from stageflow.app.services.executor import (
    InvalidTransition,
    StageTransitionExecutor,
    TemplateValidationError,
    bulk_transition,
    create_template_from_draft,
)
from stageflow.app.services.notifications import all_stage_configs, stage_config_view
from stageflow.app.services.reminders import process_due_reminders
from stageflow.app.services.workflow import available_transitions, unresolved_flow_stages
from stageflow.app.settings import Settings, load_settings
from stageflow.app.store import InMemoryStore, StoreConflictError, StoreNotFoundError


def create_app(dispatcher: Optional[EmailDispatcher] = None) -> FastAPI:
    settings = load_settings()
    configure_logging(settings.log_level)
    app = FastAPI(title="Stageflow Candidate Pipeline API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    persistence = SqlitePersistence(settings.database_url) if settings.persistence_enabled else None
    app.state.store = InMemoryStore(persistence=persistence)
    app.state.settings = settings
    app.state.metrics = MetricsRegistry()
    app.state.dispatcher = dispatcher or build_dispatcher(settings.email_relay)
    app.state.executor = StageTransitionExecutor(
        app.state.store,
        app.state.dispatcher,
        metrics=app.state.metrics,
        default_reminder_delay_hours=settings.default_reminder_delay_hours,
    )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_executor(request: Request) -> StageTransitionExecutor:
    return request.app.state.executor


def stage_item(stage: StageDefinition) -> StageDefinitionItem:
    return StageDefinitionItem(value=stage.value, label=stage.label, is_terminal=stage.is_terminal)


def flow_items(labels: list[str]) -> list[FlowStageItem]:
    return [FlowStageItem(label=label, stage=stage) for label, stage in describe_flow(labels)]


def flow_response(store: InMemoryStore, flow: HiringFlowRecord) -> HiringFlowResponse:
    jobs = store.list_jobs_for_flow(flow.id)
    return HiringFlowResponse(
        id=flow.id,
        name=flow.name,
        description=flow.description,
        stages=flow.stages,
        resolved_stages=flow_items(flow.stages),
        is_default=flow.is_default,
        is_active=flow.is_active,
        version=flow.version,
        jobs_count=len(jobs),
        outdated_jobs=sum(1 for job in jobs if (job.hiring_flow_version or 0) < flow.version),
    )


def job_response(job: JobRecord) -> JobResponse:
    return JobResponse(
        id=job.id,
        title=job.title,
        hiring_flow_id=job.hiring_flow_id,
        hiring_flow_version=job.hiring_flow_version,
        hiring_flow_stages=job.hiring_flow_stages,
        resolved_stages=flow_items(job.hiring_flow_stages),
        allow_backward_movement=job.allow_backward_movement,
    )


def candidate_response(candidate: CandidateRecord) -> CandidateResponse:
    definition = get_stage_definition(candidate.current_stage)
    return CandidateResponse(
        id=candidate.id,
        job_id=candidate.job_id,
        name=candidate.name,
        email=candidate.email,
        current_stage=candidate.current_stage,
        current_stage_label=definition.label,
        stage_version=candidate.stage_version,
        is_terminal=definition.is_terminal,
    )


def template_response(template: EmailTemplateRecord) -> EmailTemplateResponse:
    return EmailTemplateResponse(
        id=template.id,
        name=template.name,
        subject=template.subject,
        html_body=template.html_body,
        stage=template.stage,
        job_id=template.job_id,
        is_default=template.is_default,
    )


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(request.app.state.store, "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.get("/stages", response_model=list[StageDefinitionItem])
    def list_stages() -> list[StageDefinitionItem]:
        return [stage_item(stage) for stage in ALL_STAGES]

    @router.get("/stages/resolve", response_model=StageResolveResponse)
    def resolve_stage_label(label: str) -> StageResolveResponse:
        stage = resolve_stage(label)
        return StageResolveResponse(
            label=label,
            normalized=normalize_stage_label(label),
            stage=stage_item(stage) if stage else None,
        )

    @router.post("/hiring-flows", response_model=HiringFlowResponse)
    def create_hiring_flow(
        payload: HiringFlowCreateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(ADMIN)),
    ) -> HiringFlowResponse:
        store = get_store(request)
        flow = store.create_hiring_flow(payload)
        return flow_response(store, flow)

    @router.get("/hiring-flows", response_model=list[HiringFlowResponse])
    def list_hiring_flows(
        request: Request,
        include_inactive: bool = False,
        _: AuthContext = Depends(require_roles(*PIPELINE_VIEWERS)),
    ) -> list[HiringFlowResponse]:
        store = get_store(request)
        return [
            flow_response(store, flow)
            for flow in store.list_hiring_flows(include_inactive=include_inactive)
        ]

    @router.get("/hiring-flows/{flow_id}", response_model=HiringFlowResponse)
    def get_hiring_flow(
        flow_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*PIPELINE_VIEWERS)),
    ) -> HiringFlowResponse:
        store = get_store(request)
        try:
            flow = store.get_hiring_flow(flow_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return flow_response(store, flow)

    @router.put("/hiring-flows/{flow_id}", response_model=HiringFlowResponse)
    def update_hiring_flow(
        flow_id: str,
        payload: HiringFlowUpdateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(ADMIN)),
    ) -> HiringFlowResponse:
        store = get_store(request)
        try:
            flow = store.update_hiring_flow(flow_id, payload)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return flow_response(store, flow)

    @router.delete("/hiring-flows/{flow_id}")
    def delete_hiring_flow(
        flow_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(ADMIN)),
    ) -> dict[str, bool]:
        store = get_store(request)
        try:
            store.delete_hiring_flow(flow_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return {"success": True}

    @router.post("/hiring-flows/{flow_id}/default", response_model=HiringFlowResponse)
    def set_default_hiring_flow(
        flow_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(ADMIN)),
    ) -> HiringFlowResponse:
        store = get_store(request)
        try:
            flow = store.set_default_hiring_flow(flow_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return flow_response(store, flow)

    @router.get("/hiring-flows/{flow_id}/outdated-jobs", response_model=list[JobResponse])
    def outdated_jobs(
        flow_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAGE_EDITORS)),
    ) -> list[JobResponse]:
        store = get_store(request)
        try:
            jobs = store.list_outdated_jobs(flow_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return [job_response(job) for job in jobs]

    @router.post("/jobs", response_model=JobResponse)
    def create_job(
        payload: JobCreateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAGE_EDITORS)),
    ) -> JobResponse:
        store = get_store(request)
        try:
            job = store.create_job(payload)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return job_response(job)

    @router.get("/jobs/{job_id}", response_model=JobResponse)
    def get_job(
        job_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*PIPELINE_VIEWERS)),
    ) -> JobResponse:
        store = get_store(request)
        try:
            job = store.get_job(job_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return job_response(job)

    @router.put("/jobs/{job_id}/hiring-flow", response_model=JobResponse)
    def update_job_hiring_flow(
        job_id: str,
        payload: JobHiringFlowUpdateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAGE_EDITORS)),
    ) -> JobResponse:
        store = get_store(request)
        try:
            job = store.update_job_hiring_flow(job_id, payload)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return job_response(job)

    @router.get("/jobs/{job_id}/pipeline", response_model=PipelineResponse)
    def pipeline(
        job_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*PIPELINE_VIEWERS)),
    ) -> PipelineResponse:
        store = get_store(request)
        try:
            store.get_job(job_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        counts = {stage: 0 for stage in JobCandidateStage}
        items: list[PipelineCandidate] = []
        for candidate in store.list_job_candidates(job_id):
            counts[candidate.current_stage] += 1
            items.append(
                PipelineCandidate(
                    candidate_id=candidate.id,
                    name=candidate.name,
                    current_stage=candidate.current_stage,
                )
            )
        return PipelineResponse(job_id=job_id, counts=counts, candidates=items)

    @router.put("/jobs/{job_id}/notification-overrides", response_model=list[StageConfigItem])
    def set_job_notification_overrides(
        job_id: str,
        payload: JobNotificationOverridesRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(ADMIN)),
    ) -> list[StageConfigItem]:
        store = get_store(request)
        settings = get_settings(request)
        try:
            notification_settings = store.set_job_notification_overrides(job_id, payload.stages)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return all_stage_configs(
            notification_settings,
            job_id,
            default_reminder_delay_hours=settings.default_reminder_delay_hours,
        )

    @router.post("/jobs/{job_id}/candidates", response_model=CandidateResponse)
    def link_candidate(
        job_id: str,
        payload: CandidateCreateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAGE_EDITORS)),
    ) -> CandidateResponse:
        store = get_store(request)
        try:
            candidate = store.create_candidate(job_id, payload)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return candidate_response(candidate)

    @router.get("/candidates/{candidate_id}", response_model=CandidateResponse)
    def get_candidate(
        candidate_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*PIPELINE_VIEWERS)),
    ) -> CandidateResponse:
        store = get_store(request)
        try:
            candidate = store.get_candidate(candidate_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return candidate_response(candidate)

    @router.get(
        "/candidates/{candidate_id}/transitions",
        response_model=AvailableTransitionsResponse,
    )
    def candidate_transitions(
        candidate_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAGE_EDITORS)),
    ) -> AvailableTransitionsResponse:
        store = get_store(request)
        try:
            candidate = store.get_candidate(candidate_id)
            job = store.get_job(candidate.job_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        stages = available_transitions(
            candidate.current_stage,
            job.hiring_flow_stages,
            job.allow_backward_movement,
        )
        return AvailableTransitionsResponse(
            candidate_id=candidate.id,
            current_stage=candidate.current_stage,
            allow_backward_movement=job.allow_backward_movement,
            stage_version=candidate.stage_version,
            available=[stage_item(stage) for stage in stages],
            unresolved_flow_stages=unresolved_flow_stages(job.hiring_flow_stages),
        )

    @router.post("/candidates/stage/bulk", response_model=BulkStageTransitionResponse)
    def bulk_stage_transition(
        payload: BulkStageTransitionRequest,
        request: Request,
        auth: AuthContext = Depends(require_roles(*STAGE_EDITORS)),
    ) -> BulkStageTransitionResponse:
        store = get_store(request)
        results = bulk_transition(
            get_executor(request),
            payload.candidate_ids,
            payload.target_stage,
            notification_settings=store.get_notification_settings(),
            skip_auto_email=payload.skip_auto_email,
            template_override_id=payload.template_override_id,
            actor=auth.actor,
        )
        items = [
            BulkStageTransitionItem(
                candidate_id=result.candidate_id,
                ok=result.outcome is not None,
                current_stage=result.outcome.candidate.current_stage if result.outcome else None,
                detail=result.error,
                warnings=result.outcome.warnings if result.outcome else [],
            )
            for result in results
        ]
        return BulkStageTransitionResponse(
            target_stage=payload.target_stage,
            moved=sum(1 for item in items if item.ok),
            results=items,
        )

    @router.post("/candidates/{candidate_id}/stage", response_model=StageTransitionResponse)
    def transition_stage(
        candidate_id: str,
        payload: StageTransitionRequest,
        request: Request,
        auth: AuthContext = Depends(require_roles(*STAGE_EDITORS)),
    ) -> StageTransitionResponse:
        store = get_store(request)
        try:
            outcome = get_executor(request).transition(
                candidate_id,
                payload.target_stage,
                notification_settings=store.get_notification_settings(),
                skip_auto_email=payload.skip_auto_email,
                template_override_id=payload.template_override_id,
                inline_template=payload.inline_template,
                expected_version=payload.expected_version,
                actor=auth.actor,
                reason=payload.reason,
            )
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except (InvalidTransition, StoreConflictError) as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        except TemplateValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=str(exc),
            ) from exc
        queued = outcome.queued_email
        return StageTransitionResponse(
            ok=True,
            candidate_id=outcome.candidate.id,
            from_stage=outcome.from_stage,
            current_stage=outcome.candidate.current_stage,
            stage_version=outcome.candidate.stage_version,
            queued_email_id=queued.id if queued else None,
            queued_email_status=queued.status if queued else None,
            template_id=outcome.template_id,
            warnings=outcome.warnings,
        )

    @router.get(
        "/candidates/{candidate_id}/stage-history",
        response_model=list[AuditEventRecord],
    )
    def stage_history(
        candidate_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*PIPELINE_VIEWERS)),
    ) -> list[AuditEventRecord]:
        store = get_store(request)
        try:
            store.get_candidate(candidate_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return store.list_audit_events(candidate_id)

    @router.get(
        "/candidates/{candidate_id}/queued-emails",
        response_model=list[QueuedStageEmailRecord],
    )
    def candidate_queued_emails(
        candidate_id: str,
        request: Request,
        pending_only: bool = True,
        _: AuthContext = Depends(require_roles(*STAGE_EDITORS)),
    ) -> list[QueuedStageEmailRecord]:
        store = get_store(request)
        try:
            store.get_candidate(candidate_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return store.list_queued_emails(
            candidate_id=candidate_id,
            status=QueuedEmailStatus.pending if pending_only else None,
            limit=100,
        )

    @router.post("/email-templates", response_model=EmailTemplateResponse)
    def create_email_template(
        payload: EmailTemplateDraft,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAGE_EDITORS)),
    ) -> EmailTemplateResponse:
        store = get_store(request)
        try:
            template = create_template_from_draft(store, payload)
        except TemplateValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=str(exc),
            ) from exc
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return template_response(template)

    @router.get("/email-templates", response_model=list[EmailTemplateResponse])
    def list_email_templates(
        request: Request,
        stage: Optional[JobCandidateStage] = None,
        job_id: Optional[str] = None,
        _: AuthContext = Depends(require_roles(*STAGE_EDITORS)),
    ) -> list[EmailTemplateResponse]:
        store = get_store(request)
        return [
            template_response(template)
            for template in store.list_email_templates(stage=stage, job_id=job_id)
        ]

    @router.get("/settings/notifications", response_model=list[StageConfigItem])
    def notification_settings(
        request: Request,
        _: AuthContext = Depends(require_roles(*STAGE_EDITORS)),
    ) -> list[StageConfigItem]:
        store = get_store(request)
        settings = get_settings(request)
        return all_stage_configs(
            store.get_notification_settings(),
            default_reminder_delay_hours=settings.default_reminder_delay_hours,
        )

    @router.put("/settings/notifications", response_model=list[StageConfigItem])
    def update_notification_settings(
        payload: NotificationSettingsUpdateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(ADMIN)),
    ) -> list[StageConfigItem]:
        store = get_store(request)
        settings = get_settings(request)
        updated = store.update_notification_stages(payload.stages)
        return all_stage_configs(
            updated,
            default_reminder_delay_hours=settings.default_reminder_delay_hours,
        )

    @router.get("/settings/notifications/{stage}", response_model=StageConfigItem)
    def stage_notification_settings(
        stage: JobCandidateStage,
        request: Request,
        job_id: Optional[str] = None,
        _: AuthContext = Depends(require_roles(*STAGE_EDITORS)),
    ) -> StageConfigItem:
        store = get_store(request)
        settings = get_settings(request)
        return stage_config_view(
            store.get_notification_settings(),
            stage,
            job_id,
            default_reminder_delay_hours=settings.default_reminder_delay_hours,
        )

    @router.get("/queued-emails", response_model=list[QueuedStageEmailRecord])
    def list_queued_emails(
        request: Request,
        status_filter: Optional[QueuedEmailStatus] = None,
        limit: int = 50,
        _: AuthContext = Depends(require_roles(ADMIN)),
    ) -> list[QueuedStageEmailRecord]:
        store = get_store(request)
        return store.list_queued_emails(status=status_filter, limit=limit)

    @router.post(
        "/queued-emails/{queued_email_id}/cancel",
        response_model=QueuedStageEmailRecord,
    )
    def cancel_queued_email(
        queued_email_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAGE_EDITORS)),
    ) -> QueuedStageEmailRecord:
        store = get_store(request)
        try:
            return store.cancel_queued_email(queued_email_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    @router.post("/reminders/process", response_model=ReminderProcessResponse)
    def process_reminders(
        payload: ReminderProcessRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(SERVICE, ADMIN)),
    ) -> ReminderProcessResponse:
        responded = set(payload.responded_candidate_ids)
        summary = process_due_reminders(
            get_store(request),
            request.app.state.dispatcher,
            now=payload.now_utc,
            has_response=lambda queued: queued.candidate_id in responded,
        )
        return ReminderProcessResponse(
            processed=summary.processed,
            sent=summary.sent,
            skipped=summary.skipped,
            failed=summary.failed,
        )

    return router


app = create_app()
