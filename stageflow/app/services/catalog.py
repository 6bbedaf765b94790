from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from stageflow.app.models import JobCandidateStage


@dataclass(frozen=True)
class StageDefinition:
    value: JobCandidateStage
    label: str
    is_terminal: bool = False


ALL_STAGES: tuple[StageDefinition, ...] = (
    StageDefinition(JobCandidateStage.applied, "Applied"),
    StageDefinition(JobCandidateStage.shortlisted, "Shortlisted"),
    StageDefinition(JobCandidateStage.hr_screen, "HR Screen"),
    StageDefinition(JobCandidateStage.team_chat, "Team Chat"),
    StageDefinition(JobCandidateStage.advisor_chat, "Advisor Chat"),
    StageDefinition(JobCandidateStage.technical, "Technical"),
    StageDefinition(JobCandidateStage.panel, "Panel"),
    StageDefinition(JobCandidateStage.trial, "Trial"),
    StageDefinition(JobCandidateStage.ceo_chat, "CEO Chat"),
    StageDefinition(JobCandidateStage.offer, "Offer"),
    StageDefinition(JobCandidateStage.hired, "Hired", is_terminal=True),
    StageDefinition(JobCandidateStage.rejected, "Rejected", is_terminal=True),
    StageDefinition(JobCandidateStage.withdrawn, "Withdrawn", is_terminal=True),
    StageDefinition(JobCandidateStage.archived, "Archived", is_terminal=True),
)

TERMINAL_STAGES: tuple[StageDefinition, ...] = tuple(
    stage for stage in ALL_STAGES if stage.is_terminal
)

_BY_VALUE: dict[JobCandidateStage, StageDefinition] = {stage.value: stage for stage in ALL_STAGES}

_NON_ALNUM = re.compile(r"[^A-Z0-9]+")

# Keys are already normalized (see normalize_stage_label).
STAGE_ALIASES: dict[str, JobCandidateStage] = {
    "APPLY": JobCandidateStage.applied,
    "APPLICATION": JobCandidateStage.applied,
    "APPLICATIONS": JobCandidateStage.applied,
    "APPLICATIONRECEIVED": JobCandidateStage.applied,
    "APPLIEDCANDIDATES": JobCandidateStage.applied,
    "NEWAPPLICANT": JobCandidateStage.applied,
    "NEWAPPLICANTS": JobCandidateStage.applied,
    "INBOX": JobCandidateStage.applied,
    "SHORTLIST": JobCandidateStage.shortlisted,
    "SHORTLISTING": JobCandidateStage.shortlisted,
    "SHORTLISTCANDIDATES": JobCandidateStage.shortlisted,
    "SHORTLISTEDCANDIDATES": JobCandidateStage.shortlisted,
    "SHORTLISTPOOL": JobCandidateStage.shortlisted,
    "SHORTLISTEDPOOL": JobCandidateStage.shortlisted,
    "SHORTLISTREVIEW": JobCandidateStage.shortlisted,
    "CVSHORTLIST": JobCandidateStage.shortlisted,
    "RESUMESHORTLIST": JobCandidateStage.shortlisted,
    "PEOPLECHAT": JobCandidateStage.hr_screen,
    "PEOPLESCREEN": JobCandidateStage.hr_screen,
    "HRCHAT": JobCandidateStage.hr_screen,
    "HRSCREENING": JobCandidateStage.hr_screen,
    "HRINTERVIEW": JobCandidateStage.hr_screen,
    "HRCALL": JobCandidateStage.hr_screen,
    "PHONESCREEN": JobCandidateStage.hr_screen,
    "RECRUITERSCREEN": JobCandidateStage.hr_screen,
    "SCREENING": JobCandidateStage.hr_screen,
    "TEAMINTERVIEW": JobCandidateStage.team_chat,
    "TEAMMEETING": JobCandidateStage.team_chat,
    "MEETTHETEAM": JobCandidateStage.team_chat,
    "CULTUREFIT": JobCandidateStage.team_chat,
    "ADVISORINTERVIEW": JobCandidateStage.advisor_chat,
    "ADVISORMEETING": JobCandidateStage.advisor_chat,
    "ADVISORYCHAT": JobCandidateStage.advisor_chat,
    "CODINGTEST": JobCandidateStage.technical,
    "CODINGCHALLENGE": JobCandidateStage.technical,
    "CODINGINTERVIEW": JobCandidateStage.technical,
    "TECHNICALINTERVIEW": JobCandidateStage.technical,
    "TECHNICALTEST": JobCandidateStage.technical,
    "TECHNICALASSESSMENT": JobCandidateStage.technical,
    "TECHNICALROUND": JobCandidateStage.technical,
    "TECHSCREEN": JobCandidateStage.technical,
    "TECHINTERVIEW": JobCandidateStage.technical,
    "TAKEHOME": JobCandidateStage.technical,
    "TAKEHOMETEST": JobCandidateStage.technical,
    "CASESTUDY": JobCandidateStage.technical,
    "PANELINTERVIEW": JobCandidateStage.panel,
    "PANELCHAT": JobCandidateStage.panel,
    "FINALPANEL": JobCandidateStage.panel,
    "FINALINTERVIEW": JobCandidateStage.panel,
    "WORKTRIAL": JobCandidateStage.trial,
    "TRIALDAY": JobCandidateStage.trial,
    "TRIALTASK": JobCandidateStage.trial,
    "PAIDTRIAL": JobCandidateStage.trial,
    "CEO": JobCandidateStage.ceo_chat,
    "CEOINTERVIEW": JobCandidateStage.ceo_chat,
    "CEOMEETING": JobCandidateStage.ceo_chat,
    "FOUNDERCHAT": JobCandidateStage.ceo_chat,
    "FOUNDERINTERVIEW": JobCandidateStage.ceo_chat,
    "OFFERSTAGE": JobCandidateStage.offer,
    "OFFERLETTER": JobCandidateStage.offer,
    "OFFERSENT": JobCandidateStage.offer,
    "OFFEREXTENDED": JobCandidateStage.offer,
    "HIRE": JobCandidateStage.hired,
    "JOINED": JobCandidateStage.hired,
    "ONBOARDED": JobCandidateStage.hired,
    "REJECT": JobCandidateStage.rejected,
    "DECLINED": JobCandidateStage.rejected,
    "NOTSELECTED": JobCandidateStage.rejected,
    "WITHDRAW": JobCandidateStage.withdrawn,
    "WITHDREW": JobCandidateStage.withdrawn,
    "ARCHIVE": JobCandidateStage.archived,
}


def normalize_stage_label(label: Optional[str]) -> str:
    if not label:
        return ""
    return _NON_ALNUM.sub("", label.upper())


def get_stage_definition(stage: JobCandidateStage) -> StageDefinition:
    return _BY_VALUE[JobCandidateStage(stage)]


def is_terminal(stage: JobCandidateStage) -> bool:
    return get_stage_definition(stage).is_terminal


def catalog_index(stage: JobCandidateStage) -> int:
    return ALL_STAGES.index(get_stage_definition(stage))


def resolve_stage(label: Optional[str]) -> Optional[StageDefinition]:
    """Map a free-text flow label onto the stage catalog.

    Exact normalized-string equality only: the alias table is consulted
    first, then each definition's value and label. ``None`` marks an
    unresolvable label, which callers keep for display but leave out of
    ordering and notification logic.
    """
    key = normalize_stage_label(label)
    if not key:
        return None
    alias = STAGE_ALIASES.get(key)
    if alias is not None:
        return _BY_VALUE[alias]
    for stage in ALL_STAGES:
        if key in (normalize_stage_label(stage.value.value), normalize_stage_label(stage.label)):
            return stage
    return None


def describe_flow(labels: list[str]) -> list[tuple[str, Optional[JobCandidateStage]]]:
    output: list[tuple[str, Optional[JobCandidateStage]]] = []
    for label in labels:
        stage = resolve_stage(label)
        output.append((label, stage.value if stage else None))
    return output
