from __future__ import annotations

import pytest

from stageflow.app.models import JobCandidateStage
from stageflow.app.services.catalog import (
    ALL_STAGES,
    STAGE_ALIASES,
    TERMINAL_STAGES,
    catalog_index,
    describe_flow,
    is_terminal,
    normalize_stage_label,
    resolve_stage,
)


def test_catalog_order_and_terminal_tail() -> None:
    assert [stage.value for stage in ALL_STAGES][:3] == [
        JobCandidateStage.applied,
        JobCandidateStage.shortlisted,
        JobCandidateStage.hr_screen,
    ]
    assert [stage.value for stage in TERMINAL_STAGES] == [
        JobCandidateStage.hired,
        JobCandidateStage.rejected,
        JobCandidateStage.withdrawn,
        JobCandidateStage.archived,
    ]
    assert list(ALL_STAGES[-4:]) == list(TERMINAL_STAGES)
    assert catalog_index(JobCandidateStage.offer) == 9
    assert is_terminal(JobCandidateStage.hired)
    assert not is_terminal(JobCandidateStage.offer)


def test_normalize_strips_case_and_punctuation() -> None:
    assert normalize_stage_label("  HR-screen ") == "HRSCREEN"
    assert normalize_stage_label("ceo_chat") == "CEOCHAT"
    assert normalize_stage_label(None) == ""


@pytest.mark.parametrize("alias,stage", sorted(STAGE_ALIASES.items()))
def test_every_alias_resolves(alias: str, stage: JobCandidateStage) -> None:
    resolved = resolve_stage(alias)
    assert resolved is not None
    assert resolved.value == stage


@pytest.mark.parametrize("label", ["shortlist", "Shortlisted Candidates", "SHORTLISTED_POOL"])
def test_shortlist_spellings(label: str) -> None:
    resolved = resolve_stage(label)
    assert resolved is not None
    assert resolved.value == JobCandidateStage.shortlisted


def test_resolves_catalog_values_and_labels() -> None:
    assert resolve_stage("HR Screen").value == JobCandidateStage.hr_screen
    assert resolve_stage("hr_screen").value == JobCandidateStage.hr_screen
    assert resolve_stage("CEO Chat").value == JobCandidateStage.ceo_chat
    assert resolve_stage("offer").value == JobCandidateStage.offer


def test_unknown_labels_do_not_fuzzy_match() -> None:
    assert resolve_stage("Technicall") is None
    assert resolve_stage("Final Round With Board") is None
    assert resolve_stage("") is None
    assert resolve_stage("---") is None


def test_describe_flow_keeps_unresolved_labels() -> None:
    assert describe_flow(["Apply", "Bake Off", "Panel"]) == [
        ("Apply", JobCandidateStage.applied),
        ("Bake Off", None),
        ("Panel", JobCandidateStage.panel),
    ]
