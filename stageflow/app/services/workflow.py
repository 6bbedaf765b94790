from __future__ import annotations

from typing import Optional, Sequence

from stageflow.app.models import JobCandidateStage
from stageflow.app.services.catalog import (
    ALL_STAGES,
    TERMINAL_STAGES,
    StageDefinition,
    get_stage_definition,
    resolve_stage,
)


def resolve_flow(hiring_flow_stages: Optional[Sequence[str]]) -> list[StageDefinition]:
    """Composite ordering for a job: resolved flow entries, then the terminal stages.

    Unresolvable labels are dropped. A stage that several labels resolve to
    keeps its first position. Terminal stages named in the flow are moved to
    the fixed terminal tail. Returns the static catalog when nothing resolves.
    """
    if not hiring_flow_stages:
        return list(ALL_STAGES)
    resolved: list[StageDefinition] = []
    seen: set[JobCandidateStage] = set()
    for label in hiring_flow_stages:
        stage = resolve_stage(label)
        if stage is None or stage.is_terminal or stage.value in seen:
            continue
        seen.add(stage.value)
        resolved.append(stage)
    if not resolved:
        return list(ALL_STAGES)
    return resolved + list(TERMINAL_STAGES)


def unresolved_flow_stages(hiring_flow_stages: Optional[Sequence[str]]) -> list[str]:
    return [label for label in hiring_flow_stages or [] if resolve_stage(label) is None]


def available_transitions(
    current_stage: JobCandidateStage,
    hiring_flow_stages: Optional[Sequence[str]] = None,
    allow_backward_movement: bool = False,
) -> list[StageDefinition]:
    current = get_stage_definition(current_stage)
    if current.is_terminal:
        return []

    ordered = resolve_flow(hiring_flow_stages)
    if allow_backward_movement:
        return [stage for stage in ordered if stage.value != current.value]

    # A current stage missing from the job's flow has no position in it,
    # so every entry counts as forward.
    current_index = next(
        (index for index, stage in enumerate(ordered) if stage.value == current.value),
        -1,
    )
    return [stage for index, stage in enumerate(ordered) if index > current_index]


def is_transition_allowed(
    current_stage: JobCandidateStage,
    target_stage: JobCandidateStage,
    hiring_flow_stages: Optional[Sequence[str]] = None,
    allow_backward_movement: bool = False,
) -> bool:
    return any(
        stage.value == target_stage
        for stage in available_transitions(
            current_stage, hiring_flow_stages, allow_backward_movement
        )
    )
