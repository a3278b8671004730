"""Per-job pipeline stages and their static transition table."""

from __future__ import annotations

from enum import Enum

from repo_review.pipeline.errors import InvalidTransitionError


class PipelineStage(str, Enum):
    """Worker-internal stage of one job attempt."""

    LEASED = "leased"
    METADATA_FETCHED = "metadata_fetched"
    CLONED = "cloned"
    ENUMERATED = "enumerated"
    ANALYZING = "analyzing"
    AGGREGATED = "aggregated"
    PERSISTED = "persisted"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {PipelineStage.COMPLETED, PipelineStage.FAILED}


_FORWARD: dict[PipelineStage, PipelineStage] = {
    PipelineStage.LEASED: PipelineStage.METADATA_FETCHED,
    PipelineStage.METADATA_FETCHED: PipelineStage.CLONED,
    PipelineStage.CLONED: PipelineStage.ENUMERATED,
    PipelineStage.ENUMERATED: PipelineStage.ANALYZING,
    PipelineStage.ANALYZING: PipelineStage.AGGREGATED,
    PipelineStage.AGGREGATED: PipelineStage.PERSISTED,
    PipelineStage.PERSISTED: PipelineStage.COMPLETED,
}

ALLOWED_TRANSITIONS: dict[PipelineStage, frozenset[PipelineStage]] = {
    stage: frozenset(
        {_FORWARD[stage], PipelineStage.FAILED} if stage in _FORWARD else set(),
    )
    for stage in PipelineStage
}


class StageTracker:
    """Tracks the current stage of one job attempt and rejects illegal moves."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self.stage = PipelineStage.LEASED
        self.history: list[PipelineStage] = [PipelineStage.LEASED]

    def advance(self, target: PipelineStage) -> PipelineStage:
        """Move to `target` or raise `InvalidTransitionError`."""

        if target not in ALLOWED_TRANSITIONS[self.stage]:
            raise InvalidTransitionError(
                f"Invalid stage transition for job {self.job_id}: "
                f"{self.stage.value} -> {target.value}",
            )
        self.stage = target
        self.history.append(target)
        return target

    def fail(self) -> None:
        """Move to FAILED unless the attempt already reached a terminal stage."""

        if self.stage.is_terminal:
            return
        self.advance(PipelineStage.FAILED)
