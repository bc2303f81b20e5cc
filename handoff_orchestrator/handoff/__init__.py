"""역할 간 산출물(HandoffArtifact) 스키마와 추가 전용 저장소."""

from handoff_orchestrator.handoff.artifact import (
    PIPELINE_ORDER,
    Criterion,
    CriterionStatus,
    HandoffArtifact,
    PatternReference,
    ScopeBoundaries,
    Stage,
    Verification,
    render_markdown,
)
from handoff_orchestrator.handoff.store import (
    ArtifactRecord,
    ArtifactRef,
    ArtifactStore,
    Disposition,
)

__all__ = [
    "PIPELINE_ORDER",
    "ArtifactRecord",
    "ArtifactRef",
    "ArtifactStore",
    "Criterion",
    "CriterionStatus",
    "Disposition",
    "HandoffArtifact",
    "PatternReference",
    "ScopeBoundaries",
    "Stage",
    "Verification",
    "render_markdown",
]
