"""사전 조건 검사와 스킬 매칭이 보는 태스크 컨텍스트."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from handoff_orchestrator.handoff.artifact import HandoffArtifact, Stage


@dataclass(frozen=True)
class TaskContext:
    """한 단계 진입 시점의 태스크 상태.

    Attributes:
        task_id: 태스크 ID.
        description: 사용자가 제출한 태스크 설명 (동적 스킬 매칭 대상).
        stage: 진입하려는 단계.
        values: 사전 조건 검사용 추가 값 (예: 대상 저장소, 티켓 번호).
        history: 지금까지 승인된 산출물 (오래된 것부터).
        workspace_root: 파일 경로 검사의 기준 디렉토리.
    """

    task_id: str
    description: str
    stage: Stage
    values: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    history: tuple[HandoffArtifact, ...] = ()
    workspace_root: Path | None = None

    def latest_of_stage(self, stage: Stage) -> HandoffArtifact | None:
        for artifact in reversed(self.history):
            if artifact.stage == stage:
                return artifact
        return None
