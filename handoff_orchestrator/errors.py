"""오케스트레이션 코어의 예외 계층.

설정 단계 오류(ConfigurationError 계열)는 태스크가 시작되기 전에 프로세스를
중단시키고, 태스크 단계 오류(GateBlocked, NeedsRevision 등)는 해당 태스크의
Sequencer 안에서만 처리된다.

    OrchestrationError
    ├── ConfigurationError
    │   ├── InvalidProfile
    │   └── DuplicateSkillId
    ├── SkillNotFound (KeyError)
    ├── GateBlocked
    ├── NeedsRevision
    ├── MaxRevisionsExceeded
    ├── ArtifactFormatError
    └── ArtifactStoreError
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from handoff_orchestrator.gates.gate import RequirementCheckResult


class OrchestrationError(Exception):
    """오케스트레이션 코어의 모든 예외의 기반 클래스."""


class ConfigurationError(OrchestrationError):
    """스킬/프로필/파이프라인 설정을 로드하거나 검증할 수 없을 때 발생한다.

    Attributes:
        source: 문제가 된 설정 파일 경로 (알 수 있는 경우).
    """

    def __init__(self, message: str, source: Path | str | None = None) -> None:
        super().__init__(message)
        self.source = source


class InvalidProfile(ConfigurationError):
    """AgentProfile이 참조 무결성 또는 필수 필드 검증에 실패했을 때 발생한다.

    Attributes:
        profile_id: 검증에 실패한 프로필 ID.
        problems: 발견된 모든 문제 목록.
    """

    def __init__(
        self,
        profile_id: str,
        problems: Sequence[str],
        source: Path | str | None = None,
    ) -> None:
        self.profile_id = profile_id
        self.problems = tuple(problems)
        details = "; ".join(self.problems)
        super().__init__(f"프로필 '{profile_id}'이(가) 유효하지 않음: {details}", source)


class DuplicateSkillId(ConfigurationError):
    """두 스킬 소스가 같은 ID(또는 별칭)를 선언했을 때 발생한다."""

    def __init__(self, skill_id: str, first: str, second: str) -> None:
        self.skill_id = skill_id
        self.first = first
        self.second = second
        super().__init__(
            f"스킬 ID '{skill_id}'이(가) 중복 선언됨: {first}, {second}",
            second,
        )


class SkillNotFound(OrchestrationError, KeyError):
    """레지스트리에 없는 스킬 ID를 조회했을 때 발생한다."""

    def __init__(self, skill_id: str) -> None:
        self.skill_id = skill_id
        super().__init__(f"스킬 '{skill_id}'을(를) 레지스트리에서 찾을 수 없음")

    def __str__(self) -> str:
        return str(self.args[0])


class _GateFailure(OrchestrationError):
    """실패한 요구사항 결과를 함께 전달하는 게이트 예외의 공통 기반."""

    def __init__(
        self,
        message: str,
        failures: Sequence[RequirementCheckResult] = (),
    ) -> None:
        self.failures = tuple(failures)
        lines = [message]
        for failure in self.failures:
            fields = ", ".join(failure.fields) or "-"
            lines.append(
                f"  - [{failure.requirement.id}] {failure.requirement.statement}"
                f" (필드: {fields}): {failure.detail}"
            )
        super().__init__("\n".join(lines))


class GateBlocked(_GateFailure):
    """사전 조건 검사가 실패하여 에이전트 실행을 진행할 수 없을 때 발생한다.

    태스크는 파기되지 않고 일시 정지되며, 컨텍스트가 조건을 만족하면
    재개할 수 있다.
    """


class NeedsRevision(_GateFailure):
    """사후 조건 검사가 실패하여 산출물을 같은 단계로 되돌려야 할 때 발생한다."""


class MaxRevisionsExceeded(_GateFailure):
    """수정 요청 횟수가 설정된 한도를 초과했을 때 발생한다."""


class ArtifactFormatError(OrchestrationError):
    """에이전트 응답이나 저장된 레코드를 HandoffArtifact로 해석할 수 없을 때 발생한다."""


class ArtifactStoreError(OrchestrationError):
    """산출물 저장소의 기록 또는 조회가 실패했을 때 발생한다."""
