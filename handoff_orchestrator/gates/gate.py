"""프로필의 CRITICAL 요구사항을 작업 전후로 평가하는 RequirementGate.

심각도는 이진이다: 요구사항 하나라도 실패하거나 평가할 수 없으면
사전 검사는 BLOCKED, 사후 검사는 NEEDS_REVISION이 된다. 경고 단계는 없다.

보고서는 프로필의 요구사항마다 정확히 하나의 결과를 담는다. 다른 단계
(pre/post)의 요구사항은 "해당 없음"으로 충족 처리된다.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from handoff_orchestrator.errors import GateBlocked, NeedsRevision
from handoff_orchestrator.gates.checks import CheckInput, Unevaluable, get_check
from handoff_orchestrator.gates.context import TaskContext
from handoff_orchestrator.handoff.artifact import HandoffArtifact
from handoff_orchestrator.profiles.definitions import (
    AgentProfile,
    RequirementPhase,
    RequirementStatement,
)

logger = logging.getLogger(__name__)

NOT_APPLICABLE = "해당 없음"


class GateVerdict(str, Enum):
    PASSED = "passed"
    BLOCKED = "blocked"
    NEEDS_REVISION = "needs_revision"


@dataclass(frozen=True)
class RequirementCheckResult:
    """요구사항 하나의 평가 결과.

    Attributes:
        requirement: 평가한 요구사항.
        satisfied: 충족 여부.
        detail: 실패 이유 또는 참고 설명.
        fields: 실패와 관련된 산출물/컨텍스트 필드.
    """

    requirement: RequirementStatement
    satisfied: bool
    detail: str = ""
    fields: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "requirement": self.requirement.id,
            "statement": self.requirement.statement,
            "phase": self.requirement.phase.value,
            "check": self.requirement.check,
            "satisfied": self.satisfied,
            "detail": self.detail,
            "fields": list(self.fields),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RequirementCheckResult:
        requirement = RequirementStatement(
            id=str(data["requirement"]),
            statement=str(data.get("statement", "")),
            phase=RequirementPhase(data.get("phase", RequirementPhase.POST.value)),
            check=str(data.get("check", "")),
        )
        return cls(
            requirement=requirement,
            satisfied=bool(data.get("satisfied")),
            detail=str(data.get("detail", "")),
            fields=tuple(data.get("fields") or ()),
        )


@dataclass(frozen=True)
class GateReport:
    """한 번의 게이트 평가 결과."""

    profile_id: str
    phase: RequirementPhase
    verdict: GateVerdict
    results: tuple[RequirementCheckResult, ...]

    @property
    def passed(self) -> bool:
        return self.verdict == GateVerdict.PASSED

    @property
    def failures(self) -> tuple[RequirementCheckResult, ...]:
        return tuple(r for r in self.results if not r.satisfied)

    def raise_for_verdict(self) -> None:
        """판정이 PASSED가 아니면 해당 예외를 발생시킨다.

        Raises:
            GateBlocked: 사전 검사 실패.
            NeedsRevision: 사후 검사 실패.
        """
        if self.verdict == GateVerdict.BLOCKED:
            msg = f"'{self.profile_id}'의 사전 조건을 만족하지 않아 진행할 수 없습니다"
            raise GateBlocked(msg, self.failures)
        if self.verdict == GateVerdict.NEEDS_REVISION:
            msg = f"'{self.profile_id}'의 산출물이 사후 조건을 만족하지 않아 수정이 필요합니다"
            raise NeedsRevision(msg, self.failures)


class RequirementGate:
    """프로필 요구사항을 검사 카탈로그의 술어로 평가한다.

    Args:
        workspace_root: 파일 경로 술어의 기본 기준 디렉토리.
    """

    def __init__(self, workspace_root: Path | None = None) -> None:
        self.workspace_root = workspace_root

    def _evaluate(
        self,
        requirement: RequirementStatement,
        phase: RequirementPhase,
        subject: CheckInput,
    ) -> RequirementCheckResult:
        if requirement.phase != phase:
            return RequirementCheckResult(requirement, True, NOT_APPLICABLE)

        check = get_check(requirement.check)
        if check is None:
            return RequirementCheckResult(
                requirement, False, f"알 수 없는 검사: {requirement.check}", ("check",)
            )
        try:
            outcome = check.function(subject, requirement.params)
        except Unevaluable as e:
            return RequirementCheckResult(requirement, False, f"평가 불가: {e}", e.fields)
        except (LookupError, ValueError) as e:
            return RequirementCheckResult(requirement, False, f"평가 불가: {e}")
        except TypeError as e:
            fields = tuple(f"params.{key}" for key in requirement.params) or ("params",)
            return RequirementCheckResult(
                requirement, False, f"평가 불가: 파라미터 형식이 잘못됨 ({e})", fields
            )
        return RequirementCheckResult(
            requirement, outcome.satisfied, outcome.detail, outcome.fields
        )

    def _report(
        self,
        profile: AgentProfile,
        phase: RequirementPhase,
        subject: CheckInput,
        failed_verdict: GateVerdict,
    ) -> GateReport:
        results = tuple(
            self._evaluate(requirement, phase, subject)
            for requirement in profile.critical_requirements
        )
        verdict = GateVerdict.PASSED if all(r.satisfied for r in results) else failed_verdict
        if verdict != GateVerdict.PASSED:
            logger.info(
                "'%s' %s 검사 실패: %s",
                profile.id,
                phase.value,
                [r.requirement.id for r in results if not r.satisfied],
            )
        return GateReport(profile.id, phase, verdict, results)

    def check_pre(self, profile: AgentProfile, context: TaskContext) -> GateReport:
        """에이전트 실행 전에 태스크 컨텍스트로 사전 조건을 검사한다."""
        subject = CheckInput(
            profile=profile,
            context=context,
            history=context.history,
            workspace_root=context.workspace_root or self.workspace_root,
        )
        return self._report(profile, RequirementPhase.PRE, subject, GateVerdict.BLOCKED)

    def check_post(
        self,
        profile: AgentProfile,
        artifact: HandoffArtifact,
        history: Sequence[HandoffArtifact] = (),
        *,
        workspace_root: Path | None = None,
    ) -> GateReport:
        """에이전트가 만든 산출물로 사후 조건을 검사한다.

        Args:
            profile: 산출물을 만든 프로필.
            artifact: 검사할 산출물.
            history: 이 산출물 이전에 승인된 산출물 (오래된 것부터).
            workspace_root: 파일 경로 술어의 기준 디렉토리 (기본값: 게이트 설정).
        """
        subject = CheckInput(
            profile=profile,
            artifact=artifact,
            history=tuple(history),
            workspace_root=workspace_root or self.workspace_root,
        )
        return self._report(profile, RequirementPhase.POST, subject, GateVerdict.NEEDS_REVISION)

