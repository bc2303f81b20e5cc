"""에이전트 역할(프로필) 정의.

각 AgentProfile은 하나의 역할(PM, backend-developer, backend-reviewer,
tester 등)을 정적으로 기술한다:
- 허용 도구 목록
- 항상 첨부되는 사전 로드 스킬과 트리거로 호출되는 동적 스킬
- 작업 전후로 검사되는 CRITICAL 요구사항
- 도메인 범위 (직접 처리하는 토픽, 다른 역할에 위임하는 토픽)

프로필은 시작 시 설정에서 생성되고 이후 변경되지 않는다.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any


class RequirementPhase(str, Enum):
    PRE = "pre"
    POST = "post"


@dataclass(frozen=True)
class RequirementStatement:
    """검사 가능한 CRITICAL 요구사항.

    `statement`는 사람이 읽는 문장이고, `check`는 게이트 카탈로그에
    등록된 술어 이름이다.
    """

    id: str
    statement: str
    phase: RequirementPhase
    check: str
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class DomainScope:
    """역할이 소유하는 토픽과 다른 역할로 위임하는 토픽."""

    handles: tuple[str, ...] = ()
    defers_to: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def owns(self, topic: str) -> bool:
        return topic in self.handles


@dataclass(frozen=True)
class AgentProfile:
    """에이전트 역할의 정적 기술."""

    id: str
    display_name: str
    allowed_tools: frozenset[str]
    critical_requirements: tuple[RequirementStatement, ...]
    preloaded_skill_ids: tuple[str, ...] = ()
    dynamic_skill_triggers: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )
    domain_scope: DomainScope = field(default_factory=DomainScope)
    description: str = ""
    model: str | None = None

    @property
    def dynamic_skill_ids(self) -> frozenset[str]:
        return frozenset(self.dynamic_skill_triggers.values())

    @property
    def referenced_skill_ids(self) -> tuple[str, ...]:
        """사전 로드 + 동적 스킬 ID (중복 제거, 선언 순서 유지)."""
        seen: dict[str, None] = {}
        for skill_id in (*self.preloaded_skill_ids, *self.dynamic_skill_triggers.values()):
            seen.setdefault(skill_id, None)
        return tuple(seen)

    def requirements_for(self, phase: RequirementPhase) -> tuple[RequirementStatement, ...]:
        return tuple(r for r in self.critical_requirements if r.phase == phase)

    def to_dict(self) -> dict[str, Any]:
        """설정 파일 형식으로 직렬화한다 (load_profile과 왕복 가능)."""
        return {
            "id": self.id,
            "display_name": self.display_name,
            "description": self.description,
            "model": self.model,
            "allowed_tools": sorted(self.allowed_tools),
            "preloaded_skills": list(self.preloaded_skill_ids),
            "dynamic_skills": dict(self.dynamic_skill_triggers),
            "critical_requirements": [
                {
                    "id": r.id,
                    "statement": r.statement,
                    "phase": r.phase.value,
                    "check": r.check,
                    "params": dict(r.params),
                }
                for r in self.critical_requirements
            ],
            "domain_scope": {
                "handles": list(self.domain_scope.handles),
                "defers_to": dict(self.domain_scope.defers_to),
            },
        }
