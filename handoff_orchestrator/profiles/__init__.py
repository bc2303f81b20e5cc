"""에이전트 역할(프로필) 정의, 레지스트리, 설정 로더.

공개 API:
- AgentProfile, RequirementStatement, DomainScope: 불변 프로필 모델
- ProfileRegistry: ID 조회와 도메인 소유자 기반 라우팅
- load_profile, load_profiles, load_pipeline: 시작 시 즉시 검증하는 로더
"""

from handoff_orchestrator.profiles.definitions import (
    AgentProfile,
    DomainScope,
    RequirementPhase,
    RequirementStatement,
)
from handoff_orchestrator.profiles.registry import ProfileRegistry
from handoff_orchestrator.profiles.loader import (
    DEFAULT_MAX_REVISIONS,
    PipelineDefinition,
    load_pipeline,
    load_profile,
    load_profiles,
)

__all__ = [
    "DEFAULT_MAX_REVISIONS",
    "AgentProfile",
    "DomainScope",
    "PipelineDefinition",
    "ProfileRegistry",
    "RequirementPhase",
    "RequirementStatement",
    "load_pipeline",
    "load_profile",
    "load_profiles",
]
