"""스킬 해석과 에이전트 핸드오프를 위한 오케스트레이션 코어.

PM → Developer → Reviewer → Tester로 이어지는 에이전트 역할들이
구조화된 산출물을 주고받으며 하나의 태스크를 진행하도록 조율한다.

## 구성 요소

1. **SkillRegistry (스킬 레지스트리)**
   - 스킬 루트의 SKILL.md를 시작 시 한 번 스캔하여 불변 색인 생성
   - ID/별칭 조회, 트리거 기반 동적 스킬 감지
   - 사전 로드 + 동적의 2단계 해석

2. **AgentProfile (에이전트 프로필)**
   - 역할별 허용 도구, 스킬, CRITICAL 요구사항, 도메인 범위
   - 설정 로드 시 스킬 참조와 요구사항을 즉시 검증

3. **RequirementGate (요구사항 게이트)**
   - 요구사항을 검사 카탈로그의 술어로 평가
   - 사전 검사 실패는 BLOCKED, 사후 검사 실패는 NEEDS_REVISION

4. **HandoffArtifact (핸드오프 산출물)**
   - Spec, Implementation, Review, TestReport 단계의 불변 산출물
   - 태스크별 추가 전용 이력과 현재 포인터

5. **OrchestrationSequencer (시퀀서)**
   - 단계 진행, 수정 한도, 도메인 소유권 기반 리뷰 라우팅, 재개와 취소

## 모듈 구조

```
handoff_orchestrator/
├── __init__.py          # 이 파일
├── cli.py               # handoff 명령 (run, status, history, validate, skills)
├── config.py            # 환경 변수 설정
├── errors.py            # 예외 계층
├── skills/              # 스킬 로더, 레지스트리, 프롬프트 미들웨어
├── profiles/            # 프로필 모델, 레지스트리, 설정 로더
├── gates/               # 검사 카탈로그와 요구사항 게이트
├── handoff/             # 산출물 스키마와 저장소
└── orchestration/       # 실행기 프로토콜, 프롬프트, 시퀀서
```

## 사용 예시

```python
from handoff_orchestrator import (
    ArtifactStore,
    ChatModelAgentExecutor,
    OrchestrationSequencer,
    load_pipeline,
)

pipeline = load_pipeline("orchestration.yaml")
executor = ChatModelAgentExecutor(chat_model)  # 임의의 BaseChatModel
sequencer = OrchestrationSequencer(pipeline, ArtifactStore(".handoff/tasks"), executor)

result = sequencer.run("TASK-1", "Add pagination to the users API")
print(result.status)
```
"""

__version__ = "0.1.0"

from handoff_orchestrator.errors import (
    ArtifactFormatError,
    ArtifactStoreError,
    ConfigurationError,
    DuplicateSkillId,
    GateBlocked,
    InvalidProfile,
    MaxRevisionsExceeded,
    NeedsRevision,
    OrchestrationError,
    SkillNotFound,
)
from handoff_orchestrator.skills import ResolvedSkills, Skill, SkillRegistry
from handoff_orchestrator.profiles import (
    AgentProfile,
    PipelineDefinition,
    ProfileRegistry,
    load_pipeline,
    load_profile,
    load_profiles,
)
from handoff_orchestrator.gates import (
    GateReport,
    GateVerdict,
    RequirementCheckResult,
    RequirementGate,
    TaskContext,
    register_check,
)
from handoff_orchestrator.handoff import ArtifactStore, HandoffArtifact, Stage
from handoff_orchestrator.orchestration import (
    AgentExecutor,
    AgentInvocation,
    ChatModelAgentExecutor,
    OrchestrationSequencer,
    RunResult,
    TaskStatus,
)

__all__ = [
    "AgentExecutor",
    "AgentInvocation",
    "AgentProfile",
    "ArtifactFormatError",
    "ArtifactStore",
    "ArtifactStoreError",
    "ChatModelAgentExecutor",
    "ConfigurationError",
    "DuplicateSkillId",
    "GateBlocked",
    "GateReport",
    "GateVerdict",
    "HandoffArtifact",
    "InvalidProfile",
    "MaxRevisionsExceeded",
    "NeedsRevision",
    "OrchestrationError",
    "OrchestrationSequencer",
    "PipelineDefinition",
    "ProfileRegistry",
    "RequirementCheckResult",
    "RequirementGate",
    "ResolvedSkills",
    "RunResult",
    "Skill",
    "SkillNotFound",
    "SkillRegistry",
    "Stage",
    "TaskContext",
    "TaskStatus",
    "load_pipeline",
    "load_profile",
    "load_profiles",
    "register_check",
]
