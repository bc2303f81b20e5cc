"""스킬 문서의 로드, 색인, 첨부를 담당하는 모듈.

스킬은 2단계로 에이전트 호출에 첨부된다:
1. 사전 로드(preloaded): 프로필이 항상 포함하는 스킬, 전체 콘텐츠 주입
2. 동적(dynamic): 태스크 텍스트에 트리거가 감지될 때만 메타데이터 노출

공개 API:
- SkillRegistry: 스킬 조회(resolve)와 트리거 감지(match)
- Skill, ResolvedSkills: 불변 스킬 모델과 해석 결과
- list_skills: 디렉토리에서 스킬 메타데이터 로드
- SkillsMiddleware, format_skills_section: 시스템 프롬프트 주입
"""

from handoff_orchestrator.skills.load import SkillMetadata, list_skills
from handoff_orchestrator.skills.registry import ResolvedSkills, Skill, SkillRegistry
from handoff_orchestrator.skills.middleware import SkillsMiddleware, format_skills_section

__all__ = [
    "SkillRegistry",
    "Skill",
    "ResolvedSkills",
    "SkillMetadata",
    "list_skills",
    "SkillsMiddleware",
    "format_skills_section",
]
