"""해석된 스킬을 시스템 프롬프트에 주입하는 미들웨어.

점진적 공개(Progressive Disclosure) 패턴을 2단계 해석에 맞게 적용한다:
1. 사전 로드 스킬은 전체 콘텐츠를 시스템 프롬프트에 포함
2. 동적 스킬은 이름, 설명, 호출 이름만 노출하고 필요할 때 에이전트가 읽음

`format_skills_section`은 오케스트레이터의 에이전트 실행기와 langchain
에이전트용 `SkillsMiddleware`가 함께 사용한다.
"""

from collections.abc import Awaitable, Callable, Sequence
from typing import Any, NotRequired, TypedDict, cast

from langchain.agents.middleware.types import (
    AgentMiddleware,
    AgentState,
    ModelRequest,
    ModelResponse,
)
from langgraph.runtime import Runtime

from handoff_orchestrator.profiles.definitions import AgentProfile
from handoff_orchestrator.skills.registry import ResolvedSkills, Skill, SkillRegistry


class SkillsState(AgentState):
    """스킬 미들웨어용 상태."""

    attached_skill_ids: NotRequired[list[str]]
    """이번 실행에 첨부된 스킬 ID (사전 로드 + 동적)."""


class SkillsStateUpdate(TypedDict):
    attached_skill_ids: list[str]


SKILLS_SYSTEM_PROMPT = """

## Skills

{preloaded_section}

**Skills available on demand:**

{dynamic_section}

Preloaded skills are part of your instructions and MUST be followed.
On-demand skills were matched to this task. Read a skill's file before relying on it,
and cite the skill id when you apply one of its patterns.
"""


def _format_preloaded(skills: Sequence[Skill]) -> str:
    if not skills:
        return "(No preloaded skills.)"
    blocks = []
    for skill in skills:
        blocks.append(f"### {skill.id}\n\n{skill.content}")
    return "\n\n".join(blocks)


def _format_dynamic(skills: Sequence[Skill]) -> str:
    if not skills:
        return "(No additional skills matched this task.)"
    lines = []
    for skill in skills:
        lines.append(f"- **{skill.dynamic_invocation_name}**: {skill.description}")
        if skill.path:
            lines.append(f"  → To read full instructions: `{skill.path}`")
    return "\n".join(lines)


def format_skills_section(resolved: ResolvedSkills) -> str:
    """해석된 스킬을 시스템 프롬프트 섹션으로 포맷팅한다."""
    return SKILLS_SYSTEM_PROMPT.format(
        preloaded_section=_format_preloaded(resolved.preloaded),
        dynamic_section=_format_dynamic(resolved.dynamic),
    )


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "\n".join(parts)
    return str(content)


class SkillsMiddleware(AgentMiddleware):
    """langchain 에이전트에 프로필의 스킬을 첨부하는 미들웨어.

    - 에이전트 실행 전: 마지막 사용자 메시지로 동적 스킬을 감지
    - 모델 호출마다: 사전 로드 스킬 콘텐츠와 동적 스킬 목록을 시스템 프롬프트에 주입

    Args:
        registry: 스킬 레지스트리.
        profile: 스킬을 첨부할 에이전트 프로필.
    """

    state_schema = SkillsState

    def __init__(self, *, registry: SkillRegistry, profile: AgentProfile) -> None:
        self.registry = registry
        self.profile = profile

    def _latest_user_text(self, state: SkillsState) -> str:
        for message in reversed(state.get("messages", [])):
            if getattr(message, "type", None) == "human":
                return _message_text(message)
        return ""

    def _resolved_from_state(self, state: SkillsState) -> ResolvedSkills:
        attached = state.get("attached_skill_ids")
        if attached is None:
            return self.registry.resolve_for(self.profile, "")
        preloaded_ids = set(self.profile.preloaded_skill_ids)
        skills = [self.registry.resolve(skill_id) for skill_id in attached]
        return ResolvedSkills(
            preloaded=tuple(s for s in skills if s.id in preloaded_ids),
            dynamic=tuple(s for s in skills if s.id not in preloaded_ids),
        )

    def before_agent(
        self, state: SkillsState, runtime: Runtime
    ) -> SkillsStateUpdate | None:
        """에이전트 실행 전에 이번 요청에 첨부할 스킬을 결정한다."""
        resolved = self.registry.resolve_for(self.profile, self._latest_user_text(state))
        return SkillsStateUpdate(attached_skill_ids=list(resolved.ids))

    def _inject(self, request: ModelRequest) -> ModelRequest:
        state = cast("SkillsState", request.state)
        skills_section = format_skills_section(self._resolved_from_state(state))

        if request.system_prompt:
            system_prompt = request.system_prompt + "\n\n" + skills_section
        else:
            system_prompt = skills_section
        return request.override(system_prompt=system_prompt)

    def wrap_model_call(
        self,
        request: ModelRequest,
        handler: Callable[[ModelRequest], ModelResponse],
    ) -> ModelResponse:
        return handler(self._inject(request))

    async def awrap_model_call(
        self,
        request: ModelRequest,
        handler: Callable[[ModelRequest], Awaitable[ModelResponse]],
    ) -> ModelResponse:
        return await handler(self._inject(request))
