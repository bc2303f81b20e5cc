"""에이전트 실행 경계.

오케스트레이터는 LLM을 직접 다루지 않고 `AgentExecutor` 프로토콜을 통해
한 단계의 산출물을 받는다. `ChatModelAgentExecutor`는 임의의 langchain
`BaseChatModel`을 감싸는 기본 구현이다. 모델 공급자는 호출자가 고른다.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import yaml
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from handoff_orchestrator.errors import ArtifactFormatError
from handoff_orchestrator.gates.context import TaskContext
from handoff_orchestrator.gates.gate import RequirementCheckResult
from handoff_orchestrator.handoff.artifact import HandoffArtifact, Stage
from handoff_orchestrator.orchestration.prompts import (
    AGENT_SYSTEM_PROMPT,
    ARTIFACT_FORMAT_INSTRUCTIONS,
    REVISION_PROMPT,
    TASK_PROMPT,
)
from handoff_orchestrator.profiles.definitions import AgentProfile
from handoff_orchestrator.skills.middleware import format_skills_section
from handoff_orchestrator.skills.registry import ResolvedSkills

logger = logging.getLogger(__name__)

_FENCED_YAML_PATTERN = re.compile(r"```(?:ya?ml)\s*\n(.*?)```", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class AgentInvocation:
    """한 번의 에이전트 실행 요청.

    Attributes:
        task_id: 태스크 ID.
        stage: 산출물을 만들 단계.
        profile: 실행할 에이전트 프로필.
        skills: 이번 실행에 첨부된 스킬.
        context: 태스크 컨텍스트 (승인된 이력 포함).
        previous_attempt: 수정 요청 시 이전 산출물.
        feedback: 수정 요청 시 실패한 요구사항 결과.
    """

    task_id: str
    stage: Stage
    profile: AgentProfile
    skills: ResolvedSkills
    context: TaskContext
    previous_attempt: HandoffArtifact | None = None
    feedback: tuple[RequirementCheckResult, ...] = ()

    @property
    def is_revision(self) -> bool:
        return self.previous_attempt is not None


@runtime_checkable
class AgentExecutor(Protocol):
    """한 단계를 실행하여 산출물을 돌려주는 외부 협력자."""

    def execute(self, invocation: AgentInvocation) -> HandoffArtifact: ...

    async def aexecute(self, invocation: AgentInvocation) -> HandoffArtifact: ...


def _bullet_list(items: Sequence[str], empty: str) -> str:
    return "\n".join(f"- {item}" for item in items) if items else empty


def build_system_prompt(invocation: AgentInvocation) -> str:
    """프로필과 첨부 스킬로 시스템 프롬프트를 만든다."""
    profile = invocation.profile
    requirements = [
        f"**{r.id}** ({r.phase.value}): {r.statement}" for r in profile.critical_requirements
    ]
    scope = profile.domain_scope
    domain_lines = [f"You handle: {', '.join(scope.handles) or '(unrestricted)'}"]
    domain_lines += [
        f"Defer `{topic}` to `{target}`; do not work on it yourself."
        for topic, target in scope.defers_to.items()
    ]

    prompt = AGENT_SYSTEM_PROMPT.format(
        display_name=profile.display_name,
        description=profile.description or f"Agent `{profile.id}`.",
        allowed_tools=_bullet_list(sorted(profile.allowed_tools), "(none)"),
        critical_requirements=_bullet_list(requirements, "(none)"),
        domain_scope="\n".join(domain_lines),
    )
    return (
        prompt
        + format_skills_section(invocation.skills)
        + "\n\n"
        + ARTIFACT_FORMAT_INSTRUCTIONS.format(stage=invocation.stage.value)
    )


def _dump_yaml(data: Any) -> str:
    return yaml.safe_dump(data, allow_unicode=True, sort_keys=False).strip()


def build_task_prompt(invocation: AgentInvocation) -> str:
    """태스크 설명, 승인된 이력, 수정 요청 사항으로 사용자 메시지를 만든다."""
    history = invocation.context.history
    history_text = (
        "\n\n".join(
            f"### {artifact.stage.value} (by {artifact.produced_by})\n\n"
            f"```yaml\n{_dump_yaml(artifact.to_dict())}\n```"
            for artifact in history
        )
        if history
        else "(none yet)"
    )
    prompt = TASK_PROMPT.format(
        task_id=invocation.task_id,
        description=invocation.context.description,
        stage=invocation.stage.value,
        history=history_text,
    )
    if invocation.previous_attempt is not None:
        failures = [
            f"[{f.requirement.id}] {f.requirement.statement}: {f.detail}"
            + (f" (fields: {', '.join(f.fields)})" if f.fields else "")
            for f in invocation.feedback
        ]
        prompt += "\n" + REVISION_PROMPT.format(
            failures=_bullet_list(failures, "(no details)"),
            previous=_dump_yaml(invocation.previous_attempt.to_dict()),
        )
    return prompt


def build_messages(invocation: AgentInvocation) -> list[BaseMessage]:
    return [
        SystemMessage(content=build_system_prompt(invocation)),
        HumanMessage(content=build_task_prompt(invocation)),
    ]


def _reply_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part if isinstance(part, str) else str(part.get("text", ""))
            for part in content
            if isinstance(part, str) or (isinstance(part, dict) and part.get("type") == "text")
        )
    return str(content)


def parse_artifact_reply(text: str, invocation: AgentInvocation) -> HandoffArtifact:
    """에이전트 응답의 마지막 YAML 코드 블록을 산출물로 해석한다.

    태스크 ID, 단계, 생산자는 실행 요청에서 채워지며, 응답이 다른 단계를
    선언하면 거부된다.

    Raises:
        ArtifactFormatError: YAML 블록이 없거나 형식이 잘못된 경우.
    """
    blocks = _FENCED_YAML_PATTERN.findall(text)
    if not blocks:
        msg = "응답에서 YAML 산출물 블록을 찾을 수 없음"
        raise ArtifactFormatError(msg)
    try:
        data = yaml.safe_load(blocks[-1])
    except yaml.YAMLError as e:
        msg = f"산출물 YAML이 유효하지 않음: {e}"
        raise ArtifactFormatError(msg) from e
    if not isinstance(data, Mapping):
        msg = "산출물 YAML은 매핑이어야 합니다"
        raise ArtifactFormatError(msg)

    declared = data.get("stage")
    if declared is not None:
        try:
            declared_stage = Stage.parse(declared)
        except ValueError as e:
            raise ArtifactFormatError(str(e)) from e
        if declared_stage != invocation.stage:
            msg = f"{invocation.stage.value} 단계에서 {declared_stage.value} 산출물이 반환됨"
            raise ArtifactFormatError(msg)

    fields = {k: v for k, v in data.items() if k not in ("task_id", "stage", "produced_by")}
    return HandoffArtifact.from_dict(
        fields,
        task_id=invocation.task_id,
        stage=invocation.stage,
        produced_by=invocation.profile.id,
    )


class ChatModelAgentExecutor:
    """langchain 채팅 모델로 단계를 실행하는 AgentExecutor.

    프로필의 `model` 힌트가 `models`에 있으면 그 모델을, 없으면 기본 모델을 쓴다.

    Args:
        model: 기본 채팅 모델.
        models: 프로필 `model` 힌트별 채팅 모델 (선택).
    """

    def __init__(
        self,
        model: BaseChatModel,
        models: Mapping[str, BaseChatModel] | None = None,
    ) -> None:
        self.model = model
        self.models = dict(models or {})

    def _model_for(self, profile: AgentProfile) -> BaseChatModel:
        if profile.model and profile.model in self.models:
            return self.models[profile.model]
        return self.model

    def execute(self, invocation: AgentInvocation) -> HandoffArtifact:
        logger.info(
            "'%s' 실행 (%s, 스킬: %s)",
            invocation.profile.id,
            invocation.stage.value,
            list(invocation.skills.ids),
        )
        reply = self._model_for(invocation.profile).invoke(build_messages(invocation))
        return parse_artifact_reply(_reply_text(reply.content), invocation)

    async def aexecute(self, invocation: AgentInvocation) -> HandoffArtifact:
        logger.info(
            "'%s' 비동기 실행 (%s, 스킬: %s)",
            invocation.profile.id,
            invocation.stage.value,
            list(invocation.skills.ids),
        )
        reply = await self._model_for(invocation.profile).ainvoke(build_messages(invocation))
        return parse_artifact_reply(_reply_text(reply.content), invocation)
