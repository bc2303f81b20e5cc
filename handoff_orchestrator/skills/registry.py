"""스킬 ID 조회와 2단계 스킬 해석을 위한 SkillRegistry.

레지스트리는 시작 시 한 번 스킬 루트를 스캔하여 만들어지며 이후 변경되지
않는다. 프로필을 연결(`bind_profiles`)하면 기존 인스턴스를 수정하지 않고
`preloaded_by`와 에이전트별 호출 가능 스킬이 채워진 새 레지스트리를 반환한다.

해석 전략:
    1. 사전 로드(preloaded) 스킬: 프로필에 선언된 순서대로 항상 첨부
    2. 동적(dynamic) 스킬: 태스크 텍스트에 트리거가 나타날 때만 첨부

Example:
    registry = SkillRegistry.from_directories([Path("skills")])
    registry = registry.bind_profiles(profiles)

    skill = registry.resolve("prisma")
    matched = registry.match("Add a prisma migration", "backend-developer")
"""

from __future__ import annotations

import functools
import hashlib
import logging
import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING

from handoff_orchestrator.errors import DuplicateSkillId, SkillNotFound
from handoff_orchestrator.skills.load import SkillMetadata, list_skills

if TYPE_CHECKING:
    from handoff_orchestrator.profiles.definitions import AgentProfile

logger = logging.getLogger(__name__)

CONTENT_HASH_LENGTH = 7


def hash_content(content: str) -> str:
    """콘텐츠의 SHA-256 해시 앞 7자를 반환한다."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:CONTENT_HASH_LENGTH]


@dataclass(frozen=True)
class Skill:
    """레지스트리가 소유하는 불변 스킬 문서."""

    id: str
    description: str
    content: str
    path: str = ""
    source: str = ""
    trigger_patterns: frozenset[str] = frozenset()
    preloaded_by: frozenset[str] = frozenset()
    dynamic_invocation_name: str | None = None
    aliases: tuple[str, ...] = ()
    requires: tuple[str, ...] = ()
    conflicts_with: tuple[str, ...] = ()
    allowed_tools: tuple[str, ...] = ()
    content_hash: str = ""

    @property
    def is_model_invocable(self) -> bool:
        return self.dynamic_invocation_name is not None

    @classmethod
    def from_metadata(cls, metadata: SkillMetadata) -> Skill:
        name = metadata["name"]
        invocation_name = None
        if metadata["model_invocable"]:
            invocation_name = metadata.get("invocation_name") or name
        return cls(
            id=name,
            description=metadata["description"],
            content=metadata["content"],
            path=metadata["path"],
            source=metadata["source"],
            trigger_patterns=frozenset(t.lower() for t in metadata["triggers"]),
            dynamic_invocation_name=invocation_name,
            aliases=tuple(metadata["aliases"]),
            requires=tuple(metadata["requires"]),
            conflicts_with=tuple(metadata["conflicts_with"]),
            allowed_tools=tuple(metadata.get("allowed_tools", [])),
            content_hash=hash_content(metadata["content"]),
        )


@dataclass(frozen=True)
class ResolvedSkills:
    """한 번의 에이전트 호출에 첨부될 스킬 집합."""

    preloaded: tuple[Skill, ...] = ()
    dynamic: tuple[Skill, ...] = ()

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(skill.id for skill in (*self.preloaded, *self.dynamic))

    def __len__(self) -> int:
        return len(self.preloaded) + len(self.dynamic)


@functools.lru_cache(maxsize=1024)
def _trigger_regex(pattern: str) -> re.Pattern[str]:
    """트리거를 단어/구문 경계를 지키는 정규식으로 변환한다."""
    words = [re.escape(word) for word in pattern.lower().split()]
    body = r"\s+".join(words)
    return re.compile(rf"(?<![\w-]){body}(?![\w-])")


def _normalize(text: str) -> str:
    return " ".join(text.lower().split())


def _matches_any(text: str, patterns: Iterable[str]) -> bool:
    return any(
        pattern.strip() and _trigger_regex(pattern.strip()).search(text)
        for pattern in patterns
    )


class SkillRegistry:
    """스킬 문서를 ID와 트리거로 색인하는 불변 레지스트리.

    - ID 또는 별칭으로 스킬 조회 (`resolve`)
    - 태스크 텍스트의 트리거로 동적 스킬 감지 (`match`)
    - 프로필별 2단계 해석 (`resolve_for`)

    Raises:
        DuplicateSkillId: 두 소스가 같은 ID 또는 별칭을 선언한 경우.
    """

    def __init__(
        self,
        skills: Iterable[Skill] = (),
        *,
        invocable: Mapping[str, Mapping[str, frozenset[str]]] | None = None,
    ) -> None:
        self._skills: dict[str, Skill] = {}
        self._aliases: dict[str, str] = {}

        for skill in skills:
            self._add(skill)

        self._invocable: dict[str, Mapping[str, frozenset[str]]] = {
            agent_id: MappingProxyType(dict(mapping))
            for agent_id, mapping in (invocable or {}).items()
        }

    def _add(self, skill: Skill) -> None:
        existing = self._lookup(skill.id)
        if existing is not None:
            raise DuplicateSkillId(skill.id, existing.path, skill.path)
        for alias in skill.aliases:
            clash = self._lookup(alias)
            if clash is not None or alias == skill.id:
                first = clash.path if clash is not None else skill.path
                raise DuplicateSkillId(alias, first, skill.path)
        self._skills[skill.id] = skill
        for alias in skill.aliases:
            self._aliases[alias] = skill.id

    def _lookup(self, skill_id: str) -> Skill | None:
        if skill_id in self._skills:
            return self._skills[skill_id]
        canonical = self._aliases.get(skill_id)
        return self._skills.get(canonical) if canonical else None

    @classmethod
    def from_directories(cls, skills_dirs: Iterable[str | Path]) -> SkillRegistry:
        """스킬 루트들을 스캔하여 레지스트리를 만든다."""
        skills = [Skill.from_metadata(m) for m in list_skills(skills_dirs)]
        registry = cls(skills)
        logger.info("스킬 %d개 로드됨", len(registry))
        return registry

    def resolve(self, skill_id: str) -> Skill:
        """ID 또는 별칭으로 스킬을 조회한다.

        Raises:
            SkillNotFound: 스킬이 없는 경우.
        """
        skill = self._lookup(skill_id)
        if skill is None:
            raise SkillNotFound(skill_id)
        return skill

    def get(self, skill_id: str) -> Skill | None:
        return self._lookup(skill_id)

    def list_ids(self) -> list[str]:
        return sorted(self._skills)

    def invocable_by(self, agent_id: str) -> frozenset[str]:
        """에이전트가 동적으로 호출할 수 있는 스킬 ID 집합."""
        entry = self._invocable.get(agent_id)
        return frozenset(entry) if entry else frozenset()

    def _match_candidates(
        self, text: str, candidates: Mapping[str, Iterable[str]]
    ) -> frozenset[str]:
        normalized = _normalize(text)
        matched: set[str] = set()
        for skill_id, trigger_names in candidates.items():
            skill = self._skills.get(skill_id)
            if skill is None or not skill.is_model_invocable:
                continue
            if _matches_any(normalized, (*skill.trigger_patterns, *trigger_names)):
                matched.add(skill_id)
        return frozenset(matched)

    def match(self, text: str, agent_id: str) -> frozenset[str]:
        """텍스트에서 트리거가 감지된 동적 스킬 ID를 반환한다.

        스킬의 프론트매터 트리거와 프로필의 트리거 이름을 모두 사용하며,
        대소문자를 구분하지 않고 단어/구문 단위로 비교한다. 결과는 해당
        에이전트가 호출 가능하다고 선언한 스킬로 제한된다.

        Args:
            text: 태스크 설명 등 검사할 텍스트.
            agent_id: 호출하는 에이전트 ID.

        Returns:
            매칭된 스킬 ID 집합 (순서 없음). 연결되지 않은 에이전트는 빈 집합.
        """
        entry = self._invocable.get(agent_id)
        if entry is None:
            logger.debug("에이전트 '%s'에 연결된 동적 스킬 없음", agent_id)
            return frozenset()
        return self._match_candidates(text, entry)

    def resolve_for(self, profile: AgentProfile, text: str) -> ResolvedSkills:
        """프로필의 사전 로드 스킬과 텍스트로 감지된 동적 스킬을 해석한다."""
        preloaded = tuple(self.resolve(skill_id) for skill_id in profile.preloaded_skill_ids)
        preloaded_ids = {skill.id for skill in preloaded}

        matched = self._match_candidates(text, _trigger_names_by_skill(profile))
        dynamic = tuple(
            self.resolve(skill_id)
            for skill_id in sorted(matched)
            if skill_id not in preloaded_ids
        )
        return ResolvedSkills(preloaded=preloaded, dynamic=dynamic)

    def bind_profiles(self, profiles: Iterable[AgentProfile]) -> SkillRegistry:
        """프로필 정보를 반영한 새 레지스트리를 반환한다.

        각 스킬의 `preloaded_by`와 에이전트별 호출 가능 스킬이 채워진다.
        현재 인스턴스는 변경되지 않는다.
        """
        preloaded_by: dict[str, set[str]] = {skill_id: set() for skill_id in self._skills}
        invocable: dict[str, dict[str, frozenset[str]]] = {}

        for profile in profiles:
            for skill_id in profile.preloaded_skill_ids:
                preloaded_by[self.resolve(skill_id).id].add(profile.id)
            invocable[profile.id] = {
                self.resolve(skill_id).id: names
                for skill_id, names in _trigger_names_by_skill(profile).items()
            }

        skills = [
            replace(skill, preloaded_by=frozenset(preloaded_by[skill.id]))
            for skill in self._skills.values()
        ]
        return SkillRegistry(skills, invocable=invocable)

    def __contains__(self, skill_id: object) -> bool:
        return isinstance(skill_id, str) and self._lookup(skill_id) is not None

    def __iter__(self) -> Iterator[Skill]:
        return iter(self._skills[skill_id] for skill_id in sorted(self._skills))

    def __len__(self) -> int:
        return len(self._skills)


def _trigger_names_by_skill(profile: AgentProfile) -> dict[str, frozenset[str]]:
    """프로필의 {트리거 이름: 스킬 ID} 매핑을 {스킬 ID: 트리거 이름들}로 뒤집는다."""
    grouped: dict[str, set[str]] = {}
    for trigger_name, skill_id in profile.dynamic_skill_triggers.items():
        grouped.setdefault(skill_id, set()).add(trigger_name.lower())
    return {skill_id: frozenset(names) for skill_id, names in grouped.items()}
