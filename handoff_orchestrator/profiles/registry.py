"""에이전트 프로필 관리를 위한 ProfileRegistry.

이 모듈은 선언 순서를 보존하는 프로필 레지스트리를 제공하며,
다음 기능을 지원한다:
- ID 기반 프로필 조회
- 토픽 기반 도메인 소유자 조회 (먼저 선언된 소유자 우선)
- 리뷰 라우팅 (defers_to 우선, 그다음 도메인 소유자)

Example:
    registry = ProfileRegistry(profiles)

    reviewer = registry.require("backend-reviewer")

    # "react-component" 토픽을 처리한다고 먼저 선언한 프로필
    owner = registry.owner_of("react-component")
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable, Iterator, Sequence

from handoff_orchestrator.errors import ConfigurationError
from handoff_orchestrator.profiles.definitions import AgentProfile

logger = logging.getLogger(__name__)


class ProfileRegistry:
    """AgentProfile 레지스트리.

    Example:
        registry = ProfileRegistry()
        registry.register(pm_profile)

        profile = registry.get("pm")
        owner = registry.owner_of("prisma-schema")
    """

    def __init__(self, profiles: Iterable[AgentProfile] = ()) -> None:
        """프로필 목록으로 레지스트리를 초기화한다."""
        self._profiles: dict[str, AgentProfile] = {}
        for profile in profiles:
            self.register(profile)

    def register(self, profile: AgentProfile) -> None:
        """프로필을 등록한다.

        Args:
            profile: 등록할 프로필.

        Raises:
            ConfigurationError: 같은 ID의 프로필이 이미 등록된 경우.
        """
        if profile.id in self._profiles:
            msg = f"프로필 '{profile.id}'은(는) 이미 등록되어 있습니다"
            raise ConfigurationError(msg)
        self._profiles[profile.id] = profile

    def get(self, profile_id: str) -> AgentProfile | None:
        return self._profiles.get(profile_id)

    def require(self, profile_id: str) -> AgentProfile:
        """ID로 프로필을 가져온다.

        Raises:
            ConfigurationError: 프로필이 없는 경우.
        """
        profile = self._profiles.get(profile_id)
        if profile is None:
            msg = f"프로필 '{profile_id}'을(를) 레지스트리에서 찾을 수 없습니다"
            raise ConfigurationError(msg)
        return profile

    def list_all(self) -> list[AgentProfile]:
        """등록된 모든 프로필을 선언 순서대로 나열한다."""
        return list(self._profiles.values())

    def list_ids(self) -> list[str]:
        return list(self._profiles.keys())

    def owner_of(
        self, topic: str, among: Collection[str] | None = None
    ) -> AgentProfile | None:
        """토픽을 `handles`에 선언한 첫 번째 프로필을 반환한다.

        두 프로필이 같은 토픽을 주장하면 먼저 선언된 프로필이 소유자가 된다.
        `among`이 주어지면 그 ID들 중에서만 찾는다.
        """
        owners = [
            p
            for p in self._profiles.values()
            if p.domain_scope.owns(topic) and (among is None or p.id in among)
        ]
        if len(owners) > 1:
            logger.debug(
                "토픽 '%s'을(를) 여러 프로필이 주장함: %s (먼저 선언된 '%s' 우선)",
                topic,
                [p.id for p in owners],
                owners[0].id,
            )
        return owners[0] if owners else None

    def route(
        self,
        profile: AgentProfile,
        topics: Sequence[str],
        candidates: Collection[str] | None = None,
    ) -> AgentProfile:
        """산출물 토픽에 따라 작업을 맡을 프로필을 결정한다.

        토픽을 선언 순서대로 보면서:
        1. 현재 프로필의 `defers_to`에 있으면 그 대상 프로필로 위임
        2. 현재 프로필이 소유하지 않고 `candidates` 중 다른 프로필이 소유하면
           그 소유자로 위임 (`candidates`가 없으면 이 단계는 건너뜀)

        해당하는 토픽이 없으면 현재 프로필을 그대로 반환한다.
        """
        for topic in topics:
            target_id = profile.domain_scope.defers_to.get(topic)
            if target_id is not None:
                logger.info(
                    "토픽 '%s'은(는) '%s'에서 '%s'(으)로 위임됨", topic, profile.id, target_id
                )
                return self.require(target_id)

        if not candidates:
            return profile

        for topic in topics:
            if profile.domain_scope.owns(topic):
                continue
            owner = self.owner_of(topic, among=candidates)
            if owner is not None and owner.id != profile.id:
                logger.info("토픽 '%s'의 소유자 '%s'(으)로 라우팅됨", topic, owner.id)
                return owner

        return profile

    def __contains__(self, profile_id: object) -> bool:
        return profile_id in self._profiles

    def __iter__(self) -> Iterator[AgentProfile]:
        return iter(self._profiles.values())

    def __len__(self) -> int:
        """등록된 프로필 수를 반환한다."""
        return len(self._profiles)
