"""프로필과 파이프라인 설정 로더.

모든 참조 검증은 시작 시점에 즉시 수행된다. 스킬 ID를 찾을 수 없거나
필수 필드가 비어 있으면 태스크가 시작되기 전에 실패한다.

프로필 YAML 예시:
```yaml
id: backend-reviewer
display_name: Backend Reviewer
allowed_tools: [Read, Grep, Glob]
preloaded_skills: [code-review]
dynamic_skills:            # 트리거 이름 -> 스킬 ID
  prisma: prisma
  websocket: websockets
critical_requirements:
  - id: verify-every-criterion
    statement: Never report success without verification evidence
    phase: post
    check: criteria_verified
domain_scope:
  handles: [rest-api, prisma-schema]
  defers_to:
    react-component: frontend-reviewer
```

파이프라인 YAML 예시:
```yaml
skills_dirs: [skills]
agents_dir: agents
pipeline:
  Spec: pm
  Implementation: backend-developer
  Review: backend-reviewer
  TestReport: tester
reviewers: [backend-reviewer, frontend-reviewer]
max_revisions: 3
workspace_root: .
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from handoff_orchestrator.errors import ConfigurationError, InvalidProfile, SkillNotFound
from handoff_orchestrator.gates import checks as check_catalog
from handoff_orchestrator.handoff.artifact import PIPELINE_ORDER, Stage
from handoff_orchestrator.profiles.definitions import (
    AgentProfile,
    DomainScope,
    RequirementPhase,
    RequirementStatement,
)
from handoff_orchestrator.profiles.registry import ProfileRegistry
from handoff_orchestrator.skills.registry import SkillRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_REVISIONS = 3

ProfileSource = Mapping[str, Any] | Path | str


def _read_yaml(path: Path) -> Any:
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        msg = f"설정 파일을 읽을 수 없음: {e}"
        raise ConfigurationError(msg, path) from e
    except yaml.YAMLError as e:
        msg = f"YAML 형식이 잘못됨: {e}"
        raise ConfigurationError(msg, path) from e


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(item) for item in value]
    msg = f"문자열 목록이 필요합니다 (받은 값: {value!r})"
    raise ValueError(msg)


def _parse_requirement(
    raw: Any, index: int, problems: list[str]
) -> RequirementStatement | None:
    if not isinstance(raw, Mapping):
        problems.append(f"critical_requirements[{index}]: 매핑이어야 합니다")
        return None

    req_id = str(raw.get("id") or f"req-{index + 1}")
    statement = str(raw.get("statement") or "").strip()
    check_name = raw.get("check")
    if not statement:
        problems.append(f"요구사항 '{req_id}': statement가 비어 있음")
    if not check_name:
        problems.append(f"요구사항 '{req_id}': check가 지정되지 않음")
        return None

    check = check_catalog.get_check(str(check_name))
    if check is None:
        problems.append(
            f"요구사항 '{req_id}': 알 수 없는 검사 '{check_name}'"
            f" (사용 가능: {', '.join(check_catalog.available_checks())})"
        )
        return None

    try:
        phase = RequirementPhase(raw.get("phase") or check.phase.value)
    except ValueError:
        problems.append(f"요구사항 '{req_id}': phase는 pre 또는 post여야 합니다")
        return None
    if phase != check.phase:
        problems.append(
            f"요구사항 '{req_id}': 검사 '{check_name}'은(는) {check.phase.value} 단계용입니다"
        )
        return None

    params = raw.get("params") or {}
    if not isinstance(params, Mapping):
        problems.append(f"요구사항 '{req_id}': params는 매핑이어야 합니다")
        return None

    return RequirementStatement(
        id=req_id,
        statement=statement,
        phase=phase,
        check=str(check_name),
        params=MappingProxyType(dict(params)),
    )


def _canonical_skill_id(
    registry: SkillRegistry, skill_id: str, label: str, problems: list[str]
) -> str | None:
    try:
        return registry.resolve(skill_id).id
    except SkillNotFound:
        problems.append(f"{label} 스킬 '{skill_id}'을(를) 레지스트리에서 찾을 수 없음")
        return None


def _check_skill_relationships(
    registry: SkillRegistry, skill_ids: Iterable[str], problems: list[str]
) -> None:
    """프로필의 스킬 집합이 requires/conflicts-with 관계를 지키는지 확인한다."""
    attached = set(skill_ids)
    for skill_id in sorted(attached):
        skill = registry.resolve(skill_id)
        for required in skill.requires:
            target = registry.get(required)
            if target is None or target.id not in attached:
                problems.append(f"스킬 '{skill_id}'은(는) '{required}' 스킬이 함께 필요함")
        for conflict in skill.conflicts_with:
            target = registry.get(conflict)
            if target is not None and target.id in attached and skill_id < target.id:
                problems.append(f"스킬 '{skill_id}'과(와) '{target.id}'은(는) 함께 쓸 수 없음")


def _profile_from_mapping(
    data: Mapping[str, Any], registry: SkillRegistry, source: Path | None
) -> AgentProfile:
    profile_id = str(data.get("id") or data.get("name") or "").strip()
    if not profile_id:
        msg = "프로필에 'id'가 없습니다"
        raise ConfigurationError(msg, source)

    problems: list[str] = []

    try:
        allowed_tools = frozenset(_string_list(data.get("allowed_tools")))
        preloaded_raw = _string_list(data.get("preloaded_skills"))
        handles = _string_list((data.get("domain_scope") or {}).get("handles"))
    except (ValueError, AttributeError) as e:
        raise InvalidProfile(profile_id, [str(e)], source) from e

    if not allowed_tools:
        problems.append("allowed_tools가 비어 있음")

    # 사전 로드 스킬
    preloaded: list[str] = []
    for skill_id in preloaded_raw:
        canonical = _canonical_skill_id(registry, skill_id, "사전 로드", problems)
        if canonical is not None and canonical not in preloaded:
            preloaded.append(canonical)

    # 동적 스킬: {트리거 이름: 스킬 ID} 또는 스킬 ID 목록
    dynamic_raw = data.get("dynamic_skills") or {}
    if isinstance(dynamic_raw, (list, tuple)):
        dynamic_raw = {str(skill_id): str(skill_id) for skill_id in dynamic_raw}
    if not isinstance(dynamic_raw, Mapping):
        problems.append("dynamic_skills는 매핑 또는 목록이어야 함")
        dynamic_raw = {}

    dynamic: dict[str, str] = {}
    for trigger_name, skill_id in dynamic_raw.items():
        canonical = _canonical_skill_id(registry, str(skill_id), "동적", problems)
        if canonical is None:
            continue
        if not registry.resolve(canonical).is_model_invocable:
            problems.append(f"동적 스킬 '{canonical}'은(는) 모델 호출이 비활성화되어 있음")
            continue
        dynamic[str(trigger_name)] = canonical

    # CRITICAL 요구사항
    requirements_raw = data.get("critical_requirements") or []
    if not isinstance(requirements_raw, list):
        problems.append("critical_requirements는 목록이어야 함")
        requirements_raw = []
    if not requirements_raw:
        problems.append("critical_requirements가 비어 있음")
    requirements = []
    for index, raw in enumerate(requirements_raw):
        requirement = _parse_requirement(raw, index, problems)
        if requirement is not None:
            requirements.append(requirement)
    seen_ids = [r.id for r in requirements]
    duplicated = sorted({rid for rid in seen_ids if seen_ids.count(rid) > 1})
    if duplicated:
        problems.append(f"요구사항 ID 중복: {', '.join(duplicated)}")

    # 도메인 범위
    defers_raw = (data.get("domain_scope") or {}).get("defers_to") or {}
    if not isinstance(defers_raw, Mapping):
        problems.append("domain_scope.defers_to는 매핑이어야 함")
        defers_raw = {}
    defers_to = {str(topic): str(target) for topic, target in defers_raw.items()}
    for topic, target in defers_to.items():
        if target == profile_id:
            problems.append(f"토픽 '{topic}'을(를) 자기 자신에게 위임할 수 없음")
        if topic in handles:
            problems.append(f"토픽 '{topic}'이(가) handles와 defers_to에 모두 있음")

    if not problems:
        _check_skill_relationships(registry, [*preloaded, *dynamic.values()], problems)

    if problems:
        raise InvalidProfile(profile_id, problems, source)

    return AgentProfile(
        id=profile_id,
        display_name=str(data.get("display_name") or profile_id),
        allowed_tools=allowed_tools,
        critical_requirements=tuple(requirements),
        preloaded_skill_ids=tuple(preloaded),
        dynamic_skill_triggers=MappingProxyType(dynamic),
        domain_scope=DomainScope(
            handles=tuple(dict.fromkeys(handles)),
            defers_to=MappingProxyType(defers_to),
        ),
        description=str(data.get("description") or "").strip(),
        model=str(data["model"]) if data.get("model") else None,
    )


def load_profile(source: ProfileSource, registry: SkillRegistry) -> AgentProfile:
    """매핑 또는 YAML 파일에서 프로필을 로드하고 검증한다.

    Args:
        source: 프로필 필드 매핑 또는 YAML 파일 경로.
        registry: 스킬 ID를 검증할 레지스트리.

    Returns:
        검증된 AgentProfile.

    Raises:
        InvalidProfile: 스킬 ID를 찾을 수 없거나, 동적 스킬이 호출 불가하거나,
            도구/요구사항이 비어 있거나, 알 수 없는 검사를 참조하거나,
            스킬 간 requires/conflicts-with 관계를 어긴 경우.
        ConfigurationError: 파일을 읽을 수 없거나 형식이 잘못된 경우.
    """
    path: Path | None = None
    if isinstance(source, (str, Path)):
        path = Path(source)
        data = _read_yaml(path)
    else:
        data = source

    if not isinstance(data, Mapping):
        msg = "프로필 설정은 매핑이어야 합니다"
        raise ConfigurationError(msg, path)
    return _profile_from_mapping(data, registry, path)


def load_profiles(
    sources: Iterable[ProfileSource], registry: SkillRegistry
) -> ProfileRegistry:
    """여러 프로필을 로드하고 프로필 간 참조(defers_to)를 검증한다.

    Raises:
        InvalidProfile: defers_to가 알 수 없는 프로필을 가리키는 경우.
        ConfigurationError: 프로필 ID가 중복된 경우.
    """
    profiles = ProfileRegistry(load_profile(source, registry) for source in sources)

    for profile in profiles:
        unknown = [
            f"토픽 '{topic}'의 위임 대상 '{target}'을(를) 찾을 수 없음"
            for topic, target in profile.domain_scope.defers_to.items()
            if target not in profiles
        ]
        if unknown:
            raise InvalidProfile(profile.id, unknown)

    logger.info("프로필 %d개 로드됨: %s", len(profiles), profiles.list_ids())
    return profiles


@dataclass(frozen=True)
class PipelineDefinition:
    """시작 시 검증된 오케스트레이션 파이프라인 설정.

    Attributes:
        skills: 프로필이 연결된 스킬 레지스트리.
        profiles: 선언 순서를 보존하는 프로필 레지스트리.
        stages: 단계별 담당 프로필 ID.
        reviewers: 리뷰 라우팅 시 도메인 소유자로 고려할 프로필 ID.
        max_revisions: 단계별 허용 수정 횟수.
        workspace_root: 파일 경로 검사의 기준 디렉토리.
    """

    skills: SkillRegistry
    profiles: ProfileRegistry
    stages: Mapping[Stage, str]
    reviewers: tuple[str, ...] = ()
    max_revisions: int = DEFAULT_MAX_REVISIONS
    workspace_root: Path = field(default_factory=Path.cwd)
    skills_dirs: tuple[Path, ...] = ()
    source: Path | None = None

    def profile_for(self, stage: Stage) -> AgentProfile:
        return self.profiles.require(self.stages[stage])


def _resolve_relative(base: Path, value: Any) -> Path:
    path = Path(str(value)).expanduser()
    return path if path.is_absolute() else (base / path)


def _agent_sources(data: Mapping[str, Any], base: Path) -> list[ProfileSource]:
    sources: list[ProfileSource] = []

    agents_dir = data.get("agents_dir")
    if agents_dir:
        directory = _resolve_relative(base, agents_dir)
        if not directory.is_dir():
            msg = f"에이전트 디렉토리가 존재하지 않음: {directory}"
            raise ConfigurationError(msg, directory)
        sources.extend(sorted([*directory.glob("*.yaml"), *directory.glob("*.yml")]))

    for entry in data.get("agents") or []:
        if isinstance(entry, Mapping):
            sources.append(entry)
        else:
            sources.append(_resolve_relative(base, entry))

    if not sources:
        msg = "파이프라인에 에이전트가 정의되지 않음 ('agents' 또는 'agents_dir' 필요)"
        raise ConfigurationError(msg)
    return sources


def load_pipeline(path: Path | str, *, max_revisions: int | None = None) -> PipelineDefinition:
    """파이프라인 YAML을 로드하여 스킬, 프로필, 단계 매핑을 모두 검증한다.

    상대 경로는 파이프라인 파일의 디렉토리를 기준으로 해석된다.

    Args:
        path: 파이프라인 YAML 파일 경로.
        max_revisions: 설정 파일의 값을 덮어쓸 수정 한도.

    Raises:
        ConfigurationError: 설정의 어느 부분이든 검증에 실패한 경우.
    """
    path = Path(path).expanduser()
    data = _read_yaml(path)
    if not isinstance(data, Mapping):
        msg = "파이프라인 설정은 매핑이어야 합니다"
        raise ConfigurationError(msg, path)
    base = path.resolve().parent

    try:
        skills_dirs = tuple(
            _resolve_relative(base, d) for d in _string_list(data.get("skills_dirs"))
        )
    except ValueError as e:
        raise ConfigurationError(f"skills_dirs: {e}", path) from e
    if not skills_dirs:
        msg = "skills_dirs가 지정되지 않음"
        raise ConfigurationError(msg, path)

    registry = SkillRegistry.from_directories(skills_dirs)
    profiles = load_profiles(_agent_sources(data, base), registry)

    stages_raw = data.get("pipeline")
    if not isinstance(stages_raw, Mapping):
        msg = "pipeline은 {단계: 프로필 ID} 매핑이어야 합니다"
        raise ConfigurationError(msg, path)
    stages: dict[Stage, str] = {}
    for stage_name, profile_id in stages_raw.items():
        try:
            stage = Stage.parse(stage_name)
        except ValueError as e:
            raise ConfigurationError(str(e), path) from e
        if str(profile_id) not in profiles:
            msg = f"단계 {stage.value}의 프로필 '{profile_id}'을(를) 찾을 수 없음"
            raise ConfigurationError(msg, path)
        stages[stage] = str(profile_id)
    missing = [stage.value for stage in PIPELINE_ORDER if stage not in stages]
    if missing:
        msg = f"담당 프로필이 없는 단계: {', '.join(missing)}"
        raise ConfigurationError(msg, path)

    try:
        reviewers = tuple(_string_list(data.get("reviewers")))
    except ValueError as e:
        raise ConfigurationError(f"reviewers: {e}", path) from e
    unknown_reviewers = [r for r in reviewers if r not in profiles]
    if unknown_reviewers:
        msg = f"알 수 없는 리뷰어: {', '.join(unknown_reviewers)}"
        raise ConfigurationError(msg, path)

    if max_revisions is None:
        max_revisions = data.get("max_revisions", DEFAULT_MAX_REVISIONS)
    if isinstance(max_revisions, bool) or not isinstance(max_revisions, int) or max_revisions < 0:
        msg = f"max_revisions는 0 이상의 정수여야 합니다 (받은 값: {max_revisions!r})"
        raise ConfigurationError(msg, path)

    return PipelineDefinition(
        skills=registry.bind_profiles(profiles),
        profiles=profiles,
        stages=MappingProxyType(stages),
        reviewers=reviewers,
        max_revisions=max_revisions,
        workspace_root=_resolve_relative(base, data.get("workspace_root", ".")),
        skills_dirs=skills_dirs,
        source=path,
    )
