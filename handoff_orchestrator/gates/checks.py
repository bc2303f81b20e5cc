"""CRITICAL 요구사항을 검사 가능한 술어로 바꾸는 검사 카탈로그.

프로필의 각 요구사항은 `check` 필드로 이 카탈로그의 술어를 이름으로
참조하고, `params`로 술어에 인자를 넘긴다:

```yaml
critical_requirements:
  - id: verify-every-criterion
    statement: Never report success without verification evidence
    phase: post
    check: criteria_verified
  - id: cite-patterns
    statement: MUST cite existing code patterns
    phase: post
    check: pattern_references_exist
    params: {min_count: 1}
```

기본 술어:
    pre:  context_keys, description_present, requires_stage
    post: criteria_verified, success_criteria_declared, pattern_references_exist,
          modified_files_exist, within_domain_scope, scope_declared

새 술어는 `register_check`로 추가한다. 술어가 필요한 데이터를 찾지 못하면
`Unevaluable`을 발생시키고, 게이트는 이를 실패로 기록한다.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from handoff_orchestrator.gates.context import TaskContext
from handoff_orchestrator.handoff.artifact import CriterionStatus, HandoffArtifact, Stage
from handoff_orchestrator.profiles.definitions import AgentProfile, RequirementPhase


class Unevaluable(Exception):
    """술어를 평가하는 데 필요한 데이터가 없을 때 발생한다.

    Attributes:
        fields: 누락된 컨텍스트/산출물 필드.
    """

    def __init__(self, message: str, fields: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.fields = fields


@dataclass(frozen=True)
class CheckInput:
    """술어가 받는 검사 대상.

    사전 검사는 `context`를, 사후 검사는 `artifact`와 `history`를 사용한다.
    """

    profile: AgentProfile
    context: TaskContext | None = None
    artifact: HandoffArtifact | None = None
    history: tuple[HandoffArtifact, ...] = ()
    workspace_root: Path | None = None

    def require_context(self) -> TaskContext:
        if self.context is None:
            raise Unevaluable("태스크 컨텍스트가 없음", ("context",))
        return self.context

    def require_artifact(self) -> HandoffArtifact:
        if self.artifact is None:
            raise Unevaluable("검사할 산출물이 없음", ("artifact",))
        return self.artifact

    def require_workspace(self) -> Path:
        root = self.workspace_root
        if root is None and self.context is not None:
            root = self.context.workspace_root
        if root is None:
            raise Unevaluable("작업 공간 루트가 설정되지 않음", ("workspace_root",))
        return root


@dataclass(frozen=True)
class CheckOutcome:
    satisfied: bool
    detail: str = ""
    fields: tuple[str, ...] = ()


CheckFunction = Callable[[CheckInput, Mapping[str, Any]], CheckOutcome]


@dataclass(frozen=True)
class RegisteredCheck:
    name: str
    phase: RequirementPhase
    function: CheckFunction


_CATALOG: dict[str, RegisteredCheck] = {}


def register_check(
    name: str, phase: RequirementPhase | str
) -> Callable[[CheckFunction], CheckFunction]:
    """술어를 카탈로그에 등록하는 데코레이터.

    Example:
        @register_check("ticket_linked", "pre")
        def ticket_linked(subject, params):
            ticket = subject.require_context().values.get("ticket")
            return CheckOutcome(bool(ticket), "티켓이 연결되지 않음", ("values.ticket",))

    Raises:
        ValueError: 같은 이름의 술어가 이미 등록된 경우.
    """
    resolved_phase = RequirementPhase(phase)

    def decorator(function: CheckFunction) -> CheckFunction:
        if name in _CATALOG:
            msg = f"검사 '{name}'은(는) 이미 등록되어 있습니다"
            raise ValueError(msg)
        _CATALOG[name] = RegisteredCheck(name=name, phase=resolved_phase, function=function)
        return function

    return decorator


def unregister_check(name: str) -> None:
    _CATALOG.pop(name, None)


def get_check(name: str) -> RegisteredCheck | None:
    return _CATALOG.get(name)


def available_checks(phase: RequirementPhase | None = None) -> list[str]:
    """등록된 술어 이름을 정렬하여 반환한다."""
    return sorted(
        name for name, check in _CATALOG.items() if phase is None or check.phase == phase
    )


def int_param(params: Mapping[str, Any], key: str, default: int) -> int:
    """정수 파라미터를 읽는다. 형식이 잘못되면 `Unevaluable`."""
    value = params.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise Unevaluable(f"'{key}' 파라미터는 정수여야 함: {value!r}", (f"params.{key}",))
    try:
        return int(value)
    except ValueError as e:
        raise Unevaluable(f"'{key}' 파라미터는 정수여야 함: {value!r}", (f"params.{key}",)) from e


def list_param(params: Mapping[str, Any], key: str) -> list[str]:
    """문자열 목록 파라미터를 읽는다. 없으면 빈 목록."""
    value = params.get(key)
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise Unevaluable(f"'{key}' 파라미터는 목록이어야 함: {value!r}", (f"params.{key}",))
    return [str(item) for item in value]


# =============================================================================
# 사전 조건 (pre)
# =============================================================================


@register_check("description_present", RequirementPhase.PRE)
def description_present(subject: CheckInput, params: Mapping[str, Any]) -> CheckOutcome:
    """태스크 설명이 비어 있지 않고 `min_length`(기본 1)자 이상이어야 한다."""
    description = subject.require_context().description.strip()
    min_length = int_param(params, "min_length", 1)
    if len(description) < min_length:
        return CheckOutcome(
            False,
            f"태스크 설명이 {min_length}자 미만임 ({len(description)}자)",
            ("description",),
        )
    return CheckOutcome(True)


@register_check("context_keys", RequirementPhase.PRE)
def context_keys(subject: CheckInput, params: Mapping[str, Any]) -> CheckOutcome:
    """`params.keys`의 모든 키가 컨텍스트 값에 비어 있지 않게 있어야 한다."""
    keys = list_param(params, "keys")
    if not keys:
        raise Unevaluable("검사할 'keys' 파라미터가 없음", ("params.keys",))
    values = subject.require_context().values
    missing = [str(key) for key in keys if values.get(key) in (None, "", [], {})]
    if missing:
        return CheckOutcome(
            False,
            f"컨텍스트 값 누락: {', '.join(missing)}",
            tuple(f"values.{key}" for key in missing),
        )
    return CheckOutcome(True)


@register_check("requires_stage", RequirementPhase.PRE)
def requires_stage(subject: CheckInput, params: Mapping[str, Any]) -> CheckOutcome:
    """`params.stage` 단계의 승인된 산출물이 이력에 있어야 한다.

    `stage`가 없으면 현재 단계의 바로 앞 단계를 요구한다.
    """
    context = subject.require_context()
    wanted = params.get("stage")
    if wanted is None:
        previous = [s for s in Stage if s.next == context.stage]
        if not previous:
            return CheckOutcome(True, "첫 단계는 선행 산출물이 필요 없음")
        stage = previous[0]
    else:
        stage = Stage.parse(wanted)

    if context.latest_of_stage(stage) is None:
        return CheckOutcome(
            False,
            f"승인된 {stage.value} 산출물이 없음",
            (f"history.{stage.value}",),
        )
    return CheckOutcome(True)


# =============================================================================
# 사후 조건 (post)
# =============================================================================


def _latest_spec(history: tuple[HandoffArtifact, ...]) -> HandoffArtifact | None:
    for artifact in reversed(history):
        if artifact.stage == Stage.SPEC:
            return artifact
    return None


@register_check("criteria_verified", RequirementPhase.POST)
def criteria_verified(subject: CheckInput, params: Mapping[str, Any]) -> CheckOutcome:
    """검증이 직전 Spec의 모든 성공 기준을 빠짐없이, 중복 없이, Met으로 덮어야 한다.

    근거(evidence)가 없는 Met 항목도 실패로 본다.
    """
    artifact = subject.require_artifact()
    spec = _latest_spec(subject.history)
    if spec is None:
        raise Unevaluable("이력에 승인된 Spec 산출물이 없음", ("history.Spec",))
    if artifact.verification is None:
        return CheckOutcome(False, "검증 결과가 없음", ("verification",))

    expected = [c.id for c in spec.success_criteria]
    counts = Counter(v.criterion for v in artifact.verification)

    problems: list[str] = []
    fields: list[str] = []

    missing = [cid for cid in expected if counts[cid] == 0]
    if missing:
        problems.append(f"검증되지 않은 기준: {', '.join(missing)}")
        fields.extend(f"verification[{cid}]" for cid in missing)

    duplicated = sorted(cid for cid, n in counts.items() if n > 1)
    if duplicated:
        problems.append(f"중복 검증된 기준: {', '.join(duplicated)}")
        fields.extend(f"verification[{cid}]" for cid in duplicated)

    unknown = [cid for cid in counts if cid not in expected]
    if unknown:
        problems.append(f"Spec에 없는 기준: {', '.join(unknown)}")
        fields.extend(f"verification[{cid}]" for cid in unknown)

    not_met = [v.criterion for v in artifact.verification if v.status != CriterionStatus.MET]
    if not_met:
        problems.append(f"충족되지 않은 기준: {', '.join(not_met)}")
        fields.extend(f"verification[{cid}].status" for cid in not_met)

    no_evidence = [
        v.criterion
        for v in artifact.verification
        if v.status == CriterionStatus.MET and not v.evidence
    ]
    if no_evidence:
        problems.append(f"근거 없는 기준: {', '.join(no_evidence)}")
        fields.extend(f"verification[{cid}].evidence" for cid in no_evidence)

    if problems:
        return CheckOutcome(False, "; ".join(problems), tuple(dict.fromkeys(fields)))
    return CheckOutcome(True, f"기준 {len(expected)}개 모두 검증됨")


@register_check("success_criteria_declared", RequirementPhase.POST)
def success_criteria_declared(subject: CheckInput, params: Mapping[str, Any]) -> CheckOutcome:
    """산출물이 `min_count`(기본 1)개 이상의 고유한 성공 기준을 선언해야 한다."""
    artifact = subject.require_artifact()
    min_count = int_param(params, "min_count", 1)
    ids = [c.id for c in artifact.success_criteria]
    if len(ids) != len(set(ids)):
        return CheckOutcome(False, "성공 기준 ID가 중복됨", ("success_criteria",))
    if len(ids) < min_count:
        return CheckOutcome(
            False,
            f"성공 기준이 {min_count}개 미만임 ({len(ids)}개)",
            ("success_criteria",),
        )
    return CheckOutcome(True)


def _resolve_in_workspace(root: Path, relative: str) -> Path | None:
    """작업 공간 안의 경로로 해석한다. 루트를 벗어나면 None."""
    candidate = (root / relative.lstrip("/")).resolve()
    try:
        candidate.relative_to(root.resolve())
    except ValueError:
        return None
    return candidate


@register_check("pattern_references_exist", RequirementPhase.POST)
def pattern_references_exist(subject: CheckInput, params: Mapping[str, Any]) -> CheckOutcome:
    """패턴 참조가 `min_count`(기본 1)개 이상이고 모두 실제 파일과 줄 범위를 가리켜야 한다."""
    artifact = subject.require_artifact()
    min_count = int_param(params, "min_count", 1)
    if len(artifact.pattern_references) < min_count:
        return CheckOutcome(
            False,
            f"패턴 참조가 {min_count}개 미만임 ({len(artifact.pattern_references)}개)",
            ("pattern_references",),
        )

    root = subject.require_workspace()
    problems: list[str] = []
    fields: list[str] = []
    for index, ref in enumerate(artifact.pattern_references):
        path = _resolve_in_workspace(root, ref.file)
        if path is None or not path.is_file():
            problems.append(f"존재하지 않는 파일: {ref.file}")
            fields.append(f"pattern_references[{index}].file")
            continue
        if ref.line_range is None:
            continue
        start, end = ref.line_range
        line_count = len(path.read_text(encoding="utf-8", errors="replace").splitlines())
        if start < 1 or end < start or end > line_count:
            problems.append(f"{ref.file}: 줄 범위 {start}-{end}이(가) 유효하지 않음 (총 {line_count}줄)")
            fields.append(f"pattern_references[{index}].line_range")

    if problems:
        return CheckOutcome(False, "; ".join(problems), tuple(fields))
    return CheckOutcome(True)


@register_check("modified_files_exist", RequirementPhase.POST)
def modified_files_exist(subject: CheckInput, params: Mapping[str, Any]) -> CheckOutcome:
    """수정했다고 주장한 모든 파일이 작업 공간 안에 실제로 있어야 한다.

    `require_any: true`이면 수정 파일 목록이 비어 있어도 실패한다.
    """
    artifact = subject.require_artifact()
    if params.get("require_any") and not artifact.modified_files:
        return CheckOutcome(False, "수정된 파일이 선언되지 않음", ("modified_files",))

    root = subject.require_workspace()
    missing = []
    fields = []
    for index, relative in enumerate(artifact.modified_files):
        path = _resolve_in_workspace(root, relative)
        if path is None or not path.exists():
            missing.append(relative)
            fields.append(f"modified_files[{index}]")
    if missing:
        return CheckOutcome(
            False, f"존재하지 않는 파일: {', '.join(missing)}", tuple(fields)
        )
    return CheckOutcome(True)


@register_check("within_domain_scope", RequirementPhase.POST)
def within_domain_scope(subject: CheckInput, params: Mapping[str, Any]) -> CheckOutcome:
    """산출물의 토픽이 모두 프로필의 도메인 안에 있어야 한다.

    위임 대상 토픽(`defers_to`)이나 `scope_boundaries.out`에 선언된 토픽을
    다루면 도메인 밖 작업으로 본다. `params.allow`로 추가 토픽을 허용한다.
    """
    artifact = subject.require_artifact()
    scope = subject.profile.domain_scope
    allowed = set(scope.handles) | set(list_param(params, "allow"))

    outside = [
        topic
        for topic in artifact.topics
        if topic not in allowed
        or topic in scope.defers_to
        or topic in artifact.scope_boundaries.out_of_scope
    ]
    if outside:
        details = []
        for topic in outside:
            owner = scope.defers_to.get(topic)
            details.append(f"{topic} (위임 대상: {owner})" if owner else topic)
        return CheckOutcome(
            False,
            f"도메인 밖 토픽: {', '.join(details)}",
            ("topics",),
        )
    return CheckOutcome(True)


@register_check("scope_declared", RequirementPhase.POST)
def scope_declared(subject: CheckInput, params: Mapping[str, Any]) -> CheckOutcome:
    """범위 경계의 IN 목록이 있어야 하고, `require_out: true`이면 OUT 목록도 있어야 한다."""
    scope = subject.require_artifact().scope_boundaries
    fields = []
    if not scope.in_scope:
        fields.append("scope_boundaries.in")
    if params.get("require_out") and not scope.out_of_scope:
        fields.append("scope_boundaries.out")
    if fields:
        return CheckOutcome(False, "범위 경계가 선언되지 않음", tuple(fields))
    return CheckOutcome(True)
