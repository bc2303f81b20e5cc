"""역할 간에 주고받는 HandoffArtifact 스키마.

각 단계(Spec → Implementation → Review → TestReport)의 에이전트는 작업 끝에
하나의 산출물을 만든다. 산출물은 생성 후 변경되지 않으며, 수정이 필요하면
새 산출물이 만들어진다.

YAML 형식 예시:
```yaml
stage: Review
produced_by: backend-reviewer
summary: 사용자 API 리뷰
topics: [rest-api]
scope_boundaries:
  in: [src/api/users.ts]
  out: [src/web/]
pattern_references:
  - file: src/api/users.ts
    line_range: 10-42
verification:
  - criterion: AC-1
    status: Met
    evidence: tests/api/users.test.ts passes
```
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from handoff_orchestrator.errors import ArtifactFormatError


class Stage(str, Enum):
    SPEC = "Spec"
    IMPLEMENTATION = "Implementation"
    REVIEW = "Review"
    TEST_REPORT = "TestReport"

    @classmethod
    def parse(cls, value: str | Stage) -> Stage:
        """대소문자와 구분자를 무시하고 단계 이름을 해석한다 ("test_report" 허용)."""
        if isinstance(value, Stage):
            return value
        wanted = str(value).replace("_", "").replace("-", "").lower()
        for stage in cls:
            if stage.value.lower() == wanted:
                return stage
        msg = f"알 수 없는 단계: {value!r}"
        raise ValueError(msg)

    @property
    def next(self) -> Stage | None:
        """다음 단계. 마지막 단계이면 None (Done)."""
        index = PIPELINE_ORDER.index(self)
        return PIPELINE_ORDER[index + 1] if index + 1 < len(PIPELINE_ORDER) else None


PIPELINE_ORDER: tuple[Stage, ...] = (
    Stage.SPEC,
    Stage.IMPLEMENTATION,
    Stage.REVIEW,
    Stage.TEST_REPORT,
)


class CriterionStatus(str, Enum):
    MET = "Met"
    NOT_MET = "NotMet"


@dataclass(frozen=True)
class Criterion:
    """Spec 산출물의 성공 기준. 검증 항목은 `id`로 기준을 참조한다."""

    id: str
    description: str = ""


@dataclass(frozen=True)
class PatternReference:
    file: str
    line_range: tuple[int, int] | None = None


@dataclass(frozen=True)
class Verification:
    criterion: str
    status: CriterionStatus
    evidence: str = ""


@dataclass(frozen=True)
class ScopeBoundaries:
    in_scope: tuple[str, ...] = ()
    out_of_scope: tuple[str, ...] = ()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class HandoffArtifact:
    """한 단계의 불변 산출물."""

    task_id: str
    stage: Stage
    produced_by: str
    summary: str = ""
    topics: tuple[str, ...] = ()
    scope_boundaries: ScopeBoundaries = field(default_factory=ScopeBoundaries)
    success_criteria: tuple[Criterion, ...] = ()
    pattern_references: tuple[PatternReference, ...] = ()
    verification: tuple[Verification, ...] | None = None
    modified_files: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        """YAML로 저장할 수 있는 딕셔너리로 변환한다."""
        data: dict[str, Any] = {
            "task_id": self.task_id,
            "stage": self.stage.value,
            "produced_by": self.produced_by,
            "summary": self.summary,
            "topics": list(self.topics),
            "scope_boundaries": {
                "in": list(self.scope_boundaries.in_scope),
                "out": list(self.scope_boundaries.out_of_scope),
            },
            "success_criteria": [
                {"id": c.id, "description": c.description} for c in self.success_criteria
            ],
            "pattern_references": [
                {
                    "file": ref.file,
                    "line_range": _format_line_range(ref.line_range),
                }
                for ref in self.pattern_references
            ],
            "verification": None,
            "modified_files": list(self.modified_files),
            "created_at": self.created_at.isoformat(),
        }
        if self.verification is not None:
            data["verification"] = [
                {"criterion": v.criterion, "status": v.status.value, "evidence": v.evidence}
                for v in self.verification
            ]
        return data

    @classmethod
    def from_dict(
        cls, data: Mapping[str, Any], **defaults: Any
    ) -> HandoffArtifact:
        """딕셔너리에서 산출물을 만든다.

        Args:
            data: YAML에서 읽은 산출물 필드.
            **defaults: data에 없을 때 사용할 값 (task_id, stage, produced_by).

        Raises:
            ArtifactFormatError: 필수 필드가 없거나 형식이 잘못된 경우.
        """
        if not isinstance(data, Mapping):
            msg = f"산출물은 매핑이어야 합니다 (받은 타입: {type(data).__name__})"
            raise ArtifactFormatError(msg)

        merged = {**defaults, **{k: v for k, v in data.items() if v is not None}}
        try:
            missing = [k for k in ("task_id", "stage", "produced_by") if not merged.get(k)]
            if missing:
                msg = f"필수 필드 누락: {', '.join(missing)}"
                raise ArtifactFormatError(msg)

            scope = merged.get("scope_boundaries") or {}
            if not isinstance(scope, Mapping):
                msg = "scope_boundaries는 'in'/'out' 매핑이어야 합니다"
                raise ArtifactFormatError(msg)

            verification = data.get("verification")
            created_at = merged.get("created_at")

            return cls(
                task_id=str(merged["task_id"]),
                stage=Stage.parse(merged["stage"]),
                produced_by=str(merged["produced_by"]),
                summary=str(merged.get("summary", "")).strip(),
                topics=_unique(_str_list(merged.get("topics"), "topics")),
                scope_boundaries=ScopeBoundaries(
                    in_scope=_unique(_str_list(scope.get("in"), "scope_boundaries.in")),
                    out_of_scope=_unique(_str_list(scope.get("out"), "scope_boundaries.out")),
                ),
                success_criteria=tuple(
                    _parse_criterion(item) for item in _list(merged.get("success_criteria"))
                ),
                pattern_references=tuple(
                    _parse_pattern_reference(item)
                    for item in _list(merged.get("pattern_references"))
                ),
                verification=(
                    None
                    if verification is None
                    else tuple(_parse_verification(item) for item in _list(verification))
                ),
                modified_files=_unique(_str_list(merged.get("modified_files"), "modified_files")),
                created_at=_parse_datetime(created_at) if created_at else _utcnow(),
            )
        except (TypeError, ValueError) as e:
            raise ArtifactFormatError(str(e)) from e


def _list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    msg = f"목록이 필요합니다 (받은 값: {value!r})"
    raise ArtifactFormatError(msg)


def _str_list(value: Any, field_name: str) -> list[str]:
    if isinstance(value, str):
        return [value]
    try:
        return [str(item) for item in _list(value)]
    except ArtifactFormatError as e:
        msg = f"{field_name}: {e}"
        raise ArtifactFormatError(msg) from e


def _unique(items: Sequence[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(item.strip() for item in items if item.strip()))


def _parse_criterion(item: Any) -> Criterion:
    if isinstance(item, str):
        return Criterion(id=item.strip(), description=item.strip())
    if isinstance(item, Mapping) and item.get("id"):
        return Criterion(id=str(item["id"]), description=str(item.get("description", "")))
    msg = f"성공 기준은 문자열이거나 'id'가 있는 매핑이어야 합니다: {item!r}"
    raise ArtifactFormatError(msg)


def _parse_line_range(value: Any) -> tuple[int, int] | None:
    if value in (None, ""):
        return None
    if isinstance(value, int):
        return (value, value)
    if isinstance(value, str):
        start, _, end = value.partition("-")
        return (int(start), int(end or start))
    if (
        isinstance(value, (list, tuple))
        and len(value) == 2
        and all(isinstance(bound, (int, str)) for bound in value)
    ):
        return (int(value[0]), int(value[1]))
    msg = f"line_range 형식이 잘못됨: {value!r}"
    raise ArtifactFormatError(msg)


def _format_line_range(line_range: tuple[int, int] | None) -> str | None:
    if line_range is None:
        return None
    start, end = line_range
    return str(start) if start == end else f"{start}-{end}"


def _parse_pattern_reference(item: Any) -> PatternReference:
    if isinstance(item, str):
        file, _, line_range = item.partition(":")
        return PatternReference(file=file, line_range=_parse_line_range(line_range))
    if isinstance(item, Mapping) and item.get("file"):
        return PatternReference(
            file=str(item["file"]), line_range=_parse_line_range(item.get("line_range"))
        )
    msg = f"패턴 참조에는 'file'이 필요합니다: {item!r}"
    raise ArtifactFormatError(msg)


def _parse_verification(item: Any) -> Verification:
    if not isinstance(item, Mapping) or not item.get("criterion"):
        msg = f"검증 항목에는 'criterion'이 필요합니다: {item!r}"
        raise ArtifactFormatError(msg)
    status = str(item.get("status", "")).replace(" ", "").replace("_", "")
    for candidate in CriterionStatus:
        if candidate.value.lower() == status.lower():
            break
    else:
        msg = f"검증 상태는 Met 또는 NotMet이어야 합니다: {item.get('status')!r}"
        raise ArtifactFormatError(msg)
    return Verification(
        criterion=str(item["criterion"]),
        status=candidate,
        evidence=str(item.get("evidence") or "").strip(),
    )


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def render_markdown(artifact: HandoffArtifact) -> str:
    """산출물을 사람이 읽는 마크다운(current.md)으로 렌더링한다."""
    lines = [
        f"# {artifact.stage.value}: {artifact.task_id}",
        "",
        f"- **Produced by**: {artifact.produced_by}",
        f"- **Created at**: {artifact.created_at.isoformat()}",
    ]
    if artifact.topics:
        lines.append(f"- **Topics**: {', '.join(artifact.topics)}")
    if artifact.summary:
        lines += ["", "## Summary", "", artifact.summary]

    scope = artifact.scope_boundaries
    if scope.in_scope or scope.out_of_scope:
        lines += ["", "## Scope", ""]
        lines += [f"- IN: {item}" for item in scope.in_scope]
        lines += [f"- OUT: {item}" for item in scope.out_of_scope]

    if artifact.success_criteria:
        lines += ["", "## Success Criteria", ""]
        lines += [
            f"- [ ] **{c.id}**: {c.description}" if c.description != c.id else f"- [ ] {c.id}"
            for c in artifact.success_criteria
        ]

    if artifact.pattern_references:
        lines += ["", "## Pattern References", ""]
        for ref in artifact.pattern_references:
            line_range = _format_line_range(ref.line_range)
            lines.append(f"- `{ref.file}:{line_range}`" if line_range else f"- `{ref.file}`")

    if artifact.verification is not None:
        lines += ["", "## Verification", "", "| Criterion | Status | Evidence |", "|---|---|---|"]
        lines += [
            f"| {v.criterion} | {v.status.value} | {v.evidence or '-'} |"
            for v in artifact.verification
        ]

    if artifact.modified_files:
        lines += ["", "## Modified Files", ""]
        lines += [f"- `{path}`" for path in artifact.modified_files]

    return "\n".join(lines) + "\n"
