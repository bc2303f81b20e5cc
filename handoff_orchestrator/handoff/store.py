"""태스크별 추가 전용(append-only) 산출물 저장소.

디렉토리 구조:
    <root>/
    └── <task_id>/
        ├── history/
        │   ├── 0001-Spec.yaml            # 불변 레코드 (배타적 생성)
        │   ├── 0002-Implementation.yaml
        │   └── ...
        ├── current.yaml                  # 현재 포인터 (상태, 단계, 마지막 seq)
        └── current.md                    # 최근 승인 산출물의 마크다운 렌더링

기존 레코드는 절대 수정되지 않는다. 수정 요청이나 취소도 새 레코드로
추가된다. 같은 태스크에 대한 추가는 태스크별 잠금으로 직렬화된다.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import yaml

from handoff_orchestrator.errors import ArtifactFormatError, ArtifactStoreError
from handoff_orchestrator.handoff.artifact import HandoffArtifact, Stage, render_markdown

logger = logging.getLogger(__name__)

HISTORY_DIR_NAME = "history"
CURRENT_POINTER_NAME = "current.yaml"
CURRENT_MARKDOWN_NAME = "current.md"

_TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_RECORD_NAME_PATTERN = re.compile(r"^(\d{4,})-([A-Za-z]+)\.yaml$")


class Disposition(str, Enum):
    ACCEPTED = "accepted"
    NEEDS_REVISION = "needs_revision"
    CANCELLED = "cancelled"


class _AuditEntry(Protocol):
    def to_dict(self) -> dict[str, Any]: ...


@dataclass(frozen=True)
class ArtifactRef:
    """저장된 레코드를 가리키는 참조."""

    task_id: str
    seq: int
    stage: Stage
    path: Path


@dataclass(frozen=True)
class ArtifactRecord:
    """산출물과 게이트 감사 기록을 담는 저장소 측 봉투.

    산출물 자체는 변경되지 않으며, 게이트 결과는 `audit`에만 기록된다.
    """

    seq: int
    task_id: str
    disposition: Disposition
    artifact: HandoffArtifact
    audit: tuple[Mapping[str, Any], ...] = ()
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "task_id": self.task_id,
            "disposition": self.disposition.value,
            "recorded_at": self.recorded_at.isoformat(),
            "audit": [dict(entry) for entry in self.audit],
            "artifact": self.artifact.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ArtifactRecord:
        try:
            return cls(
                seq=int(data["seq"]),
                task_id=str(data["task_id"]),
                disposition=Disposition(data["disposition"]),
                artifact=HandoffArtifact.from_dict(data["artifact"]),
                audit=tuple(data.get("audit") or ()),
                recorded_at=datetime.fromisoformat(str(data["recorded_at"])),
            )
        except (KeyError, TypeError, ValueError) as e:
            msg = f"레코드 형식이 잘못됨: {e}"
            raise ArtifactFormatError(msg) from e


class ArtifactStore:
    """파일 기반 산출물 이력 저장소.

    Args:
        root: 태스크 디렉토리들이 만들어질 루트 디렉토리.

    Example:
        store = ArtifactStore(Path(".handoff/tasks"))
        ref = store.append("TASK-1", spec_artifact)
        spec = store.latest_of_stage("TASK-1", Stage.SPEC)
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).expanduser()
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, task_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(task_id)
            if lock is None:
                lock = self._locks[task_id] = threading.Lock()
            return lock

    def task_dir(self, task_id: str) -> Path:
        """태스크 디렉토리 경로를 반환한다.

        Raises:
            ArtifactStoreError: 태스크 ID를 디렉토리 이름으로 쓸 수 없는 경우.
        """
        if not _TASK_ID_PATTERN.match(task_id) or task_id in (".", ".."):
            msg = f"태스크 ID '{task_id}'은(는) 사용할 수 없습니다 (영숫자, '.', '_', '-'만 허용)"
            raise ArtifactStoreError(msg)
        return self.root / task_id

    def _history_files(self, task_id: str) -> list[tuple[int, Path]]:
        history_dir = self.task_dir(task_id) / HISTORY_DIR_NAME
        if not history_dir.is_dir():
            return []
        files = []
        for path in history_dir.iterdir():
            match = _RECORD_NAME_PATTERN.match(path.name)
            if match:
                files.append((int(match.group(1)), path))
        return sorted(files)

    def append(
        self,
        task_id: str,
        artifact: HandoffArtifact,
        disposition: Disposition = Disposition.ACCEPTED,
        audit: Sequence[_AuditEntry] = (),
    ) -> ArtifactRef:
        """산출물을 태스크 이력에 새 레코드로 추가한다.

        승인된 산출물이면 `current.md`도 갱신된다.

        Raises:
            ArtifactStoreError: 태스크 ID가 일치하지 않거나 기록에 실패한 경우.
        """
        if artifact.task_id != task_id:
            msg = f"산출물의 태스크 ID '{artifact.task_id}'이(가) '{task_id}'와 다릅니다"
            raise ArtifactStoreError(msg)

        task_dir = self.task_dir(task_id)
        with self._lock_for(task_id):
            files = self._history_files(task_id)
            seq = files[-1][0] + 1 if files else 1
            record = ArtifactRecord(
                seq=seq,
                task_id=task_id,
                disposition=Disposition(disposition),
                artifact=artifact,
                audit=tuple(entry.to_dict() for entry in audit),
            )
            path = task_dir / HISTORY_DIR_NAME / f"{seq:04d}-{artifact.stage.value}.yaml"
            tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                # 완성된 파일만 배타적 링크로 게시한다
                try:
                    with tmp_path.open("w", encoding="utf-8") as f:
                        yaml.safe_dump(record.to_dict(), f, allow_unicode=True, sort_keys=False)
                    os.link(tmp_path, path)
                finally:
                    tmp_path.unlink(missing_ok=True)
                if record.disposition == Disposition.ACCEPTED:
                    (task_dir / CURRENT_MARKDOWN_NAME).write_text(
                        render_markdown(artifact), encoding="utf-8"
                    )
            except FileExistsError as e:
                msg = f"레코드 {path}이(가) 이미 존재합니다 (다른 프로세스가 기록 중)"
                raise ArtifactStoreError(msg) from e
            except OSError as e:
                msg = f"레코드 {path} 기록 실패: {e}"
                raise ArtifactStoreError(msg) from e

        logger.debug(
            "태스크 '%s'에 레코드 #%d 추가 (%s, %s)",
            task_id,
            seq,
            artifact.stage.value,
            record.disposition.value,
        )
        return ArtifactRef(task_id=task_id, seq=seq, stage=artifact.stage, path=path)

    def records(self, task_id: str) -> list[ArtifactRecord]:
        """태스크의 모든 레코드를 기록 순서대로 반환한다."""
        records = []
        for _, path in self._history_files(task_id):
            try:
                data = yaml.safe_load(path.read_text(encoding="utf-8"))
            except (OSError, yaml.YAMLError) as e:
                msg = f"레코드 {path} 읽기 실패: {e}"
                raise ArtifactStoreError(msg) from e
            if not isinstance(data, Mapping):
                msg = f"레코드 {path}이(가) 매핑이 아닙니다"
                raise ArtifactFormatError(msg)
            records.append(ArtifactRecord.from_dict(data))
        return records

    def history(self, task_id: str) -> list[HandoffArtifact]:
        """태스크의 모든 산출물을 기록 순서대로 반환한다 (수정 요청 포함)."""
        return [record.artifact for record in self.records(task_id)]

    def accepted_history(self, task_id: str) -> list[HandoffArtifact]:
        return [
            record.artifact
            for record in self.records(task_id)
            if record.disposition == Disposition.ACCEPTED
        ]

    def latest_of_stage(self, task_id: str, stage: Stage) -> HandoffArtifact | None:
        """해당 단계에서 가장 최근에 승인된 산출물을 반환한다."""
        for artifact in reversed(self.accepted_history(task_id)):
            if artifact.stage == stage:
                return artifact
        return None

    def latest_record(self, task_id: str) -> ArtifactRecord | None:
        records = self.records(task_id)
        return records[-1] if records else None

    def write_current(self, task_id: str, pointer: Mapping[str, Any]) -> None:
        """현재 포인터(current.yaml)를 원자적으로 교체한다."""
        task_dir = self.task_dir(task_id)
        with self._lock_for(task_id):
            files = self._history_files(task_id)
            data = {
                "task_id": task_id,
                "last_seq": files[-1][0] if files else 0,
                "updated_at": datetime.now(timezone.utc).isoformat(),
                **pointer,
            }
            try:
                task_dir.mkdir(parents=True, exist_ok=True)
                tmp_path = task_dir / f".{CURRENT_POINTER_NAME}.tmp"
                tmp_path.write_text(
                    yaml.safe_dump(data, allow_unicode=True, sort_keys=False),
                    encoding="utf-8",
                )
                tmp_path.replace(task_dir / CURRENT_POINTER_NAME)
            except OSError as e:
                msg = f"태스크 '{task_id}'의 현재 포인터 기록 실패: {e}"
                raise ArtifactStoreError(msg) from e

    def read_current(self, task_id: str) -> dict[str, Any] | None:
        """현재 포인터를 읽는다. 태스크가 없으면 None."""
        path = self.task_dir(task_id) / CURRENT_POINTER_NAME
        if not path.exists():
            return None
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            msg = f"{path} 읽기 실패: {e}"
            raise ArtifactStoreError(msg) from e
        return data if isinstance(data, dict) else None

    def list_tasks(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            path.name
            for path in self.root.iterdir()
            if path.is_dir() and _TASK_ID_PATTERN.match(path.name)
        )
