"""태스크를 단계별로 진행시키는 OrchestrationSequencer.

상태 기계:
    Spec → Implementation → Review → TestReport → Done

각 단계에서:
1. 단계 담당 프로필 선택 (Review는 도메인 소유권에 따라 라우팅)
2. 프로필의 사전 로드 스킬과 태스크 텍스트로 감지된 동적 스킬 해석
3. 사전 조건 검사 - 실패 시 BLOCKED (태스크는 보존되고 재개 가능)
4. 에이전트 실행 - 외부 협력자가 산출물 생성
5. 사후 조건 검사 - 실패 시 같은 단계 재진입 (max_revisions까지)
6. 레코드 추가 후 다음 단계로 진행

취소는 다음 게이트 경계에서 반영되며, 에이전트 실행 도중에는 중단하지 않는다.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from handoff_orchestrator.errors import (
    ArtifactFormatError,
    GateBlocked,
    MaxRevisionsExceeded,
    NeedsRevision,
)
from handoff_orchestrator.gates.context import TaskContext
from handoff_orchestrator.gates.gate import RequirementCheckResult, RequirementGate
from handoff_orchestrator.handoff.artifact import HandoffArtifact, Stage
from handoff_orchestrator.handoff.store import ArtifactRef, ArtifactStore, Disposition
from handoff_orchestrator.orchestration.executor import AgentExecutor, AgentInvocation
from handoff_orchestrator.profiles.definitions import AgentProfile
from handoff_orchestrator.profiles.loader import PipelineDefinition

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    RUNNING = "running"
    BLOCKED = "blocked"
    NEEDS_REVISION = "needs_revision"
    DONE = "done"
    MAX_REVISIONS_EXCEEDED = "max_revisions_exceeded"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class RunResult:
    """한 번의 실행(run/arun) 결과.

    Attributes:
        task_id: 태스크 ID.
        status: 실행이 멈춘 시점의 태스크 상태.
        stage: 멈춘 단계. 완료되었으면 None.
        profile_id: 멈춘 단계의 담당 프로필.
        failures: 차단/한도 초과를 일으킨 요구사항 결과.
        error: 사람이 읽는 실패 설명.
        appended: 이번 실행에서 추가된 레코드.
    """

    task_id: str
    status: TaskStatus
    stage: Stage | None = None
    profile_id: str | None = None
    failures: tuple[RequirementCheckResult, ...] = ()
    error: str | None = None
    appended: tuple[ArtifactRef, ...] = ()

    @property
    def exit_code(self) -> int:
        return 0 if self.status == TaskStatus.DONE else 1


@dataclass
class _RunState:
    task_id: str
    description: str
    values: Mapping[str, Any]
    stage: Stage | None
    accepted: list[HandoffArtifact] = field(default_factory=list)
    revisions: int = 0
    previous_attempt: HandoffArtifact | None = None
    feedback: tuple[RequirementCheckResult, ...] = ()
    appended: list[ArtifactRef] = field(default_factory=list)
    profile: AgentProfile | None = None


class OrchestrationSequencer:
    """하나의 태스크를 파이프라인 단계에 따라 진행시킨다.

    레지스트리와 프로필은 읽기 전용으로 공유되므로 태스크마다 별도의
    인스턴스를 만들어 동시에 실행할 수 있다. 한 번 취소된 인스턴스는
    다시 실행하면 즉시 취소 상태로 끝난다.

    Args:
        pipeline: 검증된 파이프라인 설정.
        store: 산출물 저장소.
        executor: 단계를 실행할 에이전트 실행기.
        gate: 요구사항 게이트 (기본값: 파이프라인 작업 공간 기준).
        max_revisions: 파이프라인 설정을 덮어쓸 수정 한도.

    Example:
        sequencer = OrchestrationSequencer(pipeline, store, executor)
        result = sequencer.run("TASK-1", "Add pagination to the users API")
        if result.status == TaskStatus.BLOCKED:
            print(result.error)
    """

    def __init__(
        self,
        pipeline: PipelineDefinition,
        store: ArtifactStore,
        executor: AgentExecutor,
        *,
        gate: RequirementGate | None = None,
        max_revisions: int | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.store = store
        self.executor = executor
        self.gate = gate or RequirementGate(pipeline.workspace_root)
        self.max_revisions = (
            pipeline.max_revisions if max_revisions is None else max_revisions
        )
        self._cancel_event = threading.Event()

    # -------------------------------------------------------------------------
    # 취소
    # -------------------------------------------------------------------------

    def cancel(self) -> None:
        """다음 게이트 경계에서 태스크를 취소하도록 요청한다."""
        logger.info("취소 요청됨")
        self._cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    # -------------------------------------------------------------------------
    # 실행
    # -------------------------------------------------------------------------

    def run(
        self,
        task_id: str,
        description: str | None = None,
        values: Mapping[str, Any] | None = None,
    ) -> RunResult:
        """태스크를 완료, 차단, 취소 또는 실패할 때까지 동기적으로 진행한다.

        이전 실행이 남긴 이력이 있으면 마지막으로 승인된 단계 다음부터 재개한다.

        Args:
            task_id: 태스크 ID.
            description: 태스크 설명. 재개 시 생략하면 저장된 설명을 사용한다.
            values: 사전 조건 검사용 추가 컨텍스트 값.
        """
        state = self._begin(task_id, description, values)
        if isinstance(state, RunResult):
            return state

        while state.stage is not None:
            step = self._prepare(state, state.stage)
            if isinstance(step, RunResult):
                return step
            try:
                artifact = self.executor.execute(step)
            except ArtifactFormatError as e:
                return self._failed(state, e)
            outcome = self._complete(state, step, artifact)
            if outcome is not None:
                return outcome

        return self._done(state)

    async def arun(
        self,
        task_id: str,
        description: str | None = None,
        values: Mapping[str, Any] | None = None,
    ) -> RunResult:
        """`run`의 비동기 버전. 실행기의 `aexecute`를 await한다."""
        state = self._begin(task_id, description, values)
        if isinstance(state, RunResult):
            return state

        while state.stage is not None:
            step = self._prepare(state, state.stage)
            if isinstance(step, RunResult):
                return step
            try:
                artifact = await self.executor.aexecute(step)
            except ArtifactFormatError as e:
                return self._failed(state, e)
            outcome = self._complete(state, step, artifact)
            if outcome is not None:
                return outcome

        return self._done(state)

    # -------------------------------------------------------------------------
    # 단계 처리
    # -------------------------------------------------------------------------

    def _begin(
        self,
        task_id: str,
        description: str | None,
        values: Mapping[str, Any] | None,
    ) -> _RunState | RunResult:
        pointer = self.store.read_current(task_id) or {}
        previous_status = pointer.get("status")

        if previous_status == TaskStatus.DONE.value:
            return RunResult(task_id, TaskStatus.DONE)
        if previous_status == TaskStatus.MAX_REVISIONS_EXCEEDED.value:
            return RunResult(
                task_id,
                TaskStatus.MAX_REVISIONS_EXCEEDED,
                stage=Stage.parse(pointer["stage"]) if pointer.get("stage") else None,
                error="수정 한도를 초과한 태스크는 재개할 수 없습니다",
            )

        merged_values = {**(pointer.get("values") or {}), **(values or {})}
        state = _RunState(
            task_id=task_id,
            description=description if description is not None else pointer.get("description", ""),
            values=MappingProxyType(merged_values),
            stage=Stage.SPEC,
        )

        # 마지막 승인 레코드 다음 단계부터 재개
        records = self.store.records(task_id)
        last_accepted = -1
        for index, record in enumerate(records):
            if record.disposition == Disposition.ACCEPTED:
                state.accepted.append(record.artifact)
                last_accepted = index
        if last_accepted >= 0:
            state.stage = records[last_accepted].artifact.stage.next

        for record in records[last_accepted + 1 :]:
            if (
                record.disposition == Disposition.NEEDS_REVISION
                and record.artifact.stage == state.stage
            ):
                state.revisions += 1
                state.previous_attempt = record.artifact
                state.feedback = tuple(
                    RequirementCheckResult.from_dict(entry)
                    for entry in record.audit
                    if not entry.get("satisfied")
                )

        if records:
            logger.info(
                "태스크 '%s' 재개: %s 단계부터 (승인 %d개, 수정 %d회)",
                task_id,
                state.stage.value if state.stage else "Done",
                len(state.accepted),
                state.revisions,
            )
        self._write_pointer(state, TaskStatus.RUNNING)
        return state

    def _select_profile(self, state: _RunState, stage: Stage) -> AgentProfile:
        """단계 담당 프로필을 고른다. Review는 검토 대상의 토픽으로 라우팅한다."""
        profile = self.pipeline.profile_for(stage)
        if stage == Stage.REVIEW:
            under_review = _latest(state.accepted, Stage.IMPLEMENTATION)
            if under_review is not None:
                profile = self.pipeline.profiles.route(
                    profile, under_review.topics, candidates=self.pipeline.reviewers
                )
        return profile

    def _skill_text(self, state: _RunState) -> str:
        parts = [state.description]
        if state.accepted:
            latest = state.accepted[-1]
            parts.extend(latest.topics)
            parts.append(latest.summary)
        return "\n".join(part for part in parts if part)

    def _prepare(self, state: _RunState, stage: Stage) -> AgentInvocation | RunResult:
        if self.cancel_requested:
            return self._cancelled(state)

        profile = self._select_profile(state, stage)
        state.profile = profile
        context = TaskContext(
            task_id=state.task_id,
            description=state.description,
            stage=stage,
            values=state.values,
            history=tuple(state.accepted),
            workspace_root=self.pipeline.workspace_root,
        )

        report = self.gate.check_pre(profile, context)
        try:
            report.raise_for_verdict()
        except GateBlocked as e:
            return self._blocked(state, e)

        if self.cancel_requested:
            return self._cancelled(state)

        skills = self.pipeline.skills.resolve_for(profile, self._skill_text(state))
        logger.info(
            "태스크 '%s' %s 단계: '%s' 실행 (시도 %d, 스킬 %s)",
            state.task_id,
            stage.value,
            profile.id,
            state.revisions + 1,
            list(skills.ids),
        )
        return AgentInvocation(
            task_id=state.task_id,
            stage=stage,
            profile=profile,
            skills=skills,
            context=context,
            previous_attempt=state.previous_attempt,
            feedback=state.feedback,
        )

    def _complete(
        self,
        state: _RunState,
        invocation: AgentInvocation,
        artifact: HandoffArtifact,
    ) -> RunResult | None:
        if artifact.stage != invocation.stage or artifact.task_id != state.task_id:
            return self._failed(
                state,
                ArtifactFormatError(
                    f"{invocation.stage.value} 단계에서 다른 산출물이 반환됨 "
                    f"({artifact.task_id}/{artifact.stage.value})"
                ),
            )

        report = self.gate.check_post(
            invocation.profile,
            artifact,
            state.accepted,
            workspace_root=self.pipeline.workspace_root,
        )
        try:
            report.raise_for_verdict()
        except NeedsRevision as e:
            ref = self.store.append(
                state.task_id, artifact, Disposition.NEEDS_REVISION, report.results
            )
            state.appended.append(ref)
            state.revisions += 1
            state.previous_attempt = artifact
            state.feedback = e.failures
            logger.warning("%s", e)

            if state.revisions > self.max_revisions:
                return self._max_revisions_exceeded(state, invocation.stage, e.failures)
            self._write_pointer(state, TaskStatus.NEEDS_REVISION, e.failures)
        else:
            ref = self.store.append(state.task_id, artifact, Disposition.ACCEPTED, report.results)
            state.appended.append(ref)
            state.accepted.append(artifact)
            logger.info(
                "태스크 '%s' %s 산출물 승인 (#%d)", state.task_id, artifact.stage.value, ref.seq
            )
            state.stage = artifact.stage.next
            state.revisions = 0
            state.previous_attempt = None
            state.feedback = ()
            self._write_pointer(state, TaskStatus.RUNNING)

        if self.cancel_requested:
            return self._cancelled(state)
        return None

    # -------------------------------------------------------------------------
    # 종료 상태
    # -------------------------------------------------------------------------

    def _result(self, state: _RunState, status: TaskStatus, **kwargs: Any) -> RunResult:
        return RunResult(
            task_id=state.task_id,
            status=status,
            stage=state.stage,
            profile_id=state.profile.id if state.profile and state.stage else None,
            appended=tuple(state.appended),
            **kwargs,
        )

    def _done(self, state: _RunState) -> RunResult:
        self._write_pointer(state, TaskStatus.DONE)
        logger.info("태스크 '%s' 완료", state.task_id)
        return self._result(state, TaskStatus.DONE)

    def _blocked(self, state: _RunState, error: GateBlocked) -> RunResult:
        logger.warning("%s", error)
        self._write_pointer(state, TaskStatus.BLOCKED, error.failures, str(error))
        return self._result(
            state, TaskStatus.BLOCKED, failures=error.failures, error=str(error)
        )

    def _max_revisions_exceeded(
        self,
        state: _RunState,
        stage: Stage,
        failures: tuple[RequirementCheckResult, ...],
    ) -> RunResult:
        error = MaxRevisionsExceeded(
            f"{stage.value} 단계가 수정 한도({self.max_revisions}회)를 초과했습니다",
            failures,
        )
        logger.error("%s", error)
        self._write_pointer(state, TaskStatus.MAX_REVISIONS_EXCEEDED, failures, str(error))
        return self._result(
            state, TaskStatus.MAX_REVISIONS_EXCEEDED, failures=failures, error=str(error)
        )

    def _cancelled(self, state: _RunState) -> RunResult:
        """최근 산출물을 취소 처리로 다시 기록한다. 기존 이력은 삭제하지 않는다."""
        latest = self.store.latest_record(state.task_id)
        if latest is not None and latest.disposition != Disposition.CANCELLED:
            ref = self.store.append(state.task_id, latest.artifact, Disposition.CANCELLED)
            state.appended.append(ref)
        self._write_pointer(state, TaskStatus.CANCELLED)
        logger.info("태스크 '%s' 취소됨", state.task_id)
        return self._result(state, TaskStatus.CANCELLED, error="태스크가 취소되었습니다")

    def _failed(self, state: _RunState, error: ArtifactFormatError) -> RunResult:
        logger.error("태스크 '%s' 실패: %s", state.task_id, error)
        self._write_pointer(state, TaskStatus.FAILED, detail=str(error))
        return self._result(state, TaskStatus.FAILED, error=str(error))

    def _write_pointer(
        self,
        state: _RunState,
        status: TaskStatus,
        failures: tuple[RequirementCheckResult, ...] = (),
        detail: str | None = None,
    ) -> None:
        self.store.write_current(
            state.task_id,
            {
                "status": status.value,
                "stage": state.stage.value if state.stage else None,
                "profile": state.profile.id if state.profile and state.stage else None,
                "description": state.description,
                "values": dict(state.values),
                "revisions": state.revisions,
                "detail": detail,
                "failures": [f.to_dict() for f in failures],
            },
        )


def _latest(artifacts: list[HandoffArtifact], stage: Stage) -> HandoffArtifact | None:
    for artifact in reversed(artifacts):
        if artifact.stage == stage:
            return artifact
    return None
