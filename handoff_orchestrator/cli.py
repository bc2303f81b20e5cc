"""`handoff` 명령줄 인터페이스.

명령:
  handoff run <task_id> [--description TEXT | --description-file PATH] [--set KEY=VALUE]
  handoff status <task_id>
  handoff history <task_id> [--full]
  handoff validate
  handoff skills [--agent ID] [--match TEXT]

종료 코드:
  0  태스크 완료 (Done) 또는 조회 성공
  1  Blocked, MaxRevisionsExceeded, Cancelled, Failed
  2  설정 로드 실패

실행기는 `make_cli()`에 팩토리로 주입하거나 `--executor module:callable`로
지정한다. callable은 AgentExecutor 인스턴스이거나, PipelineDefinition을 받아
실행기를 돌려주는 팩토리여야 한다.
"""

from __future__ import annotations

import asyncio
import importlib
from collections.abc import Callable
from pathlib import Path
from typing import Any, NoReturn

import click
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from handoff_orchestrator import __version__
from handoff_orchestrator.config import OrchestrationConfig, configure_logging
from handoff_orchestrator.errors import ConfigurationError, OrchestrationError
from handoff_orchestrator.handoff.store import ArtifactStore, Disposition
from handoff_orchestrator.orchestration.executor import AgentExecutor
from handoff_orchestrator.orchestration.sequencer import (
    OrchestrationSequencer,
    RunResult,
    TaskStatus,
)
from handoff_orchestrator.profiles.loader import PipelineDefinition, load_pipeline

EXIT_TASK_FAILED = 1
EXIT_CONFIG_ERROR = 2

ExecutorFactory = Callable[[PipelineDefinition], AgentExecutor]

console = Console()
error_console = Console(stderr=True)

_STATUS_COLORS: dict[str, str] = {
    TaskStatus.DONE.value: "green",
    TaskStatus.RUNNING.value: "cyan",
    TaskStatus.NEEDS_REVISION.value: "yellow",
    TaskStatus.BLOCKED.value: "red",
    TaskStatus.MAX_REVISIONS_EXCEEDED.value: "red",
    TaskStatus.CANCELLED.value: "magenta",
    TaskStatus.FAILED.value: "red",
}

_DISPOSITION_COLORS: dict[str, str] = {
    Disposition.ACCEPTED.value: "green",
    Disposition.NEEDS_REVISION.value: "yellow",
    Disposition.CANCELLED.value: "magenta",
}


def _badge(value: str, colors: dict[str, str]) -> str:
    color = colors.get(value, "white")
    return f"[{color}]{value.upper()}[/{color}]"


def _config_failure(ctx: click.Context, error: ConfigurationError) -> NoReturn:
    location = f" ({error.source})" if error.source else ""
    error_console.print(f"[red]설정 오류{escape(location)}:[/red] {escape(str(error))}")
    ctx.exit(EXIT_CONFIG_ERROR)


def _load(ctx: click.Context, max_revisions: int | None = None) -> PipelineDefinition:
    config: OrchestrationConfig = ctx.obj["config"]
    try:
        return load_pipeline(
            config.config_path,
            max_revisions=max_revisions if max_revisions is not None else config.max_revisions,
        )
    except ConfigurationError as e:
        _config_failure(ctx, e)


def _store(ctx: click.Context) -> ArtifactStore:
    config: OrchestrationConfig = ctx.obj["config"]
    return ArtifactStore(config.artifacts_dir)


def _import_executor(spec: str, pipeline: PipelineDefinition) -> AgentExecutor:
    """`module:attribute` 형식의 실행기 지정자를 해석한다."""
    module_name, _, attribute = spec.partition(":")
    if not module_name or not attribute:
        msg = f"실행기 지정자는 'module:callable' 형식이어야 합니다: {spec!r}"
        raise ConfigurationError(msg)
    try:
        target = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as e:
        msg = f"실행기 '{spec}'을(를) 불러올 수 없음: {e}"
        raise ConfigurationError(msg) from e

    if not isinstance(target, type) and isinstance(target, AgentExecutor):
        return target
    if callable(target):
        executor = target(pipeline)
        if isinstance(executor, AgentExecutor):
            return executor
    msg = f"'{spec}'은(는) AgentExecutor 또는 실행기 팩토리가 아닙니다"
    raise ConfigurationError(msg)


def _parse_values(pairs: tuple[str, ...]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"KEY=VALUE 형식이어야 합니다: {pair!r}", param_hint="--set")
        try:
            values[key.strip()] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError as e:
            raise click.BadParameter(
                f"'{key.strip()}' 값을 YAML로 해석할 수 없습니다: {e}", param_hint="--set"
            ) from e
    return values


def _render_failures(failures: Any) -> None:
    for failure in failures:
        fields = escape(", ".join(failure.fields) or "-")
        console.print(
            f"  [red]✗[/red] [bold]{escape(failure.requirement.id)}[/bold]: "
            f"{escape(failure.requirement.statement)}"
        )
        console.print(f"      {escape(failure.detail)}  [dim](필드: {fields})[/dim]")


def _render_result(result: RunResult) -> None:
    stage = result.stage.value if result.stage else "Done"
    console.print(
        f"태스크 [bold]{result.task_id}[/bold]  {_badge(result.status.value, _STATUS_COLORS)}"
        f"  단계: {stage}"
        + (f"  담당: {result.profile_id}" if result.profile_id else "")
    )
    if result.appended:
        console.print(f"  이번 실행에서 레코드 {len(result.appended)}개 추가")
    if result.failures:
        _render_failures(result.failures)
    elif result.error:
        console.print(f"  {escape(result.error)}")


def make_cli(executor_factory: ExecutorFactory | None = None) -> click.Group:
    """`handoff` 명령 그룹을 만든다.

    Args:
        executor_factory: 파이프라인을 받아 실행기를 만드는 팩토리.
            없으면 `run --executor`로 지정해야 한다.

    Returns:
        등록 가능한 Click 그룹.
    """

    @click.group("handoff")
    @click.version_option(__version__, prog_name="handoff")
    @click.option(
        "--config",
        "config_path",
        type=click.Path(path_type=Path),
        default=None,
        help="파이프라인 YAML 경로 (기본값: $HANDOFF_CONFIG 또는 orchestration.yaml).",
    )
    @click.option(
        "--artifacts-dir",
        type=click.Path(path_type=Path),
        default=None,
        help="태스크 산출물 디렉토리 (기본값: $HANDOFF_ARTIFACTS_DIR).",
    )
    @click.option(
        "--log-level",
        type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
        default=None,
        help="로그 레벨 (기본값: $HANDOFF_LOG_LEVEL).",
    )
    @click.pass_context
    def cli(
        ctx: click.Context,
        config_path: Path | None,
        artifacts_dir: Path | None,
        log_level: str | None,
    ) -> None:
        """스킬 해석과 에이전트 핸드오프 오케스트레이터."""
        try:
            config = OrchestrationConfig.from_env().with_overrides(
                config=config_path,
                artifacts_dir=artifacts_dir,
                log_level=log_level.upper() if log_level else None,
            )
        except ConfigurationError as e:
            _config_failure(ctx, e)
        configure_logging(config.log_level)
        ctx.ensure_object(dict)
        ctx.obj["config"] = config

    @cli.command("run")
    @click.argument("task_id")
    @click.option("--description", "-d", default=None, help="태스크 설명.")
    @click.option(
        "--description-file",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        default=None,
        help="태스크 설명을 읽을 파일.",
    )
    @click.option("--set", "pairs", multiple=True, help="사전 조건용 컨텍스트 값 (KEY=VALUE).")
    @click.option("--max-revisions", type=click.IntRange(min=0), default=None)
    @click.option("--executor", "executor_spec", default=None, help="실행기 (module:callable).")
    @click.option("--async", "use_async", is_flag=True, help="비동기 실행기 경로 사용.")
    @click.pass_context
    def run_command(
        ctx: click.Context,
        task_id: str,
        description: str | None,
        description_file: Path | None,
        pairs: tuple[str, ...],
        max_revisions: int | None,
        executor_spec: str | None,
        use_async: bool,
    ) -> None:
        """태스크를 실행하거나 마지막 승인 단계부터 재개한다."""
        if description is not None and description_file is not None:
            raise click.UsageError("--description과 --description-file은 함께 쓸 수 없습니다")
        if description_file is not None:
            description = description_file.read_text(encoding="utf-8")
        values = _parse_values(pairs)

        pipeline = _load(ctx, max_revisions)
        try:
            if executor_spec:
                executor = _import_executor(executor_spec, pipeline)
            elif executor_factory is not None:
                executor = executor_factory(pipeline)
            else:
                msg = "실행기가 설정되지 않음 (--executor module:callable 필요)"
                raise ConfigurationError(msg)
        except ConfigurationError as e:
            _config_failure(ctx, e)

        sequencer = OrchestrationSequencer(pipeline, _store(ctx), executor)
        try:
            if use_async:
                result = asyncio.run(sequencer.arun(task_id, description, values))
            else:
                result = sequencer.run(task_id, description, values)
        except OrchestrationError as e:
            error_console.print(f"[red]오류:[/red] {escape(str(e))}")
            ctx.exit(EXIT_TASK_FAILED)

        _render_result(result)
        ctx.exit(result.exit_code)

    @cli.command("status")
    @click.argument("task_id")
    @click.pass_context
    def status_command(ctx: click.Context, task_id: str) -> None:
        """태스크의 현재 포인터를 보여준다."""
        try:
            pointer = _store(ctx).read_current(task_id)
        except OrchestrationError as e:
            raise click.ClickException(str(e)) from e
        if pointer is None:
            raise click.ClickException(f"태스크 '{task_id}'을(를) 찾을 수 없습니다")

        status = str(pointer.get("status", "unknown"))
        console.print(f"태스크 [bold]{task_id}[/bold]  {_badge(status, _STATUS_COLORS)}")
        console.print(f"  단계:     {pointer.get('stage') or 'Done'}")
        if pointer.get("profile"):
            console.print(f"  담당:     {pointer['profile']}")
        console.print(f"  레코드:   {pointer.get('last_seq', 0)}")
        console.print(f"  수정:     {pointer.get('revisions', 0)}")
        console.print(f"  갱신:     {pointer.get('updated_at', '-')}")
        for failure in pointer.get("failures") or []:
            console.print(
                f"  [red]✗[/red] [bold]{escape(str(failure.get('requirement')))}[/bold]: "
                f"{escape(str(failure.get('detail', '')))}"
            )

    @cli.command("history")
    @click.argument("task_id")
    @click.option("--full", is_flag=True, help="각 산출물을 YAML로 출력.")
    @click.pass_context
    def history_command(ctx: click.Context, task_id: str, full: bool) -> None:
        """태스크의 산출물 이력을 기록 순서대로 보여준다."""
        try:
            records = _store(ctx).records(task_id)
        except OrchestrationError as e:
            raise click.ClickException(str(e)) from e
        if not records:
            console.print(f"  태스크 '{task_id}'의 이력이 없습니다.")
            return

        table = Table(title=f"{task_id} 이력")
        table.add_column("#", justify="right")
        table.add_column("단계")
        table.add_column("생산자")
        table.add_column("처리")
        table.add_column("실패한 요구사항")
        table.add_column("기록 시각")
        for record in records:
            failed = [str(e.get("requirement")) for e in record.audit if not e.get("satisfied")]
            table.add_row(
                str(record.seq),
                record.artifact.stage.value,
                record.artifact.produced_by,
                _badge(record.disposition.value, _DISPOSITION_COLORS),
                ", ".join(failed) or "-",
                record.recorded_at.isoformat(timespec="seconds"),
            )
        console.print(table)

        if full:
            for record in records:
                console.rule(f"#{record.seq} {record.artifact.stage.value}")
                console.print(
                    yaml.safe_dump(record.artifact.to_dict(), allow_unicode=True, sort_keys=False),
                    markup=False,
                )

    @cli.command("validate")
    @click.pass_context
    def validate_command(ctx: click.Context) -> None:
        """파이프라인, 프로필, 스킬 설정을 검증한다."""
        pipeline = _load(ctx)
        console.print(f"[green]✓[/green] 스킬 {len(pipeline.skills)}개")
        console.print(f"[green]✓[/green] 프로필 {len(pipeline.profiles)}개")
        for stage, profile_id in pipeline.stages.items():
            console.print(f"    {stage.value:<15} → {profile_id}")
        console.print(f"[green]✓[/green] 수정 한도 {pipeline.max_revisions}회")

    @cli.command("skills")
    @click.option("--agent", "agent_id", default=None, help="이 에이전트의 스킬만 표시.")
    @click.option("--match", "text", default=None, help="트리거 감지를 시험할 텍스트.")
    @click.pass_context
    def skills_command(ctx: click.Context, agent_id: str | None, text: str | None) -> None:
        """등록된 스킬을 나열하거나 텍스트로 동적 스킬 매칭을 시험한다."""
        pipeline = _load(ctx)

        if agent_id is not None and agent_id not in pipeline.profiles:
            raise click.ClickException(f"프로필 '{agent_id}'을(를) 찾을 수 없습니다")

        if text is not None:
            if agent_id is None:
                raise click.UsageError("--match에는 --agent가 필요합니다")
            resolved = pipeline.skills.resolve_for(pipeline.profiles.require(agent_id), text)
            console.print(f"사전 로드: {', '.join(s.id for s in resolved.preloaded) or '-'}")
            console.print(f"동적:      {', '.join(s.id for s in resolved.dynamic) or '-'}")
            return

        table = Table(title="스킬")
        table.add_column("ID")
        table.add_column("설명")
        table.add_column("사전 로드")
        table.add_column("동적 호출 이름")
        table.add_column("해시")
        visible = None
        if agent_id is not None:
            profile = pipeline.profiles.require(agent_id)
            visible = set(profile.referenced_skill_ids)
        for skill in pipeline.skills:
            if visible is not None and skill.id not in visible:
                continue
            table.add_row(
                skill.id,
                skill.description,
                ", ".join(sorted(skill.preloaded_by)) or "-",
                skill.dynamic_invocation_name or "-",
                skill.content_hash,
            )
        console.print(table)

    return cli


#: 실행기가 주입되지 않은 기본 그룹 (`run --executor`로 지정).
cli = make_cli()


def main() -> None:
    cli(obj={})
